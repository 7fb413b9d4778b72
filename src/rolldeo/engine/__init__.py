"""
Table resolution engine: weighted selection, inheritance, expression
expansion and the roll orchestrator.
"""

from .dice import DiceResult, roll_dice
from .expander import Expansion, expand
from .inheritance import inheritance_chain, resolve_effective_entries, table_entry_count
from .orchestrator import RandomTableEngine
from .resolver import TableResolution, resolve_table
from .weights import RandomSource, effective_weight, select_weighted, total_weight

__all__ = [
    "DiceResult",
    "roll_dice",
    "Expansion",
    "expand",
    "inheritance_chain",
    "resolve_effective_entries",
    "table_entry_count",
    "RandomTableEngine",
    "TableResolution",
    "resolve_table",
    "RandomSource",
    "effective_weight",
    "select_weighted",
    "total_weight",
]
