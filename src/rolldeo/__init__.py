"""
Rolldeo - a random table engine for tabletop RPG generators, with a FastMCP server.
"""

from .engine import RandomTableEngine
from .config import EngineConfig
from .exceptions import *
from .models import *
from .validation import ValidationReport, validate_document
from .visualization import visualize_table

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("rolldeo")
except Exception:
    __version__ = "0.1.0"  # Fallback if metadata unavailable
__all__ = ["RandomTableEngine", "EngineConfig", "ValidationReport", "validate_document", "visualize_table"]
