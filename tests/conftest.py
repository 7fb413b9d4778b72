"""
Pytest configuration and fixtures for rolldeo tests.
"""

import sys
from pathlib import Path
import pytest

# Add src directory to Python path to allow importing rolldeo
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from rolldeo.engine import RandomTableEngine  # noqa: E402

FIXTURES_DIR = Path(__file__).parent / "fixtures"


class ScriptedRandom:
    """Random source that replays fixed values.

    ``random()`` returns the scripted floats in order; ``randint`` returns
    the scripted integers, clamped into the requested range.
    """

    def __init__(self, floats=(), ints=()):
        self.floats = list(floats)
        self.ints = list(ints)
        self.random_calls = 0

    def random(self) -> float:
        self.random_calls += 1
        return self.floats.pop(0)

    def randint(self, a: int, b: int) -> int:
        return max(a, min(b, self.ints.pop(0)))


@pytest.fixture
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture
def fantasy_engine() -> RandomTableEngine:
    """Engine with the fantasy fixture collection loaded as 'fantasy'."""
    engine = RandomTableEngine()
    report = engine.load_file(FIXTURES_DIR / "fantasy.json")
    assert report.valid, str(report)
    return engine
