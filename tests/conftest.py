"""Pytest configuration for scenario-engine tests."""
import sys
from pathlib import Path

# Add src/ to path for src-layout imports
_PROJECT_ROOT = Path(__file__).parent.parent
_SRC = _PROJECT_ROOT / 'src'
if str(_SRC) not in sys.path:
    sys.path.insert(0, str(_SRC))

import pytest

from scenario_engine.cache import VariableCache
from scenario_engine.scenario import Scenario


@pytest.fixture
def scenario():
    """Empty scenario whose cache tests can seed directly."""
    return Scenario(name='test-scenario', description='test', actions=(), cache=VariableCache())
