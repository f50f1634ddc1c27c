import os
import sys

import pytest

# Add project root to path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from dataflow.script_engine import ScriptEngine


@pytest.fixture
def script_engine():
    engine = ScriptEngine(timeout_seconds=1.0)
    yield engine
    engine.shutdown()
