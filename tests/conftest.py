import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import procvm`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate every test from PROCVM_* variables and runtime overrides."""
    for name in list(os.environ):
        if name.startswith('PROCVM_'):
            monkeypatch.delenv(name, raising=False)

    from procvm.config import get_config_manager
    get_config_manager().reset()
    yield
    get_config_manager().reset()


@pytest.fixture
def assemble():
    from procvm.vm import Assembler
    return Assembler.assemble


@pytest.fixture
def add2_program(assemble):
    """Top-level code calling add2(3, 4), followed by the add2 body."""
    return assemble([
        ('PUSH1', 3),
        ('PUSH1', 4),
        ('CALLPROC', 'add2'),
        ('STOP',),
        ('ENTERPROC', 'add2', 2, 1, 0),
        ('ADD',),
        ('LEAVEPROC',),
    ])


@pytest.fixture
def scratch_program(assemble):
    """Stores 42 in a two-word frame, loads it back and returns it."""
    return assemble([
        ('CALLPROC', 'scratch'),
        ('STOP',),
        ('ENTERPROC', 'scratch', 0, 1, 2),
        ('PUSH1', 42),
        ('FRAMEADDRESS', 0),
        ('MSTORE',),
        ('FRAMEADDRESS', 0),
        ('MLOAD',),
        ('LEAVEPROC',),
    ])
