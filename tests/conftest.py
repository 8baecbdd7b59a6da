import os
import pathlib
import sys
import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import chainvec`),
# and the tests directory for the simulation helpers (`import chainsim`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
_TESTS_DIR = pathlib.Path(__file__).resolve().parent
for _p in (_REPO_ROOT, _TESTS_DIR):
    if str(_p) not in sys.path:
        sys.path.insert(0, str(_p))

import chainsim  # noqa: E402
from chainvec.config import ConfigManager  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_config(monkeypatch):
    for name in list(os.environ):
        if name.startswith("CHAINVEC_"):
            monkeypatch.delenv(name, raising=False)
    ConfigManager.reset()
    yield
    ConfigManager.reset()


@pytest.fixture
def sim() -> "chainsim.SimChain":
    """A short simulated chain: genesis plus a few tipsets with transfers and randomness draws."""
    return chainsim.build_chain()


@pytest.fixture
def driver():
    return chainsim.make_driver()
