import shutil
from pathlib import Path

import pytest

from stackup.engines import LocalEngine

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture
def stackup_home(tmp_path, monkeypatch):
    home = tmp_path / "home"
    monkeypatch.setenv("STACKUP_HOME", str(home))
    return home


@pytest.fixture
def rustapp_dir(tmp_path):
    """A private copy of the rustapp project so tests can edit it."""
    target = tmp_path / "rustapp"
    shutil.copytree(FIXTURES / "rustapp", target)
    return target


@pytest.fixture
def engine():
    return LocalEngine()
