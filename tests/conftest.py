import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import gh_project_editor as gpe


@pytest.fixture
def state_path(tmp_path):
    """Isolated UI-state file so project switches never touch the home directory."""
    return tmp_path / "ui_state.json"


@pytest.fixture(autouse=True)
def no_ambient_token(monkeypatch):
    """Keep a developer's GITHUB_TOKEN out of credential tests."""
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    yield
    for h in list(gpe.logger.handlers):
        gpe.logger.removeHandler(h)
        h.close()
