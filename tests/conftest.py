"""
Pytest configuration shared by all speechwire tests.

Routes log files to a temporary directory and keeps the config loader away
from any real ~/.speechwire/config.toml.
"""

import os
import tempfile

import pytest

# Must be set before speechwire modules create their loggers
os.environ.setdefault("SPEECHWIRE_LOG_DIR", tempfile.mkdtemp(prefix="speechwire-test-logs-"))


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch, tmp_path):
    monkeypatch.setenv("SPEECHWIRE_CONFIG", str(tmp_path / "missing-config.toml"))
    for name in ("SPEECHWIRE_TRUST_ROOTS", "SPEECHWIRE_MAX_ATTEMPTS", "SPEECHWIRE_REPLAY_WINDOW"):
        monkeypatch.delenv(name, raising=False)
