"""Shared pytest fixtures for the browser-mode test suite.

Non-fixture helpers (fake CDP session, scripted page, fake Chrome) are in
helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Repo root for the webchat_* modules, tests dir for helpers.py
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import FakeSession, LogCapture  # noqa: E402
from webchat_config import PollingConfig, RunConfig  # noqa: E402


@pytest.fixture
def log() -> LogCapture:
    return LogCapture()


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def fast_config() -> RunConfig:
    """Config with millisecond-scale polling so state-machine tests run fast."""
    return RunConfig(
        input_timeout_ms=200,
        timeout_ms=500,
        navigation_timeout_ms=200,
        polling=PollingConfig(
            interval_ms=5,
            input_interval_ms=5,
            block_grace_ms=50,
            launch_attempts=3,
            launch_backoff_ms=5,
            copy_wait_ms=10,
        ),
    )


@pytest.fixture
def profile_dir(tmp_path: Path) -> Path:
    """A stand-in for the disposable Chrome profile directory."""
    path = tmp_path / "webchat-browser-test"
    path.mkdir()
    (path / "Local State").write_text("{}", encoding="utf-8")
    return path
