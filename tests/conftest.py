"""Shared fixtures: isolated logs, a fake clock and a scripted agent transport."""

from datetime import datetime

import pytest

from chatdesk.logging import LogConfig, reset_loggers, set_config
from helpers import FakeClock, FakeTransport, ManualScheduler


@pytest.fixture(autouse=True)
def isolated_logs(tmp_path):
    """Send structured logs to a temp dir for every test."""
    reset_loggers()
    set_config(LogConfig(log_dir=tmp_path / "logs"))
    yield
    reset_loggers()


@pytest.fixture
def clock():
    """Fake clock starting on a Wednesday morning."""
    return FakeClock(datetime(2025, 3, 12, 10, 0, 0))


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def transport():
    return FakeTransport()
