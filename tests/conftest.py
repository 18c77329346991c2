"""Pytest configuration and fixtures."""

import logging
import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for rivestack_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from rivestack.config import Timeouts  # noqa: E402
from rivestack_mock import MockRivestackClient, MockRivestackState  # noqa: E402


@pytest.fixture(autouse=True)
def debug_logging(caplog: pytest.LogCaptureFixture) -> None:
    """Build a record for every log call, so invalid extra= keys fail the test."""
    caplog.set_level(logging.DEBUG)


@pytest.fixture
def timeouts() -> Timeouts:
    """Millisecond polls so the real wait loops run fast."""
    return Timeouts(
        active_poll_interval=0.001,
        active_timeout=1.0,
        delete_poll_interval=0.001,
        delete_timeout=1.0,
        job_poll_interval=0.001,
        job_timeout=1.0,
        scale_timeout=1.0,
        conflict_backoff=0.001,
        conflict_timeout=1.0,
    )


@pytest.fixture
def api() -> MockRivestackState:
    """Empty in-memory backend."""
    return MockRivestackState()


@pytest.fixture
def client(api: MockRivestackState) -> MockRivestackClient:
    return MockRivestackClient(api)
