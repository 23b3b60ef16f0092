"""Shared fixtures: isolated config, fake clock, in-memory store."""

import logging
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

from config import Config, set_config
from logger import LOGGER_NAME, clear_log_context
from store import MemoryStore


class FakeClock:
    """Callable clock returning a settable aware datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def test_config(tmp_path):
    cfg = Config(
        store_url=f"file:{tmp_path}/settings.db",
        access_token="",
        log_dir=str(tmp_path / "logs"),
        api_max_retries=2,
        api_base_delay=0.0,
        api_max_delay=0.0,
        db_max_retries=2,
        db_base_delay=0.0,
        db_max_delay=0.0,
        fallback_timeout=1.0,
        relay_delay=0.0,
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def clock():
    # 2024-06-15 12:00 Pacific (PDT, UTC-7)
    return FakeClock(datetime(2024, 6, 15, 19, 0, tzinfo=timezone.utc))


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture(autouse=True)
def detach_log_handlers():
    """setup_logging() binds handlers to per-test paths and streams."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    clear_log_context()
