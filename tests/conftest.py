"""
Pytest configuration and shared fixtures for SupportBot tests.
"""

import os
import pytest
import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import AsyncMock

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Keep Rich console output from wrapping long tmp paths in captured CLI output
os.environ.setdefault("COLUMNS", "200")

from supportbot.autoresponder.engine import AutoresponderEngine
from supportbot.autoresponder.models import Channel, Message
from supportbot.config.schema import WEEKDAYS, AutoresponderConfig, OfficeHours
from supportbot.store.base import MemoryStore


# Monday 2024-01-15 20:00 UTC, outside 09:00-17:00 office hours
EVENING = datetime(2024, 1, 15, 20, 0, tzinfo=timezone.utc).timestamp()

# Monday 2024-01-15 10:00 UTC, inside office hours
MORNING = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc).timestamp()


class FakeClock:
    """Settable clock for the engine."""

    def __init__(self, now: float):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def ar_config():
    """Autoresponder config with office hours 09:00-17:00 UTC every day."""
    return AutoresponderConfig(
        rooms=["general"],
        timeout=300,
        agent_wait_timeout=600,
        conversation_timeout=120,
        user_limit_timeout=36000,
        minimum_reply_timeout=15,
        send_timeout=1.0,
        office_hours={day: OfficeHours(start="09:00", end="17:00") for day in WEEKDAYS},
        office_hours_timezone="UTC",
    )


@pytest.fixture
def clock():
    return FakeClock(EVENING)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def sender():
    return AsyncMock()


@pytest.fixture
def engine(store, ar_config, sender, clock):
    return AutoresponderEngine(store, ar_config, sender=sender, clock=clock)


@pytest.fixture
def make_message():
    """Factory for user messages in #general."""
    counter = {"n": 0}

    def _make(**overrides) -> Message:
        counter["n"] += 1
        fields = {
            "id": f"{EVENING + counter['n']:.6f}",
            "user_id": "U100",
            "email_address": "user@customer.com",
            "channel_id": "C1",
            "channel_name": "general",
            "timestamp": EVENING,
            "type": "message",
            "subtype": None,
            "text": "help please",
            "is_agent": False,
        }
        fields.update(overrides)
        return Message(**fields)

    return _make


@pytest.fixture
def channel():
    return Channel(id="C1")
