"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest

from dealhook.models import Subscription
from dealhook.storage import WebhookStorage

# Add tests directory to path so helpers can be imported
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))


@pytest.fixture
async def storage() -> AsyncIterator[WebhookStorage]:
    """Initialized storage on an in-process Qdrant."""
    store = WebhookStorage(url=":memory:", prefix="test")
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def make_subscription() -> Callable[..., Subscription]:
    """Factory for subscriptions with sensible defaults."""

    def _make(**overrides: object) -> Subscription:
        fields: dict[str, object] = {
            "name": "Test hook",
            "url": "https://example.com/hook",
            "events": ["opportunity.won"],
            "secret": "abc123",
            "retry_count": 3,
            "timeout_seconds": 5,
        }
        fields.update(overrides)
        return Subscription(**fields)  # type: ignore[arg-type]

    return _make
