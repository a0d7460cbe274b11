"""CRM events published to webhook subscribers.

Producers call the OpportunityWebhooks helpers from business code paths;
each call schedules delivery in the background and returns immediately,
so a webhook failure can never fail the opportunity change itself.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Protocol


class OpportunityEvent(str, Enum):
    """Opportunity lifecycle events."""

    CREATED = "opportunity.created"
    UPDATED = "opportunity.updated"
    STAGE_CHANGED = "opportunity.stage_changed"
    WON = "opportunity.won"
    LOST = "opportunity.lost"
    DELETED = "opportunity.deleted"


ALL_EVENTS: list[str] = [e.value for e in OpportunityEvent]

EVENT_DESCRIPTIONS: dict[str, str] = {
    OpportunityEvent.CREATED.value: "Fired when a new opportunity is created",
    OpportunityEvent.UPDATED.value: "Fired when an opportunity is updated",
    OpportunityEvent.STAGE_CHANGED.value: "Fired when an opportunity moves to another stage",
    OpportunityEvent.WON.value: "Fired when an opportunity is marked as won",
    OpportunityEvent.LOST.value: "Fired when an opportunity is marked as lost",
    OpportunityEvent.DELETED.value: "Fired when an opportunity is deleted",
}

DEFAULT_EVENT_DESCRIPTION = "Webhook event"


def describe_event(event: str) -> str:
    """Human-readable description for an event name."""
    return EVENT_DESCRIPTIONS.get(event, DEFAULT_EVENT_DESCRIPTION)


def is_known_event(event: str) -> bool:
    """Check whether an event name is one subscriptions may register for."""
    return event in EVENT_DESCRIPTIONS


class _Dispatches(Protocol):
    def dispatch_nowait(self, event: str, data: dict[str, Any]) -> asyncio.Task[list[str]]: ...


class OpportunityWebhooks:
    """Fire-and-forget publishers for opportunity events.

    Example:
        ```python
        hooks = OpportunityWebhooks(service)
        hooks.won({"opportunityId": "op_1", "amount": 5000})
        ```
    """

    def __init__(self, dispatcher: _Dispatches) -> None:
        self._dispatcher = dispatcher

    def publish(self, event: OpportunityEvent, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        """Schedule delivery of an opportunity event."""
        return self._dispatcher.dispatch_nowait(event.value, data)

    def created(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.CREATED, data)

    def updated(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.UPDATED, data)

    def stage_changed(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.STAGE_CHANGED, data)

    def won(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.WON, data)

    def lost(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.LOST, data)

    def deleted(self, data: dict[str, Any]) -> asyncio.Task[list[str]]:
        return self.publish(OpportunityEvent.DELETED, data)
