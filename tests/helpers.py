"""Test helpers for simulating webhook endpoints."""

from __future__ import annotations

from collections.abc import Callable

import httpx

from dealhook.webhooks import DeliveryTransport

Handler = Callable[[httpx.Request], httpx.Response]


class RecordingHandler:
    """httpx.MockTransport handler that replays scripted responses.

    Each call pops the next entry from ``responses``; the last entry repeats.
    An entry may be a status code, an httpx.Response, or an exception
    instance to raise. Every request is kept in ``requests``.
    """

    def __init__(self, *responses: int | httpx.Response | Exception) -> None:
        self.responses: list[int | httpx.Response | Exception] = list(responses) or [200]
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        entry = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(entry, Exception):
            raise entry
        if isinstance(entry, httpx.Response):
            return entry
        return httpx.Response(entry, text="OK" if entry < 300 else "Service Unavailable")

    @property
    def bodies(self) -> list[bytes]:
        return [r.content for r in self.requests]


def make_transport(handler: Handler) -> DeliveryTransport:
    """DeliveryTransport backed by httpx.MockTransport."""
    return DeliveryTransport(http_transport=httpx.MockTransport(handler))
