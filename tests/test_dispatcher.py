"""Unit tests for the webhook dispatcher."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from helpers import RecordingHandler, make_transport

from dealhook.models import Delivery, Subscription
from dealhook.webhooks.dispatcher import (
    RESERVED_HEADERS,
    WebhookDispatcher,
    build_headers,
)
from dealhook.webhooks.signing import verify_signature
from dealhook.webhooks.transport import DeliveryTransport


@pytest.fixture
def mock_storage() -> AsyncMock:
    """Create a mock storage instance."""
    storage = AsyncMock()
    storage.get_subscriptions_for_event = AsyncMock(return_value=[])
    storage.create_delivery = AsyncMock()
    storage.save_delivery_state = AsyncMock()
    storage.get_due_deliveries = AsyncMock(return_value=[])
    storage.get_subscription = AsyncMock(return_value=None)
    return storage


def _saved(mock_storage: AsyncMock) -> list[Delivery]:
    return [call.args[0] for call in mock_storage.save_delivery_state.call_args_list]


class TestBuildHeaders:
    """Tests for request header construction."""

    def test_reserved_headers(self) -> None:
        headers = build_headers("opportunity.won", "dlv_1", "{}", user_agent="Dealhook-Webhook/1.0")
        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "Dealhook-Webhook/1.0"
        assert headers["X-Webhook-Event"] == "opportunity.won"
        assert headers["X-Webhook-Delivery"] == "dlv_1"

    def test_no_secret_no_signature(self) -> None:
        headers = build_headers("opportunity.won", "dlv_1", "{}", secret=None)
        assert "X-Webhook-Signature-256" not in headers

    def test_empty_secret_no_signature(self) -> None:
        headers = build_headers("opportunity.won", "dlv_1", "{}", secret="")
        assert "X-Webhook-Signature-256" not in headers

    def test_signature_over_payload(self) -> None:
        headers = build_headers("opportunity.won", "dlv_1", '{"a":1}', secret="abc123")
        assert verify_signature('{"a":1}', "abc123", headers["X-Webhook-Signature-256"])

    def test_custom_headers_merged(self) -> None:
        headers = build_headers(
            "opportunity.won", "dlv_1", "{}", custom_headers={"Authorization": "Bearer t"}
        )
        assert headers["Authorization"] == "Bearer t"

    def test_custom_headers_cannot_clobber_reserved(self) -> None:
        headers = build_headers(
            "opportunity.won",
            "dlv_1",
            "{}",
            secret="abc123",
            custom_headers={
                "content-type": "text/plain",
                "X-WEBHOOK-EVENT": "spoofed",
                "x-webhook-delivery": "spoofed",
                "X-Webhook-Signature-256": "sha256=forged",
            },
        )
        lowered = {k.lower(): v for k, v in headers.items()}
        assert lowered["content-type"] == "application/json"
        assert lowered["x-webhook-event"] == "opportunity.won"
        assert lowered["x-webhook-delivery"] == "dlv_1"
        assert lowered["x-webhook-signature-256"] != "sha256=forged"
        assert len(lowered) == len(headers)

    def test_custom_user_agent_replaces_default(self) -> None:
        headers = build_headers("opportunity.won", "dlv_1", "{}", custom_headers={"user-agent": "X"})
        assert [k for k in headers if k.lower() == "user-agent"] == ["user-agent"]
        assert headers["user-agent"] == "X"

    def test_reserved_set(self) -> None:
        assert RESERVED_HEADERS == {
            "content-type",
            "x-webhook-event",
            "x-webhook-delivery",
            "x-webhook-signature-256",
        }


class TestDispatch:
    """Tests for WebhookDispatcher.dispatch."""

    @pytest.mark.asyncio
    async def test_no_subscriptions(self, mock_storage: AsyncMock) -> None:
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        result = await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})

        assert result == []
        assert handler.requests == []
        mock_storage.create_delivery.assert_not_called()

    @pytest.mark.asyncio
    async def test_successful_delivery(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription()
        mock_storage.get_subscriptions_for_event.return_value = [subscription]
        handler = RecordingHandler(httpx.Response(200, text="thanks"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        result = await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})

        assert len(result) == 1
        created = mock_storage.create_delivery.call_args.args[0]
        assert created.id == result[0]
        assert created.subscription_id == subscription.id

        (saved,) = _saved(mock_storage)
        assert saved.status == "SUCCESS"
        assert saved.attempt == 1
        assert saved.response_code == 200
        assert saved.response_body == "thanks"
        assert saved.delivered_at is not None
        assert saved.next_retry_at is None

    @pytest.mark.asyncio
    async def test_request_shape(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        subscription = make_subscription(custom_headers={"X-Tenant": "acme"})
        mock_storage.get_subscriptions_for_event.return_value = [subscription]
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        (delivery_id,) = await dispatcher.dispatch("opportunity.won", {"amount": 5000})

        request = handler.requests[0]
        body = json.loads(request.content)
        assert body["event"] == "opportunity.won"
        assert body["data"] == {"amount": 5000}
        assert body["metadata"] == {"webhookId": subscription.id, "deliveryId": delivery_id}
        assert request.headers["X-Webhook-Delivery"] == delivery_id
        assert request.headers["X-Webhook-Event"] == "opportunity.won"
        assert request.headers["User-Agent"] == "Dealhook-Webhook/1.0"
        assert request.headers["X-Tenant"] == "acme"
        assert verify_signature(
            request.content, "abc123", request.headers["X-Webhook-Signature-256"]
        )

    @pytest.mark.asyncio
    async def test_stored_payload_is_sent_body(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})

        created = mock_storage.create_delivery.call_args.args[0]
        assert handler.bodies[0] == created.payload.encode()

    @pytest.mark.asyncio
    async def test_no_secret_no_signature_header(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription(secret=None)]
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {})

        assert "X-Webhook-Signature-256" not in handler.requests[0].headers

    @pytest.mark.asyncio
    async def test_http_error_schedules_retry(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(httpx.Response(503, text="Service Unavailable"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert saved.status == "FAILED"
        assert saved.error == "HTTP 503: Service Unavailable"
        assert saved.response_code == 503
        assert saved.next_retry_at is not None
        delay = saved.next_retry_at - saved.updated_at
        assert 119 <= delay.total_seconds() <= 121

    @pytest.mark.asyncio
    async def test_client_error_retried_like_server_error(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(httpx.Response(404, text="Not Found"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert saved.status == "FAILED"
        assert saved.error == "HTTP 404: Not Found"
        assert saved.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_transport_error_recorded(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(httpx.ConnectError("connection refused"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert saved.status == "FAILED"
        assert saved.response_code is None
        assert saved.error is not None
        assert "connection refused" in saved.error
        assert saved.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_non_standard_status_recorded_as_failure(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(httpx.Response(999, text="weird"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        delivery_ids = await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert delivery_ids == [saved.id]
        assert saved.status == "FAILED"
        assert saved.response_code == 999
        assert saved.error == "HTTP 999: weird"
        assert saved.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_unexpected_send_error_recorded(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        transport = MagicMock(spec=DeliveryTransport)
        transport.send = AsyncMock(side_effect=RuntimeError("decoder exploded"))
        dispatcher = WebhookDispatcher(mock_storage, transport)

        delivery_ids = await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert delivery_ids == [saved.id]
        assert saved.status == "FAILED"
        assert saved.response_code is None
        assert saved.error == "Unexpected error: decoder exploded"
        assert saved.next_retry_at is not None

    @pytest.mark.asyncio
    async def test_single_attempt_subscription_fails_terminally(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription(retry_count=1)]
        dispatcher = WebhookDispatcher(mock_storage, make_transport(RecordingHandler(500)))

        await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert saved.status == "FAILED"
        assert saved.next_retry_at is None

    @pytest.mark.asyncio
    async def test_response_body_truncated(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(httpx.Response(500, text="e" * 5000))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        await dispatcher.dispatch("opportunity.won", {})

        (saved,) = _saved(mock_storage)
        assert saved.response_body is not None
        assert len(saved.response_body) <= 1000

    @pytest.mark.asyncio
    async def test_fan_out_isolation(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        """One endpoint timing out never affects another."""
        slow = make_subscription(url="https://slow.example.com/hook")
        fast = make_subscription(url="https://fast.example.com/hook")
        mock_storage.get_subscriptions_for_event.return_value = [slow, fast]

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.host == "slow.example.com":
                raise httpx.ReadTimeout("timed out", request=request)
            return httpx.Response(200)

        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        result = await dispatcher.dispatch("opportunity.won", {"opportunityId": "op_1"})

        assert len(result) == 2
        by_subscription = {d.subscription_id: d for d in _saved(mock_storage)}
        assert by_subscription[fast.id].status == "SUCCESS"
        assert by_subscription[slow.id].status == "FAILED"
        assert by_subscription[slow.id].next_retry_at is not None

    @pytest.mark.asyncio
    async def test_storage_failure_isolated(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        broken = make_subscription()
        healthy = make_subscription()
        mock_storage.get_subscriptions_for_event.return_value = [broken, healthy]

        async def create_delivery(delivery: Delivery) -> str:
            if delivery.subscription_id == broken.id:
                raise RuntimeError("ledger unavailable")
            return delivery.id

        mock_storage.create_delivery.side_effect = create_delivery
        dispatcher = WebhookDispatcher(mock_storage, make_transport(RecordingHandler(200)))

        result = await dispatcher.dispatch("opportunity.won", {})

        assert len(result) == 1
        (saved,) = _saved(mock_storage)
        assert saved.subscription_id == healthy.id

    @pytest.mark.asyncio
    async def test_lookup_failure_never_raises(self, mock_storage: AsyncMock) -> None:
        mock_storage.get_subscriptions_for_event.side_effect = RuntimeError("qdrant down")
        dispatcher = WebhookDispatcher(mock_storage, make_transport(RecordingHandler(200)))

        assert await dispatcher.dispatch("opportunity.won", {}) == []

    @pytest.mark.asyncio
    async def test_dispatch_nowait(
        self, mock_storage: AsyncMock, make_subscription: Callable[..., Subscription]
    ) -> None:
        mock_storage.get_subscriptions_for_event.return_value = [make_subscription()]
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        task = dispatcher.dispatch_nowait("opportunity.won", {})
        assert isinstance(task, asyncio.Task)
        await dispatcher.drain()

        assert task.done()
        assert len(task.result()) == 1
        assert len(handler.requests) == 1


class TestValidateEndpoint:
    """Tests for WebhookDispatcher.validate_endpoint."""

    @pytest.mark.asyncio
    async def test_accepting_endpoint(self, mock_storage: AsyncMock) -> None:
        handler = RecordingHandler(200)
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))

        assert await dispatcher.validate_endpoint("https://example.com/hook", "abc123")

        request = handler.requests[0]
        body = json.loads(request.content)
        assert body["event"] == "webhook.test"
        assert body["data"] == {"test": True}
        assert body["metadata"] == {"webhookId": "test", "deliveryId": "test"}
        assert request.headers["X-Webhook-Event"] == "webhook.test"
        assert verify_signature(
            request.content, "abc123", request.headers["X-Webhook-Signature-256"]
        )
        mock_storage.create_delivery.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejecting_endpoint(self, mock_storage: AsyncMock) -> None:
        dispatcher = WebhookDispatcher(mock_storage, make_transport(RecordingHandler(500)))
        assert not await dispatcher.validate_endpoint("https://example.com/hook")

    @pytest.mark.asyncio
    async def test_unreachable_endpoint(self, mock_storage: AsyncMock) -> None:
        handler = RecordingHandler(httpx.ConnectError("no route to host"))
        dispatcher = WebhookDispatcher(mock_storage, make_transport(handler))
        assert not await dispatcher.validate_endpoint("https://example.com/hook")
