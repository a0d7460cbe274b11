"""Single-attempt HTTP delivery with a hard deadline."""

from __future__ import annotations

import asyncio
import logging

import httpx
from pydantic import BaseModel, ConfigDict

from dealhook.exceptions import TransportError
from dealhook.models import DEFAULT_RESPONSE_BODY_LIMIT, truncate_body

logger = logging.getLogger(__name__)


class TransportResult(BaseModel):
    """Outcome of one POST that produced an HTTP response.

    Attributes:
        ok: True for any status in [200, 300). Any other code, including
            non-standard ones, is a failed attempt.
        status_code: HTTP status returned by the endpoint.
        body_text: Response body, truncated.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    ok: bool
    status_code: int
    body_text: str | None = None


class DeliveryTransport:
    """Performs one bounded-timeout POST per call.

    Never mutates stored state. Failures without an HTTP response
    (timeout, DNS, refused connection, malformed URL) raise TransportError;
    every HTTP response, including 4xx and 5xx, is returned as a result.

    Example:
        ```python
        transport = DeliveryTransport()
        result = await transport.send(
            "https://example.com/hook",
            headers={"Content-Type": "application/json"},
            body='{"event": "opportunity.won"}',
            timeout_seconds=5,
        )
        ```
    """

    def __init__(
        self,
        http_transport: httpx.AsyncBaseTransport | None = None,
        response_body_limit: int = DEFAULT_RESPONSE_BODY_LIMIT,
    ) -> None:
        """Initialize the transport.

        Args:
            http_transport: Optional httpx transport (e.g. httpx.MockTransport).
            response_body_limit: Characters of response body to keep.
        """
        self._http_transport = http_transport
        self._response_body_limit = response_body_limit

    async def send(
        self,
        url: str,
        headers: dict[str, str],
        body: str | bytes,
        timeout_seconds: float,
    ) -> TransportResult:
        """POST ``body`` to ``url`` and classify the response.

        Args:
            url: Destination endpoint.
            headers: Complete request headers.
            body: Exact bytes to send.
            timeout_seconds: Deadline for the whole attempt.

        Returns:
            TransportResult for any HTTP response.

        Raises:
            TransportError: If no response completed within the deadline or
                the request could not be sent.
        """
        try:
            # httpx timeouts are per phase; the outer deadline bounds the total
            async with asyncio.timeout(timeout_seconds):
                async with httpx.AsyncClient(
                    timeout=timeout_seconds,
                    transport=self._http_transport,
                ) as client:
                    response = await client.post(url, content=body, headers=headers)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise TransportError(f"Request timed out after {timeout_seconds}s", url=url) from e
        except httpx.InvalidURL as e:
            raise TransportError(f"Invalid URL: {e}", url=url) from e
        except httpx.RequestError as e:
            message = str(e) or type(e).__name__
            raise TransportError(f"Request failed: {message}", url=url) from e

        status_code = response.status_code
        result = TransportResult(
            ok=200 <= status_code < 300,
            status_code=status_code,
            body_text=truncate_body(response.text, self._response_body_limit)
            if response.text
            else None,
        )
        logger.debug("POST %s -> %d", url, status_code)
        return result
