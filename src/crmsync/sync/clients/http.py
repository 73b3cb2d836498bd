"""Shared httpx plumbing for the HubSpot and Rentman clients.

HTTPSystemClient owns one pooled ``httpx.AsyncClient``, wraps every request
in the BackoffPolicy retry loop, counts calls in Prometheus and turns error
responses into ExternalAPIError subclasses via ``_error_for``.
"""

from __future__ import annotations

import asyncio
from typing import Any

import httpx
import structlog

from src.crmsync.core.monitoring import record_api_call
from src.crmsync.sync.clients.base import SystemClient
from src.crmsync.sync.errors import ExternalAPIError, RateLimitError
from src.crmsync.sync.retry import IDEMPOTENT_METHODS, BackoffPolicy, Sleep

logger = structlog.get_logger(__name__)


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class HTTPSystemClient(SystemClient):
    """Base for JSON-over-HTTP system clients.

    Args:
        base_url: API root, e.g. https://api.hubapi.com.
        token: Bearer token.
        backoff: Retry policy for 429 and transient transport errors.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
        sleep: Coroutine used between retries; injectable for tests.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        backoff: BackoffPolicy | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._backoff = backoff or BackoffPolicy()
        self._sleep = sleep
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={
                "Authorization": f"Bearer {token}",
                "Accept": "application/json",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        allow_404: bool = False,
    ) -> Any:
        """Send a request with retry; return the decoded body.

        Returns:
            Decoded JSON, ``{}`` for empty bodies, or None for a 404 when
            ``allow_404`` is set.

        Raises:
            RateLimitError: When 429s persist past the attempt ceiling.
            ExternalAPIError: For any other error status.
        """

        async def _send() -> Any:
            response = await self._http.request(method, path, json=json, params=params)
            record_api_call(self.system.value, method, response.status_code)
            if response.status_code == 404 and allow_404:
                return None
            if response.status_code == 429:
                raise RateLimitError(
                    self.system.value,
                    429,
                    f"rate limited on {method} {path}",
                    _response_body(response),
                )
            if response.status_code >= 400:
                raise self._error_for(response)
            if response.status_code == 204 or not response.content:
                return {}
            return response.json()

        idempotent = method.upper() in IDEMPOTENT_METHODS
        return await self._backoff.retrying(self._sleep, idempotent=idempotent)(_send)

    def _error_for(self, response: httpx.Response) -> ExternalAPIError:
        body = _response_body(response)
        message = body.get("message") if isinstance(body, dict) else None
        return ExternalAPIError(
            self.system.value,
            response.status_code,
            message or str(body)[:500],
            body,
        )

    async def aclose(self) -> None:
        await self._http.aclose()
