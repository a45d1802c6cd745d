from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Mapping

import httpx

from .errors import BackendRateLimited, BackendRequestError, BackendResponseError

logger = logging.getLogger(__name__)

Json = Any


def _is_retryable(exc: BackendRequestError) -> bool:
    # Transport failures carry no status; 4xx other than 429 will not improve on retry.
    if exc.status_code is None:
        return True
    return exc.status_code == 429 or exc.status_code >= 500


@dataclass
class BaseHttpClient:
    """
    Backend-agnostic async HTTP client wrapper.

    - Uses a single underlying httpx.AsyncClient for connection pooling.
    - Provides consistent error handling and a bounded retry on transient failures.
    - Feature clients (aggregate executor, document store) compose it rather than subclass.
    """

    base_url: str
    timeout_s: float = 30.0
    connect_timeout_s: float = 10.0
    headers: Mapping[str, str] = field(default_factory=dict)
    max_attempts: int = 3
    retry_delay_s: float = 1.0

    transport: httpx.AsyncBaseTransport | None = None

    _sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, repr=False)

    def __post_init__(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.base_url.rstrip("/") + "/",
            timeout=httpx.Timeout(self.timeout_s, connect=self.connect_timeout_s),
            headers=dict(self.headers),
            transport=self.transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> BaseHttpClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def _send_once(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None,
        json: Any,
        headers: Mapping[str, str] | None,
    ) -> httpx.Response:
        try:
            resp = await self._client.request(
                method=method,
                url=path.lstrip("/"),
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise BackendRequestError(str(e) or type(e).__name__) from e

        if resp.status_code == 429:
            raise BackendRateLimited(
                "Backend rate limited the request (HTTP 429).", status_code=429
            )

        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise BackendRequestError(
                f"HTTP {resp.status_code} for {method} {resp.request.url}",
                status_code=resp.status_code,
            ) from e

        return resp

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> httpx.Response:
        """
        Perform an HTTP request, retrying transient failures.
        Raises BackendRequestError (including BackendRateLimited) once attempts are exhausted.
        """
        attempts = 0
        while True:
            attempts += 1
            try:
                return await self._send_once(
                    method, path, params=params, json=json, headers=headers
                )
            except BackendRequestError as e:
                if attempts >= self.max_attempts or not _is_retryable(e):
                    raise
                logger.warning(
                    "%s %s failed (attempt %d/%d): %s",
                    method,
                    path,
                    attempts,
                    self.max_attempts,
                    e,
                )
                await self._sleep(self.retry_delay_s)

    async def request_json_with_headers(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> tuple[Json, httpx.Headers]:
        """Perform a request and return the decoded JSON value (any shape) plus response headers."""
        resp = await self.request(method, path, params=params, json=json, headers=headers)

        if not resp.content:
            return None, resp.headers

        try:
            data = resp.json()
        except ValueError as e:
            raise BackendResponseError("Response was not valid JSON.") from e

        return data, resp.headers

    async def request_json_value(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json: Any = None,
        headers: Mapping[str, str] | None = None,
    ) -> Json:
        data, _ = await self.request_json_with_headers(
            method, path, params=params, json=json, headers=headers
        )
        return data

    async def get_json_value(
        self,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Json:
        return await self.request_json_value("GET", path, params=params, headers=headers)

    async def post_json_value(
        self,
        path: str,
        body: Any,
        *,
        params: Mapping[str, Any] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> Json:
        return await self.request_json_value(
            "POST", path, params=params, json=body, headers=headers
        )


def basic_auth_headers(token: str | None) -> dict[str, str]:
    """Headers for the backend's database endpoints (Basic auth with a pre-encoded token)."""

    headers = {"Content-Type": "application/json"}
    if token:
        headers["Authorization"] = f"Basic {token}"
    return headers


def build_http_client(
    *,
    base_url: str,
    token: str | None = None,
    timeout_s: float = 30.0,
    connect_timeout_s: float = 10.0,
    max_attempts: int = 3,
    retry_delay_s: float = 1.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BaseHttpClient:
    return BaseHttpClient(
        base_url=base_url,
        timeout_s=timeout_s,
        connect_timeout_s=connect_timeout_s,
        headers=basic_auth_headers(token),
        max_attempts=max_attempts,
        retry_delay_s=retry_delay_s,
        transport=transport,
    )
