"""Shared plumbing for provider adapters.

Every adapter owns one ``httpx.AsyncClient`` and its own auth cache as
instance state. The request loop here implements the retry policy common to
all of them:

- 429/503 are retried with exponential backoff, up to ``retry_count`` attempts.
- 401/403 invalidate cached credentials and retry exactly once.
- Anything else is returned to the adapter to map onto the error taxonomy.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from payouts_engine.config import HttpConfig
from payouts_engine.errors import (
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    ProviderError,
    TransportError,
)

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = frozenset({429, 503})
AUTH_FAILURE_STATUS = frozenset({401, 403})


def _fold(key: str) -> str:
    return key.replace("_", "").lower()


def pick(payload: Mapping[str, Any] | None, *names: str, default: Any = None) -> Any:
    """Read a field regardless of camelCase, PascalCase or snake_case naming.

    >>> pick({"AdjustedBillPayment": 5}, "adjustedBillPayment")
    5
    """
    if not payload:
        return default
    folded = {_fold(k): v for k, v in payload.items()}
    for name in names:
        value = folded.get(_fold(name))
        if value is not None:
            return value
    return default


def to_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return Decimal("0")


def to_datetime(value: Any) -> datetime | None:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_text(value: Any) -> str | None:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


class ProviderClient:
    """Base class for HTTP provider adapters."""

    source = "provider"

    def __init__(
        self,
        base_url: str,
        *,
        http: HttpConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.http = http or HttpConfig()
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.http.timeout_seconds)
        self._sleep = sleep

    @property
    def is_configured(self) -> bool:
        return True

    def require_configured(self) -> None:
        if not self.is_configured:
            raise ConfigurationError(self.source)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Auth hooks
    # ------------------------------------------------------------------

    async def _auth_headers(self) -> dict[str, str]:
        return {}

    def _invalidate_auth(self) -> None:
        """Drop cached credentials after a 401/403."""

    # ------------------------------------------------------------------
    # Request loop
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        authenticate: bool = True,
        headers: Mapping[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request applying the retry and re-auth policy."""
        self.require_configured()
        url = self._url(path)
        attempt = 0
        reauthenticated = False

        while True:
            request_headers = dict(headers or {})
            if authenticate:
                request_headers.update(await self._auth_headers())

            try:
                response = await self._client.request(
                    method, url, headers=request_headers, **kwargs
                )
            except httpx.TimeoutException as exc:
                raise TransportError(
                    f"{self.source} request timed out: {method} {path}", source=self.source
                ) from exc
            except httpx.TransportError as exc:
                raise TransportError(
                    f"{self.source} connection failed: {exc}", source=self.source
                ) from exc

            if (
                authenticate
                and response.status_code in AUTH_FAILURE_STATUS
                and not reauthenticated
            ):
                logger.warning(
                    "%s returned %s for %s %s; refreshing credentials",
                    self.source, response.status_code, method, path,
                )
                self._invalidate_auth()
                reauthenticated = True
                continue

            if response.status_code in RETRYABLE_STATUS:
                attempt += 1
                if attempt >= self.http.retry_count:
                    raise TransportError(
                        f"{self.source} unavailable after {attempt} attempts "
                        f"(HTTP {response.status_code})",
                        source=self.source,
                        status_code=response.status_code,
                    )
                delay = self.http.backoff_base_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "%s returned %s; retrying in %.1fs (attempt %d/%d)",
                    self.source, response.status_code, delay, attempt, self.http.retry_count,
                )
                await self._sleep(delay)
                continue

            return response

    def _raise_for_status(self, response: httpx.Response, what: str) -> None:
        """Map a non-2xx response onto the error taxonomy."""
        if response.is_success:
            return
        status = response.status_code
        if status in AUTH_FAILURE_STATUS:
            self._invalidate_auth()
            raise AuthenticationError(
                f"{self.source} rejected credentials ({status})", source=self.source
            )
        if status == 404:
            raise NotFoundError(f"{what} not found", source=self.source)
        raise ProviderError(
            f"{self.source} error {status} for {what}: {error_text(response)}",
            source=self.source,
            status_code=status,
            payload=safe_json(response),
        )

    async def _json(
        self, method: str, path: str, *, what: str, **kwargs: Any
    ) -> Any:
        """Request and decode JSON, raising on failure."""
        response = await self._request(method, path, **kwargs)
        self._raise_for_status(response, what)
        return safe_json(response)


def safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def error_text(response: httpx.Response) -> str:
    body = safe_json(response)
    if isinstance(body, Mapping):
        for key in ("detail", "message", "error", "error_message"):
            if body.get(key):
                return str(body[key])
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, Mapping):
                return str(first.get("message") or first)
            return str(first)
    return response.text[:200]
