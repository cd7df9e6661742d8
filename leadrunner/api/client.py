"""
HTTP client for the upstream Leadrunner API.

- Transient failures (connection errors, timeouts, 5xx, 429) are retried with
  exponential backoff + jitter.
- A 401 triggers exactly one session refresh and one retry of the original
  request; a second 401 surfaces as Unauthenticated.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any, Optional

import aiohttp

from leadrunner.api.config import AppConfig
from leadrunner.api.logging_config import logger, log_api_request
from leadrunner.core.error_handler import (
    ApiError,
    RefreshFailed,
    TransientNetworkError,
    Unauthenticated,
    retry_async,
)

if TYPE_CHECKING:
    from leadrunner.api.auth import TokenManager


def _error_message(data: Any, default: str) -> str:
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("detail") or err.get("message") or default)
        if isinstance(err, str):
            return err
        if data.get("message"):
            return str(data["message"])
    return default


class ApiClient:
    def __init__(self, config: AppConfig, tokens: Optional["TokenManager"] = None):
        self.config = config
        self.tokens = tokens
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def base_url(self) -> str:
        return self.config.API_URL.rstrip("/")

    def attach_tokens(self, tokens: "TokenManager"):
        self.tokens = tokens

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.REQUEST_TIMEOUT_SECONDS)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self):
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _send(self, method: str, path: str, payload: Any, token: Optional[str]) -> tuple[int, Any]:
        if not self.config.API_URL or self.config.API_URL in ("undefined", "null"):
            raise ApiError(0, "API URL is not configured")

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        session = await self._get_session()
        started = time.monotonic()
        try:
            async with session.request(method, f"{self.base_url}{path}", json=payload, headers=headers) as resp:
                status = resp.status
                if "application/json" in (resp.headers.get("Content-Type") or ""):
                    data = await resp.json()
                else:
                    text = await resp.text()
                    data = {"message": text[:200]}
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(f"{method} {path} failed: {e}") from e

        log_api_request(method, path, status, (time.monotonic() - started) * 1000)

        if status == 429 or status >= 500:
            raise TransientNetworkError(f"{method} {path} -> {status}: {_error_message(data, 'server error')}")
        return status, data

    async def _send_with_retry(self, method: str, path: str, payload: Any, token: Optional[str]) -> tuple[int, Any]:
        return await retry_async(
            lambda: self._send(method, path, payload, token),
            attempts=self.config.HTTP_MAX_ATTEMPTS,
            base_delay=self.config.HTTP_BASE_RETRY_DELAY_SECONDS,
            max_delay=self.config.HTTP_MAX_RETRY_DELAY_SECONDS,
            description=f"{method} {path}",
        )

    async def request(self, method: str, path: str, payload: Any = None, *, authenticated: bool = True) -> Any:
        """Send a JSON request and return the decoded body."""
        token = None
        if authenticated and self.tokens is not None:
            token = await self.tokens.current_token()

        status, data = await self._send_with_retry(method, path, payload, token)

        if status == 401 and authenticated and self.tokens is not None:
            logger.info(f"Got 401 from {path}, attempting token refresh...")
            try:
                token = await self.tokens.refresh()
            except RefreshFailed as e:
                raise Unauthenticated("Session expired, please log in again") from e
            status, data = await self._send_with_retry(method, path, payload, token)
            if status == 401:
                raise Unauthenticated("Session rejected after refresh, please log in again")

        if status == 401:
            raise Unauthenticated(_error_message(data, "Authentication required"))
        if status >= 400:
            raise ApiError(status, _error_message(data, "API request failed"))
        return data

    async def get(self, path: str, **kwargs) -> Any:
        return await self.request("GET", path, **kwargs)

    async def post(self, path: str, payload: Any = None, **kwargs) -> Any:
        return await self.request("POST", path, payload, **kwargs)

    async def patch(self, path: str, payload: Any = None, **kwargs) -> Any:
        return await self.request("PATCH", path, payload, **kwargs)

    async def health_check(self) -> bool:
        """Check /health, falling back to /api/v1/health."""
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self.config.HEALTH_TIMEOUT_SECONDS)
        for path in ("/health", "/api/v1/health"):
            try:
                async with session.get(f"{self.base_url}{path}", timeout=timeout) as resp:
                    healthy = resp.status < 500
                    logger.info(f"API connectivity test {path}: {resp.status} healthy={healthy}")
                    return healthy
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"API connectivity test {path} failed: {e}")
        return False
