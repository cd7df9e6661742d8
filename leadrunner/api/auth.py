"""
Session handling for the Leadrunner API.

Holds the bearer credential and its renewal credential in the durable store,
renews proactively before expiry and performs single-flight renewal on demand.
Both tokens live under one key so they are always replaced together.
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import jwt

from leadrunner.api.config import AppConfig
from leadrunner.api.logging_config import logger
from leadrunner.core.error_handler import (
    ApiError,
    LeadrunnerError,
    RefreshFailed,
    Unauthenticated,
)
from leadrunner.core.state_store import StateStore

SESSION_KEY = "session"


@dataclass(frozen=True)
class SessionToken:
    """Access/refresh pair; immutable so a rotation swaps the whole pair."""
    access_token: str
    refresh_token: Optional[str] = None
    user: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"accessToken": self.access_token, "refreshToken": self.refresh_token, "user": self.user}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["SessionToken"]:
        if not data or not data.get("accessToken"):
            return None
        return cls(data["accessToken"], data.get("refreshToken"), data.get("user"))


def token_expiry(token: str) -> Optional[float]:
    """Read the ``exp`` claim (epoch seconds) without verifying the signature."""
    try:
        payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
    except jwt.InvalidTokenError:
        return None
    exp = payload.get("exp")
    return float(exp) if exp is not None else None


class TokenManager:
    def __init__(self, store: StateStore, client, config: AppConfig, clock=time.time):
        self.store = store
        self.client = client
        self.config = config
        self.clock = clock
        self._session: Optional[SessionToken] = None
        self._loaded = False
        self._refresh_task: Optional[asyncio.Task] = None

    async def load(self) -> Optional[SessionToken]:
        self._session = SessionToken.from_dict(await self.store.get(SESSION_KEY))
        self._loaded = True
        return self._session

    async def _ensure_loaded(self):
        if not self._loaded:
            await self.load()

    @property
    def session(self) -> Optional[SessionToken]:
        return self._session

    async def is_authenticated(self) -> bool:
        await self._ensure_loaded()
        return self._session is not None

    async def current_token(self) -> Optional[str]:
        await self._ensure_loaded()
        return self._session.access_token if self._session else None

    async def get_valid_token(self) -> str:
        token = await self.current_token()
        if not token:
            raise Unauthenticated("Not logged in")
        return token

    async def _save(self, session: Optional[SessionToken]):
        if session is None:
            await self.store.remove(SESSION_KEY)
        else:
            await self.store.set(SESSION_KEY, session.to_dict())
        self._session = session

    async def sync(self, access_token: str, refresh_token: Optional[str] = None, user: Optional[dict] = None):
        """Adopt a session issued elsewhere (e.g. the dashboard)."""
        await self._save(SessionToken(access_token, refresh_token, user))
        logger.info("Session synced")

    async def login(self, credentials: Dict[str, Any]) -> Dict[str, Any]:
        response = await self.client.post("/api/v1/auth/login", credentials, authenticated=False)
        data = (response or {}).get("data") or {}
        if not data.get("accessToken"):
            raise Unauthenticated("Login response did not contain an access token")
        await self._save(SessionToken(data["accessToken"], data.get("refreshToken"), data.get("user")))
        logger.info("Logged in")
        return data

    async def logout(self):
        await self._save(None)
        logger.info("Logged out, session cleared")

    async def refresh(self) -> str:
        """
        Renew the session; concurrent callers share one in-flight renewal.

        Raises RefreshFailed when there is nothing to renew or the server rejects it.
        """
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._do_refresh())
        return await asyncio.shield(self._refresh_task)

    async def _do_refresh(self) -> str:
        await self._ensure_loaded()
        current = self._session
        if current is None or not current.refresh_token:
            logger.info("No refresh token available")
            raise RefreshFailed("No refresh token available")

        logger.info("Attempting token refresh...")
        try:
            response = await self.client.post(
                "/api/v1/auth/refresh", {"refreshToken": current.refresh_token}, authenticated=False
            )
        except (ApiError, Unauthenticated) as e:
            logger.warning(f"Token refresh rejected, clearing session: {e}")
            await self._save(None)
            raise RefreshFailed(str(e)) from e
        except LeadrunnerError as e:
            raise RefreshFailed(str(e)) from e

        data = (response or {}).get("data") or {}
        if not (response or {}).get("success", True) or not data.get("accessToken"):
            raise RefreshFailed("Refresh response did not contain an access token")

        # The API may or may not rotate the refresh token as well
        rotated = SessionToken(
            data["accessToken"],
            data.get("refreshToken") or current.refresh_token,
            current.user,
        )
        await self._save(rotated)
        logger.info("Token refreshed successfully")
        return rotated.access_token

    def seconds_until_expiry(self) -> Optional[float]:
        if self._session is None:
            return None
        exp = token_expiry(self._session.access_token)
        if exp is None:
            return None
        return exp - self.clock()

    async def check_and_refresh(self) -> bool:
        """Renew proactively when the access token expires within the threshold."""
        await self._ensure_loaded()
        if self._session is None:
            logger.debug("No access token to check")
            return False
        if not self._session.refresh_token:
            logger.debug("No refresh token available, cannot refresh")
            return False

        remaining = self.seconds_until_expiry()
        if remaining is None:
            return False
        if remaining >= self.config.TOKEN_RENEW_THRESHOLD_SECONDS:
            logger.debug(f"Token is still valid, expires in {remaining / 86400:.1f} days")
            return False

        logger.info(f"Token expiring soon ({remaining / 3600:.1f}h left), refreshing proactively...")
        try:
            await self.refresh()
        except RefreshFailed as e:
            logger.warning(f"Proactive token refresh failed: {e}")
            return False
        return True
