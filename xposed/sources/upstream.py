"""Live lookups against the upstream GraphQL API."""

import asyncio
import json
from typing import Callable, Optional

import aiohttp
from loguru import logger

from xposed.config import UpstreamSettings
from xposed.errors import (
    LookupFailure,
    NetworkError,
    NotFoundError,
    ParseError,
    RateLimitedError,
    UnauthorizedError,
)
from xposed.schemas import Credentials, LocationInfo, now_ms
from .base import UpstreamLookupAPI
from .parsing import parse_about_account


def classify_status(
    status: int,
    username: str,
    reset_header: Optional[str] = None,
    now: Optional[int] = None,
) -> LookupFailure:
    """Map a non-2xx HTTP status to the failure taxonomy."""
    if status in (401, 403):
        return UnauthorizedError("Authentication failed. Please re-login.", username=username)
    if status == 404:
        return NotFoundError("User not found", username=username)
    if status == 429:
        if now is None:
            now = now_ms()
        # Without a usable reset time the limiter applies its own window
        retry_at = None
        if reset_header:
            try:
                # Header is a Unix timestamp in seconds
                reset_ms = int(reset_header) * 1000
                if reset_ms > now:
                    retry_at = reset_ms
            except ValueError:
                logger.warning(f"Unparseable x-rate-limit-reset header: {reset_header!r}")
        if retry_at is None:
            return RateLimitedError("Rate limit exceeded.", username=username)
        wait_minutes = max(1, -(-(retry_at - now) // 60_000))
        return RateLimitedError(
            f"Rate limit exceeded. Retry in {wait_minutes} minute(s).",
            username=username,
            retry_at_ms=retry_at,
        )
    return NetworkError(f"API error: {status}", username=username, status_code=status)


class UpstreamClient(UpstreamLookupAPI):
    """aiohttp client for the AboutAccount GraphQL query."""

    def __init__(
        self,
        config: Optional[UpstreamSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or UpstreamSettings()
        self._session = session
        self._owns_session = session is None
        self._clock = clock
        self._last_request_ms = 0
        self._spacing_lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    def build_url(self) -> str:
        return f"{self.config.base_url}/{self.config.query_id}/AboutAccountQuery"

    def build_params(self, screen_name: str) -> dict:
        return {"variables": json.dumps({"screenName": screen_name}, separators=(",", ":"))}

    def build_headers(self, credentials: Credentials) -> dict:
        headers = {
            "x-csrf-token": credentials.csrf_token,
            "x-twitter-active-user": "yes",
            "x-twitter-auth-type": "OAuth2Session",
            "content-type": "application/json",
            "accept-language": "en-US,en;q=0.9",
            "cookie": f"auth_token={credentials.auth_token}; ct0={credentials.csrf_token}",
        }
        if self.config.bearer_token:
            headers["authorization"] = f"Bearer {self.config.bearer_token}"
        return headers

    async def _enforce_spacing(self) -> None:
        """Keep at least min_interval_ms between consecutive requests."""
        async with self._spacing_lock:
            elapsed = self._clock() - self._last_request_ms
            wait_ms = self.config.min_interval_ms - elapsed
            if wait_ms > 0:
                await asyncio.sleep(wait_ms / 1000)
            self._last_request_ms = self._clock()

    async def fetch_user_info(self, username: str, credentials: Credentials) -> LocationInfo:
        if credentials is None or not credentials.is_complete:
            raise UnauthorizedError("No session credentials", username=username)

        await self._enforce_spacing()
        session = await self._get_session()

        try:
            async with session.get(
                self.build_url(),
                params=self.build_params(username),
                headers=self.build_headers(credentials),
                timeout=aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000),
            ) as response:
                if response.status != 200:
                    raise classify_status(
                        response.status,
                        username,
                        response.headers.get("x-rate-limit-reset"),
                        self._clock(),
                    )
                try:
                    payload = await response.json(content_type=None)
                except (json.JSONDecodeError, aiohttp.ContentTypeError, UnicodeDecodeError) as e:
                    raise ParseError(f"Invalid JSON body: {e}", username=username) from e
        except asyncio.TimeoutError as e:
            raise NetworkError("Request timed out", username=username) from e
        except aiohttp.ClientError as e:
            raise NetworkError(f"Network error: {e}", username=username) from e

        return parse_about_account(payload, username)
