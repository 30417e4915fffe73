"""Community cloud cache client."""

import asyncio
from typing import Callable, Dict, Iterable, Optional

import aiohttp
from loguru import logger

from xposed.config import CloudCacheSettings
from xposed.errors import ParseError
from xposed.schemas import LocationInfo, now_ms
from xposed.services.rate_limiter import RateLimiter
from .base import SharedCacheAPI
from .parsing import parse_shared_entry, to_shared_entry


class CloudCacheClient(SharedCacheAPI):
    """Anonymous lookups and contributions against the shared cache.

    Every method is best-effort: failures are logged and reported as "no
    data" so a broken cache never blocks the live tier.
    """

    def __init__(
        self,
        config: Optional[CloudCacheSettings] = None,
        session: Optional[aiohttp.ClientSession] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or CloudCacheSettings()
        self._session = session
        self._owns_session = session is None
        self.rate_limiter = RateLimiter(name="cloud-cache", clock=clock)

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(headers={"Accept": "application/json"})
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close HTTP session."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()

    @property
    def _timeout(self) -> aiohttp.ClientTimeout:
        return aiohttp.ClientTimeout(total=self.config.timeout_ms / 1000)

    def _url(self, path: str) -> str:
        return f"{self.config.api_url.rstrip('/')}/{path}"

    async def lookup_batch(self, usernames: Iterable[str]) -> Dict[str, LocationInfo]:
        results: Dict[str, LocationInfo] = {}

        names = list(dict.fromkeys(u.strip().lower() for u in usernames if u and u.strip()))
        if not names:
            return results

        size = max(1, self.config.batch_size)
        batches = [names[i:i + size] for i in range(0, len(names), size)]

        for index, batch in enumerate(batches):
            if self.rate_limiter.is_blocked():
                logger.debug(f"Cloud cache backing off, skipping {len(batches) - index} batch(es)")
                break
            # Small delay between batches
            if index:
                await asyncio.sleep(self.config.batch_delay_ms / 1000)

            try:
                session = await self._get_session()
                async with session.get(
                    self._url("lookup"),
                    params={"users": ",".join(batch)},
                    timeout=self._timeout,
                ) as response:
                    if response.status == 429:
                        self.rate_limiter.record_failure(429)
                        logger.warning("Cloud cache rate limited, stopping batch lookup")
                        break
                    if response.status != 200:
                        logger.warning(f"Cloud cache lookup failed: HTTP {response.status}")
                        self.rate_limiter.record_failure(response.status)
                        continue

                    data = await response.json(content_type=None)

                self.rate_limiter.record_success()
                results.update(self._parse_results(data))

            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
                logger.warning(f"Cloud cache lookup error: {e}")
                self.rate_limiter.record_failure()

        return results

    def _parse_results(self, data) -> Dict[str, LocationInfo]:
        parsed: Dict[str, LocationInfo] = {}
        entries = data.get("results") if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            return parsed

        for username, entry in entries.items():
            try:
                parsed[str(username).lower()] = parse_shared_entry(entry)
            except ParseError as e:
                logger.debug(f"Skipping malformed cloud entry for @{username}: {e}")
        return parsed

    async def contribute(self, username: str, info: LocationInfo) -> bool:
        if info.is_empty:
            return False

        payload = {"username": username.lower(), **to_shared_entry(info)}
        try:
            session = await self._get_session()
            async with session.post(self._url("contribute"), json=payload, timeout=self._timeout) as response:
                if response.status != 200:
                    logger.debug(f"Cloud contribution for @{username} rejected: HTTP {response.status}")
                    return False
            logger.debug(f"Contributed @{username} to cloud cache")
            return True
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"Cloud contribution error for @{username}: {e}")
            return False

    async def server_stats(self) -> Optional[Dict[str, int]]:
        """Get cloud cache server statistics."""
        try:
            session = await self._get_session()
            async with session.get(self._url("stats"), timeout=self._timeout) as response:
                if response.status != 200:
                    return None
                data = await response.json(content_type=None)
            return {
                "total_entries": int(data.get("totalEntries") or 0),
                "total_contributions": int(data.get("totalContributions") or 0),
            }
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to fetch cloud cache stats: {e}")
            return None
