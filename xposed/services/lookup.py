"""Tiered lookup: local cache, then shared cache, then the live API."""

import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Set

from loguru import logger

from xposed.config import LookupSettings
from xposed.errors import (
    LookupFailure,
    NotFoundError,
    ParseError,
    RateLimitedError,
    UnauthorizedError,
    NetworkError,
)
from xposed.schemas import (
    Credentials,
    ErrorCode,
    LocationInfo,
    LookupResult,
    LookupStats,
    RateLimitStatus,
    SourceTier,
    now_ms,
)
from xposed.sources.base import SharedCacheAPI, UpstreamLookupAPI
from xposed.utils.cache import BoundedCache
from xposed.utils.usernames import normalize_username
from .coalescer import InFlightCoalescer
from .rate_limiter import HTTP_TOO_MANY_REQUESTS, RateLimiter

ProgressCallback = Callable[[int, int, str], None]

DEFAULT_LIVE_TIMEOUT_MS = 15_000


class TieredLookupCoordinator:
    """Decides where each username is answered from.

    Order is local cache, shared cache, then the live API. The local tier is
    the session cache, backed by an optional long-lived store that outlives
    ``clear`` and feeds persistence. Live calls go
    through the coalescer (one call per key), a semaphore (bounded
    concurrency) and the rate limiter (no calls while blocked).
    """

    def __init__(
        self,
        config: Optional[LookupSettings] = None,
        upstream: Optional[UpstreamLookupAPI] = None,
        shared: Optional[SharedCacheAPI] = None,
        cache: Optional[BoundedCache[str, Optional[LocationInfo]]] = None,
        store: Optional[BoundedCache[str, LocationInfo]] = None,
        rate_limiter: Optional[RateLimiter] = None,
        coalescer: Optional[InFlightCoalescer[LookupResult]] = None,
        credentials: Optional[Credentials] = None,
        contribute: bool = False,
        live_timeout_ms: int = DEFAULT_LIVE_TIMEOUT_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.config = config or LookupSettings()
        self.upstream = upstream
        self.shared = shared
        self.cache = cache if cache is not None else BoundedCache(self.config.cache_max_size)
        self.store = store
        self.rate_limiter = rate_limiter or RateLimiter(
            default_window_ms=self.config.rate_limit_default_window_ms,
            backoff_base_ms=self.config.backoff_base_ms,
            backoff_cap_ms=self.config.backoff_cap_ms,
            clock=clock,
        )
        self.coalescer = coalescer if coalescer is not None else InFlightCoalescer()
        self.credentials = credentials
        self.contribute_enabled = contribute
        self.live_timeout_ms = live_timeout_ms
        self.stats = LookupStats()

        self._clock = clock
        # Negative entries expire on their own, independently of the LRU
        self._negative_until: BoundedCache[str, int] = BoundedCache(self.cache.max_size)
        self._shared_coalescer: InFlightCoalescer[Dict[str, LocationInfo]] = InFlightCoalescer()
        self._live_gate = asyncio.Semaphore(max(1, self.config.max_concurrent_live))
        self._background: Set[asyncio.Task] = set()

    # Public API

    def set_credentials(self, credentials: Optional[Credentials]) -> None:
        self.credentials = credentials

    @property
    def live_available(self) -> bool:
        return self.upstream is not None and self.credentials is not None and self.credentials.is_complete

    def rate_limit_status(self) -> RateLimitStatus:
        return self.rate_limiter.status()

    def peek(self, username: str) -> Optional[LookupResult]:
        """Locally cached answer for username, without any I/O."""
        return self._from_local(normalize_username(username))

    async def lookup(self, username: str, live_enabled: bool = True) -> LookupResult:
        """Resolve one username through the tiers.

        Raises InvalidInputError before any I/O for malformed names and
        UnauthorizedError when the live API rejects the credentials.
        """
        key = normalize_username(username)
        self.stats.lookups += 1

        local = self._from_local(key)
        if local is not None:
            self.stats.local_hits += 1
            logger.debug(f"Local cache hit for @{key}")
            return local

        shared = await self._shared_coalescer.run_exclusive(key, lambda: self._from_shared([key]))
        info = shared.get(key)
        if info is not None:
            return self._accept_shared(key, info)

        return await self._lookup_live(key, live_enabled)

    async def lookup_batch(
        self,
        usernames: Sequence[str],
        live_enabled: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[LookupResult]:
        """Resolve many usernames, spreading live calls over small batches."""
        total = len(usernames)
        results: List[Optional[LookupResult]] = [None] * total
        positions: Dict[str, List[int]] = {}
        completed = 0

        def resolve(key: str, result: LookupResult) -> None:
            nonlocal completed
            for index in positions.pop(key, []):
                results[index] = result
                completed += 1
                if on_progress:
                    on_progress(completed, total, key)

        for index, raw in enumerate(usernames):
            try:
                key = normalize_username(raw)
            except LookupFailure:
                results[index] = LookupResult(username=str(raw), error=ErrorCode.INVALID_INPUT)
                completed += 1
                if on_progress:
                    on_progress(completed, total, str(raw))
                continue
            positions.setdefault(key, []).append(index)

        pending: List[str] = []
        for key in list(positions):
            self.stats.lookups += 1
            local = self._from_local(key)
            if local is not None:
                self.stats.local_hits += 1
                resolve(key, local)
            else:
                pending.append(key)

        if pending:
            shared = await self._from_shared(pending)
            remaining = []
            for key in pending:
                info = shared.get(key)
                if info is not None:
                    resolve(key, self._accept_shared(key, info))
                else:
                    remaining.append(key)
            pending = remaining

        batch_size = max(1, self.config.batch_size)
        unauthorized = False
        for start in range(0, len(pending), batch_size):
            chunk = pending[start:start + batch_size]

            if unauthorized:
                for key in chunk:
                    resolve(key, LookupResult(username=key, error=ErrorCode.UNAUTHORIZED))
                continue
            if live_enabled and self.live_available and self.rate_limiter.is_blocked():
                for key in chunk:
                    self.stats.misses += 1
                    resolve(key, self._blocked_result(key))
                continue

            outcomes = await asyncio.gather(
                *(self._lookup_live(key, live_enabled) for key in chunk),
                return_exceptions=True,
            )
            for key, outcome in zip(chunk, outcomes):
                if isinstance(outcome, UnauthorizedError):
                    unauthorized = True
                    resolve(key, LookupResult(username=key, error=ErrorCode.UNAUTHORIZED))
                elif isinstance(outcome, BaseException):
                    raise outcome
                else:
                    resolve(key, outcome)

            more_live_work = start + batch_size < len(pending) and live_enabled and self.live_available
            if more_live_work and not unauthorized:
                await asyncio.sleep(self.config.batch_delay_ms / 1000)

        return results

    def clear(self) -> None:
        """Drop session results and release every in-flight request. The store is kept."""
        self.coalescer.clear()
        self._shared_coalescer.clear()
        for task in list(self._background):
            task.cancel()
        self._background.clear()
        self.cache.clear()
        self._negative_until.clear()

    # Tiers

    def _from_local(self, key: str) -> Optional[LookupResult]:
        if not self.cache.has(key):
            return self._from_store(key)

        info = self.cache.get(key)
        if info is None:
            expires_at = self._negative_until.get(key)
            if expires_at is None or self._clock() >= expires_at:
                self.cache.delete(key)
                self._negative_until.delete(key)
                return None
            return LookupResult(username=key, source_tier=SourceTier.LOCAL)

        return LookupResult(username=key, data=info.with_tier(SourceTier.LOCAL), source_tier=SourceTier.LOCAL)

    def _from_store(self, key: str) -> Optional[LookupResult]:
        if self.store is None:
            return None
        info = self.store.get(key)
        if info is None:
            return None
        # Promote into the session cache
        self.cache.set(key, info)
        return LookupResult(username=key, data=info.with_tier(SourceTier.LOCAL), source_tier=SourceTier.LOCAL)

    async def _from_shared(self, keys: List[str]) -> Dict[str, LocationInfo]:
        if self.shared is None or not keys:
            return {}
        try:
            return await self.shared.lookup_batch(keys)
        except Exception as e:
            logger.warning(f"Shared cache lookup failed, continuing without it: {e}")
            return {}

    def _accept_shared(self, key: str, info: LocationInfo) -> LookupResult:
        info = info.with_tier(SourceTier.SHARED)
        self._store(key, info)
        self.stats.shared_hits += 1
        logger.debug(f"Shared cache hit for @{key}")
        return LookupResult(username=key, data=info, source_tier=SourceTier.SHARED)

    async def _lookup_live(self, key: str, live_enabled: bool) -> LookupResult:
        if not live_enabled or not self.live_available:
            self.stats.misses += 1
            return LookupResult(username=key)

        if self.rate_limiter.is_blocked():
            self.stats.misses += 1
            return self._blocked_result(key)

        return await self.coalescer.run_exclusive(key, lambda: self._fetch_live(key))

    async def _fetch_live(self, key: str) -> LookupResult:
        async with self._live_gate:
            # The limiter may have tripped while we waited for a slot
            if self.rate_limiter.is_blocked():
                self.stats.misses += 1
                return self._blocked_result(key)

            logger.debug(f"Live lookup for @{key}")
            try:
                info = await asyncio.wait_for(
                    self.upstream.fetch_user_info(key, self.credentials),
                    timeout=self.live_timeout_ms / 1000,
                )
            except asyncio.TimeoutError:
                return self._absorb_failure(key, NetworkError("Live lookup timed out", username=key))
            except UnauthorizedError:
                self.stats.errors += 1
                logger.warning(f"Live lookup for @{key} unauthorized; credentials need refreshing")
                raise
            except LookupFailure as e:
                return self._absorb_failure(key, e)

        info = info.with_tier(SourceTier.LIVE)
        self._store(key, info)
        self.rate_limiter.record_success()
        self.stats.live_hits += 1

        if self.contribute_enabled and self.shared is not None and not info.is_empty:
            self._spawn(self._contribute(key, info))

        return LookupResult(username=key, data=info, source_tier=SourceTier.LIVE)

    def _absorb_failure(self, key: str, failure: LookupFailure) -> LookupResult:
        if isinstance(failure, RateLimitedError):
            # Never cache a negative here, or the user stays blank after the window
            until = self.rate_limiter.record_failure(HTTP_TOO_MANY_REQUESTS, failure.retry_at_ms)
            self.stats.errors += 1
            return LookupResult(username=key, error=ErrorCode.RATE_LIMITED, retry_at_ms=until)

        if isinstance(failure, NotFoundError):
            self.rate_limiter.record_success()
            self._store_negative(key)
            self.stats.misses += 1
            logger.debug(f"No data for @{key}")
            return LookupResult(username=key, source_tier=SourceTier.LIVE, error=ErrorCode.NOT_FOUND)

        if isinstance(failure, ParseError):
            logger.error(f"Unexpected response shape for @{key}: {failure.message}")
        else:
            logger.warning(f"Live lookup for @{key} failed: {failure.message}")

        status = failure.status_code if isinstance(failure, NetworkError) else None
        until = self.rate_limiter.record_failure(status)
        self._store_negative(key)
        self.stats.errors += 1
        return LookupResult(username=key, error=failure.code, retry_at_ms=until)

    def _blocked_result(self, key: str) -> LookupResult:
        return LookupResult(
            username=key,
            error=ErrorCode.RATE_LIMITED,
            retry_at_ms=self.rate_limiter.blocked_until_ms,
        )

    # Bookkeeping

    def _store(self, key: str, info: LocationInfo) -> None:
        self.cache.set(key, info)
        self._negative_until.delete(key)
        if self.store is not None:
            self.store.set(key, info)

    def _store_negative(self, key: str) -> None:
        self.cache.set(key, None)
        self._negative_until.set(key, self._clock() + self.config.negative_cache_ttl_ms)
        if self.store is not None:
            self.store.delete(key)

    async def _contribute(self, key: str, info: LocationInfo) -> None:
        try:
            if await self.shared.contribute(key, info):
                self.stats.contributions += 1
        except Exception as e:
            logger.debug(f"Contribution for @{key} failed: {e}")

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
