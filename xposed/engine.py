"""Main Orchestration Engine."""

from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from xposed.config import Settings
from xposed.schemas import Credentials, LookupResult
from xposed.services.coalescer import InFlightCoalescer
from xposed.services.lookup import ProgressCallback, TieredLookupCoordinator
from xposed.services.persistence import CachePersistence, FileStore, PersistentStore
from xposed.services.rate_limiter import RateLimiter
from xposed.services.visibility import DomBridge, Renderer, VisibilityObserver, VisibilityScheduler
from xposed.sources import CloudCacheClient, SharedCacheAPI, UpstreamClient, UpstreamLookupAPI
from xposed.utils.cache import BoundedCache


class LookupEngine:
    """Wires caches, limiter, coalescer, coordinator and scheduler together.

    Collaborators passed in are used as-is and left open on teardown; the
    ones the engine builds from settings are closed by it.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        upstream: Optional[UpstreamLookupAPI] = None,
        shared: Optional[SharedCacheAPI] = None,
        store: Optional[PersistentStore] = None,
        bridge: Optional[DomBridge] = None,
        renderer: Optional[Renderer] = None,
        observer: Optional[VisibilityObserver] = None,
        credentials: Optional[Credentials] = None,
    ):
        self.settings = settings or Settings()
        cfg = self.settings.lookup
        self._owned: List[Any] = []

        # 1. Sources
        if upstream is None:
            upstream = UpstreamClient(self.settings.upstream)
            self._owned.append(upstream)
        if shared is None and self.settings.cloud.enabled:
            shared = CloudCacheClient(self.settings.cloud)
            self._owned.append(shared)

        if credentials is None:
            credentials = Credentials(
                auth_token=self.settings.upstream.auth_token,
                csrf_token=self.settings.upstream.csrf_token,
            )

        # 2. Lookup core
        # Session cache in front of the long-lived store that gets persisted
        self.cache: BoundedCache = BoundedCache(cfg.cache_max_size)
        self.store_cache: BoundedCache = BoundedCache(cfg.shared_cache_max_size)
        self.rate_limiter = RateLimiter(
            default_window_ms=cfg.rate_limit_default_window_ms,
            backoff_base_ms=cfg.backoff_base_ms,
            backoff_cap_ms=cfg.backoff_cap_ms,
        )
        self.coalescer: InFlightCoalescer[LookupResult] = InFlightCoalescer()
        self.coordinator = TieredLookupCoordinator(
            config=cfg,
            upstream=upstream,
            shared=shared,
            cache=self.cache,
            store=self.store_cache,
            rate_limiter=self.rate_limiter,
            coalescer=self.coalescer,
            credentials=credentials,
            contribute=self.settings.cloud.contribute,
        )

        # 3. Persistence
        if store is None and self.settings.storage.persist:
            store = FileStore(self.settings.storage.cache_file)
        self.persistence: Optional[CachePersistence] = None
        if store is not None:
            self.persistence = CachePersistence(
                store,
                self.store_cache,
                ttl_ms=self.settings.storage.ttl_ms,
                flush_interval_s=self.settings.storage.flush_interval_s,
            )

        # 4. Page scheduling, only when there is a page to schedule
        self.scheduler: Optional[VisibilityScheduler] = None
        if bridge is not None and renderer is not None:
            self.scheduler = VisibilityScheduler(
                self.coordinator,
                bridge,
                renderer,
                observer=observer,
                config=cfg,
                blocked_countries=cfg.blocked_countries,
            )

        self.running = False

    async def init(self) -> None:
        if self.running:
            return
        logger.info("Lookup engine starting...")
        if self.persistence:
            await self.persistence.load()
            self.persistence.start()
        if self.scheduler:
            self.scheduler.enabled = True
        self.running = True
        logger.info(
            f"Lookup engine started (stored={len(self.store_cache)}, "
            f"live={'on' if self.coordinator.live_available else 'off'})"
        )

    async def teardown(self) -> None:
        if not self.running:
            return
        self.running = False

        if self.persistence:
            # Flush before in-flight work is cancelled
            await self.persistence.stop()
        if self.scheduler:
            self.scheduler.cleanup()
        self.coordinator.clear()

        for client in self._owned:
            await client.close()
        logger.info("Lookup engine stopped")

    async def lookup(self, username: str, live: Optional[bool] = None) -> LookupResult:
        if live is None:
            live = self.settings.lookup.live_enabled
        return await self.coordinator.lookup(username, live)

    async def lookup_batch(
        self,
        usernames: Sequence[str],
        live: Optional[bool] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> List[LookupResult]:
        if live is None:
            live = self.settings.lookup.live_enabled
        return await self.coordinator.lookup_batch(usernames, live, on_progress)

    def set_credentials(self, credentials: Optional[Credentials]) -> None:
        self.coordinator.set_credentials(credentials)

    def set_blocked_countries(self, countries: Sequence[str]) -> int:
        """Update the country blocklist; returns how many elements changed."""
        self.settings.lookup.blocked_countries = list(countries)
        if self.scheduler is None:
            return 0
        return self.scheduler.set_blocked_countries(countries)

    def status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.running else "stopped",
            "cache_size": len(self.cache),
            "store_size": len(self.store_cache),
            "in_flight": len(self.coalescer),
            "pending_visibility": self.scheduler.pending_count if self.scheduler else 0,
            "live_available": self.coordinator.live_available,
            "rate_limit": self.rate_limiter.status().model_dump(),
            "stats": self.coordinator.stats.model_dump(),
        }
