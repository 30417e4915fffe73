"""Visibility-gated scheduling of per-element lookups.

Elements arrive from DOM mutation batches, wait (bounded) until they scroll
near the viewport, and only then trigger a lookup. Virtualized lists reuse
nodes for different users, so every element remembers which screen name it
was processed for and is re-processed when that changes.
"""

import asyncio
import weakref
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, FrozenSet, Iterable, Optional, Set

from loguru import logger

from xposed.config import LookupSettings
from xposed.schemas import ErrorCode, LocationInfo
from xposed.utils.usernames import username_key
from .lookup import TieredLookupCoordinator


class ElementState(str, Enum):
    UNSEEN = "unseen"
    QUEUED_FOR_VISIBILITY = "queued_for_visibility"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


@dataclass
class ProcessedElementMarker:
    screen_name: Optional[str]
    state: ElementState
    country: Optional[str] = None
    blocked: bool = False


def normalize_countries(countries: Optional[Iterable[str]]) -> FrozenSet[str]:
    """Lowercased, trimmed country names; blanks dropped."""
    if not countries:
        return frozenset()
    return frozenset(c.strip().lower() for c in countries if c and c.strip())


class DomBridge(ABC):
    """Knows how to read the page. Supplied by the consumer."""

    @abstractmethod
    def find_targets(self, node: Any) -> Iterable[Any]:
        """Yield node and/or its descendants that match the username selectors."""
        pass

    @abstractmethod
    def extract_username(self, element: Any) -> Optional[str]:
        """Screen name currently shown by element, or None if not rendered yet."""
        pass


class VisibilityObserver(ABC):
    """Intersection-style observer. Reports back via VisibilityScheduler.on_visible.

    ``margin_px`` is how far ahead of the viewport an element counts as
    visible; the scheduler sets it from its configuration.
    """

    margin_px: int = 200

    @abstractmethod
    def observe(self, element: Any) -> None:
        pass

    @abstractmethod
    def unobserve(self, element: Any) -> None:
        pass

    def disconnect(self) -> None:
        pass


class Renderer(ABC):
    """Owns every visual change made to an element."""

    @abstractmethod
    def render(self, element: Any, info: Optional[LocationInfo], blocked: bool = False) -> None:
        """Annotate element. ``blocked`` means its country is on the blocklist."""
        pass

    @abstractmethod
    def clear(self, element: Any) -> None:
        """Remove any annotation previously rendered on element."""
        pass

    @abstractmethod
    def set_blocked(self, element: Any, blocked: bool) -> None:
        """Hide or reveal an already rendered element after a blocklist change."""
        pass


class VisibilityScheduler:
    """Batches DOM churn and turns visible elements into lookups."""

    def __init__(
        self,
        coordinator: TieredLookupCoordinator,
        bridge: DomBridge,
        renderer: Renderer,
        observer: Optional[VisibilityObserver] = None,
        config: Optional[LookupSettings] = None,
        live_enabled: Optional[bool] = None,
        blocked_countries: Optional[Iterable[str]] = None,
    ):
        self.coordinator = coordinator
        self.bridge = bridge
        self.renderer = renderer
        self.observer = observer
        self.config = config or coordinator.config
        self.live_enabled = self.config.live_enabled if live_enabled is None else live_enabled
        self.max_pending = max(1, self.config.pending_visibility_max_size)
        self.enabled = True
        if blocked_countries is None:
            blocked_countries = self.config.blocked_countries
        self.blocked_countries = normalize_countries(blocked_countries)

        if observer is not None:
            observer.margin_px = self.config.visibility_margin_px

        # Ordered sets, oldest first
        self._pending: "OrderedDict[Any, None]" = OrderedDict()
        self._mutations: "OrderedDict[Any, None]" = OrderedDict()
        self._markers: "weakref.WeakKeyDictionary[Any, ProcessedElementMarker]" = weakref.WeakKeyDictionary()
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def state_of(self, element: Any) -> ElementState:
        if element in self._pending:
            return ElementState.QUEUED_FOR_VISIBILITY
        marker = self._markers.get(element)
        return marker.state if marker else ElementState.UNSEEN

    def marker_for(self, element: Any) -> Optional[ProcessedElementMarker]:
        return self._markers.get(element)

    # Blocklist

    def is_blocked_country(self, country: Optional[str]) -> bool:
        return bool(country) and country.strip().lower() in self.blocked_countries

    def set_blocked_countries(self, countries: Iterable[str]) -> int:
        """Replace the blocklist and re-check every rendered element.

        Returns how many elements changed between hidden and shown.
        """
        self.blocked_countries = normalize_countries(countries)

        changed = 0
        for element, marker in list(self._markers.items()):
            if marker.state != ElementState.DONE or not marker.country:
                continue
            blocked = self.is_blocked_country(marker.country)
            if blocked == marker.blocked:
                continue
            marker.blocked = blocked
            self.renderer.set_blocked(element, blocked)
            changed += 1

        logger.info(f"Blocklist updated ({len(self.blocked_countries)} countries), {changed} elements changed")
        return changed

    # Event ingestion

    def on_mutation_batch(self, added_nodes: Iterable[Any]) -> None:
        """Collect matching elements and schedule one debounced flush."""
        if not self.enabled:
            return

        for node in added_nodes:
            for element in self._targets(node):
                if element not in self._mutations and self._needs_processing(element):
                    self._mutations[element] = None

        if self._mutations:
            self._schedule_flush()

    def scan(self, nodes: Iterable[Any]) -> int:
        """Queue every matching element under nodes. Returns how many were found."""
        if not self.enabled:
            return 0

        elements = [element for node in nodes for element in self._targets(node)]
        if elements:
            logger.info(f"Found {len(elements)} username elements to process")
        for element in elements:
            self.queue_for_visibility(element)
        return len(elements)

    def flush(self) -> None:
        """Move collected mutation elements into the visibility queue now."""
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None

        elements = list(self._mutations)
        self._mutations.clear()
        for element in elements:
            self.queue_for_visibility(element)

    def queue_for_visibility(self, element: Any) -> None:
        if self.observer is None:
            # No observer available: process straight away
            self.process_element_safe(element)
            return

        if element in self._pending or not self._needs_processing(element):
            return

        if len(self._pending) >= self.max_pending:
            oldest, _ = self._pending.popitem(last=False)
            self.observer.unobserve(oldest)
            logger.debug(f"Evicted oldest pending visibility entry, queue size: {len(self._pending)}")

        self._pending[element] = None
        self.observer.observe(element)

    def on_visible(self, elements: Iterable[Any]) -> None:
        """Called by the observer for elements entering the trigger margin."""
        for element in elements:
            if self.observer is not None:
                self.observer.unobserve(element)
            self._pending.pop(element, None)
            self.process_element_safe(element)

    # Processing

    def process_element_safe(self, element: Any) -> asyncio.Task:
        """Process element in the background; errors never escape."""
        task = asyncio.create_task(self._process_guarded(element))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait until no element is being processed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _process_guarded(self, element: Any) -> None:
        try:
            await self._process_element(element)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error processing element: {e}")
            # Mark so the element is not retried in a loop
            marker = self._markers.get(element)
            if marker is not None:
                marker.state = ElementState.ERROR
            else:
                self._markers[element] = ProcessedElementMarker(None, ElementState.ERROR)

    async def _process_element(self, element: Any) -> None:
        screen_name = self.bridge.extract_username(element)
        if not screen_name:
            return

        marker = self._markers.get(element)
        if marker is not None:
            if username_key(marker.screen_name) == username_key(screen_name):
                if marker.state in (ElementState.DONE, ElementState.ERROR, ElementState.PROCESSING):
                    return
            else:
                logger.debug(f"Element recycled: @{marker.screen_name} -> @{screen_name}")
                self.renderer.clear(element)
                del self._markers[element]

        marker = ProcessedElementMarker(screen_name, ElementState.PROCESSING)
        self._markers[element] = marker
        logger.debug(f"Processing @{screen_name}")

        try:
            result = await self.coordinator.lookup(screen_name, self.live_enabled)
        except Exception:
            if self._markers.get(element) is marker:
                marker.state = ElementState.ERROR
            raise

        if self._markers.get(element) is not marker:
            return

        current = self._extract(element)
        if username_key(current) != username_key(screen_name):
            # Node was reused while the lookup was in flight
            del self._markers[element]
            if current:
                self.queue_for_visibility(element)
            return

        if result.error == ErrorCode.RATE_LIMITED:
            # Leave it unseen so a later scan can retry once the window passes
            del self._markers[element]
            logger.debug(f"@{screen_name} deferred, upstream rate limited")
            return

        country = result.data.location if result.data else None
        blocked = self.is_blocked_country(country)
        self.renderer.render(element, result.data, blocked=blocked)
        marker.country = country
        marker.blocked = blocked
        marker.state = ElementState.DONE

    # Lifecycle

    def cleanup(self) -> None:
        """Release everything: observer, timers, pending work and lookup state."""
        self.enabled = False

        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
        self._mutations.clear()

        if self.observer is not None:
            for element in list(self._pending):
                self.observer.unobserve(element)
            self.observer.disconnect()
        self._pending.clear()

        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

        self.coordinator.clear()
        logger.debug("Visibility scheduler cleaned up")

    # Helpers

    def _schedule_flush(self) -> None:
        if self._flush_handle is not None:
            return
        loop = asyncio.get_running_loop()
        self._flush_handle = loop.call_later(self.config.debounce_ms / 1000, self._on_debounce)

    def _on_debounce(self) -> None:
        self._flush_handle = None
        self.flush()

    def _targets(self, node: Any) -> Iterable[Any]:
        try:
            return list(self.bridge.find_targets(node))
        except Exception as e:
            logger.warning(f"Could not inspect added node: {e}")
            return []

    def _extract(self, element: Any) -> Optional[str]:
        try:
            return self.bridge.extract_username(element)
        except Exception as e:
            logger.debug(f"Could not extract username: {e}")
            return None

    def _needs_processing(self, element: Any) -> bool:
        marker = self._markers.get(element)
        if marker is None:
            return True
        current = self._extract(element)
        # A different user in the same node means it was recycled
        return current is not None and username_key(current) != username_key(marker.screen_name)
