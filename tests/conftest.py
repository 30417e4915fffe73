"""Shared fakes for the lookup engine tests."""

import asyncio
from typing import Dict, Iterable, List, Optional

import pytest

from xposed.config import LookupSettings
from xposed.schemas import Credentials, LocationInfo, SourceTier
from xposed.services.lookup import TieredLookupCoordinator
from xposed.services.visibility import DomBridge, Renderer, VisibilityObserver
from xposed.sources.base import SharedCacheAPI, UpstreamLookupAPI

CREDENTIALS = Credentials(auth_token="auth", csrf_token="csrf")


class FakeClock:
    """Manually advanced millisecond clock."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeUpstream(UpstreamLookupAPI):
    """Answers from a dict; values that are exceptions get raised."""

    def __init__(self, responses: Optional[Dict[str, object]] = None, delay: float = 0):
        self.responses = responses or {}
        self.delay = delay
        self.calls: List[str] = []
        self.active = 0
        self.max_active = 0
        self.closed = False

    async def fetch_user_info(self, username, credentials):
        self.calls.append(username)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.responses.get(username)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is None:
                outcome = LocationInfo(location=f"Country of {username}", device="Web")
            return outcome
        finally:
            self.active -= 1

    async def close(self):
        self.closed = True


class FakeSharedCache(SharedCacheAPI):
    def __init__(self, entries: Optional[Dict[str, LocationInfo]] = None, fail: bool = False):
        self.entries = entries or {}
        self.fail = fail
        self.calls: List[List[str]] = []
        self.contributions: List[tuple] = []

    async def lookup_batch(self, usernames):
        names = list(usernames)
        self.calls.append(names)
        if self.fail:
            raise RuntimeError("shared cache down")
        return {
            name: self.entries[name].with_tier(SourceTier.SHARED)
            for name in names
            if name in self.entries
        }

    async def contribute(self, username, info):
        self.contributions.append((username, info))
        return True


class FakeElement:
    """Stand-in for a DOM node showing a username."""

    def __init__(self, username: Optional[str]):
        self.username = username

    def __repr__(self):
        return f"<FakeElement @{self.username}>"


class FakeNode:
    """Container node holding username elements."""

    def __init__(self, children: Iterable[FakeElement]):
        self.children = list(children)


class FakeBridge(DomBridge):
    def find_targets(self, node):
        if isinstance(node, FakeNode):
            return node.children
        if isinstance(node, FakeElement):
            return [node]
        return []

    def extract_username(self, element):
        return element.username


class FakeObserver(VisibilityObserver):
    def __init__(self):
        self.observed: List[FakeElement] = []
        self.unobserved: List[FakeElement] = []
        self.disconnected = False

    def observe(self, element):
        self.observed.append(element)

    def unobserve(self, element):
        self.unobserved.append(element)

    def disconnect(self):
        self.disconnected = True


class FakeRenderer(Renderer):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.events: List[tuple] = []
        self.hidden: Dict[FakeElement, bool] = {}

    def render(self, element, info, blocked=False):
        if self.fail:
            raise RuntimeError("render failed")
        self.events.append(("render", element, info))
        self.hidden[element] = blocked

    def clear(self, element):
        self.events.append(("clear", element))
        self.hidden.pop(element, None)

    def set_blocked(self, element, blocked):
        self.hidden[element] = blocked


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def shared():
    return FakeSharedCache()


@pytest.fixture
def make_coordinator(clock):
    """Factory for coordinators with fast batches and a fake clock."""

    def factory(upstream=None, shared=None, credentials=CREDENTIALS, live_timeout_ms=15_000, contribute=False, **config):
        config.setdefault("batch_delay_ms", 0)
        return TieredLookupCoordinator(
            config=LookupSettings(**config),
            upstream=upstream,
            shared=shared,
            credentials=credentials,
            contribute=contribute,
            live_timeout_ms=live_timeout_ms,
            clock=clock,
        )

    return factory
