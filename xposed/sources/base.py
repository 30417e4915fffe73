"""Base interfaces for lookup sources."""

from abc import ABC, abstractmethod
from typing import Dict, Iterable

from xposed.schemas import Credentials, LocationInfo


class UpstreamLookupAPI(ABC):
    """Live, rate-limited source of user metadata."""

    @abstractmethod
    async def fetch_user_info(self, username: str, credentials: Credentials) -> LocationInfo:
        """
        Fetch metadata for one user.
        Raises a LookupFailure subclass on any failure.
        """
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass


class SharedCacheAPI(ABC):
    """Community cache of previously looked-up users. Best-effort."""

    @abstractmethod
    async def lookup_batch(self, usernames: Iterable[str]) -> Dict[str, LocationInfo]:
        """Return whatever entries the cache has, keyed by lowercase username."""
        pass

    @abstractmethod
    async def contribute(self, username: str, info: LocationInfo) -> bool:
        """Share a live result. Returns False when it could not be delivered."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        pass
