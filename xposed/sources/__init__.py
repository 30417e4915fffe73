"""Lookup sources: the live upstream API and the shared cloud cache."""

from .base import SharedCacheAPI, UpstreamLookupAPI
from .upstream import UpstreamClient
from .cloud_cache import CloudCacheClient

__all__ = ["UpstreamLookupAPI", "SharedCacheAPI", "UpstreamClient", "CloudCacheClient"]
