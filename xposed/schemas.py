"""Core data models."""

import time
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class SourceTier(str, Enum):
    """Where a lookup result came from."""
    LOCAL = "local"
    SHARED = "shared"
    LIVE = "live"
    NONE = "none"


class ErrorCode(str, Enum):
    """Failure taxonomy shared by the clients and the coordinator."""
    INVALID_INPUT = "INVALID_INPUT"
    RATE_LIMITED = "RATE_LIMITED"
    UNAUTHORIZED = "UNAUTHORIZED"
    NETWORK_ERROR = "NETWORK_ERROR"
    NOT_FOUND = "NOT_FOUND"
    PARSE_ERROR = "PARSE_ERROR"


class LocationInfo(BaseModel):
    """Metadata known about one account. Immutable once produced."""
    model_config = ConfigDict(frozen=True)

    location: Optional[str] = Field(None, description="Country or region the account is based in")
    device: Optional[str] = Field(None, description="Client the account connects from")
    is_accurate: bool = Field(True, description="False when a VPN or proxy is suspected")
    timestamp_ms: int = Field(default_factory=now_ms)
    source_tier: SourceTier = SourceTier.LIVE

    @property
    def is_empty(self) -> bool:
        return not self.location and not self.device

    def with_tier(self, tier: SourceTier) -> "LocationInfo":
        return self.model_copy(update={"source_tier": tier})


class LookupResult(BaseModel):
    """Outcome of one coordinator lookup."""
    username: str
    data: Optional[LocationInfo] = None
    source_tier: SourceTier = SourceTier.NONE
    error: Optional[ErrorCode] = None
    retry_at_ms: Optional[int] = None

    @property
    def unavailable(self) -> bool:
        """True when the answer is 'try again later' rather than 'nothing found'."""
        return self.error in (ErrorCode.RATE_LIMITED, ErrorCode.NETWORK_ERROR, ErrorCode.PARSE_ERROR)


class Credentials(BaseModel):
    """Opaque session tokens passed through to the upstream API."""
    auth_token: str = ""
    csrf_token: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.auth_token and self.csrf_token)


class RateLimitStatus(BaseModel):
    """Read-only snapshot of a rate limiter."""
    is_rate_limited: bool = False
    reset_time_ms: Optional[int] = None
    remaining_ms: Optional[int] = None
    consecutive_failures: int = 0


class LookupStats(BaseModel):
    """Counters kept by the coordinator."""
    lookups: int = 0
    local_hits: int = 0
    shared_hits: int = 0
    live_hits: int = 0
    misses: int = 0
    errors: int = 0
    contributions: int = 0


class BatchLookupRequest(BaseModel):
    usernames: List[str] = Field(default_factory=list)
    live: bool = True
