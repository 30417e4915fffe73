"""Parsing boundary between raw API payloads and LocationInfo.

Everything that has to guess at the shape of a response lives here. The
rest of the engine only ever sees ``LocationInfo`` or a typed failure.
"""

from typing import Any, Dict, Mapping, Optional

from xposed.errors import NotFoundError, ParseError
from xposed.schemas import LocationInfo, SourceTier, now_ms


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError(f"Expected string, got {type(value).__name__}")
    value = value.strip()
    return value or None


def _dig(payload: Any, *path: str) -> Any:
    """Follow path through nested dicts, returning None on the first gap."""
    current = payload
    for key in path:
        if current is None:
            return None
        if not isinstance(current, Mapping):
            raise ParseError(f"Expected object at '{key}', got {type(current).__name__}")
        current = current.get(key)
    return current


def parse_about_account(payload: Any, username: str) -> LocationInfo:
    """Convert an AboutAccountQuery response into LocationInfo.

    A missing user or profile block means the upstream has nothing for this
    account (NotFoundError). Anything structurally wrong is a ParseError.
    """
    if not isinstance(payload, Mapping):
        raise ParseError("Response body is not a JSON object", username=username)

    if "data" not in payload:
        errors = payload.get("errors")
        if errors:
            raise ParseError(f"Upstream returned errors: {errors!r:.200}", username=username)
        raise ParseError("Response has no 'data' field", username=username)

    try:
        result = _dig(payload, "data", "user_result_by_screen_name", "result")
        if result is None:
            raise NotFoundError(f"No such user @{username}", username=username)

        profile = _dig(result, "about_profile")
        if profile is None:
            raise NotFoundError(f"No profile data for @{username}", username=username)
        if not isinstance(profile, Mapping):
            raise ParseError("about_profile is not an object", username=username)

        accurate = profile.get("location_accurate")
        info = LocationInfo(
            location=_optional_text(profile.get("account_based_in")),
            device=_optional_text(profile.get("source")),
            is_accurate=accurate is not False,
            timestamp_ms=now_ms(),
            source_tier=SourceTier.LIVE,
        )
    except ParseError as e:
        if e.username is None:
            e.username = username
        raise

    if info.is_empty:
        raise NotFoundError(f"Profile for @{username} has no location or device", username=username)
    return info


def parse_shared_entry(entry: Any) -> LocationInfo:
    """Convert a compact shared-cache entry {l, d, a, t} into LocationInfo."""
    if not isinstance(entry, Mapping):
        raise ParseError("Shared cache entry is not an object")

    timestamp = entry.get("t")
    if timestamp is None:
        timestamp_ms = now_ms()
    elif isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool):
        timestamp_ms = int(timestamp * 1000)
    else:
        raise ParseError(f"Bad timestamp in shared cache entry: {timestamp!r}")

    return LocationInfo(
        location=_optional_text(entry.get("l")),
        device=_optional_text(entry.get("d")),
        is_accurate=entry.get("a") is not False,
        timestamp_ms=timestamp_ms,
        source_tier=SourceTier.SHARED,
    )


def to_shared_entry(info: LocationInfo) -> Dict[str, Any]:
    """Inverse of parse_shared_entry, used for contributions."""
    return {
        "l": info.location or "",
        "d": info.device or "",
        "a": info.is_accurate,
        "t": info.timestamp_ms // 1000,
    }
