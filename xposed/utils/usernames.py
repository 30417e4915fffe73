"""Username normalization and extraction."""

import re
from typing import Optional

from xposed.errors import InvalidInputError

USERNAME_RE = re.compile(r"^[A-Za-z0-9_]{1,15}$")

PROFILE_URL_RE = re.compile(
    r"(?:https?://)?(?:www\.|mobile\.)?(?:twitter\.com|x\.com)/([A-Za-z0-9_]+)",
    re.IGNORECASE,
)

# Top-level paths on the site that look like usernames but are not
RESERVED_NAMES = frozenset({
    "home", "explore", "notifications", "messages",
    "search", "settings", "i", "compose",
})


def _clean(raw: str) -> str:
    cleaned = raw.strip()
    if cleaned.startswith("@"):
        cleaned = cleaned[1:]
    return cleaned


def username_key(raw: Optional[str]) -> Optional[str]:
    """Case-insensitive identity of a displayed name, without validating it."""
    if not isinstance(raw, str):
        return None
    return _clean(raw).lower() or None


def is_valid_username(raw: Optional[str]) -> bool:
    if not isinstance(raw, str):
        return False
    return bool(USERNAME_RE.match(_clean(raw)))


def normalize_username(raw: Optional[str]) -> str:
    """Return the lookup key for raw, or raise InvalidInputError."""
    if not isinstance(raw, str):
        raise InvalidInputError("Username must be a string")

    cleaned = _clean(raw)
    if not USERNAME_RE.match(cleaned):
        raise InvalidInputError(f"Invalid username: {raw!r}", username=raw)
    return cleaned.lower()


def parse_username(text: Optional[str]) -> Optional[str]:
    """Pull a username out of '@name', 'name' or a profile URL."""
    if not text:
        return None

    candidate = text.strip()
    match = PROFILE_URL_RE.search(candidate)
    if match:
        candidate = match.group(1)
    else:
        candidate = _clean(candidate)

    if not USERNAME_RE.match(candidate):
        return None
    if candidate.lower() in RESERVED_NAMES:
        return None
    return candidate
