"""Utilities for xposed."""

from .cache import BoundedCache
from .usernames import is_valid_username, normalize_username, parse_username, username_key

__all__ = ["BoundedCache", "is_valid_username", "normalize_username", "parse_username", "username_key"]
