"""Small helpers for lists of strings."""

from __future__ import annotations

from collections.abc import Iterable


def contains_in_slice(items: Iterable[str] | None, s: str) -> bool:
    """Return True if ``s`` is one of ``items``."""
    return s in (items or ())


def remove_from_slice(items: Iterable[str] | None, s: str) -> list[str]:
    """Return a new list holding ``items`` without any occurrence of ``s``."""
    return [item for item in (items or ()) if item != s]