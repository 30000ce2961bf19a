"""Stable article identities derived from feed and item data."""

from __future__ import annotations

import hashlib
from typing import Callable

from .models import FeedEntry

Fingerprinter = Callable[[FeedEntry], str]


def _digest(*parts: str) -> str:
    joined = "\x1f".join(parts)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:32]


def default_fingerprint(entry: FeedEntry) -> str:
    """Fingerprint an entry by feed URL plus GUID, falling back to link, then title+date.

    The title+date fallback changes if the publisher edits the title; callers
    who need a different trade-off can pass their own function to the
    reconciler.
    """
    key = entry.guid or entry.link
    if key:
        return _digest(entry.feed_url, "id", key.strip())
    published = entry.published.isoformat() if entry.published else ""
    return _digest(entry.feed_url, "title", entry.title.strip(), published)
