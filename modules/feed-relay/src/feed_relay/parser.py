from __future__ import annotations

from typing import Any

import feedparser

from .errors import FeedParseError
from .models import Entry


def parse_entries(payload: bytes) -> list[Entry]:
    data = feedparser.parse(payload)
    if data.bozo and not data.entries:
        reason = data.get("bozo_exception")
        raise FeedParseError(f"error parsing feed: {reason}")
    if not data.version and not data.entries:
        raise FeedParseError("error parsing feed: not a feed document")
    entries: list[Entry] = []
    for raw in data.entries:
        entry = _to_entry(raw)
        if entry is not None:
            entries.append(entry)
    return entries


def _to_entry(raw: Any) -> Entry | None:
    title = raw.get("title")
    link = raw.get("link")
    entry_id = raw.get("id") or link or title
    if not entry_id:
        return None
    return Entry(
        id=str(entry_id),
        title=str(title) if title else None,
        link=str(link) if link else None,
    )
