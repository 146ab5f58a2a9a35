from __future__ import annotations

from datetime import datetime

import requests

from .errors import MalformedHeaderError
from .expiry import ETAG, header, next_fetch_after
from .http import DEFAULT_TIMEOUT, get_feed, get_feed_conditional
from .models import Entry, FeedRecord, Subscriber
from .parser import parse_entries
from .timestamps import now_utc

NOT_MODIFIED = 304


def subscribe_fetch(
    session: requests.Session,
    url: str,
    subscriber: Subscriber,
    now: datetime | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> FeedRecord:
    """Fetch a feed for the first time; everything already published counts as seen."""
    now = now or now_utc()
    response = get_feed(session, url, timeout=timeout)
    entries = parse_entries(response.content)
    return FeedRecord(
        url=url,
        subscribers=[subscriber],
        seen_entries={entry.id for entry in entries},
        last_fetch=now,
        next_fetch=next_fetch_after(response.headers, now),
        cache_validator=_etag(response.headers),
    )


def check_feed(
    session: requests.Session,
    feed: FeedRecord,
    now: datetime | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> list[Entry]:
    """Conditionally re-fetch ``feed`` and return entries it has not seen.

    Raises ``FetchError`` without touching ``feed`` when the request or the
    parse fails.
    """
    now = now or now_utc()
    response = get_feed_conditional(
        session,
        feed.url,
        modified_since=feed.last_fetch,
        etag=feed.cache_validator,
        timeout=timeout,
    )
    if response.status_code == NOT_MODIFIED:
        entries: list[Entry] = []
    else:
        entries = unseen_entries(parse_entries(response.content), feed.seen_entries)

    feed.last_fetch = now
    feed.next_fetch = next_fetch_after(response.headers, now)
    etag = _etag(response.headers)
    if etag is not None or response.status_code != NOT_MODIFIED:
        feed.cache_validator = etag
    return entries


def unseen_entries(entries: list[Entry], seen: set[str]) -> list[Entry]:
    result: list[Entry] = []
    emitted: set[str] = set()
    for entry in entries:
        if entry.id in seen or entry.id in emitted:
            continue
        emitted.add(entry.id)
        result.append(entry)
    return result


def _etag(headers) -> str | None:
    try:
        return header(headers, ETAG)
    except MalformedHeaderError:
        return None
