"""Next-fetch scheduling from HTTP caching headers.

``find_expiry`` honours ``Cache-Control: max-age`` first, then ``Expires``,
then falls back to ``DEFAULT_FETCH_DELAY``. Whatever the server claims, the
resulting delay stays within ``[MIN_FETCH_DELAY, MAX_FETCH_DELAY]``.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Mapping

from .errors import MalformedHeaderError
from .timestamps import now_utc, parse_http_date

MIN_FETCH_DELAY = timedelta(seconds=60)
MAX_FETCH_DELAY = timedelta(hours=24)
DEFAULT_FETCH_DELAY = timedelta(minutes=10)

CACHE_CONTROL = "Cache-Control"
EXPIRES = "Expires"
ETAG = "ETag"

HeaderValue = str | bytes
Headers = Mapping[str, HeaderValue]


def header(headers: Headers, name: str) -> str | None:
    """Return a header value, raising ``MalformedHeaderError`` for non-UTF-8 bytes.

    ``http.client`` decodes raw header bytes as latin-1, so the value is
    re-encoded before the strict UTF-8 check.
    """
    value = headers.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                value = candidate
                break
    if value is None:
        return None
    try:
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value.encode("latin-1").decode("utf-8")
    except UnicodeError as exc:
        raise MalformedHeaderError(name) from exc


def clamp_delay(delay: timedelta) -> timedelta:
    return min(max(delay, MIN_FETCH_DELAY), MAX_FETCH_DELAY)


def find_expiry(headers: Headers, now: datetime | None = None) -> datetime:
    now = now or now_utc()
    delay = _max_age(headers)
    if delay is None:
        expires = header(headers, EXPIRES)
        if expires is not None:
            try:
                expires_at = parse_http_date(expires)
            except (ValueError, OverflowError) as exc:
                raise MalformedHeaderError(EXPIRES) from exc
            delay = expires_at - now
            if delay <= timedelta(0):
                delay = DEFAULT_FETCH_DELAY
    if delay is None:
        delay = DEFAULT_FETCH_DELAY
    return now + clamp_delay(delay)


def next_fetch_after(headers: Headers, now: datetime | None = None) -> datetime:
    now = now or now_utc()
    try:
        return find_expiry(headers, now)
    except MalformedHeaderError:
        return now + DEFAULT_FETCH_DELAY


def _max_age(headers: Headers) -> timedelta | None:
    cache_control = header(headers, CACHE_CONTROL)
    if cache_control is None:
        return None
    for directive in cache_control.split(","):
        key, sep, value = directive.partition("=")
        if not sep or key.strip().lower() != "max-age":
            continue
        try:
            seconds = int(value.strip().strip('"'))
        except ValueError as exc:
            raise MalformedHeaderError(CACHE_CONTROL) from exc
        # clamp before building the timedelta, huge values overflow it
        limit = int(MAX_FETCH_DELAY.total_seconds())
        return timedelta(seconds=max(0, min(seconds, limit)))
    return None
