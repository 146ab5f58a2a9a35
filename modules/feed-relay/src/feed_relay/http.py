from __future__ import annotations

from datetime import datetime

import requests

from .errors import FetchError
from .timestamps import http_date

USER_AGENT = "feed-relay/0.1 (+local)"
DEFAULT_TIMEOUT = 20


def create_session() -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    return session


def get_feed(
    session: requests.Session,
    url: str,
    timeout: int = DEFAULT_TIMEOUT,
) -> requests.Response:
    return _send(session, url, {}, timeout)


def get_feed_conditional(
    session: requests.Session,
    url: str,
    modified_since: datetime,
    etag: str | None = None,
    timeout: int = DEFAULT_TIMEOUT,
) -> requests.Response:
    headers = {"If-Modified-Since": http_date(modified_since)}
    if etag:
        headers["If-None-Match"] = etag
    return _send(session, url, headers, timeout)


def _send(
    session: requests.Session,
    url: str,
    headers: dict[str, str],
    timeout: int,
) -> requests.Response:
    try:
        response = session.get(url, headers=headers, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as exc:
        raise FetchError(f"network error: {exc}") from exc
    return response
