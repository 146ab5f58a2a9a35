from __future__ import annotations

from datetime import datetime
from urllib.parse import urlparse

import requests

from . import messages
from .errors import FetchError
from .fetcher import subscribe_fetch
from .models import Subscriber
from .store import Store


def handle_command(
    text: str,
    subscriber: Subscriber,
    store: Store,
    session: requests.Session,
    now: datetime | None = None,
) -> str | None:
    """Map one chat message onto the store; returns the reply or None to stay silent."""
    parts = text.split()
    if not parts:
        return None
    command = parts[0].split("@", 1)[0].lower()
    argument = parts[1] if len(parts) > 1 else None

    if command in ("/start", "/help"):
        return messages.WELCOME
    if command == "/add":
        if not _valid_url(argument):
            return messages.NO_URL
        return add_subscription(argument, subscriber, store, session, now)
    if command == "/rm":
        if not _valid_url(argument):
            return messages.NO_URL
        if store.remove_subscriber(argument, subscriber):
            return messages.del_ok(argument)
        return messages.del_err(argument)
    if command == "/ls":
        return messages.feed_list(store.list_subscriptions(subscriber))
    return None


def add_subscription(
    url: str,
    subscriber: Subscriber,
    store: Store,
    session: requests.Session,
    now: datetime | None = None,
) -> str:
    if store.try_add_subscriber(url, subscriber):
        return messages.add_ok(url)
    try:
        feed = subscribe_fetch(session, url, subscriber, now)
    except FetchError as exc:
        return messages.add_err(url, exc)
    store.add_feed(feed)
    return messages.add_ok(url)


def _valid_url(value: str | None) -> bool:
    if not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)
