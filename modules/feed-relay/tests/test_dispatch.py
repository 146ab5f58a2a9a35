from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import requests

from feed_relay.commands import add_subscription
from feed_relay.dispatch import Dispatcher
from feed_relay.errors import PersistenceError
from feed_relay.expiry import DEFAULT_FETCH_DELAY
from feed_relay.models import DispatchPolicy, FeedRecord
from feed_relay.run_logger import RelayLogger
from feed_relay.store import Store
from feed_relay.timestamps import EPOCH

FIXTURES = Path(__file__).parent / "fixtures"
NOW = datetime(2026, 1, 10, 12, 0, 0, tzinfo=timezone.utc)
URL = "https://x/feed.xml"


def _rss(*ids: str) -> bytes:
    items = "".join(
        f"<item><guid>{entry_id}</guid><title>Post {entry_id}</title>"
        f"<link>https://x/posts/{entry_id}</link></item>"
        for entry_id in ids
    )
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        f'<rss version="2.0"><channel><title>X</title>{items}</channel></rss>'
    ).encode("utf-8")


class FakeResponse:
    def __init__(self, status_code=200, content=b"", headers=None):
        self.status_code = status_code
        self.content = content
        self.headers = headers or {}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeWeb:
    """Serves canned responses per URL and records the request headers."""

    def __init__(self, responses):
        self.responses = dict(responses)
        self.requests = []
        self._lock = threading.Lock()

    def session(self):
        return FakeSession(self)


class FakeSession:
    def __init__(self, web):
        self.web = web

    def get(self, url, headers=None, timeout=20):
        with self.web._lock:
            self.web.requests.append((url, dict(headers or {})))
        response = self.web.responses[url]
        if isinstance(response, Exception):
            raise response
        return response

    def close(self):
        pass


class ScriptedMessenger:
    def __init__(self, outcomes=None, default="delivered"):
        self.outcomes = outcomes or {}
        self.default = default
        self.sent = []
        self._lock = threading.Lock()

    def send(self, subscriber, text):
        with self._lock:
            self.sent.append((subscriber, text))
        return self.outcomes.get(subscriber, self.default)

    def texts_for(self, subscriber):
        return [text for sub, text in self.sent if sub == subscriber]


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _dispatcher(store, web, messenger, tmp_path, clock=None, **policy):
    return Dispatcher(
        store,
        messenger,
        RelayLogger(tmp_path),
        DispatchPolicy(**policy),
        session_factory=web.session,
        clock=clock or Clock(NOW),
    )


def _store_feed(store, url=URL, subscribers=(b"A",), seen=("1", "2"), etag='"v1"'):
    store.add_feed(
        FeedRecord(
            url=url,
            subscribers=list(subscribers),
            seen_entries=set(seen),
            last_fetch=NOW - timedelta(hours=1),
            next_fetch=NOW - timedelta(seconds=1),
            cache_validator=etag,
        )
    )


def test_subscribe_then_poll_delivers_only_new_entry(tmp_path):
    store = Store(root=tmp_path)
    web = FakeWeb({URL: FakeResponse(content=(FIXTURES / "rss_initial.xml").read_bytes())})
    add_subscription(URL, b"A", store, web.session(), now=NOW - timedelta(hours=1))

    web.responses[URL] = FakeResponse(content=(FIXTURES / "rss_updated.xml").read_bytes())
    messenger = ScriptedMessenger()
    report = _dispatcher(store, web, messenger, tmp_path).run_cycle()

    assert messenger.sent == [(b"A", "Third Post\nhttps://x.example/posts/3")]
    assert report.due == 1
    assert report.new_entries == 1
    assert report.delivered == 1
    assert report.persisted == 1
    assert store.get_feed(URL).seen_entries == {"1", "2", "3"}


def test_partial_unreachable_still_marks_entry_seen(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store, subscribers=(b"A", b"B"), seen=("1",))
    web = FakeWeb({URL: FakeResponse(content=_rss("4", "1"))})
    messenger = ScriptedMessenger({b"A": "delivered", b"B": "unreachable"})

    report = _dispatcher(store, web, messenger, tmp_path).run_cycle()

    assert report.resets == 0
    assert len(messenger.sent) == 2
    assert store.get_feed(URL).seen_entries == {"1", "4"}


def test_full_failure_resets_feed_for_retry(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store, subscribers=(b"A", b"B"), seen=("0",))
    web = FakeWeb(
        {URL: FakeResponse(content=_rss("E1", "E2", "0"), headers={"ETag": '"v2"'})}
    )
    messenger = ScriptedMessenger(default="failed")
    clock = Clock(NOW)
    dispatcher = _dispatcher(store, web, messenger, tmp_path, clock=clock)

    report = dispatcher.run_cycle()

    assert report.resets == 1
    stored = store.get_feed(URL)
    assert "E1" not in stored.seen_entries
    assert "E2" not in stored.seen_entries
    assert stored.seen_entries == {"0"}
    assert stored.cache_validator is None
    assert stored.last_fetch == EPOCH

    # next due cycle fetches unconditionally and retries exactly those entries
    messenger.default = "delivered"
    clock.now = stored.next_fetch
    retry = dispatcher.run_cycle()
    url, headers = web.requests[-1]
    assert "If-None-Match" not in headers
    assert headers["If-Modified-Since"] == "Thu, 01 Jan 1970 00:00:00 GMT"
    assert retry.delivered == 2
    assert store.get_feed(URL).seen_entries == {"0", "E1", "E2"}


def test_drop_policy_keeps_undeliverable_entries_seen(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store, seen=())
    web = FakeWeb({URL: FakeResponse(content=_rss("E1", "E2"))})
    messenger = ScriptedMessenger(default="failed")

    report = _dispatcher(
        store, web, messenger, tmp_path, on_undeliverable="drop"
    ).run_cycle()

    assert report.dropped == 2
    assert report.resets == 0
    stored = store.get_feed(URL)
    assert stored.seen_entries == {"E1", "E2"}
    assert stored.cache_validator is None  # response carried no ETag
    assert stored.last_fetch == NOW


def test_broken_feed_does_not_abort_cycle(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store, url="https://broken/feed", seen=("1",))
    _store_feed(store, url="https://fine/feed", seen=("1",))
    web = FakeWeb(
        {
            "https://broken/feed": requests.ConnectionError("refused"),
            "https://fine/feed": FakeResponse(content=_rss("1", "2")),
        }
    )
    messenger = ScriptedMessenger()

    report = _dispatcher(store, web, messenger, tmp_path).run_cycle()

    assert report.checked == 2
    assert report.failed == 1
    assert report.delivered == 1
    broken = store.get_feed("https://broken/feed")
    assert broken.seen_entries == {"1"}
    assert broken.next_fetch == NOW + DEFAULT_FETCH_DELAY
    assert broken.cache_validator == '"v1"'
    assert store.get_feed("https://fine/feed").seen_entries == {"1", "2"}

    failures = (tmp_path / "failures" / "feed-relay.jsonl").read_text(encoding="utf-8")
    record = json.loads(failures.splitlines()[0])
    assert record["stage"] == "fetch"
    assert record["url"] == "https://broken/feed"


def test_not_modified_feed_is_rescheduled(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store)
    web = FakeWeb({URL: FakeResponse(status_code=304, headers={"Cache-Control": "max-age=3600"})})
    messenger = ScriptedMessenger()

    _dispatcher(store, web, messenger, tmp_path).run_cycle()

    assert messenger.sent == []
    assert store.get_feed(URL).next_fetch == NOW + timedelta(hours=1)
    assert store.load_due_feeds(NOW) == []


def test_many_feeds_run_on_worker_pool(tmp_path):
    store = Store(root=tmp_path)
    urls = [f"https://feeds/{i}" for i in range(12)]
    for url in urls:
        _store_feed(store, url=url, seen=())
    web = FakeWeb({url: FakeResponse(content=_rss(f"{url}#1")) for url in urls})
    messenger = ScriptedMessenger()

    report = _dispatcher(store, web, messenger, tmp_path, concurrency=4).run_cycle()

    assert report.checked == 12
    assert report.delivered == 12
    assert report.persisted == 12
    assert len(messenger.sent) == 12
    for url in urls:
        assert store.get_feed(url).seen_entries == {f"{url}#1"}


def test_unsubscribed_feed_is_not_polled(tmp_path):
    store = Store(root=tmp_path)
    _store_feed(store)
    store.remove_subscriber(URL, b"A")
    web = FakeWeb({})

    report = _dispatcher(store, web, ScriptedMessenger(), tmp_path, cleanup_every=1).run_cycle()

    assert report.due == 0
    assert report.cleaned == 1
    assert web.requests == []
    assert store.count_feeds() == 0


class FlakyStore(Store):
    def __init__(self, root, failures):
        super().__init__(root=root)
        self.failures = list(failures)

    def update_feeds_and_entries(self, feeds):
        if self.failures and self.failures.pop(0):
            raise sqlite3.OperationalError("database is locked")
        return super().update_feeds_and_entries(feeds)


def test_single_persist_failure_is_tolerated(tmp_path):
    store = FlakyStore(tmp_path, failures=[True, False])
    _store_feed(store)
    web = FakeWeb({URL: FakeResponse(content=_rss("1", "2", "3"))})
    messenger = ScriptedMessenger()
    dispatcher = _dispatcher(store, web, messenger, tmp_path)

    assert dispatcher.run_cycle().persisted is None
    # the retained record is written without fetching or delivering again
    retry = dispatcher.run_cycle()
    assert retry.persisted == 1
    assert retry.due == 0
    assert len(web.requests) == 1
    assert messenger.sent == [(b"A", "Post 3\nhttps://x/posts/3")]
    stored = store.get_feed(URL)
    assert stored.seen_entries == {"1", "2", "3"}
    assert stored.last_fetch == NOW


def test_two_consecutive_persist_failures_are_fatal(tmp_path):
    store = FlakyStore(tmp_path, failures=[True, True])
    _store_feed(store)
    web = FakeWeb({URL: FakeResponse(status_code=304)})
    dispatcher = _dispatcher(store, web, ScriptedMessenger(), tmp_path)

    dispatcher.run_cycle()
    with pytest.raises(PersistenceError):
        dispatcher.run_cycle()


def test_failure_counter_resets_after_success(tmp_path):
    store = FlakyStore(tmp_path, failures=[True, False, True])
    _store_feed(store)
    web = FakeWeb({URL: FakeResponse(status_code=304)})
    clock = Clock(NOW)
    dispatcher = _dispatcher(store, web, ScriptedMessenger(), tmp_path, clock=clock)

    dispatcher.run_cycle()
    dispatcher.run_cycle()
    clock.now = NOW + timedelta(days=2)
    assert dispatcher.run_cycle().persisted is None


def test_run_forever_stops_on_event(tmp_path):
    store = Store(root=tmp_path)
    stop = threading.Event()

    def clock():
        stop.set()
        return NOW

    dispatcher = _dispatcher(
        store, FakeWeb({}), ScriptedMessenger(), tmp_path, clock=clock, interval_sec=0
    )
    dispatcher.run_forever(stop)

    assert dispatcher.cycles == 1
    log = (tmp_path / "logs" / "feed-relay.log").read_text(encoding="utf-8")
    assert "dispatch stopped cycles=1" in log
