from __future__ import annotations

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import requests

from .errors import FetchError, PersistenceError
from .fetcher import check_feed
from .http import create_session
from .models import DispatchPolicy, Entry, FeedRecord
from .notify import Messenger, deliver_entry
from .run_logger import RelayLogger
from .store import Store
from .timestamps import now_utc

FEED_CONCURRENCY_LIMIT = 8
MAX_STORE_FAILURES = 2


@dataclass
class FeedOutcome:
    feed: FeedRecord
    new_entries: int = 0
    delivered: int = 0
    dropped: int = 0
    reset: bool = False
    error: str | None = None


@dataclass
class CycleReport:
    due: int = 0
    checked: int = 0
    failed: int = 0
    new_entries: int = 0
    delivered: int = 0
    dropped: int = 0
    resets: int = 0
    persisted: int | None = None
    cleaned: int = 0


class Dispatcher:
    """Polling cycle: select due feeds, fetch, fan out, persist.

    Worker threads only touch the network and the ``FeedRecord`` they were
    handed; every store access happens on the thread driving the cycle.
    """

    def __init__(
        self,
        store: Store,
        messenger: Messenger,
        logger: RelayLogger,
        policy: DispatchPolicy | None = None,
        session_factory: Callable[[], requests.Session] = create_session,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.store = store
        self.messenger = messenger
        self.logger = logger
        self.policy = policy or DispatchPolicy()
        self.session_factory = session_factory
        self.clock = clock
        self.cycles = 0
        self._store_failures = 0
        self._unpersisted: dict[str, FeedRecord] = {}

    def run_forever(self, stop_event: threading.Event) -> None:
        self.logger.log(
            f"dispatch started interval={self.policy.interval_sec} "
            f"concurrency={self.policy.concurrency} "
            f"on_undeliverable={self.policy.on_undeliverable}"
        )
        while not stop_event.is_set():
            self.run_cycle()
            stop_event.wait(self.policy.interval_sec)
        self.logger.log(f"dispatch stopped cycles={self.cycles}")

    def run_cycle(self) -> CycleReport:
        now = self.clock()
        self.cycles += 1
        report = CycleReport()
        if self.policy.cleanup_every and self.cycles % self.policy.cleanup_every == 0:
            report.cleaned = self._cleanup()

        try:
            feeds = self.store.load_due_feeds(now)
        except sqlite3.Error as exc:
            self._store_failed("load", exc)
            return report
        # records whose last write failed are authoritative until written
        feeds = [feed for feed in feeds if feed.url not in self._unpersisted]
        report.due = len(feeds)

        for outcome in self._process_feeds(feeds, now):
            report.checked += 1
            report.new_entries += outcome.new_entries
            report.delivered += outcome.delivered
            report.dropped += outcome.dropped
            if outcome.error is not None:
                report.failed += 1
            if outcome.reset:
                report.resets += 1

        batch = feeds + list(self._unpersisted.values())
        if batch:
            report.persisted = self.persist(batch)
        self.logger.log(
            f"cycle={self.cycles} due={report.due} failed={report.failed} "
            f"new_entries={report.new_entries} delivered={report.delivered} "
            f"resets={report.resets} dropped={report.dropped} persisted={report.persisted}"
        )
        return report

    def persist(self, feeds: list[FeedRecord]) -> int | None:
        try:
            updated = self.store.update_feeds_and_entries(feeds)
        except sqlite3.Error as exc:
            self._unpersisted.update((feed.url, feed) for feed in feeds)
            self._store_failed("persist", exc)
            return None
        self._store_failures = 0
        self._unpersisted.clear()
        return updated

    def process_feed(self, feed: FeedRecord, now: datetime) -> FeedOutcome:
        outcome = FeedOutcome(feed=feed)
        session = self.session_factory()
        try:
            entries = check_feed(session, feed, now, timeout=self.policy.timeout_sec)
        except FetchError as exc:
            feed.reset_expiry(now)
            outcome.error = str(exc)
            self.logger.failure({"stage": "fetch", "url": feed.url, "error": str(exc)})
            return outcome
        finally:
            session.close()

        outcome.new_entries = len(entries)
        attempted: list[Entry] = []
        undeliverable: list[Entry] = []
        for entry in entries:
            delivery = deliver_entry(self.messenger, entry, feed.subscribers)
            feed.mark_seen(entry.id)
            attempted.append(entry)
            if delivery.all_failed:
                undeliverable.append(entry)
                self.logger.failure(
                    {
                        "stage": "deliver",
                        "url": feed.url,
                        "entry_id": entry.id,
                        "failed": delivery.failed,
                        "errors": delivery.errors,
                    }
                )
            else:
                outcome.delivered += 1

        if undeliverable:
            if self.policy.on_undeliverable == "retry":
                feed.reset_entries(attempted)
                outcome.reset = True
                self.logger.log(f"feed reset url={feed.url} entries={len(attempted)}")
            else:
                outcome.dropped = len(undeliverable)
                self.logger.log(f"entries dropped url={feed.url} count={outcome.dropped}")
        return outcome

    def _process_feeds(self, feeds: list[FeedRecord], now: datetime) -> list[FeedOutcome]:
        if len(feeds) <= 1:
            return [self._process_feed_guarded(feed, now) for feed in feeds]
        max_workers = max(1, min(self.policy.concurrency, FEED_CONCURRENCY_LIMIT, len(feeds)))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = [
                executor.submit(self._process_feed_guarded, feed, now) for feed in feeds
            ]
            return [future.result() for future in futures]

    def _process_feed_guarded(self, feed: FeedRecord, now: datetime) -> FeedOutcome:
        try:
            return self.process_feed(feed, now)
        except Exception as exc:
            feed.reset_expiry(now)
            self.logger.failure({"stage": "process", "url": feed.url, "error": repr(exc)})
            return FeedOutcome(feed=feed, error=repr(exc))

    def _cleanup(self) -> int:
        try:
            removed = self.store.cleanup_feeds()
        except sqlite3.Error as exc:
            self._store_failed("cleanup", exc)
            return 0
        if removed:
            self.logger.log(f"cleanup removed_feeds={removed}")
        return removed

    def _store_failed(self, stage: str, exc: sqlite3.Error) -> None:
        self._store_failures += 1
        self.logger.failure(
            {"stage": stage, "error": str(exc), "consecutive": self._store_failures}
        )
        if self._store_failures >= MAX_STORE_FAILURES:
            raise PersistenceError(
                f"{self._store_failures} consecutive store failures, last: {exc}"
            ) from exc
