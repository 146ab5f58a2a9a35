from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Iterator

from .errors import SchemaTooNewError
from .models import FeedRecord, Subscriber
from .paths import data_root, db_path, ensure_data_dirs
from .timestamps import from_epoch, now_utc, to_epoch

SCHEMA_VERSION = 1
BUSY_TIMEOUT_SEC = 30.0

_MIGRATIONS: dict[int, str] = {
    1: """
    CREATE TABLE version (
        version INTEGER NOT NULL
    );

    CREATE TABLE feed (
        id INTEGER PRIMARY KEY,
        url TEXT NOT NULL UNIQUE,
        last_check INTEGER NOT NULL,
        next_check INTEGER NOT NULL,
        etag TEXT
    );

    CREATE TABLE entry (
        feed_id INTEGER NOT NULL REFERENCES feed (id) ON DELETE CASCADE,
        entry_id TEXT NOT NULL,
        UNIQUE (feed_id, entry_id)
    );

    CREATE TABLE subscriber (
        feed_id INTEGER NOT NULL REFERENCES feed (id) ON DELETE CASCADE,
        user BLOB NOT NULL,
        UNIQUE (feed_id, user)
    );

    CREATE INDEX idx_feed_next_check ON feed(next_check);
    CREATE INDEX idx_subscriber_user ON subscriber(user);
    """,
}


class Store:
    """SQLite-backed feed state shared by the command handler and the dispatch loop.

    A ``Store`` owns one connection and must stay on the thread that created
    it; concurrent activities open their own ``Store`` on the same file.
    """

    def __init__(self, root: Path | None = None) -> None:
        self.root = data_root(root)
        ensure_data_dirs(self.root)
        self.db_path = db_path(self.root)
        self._conn: sqlite3.Connection | None = None
        self.init_db()

    def connect(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SEC)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def schema_version(self) -> int:
        try:
            row = self._fetchone("SELECT version FROM version", ())
        except sqlite3.OperationalError as exc:
            if str(exc).startswith("no such table"):
                return 0
            raise
        return int(row[0]) if row else 0

    def init_db(self) -> None:
        version = self.schema_version()
        if version > SCHEMA_VERSION:
            raise SchemaTooNewError(
                f"database {self.db_path} has schema version {version}, "
                f"newest supported is {SCHEMA_VERSION}"
            )
        if version == SCHEMA_VERSION:
            return
        conn = self.connect()
        script = "\n".join(
            _MIGRATIONS[step] for step in range(version + 1, SCHEMA_VERSION + 1)
        )
        try:
            conn.executescript(
                f"""
                BEGIN;
                {script}
                DELETE FROM version;
                INSERT INTO version (version) VALUES ({SCHEMA_VERSION});
                COMMIT;
                """
            )
        except sqlite3.Error:
            if conn.in_transaction:
                conn.rollback()
            raise

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        with conn:
            yield conn

    def _fetchone(self, query: str, params: Iterable[Any]) -> sqlite3.Row | None:
        cur = self.connect().execute(query, tuple(params))
        row = cur.fetchone()
        cur.close()
        return row

    def _fetchall(self, query: str, params: Iterable[Any]) -> list[sqlite3.Row]:
        cur = self.connect().execute(query, tuple(params))
        rows = cur.fetchall()
        cur.close()
        return rows

    def add_feed(self, feed: FeedRecord) -> int:
        """Insert ``feed`` with its entries and subscribers.

        When the URL is already stored only the subscribers are added, so the
        existing seen-state is never overwritten by a fresh subscription fetch.
        """
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO feed (url, last_check, next_check, etag)
                VALUES (?, ?, ?, ?)
                """,
                (
                    feed.url,
                    to_epoch(feed.last_fetch),
                    to_epoch(feed.next_fetch),
                    feed.cache_validator,
                ),
            )
            created = cur.rowcount == 1
            feed_id = int(
                conn.execute("SELECT id FROM feed WHERE url = ?", (feed.url,)).fetchone()[0]
            )
            if created:
                conn.executemany(
                    "INSERT OR IGNORE INTO entry (feed_id, entry_id) VALUES (?, ?)",
                    [(feed_id, entry_id) for entry_id in feed.seen_entries],
                )
            conn.executemany(
                "INSERT OR IGNORE INTO subscriber (feed_id, user) VALUES (?, ?)",
                [(feed_id, subscriber) for subscriber in feed.subscribers],
            )
        return feed_id

    def try_add_subscriber(self, url: str, subscriber: Subscriber) -> bool:
        """Subscribe to an already stored feed; False when the URL is unknown."""
        with self._transaction() as conn:
            row = conn.execute("SELECT id FROM feed WHERE url = ?", (url,)).fetchone()
            if row is None:
                return False
            conn.execute(
                "INSERT OR IGNORE INTO subscriber (feed_id, user) VALUES (?, ?)",
                (int(row[0]), subscriber),
            )
        return True

    def remove_subscriber(self, url: str, subscriber: Subscriber) -> bool:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM subscriber
                WHERE user = ? AND feed_id = (SELECT id FROM feed WHERE url = ?)
                """,
                (subscriber, url),
            )
        return cur.rowcount == 1

    def list_subscriptions(self, subscriber: Subscriber) -> list[str]:
        rows = self._fetchall(
            """
            SELECT f.url FROM feed AS f
            JOIN subscriber AS s ON (f.id = s.feed_id)
            WHERE s.user = ?
            ORDER BY f.url ASC
            """,
            (subscriber,),
        )
        return [row["url"] for row in rows]

    def cleanup_feeds(self) -> int:
        with self._transaction() as conn:
            cur = conn.execute(
                """
                DELETE FROM feed WHERE NOT EXISTS (
                    SELECT 1 FROM subscriber AS s WHERE s.feed_id = feed.id
                )
                """
            )
        return cur.rowcount

    def count_feeds(self) -> int:
        row = self._fetchone("SELECT COUNT(*) FROM feed", ())
        return int(row[0]) if row else 0

    def get_feed(self, url: str) -> FeedRecord | None:
        row = self._fetchone(
            "SELECT id, url, last_check, next_check, etag FROM feed WHERE url = ?",
            (url,),
        )
        if row is None:
            return None
        feed = _row_to_feed(row)
        feed.seen_entries = {
            entry["entry_id"]
            for entry in self._fetchall(
                "SELECT entry_id FROM entry WHERE feed_id = ?", (row["id"],)
            )
        }
        feed.subscribers = [
            bytes(sub["user"])
            for sub in self._fetchall(
                "SELECT user FROM subscriber WHERE feed_id = ? ORDER BY rowid", (row["id"],)
            )
        ]
        return feed

    def load_due_feeds(self, now: datetime | None = None) -> list[FeedRecord]:
        """Feeds whose next check has passed and that still have a subscriber."""
        cutoff = to_epoch(now or now_utc())
        due = """
            SELECT id FROM feed
            WHERE next_check <= ?
              AND EXISTS (SELECT 1 FROM subscriber AS s WHERE s.feed_id = feed.id)
        """
        feed_rows = self._fetchall(
            f"""
            SELECT id, url, last_check, next_check, etag FROM feed
            WHERE id IN ({due})
            ORDER BY next_check ASC, url ASC
            """,
            (cutoff,),
        )
        entry_rows = self._fetchall(
            f"SELECT feed_id, entry_id FROM entry WHERE feed_id IN ({due})",
            (cutoff,),
        )
        subscriber_rows = self._fetchall(
            f"SELECT feed_id, user FROM subscriber WHERE feed_id IN ({due}) ORDER BY rowid",
            (cutoff,),
        )
        feeds: dict[int, FeedRecord] = {}
        for row in feed_rows:
            feeds[int(row["id"])] = _row_to_feed(row)
        for row in entry_rows:
            feed = feeds.get(int(row["feed_id"]))
            if feed is not None:
                feed.seen_entries.add(row["entry_id"])
        for row in subscriber_rows:
            feed = feeds.get(int(row["feed_id"]))
            if feed is not None:
                feed.subscribers.append(bytes(row["user"]))
        return list(feeds.values())

    def update_feeds_and_entries(self, feeds: Iterable[FeedRecord]) -> int:
        """Write back cache state and seen entries for a cycle in one transaction.

        Feeds deleted since they were loaded are skipped.
        """
        feeds = list(feeds)
        updated = 0
        with self._transaction() as conn:
            for feed in feeds:
                row = conn.execute("SELECT id FROM feed WHERE url = ?", (feed.url,)).fetchone()
                if row is None:
                    continue
                feed_id = int(row[0])
                conn.execute(
                    "UPDATE feed SET last_check = ?, next_check = ?, etag = ? WHERE id = ?",
                    (
                        to_epoch(feed.last_fetch),
                        to_epoch(feed.next_fetch),
                        feed.cache_validator,
                        feed_id,
                    ),
                )
                if feed.cleared_entries:
                    conn.executemany(
                        "DELETE FROM entry WHERE feed_id = ? AND entry_id = ?",
                        [(feed_id, entry_id) for entry_id in feed.cleared_entries],
                    )
                conn.executemany(
                    "INSERT OR IGNORE INTO entry (feed_id, entry_id) VALUES (?, ?)",
                    [(feed_id, entry_id) for entry_id in feed.seen_entries],
                )
                updated += 1
        for feed in feeds:
            feed.cleared_entries.clear()
        return updated


def _row_to_feed(row: sqlite3.Row) -> FeedRecord:
    return FeedRecord(
        url=row["url"],
        last_fetch=from_epoch(row["last_check"]),
        next_fetch=from_epoch(row["next_check"]),
        cache_validator=row["etag"],
    )
