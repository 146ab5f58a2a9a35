from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Literal

from .expiry import DEFAULT_FETCH_DELAY
from .timestamps import EPOCH

DeliveryOutcome = Literal["delivered", "unreachable", "failed"]
UndeliverablePolicy = Literal["retry", "drop"]
Subscriber = bytes


@dataclass(frozen=True)
class Entry:
    id: str
    title: str | None = None
    link: str | None = None


@dataclass
class FeedRecord:
    url: str
    subscribers: list[Subscriber] = field(default_factory=list)
    seen_entries: set[str] = field(default_factory=set)
    last_fetch: datetime = EPOCH
    next_fetch: datetime = EPOCH
    cache_validator: str | None = None
    cleared_entries: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        # subscribers behave as an ordered set
        self.subscribers = list(dict.fromkeys(self.subscribers))

    def mark_seen(self, entry_id: str) -> None:
        self.seen_entries.add(entry_id)
        self.cleared_entries.discard(entry_id)

    def reset_entries(self, entries: Iterable[Entry]) -> None:
        """Rewind cache state so the given entries are fetched and delivered again."""
        cleared = {entry.id for entry in entries}
        self.last_fetch = EPOCH
        self.cache_validator = None
        self.seen_entries -= cleared
        self.cleared_entries |= cleared

    def reset_expiry(self, now: datetime) -> None:
        self.next_fetch = now + DEFAULT_FETCH_DELAY


@dataclass
class DispatchPolicy:
    interval_sec: float = 60.0
    concurrency: int = 8
    on_undeliverable: UndeliverablePolicy = "retry"
    cleanup_every: int = 60
    timeout_sec: int = 20
