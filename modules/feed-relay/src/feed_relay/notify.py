from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from .messages import new_entry
from .models import DeliveryOutcome, Entry, Subscriber


class Messenger(Protocol):
    def send(self, subscriber: Subscriber, text: str) -> DeliveryOutcome:
        ...


@dataclass
class DeliveryReport:
    entry: Entry
    delivered: int = 0
    unreachable: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        """True when nobody received the entry and at least one send failed.

        Unreachable recipients count as silent successes.
        """
        return self.failed > 0 and self.delivered == 0 and self.unreachable == 0


def deliver_entry(
    messenger: Messenger,
    entry: Entry,
    subscribers: list[Subscriber],
) -> DeliveryReport:
    report = DeliveryReport(entry=entry)
    text = new_entry(entry)
    for subscriber in subscribers:
        try:
            outcome = messenger.send(subscriber, text)
        except Exception as exc:
            outcome = "failed"
            report.errors.append(str(exc))
        if outcome == "delivered":
            report.delivered += 1
        elif outcome == "unreachable":
            report.unreachable += 1
        else:
            report.failed += 1
    return report
