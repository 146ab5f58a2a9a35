from __future__ import annotations

import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator, TextIO

import requests

from .http import create_session
from .models import DeliveryOutcome, Subscriber

API_ROOT = "https://api.telegram.org"
LONG_POLL_SECONDS = 30
UNREACHABLE_DESCRIPTIONS = ("chat not found", "user is deactivated", "bot was blocked")


class TelegramError(Exception):
    pass


def pack_chat(chat_id: int) -> Subscriber:
    return str(int(chat_id)).encode("ascii")


def unpack_chat(subscriber: Subscriber) -> int:
    return int(subscriber.decode("ascii"))


@dataclass(frozen=True)
class IncomingMessage:
    update_id: int
    chat_id: int
    text: str


class TelegramMessenger:
    """Bot API client safe to share between dispatch workers.

    Without an explicit ``session`` every concurrent call checks out its own
    ``requests.Session`` from a small pool; ``close`` releases them all.
    """

    def __init__(
        self,
        token: str,
        session: requests.Session | None = None,
        timeout: int = 20,
    ) -> None:
        self.token = token
        self.timeout = timeout
        self._shared = session
        self._idle: list[requests.Session] = []
        self._created: list[requests.Session] = []
        self._lock = threading.Lock()

    def send(self, subscriber: Subscriber, text: str) -> DeliveryOutcome:
        return self.send_to_chat(unpack_chat(subscriber), text)

    def send_to_chat(self, chat_id: int, text: str) -> DeliveryOutcome:
        try:
            with self._session() as session:
                response = session.post(
                    self._method_url("sendMessage"),
                    json={"chat_id": chat_id, "text": text},
                    timeout=self.timeout,
                )
        except requests.RequestException:
            return "failed"
        if response.status_code == 200:
            return "delivered"
        if _is_unreachable(response):
            return "unreachable"
        return "failed"

    def get_updates(
        self, offset: int | None = None
    ) -> tuple[list[IncomingMessage], int | None]:
        """Long-poll for private text messages; returns them with the next offset."""
        params: dict[str, Any] = {"timeout": LONG_POLL_SECONDS}
        if offset is not None:
            params["offset"] = offset
        try:
            with self._session() as session:
                response = session.get(
                    self._method_url("getUpdates"),
                    params=params,
                    timeout=LONG_POLL_SECONDS + self.timeout,
                )
            response.raise_for_status()
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            raise TelegramError(f"getUpdates failed: {exc}") from exc
        if not payload.get("ok"):
            raise TelegramError(f"getUpdates failed: {payload.get('description')}")
        messages: list[IncomingMessage] = []
        next_offset = offset
        for update in payload.get("result") or []:
            next_offset = max(next_offset or 0, int(update["update_id"]) + 1)
            message = _private_message(update)
            if message is not None:
                messages.append(message)
        return messages, next_offset

    def close(self) -> None:
        with self._lock:
            sessions, self._created, self._idle = self._created, [], []
        for session in sessions:
            session.close()

    @contextmanager
    def _session(self) -> Iterator[requests.Session]:
        if self._shared is not None:
            yield self._shared
            return
        with self._lock:
            session = self._idle.pop() if self._idle else None
        if session is None:
            session = create_session()
            with self._lock:
                self._created.append(session)
        try:
            yield session
        finally:
            with self._lock:
                self._idle.append(session)

    def _method_url(self, method: str) -> str:
        return f"{API_ROOT}/bot{self.token}/{method}"


class ConsoleMessenger:
    """Prints deliveries instead of sending them; used by ``poll --dry-run``."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self.stream = stream or sys.stdout

    def send(self, subscriber: Subscriber, text: str) -> DeliveryOutcome:
        handle = subscriber.decode("utf-8", errors="replace")
        self.stream.write(f"[{handle}] {text}\n")
        return "delivered"


def _is_unreachable(response: requests.Response) -> bool:
    if response.status_code == 403:
        return True
    if response.status_code != 400:
        return False
    try:
        description = str(response.json().get("description") or "").lower()
    except ValueError:
        return False
    return any(marker in description for marker in UNREACHABLE_DESCRIPTIONS)


def _private_message(update: dict[str, Any]) -> IncomingMessage | None:
    message = update.get("message")
    if not isinstance(message, dict):
        return None
    chat = message.get("chat") or {}
    if chat.get("type") != "private":
        return None
    text = message.get("text")
    if not text:
        return None
    return IncomingMessage(
        update_id=int(update["update_id"]),
        chat_id=int(chat["id"]),
        text=str(text),
    )
