from __future__ import annotations

import signal
import threading
from pathlib import Path
from typing import Any

import requests

from .commands import handle_command
from .dispatch import Dispatcher
from .http import create_session
from .models import DispatchPolicy
from .run_logger import RelayLogger
from .store import Store
from .telegram import IncomingMessage, TelegramError, TelegramMessenger, pack_chat

UPDATE_RETRY_SECONDS = 5.0


class RunSignalHandler:
    """Turns SIGINT/SIGTERM into ``stop_event`` while the block is active."""

    def __init__(self, logger: RelayLogger, stop_event: threading.Event) -> None:
        self._logger = logger
        self._stop_event = stop_event
        self._previous_handlers: dict[int, Any] = {}
        self.interrupted = False

    def __enter__(self) -> "RunSignalHandler":
        self._install(signal.SIGTERM)
        self._install(signal.SIGINT)
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        return False

    def _install(self, signum: signal.Signals) -> None:
        self._previous_handlers[int(signum)] = signal.getsignal(signum)
        signal.signal(signum, self._handle)

    def _handle(self, signum, frame) -> None:
        self.interrupted = True
        name = signal.Signals(signum).name
        self._logger.log(f"shutdown requested signal={name}")
        self._stop_event.set()


def dispatch_loop(
    root: Path,
    token: str,
    logger: RelayLogger,
    policy: DispatchPolicy,
    stop_event: threading.Event,
    errors: list[Exception],
) -> None:
    # the store connection has to be opened on this thread
    store = Store(root=root)
    messenger = TelegramMessenger(token, timeout=policy.timeout_sec)
    try:
        Dispatcher(store, messenger, logger, policy).run_forever(stop_event)
    except Exception as exc:
        logger.log(f"dispatch error={exc!r}")
        errors.append(exc)
        stop_event.set()
    finally:
        messenger.close()
        store.close()


def command_loop(
    root: Path,
    token: str,
    logger: RelayLogger,
    stop_event: threading.Event,
    timeout: int = 20,
) -> None:
    store = Store(root=root)
    messenger = TelegramMessenger(token, timeout=timeout)
    session = create_session()
    offset: int | None = None
    try:
        while not stop_event.is_set():
            try:
                incoming, offset = messenger.get_updates(offset)
            except TelegramError as exc:
                logger.failure({"stage": "updates", "error": str(exc)})
                stop_event.wait(UPDATE_RETRY_SECONDS)
                continue
            for message in incoming:
                answer_message(message, store, session, messenger, logger)
    finally:
        session.close()
        messenger.close()
        store.close()


def answer_message(
    message: IncomingMessage,
    store: Store,
    session: requests.Session,
    messenger: TelegramMessenger,
    logger: RelayLogger,
) -> None:
    """Reply to one chat message; a failing command is recorded and skipped."""
    try:
        reply = handle_command(message.text, pack_chat(message.chat_id), store, session)
    except Exception as exc:
        logger.failure(
            {"stage": "command", "chat_id": message.chat_id, "text": message.text, "error": repr(exc)}
        )
        return
    if reply is None:
        return
    logger.log(f"command chat={message.chat_id} text={message.text.split()[0]}")
    if messenger.send_to_chat(message.chat_id, reply) != "delivered":
        logger.failure({"stage": "reply", "chat_id": message.chat_id})


def serve(
    root: Path,
    token: str,
    logger: RelayLogger,
    policy: DispatchPolicy | None = None,
) -> int:
    """Run command handling and the dispatch loop until a signal or a fatal error."""
    policy = policy or DispatchPolicy()
    startup_store = Store(root=root)
    removed = startup_store.cleanup_feeds()
    feeds = startup_store.count_feeds()
    startup_store.close()
    logger.log(f"serve started feeds={feeds} removed_feeds={removed}")

    stop_event = threading.Event()
    errors: list[Exception] = []
    dispatcher = threading.Thread(
        target=dispatch_loop,
        args=(root, token, logger, policy, stop_event, errors),
        name="feed-relay-dispatch",
        daemon=True,
    )
    commands = threading.Thread(
        target=command_loop,
        args=(root, token, logger, stop_event, policy.timeout_sec),
        name="feed-relay-commands",
        daemon=True,
    )
    with RunSignalHandler(logger, stop_event):
        dispatcher.start()
        commands.start()
        while not stop_event.wait(1.0):
            pass
        dispatcher.join(timeout=policy.timeout_sec)
    logger.log(f"serve stopped errors={len(errors)}")
    return 1 if errors else 0
