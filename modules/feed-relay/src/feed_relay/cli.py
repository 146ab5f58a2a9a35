from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import asdict
from pathlib import Path

from . import messages
from .commands import add_subscription
from .dispatch import Dispatcher
from .errors import PersistenceError, SchemaTooNewError
from .http import create_session
from .models import DispatchPolicy
from .paths import data_root
from .run_logger import RelayLogger, stderr_logger
from .runtime import serve
from .store import Store
from .telegram import ConsoleMessenger, TelegramMessenger, pack_chat

TOKEN_ENV = "FEED_RELAY_BOT_TOKEN"


def main() -> int:
    parser = argparse.ArgumentParser(prog="feed-relay")
    parser.add_argument("--root", type=Path, help="Data directory (default: module data/)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the bot and the polling loop")
    _add_token(serve_parser)
    _add_policy(serve_parser)

    poll_parser = subparsers.add_parser("poll", help="Run a single polling cycle")
    _add_token(poll_parser)
    _add_policy(poll_parser)
    poll_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print deliveries to stdout instead of sending them",
    )

    add_parser = subparsers.add_parser("add", help="Subscribe a chat to a feed")
    add_parser.add_argument("url")
    add_parser.add_argument("--chat", type=int, required=True)

    rm_parser = subparsers.add_parser("rm", help="Unsubscribe a chat from a feed")
    rm_parser.add_argument("url")
    rm_parser.add_argument("--chat", type=int, required=True)

    ls_parser = subparsers.add_parser("ls", help="List feeds a chat is subscribed to")
    ls_parser.add_argument("--chat", type=int, required=True)
    ls_parser.add_argument("--json", action="store_true", help="JSON output")

    subparsers.add_parser("cleanup", help="Delete feeds without subscribers")

    args = parser.parse_args()
    root = data_root(args.root)

    try:
        return _run(args, root)
    except SchemaTooNewError as exc:
        print(f"refusing to start: {exc}", file=sys.stderr)
        return 3
    except PersistenceError as exc:
        print(f"store unavailable: {exc}", file=sys.stderr)
        return 4


def _run(args: argparse.Namespace, root: Path) -> int:
    if args.command == "serve":
        if not args.token:
            print(f"a bot token is required (--token or {TOKEN_ENV})", file=sys.stderr)
            return 2
        return serve(root, args.token, stderr_logger(root), _policy(args))

    store = Store(root=root)
    try:
        if args.command == "poll":
            if args.dry_run:
                messenger = ConsoleMessenger()
            elif args.token:
                messenger = TelegramMessenger(args.token)
            else:
                print(f"a bot token is required (--token or {TOKEN_ENV})", file=sys.stderr)
                return 2
            dispatcher = Dispatcher(store, messenger, RelayLogger(root), _policy(args))
            try:
                report = dispatcher.run_cycle()
            finally:
                if isinstance(messenger, TelegramMessenger):
                    messenger.close()
            print(json.dumps(asdict(report), ensure_ascii=False, indent=2))
            return 0

        if args.command == "add":
            session = create_session()
            try:
                reply = add_subscription(args.url, pack_chat(args.chat), store, session)
            finally:
                session.close()
            print(reply)
            return 0 if reply == messages.add_ok(args.url) else 1

        if args.command == "rm":
            if store.remove_subscriber(args.url, pack_chat(args.chat)):
                print(messages.del_ok(args.url))
                return 0
            print(messages.del_err(args.url), file=sys.stderr)
            return 1

        if args.command == "ls":
            urls = store.list_subscriptions(pack_chat(args.chat))
            if args.json:
                print(json.dumps(urls, ensure_ascii=False, indent=2))
            else:
                print(messages.feed_list(urls))
            return 0

        if args.command == "cleanup":
            removed = store.cleanup_feeds()
            print(f"removed {removed} feeds without subscribers")
            return 0
    finally:
        store.close()

    return 1


def _add_token(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--token",
        default=os.environ.get(TOKEN_ENV),
        help=f"Telegram bot token (default: ${TOKEN_ENV})",
    )


def _add_policy(parser: argparse.ArgumentParser) -> None:
    defaults = DispatchPolicy()
    parser.add_argument("--interval", type=float, default=defaults.interval_sec)
    parser.add_argument("--concurrency", type=int, default=defaults.concurrency)
    parser.add_argument(
        "--on-undeliverable",
        choices=["retry", "drop"],
        default=defaults.on_undeliverable,
        help="What to do with entries no subscriber could receive",
    )
    parser.add_argument("--cleanup-every", type=int, default=defaults.cleanup_every)
    parser.add_argument("--timeout", type=int, default=defaults.timeout_sec)


def _policy(args: argparse.Namespace) -> DispatchPolicy:
    return DispatchPolicy(
        interval_sec=args.interval,
        concurrency=args.concurrency,
        on_undeliverable=args.on_undeliverable,
        cleanup_every=args.cleanup_every,
        timeout_sec=args.timeout,
    )


if __name__ == "__main__":
    sys.exit(main())
