from __future__ import annotations

from .models import Entry

WELCOME = (
    "Hi, I'm feed-relay. I watch web feeds and send you their new entries.\n\n"
    "To get started, /add <FEED URL>. If you get tired of the feed, use /rm <FEED URL>. "
    "You can view what feeds you're subscribed to with /ls."
)

NO_URL = "You need to include a (valid) URL after the command."

NO_FEEDS = "You're not subscribed to any feeds. Use /add <FEED URL> to subscribe to one."


def add_ok(url: str) -> str:
    return f"Added {url} to your list of feeds."


def add_err(url: str, error: Exception) -> str:
    return f"Failed to add {url} to your list of feeds: {error}."


def del_ok(url: str) -> str:
    return f"You will no longer receive updates from {url}."


def del_err(url: str) -> str:
    return f"You were not subscribed to {url}!"


def feed_list(urls: list[str]) -> str:
    if not urls:
        return NO_FEEDS
    lines = ["These are your feeds:"]
    lines.extend(f"• {url}" for url in urls)
    return "\n".join(lines)


def new_entry(entry: Entry) -> str:
    title = entry.title or "(untitled)"
    link = entry.link or "(no online url)"
    return f"{title}\n{link}"
