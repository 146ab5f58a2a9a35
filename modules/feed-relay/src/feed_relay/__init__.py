"""Feed polling and delivery engine."""

from .dispatch import Dispatcher
from .fetcher import check_feed, subscribe_fetch
from .store import Store

__all__ = ["Dispatcher", "Store", "check_feed", "subscribe_fetch"]
