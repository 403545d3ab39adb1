from __future__ import annotations

from typing import Type

from .base import FeedEvent, ListingFeed, PollingFeed, Subscription, apply_descriptor
from .file import FileFeed
from .http import HttpFeed
from .memory import InMemoryFeed

FEED_REGISTRY: dict[str, Type[ListingFeed]] = {
    "memory": InMemoryFeed,
    "file": FileFeed,
    "http": HttpFeed,
}


def get_feed(name: str) -> Type[ListingFeed]:
    if name not in FEED_REGISTRY:
        raise ValueError(
            f"Unknown feed '{name}'. Available: {', '.join(FEED_REGISTRY)}"
        )
    return FEED_REGISTRY[name]


__all__ = [
    "FEED_REGISTRY",
    "FeedEvent",
    "FileFeed",
    "HttpFeed",
    "InMemoryFeed",
    "ListingFeed",
    "PollingFeed",
    "Subscription",
    "apply_descriptor",
    "get_feed",
]
