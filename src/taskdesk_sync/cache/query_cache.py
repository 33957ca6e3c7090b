# src/taskdesk_sync/cache/query_cache.py

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from ..core.ports import QueryKey

logger = logging.getLogger(__name__)


class QueryCache:
    """
    In-memory query cache, keyed by API path tuples.

    Mirrors what the UI cache offers the realtime layer: read a cached query,
    replace it through an updater function, or mark it stale so the next reader
    refetches. Stale keys are tracked in `stale` until fresh data is set.
    """

    def __init__(self) -> None:
        self._data: dict[QueryKey, Any] = {}
        self.stale: set[QueryKey] = set()
        self._listeners: list[Callable[[QueryKey], None]] = []

    def subscribe(self, listener: Callable[[QueryKey], None]) -> None:
        """Listener is called with the key after every set/invalidate."""
        self._listeners.append(listener)

    def _notify(self, key: QueryKey) -> None:
        for listener in list(self._listeners):
            try:
                listener(key)
            except Exception:
                logger.exception("Cache listener failed key=%s", key)

    def get_query_data(self, key: QueryKey) -> Any:
        return self._data.get(key)

    def set_query_data(self, key: QueryKey, updater: Callable[[Any], Any]) -> Any:
        new_value = updater(self._data.get(key))
        self._data[key] = new_value
        self.stale.discard(key)
        self._notify(key)
        return new_value

    def invalidate_queries(self, key: QueryKey) -> None:
        self.stale.add(key)
        logger.debug("Cache invalidated key=%s", key)
        self._notify(key)

    def keys(self) -> Iterable[QueryKey]:
        return list(self._data)


def channel_messages_key(channel_id: Any) -> QueryKey:
    return (f"/api/channels/{channel_id}/messages",)


def channel_key(channel_id: Any) -> QueryKey:
    return (f"/api/channels/{channel_id}",)


def channel_members_key(channel_id: Any) -> QueryKey:
    return (f"/api/channels/{channel_id}/members",)


CHANNELS_KEY: QueryKey = ("/api/channels",)
CONVERSATIONS_KEY: QueryKey = ("/api/direct-messages/conversations",)


def direct_messages_key(other_user_id: Any) -> QueryKey:
    return (f"/api/direct-messages/{other_user_id}",)
