# src/taskdesk_sync/realtime/outbound_queue.py

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from collections.abc import Awaitable, Callable
from typing import Any

from ..core.ports import KeyValueStore
from ..storage.kv_store import QUEUE_KEY
from .availability import AvailabilityMonitor
from .models import QueuedMessage, ReplayResult

logger = logging.getLogger(__name__)

Deliver = Callable[[Any], Awaitable[None]]
DroppedCallback = Callable[[QueuedMessage], None]

_MAX_WRITE_CONFLICTS = 5


class OutboundQueue:
    """
    Durable FIFO of messages that could not be delivered live.

    Write-through: every mutation is persisted before the method returns, so the
    stored snapshot always matches memory. Writes use compare_and_set against
    the last version this queue saw; if another process wrote in between, the
    stored snapshot is merged in and the write is retried (see _merge_remote).
    """

    def __init__(
        self,
        store: KeyValueStore,
        availability: AvailabilityMonitor,
        *,
        key: str = QUEUE_KEY,
        max_attempts: int = 5,
        replay_interval_seconds: float = 0.0,
        clock: Callable[[], float] = time.time,
        on_dropped: DroppedCallback | None = None,
    ) -> None:
        self._store = store
        self._availability = availability
        self._key = key
        self._max_attempts = max(1, int(max_attempts))
        self._interval = max(0.0, float(replay_interval_seconds))
        self._clock = clock
        self.on_dropped = on_dropped

        self._items: list[QueuedMessage] = []
        self._version = 0
        self._synced_ids: set[str] = set()
        self._removed_ids: set[str] = set()
        self._replaying = False

        self.load()

    # ---- state ----

    def __len__(self) -> int:
        return len(self._items)

    def items(self) -> list[QueuedMessage]:
        return list(self._items)

    @property
    def replaying(self) -> bool:
        return self._replaying

    def _decode_snapshot(self, raw: Any) -> list[QueuedMessage]:
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Stored queue %s is not a list; ignoring it", self._key)
            return []
        out: list[QueuedMessage] = []
        for entry in raw:
            msg = QueuedMessage.from_json(entry)
            if msg is None:
                logger.warning("Skipping unreadable queue entry: %r", entry)
                continue
            out.append(msg)
        return out

    def load(self) -> None:
        """(Re)load the queue from storage, replacing memory."""
        raw, version = self._store.get_versioned(self._key)
        self._items = self._decode_snapshot(raw)
        self._version = version
        self._synced_ids = {m.id for m in self._items}
        self._removed_ids.clear()
        if self._items:
            logger.info("Loaded %d pending messages from storage", len(self._items))

    # ---- persistence ----

    def _merge_remote(self) -> None:
        """
        Fold another writer's snapshot into memory.

        - items someone else added are adopted
        - items that were stored at our last sync and are gone now were removed
          elsewhere, so they are removed here too
        - items we removed stay removed
        Result is ordered by enqueue time.
        """
        raw, version = self._store.get_versioned(self._key)
        remote = self._decode_snapshot(raw)
        remote_ids = {m.id for m in remote}
        local_ids = {m.id for m in self._items}

        merged = [m for m in self._items if not (m.id in self._synced_ids and m.id not in remote_ids)]
        merged.extend(m for m in remote if m.id not in local_ids and m.id not in self._removed_ids)
        merged.sort(key=lambda m: m.enqueued_at)

        logger.info(
            "Merged stored queue: %d stored with %d local -> %d",
            len(remote),
            len(self._items),
            len(merged),
        )
        self._items = merged
        self._version = version
        self._synced_ids = remote_ids

    def _sync_from_store(self) -> None:
        """Pick up writes made by another process since our last read or write."""
        _raw, version = self._store.get_versioned(self._key)
        if version != self._version:
            self._merge_remote()

    def _persist(self) -> None:
        for _ in range(_MAX_WRITE_CONFLICTS):
            snapshot = [m.to_json() for m in self._items]
            try:
                written = self._store.compare_and_set(
                    self._key, snapshot, expected_version=self._version
                )
            except sqlite3.Error:
                logger.exception("Failed to persist outbound queue (%d items)", len(self._items))
                return
            if written:
                self._version += 1
                self._synced_ids = {m.id for m in self._items}
                self._removed_ids.clear()
                return
            self._merge_remote()
        logger.error("Outbound queue not persisted: %d conflicting writes in a row", _MAX_WRITE_CONFLICTS)

    def _remove(self, msg: QueuedMessage) -> None:
        self._items = [m for m in self._items if m.id != msg.id]
        self._removed_ids.add(msg.id)

    # ---- public API ----

    def enqueue(self, kind: str, payload: Any) -> QueuedMessage:
        if not kind:
            raise ValueError("kind is required")
        # Reject non-JSON payloads here rather than at persist time.
        json.dumps(payload)

        msg = QueuedMessage(kind=kind, payload=payload, enqueued_at=self._clock())
        self._items.append(msg)
        self._persist()
        logger.info("Queued %s for later delivery (%d pending)", kind, len(self._items))
        return msg

    async def replay(self, deliver: Deliver, *, force: bool = False) -> ReplayResult:
        """
        Re-attempt every queued message in enqueue order.

        - store known down and not forced: do nothing
        - success: message removed
        - failure: attempts += 1; kept while attempts < max_attempts, dropped otherwise
        Messages enqueued while a replay runs are left for the next replay.
        """
        if not force and not self._availability.is_available():
            logger.info("Data store unavailable, skipping queue replay (%d pending)", len(self._items))
            return ReplayResult(skipped=True)

        if self._replaying:
            logger.debug("Replay already running, skipping")
            return ReplayResult(skipped=True)

        result = ReplayResult()
        self._sync_from_store()
        batch = list(self._items)
        if not batch:
            return result

        logger.info("Replaying %d queued messages%s", len(batch), " (forced)" if force else "")
        self._replaying = True
        try:
            for i, item in enumerate(batch):
                if i and self._interval:
                    await asyncio.sleep(self._interval)

                # A concurrent writer may have removed it during a merge.
                if not any(m.id == item.id for m in self._items):
                    continue

                try:
                    await deliver(item.payload)
                except Exception as e:
                    item.attempts += 1
                    item.last_attempt_at = self._clock()
                    if item.attempts < self._max_attempts:
                        logger.warning(
                            "Replay of %s failed (attempt %d/%d): %r",
                            item.kind,
                            item.attempts,
                            self._max_attempts,
                            e,
                        )
                        result.retained.append(item)
                    else:
                        logger.error(
                            "Dropping %s after %d failed attempts (enqueued at %s)",
                            item.kind,
                            item.attempts,
                            item.enqueued_at,
                        )
                        self._remove(item)
                        result.dropped.append(item)
                else:
                    self._remove(item)
                    result.delivered.append(item)

                self._persist()
        finally:
            self._replaying = False

        for item in result.dropped:
            if self.on_dropped is not None:
                try:
                    self.on_dropped(item)
                except Exception:
                    logger.exception("on_dropped callback failed")

        logger.info(
            "Replay finished: %d delivered, %d pending, %d dropped",
            len(result.delivered),
            len(self._items),
            len(result.dropped),
        )
        return result
