# memory.py
# Bounded, append-only log of events and execution records.
#
# Storage is a FIFO ring: the oldest entry is evicted before a new one is
# appended once capacity is reached. Readers get a snapshot view and never
# see (or cause) mutation.

import asyncio
from collections import deque
from collections.abc import Iterator
from datetime import datetime
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from agent_runtime.errors import MemoryCorruption
from agent_runtime.models import ActionEntry, EventEntry, ExecutionStatus

logger = structlog.get_logger(__name__)


class MemoryFilter(BaseModel):
    """All set fields must match. An empty filter matches everything."""

    kind: Literal["event", "action"] | None = None
    name: str | None = Field(default=None, description="Event name (event entries only).")
    status: ExecutionStatus | None = Field(default=None, description="Record status (action entries only).")
    cycle_id: str | None = None
    since: datetime | None = None
    until: datetime | None = None
    limit: int | None = Field(default=None, ge=0, description="Keep only the most recent N matches.")

    def matches(self, entry: EventEntry | ActionEntry) -> bool:
        if self.kind is not None and entry.kind != self.kind:
            return False
        if self.name is not None and (entry.kind != "event" or entry.name != self.name):
            return False
        if self.status is not None and (entry.kind != "action" or entry.record.status != self.status):
            return False
        if self.cycle_id is not None and entry.cycle_id != self.cycle_id:
            return False
        if self.since is not None and entry.timestamp < self.since:
            return False
        if self.until is not None and entry.timestamp > self.until:
            return False
        return True


class MemoryView:
    """
    Lazy, finite, restartable sequence over a snapshot of memory.

    Each iteration walks the same snapshot again, so a view can be consumed
    any number of times and never reflects later appends.
    """

    def __init__(self, snapshot: tuple, flt: MemoryFilter) -> None:
        self._snapshot = snapshot
        self._filter = flt

    def __iter__(self) -> Iterator[EventEntry | ActionEntry]:
        if self._filter.limit is None:
            return (e for e in self._snapshot if self._filter.matches(e))
        return iter(self._tail(self._filter.limit))

    def _tail(self, limit: int) -> list[EventEntry | ActionEntry]:
        picked: list[EventEntry | ActionEntry] = []
        for entry in reversed(self._snapshot):
            if len(picked) >= limit:
                break
            if self._filter.matches(entry):
                picked.append(entry)
        picked.reverse()
        return picked

    def __len__(self) -> int:
        return sum(1 for _ in self)


class Memory:
    """
    Capacity-bounded memory with an optional persistence backend.

    append() always succeeds locally and never touches the backend. New
    entries wait in a write-behind batch until flush() or flush_async()
    hands them to the backend, the latter from a worker thread. If the
    backend fails, the failure is logged and the memory continues
    volatile-only.
    """

    def __init__(self, capacity: int = 1000, backend=None) -> None:
        if capacity < 1:
            raise ValueError("Memory capacity must be at least 1.")
        self._capacity = capacity
        self._entries: deque = deque()
        self._backend = backend
        self._backend_failed = False
        self._unsaved: list[EventEntry | ActionEntry] = []
        self._flush_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def append(self, entry: EventEntry | ActionEntry) -> None:
        if not isinstance(entry, (EventEntry, ActionEntry)):
            raise MemoryCorruption(f"Refusing to store {type(entry).__name__} in memory.")

        if len(self._entries) >= self._capacity:
            self._entries.popleft()
        self._entries.append(entry)

        if len(self._entries) > self._capacity:
            raise MemoryCorruption(
                f"Memory holds {len(self._entries)} entries, capacity is {self._capacity}."
            )

        if not self.volatile:
            self._unsaved.append(entry)

    def flush(self) -> int:
        """Write pending entries to the backend now. Returns how many were saved."""
        batch, self._unsaved = self._unsaved, []
        return self._save_batch(batch)

    async def flush_async(self) -> int:
        """Like flush(), but the backend runs in a worker thread, batches in order."""
        async with self._flush_lock:
            batch, self._unsaved = self._unsaved, []
            if not batch:
                return 0
            return await asyncio.to_thread(self._save_batch, batch)

    def _save_batch(self, batch: list[EventEntry | ActionEntry]) -> int:
        saved = 0
        for entry in batch:
            if self.volatile:
                break
            try:
                self._backend.save(entry)
            except Exception as exc:
                self._backend_failed = True
                logger.error(
                    "persistence_failed",
                    error=str(exc),
                    entry_id=entry.id,
                    unsaved=len(batch) - saved,
                    fallback="volatile",
                )
                break
            saved += 1
        return saved

    def restore(self, flt: MemoryFilter | None = None) -> int:
        """Load history from the backend. Returns the number of entries kept."""
        if self._backend is None:
            return 0
        try:
            history = list(self._backend.load_history(flt or MemoryFilter()))
        except Exception as exc:
            self._backend_failed = True
            logger.error("history_load_failed", error=str(exc), fallback="volatile")
            return 0

        history = history[-self._capacity:]
        self._entries = deque(history)
        return len(history)

    def clear(self) -> None:
        self._entries.clear()
        self._unsaved.clear()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query(self, flt: MemoryFilter | None = None) -> MemoryView:
        return MemoryView(tuple(self._entries), flt or MemoryFilter())

    def snapshot(self) -> list[EventEntry | ActionEntry]:
        return list(self._entries)

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def pending(self) -> int:
        """Entries appended but not yet handed to the backend."""
        return len(self._unsaved)

    @property
    def volatile(self) -> bool:
        """True when nothing is being persisted (no backend, or it failed)."""
        return self._backend is None or self._backend_failed

    def __len__(self) -> int:
        return len(self._entries)
