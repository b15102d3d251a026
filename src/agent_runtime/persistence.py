# persistence.py
# Optional persistence collaborator for Memory.
#
# Best effort only: a backend may lose the tail of its history on a crash.
# Memory treats any backend failure as a reason to go volatile-only.

import os
from collections.abc import Iterable
from typing import Protocol

import structlog
from pydantic import ValidationError

from agent_runtime.errors import PersistenceError
from agent_runtime.memory import MemoryFilter
from agent_runtime.models import ActionEntry, EventEntry, memory_entry_adapter

logger = structlog.get_logger(__name__)


class PersistenceBackend(Protocol):
    def save(self, entry: EventEntry | ActionEntry) -> None: ...

    def load_history(self, flt: MemoryFilter) -> Iterable[EventEntry | ActionEntry]: ...


class JsonlBackend:
    """Appends one JSON document per memory entry to a file."""

    def __init__(self, path: str) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def save(self, entry: EventEntry | ActionEntry) -> None:
        try:
            directory = os.path.dirname(os.path.abspath(self._path))
            os.makedirs(directory, exist_ok=True)
            with open(self._path, "a", encoding="utf-8") as fh:
                fh.write(entry.model_dump_json() + "\n")
        except OSError as exc:
            raise PersistenceError(f"Could not write {self._path}: {exc}") from exc

    def load_history(self, flt: MemoryFilter) -> list[EventEntry | ActionEntry]:
        """
        Read every stored entry matching `flt`, oldest first.

        Lines that no longer parse (a torn final write, manual edits) are
        skipped with a warning.
        """
        if not os.path.exists(self._path):
            return []

        try:
            with open(self._path, encoding="utf-8") as fh:
                lines = fh.readlines()
        except OSError as exc:
            raise PersistenceError(f"Could not read {self._path}: {exc}") from exc

        entries: list[EventEntry | ActionEntry] = []
        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = memory_entry_adapter.validate_json(line)
            except ValidationError:
                logger.warning("history_line_skipped", path=self._path, line=lineno)
                continue
            if flt.matches(entry):
                entries.append(entry)

        if flt.limit is not None:
            entries = entries[-flt.limit:] if flt.limit else []
        return entries
