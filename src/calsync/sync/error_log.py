"""Bounded, persisted journal of classified sync errors.

The whole sequence lives under a single store key and is rewritten on every
append. The log is best-effort: no operation raises, store failures are
logged and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError

from calsync.core.state import StateStore
from calsync.sync.errors import ClassifiedError

logger = logging.getLogger(__name__)

ERROR_LOG_KEY = "calendar_error_logs"
ERROR_LOG_CAPACITY = 100
DEFAULT_CONTEXT = "calendar_sync"


class ErrorLogEntry(BaseModel):
    """One journal entry; ``error`` is a ``ClassifiedError`` snapshot."""

    model_config = ConfigDict(extra="ignore")

    timestamp: str  # ISO-8601 UTC timestamp
    context: str
    error: dict[str, Any]


class ErrorLog:
    """FIFO error journal capped at ``capacity`` entries."""

    def __init__(
        self,
        store: StateStore,
        *,
        key: str = ERROR_LOG_KEY,
        capacity: int = ERROR_LOG_CAPACITY,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._store = store
        self._key = key
        self._capacity = capacity
        # Appends and clears are read-modify-write on one key.
        self._lock = asyncio.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    async def record(self, error: ClassifiedError, context: str | None = None) -> ErrorLogEntry:
        """Stamp *error* with the current time and append it."""
        entry = ErrorLogEntry(
            timestamp=datetime.now(UTC).isoformat(),
            context=context or DEFAULT_CONTEXT,
            error=error.snapshot(),
        )
        logger.error(
            "Calendar error recorded (context=%s, code=%s): %s",
            entry.context,
            error.code,
            error.details.get("original_error") or error.details.get("response") or "",
        )
        await self.append(entry)
        return entry

    async def append(self, entry: ErrorLogEntry) -> None:
        async with self._lock:
            entries = await self.read_all()
            entries.append(entry)
            if len(entries) > self._capacity:
                del entries[: len(entries) - self._capacity]
            payload = [item.model_dump(mode="json") for item in entries]
            try:
                await self._store.set(self._key, payload)
            except Exception as exc:
                logger.warning("Failed to persist calendar error log: %s", exc)

    async def read_all(self) -> list[ErrorLogEntry]:
        try:
            raw = await self._store.get(self._key)
        except Exception as exc:
            logger.warning("Failed to read calendar error log: %s", exc)
            return []
        if raw is None:
            return []
        if not isinstance(raw, list):
            logger.warning("Calendar error log is corrupt (expected a list); ignoring it")
            return []
        try:
            return [ErrorLogEntry.model_validate(item) for item in raw]
        except ValidationError as exc:
            logger.warning("Calendar error log is corrupt; ignoring it: %s", exc)
            return []

    async def clear(self) -> None:
        async with self._lock:
            try:
                await self._store.delete(self._key)
            except Exception as exc:
                logger.warning("Failed to clear calendar error log: %s", exc)
