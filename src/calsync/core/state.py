"""Key-value state store used for durable engine data.

Values are any JSON-serialisable structure. Two implementations ship:

- ``InMemoryStateStore``: process-local dict, JSON round-tripped on write so
  callers see the same shapes a durable store would return.
- ``FileStateStore``: a single JSON document on disk holding every key.
  Writes go to a uniquely named temporary sibling and are renamed into place.
"""

from __future__ import annotations

import asyncio
import errno
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# errno values that mean "no room left" rather than a generic I/O failure.
_CAPACITY_ERRNOS = frozenset(
    code for code in (getattr(errno, "ENOSPC", None), getattr(errno, "EDQUOT", None)) if code
)


class StateStoreError(Exception):
    """Raised when the store cannot be read or written."""


class StorageQuotaExceededError(StateStoreError):
    """Raised when a write fails because the backing storage is full."""


@runtime_checkable
class StateStore(Protocol):
    """Async key-value store interface."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any) -> None: ...

    async def delete(self, key: str) -> None: ...


def decode_json_value(val: Any) -> Any:
    """Decode a stored value, handling potential double-encoding.

    A value that was accidentally stored as JSON text inside a JSON string
    needs a second pass.
    """
    if not isinstance(val, str):
        return val
    try:
        decoded = json.loads(val)
    except (json.JSONDecodeError, ValueError):
        return val
    if isinstance(decoded, str):
        logger.warning("Double-encoded state value detected; applying second decode pass")
        try:
            decoded = json.loads(decoded)
        except (json.JSONDecodeError, ValueError):
            pass
    return decoded


class InMemoryStateStore:
    """Dict-backed store for tests and ephemeral engines."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self._data[key] = json.dumps(value)

    async def get(self, key: str) -> Any | None:
        raw = self._data.get(key)
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any) -> None:
        try:
            self._data[key] = json.dumps(value)
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"Value for key {key!r} is not JSON-serialisable: {exc}") from exc

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class FileStateStore:
    """JSON-document store persisted at *path*.

    Blocking file I/O runs in a worker thread so the event loop keeps
    serving timers while the store is written. Every key shares one
    document, so writes are serialized: each one re-reads the document
    under ``_write_lock`` before replacing it.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def get(self, key: str) -> Any | None:
        document = await asyncio.to_thread(self._read_document)
        if key not in document:
            return None
        return decode_json_value(document[key])

    async def set(self, key: str, value: Any) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._update_document, key, value, False)

    async def delete(self, key: str) -> None:
        async with self._write_lock:
            await asyncio.to_thread(self._update_document, key, None, True)

    def _read_document(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateStoreError(f"Cannot read state file {self._path}: {exc}") from exc
        if not raw.strip():
            return {}
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"State file {self._path} is not valid JSON: {exc.msg}") from exc
        if not isinstance(document, dict):
            raise StateStoreError(f"State file {self._path} must contain a JSON object")
        return document

    def _update_document(self, key: str, value: Any, remove: bool) -> None:
        document = self._read_document()
        if remove:
            if key not in document:
                return
            document.pop(key)
        else:
            document[key] = value

        try:
            payload = json.dumps(document, indent=2, ensure_ascii=False)
        except (TypeError, ValueError) as exc:
            raise StateStoreError(f"Value for key {key!r} is not JSON-serialisable: {exc}") from exc

        tmp_name: str | None = None
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f"{self._path.name}.", suffix=".tmp", dir=self._path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload + "\n")
            os.replace(tmp_name, self._path)
        except OSError as exc:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            if exc.errno in _CAPACITY_ERRNOS:
                raise StorageQuotaExceededError(
                    f"No space left to write state file {self._path}"
                ) from exc
            raise StateStoreError(f"Cannot write state file {self._path}: {exc}") from exc
