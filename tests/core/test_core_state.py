"""Tests for calsync.core.state — key-value state stores."""

from __future__ import annotations

import asyncio
import errno
import json
from pathlib import Path
from unittest.mock import patch

import pytest

from calsync.core.state import (
    FileStateStore,
    InMemoryStateStore,
    StateStore,
    StateStoreError,
    StorageQuotaExceededError,
    decode_json_value,
)

pytestmark = pytest.mark.unit


# ------------------------------------------------------------------
# decode_json_value
# ------------------------------------------------------------------


class TestDecodeJsonValue:
    def test_passes_through_non_strings(self):
        assert decode_json_value({"a": 1}) == {"a": 1}
        assert decode_json_value([1, 2]) == [1, 2]

    def test_plain_string_is_kept(self):
        assert decode_json_value("hello") == "hello"

    def test_double_encoded_value_is_decoded(self):
        assert decode_json_value(json.dumps(json.dumps({"a": 1}))) == {"a": 1}


# ------------------------------------------------------------------
# InMemoryStateStore
# ------------------------------------------------------------------


class TestInMemoryStateStore:
    async def test_satisfies_protocol(self):
        assert isinstance(InMemoryStateStore(), StateStore)

    async def test_get_missing_key(self):
        assert await InMemoryStateStore().get("nope") is None

    async def test_set_get_delete(self):
        store = InMemoryStateStore()
        await store.set("k", {"nested": [1, 2, {"x": True}]})

        assert await store.get("k") == {"nested": [1, 2, {"x": True}]}
        await store.delete("k")
        assert await store.get("k") is None

    async def test_returned_values_are_copies(self):
        store = InMemoryStateStore()
        await store.set("k", {"items": []})

        value = await store.get("k")
        value["items"].append(1)

        assert await store.get("k") == {"items": []}

    async def test_non_serialisable_value_raises(self):
        with pytest.raises(StateStoreError):
            await InMemoryStateStore().set("k", {"when": object()})

    async def test_delete_missing_key_is_noop(self):
        await InMemoryStateStore().delete("nope")

    async def test_initial_values_and_keys(self):
        store = InMemoryStateStore({"b": 1, "a": 2})
        assert store.keys() == ["a", "b"]
        assert await store.get("a") == 2


# ------------------------------------------------------------------
# FileStateStore
# ------------------------------------------------------------------


class TestFileStateStore:
    async def test_satisfies_protocol(self, tmp_path: Path):
        assert isinstance(FileStateStore(tmp_path / "state.json"), StateStore)

    async def test_missing_file_reads_empty(self, tmp_path: Path):
        assert await FileStateStore(tmp_path / "state.json").get("k") is None

    async def test_persists_across_instances(self, tmp_path: Path):
        path = tmp_path / "nested" / "state.json"
        await FileStateStore(path).set("k", [1, 2, 3])

        assert await FileStateStore(path).get("k") == [1, 2, 3]
        assert json.loads(path.read_text()) == {"k": [1, 2, 3]}
        assert list(path.parent.glob("*.tmp")) == []

    async def test_keeps_other_keys(self, tmp_path: Path):
        store = FileStateStore(tmp_path / "state.json")
        await store.set("a", 1)
        await store.set("b", 2)
        await store.delete("a")

        assert await store.get("a") is None
        assert await store.get("b") == 2

    async def test_concurrent_writes_keep_every_key(self, tmp_path: Path):
        store = FileStateStore(tmp_path / "state.json")

        await asyncio.gather(*(store.set(f"key-{i}", i) for i in range(20)))

        for i in range(20):
            assert await store.get(f"key-{i}") == i
        assert list(tmp_path.glob("*.tmp")) == []

    async def test_concurrent_set_and_delete(self, tmp_path: Path):
        store = FileStateStore(tmp_path / "state.json")
        await store.set("logs", [1])

        await asyncio.gather(store.delete("logs"), store.set("cache", {"events": {}}))

        assert await store.get("logs") is None
        assert await store.get("cache") == {"events": {}}

    async def test_empty_file_reads_empty(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("  \n")
        assert await FileStateStore(path).get("k") is None

    async def test_corrupt_file_raises(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("{not json")
        with pytest.raises(StateStoreError):
            await FileStateStore(path).get("k")

    async def test_non_object_document_raises(self, tmp_path: Path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2]")
        with pytest.raises(StateStoreError):
            await FileStateStore(path).get("k")

    async def test_non_serialisable_value_raises(self, tmp_path: Path):
        with pytest.raises(StateStoreError):
            await FileStateStore(tmp_path / "state.json").set("k", object())

    async def test_disk_full_raises_quota_error(self, tmp_path: Path):
        store = FileStateStore(tmp_path / "state.json")
        with patch("calsync.core.state.os.replace", side_effect=OSError(errno.ENOSPC, "full")):
            with pytest.raises(StorageQuotaExceededError):
                await store.set("k", 1)

    async def test_other_write_errors_raise_store_error(self, tmp_path: Path):
        store = FileStateStore(tmp_path / "state.json")
        with patch("calsync.core.state.os.replace", side_effect=OSError(errno.EACCES, "denied")):
            with pytest.raises(StateStoreError) as exc_info:
                await store.set("k", 1)

        assert not isinstance(exc_info.value, StorageQuotaExceededError)
        assert list(tmp_path.glob("*.tmp")) == []
