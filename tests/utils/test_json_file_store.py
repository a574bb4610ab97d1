"""Locked, atomic JSON persistence."""

import asyncio
import json

from utils.json_file_store import JsonFileStore


def _store(tmp_path):
    return JsonFileStore(path=tmp_path / "nested" / "doc.json", default_factory=lambda: {"items": []})


class TestJsonFileStore:

    async def test_missing_file_returns_default(self, tmp_path):
        assert await _store(tmp_path).read_async() == {"items": []}

    async def test_write_then_read(self, tmp_path):
        store = _store(tmp_path)
        await store.write_async({"items": [1]})
        assert await store.read_async() == {"items": [1]}
        assert not (tmp_path / "nested" / "doc.json.tmp").exists()

    async def test_non_object_document_returns_default(self, tmp_path):
        store = _store(tmp_path)
        store.path.parent.mkdir(parents=True)
        store.path.write_text(json.dumps([1, 2]), encoding="utf-8")
        assert await store.read_async() == {"items": []}

    async def test_update_returns_mutator_result(self, tmp_path):
        store = _store(tmp_path)

        def add(data):
            data["items"].append("x")
            return len(data["items"])

        assert await store.update_async(add) == 1
        assert await store.update_async(add) == 2

    async def test_concurrent_updates_are_serialised(self, tmp_path):
        store = _store(tmp_path)

        def add(data):
            data["items"].append(len(data["items"]))

        await asyncio.gather(*(store.update_async(add) for _ in range(10)))
        assert (await store.read_async())["items"] == list(range(10))
