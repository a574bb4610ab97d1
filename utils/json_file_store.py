"""
JSON file store
------------------------------------------------------------
Small persistent state (pairing requests, session metadata) kept in plain
JSON files instead of a database.

- an asyncio.Lock plus a POSIX flock on a sibling ``.lock`` file serialise
  read-modify-write within and across processes
- writes go to a temp file and are swapped in with ``os.replace``
- fully async (aiofiles + asyncio.to_thread for the blocking bits)
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, TypeVar

import aiofiles

from logger import get_logger

logger = get_logger("utils.json_file_store")

T = TypeVar("T")


@dataclass
class JsonFileStore:
    """A JSON document on disk with locked, atomic updates."""

    path: Path
    default_factory: Callable[[], Dict[str, Any]]
    # in-process writers queue here before taking the file lock
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False, compare=False)

    def _ensure_parent_dir(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _lock_file(self):
        """
        Open and lock the companion lock file.

        A separate lock file keeps the JSON document itself replaceable while
        the lock is held.
        """
        lock_path = self.path.with_suffix(self.path.suffix + ".lock")
        self._ensure_parent_dir()
        f = open(lock_path, "a+", encoding="utf-8")
        try:
            import fcntl  # POSIX only

            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
        except ImportError:
            # no flock on this platform; the asyncio.Lock still covers this process
            pass
        return f

    @staticmethod
    def _unlock_file(f) -> None:
        try:
            import fcntl

            fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except ImportError:
            pass
        finally:
            f.close()

    async def read_async(self) -> Dict[str, Any]:
        """Read the document, or the default structure when absent or unreadable."""
        if not self.path.exists():
            return self.default_factory()

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                raw = await f.read()
        except OSError as e:
            logger.warning(
                "JSON store read failed",
                extra={"path": str(self.path), "error": str(e)},
            )
            return self.default_factory()

        if not raw.strip():
            return self.default_factory()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(
                "JSON store is corrupt, using defaults",
                extra={"path": str(self.path), "error": str(e)},
            )
            return self.default_factory()

        if isinstance(data, dict):
            return data
        return self.default_factory()

    async def write_async(self, data: Dict[str, Any]) -> None:
        """Atomic write."""
        self._ensure_parent_dir()

        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        payload = json.dumps(data, ensure_ascii=False, indent=2)
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        await asyncio.to_thread(os.replace, tmp_path, self.path)

    async def update_async(self, mutator: Callable[[Dict[str, Any]], T]) -> T:
        """
        Locked read-modify-write.

        ``mutator`` receives the current document, may modify it in place,
        and its return value is passed back to the caller.
        """
        async with self._lock:
            lock_f = await asyncio.to_thread(self._lock_file)
            try:
                data = await self.read_async()
                result = mutator(data)
                await self.write_async(data)
                return result
            finally:
                await asyncio.to_thread(self._unlock_file, lock_f)
