"""
Session store

Per-agent JSON file of session metadata keyed by session key. The gateway
only keeps bookkeeping here (last activity, origin, labels), never the
message history itself.

Stores are cached per path so every writer of a file shares one lock.
"""

import time
from pathlib import Path
from typing import Any, Dict, Optional

from logger import get_logger
from utils.app_paths import get_store_dir
from utils.json_file_store import JsonFileStore

from core.gateway.types import RoutingContext

logger = get_logger("gateway.session_store")

DEFAULT_AGENT_ID = "main"


def _default_store_data() -> Dict[str, Any]:
    return {"version": 1, "sessions": {}}


def _normalize_segment(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    normalized = str(value).strip()
    if not normalized or normalized.lower() in {"none", "null"}:
        return None
    return normalized


class SessionStore:
    """Session metadata persisted per agent."""

    def __init__(self, base_dir: Optional[Path] = None) -> None:
        self._base_dir = base_dir
        self._stores: Dict[Path, JsonFileStore] = {}

    def resolve_store_path(self, store: Optional[str], agent_id: Optional[str] = None) -> Path:
        """
        Path of an agent's session file.

        ``store`` may contain ``{agent_id}`` and ``~``; when unset the file
        lives under the data directory as ``sessions/<agent_id>.json``.
        """
        agent = _normalize_segment(agent_id) or DEFAULT_AGENT_ID
        if store and store.strip():
            return Path(store.strip().replace("{agent_id}", agent)).expanduser()
        base = self._base_dir or get_store_dir()
        return base / "sessions" / f"{agent}.json"

    def _get_store(self, path: Path) -> JsonFileStore:
        store = self._stores.get(path)
        if store is None:
            store = JsonFileStore(path=path, default_factory=_default_store_data)
            self._stores[path] = store
        return store

    async def get_session(self, store_path: Path, session_key: str) -> Optional[Dict[str, Any]]:
        data = await self._get_store(store_path).read_async()
        entry = (data.get("sessions") or {}).get(session_key)
        return entry if isinstance(entry, dict) else None

    async def read_session_updated_at(self, store_path: Path, session_key: str) -> Optional[int]:
        """Last activity of a session in epoch ms; None when unknown or unreadable."""
        try:
            entry = await self.get_session(store_path, session_key)
        except Exception as e:
            logger.warning(
                "Session store read failed",
                extra={"store_path": str(store_path), "error": str(e)},
            )
            return None
        if not entry:
            return None
        updated_at = entry.get("updated_at")
        return int(updated_at) if isinstance(updated_at, (int, float)) else None

    async def record_session_meta_from_inbound(
        self,
        store_path: Path,
        session_key: str,
        ctx: RoutingContext,
    ) -> Dict[str, Any]:
        """Update a session's metadata from an authorized inbound message."""
        now = int(time.time() * 1000)
        store = self._get_store(store_path)

        def _mutate(data: Dict[str, Any]) -> Dict[str, Any]:
            sessions = data.setdefault("sessions", {})
            entry = sessions.get(session_key)
            if not isinstance(entry, dict):
                entry = {"created_at": now}
            entry.update({
                "updated_at": ctx.timestamp or now,
                "agent_id": ctx.agent_id,
                "account_id": ctx.account_id,
                "chat_type": ctx.chat_type,
                "channel": ctx.provider,
                "label": ctx.conversation_label,
                "last_from": ctx.from_,
                "last_to": ctx.to,
                "last_message_id": ctx.message_id,
                "origin": {
                    "channel": ctx.originating_channel,
                    "to": ctx.originating_to,
                },
            })
            if ctx.group_space:
                entry["group_space"] = ctx.group_space
            sessions[session_key] = entry
            return dict(entry)

        entry = await store.update_async(_mutate)

        logger.debug(
            "Session meta recorded",
            extra={"session_key": session_key, "store_path": str(store_path)},
        )
        return entry
