"""
Pairing store

Unknown direct-message senders receive a one-time code; an operator approves
the code and the sender's id lands in the channel's persisted allow-list.

Layout of the JSON document::

    {
      "version": 1,
      "channels": {
        "feishu": {
          "allow_from": ["ou_xxx"],
          "requests": [{"id": "ou_yyy", "code": "K7MQ2ZPA", "created_at": ..., "last_seen_at": ...}]
        }
      }
    }
"""

import secrets
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from logger import get_logger
from utils.app_paths import get_store_dir
from utils.json_file_store import JsonFileStore

logger = get_logger("gateway.pairing")

PAIRING_CODE_LENGTH = 8
# No 0/O or 1/I
PAIRING_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PAIRING_PENDING_TTL_MS = 60 * 60 * 1000
PAIRING_PENDING_MAX = 3

_STORE_FILE_NAME = "pairing.json"


class PairingRequest(BaseModel):
    channel: str
    id: str
    code: str
    created_at: int = Field(..., description="Epoch ms")
    last_seen_at: int = Field(..., description="Epoch ms")
    meta: Dict[str, str] = Field(default_factory=dict)


def _default_store_data() -> Dict[str, Any]:
    return {"version": 1, "channels": {}}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_channel(channel: str) -> str:
    return (channel or "").strip().lower()


def _channel_section(data: Dict[str, Any], channel: str) -> Dict[str, Any]:
    channels = data.setdefault("channels", {})
    if not isinstance(channels, dict):
        channels = {}
        data["channels"] = channels
    section = channels.setdefault(channel, {})
    if not isinstance(section.get("allow_from"), list):
        section["allow_from"] = []
    if not isinstance(section.get("requests"), list):
        section["requests"] = []
    return section


def generate_pairing_code(existing: Optional[set] = None) -> str:
    existing = existing or set()
    while True:
        code = "".join(secrets.choice(PAIRING_CODE_ALPHABET) for _ in range(PAIRING_CODE_LENGTH))
        if code not in existing:
            return code


def build_pairing_reply(channel: str, id_line: str, code: str) -> str:
    """Text sent to a sender whose pairing request was just created."""
    return "\n".join([
        "Access not configured.",
        "",
        id_line,
        "",
        f"Pairing code: {code}",
        "",
        "Ask the bot owner to approve with:",
        f"POST /api/v1/gateway/pairing/{channel}/approve {{\"code\": \"{code}\"}}",
    ])


class PairingStore:
    """
    Pending pairing requests and approved senders, per channel.

    Pending requests expire after ``PAIRING_PENDING_TTL_MS``; at most
    ``PAIRING_PENDING_MAX`` may be pending per channel at once.
    """

    def __init__(
        self,
        path: Optional[Path] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._path = path or (get_store_dir() / _STORE_FILE_NAME)
        self._store = JsonFileStore(path=self._path, default_factory=_default_store_data)
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._path

    def _prune_expired(self, section: Dict[str, Any], now: int) -> None:
        section["requests"] = [
            r for r in section["requests"]
            if isinstance(r, dict) and now - int(r.get("created_at", 0)) < PAIRING_PENDING_TTL_MS
        ]

    async def read_allow_from(self, channel: str) -> List[str]:
        """Approved sender ids for ``channel``."""
        data = await self._store.read_async()
        section = (data.get("channels") or {}).get(_normalize_channel(channel)) or {}
        entries = section.get("allow_from") or []
        return [str(e).strip() for e in entries if str(e).strip()]

    async def add_allow_from(self, channel: str, entry: str) -> bool:
        """Persist an allow-list entry. Returns False when already present."""
        channel = _normalize_channel(channel)
        entry = (entry or "").strip()
        if not entry:
            return False

        def _mutate(data: Dict[str, Any]) -> bool:
            section = _channel_section(data, channel)
            if entry in section["allow_from"]:
                return False
            section["allow_from"].append(entry)
            return True

        return await self._store.update_async(_mutate)

    async def upsert_pairing_request(
        self,
        channel: str,
        sender_id: str,
        meta: Optional[Dict[str, str]] = None,
    ) -> Tuple[str, bool]:
        """
        Create or refresh the pending request for ``sender_id``.

        Returns:
            (code, created). ``created`` is True only for a brand new
            request. When the channel already has the maximum number of
            pending requests the code is empty.
        """
        channel = _normalize_channel(channel)
        sender_id = (sender_id or "").strip()
        now = self._clock()

        def _mutate(data: Dict[str, Any]) -> Tuple[str, bool]:
            section = _channel_section(data, channel)
            self._prune_expired(section, now)
            requests = section["requests"]

            for request in requests:
                if request.get("id") == sender_id:
                    request["last_seen_at"] = now
                    if meta:
                        request.setdefault("meta", {}).update(meta)
                    return str(request.get("code", "")), False

            if len(requests) >= PAIRING_PENDING_MAX:
                return "", False

            code = generate_pairing_code({str(r.get("code")) for r in requests})
            requests.append({
                "id": sender_id,
                "code": code,
                "created_at": now,
                "last_seen_at": now,
                "meta": dict(meta or {}),
            })
            return code, True

        code, created = await self._store.update_async(_mutate)

        if created:
            logger.info("Pairing request created", extra={"channel": channel, "sender": sender_id})
        elif not code:
            logger.warning(
                "Pairing request limit reached",
                extra={"channel": channel, "sender": sender_id, "max_pending": PAIRING_PENDING_MAX},
            )
        return code, created

    async def list_requests(self, channel: str) -> List[PairingRequest]:
        """Pending, unexpired requests, oldest first."""
        channel = _normalize_channel(channel)
        now = self._clock()
        data = await self._store.read_async()
        section = (data.get("channels") or {}).get(channel) or {}
        result = []
        for raw in section.get("requests") or []:
            if not isinstance(raw, dict):
                continue
            if now - int(raw.get("created_at", 0)) >= PAIRING_PENDING_TTL_MS:
                continue
            result.append(PairingRequest(channel=channel, **raw))
        return sorted(result, key=lambda r: r.created_at)

    async def approve(self, channel: str, code: str) -> Optional[str]:
        """
        Approve a pending code.

        Returns:
            The approved sender id, or None when the code is unknown/expired
        """
        channel = _normalize_channel(channel)
        code = (code or "").strip().upper()
        if not code:
            return None
        now = self._clock()

        def _mutate(data: Dict[str, Any]) -> Optional[str]:
            section = _channel_section(data, channel)
            self._prune_expired(section, now)
            for i, request in enumerate(section["requests"]):
                if str(request.get("code", "")).upper() == code:
                    sender_id = str(request.get("id", ""))
                    del section["requests"][i]
                    if sender_id and sender_id not in section["allow_from"]:
                        section["allow_from"].append(sender_id)
                    return sender_id
            return None

        approved = await self._store.update_async(_mutate)

        if approved:
            logger.info("Pairing approved", extra={"channel": channel, "sender": approved})
        return approved
