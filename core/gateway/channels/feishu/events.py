"""
Inbound Feishu events

``im.message.receive_v1`` payloads are validated once, here, into a frozen
``InboundEvent``. Anything malformed (no chat id, no text) is turned into
``None`` and dropped quietly by the caller.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logger import get_logger

logger = get_logger("gateway.channels.feishu.events")

_AT_TAG = "<at "


# ==================== Raw payload (as delivered) ====================


class _RawUserId(BaseModel):
    model_config = ConfigDict(extra="ignore")

    open_id: Optional[str] = None
    user_id: Optional[str] = None
    union_id: Optional[str] = None


class _RawSender(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender_id: Optional[_RawUserId] = None
    sender_type: Optional[str] = None
    tenant_key: Optional[str] = None


class _RawMention(BaseModel):
    model_config = ConfigDict(extra="ignore")

    key: Optional[str] = None
    id: Optional[_RawUserId] = None
    name: Optional[str] = None


class _RawMessage(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message_id: Optional[str] = None
    root_id: Optional[str] = None
    parent_id: Optional[str] = None
    create_time: Optional[str] = None
    chat_id: Optional[str] = None
    chat_type: Optional[str] = None
    message_type: Optional[str] = None
    # Usually a JSON-encoded string; some senders deliver the decoded object
    content: Optional[Union[str, Dict[str, Any]]] = None
    mentions: Optional[List[_RawMention]] = None


class _RawEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    sender: Optional[_RawSender] = None
    message: Optional[_RawMessage] = None


# ==================== Typed event ====================


class Mention(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: Optional[str] = None
    name: Optional[str] = None
    open_id: Optional[str] = None
    user_id: Optional[str] = None
    union_id: Optional[str] = None


class InboundEvent(BaseModel):
    """A validated inbound message."""
    model_config = ConfigDict(frozen=True)

    message_id: str
    chat_id: str
    chat_type: Literal["direct", "group"]
    sender_id: str = Field("", description="open_id, else user_id, else union_id")
    sender_kind: Literal["human", "bot"] = "human"
    raw_content: str = Field("", description="Content string as delivered; objects are JSON-encoded")
    text: str = Field(..., description="Extracted, trimmed text body")
    mentions: Tuple[Mention, ...] = ()
    root_id: Optional[str] = None
    parent_id: Optional[str] = None
    event_time: Optional[int] = Field(None, description="Epoch ms")
    msg_type: Optional[str] = None
    tenant_key: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.chat_type == "group"


@dataclass(frozen=True)
class MentionInfo:
    has_any_mention: bool
    was_mentioned: bool
    can_detect_mention: bool


def extract_message_text(content: Any) -> str:
    """
    Pull the text body out of a message ``content`` field.

    JSON-looking strings are parsed for a ``text`` key; anything else (or a
    JSON document without text) falls back to the trimmed raw string.
    """
    if isinstance(content, str):
        trimmed = content.strip()
        if not trimmed:
            return ""
        if trimmed.startswith("{") or trimmed.startswith("["):
            try:
                parsed = json.loads(trimmed)
            except ValueError:
                parsed = None
            if isinstance(parsed, dict):
                text = parsed.get("text")
                if isinstance(text, str) and text.strip():
                    return text.strip()
        return trimmed

    if isinstance(content, dict):
        text = content.get("text")
        if isinstance(text, str):
            return text.strip()

    return ""


def _resolve_sender_id(sender: Optional[_RawSender]) -> str:
    if not sender or not sender.sender_id:
        return ""
    ids = sender.sender_id
    for value in (ids.open_id, ids.user_id, ids.union_id):
        if value and value.strip():
            return value.strip()
    return ""


def _parse_event_time(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_message_event(payload: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Validate an ``im.message.receive_v1`` payload.

    Accepts either the full envelope (``{"schema": ..., "event": {...}}``)
    or the bare ``event`` object.

    Returns:
        InboundEvent, or None when the payload cannot be handled
    """
    if not isinstance(payload, dict):
        return None
    body = payload.get("event", payload)

    try:
        raw = _RawEvent.model_validate(body)
    except ValidationError:
        logger.debug("Dropping unparsable Feishu event")
        return None

    message = raw.message
    if message is None:
        return None

    chat_id = (message.chat_id or "").strip()
    if not chat_id:
        return None

    content = message.content
    if isinstance(content, dict):
        raw_content = json.dumps(content, ensure_ascii=False)
    else:
        raw_content = content or ""
    text = extract_message_text(content)
    if not text:
        return None

    chat_type = (message.chat_type or "").strip().lower()
    sender_type = ((raw.sender.sender_type if raw.sender else None) or "").strip().lower()

    mentions = tuple(
        Mention(
            key=m.key,
            name=m.name,
            open_id=m.id.open_id if m.id else None,
            user_id=m.id.user_id if m.id else None,
            union_id=m.id.union_id if m.id else None,
        )
        for m in (message.mentions or [])
    )

    return InboundEvent(
        message_id=(message.message_id or "").strip(),
        chat_id=chat_id,
        chat_type="direct" if chat_type == "p2p" else "group",
        sender_id=_resolve_sender_id(raw.sender),
        sender_kind="bot" if sender_type == "bot" else "human",
        raw_content=raw_content,
        text=text,
        mentions=mentions,
        root_id=message.root_id or None,
        parent_id=message.parent_id or None,
        event_time=_parse_event_time(message.create_time),
        msg_type=message.message_type,
        tenant_key=raw.sender.tenant_key if raw.sender else None,
    )


def parse_lark_event(data: Any) -> Optional[InboundEvent]:
    """Validate an SDK ``P2ImMessageReceiveV1`` object via its JSON form."""
    import lark_oapi as lark

    try:
        payload = json.loads(lark.JSON.marshal(data))
    except (TypeError, ValueError):
        logger.debug("Dropping Feishu event that could not be serialised")
        return None
    return parse_message_event(payload)


def extract_mention_info(
    mentions: Sequence[Mention],
    raw_content: str,
    bot_open_id: Optional[str] = None,
    bot_user_id: Optional[str] = None,
    bot_name: Optional[str] = None,
) -> MentionInfo:
    """
    Work out whether a message mentions the bot.

    Structured mentions match on name, open_id or user_id. Rich-text
    payloads without a structured list still carry ``<at user_id="...">``
    tags inside the JSON-encoded content, so the escaped form is searched
    as a fallback.
    """
    raw_content = raw_content or ""
    has_any_mention = bool(mentions) or _AT_TAG in raw_content

    targets = {
        v.strip() for v in (bot_open_id, bot_user_id, bot_name) if v and v.strip()
    }

    was_mentioned = False
    for mention in mentions:
        candidates = (
            (mention.name or "").strip(),
            (mention.open_id or "").strip(),
            (mention.user_id or "").strip(),
        )
        if any(c and c in targets for c in candidates):
            was_mentioned = True
            break

    user_id = (bot_user_id or "").strip()
    if not was_mentioned and user_id:
        marker = 'user_id=\\"' + user_id + '\\"'
        if marker in raw_content:
            was_mentioned = True

    can_detect_mention = bool(mentions) or _AT_TAG in raw_content
    return MentionInfo(
        has_any_mention=has_any_mention,
        was_mentioned=was_mentioned,
        can_detect_mention=can_detect_mention,
    )
