"""
Sender allow-list matching

Entries may carry a platform prefix (``feishu:ou_x``, ``open_id:ou_x``...)
which is stripped before comparing. ``"*"`` admits every sender.
"""

import re
from typing import Iterable, List, Optional, Sequence, Union

AllowEntry = Union[str, int]

WILDCARD = "*"

ALLOW_ENTRY_PREFIXES = ("feishu", "lark", "user", "open_id", "id")

_PREFIX_PATTERN = re.compile(
    r"^(?:" + "|".join(ALLOW_ENTRY_PREFIXES) + r"):", re.IGNORECASE
)


def normalize_allow_entry(entry: AllowEntry) -> str:
    """Trim, strip one recognised prefix, lower-case."""
    text = str(entry).strip()
    text = _PREFIX_PATTERN.sub("", text, count=1)
    return text.strip().lower()


def is_sender_allowed(
    sender_id: Optional[str],
    allow_from: Optional[Sequence[AllowEntry]],
) -> bool:
    """
    Check a sender against an allow-list.

    Args:
        sender_id: platform sender identifier (may be empty)
        allow_from: configured entries; empty or missing admits nobody

    Returns:
        True when the list holds the wildcard or a matching entry
    """
    if not allow_from:
        return False

    entries = [str(e).strip() for e in allow_from]
    if WILDCARD in entries:
        return True

    normalized_sender = (sender_id or "").strip().lower()
    if not normalized_sender:
        return False

    for entry in entries:
        if normalize_allow_entry(entry) == normalized_sender:
            return True
    return False


def merge_allow_from(*sources: Optional[Iterable[AllowEntry]]) -> List[str]:
    """Concatenate allow-list sources, dropping blanks and duplicates in order."""
    merged: List[str] = []
    seen = set()
    for source in sources:
        for entry in source or ():
            text = str(entry).strip()
            if not text or text in seen:
                continue
            seen.add(text)
            merged.append(text)
    return merged
