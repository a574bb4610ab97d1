"""
Channel-agnostic access policy helpers

- allowlist: sender allow-list matching
- mention: group mention gating with control-command bypass
"""

from core.gateway.policy.allowlist import (
    ALLOW_ENTRY_PREFIXES,
    WILDCARD,
    is_sender_allowed,
    merge_allow_from,
    normalize_allow_entry,
)
from core.gateway.policy.mention import (
    MentionGateResult,
    resolve_mention_gating_with_bypass,
)

__all__ = [
    "ALLOW_ENTRY_PREFIXES",
    "MentionGateResult",
    "WILDCARD",
    "is_sender_allowed",
    "merge_allow_from",
    "normalize_allow_entry",
    "resolve_mention_gating_with_bypass",
]
