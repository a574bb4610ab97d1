"""
Mention gating for group conversations

Decides whether a group message that does not address the bot should be
skipped. Authorized control commands bypass the requirement, and payloads
on which mentions cannot be detected at all fail open unless the account
turns that off.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class MentionGateResult:
    should_skip: bool
    effective_was_mentioned: bool


def resolve_mention_gating_with_bypass(
    *,
    is_group: bool,
    require_mention: bool,
    can_detect_mention: bool,
    was_mentioned: bool,
    has_any_mention: bool = False,
    allow_text_commands: bool,
    has_control_command: bool,
    command_authorized: Optional[bool],
    fail_open_when_undetectable: bool = True,
) -> MentionGateResult:
    """
    Resolve the mention requirement for one message.

    Rows are evaluated in order; the first match wins:

    1. mention not required -> continue
    2. bot was mentioned -> continue
    3. authorized control command with text commands enabled -> continue,
       treated as mentioned
    4. mention cannot be detected on this payload -> continue (fail open),
       or skip when ``fail_open_when_undetectable`` is False
    5. otherwise -> skip

    ``has_any_mention`` is accepted for callers that log it; a mention of
    somebody else is already covered by ``can_detect_mention``.
    """
    if not is_group or not require_mention:
        return MentionGateResult(should_skip=False, effective_was_mentioned=was_mentioned)

    if was_mentioned:
        return MentionGateResult(should_skip=False, effective_was_mentioned=True)

    bypass = allow_text_commands and has_control_command and command_authorized is True
    if bypass:
        return MentionGateResult(should_skip=False, effective_was_mentioned=True)

    if not can_detect_mention:
        return MentionGateResult(
            should_skip=not fail_open_when_undetectable,
            effective_was_mentioned=False,
        )

    return MentionGateResult(should_skip=True, effective_was_mentioned=False)
