"""
Feishu access gates

Pure-ish decision functions used by the inbound pipeline. Each returns a
small result object instead of raising; the monitor turns rejections into
pipeline ``Reject`` values.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Sequence

from logger import get_logger

from core.gateway.channels.feishu.config import (
    FeishuGroupEntry,
    ResolvedFeishuAccount,
    resolve_group_config,
)
from core.gateway.commands import (
    CommandAuthorizer,
    resolve_command_authorized_from_authorizers,
    should_compute_command_authorized,
)
from core.gateway.pairing import PairingStore, build_pairing_reply
from core.gateway.policy.allowlist import AllowEntry, is_sender_allowed, merge_allow_from
from core.gateway.types import GatewayConfig

logger = get_logger("gateway.channels.feishu.gates")

PAIRING_CHANNEL = "feishu"

SendReply = Callable[[str, str], Awaitable[None]]


@dataclass(frozen=True)
class GroupGateResult:
    proceed: bool
    entry: Optional[FeishuGroupEntry] = None
    reason: str = ""


@dataclass(frozen=True)
class DirectGateResult:
    proceed: bool
    pairing_triggered: bool = False
    reason: str = ""


def evaluate_group(
    conversation_id: str,
    conversation_name: Optional[str],
    account: ResolvedFeishuAccount,
    sender_id: str,
) -> GroupGateResult:
    """
    Decide whether a group conversation may reach the agent.

    Order: policy disabled, allow-list presence, entry disabled, per-group
    sender list.
    """
    policy = account.group_policy
    if policy == "disabled":
        return GroupGateResult(False, reason="group policy disabled")

    resolved = resolve_group_config(account, conversation_id, conversation_name)
    entry = resolved.entry

    if policy == "allowlist":
        if not resolved.allowlist_configured:
            return GroupGateResult(False, reason="group allowlist not configured")
        if entry is None and "*" not in account.groups:
            return GroupGateResult(False, reason="group not allowlisted")

    if entry is not None and (entry.enabled is False or entry.allow is False):
        return GroupGateResult(False, entry, reason="group disabled")

    if entry is not None and entry.users:
        if not is_sender_allowed(sender_id, [str(u) for u in entry.users]):
            return GroupGateResult(False, entry, reason="sender not in group users")

    return GroupGateResult(True, entry)


def resolve_command_authorized(
    raw_body: str,
    is_group: bool,
    group_users: Sequence[AllowEntry],
    config_allow_from: Sequence[AllowEntry],
    store_allow_from: Sequence[AllowEntry],
    use_access_groups: bool,
    sender_id: str,
    cfg: Optional[GatewayConfig] = None,
) -> Optional[bool]:
    """
    Whether the sender may run control commands.

    Returns None when the body carries no command, so downstream consumers
    can tell "not applicable" apart from "denied".
    """
    if not should_compute_command_authorized(raw_body, cfg):
        return None

    if is_group:
        allow_from = [str(u) for u in group_users]
    else:
        allow_from = merge_allow_from(config_allow_from, store_allow_from)

    return resolve_command_authorized_from_authorizers(
        use_access_groups,
        [CommandAuthorizer(configured=bool(allow_from), allowed=is_sender_allowed(sender_id, allow_from))],
    )


async def read_store_allow_from(
    pairing_store: Optional[PairingStore],
    is_group: bool,
    dm_policy: str,
    should_compute_auth: bool,
) -> list:
    """
    Pairing-store allow-list for a direct conversation.

    Skipped for groups and for open DMs without a command to authorize.
    Read failures degrade to an empty list.
    """
    if is_group or pairing_store is None:
        return []
    if dm_policy == "open" and not should_compute_auth:
        return []
    try:
        return await pairing_store.read_allow_from(PAIRING_CHANNEL)
    except Exception as e:
        logger.warning(
            "Pairing store read failed, treating allow-list as empty",
            extra={"error": str(e)},
        )
        return []


async def evaluate_direct(
    sender_id: str,
    account: ResolvedFeishuAccount,
    command_allowed: bool,
    pairing_store: Optional[PairingStore],
    send_reply: Optional[SendReply],
) -> DirectGateResult:
    """
    Decide whether a direct conversation may reach the agent.

    ``command_allowed`` is the sender's match against the merged
    configured-plus-paired allow-list. Under the pairing policy an unknown
    sender gets exactly one pairing code per pending request.
    """
    policy = account.dm_policy
    if policy == "disabled" or not account.dm_enabled:
        return DirectGateResult(False, reason="direct messages disabled")

    if policy == "open":
        return DirectGateResult(True)

    if command_allowed:
        return DirectGateResult(True)

    if policy != "pairing":
        logger.info(
            "Blocked unauthorized Feishu sender",
            extra={"sender": sender_id, "dm_policy": policy},
        )
        return DirectGateResult(False, reason=f"sender not allowed (dm_policy={policy})")

    if pairing_store is None:
        return DirectGateResult(False, reason="pairing store unavailable")

    code, created = await pairing_store.upsert_pairing_request(PAIRING_CHANNEL, sender_id)
    if created and code:
        logger.info("Feishu pairing request created", extra={"sender": sender_id})
        if send_reply is not None:
            reply = build_pairing_reply(
                channel=PAIRING_CHANNEL,
                id_line=f"Your Feishu user id: {sender_id}",
                code=code,
            )
            try:
                await send_reply(f"open_id:{sender_id}", reply)
            except Exception as e:
                logger.warning(
                    "Pairing reply failed",
                    extra={"sender": sender_id, "error": str(e)},
                )

    return DirectGateResult(False, pairing_triggered=created, reason="pairing required")
