"""
Agent routing

Maps (channel, account, peer) to an agent and a session key using the
``bindings`` list. The most specific matching binding wins:

    peer binding > account binding > channel binding > default agent

Session keys:
    group    agent:<agent>:<channel>:group:<peer_id>
    direct   agent:<agent>:main                       (dm_scope=main)
             agent:<agent>:direct:<peer_id>           (dm_scope=per-peer)
             agent:<agent>:<channel>:direct:<peer_id> (dm_scope=per-channel-peer)
"""

from dataclasses import dataclass
from typing import Literal, Optional

from logger import get_logger

from core.gateway.types import GatewayBinding, GatewayConfig

logger = get_logger("gateway.routing")

DEFAULT_AGENT_ID = "main"

PeerKind = Literal["direct", "group"]


@dataclass(frozen=True)
class Peer:
    kind: PeerKind
    id: str


@dataclass(frozen=True)
class ResolvedRoute:
    agent_id: str
    session_key: str
    account_id: str
    channel: str
    matched_by: str


def _norm(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def build_agent_session_key(
    agent_id: str,
    channel: str,
    peer: Peer,
    dm_scope: str = "main",
) -> str:
    agent = _norm(agent_id) or DEFAULT_AGENT_ID
    channel = _norm(channel) or "unknown"
    peer_id = (peer.id or "").strip() or "unknown"

    if peer.kind == "group":
        return f"agent:{agent}:{channel}:group:{peer_id}"
    if dm_scope == "per-peer":
        return f"agent:{agent}:direct:{peer_id}"
    if dm_scope == "per-channel-peer":
        return f"agent:{agent}:{channel}:direct:{peer_id}"
    return f"agent:{agent}:main"


def _binding_rank(binding: GatewayBinding, channel: str, account_id: str, peer: Peer) -> Optional[int]:
    """Specificity of a matching binding, None when it does not match."""
    if _norm(binding.channel) != channel:
        return None
    if binding.account_id and _norm(binding.account_id) != account_id:
        return None
    if binding.peer_kind and binding.peer_kind != peer.kind:
        return None
    if binding.peer_id and binding.peer_id.strip() != peer.id.strip():
        return None

    if binding.peer_id:
        return 3
    if binding.account_id:
        return 2
    return 1


_MATCH_LABELS = {3: "binding.peer", 2: "binding.account", 1: "binding.channel"}


def resolve_route(
    cfg: GatewayConfig,
    channel: str,
    account_id: str,
    peer: Peer,
) -> ResolvedRoute:
    """Resolve the agent and session key for one conversation."""
    channel = _norm(channel)
    account_id = _norm(account_id) or "default"

    best: Optional[GatewayBinding] = None
    best_rank = 0
    for binding in cfg.bindings:
        rank = _binding_rank(binding, channel, account_id, peer)
        # first binding wins on ties
        if rank is not None and rank > best_rank:
            best, best_rank = binding, rank

    agent_id = _norm(best.agent_id) if best else DEFAULT_AGENT_ID
    matched_by = _MATCH_LABELS.get(best_rank, "default")

    session_key = build_agent_session_key(agent_id, channel, peer, cfg.session.dm_scope)

    logger.debug(
        "Route resolved",
        extra={"agent_id": agent_id, "session_key": session_key, "matched_by": matched_by},
    )
    return ResolvedRoute(
        agent_id=agent_id,
        session_key=session_key,
        account_id=account_id,
        channel=channel,
        matched_by=matched_by,
    )
