"""
Feishu inbound pipeline

One ``FeishuMonitor`` per running account. For every validated event it
takes a config snapshot, walks the gates in order, builds the routing
context and hands it to the reply bridge:

    bot filter -> group gate -> command authorization -> mention gate
    -> direct gate -> control command gate -> context -> bridge

Rejected events produce no reply (apart from a possible pairing code).
"""

import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from logger import clear_request_context, get_logger, set_request_context

from core.gateway.bridge import DispatcherOptions, DispatchInfo
from core.gateway.channel import GatewayRuntime, StatusSink
from core.gateway.channels.feishu.api import send_feishu_text
from core.gateway.channels.feishu.config import (
    FeishuGroupEntry,
    ResolvedFeishuAccount,
    resolve_feishu_account,
)
from core.gateway.channels.feishu.events import InboundEvent, MentionInfo, extract_mention_info
from core.gateway.channels.feishu.gates import (
    evaluate_direct,
    evaluate_group,
    read_store_allow_from,
    resolve_command_authorized,
)
from core.gateway.commands import (
    has_control_command,
    is_control_command_message,
    should_compute_command_authorized,
    should_handle_text_commands,
)
from core.gateway.delivery import deliver_text
from core.gateway.envelope import format_agent_envelope, resolve_envelope_format_options
from core.gateway.pairing import PairingStore
from core.gateway.pipeline import PROCEED, Gate, GateResult, Reject, run_gates, spawn_detached
from core.gateway.policy.allowlist import is_sender_allowed, merge_allow_from
from core.gateway.policy.mention import resolve_mention_gating_with_bypass
from core.gateway.routing import Peer, resolve_route
from core.gateway.types import GatewayConfig, ReplyPayload, RoutingContext

logger = get_logger("gateway.channels.feishu.monitor")

CHANNEL_ID = "feishu"

SendFn = Callable[[str, str], Awaitable[None]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class GateContext:
    """State threaded through the gates for one event."""

    event: InboundEvent
    account: ResolvedFeishuAccount
    cfg: GatewayConfig
    pairing_store: Optional[PairingStore] = None
    send_reply: Optional[SendFn] = None

    group_entry: Optional[FeishuGroupEntry] = None
    should_compute_auth: bool = False
    store_allow_from: List[str] = field(default_factory=list)
    sender_allowed: bool = False
    command_authorized: Optional[bool] = None
    mention: Optional[MentionInfo] = None
    effective_was_mentioned: Optional[bool] = None
    pairing_triggered: bool = False

    @property
    def is_group(self) -> bool:
        return self.event.is_group

    @property
    def sender_id(self) -> str:
        return self.event.sender_id

    @property
    def chat_id(self) -> str:
        return self.event.chat_id

    @property
    def raw_body(self) -> str:
        return self.event.text

    @property
    def group_users(self) -> List[str]:
        if self.group_entry is None:
            return []
        return [str(u) for u in self.group_entry.users]


# ==================== Gates ====================


async def bot_filter_gate(ctx: GateContext) -> GateResult:
    if ctx.account.allow_bots:
        return PROCEED
    if ctx.event.sender_kind == "bot":
        return Reject("bot-authored message")
    bot_open_id = (ctx.account.config.bot_open_id or "").strip()
    if ctx.sender_id and bot_open_id and ctx.sender_id == bot_open_id:
        return Reject("message from own bot")
    return PROCEED


async def group_gate(ctx: GateContext) -> GateResult:
    if not ctx.is_group:
        return PROCEED
    result = evaluate_group(ctx.chat_id, None, ctx.account, ctx.sender_id)
    ctx.group_entry = result.entry
    if not result.proceed:
        return Reject(result.reason)
    return PROCEED


async def command_authorization_gate(ctx: GateContext) -> GateResult:
    """Computes command authorization once; never rejects."""
    ctx.should_compute_auth = should_compute_command_authorized(ctx.raw_body, ctx.cfg)
    ctx.store_allow_from = await read_store_allow_from(
        ctx.pairing_store, ctx.is_group, ctx.account.dm_policy, ctx.should_compute_auth
    )

    if ctx.is_group:
        command_allow_from = ctx.group_users
    else:
        command_allow_from = merge_allow_from(ctx.account.dm_allow_from, ctx.store_allow_from)
    ctx.sender_allowed = is_sender_allowed(ctx.sender_id, command_allow_from)

    ctx.command_authorized = resolve_command_authorized(
        raw_body=ctx.raw_body,
        is_group=ctx.is_group,
        group_users=ctx.group_users,
        config_allow_from=ctx.account.dm_allow_from,
        store_allow_from=ctx.store_allow_from,
        use_access_groups=ctx.cfg.commands.use_access_groups,
        sender_id=ctx.sender_id,
        cfg=ctx.cfg,
    )
    return PROCEED


async def mention_gate(ctx: GateContext) -> GateResult:
    if not ctx.is_group:
        return PROCEED

    entry = ctx.group_entry
    account = ctx.account
    if entry is not None and entry.require_mention is not None:
        require_mention = entry.require_mention
    else:
        require_mention = account.require_mention
    if entry is not None and entry.mention_fail_open is not None:
        fail_open = entry.mention_fail_open
    else:
        fail_open = account.mention_fail_open

    ctx.mention = extract_mention_info(
        ctx.event.mentions,
        ctx.event.raw_content,
        bot_open_id=account.config.bot_open_id,
        bot_user_id=account.config.bot_user_id,
        bot_name=account.config.bot_name,
    )
    gate = resolve_mention_gating_with_bypass(
        is_group=True,
        require_mention=require_mention,
        can_detect_mention=ctx.mention.can_detect_mention,
        was_mentioned=ctx.mention.was_mentioned,
        has_any_mention=ctx.mention.has_any_mention,
        allow_text_commands=should_handle_text_commands(ctx.cfg, surface=CHANNEL_ID),
        has_control_command=has_control_command(ctx.raw_body, ctx.cfg),
        command_authorized=ctx.command_authorized,
        fail_open_when_undetectable=fail_open,
    )
    ctx.effective_was_mentioned = gate.effective_was_mentioned
    if gate.should_skip:
        return Reject("mention required")
    return PROCEED


async def direct_gate(ctx: GateContext) -> GateResult:
    if ctx.is_group:
        return PROCEED
    result = await evaluate_direct(
        ctx.sender_id,
        ctx.account,
        command_allowed=ctx.sender_allowed,
        pairing_store=ctx.pairing_store,
        send_reply=ctx.send_reply,
    )
    ctx.pairing_triggered = result.pairing_triggered
    if not result.proceed:
        return Reject(result.reason)
    return PROCEED


async def control_command_gate(ctx: GateContext) -> GateResult:
    if (
        ctx.is_group
        and is_control_command_message(ctx.raw_body, ctx.cfg)
        and ctx.command_authorized is not True
    ):
        return Reject("unauthorized control command")
    return PROCEED


FEISHU_GATES: Tuple[Gate, ...] = (
    bot_filter_gate,
    group_gate,
    command_authorization_gate,
    mention_gate,
    direct_gate,
    control_command_gate,
)


# ==================== Context ====================


async def build_context(
    event: InboundEvent,
    gate_ctx: GateContext,
    account: ResolvedFeishuAccount,
    cfg: GatewayConfig,
    runtime: GatewayRuntime,
) -> RoutingContext:
    """
    Build the routing context for an event that passed every gate.

    Session metadata is recorded in a detached task; the caller does not
    wait for it.
    """
    is_group = event.is_group
    chat_id = event.chat_id
    sender_id = event.sender_id

    route = resolve_route(
        cfg,
        channel=CHANNEL_ID,
        account_id=account.account_id,
        peer=Peer(kind="group" if is_group else "direct", id=chat_id),
    )

    from_label = f"chat:{chat_id}" if is_group else (sender_id or "user:unknown")
    store_path: Path = runtime.session_store.resolve_store_path(cfg.session.store, route.agent_id)
    previous_timestamp = await runtime.session_store.read_session_updated_at(
        store_path, route.session_key
    )

    body = format_agent_envelope(
        channel="Feishu",
        from_label=from_label,
        body=event.text,
        timestamp=event.event_time,
        previous_timestamp=previous_timestamp,
        options=resolve_envelope_format_options(cfg),
    )

    system_prompt = None
    if is_group and gate_ctx.group_entry is not None and gate_ctx.group_entry.system_prompt:
        system_prompt = gate_ctx.group_entry.system_prompt.strip() or None

    ctx = RoutingContext(
        body=body,
        raw_body=event.text,
        command_body=event.text,
        from_=f"feishu:{sender_id}",
        to=f"feishu:{chat_id}",
        session_key=route.session_key,
        agent_id=route.agent_id,
        account_id=route.account_id,
        chat_type="channel" if is_group else "direct",
        conversation_label=from_label,
        sender_id=sender_id,
        sender_name=sender_id or None,
        was_mentioned=gate_ctx.effective_was_mentioned if is_group else None,
        command_authorized=gate_ctx.command_authorized,
        message_id=event.message_id,
        message_sid=event.message_id,
        reply_to_id=event.root_id or event.parent_id,
        group_space=chat_id if is_group else None,
        group_system_prompt=system_prompt,
        originating_to=f"feishu:{chat_id}",
        timestamp=event.event_time,
    )

    spawn_detached(
        runtime.session_store.record_session_meta_from_inbound(store_path, route.session_key, ctx),
        name="feishu.session_meta",
    )
    return ctx


# ==================== Monitor ====================


class FeishuMonitor:
    """
    Inbound pipeline for one Feishu account.

    ``process_event`` is the async entry point; the connection layer calls
    it on the main loop for every validated ``InboundEvent``.
    """

    def __init__(
        self,
        account_id: str,
        runtime: GatewayRuntime,
        status_sink: Optional[StatusSink] = None,
        gates: Sequence[Gate] = FEISHU_GATES,
        send: Optional[Callable[[ResolvedFeishuAccount, str, str], Awaitable[object]]] = None,
    ) -> None:
        self._account_id = account_id
        self._runtime = runtime
        self._status_sink = status_sink
        self._gates = tuple(gates)
        self._send = send or send_feishu_text

    @property
    def account_id(self) -> str:
        return self._account_id

    def _mark(self, **patch) -> None:
        if self._status_sink is not None:
            self._status_sink(**patch)

    def _sender_for(self, account: ResolvedFeishuAccount) -> SendFn:
        async def _send(to: str, text: str) -> None:
            await self._send(account, to, text)
            self._mark(last_outbound_at=_now_ms())
        return _send

    async def process_event(self, event: InboundEvent) -> Optional[RoutingContext]:
        """
        Run one event through the pipeline.

        Returns:
            The routing context handed to the bridge, or None when rejected
        """
        cfg = self._runtime.config_provider()
        account = resolve_feishu_account(cfg, self._account_id)

        set_request_context(
            account_id=account.account_id,
            conversation_id=event.chat_id,
            message_id=event.message_id,
        )
        try:
            self._mark(last_inbound_at=_now_ms())
            send = self._sender_for(account)

            gate_ctx = GateContext(
                event=event,
                account=account,
                cfg=cfg,
                pairing_store=self._runtime.pairing_store,
                send_reply=send,
            )
            rejection = await run_gates(gate_ctx, self._gates)
            if rejection is not None:
                logger.debug(
                    "Feishu event dropped",
                    extra={"reason": rejection.reason, "sender": event.sender_id},
                )
                return None

            ctx = await build_context(event, gate_ctx, account, cfg, self._runtime)
            await self._runtime.bridge.dispatch(
                ctx,
                DispatcherOptions(
                    deliver=self._deliver_to(event.chat_id, send),
                    on_error=self._on_error(account.account_id),
                ),
            )
            return ctx
        finally:
            clear_request_context()

    @staticmethod
    def _deliver_to(chat_id: str, send: SendFn):
        async def _deliver(payload: ReplyPayload) -> None:
            if not payload.text or not payload.text.strip():
                return
            await deliver_text(send, CHANNEL_ID, f"chat:{chat_id}", payload.text)
        return _deliver

    @staticmethod
    def _on_error(account_id: str):
        def _report(err: BaseException, info: DispatchInfo) -> None:
            logger.error(
                f"[{account_id}] Feishu {info.kind} reply failed",
                extra={"error": str(err)},
            )
        return _report
