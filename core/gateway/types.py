"""
Gateway types

Configuration schema (parsed from gateway.yaml) and the channel-agnostic
records that flow between the channel adapters, the routing layer and the
reply bridge.
"""

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from core.gateway.channels.feishu.config import FeishuChannelConfig


# ==================== Configuration ====================


class GatewaySection(BaseModel):
    """Top-level ``gateway:`` block."""
    enabled: bool = False
    max_concurrent_replies: int = Field(3, ge=1, description="Concurrent reply handler runs")
    reply_handler: Optional[str] = Field(
        None, description="Import path 'package.module:callable' of the reply handler"
    )


class ChannelDefaults(BaseModel):
    """Policy defaults shared by every channel."""
    group_policy: Optional[Literal["allowlist", "open", "disabled"]] = None


class ChannelsConfig(BaseModel):
    model_config = ConfigDict(extra="allow")

    defaults: ChannelDefaults = Field(default_factory=ChannelDefaults)
    feishu: Optional[FeishuChannelConfig] = None


class GatewayBinding(BaseModel):
    """Route binding: (channel, account, peer) -> agent."""
    channel: str
    agent_id: str
    account_id: Optional[str] = Field(None, description="Account to bind (None = any)")
    peer_kind: Optional[Literal["direct", "group"]] = Field(None, description="Peer kind (None = any)")
    peer_id: Optional[str] = Field(None, description="Specific conversation (None = all)")


class CommandsConfig(BaseModel):
    text: bool = Field(True, description="Recognise slash commands typed as plain text")
    use_access_groups: bool = Field(
        True, description="Restrict control commands to allow-listed senders"
    )


class SessionConfig(BaseModel):
    store: Optional[str] = Field(
        None, description="Session store path; '{agent_id}' is substituted"
    )
    dm_scope: Literal["main", "per-peer", "per-channel-peer"] = "main"


class EnvelopeConfig(BaseModel):
    timezone: str = "utc"
    include_timestamp: bool = True
    include_elapsed: bool = True


class PairingConfig(BaseModel):
    store: Optional[str] = Field(None, description="Pairing store path")


class FeishuWebhookConfig(BaseModel):
    enabled: Optional[bool] = None
    webhook: str = ""
    secret: str = ""
    keyword: str = ""


class WebchatNotifyConfig(BaseModel):
    enabled: bool = False
    feishu: Optional[FeishuWebhookConfig] = None


class WebchatConfig(BaseModel):
    notify: WebchatNotifyConfig = Field(default_factory=WebchatNotifyConfig)


class GatewayConfig(BaseModel):
    """Full gateway configuration."""
    gateway: GatewaySection = Field(default_factory=GatewaySection)
    channels: ChannelsConfig = Field(default_factory=ChannelsConfig)
    bindings: List[GatewayBinding] = Field(default_factory=list)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    envelope: EnvelopeConfig = Field(default_factory=EnvelopeConfig)
    pairing: PairingConfig = Field(default_factory=PairingConfig)
    webchat: WebchatConfig = Field(default_factory=WebchatConfig)

    @property
    def enabled(self) -> bool:
        return self.gateway.enabled


# ==================== Runtime records ====================


class AccountStatus(BaseModel):
    """Live status of one channel account."""
    channel: str
    account_id: str
    name: Optional[str] = None
    enabled: bool = True
    configured: bool = False
    mode: str = "long"
    running: bool = False
    last_start_at: Optional[int] = Field(None, description="Epoch ms")
    last_stop_at: Optional[int] = None
    last_error: Optional[str] = None
    last_inbound_at: Optional[int] = None
    last_outbound_at: Optional[int] = None


class RoutingContext(BaseModel):
    """
    Canonical representation of one authorized inbound message.

    Handed to the reply bridge; everything a reply handler needs to answer
    and everything the session layer needs to file the turn.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    body: str = Field(..., description="Envelope-formatted body")
    raw_body: str
    command_body: str
    from_: str = Field(..., alias="from", description="feishu:<sender>")
    to: str = Field(..., description="feishu:<chat_id>")
    session_key: str
    agent_id: str
    account_id: str
    chat_type: Literal["direct", "channel"]
    conversation_label: str
    sender_id: str
    sender_name: Optional[str] = None
    was_mentioned: Optional[bool] = None
    command_authorized: Optional[bool] = None
    provider: str = "feishu"
    surface: str = "feishu"
    message_id: str
    message_sid: str
    reply_to_id: Optional[str] = None
    group_space: Optional[str] = None
    group_system_prompt: Optional[str] = None
    originating_channel: str = "feishu"
    originating_to: str
    timestamp: Optional[int] = Field(None, description="Epoch ms of the inbound event")

    @property
    def is_group(self) -> bool:
        return self.chat_type == "channel"


class ReplyPayload(BaseModel):
    """One outbound block produced by a reply handler."""
    text: str = ""
    media_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
