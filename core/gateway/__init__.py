"""
Feishu channel gateway

Receives inbound messages from Feishu/Lark over a long connection, decides
whether the gateway should answer (bot filter, group policy, mention
gating, allow-lists, command authorization, DM pairing), and hands
authorized messages to a reply handler whose output is sent back.

Architecture:
    FeishuChannel (per-account FeishuConnection)
        -> FeishuMonitor (gate pipeline + routing context)
            -> GatewayBridge (reply handler -> block delivery)
    ChannelManager owns adapters, live connections and account status.

Usage:
    from core.gateway import create_gateway

    gateway = await create_gateway()
    if gateway:
        manager, bridge = gateway
        await manager.start_all()
        ...
        await manager.stop_all()
"""

from core.gateway.bridge import DispatcherOptions, DispatchInfo, GatewayBridge
from core.gateway.channel import ChannelAdapter, GatewayRuntime
from core.gateway.errors import FeishuSendError, GatewayConfigError, WebchatForwardError
from core.gateway.loader import create_gateway, load_gateway_config
from core.gateway.manager import ChannelManager
from core.gateway.types import (
    AccountStatus,
    GatewayBinding,
    GatewayConfig,
    ReplyPayload,
    RoutingContext,
)

__all__ = [
    "AccountStatus",
    "ChannelAdapter",
    "ChannelManager",
    "DispatchInfo",
    "DispatcherOptions",
    "FeishuSendError",
    "GatewayBinding",
    "GatewayBridge",
    "GatewayConfig",
    "GatewayConfigError",
    "GatewayRuntime",
    "ReplyPayload",
    "RoutingContext",
    "WebchatForwardError",
    "create_gateway",
    "load_gateway_config",
]
