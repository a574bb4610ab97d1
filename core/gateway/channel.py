"""
Channel adapter protocol

Every channel (Feishu today) implements this interface so the manager can
start one live connection per account, send outbound text, and describe
accounts for status reporting.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, List, Optional, Protocol, runtime_checkable

from core.gateway.types import AccountStatus, GatewayConfig

if TYPE_CHECKING:
    from core.gateway.bridge import GatewayBridge
    from core.gateway.pairing import PairingStore
    from core.gateway.session_store import SessionStore


# Called as status_sink(last_inbound_at=..., last_error=...)
StatusSink = Callable[..., None]


@dataclass
class GatewayRuntime:
    """Shared services handed to channel adapters when accounts start."""

    config_provider: Callable[[], GatewayConfig]
    bridge: "GatewayBridge"
    pairing_store: "PairingStore"
    session_store: "SessionStore"
    # Re-reads gateway.yaml for later events; None when config was passed in directly
    config_reloader: Optional[Callable[[], Awaitable[GatewayConfig]]] = None


@runtime_checkable
class ConnectionHandle(Protocol):
    """A running account connection."""

    @property
    def account_id(self) -> str:
        ...

    def is_healthy(self) -> bool:
        ...

    async def stop(self) -> None:
        ...


@runtime_checkable
class ChannelAdapter(Protocol):
    """
    Channel adapter protocol.

    - Enumerate and describe the accounts configured for the channel
    - Start a live connection for one account
    - Send outbound text
    """

    @property
    def id(self) -> str:
        """Channel identifier, e.g. 'feishu'."""
        ...

    @property
    def display_name(self) -> str:
        ...

    def list_account_ids(self, cfg: GatewayConfig) -> List[str]:
        ...

    def describe_account(self, cfg: GatewayConfig, account_id: str) -> AccountStatus:
        """Static account facts (enabled/configured/name) without runtime state."""
        ...

    async def start_account(
        self,
        account_id: str,
        runtime: GatewayRuntime,
        status_sink: StatusSink,
    ) -> ConnectionHandle:
        """
        Connect one account and begin delivering inbound events.

        Raises:
            GatewayConfigError: the account cannot be started as configured
        """
        ...

    async def send_text(
        self,
        to: str,
        text: str,
        account_id: Optional[str] = None,
    ) -> Any:
        """
        Send a text message.

        Args:
            to: channel-specific target (e.g. ``chat:oc_x``, ``open_id:ou_x``)
            text: message text
            account_id: sending account (default account when None)
        """
        ...
