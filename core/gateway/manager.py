"""
Channel manager

Owns the registered channel adapters and the registry of live account
connections (one per (channel, account)). Starting an account registers its
connection; stopping it unregisters and closes it. Per-account status is
tracked here and updated by the adapters through a status sink.
"""

import time
from typing import Dict, List, Optional, Set, Tuple

from logger import get_logger

from core.gateway.channel import ChannelAdapter, ConnectionHandle, GatewayRuntime, StatusSink
from core.gateway.errors import GatewayConfigError
from core.gateway.types import AccountStatus

logger = get_logger("gateway.manager")

ConnectionKey = Tuple[str, str]

_STATUS_FIELDS = frozenset(AccountStatus.model_fields) - {"channel", "account_id"}


def _now_ms() -> int:
    return int(time.time() * 1000)


class ChannelManager:
    """
    Manages channel adapters and their running accounts.

    Responsibilities:
    - Register channel adapters
    - Start / stop accounts, keeping the connection registry in step
    - Record per-account status
    """

    def __init__(self) -> None:
        self._channels: Dict[str, ChannelAdapter] = {}
        self._connections: Dict[ConnectionKey, ConnectionHandle] = {}
        self._status: Dict[ConnectionKey, AccountStatus] = {}
        # Keys whose adapter start is in flight
        self._starting: Set[ConnectionKey] = set()
        self._runtime: Optional[GatewayRuntime] = None

    # ==================== Adapters ====================

    def register(self, adapter: ChannelAdapter) -> None:
        channel_id = adapter.id
        if channel_id in self._channels:
            logger.warning("Channel already registered, replacing", extra={"channel": channel_id})
        self._channels[channel_id] = adapter
        logger.info("Channel registered", extra={"channel": channel_id})

    def get_adapter(self, channel_id: str) -> Optional[ChannelAdapter]:
        return self._channels.get(channel_id)

    def set_runtime(self, runtime: GatewayRuntime) -> None:
        self._runtime = runtime

    @property
    def runtime(self) -> Optional[GatewayRuntime]:
        return self._runtime

    # ==================== Connection registry ====================

    def register_connection(self, channel_id: str, account_id: str, handle: ConnectionHandle) -> None:
        key = (channel_id, account_id)
        if key in self._connections:
            raise RuntimeError(f"{channel_id}/{account_id} already has a live connection")
        self._connections[key] = handle

    def unregister_connection(self, channel_id: str, account_id: str) -> Optional[ConnectionHandle]:
        return self._connections.pop((channel_id, account_id), None)

    def get_connection(self, channel_id: str, account_id: str) -> Optional[ConnectionHandle]:
        return self._connections.get((channel_id, account_id))

    def list_connections(self) -> List[ConnectionKey]:
        return list(self._connections.keys())

    # ==================== Status ====================

    def _status_entry(self, channel_id: str, account_id: str) -> AccountStatus:
        key = (channel_id, account_id)
        status = self._status.get(key)
        if status is None:
            status = AccountStatus(channel=channel_id, account_id=account_id)
            adapter = self._channels.get(channel_id)
            if adapter is not None and self._runtime is not None:
                described = adapter.describe_account(self._runtime.config_provider(), account_id)
                status = described.model_copy()
            self._status[key] = status
        return status

    def update_status(self, channel_id: str, account_id: str, **patch) -> AccountStatus:
        unknown = set(patch) - _STATUS_FIELDS
        if unknown:
            raise ValueError(f"unknown status fields: {sorted(unknown)}")
        current = self._status_entry(channel_id, account_id)
        updated = current.model_copy(update=patch)
        self._status[(channel_id, account_id)] = updated
        return updated

    def status_sink(self, channel_id: str, account_id: str) -> StatusSink:
        def _sink(**patch) -> None:
            self.update_status(channel_id, account_id, **patch)
        return _sink

    def get_account_status(self, channel_id: str, account_id: str) -> AccountStatus:
        return self._status_entry(channel_id, account_id)

    def list_account_statuses(self) -> List[AccountStatus]:
        """Status for every known account of every registered channel."""
        keys = list(self._status.keys())
        if self._runtime is not None:
            cfg = self._runtime.config_provider()
            for channel_id, adapter in self._channels.items():
                for account_id in adapter.list_account_ids(cfg):
                    if (channel_id, account_id) not in keys:
                        keys.append((channel_id, account_id))
        return [self._status_entry(c, a) for c, a in keys]

    # ==================== Lifecycle ====================

    async def start_account(self, channel_id: str, account_id: str) -> bool:
        """
        Start one account. Configuration errors are recorded in the account
        status instead of propagating.

        Returns:
            True when the account is running. False on failure or while
            another start of the same account is still in flight.
        """
        if self._runtime is None:
            raise RuntimeError("Runtime not set. Call set_runtime() first.")

        adapter = self._channels.get(channel_id)
        if adapter is None:
            logger.warning("Unknown channel", extra={"channel": channel_id})
            return False

        if self.get_connection(channel_id, account_id) is not None:
            logger.info("Account already running", extra={"channel": channel_id, "account": account_id})
            return True

        key = (channel_id, account_id)
        if key in self._starting:
            logger.info("Account already starting", extra={"channel": channel_id, "account": account_id})
            return False

        logger.info("Starting account", extra={"channel": channel_id, "account": account_id})
        self._starting.add(key)
        try:
            handle = await adapter.start_account(
                account_id, self._runtime, self.status_sink(channel_id, account_id)
            )
        except GatewayConfigError as e:
            logger.error(
                "Account configuration invalid",
                extra={"channel": channel_id, "account": account_id, "error": str(e)},
            )
            self.update_status(channel_id, account_id, running=False, last_error=str(e))
            return False
        except Exception as e:
            logger.error(
                "Failed to start account",
                extra={"channel": channel_id, "account": account_id, "error": str(e)},
                exc_info=True,
            )
            self.update_status(channel_id, account_id, running=False, last_error=str(e))
            return False
        finally:
            self._starting.discard(key)

        self.register_connection(channel_id, account_id, handle)
        self.update_status(
            channel_id, account_id, running=True, last_start_at=_now_ms(), last_error=None
        )
        return True

    async def stop_account(self, channel_id: str, account_id: str) -> None:
        handle = self.unregister_connection(channel_id, account_id)
        if handle is None:
            return
        try:
            await handle.stop()
        except Exception as e:
            logger.warning(
                "Error stopping account",
                extra={"channel": channel_id, "account": account_id, "error": str(e)},
            )
        self.update_status(channel_id, account_id, running=False, last_stop_at=_now_ms())
        logger.info("Account stopped", extra={"channel": channel_id, "account": account_id})

    async def start_all(self) -> List[ConnectionKey]:
        """Start every enabled account of every registered channel."""
        if self._runtime is None:
            raise RuntimeError("Runtime not set. Call set_runtime() first.")

        cfg = self._runtime.config_provider()
        started: List[ConnectionKey] = []
        for channel_id, adapter in self._channels.items():
            for account_id in adapter.list_account_ids(cfg):
                described = adapter.describe_account(cfg, account_id)
                self._status[(channel_id, account_id)] = described.model_copy(
                    update={"running": False}
                )
                if not described.enabled:
                    logger.info(
                        "Account disabled, skipping",
                        extra={"channel": channel_id, "account": account_id},
                    )
                    continue
                if await self.start_account(channel_id, account_id):
                    started.append((channel_id, account_id))

        if started:
            logger.info("Gateway accounts started", extra={"started": [f"{c}/{a}" for c, a in started]})
        else:
            logger.warning("No accounts started")
        return started

    async def stop_all(self) -> None:
        for channel_id, account_id in self.list_connections():
            await self.stop_account(channel_id, account_id)
        logger.info("All gateway accounts stopped")

    def list_channels(self) -> List[Dict[str, object]]:
        """Registered channels with their running account count."""
        return [
            {
                "id": adapter.id,
                "display_name": adapter.display_name,
                "running_accounts": sum(1 for c, _ in self._connections if c == adapter.id),
            }
            for adapter in self._channels.values()
        ]
