"""
Feishu (Lark) channel adapter

Uses lark-oapi with a WebSocket long connection, so no public IP or
webhook URL is required. Each account gets its own ``FeishuConnection``:
a WebSocket client running in a worker thread plus a watchdog task that
reconnects with exponential backoff when the connection drops.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional

from logger import get_logger

from core.gateway.channel import GatewayRuntime, StatusSink
from core.gateway.channels.feishu.api import send_feishu_text
from core.gateway.channels.feishu.config import (
    ResolvedFeishuAccount,
    list_feishu_account_ids,
    resolve_default_feishu_account_id,
    resolve_feishu_account,
)
from core.gateway.channels.feishu.events import InboundEvent, parse_lark_event
from core.gateway.channels.feishu.monitor import FeishuMonitor
from core.gateway.errors import GatewayConfigError
from core.gateway.types import AccountStatus, GatewayConfig

logger = get_logger("gateway.channels.feishu")

OnEvent = Callable[[InboundEvent], Awaitable[Any]]


class FeishuConnection:
    """
    Live long connection for one account.

    The lark SDK delivers events on its own thread; they are validated there
    and scheduled onto the gateway loop with ``run_coroutine_threadsafe``.
    The handler never raises back into the SDK.
    """

    _HEALTH_CHECK_INTERVAL = 30  # seconds between health checks
    _MAX_RECONNECT_BACKOFF = 120  # max backoff between reconnect attempts
    _INITIAL_RECONNECT_DELAY = 5  # first reconnect wait
    _HANDSHAKE_TIMEOUT = 8.0
    _HANDSHAKE_POLL = 0.5

    def __init__(
        self,
        account: ResolvedFeishuAccount,
        on_event: OnEvent,
        status_sink: Optional[StatusSink] = None,
    ) -> None:
        self._account = account
        self._on_event = on_event
        self._status_sink = status_sink
        self._ws_client = None
        self._ws_future = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._should_run = False
        self._consecutive_failures = 0

    @property
    def account_id(self) -> str:
        return self._account.account_id

    def _mark(self, **patch) -> None:
        if self._status_sink is not None:
            self._status_sink(**patch)

    async def start(self) -> None:
        """Connect and start the watchdog. Raises GatewayConfigError without credentials."""
        app_id = (self._account.config.app_id or "").strip()
        app_secret = (self._account.config.app_secret or "").strip()
        if not app_id or not app_secret:
            raise GatewayConfigError(
                f"Feishu app_id/app_secret are required for account {self.account_id}"
            )

        self._loop = asyncio.get_running_loop()
        self._should_run = True

        logger.info("Starting Feishu long connection", extra={"account": self.account_id})
        await self._connect_ws()

        self._watchdog_task = asyncio.create_task(
            self._watchdog_loop(), name=f"feishu_watchdog:{self.account_id}"
        )

    def _handle_message_receive(self, data: Any) -> None:
        """im.message.receive_v1 callback, runs on the SDK thread."""
        try:
            event = parse_lark_event(data)
            if event is None:
                return
            loop = self._loop
            if loop is not None and loop.is_running():
                asyncio.run_coroutine_threadsafe(self._safe_handle(event), loop)
        except Exception as e:
            logger.error(
                "Error parsing Feishu event",
                extra={"account": self.account_id, "error": str(e)},
                exc_info=True,
            )

    def _build_event_handler(self):
        import lark_oapi as lark

        config = self._account.config
        return lark.EventDispatcherHandler.builder(
            (config.encrypt_key or "").strip(),
            (config.verification_token or "").strip(),
        ).register_p2_im_message_receive_v1(
            self._handle_message_receive
        ).build()

    def _build_ws_client(self):
        import lark_oapi as lark

        config = self._account.config
        kwargs = {
            "event_handler": self._build_event_handler(),
            "log_level": lark.LogLevel.WARNING,
        }
        domain = (config.domain or "").strip()
        if domain:
            kwargs["domain"] = domain
        return lark.ws.Client(
            config.app_id.strip(),
            config.app_secret.strip(),
            **kwargs,
        )

    async def _connect_ws(self) -> bool:
        """Create and start a fresh WebSocket client. Returns True on success."""
        self._ws_client = self._build_ws_client()
        ws_client = self._ws_client

        # lark SDK captures an event loop at import time; give the worker
        # thread its own loop and point the SDK at it
        def _run_ws() -> None:
            from lark_oapi.ws import client as ws_module
            ws_loop = asyncio.new_event_loop()
            asyncio.set_event_loop(ws_loop)
            ws_module.loop = ws_loop
            try:
                ws_client.start()
            except Exception as e:
                logger.error(
                    "Feishu WebSocket exited",
                    extra={"account": self.account_id, "error": str(e)},
                    exc_info=True,
                )

        self._ws_future = self._loop.run_in_executor(None, _run_ws)

        elapsed = 0.0
        while elapsed < self._HANDSHAKE_TIMEOUT:
            await asyncio.sleep(self._HANDSHAKE_POLL)
            elapsed += self._HANDSHAKE_POLL
            if self.is_healthy():
                break

        if self.is_healthy():
            self._consecutive_failures = 0
            self._mark(last_error=None)
            logger.info(
                "Feishu WebSocket connected",
                extra={"account": self.account_id, "handshake_seconds": round(elapsed, 1)},
            )
            return True

        self._consecutive_failures += 1
        self._mark(last_error="websocket handshake timeout")
        logger.warning(
            "Feishu WebSocket handshake timeout",
            extra={
                "account": self.account_id,
                "timeout_seconds": self._HANDSHAKE_TIMEOUT,
                "consecutive_failures": self._consecutive_failures,
            },
        )
        return False

    def is_healthy(self) -> bool:
        if self._ws_client is None:
            return False
        conn = getattr(self._ws_client, "_conn", None)
        if conn is None:
            return False
        if getattr(conn, "closed", False):
            return False
        return True

    def reconnect_delay(self) -> float:
        return min(
            self._INITIAL_RECONNECT_DELAY * (2 ** self._consecutive_failures),
            self._MAX_RECONNECT_BACKOFF,
        )

    async def _watchdog_loop(self) -> None:
        while self._should_run:
            try:
                await asyncio.sleep(self._HEALTH_CHECK_INTERVAL)
                if not self._should_run:
                    break

                if self.is_healthy():
                    if self._consecutive_failures > 0:
                        logger.info(
                            "Feishu WebSocket recovered",
                            extra={"account": self.account_id, "previous_failures": self._consecutive_failures},
                        )
                        self._consecutive_failures = 0
                    continue

                delay = self.reconnect_delay()
                logger.warning(
                    "Feishu WebSocket disconnected, reconnecting",
                    extra={
                        "account": self.account_id,
                        "consecutive_failures": self._consecutive_failures,
                        "backoff_seconds": delay,
                    },
                )
                await asyncio.sleep(delay)
                if not self._should_run:
                    break

                if await self._connect_ws():
                    logger.info("Feishu WebSocket reconnected", extra={"account": self.account_id})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(
                    "Feishu watchdog unexpected error",
                    extra={"account": self.account_id, "error": str(e)},
                    exc_info=True,
                )
                await asyncio.sleep(self._HEALTH_CHECK_INTERVAL)

    async def _safe_handle(self, event: InboundEvent) -> None:
        try:
            await self._on_event(event)
        except Exception as e:
            logger.error(
                "Error handling Feishu message",
                extra={"account": self.account_id, "message_id": event.message_id, "error": str(e)},
                exc_info=True,
            )

    async def stop(self) -> None:
        """Stop the watchdog; in-flight events finish on their own."""
        self._should_run = False

        if self._watchdog_task and not self._watchdog_task.done():
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
        self._watchdog_task = None

        # lark's ws client has no public stop; drop auto-reconnect and our
        # reference so the worker thread winds down with the connection
        if self._ws_client is not None:
            try:
                self._ws_client._auto_reconnect = False
            except AttributeError:
                pass
        self._ws_client = None
        logger.info("Feishu long connection stopped", extra={"account": self.account_id})


class FeishuChannel:
    """Feishu adapter: account enumeration, connections, outbound text."""

    def __init__(self, config_provider: Callable[[], GatewayConfig]) -> None:
        self._config_provider = config_provider

    @property
    def id(self) -> str:
        return "feishu"

    @property
    def display_name(self) -> str:
        return "Feishu"

    def list_account_ids(self, cfg: GatewayConfig) -> List[str]:
        if cfg.channels.feishu is None:
            return []
        return list_feishu_account_ids(cfg)

    def describe_account(self, cfg: GatewayConfig, account_id: str) -> AccountStatus:
        account = resolve_feishu_account(cfg, account_id)
        return AccountStatus(
            channel=self.id,
            account_id=account.account_id,
            name=account.name,
            enabled=account.enabled,
            configured=account.configured,
            mode="long",
        )

    async def start_account(
        self,
        account_id: str,
        runtime: GatewayRuntime,
        status_sink: StatusSink,
    ) -> FeishuConnection:
        account = resolve_feishu_account(runtime.config_provider(), account_id)
        if not account.configured:
            raise GatewayConfigError(
                f"Feishu app_id/app_secret are required for account {account.account_id}"
            )

        monitor = FeishuMonitor(account.account_id, runtime, status_sink)
        connection = FeishuConnection(account, monitor.process_event, status_sink)
        await connection.start()
        return connection

    async def send_text(self, to: str, text: str, account_id: Optional[str] = None) -> str:
        cfg = self._config_provider()
        aid = account_id or resolve_default_feishu_account_id(cfg)
        account = resolve_feishu_account(cfg, aid)
        if not account.configured:
            raise GatewayConfigError(f"Feishu account {aid} is not configured")
        return await send_feishu_text(account, to, text)
