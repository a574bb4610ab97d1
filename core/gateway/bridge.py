"""
Gateway bridge

Runs the reply handler for an authorized inbound message and hands the
produced reply back to the originating channel.

A reply handler is an async generator taking a ``RoutingContext`` and
yielding either text deltas (``str``) or complete ``ReplyPayload`` blocks.
Text deltas are buffered and flushed as blocks at paragraph boundaries;
whatever remains when the handler finishes is flushed as the final block.

A semaphore limits the number of handler runs in flight so a burst of
inbound messages cannot starve the Feishu heartbeat or the event loop.
"""

import asyncio
import importlib
import time
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, List, Literal, Optional, Union

from logger import get_logger

from core.gateway.errors import GatewayConfigError
from core.gateway.types import ReplyPayload, RoutingContext

logger = get_logger("gateway.bridge")

_MAX_CONCURRENT_REPLIES = 3
_BLOCK_MIN_CHARS = 800

ReplyItem = Union[str, ReplyPayload]
ReplyHandler = Callable[[RoutingContext], AsyncIterator[ReplyItem]]


@dataclass(frozen=True)
class DispatchInfo:
    kind: Literal["block", "final", "handler"]


Deliver = Callable[[ReplyPayload], Awaitable[None]]
OnError = Callable[[BaseException, DispatchInfo], None]


@dataclass
class DispatcherOptions:
    deliver: Deliver
    on_error: Optional[OnError] = None


@dataclass
class DispatchResult:
    delivered: int = 0
    failed: int = 0
    texts: List[str] = field(default_factory=list)

    @property
    def final_text(self) -> str:
        return "\n\n".join(t for t in self.texts if t.strip())


async def echo_reply_handler(ctx: RoutingContext) -> AsyncIterator[ReplyItem]:
    """Fallback handler used when no reply handler is configured."""
    yield f"Echo: {ctx.raw_body}"


def load_reply_handler(path: Optional[str]) -> ReplyHandler:
    """
    Import a reply handler from ``"package.module:callable"``.

    Returns the echo handler when ``path`` is empty.
    """
    if not path or not path.strip():
        return echo_reply_handler

    module_name, _, attr = path.strip().partition(":")
    if not module_name or not attr:
        raise GatewayConfigError(f"reply_handler must look like 'module:callable', got {path!r}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise GatewayConfigError(f"cannot import reply handler module {module_name!r}: {e}") from e

    handler = getattr(module, attr, None)
    if not callable(handler):
        raise GatewayConfigError(f"reply handler {path!r} is not callable")
    return handler


class GatewayBridge:
    """
    Bridges routing contexts to the reply handler.

    Flow:
    1. Acquire a reply slot
    2. Iterate the reply handler, buffering text deltas into blocks
    3. Deliver each block through ``options.deliver``
    4. Report failures through ``options.on_error``
    """

    def __init__(
        self,
        reply_handler: Optional[ReplyHandler] = None,
        max_concurrent: int = _MAX_CONCURRENT_REPLIES,
        block_min_chars: int = _BLOCK_MIN_CHARS,
    ) -> None:
        self._reply_handler = reply_handler or echo_reply_handler
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._block_min_chars = block_min_chars

        logger.info(
            "Gateway bridge initialized",
            extra={
                "reply_handler": getattr(self._reply_handler, "__name__", repr(self._reply_handler)),
                "max_concurrent": max_concurrent,
            },
        )

    async def dispatch(self, ctx: RoutingContext, options: DispatcherOptions) -> DispatchResult:
        """
        Produce and deliver the reply for ``ctx``.

        Never raises for handler or delivery failures; those go to
        ``options.on_error``.
        """
        async with self._semaphore:
            return await self._run(ctx, options)

    async def _run(self, ctx: RoutingContext, options: DispatcherOptions) -> DispatchResult:
        start_time = time.time()
        result = DispatchResult()
        buffer = ""

        async def _emit(payload: ReplyPayload, kind: str) -> None:
            try:
                await options.deliver(payload)
            except Exception as e:
                result.failed += 1
                self._report(options, e, DispatchInfo(kind=kind), ctx)
                return
            result.delivered += 1
            result.texts.append(payload.text)

        try:
            async for item in self._reply_handler(ctx):
                if isinstance(item, ReplyPayload):
                    if buffer.strip():
                        await _emit(ReplyPayload(text=buffer), "block")
                    buffer = ""
                    await _emit(item, "block")
                elif isinstance(item, str):
                    buffer += item
                    if len(buffer) >= self._block_min_chars:
                        idx = buffer.rfind("\n\n")
                        if idx > 0:
                            block, buffer = buffer[:idx], buffer[idx + 2:]
                            if block.strip():
                                await _emit(ReplyPayload(text=block), "block")
                else:
                    logger.warning(
                        "Reply handler yielded unsupported item",
                        extra={"type": type(item).__name__, "session_key": ctx.session_key},
                    )
        except Exception as e:
            result.failed += 1
            self._report(options, e, DispatchInfo(kind="handler"), ctx)
            return result

        if buffer.strip():
            await _emit(ReplyPayload(text=buffer), "final")

        logger.info(
            "Reply dispatched",
            extra={
                "session_key": ctx.session_key,
                "delivered": result.delivered,
                "failed": result.failed,
                "elapsed_seconds": round(time.time() - start_time, 2),
            },
        )
        return result

    def _report(
        self,
        options: DispatcherOptions,
        error: BaseException,
        info: DispatchInfo,
        ctx: RoutingContext,
    ) -> None:
        if options.on_error is None:
            logger.error(
                "Reply failed",
                extra={"kind": info.kind, "session_key": ctx.session_key, "error": str(error)},
            )
            return
        try:
            options.on_error(error, info)
        except Exception as e:
            logger.error("on_error callback raised", extra={"error": str(e)}, exc_info=True)

