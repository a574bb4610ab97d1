"""
Delivery

Splits long outbound texts at natural boundaries and sends the chunks in
order through a channel's send function.
"""

from typing import Awaitable, Callable, List

from logger import get_logger

logger = get_logger("gateway.delivery")

# Per-platform message length limits (characters)
CHANNEL_MAX_LENGTH = {
    "feishu": 30000,
}

DEFAULT_MAX_LENGTH = 4000

SendText = Callable[[str, str], Awaitable[None]]


def split_message(text: str, max_length: int) -> List[str]:
    """
    Split a long message into chunks that fit within platform limits.

    Prefers paragraph, then line, then sentence boundaries.

    Args:
        text: full message text
        max_length: maximum characters per chunk

    Returns:
        list of text chunks
    """
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        split_idx = remaining.rfind("\n\n", 0, max_length)
        if split_idx > max_length // 4:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx:].lstrip("\n")
            continue

        split_idx = remaining.rfind("\n", 0, max_length)
        if split_idx > max_length // 4:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx:].lstrip("\n")
            continue

        for sep in ("。", ". ", "！", "! ", "？", "? "):
            split_idx = remaining.rfind(sep, 0, max_length)
            if split_idx > max_length // 4:
                split_idx += len(sep)
                chunks.append(remaining[:split_idx])
                remaining = remaining[split_idx:].lstrip()
                break
        else:
            chunks.append(remaining[:max_length])
            remaining = remaining[max_length:]

    return chunks


async def deliver_text(
    send: SendText,
    channel_id: str,
    to: str,
    text: str,
) -> int:
    """
    Deliver a text, auto-chunking if needed.

    Args:
        send: ``async send(to, text)`` of the target channel
        channel_id: channel identifier (for length lookup)
        to: target address
        text: full text

    Returns:
        number of chunks sent
    """
    if not text or not text.strip():
        return 0

    max_length = CHANNEL_MAX_LENGTH.get(channel_id, DEFAULT_MAX_LENGTH)
    chunks = split_message(text, max_length)

    logger.debug(
        "Delivering text",
        extra={"channel": channel_id, "to": to, "total_length": len(text), "chunks": len(chunks)},
    )

    for i, chunk in enumerate(chunks):
        try:
            await send(to, chunk)
        except Exception as e:
            logger.error(
                "Failed to deliver chunk",
                extra={
                    "channel": channel_id,
                    "chunk_index": i,
                    "total_chunks": len(chunks),
                    "error": str(e),
                },
            )
            raise
    return len(chunks)
