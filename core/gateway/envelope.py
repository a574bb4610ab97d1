"""
Agent envelope formatting

Prefixes an inbound body with a one-line header the agent can read:

    [Feishu chat:oc_123 +5m Tue 2026-03-03 09:15 UTC] hello
"""

from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from logger import get_logger

from core.gateway.types import GatewayConfig

logger = get_logger("gateway.envelope")


@dataclass(frozen=True)
class EnvelopeOptions:
    timezone: str = "utc"
    include_timestamp: bool = True
    include_elapsed: bool = True


def resolve_envelope_format_options(cfg: GatewayConfig) -> EnvelopeOptions:
    env = cfg.envelope
    return EnvelopeOptions(
        timezone=env.timezone,
        include_timestamp=env.include_timestamp,
        include_elapsed=env.include_elapsed,
    )


def _resolve_tz(name: str) -> Optional[tzinfo]:
    """None means the host's local zone."""
    key = (name or "").strip()
    if not key or key.lower() == "utc":
        return timezone.utc
    if key.lower() == "local":
        return None
    try:
        return ZoneInfo(key)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown envelope timezone, using UTC", extra={"timezone": key})
        return timezone.utc


def format_elapsed(ms: int) -> str:
    """Compact elapsed time: 45s, 12m, 3h, 2d."""
    seconds = max(0, int(ms // 1000))
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"


def format_timestamp(ts_ms: int, tz_name: str = "utc") -> str:
    tz = _resolve_tz(tz_name)
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    dt = dt.astimezone(tz) if tz is not None else dt.astimezone()
    return dt.strftime("%a %Y-%m-%d %H:%M %Z").strip()


def format_agent_envelope(
    channel: str,
    from_label: str,
    body: str,
    timestamp: Optional[int] = None,
    previous_timestamp: Optional[int] = None,
    options: Optional[EnvelopeOptions] = None,
) -> str:
    """
    Build ``[<channel> <from> [+elapsed] [time]] <body>``.

    Elapsed is shown only when both timestamps are known and ordered.
    """
    options = options or EnvelopeOptions()
    parts = [channel]
    if from_label:
        parts.append(from_label)

    if (
        options.include_elapsed
        and timestamp is not None
        and previous_timestamp is not None
        and timestamp >= previous_timestamp
    ):
        parts.append(f"+{format_elapsed(timestamp - previous_timestamp)}")

    if options.include_timestamp and timestamp is not None:
        parts.append(format_timestamp(timestamp, options.timezone))

    return f"[{' '.join(parts)}] {body}"
