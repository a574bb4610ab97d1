"""
Control command detection

Chat users can steer the gateway with slash commands typed as plain text
(``/status``, ``/reset``...). These helpers decide whether a body carries
such a command and whether the sender may issue it.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from core.gateway.types import GatewayConfig

CONTROL_COMMANDS = frozenset({
    "help",
    "commands",
    "status",
    "whoami",
    "reset",
    "new",
    "stop",
    "restart",
    "compact",
    "model",
    "think",
    "verbose",
    "usage",
})

# Feishu replaces mentions in text bodies with @_user_N placeholders
_MENTION_PLACEHOLDER = re.compile(r"@_user_\d+\s*")
_COMMAND_TOKEN = re.compile(r"(?:^|\s)/([A-Za-z][\w-]*)(?=$|[\s:])")


def _text_commands_enabled(cfg: Optional[GatewayConfig]) -> bool:
    return cfg is None or cfg.commands.text


def normalize_command_body(text: str) -> str:
    """Strip mention placeholders and surrounding whitespace."""
    return _MENTION_PLACEHOLDER.sub("", text or "").strip()


def has_control_command(text: str, cfg: Optional[GatewayConfig] = None) -> bool:
    """True when any token in the body is a known slash command."""
    if not _text_commands_enabled(cfg):
        return False
    body = normalize_command_body(text)
    return any(m.group(1).lower() in CONTROL_COMMANDS for m in _COMMAND_TOKEN.finditer(body))


def is_control_command_message(text: str, cfg: Optional[GatewayConfig] = None) -> bool:
    """True when the body *is* a command: its first token is a known slash command."""
    if not _text_commands_enabled(cfg):
        return False
    body = normalize_command_body(text)
    if not body.startswith("/"):
        return False
    match = _COMMAND_TOKEN.match(body)
    return bool(match) and match.group(1).lower() in CONTROL_COMMANDS


def should_compute_command_authorized(text: str, cfg: Optional[GatewayConfig] = None) -> bool:
    """Authorization only matters for bodies that carry a command."""
    return has_control_command(text, cfg)


def should_handle_text_commands(cfg: Optional[GatewayConfig], surface: str = "feishu") -> bool:
    # Feishu has no native command menu, so text commands are the only surface
    return _text_commands_enabled(cfg)


@dataclass(frozen=True)
class CommandAuthorizer:
    configured: bool
    allowed: bool


def resolve_command_authorized_from_authorizers(
    use_access_groups: bool,
    authorizers: Iterable[CommandAuthorizer],
) -> bool:
    """
    Without access groups everybody may run commands; otherwise at least one
    configured authorizer must admit the sender.
    """
    if not use_access_groups:
        return True
    return any(a.configured and a.allowed for a in authorizers)
