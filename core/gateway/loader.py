"""
Gateway configuration loader and factory

Loads gateway.yaml, resolves ``${VAR}`` environment references, validates
it into ``GatewayConfig`` and wires up the manager, bridge and stores.
"""

import os
import re
from pathlib import Path
from typing import Any, Optional, Tuple

import aiofiles
import yaml
from pydantic import ValidationError

from logger import get_logger, log_execution_time
from utils.app_paths import get_config_dir

from core.gateway.bridge import GatewayBridge, load_reply_handler
from core.gateway.channel import GatewayRuntime
from core.gateway.channels.feishu.channel import FeishuChannel
from core.gateway.errors import GatewayConfigError
from core.gateway.manager import ChannelManager
from core.gateway.pairing import PairingStore
from core.gateway.session_store import SessionStore
from core.gateway.types import GatewayConfig

logger = get_logger("gateway.loader")

# ${VAR_NAME} environment variable references
_ENV_VAR_PATTERN = re.compile(r"\$\{(\w+)\}")


def default_config_path() -> Path:
    override = os.getenv("GATEWAY_CONFIG_PATH")
    if override:
        return Path(override).expanduser()
    return get_config_dir() / "gateway.yaml"


def _resolve_env_vars(value: Any) -> Any:
    """
    Recursively resolve ${VAR_NAME} references in config values.

    Unset variables resolve to an empty string.
    """
    if isinstance(value, str):
        def _replace(match):
            var_name = match.group(1)
            env_value = os.environ.get(var_name, "")
            if not env_value:
                logger.debug(f"Environment variable {var_name} not set")
            return env_value
        return _ENV_VAR_PATTERN.sub(_replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def parse_gateway_config(raw: Any) -> GatewayConfig:
    """
    Validate a raw (already env-resolved) config mapping.

    Raises:
        GatewayConfigError: schema violations
    """
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise GatewayConfigError("gateway config must be a mapping")
    try:
        return GatewayConfig.model_validate(raw)
    except ValidationError as e:
        raise GatewayConfigError(f"invalid gateway config: {e}") from e


async def load_gateway_config(config_path: Optional[Path] = None) -> GatewayConfig:
    """
    Load and parse gateway configuration from YAML.

    A missing or unreadable file yields a disabled gateway; a file that
    parses but violates the schema raises GatewayConfigError.
    """
    path = config_path or default_config_path()

    if not path.exists():
        logger.info("Gateway config not found, gateway disabled", extra={"path": str(path)})
        return GatewayConfig()

    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            content = await f.read()
        raw = yaml.safe_load(content) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to load gateway config", extra={"path": str(path), "error": str(e)})
        return GatewayConfig()

    config = parse_gateway_config(_resolve_env_vars(raw))

    logger.info(
        "Gateway config loaded",
        extra={
            "enabled": config.enabled,
            "feishu": config.channels.feishu is not None,
            "bindings_count": len(config.bindings),
        },
    )
    return config


class ConfigHolder:
    """
    Current config snapshot.

    Each inbound event reads ``current()`` once; ``reload()`` swaps the
    snapshot for later events without touching runs in flight.
    """

    def __init__(self, config: GatewayConfig, path: Optional[Path] = None) -> None:
        self._config = config
        self._path = path

    def current(self) -> GatewayConfig:
        return self._config

    def replace(self, config: GatewayConfig) -> None:
        self._config = config

    async def reload(self) -> GatewayConfig:
        with log_execution_time("gateway config reload", logger):
            config = await load_gateway_config(self._path)
        self._config = config
        return config


async def create_gateway(
    config: Optional[GatewayConfig] = None,
    config_path: Optional[Path] = None,
) -> Optional[Tuple[ChannelManager, GatewayBridge]]:
    """
    Create and configure the gateway.

    Returns:
        (ChannelManager, GatewayBridge) when enabled, None when disabled
    """
    loaded_from_file = config is None
    if config is None:
        config = await load_gateway_config(config_path)

    if not config.enabled:
        logger.info("Gateway is disabled")
        return None

    holder = ConfigHolder(config, config_path)

    bridge = GatewayBridge(
        reply_handler=load_reply_handler(config.gateway.reply_handler),
        max_concurrent=config.gateway.max_concurrent_replies,
    )

    pairing_path = Path(config.pairing.store).expanduser() if config.pairing.store else None
    runtime = GatewayRuntime(
        config_provider=holder.current,
        bridge=bridge,
        pairing_store=PairingStore(pairing_path),
        session_store=SessionStore(),
        config_reloader=holder.reload if loaded_from_file else None,
    )

    manager = ChannelManager()
    manager.set_runtime(runtime)

    if config.channels.feishu is not None:
        manager.register(FeishuChannel(holder.current))
    else:
        logger.warning("Gateway enabled but no channels are configured")
        return None

    logger.info(
        "Gateway created",
        extra={"channels": [c["id"] for c in manager.list_channels()], "bindings": len(config.bindings)},
    )
    return manager, bridge
