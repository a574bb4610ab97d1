"""
Application path helpers

Resolves the two kinds of paths the gateway needs:

- bundle_dir: read-only resources (config/gateway.yaml)
  - development = project root
  - frozen build = sys._MEIPASS

- user_data_dir: writable data (logs, pairing store, session store)
  - development = project root
  - frozen build = platform user data directory
    - macOS: ~/Library/Application Support/com.feishu-gateway.app/
    - Windows: %APPDATA%/feishu-gateway/
    - Linux: ~/.local/share/feishu-gateway/
"""

import os
import sys
from pathlib import Path
from typing import Optional

APP_ID = "com.feishu-gateway.app"
APP_NAME = "feishu-gateway"

_CLI_DATA_DIR_KEY = "--data-dir"
_CLI_PORT_KEY = "--port"

_user_data_dir: Optional[Path] = None
_bundle_dir: Optional[Path] = None


def is_frozen() -> bool:
    """Whether we run from a PyInstaller bundle."""
    return getattr(sys, "frozen", False)


def get_bundle_dir() -> Path:
    """
    Directory holding read-only resources.

    Returns:
        project root in development, the PyInstaller extraction dir when frozen
    """
    global _bundle_dir
    if _bundle_dir is not None:
        return _bundle_dir

    if is_frozen():
        _bundle_dir = Path(sys._MEIPASS)
    else:
        # utils/app_paths.py -> two levels up
        _bundle_dir = Path(__file__).parent.parent

    return _bundle_dir


def get_user_data_dir() -> Path:
    """
    Writable data directory.

    Priority:
    1. --data-dir command line argument
    2. GATEWAY_DATA_DIR environment variable
    3. project root (development)
    4. platform user data directory (frozen)
    """
    global _user_data_dir
    if _user_data_dir is not None:
        return _user_data_dir

    data_dir = _get_cli_arg(_CLI_DATA_DIR_KEY)
    if data_dir:
        _user_data_dir = Path(data_dir)
        _user_data_dir.mkdir(parents=True, exist_ok=True)
        return _user_data_dir

    env_dir = os.getenv("GATEWAY_DATA_DIR")
    if env_dir:
        _user_data_dir = Path(env_dir)
        _user_data_dir.mkdir(parents=True, exist_ok=True)
        return _user_data_dir

    if not is_frozen():
        _user_data_dir = Path(__file__).parent.parent
        return _user_data_dir

    _user_data_dir = _get_platform_data_dir()
    _user_data_dir.mkdir(parents=True, exist_ok=True)
    return _user_data_dir


def get_cli_port() -> int:
    """Port from --port, then GATEWAY_PORT, default 18900."""
    port_str = _get_cli_arg(_CLI_PORT_KEY)
    if port_str:
        try:
            return int(port_str)
        except ValueError:
            pass
    return int(os.getenv("GATEWAY_PORT", "18900"))


def get_config_dir() -> Path:
    """Read-only config directory (gateway.yaml)."""
    return get_bundle_dir() / "config"


def get_logs_dir() -> Path:
    d = get_user_data_dir() / "logs"
    d.mkdir(parents=True, exist_ok=True)
    return d


def get_store_dir() -> Path:
    """Writable directory for JSON stores (pairing, sessions)."""
    d = get_user_data_dir() / "data" / "store"
    d.mkdir(parents=True, exist_ok=True)
    return d


def _get_cli_arg(key: str) -> Optional[str]:
    """
    Extract a value from the command line.

    Accepts both ``--key value`` and ``--key=value``.
    """
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == key and i + 1 < len(args):
            return args[i + 1]
        if arg.startswith(f"{key}="):
            return arg.split("=", 1)[1]
    return None


def _get_platform_data_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / APP_ID
    elif sys.platform == "win32":
        appdata = os.getenv("APPDATA")
        if appdata:
            return Path(appdata) / APP_NAME
        return Path.home() / "AppData" / "Roaming" / APP_NAME
    else:
        xdg_data = os.getenv("XDG_DATA_HOME")
        if xdg_data:
            return Path(xdg_data) / APP_NAME
        return Path.home() / ".local" / "share" / APP_NAME


def reset_cache() -> None:
    """Forget cached directories (tests switch GATEWAY_DATA_DIR between runs)."""
    global _user_data_dir, _bundle_dir
    _user_data_dir = None
    _bundle_dir = None
