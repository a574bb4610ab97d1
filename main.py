"""
Feishu Gateway - FastAPI service

Runs the Feishu channel gateway (long connections, inbound gates, reply
bridge) next to a small admin API.
"""

# ==================== Standard library ====================
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Tuple

# ==================== Third party ====================
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ==================== Local modules ====================
from core.gateway import ChannelManager, GatewayBridge, GatewayConfigError, create_gateway
from core.gateway.pipeline import drain_detached
from logger import get_logger
from routers import gateway_router
from routers.gateway import set_channel_manager

logger = get_logger("main")

# ==================== Constants ====================

APP_NAME = "Feishu Gateway API"
APP_DESCRIPTION = "Feishu/Lark channel gateway with inbound authorization and routing"


def _read_version() -> str:
    """Read version from the VERSION file."""
    from utils.app_paths import get_bundle_dir
    version_file = get_bundle_dir() / "VERSION"
    try:
        return version_file.read_text().strip()
    except FileNotFoundError:
        return "0.0.0-dev"


APP_VERSION = _read_version()


# ==================== Startup helpers ====================

async def _start_gateway() -> Optional[Tuple[ChannelManager, GatewayBridge]]:
    """Create the gateway and start every enabled account."""
    try:
        gateway = await create_gateway()
    except GatewayConfigError as e:
        logger.error("Gateway config invalid, gateway not started", extra={"error": str(e)})
        return None

    if gateway is None:
        return None

    manager, _bridge = gateway
    started = await manager.start_all()
    set_channel_manager(manager)
    logger.info("Gateway started", extra={"accounts_started": started})
    return gateway


async def _stop_gateway(gateway: Optional[Tuple[ChannelManager, GatewayBridge]]) -> None:
    if gateway is None:
        return
    manager, _bridge = gateway
    try:
        await manager.stop_all()
    except Exception as e:
        logger.warning("Gateway shutdown failed", extra={"error": str(e)})
    set_channel_manager(None)
    await drain_detached()


# ==================== Lifespan ====================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan"""
    logger.info(f"{APP_NAME} starting", extra={"version": APP_VERSION})

    gateway = await _start_gateway()

    yield

    logger.info(f"{APP_NAME} shutting down")
    await _stop_gateway(gateway)


# ==================== FastAPI app ====================

app = FastAPI(
    title=APP_NAME,
    description=APP_DESCRIPTION,
    version=APP_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS: allowed origins from the environment
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
_allowed_origins = (
    ["*"] if _allowed_origins_env == "*"
    else [origin.strip() for origin in _allowed_origins_env.split(",") if origin.strip()]
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(gateway_router)


@app.get("/")
async def root() -> Dict[str, Any]:
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "gateway": "/api/v1/gateway/status",
            "pairing": "/api/v1/gateway/pairing/{channel}",
        },
    }


@app.get("/health")
async def health_check() -> Dict[str, Any]:
    return {"status": "ok", "version": APP_VERSION}


# ==================== Entrypoint ====================

if __name__ == "__main__":
    import uvicorn
    from utils.app_paths import get_cli_port, is_frozen

    port = get_cli_port()
    host = "127.0.0.1" if is_frozen() else "0.0.0.0"

    logger.info(f"Starting {APP_NAME}", extra={"url": f"http://localhost:{port}"})

    if is_frozen():
        # PyInstaller: pass the app object, "main:app" string import fails there
        uvicorn.run(app, host=host, port=port, log_level="info")
    else:
        uvicorn.run("main:app", host=host, port=port, reload=True, log_level="info")
