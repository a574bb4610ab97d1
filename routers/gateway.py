"""
Gateway admin API

- account / channel status
- config reload
- webchat reply forwarding to a Feishu group
- pairing requests: list and approve
- Feishu credential check
"""

from typing import Any, Dict, List, Optional

import httpx
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from core.gateway.errors import GatewayConfigError, WebchatForwardError
from core.gateway.webchat_forward import WEBCHAT_CHANNEL, forward_webchat_final
from logger import get_logger

logger = get_logger("routers.gateway")

router = APIRouter(prefix="/api/v1/gateway", tags=["gateway"])

PAIRING_APPROVED_TEXT = "Your pairing request has been approved!"

_DEFAULT_FEISHU_DOMAIN = "https://open.feishu.cn"

# Module-level reference to the ChannelManager (set during startup)
_channel_manager = None


def set_channel_manager(manager) -> None:
    """Set the ChannelManager for this router (called from the main.py lifespan)."""
    global _channel_manager
    _channel_manager = manager


def _require_manager():
    if _channel_manager is None or _channel_manager.runtime is None:
        raise HTTPException(status_code=503, detail="Gateway is not running")
    return _channel_manager


# ==================== Status ====================


@router.get("/status")
async def get_gateway_status() -> Dict[str, Any]:
    """
    Gateway status with every account.

    Returns:
        {"enabled": true, "channels": [...], "accounts": [...]}
    """
    if _channel_manager is None:
        return {"enabled": False, "channels": [], "accounts": []}

    return {
        "enabled": True,
        "channels": _channel_manager.list_channels(),
        "accounts": [s.model_dump() for s in _channel_manager.list_account_statuses()],
    }


@router.get("/channels")
async def list_channels() -> List[Dict[str, Any]]:
    if _channel_manager is None:
        return []
    return _channel_manager.list_channels()


@router.get("/accounts")
async def list_accounts() -> List[Dict[str, Any]]:
    if _channel_manager is None:
        return []
    return [s.model_dump() for s in _channel_manager.list_account_statuses()]


# ==================== Config ====================


@router.post("/config/reload")
async def reload_config() -> Dict[str, Any]:
    """
    Re-read gateway.yaml. Events already in flight keep the snapshot they
    started with; running connections are not restarted.
    """
    manager = _require_manager()
    reloader = manager.runtime.config_reloader
    if reloader is None:
        raise HTTPException(status_code=409, detail="Gateway config was not loaded from a file")
    try:
        config = await reloader()
    except GatewayConfigError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info("Gateway config reloaded via API", extra={"enabled": config.enabled})
    return {"success": True, "data": {"enabled": config.enabled, "bindings": len(config.bindings)}}


# ==================== Webchat ====================


class WebchatForwardRequest(BaseModel):
    text: str = Field(..., min_length=1, description="Final reply of the webchat session")
    session_key: Optional[str] = None
    session_channel: str = Field(WEBCHAT_CHANNEL, description="Channel the session belongs to")


@router.post("/webchat/forward")
async def forward_webchat(body: WebchatForwardRequest) -> Dict[str, Any]:
    """
    Mirror a webchat final reply into the Feishu group configured under
    ``webchat.notify.feishu``. ``forwarded`` is False when forwarding is
    disabled or does not apply to the session.
    """
    manager = _require_manager()
    config = manager.runtime.config_provider()
    try:
        forwarded = await forward_webchat_final(
            config,
            body.text,
            session_key=body.session_key,
            session_channel=body.session_channel,
        )
    except (WebchatForwardError, httpx.HTTPError) as e:
        logger.warning(
            "Webchat forward failed",
            extra={"session_key": body.session_key or "n/a", "error": str(e)},
        )
        raise HTTPException(status_code=502, detail=str(e))

    return {"success": True, "data": {"forwarded": forwarded}}


# ==================== Pairing ====================


class PairingApproveRequest(BaseModel):
    code: str = Field(..., min_length=1, description="Pairing code sent to the user")
    notify: bool = Field(True, description="Tell the user the request was approved")
    account_id: Optional[str] = Field(None, description="Account used for the notification")


@router.get("/pairing/{channel}")
async def list_pairing_requests(channel: str) -> Dict[str, Any]:
    manager = _require_manager()
    store = manager.runtime.pairing_store
    requests = await store.list_requests(channel)
    allow_from = await store.read_allow_from(channel)
    return {
        "channel": channel,
        "requests": [r.model_dump() for r in requests],
        "allow_from": allow_from,
    }


@router.post("/pairing/{channel}/approve")
async def approve_pairing(channel: str, body: PairingApproveRequest) -> Dict[str, Any]:
    """
    Approve a pairing code. The sender is added to the channel's stored
    allow-list and, when the channel is running, notified.
    """
    manager = _require_manager()
    sender_id = await manager.runtime.pairing_store.approve(channel, body.code)
    if sender_id is None:
        raise HTTPException(status_code=404, detail="Unknown or expired pairing code")

    notified = False
    if body.notify:
        adapter = manager.get_adapter(channel)
        if adapter is not None:
            try:
                await adapter.send_text(f"open_id:{sender_id}", PAIRING_APPROVED_TEXT, body.account_id)
                notified = True
            except Exception as e:
                logger.warning(
                    "Pairing approval notification failed",
                    extra={"channel": channel, "sender": sender_id, "error": str(e)},
                )

    logger.info("Pairing approved via API", extra={"channel": channel, "sender": sender_id})
    return {"success": True, "data": {"id": sender_id, "notified": notified}}


# ==================== Connection test ====================


class FeishuTestRequest(BaseModel):
    app_id: str = ""
    app_secret: str = ""
    domain: Optional[str] = None


@router.post("/feishu/test")
async def test_feishu_connection(body: FeishuTestRequest) -> Dict[str, Any]:
    """
    Two-step Feishu credential check:
    1. fetch a tenant_access_token
    2. read the bot info (bot capability must be enabled)
    """
    app_id = body.app_id.strip()
    app_secret = body.app_secret.strip()

    if not app_id or app_id.startswith("${"):
        return {"success": True, "data": {"valid": False, "message": "App ID is required"}}
    if not app_secret or app_secret.startswith("${"):
        return {"success": True, "data": {"valid": False, "message": "App Secret is required"}}

    base_url = (body.domain or _DEFAULT_FEISHU_DOMAIN).rstrip("/")
    steps_passed: List[str] = []

    try:
        async with httpx.AsyncClient(timeout=10) as client:
            resp = await client.post(
                f"{base_url}/open-apis/auth/v3/tenant_access_token/internal",
                json={"app_id": app_id, "app_secret": app_secret},
            )
            token_data = resp.json()

            if token_data.get("code") != 0:
                error_msg = token_data.get("msg", "invalid credentials")
                return {
                    "success": True,
                    "data": {"valid": False, "message": f"Credential check failed: {error_msg}"},
                }

            tenant_token = token_data.get("tenant_access_token", "")
            steps_passed.append("credentials valid")

            resp = await client.get(
                f"{base_url}/open-apis/bot/v3/info/",
                headers={"Authorization": f"Bearer {tenant_token}"},
            )
            bot_data = resp.json()

        if bot_data.get("code") != 0:
            # 10003 / 10014: bot capability not enabled
            if bot_data.get("code") in (10003, 10014):
                return {
                    "success": True,
                    "data": {
                        "valid": False,
                        "message": "Credentials are valid but the bot capability is not enabled for this app.",
                    },
                }
            return {
                "success": True,
                "data": {
                    "valid": False,
                    "message": f"Credentials are valid but bot info failed: {bot_data.get('msg', 'unknown error')}",
                },
            }

        bot_info = bot_data.get("bot", {})
        bot_name = bot_info.get("app_name", "unnamed")
        steps_passed.append(f"bot '{bot_name}'")

        return {
            "success": True,
            "data": {
                "valid": True,
                "message": f"All checks passed: {' -> '.join(steps_passed)}",
                "bot_info": {"name": bot_name, "open_id": bot_info.get("open_id")},
            },
        }

    except Exception as e:
        logger.error("Feishu connection test failed", extra={"error": str(e)}, exc_info=True)
        detail = f" (passed: {' -> '.join(steps_passed)})" if steps_passed else ""
        return {
            "success": True,
            "data": {"valid": False, "message": f"Test failed: {e}{detail}"},
        }
