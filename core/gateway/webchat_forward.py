"""
Webchat -> Feishu webhook forwarder

Final replies of webchat sessions can be mirrored into a Feishu group via a
custom-bot webhook. Signing follows Feishu's custom bot scheme: HMAC-SHA256
keyed by ``"<timestamp>\\n<secret>"`` over an empty message, base64-encoded.
"""

import base64
import hashlib
import hmac
import time
from typing import Any, Dict, Optional

import httpx

from logger import get_logger

from core.gateway.errors import WebchatForwardError
from core.gateway.types import GatewayConfig

logger = get_logger("gateway.webchat_forward")

WEBCHAT_CHANNEL = "webchat"


def sign_webhook(timestamp: str, secret: str) -> str:
    string_to_sign = f"{timestamp}\n{secret}".encode("utf-8")
    digest = hmac.new(string_to_sign, b"", digestmod=hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def build_webhook_payload(
    text: str,
    keyword: str = "",
    secret: str = "",
    now: Optional[float] = None,
) -> Dict[str, Any]:
    body = f"{keyword} {text}" if keyword else text
    payload: Dict[str, Any] = {"msg_type": "text", "content": {"text": body}}
    if secret:
        timestamp = str(int(now if now is not None else time.time()))
        payload["timestamp"] = timestamp
        payload["sign"] = sign_webhook(timestamp, secret)
    return payload


async def forward_webchat_final(
    cfg: GatewayConfig,
    text: str,
    session_key: Optional[str] = None,
    session_channel: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> bool:
    """
    Mirror a webchat final reply to the configured Feishu webhook.

    Returns:
        True when a message was posted, False when forwarding does not apply

    Raises:
        WebchatForwardError: non-2xx status or non-zero ``code`` in the response
    """
    notify = cfg.webchat.notify
    if not notify.enabled:
        return False
    if (session_channel or "").strip().lower() != WEBCHAT_CHANNEL:
        return False

    feishu = notify.feishu
    if feishu is None or feishu.enabled is False:
        return False

    webhook = feishu.webhook.strip()
    if not webhook:
        logger.warning(
            "Webchat forward skipped: missing Feishu webhook",
            extra={"session_key": session_key or "n/a"},
        )
        return False

    base_text = (text or "").strip()
    if not base_text:
        return False

    payload = build_webhook_payload(base_text, feishu.keyword.strip(), feishu.secret.strip())

    if client is None:
        async with httpx.AsyncClient(timeout=10.0) as owned:
            response = await owned.post(webhook, json=payload)
    else:
        response = await client.post(webhook, json=payload)

    try:
        data = response.json()
    except ValueError:
        data = {}

    if not response.is_success:
        raise WebchatForwardError(f"Feishu webhook HTTP {response.status_code}")
    if isinstance(data, dict) and data.get("code") not in (None, 0):
        raise WebchatForwardError(f"Feishu webhook error: {data.get('msg') or 'unknown'}")

    logger.debug("Webchat reply forwarded to Feishu", extra={"session_key": session_key})
    return True
