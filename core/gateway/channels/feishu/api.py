"""
Feishu outbound API

Text messages via ``im.v1.message.create``. Targets are addressed with a
prefix naming the receive id type:

    chat:<chat_id>       open_id:<open_id>  (also open:<open_id>)
    user:<user_id>       <bare id>  -> chat_id
"""

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Tuple

from logger import get_logger

from core.gateway.channels.feishu.config import ResolvedFeishuAccount
from core.gateway.errors import FeishuSendError, GatewayConfigError

logger = get_logger("gateway.channels.feishu.api")

ReceiveIdType = Literal["chat_id", "open_id", "user_id"]

_TARGET_PREFIXES: Tuple[Tuple[str, ReceiveIdType], ...] = (
    ("chat:", "chat_id"),
    ("open_id:", "open_id"),
    ("open:", "open_id"),
    ("user:", "user_id"),
)

_clients: Dict[Tuple[str, str, str, str], Any] = {}


@dataclass(frozen=True)
class ReceiveTarget:
    receive_id_type: ReceiveIdType
    receive_id: str


def resolve_receive_target(raw: str) -> Optional[ReceiveTarget]:
    """Parse a prefixed target. None for blank input."""
    trimmed = (raw or "").strip()
    if not trimmed:
        return None
    lower = trimmed.lower()
    for prefix, id_type in _TARGET_PREFIXES:
        if lower.startswith(prefix):
            return ReceiveTarget(id_type, trimmed[len(prefix):].strip())
    return ReceiveTarget("chat_id", trimmed)


def create_feishu_client(account: ResolvedFeishuAccount):
    """REST client for an account, cached by credentials."""
    import lark_oapi as lark

    app_id = (account.config.app_id or "").strip()
    app_secret = (account.config.app_secret or "").strip()
    if not app_id or not app_secret:
        raise GatewayConfigError(f"Feishu account {account.account_id} is not configured")

    domain = (account.config.domain or "").strip()
    app_type = (account.config.app_type or "").strip().lower()
    key = (app_id, app_secret, domain, app_type)

    client = _clients.get(key)
    if client is None:
        builder = lark.Client.builder() \
            .app_id(app_id) \
            .app_secret(app_secret) \
            .log_level(lark.LogLevel.WARNING)
        if domain:
            builder = builder.domain(domain)
        if app_type == "isv":
            builder = builder.app_type(lark.AppType.ISV)
        elif app_type == "self_build":
            builder = builder.app_type(lark.AppType.SELF)
        client = builder.build()
        _clients[key] = client
    return client


async def send_feishu_text(
    account: ResolvedFeishuAccount,
    to: str,
    text: str,
    client: Any = None,
) -> str:
    """
    Send a text message.

    Returns:
        message_id of the created message (empty when Feishu omits it)

    Raises:
        FeishuSendError: empty target or API failure
        GatewayConfigError: account lacks credentials
    """
    import lark_oapi as lark
    from lark_oapi.api.im.v1 import CreateMessageRequest, CreateMessageRequestBody

    target = resolve_receive_target(to)
    if target is None:
        raise FeishuSendError("Feishu target is empty")
    if not target.receive_id:
        raise FeishuSendError("Feishu target missing receive_id")

    client = client or create_feishu_client(account)
    content = json.dumps({"text": text}, ensure_ascii=False)

    request = CreateMessageRequest.builder() \
        .receive_id_type(target.receive_id_type) \
        .request_body(
            CreateMessageRequestBody.builder()
            .receive_id(target.receive_id)
            .msg_type("text")
            .content(content)
            .build()
        ).build()

    tenant_key = (account.config.tenant_key or "").strip()
    option = lark.RequestOption.builder().tenant_key(tenant_key).build() if tenant_key else None

    def _create():
        if option is not None:
            return client.im.v1.message.create(request, option)
        return client.im.v1.message.create(request)

    # SDK call is blocking
    response = await asyncio.get_running_loop().run_in_executor(None, _create)

    if not response.success():
        logger.error(
            "Failed to send Feishu message",
            extra={
                "account": account.account_id,
                "code": response.code,
                "error_msg": response.msg,
                "receive_id_type": target.receive_id_type,
            },
        )
        raise FeishuSendError(
            f"Feishu send failed: code={response.code}, msg={response.msg}",
            code=response.code or 0,
        )

    data = getattr(response, "data", None)
    return getattr(data, "message_id", "") or ""
