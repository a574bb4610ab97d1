"""Outbound target parsing and message sending with a stub SDK client."""

import json
from types import SimpleNamespace

import pytest

from core.gateway.channels.feishu.api import (
    ReceiveTarget,
    create_feishu_client,
    resolve_receive_target,
    send_feishu_text,
)
from core.gateway.channels.feishu.config import resolve_feishu_account
from core.gateway.errors import FeishuSendError, GatewayConfigError


class StubMessageApi:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def create(self, request, option=None):
        self.calls.append((request, option))
        return self.response


def _stub_client(success=True, code=0, msg="ok", message_id="om_new"):
    response = SimpleNamespace(
        success=lambda: success,
        code=code,
        msg=msg,
        data=SimpleNamespace(message_id=message_id),
    )
    api = StubMessageApi(response)
    return SimpleNamespace(im=SimpleNamespace(v1=SimpleNamespace(message=api))), api


class TestResolveReceiveTarget:

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("chat:oc_1", ReceiveTarget("chat_id", "oc_1")),
            ("open_id:ou_1", ReceiveTarget("open_id", "ou_1")),
            ("open:ou_1", ReceiveTarget("open_id", "ou_1")),
            ("user:u_1", ReceiveTarget("user_id", "u_1")),
            ("CHAT: oc_2", ReceiveTarget("chat_id", "oc_2")),
            ("oc_bare", ReceiveTarget("chat_id", "oc_bare")),
        ],
    )
    def test_prefixes(self, raw, expected):
        assert resolve_receive_target(raw) == expected

    def test_blank(self):
        assert resolve_receive_target("  ") is None


class TestSendFeishuText:

    async def test_sends_text_message(self, make_config):
        account = resolve_feishu_account(make_config({"app_id": "cli", "app_secret": "s"}))
        client, api = _stub_client()

        message_id = await send_feishu_text(account, "chat:oc_1", "你好", client=client)

        assert message_id == "om_new"
        request, option = api.calls[0]
        assert option is None
        assert request.receive_id_type == "chat_id"
        assert request.request_body.receive_id == "oc_1"
        assert request.request_body.msg_type == "text"
        assert json.loads(request.request_body.content) == {"text": "你好"}

    async def test_tenant_key_option(self, make_config):
        account = resolve_feishu_account(make_config({"app_id": "cli", "app_secret": "s", "tenant_key": "tk"}))
        client, api = _stub_client()
        await send_feishu_text(account, "open_id:ou_1", "hi", client=client)
        assert api.calls[0][1] is not None

    async def test_api_failure(self, make_config):
        account = resolve_feishu_account(make_config({"app_id": "cli", "app_secret": "s"}))
        client, _ = _stub_client(success=False, code=230002, msg="bot not in chat")
        with pytest.raises(FeishuSendError) as excinfo:
            await send_feishu_text(account, "chat:oc_1", "hi", client=client)
        assert excinfo.value.code == 230002

    @pytest.mark.parametrize("to", ["", "chat:"])
    async def test_bad_target(self, make_config, to):
        account = resolve_feishu_account(make_config({"app_id": "cli", "app_secret": "s"}))
        client, api = _stub_client()
        with pytest.raises(FeishuSendError):
            await send_feishu_text(account, to, "hi", client=client)
        assert api.calls == []

    def test_client_requires_credentials(self, make_config):
        with pytest.raises(GatewayConfigError):
            create_feishu_client(resolve_feishu_account(make_config({})))
