"""Webchat final replies mirrored to a Feishu webhook."""

import base64
import hashlib
import hmac
import json

import httpx
import pytest

from core.gateway.errors import WebchatForwardError
from core.gateway.types import GatewayConfig
from core.gateway.webchat_forward import build_webhook_payload, forward_webchat_final, sign_webhook


def _cfg(**feishu):
    return GatewayConfig.model_validate({
        "webchat": {"notify": {"enabled": True, "feishu": {"webhook": "https://hook.example/abc", **feishu}}}
    })


def _client(status=200, body=None, captured=None):
    def handler(request):
        if captured is not None:
            captured.append(json.loads(request.content))
        return httpx.Response(status, json=body if body is not None else {"code": 0})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSigning:

    def test_signature_matches_feishu_scheme(self):
        expected = base64.b64encode(
            hmac.new(b"1700000000\nsecret", b"", hashlib.sha256).digest()
        ).decode()
        assert sign_webhook("1700000000", "secret") == expected

    def test_payload_with_keyword_and_secret(self):
        payload = build_webhook_payload("done", keyword="[bot]", secret="secret", now=1700000000)
        assert payload["content"]["text"] == "[bot] done"
        assert payload["timestamp"] == "1700000000"
        assert payload["sign"] == sign_webhook("1700000000", "secret")

    def test_unsigned_payload(self):
        assert build_webhook_payload("done") == {"msg_type": "text", "content": {"text": "done"}}


class TestForward:

    async def test_posts_for_webchat_sessions(self):
        captured = []
        async with _client(captured=captured) as client:
            assert await forward_webchat_final(_cfg(), " hi ", "s1", "webchat", client=client) is True
        assert captured == [{"msg_type": "text", "content": {"text": "hi"}}]

    async def test_other_channels_are_ignored(self):
        async with _client() as client:
            assert await forward_webchat_final(_cfg(), "hi", "s1", "feishu", client=client) is False

    async def test_disabled_or_missing_webhook(self):
        cfg = GatewayConfig.model_validate({"webchat": {"notify": {"enabled": False}}})
        assert await forward_webchat_final(cfg, "hi", "s1", "webchat") is False
        assert await forward_webchat_final(_cfg(webhook=" "), "hi", "s1", "webchat") is False
        assert await forward_webchat_final(_cfg(enabled=False), "hi", "s1", "webchat") is False

    async def test_http_error(self):
        async with _client(status=500) as client:
            with pytest.raises(WebchatForwardError):
                await forward_webchat_final(_cfg(), "hi", "s1", "webchat", client=client)

    async def test_application_error_code(self):
        async with _client(body={"code": 19021, "msg": "sign match fail"}) as client:
            with pytest.raises(WebchatForwardError, match="sign match fail"):
                await forward_webchat_final(_cfg(secret="s"), "hi", "s1", "webchat", client=client)
