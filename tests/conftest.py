"""
Shared fixtures for the gateway tests.

No network, no Feishu SDK connections: senders are recorded in memory and
every store lives under pytest's tmp_path.
"""

import json
import os

# File logging off before anything imports logger
os.environ.setdefault("GATEWAY_LOG_TO_FILE", "0")

import pytest

from core.gateway.bridge import GatewayBridge
from core.gateway.channel import GatewayRuntime
from core.gateway.channels.feishu.events import parse_message_event
from core.gateway.pairing import PairingStore
from core.gateway.session_store import SessionStore
from core.gateway.types import GatewayConfig
from utils import app_paths


@pytest.fixture(autouse=True)
def isolated_data_dir(tmp_path, monkeypatch):
    monkeypatch.setenv("GATEWAY_DATA_DIR", str(tmp_path / "data"))
    app_paths.reset_cache()
    yield tmp_path / "data"
    app_paths.reset_cache()


@pytest.fixture
def make_config():
    """GatewayConfig with an enabled gateway and the given Feishu block."""

    def _make(feishu=None, **top):
        raw = {"gateway": {"enabled": True}}
        if feishu is not None:
            raw["channels"] = {"feishu": feishu}
        raw.update(top)
        return GatewayConfig.model_validate(raw)

    return _make


@pytest.fixture
def make_event():
    """InboundEvent built from an im.message.receive_v1 style payload."""

    def _make(
        text="hello",
        chat_type="group",
        chat_id="oc_group",
        sender="ou_user",
        sender_type="user",
        mentions=None,
        message_id="om_1",
        create_time="1767225600000",
        root_id=None,
        parent_id=None,
        content=None,
    ):
        message = {
            "message_id": message_id,
            "chat_id": chat_id,
            "chat_type": chat_type,
            "message_type": "text",
            "create_time": create_time,
            "content": content if content is not None else json.dumps({"text": text}),
        }
        if mentions is not None:
            message["mentions"] = mentions
        if root_id:
            message["root_id"] = root_id
        if parent_id:
            message["parent_id"] = parent_id
        payload = {
            "schema": "2.0",
            "header": {"event_type": "im.message.receive_v1"},
            "event": {
                "sender": {"sender_id": {"open_id": sender}, "sender_type": sender_type},
                "message": message,
            },
        }
        return parse_message_event(payload)

    return _make


class RecordingSender:
    """Collects (account_id, to, text) for every outbound send."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail

    async def __call__(self, account, to, text):
        if self.fail:
            raise RuntimeError("send failed")
        self.sent.append((account.account_id, to, text))
        return "om_out"


@pytest.fixture
def recording_sender():
    return RecordingSender()


@pytest.fixture
def make_runtime(tmp_path):
    """GatewayRuntime over tmp stores and an echo bridge by default."""

    def _make(cfg, reply_handler=None, pairing_clock=None):
        kwargs = {"clock": pairing_clock} if pairing_clock else {}
        return GatewayRuntime(
            config_provider=lambda: cfg,
            bridge=GatewayBridge(reply_handler=reply_handler),
            pairing_store=PairingStore(tmp_path / "pairing.json", **kwargs),
            session_store=SessionStore(base_dir=tmp_path / "store"),
        )

    return _make
