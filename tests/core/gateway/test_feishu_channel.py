"""Feishu adapter and connection behaviour that needs no live socket."""

import asyncio

import pytest

from core.gateway.channels.feishu import channel as channel_module
from core.gateway.channels.feishu.channel import FeishuChannel, FeishuConnection
from core.gateway.channels.feishu.config import resolve_feishu_account
from core.gateway.errors import GatewayConfigError


class TestFeishuChannel:

    def test_accounts_and_description(self, make_config):
        cfg = make_config({"app_id": "cli", "app_secret": "s", "accounts": {"ops": {"name": "Ops bot"}}})
        adapter = FeishuChannel(lambda: cfg)

        assert adapter.list_account_ids(cfg) == ["ops"]
        status = adapter.describe_account(cfg, "ops")
        assert status.channel == "feishu"
        assert status.name == "Ops bot"
        assert status.configured is True
        assert status.running is False

    def test_no_feishu_block(self, make_config):
        cfg = make_config()
        assert FeishuChannel(lambda: cfg).list_account_ids(cfg) == []

    async def test_start_unconfigured_account_raises(self, make_config, make_runtime):
        cfg = make_config({})
        with pytest.raises(GatewayConfigError):
            await FeishuChannel(lambda: cfg).start_account("default", make_runtime(cfg), lambda **p: None)

    async def test_send_text_uses_default_account(self, make_config, monkeypatch):
        cfg = make_config({"default_account": "ops", "accounts": {"ops": {"app_id": "cli", "app_secret": "s"}}})
        calls = []

        async def fake_send(account, to, text):
            calls.append((account.account_id, to, text))
            return "om_1"

        monkeypatch.setattr(channel_module, "send_feishu_text", fake_send)
        assert await FeishuChannel(lambda: cfg).send_text("open_id:ou_1", "approved") == "om_1"
        assert calls == [("ops", "open_id:ou_1", "approved")]


class TestFeishuConnection:

    def _connection(self, make_config, on_event=None, **feishu):
        account = resolve_feishu_account(make_config(feishu))

        async def _noop(event):
            return None

        return FeishuConnection(account, on_event or _noop)

    async def test_start_requires_credentials(self, make_config):
        with pytest.raises(GatewayConfigError):
            await self._connection(make_config, app_id="cli").start()

    def test_backoff_is_capped(self, make_config):
        conn = self._connection(make_config)
        delays = []
        for failures in range(6):
            conn._consecutive_failures = failures
            delays.append(conn.reconnect_delay())
        assert delays == [5, 10, 20, 40, 80, 120]

    def test_not_healthy_before_start(self, make_config):
        assert self._connection(make_config).is_healthy() is False

    async def test_sdk_thread_events_reach_the_loop(self, make_config, make_event, monkeypatch):
        received = asyncio.Event()
        seen = []

        async def on_event(event):
            seen.append(event.message_id)
            received.set()

        event = make_event(message_id="om_thread")
        monkeypatch.setattr(channel_module, "parse_lark_event", lambda data: event)

        conn = self._connection(make_config, on_event)
        conn._loop = asyncio.get_running_loop()
        await asyncio.to_thread(conn._handle_message_receive, object())
        await asyncio.wait_for(received.wait(), timeout=2)

        assert seen == ["om_thread"]

    async def test_handler_errors_do_not_escape(self, make_config, make_event):
        async def on_event(event):
            raise RuntimeError("pipeline bug")

        conn = self._connection(make_config, on_event)
        await conn._safe_handle(make_event())

    def test_malformed_events_are_dropped(self, make_config, monkeypatch):
        monkeypatch.setattr(channel_module, "parse_lark_event", lambda data: None)
        conn = self._connection(make_config)
        conn._handle_message_receive(object())

    async def test_stop_without_start(self, make_config):
        conn = self._connection(make_config)
        await conn.stop()
        assert conn.is_healthy() is False
