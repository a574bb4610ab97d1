"""
End-to-end inbound pipeline over a fake runtime.

Outbound sends are recorded, stores live in tmp_path, the bridge runs the
echo handler unless a test supplies its own.
"""

from core.gateway.channels.feishu import monitor as monitor_module
from core.gateway.channels.feishu.monitor import FEISHU_GATES, FeishuMonitor
from core.gateway.pipeline import drain_detached

BOT = {"bot_open_id": "ou_bot", "bot_name": "Helper"}


def _monitor(runtime, sender, status=None):
    sink = (lambda **patch: status.append(patch)) if status is not None else None
    return FeishuMonitor("default", runtime, status_sink=sink, send=sender)


class TestGroupPipeline:

    async def test_plain_text_group_message_fails_open(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "groups": {"oc_group": {}}})
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(make_event(text="hello"))

        assert ctx is not None
        assert ctx.was_mentioned is False
        assert ctx.chat_type == "channel"
        assert recording_sender.sent == [("default", "chat:oc_group", "Echo: hello")]
        await drain_detached()

    async def test_mention_of_someone_else_is_skipped(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "groups": {"oc_group": {}}})
        event = make_event(
            text="@_user_1 hello",
            mentions=[{"key": "@_user_1", "id": {"open_id": "ou_alice"}, "name": "Alice"}],
        )
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(event)

        assert ctx is None
        assert recording_sender.sent == []

    async def test_mention_of_bot_is_answered(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "groups": {"oc_group": {"system_prompt": " Be brief. "}}})
        event = make_event(
            text="@_user_1 hello",
            mentions=[{"key": "@_user_1", "id": {"open_id": "ou_bot"}, "name": "Helper"}],
        )
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(event)

        assert ctx.was_mentioned is True
        assert ctx.group_system_prompt == "Be brief."
        assert ctx.group_space == "oc_group"
        await drain_detached()

    async def test_fail_closed_toggle(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "groups": {"oc_group": {"mention_fail_open": False}}})
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(make_event(text="hello"))
        assert ctx is None

    async def test_authorized_command_bypasses_mention(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "groups": {"oc_group": {"users": ["ou_user"]}}})
        event = make_event(
            text="/status",
            mentions=[{"key": "@_user_1", "id": {"open_id": "ou_alice"}, "name": "Alice"}],
        )
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(event)

        assert ctx is not None
        assert ctx.command_authorized is True
        assert ctx.was_mentioned is True
        await drain_detached()

    async def test_unauthorized_control_command_is_dropped(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "require_mention": False, "groups": {"oc_group": {}}})
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(make_event(text="/reset"))
        assert ctx is None
        assert recording_sender.sent == []

    async def test_bot_messages_are_dropped(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "group_policy": "open"})
        monitor = _monitor(make_runtime(cfg), recording_sender)
        assert await monitor.process_event(make_event(sender_type="bot")) is None
        assert await monitor.process_event(make_event(sender="ou_bot")) is None

    async def test_disabled_group_policy_short_circuits(
        self, make_config, make_event, make_runtime, recording_sender, monkeypatch
    ):
        calls = []

        def _spy(name):
            def _fail(*args, **kwargs):
                calls.append(name)
                raise AssertionError(f"{name} must not run")
            return _fail

        monkeypatch.setattr(monitor_module, "resolve_mention_gating_with_bypass", _spy("mention"))
        monkeypatch.setattr(monitor_module, "extract_mention_info", _spy("extract_mention"))
        monkeypatch.setattr(monitor_module, "resolve_command_authorized", _spy("command_auth"))
        monkeypatch.setattr(monitor_module, "evaluate_direct", _spy("direct"))

        cfg = make_config({**BOT, "group_policy": "disabled", "groups": {"*": {}}})
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(make_event(text="/status"))

        assert ctx is None
        assert calls == []
        assert recording_sender.sent == []


class TestDirectPipeline:

    async def test_open_dm_status_proceeds(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"dm": {"policy": "open"}})
        event = make_event(text="status", chat_type="p2p", chat_id="oc_dm", sender="ou_stranger")
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(event)

        assert ctx is not None
        assert ctx.chat_type == "direct"
        assert ctx.was_mentioned is None
        assert ctx.from_ == "feishu:ou_stranger"
        assert ctx.to == "feishu:oc_dm"
        assert ctx.session_key == "agent:main:main"
        assert recording_sender.sent == [("default", "chat:oc_dm", "Echo: status")]
        await drain_detached()

    async def test_per_peer_dm_session_keyed_by_chat(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"dm": {"policy": "open"}}, session={"dm_scope": "per-peer"})
        event = make_event(text="status", chat_type="p2p", chat_id="oc_dm", sender="ou_stranger")
        ctx = await _monitor(make_runtime(cfg), recording_sender).process_event(event)

        assert ctx.session_key == "agent:main:direct:oc_dm"
        await drain_detached()

    async def test_pairing_sends_one_code(self, make_config, make_event, make_runtime, recording_sender):
        runtime = make_runtime(make_config({}))
        monitor = _monitor(runtime, recording_sender)
        event = make_event(text="hi", chat_type="p2p", chat_id="oc_dm", sender="ou_u1")

        assert await monitor.process_event(event) is None
        assert await monitor.process_event(event) is None

        assert len(recording_sender.sent) == 1
        assert recording_sender.sent[0][1] == "open_id:ou_u1"
        assert len(await runtime.pairing_store.list_requests("feishu")) == 1

    async def test_approved_sender_gets_answers(self, make_config, make_event, make_runtime, recording_sender):
        runtime = make_runtime(make_config({}))
        monitor = _monitor(runtime, recording_sender)
        event = make_event(text="hi", chat_type="p2p", chat_id="oc_dm", sender="ou_u1")

        await monitor.process_event(event)
        code = (await runtime.pairing_store.list_requests("feishu"))[0].code
        assert await runtime.pairing_store.approve("feishu", code.lower()) == "ou_u1"

        ctx = await monitor.process_event(event)
        assert ctx is not None
        assert recording_sender.sent[-1] == ("default", "chat:oc_dm", "Echo: hi")
        await drain_detached()


class TestContextAndStatus:

    async def test_same_peer_same_session_key(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({**BOT, "group_policy": "open", "require_mention": False})
        monitor = _monitor(make_runtime(cfg), recording_sender)

        first = await monitor.process_event(make_event(text="one", message_id="om_1", sender="ou_a"))
        second = await monitor.process_event(make_event(text="two", message_id="om_2", sender="ou_b"))

        assert first.session_key == second.session_key == "agent:main:feishu:group:oc_group"
        await drain_detached()

    async def test_reply_prefers_root_id(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"group_policy": "open", "require_mention": False})
        monitor = _monitor(make_runtime(cfg), recording_sender)

        ctx = await monitor.process_event(make_event(root_id="om_root", parent_id="om_parent"))
        assert ctx.reply_to_id == "om_root"
        ctx = await monitor.process_event(make_event(parent_id="om_parent"))
        assert ctx.reply_to_id == "om_parent"
        await drain_detached()

    async def test_session_meta_is_recorded(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"group_policy": "open", "require_mention": False})
        runtime = make_runtime(cfg)
        ctx = await _monitor(runtime, recording_sender).process_event(make_event())
        await drain_detached()

        path = runtime.session_store.resolve_store_path(None, ctx.agent_id)
        entry = await runtime.session_store.get_session(path, ctx.session_key)
        assert entry["last_message_id"] == "om_1"
        assert entry["updated_at"] == 1767225600000

    async def test_envelope_shows_elapsed_since_previous(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"group_policy": "open", "require_mention": False})
        monitor = _monitor(make_runtime(cfg), recording_sender)

        await monitor.process_event(make_event(create_time="1767225600000"))
        await drain_detached()
        ctx = await monitor.process_event(make_event(create_time=str(1767225600000 + 5 * 60 * 1000)))

        assert ctx.body.startswith("[Feishu chat:oc_group +5m ")
        assert ctx.body.endswith("] hello")
        assert ctx.raw_body == "hello"
        await drain_detached()

    async def test_status_marks(self, make_config, make_event, make_runtime, recording_sender):
        cfg = make_config({"group_policy": "open", "require_mention": False})
        status = []
        await _monitor(make_runtime(cfg), recording_sender, status).process_event(make_event())

        keys = [k for patch in status for k in patch]
        assert keys == ["last_inbound_at", "last_outbound_at"]
        await drain_detached()

    async def test_send_failure_is_logged_not_raised(self, make_config, make_event, make_runtime, caplog):
        async def failing_send(account, to, text):
            raise RuntimeError("feishu down")

        cfg = make_config({"group_policy": "open", "require_mention": False})
        status = []
        monitor = FeishuMonitor("default", make_runtime(cfg), status_sink=lambda **p: status.append(p), send=failing_send)

        with caplog.at_level("ERROR"):
            ctx = await monitor.process_event(make_event())

        assert ctx is not None
        assert not any("last_outbound_at" in patch for patch in status)
        assert "[default] Feishu final reply failed" in caplog.text
        await drain_detached()

    def test_gate_order(self):
        assert [g.__name__ for g in FEISHU_GATES] == [
            "bot_filter_gate",
            "group_gate",
            "command_authorization_gate",
            "mention_gate",
            "direct_gate",
            "control_command_gate",
        ]
