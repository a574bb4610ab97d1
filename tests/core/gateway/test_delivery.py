"""Outbound chunking."""

import pytest

from core.gateway.delivery import deliver_text, split_message


class TestSplitMessage:

    def test_short_text_is_one_chunk(self):
        assert split_message("hello", 100) == ["hello"]

    def test_empty(self):
        assert split_message("", 100) == []

    def test_prefers_paragraphs(self):
        text = "a" * 60 + "\n\n" + "b" * 60
        assert split_message(text, 100) == ["a" * 60, "b" * 60]

    def test_hard_split_without_boundaries(self):
        chunks = split_message("x" * 250, 100)
        assert chunks == ["x" * 100, "x" * 100, "x" * 50]


class TestDeliverText:

    async def test_blank_is_noop(self):
        sent = []

        async def send(to, text):
            sent.append(text)

        assert await deliver_text(send, "feishu", "chat:oc_1", "   ") == 0
        assert sent == []

    async def test_sends_in_order(self):
        sent = []

        async def send(to, text):
            sent.append((to, text))

        count = await deliver_text(send, "unknown-channel", "chat:oc_1", "x" * 4500)
        assert count == 2
        assert [len(t) for _, t in sent] == [4000, 500]

    async def test_send_error_propagates(self):
        async def send(to, text):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await deliver_text(send, "feishu", "chat:oc_1", "hi")
