"""Pairing request lifecycle against a controllable clock."""

import json

from core.gateway.pairing import (
    PAIRING_CODE_ALPHABET,
    PAIRING_CODE_LENGTH,
    PAIRING_PENDING_MAX,
    PAIRING_PENDING_TTL_MS,
    PairingStore,
    build_pairing_reply,
    generate_pairing_code,
)


class Clock:
    def __init__(self, now=1_000_000):
        self.now = now

    def __call__(self):
        return self.now


class TestPairingStore:

    def setup_method(self):
        self.clock = Clock()

    def _store(self, tmp_path):
        return PairingStore(tmp_path / "pairing.json", clock=self.clock)

    async def test_upsert_is_idempotent(self, tmp_path):
        store = self._store(tmp_path)
        code, created = await store.upsert_pairing_request("feishu", "ou_1")
        again, created_again = await store.upsert_pairing_request("Feishu", "ou_1")

        assert created is True
        assert created_again is False
        assert again == code
        assert len(code) == PAIRING_CODE_LENGTH
        assert set(code) <= set(PAIRING_CODE_ALPHABET)

    async def test_refresh_updates_last_seen(self, tmp_path):
        store = self._store(tmp_path)
        await store.upsert_pairing_request("feishu", "ou_1")
        self.clock.now += 5000
        await store.upsert_pairing_request("feishu", "ou_1", meta={"name": "Ann"})

        [request] = await store.list_requests("feishu")
        assert request.last_seen_at == request.created_at + 5000
        assert request.meta == {"name": "Ann"}

    async def test_pending_limit(self, tmp_path):
        store = self._store(tmp_path)
        for i in range(PAIRING_PENDING_MAX):
            _, created = await store.upsert_pairing_request("feishu", f"ou_{i}")
            assert created is True

        code, created = await store.upsert_pairing_request("feishu", "ou_extra")
        assert (code, created) == ("", False)

    async def test_expired_request_is_recreated(self, tmp_path):
        store = self._store(tmp_path)
        first, _ = await store.upsert_pairing_request("feishu", "ou_1")
        self.clock.now += PAIRING_PENDING_TTL_MS

        assert await store.list_requests("feishu") == []
        assert await store.approve("feishu", first) is None
        _, created = await store.upsert_pairing_request("feishu", "ou_1")
        assert created is True

    async def test_approve_moves_sender_to_allow_from(self, tmp_path):
        store = self._store(tmp_path)
        code, _ = await store.upsert_pairing_request("feishu", "ou_1")

        assert await store.approve("feishu", f"  {code.lower()} ") == "ou_1"
        assert await store.read_allow_from("feishu") == ["ou_1"]
        assert await store.list_requests("feishu") == []
        assert await store.approve("feishu", code) is None

    async def test_channels_are_separate(self, tmp_path):
        store = self._store(tmp_path)
        await store.add_allow_from("feishu", "ou_1")
        assert await store.read_allow_from("lark") == []
        assert await store.add_allow_from("feishu", "ou_1") is False

    async def test_corrupt_file_reads_as_empty(self, tmp_path):
        (tmp_path / "pairing.json").write_text("{not json", encoding="utf-8")
        store = self._store(tmp_path)
        assert await store.read_allow_from("feishu") == []

    async def test_document_layout(self, tmp_path):
        store = self._store(tmp_path)
        await store.add_allow_from("feishu", "ou_1")
        data = json.loads((tmp_path / "pairing.json").read_text(encoding="utf-8"))
        assert data["channels"]["feishu"]["allow_from"] == ["ou_1"]
        assert data["version"] == 1

    async def test_default_path_under_store_dir(self, isolated_data_dir):
        store = PairingStore()
        assert store.path == isolated_data_dir / "data" / "store" / "pairing.json"


class TestHelpers:

    def test_code_avoids_existing(self):
        code = generate_pairing_code()
        assert generate_pairing_code({code}) != code

    def test_reply_text(self):
        text = build_pairing_reply("feishu", "Your Feishu user id: ou_1", "ABCD2345")
        assert text.startswith("Access not configured.")
        assert "Your Feishu user id: ou_1" in text
        assert "Pairing code: ABCD2345" in text
        assert "/api/v1/gateway/pairing/feishu/approve" in text
