from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from conftest import FailingModel, FakeModel, SpyKV
from kv_chat.messages import Message, decode_transcript, encode_transcript
from kv_chat.server import create_app
from kv_chat.store import DiskKV, TranscriptStore


@pytest.fixture
def missing_config(tmp_path: Path, clean_env) -> str:
    return str(tmp_path / "absent.yaml")


def _client(config_path: str, kv=None, model=None, **kwargs) -> TestClient:
    store = TranscriptStore(kv if kv is not None else SpyKV())
    app = create_app(config_path, model=model or FakeModel(reply="ok"), store=store, persona="P", **kwargs)
    return TestClient(app)


def test_chat_endpoint_roundtrip(missing_config):
    """/api/chat returns 200 with chatId, reply and full history, and persists it."""
    kv = SpyKV()
    client = _client(missing_config, kv=kv, model=FakeModel(reply="hi there"))

    r = client.post("/api/chat", json={"chatId": "c1", "userMessage": "hello"})
    assert r.status_code == 200
    assert r.json() == {
        "chatId": "c1",
        "reply": "hi there",
        "history": [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
        ],
    }
    assert decode_transcript(kv.data["c1"]) == (Message.user("hello"), Message.assistant("hi there"))


def test_second_turn_sends_prior_history_to_model(missing_config):
    kv = SpyKV()
    spy = FakeModel(reply="second")
    client = _client(missing_config, kv=kv, model=spy)

    chat_id = client.post("/api/chat", json={"userMessage": "Hi there"}).json()["chatId"]
    r2 = client.post("/api/chat", json={"chatId": chat_id, "userMessage": "How are you?"})
    assert r2.status_code == 200

    assert spy.calls[-1] == [
        {"role": "system", "content": "P"},
        {"role": "user", "content": "Hi there"},
        {"role": "assistant", "content": "second"},
        {"role": "user", "content": "How are you?"},
    ]
    assert len(r2.json()["history"]) == 4


def test_missing_chat_id_mints_one(missing_config):
    client = _client(missing_config)
    r = client.post("/api/chat", json={"userMessage": "hello"})
    assert r.status_code == 200
    assert r.json()["chatId"]


@pytest.mark.parametrize("body", [{}, {"userMessage": ""}, {"userMessage": "   "}, {"chatId": "c"}])
def test_missing_user_message_is_400_plain_text(missing_config, body):
    kv = SpyKV()
    client = _client(missing_config, kv=kv)
    r = client.post("/api/chat", json=body)
    assert r.status_code == 400
    assert r.headers["content-type"].startswith("text/plain")
    assert r.text == "Missing userMessage"
    assert kv.gets == [] and kv.puts == []


def test_missing_bindings_is_500_plain_text(missing_config):
    # No credentials in the environment, so the Workers AI binding cannot be built.
    app = create_app(missing_config, store=TranscriptStore(SpyKV()), persona="P")
    client = TestClient(app)
    r = client.post("/api/chat", json={"userMessage": "hello"})
    assert r.status_code == 500
    assert r.headers["content-type"].startswith("text/plain")
    assert "bindings" in r.text

    health = client.get("/health").json()
    assert health["ok"] is False
    assert health["model_ready"] is False
    assert health["store_ready"] is True


def test_model_failure_is_structured_500_and_store_unchanged(missing_config):
    stored = encode_transcript((Message.user("a"), Message.assistant("b")))
    kv = SpyKV({"c": stored})
    client = _client(missing_config, kv=kv, model=FailingModel())

    r = client.post("/api/chat", json={"chatId": "c", "userMessage": "again"})
    assert r.status_code == 500
    body = r.json()
    assert body["error"] == "Chat API error"
    assert "model exploded" in body["details"]
    assert "Traceback" in body["stack"]
    assert kv.data["c"] == stored


def test_corrupt_stored_transcript_is_structured_500(missing_config):
    client = _client(missing_config, kv=SpyKV({"c": b"garbage"}))
    r = client.post("/api/chat", json={"chatId": "c", "userMessage": "x"})
    assert r.status_code == 500
    assert r.json()["error"] == "Chat API error"


@pytest.mark.parametrize("payload", [b"not json", b"[1, 2]", b'{"chatId": 5, "userMessage": "x"}'])
def test_bad_request_body_is_structured_500(missing_config, payload):
    client = _client(missing_config)
    r = client.post("/api/chat", content=payload, headers={"Content-Type": "application/json"})
    assert r.status_code == 500
    assert set(r.json()) >= {"error", "details"}


def test_stack_can_be_hidden(tmp_path: Path, clean_env):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("server:\n  expose_stack: false\n", encoding="utf-8")
    client = _client(str(cfg), model=FailingModel())
    r = client.post("/api/chat", json={"userMessage": "x"})
    assert r.status_code == 500
    assert "stack" not in r.json()


def test_persona_loaded_from_config_file(tmp_path: Path, clean_env):
    (tmp_path / "persona.md").write_text("Be a pirate.\n", encoding="utf-8")
    cfg = tmp_path / "config.yaml"
    cfg.write_text("persona:\n  file: persona.md\nstore:\n  backend: memory\n", encoding="utf-8")
    spy = FakeModel(reply="arr")
    client = TestClient(create_app(str(cfg), model=spy))

    r = client.post("/api/chat", json={"userMessage": "hello"})
    assert r.status_code == 200
    assert spy.calls[0][0] == {"role": "system", "content": "Be a pirate."}
    assert all(m["content"] != "Be a pirate." for m in r.json()["history"])


def test_disk_backed_app_survives_restart(tmp_data_dir: Path, missing_config):
    first = _client(missing_config, kv=DiskKV(str(tmp_data_dir)), model=FakeModel(reply="one"))
    chat_id = first.post("/api/chat", json={"userMessage": "a"}).json()["chatId"]

    second = _client(missing_config, kv=DiskKV(str(tmp_data_dir)), model=FakeModel(reply="two"))
    r = second.post("/api/chat", json={"chatId": chat_id, "userMessage": "b"})
    assert [m["content"] for m in r.json()["history"]] == ["a", "one", "b", "two"]


def test_partial_config_still_finds_credentials_in_env(tmp_path: Path, clean_env, monkeypatch):
    monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acct")
    monkeypatch.setenv("CLOUDFLARE_API_TOKEN", "tok")
    cfg = tmp_path / "config.yaml"
    cfg.write_text("store:\n  backend: memory\n", encoding="utf-8")
    r = TestClient(create_app(str(cfg))).get("/health")
    assert r.json()["model_ready"] is True
    assert r.json()["model_backend"] == "WorkersAIModel"


def test_missing_persona_file_does_not_break_startup(tmp_path: Path, clean_env):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("persona:\n  file: gone.md\n  system_prompt: Fallback.\n", encoding="utf-8")
    spy = FakeModel(reply="ok")
    client = TestClient(create_app(str(cfg), model=spy, store=TranscriptStore(SpyKV())))
    assert client.post("/api/chat", json={"userMessage": "hi"}).status_code == 200
    assert spy.calls[0][0] == {"role": "system", "content": "Fallback."}


class ClosingModel(FakeModel):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.closed = False

    async def aclose(self):
        self.closed = True


def test_shutdown_closes_bindings_built_by_the_app(missing_config, monkeypatch):
    built = ClosingModel()
    monkeypatch.setattr("kv_chat.server._make_model", lambda cfg: built)
    app = create_app(missing_config, store=TranscriptStore(SpyKV()), persona="P")

    with TestClient(app) as client:
        assert client.post("/api/chat", json={"userMessage": "hi"}).status_code == 200
        assert built.closed is False
    assert built.closed is True


def test_shutdown_leaves_injected_bindings_open(missing_config):
    injected = ClosingModel()
    with _client(missing_config, model=injected):
        pass
    assert injected.closed is False
