import json
import time

import pytest
from fastapi.testclient import TestClient

import chat_client
from api import create_app
from chat_client import ChatCompletionClient
from poems import PoemCorpus, parse_poems
from store import MemoryStore

CORPUS = "静夜思\n李白\n床前明月光，\n疑是地上霜。\n\n\n春晓\n孟浩然\n春眠不觉晓，\n处处闻啼鸟。"
REPLY = '[{"question":"写出下一句","answer":"疑是地上霜","explanation":"..."}]'

class DummyClient(ChatCompletionClient):
    def __init__(self):
        super().__init__(api_key="test", base_url="https://llm.example.com/v1")

    def complete_sync(self, messages, temperature=None):
        return REPLY


class FakeResponse:
    ok = True
    status_code = 200
    text = ""

    def iter_lines(self):
        for token in ("低头", "思故乡"):
            yield ("data: " + json.dumps({"choices": [{"delta": {"content": token}}]})).encode("utf-8")
        yield b"data: [DONE]"

    def close(self):
        pass


@pytest.fixture
def client():
    app = create_app(client=DummyClient(), store=MemoryStore(), corpus=PoemCorpus(parse_poems(CORPUS)))
    return TestClient(app)


def test_poem_lookup(client):
    resp = client.get("/v1/poems", params={"q": "孟浩然"})
    assert resp.status_code == 200
    assert [p["title"] for p in resp.json()] == ["春晓"]
    assert client.get("/v1/poems").json() == []
    assert client.get("/v1/poems/0").json()["content"] == ["床前明月光，", "疑是地上霜。"]
    assert client.get("/v1/poems/42").status_code == 404

def test_dictation_roundtrip(client):
    data = client.get("/v1/poems/0/dictation").json()
    assert data["questions"] == [] and data["loading"] is False

    data = client.post("/v1/poems/0/dictation/generate", json={"count": 1}).json()
    assert data["error"] is None
    q = data["questions"][0]
    assert q["answer"] == "疑是地上霜"
    assert q["blank"] == "__" * 5
    assert q["result"] is None

    assert client.put("/v1/poems/0/dictation/0/input", json={"text": "疑是地上霜"}).status_code == 200
    assert client.post("/v1/poems/0/dictation/0/check").json()["kind"] == "correct"

    client.put("/v1/poems/0/dictation/0/input", json={"text": "疑是天上霜"})
    result = client.post("/v1/poems/0/dictation/0/check").json()
    assert result == {"kind": "typos", "total": 5, "wrong_count": 1}

def test_dictation_bad_index(client):
    assert client.post("/v1/poems/0/dictation/3/check").status_code == 400
    assert client.put("/v1/poems/0/dictation/3/input", json={"text": "x"}).status_code == 400

def test_chat_send_and_delete(client, monkeypatch):
    monkeypatch.setattr(chat_client.requests, "post", lambda *a, **k: FakeResponse())
    assert client.post("/v1/poems/1/chat", json={"text": "  "}).status_code == 400

    resp = client.post("/v1/poems/1/chat", json={"text": "这首诗写了什么？"})
    assert resp.status_code == 200

    deadline = time.monotonic() + 5
    data = client.get("/v1/poems/1/chat").json()
    while data["is_streaming"] and time.monotonic() < deadline:
        time.sleep(0.05)
        data = client.get("/v1/poems/1/chat").json()
    turn = data["turns"][0]
    assert turn["user"]["content"] == "这首诗写了什么？"
    assert turn["assistant"]["content"] == "低头思故乡"

    data = client.delete(f"/v1/poems/1/chat/messages/{turn['user']['id']}").json()
    assert data["turns"] == []
