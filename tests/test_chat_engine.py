import json
import threading
import time

import pytest
import requests

import chat_client
from chat_client import ChatCompletionClient
from chat_engine import ChatTurnReconciler, Throttle, build_turns
from models import ChatMessage, ChatTurn, PoemMetadata, Role
from store import MemoryStore

POEM = PoemMetadata(id=5, title="静夜思", author="李白", content=["床前明月光", "疑是地上霜"],
                    translation=["明亮的月光洒在窗户纸上"])


def _event(text):
    return "data: " + json.dumps({"choices": [{"delta": {"content": text}}]})


class FakeResponse:
    def __init__(self, lines, status_code=200):
        self._lines = lines
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = ""

    def iter_lines(self):
        for line in self._lines:
            yield line.encode("utf-8")

    def close(self):
        pass


@pytest.fixture
def store():
    return MemoryStore()

@pytest.fixture
def client():
    return ChatCompletionClient(api_key="sk-test", base_url="https://llm.internal.example/v1")

def _serve(monkeypatch, lines=(), status_code=200, captured=None):
    def fake_post(url, json=None, headers=None, timeout=None, stream=False):
        if captured is not None:
            captured.append(json)
        return FakeResponse(lines, status_code)
    monkeypatch.setattr(chat_client.requests, "post", fake_post)


# ---------- turn derivation ----------
def test_build_turns_pairs_user_with_reply():
    a = ChatMessage(role=Role.USER, content="A")
    b = ChatMessage(role=Role.ASSISTANT, content="B")
    c = ChatMessage(role=Role.USER, content="C")
    assert build_turns([a, b, c]) == [ChatTurn(user=a, assistant=b), ChatTurn(user=c, assistant=None)]

def test_build_turns_leading_assistant_is_solo():
    x = ChatMessage(role=Role.ASSISTANT, content="X")
    a = ChatMessage(role=Role.USER, content="A")
    b = ChatMessage(role=Role.USER, content="B")
    assert build_turns([x, a, b]) == [ChatTurn(None, x), ChatTurn(a, None), ChatTurn(b, None)]


# ---------- deleting ----------
def test_delete_turn_removes_pair(client, store):
    a = ChatMessage(role=Role.USER, content="A")
    b = ChatMessage(role=Role.ASSISTANT, content="B")
    store.save_chat_history(5, [a, b])
    chat = ChatTurnReconciler(POEM, client, store)
    chat.delete_turn(chat.turns[0])
    assert chat.messages == [] and chat.turns == []
    assert store.load_chat_history(5) == []

def test_delete_assistant_takes_preceding_user_only(client, store):
    msgs = [ChatMessage(role=Role.USER, content=t) if i % 2 == 0 else ChatMessage(role=Role.ASSISTANT, content=t)
            for i, t in enumerate(["A", "B", "C", "D"])]
    store.save_chat_history(5, msgs)
    chat = ChatTurnReconciler(POEM, client, store)
    chat.delete_message(msgs[3].id)
    assert [m.content for m in chat.messages] == ["A", "B"]
    chat.delete_message("missing")
    assert len(chat.messages) == 2


# ---------- streaming ----------
def test_stream_reply_assembles_content(monkeypatch, client, store):
    captured = []
    _serve(monkeypatch, [_event("He"), _event("llo"), "data: [DONE]", _event("ignored")], captured=captured)
    chat = ChatTurnReconciler(POEM, client, store, publish_interval=0.01)

    worker = chat.send_message("这首诗表达了什么？")
    worker.join(5)

    assert not chat.is_streaming
    turn = chat.turns[-1]
    assert turn.user.content == "这首诗表达了什么？"
    assert turn.assistant.content == "Hello"
    assert [m.content for m in store.load_chat_history(5)] == ["这首诗表达了什么？", "Hello"]

    sent = captured[0]["messages"]
    assert sent[0]["role"] == "system"
    assert "静夜思" in sent[1]["content"] and "明亮的月光" in sent[1]["content"]
    assert sent[-1] == {"role": "user", "content": "这首诗表达了什么？"}

def test_user_message_published_before_network(monkeypatch, client, store):
    snapshots = []
    _serve(monkeypatch, ["data: [DONE]"])
    chat = ChatTurnReconciler(POEM, client, store)
    chat.subscribe(snapshots.append)
    worker = chat.send_message("问")
    first = snapshots[0]
    assert first.is_streaming
    assert [(m.role, m.content) for m in first.messages] == [(Role.USER, "问"), (Role.ASSISTANT, "")]
    worker.join(5)
    assert snapshots[-1].is_streaming is False

def test_blank_message_rejected(client, store):
    chat = ChatTurnReconciler(POEM, client, store)
    assert chat.send_message("   ") is None
    assert chat.messages == []

def test_history_window_is_bounded(monkeypatch, client, store):
    history = []
    for i in range(8):
        history += [ChatMessage(role=Role.USER, content=f"q{i}"), ChatMessage(role=Role.ASSISTANT, content=f"a{i}")]
    store.save_chat_history(5, history)
    captured = []
    _serve(monkeypatch, ["data: [DONE]"], captured=captured)
    chat = ChatTurnReconciler(POEM, client, store)
    chat.send_message("new").join(5)
    sent = captured[0]["messages"]
    assert len(sent) == 2 + 10
    assert sent[-1]["content"] == "new"
    assert sent[2]["content"] == "a3"

def test_failure_writes_sanitized_message(monkeypatch, client, store):
    def boom(*a, **k):
        raise requests.ConnectionError("Failed to connect to https://llm.internal.example/v1/chat/completions")
    monkeypatch.setattr(chat_client.requests, "post", boom)
    chat = ChatTurnReconciler(POEM, client, store)
    chat.send_message("问").join(5)
    reply = chat.turns[-1].assistant.content
    assert reply == "请求失败：Failed to connect to API/v1/chat/completions"
    assert store.load_chat_history(5)[-1].content == reply

def test_http_error_message(monkeypatch, client, store):
    _serve(monkeypatch, [], status_code=500)
    chat = ChatTurnReconciler(POEM, client, store)
    chat.send_message("问").join(5)
    assert chat.turns[-1].assistant.content == "请求失败：API error: 500"

def test_stop_streaming_keeps_partial_content(monkeypatch, client, store):
    started, release = threading.Event(), threading.Event()

    def lines():
        yield _event("床前")
        started.set()
        release.wait(5)
        yield _event("明月")
        yield "data: [DONE]"

    monkeypatch.setattr(chat_client.requests, "post",
                        lambda *a, **k: FakeResponse(lines()))
    chat = ChatTurnReconciler(POEM, client, store, publish_interval=0.01)
    worker = chat.send_message("问")
    assert started.wait(5)
    chat.stop_streaming()
    release.set()
    worker.join(5)

    assert chat.turns[-1].assistant.content == "床前"
    assert not chat.is_streaming
    chat.stop_streaming()  # idempotent after finish

def test_stop_before_request_is_silent(monkeypatch, client, store):
    gate = threading.Event()

    def slow_post(*a, **k):
        gate.wait(5)
        return FakeResponse([_event("x"), "data: [DONE]"])

    monkeypatch.setattr(chat_client.requests, "post", slow_post)
    chat = ChatTurnReconciler(POEM, client, store)
    worker = chat.send_message("问")
    chat.stop_streaming()
    gate.set()
    worker.join(5)
    assert chat.turns[-1].assistant.content == ""

def test_persisted_once_per_send(monkeypatch, client, store):
    _serve(monkeypatch, [_event("a"), _event("b"), "data: [DONE]"])
    saves = []
    original = store.save_chat_history
    monkeypatch.setattr(store, "save_chat_history", lambda pid, msgs: (saves.append(len(msgs)), original(pid, msgs)))
    chat = ChatTurnReconciler(POEM, client, store)
    chat.send_message("问").join(5)
    # once when the user message is appended, once at finalization
    assert saves == [2, 2]

def test_store_failure_does_not_wedge_streaming(monkeypatch, client):
    class BrokenStore(MemoryStore):
        def save_chat_history(self, poem_id, messages):
            raise OSError("disk full at /data/llm.internal.example")

    _serve(monkeypatch, [_event("床前"), _event("明月"), "data: [DONE]"])
    chat = ChatTurnReconciler(POEM, client, BrokenStore(), publish_interval=0.01)
    snapshots = []
    chat.subscribe(snapshots.append)

    worker = chat.send_message("问")
    assert worker is not None
    worker.join(5)

    assert not chat.is_streaming
    assert chat.snapshot.is_streaming is False
    assert chat.turns[-1].assistant.content == "床前明月"
    assert chat.error == "保存失败：disk full at /data/API"
    assert snapshots[-1].error == chat.error

def test_store_error_clears_after_successful_save(monkeypatch, client):
    class FlakyStore(MemoryStore):
        failures = 1

        def save_chat_history(self, poem_id, messages):
            if self.failures:
                self.failures -= 1
                raise OSError("busy")
            super().save_chat_history(poem_id, messages)

    store = FlakyStore()
    _serve(monkeypatch, [_event("答"), "data: [DONE]"])
    chat = ChatTurnReconciler(POEM, client, store)
    chat.send_message("问").join(5)
    assert chat.error is None
    assert [m.content for m in store.load_chat_history(5)] == ["问", "答"]


# ---------- throttle ----------
def test_throttle_coalesces_bursts():
    fired = []
    t = Throttle(0.05, lambda: fired.append(time.monotonic()))
    for _ in range(20):
        t.request()
    time.sleep(0.2)
    assert len(fired) == 1
    t.request()
    time.sleep(0.2)
    assert len(fired) == 2

def test_throttle_cancel():
    fired = []
    t = Throttle(0.05, lambda: fired.append(1))
    t.request()
    t.cancel()
    time.sleep(0.15)
    assert fired == []

def test_stream_publishes_are_coalesced(monkeypatch, client, store):
    first, second = "床前明月光疑是地上霜", "举头望明月低头思故乡"

    def lines():
        for ch in first:
            yield _event(ch)
        time.sleep(0.3)
        for ch in second:
            yield _event(ch)
        yield "data: [DONE]"

    monkeypatch.setattr(chat_client.requests, "post", lambda *a, **k: FakeResponse(lines()))
    chat = ChatTurnReconciler(POEM, client, store)
    seen = []
    chat.subscribe(seen.append)
    chat.send_message("问").join(5)

    replies = [s.messages[-1].content for s in seen]
    assert replies[-1] == first + second
    # send, one trailing publish per burst, finalization
    assert len(seen) <= 6
    assert first in replies
    assert all((first + second).startswith(r) for r in replies)
    assert seen[-1].is_streaming is False
