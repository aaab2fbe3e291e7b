from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional, Sequence

from chat_client import ChatCompletionClient, StreamHandle
from errors import DEFAULT_FALLBACK, ErrorFormatter, StreamCancelled
from models import ChatMessage, ChatTurn, PoemMetadata, Role
from prompts import CHAT_SYSTEM_PROMPT, chat_context_message
from store import PoemStore

logger = logging.getLogger(__name__)

HISTORY_WINDOW = 10
PUBLISH_INTERVAL = 0.08
REQUEST_FAILED = "请求失败："
PERSIST_FAILED = "保存失败："


def build_turns(messages: Sequence[ChatMessage]) -> List[ChatTurn]:
    """Pair each user message with the assistant reply right after it."""
    turns: List[ChatTurn] = []
    i = 0
    while i < len(messages):
        m = messages[i]
        if m.role == Role.USER:
            nxt = messages[i + 1] if i + 1 < len(messages) and messages[i + 1].role == Role.ASSISTANT else None
            turns.append(ChatTurn(user=m, assistant=nxt))
            i += 2 if nxt is not None else 1
        else:
            turns.append(ChatTurn(user=None, assistant=m))
            i += 1
    return turns


class Throttle:
    """
    Trailing coalescer: the first request() arms a timer, later requests inside
    the window are absorbed, and the callback runs once when it fires.
    """
    def __init__(self, interval: float, callback: Callable[[], None]):
        self.interval = interval
        self.callback = callback
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None

    def request(self) -> None:
        with self._lock:
            if self._timer is not None:
                return
            self._timer = threading.Timer(self.interval, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
        self.callback()

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()


@dataclass(frozen=True)
class ChatSnapshot:
    messages: List[ChatMessage] = field(default_factory=list)
    turns: List[ChatTurn] = field(default_factory=list)
    is_streaming: bool = False
    error: Optional[str] = None


Listener = Callable[[ChatSnapshot], None]


class ChatTurnReconciler:
    """
    Q&A chat about one poem.
    Sending appends the user message plus an empty assistant placeholder, then a
    worker thread streams the reply into that placeholder. The working list is
    always current; listeners see snapshots at most every PUBLISH_INTERVAL.
    """
    def __init__(
        self,
        poem: PoemMetadata,
        client: ChatCompletionClient,
        store: PoemStore,
        formatter: Optional[ErrorFormatter] = None,
        publish_interval: float = PUBLISH_INTERVAL,
    ):
        self.poem = poem
        self.client = client
        self.store = store
        self.formatter = formatter or ErrorFormatter(client.host)
        self._lock = threading.RLock()
        self._publish_lock = threading.Lock()
        self._messages: List[ChatMessage] = store.load_chat_history(poem.id)
        self._handle: Optional[StreamHandle] = None
        self._active_streams = 0
        self._error: Optional[str] = None
        self._listeners: List[Listener] = []
        self._throttle = Throttle(publish_interval, self._publish)
        self._published = ChatSnapshot()
        self._publish()

    # ---------- observation ----------
    @property
    def snapshot(self) -> ChatSnapshot:
        return self._published

    @property
    def turns(self) -> List[ChatTurn]:
        return self._published.turns

    @property
    def is_streaming(self) -> bool:
        return self._active_streams > 0

    @property
    def error(self) -> Optional[str]:
        return self._published.error

    @property
    def messages(self) -> List[ChatMessage]:
        with self._lock:
            return [replace(m) for m in self._messages]

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self) -> None:
        # Snapshot and delivery happen under one lock so listeners never see
        # an older snapshot after a newer one.
        with self._publish_lock:
            with self._lock:
                msgs = [replace(m) for m in self._messages]
                streaming = self._active_streams > 0
                error = self._error
            snap = ChatSnapshot(messages=msgs, turns=build_turns(msgs), is_streaming=streaming, error=error)
            self._published = snap
            for listener in list(self._listeners):
                listener(snap)

    def _persist(self) -> None:
        """Save the working list; a failure is recorded in `error`, the session keeps going."""
        with self._lock:
            msgs = list(self._messages)
        try:
            self.store.save_chat_history(self.poem.id, msgs)
        except Exception as e:
            logger.exception("Saving chat history for poem %s failed", self.poem.id)
            with self._lock:
                self._error = PERSIST_FAILED + self.formatter.sanitize(str(e), DEFAULT_FALLBACK)
        else:
            with self._lock:
                self._error = None

    # ---------- sending ----------
    def send_message(self, text: str) -> Optional[threading.Thread]:
        """Start a streamed reply; returns the worker thread, or None for blank input."""
        if not text or not text.strip():
            return None

        with self._lock:
            user = ChatMessage(role=Role.USER, content=text)
            placeholder = ChatMessage(role=Role.ASSISTANT, content="")
            self._messages.append(user)
            context = self._messages[-HISTORY_WINDOW:]
            self._messages.append(placeholder)

            messages = [
                ("system", CHAT_SYSTEM_PROMPT),
                ("user", chat_context_message(self.poem)),
            ]
            messages += [(m.role.value, m.content) for m in context]

            handle = self.client.open_stream(messages)
            self._handle = handle
            self._active_streams += 1

        self._persist()
        self._publish()

        worker = threading.Thread(target=self._stream_reply, args=(handle, placeholder.id), daemon=True,
                                  name=f"chat-{self.poem.id}")
        worker.start()
        return worker

    def _stream_reply(self, handle: StreamHandle, placeholder_id: str) -> None:
        logger.info("Streaming reply for poem %s", self.poem.id)
        try:
            for token in handle.tokens():
                with self._lock:
                    target = self._find(placeholder_id)
                    if target is not None:
                        target.content += token
                self._throttle.request()
            if handle.cancelled:
                logger.info("Streaming for poem %s stopped by user", self.poem.id)
        except StreamCancelled:
            logger.info("Streaming for poem %s cancelled before start", self.poem.id)
        except Exception as e:
            if handle.cancelled:
                logger.info("Streaming for poem %s stopped by user", self.poem.id)
            else:
                logger.warning("Streaming for poem %s failed: %s", self.poem.id, e)
                with self._lock:
                    target = self._find(placeholder_id)
                    if target is not None:
                        target.content = REQUEST_FAILED + self.formatter.sanitize(str(e), DEFAULT_FALLBACK)
        finally:
            with self._lock:
                if self._handle is handle:
                    self._handle = None
                self._active_streams -= 1
            self._persist()
            self._throttle.cancel()
            self._publish()

    def _find(self, message_id: str) -> Optional[ChatMessage]:
        for m in reversed(self._messages):
            if m.id == message_id:
                return m
        return None

    def stop_streaming(self) -> None:
        with self._lock:
            handle = self._handle
        if handle is not None:
            handle.cancel()

    # ---------- deleting ----------
    def delete_turn(self, turn: ChatTurn) -> None:
        anchor = turn.user or turn.assistant
        if anchor is None:
            return
        self.delete_message(anchor.id)

    def delete_message(self, message_id: str) -> None:
        """Delete a message together with its adjacent counterpart of the other role."""
        with self._lock:
            idx = next((i for i, m in enumerate(self._messages) if m.id == message_id), -1)
            if idx == -1:
                return
            doomed = {message_id}
            target = self._messages[idx]
            if target.role == Role.USER:
                if idx + 1 < len(self._messages) and self._messages[idx + 1].role == Role.ASSISTANT:
                    doomed.add(self._messages[idx + 1].id)
            elif idx - 1 >= 0 and self._messages[idx - 1].role == Role.USER:
                doomed.add(self._messages[idx - 1].id)
            self._messages = [m for m in self._messages if m.id not in doomed]
        self._persist()
        self._publish()
