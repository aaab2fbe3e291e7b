from __future__ import annotations
import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import requests
from dotenv import load_dotenv

from errors import ApiError, MalformedResponseError, NetworkError, StreamCancelled, host_of

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL = "qwen3-max-preview"
DEFAULT_TEMPERATURE = 0.3
DONE_SENTINEL = "[DONE]"

Messages = Sequence[Tuple[str, str]]


def parse_sse_token(line: str) -> Optional[str]:
    """
    Token carried by one SSE line, or None when the line carries nothing.
    Returns DONE_SENTINEL for the terminal event.
    """
    if not line or not line.strip() or not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if payload == DONE_SENTINEL:
        return DONE_SENTINEL
    try:
        obj = json.loads(payload)
        choice = obj["choices"][0]
    except (ValueError, KeyError, IndexError, TypeError):
        # Malformed chunk: skip it, keep streaming
        return None
    if not isinstance(choice, dict):
        return None
    delta = choice.get("delta")
    if isinstance(delta, dict):
        token = delta.get("content")
    else:
        message = choice.get("message")
        token = message.get("content") if isinstance(message, dict) else None
    return token if isinstance(token, str) and token else None


def iter_sse_tokens(lines: Iterable[str], is_cancelled: Callable[[], bool] = lambda: False) -> Iterator[str]:
    """Yield tokens from SSE lines in order until [DONE], exhaustion or cancellation."""
    it = iter(lines)
    try:
        while True:
            if is_cancelled():
                return
            try:
                line = next(it)
            except StopIteration:
                return
            token = parse_sse_token(line)
            if token is None:
                continue
            if token == DONE_SENTINEL:
                return
            yield token
    finally:
        close = getattr(it, "close", None)
        if close is not None:
            close()


class StreamHandle:
    """
    One streaming chat-completion call. Can be cancelled from any thread,
    before or during execute(); cancel() is idempotent.
    """
    def __init__(self, url: str, headers: Dict[str, str], payload: Dict[str, Any], timeout: Tuple[float, float]):
        self.url = url
        self.headers = headers
        self.payload = payload
        self.timeout = timeout
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._response: Optional[requests.Response] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()
        with self._lock:
            resp = self._response
        if resp is not None:
            # Unblocks a reader waiting on the socket
            resp.close()

    def execute(self) -> Iterator[str]:
        """POST the request and return an iterator over decoded response lines."""
        if self.cancelled:
            raise StreamCancelled("Canceled")
        try:
            resp = requests.post(self.url, json=self.payload, headers=self.headers,
                                 timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            if self.cancelled:
                raise StreamCancelled("Canceled") from e
            raise NetworkError(str(e)) from e

        with self._lock:
            self._response = resp
        if self.cancelled:
            resp.close()
            raise StreamCancelled("Canceled")
        if not resp.ok:
            body = resp.text
            resp.close()
            raise ApiError(resp.status_code, body)
        return self._read_lines(resp)

    def _read_lines(self, resp: requests.Response) -> Iterator[str]:
        try:
            for raw in resp.iter_lines():
                if self.cancelled:
                    return
                yield raw.decode("utf-8", errors="replace")
        except Exception as e:
            if self.cancelled:
                return
            if isinstance(e, requests.RequestException):
                raise NetworkError(str(e)) from e
            raise
        finally:
            resp.close()

    def tokens(self) -> Iterator[str]:
        """Execute and yield content tokens; stops quietly on cancel."""
        return iter_sse_tokens(self.execute(), lambda: self.cancelled)


class ChatCompletionClient:
    """
    Client for an OpenAI-compatible /chat/completions endpoint.
    Messages are ordered (role, content) pairs.
    """
    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        read_timeout: Optional[float] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("AI_API_KEY", "")
        self.model = model or os.getenv("AI_MODEL", DEFAULT_MODEL)
        self.base_url = (base_url or os.getenv("AI_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = (
            connect_timeout if connect_timeout is not None else float(os.getenv("AI_CONNECT_TIMEOUT", "30")),
            read_timeout if read_timeout is not None else float(os.getenv("AI_READ_TIMEOUT", "60")),
        )

        if not self.api_key:
            logger.warning("AI_API_KEY is not set; requests will be rejected upstream")
        masked = (self.api_key[:6] + "..." + self.api_key[-4:]) if len(self.api_key) > 10 else str(bool(self.api_key))
        logger.info("ChatCompletionClient API_KEY=%s MODEL=%s URL=%s", masked, self.model, self.base_url)

    @property
    def host(self) -> str:
        return host_of(self.base_url)

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self, stream: bool = False) -> Dict[str, str]:
        h = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if stream:
            h["Accept"] = "text/event-stream"
        return h

    def build_payload(self, messages: Messages, stream: bool, temperature: Optional[float] = None) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": role, "content": content} for role, content in messages],
            "stream": stream,
            "temperature": DEFAULT_TEMPERATURE if temperature is None else temperature,
        }

    def complete_sync(self, messages: Messages, temperature: Optional[float] = None) -> str:
        payload = self.build_payload(messages, stream=False, temperature=temperature)
        try:
            resp = requests.post(self.completions_url, json=payload, headers=self._headers(), timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkError(str(e)) from e

        if not resp.ok:
            raise ApiError(resp.status_code, resp.text)

        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponseError("Response is not valid JSON") from e
        if not isinstance(data, dict):
            raise MalformedResponseError("Response is not a JSON object")

        choices: List[Any] = data.get("choices") or []
        if not choices:
            return ""
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if not isinstance(message, dict):
            return ""
        content = message.get("content")
        return content if isinstance(content, str) else ""

    def open_stream(self, messages: Messages, temperature: Optional[float] = None) -> StreamHandle:
        payload = self.build_payload(messages, stream=True, temperature=temperature)
        return StreamHandle(self.completions_url, self._headers(stream=True), payload, self.timeout)
