from __future__ import annotations
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from models import ChatMessage, DictationQuestion, Role

logger = logging.getLogger(__name__)


# ---------- (de)serialization ----------
def question_to_dict(q: DictationQuestion) -> Dict[str, str]:
    # user_input/result are session-local
    return {"question": q.prompt, "answer": q.answer, "explanation": q.explanation}


def question_from_dict(obj: Any) -> Optional[DictationQuestion]:
    if not isinstance(obj, dict):
        return None
    prompt = str(obj.get("question") or "")
    answer = str(obj.get("answer") or "")
    if not prompt.strip() or not answer.strip():
        return None
    return DictationQuestion(prompt=prompt, answer=answer, explanation=str(obj.get("explanation") or ""))


def message_to_dict(m: ChatMessage) -> Dict[str, Any]:
    return {"id": m.id, "role": m.role.value, "content": m.content, "timestamp": m.timestamp}


def message_from_dict(obj: Dict[str, Any]) -> ChatMessage:
    return ChatMessage(
        id=str(obj.get("id") or ""),
        role=Role.USER if obj.get("role") == "user" else Role.ASSISTANT,
        content=str(obj.get("content") or ""),
        timestamp=int(obj.get("timestamp") or 0),
    )


class PoemStore:
    """
    Per-poem key-value persistence for question sets and chat history.
    Subclasses provide _get/_put on raw JSON-compatible values.
    """
    DICTATION = "dictation"
    CHAT = "chat_history"

    def _get(self, namespace: str, key: str) -> Any:
        raise NotImplementedError

    def _put(self, namespace: str, key: str, value: Any) -> None:
        raise NotImplementedError

    def load_questions(self, poem_id: int) -> List[DictationQuestion]:
        raw = self._get(self.DICTATION, f"dictation_{poem_id}")
        if not isinstance(raw, list):
            return []
        return [q for q in (question_from_dict(o) for o in raw) if q is not None]

    def save_questions(self, poem_id: int, questions: List[DictationQuestion]) -> None:
        self._put(self.DICTATION, f"dictation_{poem_id}", [question_to_dict(q) for q in questions])

    def load_chat_history(self, poem_id: int) -> List[ChatMessage]:
        raw = self._get(self.CHAT, f"chat_history_{poem_id}")
        if not isinstance(raw, list):
            return []
        try:
            return [message_from_dict(o) for o in raw]
        except (AttributeError, TypeError, ValueError):
            logger.warning("Discarding unreadable chat history for poem %s", poem_id)
            return []

    def save_chat_history(self, poem_id: int, messages: List[ChatMessage]) -> None:
        self._put(self.CHAT, f"chat_history_{poem_id}", [message_to_dict(m) for m in messages])

    def delete_message(self, poem_id: int, message_id: str) -> None:
        history = self.load_chat_history(poem_id)
        self.save_chat_history(poem_id, [m for m in history if m.id != message_id])


class MemoryStore(PoemStore):
    def __init__(self):
        self._data: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _get(self, namespace, key):
        with self._lock:
            # Round-trip through JSON so callers never share mutable state
            raw = self._data.get(namespace, {}).get(key)
            return json.loads(raw) if raw is not None else None

    def _put(self, namespace, key, value):
        with self._lock:
            self._data.setdefault(namespace, {})[key] = json.dumps(value, ensure_ascii=False)


class JsonFileStore(PoemStore):
    """One JSON document per namespace under a data directory."""
    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self.data_dir = Path(data_dir or os.getenv("POEMS_DATA_DIR", "./data"))
        self._lock = threading.Lock()

    def _path(self, namespace: str) -> Path:
        return self.data_dir / f"{namespace}.json"

    def _read(self, namespace: str) -> Dict[str, Any]:
        path = self._path(namespace)
        if not path.exists():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable store file %s: %s", path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _get(self, namespace, key):
        with self._lock:
            return self._read(namespace).get(key)

    def _put(self, namespace, key, value):
        with self._lock:
            data = self._read(namespace)
            data[key] = value
            self.data_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, ensure_ascii=False, indent=2)
                os.replace(tmp, self._path(namespace))
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
