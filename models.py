from __future__ import annotations
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Union

# ---------- Grading results ----------
@dataclass(frozen=True)
class Correct:
    pass

@dataclass(frozen=True)
class Typos:
    total: int
    wrong_count: int

@dataclass(frozen=True)
class WholeWrong:
    pass

CheckResult = Union[Correct, Typos, WholeWrong]

# ---------- Dictation ----------
@dataclass
class DictationQuestion:
    prompt: str
    answer: str
    explanation: str = ""
    # Session-local; never persisted
    user_input: str = ""
    result: Optional[CheckResult] = None
    revision: int = 0

    def snapshot(self) -> "DictationQuestion":
        return replace(self)

# ---------- Chat ----------
class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"

def _now_ms() -> int:
    return int(time.time() * 1000)

@dataclass
class ChatMessage:
    role: Role
    content: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: int = field(default_factory=_now_ms)

@dataclass(frozen=True)
class ChatTurn:
    user: Optional[ChatMessage] = None
    assistant: Optional[ChatMessage] = None

# ---------- Poem ----------
@dataclass(frozen=True)
class PoemMetadata:
    """Read-only view of a poem used to build prompts."""
    id: int
    title: str
    author: str
    content: List[str] = field(default_factory=list)
    translation: List[str] = field(default_factory=list)
