from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from errors import AiError, ErrorFormatter, GenerationError
from grading import DEFAULT_POLICY, GradingPolicy, grade
from models import CheckResult, DictationQuestion, PoemMetadata
from question_generator import DEFAULT_COUNT, QuestionSetGenerator

logger = logging.getLogger(__name__)

GENERATION_FAILED = "生成失败，请重试"
REQUEST_FAILED = "请求失败："
NETWORK_FALLBACK = "请检查网络后重试"


@dataclass(frozen=True)
class DictationSnapshot:
    questions: List[DictationQuestion] = field(default_factory=list)
    loading: bool = False
    error: Optional[str] = None


Listener = Callable[[DictationSnapshot], None]


class DictationSession:
    """
    Dictation quiz for one poem.
    - Starts from the persisted question set; never generates on its own.
    - update_input mutates a draft in place and publishes nothing.
    - check grades one question and publishes.
    - regenerate replaces the whole set, or keeps it and sets `error` on failure.
    """
    def __init__(
        self,
        poem: PoemMetadata,
        generator: QuestionSetGenerator,
        policy: GradingPolicy = DEFAULT_POLICY,
        formatter: Optional[ErrorFormatter] = None,
    ):
        self.poem = poem
        self.generator = generator
        self.policy = policy
        self.formatter = formatter or ErrorFormatter(generator.client.host)
        self._lock = threading.RLock()
        self._questions: List[DictationQuestion] = generator.load(poem.id)
        self._loading = False
        self._error: Optional[str] = None
        self._last_revision = 0
        self._listeners: List[Listener] = []

    # ---------- observation ----------
    @property
    def questions(self) -> List[DictationQuestion]:
        with self._lock:
            return [q.snapshot() for q in self._questions]

    @property
    def loading(self) -> bool:
        return self._loading

    @property
    def error(self) -> Optional[str]:
        return self._error

    def snapshot(self) -> DictationSnapshot:
        with self._lock:
            return DictationSnapshot(self.questions, self._loading, self._error)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _publish(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)

    # ---------- answering ----------
    def update_input(self, index: int, text: str) -> None:
        with self._lock:
            if not 0 <= index < len(self._questions):
                return
            q = self._questions[index]
            if q.user_input != text:
                q.user_input = text

    def check(self, index: int) -> Optional[CheckResult]:
        with self._lock:
            if not 0 <= index < len(self._questions):
                return None
            q = self._questions[index]
            result = grade(q.answer, q.user_input, self.policy)
            q.result = result
            q.revision = self._next_revision()
        self._publish()
        return result

    def _next_revision(self) -> int:
        self._last_revision = max(time.monotonic_ns(), self._last_revision + 1)
        return self._last_revision

    # ---------- generation ----------
    def regenerate(self, count: int = DEFAULT_COUNT) -> bool:
        """Blocking regeneration. Returns True when a new set was installed."""
        with self._lock:
            if self._loading:
                return False
            self._loading = True
            previous = [q.answer for q in self._questions if q.answer.strip()]
        self._publish()

        installed = False
        try:
            fresh = self.generator.generate(self.poem, previous, count)
            if fresh is not None:
                with self._lock:
                    self._questions = fresh
                    self._error = None
                installed = True
        except GenerationError as e:
            logger.warning("Question generation for poem %s produced nothing usable: %s", self.poem.id, e)
            self._error = GENERATION_FAILED
        except AiError as e:
            logger.warning("Question generation for poem %s failed: %s", self.poem.id, e)
            self._error = REQUEST_FAILED + self.formatter.sanitize(str(e), NETWORK_FALLBACK)
        except Exception as e:
            logger.exception("Question generation for poem %s crashed", self.poem.id)
            self._error = REQUEST_FAILED + self.formatter.sanitize(str(e), NETWORK_FALLBACK)
        finally:
            with self._lock:
                self._loading = False
            self._publish()
        return installed

    def regenerate_async(self, count: int = DEFAULT_COUNT) -> Optional[threading.Thread]:
        if self._loading:
            return None
        worker = threading.Thread(target=self.regenerate, args=(count,), daemon=True,
                                  name=f"dictation-{self.poem.id}")
        worker.start()
        return worker
