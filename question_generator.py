from __future__ import annotations
import json
import logging
import threading
from typing import Any, List, Optional, Sequence

from chat_client import ChatCompletionClient
from errors import EmptyResultError, MalformedResponseError
from models import DictationQuestion, PoemMetadata
from prompts import DICTATION_SYSTEM_PROMPT, dictation_user_prompt, poem_context_block
from store import PoemStore

logger = logging.getLogger(__name__)

GENERATION_TEMPERATURE = 0.85
DEFAULT_COUNT = 3

# (english key, chinese synonym)
_QUESTION_KEYS = ("question", "题目")
_ANSWER_KEYS = ("answer", "答案")
_EXPLANATION_KEYS = ("explanation", "解析")


class QuestionSetGenerator:
    """
    Produces dictation question batches for one poem and owns their persistence.
    At most one generation runs at a time; overlapping calls return None.
    """
    def __init__(self, client: ChatCompletionClient, store: PoemStore):
        self.client = client
        self.store = store
        self._in_flight = threading.Lock()

    @property
    def is_generating(self) -> bool:
        return self._in_flight.locked()

    def load(self, poem_id: int) -> List[DictationQuestion]:
        return self.store.load_questions(poem_id)

    def generate(
        self,
        poem: PoemMetadata,
        previous_answers: Sequence[str],
        count: int = DEFAULT_COUNT,
    ) -> Optional[List[DictationQuestion]]:
        """
        Ask the model for `count` questions and persist them on success.
        Raises AiError subclasses on failure; the stored set is untouched then.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.info("Generation already running for poem %s; ignoring request", poem.id)
            return None
        try:
            messages = [
                ("system", DICTATION_SYSTEM_PROMPT),
                ("user", poem_context_block(poem)),
                ("user", dictation_user_prompt(count, previous_answers)),
            ]
            logger.info("Generating %d dictation questions for poem %s", count, poem.id)
            raw = self.client.complete_sync(messages, temperature=GENERATION_TEMPERATURE)
            questions = parse_questions(raw)
            if not questions:
                raise EmptyResultError("No valid questions in model output")
            self.store.save_questions(poem.id, questions)
            logger.info("Generated %d questions for poem %s", len(questions), poem.id)
            return questions
        finally:
            self._in_flight.release()


# ---------- parsing ----------
def extract_json_array(raw: str) -> str:
    """
    Substring from the first '[' to the last ']', or raw unchanged.
    Best effort: brackets inside surrounding prose can widen the slice.
    """
    start = raw.find("[")
    end = raw.rfind("]")
    if start >= 0 and end > start:
        return raw[start:end + 1]
    return raw


def parse_questions(raw: str) -> List[DictationQuestion]:
    """
    Accepts a JSON array of question objects, or an object wrapping one under
    "questions". Entries without a non-blank question and answer are dropped.
    """
    data = _loads_first(extract_json_array(raw), raw.strip())
    if isinstance(data, dict):
        data = data.get("questions")
    if not isinstance(data, list):
        raise MalformedResponseError("Model output is not a question array")

    out: List[DictationQuestion] = []
    for item in data:
        if not isinstance(item, dict):
            continue
        prompt = _pick(item, _QUESTION_KEYS)
        answer = _pick(item, _ANSWER_KEYS)
        if not prompt or not answer:
            continue
        out.append(DictationQuestion(prompt=prompt, answer=answer, explanation=_pick(item, _EXPLANATION_KEYS)))
    return out


def _loads_first(*candidates: str) -> Any:
    last_error: Optional[ValueError] = None
    for text in candidates:
        try:
            return json.loads(text)
        except ValueError as e:
            last_error = e
    raise MalformedResponseError("Model output is not valid JSON") from last_error


def _pick(obj: dict, keys: Sequence[str]) -> str:
    for key in keys:
        value = obj.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""
