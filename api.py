from __future__ import annotations
import os
import threading
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from chat_client import ChatCompletionClient
from chat_engine import ChatTurnReconciler
from dictation_engine import DictationSession
from errors import ErrorFormatter, host_of
from models import ChatMessage, CheckResult, Correct, DictationQuestion, Typos
from poems import Poem, PoemCorpus
from question_generator import DEFAULT_COUNT, QuestionSetGenerator
from store import JsonFileStore, PoemStore
from text_normalizer import build_blank_mask

# ---------- Pydantic IO models ----------
class PoemOut(BaseModel):
    id: int
    title: str
    author: str
    tags: List[str] = []
    content: List[str] = []
    translation: List[str] = []

class CheckResultOut(BaseModel):
    kind: str  # correct | typos | whole_wrong
    total: Optional[int] = None
    wrong_count: Optional[int] = None

class QuestionOut(BaseModel):
    index: int
    prompt: str
    answer: str
    explanation: str
    blank: str
    user_input: str
    result: Optional[CheckResultOut] = None
    revision: int

class DictationOut(BaseModel):
    poem_id: int
    loading: bool
    error: Optional[str] = None
    questions: List[QuestionOut]

class GenerateIn(BaseModel):
    count: int = Field(DEFAULT_COUNT, ge=1, le=10)

class InputIn(BaseModel):
    text: str = Field(..., example="疑是地上霜")

class MessageOut(BaseModel):
    id: str
    role: str
    content: str
    timestamp: int

class TurnOut(BaseModel):
    user: Optional[MessageOut] = None
    assistant: Optional[MessageOut] = None

class ChatOut(BaseModel):
    poem_id: int
    is_streaming: bool
    error: Optional[str] = None
    turns: List[TurnOut]

class SendIn(BaseModel):
    text: str = Field(..., example="“疑是地上霜”用了什么修辞？")


# ---------- converters ----------
def _to_poem_out(p: Poem) -> PoemOut:
    return PoemOut(id=p.id, title=p.title, author=p.author, tags=p.tags,
                   content=p.content, translation=p.translation)

def _to_result_out(r: Optional[CheckResult]) -> Optional[CheckResultOut]:
    if r is None:
        return None
    if isinstance(r, Correct):
        return CheckResultOut(kind="correct")
    if isinstance(r, Typos):
        return CheckResultOut(kind="typos", total=r.total, wrong_count=r.wrong_count)
    return CheckResultOut(kind="whole_wrong")

def _to_question_out(i: int, q: DictationQuestion) -> QuestionOut:
    return QuestionOut(
        index=i, prompt=q.prompt, answer=q.answer, explanation=q.explanation,
        blank=build_blank_mask(q.answer), user_input=q.user_input,
        result=_to_result_out(q.result), revision=q.revision,
    )

def _to_message_out(m: Optional[ChatMessage]) -> Optional[MessageOut]:
    if m is None:
        return None
    return MessageOut(id=m.id, role=m.role.value, content=m.content, timestamp=m.timestamp)


# ---------- App ----------
def create_app(
    client: Optional[ChatCompletionClient] = None,
    store: Optional[PoemStore] = None,
    corpus: Optional[PoemCorpus] = None,
) -> FastAPI:
    app = FastAPI(title="Poem Study API", version="1.0.0")

    _client = client or ChatCompletionClient()
    _store = store or JsonFileStore()
    _corpus = corpus if corpus is not None else PoemCorpus.load()
    _formatter = ErrorFormatter(os.getenv("AI_ERROR_FILTER_DOMAIN") or host_of(_client.base_url))

    # One session of each kind per poem, created on first use
    _dictations: Dict[int, DictationSession] = {}
    _chats: Dict[int, ChatTurnReconciler] = {}
    _sessions_lock = threading.Lock()

    def _poem(poem_id: int) -> Poem:
        p = _corpus.get(poem_id)
        if p is None:
            raise HTTPException(404, "Poem not found")
        return p

    def _dictation(poem_id: int) -> DictationSession:
        poem = _poem(poem_id)
        with _sessions_lock:
            if poem_id not in _dictations:
                _dictations[poem_id] = DictationSession(
                    poem.metadata(), QuestionSetGenerator(_client, _store), formatter=_formatter)
            return _dictations[poem_id]

    def _chat(poem_id: int) -> ChatTurnReconciler:
        poem = _poem(poem_id)
        with _sessions_lock:
            if poem_id not in _chats:
                _chats[poem_id] = ChatTurnReconciler(poem.metadata(), _client, _store, formatter=_formatter)
            return _chats[poem_id]

    def _dictation_out(poem_id: int, s: DictationSession) -> DictationOut:
        snap = s.snapshot()
        return DictationOut(
            poem_id=poem_id, loading=snap.loading, error=snap.error,
            questions=[_to_question_out(i, q) for i, q in enumerate(snap.questions)],
        )

    def _chat_out(poem_id: int, c: ChatTurnReconciler) -> ChatOut:
        snap = c.snapshot
        return ChatOut(
            poem_id=poem_id, is_streaming=snap.is_streaming, error=snap.error,
            turns=[TurnOut(user=_to_message_out(t.user), assistant=_to_message_out(t.assistant))
                   for t in snap.turns],
        )

    # ---------- poems ----------
    @app.get("/v1/poems", response_model=List[PoemOut])
    def search_poems(q: str = ""):
        return [_to_poem_out(p) for p in _corpus.search(q)]

    @app.get("/v1/poems/{poem_id}", response_model=PoemOut)
    def get_poem(poem_id: int):
        return _to_poem_out(_poem(poem_id))

    # ---------- dictation ----------
    @app.get("/v1/poems/{poem_id}/dictation", response_model=DictationOut)
    def get_dictation(poem_id: int):
        return _dictation_out(poem_id, _dictation(poem_id))

    @app.post("/v1/poems/{poem_id}/dictation/generate", response_model=DictationOut)
    def generate(poem_id: int, payload: GenerateIn):
        s = _dictation(poem_id)
        s.regenerate(payload.count)
        return _dictation_out(poem_id, s)

    @app.put("/v1/poems/{poem_id}/dictation/{index}/input")
    def update_input(poem_id: int, index: int, payload: InputIn):
        s = _dictation(poem_id)
        if not 0 <= index < len(s.questions):
            raise HTTPException(400, "Invalid question index")
        s.update_input(index, payload.text)
        return {"ok": True}

    @app.post("/v1/poems/{poem_id}/dictation/{index}/check", response_model=CheckResultOut)
    def check(poem_id: int, index: int):
        result = _dictation(poem_id).check(index)
        if result is None:
            raise HTTPException(400, "Invalid question index")
        return _to_result_out(result)

    # ---------- chat ----------
    @app.get("/v1/poems/{poem_id}/chat", response_model=ChatOut, response_model_exclude_none=True)
    def get_chat(poem_id: int):
        return _chat_out(poem_id, _chat(poem_id))

    @app.post("/v1/poems/{poem_id}/chat", response_model=ChatOut, response_model_exclude_none=True)
    def send(poem_id: int, payload: SendIn):
        c = _chat(poem_id)
        if c.send_message(payload.text) is None:
            raise HTTPException(400, "Message is blank")
        return _chat_out(poem_id, c)

    @app.post("/v1/poems/{poem_id}/chat/stop", response_model=ChatOut, response_model_exclude_none=True)
    def stop(poem_id: int):
        c = _chat(poem_id)
        c.stop_streaming()
        return _chat_out(poem_id, c)

    @app.delete("/v1/poems/{poem_id}/chat/messages/{message_id}", response_model=ChatOut,
                response_model_exclude_none=True)
    def delete_message(poem_id: int, message_id: str):
        c = _chat(poem_id)
        c.delete_message(message_id)
        return _chat_out(poem_id, c)

    app.state.dictations = _dictations
    app.state.chats = _chats
    return app


app = create_app()
