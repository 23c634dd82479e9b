import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")
os.environ.setdefault("STORAGE_BACKEND", "local")
os.environ.setdefault("MODEL_PROVIDER", "openai")
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-secret")
os.environ.setdefault("TASK_WORKER_ENABLED", "false")
os.environ.setdefault("EMBEDDING_BACKFILL_ENABLED", "false")

import pytest
from sqlalchemy import create_engine

import core.config as config
from core.context import RequestContext
from core.db import DB, bind_engine
from core.errors import ModelProviderError
from core.models import Base
from core.services import llm


@pytest.fixture
def server_db(tmp_path, monkeypatch):
    db_path = tmp_path / "echo-test.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    bind_engine(engine)
    Base.metadata.create_all(engine)
    monkeypatch.setattr(config, "LOCAL_STORAGE_PATH", str(tmp_path / "blobs"))
    llm.model_circuit_breaker.reset()
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def org_context():
    return RequestContext.for_organization("org_1", user_id="user_1")


@pytest.fixture
def other_org_context():
    return RequestContext.for_organization("org_2", user_id="user_2")


class FakeModel:
    """Scripted stand-in for the chat completions client."""

    def __init__(self):
        self.chat_replies = []
        self.chat_calls = []
        self.text_calls = []
        self.text_reply = "generated answer"
        self.fail = False

    def chat_completion(self, messages, *, model, tools=None):
        self.chat_calls.append({"messages": list(messages), "model": model, "tools": tools})
        if self.fail:
            raise ModelProviderError("model provider unavailable: test")
        if self.chat_replies:
            return self.chat_replies.pop(0)
        return {"role": "assistant", "content": "default reply"}

    def generate_text(self, system_prompt, user_content, *, model):
        self.text_calls.append({"system": system_prompt, "user": user_content, "model": model})
        if self.fail:
            raise ModelProviderError("model provider unavailable: test")
        return self.text_reply


@pytest.fixture
def fake_model(monkeypatch):
    model = FakeModel()
    monkeypatch.setattr(llm, "chat_completion", model.chat_completion)
    monkeypatch.setattr(llm, "generate_text", model.generate_text)
    return model


class Clock:
    def __init__(self, start_ms: int):
        self.value = start_ms

    def __call__(self) -> int:
        return self.value

    def advance(self, delta_ms: int) -> None:
        self.value += delta_ms


@pytest.fixture
def clock(monkeypatch):
    from core.services import contact_sessions

    fake = Clock(1_700_000_000_000)
    monkeypatch.setattr(contact_sessions, "now_ms", fake)
    return fake

