import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_SECRET_KEY"] = "test-secret"

from typing import List

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from pydantic_ai.messages import ModelMessage
from pydantic_ai.models.function import AgentInfo, FunctionModel
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from parental.agents.coach import ChatGateway, get_gateway
from parental.database.db import Base, enable_sqlite_foreign_keys, get_db, get_session_factory
from parental.database.store import ConversationStore
from parental.main import app


class ScriptedProvider:
    """Stream function for FunctionModel that replays fragments and records what it was sent."""

    def __init__(self, fragments=("Hello", ", ", "world."), fail_after=None):
        self.fragments = list(fragments)
        self.fail_after = fail_after
        self.calls: List[List[ModelMessage]] = []

    async def __call__(self, messages: List[ModelMessage], info: AgentInfo):
        self.calls.append(messages)
        for index, fragment in enumerate(self.fragments):
            if self.fail_after is not None and index == self.fail_after:
                raise RuntimeError("provider connection dropped")
            yield fragment
        if self.fail_after is not None and self.fail_after >= len(self.fragments):
            raise RuntimeError("provider connection dropped")

    @property
    def last_messages(self) -> List[ModelMessage]:
        return self.calls[-1]


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def gateway(provider):
    return ChatGateway(FunctionModel(stream_function=provider))


@pytest.fixture
def session_factory():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(test_engine)
    Base.metadata.create_all(bind=test_engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return ConversationStore(db)


@pytest.fixture
def client(session_factory, gateway):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_token(external_id, email=None, secret="test-secret"):
    claims = {"sub": external_id}
    if email is not None:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {make_token('wld-0x1234', 'parent@example.com')}"}
