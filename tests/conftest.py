"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any gateway import, and the
settings cache is cleared so the app is built from them.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "gateway_test.db"),
)
os.environ.setdefault("WECHAT_TOKEN", "test-token")
os.environ.setdefault("WECHAT_ORIGINAL_ID", "gh_test_account")
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient

from gateway.config import get_settings
get_settings.cache_clear()

from gateway.context_store import ContextStore
from gateway.main import create_app
from gateway.schemas import ChatChoice, ChatCompletionResponse, ChatMessage
from gateway.storage import Base
import gateway.models  # noqa: F401


def completion(*texts: str) -> ChatCompletionResponse:
    """Build a model response with one choice per text."""
    return ChatCompletionResponse(
        choices=[ChatChoice(message=ChatMessage(role="assistant", content=t)) for t in texts]
    )


class FakeModelClient:
    """
    Stands in for ChatModelClient. Each call pops the next scripted reply;
    an Exception instance is raised instead of returned.
    """

    def __init__(self, *replies):
        self.replies = list(replies)
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> ChatCompletionResponse:
        self.prompts.append(prompt)
        reply = self.replies.pop(0) if self.replies else completion("ok")
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingArchive:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: list[tuple] = []

    async def save(self, user_id, question, answer, created_at):
        if self.fail:
            raise RuntimeError("archive down")
        self.records.append((user_id, question, answer, created_at))


class RecordingLoginStore:
    def __init__(self):
        self.bindings: list[tuple] = []

    async def save_login_state(self, ticket, user_id):
        self.bindings.append((ticket, user_id))


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def model() -> FakeModelClient:
    return FakeModelClient()


@pytest.fixture
def archive() -> RecordingArchive:
    return RecordingArchive()


@pytest.fixture
def login_store() -> RecordingLoginStore:
    return RecordingLoginStore()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def context_store(clock) -> ContextStore:
    return ContextStore(ttl_seconds=1800, max_chars=3000, clock=clock)


@pytest.fixture(scope="function")
def client(model, archive, login_store, context_store):
    """Test client wired to fake collaborators; tables are created on startup and dropped after."""
    app = create_app(
        model_client=model,
        context_store=context_store,
        archive=archive,
        login_store=login_store,
    )
    with TestClient(app) as test_client:
        yield test_client
        Base.metadata.drop_all(bind=app.state.engine)


def drain_background(client: TestClient) -> None:
    """Block until every fire-and-forget job queued by the app has run."""
    client.portal.call(client.app.state.worker.drain)
