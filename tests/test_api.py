"""
Tests for the JSON/plain-text API, health checks and metrics.

Tests cover:
- POST /api/ask stateless question
- POST /api/test/chat orchestrated exchange
- GET /chat-records pagination and filtering
- GET /health/live and /health/ready
- GET /metrics
- App wiring: configured database, periodic context sweep
"""

import asyncio

import pytest
from fastapi.testclient import TestClient

from conftest import FakeClock, FakeModelClient, completion, drain_background
from gateway.config import Settings
from gateway.context_store import ContextStore, Turn
from gateway.main import create_app
from gateway.orchestrator import FALLBACK_ANSWER, SERVICE_UNAVAILABLE
from gateway.storage import (
    create_chat_record,
    create_db_engine,
    create_session_factory,
    get_chat_records,
    get_login_state,
    save_login_state,
)


class TestAsk:
    def test_plain_text_answer(self, client, model, context_store):
        model.replies = [completion("Paris")]

        response = client.post("/api/ask", content="Capital of France?", headers={"Content-Type": "text/plain"})

        assert response.status_code == 200
        assert response.text == "Paris"
        assert model.prompts == ["Capital of France?"]
        assert len(context_store) == 0

    def test_empty_question_returns_400(self, client, model):
        response = client.post("/api/ask", content="   ")

        assert response.status_code == 400
        assert model.prompts == []

    def test_fallback_text_on_empty_completion(self, client, model):
        model.replies = [completion()]

        response = client.post("/api/ask", content="anything")

        assert response.status_code == 200
        assert response.text == FALLBACK_ANSWER

    def test_unexpected_model_error_returns_apology(self, client, model):
        model.replies = [RuntimeError("invalid endpoint url")]

        response = client.post("/api/ask", content="anything")

        assert response.status_code == 200
        assert response.text == SERVICE_UNAVAILABLE


class TestOperatorChat:
    def test_full_exchange(self, client, model, context_store, archive):
        model.replies = [completion("hi there")]

        response = client.post("/api/test/chat", json={"user_id": "operator", "message": "hello"})
        drain_background(client)

        assert response.status_code == 200
        assert response.json() == {"answer": "hi there", "outcome": "answered"}
        assert len(context_store.get("operator")) == 2
        assert len(archive.records) == 1

    def test_degraded_outcome_reported(self, client, model):
        model.replies = [completion()]

        response = client.post("/api/test/chat", json={"user_id": "operator", "message": "hello"})

        assert response.json() == {"answer": FALLBACK_ANSWER, "outcome": "degraded"}

    def test_unexpected_model_error_reported_as_failed(self, client, model, context_store):
        model.replies = [RuntimeError("invalid endpoint url")]

        response = client.post("/api/test/chat", json={"user_id": "operator", "message": "hello"})

        assert response.status_code == 200
        assert response.json() == {"answer": SERVICE_UNAVAILABLE, "outcome": "failed"}
        assert context_store.get("operator") == []

    def test_validation_error(self, client):
        response = client.post("/api/test/chat", json={"user_id": "", "message": "hello"})
        assert response.status_code == 422


@pytest.fixture
def seeded_records(client):
    rows = [
        ("u1", "q1", "a1", "2025-01-15T10:00:00Z"),
        ("u1", "q2", "a2", "2025-01-15T10:01:00Z"),
        ("u2", "q3", "a3", "2025-01-15T10:02:00Z"),
    ]
    with client.app.state.session_factory() as db:
        for row in rows:
            create_chat_record(db, *row)
    return client


class TestChatRecords:
    def test_empty_archive(self, client):
        response = client.get("/chat-records")

        assert response.status_code == 200
        assert response.json() == {"data": [], "total": 0, "limit": 50, "offset": 0}

    def test_newest_first(self, seeded_records):
        data = seeded_records.get("/chat-records").json()

        assert data["total"] == 3
        assert [r["question"] for r in data["data"]] == ["q3", "q2", "q1"]

    def test_filter_by_user(self, seeded_records):
        data = seeded_records.get("/chat-records", params={"user_id": "u1"}).json()

        assert data["total"] == 2
        assert {r["user_id"] for r in data["data"]} == {"u1"}

    def test_pagination(self, seeded_records):
        data = seeded_records.get("/chat-records", params={"limit": 1, "offset": 1}).json()

        assert data["total"] == 3
        assert [r["question"] for r in data["data"]] == ["q2"]

    @pytest.mark.parametrize("params", [{"limit": 0}, {"limit": 101}, {"offset": -1}])
    def test_invalid_pagination(self, client, params):
        assert client.get("/chat-records", params=params).status_code == 422


class TestLoginStateStorage:
    def test_rescan_overwrites_binding(self, client):
        with client.app.state.session_factory() as db:
            save_login_state(db, "ticket-1", "u1")
            save_login_state(db, "ticket-1", "u2")
            assert get_login_state(db, "ticket-1").user_id == "u2"


class TestHealth:
    def test_live(self, client):
        response = client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_ready(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["status"] == "ready"

    def test_not_ready_without_token(self, client):
        client.app.state.settings = client.app.state.settings.model_copy(update={"WECHAT_TOKEN": ""})

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["reason"] == "WECHAT_TOKEN not configured"


class TestMetrics:
    def test_exposes_webhook_counters(self, client):
        client.get("/webhook", params={"echostr": "x"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "webhook_requests_total" in response.text
        assert "model_requests_total" in response.text
        assert "model_latency_seconds" in response.text


class TestDatabaseSettings:
    def test_archive_uses_configured_database(self, tmp_path):
        """The app archives into the DATABASE_URL it was built with, not the process default."""
        url = f"sqlite:///{tmp_path / 'custom.db'}"
        app = create_app(
            settings=Settings(DATABASE_URL=url),
            model_client=FakeModelClient(completion("hi there")),
            context_store=ContextStore(),
        )

        with TestClient(app) as client:
            response = client.post("/api/test/chat", json={"user_id": "operator", "message": "hello"})
            drain_background(client)
            assert client.get("/health/ready").status_code == 200

        assert response.json()["outcome"] == "answered"
        assert str(app.state.engine.url) == url

        engine = create_db_engine(url)
        try:
            with create_session_factory(engine)() as db:
                records, total = get_chat_records(db, user_id="operator")
        finally:
            engine.dispose()
        assert total == 1
        assert records[0].answer == "hi there"


class TestContextSweep:
    def test_lifespan_sweeps_expired_contexts(self, tmp_path):
        clock = FakeClock()
        store = ContextStore(ttl_seconds=1800, clock=clock)
        for i in range(50):
            store.append(f"user-{i}", Turn("user", "hi"))
        clock.advance(3600)

        app = create_app(
            settings=Settings(
                DATABASE_URL=f"sqlite:///{tmp_path / 'sweep.db'}",
                CONTEXT_PURGE_INTERVAL_SECONDS=0.01,
            ),
            model_client=FakeModelClient(),
            context_store=store,
        )

        with TestClient(app) as client:
            client.portal.call(asyncio.sleep, 0.1)

        assert len(store) == 0
