"""
FastAPI endpoint tests for the MockLoop Interview Service.

Tests the API surface using httpx AsyncClient with proper lifespan
management via asgi-lifespan. The store, clock, feedback model, code runner
and vision client are injected through create_app().
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import AsyncIterator, Iterator

import httpx
import pytest
import pytest_asyncio
from asgi_lifespan import LifespanManager
from fastapi import WebSocketDisconnect, status
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from openai import APIStatusError

from interview_service import create_app
from mockloop.cache import ReadThroughCache
from mockloop.config import ServiceConfig
from mockloop.execution import PistonClient
from mockloop.lifecycle import InterviewLifecycleManager
from mockloop.models import InterviewMode
from mockloop.orchestration import AgentsHintGenerator
from mockloop.orchestration.bridge import SnapshotWhiteboard
from mockloop.store import InMemoryInterviewStore
from mockloop.vision import WhiteboardInterpreter
from tests.mock_data import FakeClock, FakeFeedbackModel, generate_conversation, generate_feedback, generate_user


ADMIN_TOKEN = "test-admin-token"
ALICE = {"X-User-Id": "alice"}
MALLORY = {"X-User-Id": "mallory"}
ADMIN = {"X-Admin-Token": ADMIN_TOKEN}


class FakeCompletions:
    def __init__(self) -> None:
        self.calls: list[dict] = []
        self.error: Exception | None = None

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content="A binary tree with root 4.")
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _piston_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"run": {"stdout": "[0, 1]\n", "stderr": ""}})


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryInterviewStore:
    return InMemoryInterviewStore(ReadThroughCache())


@pytest.fixture
def feedback_model() -> FakeFeedbackModel:
    return FakeFeedbackModel(payload=generate_feedback(InterviewMode.FULL))


@pytest.fixture
def completions() -> FakeCompletions:
    return FakeCompletions()


@pytest_asyncio.fixture
async def client(
    store: InMemoryInterviewStore,
    clock: FakeClock,
    feedback_model: FakeFeedbackModel,
    completions: FakeCompletions,
) -> AsyncIterator[AsyncClient]:
    """
    Create async test client with proper lifespan management.

    Uses LifespanManager to ensure the app's lifespan events are triggered,
    which properly initializes the application state.
    """
    await store.create_user(generate_user("alice", tokens=1000))
    await store.create_user(generate_user("mallory", tokens=1000))

    def lifecycle_factory(store, **kwargs) -> InterviewLifecycleManager:
        return InterviewLifecycleManager(store, clock=clock, **kwargs)

    app = create_app(
        config=ServiceConfig(admin_token=ADMIN_TOKEN),
        store=store,
        feedback_model=feedback_model,
        piston=PistonClient(min_interval=0, transport=httpx.MockTransport(_piston_handler)),
        interpreter=WhiteboardInterpreter(
            client=SimpleNamespace(chat=SimpleNamespace(completions=completions)),
            model="vision-test",
            max_bytes=1024,
        ),
        lifecycle_factory=lifecycle_factory,
    )

    async with LifespanManager(app) as manager:
        transport = ASGITransport(app=manager.app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac


async def _start(client: AsyncClient, mode: str = "full", headers: dict = ALICE) -> str:
    response = await client.post("/interview/start", json={"mode": mode}, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["interview_id"]


# =============================================================================
# Health Check Tests
# =============================================================================


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_health_returns_healthy(self, client: AsyncClient) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "MockLoop Interview Service"
        assert data["store"] == "InMemoryInterviewStore"
        assert data["timestamp"].endswith("Z")


# =============================================================================
# Interview Lifecycle Tests
# =============================================================================


class TestInterviewEndpoints:
    """Tests for /interview/start, /save and /end."""

    @pytest.mark.asyncio
    async def test_start_requires_caller(self, client: AsyncClient) -> None:
        response = await client.post("/interview/start", json={"mode": "full"})

        assert response.status_code == 401
        data = response.json()
        assert data["ok"] is False
        assert data["error_code"] == "UNAUTHENTICATED"

    @pytest.mark.asyncio
    async def test_start_reserves_tokens(self, client: AsyncClient) -> None:
        response = await client.post("/interview/start", json={"mode": "technical"}, headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["ok"] is True
        assert data["mode"] == "technical"
        assert data["tokens_prepaid"] == 750
        assert data["new_balance"] == 250

    @pytest.mark.asyncio
    async def test_insufficient_tokens_is_402(self, client: AsyncClient) -> None:
        await _start(client)

        response = await client.post("/interview/start", json={"mode": "full"}, headers=ALICE)

        assert response.status_code == 402
        assert response.json()["error_code"] == "INSUFFICIENT_TOKENS"

    @pytest.mark.asyncio
    async def test_invalid_mode_is_422(self, client: AsyncClient) -> None:
        response = await client.post("/interview/start", json={"mode": "system-design"}, headers=ALICE)

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_end_trues_up(self, client: AsyncClient, clock: FakeClock) -> None:
        interview_id = await _start(client)
        clock.advance(minutes=10)

        response = await client.post(f"/interview/{interview_id}/end", headers=ALICE)

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "completed"
        assert data["tokens_used"] == 500
        assert data["difference"] == 250
        assert data["new_balance"] == 500
        assert data["already_finalized"] is False

    @pytest.mark.asyncio
    async def test_end_twice_replays(self, client: AsyncClient, clock: FakeClock) -> None:
        interview_id = await _start(client)
        clock.advance(minutes=20)
        await client.post(f"/interview/{interview_id}/end", headers=ALICE)

        clock.advance(minutes=20)
        response = await client.post(f"/interview/{interview_id}/end", headers=ALICE)

        data = response.json()
        assert data["already_finalized"] is True
        assert data["tokens_used"] == 1000
        assert data["new_balance"] == 0

    @pytest.mark.asyncio
    async def test_save_persists_and_finalizes(self, client: AsyncClient, clock: FakeClock, store) -> None:
        interview_id = await _start(client)
        clock.advance(minutes=10)
        messages = [m.model_dump() for m in generate_conversation(turns=2)]

        response = await client.post(
            f"/interview/{interview_id}/save",
            json={"messages": messages, "code": "x = 1", "feedback": generate_feedback(InterviewMode.FULL)},
            headers=ALICE,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["finalized_now"] is True
        assert data["new_balance"] == 500
        interview = await store.get_interview(interview_id)
        assert len(interview.messages) == 4
        assert interview.feedback["mode"] == "full"

    @pytest.mark.asyncio
    async def test_save_by_other_user_forbidden(self, client: AsyncClient, store) -> None:
        interview_id = await _start(client)

        response = await client.post(f"/interview/{interview_id}/save", json={"code": "evil"}, headers=MALLORY)

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"
        assert (await store.get_interview(interview_id)).code == ""

    @pytest.mark.asyncio
    async def test_save_wrong_mode_feedback_is_422(self, client: AsyncClient) -> None:
        interview_id = await _start(client, mode="behavioral")

        response = await client.post(
            f"/interview/{interview_id}/save",
            json={"feedback": generate_feedback(InterviewMode.TECHNICAL)},
            headers=ALICE,
        )

        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_FAILED"

    @pytest.mark.asyncio
    async def test_unknown_interview_is_404(self, client: AsyncClient) -> None:
        response = await client.post("/interview/does-not-exist/end", headers=ALICE)

        assert response.status_code == 404
        assert response.json()["error_code"] == "INTERVIEW_NOT_FOUND"


class TestSweepEndpoint:
    """Tests for /interview/sweep."""

    @pytest.mark.asyncio
    async def test_requires_admin_token(self, client: AsyncClient) -> None:
        response = await client.post("/interview/sweep", headers={"X-Admin-Token": "wrong"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_sweeps_stale_interviews(self, client: AsyncClient, clock: FakeClock) -> None:
        interview_id = await _start(client)
        clock.advance(minutes=61)

        response = await client.post("/interview/sweep", headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["processed"] == 1
        assert data["interview_ids"] == [interview_id]

        ended = await client.post(f"/interview/{interview_id}/end", headers=ALICE)
        assert ended.json()["status"] == "abandoned"
        assert ended.json()["tokens_used"] == 750


# =============================================================================
# Feedback Tests
# =============================================================================


class TestFeedbackEndpoint:
    """Tests for /interview/feedback."""

    @pytest.mark.asyncio
    async def test_returns_mode_tagged_feedback(self, client: AsyncClient) -> None:
        messages = [m.model_dump() for m in generate_conversation(turns=2)]

        response = await client.post(
            "/interview/feedback",
            json={"mode": "full", "messages": messages, "final_code": "x = 1"},
            headers=ALICE,
        )

        assert response.status_code == 200
        feedback = response.json()["feedback"]
        assert feedback["mode"] == "full"
        assert "technical" in feedback
        assert "behavioral" in feedback

    @pytest.mark.asyncio
    async def test_model_failure_is_502(self, client: AsyncClient, feedback_model: FakeFeedbackModel) -> None:
        feedback_model.error = RuntimeError("upstream timeout")

        response = await client.post("/interview/feedback", json={"mode": "full"}, headers=ALICE)

        assert response.status_code == 502
        assert response.json()["error_code"] == "FEEDBACK_GENERATION_FAILED"

    @pytest.mark.asyncio
    async def test_shape_mismatch_is_502(self, client: AsyncClient) -> None:
        response = await client.post("/interview/feedback", json={"mode": "technical"}, headers=ALICE)

        assert response.status_code == 502
        assert response.json()["error_code"] == "FEEDBACK_SCHEMA_INVALID"


# =============================================================================
# Question, Code and Whiteboard Tests
# =============================================================================


class TestQuestionEndpoint:
    """Tests for /question/{difficulty}."""

    @pytest.mark.asyncio
    async def test_returns_question(self, client: AsyncClient) -> None:
        response = await client.get("/question/easy", headers=ALICE)

        assert response.status_code == 200
        question = response.json()["question"]
        assert question["difficulty"] == "Easy"
        assert "testCases" in question
        assert response.json()["attempt_id"] is None

    @pytest.mark.asyncio
    async def test_opens_attempt_for_interview(self, client: AsyncClient, store) -> None:
        interview_id = await _start(client, mode="technical")

        response = await client.get(f"/question/Medium?interview_id={interview_id}", headers=ALICE)

        attempt_id = response.json()["attempt_id"]
        assert attempt_id is not None
        assert (await store.get_interview(interview_id)).problem_attempt_ids == [attempt_id]

    @pytest.mark.asyncio
    async def test_unknown_difficulty_is_404(self, client: AsyncClient) -> None:
        response = await client.get("/question/impossible", headers=ALICE)

        assert response.status_code == 404
        assert response.json()["error_code"] == "QUESTION_POOL_EMPTY"

    @pytest.mark.asyncio
    async def test_foreign_interview_rejected_before_rotation(self, client: AsyncClient, store) -> None:
        interview_id = await _start(client, mode="technical")

        response = await client.get(f"/question/easy?interview_id={interview_id}", headers=MALLORY)

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"
        assert (await store.get_user("mallory", fresh=True)).recent_question_ids == []
        assert (await store.get_interview(interview_id)).problem_attempt_ids == []


class TestCodeExecuteEndpoint:
    """Tests for /code/execute."""

    @pytest.mark.asyncio
    async def test_run_recorded_on_attempt(self, client: AsyncClient, store) -> None:
        interview_id = await _start(client, mode="technical")
        question = await client.get(f"/question/Easy?interview_id={interview_id}", headers=ALICE)
        attempt_id = question.json()["attempt_id"]

        response = await client.post(
            "/code/execute",
            json={
                "language": "python",
                "version": "3.10.0",
                "source": "print([0, 1])",
                "attempt_id": attempt_id,
                "user_code": "def f(): pass",
            },
            headers=ALICE,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["passed"] is True
        assert data["stdout"] == "[0, 1]\n"
        attempt = await store.get_problem_attempt(attempt_id)
        assert attempt.submissions[0].user_code == "def f(): pass"


class TestWhiteboardEndpoint:
    """Tests for /whiteboard/interpret."""

    @pytest.mark.asyncio
    async def test_interprets_image(self, client: AsyncClient, completions: FakeCompletions) -> None:
        response = await client.post(
            "/whiteboard/interpret",
            json={"image": "data:image/png;base64,aGVsbG8="},
            headers=ALICE,
        )

        assert response.status_code == 200
        assert response.json()["interpretation"] == "A binary tree with root 4."
        assert completions.calls[0]["model"] == "vision-test"

    @pytest.mark.asyncio
    async def test_too_large_is_413(self, client: AsyncClient) -> None:
        image = "data:image/png;base64," + "A" * 4096

        response = await client.post("/whiteboard/interpret", json={"image": image}, headers=ALICE)

        assert response.status_code == 413
        assert response.json()["error_code"] == "IMAGE_TOO_LARGE"

    @pytest.mark.asyncio
    async def test_vision_outage_is_502(self, client: AsyncClient, completions: FakeCompletions) -> None:
        upstream = httpx.Response(503, request=httpx.Request("POST", "https://api.test/v1/chat/completions"))
        completions.error = APIStatusError("Service Unavailable", response=upstream, body=None)

        response = await client.post(
            "/whiteboard/interpret",
            json={"image": "data:image/png;base64,aGVsbG8="},
            headers=ALICE,
        )

        assert response.status_code == 502
        assert response.json()["error_code"] == "VISION_UNAVAILABLE"


# =============================================================================
# User Tests
# =============================================================================


class TestUserEndpoints:
    """Tests for subscriptions and the leaderboard."""

    @pytest.mark.asyncio
    async def test_grant_subscription(self, client: AsyncClient) -> None:
        response = await client.post("/users/alice/subscription", json={"tier": "pro"}, headers=ADMIN)

        assert response.status_code == 200
        data = response.json()
        assert data["tokens_granted"] == 15 * 750
        assert data["new_balance"] == 1000 + 15 * 750

    @pytest.mark.asyncio
    async def test_subscription_requires_admin(self, client: AsyncClient) -> None:
        response = await client.post("/users/alice/subscription", json={"tier": "pro"}, headers=ALICE)

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_billing_history_lists_grants(self, client: AsyncClient) -> None:
        await client.post(
            "/users/alice/subscription",
            json={"tier": "starter", "reference_id": "cs_test_1", "amount": 1999},
            headers=ADMIN,
        )

        response = await client.get("/users/alice/billing-history", headers=ALICE)

        assert response.status_code == 200
        [entry] = response.json()["entries"]
        assert entry["type"] == "subscription"
        assert entry["reference_id"] == "cs_test_1"
        assert entry["amount"] == 1999
        assert entry["tokens"] == 4500

    @pytest.mark.asyncio
    async def test_billing_history_is_private(self, client: AsyncClient) -> None:
        await client.post("/users/alice/subscription", json={"tier": "pro"}, headers=ADMIN)

        response = await client.get("/users/alice/billing-history", headers=MALLORY)

        assert response.status_code == 403
        assert response.json()["error_code"] == "FORBIDDEN"

    @pytest.mark.asyncio
    async def test_billing_history_requires_caller(self, client: AsyncClient) -> None:
        response = await client.get("/users/alice/billing-history")

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_leaderboard_reflects_completed_interviews(
        self, client: AsyncClient, clock: FakeClock
    ) -> None:
        before = await client.get("/users/leaderboard?limit=5")
        assert [u["xp"] for u in before.json()["users"]] == [0, 0]

        interview_id = await _start(client)
        clock.advance(minutes=5)
        await client.post(f"/interview/{interview_id}/end", headers=ALICE)

        after = await client.get("/users/leaderboard?limit=5")
        top = after.json()["users"][0]
        assert top["user_id"] == "alice"
        assert top["xp"] == 100
        assert top["level"] == 1


# =============================================================================
# Realtime Session Tests
# =============================================================================


class SessionCode:
    def __init__(self, interview_id: str) -> None:
        self.interview_id = interview_id
        self.code = ""

    def set_code(self, code: str) -> None:
        self.code = code


class IdleSession:
    """Stands in for InterviewSessionRunner: greets, then waits for the client to hang up."""

    def __init__(self, interview_id: str, user_id: str, config, services: dict) -> None:
        self.user_id = user_id
        self.config = config
        self.services = services
        self.context = SessionCode(interview_id)
        self.outbound = None

    async def run(self) -> None:
        await self.outbound({"type": "agent", "agent": "Coordinator"})
        await asyncio.Event().wait()

    async def send_audio(self, audio: bytes) -> None:
        pass

    async def submit_code(self, source: str) -> dict:
        return {"passed": True, "stdout": ""}


class SessionRecorder:
    def __init__(self) -> None:
        self.created: list[IdleSession] = []

    def __call__(self, interview_id: str, user_id: str, config, **services) -> IdleSession:
        session = IdleSession(interview_id, user_id, config, services)
        self.created.append(session)
        return session


@pytest.fixture
def sessions() -> SessionRecorder:
    return SessionRecorder()


@pytest.fixture
def session_client(sessions: SessionRecorder, feedback_model: FakeFeedbackModel) -> Iterator[TestClient]:
    store = InMemoryInterviewStore(ReadThroughCache())
    asyncio.run(store.create_user(generate_user("alice", tokens=1000, user_name="alice")))
    asyncio.run(store.create_user(generate_user("mallory", tokens=1000)))

    app = create_app(
        config=ServiceConfig(admin_token=ADMIN_TOKEN),
        store=store,
        feedback_model=feedback_model,
        piston=PistonClient(min_interval=0, transport=httpx.MockTransport(_piston_handler)),
        session_factory=sessions,
    )
    with TestClient(app) as tc:
        yield tc


def _start_sync(tc: TestClient, mode: str = "technical") -> str:
    response = tc.post("/interview/start", json={"mode": mode}, headers=ALICE)
    assert response.status_code == 200, response.text
    return response.json()["interview_id"]


class TestInterviewSessionSocket:
    """Tests for the /interview/{id}/session websocket."""

    def test_session_runs_until_hangup(self, session_client: TestClient, sessions: SessionRecorder) -> None:
        interview_id = _start_sync(session_client)

        with session_client.websocket_connect(
            f"/interview/{interview_id}/session?difficulty=Easy&language=python", headers=ALICE
        ) as ws:
            assert ws.receive_json() == {"type": "agent", "agent": "Coordinator"}
            ws.send_json({"type": "code", "code": "print(1)"})
            ws.send_json({"type": "hangup"})
            assert ws.receive_json() == {"type": "ended", "interview_id": interview_id}

        [session] = sessions.created
        assert session.user_id == "alice"
        assert session.context.code == "print(1)"
        assert session.config.mode == InterviewMode.TECHNICAL
        assert session.config.difficulty == "Easy"
        assert session.config.preselected_language == "python"
        assert isinstance(session.services["hints"], AgentsHintGenerator)
        assert isinstance(session.services["whiteboard"], SnapshotWhiteboard)
        assert isinstance(session.services["interpreter"], WhiteboardInterpreter)

    def test_requires_caller(self, session_client: TestClient, sessions: SessionRecorder) -> None:
        interview_id = _start_sync(session_client)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with session_client.websocket_connect(f"/interview/{interview_id}/session") as ws:
                ws.receive_json()

        assert exc_info.value.code == status.WS_1008_POLICY_VIOLATION
        assert sessions.created == []

    def test_foreign_interview_refused(self, session_client: TestClient, sessions: SessionRecorder) -> None:
        interview_id = _start_sync(session_client)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with session_client.websocket_connect(f"/interview/{interview_id}/session", headers=MALLORY) as ws:
                ws.receive_json()

        assert exc_info.value.code == status.WS_1008_POLICY_VIOLATION
        assert sessions.created == []

    def test_ended_interview_refused(self, session_client: TestClient, sessions: SessionRecorder) -> None:
        interview_id = _start_sync(session_client)
        assert session_client.post(f"/interview/{interview_id}/end", headers=ALICE).status_code == 200

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with session_client.websocket_connect(f"/interview/{interview_id}/session", headers=ALICE) as ws:
                ws.receive_json()

        assert exc_info.value.code == status.WS_1008_POLICY_VIOLATION
        assert sessions.created == []
