"""
MockLoop Interview Service

HTTP surface for the mock-interview backend: interview lifecycle, feedback,
question rotation, code execution, whiteboard interpretation, subscriptions
and the XP leaderboard.

Endpoints:
    POST /interview/start            - Reserve tokens and start an interview
    POST /interview/{id}/save        - Persist transcript/code/feedback
    POST /interview/{id}/end         - Finalize billing (idempotent)
    POST /interview/sweep            - Abandon stale interviews (admin)
    POST /interview/feedback         - Synthesize mode-tagged feedback
    GET  /question/{difficulty}      - Next non-repeating question
    POST /code/execute               - Run candidate code
    POST /whiteboard/interpret       - Describe a whiteboard snapshot
    POST /users/{id}/subscription    - Grant a subscription (admin)
    GET  /users/{id}/billing-history - The caller's own billing entries
    GET  /users/leaderboard          - Top users by XP
    GET  /health                     - Health check
    WS   /interview/{id}/session     - Realtime interview session

Caller identity arrives in the X-User-Id header, set by the upstream auth
gateway. Admin routes additionally require X-Admin-Token.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncIterator, Optional, TypedDict

import uvicorn
from fastapi import Depends, FastAPI, Header, Query, Request, WebSocket, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.requests import HTTPConnection

from mockloop import __version__
from mockloop.cache import LEADERBOARD_PREFIX, LEADERBOARD_TTL_SECONDS, ReadThroughCache
from mockloop.config import ServiceConfig, load_service_config
from mockloop.errors import (
    Forbidden,
    InterviewServiceError,
    RequestValidationFailed,
    Unauthenticated,
    UserNotFound,
)
from mockloop.execution import PistonClient
from mockloop.feedback import AgentsFeedbackModel, FeedbackModel, FeedbackRequest, FeedbackSynthesizer
from mockloop.ledger import level_for_xp
from mockloop.lifecycle import (
    EndResult,
    InterviewLifecycleManager,
    InterviewUpdate,
    SaveResult,
    StartResult,
    SubscriptionResult,
)
from mockloop.locks import KeyedLocks
from mockloop.models import BillingEntry, InterviewMode, SubscriptionTier, Submission
from mockloop.orchestration import AgentsHintGenerator, SessionConfig
from mockloop.orchestration.bridge import SessionBridge, SnapshotWhiteboard
from mockloop.orchestration.runtime import InterviewSessionRunner
from mockloop.orchestration.session import HintGenerator
from mockloop.questions import QuestionBank, QuestionRotation
from mockloop.store import InMemoryInterviewStore, InterviewStore, JsonFileInterviewStore, mapped_store_errors
from mockloop.vision import WhiteboardInterpreter


# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


SERVICE_NAME = "MockLoop Interview Service"


# =============================================================================
# Request Models
# =============================================================================


class StartInterviewRequest(BaseModel):
    """Request body for starting an interview."""

    mode: InterviewMode = Field(default=InterviewMode.FULL, description="Which interview phases run")

    model_config = {"extra": "forbid"}


class ExecuteCodeRequest(BaseModel):
    """Request body for a code run."""

    language: str = Field(..., min_length=1, description="Piston runtime language")
    version: str = Field(default="*", description="Piston runtime version")
    source: str = Field(..., description="Code to run, including test calls")
    attempt_id: Optional[str] = Field(default=None, description="Problem attempt to record the run on")
    user_code: Optional[str] = Field(default=None, description="Candidate's code without test harness")


class WhiteboardRequest(BaseModel):
    """Request body for whiteboard interpretation."""

    image: str = Field(..., min_length=1, description="Whiteboard snapshot as a data URL")


class SubscriptionRequest(BaseModel):
    """Request body for a subscription grant."""

    tier: SubscriptionTier
    reference_id: Optional[str] = Field(default=None, description="Payment provider session or invoice id")
    amount: int = Field(default=0, ge=0, description="Amount charged, in cents")


# =============================================================================
# Response Models
# =============================================================================


class BaseResponse(BaseModel):
    """Base response model with common fields."""

    ok: bool = Field(default=True, description="Whether the operation succeeded")


class ErrorResponse(BaseModel):
    """Standard error response."""

    ok: bool = Field(default=False)
    error: str = Field(..., description="Error description")
    error_code: str | None = Field(default=None, description="Machine-readable error code")


class StartInterviewResponse(BaseResponse, StartResult):
    pass


class SaveInterviewResponse(BaseResponse, SaveResult):
    pass


class EndInterviewResponse(BaseResponse, EndResult):
    pass


class SubscriptionResponse(BaseResponse, SubscriptionResult):
    pass


class BillingHistoryResponse(BaseResponse):
    entries: list[BillingEntry]


class SweepResponse(BaseResponse):
    processed: int
    skipped: int
    failed: int
    interview_ids: list[str]
    failed_ids: list[str]


class FeedbackResponse(BaseResponse):
    feedback: dict[str, Any] = Field(..., description="Mode-tagged feedback object")


class QuestionResponse(BaseResponse):
    question: dict[str, Any]
    attempt_id: Optional[str] = Field(default=None, description="Problem attempt opened for this question")


class ExecuteCodeResponse(BaseResponse):
    stdout: str
    stderr: str
    passed: bool
    runner_ok: bool = Field(..., description="False when the code runner could not be reached")


class WhiteboardResponse(BaseResponse):
    interpretation: str


class LeaderboardEntry(BaseModel):
    user_id: str
    user_name: Optional[str]
    xp: int
    level: int


class LeaderboardResponse(BaseResponse):
    users: list[LeaderboardEntry]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    version: str = Field(..., description="Service version")
    timestamp: str = Field(..., description="Current server timestamp")
    store: str = Field(..., description="Active store backend")


# =============================================================================
# Application State (Type-safe Lifespan State)
# =============================================================================


class AppState(TypedDict):
    """Type-safe application state managed by lifespan."""

    config: ServiceConfig
    cache: ReadThroughCache
    store: InterviewStore
    lifecycle: InterviewLifecycleManager
    rotation: QuestionRotation
    synthesizer: FeedbackSynthesizer
    piston: PistonClient
    interpreter: WhiteboardInterpreter
    hints: HintGenerator
    session_factory: Any


def get_app_state(request: HTTPConnection) -> AppState:
    """
    Dependency to retrieve application state from a request or websocket.

    Raises:
        RuntimeError: If state is not properly initialized.
    """
    state = getattr(request, "state", None)
    if state is None:
        raise RuntimeError("Application state not initialized")
    return AppState(
        config=state.config,
        cache=state.cache,
        store=state.store,
        lifecycle=state.lifecycle,
        rotation=state.rotation,
        synthesizer=state.synthesizer,
        piston=state.piston,
        interpreter=state.interpreter,
        hints=state.hints,
        session_factory=state.session_factory,
    )


AppStateDep = Annotated[AppState, Depends(get_app_state)]


def get_caller_id(x_user_id: Annotated[Optional[str], Header()] = None) -> str:
    """Caller identity from the auth gateway."""
    caller = (x_user_id or "").strip()
    if not caller:
        raise Unauthenticated()
    return caller


CallerDep = Annotated[str, Depends(get_caller_id)]


def require_admin(
    state: AppStateDep,
    x_admin_token: Annotated[Optional[str], Header()] = None,
) -> None:
    expected = state["config"].admin_token
    if not expected:
        raise Forbidden("Admin routes are disabled.")
    if x_admin_token != expected:
        raise Unauthenticated("A valid admin token is required.")


AdminDep = Annotated[None, Depends(require_admin)]


# =============================================================================
# Exception Handlers
# =============================================================================


async def interview_service_error_handler(request: Request, exc: InterviewServiceError) -> JSONResponse:
    """Render service errors with their status and machine-readable code."""
    if exc.status_code >= 500:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            ok=False,
            error=exc.message,
            error_code=exc.error_code,
        ).model_dump(),
    )


async def request_validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', '')}" for err in exc.errors()
    )
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=ErrorResponse(
            ok=False,
            error=f"Invalid request: {details}",
            error_code="VALIDATION_FAILED",
        ).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(
            ok=False,
            error="Internal server error",
            error_code="INTERNAL_ERROR",
        ).model_dump(),
    )


# =============================================================================
# Application Factory
# =============================================================================


def create_app(
    config: Optional[ServiceConfig] = None,
    store: Optional[InterviewStore] = None,
    feedback_model: Optional[FeedbackModel] = None,
    piston: Optional[PistonClient] = None,
    interpreter: Optional[WhiteboardInterpreter] = None,
    lifecycle_factory: Optional[Any] = None,
    hint_generator: Optional[HintGenerator] = None,
    session_factory: Optional[Any] = None,
) -> FastAPI:
    """
    Build the service.

    Collaborators left as None are created from ``config`` at startup, so
    tests can inject fakes for any of them.
    """
    config = config or load_service_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[dict[str, Any]]:
        logger.info("Starting %s v%s", SERVICE_NAME, __version__)

        active_store = store
        cache = getattr(active_store, "cache", None) or ReadThroughCache()
        if active_store is not None and getattr(active_store, "cache", None) is None:
            # leaderboard entries are invalidated through the store's cache
            active_store.cache = cache
        if active_store is None:
            if config.data_dir is not None:
                active_store = JsonFileInterviewStore(config.data_dir, cache)
            else:
                logger.warning("DATA_DIR not set; using in-memory store (data is lost on restart)")
                active_store = InMemoryInterviewStore(cache)

        locks = KeyedLocks()
        factory = lifecycle_factory or InterviewLifecycleManager
        lifecycle = factory(
            active_store,
            locks=locks,
            min_tokens_required=config.min_tokens_required,
            tokens_per_second=config.tokens_per_second,
            abandon_after=config.abandon_after,
        )
        bank = QuestionBank(config.question_pool_path, cache)
        rotation = QuestionRotation(bank, active_store, locks=locks, window=config.recent_question_window)

        state = {
            "config": config,
            "cache": cache,
            "store": active_store,
            "lifecycle": lifecycle,
            "rotation": rotation,
            "synthesizer": FeedbackSynthesizer(feedback_model or AgentsFeedbackModel()),
            "piston": piston
            or PistonClient(config.piston_url, min_interval=config.piston_min_interval_ms / 1000),
            "interpreter": interpreter or WhiteboardInterpreter(),
            "hints": hint_generator or AgentsHintGenerator(),
            "session_factory": session_factory or InterviewSessionRunner.create,
        }
        logger.info(
            "Store=%s min_tokens=%d rate=%d/min abandon_after=%dmin",
            type(active_store).__name__,
            config.min_tokens_required,
            config.tokens_per_minute,
            config.abandon_after_minutes,
        )

        yield state

        logger.info("Shutting down...")

    app = FastAPI(
        title=SERVICE_NAME,
        version=__version__,
        description="Mock interview backend: token-metered interviews, feedback and question rotation",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(config.cors_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-User-Id", "X-Admin-Token"],
        max_age=3600,
    )

    app.add_exception_handler(InterviewServiceError, interview_service_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    _register_routes(app)
    return app


# =============================================================================
# Endpoints
# =============================================================================


def _register_routes(app: FastAPI) -> None:
    @app.post("/interview/start", response_model=StartInterviewResponse)
    async def start_interview(
        request: StartInterviewRequest,
        caller: CallerDep,
        state: AppStateDep,
    ) -> StartInterviewResponse:
        """Reserve tokens and create an active interview. 402 when the balance is too low."""
        result = await state["lifecycle"].start_interview(caller, request.mode)
        return StartInterviewResponse(**result.model_dump())

    @app.post("/interview/{interview_id}/save", response_model=SaveInterviewResponse)
    async def save_interview(
        interview_id: str,
        update: InterviewUpdate,
        caller: CallerDep,
        state: AppStateDep,
    ) -> SaveInterviewResponse:
        """Persist interview content. Finalizes billing first if the interview is still active."""
        result = await state["lifecycle"].save_interview(caller, interview_id, update)
        return SaveInterviewResponse(**result.model_dump())

    @app.post("/interview/{interview_id}/end", response_model=EndInterviewResponse)
    async def end_interview(
        interview_id: str,
        caller: CallerDep,
        state: AppStateDep,
    ) -> EndInterviewResponse:
        """Finalize billing. Repeated calls replay the stored result."""
        result = await state["lifecycle"].end_interview(caller, interview_id)
        return EndInterviewResponse(**result.model_dump())

    @app.post("/interview/sweep", response_model=SweepResponse)
    async def sweep_abandoned(_: AdminDep, state: AppStateDep) -> SweepResponse:
        result = await state["lifecycle"].sweep_abandoned()
        return SweepResponse(
            processed=result.processed,
            skipped=result.skipped,
            failed=result.failed,
            interview_ids=result.interview_ids,
            failed_ids=result.failed_ids,
        )

    @app.post("/interview/feedback", response_model=FeedbackResponse)
    async def generate_feedback(
        request: FeedbackRequest,
        caller: CallerDep,
        state: AppStateDep,
    ) -> FeedbackResponse:
        """Synthesize feedback for a transcript. 502 when the model fails or returns the wrong shape."""
        feedback = await state["synthesizer"].synthesize(request)
        logger.info("Feedback generated for %s (mode=%s)", caller, request.mode.value)
        return FeedbackResponse(feedback=feedback.model_dump(mode="json"))

    @app.get("/question/{difficulty}", response_model=QuestionResponse)
    async def get_question(
        difficulty: str,
        caller: CallerDep,
        state: AppStateDep,
        interview_id: Annotated[Optional[str], Query()] = None,
        language: Annotated[str, Query()] = "python",
        version: Annotated[str, Query()] = "*",
    ) -> QuestionResponse:
        """Select a question the caller has not seen recently; optionally open a problem attempt."""
        if interview_id:
            await state["lifecycle"].authorize_interview(caller, interview_id)
        question = await state["rotation"].next_question(caller, difficulty)
        attempt_id = None
        if interview_id:
            attempt = await state["lifecycle"].start_problem_attempt(
                caller, interview_id, question.id, language, version
            )
            attempt_id = attempt.id
        return QuestionResponse(
            question=question.model_dump(mode="json", by_alias=True),
            attempt_id=attempt_id,
        )

    @app.post("/code/execute", response_model=ExecuteCodeResponse)
    async def execute_code(
        request: ExecuteCodeRequest,
        caller: CallerDep,
        state: AppStateDep,
    ) -> ExecuteCodeResponse:
        """Run code. Runner failures come back as a failed run, not an error."""
        result = await state["piston"].execute(request.language, request.version, request.source)
        if request.attempt_id:
            await state["lifecycle"].record_submission(
                caller,
                request.attempt_id,
                Submission(
                    submitted_at=int(datetime.now(timezone.utc).timestamp() * 1000),
                    user_code=request.user_code if request.user_code is not None else request.source,
                    stdout=result.stdout,
                    stderr=result.stderr,
                ),
            )
        return ExecuteCodeResponse(
            stdout=result.stdout,
            stderr=result.stderr,
            passed=result.passed,
            runner_ok=result.ok,
        )

    @app.post("/whiteboard/interpret", response_model=WhiteboardResponse)
    async def interpret_whiteboard(
        request: WhiteboardRequest,
        caller: CallerDep,
        state: AppStateDep,
    ) -> WhiteboardResponse:
        """Describe a whiteboard snapshot. 413 when the image is too large."""
        try:
            interpretation = await state["interpreter"].interpret(request.image)
        except ValueError as e:
            raise RequestValidationFailed(str(e)) from e
        return WhiteboardResponse(interpretation=interpretation)

    @app.post("/users/{user_id}/subscription", response_model=SubscriptionResponse)
    async def grant_subscription(
        user_id: str,
        request: SubscriptionRequest,
        _: AdminDep,
        state: AppStateDep,
    ) -> SubscriptionResponse:
        result = await state["lifecycle"].grant_subscription(
            user_id, request.tier, reference_id=request.reference_id, amount=request.amount
        )
        return SubscriptionResponse(**result.model_dump())

    @app.get("/users/{user_id}/billing-history", response_model=BillingHistoryResponse)
    async def billing_history(
        user_id: str,
        caller: CallerDep,
        state: AppStateDep,
    ) -> BillingHistoryResponse:
        """Billing entries, oldest first. 403 unless the caller is the user."""
        entries = await state["lifecycle"].billing_history(caller, user_id)
        return BillingHistoryResponse(entries=entries)

    @app.get("/users/leaderboard", response_model=LeaderboardResponse)
    async def leaderboard(
        state: AppStateDep,
        limit: Annotated[int, Query(ge=1, le=100)] = 10,
    ) -> LeaderboardResponse:
        """Top users by XP, cached for a minute."""
        store = state["store"]

        async def _load() -> list[LeaderboardEntry]:
            async with mapped_store_errors("leaderboard"):
                users = await store.list_top_users(limit)
            return [
                LeaderboardEntry(user_id=u.id, user_name=u.user_name, xp=u.xp, level=level_for_xp(u.xp))
                for u in users
            ]

        entries = await state["cache"].get_or_load(f"{LEADERBOARD_PREFIX}{limit}", _load, LEADERBOARD_TTL_SECONDS)
        return LeaderboardResponse(users=entries)

    @app.websocket("/interview/{interview_id}/session")
    async def interview_session(
        websocket: WebSocket,
        interview_id: str,
        difficulty: Annotated[str, Query()] = "Medium",
        language: Annotated[Optional[str], Query()] = None,
    ) -> None:
        """Run the realtime interview over a websocket. Closes with 1008 if the caller may not join."""
        state = get_app_state(websocket)
        caller = (websocket.headers.get("x-user-id") or "").strip()
        if not caller:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Caller identity is required.")
            return

        lifecycle = state["lifecycle"]
        try:
            interview = await lifecycle.authorize_interview(caller, interview_id)
            async with mapped_store_errors("load user"):
                user = await state["store"].get_user(caller)
            if user is None:
                raise UserNotFound(caller)
        except InterviewServiceError as e:
            code = status.WS_1011_INTERNAL_ERROR if e.status_code >= 500 else status.WS_1008_POLICY_VIOLATION
            await websocket.close(code=code, reason=e.message)
            return
        if interview.is_finalized:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Interview has already ended.")
            return

        await websocket.accept()
        whiteboard = SnapshotWhiteboard()
        config = SessionConfig(
            resume_text=user.resume_text or "",
            candidate_name=user.full_name or user.user_name or "the candidate",
            mode=interview.mode,
            preselected_language=language,
            difficulty=difficulty,
        )
        runner = state["session_factory"](
            interview_id,
            caller,
            config,
            lifecycle=lifecycle,
            rotation=state["rotation"],
            piston=state["piston"],
            synthesizer=state["synthesizer"],
            interpreter=state["interpreter"],
            whiteboard=whiteboard,
            hints=state["hints"],
        )
        logger.info("Realtime session opened for interview %s (mode=%s)", interview_id, interview.mode.value)
        await SessionBridge(runner, websocket, whiteboard).run()

    @app.get("/health", response_model=HealthResponse)
    async def health(state: AppStateDep) -> HealthResponse:
        return HealthResponse(
            status="healthy",
            service=SERVICE_NAME,
            version=__version__,
            timestamp=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            store=type(state["store"]).__name__,
        )


app = create_app()


if __name__ == "__main__":
    config = load_service_config()
    logger.info("%s v%s", SERVICE_NAME, __version__)
    logger.info("=" * 60)
    logger.info("Binding to: http://%s:%d", config.host, config.port)
    logger.info("Store: %s", config.data_dir or "in-memory")
    logger.info("Question pool: %s", config.question_pool_path)
    logger.info("=" * 60)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level="info",
    )
