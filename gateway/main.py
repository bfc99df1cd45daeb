import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import Annotated, Optional

from fastapi import FastAPI, Response, Request, Depends, HTTPException, status, Query
from fastapi.responses import PlainTextResponse
from sqlalchemy.orm import Session

from gateway.background import BackgroundWorker
from gateway.config import Settings, get_settings
from gateway.context_store import ContextStore, purge_periodically
from gateway.dispatcher import LoginStateStore, WebhookDispatcher, WebhookReply
from gateway.llm_client import ChatModelClient
from gateway.logging_utils import setup_logging, RequestLoggingMiddleware, log_webhook_data
from gateway.metrics import record_webhook_outcome, get_metrics, get_metrics_content_type
from gateway.orchestrator import ChatArchive, ConversationOrchestrator
from gateway.schemas import (
    OperatorChatRequest,
    OperatorChatResponse,
    ChatRecordResponse,
    ChatRecordsListResponse,
    ErrorResponse,
    HealthResponse,
)
from gateway.storage import (
    SqlChatArchive,
    SqlLoginStateStore,
    check_db_health,
    create_db_engine,
    create_session_factory,
    get_chat_records,
    get_db,
    init_db,
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    model_client: Optional[ChatModelClient] = None,
    context_store: Optional[ContextStore] = None,
    archive: Optional[ChatArchive] = None,
    login_store: Optional[LoginStateStore] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Collaborators default to the production implementations configured
    from settings; tests pass fakes.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    worker = BackgroundWorker(
        max_queue_size=settings.BACKGROUND_QUEUE_SIZE,
        workers=settings.BACKGROUND_WORKERS,
    )
    engine = create_db_engine(settings.DATABASE_URL)
    session_factory = create_session_factory(engine)

    if context_store is None:
        context_store = ContextStore(
            ttl_seconds=settings.CONTEXT_TTL_SECONDS,
            max_chars=settings.CONTEXT_MAX_CHARS,
        )
    if model_client is None:
        model_client = ChatModelClient(
            endpoint=settings.OPENAI_ENDPOINT,
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            timeout=settings.OPENAI_TIMEOUT_SECONDS,
        )
    orchestrator = ConversationOrchestrator(
        context_store=context_store,
        model_client=model_client,
        archive=archive if archive is not None else SqlChatArchive(session_factory),
        worker=worker,
        timeout=settings.OPENAI_TIMEOUT_SECONDS,
    )
    dispatcher = WebhookDispatcher(
        token=settings.WECHAT_TOKEN,
        account_id=settings.WECHAT_ORIGINAL_ID,
        orchestrator=orchestrator,
        login_store=login_store if login_store is not None else SqlLoginStateStore(session_factory),
        worker=worker,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: create archive tables, start the background worker and
          the context purge loop
        - Shutdown: stop the purge loop, drain the worker, release the engine
        """
        init_db(engine)
        worker.start()
        purge_task = asyncio.create_task(
            purge_periodically(context_store, settings.CONTEXT_PURGE_INTERVAL_SECONDS)
        )
        yield
        purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await purge_task
        await worker.stop()
        engine.dispose()

    app = FastAPI(
        title="Conversational Gateway",
        description="Bridges messaging-platform webhooks to a chat-completion model",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.context_store = context_store
    app.state.orchestrator = orchestrator
    app.state.dispatcher = dispatcher
    app.state.worker = worker

    app.add_middleware(RequestLoggingMiddleware)
    register_routes(app)
    return app


def _webhook_response(request: Request, reply: WebhookReply) -> Response:
    record_webhook_outcome(reply.result)
    log_webhook_data(
        request=request,
        result=reply.result,
        user_id=reply.user_id,
        msg_type=reply.msg_type,
        event=reply.event,
    )
    return Response(content=reply.body, status_code=reply.status_code, media_type=reply.media_type)


def register_routes(app: FastAPI) -> None:

    # =========================================================================
    # Health Check Routes
    # =========================================================================

    @app.get("/health/live", response_model=HealthResponse)
    async def health_live() -> HealthResponse:
        """
        Liveness probe - always returns 200 once the app is running.
        """
        return HealthResponse(status="ok")

    @app.get("/health/ready", response_model=HealthResponse)
    async def health_ready(request: Request, response: Response) -> HealthResponse:
        """
        Readiness probe - returns 200 only if:
        1. WECHAT_TOKEN and OPENAI_API_KEY are set (non-empty)
        2. The archive DB is reachable and its schema is applied

        Otherwise returns 503 (Service Unavailable).
        """
        settings: Settings = request.app.state.settings

        if not settings.WECHAT_TOKEN:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="WECHAT_TOKEN not configured")

        if not settings.OPENAI_API_KEY:
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(status="not_ready", reason="OPENAI_API_KEY not configured")

        if not check_db_health(request.app.state.engine):
            response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
            return HealthResponse(
                status="not_ready",
                reason="Database not reachable or schema not applied"
            )

        return HealthResponse(status="ready")

    # =========================================================================
    # Webhook Routes
    # =========================================================================

    @app.get("/webhook", response_class=PlainTextResponse)
    async def webhook_challenge(
        request: Request,
        signature: Optional[str] = None,
        timestamp: Optional[str] = None,
        nonce: Optional[str] = None,
        echostr: Optional[str] = None,
    ) -> Response:
        """
        Platform server verification.

        Returns echostr verbatim when the signature over (token, timestamp,
        nonce) matches; 400 on missing parameters, 403 on a bad signature.
        """
        dispatcher: WebhookDispatcher = request.app.state.dispatcher
        reply = dispatcher.handle_challenge(signature, timestamp, nonce, echostr)
        return _webhook_response(request, reply)

    @app.post(
        "/webhook",
        responses={
            403: {"description": "Invalid signature"},
            500: {"description": "Malformed delivery"},
        },
    )
    async def webhook_delivery(
        request: Request,
        signature: Optional[str] = None,
        timestamp: Optional[str] = None,
        nonce: Optional[str] = None,
        openid: Optional[str] = None,
    ) -> Response:
        """
        Receive one platform delivery (XML body) and reply with an XML text
        envelope, or the bare string "success" for unsubscribe events.

        Processing failures after verification still return 200 with an
        apologetic text so the platform does not retry the delivery.
        """
        raw_body = await request.body()
        logger.debug(f"Request body size: {len(raw_body)} bytes")

        dispatcher: WebhookDispatcher = request.app.state.dispatcher
        reply = await dispatcher.handle_delivery(signature, timestamp, nonce, openid, raw_body)
        return _webhook_response(request, reply)

    # =========================================================================
    # Direct Model Routes
    # =========================================================================

    @app.post(
        "/api/ask",
        response_class=PlainTextResponse,
        responses={400: {"model": ErrorResponse, "description": "Empty question"}},
    )
    async def ask(request: Request) -> PlainTextResponse:
        """
        Ask the model a single question with no conversation context.

        Body: the question as plain text. Response: the answer as plain text.
        """
        question = (await request.body()).decode("utf-8", errors="replace").strip()
        if not question:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="question must not be empty")

        orchestrator: ConversationOrchestrator = request.app.state.orchestrator
        outcome = await orchestrator.ask(question)
        logger.info(f"POST /api/ask: {outcome.kind.value}")
        return PlainTextResponse(outcome.text)

    @app.post("/api/test/chat", response_model=OperatorChatResponse)
    async def operator_chat(request: Request, body: OperatorChatRequest) -> OperatorChatResponse:
        """
        Run a full conversational exchange (context and archive included)
        without the platform envelope. Used for operator smoke tests.
        """
        orchestrator: ConversationOrchestrator = request.app.state.orchestrator
        outcome = await orchestrator.answer(body.user_id, body.message)
        logger.info(f"POST /api/test/chat: user={body.user_id}, outcome={outcome.kind.value}")
        return OperatorChatResponse(answer=outcome.text, outcome=outcome.kind.value)

    # =========================================================================
    # Archive Routes
    # =========================================================================

    @app.get("/chat-records", response_model=ChatRecordsListResponse)
    async def list_chat_records(
        limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of records to return")] = 50,
        offset: Annotated[int, Query(ge=0, description="Number of records to skip")] = 0,
        user_id: Annotated[Optional[str], Query(description="Filter by user (exact match)")] = None,
        db: Session = Depends(get_db),
    ) -> ChatRecordsListResponse:
        """
        List archived exchanges, newest first, with pagination.
        """
        records, total = get_chat_records(db=db, limit=limit, offset=offset, user_id=user_id)
        return ChatRecordsListResponse(
            data=[ChatRecordResponse.model_validate(record) for record in records],
            total=total,
            limit=limit,
            offset=offset,
        )

    # =========================================================================
    # Metrics Route
    # =========================================================================

    @app.get("/metrics")
    async def metrics() -> Response:
        """
        Expose Prometheus-style metrics.
        """
        return Response(
            content=get_metrics(),
            media_type=get_metrics_content_type()
        )


app = create_app()
