"""FastAPI application wiring for the generation task pipeline.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Route/path operation: a function exposed over HTTP (for example, GET /health).
- response_model: Pydantic model used to validate/shape API responses.
- app.state: a place to store shared runtime objects (stores, worker, services).
- Lifespan: code that runs once when the server starts and once when it stops.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from .app.coordination import CoordinationStore, TaskRegistry, build_coordination_store
from .app.correlation import configure_logging, correlation_id_middleware
from .app.dispatcher import TaskDispatcher, ThreadPoolDispatcher
from .app.errors import (
    ConversationNotFoundError,
    CoordinationUnavailableError,
    MessageStoreError,
    SubmissionInProgressError,
)
from .app.llm import TextGenerator, build_generator_from_settings
from .app.messages import MessageStore, build_message_store
from .app.models import (
    CreateConversationRequest,
    CreateConversationResponse,
    MessageRecord,
    PollResult,
    SendMessageRequest,
    SubmitResult,
)
from .app.polling import PollService
from .app.prompts import PromptBuilder
from .app.settings import Settings, get_settings
from .app.submission import SubmissionService
from .app.worker import GenerationWorker

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    coordination: CoordinationStore | None,
    message_store: MessageStore | None,
    generator: TextGenerator | None,
    dispatcher: TaskDispatcher | None,
) -> None:
    """Build every collaborator that was not injected and store it on app.state."""
    if hasattr(app.state, "submission"):
        return

    # Fail fast if required configuration is missing.
    generator = generator or build_generator_from_settings(settings)
    if generator is None:
        raise RuntimeError(
            "No generation provider is configured. Set GENERATION_OPENAI_API_KEY "
            "(or OPENAI_API_KEY) and GENERATION_LLM_PROVIDER=openai."
        )
    if message_store is None:
        message_store = build_message_store(
            settings.message_store_backend,
            database_url=settings.resolved_database_url(),
        )
        # Ensure schema exists before serving requests.
        message_store.migrate()
    if coordination is None:
        coordination = build_coordination_store(
            settings.coordination_backend,
            redis_url=settings.redis_url,
            socket_timeout_s=settings.redis_socket_timeout_s,
        )
    dispatcher = dispatcher or ThreadPoolDispatcher(max_workers=settings.worker_max_workers)

    registry = TaskRegistry(
        coordination, ttl_s=settings.task_ttl_s, guard_ttl_s=settings.submit_guard_ttl_s
    )
    worker = GenerationWorker(
        registry=registry,
        message_store=message_store,
        generator=generator,
        max_tokens=settings.llm_max_tokens,
        timeout_s=settings.llm_timeout_s,
        max_content_chars=settings.max_content_chars,
        persist_max_retries=settings.persist_max_retries,
        persist_backoff_s=settings.persist_backoff_s,
    )
    prompt_builder = PromptBuilder(
        message_store=message_store,
        system_prompt=settings.system_prompt,
        history_limit=settings.history_limit,
    )

    # Shared objects live in app.state so route handlers can reuse them.
    app.state.settings = settings
    app.state.coordination = coordination
    app.state.message_store = message_store
    app.state.dispatcher = dispatcher
    app.state.registry = registry
    app.state.worker = worker
    app.state.poller = PollService(
        registry=registry,
        message_store=message_store,
        wait_s=settings.poll_wait_s,
        interval_s=settings.poll_interval_s,
        fallback_lookback=settings.fallback_lookback,
    )
    app.state.submission = SubmissionService(
        registry=registry,
        message_store=message_store,
        dispatcher=dispatcher,
        worker=worker,
        prompt_builder=prompt_builder,
        guard_wait_s=settings.submit_guard_wait_s,
        guard_poll_interval_s=settings.poll_interval_s,
    )
    logger.info(
        "app event=runtime_ready coordination=%s message_store=%s poll_wait_s=%s task_ttl_s=%s",
        type(coordination).__name__,
        type(message_store).__name__,
        settings.poll_wait_s,
        settings.task_ttl_s,
    )


def create_app(
    *,
    settings_override: Settings | None = None,
    coordination: CoordinationStore | None = None,
    message_store: MessageStore | None = None,
    generator: TextGenerator | None = None,
    dispatcher: TaskDispatcher | None = None,
) -> FastAPI:
    """Application factory.

    Collaborators that are passed in are used as-is (tests inject in-memory
    stores and fake generators); the rest are built from settings when the
    server starts.
    """
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)
    overrides: dict[str, Any] = {
        "coordination": coordination,
        "message_store": message_store,
        "generator": generator,
        "dispatcher": dispatcher,
    }

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(app, settings=settings, **overrides)
        yield
        app.state.dispatcher.shutdown(wait=False)

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.middleware("http")(correlation_id_middleware)

    # Keep test paths reliable when lifespan is not executed by the client.
    if message_store is not None:
        _ensure_runtime_state(app, settings=settings, **overrides)

    def _state(request: Request) -> Any:
        if not hasattr(request.app.state, "submission"):
            _ensure_runtime_state(request.app, settings=settings, **overrides)
        return request.app.state

    # Multiple health endpoints map to the same function for compatibility with
    # different probes/load balancers.
    @app.get("/health")
    @app.get("/healthz")
    @app.get("/live")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/ready")
    def ready(request: Request) -> JSONResponse:
        state = _state(request)
        components = {
            "coordination": "up" if state.coordination.ping() else "down",
            "messages": "up" if state.message_store.ping() else "down",
        }
        healthy = all(value == "up" for value in components.values())
        return JSONResponse(
            status_code=200 if healthy else 503,
            content={"status": "ok" if healthy else "degraded", "components": components},
        )

    @app.post("/conversations", status_code=201, response_model=CreateConversationResponse)
    def create_conversation(
        payload: CreateConversationRequest, request: Request
    ) -> CreateConversationResponse:
        try:
            conversation_id = _state(request).message_store.create_conversation(payload.title)
        except MessageStoreError as exc:
            raise HTTPException(
                status_code=503, detail={"error": "message_store_unavailable"}
            ) from exc
        return CreateConversationResponse(conversation_id=conversation_id)

    # Request body is validated against SendMessageRequest (non-empty content).
    @app.post(
        "/conversations/{conversation_id}/messages",
        status_code=202,
        response_model=SubmitResult,
    )
    def send_message(
        conversation_id: str, payload: SendMessageRequest, request: Request
    ) -> SubmitResult:
        submission: SubmissionService = _state(request).submission
        try:
            return submission.submit(conversation_id, payload.content)
        except ConversationNotFoundError as exc:
            raise HTTPException(status_code=404, detail="Conversation not found") from exc
        except SubmissionInProgressError as exc:
            raise HTTPException(
                status_code=409, detail={"error": "submission_in_progress", "retry": True}
            ) from exc
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except MessageStoreError as exc:
            logger.error(
                "submit event=rejected conversation_id=%s reason=message_store error=%s",
                conversation_id,
                exc,
            )
            raise HTTPException(
                status_code=503, detail={"error": "message_store_unavailable"}
            ) from exc
        except CoordinationUnavailableError as exc:
            logger.error(
                "submit event=rejected conversation_id=%s reason=coordination error=%s",
                conversation_id,
                exc,
            )
            raise HTTPException(
                status_code=503, detail={"error": "coordination_unavailable", "retry": True}
            ) from exc
        except RuntimeError as exc:
            # Dispatcher refused the work (for example during shutdown).
            logger.error(
                "submit event=rejected conversation_id=%s reason=dispatch error=%s",
                conversation_id,
                exc,
            )
            raise HTTPException(
                status_code=503, detail={"error": "dispatcher_unavailable", "retry": True}
            ) from exc

    # May hold the request for up to poll_wait_s while a task is in progress.
    @app.get(
        "/conversations/{conversation_id}/poll",
        response_model=PollResult,
        response_model_exclude_none=True,
    )
    def poll(conversation_id: str, request: Request) -> PollResult:
        state = _state(request)
        _require_conversation(state.message_store, conversation_id)
        return state.poller.poll(conversation_id)

    @app.get("/conversations/{conversation_id}/messages", response_model=list[MessageRecord])
    def list_messages(
        conversation_id: str,
        request: Request,
        limit: int = Query(default=50, ge=1, le=500),
    ) -> list[MessageRecord]:
        message_store = _state(request).message_store
        _require_conversation(message_store, conversation_id)
        try:
            return message_store.recent_messages(conversation_id, limit)
        except MessageStoreError as exc:
            raise HTTPException(
                status_code=503, detail={"error": "message_store_unavailable"}
            ) from exc

    return app


def _require_conversation(message_store: MessageStore, conversation_id: str) -> None:
    """404 for unknown conversations; a store outage defers to the caller's fallback."""
    try:
        exists = message_store.conversation_exists(conversation_id)
    except MessageStoreError:
        return
    if not exists:
        raise HTTPException(status_code=404, detail="Conversation not found")


# Module-level app for `uvicorn generation_api.main:app`.
app = create_app()
