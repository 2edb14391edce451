"""FastAPI application wiring for the task governance service.

Beginner terms used in this file:
- FastAPI app: the main web application object.
- Lifespan: startup/shutdown hook; used here to build storage lazily so that
  importing this module never opens a database connection.
- app.state: a place to store shared runtime objects (storage, orchestrator).
- Exception handler: one function that turns engine errors into JSON responses.
"""

from __future__ import annotations

import hmac
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse

from governance_api.app.errors import (
    AdminOverrideRequiredError,
    GenerationError,
    GovernanceError,
    RateLimitError,
    TaskNotFoundError,
)
from governance_api.app.invoker import ExecutionInvoker, RetryPolicy
from governance_api.app.llm import Generator, build_generator
from governance_api.app.models import (
    ApprovalRequest,
    ApprovalResult,
    AuditTrailResponse,
    CreateTaskRequest,
    TaskCreationResult,
    TaskDetail,
    TaskListResponse,
)
from governance_api.app.orchestrator import DEFAULT_LIST_LIMIT, TaskOrchestrator
from governance_api.app.redaction import configure_logging, redact
from governance_api.app.storage.base import GovernanceStorage
from governance_api.app.storage.memory import InMemoryGovernanceStorage
from governance_api.app.storage.postgres import PostgresGovernanceStorage
from governance_api.config.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def _build_storage(settings: Settings) -> GovernanceStorage:
    if settings.storage_backend == "memory":
        return InMemoryGovernanceStorage()
    database_url = settings.resolved_database_url()
    if not database_url:
        raise RuntimeError(
            "Missing database URL. Set GOVERNANCE_DATABASE_URL "
            "or DATABASE_URL before starting the app."
        )
    return PostgresGovernanceStorage(database_url)


def _build_generator(settings: Settings) -> Generator:
    return build_generator(
        provider=settings.llm_provider,
        openai_api_key=settings.resolved_openai_api_key(),
        anthropic_api_key=settings.resolved_anthropic_api_key(),
        openai_base_url=settings.openai_base_url,
        anthropic_base_url=settings.anthropic_base_url,
        timeout_s=settings.generation_timeout_s,
    )


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: GovernanceStorage | None,
    generator_override: Generator | None,
) -> None:
    if not hasattr(app.state, "storage"):
        app.state.storage = storage_override or _build_storage(settings)
        app.state.storage.migrate()

    if not hasattr(app.state, "settings"):
        app.state.settings = settings

    if not hasattr(app.state, "orchestrator"):
        invoker = ExecutionInvoker(
            storage=app.state.storage,
            generator=generator_override or _build_generator(settings),
            tier_models=settings.tier_models,
            retry_policy=RetryPolicy(
                max_attempts=settings.generation_max_attempts,
                base_delay_s=settings.generation_backoff_s,
                max_delay_s=settings.generation_max_backoff_s,
            ),
        )
        app.state.orchestrator = TaskOrchestrator(
            storage=app.state.storage,
            invoker=invoker,
            silent_execution_enabled=settings.silent_execution_enabled,
            max_prompt_chars=settings.max_prompt_chars,
        )


def create_app(
    *,
    storage: GovernanceStorage | None = None,
    generator: Generator | None = None,
    settings_override: Settings | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            generator_override=generator,
        )
        yield

    app_lifespan = lifespan if storage is None else None
    app = FastAPI(title=settings.app_name, lifespan=app_lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            generator_override=generator,
        )

    def _get_orchestrator(request: Request) -> TaskOrchestrator:
        if not hasattr(request.app.state, "orchestrator"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                generator_override=generator,
            )
        return request.app.state.orchestrator

    @app.exception_handler(GovernanceError)
    async def governance_error_handler(request: Request, exc: GovernanceError) -> JSONResponse:
        message = redact(exc.message)
        if isinstance(exc, GenerationError) and exc.retryable:
            message = f"{message} Please retry shortly."
        payload: dict[str, object] = {
            "success": False,
            "error": message,
            "error_code": exc.error_code,
        }
        if isinstance(exc, RateLimitError) and exc.retry_after is not None:
            payload["retry_after"] = exc.retry_after
        logger.warning(
            "api_error method=%s path=%s status=%d error_code=%s reason=%s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.error_code,
            message,
        )
        return JSONResponse(status_code=exc.status_code, content=payload)

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks", response_model=TaskCreationResult, response_model_exclude_none=True)
    def create_task(
        payload: CreateTaskRequest,
        request: Request,
        x_user_id: str = Header(...),
    ) -> TaskCreationResult:
        return _get_orchestrator(request).create_task(
            x_user_id,
            payload.prompt,
            context=payload.context,
            preferred_tier=payload.preferred_tier,
        )

    @app.get("/tasks", response_model=TaskListResponse)
    def list_tasks(
        request: Request,
        x_user_id: str = Header(...),
        limit: int = DEFAULT_LIST_LIMIT,
        status: str | None = None,
    ) -> TaskListResponse:
        statuses = status.split(",") if status else None
        tasks = _get_orchestrator(request).list_tasks(x_user_id, limit=limit, statuses=statuses)
        return TaskListResponse(tasks=tasks)

    @app.get("/tasks/{task_id}", response_model=TaskDetail)
    def get_task(task_id: str, request: Request) -> TaskDetail:
        task = _get_orchestrator(request).get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    @app.post(
        "/tasks/{task_id}/approval",
        response_model=ApprovalResult,
        response_model_exclude_none=True,
    )
    def approve_task(
        task_id: str,
        payload: ApprovalRequest,
        request: Request,
        x_user_id: str | None = Header(default=None),
    ) -> ApprovalResult:
        return _get_orchestrator(request).approve_task(
            task_id, payload.action, payload.target, user_id=x_user_id
        )

    @app.post(
        "/tasks/{task_id}/admin-override",
        response_model=ApprovalResult,
        response_model_exclude_none=True,
    )
    def admin_override(
        task_id: str,
        payload: ApprovalRequest,
        request: Request,
        x_admin_token: str = Header(default=""),
        x_user_id: str | None = Header(default=None),
    ) -> ApprovalResult:
        expected = settings.admin_override_token
        if not expected or not hmac.compare_digest(
            x_admin_token.encode("utf-8"), expected.encode("utf-8")
        ):
            raise AdminOverrideRequiredError("Admin credentials are required for this action")
        return _get_orchestrator(request).override_locked_task(
            task_id, payload.action, admin_user_id=x_user_id, target=payload.target
        )

    @app.get("/tasks/{task_id}/audit", response_model=AuditTrailResponse)
    def audit_trail(task_id: str, request: Request) -> AuditTrailResponse:
        entries = _get_orchestrator(request).get_audit_trail(task_id)
        return AuditTrailResponse(task_id=task_id, entries=entries)

    return app


# Module-level app for `uvicorn governance_api.main:app`.
app = create_app()
