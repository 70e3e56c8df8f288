"""FastAPI application entry point.

Exposes the HTTP surface of the service:
- POST /api/chat: Submit a change request for a repository
- GET /api/status/{job_id}: Poll a job's state and progress
- POST /webhook/github: Receive signed GitHub deliveries
- GET /api/me, POST /api/auth/refresh: Session-authenticated endpoints
- GET /health, /ready, /metrics: Operational probes

Run locally with ``python -m src.autopr.main``.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from src.autopr.auth.dependencies import (
    AuthenticationError,
    UserContext,
    authenticate_user,
    extract_bearer_token,
    optional_authentication,
)
from src.autopr.auth.tokens import TokenError
from src.autopr.config import AutoPRSettings, get_settings
from src.autopr.context import ServiceContext
from src.autopr.events.metrics import generate_metrics_output
from src.autopr.jobs.errors import QueueError
from src.autopr.jobs.models import DirectSubmission, Job
from src.autopr.logging_config import configure_logging
from src.autopr.webhook.models import Ack, EnqueueRequest, Rejection

logger = structlog.get_logger()


class ChatRequest(BaseModel):
    """Body of POST /api/chat."""

    model_config = ConfigDict(populate_by_name=True)

    repo_url: str = Field(..., alias="repoUrl")

    task: str


def _redact_secret(value: Optional[str], visible_chars: int = 4) -> str:
    """Redact a secret, showing only its first few characters."""
    if not value:
        return "<unset>"
    if len(value) <= visible_chars:
        return "*" * len(value)
    return value[:visible_chars] + "*" * (len(value) - visible_chars)


def _log_configuration(settings: AutoPRSettings) -> None:
    """Log configuration values with secrets redacted."""
    logger.info(
        "Service configuration",
        github_base_url=settings.github_base_url,
        github_token=_redact_secret(settings.github_token),
        github_webhook_secret=_redact_secret(settings.github_webhook_secret),
        session_secret=_redact_secret(settings.session_secret),
        session_expire_days=settings.session_expire_days,
        require_authentication=settings.require_authentication,
        queue_backend=settings.queue_backend,
        database_url=_redact_secret(settings.database_url, visible_chars=13),
        worker_concurrency=settings.worker_concurrency,
        run_embedded_workers=settings.run_embedded_workers,
        sandbox_base_path=settings.sandbox_base_path,
        sandbox_retention_days=settings.sandbox_retention_days,
        command_timeout_seconds=settings.command_timeout_seconds,
        llm_url=settings.llm_url,
        llm_model=settings.llm_model,
        llm_api_key=_redact_secret(settings.llm_api_key),
        host=settings.host,
        port=settings.port,
        frontend_url=settings.frontend_url,
    )


def _error_body(error: str, message: str, code: str) -> Dict[str, str]:
    return {"error": error, "message": message, "code": code}


def _describe_validation_errors(errors: List[Dict[str, Any]]) -> str:
    parts = []
    for error in errors:
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"


def _status_url(job: Job) -> str:
    return f"/api/status/{job.id}"


def _get_context(request: Request) -> ServiceContext:
    return request.app.state.context


def create_app(
    context: Optional[ServiceContext] = None,
    settings: Optional[AutoPRSettings] = None,
) -> FastAPI:
    """Build the application around a ServiceContext.

    Args:
        context: Pre-built collaborators (tests). Built from ``settings``
            when omitted.
        settings: Configuration; loaded from the environment when omitted.
    """
    if context is None:
        context = ServiceContext(settings or get_settings())
    service = context

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(service.settings.log_level, service.settings.log_format)
        logger.info("AutoPR service starting up")
        _log_configuration(service.settings)

        await service.start()
        logger.info("AutoPR service started")

        yield

        logger.info("AutoPR service shutting down")
        await service.close()
        logger.info("AutoPR service shutdown complete")

    app = FastAPI(
        title="AutoPR",
        description="Turns change requests into pull requests",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.context = service

    if service.settings.frontend_url:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[service.settings.frontend_url],
            allow_credentials=True,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.monotonic()
        response = await call_next(request)
        logger.info(
            "Request handled",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
        )
        return response

    _register_exception_handlers(app)
    _register_routes(app)
    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content=_error_body(
                "Bad Request",
                _describe_validation_errors(list(exc.errors())),
                "VALIDATION_ERROR",
            ),
        )

    @app.exception_handler(ValidationError)
    async def model_validation_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=400,
            content=_error_body(
                "Bad Request",
                _describe_validation_errors(exc.errors()),
                "VALIDATION_ERROR",
            ),
        )

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError):
        return JSONResponse(status_code=401, content=exc.to_response())

    @app.exception_handler(QueueError)
    async def queue_error_handler(request: Request, exc: QueueError):
        logger.error("Queue operation failed", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "Internal Server Error", "Failed to process job", "QUEUE_ERROR"
            ),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error", path=request.url.path)
        return JSONResponse(
            status_code=500,
            content=_error_body(
                "Internal Server Error",
                "An unexpected error occurred",
                "INTERNAL_ERROR",
            ),
        )


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health():
        """Liveness probe."""
        return {"status": "healthy"}

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness probe: the queue backend must be reachable."""
        context = _get_context(request)
        try:
            store_ok = await context.queue.ping()
        except Exception as e:
            logger.warning("Readiness check failed", error=str(e))
            store_ok = False

        body = {
            "status": "ready" if store_ok and context.started else "not_ready",
            "dependencies": {
                "queue": "healthy" if store_ok else "unavailable",
                "workers": "running" if context.worker_pool.running else "stopped",
            },
        }
        return JSONResponse(status_code=200 if body["status"] == "ready" else 503, content=body)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics in text exposition format."""
        return Response(generate_metrics_output(), media_type=CONTENT_TYPE_LATEST)

    @app.post("/api/chat", status_code=202)
    async def submit_chat(
        body: ChatRequest,
        request: Request,
        user: Optional[UserContext] = Depends(optional_authentication),
    ):
        """Enqueue a direct change request."""
        submission = DirectSubmission(repo_url=body.repo_url, task=body.task)
        job = await _get_context(request).queue.enqueue(submission)
        logger.info(
            "Direct submission accepted",
            job_id=job.id,
            repo_url=submission.repo_url,
            user_id=user.user_id if user else None,
        )
        return {
            "message": "Job enqueued",
            "jobId": job.id,
            "statusUrl": _status_url(job),
        }

    @app.get("/api/status/{job_id}")
    async def job_status(job_id: str, request: Request):
        """Report a job's state, progress and outcome."""
        job = await _get_context(request).queue.get(job_id)
        if job is None:
            return JSONResponse(
                status_code=404,
                content=_error_body("Not Found", f"Job {job_id} not found", "JOB_NOT_FOUND"),
            )
        return job.to_status_response()

    @app.post("/webhook/github")
    async def github_webhook(request: Request):
        """Receive a GitHub delivery; the signature covers the raw body."""
        raw_body = await request.body()
        context = _get_context(request)
        source_ip = request.client.host if request.client else None

        outcome = context.ingestor.ingest(raw_body, request.headers, source_ip=source_ip)

        if isinstance(outcome, Rejection):
            return JSONResponse(
                status_code=outcome.status_code,
                content=_error_body(outcome.error, outcome.message, outcome.code),
            )
        if isinstance(outcome, Ack):
            return {"event": outcome.event.value, "message": outcome.message}

        assert isinstance(outcome, EnqueueRequest)
        job = await context.queue.enqueue(outcome.job_input)
        return {
            "event": outcome.event.value,
            "message": "Job enqueued",
            "jobId": job.id,
            "statusUrl": _status_url(job),
        }

    @app.get("/api/me")
    async def current_user(user: UserContext = Depends(authenticate_user)):
        """Profile of the authenticated user, without the access token."""
        return {"user": user.public_view()}

    @app.post("/api/auth/refresh")
    async def refresh_token(
        request: Request,
        user: UserContext = Depends(authenticate_user),
    ):
        """Issue a fresh token for the caller's session."""
        token = extract_bearer_token(request.headers.get("authorization"))
        try:
            refreshed = _get_context(request).tokens.refresh_session_token(token)
        except TokenError as e:
            raise AuthenticationError("INVALID_TOKEN", "Invalid session token") from e
        return {"token": refreshed, "sessionId": user.session_id}


if __name__ == "__main__":
    import uvicorn

    dev_settings = get_settings()
    uvicorn.run(
        "src.autopr.main:create_app",
        factory=True,
        host=dev_settings.host,
        port=dev_settings.port,
    )
