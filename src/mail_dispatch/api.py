# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory and HTTP schemas for the mail dispatch service.

This module provides the REST interface of the dispatcher:

- Pydantic models defining request/response schemas for all endpoints
- A factory function to create and configure the FastAPI application
- Authentication via API token in the ``X-API-Token`` header
- Caller identity via the ``X-User-Id`` header on user-scoped endpoints

Endpoints cover queue submission (single, bulk, direct), job lookup and
cancellation, queue statistics, provider status, manual maintenance commands
and Prometheus metrics.

Example:
    Creating and running the API application::

        from mail_dispatch.core import MailDispatchCore
        from mail_dispatch.api import create_app

        core = MailDispatchCore(registry=registry)
        app = create_app(core, api_token="secret-token")

        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from typing import Optional, Dict, Any, List, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Header, status, Request
from fastapi.responses import Response, JSONResponse
from fastapi.security import APIKeyHeader
from fastapi.exceptions import RequestValidationError
from pydantic import BaseModel, Field

from .core import MailDispatchCore
from .logger import get_logger
from .models import AUTO_PROVIDER, BulkOptions, EmailPayload, EnqueueOptions

logger = get_logger("MailDispatchAPI")

API_TOKEN_HEADER_NAME = "X-API-Token"
USER_ID_HEADER_NAME = "X-User-Id"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


async def current_user(user_id: int = Header(alias=USER_ID_HEADER_NAME)) -> int:
    """Identity of the caller, taken from the ``X-User-Id`` header."""
    return user_id


def require_service(request: Request) -> MailDispatchCore:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(500, "Service not initialized")
    return service


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class SendEmailRequest(BaseModel):
    """Body of ``POST /emails``."""
    email: EmailPayload
    options: Optional[EnqueueOptions] = None


class SendEmailResponse(CommandStatus):
    id: str


class BulkEmailRequest(BaseModel):
    """Body of ``POST /emails/bulk``; every message belongs to the caller."""
    emails: List[EmailPayload] = Field(min_length=1)
    options: Optional[BulkOptions] = None


class BulkEmailResponse(CommandStatus):
    ids: List[str]
    queued: int
    skipped: int


class DirectEmailRequest(BaseModel):
    """Body of ``POST /emails/direct``."""
    email: EmailPayload
    provider_id: str = AUTO_PROVIDER


class SendErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool


class SendResultInfo(BaseModel):
    success: bool
    provider_id: str
    message_id: Optional[str] = None
    timestamp: Optional[str] = None
    latency: float = 0.0
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[SendErrorInfo] = None


class DirectEmailResponse(CommandStatus):
    result: SendResultInfo


class JobRecord(BaseModel):
    """Snapshot of a queued send job."""
    id: str
    user_id: int
    status: str
    priority: str
    scheduled_at: Optional[str] = None
    sent_at: Optional[str] = None
    retry_count: int
    max_retries: int
    provider_id: str
    sent_via: Optional[str] = None
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    subject: str
    to: List[str]


class JobResponse(CommandStatus, JobRecord):
    pass


class JobsResponse(CommandStatus):
    jobs: List[JobRecord]


class CancelResponse(CommandStatus):
    id: str
    status: str


class QueueStatisticsResponse(CommandStatus):
    pending: int
    processing: int
    sent: int
    failed: int
    cancelled: int
    total_today: int
    average_processing_time: float
    success_rate: float


class ProvidersResponse(CommandStatus):
    providers: List[Dict[str, Any]]


class HealthCheckResponse(CommandStatus):
    results: List[Dict[str, Any]]


class RunNowResponse(CommandStatus):
    processed: int = 0


def create_app(
    svc: MailDispatchCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`mail_dispatch.core.MailDispatchCore` that
        implements the business logic for each command.
    api_token:
        Optional secret used to protect every endpoint except ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn.
    """
    api = FastAPI(title="Mail Dispatch Service", lifespan=lifespan)
    api.state.service = svc
    api.state.api_token = api_token
    router = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    emails = APIRouter(prefix="/emails", tags=["emails"], dependencies=[auth_dependency])

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Log validation errors with full details."""
        logger.error("Validation error on %s %s: %s", request.method, request.url.path, exc.errors())
        return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", dependencies=[auth_dependency])
    async def status_view(svc: MailDispatchCore = Depends(require_service)):
        """Scheduler state and queue depth."""
        return {"ok": True, "active": svc.active, "pending": svc.queue.count_pending()}

    # ------------------------------------------------------------------ emails
    @emails.post("", response_model=SendEmailResponse, response_model_exclude_none=True)
    async def send_email(
        body: SendEmailRequest,
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Queue one email for delivery."""
        job_id = await svc.send_email(body.email, user_id, body.options)
        return SendEmailResponse(ok=True, id=job_id)

    @emails.post("/bulk", response_model=BulkEmailResponse, response_model_exclude_none=True)
    async def send_bulk(
        body: BulkEmailRequest,
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Queue many emails in batches, optionally skipping duplicates."""
        items = [{"payload": email, "user_id": user_id} for email in body.emails]
        ids = await svc.send_bulk_emails(items, body.options)
        return BulkEmailResponse(ok=True, ids=ids, queued=len(ids), skipped=len(items) - len(ids))

    @emails.post("/direct", response_model=DirectEmailResponse, response_model_exclude_none=True)
    async def send_direct(
        body: DirectEmailRequest,
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Send immediately, bypassing the queue."""
        result = await svc.handle_command(
            "sendDirect",
            {"payload": body.email, "user_id": user_id, "provider_id": body.provider_id},
        )
        if "result" not in result:
            raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, result.get("error"))
        return DirectEmailResponse.model_validate(result)

    @emails.get("", response_model=JobsResponse, response_model_exclude_none=True)
    async def list_emails(
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Jobs owned by the caller."""
        result = await svc.handle_command("listUserQueue", {"user_id": user_id})
        return JobsResponse.model_validate(result)

    @emails.get("/{job_id}", response_model=JobResponse, response_model_exclude_none=True)
    async def get_email(
        job_id: str,
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Status of one of the caller's jobs."""
        result = await svc.handle_command("getQueueItem", {"id": job_id, "user_id": user_id})
        if not result.get("ok"):
            raise HTTPException(404, f"Email '{job_id}' not found")
        return JobResponse.model_validate(result)

    @emails.delete("/{job_id}", response_model=CancelResponse, response_model_exclude_none=True)
    async def cancel_email(
        job_id: str,
        user_id: int = Depends(current_user),
        svc: MailDispatchCore = Depends(require_service),
    ):
        """Cancel one of the caller's pending jobs."""
        result = await svc.handle_command("cancelEmail", {"id": job_id, "user_id": user_id})
        if not result.get("ok"):
            if result.get("error") == "job not found":
                raise HTTPException(404, f"Email '{job_id}' not found")
            raise HTTPException(400, result.get("error"))
        return CancelResponse.model_validate(result)

    # ------------------------------------------------------------- monitoring
    @api.get("/queue/statistics", response_model=QueueStatisticsResponse, dependencies=[auth_dependency])
    async def queue_statistics(svc: MailDispatchCore = Depends(require_service)):
        """Aggregate queue counters."""
        result = await svc.handle_command("queueStatistics", {})
        return QueueStatisticsResponse.model_validate(result)

    @api.get("/providers", response_model=ProvidersResponse, dependencies=[auth_dependency])
    async def list_providers(svc: MailDispatchCore = Depends(require_service)):
        """Configuration, health and statistics of every provider."""
        result = await svc.handle_command("listProviders", {})
        return ProvidersResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics(svc: MailDispatchCore = Depends(require_service)):
        """Expose Prometheus metrics collected by the dispatcher."""
        return Response(content=svc.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    # --------------------------------------------------------------- commands
    @router.post("/run-now", response_model=RunNowResponse, response_model_exclude_none=True)
    async def run_now(svc: MailDispatchCore = Depends(require_service)):
        """Process due jobs immediately."""
        result = await svc.handle_command("run now", {})
        return RunNowResponse.model_validate(result)

    @router.post("/health-check", response_model=HealthCheckResponse, response_model_exclude_none=True)
    async def health_check(svc: MailDispatchCore = Depends(require_service)):
        """Run provider health checks now."""
        result = await svc.handle_command("healthCheck", {})
        return HealthCheckResponse.model_validate(result)

    @router.post("/reset-daily-counters", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def reset_daily_counters(svc: MailDispatchCore = Depends(require_service)):
        """Zero every provider's daily send counter."""
        result = await svc.handle_command("resetDailyCounters", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend(svc: MailDispatchCore = Depends(require_service)):
        """Stop the queue processor; queued jobs stay pending."""
        result = await svc.handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @router.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate(svc: MailDispatchCore = Depends(require_service)):
        """Restart the queue processor."""
        result = await svc.handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    api.include_router(emails)
    api.include_router(router)
    return api


def jsonable_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    """Validation errors stripped of values that are not JSON serializable."""
    return [{key: err[key] for key in ("type", "loc", "msg") if key in err} for err in exc.errors()]
