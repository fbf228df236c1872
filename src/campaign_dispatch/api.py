"""FastAPI surface: domain events, campaigns, workflows, contacts and provider webhooks."""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from starlette.middleware.base import BaseHTTPMiddleware

from .campaigns.models import AudienceDefinition, Campaign
from .compliance.models import InboundMessage
from .config import configure_logging, get_settings
from .dispatch.models import MessageContent
from .errors import (
    CampaignError,
    DispatchEngineError,
    RepositoryUnavailable,
    WebhookPayloadError,
)
from .models import AccountSettings, Channel, Contact, DomainEvent
from .runtime import Runtime, build_runtime
from .utils.validation import check_sms_body
from .webhooks.parsers import parse_resend_event, parse_telnyx_event

logger = logging.getLogger(__name__)

CAMPAIGN_SEND_NOW = "campaign_send_now"

ERROR_STATUS_MAP: dict[str, int] = {
    "WORKFLOW_INVALID": 422,
    "WORKFLOW_NOT_FOUND": 404,
    "CAMPAIGN_NOT_FOUND": 404,
    "CAMPAIGN_ERROR": 400,
    "WORKFLOW_ERROR": 400,
    "INVALID_TRANSITION": 409,
    "WEBHOOK_PAYLOAD_INVALID": 400,
    "RATE_LIMITED": 429,
    "REPOSITORY_UNAVAILABLE": 503,
    "CONFIGURATION_ERROR": 500,
}


def get_status_code(error_code: str) -> int:
    return ERROR_STATUS_MAP.get(error_code, 500)


async def dispatch_error_handler(request: Request, exc: DispatchEngineError) -> JSONResponse:
    status_code = get_status_code(exc.code)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content=exc.to_dict())


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with a short request id and its duration."""

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000
        status_code = response.status_code
        log_level = logging.WARNING if status_code >= 400 else logging.INFO
        logger.log(
            log_level,
            f"[{request_id}] {request.method} {request.url.path} - {status_code} "
            f"in {duration_ms:.1f}ms",
            extra={"duration_ms": round(duration_ms, 2)},
        )
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CampaignCreate(BaseModel):
    id: str | None = None
    store_id: str
    name: str
    channel: Channel
    content: MessageContent
    audience: AudienceDefinition = Field(default_factory=AudienceDefinition)

    @model_validator(mode="after")
    def _sms_body_fits(self) -> CampaignCreate:
        if self.channel == Channel.SMS and self.content.body:
            check_sms_body(self.content.body)
        return self


class ScheduleRequest(BaseModel):
    at: datetime


class ConsentChange(BaseModel):
    channel: Channel
    source: str = "api"


def _runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError as e:
        raise WebhookPayloadError("Webhook body is not valid JSON") from e


router = APIRouter()


@router.get("/health")
def health_check(request: Request) -> JSONResponse:
    """Report whether the dispatch store answers; 503 when it does not."""
    try:
        _runtime(request).repository.ping()
    except RepositoryUnavailable as e:
        logger.error(f"Health check failed: {e.message}")
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "unavailable"},
        )
    return JSONResponse(
        content={"status": "healthy", "database": "ok", "timestamp": datetime.now().isoformat()}
    )


# ---------------------------------------------------------------------------
# Domain events
# ---------------------------------------------------------------------------


@router.post("/events")
async def receive_event(event: DomainEvent, request: Request) -> dict[str, Any]:
    """Accept a domain event.

    ``campaign_send_now`` starts the campaign named in its payload; every
    other type is offered to the store's active workflows.
    """
    runtime = _runtime(request)
    if event.type == CAMPAIGN_SEND_NOW:
        campaign_id = event.payload.get("campaign_id")
        if not campaign_id:
            raise CampaignError(
                "campaign_send_now requires payload.campaign_id", {"event_id": event.event_id}
            )
        result = await runtime.campaigns.execute(campaign_id)
        return {"campaign": result.model_dump(mode="json")}

    runs = await runtime.automation.handle_event(event)
    return {"runs": [run.model_dump(mode="json") for run in runs if run is not None]}


# ---------------------------------------------------------------------------
# Campaigns
# ---------------------------------------------------------------------------


@router.post("/campaigns", status_code=201)
def create_campaign(body: CampaignCreate, request: Request) -> dict[str, Any]:
    campaign = Campaign(id=body.id or str(uuid.uuid4()), **body.model_dump(exclude={"id"}))
    return _runtime(request).campaigns.create(campaign).model_dump(mode="json")


@router.get("/campaigns/{campaign_id}")
def get_campaign(campaign_id: str, request: Request) -> dict[str, Any]:
    return _runtime(request).campaigns.refresh_counters(campaign_id).model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/send")
async def send_campaign(campaign_id: str, request: Request) -> dict[str, Any]:
    result = await _runtime(request).campaigns.execute(campaign_id)
    return result.model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/schedule")
def schedule_campaign(campaign_id: str, body: ScheduleRequest, request: Request) -> dict:
    return _runtime(request).campaigns.schedule(campaign_id, body.at).model_dump(mode="json")


@router.post("/campaigns/{campaign_id}/cancel")
def cancel_campaign(campaign_id: str, request: Request) -> dict[str, Any]:
    return _runtime(request).campaigns.cancel(campaign_id).model_dump(mode="json")


@router.get("/campaigns/{campaign_id}/analytics")
def campaign_analytics(campaign_id: str, request: Request) -> dict[str, Any]:
    return _runtime(request).campaigns.get_analytics(campaign_id).model_dump(mode="json")


@router.get("/stores/{store_id}/campaigns/performance")
def campaign_performance(store_id: str, request: Request) -> dict[str, Any]:
    summary = _runtime(request).campaigns.get_performance_summary(store_id)
    return summary.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------


@router.post("/workflows", status_code=201)
def save_workflow(body: dict[str, Any], request: Request) -> dict[str, Any]:
    return _runtime(request).automation.save_workflow(body).model_dump(mode="json")


@router.get("/workflows/{workflow_id}")
def get_workflow(workflow_id: str, request: Request) -> dict[str, Any]:
    return _runtime(request).automation.get_workflow(workflow_id).model_dump(mode="json")


@router.post("/workflows/{workflow_id}/activate")
def activate_workflow(workflow_id: str, request: Request) -> dict[str, Any]:
    _runtime(request).automation.set_workflow_active(workflow_id, True)
    return {"workflow_id": workflow_id, "is_active": True, "cancelled_runs": 0}


@router.post("/workflows/{workflow_id}/deactivate")
def deactivate_workflow(workflow_id: str, request: Request) -> dict[str, Any]:
    cancelled = _runtime(request).automation.set_workflow_active(workflow_id, False)
    return {"workflow_id": workflow_id, "is_active": False, "cancelled_runs": cancelled}


@router.get("/workflows/{workflow_id}/stats")
def workflow_stats(workflow_id: str, request: Request) -> dict[str, Any]:
    return _runtime(request).automation.get_workflow_stats(workflow_id).model_dump(mode="json")


# ---------------------------------------------------------------------------
# Contacts and account settings
# ---------------------------------------------------------------------------


@router.put("/contacts/{contact_id}")
def save_contact(contact_id: str, body: Contact, request: Request) -> dict[str, Any]:
    contact = body.model_copy(update={"id": contact_id})
    repository = _runtime(request).repository
    repository.save_contact(contact)
    return repository.get_contact(contact_id).model_dump(mode="json")


@router.post("/contacts/{contact_id}/opt-out")
def opt_out(contact_id: str, body: ConsentChange, request: Request) -> dict[str, Any]:
    record = _runtime(request).opt_outs.opt_out(contact_id, body.channel, source=body.source)
    return record.model_dump(mode="json")


@router.post("/contacts/{contact_id}/opt-in")
def opt_in(contact_id: str, body: ConsentChange, request: Request) -> dict[str, Any]:
    record = _runtime(request).opt_outs.opt_in(contact_id, body.channel, source=body.source)
    return record.model_dump(mode="json")


@router.put("/accounts/{store_id}/settings")
def save_account_settings(store_id: str, body: AccountSettings, request: Request) -> dict:
    settings = body.model_copy(update={"store_id": store_id})
    _runtime(request).repository.save_account_settings(settings)
    return settings.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Provider webhooks
# ---------------------------------------------------------------------------


@router.post("/webhooks/resend")
async def resend_webhook(request: Request) -> dict[str, Any]:
    event = parse_resend_event(await _json_body(request))
    result = _runtime(request).reconciler.apply_provider_event(event)
    return {"result": result.value}


@router.post("/webhooks/telnyx")
async def telnyx_webhook(request: Request) -> dict[str, Any]:
    parsed = parse_telnyx_event(await _json_body(request))
    runtime = _runtime(request)
    if isinstance(parsed, InboundMessage):
        opted_out = runtime.reconciler.handle_inbound(parsed)
        return {"result": "inbound", "opted_out": opted_out}
    result = runtime.reconciler.apply_provider_event(parsed)
    return {"result": result.value}


@router.get("/webhooks/telnyx")
def telnyx_webhook_challenge(webhook_challenge: str | None = None) -> dict[str, Any]:
    if webhook_challenge:
        return {"webhook_challenge": webhook_challenge}
    return {"status": "telnyx webhook endpoint active"}


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


@router.post("/scheduler/tick")
async def scheduler_tick(request: Request) -> dict[str, Any]:
    result = await _runtime(request).scheduler.tick()
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


def create_app(runtime: Runtime | None = None, start_scheduler: bool = True) -> FastAPI:
    """Build the application.

    Args:
        runtime: Prebuilt components; otherwise built from settings at startup
        start_scheduler: Run the periodic tick alongside the API
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = runtime.settings if runtime else get_settings()
        configure_logging(
            level=settings.log_level,
            format=settings.log_format,
            sanitize_logs=settings.sanitize_logs,
        )
        app.state.runtime = runtime or build_runtime(settings)
        if start_scheduler:
            app.state.runtime.scheduler.start()
        logger.info("Application startup complete - ready to serve requests")

        yield

        await app.state.runtime.aclose()
        logger.info("Graceful shutdown complete")

    app = FastAPI(title="Campaign Dispatch Engine", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_exception_handler(DispatchEngineError, dispatch_error_handler)
    app.include_router(router)
    return app
