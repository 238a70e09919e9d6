"""
FastAPI application factory and HTTP schemas for the send scheduler.

The module exposes a `create_app` function that builds the administrative
REST API: execution log listing and statistics, the upcoming scheduled-item
view and the operator actions (reschedule, cancel, purge). Every route is
restricted to administrators, identified by the API token carried in the
``X-API-Token`` header.
"""

from typing import Optional, Dict, Any, List, Literal, Union, Callable, AsyncContextManager

from fastapi import FastAPI, HTTPException, APIRouter, Depends, Query, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from .core import AsyncSendCore

app = FastAPI(title="Send Scheduler")
service: AsyncSendCore | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None

# Error codes produced by the core mapped to HTTP status codes.
ERROR_STATUS = {
    "validation_error": status.HTTP_400_BAD_REQUEST,
    "not_found": status.HTTP_404_NOT_FOUND,
    "conflict": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "store_unavailable": status.HTTP_503_SERVICE_UNAVAILABLE,
}


async def require_admin(api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the administrator token carried in the ``X-API-Token`` header.

    If a token has been configured through :func:`create_app` and a request
    provides either a missing or different value, a ``401`` error is raised.
    When no token is configured the dependency is effectively bypassed.
    """
    expected = getattr(app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")

auth_dependency = Depends(require_admin)


class CommandStatus(BaseModel):
    """Base schema shared by most responses produced by the service."""
    ok: bool
    error: Optional[str] = None


class BasicOkResponse(CommandStatus):
    pass


class ActionResponse(CommandStatus):
    """Outcome of an operator action."""
    message: Optional[str] = None
    changed: Optional[bool] = None
    removed: Optional[int] = None
    scheduled_ts: Optional[int] = None


class InstancePayload(BaseModel):
    """Sending instance registered with the scheduler."""
    id: str
    name: Optional[str] = None
    status: Optional[str] = "disconnected"


class InstanceInfo(BaseModel):
    id: str
    name: Optional[str] = None
    status: Optional[str] = None
    created_ts: Optional[int] = None
    updated_ts: Optional[int] = None


class InstancesResponse(CommandStatus):
    instances: List[InstanceInfo]


class InstanceStatusPayload(BaseModel):
    status: str


class RecipientPayload(BaseModel):
    id: str
    name: Optional[str] = None
    phone: Optional[str] = None


class ScheduledItemPayload(BaseModel):
    """Item accepted by the ``addItems`` command."""
    id: str
    recipient_ref: str
    instance_ref: str
    scheduled_time: Union[int, str]
    payload: Optional[Dict[str, Any]] = None


class AddItemsPayload(BaseModel):
    items: List[ScheduledItemPayload]


class RejectedItem(BaseModel):
    id: Optional[str] = None
    reason: str


class AddItemsResponse(CommandStatus):
    queued: int = 0
    rejected: List[RejectedItem] = Field(default_factory=list)


class ScheduledItemRecord(BaseModel):
    """Full representation of a scheduled item."""
    id: str
    recipient_ref: str
    instance_ref: str
    payload: Optional[Dict[str, Any]] = None
    scheduled_ts: int
    attempts: int
    status: str
    last_error: Optional[str] = None
    sent_ts: Optional[int] = None
    version: Optional[int] = None
    created_ts: Optional[int] = None
    updated_ts: Optional[int] = None


class ItemsResponse(CommandStatus):
    items: List[ScheduledItemRecord]


class ItemActionPayload(BaseModel):
    """Operator action on the scheduled-item queue."""
    action: Literal["reschedule", "cancel", "purge"]
    item_id: Optional[str] = None
    new_time: Optional[Union[int, str]] = None
    days: Optional[int] = None
    statuses: Optional[List[str]] = None


class CronLogPayload(BaseModel):
    """Execution log entry reported by an external cron job."""
    cron_kind: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    duration_ms: Optional[int] = None


class CronLogEntry(BaseModel):
    id: int
    cron_kind: str
    status: str
    message: Optional[str] = None
    details: Optional[Any] = None
    duration_ms: Optional[int] = None
    occurred_ts: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class CronKindStatistics(BaseModel):
    cron_kind: str
    total_runs: int
    successes: int
    errors: int
    avg_duration_ms: Optional[float] = None


class CronLogsResponse(CommandStatus):
    logs: List[CronLogEntry]
    pagination: Pagination
    statistics: List[CronKindStatistics]


class CronStatsResponse(CommandStatus):
    recent_runs: List[Dict[str, Any]]
    latest_runs: List[Dict[str, Any]]
    totals: Dict[str, Any]
    period: str


class UpcomingItemsResponse(CommandStatus):
    items: List[Dict[str, Any]]
    statistics: Dict[str, int]
    by_instance: List[Dict[str, Any]]
    period: str


def _raise_for_result(result: Dict[str, Any]) -> None:
    """Turn a failed command result into an ``HTTPException``."""
    if isinstance(result, dict) and result.get("ok") is True:
        return
    result = result if isinstance(result, dict) else {}
    code = result.get("code")
    detail: Dict[str, Any] = {"error": result.get("error"), "code": code}
    if result.get("rejected") is not None:
        detail["rejected"] = result["rejected"]
    raise HTTPException(status_code=ERROR_STATUS.get(code, status.HTTP_400_BAD_REQUEST), detail=detail)


def create_app(
    svc: AsyncSendCore,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`send_scheduler.core.AsyncSendCore` that
        implements the business logic for each command.
    api_token:
        Optional administrator secret. When provided, the ``X-API-Token``
        header must match this value on every request.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    global service
    service = svc

    # Use custom lifespan if provided, otherwise use the global app
    if lifespan is not None:
        api = FastAPI(title="Send Scheduler", lifespan=lifespan)
    else:
        api = app

    api.state.api_token = api_token
    app.state.api_token = api_token
    commands = APIRouter(prefix="/commands", tags=["commands"], dependencies=[auth_dependency])
    admin = APIRouter(tags=["admin"], dependencies=[auth_dependency])

    def current_service() -> AsyncSendCore:
        if not service:
            raise HTTPException(500, "Service not initialized")
        return service

    @api.get("/status", response_model=BasicOkResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def status_endpoint():
        """Return a simple health status payload."""
        return BasicOkResponse(ok=True)

    @commands.post("/run-now", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def run_now():
        """Wake the dispatch loop for an immediate tick."""
        result = await current_service().handle_command("run now", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/suspend", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def suspend():
        """Stop dispatching due items until activated again."""
        result = await current_service().handle_command("suspend", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/activate", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def activate():
        """Resume dispatching due items."""
        result = await current_service().handle_command("activate", {})
        return BasicOkResponse.model_validate(result)

    @commands.post("/add-items", response_model=AddItemsResponse, response_model_exclude_none=True)
    async def add_items(payload: AddItemsPayload):
        """Schedule a batch of items in ``pending`` state."""
        data = {"items": [item.model_dump(exclude_none=True) for item in payload.items]}
        result = await current_service().handle_command("addItems", data)
        _raise_for_result(result)
        return AddItemsResponse.model_validate(result)

    @admin.post("/instance", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_instance(instance: InstancePayload):
        """Register or update a sending instance."""
        result = await current_service().handle_command("addInstance", instance.model_dump(exclude_none=True))
        _raise_for_result(result)
        return BasicOkResponse.model_validate(result)

    @admin.put("/instance/{instance_id}/status", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def set_instance_status(instance_id: str, payload: InstanceStatusPayload):
        """Record the health reported for an instance."""
        result = await current_service().handle_command(
            "setInstanceStatus", {"id": instance_id, "status": payload.status}
        )
        _raise_for_result(result)
        return BasicOkResponse.model_validate(result)

    @admin.get("/instances", response_model=InstancesResponse, response_model_exclude_none=True)
    async def list_instances():
        """List the known sending instances and their health."""
        result = await current_service().handle_command("listInstances", {})
        return InstancesResponse.model_validate(result)

    @admin.post("/recipient", response_model=BasicOkResponse, response_model_exclude_none=True)
    async def add_recipient(recipient: RecipientPayload):
        result = await current_service().handle_command("addRecipient", recipient.model_dump(exclude_none=True))
        _raise_for_result(result)
        return BasicOkResponse.model_validate(result)

    @admin.get("/cron-logs", response_model=CronLogsResponse, response_model_exclude_none=True)
    async def list_cron_logs(
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=500),
        cron_kind: Optional[str] = None,
    ):
        """Paginated execution log with 7-day statistics per cron kind."""
        payload: Dict[str, Any] = {"page": page, "limit": limit}
        if cron_kind:
            payload["cron_kind"] = cron_kind
        result = await current_service().handle_command("listCronLogs", payload)
        _raise_for_result(result)
        return CronLogsResponse.model_validate(result)

    @admin.post("/cron-logs", response_model=ActionResponse, response_model_exclude_none=True)
    async def record_cron_log(entry: CronLogPayload):
        """Append an execution log entry on behalf of an external cron job."""
        result = await current_service().handle_command("recordCronLog", entry.model_dump(exclude_none=True))
        _raise_for_result(result)
        return ActionResponse.model_validate(result)

    @admin.delete("/cron-logs", response_model=ActionResponse, response_model_exclude_none=True)
    async def purge_cron_logs(days: int = Query(30, ge=0)):
        """Delete execution log entries older than ``days``."""
        result = await current_service().handle_command("purgeCronLogs", {"days": days})
        _raise_for_result(result)
        return ActionResponse.model_validate(result)

    @admin.get("/cron-stats", response_model=CronStatsResponse, response_model_exclude_none=True)
    async def cron_stats():
        """Last 24 hours per kind and status, latest run per kind, 7-day totals."""
        result = await current_service().handle_command("cronStats", {})
        _raise_for_result(result)
        return CronStatsResponse.model_validate(result)

    @admin.get("/scheduled-items", response_model=UpcomingItemsResponse, response_model_exclude_none=True)
    async def upcoming_items():
        """Items due in the next 24 hours with statistics and a per-instance view."""
        result = await current_service().handle_command("upcomingItems", {})
        _raise_for_result(result)
        return UpcomingItemsResponse.model_validate(result)

    @admin.get("/scheduled-items/all", response_model=ItemsResponse, response_model_exclude_none=True)
    async def all_items(active_only: bool = False):
        """Expose the whole item table for inspection."""
        result = await current_service().handle_command("listItems", {"active_only": active_only})
        return ItemsResponse.model_validate(result)

    @admin.post("/scheduled-items/actions", response_model=ActionResponse, response_model_exclude_none=True)
    async def item_action(payload: ItemActionPayload):
        """Reschedule, cancel or purge scheduled items."""
        svc_ = current_service()
        if payload.action == "reschedule":
            result = await svc_.handle_command(
                "reschedule", {"item_id": payload.item_id, "new_time": payload.new_time}
            )
        elif payload.action == "cancel":
            result = await svc_.handle_command("cancel", {"item_id": payload.item_id})
        else:
            data: Dict[str, Any] = {}
            if payload.days is not None:
                data["days"] = payload.days
            if payload.statuses is not None:
                data["statuses"] = payload.statuses
            result = await svc_.handle_command("purgeItems", data)
        _raise_for_result(result)
        return ActionResponse.model_validate(result)

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the scheduler."""
        return Response(content=current_service().metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    api.include_router(commands)
    api.include_router(admin)
    return api
