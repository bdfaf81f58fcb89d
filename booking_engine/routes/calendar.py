"""
Calendar API Routes
HTTP endpoints for availability, bookings and provider management.
"""

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse

from booking_engine.auth.verify import cron_dependency, internal_api_dependency
from booking_engine.container import ServiceContainer
from booking_engine.errors import (
    BookingNotFound,
    InvalidTimezone,
    PersistenceError,
    RuleNotFound,
    SlotNoLongerAvailable,
)
from booking_engine.infrastructure.observability.logging import get_logger
from booking_engine.models.api.calendar_request import (
    CreateAvailabilityRuleRequest,
    CreateBookingRequest,
    CreateEventRequest,
    GoogleCallbackRequest,
    UpdateAvailabilityRuleRequest,
)
from booking_engine.models.api.calendar_response import (
    AvailabilityResponse,
    AvailabilityRuleListResponse,
    AvailabilityRuleResponse,
    BookingEventResponse,
    BookingListResponse,
    ProviderConnectionResponse,
    SlotResponse,
    SyncSummaryResponse,
)
from booking_engine.models.domain.calendar_domain import EventStatus
from booking_engine.services.calendar.provider_service import ProviderConnectionError
from booking_engine.services.calendar.sync_service import PROVIDER_NOT_FOUND, summarize_results

logger = get_logger(__name__)

router = APIRouter(
    prefix="/calendar", tags=["calendar"], dependencies=[Depends(internal_api_dependency)]
)
cron_router = APIRouter(prefix="/cron", tags=["cron"], dependencies=[Depends(cron_dependency)])


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    tenant_id: str = Query(..., description="Tenant the owners belong to"),
    day: date = Query(..., alias="date", description="Calendar date (YYYY-MM-DD)"),
    owner_id: str | None = Query(None, description="Single staff member"),
    agent_id: str | None = Query(None, description="Pool the agent's assignable users"),
    duration: int | None = Query(None, gt=0, le=24 * 60, description="Slot length in minutes"),
    timezone: str | None = Query(None, description="IANA timezone overriding the rule's"),
    container: ServiceContainer = Depends(get_container),
):
    """Bookable slots for one owner, an agent's team, or every owner in the tenant."""
    try:
        slots = await container.availability.compute_team_slots(
            tenant_id,
            day,
            duration=duration,
            timezone=timezone,
            owner_ids=[owner_id] if owner_id else None,
            agent_id=agent_id,
        )
    except InvalidTimezone as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    return AvailabilityResponse(
        date=day.isoformat(),
        slots=[SlotResponse.from_slot(slot) for slot in slots],
        total_slots=len(slots),
    )


@router.post("/bookings", status_code=status.HTTP_201_CREATED)
async def create_booking(
    request: CreateBookingRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Book an appointment. A failed booking answers 409 with a speakable message."""
    result = await container.booking.create_booking(request.to_booking_request())
    if not result.success:
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=result.to_dict())
    return result.to_dict()


@router.get("/bookings", response_model=BookingListResponse)
async def list_bookings(
    tenant_id: str = Query(...),
    owner_id: str | None = Query(None),
    agent_id: str | None = Query(None),
    event_status: EventStatus | None = Query(None, alias="status"),
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
    container: ServiceContainer = Depends(get_container),
):
    events = await container.booking.list_bookings(
        tenant_id,
        owner_id=owner_id,
        agent_id=agent_id,
        status=event_status,
        start=start,
        end=end,
    )
    return BookingListResponse(
        bookings=[BookingEventResponse.from_event(event) for event in events],
        total_count=len(events),
    )


@router.post("/events", status_code=status.HTTP_201_CREATED, response_model=BookingEventResponse)
async def create_event(
    request: CreateEventRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Add an event to an owner's calendar by hand and push it to their connected calendar."""
    try:
        event = await container.booking.create_event(
            request.to_event(), push=request.sync_to_provider
        )
    except SlotNoLongerAvailable as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.user_message) from e
    except PersistenceError as e:
        logger.error("Manual event not stored", owner_id=request.owner_id, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.user_message
        ) from e

    return BookingEventResponse.from_event(event)


@router.post("/bookings/{event_id}/cancel")
async def cancel_booking(
    event_id: str,
    container: ServiceContainer = Depends(get_container),
):
    result = await container.booking.cancel_booking(event_id)
    if result.success:
        return {"success": True, "event_id": event_id}

    status_code = (
        status.HTTP_404_NOT_FOUND
        if result.error_code == BookingNotFound.code
        else status.HTTP_409_CONFLICT
    )
    return JSONResponse(status_code=status_code, content=result.model_dump(exclude_none=True))


@router.get("/availability-rules", response_model=AvailabilityRuleListResponse)
async def list_availability_rules(
    owner_id: str = Query(...),
    include_inactive: bool = Query(True),
    container: ServiceContainer = Depends(get_container),
):
    rules = await container.availability_rules.list_rules(owner_id, include_inactive)
    return AvailabilityRuleListResponse(
        rules=[AvailabilityRuleResponse.from_rule(rule) for rule in rules],
        total=len(rules),
    )


@router.post(
    "/availability-rules",
    status_code=status.HTTP_201_CREATED,
    response_model=AvailabilityRuleResponse,
)
async def create_availability_rule(
    request: CreateAvailabilityRuleRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Create a weekly rule. A new default replaces the owner's previous default."""
    try:
        rule = await container.availability_rules.create_rule(
            request.tenant_id, request.owner_id, request.rule_fields()
        )
    except InvalidTimezone as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return AvailabilityRuleResponse.from_rule(rule)


@router.get("/availability-rules/{rule_id}", response_model=AvailabilityRuleResponse)
async def get_availability_rule(
    rule_id: str,
    container: ServiceContainer = Depends(get_container),
):
    try:
        rule = await container.availability_rules.get_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.user_message) from e
    return AvailabilityRuleResponse.from_rule(rule)


@router.patch("/availability-rules/{rule_id}", response_model=AvailabilityRuleResponse)
async def update_availability_rule(
    rule_id: str,
    request: UpdateAvailabilityRuleRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Partial update. Send active=false to take a rule out of availability."""
    try:
        rule = await container.availability_rules.update_rule(rule_id, request.changes())
    except RuleNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.user_message) from e
    except InvalidTimezone as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    return AvailabilityRuleResponse.from_rule(rule)


@router.delete("/availability-rules/{rule_id}")
async def delete_availability_rule(
    rule_id: str,
    soft: bool = Query(False, description="Disable instead of deleting"),
    container: ServiceContainer = Depends(get_container),
):
    try:
        if soft:
            await container.availability_rules.deactivate_rule(rule_id)
        else:
            await container.availability_rules.delete_rule(rule_id)
    except RuleNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.user_message) from e
    return {"success": True, "rule_id": rule_id, "deleted": not soft}


@router.get("/providers/google/authorize")
async def google_authorization_url(
    state: str = Query(..., min_length=1, description="Opaque value echoed back by Google"),
    container: ServiceContainer = Depends(get_container),
):
    return {"authorization_url": container.provider_service.authorization_url(state)}


@router.post("/providers/google/callback", response_model=ProviderConnectionResponse)
async def google_oauth_callback(
    request: GoogleCallbackRequest,
    container: ServiceContainer = Depends(get_container),
):
    """Store a Google connection after consent and kick off the first full sync."""
    try:
        provider = await container.provider_service.handle_oauth_callback(
            request.owner_id, request.tenant_id, request.code
        )
    except ProviderConnectionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.user_message) from e

    return ProviderConnectionResponse.from_provider(provider)


@router.delete("/providers/{provider_id}")
async def disconnect_provider(
    provider_id: str,
    container: ServiceContainer = Depends(get_container),
):
    if not await container.provider_service.disconnect(provider_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Provider not found")
    return {"success": True, "provider_id": provider_id}


@router.post("/providers/{provider_id}/sync")
async def sync_provider(
    provider_id: str,
    full: bool = Query(False, description="Force a full window sync"),
    container: ServiceContainer = Depends(get_container),
):
    if full:
        result = await container.sync.full_sync(provider_id)
    else:
        result = await container.sync.incremental_sync(provider_id)

    if result.error == PROVIDER_NOT_FOUND:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=result.error)
    return result.to_dict()


@cron_router.post("/calendar-sync", response_model=SyncSummaryResponse)
async def cron_calendar_sync(container: ServiceContainer = Depends(get_container)):
    """Incremental sync of every syncable provider."""
    results = await container.sync.sync_all_providers()
    summary = summarize_results(results)
    logger.info(
        "Cron calendar sync finished",
        providers=summary["providers"],
        failed=summary["failed"],
    )
    return SyncSummaryResponse(**summary)
