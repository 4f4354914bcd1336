"""Governance administration endpoints.

Every route requires ``X-ADMIN-KEY`` and carries the stricter admin rate
limit. The acting admin's DID (``X-Admin-DID``) is written to the audit log.
"""

import time

import structlog
from fastapi import APIRouter, Depends, Query, Request

from src.api.auth import get_admin_did, verify_admin_key
from src.api.dependencies import get_epoch_manager, get_scoring_scheduler
from src.api.models import (
    ApproveResultsRequest,
    ContentRulesOverrideRequest,
    EndVotingRequest,
    EpochResponse,
    ErrorResponse,
    ExtendVotingRequest,
    GovernanceStatusResponse,
    KeywordRequest,
    ScheduledVoteResponse,
    ScheduleListResponse,
    ScheduleVoteRequest,
    ScoringRunResponse,
    StartVotingRequest,
    TransitionResponse,
    WeightsOverrideRequest,
    epoch_to_item,
    scheduled_to_item,
)
from src.api.rate_limit import admin_rate_limit, limiter
from src.governance.epoch_manager import EpochManager
from src.scoring.scheduler import ScoringScheduler

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/admin", dependencies=[Depends(verify_admin_key)])

_ERRORS = {
    401: {"model": ErrorResponse, "description": "Missing or invalid admin key"},
    403: {"model": ErrorResponse, "description": "Admin API disabled"},
    409: {"model": ErrorResponse, "description": "Epoch is in the wrong phase"},
    422: {"model": ErrorResponse, "description": "Invalid request"},
    503: {"model": ErrorResponse, "description": "No active epoch"},
}


def _latency_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


@router.get(
    "/governance",
    response_model=GovernanceStatusResponse,
    responses=_ERRORS,
    summary="Governance status",
)
@limiter.limit(admin_rate_limit)
async def governance_status(
    request: Request,
    manager: EpochManager = Depends(get_epoch_manager),
) -> GovernanceStatusResponse:
    start_time = time.perf_counter()
    epoch = await manager.get_current()
    vote_count = await manager.votes.count_for_epoch(epoch.id)
    statistics = await manager.aggregator.vote_statistics(epoch.id)
    scheduled = await manager.list_scheduled()

    return GovernanceStatusResponse(
        epoch=epoch_to_item(epoch),
        vote_count=vote_count,
        vote_statistics=statistics.to_dict() if statistics is not None else None,
        scheduled_votes=[scheduled_to_item(s) for s in scheduled],
        latency_ms=_latency_ms(start_time),
    )


@router.post(
    "/governance/start-voting",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Open a voting window",
)
@limiter.limit(admin_rate_limit)
async def start_voting(
    request: Request,
    body: StartVotingRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.start_voting(
        admin_did, duration_hours=body.duration_hours, announce=body.announce
    )
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/end-voting",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Close the voting window and compute results",
)
@limiter.limit(admin_rate_limit)
async def end_voting(
    request: Request,
    body: EndVotingRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.end_voting(admin_did, announce=body.announce)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/approve-results",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Apply the proposed results",
)
@limiter.limit(admin_rate_limit)
async def approve_results(
    request: Request,
    body: ApproveResultsRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.approve_results(admin_did, announce=body.announce)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/reject-results",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Discard the proposed results",
)
@limiter.limit(admin_rate_limit)
async def reject_results(
    request: Request,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.reject_results(admin_did)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/extend-voting",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Extend the open voting window",
)
@limiter.limit(admin_rate_limit)
async def extend_voting(
    request: Request,
    body: ExtendVotingRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.extend_voting(admin_did, body.hours)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/apply-results",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Apply the live vote aggregate immediately",
    description="Aggregates the current ballots and applies them without closing the window.",
)
@limiter.limit(admin_rate_limit)
async def apply_results(
    request: Request,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.apply_results(admin_did)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/transition",
    response_model=TransitionResponse,
    responses=_ERRORS,
    summary="Close the epoch and open the next one",
    description=(
        "Legacy rollover. Without ``force`` the current epoch needs the "
        "configured minimum number of votes."
    ),
)
@limiter.limit(admin_rate_limit)
async def transition(
    request: Request,
    force: bool = Query(default=False, description="Skip the minimum vote check"),
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> TransitionResponse:
    start_time = time.perf_counter()
    if force:
        result = await manager.force_transition(admin_did)
    else:
        result = await manager.trigger_transition(admin_did)

    return TransitionResponse(
        closed_epoch_id=result.closed_epoch_id,
        new_epoch=epoch_to_item(result.new_epoch),
        vote_count=result.vote_count,
        forced=result.forced,
        latency_ms=_latency_ms(start_time),
    )


@router.patch(
    "/governance/weights",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Override live weights",
)
@limiter.limit(admin_rate_limit)
async def override_weights(
    request: Request,
    body: WeightsOverrideRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.override_weights(admin_did, body.model_dump(exclude_none=True))
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.patch(
    "/governance/content-rules",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Replace live content rules",
)
@limiter.limit(admin_rate_limit)
async def override_content_rules(
    request: Request,
    body: ContentRulesOverrideRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.override_content_rules(
        admin_did,
        include_keywords=body.include_keywords,
        exclude_keywords=body.exclude_keywords,
    )
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/content-rules/keyword",
    response_model=EpochResponse,
    responses=_ERRORS,
    summary="Add one keyword",
)
@limiter.limit(admin_rate_limit)
async def add_keyword(
    request: Request,
    body: KeywordRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.add_keyword(admin_did, body.type, body.keyword)
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.delete(
    "/governance/content-rules/keyword",
    response_model=EpochResponse,
    responses={**_ERRORS, 404: {"model": ErrorResponse, "description": "Keyword not present"}},
    summary="Remove one keyword",
)
@limiter.limit(admin_rate_limit)
async def remove_keyword(
    request: Request,
    body: KeywordRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.remove_keyword(
        admin_did, body.type, body.keyword, confirm=body.confirm
    )
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))


@router.post(
    "/governance/schedule-vote",
    response_model=ScheduledVoteResponse,
    status_code=201,
    responses=_ERRORS,
    summary="Schedule a future voting window",
)
@limiter.limit(admin_rate_limit)
async def schedule_vote(
    request: Request,
    body: ScheduleVoteRequest,
    admin_did: str | None = Depends(get_admin_did),
    manager: EpochManager = Depends(get_epoch_manager),
) -> ScheduledVoteResponse:
    start_time = time.perf_counter()
    scheduled = await manager.schedule_vote(
        admin_did or "admin-api",
        body.starts_at,
        duration_hours=body.duration_hours,
        announce=body.announce,
    )
    return ScheduledVoteResponse(
        scheduled_vote=scheduled_to_item(scheduled), latency_ms=_latency_ms(start_time)
    )


@router.get(
    "/governance/schedule",
    response_model=ScheduleListResponse,
    responses=_ERRORS,
    summary="Upcoming scheduled votes",
)
@limiter.limit(admin_rate_limit)
async def list_schedule(
    request: Request,
    manager: EpochManager = Depends(get_epoch_manager),
) -> ScheduleListResponse:
    start_time = time.perf_counter()
    scheduled = await manager.list_scheduled()
    return ScheduleListResponse(
        scheduled_votes=[scheduled_to_item(s) for s in scheduled],
        latency_ms=_latency_ms(start_time),
    )


@router.post(
    "/scoring/run",
    response_model=ScoringRunResponse,
    responses=_ERRORS,
    summary="Run the scoring pipeline now",
    description="Runs one scoring pass and waits for it. Returns a null run if one is already in progress.",
)
@limiter.limit(admin_rate_limit)
async def run_scoring(
    request: Request,
    scheduler: ScoringScheduler = Depends(get_scoring_scheduler),
) -> ScoringRunResponse:
    start_time = time.perf_counter()
    result = await scheduler.run_once()
    if result is not None:
        logger.info("Manual scoring run complete", **result.to_dict())
    return ScoringRunResponse(
        run=result.to_dict() if result is not None else None,
        latency_ms=_latency_ms(start_time),
    )
