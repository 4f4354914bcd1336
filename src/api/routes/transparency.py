"""Transparency endpoints: explain the ranking from stored scores."""

import time

import structlog
from fastapi import APIRouter, Depends, Query, Security

from src.api.auth import admin_key_header, is_admin_key, verify_api_key
from src.api.dependencies import get_transparency_service
from src.api.models import (
    AuditLogResponse,
    CounterfactualResponse,
    ErrorResponse,
    FeedStatsResponse,
    PostExplanationResponse,
)
from src.governance.weights import Weights
from src.transparency.service import AUDIT_MAX_LIMIT, COUNTERFACTUAL_MAX_LIMIT, TransparencyService

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/transparency", dependencies=[Depends(verify_api_key)])

_ERRORS = {
    401: {"model": ErrorResponse, "description": "Invalid API key"},
    503: {"model": ErrorResponse, "description": "No active epoch"},
}


def _latency_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


@router.get(
    "/post/{uri:path}",
    response_model=PostExplanationResponse,
    responses={**_ERRORS, 404: {"model": ErrorResponse, "description": "Post not scored"}},
    summary="Explain a post's rank",
    description=(
        "Component-by-component score breakdown under the current epoch, the "
        "post's rank, and where it would rank on engagement alone."
    ),
)
async def explain_post(
    uri: str,
    service: TransparencyService = Depends(get_transparency_service),
) -> PostExplanationResponse:
    start_time = time.perf_counter()
    explanation = await service.explain_post(uri)
    return PostExplanationResponse(**explanation, latency_ms=_latency_ms(start_time))


@router.get(
    "/stats",
    response_model=FeedStatsResponse,
    responses=_ERRORS,
    summary="Feed statistics",
)
async def feed_stats(
    service: TransparencyService = Depends(get_transparency_service),
) -> FeedStatsResponse:
    start_time = time.perf_counter()
    stats = await service.feed_stats()
    return FeedStatsResponse(**stats, latency_ms=_latency_ms(start_time))


@router.get(
    "/counterfactual",
    response_model=CounterfactualResponse,
    responses={**_ERRORS, 422: {"model": ErrorResponse, "description": "Invalid weights"}},
    summary="What-if ranking",
    description=(
        "Re-rank the current epoch's stored scores under alternative weights. "
        "Weights must sum to 1.0; nothing is rescored."
    ),
)
async def counterfactual(
    recency: float = Query(default=0.2, ge=0.0, le=1.0),
    engagement: float = Query(default=0.2, ge=0.0, le=1.0),
    bridging: float = Query(default=0.2, ge=0.0, le=1.0),
    source_diversity: float = Query(default=0.2, ge=0.0, le=1.0),
    relevance: float = Query(default=0.2, ge=0.0, le=1.0),
    limit: int = Query(default=50, ge=1, le=COUNTERFACTUAL_MAX_LIMIT),
    service: TransparencyService = Depends(get_transparency_service),
) -> CounterfactualResponse:
    start_time = time.perf_counter()
    weights = Weights(
        recency=recency,
        engagement=engagement,
        bridging=bridging,
        source_diversity=source_diversity,
        relevance=relevance,
    )
    result = await service.counterfactual(weights, limit=limit)
    return CounterfactualResponse(**result, latency_ms=_latency_ms(start_time))


@router.get(
    "/audit-log",
    response_model=AuditLogResponse,
    responses=_ERRORS,
    summary="Governance audit log",
    description=(
        "Newest first. Ballot entries are reduced to counts and voter "
        "identities are never shown; admin actors are shown to admin callers."
    ),
)
async def audit_log(
    action: str | None = Query(default=None, max_length=64),
    epoch_id: int | None = Query(default=None, ge=1),
    limit: int = Query(default=20, ge=1, le=AUDIT_MAX_LIMIT),
    offset: int = Query(default=0, ge=0),
    admin_key: str | None = Security(admin_key_header),
    service: TransparencyService = Depends(get_transparency_service),
) -> AuditLogResponse:
    start_time = time.perf_counter()
    page = await service.audit_log(
        action=action,
        epoch_id=epoch_id,
        limit=limit,
        offset=offset,
        include_actors=is_admin_key(admin_key),
    )
    return AuditLogResponse(**page, latency_ms=_latency_ms(start_time))
