"""Voter endpoints: cast a ballot, read it back, see the current epoch."""

import time

import structlog
from fastapi import APIRouter, Depends

from src.api.auth import get_voter_did
from src.api.dependencies import get_epoch_manager, get_vote_service
from src.api.models import (
    EpochResponse,
    ErrorResponse,
    MyVoteResponse,
    VoteRequest,
    VoteResponse,
    epoch_to_item,
    vote_to_item,
)
from src.governance.epoch_manager import EpochManager
from src.governance.votes import VoteService

logger = structlog.get_logger(__name__)
router = APIRouter()


def _latency_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


@router.post(
    "/governance/vote",
    response_model=VoteResponse,
    responses={
        401: {"model": ErrorResponse, "description": "Missing voter identity"},
        403: {"model": ErrorResponse, "description": "Voter is not an active subscriber"},
        409: {"model": ErrorResponse, "description": "Voting is closed"},
        422: {"model": ErrorResponse, "description": "Invalid ballot"},
        503: {"model": ErrorResponse, "description": "No active epoch"},
    },
    summary="Cast or update a vote",
    description=(
        "Submit weights (all five, summing to 1.0), keyword preferences, or "
        "both for the current voting window. A second ballot replaces the first."
    ),
)
async def cast_vote(
    request: VoteRequest,
    voter_did: str = Depends(get_voter_did),
    service: VoteService = Depends(get_vote_service),
) -> VoteResponse:
    start_time = time.perf_counter()

    receipt = await service.cast_vote(
        voter_did,
        weights=request.weights,
        include_keywords=request.include_keywords,
        exclude_keywords=request.exclude_keywords,
    )

    return VoteResponse(
        vote=vote_to_item(receipt.vote),
        is_new=receipt.is_new,
        latency_ms=_latency_ms(start_time),
    )


@router.get(
    "/governance/vote",
    response_model=MyVoteResponse,
    responses={401: {"model": ErrorResponse, "description": "Missing voter identity"}},
    summary="Get my vote",
)
async def get_my_vote(
    voter_did: str = Depends(get_voter_did),
    service: VoteService = Depends(get_vote_service),
) -> MyVoteResponse:
    start_time = time.perf_counter()
    vote = await service.get_vote(voter_did)
    return MyVoteResponse(
        vote=vote_to_item(vote) if vote is not None else None,
        latency_ms=_latency_ms(start_time),
    )


@router.get(
    "/governance/epoch",
    response_model=EpochResponse,
    responses={503: {"model": ErrorResponse, "description": "No active epoch"}},
    summary="Current epoch",
)
async def get_current_epoch(
    manager: EpochManager = Depends(get_epoch_manager),
) -> EpochResponse:
    start_time = time.perf_counter()
    epoch = await manager.get_current()
    return EpochResponse(epoch=epoch_to_item(epoch), latency_ms=_latency_ms(start_time))
