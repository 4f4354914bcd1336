"""Feed generator XRPC endpoints."""

import time

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query, status

from src.api.dependencies import get_feed_service
from src.api.models import DescribeFeedGeneratorResponse, ErrorResponse, FeedSkeletonResponse
from src.config.settings import get_settings
from src.feed.cursor import InvalidCursorError
from src.feed.service import FeedService, UnsupportedAlgorithmError

logger = structlog.get_logger(__name__)
router = APIRouter()


def _bad_request(error: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": error, "message": message},
    )


@router.get(
    "/xrpc/app.bsky.feed.getFeedSkeleton",
    response_model=FeedSkeletonResponse,
    response_model_exclude_none=True,
    responses={400: {"model": ErrorResponse, "description": "Unknown feed, bad cursor or limit"}},
    summary="Feed skeleton",
    description=(
        "Return one page of ranked post URIs. The first page freezes the "
        "ranking into a snapshot; the returned cursor pages through that "
        "snapshot so rescoring never causes duplicates or gaps."
    ),
)
async def get_feed_skeleton(
    background_tasks: BackgroundTasks,
    feed: str = Query(..., description="AT-URI of the requested feed"),
    cursor: str | None = Query(default=None, description="Cursor from the previous page"),
    limit: int | None = Query(default=None, description="Page size, 1-100"),
    requester_did: str | None = Header(default=None, alias="X-Requester-DID"),
    service: FeedService = Depends(get_feed_service),
) -> FeedSkeletonResponse:
    start_time = time.perf_counter()

    try:
        page = await service.get_feed_skeleton(feed, cursor=cursor, limit=limit)
    except UnsupportedAlgorithmError:
        raise _bad_request("UnsupportedAlgorithm", "Unsupported algorithm")
    except InvalidCursorError as e:
        raise _bad_request("InvalidCursor", str(e))
    except ValueError as e:
        raise _bad_request("InvalidRequest", str(e))

    if requester_did:
        background_tasks.add_task(service.track_subscriber, requester_did)

    logger.debug(
        "Feed skeleton served",
        posts=len(page.posts),
        snapshot_id=page.snapshot_id,
        pinned=page.pinned is not None,
        latency_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
    return FeedSkeletonResponse(**page.to_skeleton())


@router.get(
    "/xrpc/app.bsky.feed.describeFeedGenerator",
    response_model=DescribeFeedGeneratorResponse,
    summary="Describe feed generator",
)
async def describe_feed_generator(
    service: FeedService = Depends(get_feed_service),
) -> DescribeFeedGeneratorResponse:
    return DescribeFeedGeneratorResponse(**service.describe(get_settings().service_did))
