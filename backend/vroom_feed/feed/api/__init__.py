"""FastAPI routers for the feed ranker."""

from __future__ import annotations

from fastapi import APIRouter

from vroom_feed.feed.api import feed, impressions

router = APIRouter()

router.include_router(feed.router)
router.include_router(impressions.router)

__all__ = ["router"]
