"""Feed page endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from vroom_feed.feed.api._errors import to_http_error
from vroom_feed.feed.schemas import dto
from vroom_feed.feed.services.assembler import FeedAssembler
from vroom_feed.obs import logging as obs_logging

router = APIRouter(tags=["feed"])
_assembler = FeedAssembler()


@router.post("/feed", response_model=dto.FeedResponse)
async def get_feed_page_endpoint(payload: dto.FeedRequest) -> dto.FeedResponse:
	token = obs_logging.bind_context(viewer_id=payload.viewer_id, session_id=payload.session_id)
	try:
		return await _assembler.get_page(payload)
	except Exception as exc:
		raise to_http_error(exc) from exc
	finally:
		obs_logging.reset_context(token)
