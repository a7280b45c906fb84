"""Viewability event intake."""

from __future__ import annotations

from fastapi import APIRouter

from vroom_feed.feed.api._errors import to_http_error
from vroom_feed.feed.schemas import dto
from vroom_feed.feed.services.recorder import ImpressionRecorder

router = APIRouter(tags=["feed:impressions"])
_recorder = ImpressionRecorder()


def get_recorder() -> ImpressionRecorder:
	return _recorder


@router.post("/feed/impressions", response_model=dto.ImpressionBatchResponse, status_code=202)
async def record_impressions_endpoint(payload: dto.ImpressionBatchRequest) -> dto.ImpressionBatchResponse:
	try:
		return await _recorder.submit(payload.events)
	except Exception as exc:  # pragma: no cover
		raise to_http_error(exc) from exc
