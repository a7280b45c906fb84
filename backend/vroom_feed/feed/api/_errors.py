"""Error translation helpers for the feed API."""

from __future__ import annotations

import logging

from fastapi import HTTPException

from vroom_feed.feed.domain import exceptions
from vroom_feed.obs import metrics as obs_metrics

_LOG = logging.getLogger(__name__)


def to_http_error(exc: Exception) -> HTTPException:
	"""Translate feed exceptions to FastAPI HTTP errors; anything unexpected becomes Internal."""
	if isinstance(exc, exceptions.FeedError):
		obs_metrics.inc_feed_error(exc.code)
		return HTTPException(status_code=exc.status_code, detail=exc.to_payload())
	_LOG.exception("feed.unhandled_error", exc_info=exc)
	internal = exceptions.InternalError()
	obs_metrics.inc_feed_error(internal.code)
	return HTTPException(status_code=internal.status_code, detail=internal.to_payload())
