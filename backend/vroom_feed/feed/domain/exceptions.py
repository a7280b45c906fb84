"""Custom exceptions for the feed ranker."""

from __future__ import annotations

from fastapi import status


class FeedError(Exception):
	"""Base class for errors surfaced to feed callers."""

	status_code: int = status.HTTP_400_BAD_REQUEST
	code: str = "FeedError"
	detail: str = "feed_error"

	def __init__(self, detail: str | None = None) -> None:
		super().__init__(detail or self.detail)
		if detail:
			self.detail = detail

	def to_payload(self) -> dict[str, str]:
		return {"code": self.code, "message": self.detail}


class NoInventoryError(FeedError):
	"""Raised when there are no eligible posts anywhere in the store."""

	status_code = status.HTTP_404_NOT_FOUND
	code = "NoInventory"
	detail = "no eligible posts are available"


class DeadlineError(FeedError):
	"""Raised when the page budget elapsed before any item was assembled."""

	status_code = status.HTTP_504_GATEWAY_TIMEOUT
	code = "Deadline"
	detail = "feed assembly exceeded its deadline"


class InvalidCursorError(FeedError):
	"""Raised for malformed cursors or cursors minted for a future nonce."""

	status_code = status.HTTP_400_BAD_REQUEST
	code = "InvalidCursor"
	detail = "cursor is malformed or does not belong to this session"


class InternalError(FeedError):
	"""Unexpected failure; never carries downstream detail."""

	status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
	code = "Internal"
	detail = "internal error"

