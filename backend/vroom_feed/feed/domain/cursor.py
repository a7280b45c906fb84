"""Opaque pagination cursors for the feed."""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from vroom_feed.feed.domain.exceptions import InvalidCursorError

PostKey = Tuple[datetime, str]


@dataclass(frozen=True, slots=True)
class FeedCursor:
	"""Position in a session's feed: which page comes next and where the keyset stands.

	``served`` lists fresh posts already emitted in this session that sit
	below ``last_post_key``; the next keyset read skips them.
	"""

	session_id: str
	refresh_nonce: int
	page_index: int
	last_post_key: Optional[PostKey] = None
	served: Tuple[PostKey, ...] = ()


def encode_cursor(cursor: FeedCursor) -> str:
	payload: Dict[str, Any] = {
		"s": cursor.session_id,
		"n": cursor.refresh_nonce,
		"p": cursor.page_index,
	}
	if cursor.last_post_key is not None:
		created_at, post_id = cursor.last_post_key
		payload["k"] = [created_at.isoformat(), post_id]
	if cursor.served:
		payload["v"] = [[created_at.isoformat(), post_id] for created_at, post_id in cursor.served]
	blob = json.dumps(payload, separators=(",", ":"))
	return base64.urlsafe_b64encode(blob.encode("utf-8")).decode("ascii")


def _decode_key(raw: Any) -> PostKey:
	created_str, post_id = raw
	created_at = datetime.fromisoformat(created_str)
	if created_at.tzinfo is None:
		raise ValueError("naive cursor timestamp")
	return (created_at, str(post_id))


def decode_cursor(value: str) -> FeedCursor:
	try:
		decoded = base64.urlsafe_b64decode(value.encode("ascii")).decode("utf-8")
		data: Dict[str, Any] = json.loads(decoded)
		session_id = str(data["s"])
		nonce = int(data["n"])
		page_index = int(data["p"])
		key = data.get("k")
		last_key = _decode_key(key) if key is not None else None
		served = tuple(_decode_key(entry) for entry in data.get("v") or ())
	except (KeyError, ValueError, TypeError, UnicodeError, binascii.Error) as exc:
		raise InvalidCursorError() from exc
	if nonce < 0 or page_index < 1:
		raise InvalidCursorError()
	return FeedCursor(
		session_id=session_id,
		refresh_nonce=nonce,
		page_index=page_index,
		last_post_key=last_key,
		served=served,
	)


__all__ = ["FeedCursor", "PostKey", "encode_cursor", "decode_cursor"]
