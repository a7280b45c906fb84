"""JSON logging for the feed service.

Every line carries the service identity plus whatever request context is
bound (request id, viewer, session). ``extra={...}`` fields are merged in
after redaction and truncation.
"""

from __future__ import annotations

import json
import logging
import random
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from vroom_feed.settings import settings

_CONTEXT: ContextVar[Mapping[str, str]] = ContextVar("vroom_log_context", default={})

_REDACT = ("token", "secret", "authorization", "password", "email")
_MAX_TEXT = 256
_MAX_ITEMS = 12

_STANDARD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime", "taskName"}


def bind_context(**fields: Optional[str]) -> Token:
	"""Layer ``fields`` over the current context; undo with ``reset_context``."""

	merged = dict(_CONTEXT.get())
	merged.update({key: value for key, value in fields.items() if value is not None})
	return _CONTEXT.set(merged)


def reset_context(token: Token) -> None:
	_CONTEXT.reset(token)


def get_request_id(default: str = "unknown") -> str:
	return _CONTEXT.get().get("request_id") or default


def _clean(key: str, value: Any) -> Any:
	if any(word in key.lower() for word in _REDACT):
		return "[redacted]"
	if isinstance(value, str):
		return value if len(value) <= _MAX_TEXT else value[:_MAX_TEXT] + "..."
	if isinstance(value, datetime):
		return value.isoformat()
	if isinstance(value, Mapping):
		items = list(value.items())
		cleaned = {str(k): _clean(str(k), v) for k, v in items[:_MAX_ITEMS]}
		if len(items) > _MAX_ITEMS:
			cleaned["_truncated"] = len(items) - _MAX_ITEMS
		return cleaned
	if isinstance(value, (list, tuple, set, frozenset)):
		values = [_clean(key, item) for item in list(value)[:_MAX_ITEMS]]
		if len(value) > _MAX_ITEMS:
			values.append(f"+{len(value) - _MAX_ITEMS}")
		return values
	return value


class JSONLogFormatter(logging.Formatter):
	def format(self, record: logging.LogRecord) -> str:  # noqa: A003
		line: Dict[str, Any] = {
			"ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
			"level": record.levelname.lower(),
			"msg": record.getMessage(),
			"logger": record.name,
			"service": settings.service_name,
			"env": settings.environment,
			"commit": settings.git_commit,
		}
		line.update(_CONTEXT.get())
		for key, value in vars(record).items():
			if key not in _STANDARD_ATTRS and key not in line:
				line[key] = _clean(key, value)
		if record.exc_info:
			line["exc_info"] = self.formatException(record.exc_info)
		return json.dumps(line, separators=(",", ":"), default=str)


class InfoSamplingFilter(logging.Filter):
	"""Keep a fraction of INFO lines; everything else passes."""

	def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
		if record.levelno != logging.INFO:
			return True
		rate = settings.obs_log_sampling_rate_info
		return rate >= 1.0 or random.random() < max(0.0, rate)


def configure_logging() -> None:
	handler = logging.StreamHandler()
	handler.setFormatter(JSONLogFormatter())
	handler.addFilter(InfoSamplingFilter())
	root = logging.getLogger()
	root.handlers[:] = [handler]
	root.setLevel(settings.obs_log_level)
