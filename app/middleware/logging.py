"""structlog setup and the per-request logging middleware.

Every request gets an ``x-request-id`` (taken from the caller or generated)
bound into the structlog context, so the workflow services' log lines for a
batch transition can be joined with the HTTP access line that caused them.
"""

from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Any

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import LogFormat, Settings, get_settings

_BATCH_PATH = re.compile(r"/batches/(?P<batch_id>[0-9a-fA-F-]{36})(?:/|$)")
_PROBE_PATHS = frozenset({"/health", "/health/ready"})

_configured = False


def configure_structured_logging(settings: Settings | None = None) -> None:
	"""Configure stdlib + structlog once per API process."""
	global _configured
	if _configured:
		return

	settings = settings or get_settings()
	log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

	processors: list[Any] = [
		structlog.contextvars.merge_contextvars,
		structlog.processors.add_log_level,
		structlog.processors.TimeStamper(fmt="iso", utc=True),
		structlog.processors.StackInfoRenderer(),
		structlog.processors.format_exc_info,
	]
	if settings.log_format == LogFormat.json:
		logging.basicConfig(level=log_level, format="%(message)s")
		processors.append(structlog.processors.JSONRenderer(ensure_ascii=False))
	else:
		logging.basicConfig(level=log_level)
		processors.append(structlog.dev.ConsoleRenderer())

	structlog.configure(
		processors=processors,
		wrapper_class=structlog.make_filtering_bound_logger(log_level),
		logger_factory=structlog.PrintLoggerFactory(),
		cache_logger_on_first_use=True,
	)
	_configured = True


def request_context(request: Request, request_id: str) -> dict[str, str]:
	"""Context vars bound for the lifetime of one request."""
	bound = {"request_id": request_id}
	found = _BATCH_PATH.search(request.url.path)
	if found:
		bound["batch_id"] = found.group("batch_id").lower()
	return bound


class RequestLoggingMiddleware(BaseHTTPMiddleware):
	"""Propagate request IDs and emit one access line per request.

	Health probes are logged at debug level so orchestrator polling does not
	drown the batch workflow lines.
	"""

	async def dispatch(self, request: Request, call_next):  # type: ignore[override]
		request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
		request.state.request_id = request_id

		structlog.contextvars.clear_contextvars()
		structlog.contextvars.bind_contextvars(**request_context(request, request_id))

		logger = structlog.get_logger("cheese.request")
		started = time.perf_counter()

		try:
			response = await call_next(request)
		except Exception:
			logger.exception(
				"request_failed",
				method=request.method,
				path=request.url.path,
				duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
			)
			raise

		response.headers["x-request-id"] = request_id
		emit = logger.debug if request.url.path in _PROBE_PATHS else logger.info
		emit(
			"request_completed",
			method=request.method,
			path=request.url.path,
			status_code=response.status_code,
			duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
		)
		return response
