from __future__ import annotations

import uuid

from opentelemetry import trace
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.context import (
    reset_correlation_id,
    reset_organization_id,
    set_correlation_id,
    set_organization_id,
)


CORRELATION_HEADER = "x-correlation-id"
ORGANIZATION_HEADER = "x-organization-id"
MAX_CORRELATION_ID_LENGTH = 128


def _incoming_correlation_id(request: Request) -> str | None:
    raw = (request.headers.get(CORRELATION_HEADER) or "").strip()
    if not raw or len(raw) > MAX_CORRELATION_ID_LENGTH:
        return None
    return raw


def _incoming_organization_id(request: Request) -> str | None:
    raw = (request.headers.get(ORGANIZATION_HEADER) or "").strip()
    try:
        return str(uuid.UUID(raw)) if raw else None
    except ValueError:
        return None


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = _incoming_correlation_id(request) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        correlation_token = set_correlation_id(correlation_id)
        organization_token = set_organization_id(_incoming_organization_id(request))
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_organization_id(organization_token)
            reset_correlation_id(correlation_token)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
