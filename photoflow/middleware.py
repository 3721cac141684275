"""HTTP middleware: request correlation ids and request latency."""

import uuid
from time import perf_counter

from fastapi import FastAPI, Request

from photoflow.logging_config import request_id_ctx
from photoflow.metrics import api_request_latency_seconds

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128

# Held open for a whole client session, so a latency sample says nothing.
STREAMING_PATHS = frozenset({"/api/events"})


def _request_id(request: Request) -> str:
    incoming = request.headers.get(REQUEST_ID_HEADER, "").strip()
    if incoming and len(incoming) <= MAX_REQUEST_ID_LENGTH:
        return incoming
    return uuid.uuid4().hex


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


def register_middleware(app: FastAPI) -> None:
    """Tag every request with a correlation id and time the non-streaming ones."""

    @app.middleware("http")
    async def photo_request_middleware(request: Request, call_next):
        rid = _request_id(request)
        token = request_id_ctx.set(rid)
        timed = request.url.path not in STREAMING_PATHS
        start = perf_counter()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[REQUEST_ID_HEADER] = rid
            return response
        finally:
            if timed:
                api_request_latency_seconds.labels(
                    method=request.method,
                    path=_route_template(request),
                    status_code=str(status_code),
                ).observe(perf_counter() - start)
            request_id_ctx.reset(token)
