"""
Request pipeline.

Order of stages for every request:

    correlation id -> CORS headers -> (OPTIONS: 200, stop) -> bearer auth -> role gate -> handler

The first three stages live in RequestPipelineMiddleware. Authentication
and the role gate are FastAPI dependencies; ``require_role`` depends on
``require_auth`` so the role is only read from a verified token.
"""

import logging
import time
from typing import Callable, Dict, Optional

from fastapi import Depends, Header, Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from context import RequestContext
from errors import Forbidden, Unauthorized
from metrics import Metrics

logger = logging.getLogger(__name__)

ALLOWED_METHODS = "GET, POST, OPTIONS, PUT, DELETE"
ALLOWED_HEADERS = "Content-Type, Authorization"


def cors_headers(allow_origin: str) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": allow_origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": ALLOWED_METHODS,
        "Access-Control-Allow-Headers": ALLOWED_HEADERS,
    }


class RequestPipelineMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, allow_origin: str = "*", metrics: Optional[Metrics] = None):
        super().__init__(app)
        self.cors = cors_headers(allow_origin)
        self.metrics = metrics

    async def dispatch(self, request: Request, call_next) -> Response:
        ctx = RequestContext.new()
        request.state.context = ctx
        log = ctx.bind(logger)
        log.info("Request received: %s %s from %s", request.method, request.url.path, _client(request))
        started = time.perf_counter()

        if request.method == "OPTIONS":
            response = Response(status_code=200)
        else:
            try:
                response = await call_next(request)
            except Exception:
                log.exception("Unhandled error: %s %s", request.method, request.url.path)
                response = JSONResponse({"detail": "internal server error"}, status_code=500)

        response.headers.update(self.cors)
        response.headers["X-Request-ID"] = ctx.request_id

        elapsed = time.perf_counter() - started
        route = request.scope.get("route")
        path = getattr(route, "path", "unmatched")
        if self.metrics is not None:
            self.metrics.observe_request(request.method, path, response.status_code, elapsed)
        log.info(
            "Request completed: %s %s -> %d (%.1f ms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed * 1000,
        )
        return response


def _client(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def request_context(request: Request) -> RequestContext:
    ctx = getattr(request.state, "context", None)
    if ctx is None:
        ctx = RequestContext.new()
        request.state.context = ctx
    return ctx


def require_auth(request: Request, authorization: Optional[str] = Header(default=None)) -> RequestContext:
    ctx = request_context(request)
    log = ctx.bind(logger)

    if not authorization:
        log.warning("Authorization header is required")
        raise Unauthorized("Authorization header is required")

    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        log.warning("Invalid Authorization header format")
        raise Unauthorized("Invalid Authorization header format")

    claims = request.app.state.tokens.validate(parts[1])
    ctx = ctx.authenticated(claims)
    request.state.context = ctx
    log.info("Token valid for user ID %d", claims.account_id)
    return ctx


def require_role(*roles: str) -> Callable[..., RequestContext]:
    def role_dependency(ctx: RequestContext = Depends(require_auth)) -> RequestContext:
        if ctx.role not in roles:
            ctx.bind(logger).warning("User ID %s with role %r denied; requires %s", ctx.account_id, ctx.role, roles)
            raise Forbidden("Insufficient permissions")
        return ctx

    return role_dependency


require_admin = require_role("admin")
