# =============================================
# File: bazaar/main.py
# Purpose: FastAPI application: routers, request logging/metrics middleware
#          and the error envelope
# =============================================
from __future__ import annotations

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from .db.repo import init_db
from .routers import auth, deps, interactions, metrics, products, push, recommend, search
from .services.gate import GATE
from .utils import slog
from .utils.errors import AppError, Internal, RateLimited, RequestCancelled, envelope
from .utils.logging import configure_logging
from .utils.metrics import record_endpoint, record_request

SESSION_HEADER = "X-Session-Id"


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    init_db()
    logger.info("[app] started")
    yield
    logger.info("[app] stopped")


app = FastAPI(
    title="Bazaar Recommendation & Engagement API",
    lifespan=lifespan,
)


@app.middleware("http")
async def _logging_middleware(request: Request, call_next):
    start = time.perf_counter()
    req_id = slog.new_request_id()
    client_ip = deps.client_ip(request)

    verdict = GATE.inspect(request.headers, client_ip, request.headers.get(SESSION_HEADER))
    request.state.is_bot = verdict.is_bot
    request.state.log_context = {"is_bot": verdict.is_bot}
    if verdict.is_bot:
        request.state.log_context["bot_signals"] = list(verdict.signals)

    try:
        response = await call_next(request)
    except Exception as e:
        latency_ms = int((time.perf_counter() - start) * 1000)
        ctx = getattr(request.state, "log_context", {})
        slog.log_event(
            "request.error",
            request_id=req_id,
            path=str(request.url.path),
            method=request.method,
            latency_ms=latency_ms,
            client_ip=client_ip,
            error=str(e),
            **(ctx or {}),
        )
        raise
    latency_ms = int((time.perf_counter() - start) * 1000)
    ctx = getattr(request.state, "log_context", {}) or {}
    ctx.setdefault("rate_limited", response.status_code == 429)
    slog.finalize_request_log(
        request_id=req_id,
        method=request.method,
        path=str(request.url.path),
        status=response.status_code,
        latency_ms=latency_ms,
        client_ip=client_ip,
        ctx=ctx,
    )
    # --- metrics wiring ---
    record_request(latency_ms=latency_ms, strategy=ctx.get("strategy"), is_bot=verdict.is_bot)
    route = request.scope.get("route")
    record_endpoint(method=request.method, path=getattr(route, "path", str(request.url.path)), latency_ms=latency_ms)

    decision = getattr(request.state, "rate_decision", None)
    if decision is not None and response.status_code != 429:
        for name, value in decision.headers().items():
            response.headers[name] = value
    response.headers["X-Request-ID"] = req_id
    return response


# --------- Error envelope ---------

@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    headers = {}
    if exc.retry_after is not None and exc.status_code in (429, 504):
        headers["Retry-After"] = str(exc.retry_after)
    if isinstance(exc, RateLimited):
        headers["RateLimit-Limit"] = str(exc.details.get("limit", ""))
        headers["RateLimit-Remaining"] = "0"
        headers["RateLimit-Reset"] = str(exc.details.get("reset", exc.retry_after))
    if not exc.is_operational:
        logger.error(f"[app] internal error on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=envelope(exc), headers=headers)


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    where = ".".join(str(p) for p in first.get("loc", ()) if p not in ("body", "query", "path"))
    message = first.get("msg", "Invalid request")
    body = {"status": "error", "message": f"{where}: {message}" if where else message, "code": "validation_error"}
    return JSONResponse(status_code=400, content=body)


@app.exception_handler(StarletteHTTPException)
async def _http_error(request: Request, exc: StarletteHTTPException):
    body = {"status": "error", "message": str(exc.detail), "code": f"http_{exc.status_code}"}
    return JSONResponse(status_code=exc.status_code, content=body, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestCancelled)
async def _cancelled(request: Request, exc: RequestCancelled):
    return JSONResponse(
        status_code=499,
        content={"status": "error", "message": "Client closed request", "code": "request_cancelled"},
    )


@app.exception_handler(Exception)
async def _unexpected(request: Request, exc: Exception):
    logger.exception(f"[app] unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content=envelope(Internal(str(exc))))


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(products.router)
app.include_router(recommend.router)
app.include_router(search.router)
app.include_router(interactions.router)
app.include_router(auth.router)
app.include_router(push.router)
app.include_router(metrics.router)
