# main.py - Medical Equipment Enrollment API
# Features:
# - Request correlation IDs
# - Request-level timeout
# - Security headers
# - Uniform JSON error bodies
# - Health check with DB verification
# - All routers registered

import os
import math
import uuid
import time
import logging
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from database import init_db, close_db, get_db_session
from errors import AppError

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("medequip")

VERSION = "1.0.0"
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))


def _check_startup_config():
    """Validate critical configuration on startup."""
    warnings = []

    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_key or len(jwt_key) < 32:
        warnings.append(
            "JWT_SECRET_KEY is not set or shorter than 32 characters; "
            "generate one with secrets.token_urlsafe(48)"
        )

    if not os.getenv("DEVICE_API_KEY"):
        warnings.append(
            "DEVICE_API_KEY is not set; equipment discovery and webhook events will be rejected"
        )

    for w in warnings:
        logger.warning(w)

    return len(warnings) == 0


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting Medical Equipment API v{VERSION}...")
    await init_db()
    logger.info("Database initialized")
    _check_startup_config()
    yield
    logger.info("Shutting down Medical Equipment API...")
    await close_db()


app = FastAPI(
    title="Medical Equipment Enrollment API",
    description="Multi-tenant enrollment, licensing and monitoring of medical equipment",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173,http://localhost:8080"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-API-Key", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Request timeout
# ============================================================

class TimeoutMiddleware:
    """Cancel the handler when no response has started within the timeout.

    Once the response has started the deadline is lifted, so streaming
    bodies and background tasks run to completion.
    """

    def __init__(self, app):
        self.app = app

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        timeout = REQUEST_TIMEOUT_SECONDS
        response_started = False
        cancel_scope = anyio.CancelScope(deadline=anyio.current_time() + timeout)

        async def send_wrapper(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
                cancel_scope.deadline = math.inf
            await send(message)

        with cancel_scope:
            await self.app(scope, receive, send_wrapper)

        if cancel_scope.cancelled_caught and not response_started:
            logger.error(f"{scope['method']} {scope['path']} timed out after {timeout}s")
            response = JSONResponse(status_code=504, content={"msg": "Request timed out"})
            await response(scope, receive, send)


app.add_middleware(TimeoutMiddleware)


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    return response


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_content())


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"msg": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", [])]
        errors.append({
            "msg": str(err.get("msg", "")),
            "param": ".".join(loc[1:]) or (loc[0] if loc else None),
            "location": loc[0] if loc else None,
        })
    return JSONResponse(status_code=400, content={"errors": errors})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(
        f"Unhandled exception [rid={getattr(request.state, 'request_id', '-')}]: {exc}",
        exc_info=True,
    )
    return JSONResponse(status_code=500, content={"msg": "Server Error"})


# ============================================================
# ROUTERS
# ============================================================

from routers import (  # noqa: E402
    auth, equipment, organizations, roles, users,
    modules, subscriptions, webhooks, reports,
)

app.include_router(auth.router)
app.include_router(equipment.router)
app.include_router(organizations.router)
app.include_router(roles.router)
app.include_router(users.router)
app.include_router(modules.router)
app.include_router(subscriptions.router)
app.include_router(webhooks.router)
app.include_router(reports.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "Medical Equipment Enrollment API",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "status": "operational",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
