"""
CallTrack — dealership call attribution service

App assembly: logging, request ids, error handlers, routers and the
background retry scheduler.

Business Rules:
- Every response carries X-Request-ID; log lines inside a request are
  tagged with the same id
- CallTrackError subclasses map to their status code with an ErrorResponse
  body; request validation failures are 400
- The scheduler is not started under TESTING

Called by: uvicorn calltrack.main:app
Depends on: config, logging_config, routers/, scheduler
"""

import asyncio
import os
import uuid
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .database import get_db
from .exceptions import CallTrackError
from .http_client import close_clients
from .logging_config import setup_logging
from .routers import numbers, twilio
from .schemas.errors import ErrorResponse
from .schemas.responses import HealthResponse


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    task = None
    if not os.environ.get("TESTING"):
        from .scheduler import start_scheduler

        task = asyncio.create_task(start_scheduler())
    logger.info("CallTrack {} started", __version__)
    yield
    if task is not None:
        task.cancel()
    await close_clients()


app = FastAPI(title="CallTrack", version=__version__, lifespan=lifespan)


# ── Middleware ────────────────────────────────────────────────────────


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    request.state.request_id = request_id
    with logger.contextualize(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "")


def _error(request: Request, status_code: int, message: str, detail=None) -> JSONResponse:
    body = ErrorResponse(
        error=message, status_code=status_code, request_id=_request_id(request), detail=detail
    )
    return JSONResponse(body.model_dump(), status_code=status_code)


# ── Exception Handlers ────────────────────────────────────────────────


@app.exception_handler(CallTrackError)
async def calltrack_error_handler(request: Request, exc: CallTrackError):
    if exc.status_code >= 500:
        logger.error("{} {} failed: {}", request.method, request.url.path, exc.message)
    else:
        logger.info("{} {} rejected ({}): {}", request.method, request.url.path, exc.status_code, exc.message)
    return _error(request, exc.status_code, exc.message, exc.detail)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    detail = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
        for e in exc.errors()
    ]
    return _error(request, 400, "Validation failed", detail)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return _error(request, exc.status_code, str(exc.detail))


# ── Health ────────────────────────────────────────────────────────────


@app.get("/healthz", response_model=HealthResponse)
async def healthz():
    return HealthResponse()


@app.get("/readyz", response_model=HealthResponse)
async def readyz(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.warning("Readiness check failed: {}", e)
        return JSONResponse(
            HealthResponse(status="unavailable", checks={"database": "error"}).model_dump(),
            status_code=503,
        )
    return HealthResponse(checks={"database": "ok"})


app.include_router(numbers.router)
app.include_router(twilio.router)
