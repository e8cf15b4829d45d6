from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from clinic_checkin.exceptions import (
    AmbiguousCheckInInput,
    CheckInError,
    InvalidStatusTransition,
    NoMatchFound,
    QueueEntryNotFound,
    QueueStoreUnavailable,
    RegistryUnavailable,
)

from .config import Settings, get_settings
from .deps import build_services
from .routes import checkins, health, queue

logger = logging.getLogger("clinic_checkin.api")

_STATUS_BY_ERROR = (
    (AmbiguousCheckInInput, status.HTTP_404_NOT_FOUND),
    (NoMatchFound, status.HTTP_404_NOT_FOUND),
    (QueueEntryNotFound, status.HTTP_404_NOT_FOUND),
    (InvalidStatusTransition, status.HTTP_409_CONFLICT),
    (RegistryUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (QueueStoreUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def _status_for(exc: CheckInError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_400_BAD_REQUEST


async def _checkin_error_handler(_request: Request, exc: CheckInError) -> JSONResponse:
    code = _status_for(exc)
    if code >= 500:
        logger.error("Check-in backend unavailable: %s", exc)
    body = {"detail": str(exc)}
    if isinstance(exc, AmbiguousCheckInInput):
        body["searched"] = exc.searched
    return JSONResponse(status_code=code, content=body)


def create_app(settings: Optional[Settings] = None, extractor=None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level)
    services = build_services(settings, extractor=extractor)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.sessions.stop_all()
        services.db.dispose()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(CheckInError, _checkin_error_handler)

    app.include_router(health.router, prefix=settings.api_prefix)
    app.include_router(checkins.router, prefix=settings.api_prefix)
    app.include_router(queue.router, prefix=settings.api_prefix)
    return app
