"""Local HTTP control API over an AgentSession."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sparecompute import __version__
from sparecompute.connection import TransportError
from sparecompute.registration import RegistrationError
from sparecompute.schemas import (
    AgentStatus,
    ConnectResult,
    EarningsResponse,
    ErrorResponse,
    HealthResponse,
    SettingsResult,
    SettingsUpdate,
)
from sparecompute.session import AgentSession

logger = logging.getLogger(__name__)


def create_app(session: AgentSession, autostart: bool = True) -> FastAPI:
    """Build the control API for session.

    Args:
        session: The agent session the endpoints act on
        autostart: Run session.start() when the app starts up
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if autostart:
            await session.start()
        try:
            yield
        finally:
            await session.close()

    app = FastAPI(
        title="sparecompute agent",
        description="Control API for a local agent lending spare inference capacity to a broker",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.session = session

    @app.get("/status", response_model=AgentStatus, response_model_by_alias=True)
    async def status() -> AgentStatus:
        return session.get_status()

    @app.post("/connect", response_model=ConnectResult)
    async def connect() -> ConnectResult:
        try:
            return await session.connect()
        except (RegistrationError, TransportError) as e:
            logger.warning(f"Connect request failed: {e}")
            return ConnectResult(success=False, error=str(e))

    @app.post("/disconnect", response_model=ConnectResult)
    async def disconnect() -> ConnectResult:
        return await session.disconnect()

    @app.post("/settings", response_model=SettingsResult, response_model_by_alias=True)
    async def update_settings(update: SettingsUpdate) -> SettingsResult:
        return await session.update_settings(update)

    @app.get("/earnings", response_model=EarningsResponse, response_model_exclude_none=True)
    async def earnings() -> EarningsResponse:
        return await session.get_earnings()

    @app.get("/health", response_model=HealthResponse, response_model_by_alias=True)
    async def health() -> HealthResponse:
        return HealthResponse(
            state=session.state.value,
            local_endpoint=session.capability.local_endpoint,
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content=ErrorResponse(
                detail=str(exc),
                error_code="INTERNAL_ERROR",
            ).model_dump(),
        )

    return app
