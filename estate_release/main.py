# estate_release/main.py
import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from estate_release.database import SessionLocal, Settings, engine as default_engine, make_engine
from estate_release.database import settings as default_settings
from estate_release.init_db import init_database
from estate_release.services.container import ReleaseServices
from estate_release.services.errors import RateLimited, ReleaseError, TokenError

# Routers
from estate_release.routers import (
    switches_router, monitor_router, triggers_router, emergency_router, health_router
)

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[ReleaseServices] = None,
    start_background: bool = True,
) -> FastAPI:
    settings = settings or default_settings
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title="Estate Release API",
        description="Dead man's switch, trigger evaluation and emergency access for digital estates",
        version="1.0.0",
        debug=settings.debug,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    engine = None
    if services is None:
        if settings is default_settings:
            engine, session_factory = default_engine, SessionLocal
        else:
            engine = make_engine(settings.database_url)
            session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        services = ReleaseServices(settings, session_factory)
    app.state.services = services

    @app.exception_handler(ReleaseError)
    async def release_error_handler(request: Request, exc: ReleaseError):
        # token failures only ever expose their code
        detail = exc.code if isinstance(exc, TokenError) else exc.message
        headers = {}
        if isinstance(exc, RateLimited) and exc.retry_after_seconds:
            headers["Retry-After"] = str(int(exc.retry_after_seconds) + 1)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": detail, "error": exc.code},
            headers=headers,
        )

    # Mount router
    app.include_router(health_router)        # /healthz, /api/v1/health
    app.include_router(switches_router)      # /api/v1/dead-man-switch/...
    app.include_router(monitor_router)       # /api/v1/monitor/...
    app.include_router(triggers_router)      # /api/v1/triggers/...
    app.include_router(emergency_router)     # /api/v1/emergency/...

    # Startup: tables + background jobs
    @app.on_event("startup")
    async def _startup():
        if engine is not None:
            init_database(engine)
        if start_background:
            app.state.services.start()

    @app.on_event("shutdown")
    async def _shutdown():
        if start_background:
            app.state.services.shutdown()

    return app


app = create_app()
