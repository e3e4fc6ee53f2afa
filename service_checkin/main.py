from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import Base, engine
from .observability import RequestTimingLoggingMiddleware, add_exception_handlers
from .routers import attendance as attendance_router
from .routers import health
from .routers import members as members_router
from .routers import public as public_router
from .routers import services as services_router


# Ensure schema is present when the module is imported (helps tests using TestClient without lifespan)
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Initialize database schema on startup
    Base.metadata.create_all(bind=engine)
    settings = get_settings()
    if settings.token_store_backend == "redis":
        from .redis_conn import ping_redis

        if not ping_redis():
            logging.getLogger(__name__).warning("redis not reachable at startup; token issuance will fail until it is")
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
    application = FastAPI(title="Service Check-in API", version="0.1.0", lifespan=lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.add_middleware(RequestTimingLoggingMiddleware)

    add_exception_handlers(application)

    # Routers
    application.include_router(health.router)
    application.include_router(members_router.router)
    application.include_router(services_router.router)
    application.include_router(attendance_router.router)
    application.include_router(public_router.router)

    return application


app = create_app()
