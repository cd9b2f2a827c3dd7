import logging
import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from promorang.core.errors import register_exception_handlers
from promorang.core.logging_config import setup_logging
from promorang.core.settings import settings
from promorang.db import init_db
from promorang.routers.admin import router as admin_router
from promorang.routers.analytics import router as analytics_router
from promorang.routers.auth import router as auth_router
from promorang.routers.content import router as content_router
from promorang.routers.drops import router as drops_router
from promorang.routers.economy import router as economy_router
from promorang.routers.growth_hub import router as growth_hub_router
from promorang.routers.health import router as health_router
from promorang.routers.leaderboard import router as leaderboard_router
from promorang.routers.partners import router as partners_router
from promorang.routers.payments import router as payments_router

logger = logging.getLogger("promorang.access")


def create_app(init_database: bool = True) -> FastAPI:
    setup_logging(settings.LOG_LEVEL)
    app = FastAPI(title=settings.APP_NAME)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("%s %s -> %s (%.1fms)", request.method, request.url.path, response.status_code, elapsed_ms)
        return response

    register_exception_handlers(app)

    if init_database:
        @app.on_event("startup")
        async def _startup():
            await init_db()

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(economy_router)
    app.include_router(content_router)
    app.include_router(drops_router)
    app.include_router(growth_hub_router)
    app.include_router(leaderboard_router)
    app.include_router(payments_router)
    app.include_router(analytics_router)
    app.include_router(partners_router)
    app.include_router(admin_router)

    return app
