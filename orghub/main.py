import os
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from .config import settings
from .db import Base, engine
from .errors import OrgHubError, StorageError
from .logging import setup_logging, RequestIdMiddleware
from .ratelimit import limiter
from .auth.router import router as auth_router
from .routes.users import router as users_router
from .routes.roles import router as roles_router


logger = structlog.get_logger(__name__)


async def orghub_error_handler(request: Request, exc: OrgHubError) -> JSONResponse:
    headers = {}
    if isinstance(exc, StorageError):
        headers["Retry-After"] = "1"
    if exc.status_code >= 500:
        logger.error("request_failed", path=request.url.path, error=exc.kind, message=exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


def create_app() -> FastAPI:
    setup_logging()
    app = FastAPI(title=settings.app_name)

    # Middlewares
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_middleware(SlowAPIMiddleware)

    app.add_exception_handler(OrgHubError, orghub_error_handler)

    # Routers
    app.include_router(auth_router)
    app.include_router(users_router)
    app.include_router(roles_router)

    @app.get("/healthz")
    def healthz():
        return {"status": "ok", "environment": settings.environment}

    # Metrics
    Instrumentator().instrument(app).expose(app)

    @app.on_event("startup")
    def _startup():
        # Ensure local SQLite directory exists
        if settings.database_url.startswith("sqlite:///./"):
            os.makedirs("var", exist_ok=True)
        if settings.auto_create_db:
            Base.metadata.create_all(bind=engine)
            logger.info("tables_verified", tables=len(Base.metadata.tables))

    return app


app = create_app()
