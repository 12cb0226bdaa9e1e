import time
import uuid
from contextlib import asynccontextmanager

import structlog
import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from clusterdeck import __version__
from clusterdeck.api.router import api_router
from clusterdeck.config import get_settings
from clusterdeck.db import dispose_engine, init_db
from clusterdeck.dependencies import get_supervisor, get_vault
from clusterdeck.exceptions import register_exception_handlers
from clusterdeck.logging_config import setup_logging

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    setup_logging()

    vault_root = get_vault().ensure_root()
    await init_db()
    logger.info("app.started", env=settings.app_env, vault=str(vault_root), version=__version__)

    yield

    await get_supervisor().shutdown()
    await dispose_engine()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(
        title="ClusterDeck Control Plane",
        description="Local control plane for a Kubernetes desktop client",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.debug(
            "http.request",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round((time.perf_counter() - start) * 1000, 2),
        )
        return response

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router)

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve the control plane with uvicorn."""
    load_dotenv()
    get_settings.cache_clear()
    settings = get_settings()
    # Our own logging setup; keeps uvicorn's default log_config from overriding it
    setup_logging()
    uvicorn.run(
        "clusterdeck.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_debug,
        log_level=settings.log_level.lower(),
        log_config=None,
    )
