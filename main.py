"""
FormSync submission fan-out service — application entry point.
"""

from __future__ import annotations

import logging
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware import register_middleware
from api.routes import router as api_router
from config.settings import config
from connectors.registry import ConnectorRegistry
from connectors.routes import router as connectors_router
from connectors.token_manager import SqlCredentialStore
from core.fanout_factory import build_fanout
from database.helpers import SqlSubmissionRepository
from database.session import dispose_engine

logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s  %(levelname)-8s  %(name)s — %(message)s",
    stream=sys.stdout,
)
for _noisy in ("httpcore", "httpx", "urllib3", "hpack"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)
logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(
        title="FormSync",
        version="1.0.0",
        description="Form submission fan-out to Google Sheets, Calendar, Drive and email.",
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_middleware(app)

    # Routes
    app.include_router(api_router, prefix="/api/v1")
    app.include_router(connectors_router, prefix="/api/v1/connectors")

    @app.on_event("startup")
    async def on_startup():
        logger.info("Discovering connectors…")
        ConnectorRegistry().discover()

        credential_store = SqlCredentialStore()
        repository = SqlSubmissionRepository()
        app.state.credential_store = credential_store
        app.state.repository = repository
        app.state.fanout = build_fanout(credential_store, repository)

        if not config.resend_api_key:
            logger.warning("RESEND_API_KEY not set — email notifications will be skipped")

        logger.info("Application ready to accept submissions.")

    @app.on_event("shutdown")
    async def on_shutdown():
        fanout = getattr(app.state, "fanout", None)
        if fanout is not None:
            await fanout.supervisor.drain(timeout=config.delivery_timeout_seconds + 5)
        await dispose_engine()

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level="debug" if config.debug else "info",
    )
