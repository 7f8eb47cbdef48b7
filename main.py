import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketauth.config import settings
from marketauth.database import Base, engine
from marketauth.exception_handlers import register_exception_handlers
from marketauth.middleware.logging import StructuredLoggingMiddleware, setup_structured_logging
from marketauth.routes import two_factor

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.debug:
        # Alembic owns the schema outside of debug runs
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")
    yield
    await engine.dispose()


def create_app() -> FastAPI:
    """Create the FastAPI application."""
    setup_structured_logging(log_level=settings.log_level, json_format=settings.log_json)

    app = FastAPI(
        title=settings.app_name,
        description="Two-factor authentication for the AZsubay.dev marketplace",
        debug=settings.debug,
        version=settings.app_version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Update with allowed origins in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(StructuredLoggingMiddleware)

    register_exception_handlers(app)

    app.include_router(two_factor.router, prefix="/api/auth/2fa")

    @app.get("/health", tags=["Health"])
    async def health() -> dict:
        return {"status": "ok", "version": settings.app_version}

    if settings.debug:
        logger.info(f"Running in {settings.environment} mode")
        logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO)

    return app


app = create_app()


if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.debug)
