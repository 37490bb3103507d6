from contextlib import asynccontextmanager
from typing import List
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dojo_notices.core.config import settings
from dojo_notices.db.database import connect_to_mongo, close_mongo_connection, ensure_indexes, get_database
from dojo_notices.routers.main import api_router
import logging

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


def allowed_origins() -> List[str]:
    """Any origin in development, the configured list elsewhere."""
    if settings.ENVIRONMENT == "development":
        return ["*"]
    return list(settings.BACKEND_CORS_ORIGINS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open MongoDB and its notice indexes for the lifetime of the app."""
    await connect_to_mongo()
    await ensure_indexes(await get_database())
    logger.info(f"{settings.PROJECT_NAME} {settings.VERSION} ready ({settings.ENVIRONMENT})")
    try:
        yield
    finally:
        await close_mongo_connection()
        logger.info(f"{settings.PROJECT_NAME} stopped")


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        version=settings.VERSION,
        description=settings.DESCRIPTION,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )

    origins = allowed_origins()
    # browsers reject credentials with a wildcard origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["GET", "POST", "PATCH"],
        allow_headers=["*"],
    )
    app.include_router(api_router, prefix=settings.API_V1_STR)

    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": settings.PROJECT_NAME, "version": settings.VERSION}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "dojo_notices.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.ENVIRONMENT == "development",
    )
