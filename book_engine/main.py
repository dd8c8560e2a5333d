"""
FastAPI application entry point for the Book Assignment Engine API.

Configures logging and CORS, manages the database pool through the lifespan
handler, and registers the assignment router.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from book_engine import __version__
from book_engine.api.assignments import router as assignments_router
from book_engine.core.config import get_settings
from book_engine.core.database import close_db, init_db
from book_engine.services.persistence import ensure_schema

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Open the database pool and create the assignment tables on startup; close
    the pool on shutdown.

    Startup continues without a pool: runs that do not persist still work.
    """
    logger.info("Book Assignment Engine API starting")
    try:
        await init_db()
        await ensure_schema()
        logger.info("Database connection pool initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")

    yield

    logger.info("Book Assignment Engine API shutting down")
    try:
        await close_db()
        logger.info("Database connection pool closed")
    except Exception as e:
        logger.error(f"Error closing database pool: {e}")


app = FastAPI(
    title="Book Assignment Engine API",
    version=__version__,
    description=(
        "Assigns sales accounts to representatives with a priority waterfall "
        "or a relaxed global optimization."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(assignments_router, prefix="/assignments", tags=["assignments"])


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring and load balancer health checks."""
    return {"status": "healthy"}


@app.get("/")
async def root():
    return {
        "name": "Book Assignment Engine API",
        "version": __version__,
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


# Run with uvicorn when executed directly
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "book_engine.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
