from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from relay_chat.api.deps import get_verifier
from relay_chat.api.v1.routers import health, messages, ws
from relay_chat.application.exceptions import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from relay_chat.application.repositories.message import MessageStore
from relay_chat.config import Settings, settings
from relay_chat.infrastructure.store.memory import InMemoryMessageStore
from relay_chat.infrastructure.store.redis_store import RedisMessageStore
from relay_chat.infrastructure.ws.gateway import Gateway
from relay_chat.services.message_pipeline import MutationPipeline
from relay_chat.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


def _build_store(app: FastAPI, cfg: Settings) -> MessageStore:
    if cfg.MESSAGE_STORE == "redis":
        app.state.redis = aioredis.from_url(cfg.REDIS_URL, decode_responses=True)
        logger.info("Using Redis message store at %s", cfg.REDIS_URL)
        return RedisMessageStore(app.state.redis, cfg.REDIS_KEY_PREFIX)
    app.state.redis = None
    logger.info("Using in-memory message store")
    return InMemoryMessageStore()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle."""
    gateway: Gateway = app.state.gateway
    gateway.start_cleanup(settings.RATE_LIMIT_CLEANUP_SECONDS)

    yield

    await gateway.stop_cleanup()
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis connection pool closed")


def create_app(store: MessageStore | None = None) -> FastAPI:
    app = FastAPI(
        title="Relay Chat",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if store is None:
        store = _build_store(app, settings)
    else:
        app.state.redis = None
    app.state.store = store
    app.state.gateway = Gateway(
        get_verifier(),
        MutationPipeline(store, max_length=settings.MAX_MESSAGE_LENGTH),
        RateLimiter(settings.rate_limits, settings.RATE_LIMIT_WINDOW_SECONDS),
    )

    _register_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(messages.router)
    app.include_router(ws.router)

    return app


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(NotFoundError)
    async def _not_found(_req: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": exc.detail})

    @app.exception_handler(ForbiddenError)
    async def _forbidden(_req: Request, exc: ForbiddenError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"detail": exc.detail})

    @app.exception_handler(AuthError)
    async def _unauthorized(_req: Request, exc: AuthError) -> JSONResponse:
        return JSONResponse(status_code=401, content={"detail": exc.detail})

    @app.exception_handler(ValidationError)
    async def _validation(_req: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": exc.detail})
