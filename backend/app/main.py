import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.config import Settings, get_settings
from app.database.connection import close_mongo_connection, connect_to_mongo
from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository
from app.routers.chat import router as chat_router
from app.routers.conversations import router as conversations_router
from app.routers.presence import router as presence_router
from app.services.cache_service import NoopConversationCache, RedisConversationCache
from app.services.fanout_service import RealtimeFanout
from app.services.presence_service import PresenceRegistry
from app.utils.exceptions import ChatError, InvalidInputError
from app.utils.logging_config import setup_logging
from app.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    db = await connect_to_mongo(settings)
    if settings.ensure_indexes:
        await ConversationRepository(db).ensure_indexes()
        await MessageRepository(db).ensure_indexes()
        logger.info("Direct messaging indexes ensured")
    if settings.redis_url:
        app.state.cache = RedisConversationCache.from_url(settings.redis_url, settings.cache_ttl_seconds)
        logger.info("Conversation cache enabled")
    try:
        yield
    finally:
        await app.state.cache.close()
        await close_mongo_connection()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.cache = NoopConversationCache()
    app.state.presence = PresenceRegistry()
    app.state.connections = ConnectionManager(app.state.presence)
    app.state.fanout = RealtimeFanout(app.state.connections, app.state.presence)

    @app.exception_handler(ChatError)
    async def chat_error_handler(request: Request, exc: ChatError):
        logger.info("%s %s rejected: %s %s", request.method, request.url.path, exc.code, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        # missing fields and out-of-range query values are invalid input like any other
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
        )
        logger.info("%s %s rejected: INVALID_INPUT %s", request.method, request.url.path, problems)
        return JSONResponse(status_code=400, content={"detail": problems, "code": InvalidInputError.code})

    app.include_router(conversations_router)
    app.include_router(chat_router)
    app.include_router(presence_router)

    @app.get("/health")
    async def health():
        return {"status": "ok", "cache": app.state.cache.enabled}

    return app


app = create_app()
