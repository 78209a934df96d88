import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from starlette.requests import HTTPConnection

from app.config import Settings
from app.database.connection import mongo_db_dependency
from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository
from app.repositories.user_repository import UserRepository
from app.services.chat_service import ChatService
from app.services.conversation_resolver import ConversationResolver
from app.services.fanout_service import RealtimeFanout
from app.services.message_store import MessageStore
from app.services.presence_service import PresenceRegistry
from app.utils.security import decode_access_token


logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class AuthenticationError(Exception):
    pass


def get_settings_from_app(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings


def get_registry(connection: HTTPConnection) -> PresenceRegistry:
    return connection.app.state.presence


def get_fanout(connection: HTTPConnection) -> RealtimeFanout:
    return connection.app.state.fanout


async def authenticate_token(token: Optional[str], db: AsyncIOMotorDatabase, settings: Settings) -> dict:
    """Resolve a bearer token to the provisioned user document."""
    if not token:
        raise AuthenticationError("Authentication token required")
    try:
        payload = decode_access_token(token, settings)
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError(f"Invalid token: {exc}") from exc
    user = await UserRepository(db).get_user_by_id(payload.sub)
    if not user:
        raise AuthenticationError("User not found in database")
    return user


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    db: AsyncIOMotorDatabase = Depends(mongo_db_dependency),
) -> dict:
    token = credentials.credentials if credentials else None
    try:
        return await authenticate_token(token, db, get_settings_from_app(request))
    except AuthenticationError as exc:
        logger.info("Rejected request to %s: %s", request.url.path, exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="You must be logged in to perform this action",
            headers={"WWW-Authenticate": "Bearer"},
        )


def get_chat_service(connection: HTTPConnection, db: AsyncIOMotorDatabase = Depends(mongo_db_dependency)) -> ChatService:
    convo_repo = ConversationRepository(db)
    msg_repo = MessageRepository(db)
    user_repo = UserRepository(db)
    return ChatService(
        store=MessageStore(convo_repo, msg_repo),
        resolver=ConversationResolver(convo_repo, user_repo),
        user_repo=user_repo,
        cache=connection.app.state.cache,
        fanout=get_fanout(connection),
    )
