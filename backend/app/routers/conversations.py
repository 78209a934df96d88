from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from app.schemas.chat import GetOrCreateConversationRequest
from app.services.chat_service import ChatService
from app.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.post("")
async def get_or_create_conversation(body: GetOrCreateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_or_create_conversation(current_user, body.recipientId)


@router.get("")
async def list_conversations(request: Request, limit: Optional[int] = Query(None, ge=1), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    settings = request.app.state.settings
    limit = min(limit or settings.conversations_page_size, settings.max_conversations_page_size)
    return await service.list_conversations(current_user, limit=limit, cursor=cursor)


@router.get("/{conversation_id}")
async def get_conversation(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.get_conversation(current_user, conversation_id)


@router.get("/{conversation_id}/messages")
async def list_messages(request: Request, conversation_id: str, limit: Optional[int] = Query(None, ge=1), cursor: Optional[str] = None, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    settings = request.app.state.settings
    limit = min(limit or settings.messages_page_size, settings.max_messages_page_size)
    return await service.list_messages(current_user, conversation_id, limit=limit, cursor=cursor)


@router.post("/{conversation_id}/read")
async def mark_conversation_read(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.mark_conversation_read(current_user, conversation_id)
