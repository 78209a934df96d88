import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.database.connection import mongo_db_dependency
from app.repositories.conversation_repository import ConversationRepository
from app.repositories.message_repository import MessageRepository
from app.schemas.chat import SendMessageRequest, SocketEvent
from app.services.chat_service import ChatService
from app.services.fanout_service import RealtimeFanout
from app.services.message_store import MessageStore
from app.services.presence_service import PresenceRegistry, conversation_room, inbox_room
from app.utils.dependencies import AuthenticationError, authenticate_token, get_chat_service, get_current_user
from app.utils.exceptions import ChatError
from app.utils.security import bearer_token
from app.utils.websocket_manager import ConnectionManager


logger = logging.getLogger(__name__)

router = APIRouter(tags=["chat"])

TYPING_EVENTS = {"typing_start": True, "typing_stop": False}


@router.post("/messages")
async def send_message(body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    return await service.send_message(current_user, body.recipientId, body.text)


@router.websocket("/ws")
async def direct_message_socket(websocket: WebSocket, db = Depends(mongo_db_dependency)):
    state = websocket.app.state
    registry: PresenceRegistry = state.presence
    manager: ConnectionManager = state.connections
    fanout: RealtimeFanout = state.fanout

    connection = registry.open()
    # token via ?token=... or an Authorization header
    token = websocket.query_params.get("token") or bearer_token(websocket.headers.get("authorization"))
    try:
        user = await authenticate_token(token, db, state.settings)
    except AuthenticationError as exc:
        logger.warning("[WS] Authentication failed: %s", exc)
        registry.reject(connection.id)
        await websocket.close(code=4401)
        return

    user_id = user["_id"]
    await websocket.accept()
    registry.bind(connection.id, user_id)
    manager.attach(connection.id, websocket)
    store = MessageStore(ConversationRepository(db), MessageRepository(db))
    try:
        conversation_ids = await ConversationRepository(db).list_ids_for_user(user_id)
        registry.subscribe(
            connection.id,
            [inbox_room(user_id)] + [conversation_room(cid) for cid in conversation_ids],
        )
        logger.info("[WS] User %s connected as %s (%d conversation room(s))", user_id, connection.id, len(conversation_ids))
        await manager.send_personal_message(connection.id, "connected", {"userId": user_id, "connectionId": connection.id})
        await fanout.on_presence(user_id, True, connection.rooms, exclude=connection.id)

        while True:
            raw = await websocket.receive_text()
            await _handle_client_event(raw, connection.id, user_id, store, registry, manager, fanout)
    except WebSocketDisconnect:
        pass
    finally:
        manager.detach(connection.id)
        closed = registry.unbind(connection.id)
        logger.info("[WS] User %s disconnected (%s)", user_id, connection.id)
        if closed is not None and not registry.is_online(user_id):
            await fanout.on_presence(user_id, False, closed.rooms)


async def _send_error(manager: ConnectionManager, connection_id: str, code: str, message: str) -> None:
    await manager.send_personal_message(connection_id, "error", {"code": code, "message": message})


async def _handle_client_event(
    raw: str,
    connection_id: str,
    user_id: str,
    store: MessageStore,
    registry: PresenceRegistry,
    manager: ConnectionManager,
    fanout: RealtimeFanout,
) -> None:
    try:
        frame = SocketEvent.model_validate_json(raw)
    except ValidationError:
        await _send_error(manager, connection_id, "INVALID_INPUT", "Invalid event payload")
        return
    data = frame.data or {}
    conversation_id = data.get("conversationId")

    if frame.event == "join_conversation":
        try:
            await store.get_conversation_for(conversation_id, user_id)
        except ChatError as exc:
            await _send_error(manager, connection_id, exc.code, exc.message)
            return
        registry.join(connection_id, conversation_room(conversation_id))
        await manager.send_personal_message(connection_id, "conversation_joined", {"conversationId": conversation_id})
        return

    if frame.event == "leave_conversation":
        if conversation_id:
            registry.leave(connection_id, conversation_room(conversation_id))
        await manager.send_personal_message(connection_id, "conversation_left", {"conversationId": conversation_id})
        return

    if frame.event in TYPING_EVENTS:
        if not conversation_id or not registry.in_room(connection_id, conversation_room(conversation_id)):
            await _send_error(manager, connection_id, "FORBIDDEN", "Not subscribed to this conversation")
            return
        await fanout.on_typing(conversation_id, user_id, TYPING_EVENTS[frame.event], exclude=connection_id)
        return

    await _send_error(manager, connection_id, "INVALID_INPUT", f"Unknown event: {frame.event}")
