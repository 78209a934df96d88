from typing import Optional

from pydantic import BaseModel


class GetOrCreateConversationRequest(BaseModel):

    recipientId: str


class SendMessageRequest(BaseModel):

    recipientId: str
    text: str


class SocketEvent(BaseModel):
    """Client-to-server WebSocket frame."""

    event: str
    data: Optional[dict] = None
