from typing import List, TypedDict


class MessageDocument(TypedDict, total=False):
    _id: str
    conversationId: str
    senderId: str
    text: str
    # user ids that have seen the message; the sender from creation on
    readBy: List[str]
    createdAt: str
