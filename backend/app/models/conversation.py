from typing import Dict, List, Optional, TypedDict


class LastMessageSnapshot(TypedDict):
    text: str
    senderId: str
    timestamp: str


class ParticipantState(TypedDict):
    userId: str
    unreadCount: int
    lastReadAt: str


class ConversationDocument(TypedDict, total=False):
    _id: str
    # sorted pair of user ids
    participants: List[str]
    # "<minId>:<maxId>", unique
    pairKey: str
    participantState: Dict[str, ParticipantState]
    lastMessage: Optional[LastMessageSnapshot]
    createdAt: str
    updatedAt: str
