"""
In-process presence and room registry for live WebSocket connections.

Every method is synchronous and never awaits, so each call runs atomically on
the event loop; handlers of many connections can interleave freely without a
lock. The registry holds one process's connections only: fanning out across
several server instances needs a shared implementation of the same interface.
"""

import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set


logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    AUTHENTICATED = "authenticated"
    SUBSCRIBED = "subscribed"
    DISCONNECTED = "disconnected"


_TRANSITIONS = {
    ConnectionState.CONNECTING: {ConnectionState.AUTHENTICATED, ConnectionState.DISCONNECTED},
    ConnectionState.AUTHENTICATED: {ConnectionState.SUBSCRIBED, ConnectionState.DISCONNECTED},
    ConnectionState.SUBSCRIBED: {ConnectionState.DISCONNECTED},
    ConnectionState.DISCONNECTED: set(),
}


def inbox_room(user_id: str) -> str:
    return f"dm:{user_id}"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


@dataclass
class Connection:
    id: str
    state: ConnectionState = ConnectionState.CONNECTING
    user_id: Optional[str] = None
    rooms: Set[str] = field(default_factory=set)


class InvalidTransition(RuntimeError):
    pass


class PresenceRegistry:

    def __init__(self) -> None:
        self._connections: Dict[str, Connection] = {}
        self._user_connection: Dict[str, str] = {}
        self._rooms: Dict[str, Set[str]] = {}

    def _transition(self, connection: Connection, target: ConnectionState) -> None:
        if target not in _TRANSITIONS[connection.state]:
            raise InvalidTransition(f"{connection.id}: {connection.state.value} -> {target.value}")
        connection.state = target

    def open(self) -> Connection:
        connection = Connection(id=uuid.uuid4().hex)
        self._connections[connection.id] = connection
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def reject(self, connection_id: str) -> None:
        """Failed authentication: straight to DISCONNECTED, no rooms joined."""
        connection = self._connections.pop(connection_id, None)
        if connection is not None:
            self._transition(connection, ConnectionState.DISCONNECTED)

    def bind(self, connection_id: str, user_id: str) -> Connection:
        connection = self._connections[connection_id]
        self._transition(connection, ConnectionState.AUTHENTICATED)
        connection.user_id = user_id
        previous = self._user_connection.get(user_id)
        if previous and previous != connection_id:
            logger.info("User %s reconnected; %s replaces %s", user_id, connection_id, previous)
        self._user_connection[user_id] = connection_id
        return connection

    def subscribe(self, connection_id: str, rooms: Iterable[str]) -> None:
        connection = self._connections[connection_id]
        self._transition(connection, ConnectionState.SUBSCRIBED)
        for room in rooms:
            self.join(connection_id, room)

    def join(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is None or connection.state == ConnectionState.DISCONNECTED:
            return
        connection.rooms.add(room)
        self._rooms.setdefault(room, set()).add(connection_id)

    def leave(self, connection_id: str, room: str) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.rooms.discard(room)
        members = self._rooms.get(room)
        if members is not None:
            members.discard(connection_id)
            if not members:
                del self._rooms[room]

    def unbind(self, connection_id: str) -> Optional[Connection]:
        """Drop the connection from every room and from the user mapping.

        Returns the closed connection; its ``rooms`` still lists what it had
        joined so callers can notify those rooms.
        """
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        for room in list(connection.rooms):
            members = self._rooms.get(room)
            if members is not None:
                members.discard(connection_id)
                if not members:
                    del self._rooms[room]
        if connection.user_id and self._user_connection.get(connection.user_id) == connection_id:
            del self._user_connection[connection.user_id]
        self._transition(connection, ConnectionState.DISCONNECTED)
        return connection

    def members(self, room: str) -> List[str]:
        return list(self._rooms.get(room, ()))

    def rooms_for(self, user_id: str) -> Set[str]:
        connection_id = self._user_connection.get(user_id)
        if connection_id is None:
            return set()
        return set(self._connections[connection_id].rooms)

    def connection_for(self, user_id: str) -> Optional[str]:
        return self._user_connection.get(user_id)

    def is_online(self, user_id: str) -> bool:
        return user_id in self._user_connection

    def in_room(self, connection_id: str, room: str) -> bool:
        return connection_id in self._rooms.get(room, ())
