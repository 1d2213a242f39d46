"""In-memory relay for two-party signaling rooms."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict

from pydantic import ValidationError

from ..core.config import settings
from ..schemas.signaling import Bye, RelayEvent, RelayFrame, dump_signaling_message

logger = logging.getLogger(__name__)

SendCallable = Callable[[dict], Awaitable[None]]


@dataclass(slots=True)
class SignalingConnection:
    """Connection wrapper for signaling participants."""

    connection_id: str
    send: SendCallable
    room: str | None = None


class JoinOutcome(str, enum.Enum):
    CREATED = "created"
    JOINED = "joined"
    FULL = "full"


class SignalingManager:
    """Track room occupancy and fan out messages between the two occupants."""

    def __init__(self, capacity: int = 2) -> None:
        self._capacity = capacity
        self._rooms: Dict[str, Dict[str, SignalingConnection]] = {}
        self._lock = asyncio.Lock()

    async def create_or_join(self, room: str, connection: SignalingConnection) -> JoinOutcome:
        """Place a connection in the room, or report that the room is full."""

        async with self._lock:
            participants = self._rooms.setdefault(room, {})
            current = participants.get(connection.connection_id)
            if current is connection:
                return JoinOutcome.CREATED if len(participants) == 1 else JoinOutcome.JOINED
            if current is not None or len(participants) >= self._capacity:
                return JoinOutcome.FULL
            participants[connection.connection_id] = connection
            connection.room = room
            return JoinOutcome.CREATED if len(participants) == 1 else JoinOutcome.JOINED

    async def occupants(self, room: str) -> list[str]:
        async with self._lock:
            return list(self._rooms.get(room, {}))

    async def leave(self, room: str, connection_id: str) -> None:
        """Remove a connection from the room, cleaning up empty rooms."""

        async with self._lock:
            participants = self._rooms.get(room)
            if not participants:
                return
            participants.pop(connection_id, None)
            if not participants:
                self._rooms.pop(room, None)

    async def broadcast(self, room: str, sender_id: str | None, message: dict) -> None:
        """Send a message to all participants in the room except the sender."""

        async with self._lock:
            participants = list(self._rooms.get(room, {}).values())

        if not participants:
            return

        tasks = [connection.send(message) for connection in participants if connection.connection_id != sender_id]
        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.warning("Relay delivery failed in room %s: %s", room, result)

    async def handle_frame(self, connection: SignalingConnection, data: Any) -> None:
        """Apply one client frame to the relay."""

        try:
            frame = RelayFrame.model_validate(data)
        except ValidationError as exc:
            logger.warning("Dropping malformed relay frame from %s: %s", connection.connection_id, exc)
            return

        if frame.event is RelayEvent.CREATE_OR_JOIN:
            await self._create_or_join(connection, frame.room)
        elif frame.event is RelayEvent.MESSAGE:
            if connection.room is None:
                logger.debug("Ignoring message from %s before it joined a room", connection.connection_id)
                return
            relayed = RelayFrame(event=RelayEvent.MESSAGE, payload=frame.payload)
            await self.broadcast(connection.room, connection.connection_id, relayed.to_wire())
        else:
            logger.debug("Ignoring %s frame from %s", frame.event.value, connection.connection_id)

    async def disconnect(self, connection: SignalingConnection) -> None:
        """Drop a connection and tell the remaining occupant its peer left."""

        room = connection.room
        if room is None:
            return
        connection.room = None
        await self.leave(room, connection.connection_id)
        notice = RelayFrame(event=RelayEvent.MESSAGE, payload=dump_signaling_message(Bye()))
        await self.broadcast(room, connection.connection_id, notice.to_wire())

    async def _create_or_join(self, connection: SignalingConnection, room: str | None) -> None:
        if not room:
            logger.warning("create-or-join without a room from %s", connection.connection_id)
            return
        if connection.room is not None and connection.room != room:
            logger.warning("%s is already in room %s", connection.connection_id, connection.room)
            return

        await connection.send(self._log_frame(f"Received request to create or join room {room}"))
        outcome = await self.create_or_join(room, connection)
        occupants = await self.occupants(room)
        logger.info("Room %s: %s %s (%d occupant(s))", room, connection.connection_id, outcome.value, len(occupants))

        if outcome is JoinOutcome.FULL:
            await connection.send(RelayFrame(event=RelayEvent.FULL, room=room).to_wire())
            return

        await connection.send(self._log_frame(f"Room {room} now has {len(occupants)} client(s)"))
        event = RelayEvent.CREATED if outcome is JoinOutcome.CREATED else RelayEvent.JOINED
        await connection.send(RelayFrame(event=event, room=room, client_id=connection.connection_id).to_wire())
        if outcome is JoinOutcome.JOINED:
            await self.broadcast(room, None, RelayFrame(event=RelayEvent.READY, room=room).to_wire())

    @staticmethod
    def _log_frame(text: str) -> dict:
        return RelayFrame(event=RelayEvent.LOG, args=["Message from server:", text]).to_wire()


manager = SignalingManager(capacity=settings.room_capacity)
