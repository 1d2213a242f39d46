"""Room rendezvous: find out whether we opened the room, joined it, or were turned away."""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from ..schemas.signaling import RelayEvent, RelayFrame
from .channel import RelayConnection
from .errors import ChannelFailure

logger = logging.getLogger(__name__)


class ParticipantRole(str, enum.Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class RendezvousResult(str, enum.Enum):
    CREATED = "created"
    JOINED = "joined"
    FULL = "full"


@dataclass(slots=True, frozen=True)
class Rendezvous:
    result: RendezvousResult
    room: str
    client_id: str | None = None

    @property
    def role(self) -> ParticipantRole | None:
        """First occupant offers, second occupant answers, a third has no role."""

        if self.result is RendezvousResult.CREATED:
            return ParticipantRole.INITIATOR
        if self.result is RendezvousResult.JOINED:
            return ParticipantRole.RESPONDER
        return None


_OUTCOMES = {
    RelayEvent.CREATED: RendezvousResult.CREATED,
    RelayEvent.JOINED: RendezvousResult.JOINED,
    RelayEvent.FULL: RendezvousResult.FULL,
}


class RoomRendezvous:
    """Register with the relay's room registry under a room token."""

    def __init__(self, relay: RelayConnection) -> None:
        self._relay = relay

    async def join(self, room: str) -> Rendezvous:
        await self._relay.emit(RelayFrame(event=RelayEvent.CREATE_OR_JOIN, room=room))
        logger.info("Attempted to create or join room %s", room)

        while True:
            frame = await self._relay.next_frame()
            if frame is None:
                raise ChannelFailure(f"Relay closed before answering create-or-join for room {room}")
            if frame.event is RelayEvent.LOG:
                logger.debug("Relay log: %s", " ".join(str(arg) for arg in frame.args or []))
                continue
            outcome = _OUTCOMES.get(frame.event)
            if outcome is None:
                logger.debug("Ignoring %s while waiting for room %s", frame.event.value, room)
                continue
            if frame.room and frame.room != room:
                logger.debug("Ignoring %s for room %s while joining %s", frame.event.value, frame.room, room)
                continue
            rendezvous = Rendezvous(result=outcome, room=room, client_id=frame.client_id)
            logger.info("Room %s: %s (client id %s)", room, outcome.value, frame.client_id)
            return rendezvous
