"""Client side of the relay connection and the room-scoped signal channel."""
from __future__ import annotations

import asyncio
import enum
import json
import logging
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Union

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from ..schemas.signaling import (
    RelayEvent,
    RelayFrame,
    SignalingMessage,
    dump_signaling_message,
    parse_signaling_message,
)
from .errors import ChannelFailure

logger = logging.getLogger(__name__)

_CLOSED = object()


class RelayConnection:
    """Own one relay WebSocket and queue its frames in arrival order."""

    def __init__(self, ws: Any) -> None:
        self._ws = ws
        self._frames: asyncio.Queue[RelayFrame | object] = asyncio.Queue()
        self._reader: asyncio.Task[None] | None = None
        self._closed = False

    async def __aenter__(self) -> "RelayConnection":
        self._reader = asyncio.create_task(self._receive_loop())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, frame: RelayFrame) -> None:
        if self._closed:
            raise ChannelFailure("Relay connection is closed")
        logger.debug("Relay emit: %s", frame.event.value)
        try:
            await self._ws.send(json.dumps(frame.to_wire()))
        except ConnectionClosed as exc:
            self._closed = True
            raise ChannelFailure("Relay connection lost while sending") from exc

    async def next_frame(self) -> RelayFrame | None:
        """Return the next relay frame, or ``None`` once the relay has gone away."""

        if self._closed and self._frames.empty():
            return None
        item = await self._frames.get()
        if item is _CLOSED:
            self._closed = True
            return None
        return item  # type: ignore[return-value]

    async def close(self) -> None:
        self._closed = True
        if self._reader:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
            self._reader = None
        await self._ws.close()

    async def _receive_loop(self) -> None:
        try:
            async for message in self._ws:
                if isinstance(message, bytes):
                    continue
                try:
                    frame = RelayFrame.model_validate(json.loads(message))
                except (ValueError, ValidationError) as exc:
                    logger.warning("Skipping malformed relay frame: %s", exc)
                    continue
                logger.debug("Relay event: %s", frame.event.value)
                await self._frames.put(frame)
        except asyncio.CancelledError:
            raise
        except ConnectionClosed as exc:
            logger.warning("Relay connection dropped: %s", exc)
        finally:
            self._frames.put_nowait(_CLOSED)


@asynccontextmanager
async def connect_relay(url: str) -> AsyncIterator[RelayConnection]:
    """Open a relay connection for one session attempt."""

    try:
        ws = await websockets.connect(url)
    except (OSError, InvalidHandshake) as exc:
        raise ChannelFailure(f"Could not reach relay at {url}: {exc}") from exc
    async with RelayConnection(ws) as relay:
        yield relay


class RelaySignal(str, enum.Enum):
    """Room occupancy signals interleaved with the message stream."""

    READY = "ready"
    FULL = "full"


ChannelItem = Union[SignalingMessage, RelaySignal]


class SignalChannel:
    """Deliver signaling messages to the other occupant of one room."""

    def __init__(self, relay: RelayConnection, room: str) -> None:
        self._relay = relay
        self.room = room
        self._receiving = False

    async def send(self, message: SignalingMessage) -> None:
        payload = dump_signaling_message(message)
        logger.debug("Client sending message: %s", payload.get("type"))
        await self._relay.emit(RelayFrame(event=RelayEvent.MESSAGE, payload=payload))

    def receive(self) -> AsyncIterator[ChannelItem]:
        """Stream messages and relay signals for the rest of the session.

        The stream cannot be restarted; it ends when the relay goes away.
        """

        if self._receiving:
            raise RuntimeError("SignalChannel.receive() may only be consumed once")
        self._receiving = True
        return self._stream()

    async def _stream(self) -> AsyncIterator[ChannelItem]:
        while True:
            frame = await self._relay.next_frame()
            if frame is None:
                return
            if frame.event is RelayEvent.MESSAGE:
                try:
                    message = parse_signaling_message(frame.payload)
                except ValidationError as exc:
                    logger.warning("Dropping unreadable signaling message: %s", exc)
                    continue
                logger.debug("Client received message: %s", message.type)
                yield message
            elif frame.event is RelayEvent.READY:
                yield RelaySignal.READY
            elif frame.event is RelayEvent.FULL:
                yield RelaySignal.FULL
            elif frame.event is RelayEvent.LOG:
                logger.debug("Relay log: %s", " ".join(str(arg) for arg in frame.args or []))
            else:
                logger.debug("Ignoring %s outside rendezvous", frame.event.value)
