"""Session lifecycle: rendezvous, local media, negotiation and teardown."""
from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from typing import Any, AsyncIterator, Callable

from ..core import config
from ..core.config import Settings
from ..schemas.signaling import Bye
from .channel import ChannelItem, RelaySignal, SignalChannel, connect_relay
from .errors import ChannelFailure, MediaAcquisitionFailure, NegotiationTimeout, RendezvousFull
from .negotiation import NegotiationState, NegotiationStateMachine, SessionState
from .rendezvous import ParticipantRole, Rendezvous, RendezvousResult, RoomRendezvous
from .rooms import new_room_token
from .transport import (
    LocalMedia,
    MediaSource,
    MediaTransport,
    TransportEvents,
    TransportFactory,
    acquire_local_media,
    aiortc_transport,
    open_local_media,
)

logger = logging.getLogger(__name__)

Notifier = Callable[[str], None]


def _log_notice(text: str) -> None:
    logger.warning(text)


def _log_remote_track(track: Any) -> None:
    logger.info("Remote stream added.")


class PeerSession:
    """Run one two-party session from room entry to teardown.

    A full room restarts the whole flow under a fresh room token. Local media
    is held for the lifetime of one attempt and released exactly once however
    the attempt ends.
    """

    def __init__(
        self,
        *,
        room: str | None = None,
        relay_url: str | None = None,
        media_source: MediaSource | None = None,
        transport_factory: TransportFactory | None = None,
        notify: Notifier | None = None,
        on_remote_track: Callable[[Any], None] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or config.settings
        self.room = room or new_room_token()
        self.relay_url = relay_url or self._settings.relay_url
        self._media_source = media_source or open_local_media
        self._transport_factory = transport_factory or aiortc_transport
        self._notify = notify or _log_notice
        self._on_remote_track = on_remote_track or _log_remote_track
        self.rejected_rooms: list[str] = []
        self.session: SessionState | None = None
        self.machine: NegotiationStateMachine | None = None
        self._channel: SignalChannel | None = None
        self._media: LocalMedia | None = None
        self._deadline: float | None = None

    async def run(self) -> NegotiationState:
        """Drive the session until it closes or fails; returns the final state."""

        for _ in range(self._settings.max_room_attempts):
            session = self.session = SessionState(room=self.room)
            self.machine = None
            self._channel = None
            self._deadline = None
            try:
                async with connect_relay(self.relay_url) as relay:
                    channel = self._channel = SignalChannel(relay, self.room)
                    machine = self.machine = self._new_machine(session, channel)
                    rendezvous = await RoomRendezvous(relay).join(self.room)
                    if rendezvous.result is RendezvousResult.FULL:
                        self._restart_with_new_room()
                        continue
                    return await self._run_attempt(session, machine, channel, rendezvous)
            except ChannelFailure as exc:
                logger.error("Relay failure in room %s: %s", self.room, exc)
                if self.machine is None:
                    self.machine = self._new_machine(session, None)
                await self.machine.fail(exc)
                return session.state
        raise RendezvousFull(self.rejected_rooms[-1])

    async def hangup(self) -> None:
        """Leave the session: tell the peer, then close locally."""

        machine = self.machine
        if machine is None or machine.session.terminal:
            return
        if self._channel is not None:
            try:
                await self._channel.send(Bye())
            except ChannelFailure as exc:
                logger.warning("Could not send bye: %s", exc)
        await machine.close()

    def _new_machine(self, session: SessionState, channel: SignalChannel | None) -> NegotiationStateMachine:
        async def send(message: Any) -> None:
            if channel is None:
                raise ChannelFailure("No relay connection")
            await channel.send(message)

        return NegotiationStateMachine(
            session,
            send,
            self._build_transport,
            on_track=self._on_remote_track,
            on_transition=self._on_transition,
        )

    def _build_transport(self, events: TransportEvents) -> MediaTransport:
        if self._media is None:
            raise RuntimeError("Media transport requested before local media was ready")
        return self._transport_factory(self._media, events)

    def _restart_with_new_room(self) -> None:
        rejected = self.room
        self.rejected_rooms.append(rejected)
        self._notify(f"Room {rejected} is full. We will create a new room for you.")
        self.room = new_room_token(exclude=rejected)
        logger.info("Restarting session in room %s", self.room)

    async def _run_attempt(
        self,
        session: SessionState,
        machine: NegotiationStateMachine,
        channel: SignalChannel,
        rendezvous: Rendezvous,
    ) -> NegotiationState:
        if session.terminal:
            return session.state
        role = ParticipantRole.INITIATOR if rendezvous.result is RendezvousResult.CREATED else ParticipantRole.RESPONDER
        session.assign_role(role)
        session.client_id = rendezvous.client_id
        logger.info("Joined room %s as %s", session.room, role.value)

        machine.await_local_media()
        try:
            async with acquire_local_media(self._media_source) as media:
                self._media = media
                try:
                    if session.terminal:
                        logger.info("Session in room %s ended while acquiring media", session.room)
                        return session.state
                    machine.await_peer()
                    if role is ParticipantRole.RESPONDER:
                        try:
                            machine.prepare_transport()
                        except Exception as exc:
                            logger.exception("Failed to create peer connection")
                            await machine.fail(exc)
                            return session.state
                    await self._pump(machine, channel.receive())
                finally:
                    await machine.close()
        except MediaAcquisitionFailure as exc:
            self._notify(f"Could not access camera or microphone: {exc}")
            await machine.fail(exc)
        finally:
            self._media = None
        return session.state

    async def _pump(self, machine: NegotiationStateMachine, stream: AsyncIterator[ChannelItem]) -> None:
        finished = asyncio.create_task(machine.finished.wait())
        next_item: asyncio.Future[ChannelItem] | None = None
        try:
            while not machine.session.terminal:
                if next_item is None:
                    next_item = asyncio.ensure_future(anext(stream))
                done, _ = await asyncio.wait(
                    {next_item, finished},
                    timeout=self._remaining(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    if self._handshake_expired():
                        await machine.fail(NegotiationTimeout(f"Handshake in room {machine.session.room} timed out"))
                        break
                    continue
                if next_item not in done:
                    continue
                try:
                    item = next_item.result()
                except StopAsyncIteration:
                    await machine.fail(ChannelFailure("Relay connection lost"))
                    break
                next_item = None
                await self._dispatch(machine, item)
        finally:
            for task in (next_item, finished):
                if task is not None and not task.done():
                    task.cancel()
                    with suppress(asyncio.CancelledError, StopAsyncIteration):
                        await task

    async def _dispatch(self, machine: NegotiationStateMachine, item: ChannelItem) -> None:
        if item is RelaySignal.READY:
            await machine.on_ready()
        elif item is RelaySignal.FULL:
            logger.warning("Relay reported room %s full mid-session; ignoring", machine.session.room)
        else:
            await machine.handle_message(item)

    def _arm_handshake_timer(self) -> None:
        timeout = self._settings.handshake_timeout_seconds
        if timeout > 0 and self._deadline is None:
            self._deadline = asyncio.get_running_loop().time() + timeout

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - asyncio.get_running_loop().time())

    def _handshake_expired(self) -> bool:
        return self._deadline is not None and asyncio.get_running_loop().time() >= self._deadline

    def _on_transition(self, old: NegotiationState, new: NegotiationState) -> None:
        if new in (NegotiationState.OFFER_SENT, NegotiationState.OFFER_RECEIVED):
            self._arm_handshake_timer()
        elif new is NegotiationState.CONNECTED:
            self._deadline = None
