"""Offer/answer/candidate negotiation for one two-party session.

Only the initiator creates an offer, and only after the relay reports that
both occupants are present. The responder stays passive until an offer
arrives. Remote candidates that arrive before any remote description are
staged in ``SessionState.candidate_buffer`` and applied, in arrival order,
right after the remote description lands; applying them earlier is rejected
by most transports.

Every coroutine re-reads the session state after each ``await``; a session
that was closed or failed in the meantime drops the rest of the step.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from ..schemas.signaling import Bye, IceCandidate, SessionDescription, SignalingMessage
from .errors import ChannelFailure, NegotiationStepFailure, PeerlinkError
from .rendezvous import ParticipantRole
from .transport import MediaTransport, TransportEvents

logger = logging.getLogger(__name__)


class NegotiationState(str, enum.Enum):
    IDLE = "idle"
    AWAITING_LOCAL_MEDIA = "awaiting_local_media"
    AWAITING_PEER = "awaiting_peer"
    OFFER_SENT = "offer_sent"
    OFFER_RECEIVED = "offer_received"
    ANSWER_SENT = "answer_sent"
    ANSWER_RECEIVED = "answer_received"
    CONNECTED = "connected"
    CLOSED = "closed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({NegotiationState.CLOSED, NegotiationState.FAILED})


@dataclass
class SessionState:
    """Everything one session knows about its negotiation."""

    room: str
    role: ParticipantRole | None = None
    client_id: str | None = None
    state: NegotiationState = NegotiationState.IDLE
    transport: MediaTransport | None = None
    remote_description_set: bool = False
    candidate_buffer: list[IceCandidate] = field(default_factory=list)
    offer_created: bool = False
    offers_received: int = 0
    answers_received: int = 0
    transport_connected: bool = False
    error: BaseException | None = None

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def assign_role(self, role: ParticipantRole) -> None:
        if self.role is not None and self.role is not role:
            raise RuntimeError(f"Role already assigned as {self.role.value}")
        self.role = role


SendMessage = Callable[[SignalingMessage], Awaitable[None]]
BuildTransport = Callable[[TransportEvents], MediaTransport]
TransitionListener = Callable[[NegotiationState, NegotiationState], None]


class NegotiationStateMachine:
    """Drive a :class:`MediaTransport` from relay events and transport callbacks."""

    def __init__(
        self,
        session: SessionState,
        send: SendMessage,
        build_transport: BuildTransport,
        *,
        on_track: Callable[[Any], None] | None = None,
        on_transition: TransitionListener | None = None,
    ) -> None:
        self.session = session
        self._send_message = send
        self._build_transport = build_transport
        self._on_track = on_track
        self._on_transition = on_transition
        self.finished = asyncio.Event()

    @property
    def state(self) -> NegotiationState:
        return self.session.state

    # ------------------------------------------------------------------
    # Session preparation
    # ------------------------------------------------------------------

    def await_local_media(self) -> None:
        if self.state is NegotiationState.IDLE:
            self._transition(NegotiationState.AWAITING_LOCAL_MEDIA)

    def await_peer(self) -> None:
        if self.state in (NegotiationState.IDLE, NegotiationState.AWAITING_LOCAL_MEDIA):
            self._transition(NegotiationState.AWAITING_PEER)

    def prepare_transport(self) -> MediaTransport:
        """Create the media transport on first use."""

        if self.session.terminal:
            raise RuntimeError(f"Session in room {self.session.room} is {self.state.value}; no transport")
        if self.session.transport is None:
            events = TransportEvents(
                on_local_candidate=self.on_local_candidate,
                on_connection_state=self.on_connection_state,
            )
            if self._on_track is not None:
                events.on_track = self._on_track
            self.session.transport = self._build_transport(events)
            logger.info("Peer connection created for room %s", self.session.room)
        return self.session.transport

    # ------------------------------------------------------------------
    # Relay-driven events
    # ------------------------------------------------------------------

    async def on_ready(self) -> None:
        """Both occupants are present; the initiator opens the handshake."""

        if self.session.terminal:
            return
        if self.session.role is not ParticipantRole.INITIATOR:
            logger.debug("Ready received as %s; waiting for an offer", self.session.role)
            return
        if self.state is not NegotiationState.AWAITING_PEER or self.session.offer_created:
            logger.debug("Ignoring ready in state %s", self.state.value)
            return

        self.session.offer_created = True
        logger.info("Creating an offer")
        try:
            transport = self.prepare_transport()
            offer = await transport.create_offer()
            if not self._still_current("create offer"):
                return
            local = await transport.set_local_description(offer)
        except Exception as exc:
            self._step_failed("create offer", exc)
            return
        if not self._still_current("set local offer"):
            return
        if await self._send(local):
            self._transition(NegotiationState.OFFER_SENT)

    async def handle_message(self, message: SignalingMessage) -> None:
        if self.session.terminal:
            logger.debug("Session already %s; ignoring %s", self.state.value, message.type)
            return
        if isinstance(message, Bye):
            logger.info("Session terminated by remote peer.")
            await self.close()
        elif isinstance(message, IceCandidate):
            await self._on_remote_candidate(message)
        elif message.type == "offer":
            await self._on_offer(message)
        else:
            await self._on_answer(message)

    async def _on_offer(self, offer: SessionDescription) -> None:
        if self.session.offers_received or self.state not in (
            NegotiationState.AWAITING_PEER,
            NegotiationState.OFFER_SENT,
        ):
            logger.warning("Ignoring offer in state %s; renegotiation is not supported", self.state.value)
            return

        self.session.offers_received += 1
        self._transition(NegotiationState.OFFER_RECEIVED)
        logger.info("Got offer. Sending answer to peer.")
        transport = self.prepare_transport()
        if not await self._apply_remote_description(transport, offer):
            return

        try:
            answer = await transport.create_answer()
            if not self._still_current("create answer"):
                return
            local = await transport.set_local_description(answer)
        except Exception as exc:
            self._step_failed("create answer", exc)
            return
        if not self._still_current("set local answer"):
            return
        if await self._send(local):
            self._transition(NegotiationState.ANSWER_SENT)
            if self.session.transport_connected:
                self._transition(NegotiationState.CONNECTED)

    async def _on_answer(self, answer: SessionDescription) -> None:
        if self.session.answers_received or self.state is not NegotiationState.OFFER_SENT:
            logger.warning("Ignoring answer in state %s", self.state.value)
            return

        self.session.answers_received += 1
        self._transition(NegotiationState.ANSWER_RECEIVED)
        logger.info("Got answer.")
        transport = self.prepare_transport()
        if await self._apply_remote_description(transport, answer):
            self._transition(NegotiationState.CONNECTED)

    async def _apply_remote_description(self, transport: MediaTransport, description: SessionDescription) -> bool:
        try:
            await transport.set_remote_description(description)
        except Exception as exc:
            self._step_failed(f"set remote {description.type}", exc)
            return False
        if not self._still_current(f"set remote {description.type}"):
            return False
        self.session.remote_description_set = True
        await self._drain_candidates(transport)
        return self._still_current("drain candidates")

    async def _on_remote_candidate(self, candidate: IceCandidate) -> None:
        if not self.session.remote_description_set:
            self.session.candidate_buffer.append(candidate)
            logger.debug("Buffered remote candidate (%d pending)", len(self.session.candidate_buffer))
            return
        await self._apply_candidate(self.prepare_transport(), candidate)

    async def _drain_candidates(self, transport: MediaTransport) -> None:
        pending, self.session.candidate_buffer = self.session.candidate_buffer, []
        if pending:
            logger.debug("Applying %d buffered remote candidate(s)", len(pending))
        for candidate in pending:
            if self.session.terminal:
                return
            await self._apply_candidate(transport, candidate)

    async def _apply_candidate(self, transport: MediaTransport, candidate: IceCandidate) -> None:
        try:
            await transport.add_remote_candidate(candidate)
        except Exception as exc:
            self._step_failed("add remote candidate", exc)

    # ------------------------------------------------------------------
    # Transport-driven events
    # ------------------------------------------------------------------

    async def on_local_candidate(self, candidate: IceCandidate | None) -> None:
        if candidate is None:
            logger.debug("End of candidates.")
            return
        if self.session.terminal:
            return
        await self._send(candidate)

    async def on_connection_state(self, state: str) -> None:
        if self.session.terminal:
            return
        if state == "failed":
            await self.fail(PeerlinkError("Media transport reported failure"))
        elif state == "closed":
            await self.close()
        elif state == "connected":
            self.session.transport_connected = True
            if self.state is NegotiationState.ANSWER_SENT:
                self._transition(NegotiationState.CONNECTED)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Tear down the transport and settle in CLOSED."""

        if self.session.terminal:
            return
        self._transition(NegotiationState.CLOSED)
        await self._teardown()

    async def fail(self, error: BaseException) -> None:
        if self.session.terminal:
            return
        self.session.error = error
        logger.error("Session in room %s failed: %s", self.session.room, error)
        self._transition(NegotiationState.FAILED)
        await self._teardown()

    async def _teardown(self) -> None:
        self.session.candidate_buffer.clear()
        transport, self.session.transport = self.session.transport, None
        if transport is None:
            return
        try:
            await transport.close()
        except Exception:
            logger.exception("Closing the media transport failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _send(self, message: SignalingMessage) -> bool:
        try:
            await self._send_message(message)
        except ChannelFailure as exc:
            await self.fail(exc)
            return False
        return True

    def _still_current(self, step: str) -> bool:
        if self.session.terminal:
            logger.debug("Session %s during %s; dropping the rest of the step", self.state.value, step)
            return False
        return True

    def _step_failed(self, step: str, exc: BaseException) -> None:
        failure = NegotiationStepFailure(step, exc)
        logger.warning("%s; negotiation stalls in state %s", failure, self.state.value, exc_info=exc)

    def _transition(self, new_state: NegotiationState) -> None:
        old_state = self.session.state
        if old_state is new_state:
            return
        self.session.state = new_state
        logger.info("Negotiation %s -> %s (room %s)", old_state.value, new_state.value, self.session.room)
        if new_state in TERMINAL_STATES:
            self.finished.set()
        if self._on_transition is not None:
            self._on_transition(old_state, new_state)
