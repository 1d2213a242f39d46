"""Test doubles shared by the negotiation and session tests."""
from __future__ import annotations

import asyncio
import itertools
import json
from contextlib import asynccontextmanager
from typing import AsyncIterator

from peerlink.schemas.signaling import IceCandidate, SessionDescription
from peerlink.services.channel import RelayConnection
from peerlink.services.signaling import SignalingConnection, SignalingManager
from peerlink.services.transport import LocalMedia, MediaTransport, TransportEvents


class FakeTransport(MediaTransport):
    """Behaves like a real peer connection for ordering purposes.

    Applying a remote candidate before a remote description raises, and the
    transport reports ``connected`` once both descriptions are in place.
    """

    def __init__(
        self,
        events: TransportEvents,
        name: str = "peer",
        *,
        local_candidates: list[IceCandidate] | None = None,
        fail_on: set[str] | None = None,
    ) -> None:
        self.events = events
        self.name = name
        self.local_candidates = local_candidates or []
        self.fail_on = fail_on or set()
        self.calls: list[str] = []
        self.applied: list[str] = []
        self.local: SessionDescription | None = None
        self.remote: SessionDescription | None = None
        self.offer_gate: asyncio.Event | None = None
        self.closed = False

    def _check(self, step: str) -> None:
        self.calls.append(step)
        if step in self.fail_on:
            raise RuntimeError(f"{step} rejected")

    async def create_offer(self) -> SessionDescription:
        self._check("create_offer")
        if self.offer_gate is not None:
            await self.offer_gate.wait()
        return SessionDescription(type="offer", sdp=f"v=0 offer from {self.name}")

    async def create_answer(self) -> SessionDescription:
        self._check("create_answer")
        return SessionDescription(type="answer", sdp=f"v=0 answer from {self.name}")

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        self._check("set_local_description")
        self.local = description
        for candidate in self.local_candidates:
            await self.events.on_local_candidate(candidate)
        await self.events.on_local_candidate(None)
        await self._maybe_connected()
        return description

    async def set_remote_description(self, description: SessionDescription) -> None:
        self._check("set_remote_description")
        self.remote = description
        await self._maybe_connected()

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        self._check("add_remote_candidate")
        if self.remote is None:
            raise RuntimeError("remote description not set")
        self.applied.append(candidate.candidate)

    async def close(self) -> None:
        self.calls.append("close")
        self.closed = True

    async def _maybe_connected(self) -> None:
        if self.local is not None and self.remote is not None:
            await self.events.on_connection_state("connected")


class FakeTrack:
    def __init__(self, kind: str) -> None:
        self.kind = kind
        self.stops = 0

    def stop(self) -> None:
        self.stops += 1


class FakeMediaSource:
    """Hands out capture handles and remembers them for release checks."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.gate: asyncio.Event | None = None
        self.opened: list[LocalMedia] = []

    async def __call__(self) -> LocalMedia:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        media = LocalMedia(tracks=[FakeTrack("audio"), FakeTrack("video")])
        self.opened.append(media)
        return media

    @property
    def stop_counts(self) -> list[int]:
        return [track.stops for media in self.opened for track in media.tracks]


class TransportRecorder:
    """Transport factory that keeps every transport it builds."""

    def __init__(self, name: str, **kwargs) -> None:
        self.name = name
        self.kwargs = kwargs
        self.built: list[FakeTransport] = []

    def __call__(self, media: LocalMedia, events: TransportEvents) -> FakeTransport:
        transport = FakeTransport(events, self.name, **self.kwargs)
        self.built.append(transport)
        return transport


def candidate(value: str, index: int = 0) -> IceCandidate:
    return IceCandidate(candidate=f"candidate:{value} 1 udp 2122260223 10.0.0.{index + 1} 5000{index} typ host", sdp_mid="0", sdp_mline_index=0)


class LoopbackSocket:
    """Client-side socket wired straight into a SignalingManager."""

    def __init__(self, manager: SignalingManager, client_id: str) -> None:
        self._manager = manager
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self.connection = SignalingConnection(connection_id=client_id, send=self._deliver)
        self.closed = False

    async def _deliver(self, message: dict) -> None:
        await self._inbox.put(json.dumps(message))

    async def send(self, data: str) -> None:
        await self._manager.handle_frame(self.connection, json.loads(data))

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        await self._manager.disconnect(self.connection)
        self.drop()

    def drop(self) -> None:
        """Simulate the relay connection going away."""

        self._inbox.put_nowait(None)

    def __aiter__(self) -> "LoopbackSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class LoopbackRelay:
    """Stand-in for ``connect_relay`` that talks to an in-process manager."""

    def __init__(self, manager: SignalingManager | None = None) -> None:
        self.manager = manager or SignalingManager()
        self.sockets: list[LoopbackSocket] = []
        self._ids = itertools.count(1)

    @asynccontextmanager
    async def connect(self, url: str) -> AsyncIterator[RelayConnection]:
        ws = LoopbackSocket(self.manager, f"client-{next(self._ids)}")
        self.sockets.append(ws)
        async with RelayConnection(ws) as relay:
            yield relay


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)
