"""Media transport boundary.

The negotiation core only talks to :class:`MediaTransport`. The shipped
implementation wraps an aiortc ``RTCPeerConnection``; tests plug in fakes.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack
from aiortc.sdp import candidate_from_sdp

from ..core import config
from ..schemas.signaling import IceCandidate, SessionDescription
from .errors import MediaAcquisitionFailure

logger = logging.getLogger(__name__)

CandidateHandler = Callable[[IceCandidate | None], Awaitable[None]]
StateHandler = Callable[[str], Awaitable[None]]
TrackHandler = Callable[[Any], None]


async def _ignore_state(state: str) -> None:
    return None


def _ignore_track(track: Any) -> None:
    return None


@dataclass(slots=True)
class TransportEvents:
    """Callbacks a transport fires back into the session."""

    on_local_candidate: CandidateHandler
    on_connection_state: StateHandler = _ignore_state
    on_track: TrackHandler = _ignore_track


class MediaTransport(abc.ABC):
    """Peer-to-peer media transport treated as a black box."""

    @abc.abstractmethod
    async def create_offer(self) -> SessionDescription: ...

    @abc.abstractmethod
    async def create_answer(self) -> SessionDescription: ...

    @abc.abstractmethod
    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        """Apply our description and return it as it should be sent to the peer."""

    @abc.abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None: ...

    @abc.abstractmethod
    async def add_remote_candidate(self, candidate: IceCandidate) -> None: ...

    @abc.abstractmethod
    async def close(self) -> None: ...


@dataclass
class LocalMedia:
    """Audio and video capture handle for one session."""

    tracks: list[Any] = field(default_factory=list)
    player: Any = None
    _stopped: bool = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            track.stop()
        logger.debug("Local media released")


MediaSource = Callable[[], Awaitable[LocalMedia]]
TransportFactory = Callable[[LocalMedia, TransportEvents], MediaTransport]


async def open_local_media() -> LocalMedia:
    """Open the configured capture device, or synthetic tracks when none is set."""

    settings = config.settings
    if not settings.media_device:
        return LocalMedia(tracks=[AudioStreamTrack(), VideoStreamTrack()])

    try:
        player = await asyncio.to_thread(MediaPlayer, settings.media_device, format=settings.media_format)
    except Exception as exc:
        raise MediaAcquisitionFailure(f"Could not open {settings.media_device}: {exc}") from exc

    tracks = [track for track in (player.audio, player.video) if track is not None]
    if not tracks:
        raise MediaAcquisitionFailure(f"{settings.media_device} has neither audio nor video")
    return LocalMedia(tracks=tracks, player=player)


@asynccontextmanager
async def acquire_local_media(source: MediaSource) -> AsyncIterator[LocalMedia]:
    """Hold local media for the duration of a session; released exactly once."""

    try:
        media = await source()
    except MediaAcquisitionFailure:
        raise
    except Exception as exc:
        raise MediaAcquisitionFailure(str(exc)) from exc
    try:
        yield media
    finally:
        media.stop()


class AiortcTransport(MediaTransport):
    """``RTCPeerConnection``-backed transport.

    aiortc gathers every local candidate while the local description is being
    applied and embeds them in the SDP, so end-of-candidates is reported right
    after ``set_local_description``.
    """

    def __init__(self, media: LocalMedia, events: TransportEvents, ice_servers: list[str] | None = None) -> None:
        if ice_servers is None:
            ice_servers = config.settings.ice_servers
        configuration = None
        if ice_servers:
            configuration = RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])
        self._pc = RTCPeerConnection(configuration=configuration)
        self._events = events

        for track in media.tracks:
            self._pc.addTrack(track)

        @self._pc.on("track")
        def on_track(track: Any) -> None:
            logger.info("Remote %s track added", track.kind)
            events.on_track(track)

        @self._pc.on("connectionstatechange")
        async def on_connection_state() -> None:
            logger.info("Connection state is %s", self._pc.connectionState)
            await events.on_connection_state(self._pc.connectionState)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type="offer", sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type="answer", sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        local = self._pc.localDescription
        await self._events.on_local_candidate(None)
        return SessionDescription(type=local.type, sdp=local.sdp)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        sdp = candidate.candidate
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        if not sdp:
            return
        ice = candidate_from_sdp(sdp)
        ice.sdpMid = candidate.sdp_mid
        ice.sdpMLineIndex = candidate.sdp_mline_index
        await self._pc.addIceCandidate(ice)

    async def close(self) -> None:
        await self._pc.close()


def aiortc_transport(media: LocalMedia, events: TransportEvents) -> MediaTransport:
    return AiortcTransport(media, events)
