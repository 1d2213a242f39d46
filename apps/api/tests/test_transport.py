"""Tests for local media acquisition and the aiortc transport adapter."""
from __future__ import annotations

from types import SimpleNamespace

import pytest

from fakes import FakeMediaSource, FakeTrack

from peerlink.schemas.signaling import IceCandidate
from peerlink.services import transport as transport_module
from peerlink.services.errors import MediaAcquisitionFailure
from peerlink.services.transport import AiortcTransport, LocalMedia, TransportEvents, acquire_local_media


@pytest.mark.asyncio
async def test_acquire_local_media_releases_exactly_once():
    source = FakeMediaSource()

    with pytest.raises(RuntimeError):
        async with acquire_local_media(source) as media:
            media.stop()
            raise RuntimeError("negotiation blew up")

    assert source.stop_counts == [1, 1]
    assert media.stopped


@pytest.mark.asyncio
async def test_acquire_local_media_wraps_source_errors():
    source = FakeMediaSource(error=PermissionError("NotAllowedError"))

    with pytest.raises(MediaAcquisitionFailure):
        async with acquire_local_media(source):
            pass


@pytest.mark.asyncio
async def test_open_local_media_uses_synthetic_tracks_without_device(monkeypatch):
    monkeypatch.setattr(transport_module.config.settings, "media_device", "")

    media = await transport_module.open_local_media()

    assert sorted(track.kind for track in media.tracks) == ["audio", "video"]
    media.stop()


@pytest.mark.asyncio
async def test_open_local_media_reports_unusable_device(monkeypatch):
    def broken_player(device: str, format: str | None = None):
        raise OSError(f"No such device: {device}")

    monkeypatch.setattr(transport_module.config.settings, "media_device", "/dev/video9")
    monkeypatch.setattr(transport_module, "MediaPlayer", broken_player)

    with pytest.raises(MediaAcquisitionFailure):
        await transport_module.open_local_media()


@pytest.mark.asyncio
async def test_open_local_media_wraps_player_tracks(monkeypatch):
    audio, video = FakeTrack("audio"), FakeTrack("video")
    monkeypatch.setattr(transport_module.config.settings, "media_device", "default")
    monkeypatch.setattr(
        transport_module,
        "MediaPlayer",
        lambda device, format=None: SimpleNamespace(audio=audio, video=video),
    )

    media = await transport_module.open_local_media()
    media.stop()
    media.stop()

    assert media.tracks == [audio, video]
    assert audio.stops == 1 and video.stops == 1


@pytest.mark.asyncio
async def test_aiortc_transport_offer_signals_end_of_candidates():
    reported: list[IceCandidate | None] = []

    async def on_local_candidate(candidate: IceCandidate | None) -> None:
        reported.append(candidate)

    media = LocalMedia(tracks=[transport_module.AudioStreamTrack()])
    transport = AiortcTransport(media, TransportEvents(on_local_candidate=on_local_candidate), ice_servers=[])
    try:
        offer = await transport.create_offer()
        local = await transport.set_local_description(offer)
    finally:
        await transport.close()
        media.stop()

    assert offer.type == "offer"
    assert local.type == "offer"
    assert "m=audio" in local.sdp
    assert reported == [None]


@pytest.mark.asyncio
async def test_aiortc_transport_strips_candidate_prefix():
    applied = []

    async def on_local_candidate(candidate: IceCandidate | None) -> None:
        return None

    transport = AiortcTransport(LocalMedia(), TransportEvents(on_local_candidate=on_local_candidate), ice_servers=[])

    async def add_ice_candidate(candidate) -> None:
        applied.append(candidate)

    transport._pc.addIceCandidate = add_ice_candidate
    try:
        await transport.add_remote_candidate(
            IceCandidate(
                candidate="candidate:842163049 1 udp 1677729535 192.0.2.10 46154 typ srflx",
                sdp_mid="0",
                sdp_mline_index=0,
            )
        )
        await transport.add_remote_candidate(IceCandidate(candidate="", sdp_mid="0", sdp_mline_index=0))
    finally:
        await transport.close()

    assert len(applied) == 1
    assert applied[0].ip == "192.0.2.10"
    assert applied[0].port == 46154
    assert applied[0].sdpMid == "0"
    assert applied[0].sdpMLineIndex == 0
