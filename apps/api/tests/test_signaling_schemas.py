"""Tests for signaling payload parsing and serialisation."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from peerlink.schemas.signaling import (
    Bye,
    IceCandidate,
    RelayEvent,
    RelayFrame,
    SessionDescription,
    dump_signaling_message,
    parse_signaling_message,
)


def test_parse_description():
    message = parse_signaling_message({"type": "offer", "sdp": "v=0"})

    assert message == SessionDescription(type="offer", sdp="v=0")


def test_parse_candidate_with_relay_keys():
    message = parse_signaling_message(
        {"type": "candidate", "label": 1, "id": "video", "candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host"}
    )

    assert isinstance(message, IceCandidate)
    assert message.sdp_mline_index == 1
    assert message.sdp_mid == "video"


def test_parse_candidate_with_browser_keys():
    message = parse_signaling_message(
        {"type": "candidate", "sdpMLineIndex": 0, "sdpMid": "0", "candidate": "candidate:2 1 udp 1 10.0.0.2 5000 typ host"}
    )

    assert isinstance(message, IceCandidate)
    assert message.sdp_mline_index == 0
    assert message.sdp_mid == "0"


@pytest.mark.parametrize("payload", ["bye", " BYE ", {"type": "bye"}])
def test_parse_bye(payload):
    assert parse_signaling_message(payload) == Bye()


@pytest.mark.parametrize(
    "payload",
    [
        {"type": "pranswer", "sdp": "v=0"},
        {"type": "offer"},
        {"type": "candidate", "label": 0},
        "hello",
        None,
    ],
)
def test_parse_rejects_unknown_payloads(payload):
    with pytest.raises(ValidationError):
        parse_signaling_message(payload)


def test_dump_candidate_uses_wire_keys():
    message = IceCandidate(candidate="candidate:3", sdp_mid="audio", sdp_mline_index=0)

    assert dump_signaling_message(message) == {
        "type": "candidate",
        "label": 0,
        "id": "audio",
        "candidate": "candidate:3",
    }


def test_relay_frame_wire_form_omits_empty_fields():
    frame = RelayFrame(event=RelayEvent.CREATED, room="abc", client_id="c1")

    assert frame.to_wire() == {"event": "created", "room": "abc", "client_id": "c1"}
    assert RelayFrame.model_validate({"event": "ready", "extra": 1}).event is RelayEvent.READY
