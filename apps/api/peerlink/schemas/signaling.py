"""Wire contracts for the relay protocol and peer-to-peer signaling payloads."""
from __future__ import annotations

import enum
from typing import Annotated, Any, Literal, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, TypeAdapter


class SessionDescription(BaseModel):
    """Offer or answer produced by the media transport."""

    type: Literal["offer", "answer"]
    sdp: str


class IceCandidate(BaseModel):
    """One network path proposed by a peer.

    On the wire the media line index travels as ``label`` and the media id as
    ``id``; browser-style ``sdpMLineIndex``/``sdpMid`` keys are accepted too.
    """

    type: Literal["candidate"] = "candidate"
    sdp_mline_index: int | None = Field(
        default=None,
        validation_alias=AliasChoices("label", "sdpMLineIndex", "sdp_mline_index"),
        serialization_alias="label",
    )
    sdp_mid: str | None = Field(
        default=None,
        validation_alias=AliasChoices("id", "sdpMid", "sdp_mid"),
        serialization_alias="id",
    )
    candidate: str


class Bye(BaseModel):
    """Explicit termination notice."""

    type: Literal["bye"] = "bye"


SignalingMessage = Annotated[Union[SessionDescription, IceCandidate, Bye], Field(discriminator="type")]

_message_adapter: TypeAdapter[SignalingMessage] = TypeAdapter(SignalingMessage)


def parse_signaling_message(payload: Any) -> SignalingMessage:
    """Validate a relayed payload; the bare string ``"bye"`` is a Bye."""

    if isinstance(payload, str) and payload.strip().lower() == "bye":
        return Bye()
    return _message_adapter.validate_python(payload)


def dump_signaling_message(message: SignalingMessage) -> dict[str, Any]:
    return message.model_dump(mode="json", by_alias=True, exclude_none=True)


class RelayEvent(str, enum.Enum):
    CREATE_OR_JOIN = "create-or-join"
    CREATED = "created"
    JOINED = "joined"
    READY = "ready"
    FULL = "full"
    MESSAGE = "message"
    LOG = "log"


class RelayFrame(BaseModel):
    """Envelope for every frame exchanged with the relay."""

    model_config = ConfigDict(extra="ignore")

    event: RelayEvent
    room: str | None = None
    client_id: str | None = None
    payload: Any = None
    args: list[Any] | None = Field(default=None, description="Diagnostic log arguments")

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
