"""Room token issuance and the signaling relay endpoint."""
from __future__ import annotations

from uuid import uuid4

import anyio
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..schemas.rtc import RoomTokenResponse
from ..services.rooms import new_room_token
from ..services.signaling import SignalingConnection, manager as signaling_manager

router = APIRouter()


@router.post("/room", response_model=RoomTokenResponse)
async def create_room() -> RoomTokenResponse:
    """Return a fresh room token for a new two-party session."""

    return RoomTokenResponse(room=new_room_token())


@router.websocket("/relay")
async def relay_endpoint(websocket: WebSocket) -> None:
    """Relay create-or-join requests and signaling messages between two occupants."""

    client_id = websocket.query_params.get("client_id") or uuid4().hex
    await websocket.accept()

    connection = SignalingConnection(connection_id=client_id, send=websocket.send_json)
    try:
        while True:
            data = await websocket.receive_json()
            await signaling_manager.handle_frame(connection, data)
    except WebSocketDisconnect:
        pass
    finally:
        with anyio.CancelScope(shield=True):
            await signaling_manager.disconnect(connection)
