"""Data contracts for RTC endpoints."""
from __future__ import annotations

from pydantic import BaseModel, Field


class RoomTokenResponse(BaseModel):
    room: str = Field(..., description="Fresh room token to share with the other participant")
