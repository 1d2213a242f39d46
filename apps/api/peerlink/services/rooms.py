"""Room token issuance.

A room token is the only thing two participants need to share to find each
other through the relay."""
from __future__ import annotations

from secrets import token_hex

from ..core import config


def new_room_token(exclude: str | None = None) -> str:
    """Draw a random hex room token that differs from ``exclude``."""

    while True:
        token = token_hex(config.settings.room_token_bytes)
        if token != exclude:
            return token
