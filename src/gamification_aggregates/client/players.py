from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from .errors import BackendResponseError
from .http import BaseHttpClient


def player_status_path(player_id: str) -> str:
    return f"/v3/player/{quote(player_id, safe='@._-')}/status"


@dataclass
class PlayerStatusClient:
    """Reads the backend's per-player status document (levels, point wallet, extra fields)."""

    http: BaseHttpClient

    async def get_status(self, player_id: str) -> dict[str, Any]:
        payload = await self.http.get_json_value(player_status_path(player_id))
        if not isinstance(payload, dict):
            raise BackendResponseError(
                f"Expected JSON object for player status, got {type(payload)}"
            )
        return payload
