from __future__ import annotations

from .constants import STREAMING_API, UPLOAD_API
from .http import AuthenticatedRequestClient, json_body, raise_for_status


class VideoCatalog:
    """Read and manage the caller's uploaded videos."""

    def __init__(self, client: AuthenticatedRequestClient) -> None:
        self._client = client

    async def list_user_videos(self) -> list[dict]:
        response = await self._client.get(f"{UPLOAD_API}/videos")
        return json_body(response)

    async def get_video(self, video_id: str) -> dict:
        response = await self._client.get(f"{UPLOAD_API}/video/{video_id}")
        return json_body(response)

    async def delete_video(self, video_id: str) -> dict:
        response = await self._client.delete(f"{UPLOAD_API}/video/{video_id}")
        return json_body(response)

    async def fetch_master_playlist(self, video_id: str, expiration_hours: int = 2) -> str:
        response = await self._client.get(
            f"{STREAMING_API}/playlist/{video_id}/master.m3u8",
            params={"expirationHours": expiration_hours},
        )
        raise_for_status(response)
        return response.text
