"""
services/meeting/provider.py
Zoom REST client: server-to-server OAuth token plus scheduled-meeting creation.
"""

import logging
import time
from datetime import datetime
from typing import Optional

import httpx
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config.settings import settings
from shared.exceptions import ProviderUnavailableError
from shared.utils.timezones import DEFAULT_TIMEZONE, to_civil_time

logger = logging.getLogger(__name__)

SCHEDULED_MEETING = 2
# Refresh the cached token this many seconds before Zoom expires it
TOKEN_EXPIRY_MARGIN_SECONDS = 60

_transient = retry(
    retry=retry_if_exception_type(httpx.TransportError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, max=4),
    reraise=True,
)


class ZoomMeeting(BaseModel):
    id: str
    join_url: str
    start_url: Optional[str] = None
    password: Optional[str] = None


class ZoomMeetingProvider:
    def __init__(
        self,
        client: httpx.AsyncClient,
        account_id: str,
        client_id: str,
        client_secret: str,
        api_base_url: str = "https://api.zoom.us/v2",
        oauth_url: str = "https://zoom.us/oauth/token",
    ):
        self.client = client
        self.account_id = account_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_base_url = api_base_url.rstrip("/")
        self.oauth_url = oauth_url
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    @_transient
    async def _fetch_token(self) -> None:
        response = await self.client.post(
            self.oauth_url,
            params={"grant_type": "account_credentials", "account_id": self.account_id},
            auth=(self.client_id, self.client_secret),
        )
        response.raise_for_status()
        body = response.json()
        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + int(body.get("expires_in", 3600))

    async def access_token(self) -> str:
        if not self._token or time.monotonic() >= self._token_expires_at - TOKEN_EXPIRY_MARGIN_SECONDS:
            await self._fetch_token()
        return self._token

    @_transient
    async def _post_meeting(self, body: dict) -> dict:
        token = await self.access_token()
        response = await self.client.post(
            f"{self.api_base_url}/users/me/meetings",
            json=body,
            headers={"Authorization": f"Bearer {token}"},
        )
        response.raise_for_status()
        return response.json()

    async def create_meeting(
        self,
        topic: str,
        start_time: datetime,
        duration_minutes: int,
        agenda: str = "",
        timezone: Optional[str] = None,
    ) -> ZoomMeeting:
        """
        Schedule a meeting. ``start_time`` is the aware UTC instant; Zoom gets
        the wall-clock time in ``timezone`` together with the zone name.
        """
        zone = timezone or DEFAULT_TIMEZONE
        body = {
            "topic": topic[:200],
            "type": SCHEDULED_MEETING,
            "start_time": to_civil_time(start_time, zone).strftime("%Y-%m-%dT%H:%M:%S"),
            "duration": duration_minutes,
            "timezone": zone,
            "agenda": agenda[:2000],
            "settings": {
                "approval_type": 2,
                "join_before_host": True,
                "waiting_room": False,
                "mute_upon_entry": True,
                "meeting_authentication": False,
            },
        }
        try:
            data = await self._post_meeting(body)
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Zoom API error {e.response.status_code} creating meeting: {e.response.text[:500]}"
            )
            raise ProviderUnavailableError(
                "Could not create the meeting, please retry",
                {"provider_status": e.response.status_code},
            )
        except (httpx.HTTPError, KeyError) as e:
            logger.error(f"Zoom unavailable creating meeting: {e}")
            raise ProviderUnavailableError("Could not create the meeting, please retry")

        meeting = ZoomMeeting(
            id=str(data["id"]),
            join_url=data["join_url"],
            start_url=data.get("start_url"),
            password=data.get("password"),
        )
        logger.info(f"Created Zoom meeting {meeting.id}")
        return meeting


# ── Global provider (initialized on startup) ─────────────────
meeting_provider: Optional[ZoomMeetingProvider] = None
_http_client: Optional[httpx.AsyncClient] = None


def init_meeting_provider() -> ZoomMeetingProvider:
    global meeting_provider, _http_client
    _http_client = httpx.AsyncClient(timeout=settings.ZOOM_API_TIMEOUT_SECONDS)
    meeting_provider = ZoomMeetingProvider(
        client=_http_client,
        account_id=settings.ZOOM_ACCOUNT_ID,
        client_id=settings.ZOOM_CLIENT_ID,
        client_secret=settings.ZOOM_CLIENT_SECRET,
        api_base_url=settings.ZOOM_API_BASE_URL,
        oauth_url=settings.ZOOM_OAUTH_URL,
    )
    return meeting_provider


async def close_meeting_provider() -> None:
    global meeting_provider, _http_client
    if _http_client:
        await _http_client.aclose()
    _http_client = None
    meeting_provider = None


def get_meeting_provider() -> ZoomMeetingProvider:
    """FastAPI dependency to get the Zoom client."""
    if not meeting_provider:
        raise RuntimeError("Meeting provider not initialized. Call init_meeting_provider() first.")
    return meeting_provider
