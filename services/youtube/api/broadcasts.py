import httpx
from typing import Any, Dict, Optional

from services.youtube.models.broadcast import BroadcastRequest, CreatedBroadcast
from shared.logging.logger import get_logger
from shared.runtime.errors import (
    AuthError,
    BroadcastApiError,
    InvalidClient,
    TokenExpired,
    TransientError,
)
from shared.utils.clock import format_instant

log = get_logger("youtube.broadcasts")


class YouTubeBroadcastAPI:
    """
    YouTube live broadcast API (Data API v3) over OAuth2.

    Responsibilities:
    - Exchange a refresh token for an access token
    - Create a broadcast, create or reuse its liveStream, bind them
    - Upload a broadcast thumbnail
    - Read a broadcast's lifecycle status

    Errors are mapped onto the runtime taxonomy: network failures, 429
    and 5xx become TransientError; rejected credentials become AuthError
    subclasses; everything else is a BroadcastApiError.
    """

    TOKEN_URL = "https://oauth2.googleapis.com/token"
    BROADCASTS_URL = "https://www.googleapis.com/youtube/v3/liveBroadcasts"
    BIND_URL = "https://www.googleapis.com/youtube/v3/liveBroadcasts/bind"
    STREAMS_URL = "https://www.googleapis.com/youtube/v3/liveStreams"
    VIDEOS_URL = "https://www.googleapis.com/youtube/v3/videos"
    THUMBNAIL_URL = "https://www.googleapis.com/upload/youtube/v3/thumbnails/set"

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    # ------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        headers = dict(kwargs.pop("headers", {}) or {})
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async with self._client() as client:
            try:
                r = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TimeoutException as e:
                raise TransientError(f"YouTube request timed out: {e}") from e
            except httpx.TransportError as e:
                raise TransientError(f"YouTube network error: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise TransientError(f"YouTube {r.status_code} on {url}")
        if r.status_code == 401:
            raise AuthError(f"YouTube rejected access token ({_error_reason(r)})")
        if r.status_code >= 400:
            raise BroadcastApiError(
                f"YouTube {r.status_code} on {url}: {_error_reason(r)}",
                status_code=r.status_code,
            )

        if not r.content:
            return {}
        try:
            data = r.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------

    async def get_access_token(
        self,
        client_id: Optional[str],
        client_secret: Optional[str],
        refresh_token: Optional[str],
    ) -> str:
        if not client_id or not client_secret or not refresh_token:
            raise AuthError("Missing credentials: client id, client secret or refresh token is empty")

        payload = {
            "client_id": client_id,
            "client_secret": client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        async with self._client() as client:
            try:
                r = await client.post(self.TOKEN_URL, data=payload)
            except httpx.TimeoutException as e:
                raise TransientError(f"Token refresh timed out: {e}") from e
            except httpx.TransportError as e:
                raise TransientError(f"Token refresh network error: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise TransientError(f"Token refresh failed with {r.status_code}")

        reason = _error_reason(r)
        if r.status_code >= 400:
            if "invalid_grant" in reason:
                log.error("Refresh token expired or revoked; account must be reconnected")
                raise TokenExpired("TOKEN_EXPIRED: YouTube token has expired or been revoked")
            if "invalid_client" in reason:
                log.error("OAuth client credentials rejected")
                raise InvalidClient("INVALID_CLIENT: YouTube client credentials are invalid")
            raise AuthError(f"Token refresh failed ({r.status_code}): {reason}")

        token = r.json().get("access_token")
        if not token:
            raise AuthError("Token refresh returned no access token")
        return token

    # ------------------------------------------------------------
    # Broadcast creation
    # ------------------------------------------------------------

    async def create_broadcast(self, token: str, request: BroadcastRequest) -> CreatedBroadcast:
        snippet: Dict[str, Any] = {
            "title": request.title,
            "description": request.description or "",
            "scheduledStartTime": format_instant(request.scheduled_start),
        }
        if request.tags:
            snippet["tags"] = list(request.tags)

        broadcast = await self._request(
            "POST",
            self.BROADCASTS_URL,
            token=token,
            params={"part": "snippet,status,contentDetails"},
            json={
                "snippet": snippet,
                "status": {
                    "privacyStatus": request.privacy or "unlisted",
                    "selfDeclaredMadeForKids": False,
                },
                "contentDetails": {
                    "enableAutoStart": request.auto_start,
                    "enableAutoStop": request.auto_stop,
                    "monitorStream": {"enableMonitorStream": False},
                    "recordFromStart": True,
                },
            },
        )
        broadcast_id = broadcast.get("id")
        if not broadcast_id:
            raise BroadcastApiError("Broadcast insert returned no id")

        stream = await self._resolve_stream(token, request)

        await self._request(
            "POST",
            self.BIND_URL,
            token=token,
            params={"part": "id,contentDetails", "id": broadcast_id, "streamId": stream["id"]},
        )

        category = await self._update_category(token, broadcast_id, request.category)

        ingestion = stream.get("cdn", {}).get("ingestionInfo", {})
        b_snippet = broadcast.get("snippet", {})
        log.info(f"[{broadcast_id}] Broadcast created and bound to stream {stream['id']}")

        return CreatedBroadcast(
            broadcast_id=broadcast_id,
            stream_target=stream["id"],
            ingest_key=ingestion.get("streamName"),
            ingest_url=ingestion.get("ingestionAddress"),
            title=b_snippet.get("title", request.title),
            scheduled_start=b_snippet.get("scheduledStartTime"),
            privacy=broadcast.get("status", {}).get("privacyStatus", request.privacy),
            category=category,
            raw=broadcast,
        )

    async def _resolve_stream(self, token: str, request: BroadcastRequest) -> Dict[str, Any]:
        if request.stream_target:
            data = await self._request(
                "GET",
                self.STREAMS_URL,
                token=token,
                params={"part": "snippet,cdn", "id": request.stream_target},
            )
            items = data.get("items", [])
            if items:
                return items[0]
            log.info(f"Stream target {request.stream_target} not found; creating a new one")

        stream = await self._request(
            "POST",
            self.STREAMS_URL,
            token=token,
            params={"part": "snippet,cdn"},
            json={
                "snippet": {"title": f"Stream for {request.title}"},
                "cdn": {
                    "frameRate": "30fps",
                    "ingestionType": "rtmp",
                    "resolution": "1080p",
                },
            },
        )
        if not stream.get("id"):
            raise BroadcastApiError("liveStreams insert returned no id")
        return stream

    async def _update_category(self, token: str, video_id: str, category: str) -> Optional[str]:
        """
        liveBroadcasts cannot carry a category; it is set on the video.
        Best effort: failures keep the broadcast.
        """
        try:
            data = await self._request(
                "GET",
                self.VIDEOS_URL,
                token=token,
                params={"part": "snippet", "id": video_id},
            )
            items = data.get("items", [])
            if not items:
                return None
            snippet = dict(items[0].get("snippet", {}))
            snippet["categoryId"] = category
            await self._request(
                "PUT",
                self.VIDEOS_URL,
                token=token,
                params={"part": "snippet"},
                json={"id": video_id, "snippet": snippet},
            )
            return category
        except (TransientError, BroadcastApiError, AuthError) as e:
            log.warning(f"[{video_id}] Failed to update category: {e}")
            return None

    # ------------------------------------------------------------
    # Thumbnails / status
    # ------------------------------------------------------------

    async def upload_thumbnail(
        self,
        token: str,
        broadcast_id: str,
        image: bytes,
        *,
        content_type: str = "image/jpeg",
    ) -> None:
        await self._request(
            "POST",
            self.THUMBNAIL_URL,
            token=token,
            params={"videoId": broadcast_id, "uploadType": "media"},
            headers={"Content-Type": content_type},
            content=image,
        )
        log.info(f"[{broadcast_id}] Thumbnail uploaded ({len(image)} bytes)")

    async def get_broadcast_status(self, token: str, broadcast_id: str) -> Optional[str]:
        data = await self._request(
            "GET",
            self.BROADCASTS_URL,
            token=token,
            params={"part": "status", "id": broadcast_id},
        )
        items = data.get("items", [])
        if not items:
            return None
        return items[0].get("status", {}).get("lifeCycleStatus")


def _error_reason(r: httpx.Response) -> str:
    try:
        data = r.json()
    except ValueError:
        return r.text[:200]
    if not isinstance(data, dict):
        return str(data)[:200]

    err = data.get("error")
    if isinstance(err, str):
        desc = data.get("error_description")
        return f"{err}: {desc}" if desc else err
    if isinstance(err, dict):
        reasons = [e.get("reason") for e in err.get("errors", []) if isinstance(e, dict)]
        message = err.get("message", "")
        return f"{message} ({', '.join(x for x in reasons if x)})" if reasons else message
    return str(data)[:200]
