import json

import httpx
import pytest

from services.youtube.api.broadcasts import YouTubeBroadcastAPI
from services.youtube.models.broadcast import BroadcastRequest
from shared.runtime.errors import (
    AuthError,
    BroadcastApiError,
    InvalidClient,
    TokenExpired,
    TransientError,
)

from tests.conftest import MONDAY_0803


def api_with(handler):
    return YouTubeBroadcastAPI(transport=httpx.MockTransport(handler))


# ----------------------------------------------------------------------
# OAuth
# ----------------------------------------------------------------------

async def test_access_token_exchange():
    seen = {}

    def handler(request):
        seen["form"] = dict(httpx.QueryParams(request.content.decode()))
        return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})

    token = await api_with(handler).get_access_token("cid", "secret", "refresh")
    assert token == "tok"
    assert seen["form"]["grant_type"] == "refresh_token"
    assert seen["form"]["refresh_token"] == "refresh"


@pytest.mark.parametrize(
    "status,body,error",
    [
        (400, {"error": "invalid_grant", "error_description": "Token has been expired or revoked."}, TokenExpired),
        (401, {"error": "invalid_client"}, InvalidClient),
        (400, {"error": "unsupported_grant_type"}, AuthError),
        (503, {"error": "backendError"}, TransientError),
        (429, {}, TransientError),
    ],
)
async def test_token_errors_are_classified(status, body, error):
    api = api_with(lambda request: httpx.Response(status, json=body))
    with pytest.raises(error):
        await api.get_access_token("cid", "secret", "refresh")


async def test_token_network_failure_is_transient():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    with pytest.raises(TransientError):
        await api_with(handler).get_access_token("cid", "secret", "refresh")


async def test_missing_credentials_never_hit_the_network():
    def handler(request):
        raise AssertionError("no request expected")

    with pytest.raises(AuthError):
        await api_with(handler).get_access_token("cid", "", "refresh")


# ----------------------------------------------------------------------
# Broadcasts
# ----------------------------------------------------------------------

class FakeYouTube:
    def __init__(self, *, existing_stream=None, video_items=True):
        self.calls = []
        self.existing_stream = existing_stream
        self.video_items = video_items

    def __call__(self, request):
        path = request.url.path
        body = json.loads(request.content) if request.content else None
        self.calls.append((request.method, path, dict(request.url.params), body))
        assert request.headers["Authorization"] == "Bearer tok"

        if path.endswith("/liveBroadcasts/bind"):
            return httpx.Response(200, json={"id": request.url.params["id"]})
        if path.endswith("/liveBroadcasts") and request.method == "POST":
            return httpx.Response(200, json={
                "id": "bc-1",
                "snippet": {"title": body["snippet"]["title"], "scheduledStartTime": body["snippet"]["scheduledStartTime"]},
                "status": {"privacyStatus": body["status"]["privacyStatus"]},
            })
        if path.endswith("/liveStreams") and request.method == "GET":
            items = [self.existing_stream] if self.existing_stream else []
            return httpx.Response(200, json={"items": items})
        if path.endswith("/liveStreams") and request.method == "POST":
            return httpx.Response(200, json={
                "id": "ls-new",
                "cdn": {"ingestionInfo": {"streamName": "new-key", "ingestionAddress": "rtmp://a.rtmp.youtube.com/live2"}},
            })
        if path.endswith("/videos") and request.method == "GET":
            items = [{"id": "bc-1", "snippet": {"title": "x", "categoryId": "22"}}] if self.video_items else []
            return httpx.Response(200, json={"items": items})
        if path.endswith("/videos") and request.method == "PUT":
            return httpx.Response(200, json={"id": "bc-1"})
        return httpx.Response(404, json={"error": {"message": "unexpected", "errors": []}})


def make_request(**overrides):
    values = dict(
        title="Morning",
        scheduled_start=MONDAY_0803,
        description="desc",
        privacy="public",
        tags=["a", "b"],
        category="10",
    )
    values.update(overrides)
    return BroadcastRequest(**values)


async def test_create_broadcast_with_new_stream():
    youtube = FakeYouTube()
    created = await api_with(youtube).create_broadcast("tok", make_request())

    assert created.broadcast_id == "bc-1"
    assert created.stream_target == "ls-new"
    assert created.ingest_key == "new-key"
    assert created.ingest_url == "rtmp://a.rtmp.youtube.com/live2"
    assert created.privacy == "public"
    assert created.category == "10"

    insert = youtube.calls[0]
    assert insert[3]["snippet"]["scheduledStartTime"] == "2026-03-02T01:03:00Z"
    assert insert[3]["snippet"]["tags"] == ["a", "b"]
    assert insert[3]["contentDetails"]["enableAutoStart"] is True

    bind = next(c for c in youtube.calls if c[1].endswith("/bind"))
    assert bind[2]["streamId"] == "ls-new"

    update = next(c for c in youtube.calls if c[0] == "PUT")
    assert update[3]["snippet"]["categoryId"] == "10"


async def test_create_broadcast_reuses_existing_stream():
    existing = {
        "id": "ls-7",
        "cdn": {"ingestionInfo": {"streamName": "old-key", "ingestionAddress": "rtmp://x"}},
    }
    youtube = FakeYouTube(existing_stream=existing)
    created = await api_with(youtube).create_broadcast("tok", make_request(stream_target="ls-7"))

    assert created.stream_target == "ls-7"
    assert created.ingest_key == "old-key"
    assert not any(c[0] == "POST" and c[1].endswith("/liveStreams") for c in youtube.calls)


async def test_category_failure_keeps_broadcast():
    youtube = FakeYouTube(video_items=False)
    created = await api_with(youtube).create_broadcast("tok", make_request())
    assert created.broadcast_id == "bc-1"
    assert created.category is None


async def test_api_errors_are_classified():
    def forbidden(request):
        return httpx.Response(403, json={"error": {"message": "Quota", "errors": [{"reason": "quotaExceeded"}]}})

    with pytest.raises(BroadcastApiError) as exc:
        await api_with(forbidden).create_broadcast("tok", make_request())
    assert exc.value.status_code == 403
    assert "quotaExceeded" in str(exc.value)

    with pytest.raises(AuthError):
        await api_with(lambda r: httpx.Response(401, json={})).create_broadcast("tok", make_request())

    with pytest.raises(TransientError):
        await api_with(lambda r: httpx.Response(502, text="bad gateway")).create_broadcast("tok", make_request())


async def test_thumbnail_upload_sends_raw_bytes():
    seen = {}

    def handler(request):
        seen["type"] = request.headers["Content-Type"]
        seen["body"] = request.content
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={})

    await api_with(handler).upload_thumbnail("tok", "bc-1", b"\x89PNG", content_type="image/png")
    assert seen == {"type": "image/png", "body": b"\x89PNG", "params": {"videoId": "bc-1", "uploadType": "media"}}


async def test_broadcast_status():
    def handler(request):
        if request.url.params["id"] == "bc-1":
            return httpx.Response(200, json={"items": [{"status": {"lifeCycleStatus": "live"}}]})
        return httpx.Response(200, json={"items": []})

    api = api_with(handler)
    assert await api.get_broadcast_status("tok", "bc-1") == "live"
    assert await api.get_broadcast_status("tok", "bc-gone") is None
