import asyncio

import pytest

from services.youtube.workers.status_sync import BroadcastStatusSync
from shared.runtime.errors import AuthError, TransientError

from tests.conftest import eventually


class StopRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, stream_id, *, reason):
        self.calls.append((stream_id, reason))


@pytest.fixture
def stops():
    return StopRecorder()


@pytest.fixture
async def sync(api, store, stops):
    sync = BroadcastStatusSync(api, store, stops, interval=0.01, missing_grace_checks=2)
    yield sync
    await sync.shutdown()


LINKED = {"id": "s1", "broadcast_id": "bc-1", "credentials_id": "acct-1"}


async def test_stops_stream_when_broadcast_completes(sync, api, stops, credentials):
    api.statuses["bc-1"] = "live"
    sync.watch(LINKED, None)

    await eventually(lambda: sync.last_status("s1") == "live")
    assert stops.calls == []

    api.statuses["bc-1"] = "complete"
    await eventually(lambda: stops.calls)
    assert stops.calls == [("s1", "broadcast complete")]


async def test_deleted_broadcast_after_grace(sync, api, stops, credentials):
    sync.watch(LINKED, None)
    await eventually(lambda: stops.calls)
    assert stops.calls == [("s1", "broadcast deleted")]
    assert api.token_calls >= 2


async def test_unlinked_streams_are_not_watched(sync, api, credentials):
    sync.watch({"id": "s1"}, None)
    sync.watch({"id": "s2", "broadcast_id": "bc-2"}, None)
    await sync.shutdown()
    assert api.token_calls == 0


async def test_check_errors_keep_watching(sync, api, stops, credentials):
    api.token_errors = [TransientError("timeout"), TransientError("timeout")]
    api.statuses["bc-1"] = "revoked"
    sync.watch(LINKED, None)

    await eventually(lambda: stops.calls)
    assert stops.calls == [("s1", "broadcast revoked")]
    assert api.token_calls == 3


async def test_missing_credentials_are_an_error(sync, store):
    with pytest.raises(AuthError):
        await sync.check("s1", "bc-1", "nobody")


async def test_unwatch_stops_polling(sync, api, stops, credentials):
    api.statuses["bc-1"] = "live"
    sync.watch(LINKED, None)
    await eventually(lambda: api.token_calls >= 1)

    sync.unwatch("s1")
    calls = api.token_calls
    await asyncio.sleep(0.05)
    assert api.token_calls == calls
    assert stops.calls == []
