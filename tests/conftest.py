import asyncio
import itertools
import signal
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from services.youtube.models.broadcast import BroadcastRequest, CreatedBroadcast
from shared.runtime.errors import ResourceMissing
from shared.storage.state_publisher import AtomicJsonWriter
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock

# Monday 2026-03-02 08:03 in Asia/Jakarta
MONDAY_0803 = datetime(2026, 3, 2, 1, 3, tzinfo=timezone.utc)


class FakeTime:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> datetime:
        self.now = value
        return value


# ----------------------------------------------------------------------
# Relay process doubles
# ----------------------------------------------------------------------

_pids = itertools.count(4000)


class FakeProcess:
    def __init__(self, *, exit_code: Optional[int] = None):
        self.pid = next(_pids)
        self.returncode: Optional[int] = None
        self.stderr = asyncio.StreamReader()
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()
        if exit_code is not None:
            self.exit(exit_code)

    def emit(self, line: str) -> None:
        self.stderr.feed_data((line + "\n").encode())

    def exit(self, code: int) -> None:
        if self.returncode is not None:
            return
        self.returncode = code
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        self.exit(-signal.SIGTERM)

    def kill(self) -> None:
        self.killed = True
        self.exit(-signal.SIGKILL)


class FakeLauncher:
    def __init__(self):
        self.processes: List[FakeProcess] = []
        # exit codes for processes that die during the start window
        self.early_exits: List[int] = []
        self.missing_media = False
        self.prepared: List[tuple] = []
        self.cleaned: List[str] = []
        self.killed_tokens: List[str] = []
        self.kill_result = True

    def prepare(self, stream: Dict[str, Any], duration: Optional[int]) -> List[str]:
        if self.missing_media:
            raise ResourceMissing(f"[{stream['id']}] Video file not found: missing.mp4")
        self.prepared.append((stream["id"], duration))
        args = ["-re", "-i", "input.mp4", "-c", "copy"]
        if duration:
            args += ["-t", str(duration)]
        return args + ["-f", "flv", f"rtmp://ingest.local/live/{stream.get('stream_key')}"]

    async def spawn(self, args: List[str]) -> FakeProcess:
        code = self.early_exits.pop(0) if self.early_exits else None
        process = FakeProcess(exit_code=code)
        self.processes.append(process)
        return process

    def cleanup(self, stream_id: str) -> None:
        self.cleaned.append(stream_id)

    async def kill_by_token(self, token: str) -> bool:
        self.killed_tokens.append(token)
        return self.kill_result

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


# ----------------------------------------------------------------------
# Broadcast API double
# ----------------------------------------------------------------------

class FakeBroadcastAPI:
    def __init__(self):
        self.token_calls = 0
        self.token_errors: List[Exception] = []
        self.create_errors: List[Exception] = []
        self.create_delay = 0.0
        self.created: List[BroadcastRequest] = []
        self.thumbnails: List[tuple] = []
        self.statuses: Dict[str, Optional[str]] = {}

    async def get_access_token(self, client_id, client_secret, refresh_token) -> str:
        self.token_calls += 1
        if self.token_errors:
            raise self.token_errors.pop(0)
        return "access-token"

    async def create_broadcast(self, token: str, request: BroadcastRequest) -> CreatedBroadcast:
        if self.create_delay:
            await asyncio.sleep(self.create_delay)
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append(request)
        n = len(self.created)
        return CreatedBroadcast(
            broadcast_id=f"bc-{n}",
            stream_target=request.stream_target or f"ls-{n}",
            ingest_key=f"ingest-key-{n}",
            ingest_url="rtmp://a.rtmp.youtube.com/live2",
            title=request.title,
            privacy=request.privacy,
        )

    async def upload_thumbnail(self, token, broadcast_id, image, *, content_type="image/jpeg") -> None:
        self.thumbnails.append((broadcast_id, image, content_type))

    async def get_broadcast_status(self, token, broadcast_id) -> Optional[str]:
        return self.statuses.get(broadcast_id)


async def eventually(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------

@pytest.fixture
def fake_time():
    return FakeTime(MONDAY_0803)


@pytest.fixture
def clock(fake_time):
    return Clock("Asia/Jakarta", now_fn=fake_time)


@pytest.fixture
def store(tmp_path, monkeypatch):
    monkeypatch.delenv("STREAMRELAY_STATE_MIRROR_ROOT", raising=False)
    return StateStore(tmp_path / "state.json", writer=AtomicJsonWriter())


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def api():
    return FakeBroadcastAPI()


@pytest.fixture
def credentials(store):
    return store.create_credentials({
        "id": "acct-1",
        "client_id": "client",
        "client_secret": "secret",
        "refresh_token": "refresh",
    })
