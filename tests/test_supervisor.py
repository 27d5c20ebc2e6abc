import asyncio
import signal

import pytest

from services.streams.monitors import StreamMonitor
from services.streams.supervisor import MAX_LOG_LINES, StreamSupervisor
from services.streams.termination import TerminationScheduler
from shared.config.system import SupervisorSettings
from shared.runtime.quotas import LiveLimitPolicy

from tests.conftest import MONDAY_0803, eventually


def fast_settings(**overrides):
    values = dict(
        start_confirm_seconds=0.02,
        restart_delay_seconds=0.02,
        max_retry_attempts=3,
        safety_floor_seconds=60,
        stop_grace_seconds=0.2,
        health_check_interval_seconds=3600,
        cleanup_interval_seconds=3600,
    )
    values.update(overrides)
    return SupervisorSettings(**values)


class RecordingMonitor(StreamMonitor):
    name = "recording"

    def __init__(self):
        self.watched = {}
        self.unwatched = []
        self.lines = []

    def watch(self, stream, expected_end):
        self.watched[str(stream["id"])] = expected_end

    def unwatch(self, stream_id):
        self.unwatched.append(stream_id)

    def observe(self, stream_id, line):
        self.lines.append((stream_id, line))


@pytest.fixture
async def make_supervisor(store, launcher, clock):
    created = []

    async def make(**kwargs):
        settings = kwargs.pop("settings", None) or fast_settings()
        kwargs.setdefault("is_alive", lambda pid: True)
        supervisor = StreamSupervisor(store, launcher, clock=clock, settings=settings, **kwargs)
        await supervisor.start()
        created.append(supervisor)
        return supervisor

    yield make

    for supervisor in created:
        await supervisor.shutdown()


@pytest.fixture
async def supervisor(make_supervisor):
    return await make_supervisor()


@pytest.fixture
def stream(store):
    return store.create_stream({
        "id": "s1",
        "user_id": "u1",
        "title": "Relay",
        "status": "scheduled",
        "video_path": "video.mp4",
        "rtmp_url": "rtmp://ingest.local/live",
        "stream_key": "secret-key",
        "stream_duration_minutes": 60,
    })


def history_reasons(store):
    return [h["reason"] for h in store.list_history()]


# ----------------------------------------------------------------------
# Start
# ----------------------------------------------------------------------

async def test_start_marks_stream_live(supervisor, store, launcher, stream):
    result = await supervisor.start_stream("s1")

    assert result.ok
    assert result.pid == launcher.last.pid
    assert supervisor.is_active("s1")
    assert launcher.prepared == [("s1", 3600)]

    saved = store.find_stream("s1")
    assert saved["status"] == "live"
    assert saved["start_time"] == "2026-03-02T01:03:00Z"

    shadow = supervisor.shadow("s1")
    assert shadow.duration == 3600
    assert shadow.remaining_seconds(MONDAY_0803) == 3600


async def test_start_twice_is_refused(supervisor, launcher, stream):
    await supervisor.start_stream("s1")
    result = await supervisor.start_stream("s1")
    assert not result.ok
    assert result.reason == "Stream is already running"
    assert len(launcher.processes) == 1


async def test_unknown_stream(supervisor):
    result = await supervisor.start_stream("nope")
    assert result.reason == "Stream not found"


async def test_process_dying_during_start_window(supervisor, store, launcher, stream):
    launcher.early_exits = [1]
    result = await supervisor.start_stream("s1")

    assert not result.ok
    assert result.reason == "Relay process failed to start (code=1)"
    assert not supervisor.is_active("s1")
    assert store.find_stream("s1")["status"] == "scheduled"
    assert launcher.cleaned == ["s1"]


async def test_missing_media_refuses_start(supervisor, store, launcher, stream):
    launcher.missing_media = True
    result = await supervisor.start_stream("s1")
    assert not result.ok
    assert "Video file not found" in result.reason
    assert launcher.processes == []


async def test_live_limit_refuses_start(make_supervisor, store, stream):
    store.create_stream({"id": "other", "user_id": "u1", "status": "live"})
    supervisor = await make_supervisor(limits=LiveLimitPolicy(store, default_limit=1))

    result = await supervisor.start_stream("s1")
    assert not result.ok
    assert result.reason.startswith("Live limit reached")
    assert store.find_stream("s1")["status"] == "scheduled"


# ----------------------------------------------------------------------
# Stop
# ----------------------------------------------------------------------

async def test_manual_stop(supervisor, store, launcher, stream, fake_time):
    await supervisor.start_stream("s1")
    process = launcher.last
    fake_time.advance(minutes=5)

    result = await supervisor.stop_stream("s1")

    assert result.ok
    assert process.terminated
    assert not supervisor.is_active("s1")
    assert store.find_stream("s1")["status"] == "offline"
    assert store.find_stream("s1")["start_time"] is None

    [entry] = store.list_history()
    assert entry["reason"] == "manual stop"
    assert entry["duration_seconds"] == 300
    assert entry["returncode"] == -signal.SIGTERM

    # the late exit event of the stopped process changes nothing
    await asyncio.sleep(0.05)
    assert history_reasons(store) == ["manual stop"]


async def test_stop_not_running(supervisor, stream):
    result = await supervisor.stop_stream("s1")
    assert result.ok
    assert result.reason == "Stream is not running"
    assert (await supervisor.stop_stream("nope")).reason == "Stream not found"


async def test_stop_orphaned_live_stream(supervisor, store, launcher, stream):
    store.update_status("s1", "live")

    result = await supervisor.stop_stream("s1")

    assert result.ok
    assert launcher.killed_tokens == ["secret-key"]
    assert store.find_stream("s1")["status"] == "offline"


async def test_recurring_stream_is_rearmed_after_stop(supervisor, store, stream):
    store.update_stream("s1", {"schedule_type": "daily", "recurring_enabled": True})
    await supervisor.start_stream("s1")
    await supervisor.stop_stream("s1")
    assert store.find_stream("s1")["status"] == "scheduled"


# ----------------------------------------------------------------------
# Exits and crash restarts
# ----------------------------------------------------------------------

async def test_one_minute_stream_ends_offline(supervisor, store, launcher, fake_time, stream):
    store.update_stream("s1", {"stream_duration_minutes": 1})
    await supervisor.start_stream("s1")
    assert launcher.prepared == [("s1", 60)]

    fake_time.advance(minutes=1)
    launcher.last.exit(0)

    await eventually(lambda: store.find_stream("s1")["status"] == "offline")
    assert history_reasons(store) == ["duration reached"]
    assert len(launcher.processes) == 1


async def test_one_minute_daily_stream_is_rearmed(supervisor, store, launcher, fake_time, stream):
    store.update_stream("s1", {
        "stream_duration_minutes": 1,
        "schedule_type": "daily",
        "recurring_enabled": True,
    })
    await supervisor.start_stream("s1")
    fake_time.advance(seconds=61)
    launcher.last.exit(0)

    await eventually(lambda: store.find_stream("s1")["status"] == "scheduled")
    assert history_reasons(store) == ["duration reached"]


async def test_clean_exit_before_deadline(supervisor, store, launcher, stream):
    await supervisor.start_stream("s1")
    launcher.last.exit(0)

    await eventually(lambda: store.find_stream("s1")["status"] == "offline")
    assert history_reasons(store) == ["process exited"]
    assert len(launcher.processes) == 1


async def test_crash_is_restarted(supervisor, store, launcher, stream):
    await supervisor.start_stream("s1")
    first = launcher.last
    first.exit(-signal.SIGSEGV)

    await eventually(lambda: len(launcher.processes) == 2 and supervisor.is_active("s1"))
    assert supervisor.shadow("s1").pid == launcher.last.pid
    assert supervisor.retry_count("s1") == 1
    assert store.find_stream("s1")["status"] == "live"
    assert store.list_history() == []
    assert any("relay process crashed" in line for line in supervisor.get_logs("s1"))


async def test_crash_restarts_are_bounded(make_supervisor, store, launcher, stream):
    supervisor = await make_supervisor(settings=fast_settings(max_retry_attempts=1))
    await supervisor.start_stream("s1")

    launcher.last.exit(1)
    await eventually(lambda: len(launcher.processes) == 2 and supervisor.is_active("s1"))

    launcher.last.exit(1)
    await eventually(lambda: store.find_stream("s1")["status"] == "offline")
    assert history_reasons(store) == ["crash retries exhausted"]
    assert not supervisor.is_active("s1")
    assert not supervisor.has_pending_restart("s1")
    assert len(launcher.processes) == 2


async def test_crash_near_end_is_not_restarted(supervisor, store, launcher, fake_time, stream):
    store.update_stream("s1", {"stream_duration_minutes": 1})
    await supervisor.start_stream("s1")

    fake_time.advance(seconds=30)
    launcher.last.exit(-signal.SIGABRT)

    await eventually(lambda: store.find_stream("s1")["status"] == "offline")
    assert history_reasons(store) == ["crashed near end of duration"]
    assert len(launcher.processes) == 1


async def test_restart_recomputes_duration(supervisor, store, launcher, stream):
    await supervisor.start_stream("s1")
    store.update_stream("s1", {"stream_duration_minutes": 30})
    launcher.last.exit(1)

    await eventually(lambda: len(launcher.prepared) == 2 and supervisor.is_active("s1"))
    assert launcher.prepared[-1] == ("s1", 1800)


async def test_stop_cancels_pending_restart(make_supervisor, store, launcher, stream):
    supervisor = await make_supervisor(settings=fast_settings(restart_delay_seconds=0.3))
    await supervisor.start_stream("s1")
    launcher.last.exit(1)

    await eventually(lambda: supervisor.has_pending_restart("s1"))
    result = await supervisor.stop_stream("s1")

    assert result.ok
    assert not supervisor.has_pending_restart("s1")
    await asyncio.sleep(0.4)
    assert len(launcher.processes) == 1
    assert store.find_stream("s1")["status"] == "offline"


async def test_failed_restart_finalizes(supervisor, store, launcher, stream):
    await supervisor.start_stream("s1")
    launcher.early_exits = [1]
    launcher.last.exit(1)

    await eventually(lambda: store.find_stream("s1")["status"] == "offline")
    [reason] = history_reasons(store)
    assert reason.startswith("restart failed: Relay process failed to start")


# ----------------------------------------------------------------------
# Output, monitors, termination
# ----------------------------------------------------------------------

async def test_log_ring_is_bounded(supervisor, launcher, stream):
    await supervisor.start_stream("s1")
    for n in range(MAX_LOG_LINES + 20):
        launcher.last.emit(f"line {n}")
    launcher.last.emit("frame=  100 fps=30")

    await eventually(lambda: any("line 69" in line for line in supervisor.get_logs("s1")))
    logs = supervisor.get_logs("s1")
    assert len(logs) == MAX_LOG_LINES
    assert not any("frame=" in line for line in logs)


async def test_monitors_follow_the_stream(make_supervisor, launcher, stream):
    monitor = RecordingMonitor()
    supervisor = await make_supervisor()
    supervisor.attach(monitors=[monitor])

    await supervisor.start_stream("s1")
    assert "s1" in monitor.watched

    launcher.last.emit("rtmp://ingest.local: Connection refused")
    await eventually(lambda: monitor.lines)
    assert monitor.lines == [("s1", "rtmp://ingest.local: Connection refused")]
    assert any("endpoint error" in line for line in supervisor.get_logs("s1"))

    await supervisor.stop_stream("s1")
    assert monitor.unwatched == ["s1"]


async def test_termination_follows_the_stream(make_supervisor, launcher, stream):
    async def expire(stream_id):
        return None

    termination = TerminationScheduler(expire)
    supervisor = await make_supervisor()
    supervisor.attach(termination=termination)

    await supervisor.start_stream("s1")
    assert termination.scheduled_ids() == ["s1"]

    await supervisor.stop_stream("s1")
    assert termination.scheduled_ids() == []
    await termination.shutdown()


# ----------------------------------------------------------------------
# Health, status sync, cleanup
# ----------------------------------------------------------------------

async def test_vanished_process_is_finalized(make_supervisor, store, launcher, stream):
    alive = {"value": True}
    supervisor = await make_supervisor(is_alive=lambda pid: alive["value"])
    await supervisor.start_stream("s1")

    assert await supervisor.check_health() == []
    alive["value"] = False
    assert await supervisor.check_health() == ["s1"]

    assert not supervisor.is_active("s1")
    assert store.find_stream("s1")["status"] == "offline"
    assert history_reasons(store) == ["process vanished"]

    launcher.last.exit(0)
    await asyncio.sleep(0.05)
    assert history_reasons(store) == ["process vanished"]


async def test_sync_stream_statuses(supervisor, store, launcher, stream):
    store.create_stream({"id": "ghost", "status": "live", "stream_key": "ghost-key"})
    await supervisor.start_stream("s1")
    store.update_status("s1", "offline")

    await supervisor.sync_stream_statuses()

    assert store.find_stream("ghost")["status"] == "offline"
    assert launcher.killed_tokens == ["ghost-key"]
    assert store.find_stream("s1")["status"] == "live"


async def test_cleanup_stale_entries(supervisor, launcher, stream):
    await supervisor.start_stream("s1")
    assert supervisor.cleanup_stale_entries() == 0

    await supervisor.stop_stream("s1")
    assert supervisor.get_logs("s1")
    assert supervisor.cleanup_stale_entries() >= 1
    assert supervisor.get_logs("s1") == []


async def test_restart_stream_reconnects(supervisor, store, launcher, stream):
    await supervisor.start_stream("s1")
    result = await supervisor.restart_stream("s1")

    assert result.ok
    assert len(launcher.processes) == 2
    assert launcher.processes[0].terminated
    assert history_reasons(store) == ["reconnect"]
    assert store.find_stream("s1")["status"] == "live"


async def test_shutdown_stops_running_streams(make_supervisor, store, launcher, stream):
    supervisor = await make_supervisor()
    await supervisor.start_stream("s1")
    await supervisor.shutdown()

    assert launcher.last.terminated
    assert store.find_stream("s1")["status"] == "offline"
    assert history_reasons(store) == ["shutdown"]
