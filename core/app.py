import asyncio
import signal
import sys
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from core.jobs import ExecutionLockSet
from core.scheduler import ScheduleEngine
from runtime.version import as_string
from services.broadcasts.executor import BroadcastExecutor
from services.broadcasts.rotation import ResourceRotator
from services.streams.monitors import EndpointHealthMonitor
from services.streams.relay import RelayLauncher
from services.streams.supervisor import StreamSupervisor
from services.streams.termination import TerminationScheduler
from services.streams.triggers import StreamStartTrigger
from services.youtube.api.broadcasts import YouTubeBroadcastAPI
from services.youtube.workers.status_sync import BroadcastStatusSync
from shared.config.system import SystemConfig, load_system_config
from shared.logging.logger import get_logger
from shared.runtime.quotas import LiveLimitPolicy
from shared.storage.state_store import StateStore
from shared.utils.clock import Clock

log = get_logger("core.app")


@dataclass
class Runtime:
    config: SystemConfig
    clock: Clock
    store: StateStore
    supervisor: StreamSupervisor
    termination: TerminationScheduler
    endpoint_health: EndpointHealthMonitor
    status_sync: BroadcastStatusSync
    triggers: StreamStartTrigger
    engine: ScheduleEngine


def build_runtime(config: Optional[SystemConfig] = None) -> Runtime:
    """
    Construct every subsystem and wire them together. Nothing is started.
    """
    cfg = config or load_system_config()

    clock = Clock(cfg.timezone, fallback_offset_hours=cfg.fallback_utc_offset_hours)
    store = StateStore(cfg.state_path)

    launcher = RelayLauncher(cfg.ffmpeg_path, temp_dir=cfg.temp_dir, media_root=cfg.media_root)
    limits = LiveLimitPolicy(store, default_limit=cfg.default_live_limit)
    supervisor = StreamSupervisor(
        store,
        launcher,
        limits=limits,
        clock=clock,
        settings=cfg.supervisor,
    )

    async def _expire(stream_id: str):
        return await supervisor.stop_stream(stream_id, reason="duration reached")

    async def _reconnect(stream_id: str):
        return await supervisor.restart_stream(stream_id)

    termination = TerminationScheduler(
        _expire,
        clock=clock,
        check_interval=cfg.termination.duration_check_interval_seconds,
        overdue_seconds=cfg.termination.force_stop_overdue_seconds,
    )
    endpoint_health = EndpointHealthMonitor(
        _reconnect,
        clock=clock,
        failure_threshold=cfg.monitors.endpoint_failure_threshold,
        reconnect_delay=cfg.monitors.endpoint_reconnect_delay_seconds,
        min_remaining_seconds=cfg.monitors.endpoint_min_remaining_seconds,
    )

    api = YouTubeBroadcastAPI()
    status_sync = BroadcastStatusSync(
        api,
        store,
        supervisor.stop_stream,
        interval=cfg.monitors.status_sync_interval_seconds,
    )
    supervisor.attach(termination=termination, monitors=(endpoint_health, status_sync))

    triggers = StreamStartTrigger(store, supervisor, clock=clock, settings=cfg.triggers)

    executor = BroadcastExecutor(
        store,
        api,
        locks=ExecutionLockSet(),
        rotator=ResourceRotator(store, media_root=cfg.media_root),
        clock=clock,
        settings=cfg.schedule,
    )
    engine = ScheduleEngine(store, executor, clock=clock, settings=cfg.schedule)

    return Runtime(
        config=cfg,
        clock=clock,
        store=store,
        supervisor=supervisor,
        termination=termination,
        endpoint_health=endpoint_health,
        status_sync=status_sync,
        triggers=triggers,
        engine=engine,
    )


async def main(stop_event: asyncio.Event):
    # --------------------------------------------------
    # ENV
    # --------------------------------------------------
    load_dotenv()
    log.info("Environment variables loaded")
    log.info(f"{as_string()} booting")

    # --------------------------------------------------
    # CORE SYSTEMS
    # --------------------------------------------------
    rt = build_runtime()
    log.info(
        f"Timezone {rt.clock.tz_name}"
        f"{' (degraded: fixed offset)' if rt.clock.degraded else ''} | "
        f"state={rt.store.path} | ffmpeg={rt.config.ffmpeg_path}"
    )

    # --------------------------------------------------
    # START LOOPS
    # --------------------------------------------------
    await rt.supervisor.start()
    await rt.termination.start()
    await rt.triggers.start()
    await rt.engine.start()
    log.info("Runtime started")

    # --------------------------------------------------
    # BLOCK UNTIL SHUTDOWN SIGNAL
    # --------------------------------------------------
    await stop_event.wait()

    log.info("Shutdown initiated")

    # --------------------------------------------------
    # ORDERLY SHUTDOWN: SCHEDULING FIRST, PROCESSES LAST
    # --------------------------------------------------
    for name, component in (
        ("Schedule engine", rt.engine),
        ("Stream triggers", rt.triggers),
        ("Termination watchdog", rt.termination),
        ("Endpoint health monitor", rt.endpoint_health),
        ("Broadcast status sync", rt.status_sync),
        ("Supervisor", rt.supervisor),
    ):
        try:
            await component.shutdown()
        except Exception as e:
            log.warning(f"{name} shutdown error ignored: {e}")

    log.info("StreamRelay stopped")


# ----------------------------------------------------------------------
# SIGNAL HANDLING (WINDOWS-SAFE)
# ----------------------------------------------------------------------

def _install_signal_handlers(
    loop: asyncio.AbstractEventLoop,
    stop_event: asyncio.Event,
):
    """
    Uses signal.signal + asyncio.Event to unwind cleanly.
    """

    def _handler(signum, frame):
        loop.call_soon_threadsafe(stop_event.set)

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
    except ValueError as e:
        # not the main thread
        log.warning(f"Signal handlers not installed: {e}")


# ----------------------------------------------------------------------
# ENTRYPOINT
# ----------------------------------------------------------------------

def run():
    stop_event = asyncio.Event()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    _install_signal_handlers(loop, stop_event)

    try:
        loop.run_until_complete(main(stop_event))

    except KeyboardInterrupt:
        log.info("KeyboardInterrupt received; shutdown initiated")
        stop_event.set()

    finally:
        # --------------------------------------------------
        # CANCEL REMAINING TASKS (CLEANLY)
        # --------------------------------------------------
        pending = [t for t in asyncio.all_tasks(loop) if not t.done()]
        for task in pending:
            task.cancel()

        if pending:
            loop.run_until_complete(
                asyncio.gather(*pending, return_exceptions=True)
            )

        # --------------------------------------------------
        # FINAL LOOP CLEANUP
        # --------------------------------------------------
        loop.run_until_complete(loop.shutdown_asyncgens())

        asyncio.set_event_loop(None)
        loop.close()


if __name__ == "__main__":
    run()
    sys.exit(0)
