import asyncio
from datetime import timedelta

from fakes import FakeTrigger, MemoryProgressStore, at
from lotsync.domain.models import SyncRun, SyncStatus
from lotsync.services.dto import TriggerResponse
from lotsync.services.sync import (SqliteProgressStore, Watchdog,
                                   WatchdogSettings)

NOW = at("2026-03-01T12:00:00")


def _ago(seconds: float) -> str:
    return (NOW - timedelta(seconds=seconds)).isoformat()


def _watchdog(progress, trigger=None, **settings) -> Watchdog:
    values = dict(interval_seconds=0.01, stall_threshold_seconds=90.0)
    values.update(settings)
    return Watchdog(
        progress, trigger or FakeTrigger(), WatchdogSettings(**values), now=lambda: NOW
    )


def _tick(dog: Watchdog):
    return asyncio.run(dog.tick(wait=True))


def test_stalled_run_is_failed_then_resumed_from_checkpoint(tmp_path) -> None:
    progress = SqliteProgressStore.from_sqlite_path(tmp_path / "sync.db")
    run = SyncRun(
        run_id="r1",
        status=SyncStatus.RUNNING,
        current_page=812,
        records_processed=81_100,
        expected_total=192_800,
        last_activity_at=_ago(180),
    )
    progress.save_progress(run)
    trigger = FakeTrigger()

    decision = _tick(_watchdog(progress, trigger))

    assert decision.action == "mark_failed_and_resume"
    stored = progress.get_progress("r1")
    assert stored.status == SyncStatus.FAILED
    assert "stalled" in stored.last_error
    (request,) = trigger.requests
    assert request.resume is True
    assert request.from_page == 812
    assert request.source == "watchdog"


def test_advancing_run_is_left_alone() -> None:
    progress = MemoryProgressStore(
        [SyncRun(run_id="r1", status=SyncStatus.RUNNING, last_activity_at=_ago(30))]
    )
    trigger = FakeTrigger()

    decision = _tick(_watchdog(progress, trigger))

    assert decision.action == "none"
    assert trigger.requests == []


def test_yielded_run_is_resumed_immediately() -> None:
    progress = MemoryProgressStore(
        [
            SyncRun(
                run_id="r1",
                status=SyncStatus.RUNNING,
                current_page=40,
                last_activity_at=_ago(600),
                yielded_at=_ago(600),
            )
        ]
    )
    trigger = FakeTrigger()

    decision = _tick(_watchdog(progress, trigger))

    assert decision.action == "resume"
    assert trigger.requests[0].from_page == 40
    assert progress.get_latest().status == SyncStatus.RUNNING


def test_failed_run_waits_for_grace_period() -> None:
    run = SyncRun(
        run_id="r1",
        status=SyncStatus.FAILED,
        current_page=3,
        records_processed=500,
        expected_total=1000,
        last_activity_at=_ago(2),
        last_error_category="transient",
    )
    trigger = FakeTrigger()
    dog = _watchdog(MemoryProgressStore([run]), trigger, resume_grace_seconds=3.0)

    assert _tick(dog).action == "wait"
    assert trigger.requests == []


def test_connectivity_failures_back_off_then_give_up() -> None:
    run = SyncRun(
        run_id="r1",
        status=SyncStatus.FAILED,
        last_activity_at=_ago(30),
        last_error="cannot reach upstream",
        last_error_category="connectivity",
        connectivity_failures=1,
    )
    progress = MemoryProgressStore([run])
    trigger = FakeTrigger()
    dog = _watchdog(progress, trigger, connectivity_grace_seconds=60.0, max_connectivity_resumes=3)

    assert _tick(dog).action == "wait"

    run.last_activity_at = _ago(120)
    progress.save_progress(run)
    assert _tick(dog).action == "resume"

    run.connectivity_failures = 3
    progress.save_progress(run)
    assert _tick(dog).action == "give_up"
    assert _tick(dog).action == "wait"
    assert len(trigger.requests) == 1


def test_no_resume_while_trigger_is_busy() -> None:
    progress = MemoryProgressStore(
        [SyncRun(run_id="r1", status=SyncStatus.FAILED, last_activity_at=_ago(600))]
    )
    trigger = FakeTrigger()
    trigger.is_busy = True

    decision = _tick(_watchdog(progress, trigger))

    assert decision.action == "busy"
    assert trigger.requests == []


def test_resume_keeps_invoking_while_run_yields() -> None:
    progress = MemoryProgressStore(
        [SyncRun(run_id="r1", status=SyncStatus.FAILED, current_page=9, last_activity_at=_ago(600))]
    )
    trigger = FakeTrigger(
        [
            TriggerResponse(success=True, status="running", should_continue=True),
            TriggerResponse(success=True, status="completed", should_continue=False),
        ]
    )
    dog = _watchdog(progress, trigger)

    assert _tick(dog).action == "resume"
    assert len(trigger.requests) == 2
    assert trigger.requests[0].from_page == 9
    assert trigger.requests[1].from_page is None
    assert dog.last_response.status == "completed"


def test_only_one_resume_at_a_time() -> None:
    progress = MemoryProgressStore(
        [SyncRun(run_id="r1", status=SyncStatus.FAILED, last_activity_at=_ago(600))]
    )
    release = None

    class SlowTrigger(FakeTrigger):
        async def trigger(self, request=None):
            self.requests.append(request)
            await release.wait()
            return TriggerResponse(success=True, status="completed")

    trigger = SlowTrigger()
    dog = _watchdog(progress, trigger)

    async def main():
        nonlocal release
        release = asyncio.Event()
        first = await dog.tick()
        await asyncio.sleep(0)
        second = await dog.tick()
        release.set()
        await asyncio.sleep(0.01)
        return first, second

    first, second = asyncio.run(main())
    assert first.action == "resume"
    assert second.action == "busy"
    assert len(trigger.requests) == 1


def test_completed_or_missing_runs_need_nothing() -> None:
    assert _tick(_watchdog(MemoryProgressStore())).action == "none"
    done = SyncRun(run_id="r1", status=SyncStatus.COMPLETED, last_activity_at=_ago(9999))
    assert _tick(_watchdog(MemoryProgressStore([done]))).action == "none"


def test_run_forever_stops_on_request() -> None:
    progress = MemoryProgressStore()
    dog = _watchdog(progress)

    async def main():
        task = asyncio.create_task(dog.run_forever())
        await asyncio.sleep(0.05)
        dog.stop()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(main())
