# tests/test_task_scheduler.py

from __future__ import annotations

import asyncio

import pytest

from dashsync.config import TaskConfig, TaskPriority
from dashsync.errors import TaskNotFoundError, TransientFetchFailure
from dashsync.interfaces import LivenessSignal
from dashsync.models import ExecutionStatus, ScheduledTask, TaskEventType
from dashsync.scheduler import MAX_DELAY_MS, TaskScheduler, compute_delay

from .fakes import FakeFetcher, wait_until


def make_task(task_id: str = "dashboard-quick-stats", fetch=None, **config) -> ScheduledTask:
    return ScheduledTask(
        id=task_id,
        name=task_id,
        fetch=fetch or FakeFetcher(),
        config=TaskConfig(**config),
    )


# ---------------------------------------------------------------------------
# Delay computation
# ---------------------------------------------------------------------------


def test_delay_applies_backoff_then_priority_factor() -> None:
    cfg = TaskConfig(interval_ms=30000, backoff_multiplier=2, priority=TaskPriority.HIGH)

    assert [compute_delay(cfg, n) for n in (0, 1, 2)] == [22500.0, 45000.0, 90000.0]


def test_delay_cap_is_applied_before_priority_factor() -> None:
    for priority in TaskPriority:
        cfg = TaskConfig(interval_ms=60000, backoff_multiplier=3, priority=priority)
        assert compute_delay(cfg, 25) == MAX_DELAY_MS * priority.factor


def test_delay_is_non_decreasing_in_retry_count() -> None:
    cfg = TaskConfig(interval_ms=10000, backoff_multiplier=1.5, priority=TaskPriority.LOW)
    delays = [compute_delay(cfg, n) for n in range(15)]

    assert delays == sorted(delays)
    assert max(delays) <= MAX_DELAY_MS * 1.5


def test_higher_priority_runs_sooner_for_equal_history() -> None:
    delays = [
        compute_delay(TaskConfig(interval_ms=20000, priority=priority), 2)
        for priority in (
            TaskPriority.CRITICAL,
            TaskPriority.HIGH,
            TaskPriority.MEDIUM,
            TaskPriority.LOW,
        )
    ]

    assert delays == sorted(delays)
    assert len(set(delays)) == 4


def test_empty_task_id_is_rejected() -> None:
    with pytest.raises(ValueError):
        make_task(task_id="")


# ---------------------------------------------------------------------------
# Execution and retry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_three_failures_back_off_then_disable(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher(ConnectionError("backend down"))
    scheduler.add_task(
        make_task(
            fetch=fetch,
            interval_ms=30000,
            max_retries=3,
            backoff_multiplier=2,
            priority=TaskPriority.HIGH,
        )
    )
    scheduler.start()

    delays = [scheduler.get_task_status("dashboard-quick-stats").last_delay_ms]
    for _ in range(2):
        result = await scheduler.run_task_now("dashboard-quick-stats")
        assert result.status == ExecutionStatus.FAILED
        assert not result.disabled
        delays.append(scheduler.get_task_status("dashboard-quick-stats").last_delay_ms)

    final = await scheduler.run_task_now("dashboard-quick-stats")
    status = scheduler.get_task_status("dashboard-quick-stats")

    assert delays == [22500.0, 45000.0, 90000.0]
    assert final.disabled
    assert final.retry_count == 3
    assert status.enabled is False
    assert status.next_run is None
    assert scheduler.pending_count == 0
    assert fetch.calls == 3


@pytest.mark.asyncio
async def test_success_resets_retry_count(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher(ConnectionError("flaky"), ConnectionError("flaky"), {"total": 7})
    scheduler.add_task(make_task(fetch=fetch, max_retries=5))

    await scheduler.run_task_now("dashboard-quick-stats")
    await scheduler.run_task_now("dashboard-quick-stats")
    assert scheduler.get_task_status("dashboard-quick-stats").retry_count == 2

    result = await scheduler.run_task_now("dashboard-quick-stats")

    assert result.ok
    assert result.value == {"total": 7}
    assert scheduler.get_task_status("dashboard-quick-stats").retry_count == 0


@pytest.mark.asyncio
async def test_hooks_receive_value_and_failure(scheduler: TaskScheduler) -> None:
    values: list = []
    failures: list[TransientFetchFailure] = []
    error = ConnectionError("timeout")

    task = make_task(fetch=FakeFetcher({"n": 1}, error))
    task.on_success = values.append
    task.on_error = failures.append
    scheduler.add_task(task)

    await scheduler.run_task_now(task.id)
    await scheduler.run_task_now(task.id)

    assert values == [{"n": 1}]
    assert len(failures) == 1
    assert failures[0].cause is error
    assert failures[0].attempt == 1


@pytest.mark.asyncio
async def test_hook_errors_are_contained(scheduler: TaskScheduler) -> None:
    async def broken_hook(_value) -> None:
        raise RuntimeError("consumer bug")

    task = make_task()
    task.on_success = broken_hook
    scheduler.add_task(task)

    result = await scheduler.run_task_now(task.id)

    assert result.ok
    assert scheduler.get_task_status(task.id).is_running is False


@pytest.mark.asyncio
async def test_task_never_runs_reentrantly(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher({"ok": True})
    fetch.gate = asyncio.Event()
    scheduler.add_task(make_task(fetch=fetch))

    first = asyncio.create_task(scheduler.run_task_now("dashboard-quick-stats"))
    await wait_until(lambda: fetch.calls == 1)

    second = await scheduler.run_task_now("dashboard-quick-stats")
    assert second.status == ExecutionStatus.SKIPPED
    assert scheduler.get_task_status("dashboard-quick-stats").is_running

    fetch.gate.set()
    assert (await first).ok
    assert fetch.calls == 1


@pytest.mark.asyncio
async def test_run_task_now_unknown_id_raises(scheduler: TaskScheduler) -> None:
    with pytest.raises(TaskNotFoundError):
        await scheduler.run_task_now("missing")


@pytest.mark.asyncio
async def test_one_task_exhausting_does_not_affect_others(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task("bad", fetch=FakeFetcher(ConnectionError("x")), max_retries=1))
    scheduler.add_task(make_task("good", fetch=FakeFetcher({"ok": 1})))
    scheduler.start()

    await scheduler.run_task_now("bad")
    good = await scheduler.run_task_now("good")

    assert scheduler.get_task_status("bad").enabled is False
    assert good.ok
    assert scheduler.get_task_status("good").enabled is True
    assert scheduler.get_task_status("good").next_run is not None


@pytest.mark.asyncio
async def test_listener_sees_lifecycle_events(scheduler: TaskScheduler) -> None:
    events = []
    scheduler.add_listener(events.append)
    scheduler.add_listener(lambda event: 1 / 0)
    scheduler.add_task(make_task(fetch=FakeFetcher(ConnectionError("down")), max_retries=1))

    await scheduler.run_task_now("dashboard-quick-stats")

    assert [event.type for event in events] == [
        TaskEventType.STARTED,
        TaskEventType.FAILED,
        TaskEventType.DISABLED,
    ]
    assert "down" in events[1].error


@pytest.mark.asyncio
async def test_raising_listener_does_not_stall_timer_runs(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher({"ok": True})
    scheduler.add_listener(lambda event: 1 / 0)
    scheduler.add_task(make_task(fetch=fetch, interval_ms=20))
    scheduler.start()

    await wait_until(lambda: fetch.calls >= 2)

    status = scheduler.get_task_status("dashboard-quick-stats")
    assert status.enabled
    assert status.retry_count == 0


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_timers_fire_and_reschedule(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher({"ok": True})
    scheduler.add_task(make_task(fetch=fetch, interval_ms=10))
    scheduler.start()

    await wait_until(lambda: fetch.calls >= 3)

    assert scheduler.get_task_status("dashboard-quick-stats").retry_count == 0


@pytest.mark.asyncio
async def test_disabled_task_is_not_scheduled(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher()
    scheduler.add_task(make_task(fetch=fetch, interval_ms=10, enabled=False))
    scheduler.start()

    await asyncio.sleep(0.05)

    assert fetch.calls == 0
    assert scheduler.resume_task("dashboard-quick-stats") is False


@pytest.mark.asyncio
async def test_pause_all_then_resume_all(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher()
    scheduler.add_task(make_task(fetch=fetch, interval_ms=20, max_retries=4))
    scheduler.start()
    scheduler.pause_all()

    await asyncio.sleep(0.08)
    assert fetch.calls == 0
    assert scheduler.pending_count == 0
    assert scheduler.get_task_status("dashboard-quick-stats").enabled

    scheduler.resume_all()
    assert scheduler.pending_count == 1

    await wait_until(lambda: fetch.calls >= 1)


@pytest.mark.asyncio
async def test_pause_keeps_retry_state(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task(fetch=FakeFetcher(ConnectionError("x")), max_retries=5))
    scheduler.start()
    await scheduler.run_task_now("dashboard-quick-stats")

    scheduler.pause_all()
    scheduler.resume_all()

    status = scheduler.get_task_status("dashboard-quick-stats")
    assert status.retry_count == 1
    assert status.last_delay_ms == compute_delay(TaskConfig(max_retries=5), 1)


@pytest.mark.asyncio
async def test_completion_during_pause_does_not_reschedule(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher()
    fetch.gate = asyncio.Event()
    scheduler.add_task(make_task(fetch=fetch))
    scheduler.start()

    running = asyncio.create_task(scheduler.run_task_now("dashboard-quick-stats"))
    await wait_until(lambda: fetch.calls == 1)
    scheduler.pause_all()
    fetch.gate.set()
    await running

    assert scheduler.pending_count == 0


@pytest.mark.asyncio
async def test_liveness_signal_pauses_and_resumes(
    scheduler: TaskScheduler, liveness: LivenessSignal
) -> None:
    scheduler.add_task(make_task())
    scheduler.start()
    assert scheduler.pending_count == 1

    liveness.set_visible(False)
    assert scheduler.is_paused
    assert scheduler.pending_count == 0

    liveness.set_visible(True)
    assert not scheduler.is_paused
    assert scheduler.pending_count == 1


@pytest.mark.asyncio
async def test_start_while_hidden_stays_paused() -> None:
    liveness = LivenessSignal(visible=False)
    scheduler = TaskScheduler(liveness=liveness)
    scheduler.add_task(make_task())
    try:
        scheduler.start()
        assert scheduler.is_paused
        assert scheduler.pending_count == 0
    finally:
        await scheduler.close()


@pytest.mark.asyncio
async def test_pause_and_resume_single_task(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task("a"))
    scheduler.add_task(make_task("b"))
    scheduler.start()

    assert scheduler.pause_task("a") is True
    assert scheduler.pause_task("a") is False
    assert scheduler.get_task_status("a").next_run is None
    assert scheduler.get_task_status("b").next_run is not None

    assert scheduler.resume_task("a") is True
    assert scheduler.pending_count == 2


@pytest.mark.asyncio
async def test_stop_keeps_registry_and_start_resumes(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task("a"))
    scheduler.add_task(make_task("b", enabled=False))
    scheduler.start()

    scheduler.stop()
    assert not scheduler.is_active
    assert scheduler.pending_count == 0
    assert [task.id for task in scheduler.get_all_tasks()] == ["a", "b"]

    scheduler.start()
    assert scheduler.pending_count == 1


@pytest.mark.asyncio
async def test_restart_clears_manual_pause(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher()
    scheduler.add_task(make_task(fetch=fetch, interval_ms=20))
    scheduler.start()
    scheduler.pause_all()
    scheduler.stop()

    scheduler.start()

    assert not scheduler.is_paused
    assert scheduler.pending_count == 1
    await wait_until(lambda: fetch.calls >= 1)


@pytest.mark.asyncio
async def test_restart_while_hidden_stays_paused(
    scheduler: TaskScheduler, liveness: LivenessSignal
) -> None:
    scheduler.add_task(make_task())
    scheduler.start()
    scheduler.stop()
    liveness.set_visible(False)

    scheduler.start()

    assert scheduler.is_paused
    assert scheduler.pending_count == 0


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_update_task_config_re_enables_exhausted_task(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task(fetch=FakeFetcher(ConnectionError("x")), max_retries=1))
    scheduler.start()
    await scheduler.run_task_now("dashboard-quick-stats")
    assert scheduler.get_task_status("dashboard-quick-stats").enabled is False

    status = scheduler.update_task_config(
        "dashboard-quick-stats", enabled=True, interval_ms=45000
    )

    assert status.enabled is True
    assert status.retry_count == 0
    assert status.interval_ms == 45000
    assert status.next_run is not None


@pytest.mark.asyncio
async def test_update_task_config_unknown_id(scheduler: TaskScheduler) -> None:
    with pytest.raises(TaskNotFoundError):
        scheduler.update_task_config("missing", enabled=True)


@pytest.mark.asyncio
async def test_add_task_replaces_existing_registration(scheduler: TaskScheduler) -> None:
    first = FakeFetcher({"v": 1})
    second = FakeFetcher({"v": 2})
    scheduler.add_task(make_task(fetch=first))
    scheduler.add_task(make_task(fetch=second))

    result = await scheduler.run_task_now("dashboard-quick-stats")

    assert result.value == {"v": 2}
    assert len(scheduler.get_all_tasks()) == 1


@pytest.mark.asyncio
async def test_removed_task_is_not_rescheduled_after_flight(scheduler: TaskScheduler) -> None:
    fetch = FakeFetcher()
    fetch.gate = asyncio.Event()
    scheduler.add_task(make_task(fetch=fetch))
    scheduler.start()

    running = asyncio.create_task(scheduler.run_task_now("dashboard-quick-stats"))
    await wait_until(lambda: fetch.calls == 1)

    assert scheduler.remove_task("dashboard-quick-stats") is True
    assert scheduler.remove_task("dashboard-quick-stats") is False

    fetch.gate.set()
    await running

    assert scheduler.pending_count == 0
    assert scheduler.get_task_status("dashboard-quick-stats") is None


@pytest.mark.asyncio
async def test_status_is_a_frozen_copy(scheduler: TaskScheduler) -> None:
    scheduler.add_task(make_task())
    status = scheduler.get_task_status("dashboard-quick-stats")

    with pytest.raises(Exception):
        status.retry_count = 9

    await scheduler.run_task_now("dashboard-quick-stats")
    assert status.last_run is None


@pytest.mark.asyncio
async def test_close_cancels_in_flight_executions() -> None:
    scheduler = TaskScheduler()
    fetch = FakeFetcher()
    fetch.gate = asyncio.Event()
    scheduler.add_task(make_task(fetch=fetch, interval_ms=5))
    scheduler.start()
    await wait_until(lambda: fetch.calls == 1)

    await scheduler.close()

    assert scheduler.get_all_tasks() == []
    assert not scheduler.is_active
