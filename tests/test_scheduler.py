import threading
import time

from acuity import CaptureScheduler


def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_first_tick_fires_immediately():
    fired = threading.Event()
    scheduler = CaptureScheduler(fired.set)
    scheduler.start(60)
    try:
        assert fired.wait(1)
    finally:
        scheduler.stop()


def test_start_is_idempotent():
    ticks = []
    scheduler = CaptureScheduler(lambda: ticks.append(1))
    scheduler.start(60)
    scheduler.start(60)
    try:
        assert wait_until(lambda: len(ticks) == 1)
        time.sleep(0.2)
        assert len(ticks) == 1
    finally:
        scheduler.stop()


def test_stop_is_idempotent_and_safe_when_idle():
    scheduler = CaptureScheduler(lambda: None)
    scheduler.stop()
    scheduler.start(60)
    scheduler.stop()
    scheduler.stop()
    assert not scheduler.running
    assert scheduler.trigger() is False


def test_no_ticks_after_stop():
    ticks = []
    scheduler = CaptureScheduler(lambda: ticks.append(1))
    scheduler.start(0.02)
    assert wait_until(lambda: len(ticks) >= 2)
    scheduler.stop()
    count = len(ticks)
    time.sleep(0.2)
    assert len(ticks) == count


def test_overlapping_tick_is_dropped():
    started = threading.Event()
    release = threading.Event()
    calls = []

    def cycle():
        calls.append(1)
        started.set()
        release.wait(5)

    scheduler = CaptureScheduler(cycle)
    scheduler.start(60)
    try:
        assert started.wait(1)
        assert scheduler.trigger() is False
        assert scheduler.dropped_ticks == 1
    finally:
        release.set()
        scheduler.stop()
    assert calls == [1]


def test_trigger_runs_again_once_cycle_finished():
    calls = []
    scheduler = CaptureScheduler(lambda: calls.append(1))
    scheduler.start(60)
    try:
        assert wait_until(lambda: len(calls) == 1)
        assert wait_until(scheduler.trigger)
        assert wait_until(lambda: len(calls) == 2)
    finally:
        scheduler.stop()


def test_failing_cycle_does_not_stop_scheduling():
    calls = []

    def cycle():
        calls.append(1)
        raise RuntimeError("display went away")

    scheduler = CaptureScheduler(cycle)
    scheduler.start(0.02)
    try:
        assert wait_until(lambda: len(calls) >= 3)
        assert scheduler.running
    finally:
        scheduler.stop()


def test_set_period_applies_without_restart():
    ticks = []
    scheduler = CaptureScheduler(lambda: ticks.append(time.monotonic()))
    scheduler.start(30)
    try:
        assert wait_until(lambda: len(ticks) == 1)
        scheduler.set_period(0.02)
        assert wait_until(lambda: len(ticks) >= 4)
        assert scheduler.running
    finally:
        scheduler.stop()


def test_period_function_is_reevaluated():
    period = {"value": 30}
    ticks = []
    scheduler = CaptureScheduler(lambda: ticks.append(1))
    scheduler.start(lambda: period["value"])
    try:
        assert wait_until(lambda: len(ticks) == 1)
        period["value"] = 0.02
        scheduler.set_period(lambda: period["value"])
        assert wait_until(lambda: len(ticks) >= 3)
    finally:
        scheduler.stop()


def test_restart_after_stop():
    ticks = []
    scheduler = CaptureScheduler(lambda: ticks.append(1))
    scheduler.start(60)
    assert wait_until(lambda: len(ticks) == 1)
    scheduler.stop()
    scheduler.start(60)
    try:
        assert wait_until(lambda: len(ticks) == 2)
    finally:
        scheduler.stop()
