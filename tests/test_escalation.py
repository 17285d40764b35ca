from datetime import datetime, timezone

import pytest

from acuity import EscalationLevel, EscalationStateMachine, Observation

WHEN = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


def on():
    return Observation(WHEN, "Editing main.go", True, "write code")


def off():
    return Observation(WHEN, "Browsing Reddit", False, "write code")


def error():
    return Observation(WHEN, "API error: timeout", False, "write code", error=True)


def unknown():
    return Observation(WHEN, "No task specified", None, "")


def test_warning_fires_once_at_threshold():
    machine = EscalationStateMachine(warning_threshold=3, critical_threshold=90)
    events = [machine.process(off()) for _ in range(5)]
    assert events[:2] == [None, None]
    assert events[2].level == EscalationLevel.WARNING
    assert events[2].previous == EscalationLevel.NORMAL
    assert events[2].consecutive_off_task == 3
    assert events[3:] == [None, None]


def test_levels_never_skip_warning():
    machine = EscalationStateMachine(warning_threshold=2, critical_threshold=4)
    counts, levels = [], []
    for _ in range(8):
        machine.process(off())
        counts.append(machine.consecutive_off_task)
        levels.append(machine.level)
    assert counts == sorted(set(counts))
    assert levels == [
        EscalationLevel.NORMAL,
        EscalationLevel.WARNING,
        EscalationLevel.WARNING,
        EscalationLevel.CRITICAL,
        EscalationLevel.CRITICAL,
        EscalationLevel.CRITICAL,
        EscalationLevel.CRITICAL,
        EscalationLevel.CRITICAL,
    ]


def test_critical_is_reached_once():
    machine = EscalationStateMachine(warning_threshold=3, critical_threshold=90)
    events = [e for e in (machine.process(off()) for _ in range(120)) if e]
    assert [e.level for e in events] == [EscalationLevel.WARNING, EscalationLevel.CRITICAL]
    assert events[1].consecutive_off_task == 90


@pytest.mark.parametrize("observation", [on(), error()])
def test_on_task_or_error_resets_from_any_level(observation):
    machine = EscalationStateMachine(warning_threshold=1, critical_threshold=2)
    machine.process(off())
    machine.process(off())
    assert machine.level == EscalationLevel.CRITICAL

    event = machine.process(observation)
    assert machine.consecutive_off_task == 0
    assert machine.level == EscalationLevel.NORMAL
    assert event.level == EscalationLevel.NORMAL
    assert event.previous == EscalationLevel.CRITICAL
    assert event.detail == ("classifier error" if observation.error else "back on task")


def test_reset_while_normal_is_silent():
    machine = EscalationStateMachine()
    machine.process(off())
    assert machine.process(on()) is None
    assert machine.consecutive_off_task == 0


def test_errors_never_count_as_off_task():
    machine = EscalationStateMachine(warning_threshold=3, critical_threshold=5)
    for _ in range(10):
        assert machine.process(error()) is None
    assert machine.consecutive_off_task == 0
    assert machine.level == EscalationLevel.NORMAL


def test_unknown_observations_are_inert():
    machine = EscalationStateMachine(warning_threshold=2, critical_threshold=5)
    machine.process(off())
    machine.process(off())
    for _ in range(10):
        assert machine.process(unknown()) is None
    assert machine.level == EscalationLevel.WARNING
    assert machine.consecutive_off_task == 2


def test_explicit_reset():
    machine = EscalationStateMachine(warning_threshold=1, critical_threshold=2)
    machine.process(off())
    event = machine.reset("task confirmed")
    assert event.detail == "task confirmed"
    assert machine.level == EscalationLevel.NORMAL
    assert machine.reset() is None


@pytest.mark.parametrize("warning, critical", [(0, 5), (3, 3), (5, 2)])
def test_invalid_thresholds(warning, critical):
    with pytest.raises(ValueError):
        EscalationStateMachine(warning, critical)
