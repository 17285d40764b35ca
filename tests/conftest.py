import threading
import time
from datetime import datetime, timedelta, timezone

import pytest

from acuity import FocusEngine


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class FakeCapture:
    def __init__(self, images=("frame",)):
        self.images = list(images)
        self.calls = 0
        self.error = None

    def capture(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.images)


class ScriptedClassifier:
    """Replays canned replies; an Exception instance in the script is raised."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    def classify(self, task, images, timeout):
        self.calls.append((task, list(images), timeout))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


class BlockingClassifier:
    def __init__(self, reply='{"on": 1, "activity": "Editing main.go"}'):
        self.reply = reply
        self.started = threading.Event()
        self.release = threading.Event()
        self.calls = 0

    def classify(self, task, images, timeout):
        self.calls += 1
        self.started.set()
        self.release.wait(5)
        return self.reply


class ManualScheduler:
    """Runs cycles only when the test triggers them."""

    def __init__(self, cycle):
        self.cycle = cycle
        self.running = False
        self.period_fn = None
        self.starts = 0

    def start(self, period_fn):
        if self.running:
            return
        self.running = True
        self.starts += 1
        self.period_fn = period_fn

    def stop(self):
        self.running = False

    def set_period(self, period):
        self.period_fn = period

    def trigger(self):
        return self.cycle() if self.running else None


class RecordingBackend:
    def __init__(self, fail=False, delay=0):
        self.fail = fail
        self.delay = delay
        self.observations = []
        self.completed = []
        self.writes = 0

    def _write(self):
        self.writes += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise ConnectionError("backend down")

    def append_observation(self, observation):
        self._write()
        self.observations.append(observation)

    def append_completed_task(self, record):
        self._write()
        self.completed.append(record)


ON = '{"on": 1, "activity": "Editing main.go"}'
OFF = '{"on": 0, "activity": "Browsing Reddit"}'


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_engine(clock):
    engines = []

    def factory(*replies, config=None, **kwargs):
        kwargs.setdefault("capture", FakeCapture())
        kwargs.setdefault("classifier", ScriptedClassifier(*(replies or (ON,))))
        kwargs.setdefault("scheduler_factory", ManualScheduler)
        engine = FocusEngine(config=config, clock=clock, **kwargs)
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()
