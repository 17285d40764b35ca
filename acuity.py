"""
Acuity: Focus Monitoring Engine
-------------------------------
Captures the screen at a steady cadence, asks a vision model whether the
current activity matches the task the user declared, escalates when the user
drifts off-task for a sustained stretch and keeps a ledger of focused vs
distracted time for every completed task.
"""

import os
import io
import re
import copy
import json
import math
import time
import base64
import logging
import argparse
import textwrap
import threading
import queue
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from concurrent.futures import wait as wait_futures

import mss
import openai
import requests
from PIL import Image

logger = logging.getLogger("Acuity")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Configuration
DEFAULT_CONFIG = {
    "locked_in_interval": 1,  # seconds between checks while a task is declared
    "observe_interval": 180,  # seconds between checks with no task
    "batch_size": 1,  # captures buffered before each classification
    "classifier_timeout": 20,  # seconds
    "warning_threshold": 3,  # consecutive off-task checks before warning
    "critical_threshold": 90,  # consecutive off-task checks before fully escalated
    "completed_tasks_path": "completed-tasks.json",
    "event_queue_size": 256,  # oldest events are dropped once get_events() falls behind
    "classifier": {
        "model": "gemini-2.0-flash",
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai/",
        "api_key_env": "GEMINI_API_KEY",
        "temperature": 0.2,
        "max_tokens": 300,
    },
    "capture": {
        "max_width": 1920,
        "max_height": 1080,
    },
    "backend": {
        "url": None,  # falls back to ACUITY_BACKEND_URL
        "token_env": "ACUITY_BACKEND_TOKEN",
        "timeout": 10,  # seconds
        "flush_timeout": 5,  # seconds close() waits for completed-task uploads
        "persist_observations": False,  # needs a backend serving POST /api/observations
    },
    "privacy": {
        "anonymize_personal_data": True,
    },
}

NO_TASK_ACTIVITY = "No task specified"
UNKNOWN_ACTIVITY = "Unknown activity"
PARSE_FAILURE_ACTIVITY = "Could not parse response"
API_ERROR_PREFIX = "API error: "

MIN_PERIOD = 0.01  # seconds


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Return the default configuration, overridden by a JSON file if given."""
    config = copy.deepcopy(DEFAULT_CONFIG)
    if path:
        with open(path, 'r') as f:
            config = _merge(config, json.load(f))
    return config


def configure_logging(level: str = "INFO", log_file: Optional[str] = "acuity.log") -> None:
    """Send log records to the console and, optionally, a log file."""
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


# ===== DATA MODEL =====

@dataclass(frozen=True)
class Observation:
    """One classification result.

    ``on_task`` is tri-state: True, False, or None when no task was declared
    and the classifier was never consulted. ``error`` marks observations that
    came from a classifier failure rather than a real off-task judgment.
    """
    timestamp: datetime
    activity: str
    on_task: Optional[bool]
    task: str
    error: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": _iso(self.timestamp),
            "type": "observation",
            "activity": self.activity,
            "on_task": self.on_task,
            "task": self.task,
            "error": self.error,
        }


@dataclass(frozen=True)
class CompletedTask:
    """A closed ledger entry for a task marked done."""
    task: str
    started_at: Optional[datetime]
    completed_at: datetime
    duration_ms: Optional[int]
    focused_ms: int
    distracted_ms: int
    source: str = "manual"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task": self.task,
            "type": "completed",
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "duration_ms": self.duration_ms,
            "focused_ms": self.focused_ms,
            "distracted_ms": self.distracted_ms,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompletedTask":
        # Older cache files stored "timestamp" and "duration" only.
        return cls(
            task=data["task"],
            started_at=_parse_iso(data.get("started_at")),
            completed_at=_parse_iso(data.get("completed_at") or data["timestamp"]),
            duration_ms=data.get("duration_ms", data.get("duration")),
            focused_ms=data.get("focused_ms") or 0,
            distracted_ms=data.get("distracted_ms") or 0,
            source=data.get("source") or "manual",
        )


class EscalationLevel(IntEnum):
    NORMAL = 0
    WARNING = 1
    CRITICAL = 2


@dataclass(frozen=True)
class EscalationEvent:
    """A transition of the escalation state machine."""
    level: EscalationLevel
    previous: EscalationLevel
    consecutive_off_task: int
    detail: str


class ClassifierError(Exception):
    """Raised when the vision classifier cannot be consulted."""


def anonymize_text(text: str) -> str:
    """Mask URLs, e-mail addresses and phone numbers."""
    text = re.sub(r'https?://\S+', "[URL]", text)
    text = re.sub(
        r'\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b',
        "[EMAIL]",
        text
    )
    text = re.sub(
        r'\b(\+\d{1,2}\s?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b',
        "[PHONE]",
        text
    )
    return text


def range_start(range_name: str, now: datetime) -> Optional[datetime]:
    """Lower bound for a named history range; None means everything."""
    if range_name == "today":
        return now.replace(hour=0, minute=0, second=0, microsecond=0)
    if range_name == "week":
        return now - timedelta(days=7)
    if range_name == "month":
        return now - timedelta(days=30)
    return None


def focus_report(observations: Iterable[Observation]) -> Dict[str, Any]:
    """Summarize evaluated observations; unknown ones are left out."""
    evaluated = [obs for obs in observations if obs.on_task is not None]
    total = len(evaluated)
    on_count = sum(1 for obs in evaluated if obs.on_task)
    return {
        "total": total,
        "on_task": on_count,
        "off_task": total - on_count,
        "errors": sum(1 for obs in evaluated if obs.error),
        "on_task_pct": round(on_count / total * 100, 1) if total else 0.0,
    }


# ===== CAPTURE SCHEDULING MODULE =====

def _as_period_fn(period: Union[float, Callable[[], float]]) -> Callable[[], float]:
    if callable(period):
        return period
    return lambda: period


class CaptureScheduler:
    """Fires capture cycles at a configurable period with at most one in flight.

    A dedicated thread keeps time and hands each tick to a single-worker
    executor. Ticks that arrive while a cycle is still running are dropped.
    """

    def __init__(self, cycle: Callable[[], Any], name: str = "acuity-scheduler"):
        self.cycle = cycle
        self.name = name
        self.dropped_ticks = 0
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._period_fn: Callable[[], float] = _as_period_fn(DEFAULT_CONFIG["locked_in_interval"])
        self._running = False
        self._generation = 0
        self._in_flight = False
        self._last_fire = 0.0
        self._thread: Optional[threading.Thread] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self, period_fn: Union[float, Callable[[], float]]) -> None:
        """Tick immediately, then every period_fn() seconds."""
        with self._lock:
            if self._running:
                logger.debug("Scheduler already running")
                return
            self._running = True
            self._generation += 1
            self._in_flight = False
            self._period_fn = _as_period_fn(period_fn)
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.name}-cycle")
            self._thread = threading.Thread(
                target=self._loop, args=(self._generation,), name=self.name, daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        """Cancel pending ticks. Safe to call when not running."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._generation += 1
            self._wakeup.notify_all()
            thread, executor = self._thread, self._executor
            self._thread = None
            self._executor = None

        executor.shutdown(wait=False, cancel_futures=True)
        if thread is not threading.current_thread():
            thread.join(timeout=2)

    def set_period(self, period: Union[float, Callable[[], float]]) -> None:
        """Change the interval for subsequent ticks without restarting."""
        with self._lock:
            self._period_fn = _as_period_fn(period)
            self._wakeup.notify_all()

    def trigger(self) -> bool:
        """Fire a tick now. Returns False if it was dropped."""
        with self._lock:
            return self._dispatch()

    def _dispatch(self) -> bool:
        # Caller holds self._lock.
        if not self._running:
            return False
        self._last_fire = time.monotonic()
        if self._in_flight:
            self.dropped_ticks += 1
            logger.debug("Previous cycle still in flight, dropping tick")
            return False
        self._in_flight = True
        self._executor.submit(self._run_cycle, self._generation)
        return True

    def _loop(self, generation: int) -> None:
        with self._lock:
            self._dispatch()
            while self._running and self._generation == generation:
                next_fire = self._last_fire + max(float(self._period_fn()), MIN_PERIOD)
                delay = next_fire - time.monotonic()
                if delay > 0:
                    # set_period() and stop() notify, so the deadline is recomputed
                    self._wakeup.wait(delay)
                    continue
                self._dispatch()

    def _run_cycle(self, generation: int) -> None:
        try:
            self.cycle()
        except Exception:
            logger.exception("Capture cycle failed")
        finally:
            with self._lock:
                if generation == self._generation:
                    self._in_flight = False


# ===== SCREEN CAPTURE MODULE =====

class ScreenCapture:
    """Grabs every physical monitor as a PIL image."""

    def __init__(self, config: Dict[str, Any]):
        settings = config.get("capture", {})
        self.max_size = (settings.get("max_width", 1920), settings.get("max_height", 1080))

    def capture(self) -> List[Image.Image]:
        """Take a screenshot of each monitor, scaled down to the configured size."""
        screenshots = []
        with mss.mss() as sct:
            # monitors[0] is the union of all screens
            for monitor in sct.monitors[1:]:
                shot = sct.grab(monitor)
                img = Image.frombytes("RGB", shot.size, shot.bgra, "raw", "BGRX")
                img.thumbnail(self.max_size)
                screenshots.append(img)
        return screenshots


# ===== AI CLASSIFICATION MODULE =====

def encode_image(image: Any) -> str:
    """Return a screenshot as base64 PNG data."""
    if isinstance(image, str):
        return image
    if isinstance(image, (bytes, bytearray)):
        return base64.b64encode(bytes(image)).decode('utf-8')
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return base64.b64encode(buffer.getvalue()).decode('utf-8')


def parse_classifier_reply(reply: Any) -> Optional[Tuple[bool, str]]:
    """Pull (on_task, activity) out of a classifier reply.

    The reply is expected to contain a JSON object such as
    ``{"on": 1, "activity": "..."}``, possibly wrapped in prose or a markdown
    fence. Returns None when no such object can be extracted.
    """
    if isinstance(reply, dict):
        parsed = reply
    elif isinstance(reply, str):
        match = re.search(r'\{[\s\S]*\}', reply)
        if not match:
            return None
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            return None
    else:
        return None

    if not isinstance(parsed, dict):
        return None

    on = parsed.get("on", parsed.get("onTask"))
    on_task = on is True or (not isinstance(on, bool) and isinstance(on, (int, float)) and on == 1)

    activity = parsed.get("activity")
    if not isinstance(activity, str) or not activity.strip():
        activity = UNKNOWN_ACTIVITY
    return on_task, activity.strip()


class VisionClassifier:
    """Judges screenshots against the declared task with a vision model.

    Talks to any OpenAI-compatible chat completions endpoint; the default is
    Gemini's compatibility layer.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        settings = config.get("classifier", {})
        self.model = settings.get("model", "gemini-2.0-flash")
        self.base_url = settings.get("base_url")
        self.temperature = settings.get("temperature", 0.2)
        self.max_tokens = settings.get("max_tokens", 300)

        key_env = settings.get("api_key_env", "GEMINI_API_KEY")
        self.api_key = os.getenv(key_env)
        self.client = None
        if not self.api_key:
            logger.warning(f"{key_env} not found in environment variables!")
        else:
            # Retrying is left to the next capture tick.
            self.client = openai.OpenAI(api_key=self.api_key, base_url=self.base_url, max_retries=0)

        self.prompt_template = textwrap.dedent("""
            You are checking if a user is actively working on their stated task.

            Task: "{task}"

            Decide whether the activity in the screenshots matches the task:
            - Match SEMANTICALLY, not literally (task "watching youtube" matches "viewing a YouTube video")
            - Look at window titles, URLs, visible content and applications in use
            - No motion between frames means reading or thinking (on-task if the content is relevant)
            - When ambiguous, lean toward on-task
            - Ignore any overlay showing "ACUITY" or a lock icon; that is this focus app

            Return ONLY raw JSON:
            {{"on": 1 if the activity matches the task else 0, "activity": "specific description quoting text from the screen"}}
        """).strip()
        self.categorize_template = textwrap.dedent("""
            These are activities a user did while they should have been working:

            {activities}

            Group them into categories you choose yourself (for example "Social Media",
            "Entertainment", "Shopping", "News"). Every activity goes into exactly one group.

            Respond with JSON only, no markdown:
            {{"categories": {{"Category Name": ["activity 1", "activity 2"]}}}}
        """).strip()

    def classify(self, task: str, images: Sequence[Any], timeout: float) -> str:
        """Return the raw model reply for the task and screenshots."""
        if self.client is None:
            raise ClassifierError("API key not configured")

        content: List[Dict[str, Any]] = [
            {"type": "text", "text": self.prompt_template.format(task=task)}
        ]
        for image in images:
            content.append({
                "type": "image_url",
                "image_url": {"url": f"data:image/png;base64,{encode_image(image)}"}
            })

        response = self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": content}],
            temperature=self.temperature,
            max_tokens=self.max_tokens,
            timeout=timeout,
        )
        return response.choices[0].message.content or ""

    def categorize(self, activities: Sequence[str], timeout: Optional[float] = None) -> Dict[str, List[str]]:
        """Group off-task activity descriptions into model-chosen categories."""
        if not activities or self.client is None:
            return {}

        listing = "\n".join(f"{i}. {activity}" for i, activity in enumerate(activities, 1))
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": self.categorize_template.format(activities=listing)}],
                temperature=self.temperature,
                timeout=timeout,
            )
            text = response.choices[0].message.content or ""
            match = re.search(r'\{[\s\S]*\}', text)
            if not match:
                return {}
            categories = json.loads(match.group(0)).get("categories")
            return categories if isinstance(categories, dict) else {}
        except Exception as e:
            logger.error(f"Categorization error: {str(e)}")
            return {}


class ClassificationPipeline:
    """Turns buffered screenshot sets plus the current task into one Observation."""

    def __init__(self, classifier: Any, timeout: float = 20, clock: Callable[[], datetime] = _utcnow):
        self.classifier = classifier
        self.timeout = timeout
        self.clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="acuity-classify")

    def process(self, screenshot_sets: Sequence[Sequence[Any]], task: str,
                captured_at: Optional[datetime] = None) -> Observation:
        """Classify the batch; timeouts and failures become error observations."""
        timestamp = captured_at or self.clock()
        task = task or ""

        if not task.strip():
            # Observe-only: the classifier is never asked.
            return Observation(timestamp, NO_TASK_ACTIVITY, None, task)

        images = [image for screenshots in screenshot_sets for image in screenshots]
        future = self._executor.submit(self.classifier.classify, task, images, self.timeout)
        try:
            reply = future.result(timeout=self.timeout)
        except FutureTimeoutError:
            future.cancel()
            logger.error(f"Classifier timed out after {self.timeout}s")
            return self._error(timestamp, task, f"classifier timed out after {self.timeout}s")
        except Exception as e:
            logger.error(f"Classification error: {str(e)}")
            return self._error(timestamp, task, str(e))

        parsed = parse_classifier_reply(reply)
        if parsed is None:
            logger.warning(f"Could not parse classifier reply: {str(reply)[:200]!r}")
            return Observation(timestamp, PARSE_FAILURE_ACTIVITY, False, task, error=True)

        on_task, activity = parsed
        return Observation(timestamp, activity, on_task, task)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _error(timestamp: datetime, task: str, message: str) -> Observation:
        return Observation(timestamp, f"{API_ERROR_PREFIX}{message}", False, task, error=True)


# ===== ESCALATION MODULE =====

class EscalationStateMachine:
    """Tracks consecutive off-task observations and the resulting escalation level.

    Normal -> Warning once ``warning_threshold`` off-task observations arrive in
    a row, Warning -> Critical at ``critical_threshold``. Any on-task or
    error-class observation drops straight back to Normal. Observations with an
    unknown on-task flag leave the state alone.
    """

    def __init__(self, warning_threshold: int = 3, critical_threshold: int = 90):
        self.set_thresholds(warning_threshold, critical_threshold)
        self.level = EscalationLevel.NORMAL
        self.consecutive_off_task = 0

    def set_thresholds(self, warning_threshold: int, critical_threshold: int) -> None:
        """Change both thresholds; the current level and count are kept."""
        if warning_threshold < 1 or critical_threshold <= warning_threshold:
            raise ValueError(
                f"Need 1 <= warning_threshold < critical_threshold, "
                f"got {warning_threshold} and {critical_threshold}"
            )
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

    def process(self, observation: Observation) -> Optional[EscalationEvent]:
        """Update the off-task count and return an event if the level changed."""
        if observation.on_task is None:
            return None

        if observation.error or observation.on_task:
            self.consecutive_off_task = 0
            return self._transition(
                EscalationLevel.NORMAL,
                "classifier error" if observation.error else "back on task"
            )

        self.consecutive_off_task += 1
        logger.debug(f"Off-task count: {self.consecutive_off_task}")

        if self.level == EscalationLevel.NORMAL and self.consecutive_off_task >= self.warning_threshold:
            return self._transition(EscalationLevel.WARNING, observation.activity)
        if self.level == EscalationLevel.WARNING and self.consecutive_off_task >= self.critical_threshold:
            return self._transition(EscalationLevel.CRITICAL, observation.activity)
        return None

    def reset(self, detail: str = "reset") -> Optional[EscalationEvent]:
        """Forgive the off-task streak and return to Normal."""
        self.consecutive_off_task = 0
        return self._transition(EscalationLevel.NORMAL, detail)

    def _transition(self, level: EscalationLevel, detail: str) -> Optional[EscalationEvent]:
        if level == self.level:
            return None
        previous, self.level = self.level, level
        logger.info(f"Escalation {previous.name} -> {level.name} ({detail})")
        return EscalationEvent(level, previous, self.consecutive_off_task, detail)


# ===== DATA MANAGEMENT MODULE =====

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def apportion_time(task: str, elapsed_ms: Optional[float],
                   history: Iterable[Observation]) -> Tuple[int, int]:
    """Split a task's elapsed time into (focused_ms, distracted_ms).

    This is sampling-based: each evaluated observation of the task is taken to
    stand for an equal slice of the elapsed time, which is only approximate
    when the capture cadence changed during the task. Each share is rounded
    on its own, so the two may miss elapsed_ms by a millisecond; that drift is
    left as is. With no evaluated observations the whole duration counts as
    focused. Untimed tasks (elapsed_ms None) get zero for both.
    """
    if elapsed_ms is None:
        return 0, 0

    evaluated = [obs for obs in history if obs.task == task and obs.on_task is not None]
    total = len(evaluated)
    if total == 0:
        return _round_half_up(elapsed_ms), 0

    on_count = sum(1 for obs in evaluated if obs.on_task)
    off_count = total - on_count
    return (
        _round_half_up(elapsed_ms * on_count / total),
        _round_half_up(elapsed_ms * off_count / total),
    )


class LocalTaskStore:
    """Durable JSON cache of completed tasks."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> List[CompletedTask]:
        """Load completed tasks from disk; a missing or corrupt file yields an empty list."""
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
            if not isinstance(data, list):
                raise ValueError("expected a list of tasks")
            return [CompletedTask.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Failed to load completed tasks: {str(e)}")
            return []

    def save(self, records: Sequence[CompletedTask]) -> bool:
        """Save all completed tasks to disk."""
        try:
            with open(self.path, 'w') as f:
                json.dump([record.to_dict() for record in records], f, indent=2)
            return True
        except (OSError, TypeError) as e:
            logger.error(f"Failed to save completed tasks: {str(e)}")
            return False


class RemoteBackend:
    """Client for the web backend that stores observations and completed tasks."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 10,
                 anonymize: bool = True, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.anonymize = anonymize
        self.session = session or requests.Session()
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> Optional["RemoteBackend"]:
        settings = config.get("backend", {})
        url = settings.get("url") or os.getenv("ACUITY_BACKEND_URL")
        if not url:
            return None
        return cls(
            url,
            token=os.getenv(settings.get("token_env", "ACUITY_BACKEND_TOKEN")),
            timeout=settings.get("timeout", 10),
            anonymize=config.get("privacy", {}).get("anonymize_personal_data", True),
        )

    def append_observation(self, observation: Observation) -> Any:
        """Upload one observation to /api/observations, with personal data masked."""
        payload = observation.to_dict()
        payload["activity"] = self._scrub(observation.activity)
        payload["observed_at"] = payload.pop("timestamp")
        return self._request("POST", "/api/observations", json=payload)

    def append_completed_task(self, record: CompletedTask) -> Any:
        """Upload a completed-task record."""
        return self._request("POST", "/api/tasks", json={
            "task": record.task,
            "focused_ms": record.focused_ms,
            "distracted_ms": record.distracted_ms,
            "duration_ms": record.duration_ms,
            "source": record.source,
            "started_at": _iso(record.started_at),
            "completed_at": _iso(record.completed_at),
        })

    def fetch_history(self, range_name: str = "today", limit: int = 500) -> Any:
        """Get stored observations for a time range ("today", "week", "month" or "all")."""
        return self._request("GET", "/api/history", params={"range": range_name, "limit": limit})

    def fetch_completed_tasks(self, range_name: str = "all") -> Any:
        return self._request("GET", "/api/tasks", params={"range": range_name})

    def _scrub(self, text: str) -> str:
        return anonymize_text(text) if self.anonymize else text

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else None


class TaskLedger:
    """Owns the observation history and the completed-task list."""

    def __init__(self, store: Optional[LocalTaskStore] = None):
        self.store = store
        self._lock = threading.Lock()
        self._history: List[Observation] = []
        self._completed: List[CompletedTask] = store.load() if store else []

    def append_observation(self, observation: Observation) -> None:
        with self._lock:
            self._history.append(observation)

    def observations(self, task: Optional[str] = None,
                     since: Optional[datetime] = None) -> List[Observation]:
        with self._lock:
            history = list(self._history)
        if task is not None:
            history = [obs for obs in history if obs.task == task]
        if since is not None:
            history = [obs for obs in history if obs.timestamp >= since]
        return history

    def completed_tasks(self, since: Optional[datetime] = None) -> List[CompletedTask]:
        with self._lock:
            completed = list(self._completed)
        if since is not None:
            completed = [record for record in completed if record.completed_at >= since]
        return completed

    def complete_task(self, task: str, elapsed_ms: Optional[float], source: str = "manual",
                      started_at: Optional[datetime] = None,
                      completed_at: Optional[datetime] = None) -> CompletedTask:
        """Close out a task and write it to the local store."""
        focused_ms, distracted_ms = apportion_time(task, elapsed_ms, self.observations())
        record = CompletedTask(
            task=task,
            started_at=started_at,
            completed_at=completed_at or _utcnow(),
            duration_ms=None if elapsed_ms is None else _round_half_up(elapsed_ms),
            focused_ms=focused_ms,
            distracted_ms=distracted_ms,
            source=source,
        )
        with self._lock:
            self._completed.append(record)
            snapshot = list(self._completed)

        if self.store is not None:
            self.store.save(snapshot)
        logger.info(f"Completed '{task}': focused {focused_ms}ms, distracted {distracted_ms}ms")
        return record


# ===== MAIN APPLICATION =====

class EventBus:
    """Synchronous publish/subscribe; a failing listener never reaches the publisher."""

    def __init__(self):
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Callable[[Any], None]]] = {}

    def subscribe(self, event: str, callback: Callable[[Any], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(event, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(event, [])
                if callback in listeners:
                    listeners.remove(callback)

        return unsubscribe

    def publish(self, event: str, payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception:
                logger.exception(f"Listener for '{event}' failed")


class FocusEngine:
    """Main application class that coordinates all modules.

    Commands: set_task, start, stop, confirm_task, complete_task.
    Events: "observation", "escalation_changed", "task_completed"; each is
    delivered to subscribers and queued for get_events().
    """

    def __init__(self, capture: Any, classifier: Any, config: Optional[Dict[str, Any]] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 store: Optional[LocalTaskStore] = None,
                 backend: Optional[RemoteBackend] = None,
                 scheduler_factory: Callable[[Callable[[], Any]], Any] = CaptureScheduler):
        self.config = _merge(DEFAULT_CONFIG, config or {})
        if self.config["batch_size"] < 1:
            raise ValueError("batch_size must be at least 1")

        self.clock = clock or _utcnow
        self.capture = capture
        self.classifier = classifier
        self.pipeline = ClassificationPipeline(classifier, self.config["classifier_timeout"], self.clock)
        self.escalation = EscalationStateMachine(
            self.config["warning_threshold"], self.config["critical_threshold"]
        )
        self.ledger = TaskLedger(store)
        self.backend = backend
        self.scheduler = scheduler_factory(self.run_cycle)

        self.events = EventBus()
        self.event_queue: "queue.Queue[Tuple[str, Any]]" = queue.Queue(
            maxsize=max(int(self.config["event_queue_size"]), 1)
        )

        self._lock = threading.RLock()
        self._task = ""
        self._tracking = False
        self._session = 0
        self._started_at: Optional[datetime] = None
        self._buffer: List[List[Any]] = []

        # Observation uploads keep at most one write in flight; completed tasks all queue up.
        self._observation_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="acuity-observations")
        self._task_writer = ThreadPoolExecutor(max_workers=1, thread_name_prefix="acuity-tasks")
        self._pending_observation: Optional[Future] = None
        self._pending_tasks: List[Future] = []
        self.skipped_observation_writes = 0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "FocusEngine":
        """Build an engine wired to the real screen, model and stores."""
        return cls(
            ScreenCapture(config),
            VisionClassifier(config),
            config=config,
            store=LocalTaskStore(config.get("completed_tasks_path", DEFAULT_CONFIG["completed_tasks_path"])),
            backend=RemoteBackend.from_config(config),
        )

    # --- state ---

    @property
    def current_task(self) -> str:
        """The declared task, or an empty string in observe-only mode."""
        return self._task

    @property
    def is_tracking(self) -> bool:
        return self._tracking

    @property
    def escalation_level(self) -> EscalationLevel:
        return self.escalation.level

    @property
    def consecutive_off_task(self) -> int:
        return self.escalation.consecutive_off_task

    # --- commands ---

    def set_task(self, text: Optional[str]) -> None:
        """Replace the current task; blank text clears it. Applies from the next cycle."""
        with self._lock:
            self._task = (text or "").strip()
        logger.info(f"Task set: {self._task!r}" if self._task else "Task cleared")
        self.scheduler.set_period(self._check_interval)

    def confirm_task(self, text: Optional[str]) -> None:
        """Set the task from a confirmation prompt and forgive the off-task streak."""
        self.set_task(text)
        with self._lock:
            self._publish_escalation(self.escalation.reset("task confirmed"))

    def start(self) -> None:
        """Start the monitoring process; the first check runs immediately."""
        with self._lock:
            if self._tracking:
                logger.warning("Tracking already running")
                return
            self._tracking = True
            self._session += 1
            self._buffer = []
            self._started_at = self.clock()
            self._publish_escalation(self.escalation.reset("tracking started"))
        self.scheduler.start(self._check_interval)
        logger.info("Focus tracking started")

    def stop(self) -> None:
        """Stop the monitoring process. A check already in flight is discarded."""
        with self._lock:
            if not self._tracking:
                return
            self._end_session("tracking stopped")
        self.scheduler.stop()
        logger.info("Focus tracking stopped")

    def complete_task(self, text: Optional[str], elapsed_ms: Optional[float] = None,
                      source: str = "manual") -> Optional[CompletedTask]:
        """Close out a task in the ledger and return to idle.

        When elapsed_ms is None the duration is measured from start().
        Returns None without doing anything if tracking is off or the task is blank.
        """
        task = (text or "").strip()
        with self._lock:
            if not task:
                logger.warning("No task to complete")
                return None
            if not self._tracking:
                logger.warning(f"Tracking is not running, not completing {task!r}")
                return None

            now = self.clock()
            if elapsed_ms is None and self._started_at is not None:
                elapsed_ms = int((now - self._started_at).total_seconds() * 1000)

            record = self.ledger.complete_task(
                task, elapsed_ms, source=source, started_at=self._started_at, completed_at=now
            )
            self._publish("task_completed", record)
            self._end_session("task completed")
            self._task = ""

        self.scheduler.stop()
        if self.backend is not None:
            future = self._submit_remote(self._task_writer, self.backend.append_completed_task, record)
            if future is not None:
                with self._lock:
                    self._pending_tasks = [f for f in self._pending_tasks if not f.done()] + [future]
        return record

    def complete_current_task(self, source: str = "hotkey") -> Optional[CompletedTask]:
        """Complete whatever task is currently declared."""
        return self.complete_task(self._task, source=source)

    def update_config(self, new_config: Dict[str, Any]) -> None:
        """Update configuration settings; intervals and thresholds apply live."""
        with self._lock:
            config = _merge(self.config, new_config)
            if config["batch_size"] < 1:
                raise ValueError("batch_size must be at least 1")
            self.escalation.set_thresholds(config["warning_threshold"], config["critical_threshold"])
            self.config = config
            self.pipeline.timeout = config["classifier_timeout"]
        self.scheduler.set_period(self._check_interval)

    def close(self) -> None:
        """Stop tracking and release worker threads.

        Pending observation uploads are abandoned. Completed-task uploads get
        up to backend.flush_timeout seconds to finish.
        """
        self.stop()
        self._observation_writer.shutdown(wait=False, cancel_futures=True)

        with self._lock:
            pending = [f for f in self._pending_tasks if not f.done()]
            self._pending_tasks = []
        if pending:
            _, unfinished = wait_futures(pending, timeout=self.config["backend"].get("flush_timeout", 5))
            if unfinished:
                logger.warning(f"{len(unfinished)} completed-task upload(s) still pending at shutdown")
        self._task_writer.shutdown(wait=False, cancel_futures=True)
        self.pipeline.close()

    # --- capture cycle ---

    def run_cycle(self) -> Optional[Observation]:
        """One capture, classify, escalate pass. Called by the scheduler on every tick."""
        with self._lock:
            if not self._tracking:
                return None
            session = self._session

        captured_at = self.clock()
        try:
            screenshots = list(self.capture.capture())
        except Exception as e:
            logger.warning(f"Screen capture failed, skipping this check: {e}")
            return None
        if not screenshots:
            logger.warning("Screen capture returned no images, skipping this check")
            return None

        with self._lock:
            if session != self._session:
                return None
            self._buffer.append(screenshots)
            if len(self._buffer) < self.config["batch_size"]:
                return None
            batch, self._buffer = self._buffer, []
            task = self._task

        observation = self.pipeline.process(batch, task, captured_at=captured_at)

        with self._lock:
            if session != self._session:
                logger.info("Discarding observation from a cancelled check")
                return None
            self.ledger.append_observation(observation)
            self._publish("observation", observation)
            self._publish_escalation(self.escalation.process(observation))

        if self.backend is not None and self.config["backend"].get("persist_observations", False):
            self._upload_observation(observation)
        return observation

    def _check_interval(self) -> float:
        # Evaluated under the scheduler's lock, so it must not take self._lock.
        if self._task:
            return self.config["locked_in_interval"]
        return self.config["observe_interval"]

    def _end_session(self, detail: str) -> None:
        # Caller holds self._lock.
        self._tracking = False
        self._session += 1
        self._buffer = []
        self._started_at = None
        self._publish_escalation(self.escalation.reset(detail))

    # --- events ---

    def on_observation(self, callback: Callable[[Observation], None]) -> Callable[[], None]:
        """Register a callback for each new observation. Returns an unsubscribe function."""
        return self.events.subscribe("observation", callback)

    def on_escalation_changed(self, callback: Callable[[EscalationEvent], None]) -> Callable[[], None]:
        return self.events.subscribe("escalation_changed", callback)

    def on_task_completed(self, callback: Callable[[CompletedTask], None]) -> Callable[[], None]:
        return self.events.subscribe("task_completed", callback)

    def get_events(self) -> List[Tuple[str, Any]]:
        """Get new events from the queue (non-blocking)."""
        events = []
        while not self.event_queue.empty():
            try:
                events.append(self.event_queue.get_nowait())
            except queue.Empty:
                break
        return events

    def _publish(self, event: str, payload: Any) -> None:
        while True:
            try:
                self.event_queue.put_nowait((event, payload))
                break
            except queue.Full:
                try:
                    self.event_queue.get_nowait()
                except queue.Empty:
                    pass
        self.events.publish(event, payload)

    def _publish_escalation(self, event: Optional[EscalationEvent]) -> None:
        if event is not None:
            self._publish("escalation_changed", event)

    # --- queries ---

    def get_history(self, range_name: str = "all", limit: Optional[int] = None) -> List[Observation]:
        """Get observations in the range, oldest first; limit keeps only the newest ones."""
        history = self.ledger.observations(since=range_start(range_name, self.clock()))
        if limit is not None:
            history = history[max(len(history) - limit, 0):]
        return history

    def get_completed_tasks(self, range_name: str = "all") -> List[CompletedTask]:
        return self.ledger.completed_tasks(since=range_start(range_name, self.clock()))

    def get_stats(self, task: Optional[str] = None, range_name: str = "all") -> Dict[str, Any]:
        """Get on/off-task counts for the range, optionally for one task."""
        since = range_start(range_name, self.clock())
        return focus_report(self.ledger.observations(task=task, since=since))

    def categorize_off_task_activities(self, range_name: str = "all") -> Dict[str, List[str]]:
        """Ask the classifier to group recent off-task activities."""
        activities = list(dict.fromkeys(
            obs.activity for obs in self.get_history(range_name)
            if obs.on_task is False and not obs.error
        ))
        categorize = getattr(self.classifier, "categorize", None)
        if not activities or categorize is None:
            return {}
        return categorize(activities, timeout=self.config["classifier_timeout"])

    # --- persistence ---

    def _upload_observation(self, observation: Observation) -> None:
        with self._lock:
            pending = self._pending_observation
            if pending is not None and not pending.done():
                self.skipped_observation_writes += 1
                logger.debug("Previous observation upload still pending, skipping this one")
                return
            self._pending_observation = self._submit_remote(
                self._observation_writer, self.backend.append_observation, observation
            )

    def _submit_remote(self, executor: ThreadPoolExecutor, write: Callable[[Any], Any],
                       record: Any) -> Optional[Future]:
        try:
            return executor.submit(self._write_remote, write, record)
        except RuntimeError as e:
            logger.error(f"Remote write not scheduled: {e}")
            return None

    @staticmethod
    def _write_remote(write: Callable[[Any], Any], record: Any) -> None:
        try:
            write(record)
        except Exception as e:
            logger.error(f"Remote write failed: {str(e)}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the engine from the command line until interrupted."""
    parser = argparse.ArgumentParser(description="Watch the screen and keep you on your declared task.")
    parser.add_argument("--task", default="", help="what you intend to work on; empty means observe only")
    parser.add_argument("--config", help="JSON file overriding the default configuration")
    parser.add_argument("--log-level", default="INFO")
    parser.add_argument("--log-file", default="acuity.log")
    parser.add_argument("--complete-on-exit", action="store_true",
                        help="mark the task done when interrupted")
    args = parser.parse_args(argv)

    configure_logging(args.log_level, args.log_file)
    engine = FocusEngine.from_config(load_config(args.config))

    def show_observation(obs: Observation) -> None:
        status = "?" if obs.on_task is None else ("on" if obs.on_task else "off")
        logger.info(f"[{status}] {obs.activity}")

    engine.on_observation(show_observation)
    engine.on_escalation_changed(
        lambda event: logger.warning(f"Focus level {event.level.name}: {event.detail}")
    )
    engine.on_task_completed(
        lambda record: logger.info(
            f"Done: {record.task} ({record.focused_ms // 1000}s focused, "
            f"{record.distracted_ms // 1000}s distracted)"
        )
    )

    engine.set_task(args.task)
    engine.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        if args.complete_on_exit:
            engine.complete_current_task(source="manual")
        engine.close()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
