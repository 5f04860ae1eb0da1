#!/usr/bin/env python3
"""
dockron.py

Label-driven cron scheduler for Docker containers. Containers opt in with
labels, and dockron starts them or execs commands inside them on schedule.
"""

from __future__ import annotations

import argparse
import logging
import re
import sys
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import datetime, tzinfo
from pathlib import Path
from queue import Empty, Queue
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import docker
import yaml
from croniter import CroniterError, croniter
from docker.errors import DockerException
from requests.exceptions import RequestException

__version__ = "0.1.0"

LOGGER_NAME = "dockron"
DEFAULT_CONFIG = "dockron.yaml"
DEFAULT_NAMESPACE = "dockron"
DEFAULT_WATCH_SECONDS = 60
DEFAULT_POLL_SECONDS = 1.0
DEFAULT_TICK_SECONDS = 1.0
DEFAULT_DOCKER_TIMEOUT = 60
JOB_NAME_PATTERN = r"[a-zA-Z0-9_-]+"

KIND_START = "start"
KIND_EXEC = "exec"

OUTCOME_SKIPPED = "skipped"
OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_TIMED_OUT = "timed_out"

SETTINGS_KEYS = {
    "watch_seconds",
    "poll_seconds",
    "job_timeout_seconds",
    "namespace",
    "timezone",
    "debug",
    "log_file",
    "docker",
}
DOCKER_SETTINGS_KEYS = {"base_url", "timeout"}


class DockronError(Exception):
    """Base error for dockron."""


class ConfigError(DockronError):
    """Config validation error."""


class RuntimeClientError(DockronError):
    """A call to the container runtime failed."""


class ScheduleError(DockronError):
    """A cron expression could not be registered."""


def setup_logging(debug: bool = False, log_file: Optional[Path] = None) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
    if not any(type(handler) is logging.StreamHandler for handler in logger.handlers):
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        logger.addHandler(stream_handler)
    if log_file is not None:
        target = str(Path(log_file).resolve())
        existing = [h for h in logger.handlers if isinstance(h, logging.FileHandler)]
        if not any(h.baseFilename == target for h in existing):
            file_handler = logging.FileHandler(target, encoding="utf-8")
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
    return logger


logger = logging.getLogger(LOGGER_NAME)


@dataclass(frozen=True)
class ContainerMetadata:
    id: str
    names: List[str]
    labels: Dict[str, str]

    @property
    def display_name(self) -> str:
        return "/".join(self.names)


@dataclass(frozen=True)
class ContainerState:
    running: bool
    exit_code: int = 0


@dataclass(frozen=True)
class ExecState:
    running: bool
    exit_code: int = 0


@dataclass(frozen=True)
class DockerSettings:
    base_url: Optional[str] = None
    timeout: int = DEFAULT_DOCKER_TIMEOUT


@dataclass(frozen=True)
class Settings:
    watch_seconds: int = DEFAULT_WATCH_SECONDS
    poll_seconds: float = DEFAULT_POLL_SECONDS
    job_timeout_seconds: Optional[int] = None
    namespace: str = DEFAULT_NAMESPACE
    timezone: Optional[ZoneInfo] = None
    debug: bool = False
    log_file: Optional[Path] = None
    docker: DockerSettings = field(default_factory=DockerSettings)


@dataclass
class JobRunResult:
    job_name: str
    unique_name: str
    outcome: str
    started_at: datetime
    ended_at: datetime
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        if self.outcome == OUTCOME_SKIPPED:
            return True
        return self.outcome == OUTCOME_COMPLETED and self.exit_code == 0


@dataclass
class ReconcileResult:
    kept: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def ensure_bool(value: Any, field_path: str, default: bool) -> bool:
    if value is None:
        return default
    if not isinstance(value, bool):
        raise ConfigError(f"Error: {field_path} must be true or false.")
    return value


def ensure_int(value: Any, field_path: str, default: Optional[int], minimum: int = 1) -> Optional[int]:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"Error: {field_path} must be an integer.")
    if value < minimum:
        raise ConfigError(f"Error: {field_path} must be >= {minimum}.")
    return value


def ensure_positive_number(value: Any, field_path: str, default: float) -> float:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"Error: {field_path} must be a number.")
    if value <= 0:
        raise ConfigError(f"Error: {field_path} must be > 0.")
    return float(value)


def ensure_str(value: Any, field_path: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"Error: {field_path} must be a non-empty string.")
    return value.strip()


def parse_timezone(name: str, field_path: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigError(f'Error: Invalid timezone "{name}" at {field_path}.') from exc


def _load_config_payload(config_path: Path) -> Dict[str, Any]:
    if not config_path.exists():
        raise ConfigError(f"Error: Config file not found: {config_path}")

    try:
        payload = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Error: Failed to parse YAML in {config_path}: {exc}") from exc

    if not isinstance(payload, dict):
        raise ConfigError("Error: Top-level config must be a mapping.")
    return payload


def _reject_unknown_keys(raw: Dict[str, Any], allowed: Iterable[str], field_path: str) -> None:
    unknown = sorted(str(key) for key in raw if key not in allowed)
    if unknown:
        where = f" at {field_path}" if field_path else ""
        raise ConfigError(f"Error: Unknown config key(s){where}: {', '.join(unknown)}.")


def parse_docker_settings(raw: Any, field_path: str = "docker") -> DockerSettings:
    if raw is None:
        return DockerSettings()
    if not isinstance(raw, dict):
        raise ConfigError(f"Error: {field_path} must be a mapping.")
    _reject_unknown_keys(raw, DOCKER_SETTINGS_KEYS, field_path)
    base_url = raw.get("base_url")
    return DockerSettings(
        base_url=ensure_str(base_url, f"{field_path}.base_url") if base_url is not None else None,
        timeout=ensure_int(raw.get("timeout"), f"{field_path}.timeout", DEFAULT_DOCKER_TIMEOUT),
    )


def parse_settings(payload: Dict[str, Any], config_dir: Path) -> Settings:
    _reject_unknown_keys(payload, SETTINGS_KEYS, "")

    namespace = payload.get("namespace")
    if namespace is not None:
        namespace = ensure_str(namespace, "namespace")
        if namespace.endswith("."):
            raise ConfigError('Error: namespace must not end with ".".')

    timezone_value = None
    if payload.get("timezone") is not None:
        timezone_value = parse_timezone(ensure_str(payload["timezone"], "timezone"), "timezone")

    log_file = None
    if payload.get("log_file") is not None:
        log_file = Path(ensure_str(payload["log_file"], "log_file"))
        if not log_file.is_absolute():
            log_file = (config_dir / log_file).resolve()

    return Settings(
        watch_seconds=ensure_int(payload.get("watch_seconds"), "watch_seconds", DEFAULT_WATCH_SECONDS),
        poll_seconds=ensure_positive_number(payload.get("poll_seconds"), "poll_seconds", DEFAULT_POLL_SECONDS),
        job_timeout_seconds=ensure_int(payload.get("job_timeout_seconds"), "job_timeout_seconds", None),
        namespace=namespace or DEFAULT_NAMESPACE,
        timezone=timezone_value,
        debug=ensure_bool(payload.get("debug"), "debug", False),
        log_file=log_file,
        docker=parse_docker_settings(payload.get("docker")),
    )


def load_settings(
    config_path: Optional[Path],
    debug: bool = False,
    watch_seconds: Optional[int] = None,
) -> Settings:
    """Resolve settings from defaults, an optional YAML file and CLI overrides.

    An explicitly given config path must exist. Without one, ``dockron.yaml``
    in the working directory is read only if present.
    """
    if config_path is None:
        default_path = Path(DEFAULT_CONFIG).resolve()
        settings = (
            parse_settings(_load_config_payload(default_path), default_path.parent)
            if default_path.exists()
            else Settings()
        )
    else:
        config_path = config_path.resolve()
        settings = parse_settings(_load_config_payload(config_path), config_path.parent)

    overrides: Dict[str, Any] = {}
    if debug:
        overrides["debug"] = True
    if watch_seconds is not None:
        overrides["watch_seconds"] = ensure_int(watch_seconds, "--watch", DEFAULT_WATCH_SECONDS)
    return replace(settings, **overrides) if overrides else settings


# ---------------------------------------------------------------------------
# Container runtime
# ---------------------------------------------------------------------------


class ExecOutput:
    """Line buffer fed by a reader thread and drained by the exec poller."""

    def __init__(self) -> None:
        self._queue: "Queue[Optional[bytes]]" = Queue()
        self._buffer = b""
        self.closed = False

    def feed(self, chunk: bytes) -> None:
        self._queue.put(chunk)

    def close(self) -> None:
        self._queue.put(None)

    def drain(self) -> List[str]:
        while True:
            try:
                chunk = self._queue.get_nowait()
            except Empty:
                break
            if chunk is None:
                self.closed = True
                continue
            self._buffer += chunk

        *complete, self._buffer = self._buffer.split(b"\n")
        if self.closed and self._buffer:
            complete.append(self._buffer)
            self._buffer = b""
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in complete]


class DockerRuntime:
    """Container runtime backed by the Docker Engine API.

    Every method raises :class:`RuntimeClientError` when the daemon or the
    transport fails. Attaching to an exec starts it with its output streamed,
    so :meth:`start_exec` only starts sessions that were never attached.
    """

    def __init__(self, api: Any, log: Optional[logging.Logger] = None) -> None:
        self.api = api
        self.logger = log or logger
        self._started: Set[str] = set()
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: DockerSettings, log: Optional[logging.Logger] = None) -> "DockerRuntime":
        try:
            if settings.base_url:
                api = docker.APIClient(base_url=settings.base_url, timeout=settings.timeout)
            else:
                api = docker.from_env(timeout=settings.timeout).api
        except DockerException as exc:
            raise RuntimeClientError(f"Could not create Docker client: {exc}") from exc
        return cls(api, log=log)

    def _call(self, action: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, **kwargs)
        except (DockerException, RequestException) as exc:
            raise RuntimeClientError(f"{action} failed: {exc}") from exc

    def list_containers(self, all: bool = True) -> List[ContainerMetadata]:
        rows = self._call("Listing containers", self.api.containers, all=all)
        return [
            ContainerMetadata(
                id=row["Id"],
                names=[name.lstrip("/") for name in row.get("Names") or []],
                labels=dict(row.get("Labels") or {}),
            )
            for row in rows
        ]

    def inspect_container(self, container_id: str) -> ContainerState:
        data = self._call(f"Inspecting container {container_id}", self.api.inspect_container, container_id)
        state = data.get("State") or {}
        return ContainerState(running=bool(state.get("Running")), exit_code=int(state.get("ExitCode") or 0))

    def start_container(self, container_id: str) -> None:
        self._call(f"Starting container {container_id}", self.api.start, container_id)

    def create_exec(self, container_id: str, cmd: List[str]) -> str:
        response = self._call(
            f"Creating exec in container {container_id}",
            self.api.exec_create,
            container_id,
            cmd,
            stdout=True,
            stderr=True,
        )
        return response["Id"]

    def attach_exec(self, exec_id: str) -> Optional[ExecOutput]:
        # The Engine API only attaches by starting the exec with its output
        # streamed, so a successful attach also starts the session.
        stream = self._call(f"Attaching to exec {exec_id}", self.api.exec_start, exec_id, stream=True)
        output = ExecOutput()
        with self._lock:
            self._started.add(exec_id)

        def pump() -> None:
            try:
                for chunk in stream:
                    output.feed(chunk)
            except (DockerException, RequestException, OSError) as exc:
                self.logger.warning("Error reading output of exec %s: %s", exec_id, exc)
            finally:
                output.close()

        thread = threading.Thread(target=pump, daemon=True, name=f"dockron-exec-{exec_id[:12]}")
        thread.start()
        return output

    def start_exec(self, exec_id: str) -> None:
        with self._lock:
            if exec_id in self._started:
                self._started.discard(exec_id)
                return
        self._call(f"Starting exec {exec_id}", self.api.exec_start, exec_id, detach=True)

    def inspect_exec(self, exec_id: str) -> ExecState:
        data = self._call(f"Inspecting exec {exec_id}", self.api.exec_inspect, exec_id)
        return ExecState(running=bool(data.get("Running")), exit_code=int(data.get("ExitCode") or 0))


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


def _deadline(timeout_seconds: Optional[int]) -> Optional[float]:
    if timeout_seconds is None:
        return None
    return time.monotonic() + timeout_seconds


def _expired(deadline: Optional[float]) -> bool:
    return deadline is not None and time.monotonic() >= deadline


@dataclass(frozen=True)
class ContainerJob:
    """A scheduled action against one container.

    ``kind`` is ``start`` (start a stopped container) or ``exec`` (run
    ``command`` in a running container). Jobs are rebuilt on every discovery
    pass; ``unique_name`` changes whenever the container is recreated.
    """

    kind: str
    name: str
    container_id: str
    schedule: str
    command: Optional[str] = None
    runtime: Any = field(default=None, compare=False, repr=False)
    logger: logging.Logger = field(default=logger, compare=False, repr=False)
    poll_seconds: float = field(default=DEFAULT_POLL_SECONDS, compare=False)
    timeout_seconds: Optional[int] = field(default=None, compare=False)

    @property
    def unique_name(self) -> str:
        # Containers are immutable, so a label change means a new container id.
        return f"{self.name}/{self.container_id}"

    def __call__(self) -> JobRunResult:
        return self.run()

    def run(self) -> JobRunResult:
        started = datetime.now().astimezone()
        exit_code: Optional[int] = None
        error: Optional[str] = None
        try:
            if self.kind == KIND_START:
                outcome, exit_code = run_start_job(self)
            elif self.kind == KIND_EXEC:
                outcome, exit_code = run_exec_job(self)
            else:
                raise DockronError(f"Unsupported job kind: {self.kind}")
        except DockronError as exc:
            self.logger.error("%s: Job failed: %s", self.name, exc)
            outcome = OUTCOME_FAILED
            error = str(exc)
        return JobRunResult(
            job_name=self.name,
            unique_name=self.unique_name,
            outcome=outcome,
            started_at=started,
            ended_at=datetime.now().astimezone(),
            exit_code=exit_code,
            error=error,
        )


def run_start_job(job: ContainerJob) -> Tuple[str, Optional[int]]:
    log = job.logger
    log.info("Starting: %s", job.name)

    state = job.runtime.inspect_container(job.container_id)
    if state.running:
        log.warning("%s: Container is already running. Skipping start.", job.name)
        return OUTCOME_SKIPPED, None

    job.runtime.start_container(job.container_id)
    deadline = _deadline(job.timeout_seconds)

    # The loop condition always uses a fresh inspect taken after the start call.
    while True:
        state = job.runtime.inspect_container(job.container_id)
        if not state.running:
            break
        if _expired(deadline):
            log.error("%s: Container still running after %ss. Giving up.", job.name, job.timeout_seconds)
            return OUTCOME_TIMED_OUT, None
        log.debug("%s: Still running", job.name)
        time.sleep(job.poll_seconds)
    log.debug("%s: Done running. %s", job.name, state)

    if state.exit_code != 0:
        log.error("%s: Container exited with code %d", job.name, state.exit_code)
    return OUTCOME_COMPLETED, state.exit_code


def _log_exec_output(job: ContainerJob, output: Optional[ExecOutput]) -> None:
    if output is None:
        job.logger.debug("%s: No exec reader", job.name)
        return
    for line in output.drain():
        if line:
            job.logger.info("%s: Exec output: %s", job.name, line)
        else:
            job.logger.debug("%s: Empty exec output", job.name)


def run_exec_job(job: ContainerJob) -> Tuple[str, Optional[int]]:
    log = job.logger
    log.info("Execing: %s", job.name)

    state = job.runtime.inspect_container(job.container_id)
    if not state.running:
        log.warning("%s: Container not running. Skipping exec.", job.name)
        return OUTCOME_SKIPPED, None

    exec_id = job.runtime.create_exec(job.container_id, ["sh", "-c", (job.command or "").strip()])

    try:
        output = job.runtime.attach_exec(exec_id)
    except RuntimeClientError as exc:
        log.warning("%s: Error attaching to exec: %s", job.name, exc)
        output = None

    job.runtime.start_exec(exec_id)
    deadline = _deadline(job.timeout_seconds)

    while True:
        time.sleep(job.poll_seconds)
        log.debug("Still execing %s", job.name)
        info = job.runtime.inspect_exec(exec_id)
        _log_exec_output(job, output)
        log.debug("%s: Exec info: %s", job.name, info)
        if not info.running:
            break
        if _expired(deadline):
            if output is not None:
                _log_exec_output(job, output)
            log.error("%s: Exec still running after %ss. Giving up.", job.name, job.timeout_seconds)
            return OUTCOME_TIMED_OUT, None

    if output is not None:
        _log_exec_output(job, output)
    log.debug("%s: Done execing. %s", job.name, info)

    if info.exit_code != 0:
        log.error("%s: Exec job exited with code %d", job.name, info.exit_code)
    return OUTCOME_COMPLETED, info.exit_code


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def schedule_label(namespace: str) -> str:
    return f"{namespace}.schedule"


def exec_label_regexp(namespace: str) -> "re.Pattern[str]":
    return re.compile(rf"{re.escape(namespace)}\.({JOB_NAME_PATTERN})\.(schedule|command)")


def parse_container_jobs(
    container: ContainerMetadata,
    runtime: Any,
    settings: Settings,
    log: logging.Logger,
) -> List[ContainerJob]:
    def make_job(kind: str, name: str, schedule: str, command: Optional[str] = None) -> ContainerJob:
        return ContainerJob(
            kind=kind,
            name=name,
            container_id=container.id,
            schedule=schedule,
            command=command,
            runtime=runtime,
            logger=log,
            poll_seconds=settings.poll_seconds,
            timeout_seconds=settings.job_timeout_seconds,
        )

    jobs: List[ContainerJob] = []
    labels = container.labels or {}

    start_schedule = labels.get(schedule_label(settings.namespace))
    if start_schedule is not None:
        jobs.append(make_job(KIND_START, container.display_name, start_schedule))

    exec_parts: Dict[str, Dict[str, str]] = {}
    pattern = exec_label_regexp(settings.namespace)
    for label, value in labels.items():
        match = pattern.fullmatch(label)
        if not match:
            continue
        job_name, job_field = match.group(1), match.group(2)
        exec_parts.setdefault(job_name, {})[job_field] = value

    for job_name in sorted(exec_parts):
        parts = exec_parts[job_name]
        if "schedule" not in parts or "command" not in parts:
            log.debug("%s: Ignoring incomplete exec job %s", container.display_name, job_name)
            continue
        jobs.append(
            make_job(
                KIND_EXEC,
                "/".join([*container.names, job_name]),
                parts["schedule"],
                command=parts["command"],
            )
        )
    return jobs


def query_scheduled_jobs(runtime: Any, settings: Settings, log: logging.Logger) -> List[ContainerJob]:
    log.debug("Scanning containers for new schedules...")
    containers = runtime.list_containers(all=True)
    jobs: List[ContainerJob] = []
    for container in containers:
        jobs.extend(parse_container_jobs(container, runtime, settings, log))
    return jobs


# ---------------------------------------------------------------------------
# Cron engine
# ---------------------------------------------------------------------------


def validate_schedule(schedule: str) -> None:
    expr = (schedule or "").strip()
    if not expr.startswith("@") and len(expr.split()) != 5:
        raise ScheduleError(f'Cron expression "{schedule}" must have 5 fields.')
    if not croniter.is_valid(expr):
        raise ScheduleError(f'Invalid cron expression "{schedule}".')
    # Valid syntax can still name a date that never occurs, like Feb 30.
    next_run_after(expr, datetime.now().astimezone())


def next_run_after(schedule: str, after: datetime) -> datetime:
    try:
        return croniter(schedule.strip(), after).get_next(datetime)
    except CroniterError as exc:
        raise ScheduleError(f'Cron expression "{schedule}" never fires: {exc}') from exc


@dataclass
class CronEntry:
    entry_id: int
    schedule: str
    job: Callable[[], Any]
    next_fire: datetime


class CronScheduler:
    """Fires registered runnables on their cron schedules.

    A background thread checks for due entries once per tick and runs each
    fire on its own daemon thread. Missed fires are not caught up.
    """

    def __init__(
        self,
        timezone: Optional[tzinfo] = None,
        tick_seconds: float = DEFAULT_TICK_SECONDS,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.timezone = timezone
        self.tick_seconds = tick_seconds
        self.logger = log or logger
        self._entries: Dict[int, CronEntry] = {}
        self._next_id = 1
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def now(self) -> datetime:
        if self.timezone is not None:
            return datetime.now(tz=self.timezone)
        return datetime.now().astimezone()

    def add_job(self, schedule: str, job: Callable[[], Any]) -> int:
        validate_schedule(schedule)
        with self._lock:
            entry_id = self._next_id
            self._next_id += 1
            self._entries[entry_id] = CronEntry(
                entry_id=entry_id,
                schedule=schedule,
                job=job,
                next_fire=next_run_after(schedule, self.now()),
            )
        return entry_id

    def entries(self) -> List[CronEntry]:
        with self._lock:
            return [self._entries[entry_id] for entry_id in sorted(self._entries)]

    def remove(self, entry_id: int) -> None:
        with self._lock:
            self._entries.pop(entry_id, None)

    def run_pending(self, now: Optional[datetime] = None) -> List[CronEntry]:
        now = now or self.now()
        due: List[CronEntry] = []
        with self._lock:
            for entry in self._entries.values():
                if entry.next_fire <= now:
                    due.append(entry)
                    entry.next_fire = next_run_after(entry.schedule, now)
        for entry in due:
            self._dispatch(entry)
        return due

    def _dispatch(self, entry: CronEntry) -> None:
        thread = threading.Thread(
            target=self._invoke,
            args=(entry,),
            daemon=True,
            name=f"dockron-entry-{entry.entry_id}",
        )
        thread.start()

    def _invoke(self, entry: CronEntry) -> None:
        try:
            entry.job()
        except Exception as exc:
            self.logger.exception("Unexpected error running entry %s: %s", entry.entry_id, exc)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="dockron-cron")
        self._thread.start()

    def stop(self, timeout_seconds: float = 2.0) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout_seconds)
        self._thread = None

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_pending()
            except Exception as exc:
                self.logger.exception("Cron loop error: %s", exc)
            self._stop_event.wait(self.tick_seconds)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


def schedule_jobs(scheduler: CronScheduler, jobs: Iterable[ContainerJob], log: logging.Logger) -> ReconcileResult:
    """Make the scheduler's entries match ``jobs``, keyed by unique name.

    Entries for jobs that are still present are left alone so their next fire
    time is preserved. Entries not registered by dockron are ignored.
    """
    result = ReconcileResult()
    existing: Dict[str, int] = {}
    for entry in scheduler.entries():
        if isinstance(entry.job, ContainerJob):
            existing[entry.job.unique_name] = entry.entry_id

    seen = set()
    for job in jobs:
        unique_name = job.unique_name
        if unique_name in seen:
            continue
        seen.add(unique_name)

        if unique_name in existing:
            log.debug("Job %s is already scheduled. Skipping", job.name)
            del existing[unique_name]
            result.kept.append(unique_name)
            continue

        try:
            scheduler.add_job(job.schedule, job)
        except ScheduleError as exc:
            log.error(
                "Could not schedule %s (%s) with schedule '%s'. %s",
                job.name,
                unique_name,
                job.schedule,
                exc,
            )
            result.failed.append(unique_name)
            continue
        log.info("Scheduled %s (%s) with schedule '%s'", job.name, unique_name, job.schedule)
        result.added.append(unique_name)

    for unique_name, entry_id in existing.items():
        scheduler.remove(entry_id)
        log.info("Unscheduled %s", unique_name)
        result.removed.append(unique_name)
    return result


def poll_once(
    runtime: Any,
    scheduler: CronScheduler,
    settings: Settings,
    log: logging.Logger,
) -> Optional[ReconcileResult]:
    try:
        jobs = query_scheduled_jobs(runtime, settings, log)
    except RuntimeClientError as exc:
        log.error("Failure querying docker containers: %s. Retrying next cycle.", exc)
        return None
    return schedule_jobs(scheduler, jobs, log)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def command_daemon(runtime: Any, settings: Settings, log: logging.Logger) -> int:
    scheduler = CronScheduler(timezone=settings.timezone, log=log)
    scheduler.start()
    log.info(
        "Starting dockron %s (watch_seconds=%s, namespace=%s)",
        __version__,
        settings.watch_seconds,
        settings.namespace,
    )
    try:
        while True:
            try:
                poll_once(runtime, scheduler, settings, log)
            except Exception as exc:
                log.exception("Unexpected error during poll cycle: %s. Retrying next cycle.", exc)
            time.sleep(settings.watch_seconds)
    except KeyboardInterrupt:
        log.info("Daemon interrupted by user.")
        return 130
    finally:
        scheduler.stop()


def command_list(runtime: Any, settings: Settings, log: logging.Logger) -> int:
    jobs = query_scheduled_jobs(runtime, settings, log)
    now = datetime.now(tz=settings.timezone) if settings.timezone else datetime.now().astimezone()
    if not jobs:
        print("No scheduled jobs found.")
        return 0
    for job in sorted(jobs, key=lambda item: item.name):
        try:
            validate_schedule(job.schedule)
            next_fire = next_run_after(job.schedule, now).isoformat()
        except ScheduleError:
            next_fire = "invalid schedule"
        print(f"- {job.name} [{job.kind}] schedule='{job.schedule}' next={next_fire}")
        print(f"  unique_name: {job.unique_name}")
        if job.command:
            print(f"  command: {job.command.strip()}")
    return 0


def command_run(runtime: Any, settings: Settings, log: logging.Logger, job_name: str) -> int:
    jobs = query_scheduled_jobs(runtime, settings, log)
    selected = [job for job in jobs if job_name in (job.name, job.unique_name)]
    if not selected:
        raise DockronError(f"Unknown job: {job_name}")
    exit_code = 0
    for job in selected:
        result = job.run()
        log.info("Job %s finished with outcome=%s", job.name, result.outcome)
        if not result.success:
            exit_code = 1
    return exit_code


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Start containers and exec commands in them on cron schedules set by labels",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        help=f"Path to dockron YAML config (default: {DEFAULT_CONFIG} if present)",
    )
    parser.add_argument("--debug", action="store_true", help="Show debug logs")
    parser.add_argument("--version", action="store_true", help="Display the version of dockron and exit")
    subparsers = parser.add_subparsers(dest="command")

    daemon_parser = subparsers.add_parser("daemon", help="Watch Docker and run scheduled jobs (default)")
    daemon_parser.add_argument(
        "--watch",
        type=int,
        help=f"Interval in seconds used to poll Docker for changes (default: {DEFAULT_WATCH_SECONDS})",
    )

    subparsers.add_parser("list", help="Show jobs discovered from container labels")

    run_parser = subparsers.add_parser("run", help="Run one discovered job now")
    run_parser.add_argument("--job", required=True, help="Job name or unique name")

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.version:
        print(f"Dockron version: {__version__}")
        return 0

    log = setup_logging(debug=args.debug)
    command = args.command or "daemon"
    try:
        settings = load_settings(
            Path(args.config) if args.config else None,
            debug=args.debug,
            watch_seconds=getattr(args, "watch", None),
        )
        log = setup_logging(debug=settings.debug, log_file=settings.log_file)
        runtime = DockerRuntime.from_settings(settings.docker, log=log)
        if command == "daemon":
            return command_daemon(runtime, settings, log)
        if command == "list":
            return command_list(runtime, settings, log)
        if command == "run":
            return command_run(runtime, settings, log, job_name=args.job)
        raise DockronError(f"Unsupported command: {command}")
    except DockronError as exc:
        log.error(str(exc))
        return 1
    except Exception as exc:
        log.exception("Unexpected error: %s", exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
