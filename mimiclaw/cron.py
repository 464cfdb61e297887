"""Persistent scheduler that injects messages into the bus when jobs fall due."""

from __future__ import annotations

import json
import logging
import math
import secrets
import threading
import time
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from mimiclaw.bus import BusFullError, Channel, Message, MessageBus

_log = logging.getLogger(__name__)

MAX_FILE_SIZE = 8192
DEFAULT_MAX_JOBS = 16
DEFAULT_CHECK_INTERVAL = 60.0

_ID_LEN = 8
_NAME_LEN = 31
_MESSAGE_LEN = 255
_CHANNEL_LEN = 15
_CHAT_ID_LEN = 31

_DEFAULT_CHAT_ID = "cron"


class CronKind(Enum):
    """Schedule type."""

    EVERY = "every"
    AT = "at"


@dataclass
class CronJob:
    """One scheduled job."""

    name: str
    kind: CronKind
    message: str
    interval_s: int = 0
    at_epoch: int = 0
    channel: str = ""
    chat_id: str = ""
    id: str = ""
    enabled: bool = True
    last_run: int = 0
    next_run: int = 0
    delete_after_run: bool = False


class CronFullError(Exception):
    """The job table is full."""


class JobNotFoundError(KeyError):
    """No job with the given id."""


def sanitize_destination(job: CronJob) -> bool:
    """Fill in or repair the reply channel and chat id; return True if changed."""
    changed = False
    if not job.channel:
        job.channel = Channel.SYSTEM.value
        changed = True

    if job.channel == Channel.TELEGRAM.value:
        if not job.chat_id or job.chat_id == _DEFAULT_CHAT_ID:
            _log.warning(
                "Cron job %s has invalid telegram chat_id, fallback to system:cron",
                job.id or "<new>",
            )
            job.channel = Channel.SYSTEM.value
            job.chat_id = _DEFAULT_CHAT_ID
            changed = True
    elif not job.chat_id:
        job.chat_id = _DEFAULT_CHAT_ID
        changed = True
    return changed


def _clip(job: CronJob) -> None:
    job.id = job.id[:_ID_LEN]
    job.name = job.name[:_NAME_LEN]
    job.message = job.message[:_MESSAGE_LEN]
    job.channel = job.channel[:_CHANNEL_LEN]
    job.chat_id = job.chat_id[:_CHAT_ID_LEN]


def _random_id() -> str:
    return f"{secrets.randbits(32):08x}"


def _string(item: dict, key: str) -> str | None:
    value = item.get(key)
    return value if isinstance(value, str) else None


def _number(item: dict, key: str) -> int:
    value = item.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return int(value)


def _job_from_json(item: Any) -> tuple[CronJob | None, bool]:
    if not isinstance(item, dict):
        return None, False
    job_id = _string(item, "id")
    name = _string(item, "name")
    kind_str = _string(item, "kind")
    message = _string(item, "message")
    if job_id is None or name is None or kind_str is None or message is None:
        return None, False

    channel = _string(item, "channel")
    chat_id = _string(item, "chat_id")
    job = CronJob(
        name=name,
        kind=CronKind.EVERY,
        message=message,
        id=job_id,
        channel=channel if channel is not None else Channel.SYSTEM.value,
        chat_id=chat_id if chat_id is not None else _DEFAULT_CHAT_ID,
    )
    _clip(job)
    repaired = sanitize_destination(job)

    job.enabled = item["enabled"] is True if "enabled" in item else True
    job.delete_after_run = (
        item["delete_after_run"] is True if "delete_after_run" in item else False
    )

    try:
        job.kind = CronKind(kind_str)
    except ValueError:
        return None, repaired
    if job.kind is CronKind.EVERY:
        job.interval_s = _number(item, "interval_s")
    else:
        job.at_epoch = _number(item, "at_epoch")

    job.last_run = _number(item, "last_run")
    job.next_run = _number(item, "next_run")
    return job, repaired


def _job_to_json(job: CronJob) -> dict:
    data: dict[str, Any] = {
        "id": job.id,
        "name": job.name,
        "enabled": job.enabled,
        "kind": job.kind.value,
    }
    if job.kind is CronKind.EVERY:
        data["interval_s"] = job.interval_s
    else:
        data["at_epoch"] = job.at_epoch
    data.update(
        message=job.message,
        channel=job.channel,
        chat_id=job.chat_id,
        last_run=job.last_run,
        next_run=job.next_run,
        delete_after_run=job.delete_after_run,
    )
    return data


class CronService:
    """Holds the job table, persists it as JSON and fires due jobs."""

    def __init__(
        self,
        path: str | Path,
        bus: MessageBus,
        max_jobs: int = DEFAULT_MAX_JOBS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        clock: Callable[[], float] = time.time,
        id_factory: Callable[[], str] = _random_id,
    ) -> None:
        self._path = Path(path)
        self._bus = bus
        self._max_jobs = max_jobs
        self._check_interval = check_interval
        self._clock = clock
        self._id_factory = id_factory
        self._jobs: list[CronJob] = []
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _now(self) -> int:
        return int(self._clock())

    def _read(self) -> tuple[list[CronJob], bool]:
        try:
            raw = self._path.read_bytes()
        except OSError:
            _log.info("No cron file found, starting fresh")
            return [], False
        if not 0 < len(raw) <= MAX_FILE_SIZE:
            _log.warning("Cron file invalid size: %d", len(raw))
            return [], False
        try:
            root = json.loads(raw.decode("utf-8"))
        except ValueError:
            _log.warning("Failed to parse cron JSON")
            return [], False
        items = root.get("jobs") if isinstance(root, dict) else None
        if not isinstance(items, list):
            return [], False

        jobs: list[CronJob] = []
        repaired = False
        for item in items:
            if len(jobs) >= self._max_jobs:
                break
            job, fixed = _job_from_json(item)
            repaired = repaired or fixed
            if job is not None:
                jobs.append(job)
        return jobs, repaired

    def load(self) -> None:
        """Replace the job table with the contents of the jobs file."""
        with self._lock:
            self._jobs, repaired = self._read()
            if repaired:
                self._persist()
            _log.info("Loaded %d cron jobs", len(self._jobs))

    def save(self) -> None:
        """Write the job table to the jobs file; raises OSError on failure."""
        with self._lock:
            document = {"jobs": [_job_to_json(job) for job in self._jobs]}
            text = json.dumps(document, indent="\t", ensure_ascii=False)
            self._path.write_text(text, encoding="utf-8")
            _log.info("Saved %d cron jobs to %s", len(self._jobs), self._path)

    def _persist(self) -> None:
        try:
            self.save()
        except OSError as exc:
            _log.error("Failed to save cron jobs to %s: %s", self._path, exc)

    def _initial_next_run(self, job: CronJob) -> None:
        now = self._now()
        if job.kind is CronKind.EVERY:
            job.next_run = now + job.interval_s
        elif job.at_epoch > now:
            job.next_run = job.at_epoch
        else:
            job.next_run = 0
            job.enabled = False

    def add_job(self, job: CronJob) -> CronJob:
        """Assign an id, schedule and store the job; the given job is updated and returned."""
        with self._lock:
            if len(self._jobs) >= self._max_jobs:
                _log.warning("Max cron jobs reached (%d)", self._max_jobs)
                raise CronFullError(f"maximum of {self._max_jobs} jobs reached")
            job.id = self._id_factory()
            _clip(job)
            sanitize_destination(job)
            job.enabled = True
            job.last_run = 0
            self._initial_next_run(job)
            self._jobs.append(replace(job))
            self._persist()
            _log.info(
                "Added cron job: %s (%s) kind=%s next_run=%d",
                job.name, job.id, job.kind.value, job.next_run,
            )
            return job

    def remove_job(self, job_id: str) -> None:
        """Delete the job with this id; raises JobNotFoundError if absent."""
        with self._lock:
            for index, job in enumerate(self._jobs):
                if job.id == job_id:
                    _log.info("Removing cron job: %s (%s)", job.name, job_id)
                    del self._jobs[index]
                    self._persist()
                    return
        _log.warning("Cron job not found: %s", job_id)
        raise JobNotFoundError(job_id)

    def list_jobs(self) -> list[CronJob]:
        """Return copies of all jobs in table order."""
        with self._lock:
            return [replace(job) for job in self._jobs]

    def process_due_jobs(self) -> list[str]:
        """Fire every enabled job whose time has come; return the fired ids."""
        with self._lock:
            now = self._now()
            fired: list[str] = []
            kept: list[CronJob] = []
            for job in self._jobs:
                if not job.enabled or job.next_run <= 0 or job.next_run > now:
                    kept.append(job)
                    continue

                _log.info("Cron job firing: %s (%s)", job.name, job.id)
                try:
                    self._bus.push_inbound(Message(job.channel, job.chat_id, job.message))
                except BusFullError as exc:
                    _log.warning("Failed to push cron message: %s", exc)

                fired.append(job.id)
                job.last_run = now
                if job.kind is CronKind.AT:
                    if job.delete_after_run:
                        _log.info("Deleting one-shot job: %s", job.name)
                        continue
                    job.enabled = False
                    job.next_run = 0
                else:
                    job.next_run = now + job.interval_s
                kept.append(job)

            self._jobs = kept
            if fired:
                self._persist()
            return fired

    @property
    def running(self) -> bool:
        return self._thread is not None

    def start(self) -> None:
        """Schedule jobs lacking a next run and start the background checker."""
        with self._lock:
            if self._thread is not None:
                _log.warning("Cron task already running")
                return
            now = self._now()
            for job in self._jobs:
                if job.enabled and job.next_run <= 0:
                    if job.kind is CronKind.EVERY:
                        job.next_run = now + job.interval_s
                    elif job.at_epoch > now:
                        job.next_run = job.at_epoch
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._run, name="cron", daemon=True)
            self._thread.start()
            _log.info(
                "Cron service started (%d jobs, check every %gs)",
                len(self._jobs), self._check_interval,
            )

    def _run(self) -> None:
        while not self._stop_event.wait(self._check_interval):
            try:
                self.process_due_jobs()
            except Exception:
                _log.exception("Cron check failed")

    def stop(self) -> None:
        """Stop the background checker if it is running."""
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join()
        self._thread = None
        _log.info("Cron service stopped")