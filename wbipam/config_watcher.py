"""Reconciler scheduling driven by a cron expression kept in a watched file."""

from __future__ import annotations

import logging
import os
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

log = logging.getLogger(__name__)

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("JAN", "FEB", "MAR", "APR", "MAY", "JUN", "JUL", "AUG", "SEP", "OCT", "NOV", "DEC"),
        start=1,
    )
}
_DAY_NAMES = {
    name: number
    for number, name in enumerate(("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT"))
}
_DESCRIPTORS = {
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
    "@monthly": "0 0 1 * *",
    "@weekly": "0 0 * * 0",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@hourly": "0 * * * *",
}
_SEARCH_YEARS = 5


def _field_value(token: str, names: dict[str, int] | None, expression: str) -> int:
    if token.isascii() and token.isdigit():
        return int(token)
    if names and token.upper() in names:
        return names[token.upper()]
    raise ValueError(f"invalid value {token!r} in cron expression {expression!r}")


def _parse_field(
    text: str, low: int, high: int, names: dict[str, int] | None, expression: str
) -> tuple[frozenset[int], bool]:
    """Return the values a field allows and whether it is an unrestricted "*"."""
    values: set[int] = set()
    star = False
    for part in text.split(","):
        range_text, slash, step_text = part.partition("/")
        step = 1
        if slash:
            if not (step_text.isascii() and step_text.isdigit()) or int(step_text) == 0:
                raise ValueError(f"invalid step {step_text!r} in cron expression {expression!r}")
            step = int(step_text)
        if range_text in ("*", "?"):
            start, end = low, high
            star = star or step == 1
        else:
            first, dash, last = range_text.partition("-")
            start = _field_value(first, names, expression)
            if dash:
                end = _field_value(last, names, expression)
            else:
                end = high if slash else start
        if not low <= start <= end <= high:
            raise ValueError(
                f"field {part!r} out of range [{low}, {high}] in cron expression {expression!r}"
            )
        values.update(range(start, end + 1, step))
    return frozenset(values), star


@dataclass(frozen=True)
class CronSchedule:
    """A parsed cron expression."""

    expression: str
    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_unrestricted: bool
    weekdays_unrestricted: bool

    @classmethod
    def parse(cls, expression: str, with_seconds: bool = False) -> CronSchedule:
        """Parse five fields, or six with a leading seconds field when with_seconds."""
        text = expression.strip()
        if text.startswith("@"):
            spec = _DESCRIPTORS.get(text.lower())
            if spec is None:
                raise ValueError(f"unrecognized descriptor: {expression!r}")
            fields = ["0", *spec.split()]
        else:
            fields = text.split()
            expected = 6 if with_seconds else 5
            if len(fields) != expected:
                raise ValueError(
                    f"expected exactly {expected} fields, found {len(fields)}: {expression!r}"
                )
            if not with_seconds:
                fields = ["0", *fields]

        seconds, _ = _parse_field(fields[0], 0, 59, None, expression)
        minutes, _ = _parse_field(fields[1], 0, 59, None, expression)
        hours, _ = _parse_field(fields[2], 0, 23, None, expression)
        days, days_star = _parse_field(fields[3], 1, 31, None, expression)
        months, _ = _parse_field(fields[4], 1, 12, _MONTH_NAMES, expression)
        weekdays, weekdays_star = _parse_field(fields[5], 0, 7, _DAY_NAMES, expression)
        weekdays = frozenset(day % 7 for day in weekdays)
        return cls(
            expression=text,
            seconds=seconds,
            minutes=minutes,
            hours=hours,
            days=days,
            months=months,
            weekdays=weekdays,
            days_unrestricted=days_star,
            weekdays_unrestricted=weekdays_star,
        )

    def _day_matches(self, moment: datetime) -> bool:
        day_match = moment.day in self.days
        weekday_match = (moment.weekday() + 1) % 7 in self.weekdays
        if self.days_unrestricted or self.weekdays_unrestricted:
            return day_match and weekday_match
        return day_match or weekday_match

    def next_after(self, moment: datetime) -> datetime:
        """Return the first matching time strictly after moment."""
        t = moment.replace(microsecond=0) + timedelta(seconds=1)
        limit = t.year + _SEARCH_YEARS
        while t.year <= limit:
            if t.month not in self.months:
                t = datetime(t.year + t.month // 12, t.month % 12 + 1, 1, tzinfo=t.tzinfo)
                continue
            if not self._day_matches(t):
                t = datetime(t.year, t.month, t.day, tzinfo=t.tzinfo) + timedelta(days=1)
                continue
            if t.hour not in self.hours:
                t = t.replace(minute=0, second=0) + timedelta(hours=1)
                continue
            if t.minute not in self.minutes:
                t = t.replace(second=0) + timedelta(minutes=1)
                continue
            if t.second not in self.seconds:
                t += timedelta(seconds=1)
                continue
            return t
        raise ValueError(f"no time matches cron expression {self.expression!r}")


def cron_job(schedule: str) -> CronSchedule:
    """Build a job definition from a five-field cron expression."""
    return CronSchedule.parse(schedule, with_seconds=False)


@dataclass(eq=False)
class Job:
    """A scheduled task."""

    id: uuid.UUID
    definition: CronSchedule
    task: Callable[[], Any]
    next_run: datetime


class Scheduler:
    """Runs tasks on cron schedules in a background thread."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock
        self._jobs: dict[uuid.UUID, Job] = {}
        self._cond = threading.Condition()
        self._thread: threading.Thread | None = None
        self._stopped = False

    def new_job(self, definition: CronSchedule, task: Callable[[], Any]) -> Job:
        """Schedule a task; raise ValueError if the definition never fires."""
        with self._cond:
            job = Job(uuid.uuid4(), definition, task, definition.next_after(self._clock()))
            self._jobs[job.id] = job
            self._cond.notify_all()
            return job

    def update(self, job_id: uuid.UUID, definition: CronSchedule, task: Callable[[], Any]) -> Job:
        """Replace the schedule and task of a job; raise KeyError if it is unknown."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"job {job_id} not found")
            next_run = definition.next_after(self._clock())
            job.definition, job.task, job.next_run = definition, task, next_run
            self._cond.notify_all()
            return job

    def jobs(self) -> list[Job]:
        with self._cond:
            return list(self._jobs.values())

    def start(self) -> None:
        with self._cond:
            if self._thread is not None:
                return
            self._stopped = False
            self._thread = threading.Thread(target=self._run, name="scheduler", daemon=True)
            self._thread.start()

    def shutdown(self) -> None:
        with self._cond:
            self._stopped = True
            self._cond.notify_all()
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join()

    def __enter__(self) -> Scheduler:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def _run(self) -> None:
        with self._cond:
            while not self._stopped:
                now = self._clock()
                for job in self._jobs.values():
                    if job.next_run <= now:
                        try:
                            job.next_run = job.definition.next_after(now)
                        except ValueError:
                            job.next_run = datetime.max
                        threading.Thread(target=self._execute, args=(job.task,), daemon=True).start()
                timeout = None
                if self._jobs:
                    soonest = min(job.next_run for job in self._jobs.values())
                    if soonest != datetime.max:
                        timeout = max((soonest - now).total_seconds(), 0.0)
                self._cond.wait(timeout)

    @staticmethod
    def _execute(task: Callable[[], Any]) -> None:
        try:
            task()
        except Exception:
            log.exception("scheduled task failed")


def determine_cron_expression(config_path: str | os.PathLike[str], fallback: str | None) -> str:
    """Read the cron expression from the file, or use fallback when it cannot be read."""
    try:
        contents = Path(config_path).read_bytes()
    except OSError as err:
        if fallback is None:
            log.error("could not read file: %s, and no fallback expression is configured", err)
            raise
        log.error("could not read file: %s, using expression from flatfile: %s", err, fallback)
        return fallback
    expression = contents.decode(errors="replace").strip()
    log.info("using expression: %s", expression)
    return expression


class _RelevantEventHandler(FileSystemEventHandler):
    def __init__(self, watcher: ConfigWatcher, predicate: Callable[[FileSystemEvent], bool]) -> None:
        super().__init__()
        self._watcher = watcher
        self._predicate = predicate

    def on_any_event(self, event: FileSystemEvent) -> None:
        if not self._predicate(event):
            log.debug("event not relevant: %s", event)
            return
        self._watcher.handle_event(event)


class ConfigWatcher:
    """Keeps a scheduled job in step with the cron expression in a file."""

    def __init__(
        self,
        config_path: str | os.PathLike[str],
        scheduler: Scheduler,
        handler: Callable[[], Any],
        job_factory: Callable[[str], CronSchedule] = cron_job,
        fallback: str | None = None,
        observer: Any = None,
    ) -> None:
        self.config_path = os.fspath(config_path)
        self.config_dir = os.path.dirname(self.config_path) or "."
        self.scheduler = scheduler
        self.handler = handler
        self.job_factory = job_factory
        self.fallback = fallback
        self.current_schedule = determine_cron_expression(self.config_path, fallback)
        try:
            self.job = scheduler.new_job(job_factory(self.current_schedule), handler)
        except ValueError as err:
            raise ValueError(f"error creating job: {err}") from err
        self._observer = observer
        self._lock = threading.Lock()

    def sync_configuration(self, relevant_event_predicate: Callable[[FileSystemEvent], bool]) -> None:
        """Start watching the configuration directory for relevant changes."""
        if self._observer is None:
            self._observer = Observer()
        handler = _RelevantEventHandler(self, relevant_event_predicate)
        try:
            self._observer.schedule(handler, self.config_dir, recursive=False)
            if not self._observer.is_alive():
                self._observer.start()
        except OSError as err:
            log.error("error adding watcher to config %r: %s", self.config_path, err)

    def handle_event(self, event: Any) -> None:
        """Re-read the expression and reschedule the job if it changed."""
        name = os.fsdecode(getattr(event, "src_path", ""))
        with self._lock:
            try:
                updated = determine_cron_expression(self.config_path, self.fallback)
            except OSError as err:
                log.error("error determining cron expression from %r: %s", self.config_path, err)
                return
            log.info("configuration updated to file %r. New cron expression: %s", name, updated)

            if updated == self.current_schedule:
                log.debug("no changes in schedule, nothing to do.")
                return
            try:
                self.job = self.scheduler.update(self.job.id, self.job_factory(updated), self.handler)
            except (ValueError, KeyError) as err:
                log.error("error updating job %r configuration: %s", str(self.job.id), err)
            else:
                log.info(
                    "successfully updated CRON configuration id %r - new cron expression: %s",
                    str(self.job.id), updated,
                )
            self.current_schedule = updated

    def stop(self) -> None:
        """Stop watching the configuration."""
        observer = self._observer
        if observer is not None and observer.is_alive():
            observer.stop()
            observer.join()