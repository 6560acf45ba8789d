"""Timer loop that drives sampling and billing."""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from vmmeter.exceptions import ManagerError
from vmmeter.utils import log, utcnow

NextRun = Callable[[datetime], datetime]


def next_month_start(after: datetime) -> datetime:
    """First instant of the month following ``after``."""
    if after.month == 12:
        return datetime(after.year + 1, 1, 1)
    return datetime(after.year, after.month + 1, 1)


def every(seconds: int) -> NextRun:
    step = timedelta(seconds=seconds)

    def _next(after: datetime) -> datetime:
        return after + step

    return _next


def monthly() -> NextRun:
    return next_month_start


class Job:
    def __init__(self, name: str, action: Callable[[datetime], object], next_run: NextRun, start: datetime) -> None:
        self.name = name
        self.action = action
        self.next_run = next_run
        self.due = next_run(start)

    def __repr__(self) -> str:
        return f"Job({self.name!r}, due={self.due.isoformat()})"


class Scheduler:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock
        self.jobs: List[Job] = []

    def add(self, name: str, action: Callable[[datetime], object], next_run: NextRun) -> Job:
        job = Job(name, action, next_run, self.clock())
        self.jobs.append(job)
        log("INFO", f"Scheduled {name}, first run at {job.due.isoformat()}")
        return job

    def run_pending(self, now: Optional[datetime] = None) -> List[str]:
        """Run every job whose due time has passed. One failing job does not stop the others."""
        now = now or self.clock()
        ran: List[str] = []
        for job in self.jobs:
            if job.due > now:
                continue
            try:
                job.action(now)
            except ManagerError as exc:
                log("ERROR", f"Job {job.name} failed: {exc}")
            ran.append(job.name)
            job.due = job.next_run(now)
        return ran

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        if not self.jobs:
            return 60.0
        now = now or self.clock()
        soonest = min(job.due for job in self.jobs)
        return max((soonest - now).total_seconds(), 0.0)

    def serve(self, stop_event: threading.Event, max_sleep: float = 60.0) -> None:
        log("INFO", f"Scheduler running {len(self.jobs)} job(s)")
        while not stop_event.is_set():
            self.run_pending()
            stop_event.wait(min(self.seconds_until_next(), max_sleep))
        log("INFO", "Scheduler stopped")
