from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List

from .models import Outcome

logger = logging.getLogger(__name__)


@dataclass
class Cronjob:
    run_times: Deque[datetime] = field(default_factory=deque)

    def reset(self, now: datetime, delays: Iterable[float]) -> None:
        self.run_times.clear()
        for delay in delays:
            self.run_times.append(now + timedelta(seconds=delay))

    def next_run(self) -> datetime | None:
        return self.run_times[0] if self.run_times else None

    def pop_due(self, now: datetime) -> int:
        popped = 0
        while self.run_times and self.run_times[0] <= now:
            self.run_times.popleft()
            popped += 1
        return popped


@dataclass(eq=False)
class Process:
    public_id: str
    obj: Any
    created: datetime
    run_count: int = 0
    cronjob: Cronjob = field(default_factory=Cronjob)


Execute = Callable[[Process, datetime], Outcome]


class JobScheduler:
    """One process per tracked origin or event, run at configured delays.

    ``tick`` promotes due processes into a FIFO run queue and drains it.
    Skipped and failed runs drop the process. Completed runs keep it until
    its run times are exhausted.
    """

    def __init__(self, delay_times: Iterable[float]):
        self.delay_times: List[float] = list(delay_times)
        self._processes: Dict[str, Process] = {}
        self._queue: Deque[Process] = deque()

    def __len__(self) -> int:
        return len(self._processes)

    def __contains__(self, public_id: str) -> bool:
        return public_id in self._processes

    def get(self, public_id: str) -> Process | None:
        return self._processes.get(public_id)

    @property
    def queue(self) -> List[Process]:
        return list(self._queue)

    def notify(self, obj: Any, now: datetime) -> Process:
        public_id = obj.public_id
        proc = self._processes.get(public_id)
        if proc is None:
            logger.debug("Adding process [%s]", public_id)
            proc = Process(public_id=public_id, obj=obj, created=now)
            self._processes[public_id] = proc
        else:
            logger.debug("Update process [%s]: resetting run times", public_id)
            proc.obj = obj

        proc.cronjob.reset(now, self.delay_times)
        return proc

    def remove(self, proc: Process) -> None:
        self._processes.pop(proc.public_id, None)
        try:
            self._queue.remove(proc)
        except ValueError:
            pass

    def tick(self, now: datetime, execute: Execute) -> int:
        """Run every due process once. Returns the number of executions."""
        expired: List[Process] = []
        for proc in self._processes.values():
            job = proc.cronjob
            if not job.run_times:
                logger.debug("Process %s expired, removing it", proc.public_id)
                expired.append(proc)
                continue

            if job.run_times[0] > now:
                continue

            job.pop_due(now)

            if proc not in self._queue:
                logger.debug("Pushing %s to process queue", proc.public_id)
                self._queue.append(proc)

        for proc in expired:
            self.remove(proc)

        executed = 0
        while self._queue:
            proc = self._queue.popleft()
            outcome = execute(proc, now)
            executed += 1
            if outcome.is_completed:
                proc.run_count += 1
                continue
            logger.debug("No more work to do for %s: removing job (%s)", proc.public_id, outcome.status)
            self.remove(proc)
        return executed

    def dump_schedule(self, now: datetime) -> str:
        lines = [f"Now: {now.strftime('%Y-%m-%d %H:%M:%S')}", "-" * 24, "[Schedule]"]
        for public_id, proc in self._processes.items():
            next_run = proc.cronjob.next_run()
            if next_run is not None:
                remaining = int((next_run - now).total_seconds())
                lines.append(f"{next_run.strftime('%Y-%m-%d %H:%M:%S')}\t{public_id}\t{remaining}")
            else:
                lines.append(f"STOPPED            \t{public_id}")

        if self._queue:
            lines.append("")
            lines.append("[Queue]")
            for proc in self._queue:
                lines.append(f"WAITING            \t{proc.public_id}")
        return "\n".join(lines) + "\n"
