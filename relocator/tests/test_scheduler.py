from datetime import timedelta

from conftest import T0
from relocator.models import Event, Outcome
from relocator.scheduler import Cronjob, JobScheduler


class _Recorder:
    def __init__(self, outcome=None):
        self.calls = []
        self.outcome = outcome or Outcome.completed()

    def __call__(self, proc, now):
        self.calls.append((proc.public_id, proc.run_count, now))
        return self.outcome


def test_cronjob_reset_and_pop_due():
    job = Cronjob()
    job.reset(T0, [0.0, 30.0, 60.0])
    assert job.next_run() == T0
    assert job.pop_due(T0 + timedelta(seconds=45)) == 2
    assert job.next_run() == T0 + timedelta(seconds=60)

    job.reset(T0, [10.0])
    assert list(job.run_times) == [T0 + timedelta(seconds=10)]


def test_notify_creates_and_refreshes_process():
    scheduler = JobScheduler([0.0, 60.0])
    first = Event("Event/1", preferred_origin_id="Origin/1")
    proc = scheduler.notify(first, T0)
    assert proc.run_count == 0
    assert proc.created == T0

    proc.cronjob.pop_due(T0)
    second = Event("Event/1", preferred_origin_id="Origin/2")
    again = scheduler.notify(second, T0 + timedelta(seconds=10))

    assert again is proc
    assert again.obj is second
    assert again.created == T0
    assert list(again.cronjob.run_times) == [
        T0 + timedelta(seconds=10),
        T0 + timedelta(seconds=70),
    ]
    assert len(scheduler) == 1


def test_completed_process_runs_again_then_expires():
    scheduler = JobScheduler([0.0, 60.0])
    scheduler.notify(Event("Event/1"), T0)
    execute = _Recorder()

    assert scheduler.tick(T0, execute) == 1
    assert scheduler.get("Event/1").run_count == 1

    assert scheduler.tick(T0 + timedelta(seconds=30), execute) == 0

    assert scheduler.tick(T0 + timedelta(seconds=60), execute) == 1
    assert execute.calls[-1] == ("Event/1", 1, T0 + timedelta(seconds=60))
    assert "Event/1" in scheduler

    scheduler.tick(T0 + timedelta(seconds=61), execute)
    assert "Event/1" not in scheduler
    assert len(execute.calls) == 2


def test_skipped_and_failed_processes_are_removed():
    scheduler = JobScheduler([0.0, 60.0])
    scheduler.notify(Event("Event/1"), T0)
    scheduler.tick(T0, _Recorder(Outcome.skipped("no matching profile")))
    assert len(scheduler) == 0

    scheduler.notify(Event("Event/2"), T0)
    scheduler.tick(T0, _Recorder(Outcome.failed(RuntimeError("engine crashed"))))
    assert len(scheduler) == 0


def test_due_processes_run_in_insertion_order_once_per_tick():
    scheduler = JobScheduler([0.0, 1.0, 2.0])
    for name in ("Event/a", "Event/b", "Event/c"):
        scheduler.notify(Event(name), T0)
    execute = _Recorder()

    # every run time is due: each process still executes once
    assert scheduler.tick(T0 + timedelta(seconds=5), execute) == 3
    assert [call[0] for call in execute.calls] == ["Event/a", "Event/b", "Event/c"]
    assert scheduler.queue == []


def test_notify_after_expiry_starts_over():
    scheduler = JobScheduler([0.0])
    scheduler.notify(Event("Event/1"), T0)
    scheduler.tick(T0, _Recorder())
    scheduler.tick(T0 + timedelta(seconds=1), _Recorder())
    assert "Event/1" not in scheduler

    proc = scheduler.notify(Event("Event/1"), T0 + timedelta(seconds=2))
    assert proc.run_count == 0


def test_future_process_is_not_executed():
    scheduler = JobScheduler([120.0])
    scheduler.notify(Event("Event/1"), T0)
    execute = _Recorder()
    assert scheduler.tick(T0 + timedelta(seconds=119), execute) == 0
    assert scheduler.tick(T0 + timedelta(seconds=120), execute) == 1


def test_dump_schedule_format():
    scheduler = JobScheduler([30.0])
    scheduler.notify(Event("Event/1"), T0)
    scheduler.notify(Event("Event/2"), T0)
    scheduler.get("Event/2").cronjob.run_times.clear()

    dump = scheduler.dump_schedule(T0 + timedelta(seconds=10))

    assert dump.splitlines() == [
        "Now: 2026-03-01 12:00:10",
        "------------------------",
        "[Schedule]",
        "2026-03-01 12:00:30\tEvent/1\t20",
        "STOPPED            \tEvent/2",
    ]


def test_dump_schedule_lists_waiting_queue():
    scheduler = JobScheduler([0.0])
    scheduler.notify(Event("Event/1"), T0)
    dumps = []

    def execute(proc, now):
        dumps.append(scheduler.dump_schedule(now))
        return Outcome.completed()

    scheduler.notify(Event("Event/2"), T0)
    scheduler.tick(T0, execute)

    assert "[Queue]\nWAITING            \tEvent/2\n" in dumps[0]
    assert "[Queue]" not in dumps[1]
