import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .utils import logger


class Status(Enum):
    OK = "OK"
    FAIL = "FAIL"


@dataclass(frozen=True)
class Task:
    task_id: str
    operation: Callable[[], str | None]
    category: str = ""

    def __str__(self):
        return self.task_id


@dataclass(frozen=True)
class OutcomeRecord:
    task_id: str
    status: Status
    detail: str = ""
    category: str = ""

    @property
    def ok(self) -> bool:
        return self.status is Status.OK

    def __str__(self):
        line = f"{self.status.value}|{self.task_id}"
        if self.detail:
            line += f"|{self.detail}"
        return line


class OutcomeLog:
    """Append-only success/failure collections shared by concurrent tasks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: list[OutcomeRecord] = []

    def append(self, record: OutcomeRecord) -> None:
        with self._lock:
            self._records.append(record)

    def __len__(self):
        with self._lock:
            return len(self._records)

    @property
    def records(self) -> tuple[OutcomeRecord, ...]:
        with self._lock:
            return tuple(self._records)

    @property
    def successes(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.records if r.ok)

    @property
    def failures(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.records if not r.ok)


@dataclass(frozen=True)
class PoolResult:
    # completion order
    outcomes: dict[str, OutcomeRecord]

    @property
    def successes(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.outcomes.values() if r.ok)

    @property
    def failures(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.outcomes.values() if not r.ok)


class Progress:
    def __init__(self, total_steps: int):
        self.total_steps = total_steps
        self.current_step = 0
        self._lock = threading.Lock()

    def advance(self) -> str:
        with self._lock:
            if self.current_step < self.total_steps:
                self.current_step += 1
            return f"[{self.current_step}/{self.total_steps}]"


class TaskPool:
    """Run independent tasks with at most ``max_jobs`` executing at once.

    Tasks are handed to a fixed set of worker threads in submission order.
    A task fails by raising; the exception is recorded as a FAIL outcome and
    never reaches the caller or the other tasks. ``budget`` is an optional
    semaphore shared with other pools to bound concurrency across all of them.
    """

    def __init__(
        self,
        max_jobs: int,
        budget: threading.Semaphore | None = None,
        cancel_event: threading.Event | None = None,
        name: str = "",
    ):
        if max_jobs < 1:
            raise ValueError(f"max_jobs must be at least 1, got {max_jobs}")
        self.max_jobs = max_jobs
        self.budget = budget
        self.cancel_event = cancel_event
        self.name = name

    def _execute(self, task: Task) -> OutcomeRecord:
        if self.cancel_event is not None and self.cancel_event.is_set():
            return OutcomeRecord(task.task_id, Status.FAIL, "cancelled", task.category)
        if self.budget is not None:
            self.budget.acquire()
        try:
            if self.cancel_event is not None and self.cancel_event.is_set():
                return OutcomeRecord(
                    task.task_id, Status.FAIL, "cancelled", task.category
                )
            detail = task.operation()
            return OutcomeRecord(task.task_id, Status.OK, detail or "", task.category)
        except Exception as e:
            return OutcomeRecord(
                task.task_id, Status.FAIL, str(e) or type(e).__name__, task.category
            )
        finally:
            if self.budget is not None:
                self.budget.release()

    def run(self, tasks: list[Task]) -> PoolResult:
        seen = set()
        for task in tasks:
            if task.task_id in seen:
                raise ValueError(f"Duplicate task id: {task.task_id}")
            seen.add(task.task_id)

        outcomes: dict[str, OutcomeRecord] = {}
        if not tasks:
            return PoolResult(outcomes)

        log = OutcomeLog()
        progress = Progress(total_steps=len(tasks))
        prefix = f"{self.name}: " if self.name else ""

        def worker(task: Task) -> None:
            record = self._execute(task)
            log.append(record)
            step = progress.advance()
            if record.ok:
                logger.info(f"{step} ✅ {prefix}{task.task_id}")
            else:
                logger.warning(f"{step} ❌ {prefix}{task.task_id}: {record.detail}")

        with ThreadPoolExecutor(
            max_workers=self.max_jobs, thread_name_prefix=self.name or "task"
        ) as executor:
            futures = [executor.submit(worker, task) for task in tasks]
            wait(futures)

        for record in log.records:
            outcomes[record.task_id] = record
        return PoolResult(outcomes)
