import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .download import ReadinessGate, RetryingFetcher
from .installer import RequirementsManager
from .models import ModelsManager
from .nodes import GitRepository, NodesManager
from .tasks import OutcomeRecord, Status, Task, TaskPool
from .utils import logger


class PhaseName(Enum):
    ACQUIRE = "acquire"
    INSTALL = "install"
    DOWNLOAD = "download"


class PhaseState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"


@dataclass(frozen=True)
class PhaseResult:
    name: PhaseName
    state: PhaseState
    records: tuple[OutcomeRecord, ...] = ()
    setup_error: str | None = None
    elapsed: float = 0.0

    @property
    def successes(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.records if r.ok)

    @property
    def failures(self) -> tuple[OutcomeRecord, ...]:
        return tuple(r for r in self.records if not r.ok)

    @property
    def failed(self) -> bool:
        return bool(self.setup_error or self.failures)


class Phase:
    """A named group of tasks run through its own bounded pool.

    ``run`` never raises: task failures become FAIL records and an exception
    from the phase's own steps is kept as ``setup_error``. The phase always
    ends ``COMPLETED``.
    """

    name: PhaseName

    def __init__(
        self,
        max_jobs: int,
        budget: threading.Semaphore | None = None,
        cancel_event: threading.Event | None = None,
    ):
        self.pool = TaskPool(
            max_jobs, budget=budget, cancel_event=cancel_event, name=self.name.value
        )
        self.state = PhaseState.PENDING
        self.setup_error: str | None = None
        self._records: list[OutcomeRecord] = []
        self._elapsed = 0.0

    def execute(self) -> None:
        raise NotImplementedError

    def run_tasks(self, tasks: list[Task]) -> tuple[OutcomeRecord, ...]:
        result = self.pool.run(tasks)
        records = tuple(result.outcomes.values())
        self._records.extend(records)
        return records

    def skip_tasks(self, tasks: list[Task], reason: str) -> None:
        for task in tasks:
            self._records.append(
                OutcomeRecord(task.task_id, Status.FAIL, reason, task.category)
            )

    def result(self) -> PhaseResult:
        return PhaseResult(
            name=self.name,
            state=self.state,
            records=tuple(self._records),
            setup_error=self.setup_error,
            elapsed=self._elapsed,
        )

    def run(self) -> PhaseResult:
        started = time.monotonic()
        self.state = PhaseState.RUNNING
        logger.info(f"▶️ Phase {self.name.value} started")
        try:
            self.execute()
        except Exception as e:
            self.setup_error = str(e) or type(e).__name__
            logger.error(f"❌ Phase {self.name.value} failed: {self.setup_error}")
        finally:
            self.state = PhaseState.COMPLETED
            self._elapsed = time.monotonic() - started
        failures = sum(1 for r in self._records if not r.ok)
        if failures:
            logger.warning(
                f"⚠️ Phase {self.name.value} completed with {failures} failures ({self._elapsed:.1f}s)"
            )
        else:
            logger.info(
                f"✅ Phase {self.name.value} completed ({self._elapsed:.1f}s)"
            )
        return self.result()


class AcquirePhase(Phase):
    name = PhaseName.ACQUIRE

    def __init__(
        self,
        app: GitRepository,
        nodes_manager: NodesManager,
        app_gate: ReadinessGate,
        acquired: threading.Event,
        update: bool = False,
        timeout: float | None = None,
        log_dir: Path | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.app = app
        self.nodes_manager = nodes_manager
        self.app_gate = app_gate
        self.acquired = acquired
        self.update = update
        self.timeout = timeout
        self.log_dir = log_dir

    def execute(self) -> None:
        try:
            log_path = self.log_dir / f"git-{self.app.name}.log" if self.log_dir else None
            app_task = Task(
                task_id=self.app.name,
                operation=lambda: self.app.acquire(
                    update=self.update, timeout=self.timeout, log_path=log_path
                ),
                category="app",
            )
            (app_record,) = self.run_tasks([app_task])
            if app_record.ok:
                self.app_gate.mark_ready()
            else:
                self.app_gate.mark_failed(app_record.detail)

            node_tasks = self.nodes_manager.acquire_tasks(
                update=self.update, timeout=self.timeout, log_dir=self.log_dir
            )
            if not app_record.ok:
                self.skip_tasks(node_tasks, f"skipped, {self.app.name} unavailable")
                raise RuntimeError(f"{self.app.name} unavailable: {app_record.detail}")
            if not node_tasks:
                logger.info("🧩 No custom nodes in config")
                return
            logger.info(f"🧩 Acquiring {len(node_tasks)} custom nodes:")
            self.run_tasks(node_tasks)
        finally:
            if not self.app_gate.settled:
                self.app_gate.mark_failed(f"{self.app.name} acquire did not finish")
            self.acquired.set()


class InstallPhase(Phase):
    name = PhaseName.INSTALL

    def __init__(
        self,
        fetch_client,
        gate: ReadinessGate,
        requirements_manager: RequirementsManager,
        acquired: threading.Event,
        token: str | None = None,
        timeout: float | None = None,
        log_dir: Path | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.fetch_client = fetch_client
        self.gate = gate
        self.requirements_manager = requirements_manager
        self.acquired = acquired
        self.token = token
        self.timeout = timeout
        self.log_dir = log_dir

    def _setup_fetch_client(self) -> str:
        self.fetch_client.setup()
        if not self.token:
            logger.warning(
                "⚠️ No HF_TOKEN provided; public models will download, private ones will fail."
            )
            return "ready, public only"
        logger.info(f"🔑 Logging in {self.fetch_client.name} with HF_TOKEN")
        if self.fetch_client.login(self.token):
            return "ready, logged in"
        return "ready, login failed"

    def execute(self) -> None:
        try:
            (client_record,) = self.run_tasks(
                [
                    Task(
                        task_id=f"fetch-client ({self.fetch_client.name})",
                        operation=self._setup_fetch_client,
                        category="fetch_client",
                    )
                ]
            )
            if client_record.ok:
                self.gate.mark_ready()
            else:
                self.gate.mark_failed(client_record.detail)
        finally:
            if not self.gate.settled:
                self.gate.mark_failed("fetch client setup did not finish")

        # requirement files only exist once the repositories are in place
        self.acquired.wait()
        base_tasks = self.requirements_manager.base_tasks(
            timeout=self.timeout, log_dir=self.log_dir
        )
        if base_tasks:
            self.run_tasks(base_tasks)
        node_tasks = self.requirements_manager.node_tasks(
            timeout=self.timeout, log_dir=self.log_dir
        )
        if node_tasks:
            logger.info(f"📦 Installing {len(node_tasks)} requirement sets:")
            self.run_tasks(node_tasks)


class DownloadPhase(Phase):
    name = PhaseName.DOWNLOAD

    def __init__(
        self,
        models_manager: ModelsManager,
        fetcher: RetryingFetcher,
        gate: ReadinessGate,
        app_gate: ReadinessGate,
        model_dirs: list[str] | None = None,
        ready_timeout: float = 30,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.models_manager = models_manager
        self.fetcher = fetcher
        self.gate = gate
        self.app_gate = app_gate
        self.model_dirs = model_dirs or []
        self.ready_timeout = ready_timeout

    def execute(self) -> None:
        tasks = self.models_manager.download_tasks(self.fetcher)
        # models live inside the checkout, which must be cloned first;
        # without it the clone target has to stay untouched
        if not self.app_gate.wait():
            logger.warning(
                f"⚠️ ComfyUI unavailable ({self.app_gate.reason}), skipping {len(tasks)} model downloads."
            )
            self.skip_tasks(tasks, "skipped, ComfyUI unavailable")
            return
        self.models_manager.prepare_dirs(self.model_dirs)

        if not tasks:
            logger.info("📦 No models in config")
            return

        logger.info(
            f"⏳ Waiting up to {self.ready_timeout:g}s for the fetch client..."
        )
        if not self.gate.wait(self.ready_timeout):
            reason = self.gate.reason or f"not ready after {self.ready_timeout:g}s"
            logger.warning(
                f"⚠️ Fetch client unavailable ({reason}), downloading anyway; downloads are expected to fail."
            )
        logger.info(f"⬇️ Downloading {len(tasks)} models:")
        self.run_tasks(tasks)
