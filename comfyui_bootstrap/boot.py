import os
import signal
import subprocess
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from urllib.parse import urlparse

from .config import ConfigManager
from .constants import (
    BOOT_CONFIG_DIR,
    BOOT_CONFIG_EXCLUDE,
    BOOT_CONFIG_INCLUDE,
    BOOT_LOG_DIR,
    BOOT_UPDATE_REPOS,
    CN_NETWORK,
    COMFYUI_EXTRA_ARGS,
    COMFYUI_LISTEN,
    COMFYUI_PATH,
    COMFYUI_PORT,
    COMFYUI_REPO,
    FETCH_CLIENT,
    FETCH_CLIENT_READY_TIMEOUT,
    HF_API_TOKEN,
    HF_ENDPOINT,
    MAX_JOBS,
    MAX_RETRIES,
    PIP_EXCLUDE,
    RETRY_BASE_SLEEP,
    TASK_TIMEOUT,
)
from .download import ReadinessGate, RetryingFetcher, build_fetch_client
from .installer import RequirementsManager
from .models import ModelsManager
from .nodes import GitRepository, NodesManager
from .phases import AcquirePhase, DownloadPhase, InstallPhase, PhaseResult
from .report import log_summary, report
from .utils import logger, terminate_active_processes


class ComfyUILauncher:
    def __init__(
        self,
        app_path: Path,
        config_dir: Path,
        app_repo: str = "https://github.com/comfyanonymous/ComfyUI.git",
        include_config: str = None,
        exclude_config: str = None,
        log_dir: Path = None,
        max_jobs: int = 4,
        max_retries: int = 3,
        base_sleep: float = 2,
        fetch_client_timeout: float = 30,
        task_timeout: float = None,
        token: str = None,
        fetch_client_kind: str = "hf-cli",
        fetch_client=None,
        hub_endpoint: str = "https://huggingface.co",
        update_repos: bool = False,
        pip_exclude: list[str] = None,
        listen: str = "0.0.0.0",
        port: int = 8188,
        extra_args: str = None,
    ):
        if max_jobs < 1:
            raise ValueError(f"max_jobs must be at least 1, got {max_jobs}")
        self.app_path = Path(app_path)
        self.config_dir = Path(config_dir)
        self.app_repo = app_repo
        self.include_config = include_config
        self.exclude_config = exclude_config
        self.log_dir = Path(log_dir) if log_dir else self.app_path.parent / ".cache" / "boot-logs"
        self.max_jobs = max_jobs
        self.max_retries = max_retries
        self.base_sleep = base_sleep
        self.fetch_client_timeout = fetch_client_timeout
        self.task_timeout = task_timeout
        self.token = token
        self.hub_endpoint = hub_endpoint
        self.fetch_client = fetch_client or build_fetch_client(
            fetch_client_kind,
            token=token,
            endpoint=hub_endpoint,
            max_jobs=max_jobs,
            timeout=task_timeout,
            log_dir=self.log_dir,
        )
        self.update_repos = update_repos
        self.pip_exclude = pip_exclude if pip_exclude is not None else []
        self.listen = listen
        self.port = port
        self.extra_args = extra_args
        self.cancel_event = threading.Event()
        self.comfyui_process = None
        self._check_env()

    def _check_env(self):
        # chinese mainland network settings
        if CN_NETWORK:
            logger.info("🌐 Applying CN network optimization")
            os.environ.setdefault(
                "PIP_INDEX_URL", "https://mirrors.ustc.edu.cn/pypi/web/simple"
            )
        netloc = urlparse(self.hub_endpoint).netloc
        if self.token and netloc.lower() not in ("huggingface.co", "hf.co"):
            logger.warning(
                f"⚠️ HF_TOKEN will be sent to a third party endpoint: {self.hub_endpoint}"
            )

    def _setup_signal_handlers(self):
        def shutdown_handler(_signum, _frame):
            if self.comfyui_process and self.comfyui_process.poll() is None:
                logger.info("🛑 Received termination signal, shutting down...")
                self.comfyui_process.terminate()
            else:
                logger.info("🛑 Received termination signal, stopping boot tasks...")
                self.cancel_event.set()
                terminate_active_processes()

        signal.signal(signal.SIGTERM, shutdown_handler)
        signal.signal(signal.SIGINT, shutdown_handler)

    def _prepare_log_dir(self) -> Path | None:
        # logs only describe the current boot; other files are left alone
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            for log_file in self.log_dir.glob("*.log"):
                log_file.unlink()
        except OSError as e:
            logger.warning(
                f"⚠️ Log dir {self.log_dir} unusable, command output goes to the console: {e}"
            )
            return None
        return self.log_dir

    def orchestrate(self) -> list[PhaseResult]:
        config = ConfigManager(
            config_dir=self.config_dir,
            include_pattern=self.include_config,
            exclude_pattern=self.exclude_config,
        )
        log_dir = self._prepare_log_dir()
        if log_dir is None and getattr(self.fetch_client, "log_dir", None):
            self.fetch_client.log_dir = None

        # one budget shared by every phase: at most max_jobs external
        # commands run at once across the whole boot
        budget = threading.BoundedSemaphore(self.max_jobs)
        pool_options = {
            "max_jobs": self.max_jobs,
            "budget": budget,
            "cancel_event": self.cancel_event,
        }
        app_gate = ReadinessGate()
        acquired = threading.Event()
        fetch_client_gate = ReadinessGate()

        app = GitRepository("ComfyUI", self.app_repo, self.app_path)
        nodes_manager = NodesManager(config.custom_nodes, self.app_path / "custom_nodes")
        models_manager = ModelsManager(config.models, self.app_path)
        requirements_manager = RequirementsManager(
            self.app_path,
            [node.path for node in nodes_manager.nodes],
            extra=config.requirements,
            exclude=self.pip_exclude,
            cache_dir=log_dir,
        )
        fetcher = RetryingFetcher(
            self.fetch_client,
            max_retries=self.max_retries,
            base_sleep=self.base_sleep,
            cancel_event=self.cancel_event,
            budget=budget,
        )

        phases = [
            AcquirePhase(
                app,
                nodes_manager,
                app_gate=app_gate,
                acquired=acquired,
                update=self.update_repos,
                timeout=self.task_timeout,
                log_dir=log_dir,
                **pool_options,
            ),
            InstallPhase(
                self.fetch_client,
                fetch_client_gate,
                requirements_manager,
                acquired=acquired,
                token=self.token,
                timeout=self.task_timeout,
                log_dir=log_dir,
                **pool_options,
            ),
            DownloadPhase(
                models_manager,
                fetcher,
                fetch_client_gate,
                app_gate=app_gate,
                model_dirs=config.model_dirs,
                ready_timeout=self.fetch_client_timeout,
                **pool_options,
            ),
        ]
        logger.info(
            f"🚀 Starting {len(phases)} phases (max {self.max_jobs} concurrent jobs)"
        )
        with ThreadPoolExecutor(
            max_workers=len(phases), thread_name_prefix="phase"
        ) as executor:
            futures = [executor.submit(phase.run) for phase in phases]
            return [future.result() for future in futures]

    def launch(self) -> int:
        main_py = self.app_path / "main.py"
        if not main_py.is_file():
            logger.error(f"❌ ComfyUI entry point not found: {main_py}")
            return 1
        launch_args = ["--listen", self.listen, "--port", str(self.port)]
        if self.extra_args:
            launch_args.extend(self.extra_args.split())
        cmd = [sys.executable, str(main_py)] + launch_args
        logger.info(f"🚀 Launching ComfyUI on {self.listen}:{self.port}...")
        try:
            self.comfyui_process = subprocess.Popen(cmd, cwd=self.app_path)
            exit_code = self.comfyui_process.wait()
            logger.info(f"🛑 ComfyUI exited with code: {exit_code}")
        except OSError as e:
            logger.error(f"❌ Failed to start ComfyUI: {e}")
            exit_code = 1
        return exit_code

    def startup(self) -> int:
        self._setup_signal_handlers()
        started = time.monotonic()

        results = self.orchestrate()
        summary = report(results)
        log_summary(summary)
        logger.info(f"⏱️ Total setup time: {time.monotonic() - started:.0f} seconds")

        if self.cancel_event.is_set():
            logger.warning("🛑 Boot interrupted, ComfyUI will not be launched")
            return 130
        return self.launch()


def main():
    launcher = ComfyUILauncher(
        app_path=COMFYUI_PATH,
        config_dir=BOOT_CONFIG_DIR,
        app_repo=COMFYUI_REPO,
        include_config=BOOT_CONFIG_INCLUDE,
        exclude_config=BOOT_CONFIG_EXCLUDE,
        log_dir=BOOT_LOG_DIR,
        max_jobs=MAX_JOBS,
        max_retries=MAX_RETRIES,
        base_sleep=RETRY_BASE_SLEEP,
        fetch_client_timeout=FETCH_CLIENT_READY_TIMEOUT,
        task_timeout=TASK_TIMEOUT,
        token=HF_API_TOKEN,
        fetch_client_kind=FETCH_CLIENT,
        hub_endpoint=HF_ENDPOINT,
        update_repos=BOOT_UPDATE_REPOS,
        pip_exclude=PIP_EXCLUDE,
        listen=COMFYUI_LISTEN,
        port=COMFYUI_PORT,
        extra_args=COMFYUI_EXTRA_ARGS,
    )
    sys.exit(launcher.startup())


if __name__ == "__main__":
    main()
