import os
import shutil
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import aria2p

from .constants import HF_ENDPOINT, HUB_CLIENT_SPEC
from .utils import exec_command, logger, tail_output


@dataclass(frozen=True)
class HubSource:
    repo: str
    filename: str
    revision: str = "main"

    def __str__(self):
        info = f"{self.repo}/{self.filename}"
        if self.revision != "main":
            info += f"@{self.revision}"
        return info


@dataclass(frozen=True)
class Attempt:
    number: int
    started: float
    finished: float
    ok: bool
    reason: str = ""

    @property
    def duration(self) -> float:
        return self.finished - self.started


class FetchError(Exception):
    def __init__(self, source, destination: Path, attempts: list[Attempt]):
        self.source = source
        self.destination = destination
        self.attempts = list(attempts)
        reason = self.attempts[-1].reason if self.attempts else "not attempted"
        super().__init__(
            f"{source} -> {destination} failed after {len(self.attempts)} attempts: {reason}"
        )


def prepare_destination(destination: Path) -> Path:
    destination = Path(destination)
    destination.mkdir(parents=True, exist_ok=True)
    return destination


class RetryingFetcher:
    """Fetch one source into a destination directory with bounded retries.

    After failed attempt ``n`` the fetcher waits ``base_sleep * 2 ** (n - 1)``
    seconds, so the default base of 2 gives 2s, 4s, 8s... No wait follows the
    last attempt. The destination directory is (re)created before every attempt.

    ``budget`` is the semaphore slot held by the calling pool task. It is
    released while waiting between attempts so other work can use it.
    """

    def __init__(
        self,
        client,
        max_retries: int = 3,
        base_sleep: float = 2,
        sleep=None,
        clock=time.monotonic,
        cancel_event: threading.Event | None = None,
        budget: threading.Semaphore | None = None,
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self.client = client
        self.max_retries = max_retries
        self.base_sleep = base_sleep
        self.cancel_event = cancel_event
        self.budget = budget
        if sleep is None:
            sleep = cancel_event.wait if cancel_event is not None else time.sleep
        self.sleep = sleep
        self.clock = clock

    def backoff(self, attempt: int) -> float:
        return self.base_sleep * 2 ** (attempt - 1)

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    def _wait(self, delay: float) -> None:
        if self.budget is None:
            self.sleep(delay)
            return
        self.budget.release()
        try:
            self.sleep(delay)
        finally:
            self.budget.acquire()

    def fetch(self, source, destination: Path) -> float:
        attempts: list[Attempt] = []
        for number in range(1, self.max_retries + 1):
            if self._cancelled():
                logger.warning(f"🛑 Fetch cancelled: {source}")
                break
            started = self.clock()
            logger.info(
                f"⬇️ START {source} -> {destination} (attempt {number}/{self.max_retries})"
            )
            try:
                prepare_destination(destination)
                self.client.download(source, Path(destination))
            except Exception as e:
                attempt = Attempt(number, started, self.clock(), False, str(e))
                attempts.append(attempt)
                logger.warning(
                    f"⚠️ FAIL {source} attempt {number}/{self.max_retries} (took {attempt.duration:.1f}s): {attempt.reason}"
                )
                if number < self.max_retries and not self._cancelled():
                    delay = self.backoff(number)
                    logger.info(f"🔁 Retrying {source} in {delay:g}s...")
                    self._wait(delay)
                continue
            attempt = Attempt(number, started, self.clock(), True)
            attempts.append(attempt)
            elapsed = attempt.finished - attempts[0].started
            logger.info(
                f"✅ OK {source} -> {destination} (took {attempt.duration:.1f}s)"
            )
            return elapsed

        error = FetchError(source, destination, attempts)
        logger.error(f"❌ {error}")
        raise error


class ReadinessGate:
    """One-shot latch: a producer marks ready or failed, consumers wait.

    Used between fetch client setup and the downloads, and between the
    ComfyUI checkout and everything that writes into it.
    """

    def __init__(self):
        self._settled = threading.Event()
        self._ready = False
        self.reason = None

    def mark_ready(self) -> None:
        self._ready = True
        self._settled.set()

    def mark_failed(self, reason: str) -> None:
        self.reason = reason
        self._settled.set()

    @property
    def settled(self) -> bool:
        return self._settled.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        self._settled.wait(timeout)
        return self._ready


class HubCliClient:
    name = "huggingface-cli"

    def __init__(
        self,
        token: str | None = None,
        client_spec: str = HUB_CLIENT_SPEC,
        executable: str = "huggingface-cli",
        endpoint: str | None = None,
        timeout: float | None = None,
        log_dir: Path | None = None,
    ):
        self.token = token
        self.client_spec = client_spec
        self.executable = executable
        self.endpoint = endpoint
        self.timeout = timeout
        self.log_dir = log_dir

    def _log_path(self, name: str) -> Path | None:
        if self.log_dir is None:
            return None
        return self.log_dir / f"{name}.log"

    def _env(self) -> dict:
        env = dict(os.environ)
        if self.token:
            env["HF_TOKEN"] = self.token
        if self.endpoint:
            env["HF_ENDPOINT"] = self.endpoint
        return env

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def setup(self) -> None:
        logger.info(f"📦 Installing fetch client: {self.client_spec}")
        exec_command(
            [sys.executable, "-m", "pip", "install", "--no-input", self.client_spec],
            check=True,
            timeout=self.timeout,
            log_path=self._log_path("fetch-client-install"),
        )
        if not self.is_available():
            raise RuntimeError(f"{self.executable} not found on PATH after install")

    def login(self, token: str) -> bool:
        try:
            exec_command(
                [self.executable, "login", "--token", token],
                check=True,
                timeout=self.timeout,
                log_path=self._log_path("fetch-client-login"),
                env=self._env(),
            )
            return True
        except Exception as e:
            logger.warning(
                f"⚠️ {self.executable} login failed, private models may fail to download: {e}"
            )
            return False

    def download(self, source: HubSource, destination: Path) -> None:
        command = [
            self.executable,
            "download",
            source.repo,
            source.filename,
            "--revision",
            source.revision,
            "--local-dir",
            str(destination),
        ]
        try:
            exec_command(
                command,
                check=True,
                timeout=self.timeout,
                log_path=self._log_path(
                    f"download-{source.repo.replace('/', '--')}-{Path(source.filename).name}"
                ),
                env=self._env(),
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(
                f"{self.executable} exited with code {e.returncode}: {tail_output(e.output, 1)}"
            ) from e


class Aria2Client:
    name = "aria2c"

    def __init__(
        self,
        token: str | None = None,
        endpoint: str = HF_ENDPOINT,
        port: int = 6800,
        max_concurrent: int = 4,
        timeout: float | None = None,
        poll_interval: float = 1,
    ):
        self.token = token
        self.endpoint = endpoint.rstrip("/")
        self.port = port
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.aria2 = None

    def _check_aria2c(
        self,
        aria2: aria2p.API,
        max_retries: int = 3,
        retries_interval: int = 2,
    ) -> bool:
        if not isinstance(aria2, aria2p.API):
            return False
        for attempt in range(max_retries):
            try:
                aria2.get_stats()
                return True
            except Exception:
                if attempt < max_retries - 1:
                    time.sleep(retries_interval)
        return False

    def setup(self) -> None:
        aria2 = aria2p.API(
            aria2p.Client(host="http://localhost", port=self.port, secret="")
        )
        # check if aria2c is already running
        if self._check_aria2c(aria2, max_retries=1):
            logger.info("✅ aria2c is already running")
            self.aria2 = aria2
            return
        logger.info("🚀 Launching aria2c...")
        subprocess.run(
            [
                "aria2c",
                "--daemon=true",
                "--enable-rpc",
                f"--rpc-listen-port={self.port}",
                f"--max-concurrent-downloads={self.max_concurrent}",
                "--max-connection-per-server=16",
                "--split=16",
                "--continue=true",
                "--disable-ipv6=true",
            ],
            check=True,
        )
        if not self._check_aria2c(aria2):
            raise RuntimeError("Failed to connect to aria2c after launching.")
        # purge all completed, removed or failed downloads from the queue
        aria2.purge()
        self.aria2 = aria2

    def login(self, token: str) -> bool:
        # the token travels with every request as a header
        self.token = token
        return True

    def resolve_url(self, source: HubSource) -> str:
        return f"{self.endpoint}/{source.repo}/resolve/{quote(source.revision, safe='')}/{quote(source.filename)}"

    def download(self, source: HubSource, destination: Path) -> None:
        if self.aria2 is None:
            raise RuntimeError("aria2c is not running")
        target = destination / source.filename
        options = {"dir": str(target.parent), "out": target.name}
        if self.token:
            options["header"] = f"Authorization: Bearer {self.token}"
        deadline = time.monotonic() + self.timeout if self.timeout else None

        download = self.aria2.add_uris([self.resolve_url(source)], options)
        while not download.is_complete:
            download.update()
            if download.status == "error":
                download.remove(files=True)
                raise RuntimeError(f"{download.error_message}")
            if download.status == "removed":
                raise RuntimeError("Download was removed")
            if deadline and time.monotonic() > deadline:
                download.remove(force=True, files=True)
                raise TimeoutError(f"Timed out after {self.timeout:g}s")
            logger.debug(
                f"{source.filename}: {download.progress_string()} | {download.completed_length_string()}/{download.total_length_string()} [{download.eta_string()}, {download.download_speed_string()}]"
            )
            time.sleep(self.poll_interval)


def build_fetch_client(
    kind: str,
    token: str | None = None,
    endpoint: str = HF_ENDPOINT,
    max_jobs: int = 4,
    timeout: float | None = None,
    log_dir: Path | None = None,
):
    if kind == "aria2":
        return Aria2Client(
            token=token, endpoint=endpoint, max_concurrent=max_jobs, timeout=timeout
        )
    if kind == "hf-cli":
        return HubCliClient(
            token=token,
            endpoint=endpoint if endpoint != "https://huggingface.co" else None,
            timeout=timeout,
            log_dir=log_dir,
        )
    raise ValueError(f"Unknown fetch client: {kind}")
