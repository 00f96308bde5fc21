import threading
import time
from pathlib import Path

import pytest

from comfyui_bootstrap import boot, nodes
from comfyui_bootstrap.boot import ComfyUILauncher
from comfyui_bootstrap.download import ReadinessGate, RetryingFetcher
from comfyui_bootstrap.installer import Requirement
from comfyui_bootstrap.models import ModelsManager
from comfyui_bootstrap.nodes import GitRepository
from comfyui_bootstrap.phases import DownloadPhase, Phase, PhaseName, PhaseState
from comfyui_bootstrap.report import report

BOOT_CONFIG = """
custom_nodes = ["https://github.com/kijai/comfyui-kjnodes.git"]
model_dirs = ["models/loras"]
models = [
    { repo = "org/vae", file = "vae.safetensors", dir = "models/vae" },
    { repo = "org/clip", file = "clip.safetensors", dir = "models/clip_vision" },
]
"""


class FakeProcess:
    def __init__(self, launched: list, cmd, cwd=None):
        launched.append((cmd, cwd))
        self.cmd = cmd

    def wait(self) -> int:
        return 0

    def poll(self) -> int:
        return 0


@pytest.fixture()
def launched(monkeypatch):
    commands = []
    monkeypatch.setattr(
        boot.subprocess, "Popen", lambda cmd, cwd=None: FakeProcess(commands, cmd, cwd)
    )
    monkeypatch.setattr(boot.signal, "signal", lambda *args: None)
    return commands


@pytest.fixture()
def checkout(monkeypatch):
    """Replace git with a fake checkout; returns the set of repos that fail."""
    failing: set[str] = set()
    state = {"write_main": True}

    def fake_acquire(self, update=False, timeout=None, log_path=None):
        if self.name in failing:
            raise RuntimeError(f"git clone failed with code 128: {self.name}")
        # a leftover non-git directory makes the real clone refuse
        self.is_exists()
        self.path.mkdir(parents=True, exist_ok=True)
        (self.path / "requirements.txt").write_text("einops\n")
        if self.name == "ComfyUI" and state["write_main"]:
            (self.path / "main.py").write_text("")
        return "cloned"

    monkeypatch.setattr(nodes, "is_valid_git_path", lambda path: False)
    monkeypatch.setattr(GitRepository, "acquire", fake_acquire)
    return failing, state


@pytest.fixture()
def pip_results(monkeypatch):
    """Fake pip; add requirement names to make them fail."""
    failing: set[str] = set()
    installed: list[str] = []

    def fake_install(self, cache_dir, timeout=None, log_dir=None):
        if self.name in failing or "*" in failing:
            raise RuntimeError("pip exited with code 1: ERROR: resolution impossible")
        installed.append(self.name)
        return "installed"

    monkeypatch.setattr(Requirement, "install", fake_install)
    return failing, installed


def _launcher(tmp_path: Path, client, **kwargs) -> ComfyUILauncher:
    config_dir = tmp_path / "boot_config"
    config_dir.mkdir(exist_ok=True)
    (config_dir / "00-test.toml").write_text(BOOT_CONFIG)
    options = {
        "max_jobs": 2,
        "base_sleep": 0,
        "fetch_client_timeout": 5,
    }
    options.update(kwargs)
    return ComfyUILauncher(
        app_path=tmp_path / "ComfyUI",
        config_dir=config_dir,
        log_dir=tmp_path / "logs",
        fetch_client=client,
        **options,
    )


def test_full_boot_succeeds(tmp_path: Path, fake_client_factory, checkout, pip_results, launched) -> None:
    client = fake_client_factory()
    launcher = _launcher(tmp_path, client, token="hf_token")

    results = launcher.orchestrate()

    assert [r.name for r in results] == [
        PhaseName.ACQUIRE,
        PhaseName.INSTALL,
        PhaseName.DOWNLOAD,
    ]
    assert all(r.state is PhaseState.COMPLETED for r in results)
    assert report(results).failure_count == 0
    assert {r.task_id for r in results[0].records} == {"ComfyUI", "comfyui-kjnodes"}
    assert {r.task_id for r in results[1].records} == {
        "fetch-client (fake-client)",
        "requirements.txt",
        "custom_nodes/comfyui-kjnodes/requirements.txt",
    }
    assert client.logins == ["hf_token"]
    assert (tmp_path / "ComfyUI" / "models" / "vae" / "vae.safetensors").is_file()
    assert (tmp_path / "ComfyUI" / "models" / "loras").is_dir()


def test_install_failures_do_not_stop_download_or_launch(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    failing_pip, _ = pip_results
    failing_pip.add("*")
    client = fake_client_factory()
    launcher = _launcher(tmp_path, client)

    results = launcher.orchestrate()
    install, download = results[1], results[2]

    assert len(install.failures) == 2
    assert install.state is PhaseState.COMPLETED
    assert len(download.successes) == 2
    assert download.failures == ()

    assert launcher.launch() == 0
    (cmd, cwd), = launched
    assert cmd[1:] == [str(tmp_path / "ComfyUI" / "main.py"), "--listen", "0.0.0.0", "--port", "8188"]
    assert cwd == tmp_path / "ComfyUI"


def test_failed_fetch_client_setup_fails_open(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    client = fake_client_factory(
        failures={
            "org/vae/vae.safetensors": -1,
            "org/clip/clip.safetensors": -1,
        },
        setup_error="pip exited with code 1",
    )
    launcher = _launcher(tmp_path, client, max_retries=2, fetch_client_timeout=30)

    started = time.monotonic()
    exit_code = launcher.startup()

    # the failed setup releases the download phase without waiting 30s
    assert time.monotonic() - started < 20
    assert exit_code == 0
    assert len(launched) == 1
    assert client.attempts_for("org/vae/vae.safetensors") == 2
    assert client.attempts_for("org/clip/clip.safetensors") == 2


def test_missing_entry_point_is_fatal(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    _, state = checkout
    state["write_main"] = False
    launcher = _launcher(tmp_path, fake_client_factory())

    assert launcher.startup() == 1
    assert launched == []


def test_app_clone_failure_skips_nodes_but_completes(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    failing_repos, _ = checkout
    failing_repos.add("ComfyUI")
    client = fake_client_factory()
    launcher = _launcher(tmp_path, client)

    results = launcher.orchestrate()
    acquire, download = results[0], results[2]

    assert acquire.state is PhaseState.COMPLETED
    assert "ComfyUI unavailable" in acquire.setup_error
    assert {r.task_id: r.detail for r in acquire.failures}["comfyui-kjnodes"] == (
        "skipped, ComfyUI unavailable"
    )
    assert all(r.state is PhaseState.COMPLETED for r in results)
    assert launcher.launch() == 1

    # models are not written into the missing checkout
    assert {r.detail for r in download.failures} == {"skipped, ComfyUI unavailable"}
    assert len(download.failures) == 2
    assert client.calls == []
    assert not (tmp_path / "ComfyUI").exists()


def test_clone_failure_does_not_block_next_boot(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    failing_repos, _ = checkout
    failing_repos.add("ComfyUI")
    _launcher(tmp_path, fake_client_factory()).orchestrate()

    failing_repos.clear()
    launcher = _launcher(tmp_path, fake_client_factory())

    assert launcher.startup() == 0
    assert (tmp_path / "ComfyUI" / "models" / "vae" / "vae.safetensors").is_file()


def test_interrupted_boot_does_not_launch(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    client = fake_client_factory()
    launcher = _launcher(tmp_path, client)
    launcher.cancel_event.set()

    assert launcher.startup() == 130
    assert launched == []
    assert client.calls == []


def test_extra_args_are_passed_to_server(
    tmp_path: Path, fake_client_factory, launched
) -> None:
    app = tmp_path / "ComfyUI"
    app.mkdir()
    (app / "main.py").write_text("")
    launcher = _launcher(
        tmp_path, fake_client_factory(), extra_args="--use-sage-attention --lowvram", port=8288
    )

    assert launcher.launch() == 0
    (cmd, _), = launched
    assert cmd[-4:] == ["--port", "8288", "--use-sage-attention", "--lowvram"]


def test_invalid_max_jobs(tmp_path: Path, fake_client_factory) -> None:
    with pytest.raises(ValueError):
        _launcher(tmp_path, fake_client_factory(), max_jobs=0)


def test_download_proceeds_after_fetch_client_timeout(
    tmp_path: Path, fake_client_factory, sleep_recorder
) -> None:
    client = fake_client_factory()
    app_gate = ReadinessGate()
    app_gate.mark_ready()
    phase = DownloadPhase(
        ModelsManager([{"repo": "org/a", "file": "a.bin", "dir": "models/a"}], tmp_path),
        RetryingFetcher(client, sleep=sleep_recorder),
        ReadinessGate(),
        app_gate=app_gate,
        ready_timeout=0.05,
        max_jobs=1,
    )
    assert phase.state is PhaseState.PENDING

    started = time.monotonic()
    result = phase.run()

    assert time.monotonic() - started < 5
    assert result.state is PhaseState.COMPLETED
    assert [r.task_id for r in result.successes] == ["org/a|a.bin|models/a"]


def test_phase_error_is_recorded_not_raised() -> None:
    class BrokenPhase(Phase):
        name = PhaseName.INSTALL

        def execute(self) -> None:
            raise OSError("disk full")

    result = BrokenPhase(max_jobs=1).run()

    assert result.state is PhaseState.COMPLETED
    assert result.setup_error == "disk full"
    assert result.failed


def test_unusable_log_dir_does_not_stop_boot(
    tmp_path: Path, fake_client_factory, checkout, pip_results, launched
) -> None:
    not_a_dir = tmp_path / "logs-file"
    not_a_dir.write_text("occupied")
    launcher = _launcher(tmp_path, fake_client_factory())
    launcher.log_dir = not_a_dir

    assert launcher.startup() == 0
    assert len(launched) == 1
    assert not_a_dir.read_text() == "occupied"


def test_log_dir_cleanup_only_removes_logs(tmp_path: Path, fake_client_factory) -> None:
    log_dir = tmp_path / "logs"
    log_dir.mkdir()
    (log_dir / "git-ComfyUI.log").write_text("previous boot")
    (log_dir / "notes.txt").write_text("keep me")
    launcher = _launcher(tmp_path, fake_client_factory())

    assert launcher._prepare_log_dir() == log_dir
    assert not (log_dir / "git-ComfyUI.log").exists()
    assert (log_dir / "notes.txt").read_text() == "keep me"
