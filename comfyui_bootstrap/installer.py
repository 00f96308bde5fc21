import re
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

from .tasks import Task
from .utils import exec_command, logger, tail_output


def filter_requirements(source: Path, target: Path, exclude: list[str]) -> list[str]:
    """Copy a requirements file without the lines for excluded packages.

    Returns the dropped lines. Used to keep the preinstalled torch family
    untouched by the base install.
    """
    lines = source.read_text(encoding="utf-8").splitlines()
    dropped = []
    if exclude:
        pattern = re.compile(
            r"^\s*(" + "|".join(re.escape(name) for name in exclude) + r")\b",
            re.IGNORECASE,
        )
        kept = []
        for line in lines:
            if pattern.match(line):
                dropped.append(line)
            else:
                kept.append(line)
        lines = kept
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return dropped


def pip_install(
    requirements_file: Path,
    timeout: float | None = None,
    log_path: Path | None = None,
) -> None:
    command = [
        sys.executable,
        "-m",
        "pip",
        "install",
        "--no-input",
        "-r",
        str(requirements_file),
    ]
    try:
        exec_command(command, check=True, timeout=timeout, log_path=log_path)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(
            f"pip exited with code {e.returncode}: {tail_output(e.output, 1)}"
        ) from e


@dataclass(frozen=True)
class Requirement:
    name: str
    path: Path
    exclude: tuple[str, ...] = ()

    def install(
        self,
        cache_dir: Path,
        timeout: float | None = None,
        log_dir: Path | None = None,
    ) -> str:
        target = self.path
        detail = "installed"
        if self.exclude:
            target = cache_dir / f"{self.name.replace('/', '--')}.filtered.txt"
            dropped = filter_requirements(self.path, target, list(self.exclude))
            if dropped:
                detail = f"installed, excluded {len(dropped)} lines"
        log_path = log_dir / f"pip-{self.name.replace('/', '--')}.log" if log_dir else None
        logger.info(f"📦 Installing requirements: {self.name}")
        pip_install(target, timeout=timeout, log_path=log_path)
        return detail


class RequirementsManager:
    def __init__(
        self,
        app_path: Path,
        node_paths: list[Path],
        extra: list[str] | None = None,
        exclude: list[str] | None = None,
        cache_dir: Path | None = None,
    ):
        self.app_path = Path(app_path)
        self.node_paths = [Path(path) for path in node_paths]
        self.extra = extra or []
        self.exclude = tuple(exclude or ())
        self.cache_dir = cache_dir or self.app_path / ".cache"

    def _name(self, path: Path) -> str:
        try:
            return path.relative_to(self.app_path).as_posix()
        except ValueError:
            return path.as_posix()

    def _to_task(
        self,
        requirement: Requirement,
        timeout: float | None,
        log_dir: Path | None,
        category: str,
    ) -> Task:
        return Task(
            task_id=requirement.name,
            operation=lambda: requirement.install(
                self.cache_dir, timeout=timeout, log_dir=log_dir
            ),
            category=category,
        )

    def base_tasks(
        self, timeout: float | None = None, log_dir: Path | None = None
    ) -> list[Task]:
        path = self.app_path / "requirements.txt"
        if not path.is_file():
            logger.warning(
                f"⚠️ requirements.txt not found in {self.app_path}, skipping base requirement install."
            )
            return []
        requirement = Requirement(self._name(path), path, self.exclude)
        return [self._to_task(requirement, timeout, log_dir, "base")]

    def node_tasks(
        self, timeout: float | None = None, log_dir: Path | None = None
    ) -> list[Task]:
        tasks = []
        paths = [node_path / "requirements.txt" for node_path in self.node_paths]
        for extra in self.extra:
            extra_path = Path(extra)
            paths.append(extra_path if extra_path.is_absolute() else self.app_path / extra_path)
        seen = set()
        for path in paths:
            if path in seen:
                continue
            seen.add(path)
            if not path.is_file():
                logger.info(f"ℹ️ No requirements file at {self._name(path)}, skipping.")
                continue
            requirement = Requirement(self._name(path), path)
            tasks.append(self._to_task(requirement, timeout, log_dir, "custom_nodes"))
        return tasks
