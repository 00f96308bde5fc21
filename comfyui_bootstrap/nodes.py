import logging
import subprocess
from collections import Counter
from dataclasses import dataclass
from pathlib import Path

import giturlparse

from .tasks import Task
from .utils import (
    exec_command,
    is_valid_git_path,
    logger,
    print_list_tree,
    tail_output,
)


def run_git(
    args: list[str],
    timeout: float | None = None,
    log_path: Path | None = None,
) -> subprocess.CompletedProcess:
    try:
        return exec_command(["git"] + args, check=True, timeout=timeout, log_path=log_path)
    except subprocess.CalledProcessError as e:
        raise RuntimeError(
            f"git {args[0]} failed with code {e.returncode}: {tail_output(e.output, 1)}"
        ) from e


@dataclass
class GitRepository:
    name: str
    url: str
    path: Path
    branch: str | None = None

    def __post_init__(self):
        self.path = Path(self.path)

    def __str__(self):
        info = f"{self.name} ({self.url})"
        if self.branch:
            info += f" @ {self.branch}"
        return info

    def is_exists(self) -> bool:
        if not self.path.exists():
            return False
        if self.path.is_file():
            logger.warning(f"⚠️ {self.name} path invalid, removing: {self.path}")
            self.path.unlink()
            return False
        if is_valid_git_path(self.path):
            return True
        if any(self.path.iterdir()):
            raise RuntimeError(
                f"{self.path} exists but is not a git repository, refusing to overwrite"
            )
        # an empty directory is a valid clone target
        return False

    def clone(self, timeout: float | None = None, log_path: Path | None = None) -> None:
        logger.info(f"📥 Cloning {self.url} -> {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        args = ["clone"]
        if self.branch:
            args += ["-b", self.branch]
        run_git(args + [self.url, str(self.path)], timeout=timeout, log_path=log_path)

    def update(self, timeout: float | None = None, log_path: Path | None = None) -> None:
        logger.info(f"🔄 Updating {self.name}")
        run_git(
            ["-C", str(self.path), "pull", "--ff-only"],
            timeout=timeout,
            log_path=log_path,
        )

    def acquire(
        self,
        update: bool = False,
        timeout: float | None = None,
        log_path: Path | None = None,
    ) -> str:
        if self.is_exists():
            if not update:
                logger.info(f"ℹ️ {self.name} already exists. Skipped.")
                return "already present"
            self.update(timeout=timeout, log_path=log_path)
            return "updated"
        self.clone(timeout=timeout, log_path=log_path)
        return "cloned"


class Node(GitRepository):
    @property
    def requirements_file(self) -> Path:
        return self.path / "requirements.txt"


class NodesManager:
    def __init__(self, nodes_config: list[dict], custom_nodes_dir: Path):
        self.custom_nodes_dir = Path(custom_nodes_dir)
        self.nodes = self._load_config(nodes_config)

    def _node_factory(self, config: dict) -> Node:
        if isinstance(config, str):
            config = {"url": config}
        url = config.get("url")
        if not url:
            raise ValueError("Invalid node config. Missing 'url'")
        repo = giturlparse.parse(url)
        if not repo.valid:
            raise ValueError(f"Invalid git URL: {url}")
        name = config.get("name") or repo.name
        return Node(
            name=name,
            url=url,
            path=self.custom_nodes_dir / name,
            branch=config.get("branch"),
        )

    def _load_config(self, nodes_config: list[dict]) -> list[Node]:
        all_nodes: list[Node] = []
        for config in nodes_config:
            try:
                all_nodes.append(self._node_factory(config))
            except Exception as e:
                logger.warning(f"⚠️ Skip invalid node config: {str(e)}\n{config}")
                continue

        # keep first occurrence of each node name
        unique_nodes: dict[str, Node] = {}
        for node in all_nodes:
            unique_nodes.setdefault(node.name, node)

        if len(unique_nodes) < len(all_nodes):
            name_counts = Counter(node.name for node in all_nodes)
            duplicate_names = [name for name, count in name_counts.items() if count > 1]
            logger.warning(f"⚠️ Found {len(duplicate_names)} duplicate nodes:")
            print_list_tree(duplicate_names, level=logging.WARNING)

        return list(unique_nodes.values())

    def acquire_tasks(
        self,
        update: bool = False,
        timeout: float | None = None,
        log_dir: Path | None = None,
    ) -> list[Task]:
        tasks = []
        for node in self.nodes:
            log_path = log_dir / f"git-{node.name}.log" if log_dir else None
            tasks.append(
                Task(
                    task_id=node.name,
                    operation=lambda node=node, log_path=log_path: node.acquire(
                        update=update, timeout=timeout, log_path=log_path
                    ),
                    category="custom_nodes",
                )
            )
        return tasks
