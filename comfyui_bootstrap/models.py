from dataclasses import dataclass, field
from pathlib import Path

from .download import HubSource, RetryingFetcher, prepare_destination
from .tasks import Task
from .utils import logger


@dataclass
class Model:
    repo: str
    filename: str
    dir: Path | str
    revision: str = "main"
    root: Path = Path(".")
    destination: Path = field(init=False)
    path: Path = field(init=False)

    def __post_init__(self):
        if not self.repo or not self.filename or not self.dir:
            raise ValueError("Model config requires 'repo', 'file' and 'dir'")
        self.dir = Path(self.dir)
        if self.dir.is_absolute() or ".." in self.dir.parts:
            raise ValueError(f"Model dir must stay inside the app path: {self.dir}")
        self.destination = Path(self.root) / self.dir
        self.path = self.destination / self.filename

    def __eq__(self, other):
        if not isinstance(other, Model):
            return NotImplemented
        return self.path == other.path

    def __hash__(self):
        return hash(self.path)

    def __str__(self):
        return f"{self.repo}|{self.filename}|{self.dir.as_posix()}"

    @property
    def source(self) -> HubSource:
        return HubSource(self.repo, self.filename, self.revision)

    def purge_incomplete(self) -> bool:
        # a leftover .aria2 control file means the previous download is incomplete
        aria2_cache = self.destination / (self.filename + ".aria2")
        if aria2_cache.exists():
            logger.warning(
                f"⚠️ Found incomplete download: {str(self.path)}, removing..."
            )
            aria2_cache.unlink()
            self.path.unlink(missing_ok=True)
            return True
        return False

    def is_exists(self) -> bool:
        return self.path.is_file()

    def download(self, fetcher: RetryingFetcher) -> str:
        self.purge_incomplete()
        if self.is_exists():
            logger.info(f"ℹ️ {self.filename} already exists in {self.dir}. Skipped.")
            return "already exists"
        elapsed = fetcher.fetch(self.source, self.destination)
        return f"took {elapsed:.1f}s"


class ModelsManager:
    def __init__(self, models_config: list[dict], root: Path):
        self.root = Path(root)
        self.models = self._load_config(models_config)

    def _model_factory(self, config: dict) -> Model:
        return Model(
            repo=config.get("repo"),
            filename=config.get("file") or config.get("filename"),
            dir=config.get("dir"),
            revision=config.get("revision", "main"),
            root=self.root,
        )

    def _load_config(self, models_config: list[dict]) -> list[Model]:
        models: list[Model] = []
        for config in models_config:
            try:
                model = self._model_factory(config)
            except Exception as e:
                logger.warning(f"⚠️ Skip invalid model config: {str(e)}\n{config}")
                continue
            if model in models:
                logger.warning(f"⚠️ Skip duplicate model: {model}")
                continue
            models.append(model)
        return models

    def prepare_dirs(self, dirs: list[str]) -> list[Path]:
        prepared = []
        for dir in dirs:
            prepared.append(prepare_destination(self.root / dir))
        for model in self.models:
            prepared.append(prepare_destination(model.destination))
        return prepared

    def download_tasks(self, fetcher: RetryingFetcher) -> list[Task]:
        return [
            Task(
                task_id=str(model),
                operation=lambda model=model: model.download(fetcher),
                category="models",
            )
            for model in self.models
        ]
