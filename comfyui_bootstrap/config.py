from collections import defaultdict
from pathlib import Path

import tomllib

from .utils import (
    compile_pattern,
    filter_path_list,
    logger,
    print_list_tree,
)

CONFIG_KEYS = ("custom_nodes", "models", "model_dirs", "requirements")


class ConfigManager:
    """Boot config merged from every ``*.toml`` file in a directory.

    Files are read in numeric-prefix order (``00-base.toml`` before
    ``10-video.toml``, unnumbered files last) and list values are
    concatenated per key.
    """

    def __init__(
        self,
        config_dir: Path,
        include_pattern: str | None = None,
        exclude_pattern: str | None = None,
    ) -> None:
        self._config = self.load_config(config_dir, include_pattern, exclude_pattern)

    @property
    def config(self) -> dict[str, list]:
        return self._config

    @property
    def custom_nodes(self) -> list[dict]:
        return self._config.get("custom_nodes", [])

    @property
    def models(self) -> list[dict]:
        return self._config.get("models", [])

    @property
    def model_dirs(self) -> list[str]:
        return self._config.get("model_dirs", [])

    @property
    def requirements(self) -> list[str]:
        return self._config.get("requirements", [])

    def _sort_by_numeric_prefix(self, file_path: Path) -> tuple:
        filename = file_path.name
        pattern = compile_pattern(r"^(\d+)-")
        match = pattern.match(filename)
        if match:
            return (int(match.group(1)), filename)
        # If no numeric prefix, sort after numbered files
        return (float("inf"), filename)

    def _parse_config_files(self, files: list[Path]) -> dict:
        full_config = defaultdict(list)
        for file in files:
            try:
                config = tomllib.loads(file.read_text())
            except (OSError, tomllib.TOMLDecodeError) as e:
                logger.error(f"❌ Failed to parse config file '{file}': {str(e)}")
                continue
            for key, value in config.items():
                if key not in CONFIG_KEYS:
                    logger.warning(f"⚠️ Unknown config key '{key}' in {file.name}")
                    continue
                if not isinstance(value, list):
                    logger.warning(
                        f"⚠️ Config key '{key}' in {file.name} must be a list. Skipped."
                    )
                    continue
                full_config[key].extend(value)
        return dict(full_config)

    def load_config(
        self, dir: Path, include_pattern: str = None, exclude_pattern: str = None
    ) -> dict:
        dir = Path(dir)
        if dir.is_dir():
            logger.info(f"📂 Loading config: {dir}")
            config_files = list(dir.rglob("*.toml"))
        elif dir.is_file():
            logger.info(f"📂 Loading config file: {dir}")
            config_files = [dir]
        else:
            logger.warning(f"⚠️ No config found at {dir}, nothing to clone or download")
            return {}

        if include_pattern:
            logger.info(f"⚡ Include config filter: {include_pattern}")
        if exclude_pattern:
            logger.info(f"⚡ Exclude config filter: {exclude_pattern}")
        if include_pattern or exclude_pattern:
            # match against paths relative to the config dir only
            base = dir if dir.is_dir() else dir.parent
            relative_files = filter_path_list(
                [file.relative_to(base) for file in config_files],
                include_pattern,
                exclude_pattern,
            )
            config_files = [base / file for file in relative_files]

        config_files.sort(key=self._sort_by_numeric_prefix)

        logger.info(f"📄 Found {len(config_files)} config files:")
        print_list_tree(config_files)

        config = self._parse_config_files(config_files)
        if not config:
            logger.info("ℹ️ No valid config found")
        logger.debug(f"🛠️ Loaded config: {config}")

        return config
