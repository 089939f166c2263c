"""Configuration loading helpers for health-etl."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import PipelineConfig

CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")
DEFAULT_CONFIG_FILENAME = "health_etl.yaml"
HOME_ENV_VAR = "HEALTH_ETL_HOME"


def _read_file(path: Path) -> dict:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Invalid configuration syntax in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {path}")
    return data


def _write_file(path: Path, payload: dict) -> None:
    with path.open("w", encoding="utf-8") as stream:
        if path.suffix in (".yaml", ".yml"):
            yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)
        else:
            json.dump(payload, stream, indent=2, ensure_ascii=False)


@dataclass(slots=True)
class ConfigLocator:
    """Resolve important paths from the project root."""

    project_root: Path | None = None
    logs_dir: Path | None = None

    def __post_init__(self) -> None:
        env_root = os.environ.get(HOME_ENV_VAR)
        if env_root:
            root = Path(env_root).expanduser().resolve()
        else:
            root = (self.project_root or Path(__file__).resolve().parents[2]).resolve()
        self.project_root = root
        self.logs_dir = (root / "logs").resolve()

    def ensure_directories(self) -> None:
        self.logs_dir.mkdir(parents=True, exist_ok=True)

    def default_config_path(self) -> Path:
        return self.project_root / DEFAULT_CONFIG_FILENAME


class ConfigRepository:
    """Repository encapsulating config IO and schema validation."""

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()

    def load_config(self, path: Path | None = None) -> PipelineConfig:
        """Load ``path`` (or the default file when present); defaults otherwise."""

        if path is None:
            path = self.locator.default_config_path()
            if not path.exists():
                return PipelineConfig()
        elif not path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")
        if path.suffix not in CONFIG_EXTENSIONS:
            raise ConfigurationError(f"Unsupported configuration format: {path.suffix}")
        payload = _read_file(path)
        try:
            return PipelineConfig.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid configuration in {path}: {exc}") from exc

    def save_config(self, config: PipelineConfig, path: Path | None = None) -> Path:
        path = path or self.locator.default_config_path()
        _write_file(path, config.model_dump(mode="json"))
        return path


def apply_overrides(config: PipelineConfig, **values: Any) -> PipelineConfig:
    """Return ``config`` with every non-``None`` value replaced, re-validated."""

    updates = {key: value for key, value in values.items() if value is not None}
    if not updates:
        return config
    unknown = set(updates) - set(PipelineConfig.model_fields)
    if unknown:
        raise ConfigurationError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    payload = config.model_dump()
    payload.update(updates)
    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid option: {exc}") from exc


__all__ = [
    "CONFIG_EXTENSIONS",
    "ConfigLocator",
    "ConfigRepository",
    "HOME_ENV_VAR",
    "apply_overrides",
]
