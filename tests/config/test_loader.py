from __future__ import annotations

import json
from pathlib import Path

import pytest

from health_etl.config import ConfigLocator, ConfigRepository, PipelineConfig, apply_overrides
from health_etl.errors import ConfigurationError


def test_config_locator_uses_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HEALTH_ETL_HOME", str(tmp_path))
    locator = ConfigLocator()
    locator.ensure_directories()
    assert locator.project_root == tmp_path.resolve()
    assert locator.logs_dir == tmp_path.resolve() / "logs"
    assert locator.logs_dir.is_dir()
    assert locator.default_config_path().name == "health_etl.yaml"


def test_missing_default_file_yields_defaults(temp_config_repository: ConfigRepository) -> None:
    assert temp_config_repository.load_config() == PipelineConfig()


def test_yaml_roundtrip(temp_config_repository: ConfigRepository) -> None:
    config = PipelineConfig(extract_threads=4, header_policy="union", entry_name_prefixes=("HK",))
    path = temp_config_repository.save_config(config)
    assert path == temp_config_repository.locator.default_config_path()
    assert temp_config_repository.load_config() == config


def test_json_file(temp_config_repository: ConfigRepository, tmp_path: Path) -> None:
    path = tmp_path / "pipeline.json"
    path.write_text(json.dumps({"batch_size": 8, "compression": "stored"}), encoding="utf-8")
    config = temp_config_repository.load_config(path)
    assert config.batch_size == 8
    assert config.compression.value == "stored"


@pytest.mark.parametrize(
    ("name", "content"),
    [
        ("bad.yaml", "batch_size: [unclosed"),
        ("list.yaml", "- 1\n- 2\n"),
        ("invalid.yaml", "batch_size: 0\n"),
        ("config.toml", "batch_size = 1\n"),
    ],
)
def test_broken_files_raise_configuration_error(
    temp_config_repository: ConfigRepository, tmp_path: Path, name: str, content: str
) -> None:
    path = tmp_path / name
    path.write_text(content, encoding="utf-8")
    with pytest.raises(ConfigurationError):
        temp_config_repository.load_config(path)


def test_explicit_missing_file_is_an_error(temp_config_repository: ConfigRepository, tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError):
        temp_config_repository.load_config(tmp_path / "absent.yaml")


def test_apply_overrides_ignores_none_and_revalidates() -> None:
    base = PipelineConfig(load_threads=2)
    assert apply_overrides(base, load_threads=None) is base
    updated = apply_overrides(base, extract_threads=6, field_mismatch="reject")
    assert updated.extract_threads == 6
    assert updated.load_threads == 2
    assert updated.field_mismatch.value == "reject"
    with pytest.raises(ConfigurationError):
        apply_overrides(base, extract_threads=0)
    with pytest.raises(ConfigurationError):
        apply_overrides(base, color="blue")
