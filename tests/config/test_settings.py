"""Tests for settings and YAML configuration loading."""

import json
from pathlib import Path
from typing import Any

import pytest
import yaml
from pydantic import ValidationError

from inbound_queue.config.settings import (
    Settings,
    deep_merge,
    load_all_configs,
    validate_config_section,
)
from inbound_queue.domain.queue_constants import DEFAULT_MAX_RETRIES

REPO_CONFIG_DIR = Path(__file__).resolve().parents[2] / "config"

ENV_KEYS = (
    "DATABASE_TYPE",
    "DB_PATH",
    "POSTGRES_PASSWORD",
    "QUEUE_MAX_RETRIES",
    "QUEUE_BATCH_SIZE",
    "QUEUE_PROCESSOR",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.dump(data, f)


def test_deep_merge_nested() -> None:
    """Nested sections are merged key by key."""
    base = {"queue": {"max_retries": 3, "batch_size": 5}}
    override = {"queue": {"batch_size": 10}, "logging": {"level": "DEBUG"}}

    assert deep_merge(base, override) == {
        "queue": {"max_retries": 3, "batch_size": 10},
        "logging": {"level": "DEBUG"},
    }


def test_load_all_configs_missing_directory(tmp_path: Path) -> None:
    """A missing config directory yields an empty config."""
    assert load_all_configs(tmp_path / "absent") == {}


def test_load_all_configs_main_first_then_alphabetical(tmp_path: Path) -> None:
    """main.yaml is the base; other files override it in name order."""
    _write_yaml(tmp_path / "main.yaml", {"queue": {"max_retries": 3, "batch_size": 5}})
    _write_yaml(tmp_path / "aa_local.yaml", {"queue": {"max_retries": 4}})
    _write_yaml(tmp_path / "zz_local.yaml", {"queue": {"max_retries": 6}})

    config = load_all_configs(tmp_path)

    assert config == {"queue": {"max_retries": 6, "batch_size": 5}}


def test_load_all_configs_rejects_invalid_section(tmp_path: Path) -> None:
    """Files are validated against the schema of the same name."""
    schema = {
        "type": "object",
        "properties": {
            "queue": {
                "type": "object",
                "properties": {"max_retries": {"type": "integer"}},
            }
        },
    }
    (tmp_path / "schemas").mkdir()
    (tmp_path / "schemas" / "main.schema.json").write_text(json.dumps(schema))
    _write_yaml(tmp_path / "main.yaml", {"queue": {"max_retries": "three"}})

    with pytest.raises(ValueError, match="Config validation failed for main"):
        load_all_configs(tmp_path)


def test_repository_config_matches_its_schema() -> None:
    """The shipped config/main.yaml validates and selects SQLite."""
    config = load_all_configs(REPO_CONFIG_DIR)

    assert config["database"]["type"] == "sqlite"
    assert config["queue"]["max_retries"] == DEFAULT_MAX_RETRIES


@pytest.mark.parametrize(
    "section",
    [
        {"queue": {"max_retries": 0}},
        {"queue": {"jitter_ratio": 2}},
        {"queue": {"processor": "not a path"}},
        {"queue": {"unknown_option": True}},
        {"database": {"type": "mysql"}},
    ],
)
def test_shipped_schema_rejects_bad_values(section: dict[str, Any]) -> None:
    """Out-of-range and unknown queue options are refused."""
    with pytest.raises(ValueError):
        validate_config_section(section, "main", config_dir=REPO_CONFIG_DIR)


def test_settings_defaults_without_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Defaults apply when no YAML or env values exist."""
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.database_type == "sqlite"
    assert settings.queue_max_retries == DEFAULT_MAX_RETRIES
    assert settings.queue_processor is None
    assert settings.postgres_password is None


def test_settings_apply_yaml_values(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """YAML sections map onto flat settings fields."""
    _write_yaml(
        tmp_path / "config" / "main.yaml",
        {
            "database": {"type": "postgres", "postgres": {"host": "db.internal"}},
            "queue": {
                "max_retries": 5,
                "initial_delay_seconds": 1.0,
                "stale_after_minutes": 30,
                "processor": "bot.replies:handle",
            },
            "logging": {"level": "DEBUG"},
        },
    )
    monkeypatch.chdir(tmp_path)

    settings = Settings()

    assert settings.database_type == "postgres"
    assert settings.postgres_host == "db.internal"
    assert settings.queue_max_retries == 5
    assert settings.queue_stale_after_minutes == 30
    assert settings.queue_processor == "bot.replies:handle"
    assert settings.log_level == "DEBUG"

    policy = settings.retry_policy()
    assert policy.max_retries == 5
    assert policy.initial_delay_seconds == 1.0


def test_env_and_explicit_values_win_over_yaml(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """YAML only fills values the environment did not provide."""
    _write_yaml(
        tmp_path / "config" / "main.yaml",
        {"queue": {"max_retries": 5, "batch_size": 8}},
    )
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("QUEUE_MAX_RETRIES", "7")

    settings = Settings(queue_batch_size=2)

    assert settings.queue_max_retries == 7
    assert settings.queue_batch_size == 2


def test_settings_validate_ranges(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Out-of-range values are rejected by pydantic."""
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValidationError):
        Settings(queue_jitter_ratio=1.5)
    with pytest.raises(ValidationError):
        Settings(queue_max_retries=0)
