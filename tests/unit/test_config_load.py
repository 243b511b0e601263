"""
Configuration loading and validation.
"""
import os
from decimal import Decimal

import pytest
from pydantic import ValidationError

from tradeledger.config.config import Config, load_config
from tradeledger.config.dotenv_loader import load_dotenv_files


def test_packaged_config_loads_with_pipeline_defaults():
    config = load_config()

    assert config.sync.page_size == 300
    assert config.sync.fills_interval_seconds == 120
    assert config.sync.snapshot_interval_seconds == 300
    assert config.venue.request_timeout_seconds == 30
    assert config.venue.history_timeout_seconds == 60
    assert config.ledger.fill_window == 5000
    assert config.ledger.pnl_epsilon == Decimal("1e-12")
    assert config.ledger.max_completed_positions == 100


def test_environment_variable_overrides_yaml(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("environment: dev\n")
    monkeypatch.setenv("ENVIRONMENT", "prod")
    monkeypatch.setenv("DATABASE_URL", "sqlite:///override.db")

    config = Config.from_yaml(path)

    assert config.environment == "prod"
    assert config.data.database_url == "sqlite:///override.db"


def test_yaml_expands_env_references(tmp_path, monkeypatch):
    monkeypatch.setenv("VENUE_URL", "https://venue.example")
    path = tmp_path / "config.yaml"
    path.write_text("venue:\n  base_url: ${VENUE_URL}\n")

    assert Config.from_yaml(path).venue.base_url == "https://venue.example"


def test_lease_must_outlive_a_sync_interval(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("sync:\n  fills_interval_seconds: 600\n  lease_ttl_seconds: 60\n")

    with pytest.raises(ValidationError):
        Config.from_yaml(path)


def test_out_of_range_page_size_is_rejected(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("sync:\n  page_size: 0\n")

    with pytest.raises(ValidationError):
        Config.from_yaml(path)


def test_missing_file_raises():
    with pytest.raises(FileNotFoundError):
        Config.from_yaml("/nonexistent/config.yaml")


KEY = "TRADELEDGER_DOTENV_CHECK"


@pytest.fixture
def dotenv_env(monkeypatch):
    """Dev environment with KEY unset; anything the loader exports is undone afterwards."""
    monkeypatch.setenv("ENVIRONMENT", "dev")
    monkeypatch.delenv("TRADELEDGER_ENV_FILE", raising=False)
    monkeypatch.setenv(KEY, "unset")
    monkeypatch.delenv(KEY)
    return monkeypatch


def test_dotenv_is_skipped_in_prod(tmp_path, dotenv_env):
    (tmp_path / ".env").write_text(f"{KEY}=1\n")
    dotenv_env.setenv("ENVIRONMENT", "prod")

    assert load_dotenv_files(root=tmp_path) == []
    assert KEY not in os.environ


def test_dotenv_local_overrides_env(tmp_path, dotenv_env):
    (tmp_path / ".env").write_text(f"{KEY}=base\n")
    (tmp_path / ".env.local").write_text(f"{KEY}=local\n")

    assert load_dotenv_files(root=tmp_path) == [KEY]
    assert os.environ[KEY] == "local"


def test_process_environment_wins_over_dotenv(tmp_path, dotenv_env):
    (tmp_path / ".env.local").write_text(f"{KEY}=local\n")
    dotenv_env.setenv(KEY, "exported")

    assert load_dotenv_files(root=tmp_path) == []
    assert os.environ[KEY] == "exported"


def test_explicit_env_file_replaces_defaults(tmp_path, dotenv_env):
    (tmp_path / ".env").write_text(f"{KEY}=default\n")
    custom = tmp_path / "ledger.env"
    custom.write_text(f"{KEY}=custom\n")
    dotenv_env.setenv("TRADELEDGER_ENV_FILE", str(custom))

    load_dotenv_files(root=tmp_path)

    assert os.environ[KEY] == "custom"


def test_missing_dotenv_files_are_ignored(tmp_path, dotenv_env):
    assert load_dotenv_files(root=tmp_path) == []
