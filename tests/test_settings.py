from __future__ import annotations

from pathlib import Path

import pytest

from lead_ingestor.errors import ConfigurationError
from lead_ingestor.retry import RetryPolicy
from lead_ingestor.settings import get_settings, load_settings


def test_defaults_match_documented_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/leads")

    settings = load_settings(_env_file=None)

    assert settings.batch_size == 1000
    assert settings.max_execution_seconds == 3600
    assert settings.upload_dir == Path("./uploads")
    assert settings.processed_dir == Path("./processed")
    assert settings.lock_file == Path("./process.lock")
    assert settings.file_glob == "*.csv"
    assert settings.persist_workers == 1
    assert settings.phone_queue_step == 11


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/leads")
    monkeypatch.setenv("BATCH_SIZE", "250")
    monkeypatch.setenv("UPLOAD_DIR", str(tmp_path / "in"))
    monkeypatch.setenv("max_execution_seconds", "90")

    settings = load_settings(_env_file=None)

    assert settings.batch_size == 250
    assert settings.upload_dir == tmp_path / "in"
    assert settings.max_execution_seconds == 90


def test_missing_database_url_is_configuration_error() -> None:
    with pytest.raises(ConfigurationError, match="DATABASE_URL"):
        load_settings(_env_file=None)


@pytest.mark.parametrize(
    "name, value",
    [("BATCH_SIZE", "0"), ("MAX_EXECUTION_SECONDS", "-5"), ("PERSIST_WORKERS", "zero")],
)
def test_invalid_numbers_are_configuration_errors(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str
) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/leads")
    monkeypatch.setenv(name, value)

    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None)


def test_retry_window_must_be_ordered(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/leads")
    monkeypatch.setenv("RETRY_INITIAL_DELAY", "10")
    monkeypatch.setenv("RETRY_MAX_DELAY", "1")

    with pytest.raises(ConfigurationError):
        load_settings(_env_file=None)


def test_sqlalchemy_style_url_is_normalised(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DATABASE_URL", "postgresql+psycopg://u:p@db/leads")

    assert load_settings(_env_file=None).database_url == "postgresql://u:p@db/leads"


def test_env_file_is_read(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text("DATABASE_URL=postgresql://from-file/leads\nBATCH_SIZE=5\n", encoding="utf-8")

    settings = load_settings(_env_file=env_file)

    assert settings.database_url == "postgresql://from-file/leads"
    assert settings.batch_size == 5


def test_get_settings_is_cached(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("DATABASE_URL", "postgresql://localhost/leads")

    assert get_settings() is get_settings()


def test_retry_policy_from_settings(make_settings) -> None:
    policy = RetryPolicy.from_settings(make_settings(MAX_RETRIES=7, RETRY_JITTER=0.25))

    assert policy.max_attempts == 7
    assert policy.jitter == 0.25
