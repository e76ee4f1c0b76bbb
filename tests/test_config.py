from pathlib import Path
import os

import pytest
from pydantic import ValidationError

from agent_orchestrator.config import OrchestratorSettings, get_settings


def test_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AO_POLL_INTERVAL", raising=False)
    settings = OrchestratorSettings()

    assert settings.poll_interval == 30
    assert settings.max_consecutive_same_status == 5
    assert settings.max_cycle_repetitions == 3
    assert settings.max_history_size == 50
    assert settings.default_notifiers == ("log",)


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AO_PROJECT_PATHS", os.pathsep.join(["/etc/ao", "projects"]))
    monkeypatch.setenv("AO_DEFAULT_NOTIFIERS", "log, slack")
    monkeypatch.setenv("AO_POLL_INTERVAL", "5")
    monkeypatch.setenv("AO_LOG_LEVEL", "debug")

    settings = OrchestratorSettings()

    assert settings.project_paths == (Path("/etc/ao"), Path("projects"))
    assert settings.default_notifiers == ("log", "slack")
    assert settings.poll_interval == 5
    assert settings.log_level == "DEBUG"


def test_settings_reject_invalid_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AO_MAX_CYCLE_REPETITIONS", "1")
    with pytest.raises(ValidationError):
        OrchestratorSettings()

    monkeypatch.delenv("AO_MAX_CYCLE_REPETITIONS")
    monkeypatch.setenv("AO_POLL_TIMEOUT", "0")
    with pytest.raises(ValidationError):
        OrchestratorSettings()

    monkeypatch.delenv("AO_POLL_TIMEOUT")
    monkeypatch.setenv("AO_LOG_LEVEL", "chatty")
    with pytest.raises(ValidationError):
        OrchestratorSettings()


def test_get_settings_resolves_paths(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AO_ARCHIVE_PATH", str(tmp_path / "archive"))
    monkeypatch.setenv("AO_PROJECT_PATHS", str(tmp_path / "projects"))
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.archive_path.is_absolute()
        assert settings.project_paths == ((tmp_path / "projects").resolve(),)
        assert get_settings() is settings
    finally:
        get_settings.cache_clear()
