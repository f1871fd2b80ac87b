from __future__ import annotations

from pathlib import Path

import allure
import pytest

from swarm_engine.config import AgentSettings, EngineSettings, ProviderSettings, Settings
from swarm_engine.errors import ConfigError
from swarm_engine.orchestrator.provider.daytona import DaytonaProvider
from swarm_engine.orchestrator.provider.factory import build_provider
from swarm_engine.orchestrator.provider.local import LocalSandboxProvider

pytestmark = [
    allure.epic("Orchestration"),
    allure.feature("Configuration"),
]


def test_from_env_reads_prefixed_variables(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("SWARM_ENGINE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("SWARM_ENGINE_PROVIDER", " Local ")
    monkeypatch.setenv("SWARM_ENGINE_LOCAL_SANDBOX_ROOT", str(tmp_path / "boxes"))
    monkeypatch.setenv("SWARM_ENGINE_POOL_MAX_SANDBOXES", "9")
    monkeypatch.setenv("SWARM_ENGINE_TRIGGER_ENABLED", "off")
    monkeypatch.setenv("SWARM_ENGINE_MAX_RETRIES", "1")
    monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-from-env")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.provider.kind == "local"
    assert settings.provider.local_root == tmp_path / "boxes"
    assert settings.defaults.pool_max_sandboxes == 9
    assert settings.defaults.trigger_enabled is False
    assert settings.defaults.max_retries == 1
    assert settings.agent.anthropic_api_key == "sk-ant-from-env"
    settings.validate_for_engine()


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("SWARM_ENGINE_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env(db_path=tmp_path / "cli.db").db_path == tmp_path / "cli.db"


def test_daytona_key_falls_back_to_unprefixed_variable(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SWARM_ENGINE_DAYTONA_API_KEY", raising=False)
    monkeypatch.setenv("DAYTONA_API_KEY", "dtn-fallback")

    assert Settings.from_env().provider.api_key == "dtn-fallback"


def test_invalid_boolean_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWARM_ENGINE_TRIGGER_ENABLED", "maybe")

    with pytest.raises(ValueError, match="SWARM_ENGINE_TRIGGER_ENABLED"):
        Settings.from_env()


def test_validate_for_engine_requires_daytona_key() -> None:
    settings = Settings(provider=ProviderSettings(kind="daytona", api_key=" "))

    with pytest.raises(ConfigError, match="Daytona API key is missing"):
        settings.validate_for_engine()


def test_validate_for_engine_rejects_relative_daytona_url() -> None:
    settings = Settings(
        provider=ProviderSettings(kind="daytona", api_key="dtn", api_url="api.daytona.io"),
    )

    with pytest.raises(ConfigError, match="Invalid Daytona API URL"):
        settings.validate_for_engine()


def test_validate_for_engine_rejects_unknown_provider() -> None:
    with pytest.raises(ConfigError, match="Unsupported sandbox provider"):
        Settings(provider=ProviderSettings(kind="docker")).validate_for_engine()


def test_validate_for_engine_requires_prompt_placeholder() -> None:
    settings = Settings(
        provider=ProviderSettings(kind="local"),
        agent=AgentSettings(command_template="claude --print"),
    )

    with pytest.raises(ConfigError, match="placeholder"):
        settings.validate_for_engine()


def test_validate_for_engine_rejects_non_positive_intervals() -> None:
    settings = Settings(
        provider=ProviderSettings(kind="local"),
        engine=EngineSettings(cancel_check_interval_seconds=0),
    )

    with pytest.raises(ConfigError, match="CANCEL_CHECK_INTERVAL"):
        settings.validate_for_engine()


@pytest.mark.parametrize(
    ("base", "maximum", "message"),
    [
        (-1.0, 300.0, "RETRY_BASE_DELAY"),
        (60.0, 30.0, "RETRY_MAX_DELAY"),
    ],
)
def test_validate_for_engine_rejects_inconsistent_retry_backoff(
    base: float,
    maximum: float,
    message: str,
) -> None:
    settings = Settings(
        provider=ProviderSettings(kind="local"),
        engine=EngineSettings(retry_base_delay_seconds=base, retry_max_delay_seconds=maximum),
    )

    with pytest.raises(ConfigError, match=message):
        settings.validate_for_engine()


def test_retry_backoff_is_read_from_the_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SWARM_ENGINE_RETRY_BASE_DELAY_SECONDS", "2.5")
    monkeypatch.setenv("SWARM_ENGINE_RETRY_MAX_DELAY_SECONDS", "40")

    settings = Settings.from_env()

    assert settings.engine.retry_base_delay_seconds == 2.5
    assert settings.engine.retry_max_delay_seconds == 40.0


def test_build_provider_picks_the_configured_backend(tmp_path: Path) -> None:
    local = build_provider(Settings(provider=ProviderSettings(kind="local", local_root=tmp_path)))
    assert isinstance(local, LocalSandboxProvider)
    assert local.root == tmp_path

    daytona = build_provider(Settings(provider=ProviderSettings(kind="daytona", api_key="dtn")))
    assert isinstance(daytona, DaytonaProvider)
    daytona.close()

    with pytest.raises(ConfigError):
        build_provider(Settings(provider=ProviderSettings(kind="daytona")))
    with pytest.raises(ConfigError):
        build_provider(Settings(provider=ProviderSettings(kind="docker")))
