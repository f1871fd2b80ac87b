"""Runtime configuration for the orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from swarm_engine.errors import ConfigError

SUPPORTED_PROVIDERS = ("daytona", "local")
DEFAULT_AGENT_COMMAND_TEMPLATE = "claude --yes --print {prompt}"


@dataclass(slots=True)
class ProviderSettings:
    """Sandbox provider connection settings."""

    kind: str = "daytona"
    api_url: str = "https://api.daytona.io"
    api_key: str = ""
    target: str = "us"
    auto_stop_interval_minutes: int = 60
    request_timeout_seconds: float = 30.0
    local_root: Path | None = None


@dataclass(slots=True)
class AgentSettings:
    """How the executor turns a task into a command inside the sandbox."""

    command_template: str = DEFAULT_AGENT_COMMAND_TEMPLATE
    workspace_path: str = "/workspace"
    skills_path: str = "/root/.claude/skills"
    cli_docs_path: str = "/data/.claude/cli"
    anthropic_api_key: str | None = None


@dataclass(slots=True)
class EngineSettings:
    """Executor-side polling knobs, independent of the per-cycle config record."""

    cancel_check_interval_seconds: float = 1.0
    log_flush_interval_seconds: float = 0.5
    log_flush_max_lines: int = 50
    result_max_chars: int = 64_000
    shutdown_wait_seconds: float = 30.0
    retry_base_delay_seconds: float = 5.0
    retry_max_delay_seconds: float = 300.0


@dataclass(slots=True)
class OrchestrationDefaults:
    """Seed values for the shared orchestration config row."""

    pool_max_sandboxes: int = 5
    pool_idle_timeout_seconds: int = 600
    default_snapshot: str = "swarm-lite-v1"
    trigger_enabled: bool = True
    trigger_poll_interval_seconds: int = 5
    execution_timeout_seconds: int = 600
    max_retries: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".swarm_engine.db")
    sqlite_busy_timeout_ms: int = 5_000
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    engine: EngineSettings = field(default_factory=EngineSettings)
    defaults: OrchestrationDefaults = field(default_factory=OrchestrationDefaults)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        local_root = os.getenv("SWARM_ENGINE_LOCAL_SANDBOX_ROOT", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("SWARM_ENGINE_DB_PATH", ".swarm_engine.db")),
            sqlite_busy_timeout_ms=int(os.getenv("SWARM_ENGINE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            provider=ProviderSettings(
                kind=os.getenv("SWARM_ENGINE_PROVIDER", "daytona").strip().lower(),
                api_url=os.getenv(
                    "SWARM_ENGINE_DAYTONA_API_URL",
                    os.getenv("DAYTONA_API_URL", "https://api.daytona.io"),
                ),
                api_key=os.getenv("SWARM_ENGINE_DAYTONA_API_KEY", os.getenv("DAYTONA_API_KEY", "")),
                target=os.getenv("SWARM_ENGINE_DAYTONA_TARGET", "us"),
                auto_stop_interval_minutes=int(
                    os.getenv("SWARM_ENGINE_DAYTONA_AUTO_STOP_MINUTES", "60"),
                ),
                request_timeout_seconds=float(
                    os.getenv("SWARM_ENGINE_PROVIDER_REQUEST_TIMEOUT_SECONDS", "30.0"),
                ),
                local_root=Path(local_root) if local_root else None,
            ),
            agent=AgentSettings(
                command_template=os.getenv(
                    "SWARM_ENGINE_AGENT_COMMAND_TEMPLATE",
                    DEFAULT_AGENT_COMMAND_TEMPLATE,
                ),
                workspace_path=os.getenv("SWARM_ENGINE_WORKSPACE_PATH", "/workspace"),
                skills_path=os.getenv("SWARM_ENGINE_SKILLS_PATH", "/root/.claude/skills"),
                cli_docs_path=os.getenv("SWARM_ENGINE_CLI_DOCS_PATH", "/data/.claude/cli"),
                anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or None,
            ),
            engine=EngineSettings(
                cancel_check_interval_seconds=float(
                    os.getenv("SWARM_ENGINE_CANCEL_CHECK_INTERVAL_SECONDS", "1.0"),
                ),
                log_flush_interval_seconds=float(
                    os.getenv("SWARM_ENGINE_LOG_FLUSH_INTERVAL_SECONDS", "0.5"),
                ),
                log_flush_max_lines=int(os.getenv("SWARM_ENGINE_LOG_FLUSH_MAX_LINES", "50")),
                result_max_chars=int(os.getenv("SWARM_ENGINE_RESULT_MAX_CHARS", "64000")),
                shutdown_wait_seconds=float(
                    os.getenv("SWARM_ENGINE_SHUTDOWN_WAIT_SECONDS", "30.0"),
                ),
                retry_base_delay_seconds=float(
                    os.getenv("SWARM_ENGINE_RETRY_BASE_DELAY_SECONDS", "5.0"),
                ),
                retry_max_delay_seconds=float(
                    os.getenv("SWARM_ENGINE_RETRY_MAX_DELAY_SECONDS", "300.0"),
                ),
            ),
            defaults=OrchestrationDefaults(
                pool_max_sandboxes=int(os.getenv("SWARM_ENGINE_POOL_MAX_SANDBOXES", "5")),
                pool_idle_timeout_seconds=int(
                    os.getenv("SWARM_ENGINE_POOL_IDLE_TIMEOUT_SECONDS", "600"),
                ),
                default_snapshot=os.getenv("SWARM_ENGINE_DEFAULT_SNAPSHOT", "swarm-lite-v1"),
                trigger_enabled=_env_bool("SWARM_ENGINE_TRIGGER_ENABLED", default=True),
                trigger_poll_interval_seconds=int(
                    os.getenv("SWARM_ENGINE_TRIGGER_POLL_INTERVAL_SECONDS", "5"),
                ),
                execution_timeout_seconds=int(
                    os.getenv("SWARM_ENGINE_EXECUTION_TIMEOUT_SECONDS", "600"),
                ),
                max_retries=int(os.getenv("SWARM_ENGINE_MAX_RETRIES", "3")),
            ),
        )

    def validate_for_engine(self) -> None:
        """Raise ConfigError if the engine could never dispatch a task."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ConfigError("SWARM_ENGINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.provider.kind not in SUPPORTED_PROVIDERS:
            raise ConfigError(
                f"Unsupported sandbox provider: {self.provider.kind!r}. "
                f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}.",
            )
        if self.provider.kind == "daytona":
            if not self.provider.api_key.strip():
                raise ConfigError(
                    "Daytona API key is missing. Set SWARM_ENGINE_DAYTONA_API_KEY "
                    "(or DAYTONA_API_KEY).",
                )
            parsed = urlparse(self.provider.api_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ConfigError(
                    f"Invalid Daytona API URL: {self.provider.api_url!r}. "
                    "Expected an absolute http:// or https:// URL.",
                )
        if "{prompt}" not in self.agent.command_template:
            raise ConfigError(
                "SWARM_ENGINE_AGENT_COMMAND_TEMPLATE must contain the {prompt} placeholder.",
            )
        if self.engine.cancel_check_interval_seconds <= 0:
            raise ConfigError("SWARM_ENGINE_CANCEL_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.engine.log_flush_max_lines <= 0:
            raise ConfigError("SWARM_ENGINE_LOG_FLUSH_MAX_LINES must be > 0.")
        if self.engine.retry_base_delay_seconds < 0:
            raise ConfigError("SWARM_ENGINE_RETRY_BASE_DELAY_SECONDS must be >= 0.")
        if self.engine.retry_max_delay_seconds < self.engine.retry_base_delay_seconds:
            raise ConfigError(
                "SWARM_ENGINE_RETRY_MAX_DELAY_SECONDS must be >= the base retry delay.",
            )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
