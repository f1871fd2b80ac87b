"""Build the configured sandbox provider."""

from __future__ import annotations

from swarm_engine.config import SUPPORTED_PROVIDERS, Settings
from swarm_engine.errors import ConfigError
from swarm_engine.orchestrator.provider.base import SandboxProvider
from swarm_engine.orchestrator.provider.daytona import DaytonaProvider
from swarm_engine.orchestrator.provider.local import LocalSandboxProvider


def build_provider(settings: Settings) -> SandboxProvider:
    provider = settings.provider
    if provider.kind == "daytona":
        if not provider.api_key.strip():
            raise ConfigError(
                "Daytona API key is missing. Set SWARM_ENGINE_DAYTONA_API_KEY (or DAYTONA_API_KEY).",
            )
        return DaytonaProvider(
            api_url=provider.api_url,
            api_key=provider.api_key,
            target=provider.target,
            auto_stop_interval_minutes=provider.auto_stop_interval_minutes,
            timeout_seconds=provider.request_timeout_seconds,
        )
    if provider.kind == "local":
        return LocalSandboxProvider(root=provider.local_root)
    raise ConfigError(
        f"Unsupported sandbox provider: {provider.kind!r}. "
        f"Expected one of: {', '.join(SUPPORTED_PROVIDERS)}.",
    )
