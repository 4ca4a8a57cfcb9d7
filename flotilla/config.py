"""Environment-driven settings for the Flotilla CLI.

Reads from a .env file and FLOTILLA_* environment variables.  Only the CLI
reads settings; library classes take explicit constructor parameters.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict
from rich.logging import RichHandler


class FlotillaSettings(BaseSettings):
    """Settings with environment variable overrides.

    Examples
    --------
    Override via environment::

        export FLOTILLA_PRIMARY_BRANCH=trunk
        export FLOTILLA_LOG_LEVEL=DEBUG
        export FLOTILLA_CACHE_PATH=/var/cache/flotilla

    Or via .env file::

        FLOTILLA_REGISTRY=registry.example.com/team
        FLOTILLA_REGISTRY_USERNAME=ci-bot
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="FLOTILLA_",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Runtime environment
    environment: str = "development"
    log_level: str = "INFO"
    debug: bool = False

    # Tag resolution
    primary_branch: str = "main"
    feature_prefix: str = "feature/"

    # Builds
    cache_path: Path = Path(".flotilla/cache")
    max_parallel_builds: int = 4
    build_timeout_seconds: float | None = None

    # Registry (the password is looked up by name)
    registry: str = ""
    registry_username: str = ""
    registry_password_env: str = "REGISTRY_PASSWORD"

    # Runtime
    project_name: str = "flotilla"
    network: str | None = None
    start_timeout_seconds: float | None = 120.0
    stop_timeout_seconds: float | None = 30.0

    @property
    def is_production(self) -> bool:
        """Whether running in production mode."""
        return self.environment == "production"


def configure_logging(level: str = "INFO") -> None:
    """Install a Rich log handler on the root logger."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
