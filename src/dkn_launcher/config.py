"""Configuration management for the launcher.

Only the launcher's own knobs live here (prefixed ``DKN_LAUNCHER_``).  The
compute node's configuration is handled by :mod:`dkn_launcher.env`.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from dkn_launcher import constants


def _default_home_dir() -> Path:
    return Path.home() / ".dria" / "dkn-compute-launcher"


class Settings(BaseSettings):
    """Launcher settings loaded from ``DKN_LAUNCHER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="DKN_LAUNCHER_",
        env_file=".launcher.env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    home_dir: Path = Field(
        default_factory=_default_home_dir,
        description="Install directory for binaries, version tracker and .env",
    )

    # Release source
    github_api_url: str = Field(default="https://api.github.com")
    release_owner: str = Field(default=constants.RELEASE_OWNER)
    compute_repo: str = Field(default=constants.COMPUTE_REPO)
    launcher_repo: str = Field(default=constants.LAUNCHER_REPO)
    github_token: SecretStr | None = Field(
        default=None, description="Optional token to lift GitHub API rate limits"
    )
    http_timeout_seconds: float = Field(default=constants.HTTP_TIMEOUT_SECONDS, gt=0)
    download_timeout_seconds: float = Field(default=constants.DOWNLOAD_TIMEOUT_SECONDS, gt=0)

    # Supervision
    check_updates: bool = Field(default=True)
    compute_update_interval_seconds: float = Field(
        default=constants.COMPUTE_UPDATE_INTERVAL_SECONDS, gt=0
    )
    launcher_update_interval_seconds: float = Field(
        default=constants.LAUNCHER_UPDATE_INTERVAL_SECONDS, gt=0
    )
    kill_timeout_seconds: float = Field(default=constants.KILL_TIMEOUT_SECONDS, gt=0)

    # Ollama companion
    companion_executable: str = Field(default="ollama")
    companion_retry_count: int = Field(default=constants.OLLAMA_RETRY_COUNT, ge=1)
    companion_retry_interval_seconds: float = Field(
        default=constants.OLLAMA_RETRY_INTERVAL_SECONDS, ge=0
    )
    companion_probe_timeout_seconds: float = Field(
        default=constants.OLLAMA_PROBE_TIMEOUT_SECONDS, gt=0
    )

    @field_validator("environment")
    @classmethod
    def _normalise_environment(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment == "development"

    @property
    def default_env_path(self) -> Path:
        """The compute node's ``.env`` inside the home directory."""
        return self.home_dir / ".env"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
