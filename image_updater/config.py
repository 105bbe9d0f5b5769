"""Configuration management for the image updater."""

import tempfile
from pathlib import Path

from pydantic import Field, SecretStr, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from image_updater.errors import ConfigError


def _default_repo_dir() -> Path:
    return Path(tempfile.mkdtemp(prefix="image-updater"))


class Settings(BaseSettings):
    """Process settings loaded from environment variables (and ``.env``)."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Manifest repository
    repository_url: str = Field(description="SSH URL of the manifest repository")
    ssh_key_path: Path = Field(description="Private key used for git fetch and push")
    repo_dir: Path = Field(
        default_factory=_default_repo_dir,
        description="Local working copy of the manifest repository",
    )

    # Registry
    github_username: str = Field(description="Registry username")
    github_key: SecretStr = Field(description="Registry access token")
    registry_concurrency: int = Field(
        default=5, ge=1, description="Concurrent registry tag queries per run"
    )
    registry_timeout: float = Field(
        default=30.0, gt=0, description="Total timeout in seconds for one registry request"
    )

    # Webhook
    secret: SecretStr = Field(description="Shared secret expected in the X-Secret header")
    prefix: str = Field(default="/", description="Path prefix the webhook is mounted on")
    host: str = Field(default="0.0.0.0", description="Listen address")
    port: int = Field(default=8000, description="Listen port")

    # Application
    environment: str = Field(default="production", description="Environment name")
    log_level: str = Field(default="INFO", description="Logging level")
    dry_run: bool = Field(
        default=False, description="Resolve tags and report changes without writing or pushing"
    )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.environment.lower() == "development"

    @property
    def route_prefix(self) -> str:
        """Prefix normalized to start and end with a slash."""
        return "/" + self.prefix.strip("/") + "/" if self.prefix.strip("/") else "/"


def load_settings(**overrides) -> Settings:
    """Build the settings once at startup, raising ConfigError on missing values."""
    try:
        return Settings(**overrides)
    except ValidationError as err:
        missing = [
            ".".join(str(part) for part in error["loc"]).upper()
            for error in err.errors()
            if error["type"] == "missing"
        ]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}") from err
        raise ConfigError(f"Invalid configuration: {err}") from err
