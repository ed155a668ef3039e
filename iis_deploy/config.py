"""Application configuration using pydantic-settings."""

from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env file and override existing env vars
load_dotenv(override=True)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True

    # API Server
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Persistence
    database_path: str = "data/deploys.db"

    # Source acquisition
    working_directory: str = "work"
    git_username: str = Field(default="")
    git_token: str = Field(default="")
    use_system_credentials: bool = True
    git_timeout_seconds: float = 300

    # Command execution
    command_timeout_seconds: float = 600
    sentinel_poll_interval: float = 0.1
    shell_exit_grace_seconds: float = 5
    shell_executable: str | None = None  # Defaults to cmd.exe on Windows, /bin/sh elsewhere
    extra_path_entries: list[str] = Field(
        default_factory=lambda: [
            r"C:\Program Files\nodejs",
            r"C:\Program Files (x86)\nodejs",
            "/usr/local/bin",
        ]
    )

    # Artifact deployment
    copy_settle_delay_seconds: float = 0.1

    # IIS site resolution
    iis_resolver: Literal["powershell", "static"] = "powershell"
    iis_sites: dict[str, str] = Field(default_factory=dict)  # site name -> physical path
    powershell_executable: str = "powershell"

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["console", "json"] = "console"
    log_directory: str = "logs"
    log_file_name: str = "iis_deploy.log"

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"

    @property
    def has_git_credentials(self) -> bool:
        """Check if explicit git credentials are configured."""
        return bool(self.git_username.strip() and self.git_token.strip())


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Global settings instance
settings = get_settings()
