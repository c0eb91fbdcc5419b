"""Grove configuration management using pydantic-settings."""

from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load .env from project root so GROVE_* overrides are available
load_dotenv(Path(__file__).resolve().parent.parent / ".env")

DEFAULT_DATA_DIR = Path.home() / ".grove"


class GeneralSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GROVE_")

    data_dir: Path = Field(default=DEFAULT_DATA_DIR)
    db_url: str = Field(default=f"sqlite+aiosqlite:///{DEFAULT_DATA_DIR / 'grove.db'}")
    db_echo: bool = False
    log_level: str = "INFO"


class GitSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GROVE_GIT_")

    git_binary: str = "git"
    repos_dir: Path = Field(default=DEFAULT_DATA_DIR / "repos")
    worktrees_dir: Path = Field(default=DEFAULT_DATA_DIR / "worktrees")
    default_remote: str = "origin"
    command_timeout: float = 600.0


class ImporterSettings(BaseSettings):
    """Settings for transcript import."""

    batch_size: int = 100
    preview_chars: int = 200
    max_concurrency: int = 4
    claude_projects_dir: Path = Field(default=Path.home() / ".claude" / "projects")


class SessionSettings(BaseSettings):
    default_agent: str = "claude-code"
    default_ref: str = "main"


class Settings(BaseSettings):
    """Top-level settings assembled from subsections."""

    general: GeneralSettings = Field(default_factory=GeneralSettings)
    git: GitSettings = Field(default_factory=GitSettings)
    importer: ImporterSettings = Field(default_factory=ImporterSettings)
    sessions: SessionSettings = Field(default_factory=SessionSettings)

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Settings":
        """Load settings from TOML config file, falling back to defaults."""
        if config_path is None:
            config_path = Path.home() / ".config/grove/config.toml"

        if config_path.exists():
            import toml

            data = toml.load(config_path)
            return cls(
                general=GeneralSettings(**data.get("general", {})),
                git=GitSettings(**data.get("git", {})),
                importer=ImporterSettings(**data.get("importer", {})),
                sessions=SessionSettings(**data.get("sessions", {})),
            )

        return cls()


# Module-level singleton
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get or create the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() reloads them."""
    global _settings
    _settings = None
