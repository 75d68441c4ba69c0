from __future__ import annotations

from pathlib import Path
from typing import Self

from dotenv import load_dotenv
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from stackctl.constants import CONFIG_NAME

# Load .env once at module import; all BaseSettings subclasses will see the env vars
load_dotenv()


class BackendSettings(BaseSettings):
    """Home provider settings. Env vars prefixed with STACKCTL_BACKEND_."""

    model_config = SettingsConfigDict(env_prefix="STACKCTL_BACKEND_")

    kind: str = "local"
    home_dir: Path = Field(default_factory=lambda: Path.home() / ".stackctl" / "home")
    url: str = ""  # SQLAlchemy async URL, required when kind == "sql"
    lock_stale_after_seconds: int | None = Field(None, gt=0)

    @field_validator("kind")
    @classmethod
    def _validate_kind(cls, v: str) -> str:
        allowed = {"local", "sql"}
        v = v.strip().lower()
        if v not in allowed:
            msg = f"STACKCTL_BACKEND_KIND must be one of {allowed} (got '{v}')"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def _validate_url(self) -> Self:
        if self.kind == "sql" and not self.url:
            raise ValueError("STACKCTL_BACKEND_URL is required when STACKCTL_BACKEND_KIND=sql")
        return self


class EngineSettings(BaseSettings):
    """Provisioning engine adapter. Env vars prefixed with STACKCTL_ENGINE_."""

    model_config = SettingsConfigDict(env_prefix="STACKCTL_ENGINE_")

    # argv prefix; only the stack command is appended (app/stage go in the env)
    command: list[str] = Field(default_factory=lambda: ["stackctl-engine"])
    stop_timeout_s: float = Field(10.0, gt=0)


class ServerSettings(BaseSettings):
    """Local coordination server. Env vars prefixed with STACKCTL_SERVER_."""

    model_config = SettingsConfigDict(env_prefix="STACKCTL_SERVER_")

    host: str = "127.0.0.1"
    port_base: int = Field(13557, gt=1024, lt=65535)
    port_span: int = Field(20000, gt=0)
    watch_interval_s: float = Field(0.5, gt=0)
    event_buffer: int = Field(256, gt=0)
    connect_timeout_s: float = Field(2.0, gt=0)

    @model_validator(mode="after")
    def _validate_range(self) -> Self:
        if self.port_base + self.port_span > 65535:
            raise ValueError(
                f"port range exceeds 65535 (port_base={self.port_base}, "
                f"port_span={self.port_span})"
            )
        return self


class Settings(BaseSettings):
    """Root settings composing all sub-configurations."""

    model_config = SettingsConfigDict(extra="ignore")

    backend: BackendSettings = Field(default_factory=BackendSettings)
    engine: EngineSettings = Field(default_factory=EngineSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    config_name: str = CONFIG_NAME
    editor: str = "vim"  # read from EDITOR

    @field_validator("editor")
    @classmethod
    def _default_editor(cls, v: str) -> str:
        return v.strip() or "vim"


def get_settings() -> Settings:
    """Load and validate settings. Raises ValidationError on invalid values."""
    return Settings()
