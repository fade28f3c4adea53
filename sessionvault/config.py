"""Configuration system for sessionvault using pydantic-settings.

Supports layered configuration:
1. Built-in defaults (lowest priority)
2. pyproject.toml [tool.sessionvault] section (project-level)
3. ./sessionvault.toml (project-level, explicit)
4. ~/.config/sessionvault/config.toml (user-level, overrides project)
5. Environment variables (highest priority)

Environment variables use SESSIONVAULT_ prefix with nested delimiter __.
Example: SESSIONVAULT_API__MODE=production, SESSIONVAULT_SESSION__STORE_BACKEND=keyring
"""

from __future__ import annotations

import logging
import os
import sys

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib


logger = logging.getLogger("sessionvault.config")


def _find_config_files() -> list[Path]:
    """Find all configuration files in order of precedence (lowest first)."""
    files = []

    pyproject = Path("pyproject.toml")
    if pyproject.exists():
        files.append(pyproject)

    explicit = Path("sessionvault.toml")
    if explicit.exists():
        files.append(explicit)

    if sys.platform == "win32":
        user_config = Path(os.environ.get("APPDATA", "~")) / "sessionvault" / "config.toml"
    else:
        user_config = Path("~/.config/sessionvault/config.toml")
    user_config = user_config.expanduser()
    if user_config.exists():
        files.append(user_config)

    env_config = os.environ.get("SESSIONVAULT_CONFIG_FILE")
    if env_config:
        env_path = Path(env_config)
        if env_path.exists():
            files.append(env_path)

    return files


def _load_toml_config() -> dict[str, Any]:
    """Load and merge all TOML configuration files."""
    merged: dict[str, Any] = {}

    for config_file in _find_config_files():
        try:
            data = tomllib.loads(config_file.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            logger.warning("Ignoring unreadable config file %s: %s", config_file, exc)
            continue

        if config_file.name == "pyproject.toml":
            data = data.get("tool", {}).get("sessionvault", {})

        merged = _deep_merge(merged, data)

    return merged


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


# Field names that contain sensitive data and must be redacted in output.
_SENSITIVE_FIELDS: set[str] = {
    "encryption_secret",
}

_REDACTED = "********"


class ApiSettings(BaseSettings):
    """Backend API settings.

    Environment prefix: SESSIONVAULT_API__
    Example: SESSIONVAULT_API__MODE=production
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONVAULT_API__",
        extra="ignore",
    )

    mode: Literal["development", "production"] = Field(
        default="development",
        description="Build mode selecting the backend URL",
    )
    development_url: str = Field(
        default="http://localhost:8001",
        description="Backend URL used in development mode",
    )
    production_url: str = Field(
        default="https://api.loveboost.app",
        description="Backend URL used in production mode",
    )
    version: str = Field(default="v1", description="API version path segment")
    timeout: float = Field(default=10.0, gt=0, description="Default request timeout in seconds")

    @field_validator("development_url", "production_url")
    @classmethod
    def _strip_trailing_slash(cls, v: str) -> str:
        """Normalize URLs so path joining never doubles slashes."""
        return v.rstrip("/")

    @property
    def base_url(self) -> str:
        """Backend URL for the configured mode."""
        if self.mode == "production":
            return self.production_url
        return self.development_url


class SessionSettings(BaseSettings):
    """Session lifecycle and credential storage settings.

    Environment prefix: SESSIONVAULT_SESSION__
    Example: SESSIONVAULT_SESSION__STORE_BACKEND=keyring
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONVAULT_SESSION__",
        extra="ignore",
    )

    refresh_buffer_seconds: float = Field(
        default=300.0,
        ge=0,
        description="Seconds before expiry at which a token stops being considered valid",
    )
    store_backend: Literal["memory", "keyring", "file"] = Field(
        default="keyring",
        description="Credential storage backend: memory, keyring, or file",
    )
    service_name: str = Field(
        default="sessionvault",
        description="Keyring service name the credential keys are stored under",
    )
    file_path: str = Field(
        default="~/.config/sessionvault/credentials.json",
        description="Location of the encrypted credential file (file backend)",
    )
    encryption_secret: str = Field(
        default="",
        description="Secret used to derive the file backend encryption key",
    )


class LogSettings(BaseSettings):
    """Logging settings.

    Environment prefix: SESSIONVAULT_LOG__
    Example: SESSIONVAULT_LOG__LEVEL=DEBUG
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONVAULT_LOG__",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "WARNING"
    format: str = "%(name)s - %(levelname)s - %(message)s"


class SessionVaultSettings(BaseSettings):
    """Main settings aggregating all configuration sections.

    Environment prefix: SESSIONVAULT__

    Configuration sources (in order of precedence):
    1. Built-in defaults
    2. pyproject.toml [tool.sessionvault] section
    3. ./sessionvault.toml (project-level)
    4. ~/.config/sessionvault/config.toml (user-level, overrides project)
    5. Environment variables (highest priority)
    """

    model_config = SettingsConfigDict(
        env_prefix="SESSIONVAULT__",
        env_nested_delimiter="__",
        extra="ignore",
    )

    api: ApiSettings = Field(default_factory=ApiSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    def __init__(self, **data: Any) -> None:
        toml_config = _load_toml_config()
        merged = _deep_merge(toml_config, data)
        super().__init__(**merged)

    def show(self) -> str:
        """Format settings as a readable table."""
        lines = ["sessionvault Configuration", "=" * 60, ""]

        show_sections = [
            ("Backend API", "api"),
            ("Session", "session"),
            ("Logging", "log"),
        ]

        all_data = self.model_dump(
            exclude={attr: _SENSITIVE_FIELDS for _, attr in show_sections},
        )

        for display_name, attr_name in show_sections:
            section_data = all_data.get(attr_name, {})
            lines.append(f"\n{display_name}")
            lines.append("-" * 40)
            for field_name, field_value in section_data.items():
                value_str = str(field_value)
                if len(value_str) > 50:
                    value_str = value_str[:47] + "..."
                lines.append(f"  {field_name:24} = {value_str}")
            section_cls = type(getattr(self, attr_name))
            lines.extend(
                f"  {rn:24} = {_REDACTED}"
                for rn in sorted(_SENSITIVE_FIELDS & section_cls.model_fields.keys())
            )

        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_settings() -> SessionVaultSettings:
    """Get the settings instance (cached).

    Call clear_settings() to reload configuration.
    """
    return SessionVaultSettings()


def clear_settings() -> None:
    """Clear the cached settings to force reload."""
    get_settings.cache_clear()


def reload_settings() -> SessionVaultSettings:
    """Reload settings from all sources."""
    clear_settings()
    return get_settings()
