from __future__ import annotations

import os
from pathlib import Path
from typing import Annotated, Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
)
from pydantic.types import StrictInt
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import HOME_CONFIG_PATH, ConfigError, read_config

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]


class RouteLimit(BaseModel):
    """Bucket size for one route; unset fields use the global defaults."""

    model_config = ConfigDict(extra="forbid")

    max_tokens: StrictInt | None = Field(default=None, ge=1)
    interval: float | None = Field(default=None, gt=0)


def _default_routes() -> dict[str, RouteLimit]:
    presets = {
        "vote": 10,
        "has-voted": 30,
        "api-v1-polls": 30,
        "api-v1-polls-create": 10,
        "api-v1-poll-detail": 30,
        "api-v1-events": 30,
        "api-v1-webhooks": 30,
        "ai-generate": 20,
        "domain-verify": 5,
        "stripe-checkout": 10,
        "stripe-portal": 10,
    }
    return {
        name: RouteLimit(max_tokens=tokens, interval=60)
        for name, tokens in presets.items()
    }


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_tokens: StrictInt = Field(default=10, ge=1)
    interval: float = Field(default=60.0, gt=0)
    cleanup_interval_s: float = Field(default=300.0, gt=0)
    max_age_s: float = Field(default=600.0, gt=0)
    routes: dict[str, RouteLimit] = Field(default_factory=_default_routes)

    @field_validator("routes", mode="after")
    @classmethod
    def _merge_builtin_routes(cls, value: dict[str, RouteLimit]) -> dict[str, RouteLimit]:
        merged = _default_routes()
        merged.update(value)
        return merged

    def route(self, name: str) -> RouteLimit:
        return self.routes.get(name, RouteLimit())


class ServerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    host: str = "127.0.0.1"
    port: StrictInt = Field(default=8787, ge=1, le=65535)
    trust_forwarded: bool = True
    max_body_bytes: StrictInt = Field(default=1_048_576, ge=1024, le=10_485_760)


class WebhookSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    timeout_s: float = Field(default=10.0, gt=0, le=60)
    store_path: NonEmptyStr | None = None


class ApiKeySettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    store_path: NonEmptyStr | None = None


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    level: NonEmptyStr = "info"
    json_output: bool = False


class JurySettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="THEJURY__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    server: ServerSettings = Field(default_factory=ServerSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    webhooks: WebhookSettings = Field(default_factory=WebhookSettings)
    api_keys: ApiKeySettings = Field(default_factory=ApiKeySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls),
            file_secret_settings,
        )


def load_settings(path: str | Path | None = None) -> tuple[JurySettings, Path]:
    cfg_path = _resolve_config_path(path)
    if cfg_path.exists() and not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.") from None
    if not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.") from None
    # Surface TOML syntax errors as ConfigError before pydantic-settings parses.
    read_config(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def load_settings_if_exists(
    path: str | Path | None = None,
) -> tuple[JurySettings, Path] | None:
    cfg_path = _resolve_config_path(path)
    if not cfg_path.exists():
        return None
    return load_settings(cfg_path)


def validate_settings_data(
    data: dict[str, Any], *, config_path: Path
) -> JurySettings:
    try:
        return JurySettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {config_path}: {exc}") from exc


def _resolve_config_path(path: str | Path | None) -> Path:
    if path:
        return Path(path).expanduser()
    env_path = os.environ.get("THEJURY_CONFIG_PATH")
    if env_path:
        return Path(env_path).expanduser()
    return HOME_CONFIG_PATH


def _load_settings_from_path(cfg_path: Path) -> JurySettings:
    cfg = dict(JurySettings.model_config)
    cfg["toml_file"] = cfg_path
    Bound = type(
        "JurySettingsBound",
        (JurySettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return Bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
