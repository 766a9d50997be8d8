from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic_settings.sources import TomlConfigSettingsSource

from .config import ConfigError, resolve_config_path
from .constants import STREAM_FLUSH_INTERVAL_S, TELEGRAM_HARD_LIMIT
from .policy import PolicyEvaluator

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

TOKEN_ENV = "TELEGRAM_BOT_TOKEN"


class TelegramSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    bot_token: str | None = None
    dm_policy: Literal["allowlist", "pairing", "open", "disabled"] = "pairing"
    allow_from: list[NonEmptyStr] = Field(default_factory=list)
    group_policy: Literal["allowlist", "open", "disabled"] = "allowlist"
    group_allow_from: list[NonEmptyStr] = Field(default_factory=list)
    media_max_mb: float = Field(default=5, gt=0)
    timeout_seconds: float = Field(default=30, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_max_delay_s: float = Field(default=30, ge=0)
    ack_reaction: str = ""
    message_limit: int = Field(default=TELEGRAM_HARD_LIMIT, ge=16, le=TELEGRAM_HARD_LIMIT)
    stream_flush_interval_s: float = Field(default=STREAM_FLUSH_INTERVAL_S, gt=0)
    attachments_dir: NonEmptyStr = "attachments"
    private_chat_rps: float = 1.0
    group_chat_rps: float = 20.0 / 60.0

    @field_validator("allow_from", "group_allow_from", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        if isinstance(value, list):
            return [str(item) for item in value]
        return value

    @property
    def media_max_bytes(self) -> int:
        return int(self.media_max_mb * 1024 * 1024)

    def policy(self) -> PolicyEvaluator:
        return PolicyEvaluator(
            dm_policy=self.dm_policy,
            allow_from=tuple(self.allow_from),
            group_policy=self.group_policy,
            group_allow_from=tuple(self.group_allow_from),
        )

    def resolve_token(self) -> str:
        if self.bot_token:
            return self.bot_token
        env_token = os.environ.get(TOKEN_ENV, "").strip()
        if env_token:
            return env_token
        raise ConfigError(
            "Telegram bot token required. Set telegram.bot_token "
            f"or the {TOKEN_ENV} environment variable."
        )


class AgentSettings(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    url: NonEmptyStr = "http://127.0.0.1:7437"
    timeout_seconds: float = Field(default=300, gt=0)
    name: NonEmptyStr = "parley"
    emoji: str | None = None


class ParleySettings(BaseSettings):
    model_config = SettingsConfigDict(
        extra="forbid",
        env_prefix="PARLEY__",
        env_nested_delimiter="__",
        str_strip_whitespace=True,
    )

    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    agent: AgentSettings = Field(default_factory=AgentSettings)

    @model_validator(mode="before")
    @classmethod
    def _reject_flat_telegram_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and ("bot_token" in data or "dm_policy" in data):
            raise ValueError("Move bot_token/dm_policy under [telegram].")
        return data

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


def load_settings(path: str | Path | None = None) -> tuple[ParleySettings, Path]:
    cfg_path = resolve_config_path(path)
    _ensure_config_file(cfg_path)
    return _load_settings_from_path(cfg_path), cfg_path


def _ensure_config_file(cfg_path: Path) -> None:
    if not cfg_path.exists():
        raise ConfigError(f"Missing config file {cfg_path}.")
    if not cfg_path.is_file():
        raise ConfigError(f"Config path {cfg_path} exists but is not a file.")


def _load_settings_from_path(cfg_path: Path) -> ParleySettings:
    cfg = dict(ParleySettings.model_config)
    cfg["toml_file"] = cfg_path
    bound = type(
        "ParleySettingsBound",
        (ParleySettings,),
        {"model_config": SettingsConfigDict(**cfg)},
    )
    try:
        return bound()
    except ValidationError as exc:
        raise ConfigError(f"Invalid config in {cfg_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Malformed TOML in {cfg_path}: {exc}") from None
    except OSError as exc:
        raise ConfigError(f"Failed to read config file {cfg_path}: {exc}") from exc
