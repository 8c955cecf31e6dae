"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (PAGEFEED__CACHE__BACKEND=memory)
  2. pagefeed.yaml          (searched in cwd, then ~/.config/pagefeed/)
  3. Hardcoded defaults

The config file is optional. Only the completion-service API key has no
usable default.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("pagefeed")
_DEFAULT_DB_PATH = str(Path(_DEFAULT_DATA_DIR) / "cache.db")

DEFAULT_REMOVE_SELECTORS = [
    "header",
    "footer",
    "nav",
    "aside",
    ".sidebar",
    ".ads",
    ".advertisement",
    ".share",
    ".social-share",
    ".comments",
    "#comments",
    ".related-posts",
]


def _find_config_file() -> str | None:
    """Return the path of the first pagefeed.yaml found, or None."""
    candidates = [
        Path("pagefeed.yaml"),
        Path.home() / ".config" / "pagefeed" / "pagefeed.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class _Section(BaseModel):
    model_config = ConfigDict(extra="forbid")


class ServerSettings(_Section):
    host: str = "0.0.0.0"
    port: int = 8080


class ExtractorSettings(_Section):
    reader_url: str = "https://r.jina.ai"
    api_key: SecretStr | None = None
    timeout_seconds: float = 30.0
    remove_selectors: list[str] = DEFAULT_REMOVE_SELECTORS
    source_tag: str = "jina-reader"

    @field_validator("reader_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class LLMSettings(_Section):
    api_key: SecretStr | None = None
    base_url: str | None = "https://generativelanguage.googleapis.com/v1beta/openai/"
    # Cheapest quota first, most capable last.
    models: list[str] = ["gemini-2.5-flash", "gemini-3-flash-preview"]
    temperature: float = 0.0
    seed: int | None = 42
    max_tokens: int = 8192
    timeout_seconds: float = 120.0
    max_content_chars: int = 60_000

    @field_validator("models")
    @classmethod
    def validate_models(cls, v: list[str]) -> list[str]:
        models = [m.strip() for m in v if m.strip()]
        if not models:
            raise ValueError("at least one model candidate is required")
        return models


class CacheSettings(_Section):
    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: str = _DEFAULT_DB_PATH
    content_ttl_seconds: int = 3600
    generation_ttl_seconds: int = 7 * 24 * 3600
    cleanup_interval_seconds: float = Field(default=3600, gt=0)


class HttpSettings(_Section):
    cdn_max_age_seconds: int = 86400
    stale_while_revalidate_seconds: int = 86400


class LoggingSettings(_Section):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: PAGEFEED__SERVER__PORT=9090
        env_prefix="PAGEFEED__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    server: ServerSettings = ServerSettings()
    extractor: ExtractorSettings = ExtractorSettings()
    llm: LLMSettings = LLMSettings()
    cache: CacheSettings = CacheSettings()
    http: HttpSettings = HttpSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
