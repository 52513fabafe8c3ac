"""Layered configuration loader for Quire.

Layers, lowest first: discovered YAML files, ``<app_dir>/.env``, then the
process environment.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, Field, ValidationError, model_validator

from .errors import ConfigurationError

APP_NAME = "quire"

_PROVIDER_SYNONYMS = {
    "lm studio": "lm_studio",
    "lm-studio": "lm_studio",
    "lmstudio": "lm_studio",
    "google gemini": "gemini",
    "google": "gemini",
    "anthropic": "claude",
    "anthropic claude": "claude",
    "gpt": "openai",
}

_TRUTHY = {"1", "true", "yes", "on"}


class QuireConfig(BaseModel):
    """Schema describing all supported configuration options."""

    TRANSLATOR: Literal["echo", "command", "openai"] = Field(
        default="echo",
        description="Machine translation engine.",
    )
    TRANSLATOR_COMMAND: Optional[str] = Field(default=None)
    TRANSLATOR_MODEL: Optional[str] = Field(default=None)
    SOURCE_LANGUAGE: str = Field(default="English")
    TARGET_LANGUAGE: str = Field(default="French")

    REFINEMENT_ENABLED: bool = Field(default=False)
    REFINEMENT_PROVIDER: Literal["ollama", "lm_studio", "openai", "claude", "gemini"] = Field(
        default="ollama",
    )
    REFINEMENT_URL: Optional[str] = Field(default=None)
    REFINEMENT_MODEL: Optional[str] = Field(default=None)

    OPENAI_API_KEY: Optional[str] = Field(default=None, repr=False)
    ANTHROPIC_API_KEY: Optional[str] = Field(default=None, repr=False)
    GEMINI_API_KEY: Optional[str] = Field(default=None, repr=False)

    CONVERTER_PATH: Optional[str] = Field(default=None)
    TRANSLATION_FAILURE_POLICY: Literal["abort", "skip"] = Field(default="abort")
    QUIRE_PROVIDER_DEBUG: bool = Field(default=False)

    @model_validator(mode="before")
    @classmethod
    def _normalise_choices(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        provider = data.get("REFINEMENT_PROVIDER")
        if isinstance(provider, str):
            normalized = provider.strip().lower()
            normalized = _PROVIDER_SYNONYMS.get(normalized, normalized).replace("-", "_")
            data["REFINEMENT_PROVIDER"] = normalized
        for key in ("TRANSLATOR", "TRANSLATION_FAILURE_POLICY"):
            value = data.get(key)
            if isinstance(value, str):
                data[key] = value.strip().lower()
        for key in ("TRANSLATOR_COMMAND", "TRANSLATOR_MODEL", "REFINEMENT_URL", "REFINEMENT_MODEL"):
            if data.get(key) == "":
                data[key] = None
        return data

    def api_key_for(self, provider: str) -> Optional[str]:
        """Return the credential a refinement provider needs, if any."""

        return {
            "openai": self.OPENAI_API_KEY,
            "claude": self.ANTHROPIC_API_KEY,
            "gemini": self.GEMINI_API_KEY,
        }.get(provider)


def discover_yaml_paths(app_dir: Path) -> List[Path]:
    """Return existing YAML configuration files, lowest precedence first."""

    home = Path.home()
    candidates = [
        home / ".config" / APP_NAME / "config.yaml",
        home / f".{APP_NAME}.yaml",
        app_dir / "config.yaml",
    ]
    return [path for path in candidates if path.is_file()]


def _load_discovered_yaml(app_dir: Path) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for path in discover_yaml_paths(app_dir):
        try:
            with path.open("r", encoding="utf-8") as handle:
                parsed = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Configuration file {path} could not be read: {exc}"
            ) from exc
        if parsed is None:
            continue
        if not isinstance(parsed, Mapping):
            raise ConfigurationError(
                f"Invalid configuration file {path}: expected a mapping at the root."
            )
        result.update(parsed)
    return result


def _merge_env_sources(target: Dict[str, Any], *, app_dir: Path) -> None:
    """Merge .env and process environment variables into the target mapping."""

    allowed = set(QuireConfig.model_fields)

    def merge_values(values: Mapping[str, Optional[str]]) -> None:
        for key, value in sorted(values.items()):
            if value is None or key not in allowed:
                continue
            target[key] = value

    dotenv_path = app_dir / ".env"
    if dotenv_path.exists():
        merge_values(dotenv_values(dotenv_path))

    merge_values(dict(os.environ))


def _validate_cross_fields(settings: QuireConfig) -> None:
    errors: List[str] = []
    if settings.TRANSLATOR == "command" and not settings.TRANSLATOR_COMMAND:
        errors.append("TRANSLATOR_COMMAND is required when TRANSLATOR is 'command'.")
    if settings.TRANSLATOR == "openai" and not settings.OPENAI_API_KEY:
        errors.append("OPENAI_API_KEY is required when TRANSLATOR is 'openai'.")
    if not settings.TARGET_LANGUAGE.strip():
        errors.append("TARGET_LANGUAGE must not be empty.")

    if errors:
        bullet_list = "\n".join(f"- {message}" for message in errors)
        raise ConfigurationError("Configuration validation errors detected:\n" + bullet_list)


def _format_validation_errors(entries: Sequence[Mapping[str, Any]]) -> str:
    details: List[str] = []
    for entry in entries:
        path = entry.get("loc") or []
        location = ".".join(str(part) for part in path if part not in {None, ""})
        message = str(entry.get("msg") or "Invalid value")
        prefix = f"{location}: " if location else ""
        details.append(f"- {prefix}{message}")
    return "Configuration validation errors detected:\n" + "\n".join(details)


def load_settings(
    app_dir: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> QuireConfig:
    """Build a validated configuration without caching it."""

    base_dir = app_dir or Path.cwd()
    combined = _load_discovered_yaml(base_dir)
    _merge_env_sources(combined, app_dir=base_dir)
    if overrides:
        combined.update({key: value for key, value in overrides.items() if value is not None})

    try:
        settings = QuireConfig.model_validate(combined)
    except ValidationError as exc:
        raise ConfigurationError(_format_validation_errors(exc.errors())) from exc
    _validate_cross_fields(settings)
    return settings


@lru_cache(maxsize=1)
def _cached_settings(app_dir: Optional[Path]) -> QuireConfig:
    return load_settings(app_dir)


def get_settings(app_dir: Optional[Path] = None) -> QuireConfig:
    """Return the validated configuration, loading it once per process."""

    return _cached_settings(app_dir)


def provider_debug_enabled(settings: QuireConfig) -> bool:
    return settings.QUIRE_PROVIDER_DEBUG or (
        os.getenv("QUIRE_DEBUG_PROVIDER", "").strip().lower() in _TRUTHY
    )
