from __future__ import annotations

import json
import logging
import math
import os
import pathlib
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

SUPPORTED_MODELS = ("gpt-3.5-turbo", "gpt-4", "gpt-4-32k")
DEFAULT_MODEL = "gpt-3.5-turbo"
DEFAULT_BASE_URL = "https://api.openai.com"
DEFAULT_TIMEOUT_MS = 30000

# Ceilings applied when the built-in credential is used.
DEFAULT_MAX_INPUT_TOKENS: Mapping[str, int] = MappingProxyType(
    {
        "gpt-3.5-turbo": 3072,
        "gpt-4": 6144,
        "gpt-4-32k": 24576,
    }
)

# Full context windows, applied when the caller brings their own key.
MODEL_CONTEXT_TOKENS: Mapping[str, int] = MappingProxyType(
    {
        "gpt-3.5-turbo": 4096,
        "gpt-4": 8192,
        "gpt-4-32k": 32768,
    }
)

_BOOLEAN_TRUE = {"true", "yes", "1", "on"}


class ConfigError(ValueError):
    """Raised when the relay configuration is invalid."""


@dataclass(frozen=True)
class RelayConfig:
    api_key: str = ""
    base_url: str = DEFAULT_BASE_URL
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    password: Optional[str] = None
    default_model: str = DEFAULT_MODEL
    max_input_tokens: Mapping[str, int] = field(default_factory=lambda: DEFAULT_MAX_INPUT_TOKENS)
    proxy: Optional[str] = None

    def normalized_base_url(self) -> str:
        return normalize_base_url(self.base_url)

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


def normalize_base_url(value: str) -> str:
    value = value.strip().rstrip("/")
    if not value.startswith(("http://", "https://")):
        value = f"https://{value}"
    return value


def coerce_timeout_ms(value: object) -> int:
    """Return a positive timeout in milliseconds, falling back to the default."""
    if isinstance(value, bool) or value is None:
        return DEFAULT_TIMEOUT_MS
    try:
        timeout = float(value)
    except (TypeError, ValueError):
        return DEFAULT_TIMEOUT_MS
    if not math.isfinite(timeout) or timeout <= 0:
        return DEFAULT_TIMEOUT_MS
    return int(timeout)


def _validated_limit(model: str, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ConfigError(f"max_input_tokens for {model} must be a positive integer")
    return value


def resolve_max_input_tokens(
    override: object,
    base: Mapping[str, int] = DEFAULT_MAX_INPUT_TOKENS,
) -> Mapping[str, int]:
    """Apply a global integer or per-model mapping override on top of ``base``."""
    limits = dict(base)
    if override is None:
        return MappingProxyType(limits)
    if isinstance(override, int) and not isinstance(override, bool):
        for model in limits:
            limits[model] = _validated_limit(model, override)
    elif isinstance(override, dict):
        for model, value in override.items():
            if model not in limits:
                logger.warning("Ignoring max_input_tokens override for unsupported model %s", model)
                continue
            limits[model] = _validated_limit(model, value)
    else:
        raise ConfigError("max_input_tokens must be an integer or a mapping of model to integer")

    missing = [model for model in SUPPORTED_MODELS if model not in limits]
    if missing:
        raise ConfigError(f"No max_input_tokens configured for: {', '.join(missing)}")
    return MappingProxyType(limits)


def parse_max_input_tokens(raw: str) -> object:
    """Parse the MAX_INPUT_TOKENS environment value into an int or a dict."""
    raw = raw.strip()
    try:
        return int(raw)
    except ValueError:
        pass
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("expected an integer or a JSON object")
    return parsed


def _load_yaml(path: pathlib.Path) -> dict:
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in config file {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Top-level config structure must be a mapping")
    return data


def _optional_str(raw: dict, name: str) -> Optional[str]:
    value = raw.get(name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{name} must be a string")
    return value.strip() or None


def load_config(
    path: str | pathlib.Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
) -> RelayConfig:
    """Build the relay configuration from an optional YAML file and the environment.

    Environment values win over the file so a deployment can keep secrets out
    of the config file.
    """
    if environ is None:
        environ = os.environ
    raw = _load_yaml(pathlib.Path(path)) if path is not None else {}

    api_key = raw.get("api_key") or ""
    if not isinstance(api_key, str):
        raise ConfigError("api_key must be a string of one or more keys")
    api_key = environ.get("OPENAI_API_KEY", api_key).strip()

    base_url = raw.get("base_url") or DEFAULT_BASE_URL
    if not isinstance(base_url, str):
        raise ConfigError("base_url must be a string")
    base_url = environ.get("OPENAI_API_BASE_URL") or base_url
    if environ.get("NOGFW", "").strip().lower() in _BOOLEAN_TRUE:
        base_url = DEFAULT_BASE_URL

    timeout_ms = coerce_timeout_ms(environ.get("TIMEOUT", raw.get("timeout")))

    password = _optional_str(raw, "password")
    if environ.get("PASSWORD"):
        password = environ["PASSWORD"]

    default_model = environ.get("DEFAULT_MODEL") or raw.get("default_model") or DEFAULT_MODEL
    if default_model not in SUPPORTED_MODELS:
        raise ConfigError(
            f"default_model must be one of {', '.join(SUPPORTED_MODELS)}, got {default_model!r}"
        )

    max_input_tokens = resolve_max_input_tokens(raw.get("max_input_tokens"))
    env_limits = environ.get("MAX_INPUT_TOKENS")
    if env_limits:
        try:
            max_input_tokens = resolve_max_input_tokens(
                parse_max_input_tokens(env_limits), base=max_input_tokens
            )
        except ValueError as exc:
            logger.error("Error parsing MAX_INPUT_TOKENS, keeping configured limits: %s", exc)

    proxy = environ.get("RELAY_PROXY") or _optional_str(raw, "proxy")

    return RelayConfig(
        api_key=api_key,
        base_url=normalize_base_url(base_url),
        timeout_ms=timeout_ms,
        password=password,
        default_model=default_model,
        max_input_tokens=max_input_tokens,
        proxy=proxy,
    )
