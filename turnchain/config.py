"""
Typed configuration model with precedence-based loader.

Precedence (lowest to highest):
    defaults < config file (YAML) < profile < env vars < CLI overrides
"""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from turnchain.errors import ValidationError

_MODES = ("single", "while_needs_response")
_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass
class ModelConfig:
    name: str = "openai-compat"
    model: str = "gpt-4o-mini"
    api_base: str = "https://api.openai.com/v1"
    api_key_env: str = "OPENAI_API_KEY"
    temperature: float | None = None
    timeout_seconds: float = 120.0
    max_retries: int = 2


@dataclass
class RunConfig:
    mode: str = "single"
    stream: bool = False
    verbose: bool = False
    max_rounds: int | None = None
    system_prompt: str = "You are a helpful assistant."


@dataclass
class LoggingConfig:
    level: str = "WARNING"


@dataclass
class TurnchainConfig:
    model: ModelConfig = field(default_factory=ModelConfig)
    run: RunConfig = field(default_factory=RunConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    profiles: dict[str, dict[str, Any]] = field(default_factory=dict)

    def validate(self) -> None:
        """Reject values the chain would refuse later."""
        if self.run.mode not in _MODES:
            raise ValidationError(
                f"run.mode must be one of {', '.join(_MODES)}; got {self.run.mode!r}"
            )
        if self.run.max_rounds is not None and self.run.max_rounds < 1:
            raise ValidationError("run.max_rounds must be at least 1")
        if self.logging.level.upper() not in _LEVELS:
            raise ValidationError(f"logging.level must be one of {', '.join(_LEVELS)}")
        if self.model.max_retries < 0:
            raise ValidationError("model.max_retries must not be negative")

    def to_dict(self) -> dict:
        return asdict(self)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _apply_dotpath(obj: Any, dotpath: str, value: Any) -> None:
    parts = dotpath.split(".")
    for part in parts[:-1]:
        obj = getattr(obj, part)
    if not hasattr(obj, parts[-1]):
        raise ValidationError(f"Unknown config key: {dotpath}")
    setattr(obj, parts[-1], value)


def _deep_merge(base: dict, overlay: dict) -> dict:
    merged = dict(base)
    for k, v in overlay.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _coerce(value: str, target_type: type) -> Any:
    if target_type is bool:
        return value.lower() in ("1", "true", "yes", "on")
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _build_section(cls: type, raw: dict) -> Any:
    """Build a dataclass section from a raw dict, ignoring unknown keys."""
    valid_fields = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in (raw or {}).items() if k in valid_fields})


# ---------------------------------------------------------------------------
# ENV var mapping
# ---------------------------------------------------------------------------

_ENV_MAP: dict[str, tuple[str, type]] = {
    "TURNCHAIN_MODEL_NAME":        ("model.name", str),
    "TURNCHAIN_MODEL":             ("model.model", str),
    "TURNCHAIN_API_BASE":          ("model.api_base", str),
    "TURNCHAIN_API_KEY_ENV":       ("model.api_key_env", str),
    "TURNCHAIN_TEMPERATURE":       ("model.temperature", float),
    "TURNCHAIN_TIMEOUT":           ("model.timeout_seconds", float),
    "TURNCHAIN_MAX_RETRIES":       ("model.max_retries", int),
    "TURNCHAIN_RUN_MODE":          ("run.mode", str),
    "TURNCHAIN_STREAM":            ("run.stream", bool),
    "TURNCHAIN_VERBOSE":           ("run.verbose", bool),
    "TURNCHAIN_MAX_ROUNDS":        ("run.max_rounds", int),
    "TURNCHAIN_LOG_LEVEL":         ("logging.level", str),
}


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> TurnchainConfig:
    """
    Build a TurnchainConfig by layering sources in precedence order.

    Parameters
    ----------
    config_path : path to YAML config file (optional, skipped when missing)
    profile : name of a profile to overlay from the config file
    cli_overrides : dict of dotpath -> value overrides (e.g. ``{"run.stream": True}``)

    Raises ``ValidationError`` when the merged result is invalid.
    """
    raw: dict[str, Any] = {}

    if config_path is not None:
        p = Path(config_path).expanduser()
        if p.is_file():
            with p.open("r", encoding="utf-8") as f:
                raw = _deep_merge(raw, yaml.safe_load(f) or {})

    if profile:
        profile_data = raw.get("profiles", {}).get(profile)
        if profile_data is None:
            raise ValidationError(f"Unknown profile: {profile}")
        raw = _deep_merge(raw, profile_data)

    cfg = TurnchainConfig(
        model=_build_section(ModelConfig, raw.get("model", {})),
        run=_build_section(RunConfig, raw.get("run", {})),
        logging=_build_section(LoggingConfig, raw.get("logging", {})),
        profiles=raw.get("profiles", {}),
    )

    for env_var, (dotpath, target_type) in _ENV_MAP.items():
        val = os.environ.get(env_var)
        if val is not None:
            _apply_dotpath(cfg, dotpath, _coerce(val, target_type))

    for dotpath, value in (cli_overrides or {}).items():
        _apply_dotpath(cfg, dotpath, value)

    cfg.validate()
    return cfg
