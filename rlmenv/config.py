"""YAML-based configuration for per-role LLM settings.

Loads an optional ``--config rlm.yaml`` file and resolves per-role backend,
model, base_url, api_key, and system_prompt values using the merge priority::

    CLI flags  >  roles.{role}  >  defaults  >  hardcoded defaults

Two roles exist: ``root`` (the model writing code) and ``sub_call`` (the
model answering sub-calls).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .prompts import PROMPT_VARIANTS


class ConfigError(ValueError):
    """Raised on configuration validation failures."""


# =====================================================================
# Dataclasses
# =====================================================================

_VALID_ROLE_NAMES = frozenset({"root", "sub_call"})
_VALID_BACKENDS = frozenset({"anthropic", "openai", "openrouter", "ollama", "vllm"})

# Settings that must be positive numbers when present.
_POSITIVE_SETTINGS = (
    "max_iterations",
    "max_tokens",
    "max_concurrency",
    "sub_call_timeout",
    "batch_timeout",
    "timeout",
    "max_token_budget",
    "requests_per_second",
)


@dataclass
class DefaultsConfig:
    """Shared fallback values for all roles.

    Only backend/model/base_url/api_key_env are allowed here;
    system_prompt fields are role-level only.
    """

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key_env: str | None = None


@dataclass
class RoleConfig:
    """Per-role configuration (root, sub_call)."""

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key_env: str | None = None
    system_prompt: str | None = None
    system_prompt_file: str | None = None


@dataclass
class SettingsConfig:
    """Non-role settings; ``None`` means "not set in the file"."""

    max_iterations: int | None = None
    max_depth: int | None = None
    max_tokens: int | None = None
    max_concurrency: int | None = None
    sub_call_timeout: float | None = None
    batch_timeout: float | None = None
    timeout: float | None = None
    max_token_budget: int | None = None
    requests_per_second: float | None = None
    prompt_variant: str | None = None
    recursive_sub_calls: bool | None = None
    verbose: bool | None = None


@dataclass
class RLMConfig:
    """Top-level parsed config file."""

    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    roles: dict[str, RoleConfig] = field(default_factory=dict)
    settings: SettingsConfig = field(default_factory=SettingsConfig)
    config_dir: Path = field(default_factory=Path.cwd)


@dataclass
class ResolvedRoleConfig:
    """Fully resolved configuration for a single role (after merge)."""

    backend: str | None = None
    model: str | None = None
    base_url: str | None = None
    api_key: str | None = None
    system_prompt: str | None = None


# =====================================================================
# Loading & Validation
# =====================================================================


def load_config(path: Path) -> RLMConfig:
    """Parse a YAML config file and return an ``RLMConfig``.

    Parameters
    ----------
    path : Path
        Path to the YAML configuration file.

    Returns
    -------
    RLMConfig
        Parsed configuration.

    Raises
    ------
    ConfigError
        If the file is not valid YAML or fails validation.
    FileNotFoundError
        If the config file does not exist.
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    if raw is None:
        return RLMConfig(config_dir=path.parent.resolve())

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping, got {type(raw).__name__}")

    config = _parse_raw(raw, config_dir=path.parent.resolve())
    _validate_config(config)
    return config


def _pick(cls: type, raw: dict[str, Any], section: str) -> Any:
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown keys in {section}: {unknown}")
    return cls(**raw)


def _parse_raw(raw: dict[str, Any], config_dir: Path) -> RLMConfig:
    """Build an ``RLMConfig`` from raw YAML dict."""
    defaults = DefaultsConfig()
    if isinstance(raw.get("defaults"), dict):
        defaults = _pick(DefaultsConfig, raw["defaults"], "defaults")

    roles: dict[str, RoleConfig] = {}
    if isinstance(raw.get("roles"), dict):
        for role_name, role_dict in raw["roles"].items():
            if not isinstance(role_dict, dict):
                raise ConfigError(f"Role '{role_name}' must be a mapping")
            roles[role_name] = _pick(RoleConfig, role_dict, f"roles.{role_name}")

    settings = SettingsConfig()
    if isinstance(raw.get("settings"), dict):
        settings = _pick(SettingsConfig, raw["settings"], "settings")

    return RLMConfig(defaults=defaults, roles=roles, settings=settings, config_dir=config_dir)


def _validate_settings(settings: SettingsConfig) -> None:
    for name in _POSITIVE_SETTINGS:
        value = getattr(settings, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ConfigError(f"settings.{name} must be a positive number, got {value!r}")
    if settings.max_depth is not None and (
        isinstance(settings.max_depth, bool)
        or not isinstance(settings.max_depth, int)
        or settings.max_depth < 0
    ):
        raise ConfigError(f"settings.max_depth must be a non-negative integer, got {settings.max_depth!r}")
    variant = settings.prompt_variant
    if variant is not None and variant not in PROMPT_VARIANTS:
        raise ConfigError(
            f"Unknown prompt_variant '{variant}'. Valid variants: {list(PROMPT_VARIANTS)}"
        )


def _validate_config(config: RLMConfig) -> None:
    """Validate a parsed config, raising ``ConfigError`` on problems."""
    for role_name in config.roles:
        if role_name not in _VALID_ROLE_NAMES:
            raise ConfigError(
                f"Unknown role '{role_name}'. Valid roles: {sorted(_VALID_ROLE_NAMES)}"
            )

    for label, backend in _all_backends(config):
        if backend not in _VALID_BACKENDS:
            raise ConfigError(
                f"Unknown backend '{backend}' in {label}. Valid backends: {sorted(_VALID_BACKENDS)}"
            )

    _validate_settings(config.settings)

    for role_name, role in config.roles.items():
        if role.system_prompt and role.system_prompt_file:
            raise ConfigError(
                f"Role '{role_name}' specifies both system_prompt and system_prompt_file. "
                "Use only one."
            )
        if role.system_prompt_file:
            prompt_path = config.config_dir / role.system_prompt_file
            if not prompt_path.exists():
                raise ConfigError(f"Role '{role_name}' system_prompt_file not found: {prompt_path}")


def _all_backends(config: RLMConfig) -> list[tuple[str, str]]:
    """Collect all explicitly set backend values for validation."""
    result: list[tuple[str, str]] = []
    if config.defaults.backend:
        result.append(("defaults", config.defaults.backend))
    for role_name, role in config.roles.items():
        if role.backend:
            result.append((f"roles.{role_name}", role.backend))
    return result


# =====================================================================
# Resolution
# =====================================================================


def resolve_role(role_name: str, config: RLMConfig) -> ResolvedRoleConfig:
    """Merge role config with defaults and resolve dynamic values.

    Parameters
    ----------
    role_name : str
        ``"root"`` or ``"sub_call"``.
    config : RLMConfig
        The parsed config.

    Returns
    -------
    ResolvedRoleConfig
        Fully resolved configuration for the role.
    """
    role = config.roles.get(role_name, RoleConfig())

    api_key_env = role.api_key_env or config.defaults.api_key_env
    api_key = os.environ.get(api_key_env) if api_key_env else None

    system_prompt: str | None = role.system_prompt
    if not system_prompt and role.system_prompt_file:
        system_prompt = (config.config_dir / role.system_prompt_file).read_text(encoding="utf-8")

    return ResolvedRoleConfig(
        backend=role.backend or config.defaults.backend,
        model=role.model or config.defaults.model,
        base_url=role.base_url or config.defaults.base_url,
        api_key=api_key,
        system_prompt=system_prompt,
    )
