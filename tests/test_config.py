"""Unit tests for rlmenv/config.py (YAML config loading, validation, resolution)."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from rlmenv.config import (
    ConfigError,
    ResolvedRoleConfig,
    RLMConfig,
    load_config,
    resolve_role,
)

# =====================================================================
# Helpers
# =====================================================================


def _write_yaml(tmp_path: Path, data: object, name: str = "rlm.yaml") -> Path:
    """Write a YAML file and return its path."""
    path = tmp_path / name
    path.write_text(yaml.dump(data), encoding="utf-8")
    return path


def _write_text(tmp_path: Path, text: str, name: str = "rlm.yaml") -> Path:
    path = tmp_path / name
    path.write_text(text, encoding="utf-8")
    return path


# =====================================================================
# load_config: basic parsing
# =====================================================================


class TestLoadConfig:
    """Tests for load_config."""

    def test_minimal_config(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, {"defaults": {"backend": "anthropic"}})
        config = load_config(path)
        assert config.defaults.backend == "anthropic"
        assert config.roles == {}
        assert config.settings.max_iterations is None

    def test_full_config(self, tmp_path: Path) -> None:
        data = {
            "defaults": {"backend": "anthropic", "model": "claude-sonnet"},
            "roles": {
                "root": {"model": "claude-opus"},
                "sub_call": {"backend": "vllm", "model": "qwen", "base_url": "http://gpu:8000/v1"},
            },
            "settings": {
                "max_iterations": 5,
                "max_depth": 2,
                "max_concurrency": 8,
                "sub_call_timeout": 30,
                "prompt_variant": "weak",
                "recursive_sub_calls": True,
            },
        }
        config = load_config(_write_yaml(tmp_path, data))
        assert config.roles["root"].model == "claude-opus"
        assert config.roles["sub_call"].backend == "vllm"
        assert config.settings.max_depth == 2
        assert config.settings.max_concurrency == 8
        assert config.settings.prompt_variant == "weak"
        assert config.settings.recursive_sub_calls is True
        assert config.config_dir == tmp_path.resolve()

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nonexistent.yaml")

    def test_empty_file(self, tmp_path: Path) -> None:
        config = load_config(_write_text(tmp_path, ""))
        assert isinstance(config, RLMConfig)
        assert config.roles == {}

    def test_non_mapping(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="mapping"):
            load_config(_write_text(tmp_path, "- a\n- b\n"))

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(_write_text(tmp_path, "defaults: [unclosed"))


# =====================================================================
# Validation
# =====================================================================


class TestValidation:
    def test_unknown_role(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, {"roles": {"verifier": {"model": "m"}}})
        with pytest.raises(ConfigError, match="Unknown role"):
            load_config(path)

    def test_unknown_backend(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, {"defaults": {"backend": "carrier-pigeon"}})
        with pytest.raises(ConfigError, match="Unknown backend"):
            load_config(path)

    def test_unknown_setting_key(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, {"settings": {"max_itterations": 3}})
        with pytest.raises(ConfigError, match="Unknown keys in settings"):
            load_config(path)

    @pytest.mark.parametrize(
        ("key", "value"),
        [
            ("max_iterations", 0),
            ("max_concurrency", -2),
            ("sub_call_timeout", 0),
            ("requests_per_second", "fast"),
            ("max_tokens", True),
            ("max_depth", -1),
        ],
    )
    def test_non_positive_limits(self, tmp_path: Path, key: str, value: object) -> None:
        path = _write_yaml(tmp_path, {"settings": {key: value}})
        with pytest.raises(ConfigError, match=key):
            load_config(path)

    def test_max_depth_zero_allowed(self, tmp_path: Path) -> None:
        config = load_config(_write_yaml(tmp_path, {"settings": {"max_depth": 0}}))
        assert config.settings.max_depth == 0

    def test_unknown_prompt_variant(self, tmp_path: Path) -> None:
        path = _write_yaml(tmp_path, {"settings": {"prompt_variant": "medium"}})
        with pytest.raises(ConfigError, match="prompt_variant"):
            load_config(path)

    def test_both_prompt_forms(self, tmp_path: Path) -> None:
        (tmp_path / "p.txt").write_text("file prompt", encoding="utf-8")
        data = {"roles": {"root": {"system_prompt": "inline", "system_prompt_file": "p.txt"}}}
        with pytest.raises(ConfigError, match="both"):
            load_config(_write_yaml(tmp_path, data))

    def test_missing_prompt_file(self, tmp_path: Path) -> None:
        data = {"roles": {"root": {"system_prompt_file": "missing.txt"}}}
        with pytest.raises(ConfigError, match="not found"):
            load_config(_write_yaml(tmp_path, data))


# =====================================================================
# resolve_role
# =====================================================================


class TestResolveRole:
    def test_role_overrides_defaults(self, tmp_path: Path) -> None:
        data = {
            "defaults": {"backend": "anthropic", "model": "big"},
            "roles": {"sub_call": {"model": "small"}},
        }
        config = load_config(_write_yaml(tmp_path, data))
        sub = resolve_role("sub_call", config)
        root = resolve_role("root", config)
        assert (sub.backend, sub.model) == ("anthropic", "small")
        assert (root.backend, root.model) == ("anthropic", "big")

    def test_api_key_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MY_TEST_KEY", "secret")
        data = {"defaults": {"backend": "openai", "api_key_env": "MY_TEST_KEY"}}
        resolved = resolve_role("root", load_config(_write_yaml(tmp_path, data)))
        assert resolved.api_key == "secret"

    def test_prompt_file_is_read(self, tmp_path: Path) -> None:
        (tmp_path / "root.txt").write_text("custom root prompt", encoding="utf-8")
        data = {"roles": {"root": {"system_prompt_file": "root.txt"}}}
        resolved = resolve_role("root", load_config(_write_yaml(tmp_path, data)))
        assert resolved.system_prompt == "custom root prompt"

    def test_unconfigured_role(self) -> None:
        assert resolve_role("sub_call", RLMConfig()) == ResolvedRoleConfig()
