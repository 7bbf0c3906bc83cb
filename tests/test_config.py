"""Tests for engine configuration

Tests: defaults, validation, dict/YAML loading, camelCase aliases,
OPTIMIST_CONFIG lookup
"""
import os
from unittest.mock import patch

import pytest
import yaml

from optimist.config import CONFIG_ENV_VAR, EngineConfig, load_config
from optimist.errors import ConfigError, MisuseError
from optimist.retry import RetryPolicy


class TestEngineConfigDefaults:
    """Default values."""

    def test_defaults(self):
        config = EngineConfig()
        assert config.max_attempts == 5
        assert config.base_delay_ms == 100
        assert config.backoff_multiplier == 2.0
        assert config.max_delay_ms == 30_000
        assert config.jitter == 0.1
        assert config.attempt_timeout_ms is None
        assert config.conflict_visibility == "optimistic"
        assert config.conflict_policy is None

    def test_retry_policy_from_config(self):
        policy = RetryPolicy.from_config(EngineConfig(max_attempts=2, base_delay_ms=50))
        assert policy.max_attempts == 2
        assert policy.base_delay_ms == 50


class TestEngineConfigValidation:
    """Invalid values raise ConfigError."""

    @pytest.mark.parametrize("options,key", [
        ({"max_attempts": 0}, "max_attempts"),
        ({"base_delay_ms": -1}, "base_delay_ms"),
        ({"backoff_multiplier": 0.5}, "backoff_multiplier"),
        ({"base_delay_ms": 500, "max_delay_ms": 100}, "max_delay_ms"),
        ({"jitter": 1.5}, "jitter"),
        ({"attempt_timeout_ms": 0}, "attempt_timeout_ms"),
        ({"conflict_visibility": "hidden"}, "conflict_visibility"),
        ({"conflict_policy": "newest_wins"}, "conflict_policy"),
    ])
    def test_invalid_option(self, options, key):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig(**options)
        assert exc_info.value.key == key

    def test_config_error_is_misuse_and_value_error(self):
        with pytest.raises(MisuseError):
            EngineConfig(max_attempts=0)
        with pytest.raises(ValueError):
            EngineConfig(max_attempts=0)


class TestEngineConfigLoading:
    """from_dict / from_yaml / load_config."""

    def test_from_dict_snake_case(self):
        config = EngineConfig.from_dict({"max_attempts": 3, "conflict_visibility": "frozen"})
        assert config.max_attempts == 3
        assert config.conflict_visibility == "frozen"

    def test_from_dict_camel_case_aliases(self):
        config = EngineConfig.from_dict({"maxAttempts": 7, "baseDelayMs": 20, "conflictPolicy": "keep_remote"})
        assert config.max_attempts == 7
        assert config.base_delay_ms == 20
        assert config.conflict_policy == "keep_remote"

    def test_from_dict_engine_section(self):
        config = EngineConfig.from_dict({"engine": {"jitter": 0.0}})
        assert config.jitter == 0.0

    def test_unknown_key_rejected(self):
        with pytest.raises(ConfigError, match="Unknown configuration key 'retries'"):
            EngineConfig.from_dict({"retries": 3})

    def test_yaml_round_trip(self, tmp_path):
        path = tmp_path / "engine.yaml"
        original = EngineConfig(max_attempts=4, conflict_policy="keep_local")
        path.write_text(original.to_yaml())

        assert "engine:" in path.read_text()
        assert EngineConfig.from_yaml(path) == original

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("engine: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            EngineConfig.from_yaml(path)

    def test_non_mapping_yaml(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text(yaml.safe_dump([1, 2]))
        with pytest.raises(ConfigError, match="must contain a mapping"):
            EngineConfig.from_yaml(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Cannot read"):
            EngineConfig.from_yaml(tmp_path / "missing.yaml")

    def test_load_config_defaults_without_env(self):
        with patch.dict(os.environ, {}, clear=True):
            assert load_config() == EngineConfig()

    def test_load_config_from_env(self, tmp_path):
        path = tmp_path / "engine.yaml"
        path.write_text("engine:\n  max_attempts: 9\n")
        with patch.dict(os.environ, {CONFIG_ENV_VAR: str(path)}):
            assert load_config().max_attempts == 9

    def test_explicit_path_beats_env(self, tmp_path):
        env_path = tmp_path / "env.yaml"
        env_path.write_text("max_attempts: 9\n")
        explicit = tmp_path / "explicit.yaml"
        explicit.write_text("max_attempts: 2\n")
        with patch.dict(os.environ, {CONFIG_ENV_VAR: str(env_path)}):
            assert load_config(explicit).max_attempts == 2
