"""
Engine configuration.

Configuration is a flat set of options, loadable from a dict or a YAML file.
Both snake_case keys and the camelCase names used by client libraries
(maxAttempts, baseDelayMs, ...) are recognised.

Example config.yaml:

    engine:
      max_attempts: 5
      base_delay_ms: 100
      backoff_multiplier: 2.0
      conflict_visibility: optimistic   # or: frozen
      conflict_policy: keep_remote      # optional auto-resolution
"""

import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .projector import CONFLICT_VISIBILITY_FROZEN, CONFLICT_VISIBILITY_OPTIMISTIC

CONFIG_ENV_VAR = "OPTIMIST_CONFIG"

_CAMEL_ALIASES = {
    "maxAttempts": "max_attempts",
    "baseDelayMs": "base_delay_ms",
    "backoffMultiplier": "backoff_multiplier",
    "maxDelayMs": "max_delay_ms",
    "attemptTimeoutMs": "attempt_timeout_ms",
    "conflictVisibility": "conflict_visibility",
    "conflictPolicy": "conflict_policy",
}

_CONFLICT_POLICIES = ("keep_local", "keep_remote", "merge")


@dataclass
class EngineConfig:
    """Recognised engine options."""
    max_attempts: int = 5
    base_delay_ms: int = 100
    backoff_multiplier: float = 2.0
    max_delay_ms: int = 30_000
    jitter: float = 0.1
    attempt_timeout_ms: Optional[int] = None
    conflict_visibility: str = CONFLICT_VISIBILITY_OPTIMISTIC
    conflict_policy: Optional[str] = None

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """
        Check option values.

        Raises:
            ConfigError: On the first invalid option
        """
        if not isinstance(self.max_attempts, int) or self.max_attempts < 1:
            raise ConfigError("max_attempts must be an integer >= 1", key="max_attempts")
        if self.base_delay_ms < 0:
            raise ConfigError("base_delay_ms must be >= 0", key="base_delay_ms")
        if self.backoff_multiplier < 1:
            raise ConfigError("backoff_multiplier must be >= 1", key="backoff_multiplier")
        if self.max_delay_ms < self.base_delay_ms:
            raise ConfigError("max_delay_ms must be >= base_delay_ms", key="max_delay_ms")
        if not 0 <= self.jitter <= 1:
            raise ConfigError("jitter must be between 0 and 1", key="jitter")
        if self.attempt_timeout_ms is not None and self.attempt_timeout_ms <= 0:
            raise ConfigError("attempt_timeout_ms must be > 0", key="attempt_timeout_ms")
        if self.conflict_visibility not in (CONFLICT_VISIBILITY_OPTIMISTIC, CONFLICT_VISIBILITY_FROZEN):
            raise ConfigError(
                f"conflict_visibility must be 'optimistic' or 'frozen', "
                f"got '{self.conflict_visibility}'",
                key="conflict_visibility",
            )
        if self.conflict_policy is not None and self.conflict_policy.lower() not in _CONFLICT_POLICIES:
            raise ConfigError(
                f"conflict_policy must be one of {', '.join(_CONFLICT_POLICIES)}, "
                f"got '{self.conflict_policy}'",
                key="conflict_policy",
            )

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EngineConfig":
        """
        Build a config from a mapping.

        Accepts either the options at top level or nested under 'engine'.

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        data = dict(data or {})
        if "engine" in data and isinstance(data["engine"], dict):
            data = dict(data["engine"])

        known = {f.name for f in fields(cls)}
        options = {}
        for key, value in data.items():
            name = _CAMEL_ALIASES.get(key, key)
            if name not in known:
                raise ConfigError(f"Unknown configuration key '{key}'", key=key)
            options[name] = value

        try:
            return cls(**options)
        except TypeError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    @classmethod
    def from_yaml(cls, path: Path) -> "EngineConfig":
        """Load a config from a YAML file."""
        path = Path(path)
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def to_yaml(self) -> str:
        return yaml.safe_dump({"engine": self.to_dict()}, default_flow_style=False, sort_keys=False)


def load_config(path: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration.

    Priority: explicit path > $OPTIMIST_CONFIG > defaults.
    """
    if path is None:
        env_path = os.getenv(CONFIG_ENV_VAR)
        if env_path:
            path = Path(env_path)
    if path is None:
        return EngineConfig()
    return EngineConfig.from_yaml(path)
