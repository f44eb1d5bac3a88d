"""Configuration resolver with 4-level priority.

Priority (highest to lowest):
1. CLI arguments
2. Environment variables (CAPSULEKIT_*)
3. Config files (user > system)
4. Defaults
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from capsulekit.core.errors import ConfigError

ALLOWED_LOGGING_LEVELS = frozenset({"quiet", "normal", "verbose", "debug"})
DEFAULT_LOGGING_LEVEL = "normal"

ENV_PREFIX = "CAPSULEKIT_"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass
class ConfigSource:
    """Represents where a config value came from."""

    value: Any
    source: str  # 'cli' | 'env' | 'user_config' | 'system_config' | 'default'


def default_config() -> dict[str, Any]:
    """Built-in defaults (lowest priority)."""
    home = Path.home()
    return {
        "capsules_dir": str(home / ".capsulekit" / "capsules"),
        "state_dir": str(home / ".capsulekit" / "state"),
        "sword_dir": str(home / ".sword"),
        "logging": {
            "level": DEFAULT_LOGGING_LEVEL,
            "colors": True,
        },
        "diagnostics": {
            "enabled": False,
        },
        "plugins": {
            # permissive: embedded only; restricted: embedded + plugins.dir
            "posture": "permissive",
            "dir": str(home / ".capsulekit" / "plugins"),
            "timeout_s": 60.0,
        },
        "archive": {
            "max_concurrent_reads": 16,
        },
        "pool": {
            "max_workers": 16,
        },
        "cache": {
            "background_refresh": False,
            "refresh_fraction": 0.8,
            "ttl": {
                "capsules_s": 300,
                "bibles_s": 300,
                "corpus_s": 600,
                "manageable_s": 300,
                "sword_modules_s": 600,
                "metadata_s": 1800,
            },
        },
    }


class ConfigResolver:
    """Resolve configuration with strict 4-level priority.

    Example:
        resolver = ConfigResolver(
            cli_args={'plugins': {'timeout_s': 5}},
            user_config_path=Path('~/.config/capsulekit/config.yaml')
        )

        timeout, source = resolver.resolve('plugins.timeout_s')
        # timeout = 5, source = 'cli'
    """

    def __init__(
        self,
        cli_args: dict[str, Any] | None = None,
        user_config_path: Path | None = None,
        system_config_path: Path | None = None,
        defaults: dict[str, Any] | None = None,
    ) -> None:
        """Initialize config resolver.

        Args:
            cli_args: Arguments from CLI (highest priority). Nested dicts and
                dotted keys ('plugins.timeout_s') are both accepted.
            user_config_path: Path to user config file
            system_config_path: Path to system config file
            defaults: Default values (lowest priority)
        """
        self.cli_args = cli_args or {}
        self.user_config_path = user_config_path or Path.home() / ".config/capsulekit/config.yaml"
        self.system_config_path = system_config_path or Path("/etc/capsulekit/config.yaml")
        self.defaults = defaults or default_config()

        self._user_config: dict[str, Any] | None = None
        self._system_config: dict[str, Any] | None = None

    def resolve(self, key: str) -> tuple[Any, str]:
        """Resolve config value with priority.

        Args:
            key: Config key (supports dot notation: 'logging.level')

        Returns:
            (value, source) tuple

        Raises:
            ConfigError: If key not found in any source
        """
        value = self._from_cli(key)
        if value is not None:
            return value, "cli"

        value = self._from_env(key)
        if value is not None:
            return value, "env"

        value = self._get_nested(self._get_user_config(), key)
        if value is not None:
            return value, "user_config"

        value = self._get_nested(self._get_system_config(), key)
        if value is not None:
            return value, "system_config"

        value = self._get_nested(self.defaults, key)
        if value is not None:
            return value, "default"

        raise ConfigError(f"Config key '{key}' not found in any source")

    def resolve_str(self, key: str) -> str:
        value, _src = self.resolve(key)
        if not isinstance(value, str):
            raise ConfigError(f"Config key '{key}' must be a string, got {type(value).__name__}")
        if value.strip() == "":
            raise ConfigError(f"Config key '{key}' must not be empty")
        return value.strip()

    def resolve_int(self, key: str, *, minimum: int | None = None) -> int:
        value, _src = self.resolve(key)
        if isinstance(value, bool):
            raise ConfigError(f"Config key '{key}' must be an int")
        try:
            result = int(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Config key '{key}' must be an int, got {value!r}") from e
        if minimum is not None and result < minimum:
            raise ConfigError(f"Config key '{key}' must be >= {minimum}, got {result}")
        return result

    def resolve_float(self, key: str, *, minimum: float | None = None) -> float:
        value, _src = self.resolve(key)
        if isinstance(value, bool):
            raise ConfigError(f"Config key '{key}' must be a number")
        try:
            result = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Config key '{key}' must be a number, got {value!r}") from e
        if minimum is not None and result < minimum:
            raise ConfigError(f"Config key '{key}' must be >= {minimum}, got {result}")
        return result

    def resolve_bool(self, key: str) -> bool:
        """Resolve a bool; ENV values arrive as strings and are normalized."""
        value, _src = self.resolve(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        s = str(value).strip().lower()
        if s in _TRUE_VALUES:
            return True
        if s in _FALSE_VALUES:
            return False
        raise ConfigError(f"Config key '{key}' must be a bool, got {value!r}")

    def resolve_path(self, key: str) -> Path:
        return Path(self.resolve_str(key)).expanduser()

    def resolve_choice(self, key: str, allowed: frozenset[str] | set[str]) -> str:
        norm = self.resolve_str(key).lower()
        if norm not in allowed:
            choices = ", ".join(sorted(allowed))
            raise ConfigError(f"Invalid '{key}': {norm!r}. Allowed values: {choices}")
        return norm

    def resolve_logging_level(self) -> str:
        """Resolve and validate logging.level (quiet|normal|verbose|debug)."""
        try:
            return self.resolve_choice("logging.level", ALLOWED_LOGGING_LEVELS)
        except ConfigError as e:
            if "not found in any source" in str(e):
                return DEFAULT_LOGGING_LEVEL
            raise

    def resolve_all(self) -> dict[str, ConfigSource]:
        """Resolve every key present in defaults or in either config file."""
        keys: set[str] = set()
        for data in (self.defaults, self._get_user_config(), self._get_system_config()):
            keys.update(k for k, _v in _flatten_items(data))

        result: dict[str, ConfigSource] = {}
        for key in sorted(keys):
            try:
                value, source = self.resolve(key)
            except ConfigError:
                continue
            result[key] = ConfigSource(value=value, source=source)
        return result

    def _from_cli(self, key: str) -> Any | None:
        if key in self.cli_args:
            return self.cli_args[key]
        return self._get_nested(self.cli_args, key)

    def _from_env(self, key: str) -> Any | None:
        """Environment variable format: CAPSULEKIT_PLUGINS_TIMEOUT_S."""
        env_key = f"{ENV_PREFIX}{key.upper().replace('.', '_')}"
        return os.environ.get(env_key)

    def _get_user_config(self) -> dict[str, Any]:
        if self._user_config is None:
            self._user_config = self._load_yaml(self.user_config_path)
        return self._user_config

    def _get_system_config(self) -> dict[str, Any]:
        if self._system_config is None:
            self._system_config = self._load_yaml(self.system_config_path)
        return self._system_config

    def _load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e
        return data if isinstance(data, dict) else {}

    def _get_nested(self, data: dict[str, Any], key: str) -> Any | None:
        """Get nested value using dot notation.

        Example:
            data = {'logging': {'level': 'debug'}}
            _get_nested(data, 'logging.level') -> 'debug'
        """
        current: Any = data

        for part in key.split("."):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None

        return current


def _flatten_items(data: dict[str, Any], prefix: str = "") -> list[tuple[str, Any]]:
    """Flatten nested dicts to dot-notation key paths."""
    items: list[tuple[str, Any]] = []

    for key, value in data.items():
        key_path = f"{prefix}.{key}" if prefix else str(key)

        if isinstance(value, dict):
            items.extend(_flatten_items(value, key_path))
        else:
            items.append((key_path, value))

    return items
