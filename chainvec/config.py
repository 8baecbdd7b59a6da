"""
chainvec Configuration System

Unified configuration management with YAML files, environment variables,
validation, and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (CHAINVEC_*)
    2. Runtime overrides / config files (later files win)
    3. Default values

Default files searched by ``load_defaults``:
    ./chainvec.yaml, ./config/chainvec.yaml, ~/.chainvec/config.yaml
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from chainvec.errors import ConfigError, ValidationError

T = TypeVar("T")

RETAIN_ACCESSED_CIDS = "accessed-cids"


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    and validation.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False  # Don't log if True
    _value: Optional[T] = field(default=None, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])

        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value with validation; strings are coerced to the default's type."""
        if isinstance(value, str) and not isinstance(self.default, str):
            value = self._coerce(value)
        if self.validator and not self.validator(value):
            raise ValidationError(f"Invalid value for config: {value}")

        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        try:
            if target_type == bool:
                return value.strip().lower() in ("true", "1", "yes", "on")  # type: ignore
            elif target_type == int:
                return int(value)  # type: ignore
            elif target_type == float:
                return float(value)  # type: ignore
            elif target_type == list:
                return [v for v in value.split(",") if v]  # type: ignore
            else:
                return value  # type: ignore
        except ValueError as e:
            raise ValidationError(f"Cannot coerce {value!r} to {target_type.__name__}") from e


@dataclass
class NodeConfig:
    """Connection to the chain node's JSON-RPC endpoint."""
    endpoint: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="http://127.0.0.1:1234/rpc/v0",
        env_var="CHAINVEC_NODE_ENDPOINT",
        description="JSON-RPC endpoint of the chain node",
        validator=lambda x: str(x).startswith(("http://", "https://")),
    ))
    token: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CHAINVEC_NODE_TOKEN",
        description="Bearer token for the node API",
        secret=True,
    ))
    timeout_seconds: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=60,
        env_var="CHAINVEC_NODE_TIMEOUT",
        description="Per-request timeout in seconds",
        validator=lambda x: x > 0,
    ))
    namespace: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="Chain",
        env_var="CHAINVEC_NODE_NAMESPACE",
        description="Method namespace prefix used for RPC calls",
        validator=lambda x: bool(str(x).strip()),
    ))


@dataclass
class ExtractConfig:
    """Configuration for vector extraction."""
    retain: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default=RETAIN_ACCESSED_CIDS,
        env_var="CHAINVEC_EXTRACT_RETAIN",
        description="State retention strategy",
    ))
    codename_schedule: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CHAINVEC_CODENAME_SCHEDULE",
        description="YAML file overriding the protocol codename schedule",
    ))


@dataclass
class ReplayConfig:
    """Configuration for vector replay."""
    fallback_blockstore: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="CHAINVEC_FALLBACK_BLOCKSTORE",
        description="Fetch objects missing from the embedded archive from the node",
    ))
    workers: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="CHAINVEC_REPLAY_WORKERS",
        description="Vectors executed concurrently in directory mode",
        validator=lambda x: 1 <= x <= 256,
    ))
    validate_schema: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=True,
        env_var="CHAINVEC_VALIDATE_SCHEMA",
        description="Validate vectors against the JSON Schema before executing",
    ))


@dataclass
class EngineConfig:
    """Configuration for the execution engine."""
    factory: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CHAINVEC_ENGINE",
        description="Engine factory as 'package.module:callable'",
        validator=lambda x: x == "" or ":" in str(x),
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CHAINVEC_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="text",
        env_var="CHAINVEC_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class HarnessConfig:
    """
    Root configuration for chainvec.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    node: NodeConfig = field(default_factory=NodeConfig)
    extract: ExtractConfig = field(default_factory=ExtractConfig)
    replay: ReplayConfig = field(default_factory=ReplayConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, redact_secrets: bool = True) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                if redact_secrets and obj.secret and obj.get():
                    return "***"
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = HarnessConfig()
        self._config_paths: List[Path] = []
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next access starts from defaults."""
        with cls._lock:
            cls._instance = None

    @property
    def config(self) -> HarnessConfig:
        """Get the current configuration."""
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must be a mapping: {path}")
        self._apply_dict(data)
        self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("chainvec.yaml"),
            Path("config/chainvec.yaml"),
            Path.home() / ".chainvec" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary values to configuration."""
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                path = f"{prefix}.{key}" if prefix else key
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {path}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, path)
                else:
                    raise ConfigError(f"Invalid configuration value at {path}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("replay.workers", 4)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("node.endpoint")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except ConfigError as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors


def get_config() -> HarnessConfig:
    """Get the current chainvec configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
