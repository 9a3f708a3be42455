"""
Engine Configuration

Configuration management with YAML files, environment variables, schema
validation and runtime updates.

Configuration Sources (in order of precedence):
    1. Environment variables (PROCVM_*)
    2. Runtime overrides
    3. User config file (~/.procvm/config.yaml)
    4. Project config file (./procvm.yaml)
    5. Default values

Copyright (c) 2026 procvm contributors. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml
from jsonschema import Draft202012Validator

T = TypeVar("T")


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration value rejected by its validator or the file schema."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[Optional[T], T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: Any) -> None:
        """Set the value, coercing strings to the default's type."""
        if isinstance(value, str) and not isinstance(self.default, str):
            try:
                value = self._coerce(value)
            except ValueError as e:
                raise ConfigValidationError(f"Cannot convert {value!r}: {e}") from e
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value!r}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        return value  # type: ignore

    def on_change(self, callback: Callable[[Optional[T], T], None]) -> None:
        self._callbacks.append(callback)


@dataclass
class VMConfig:
    """Configuration for the instruction executor."""
    stack_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1024,
        env_var="PROCVM_VM_STACK_LIMIT",
        description="Maximum data stack depth",
        validator=lambda x: 0 < x <= 4096,
    ))
    return_stack_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1023,
        env_var="PROCVM_VM_RETURN_STACK_LIMIT",
        description="Maximum procedure call nesting depth",
        validator=lambda x: 0 < x <= 4096,
    ))
    memory_limit_bytes: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=16 * 1024 * 1024,
        env_var="PROCVM_VM_MEMORY_LIMIT",
        description="Maximum memory (positive plus negative extents) in bytes",
        validator=lambda x: x > 0,
    ))
    step_limit: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10_000_000,
        env_var="PROCVM_VM_STEP_LIMIT",
        description="Maximum instructions executed per call tree",
        validator=lambda x: x > 0,
    ))
    gas_limit_default: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1_000_000,
        env_var="PROCVM_VM_GAS_LIMIT",
        description="Default gas limit for memory expansion charges",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ValidatorConfig:
    """Configuration for the validation pipeline."""
    cache_size: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=256,
        env_var="PROCVM_VALIDATOR_CACHE_SIZE",
        description="Number of validation results kept per validator (0 disables)",
        validator=lambda x: x >= 0,
    ))
    max_workers: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=4,
        env_var="PROCVM_VALIDATOR_WORKERS",
        description="Worker threads for batch validation",
        validator=lambda x: 0 < x <= 64,
    ))
    iteration_factor: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=2,
        env_var="PROCVM_VALIDATOR_ITERATION_FACTOR",
        description="Fixed-point iteration bound per block and edge",
        validator=lambda x: x >= 1,
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for logging."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="PROCVM_LOG_LEVEL",
        description="Log level (debug, info, warning, error, critical)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="PROCVM_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class ProcVMConfig:
    """
    Root configuration.

    Aggregates all component configurations and provides
    loading/saving functionality.
    """
    vm: VMConfig = field(default_factory=VMConfig)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self) -> Dict[str, Any]:
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(), default_flow_style=False)


def _section_schema(**properties: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "object", "additionalProperties": False, "properties": properties}


CONFIG_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "title": "procvm configuration file",
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "vm": _section_schema(
            stack_limit={"type": "integer", "minimum": 1, "maximum": 4096},
            return_stack_limit={"type": "integer", "minimum": 1, "maximum": 4096},
            memory_limit_bytes={"type": "integer", "minimum": 1},
            step_limit={"type": "integer", "minimum": 1},
            gas_limit_default={"type": "integer", "minimum": 0},
        ),
        "validator": _section_schema(
            cache_size={"type": "integer", "minimum": 0},
            max_workers={"type": "integer", "minimum": 1, "maximum": 64},
            iteration_factor={"type": "integer", "minimum": 1},
        ),
        "observability": _section_schema(
            log_level={"enum": ["debug", "info", "warning", "error", "critical"]},
            log_format={"enum": ["json", "text"]},
        ),
    },
}


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

        self._config = ProcVMConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[ProcVMConfig], None]] = []
        self._schema_validator = Draft202012Validator(CONFIG_SCHEMA)
        self._initialized = True

    @property
    def config(self) -> ProcVMConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file after schema validation."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data:
            self.check_document(data)
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def check_document(self, data: Any) -> None:
        """Validate a configuration document against ``CONFIG_SCHEMA``."""
        errors = sorted(self._schema_validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            messages = "; ".join(
                f"{'.'.join(str(p) for p in e.path) or '<root>'}: {e.message}"
                for e in errors
            )
            raise ConfigValidationError(f"Invalid configuration document: {messages}")

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("procvm.yaml"),
            Path.home() / ".procvm" / "config.yaml",
        ]

        for path in default_paths:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any]) -> None:
            for key, value in values.items():
                if hasattr(config_obj, key):
                    attr = getattr(config_obj, key)
                    if isinstance(attr, ConfigValue):
                        attr.set(value)
                    elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                        apply_to_config(attr, value)

        apply_to_config(self._config, data)

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not hasattr(obj, "__dataclass_fields__") or part not in obj.__dataclass_fields__:
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("vm.stack_limit", 512)
        """
        attr = self._resolve(path)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)
        for watcher in self._watchers:
            watcher(self._config)

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("vm.stack_limit")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        return obj

    def watch(self, callback: Callable[[ProcVMConfig], None]) -> None:
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def reset(self) -> None:
        """Drop runtime overrides and loaded files, keeping watchers."""
        self._config = ProcVMConfig()
        self._config_paths = []

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
                except (TypeError, ValueError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = obj.default
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> ProcVMConfig:
    """Get the current engine configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()
