"""
Configuration tests.
"""

import pytest

from procvm.config import (
    CONFIG_SCHEMA,
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    get_config,
    get_config_manager,
)


class TestConfigValues:
    """Tests for defaults, overrides and coercion."""

    def test_defaults(self):
        config = get_config()
        assert config.vm.stack_limit.get() == 1024
        assert config.vm.return_stack_limit.get() == 1023
        assert config.validator.iteration_factor.get() == 2
        assert config.observability.log_format.get() == "json"

    def test_singleton(self):
        assert ConfigManager() is get_config_manager()

    def test_set_and_get(self):
        manager = get_config_manager()
        manager.set("vm.step_limit", 500)
        assert manager.get("vm.step_limit") == 500

    def test_string_coercion(self):
        manager = get_config_manager()
        manager.set("vm.stack_limit", "16")
        assert manager.get("vm.stack_limit") == 16

    def test_bad_string(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("vm.stack_limit", "lots")

    def test_validator_rejects(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("vm.stack_limit", 0)
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("observability.log_level", "loud")

    def test_environment_wins(self, monkeypatch):
        manager = get_config_manager()
        manager.set("vm.stack_limit", 100)
        monkeypatch.setenv("PROCVM_VM_STACK_LIMIT", "200")
        assert manager.get("vm.stack_limit") == 200

    def test_invalid_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().get("vm.nope")
        with pytest.raises(ConfigError):
            get_config_manager().set("vm", 1)

    def test_watchers_notified(self):
        seen = []
        manager = get_config_manager()
        manager.watch(lambda config: seen.append(config.vm.step_limit.get()))
        try:
            manager.set("vm.step_limit", 42)
        finally:
            manager._watchers.clear()
        assert seen == [42]

    def test_value_callbacks(self):
        changes = []
        value = get_config().vm.step_limit
        value.on_change(lambda old, new: changes.append((old, new)))
        value.set(10)
        value.set(20)
        assert changes == [(None, 10), (10, 20)]

    def test_reset(self):
        manager = get_config_manager()
        manager.set("vm.stack_limit", 8)
        manager.reset()
        assert manager.get("vm.stack_limit") == 1024


class TestConfigFiles:
    """Tests for YAML loading and schema validation."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "procvm.yaml"
        path.write_text("vm:\n  stack_limit: 64\nvalidator:\n  cache_size: 0\n")
        manager = get_config_manager()
        manager.load_from_file(path)
        assert manager.get("vm.stack_limit") == 64
        assert manager.get("validator.cache_size") == 0

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_unknown_key_rejected(self, tmp_path):
        path = tmp_path / "procvm.yaml"
        path.write_text("vm:\n  stack_depth: 64\n")
        with pytest.raises(ConfigValidationError) as exc_info:
            get_config_manager().load_from_file(path)
        assert "vm" in str(exc_info.value)

    def test_wrong_type_rejected(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().check_document({"validator": {"max_workers": "four"}})

    def test_reload(self, tmp_path):
        path = tmp_path / "procvm.yaml"
        path.write_text("vm:\n  step_limit: 10\n")
        manager = get_config_manager()
        manager.load_from_file(path)
        path.write_text("vm:\n  step_limit: 20\n")
        manager.reload()
        assert manager.get("vm.step_limit") == 20

    def test_schema_is_draft_2020_12(self):
        assert CONFIG_SCHEMA["$schema"].endswith("2020-12/schema")


class TestConfigExport:
    """Tests for introspection helpers."""

    def test_validate_defaults(self):
        assert get_config_manager().validate() == []

    def test_export_schema(self):
        schema = get_config_manager().export_schema()
        stack_limit = schema["properties"]["vm"]["stack_limit"]
        assert stack_limit["type"] == "int"
        assert stack_limit["default"] == 1024
        assert stack_limit["env_var"] == "PROCVM_VM_STACK_LIMIT"

    def test_to_yaml(self):
        text = get_config().to_yaml()
        assert "stack_limit: 1024" in text
        assert "log_format: json" in text
