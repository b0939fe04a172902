"""
Tests for piggyflow.core.config
================================

These tests verify that the configuration system works correctly:
    - Default values match the documented component defaults
    - Explicit values and environment variables override defaults
    - YAML files are parsed, auto-detected and rejected when malformed
    - Validation catches out-of-range values
"""

from pathlib import Path

import pytest
import yaml

from piggyflow.core.config import (
    MessageBusConfig,
    PersistenceConfig,
    PiggyflowConfig,
    RecoveryConfig,
    get_default_config,
    load_config,
)
from piggyflow.core.exceptions import ConfigurationError


# =============================================================================
# Test: Default Configuration
# =============================================================================
class TestDefaultConfig:
    """Zero-config startup must produce a complete configuration."""

    def test_default_config_creates_successfully(self) -> None:
        config = PiggyflowConfig()
        assert config.environment == "development"
        assert config.log_level == "INFO"
        assert config.json_logs is False
        assert config.default_max_retries == 3
        assert config.continue_on_step_failure is False

    def test_default_persistence(self) -> None:
        persistence = PiggyflowConfig().persistence
        assert persistence.enabled is True
        assert persistence.auto_save is True
        assert persistence.auto_save_interval == 30.0
        assert persistence.max_snapshots == 10
        assert persistence.compression_enabled is False
        assert persistence.state_dir == Path(".workflow-state")
        assert persistence.backup_dir == Path("backups")

    def test_default_recovery(self) -> None:
        recovery = PiggyflowConfig().recovery
        assert recovery.base_retry_delay == 1000
        assert recovery.max_retry_delay == 30000
        assert recovery.circuit_breaker_threshold == 5
        assert recovery.circuit_breaker_timeout == 60000
        assert recovery.wait_scale == 1.0

    def test_default_message_bus(self) -> None:
        bus = PiggyflowConfig().message_bus
        assert bus.request_timeout_ms == 30000
        assert bus.auto_start is True

    def test_get_default_config_convenience(self) -> None:
        assert isinstance(get_default_config(), PiggyflowConfig)


# =============================================================================
# Test: Overrides
# =============================================================================
class TestConfigOverrides:

    def test_override_nested_models(self) -> None:
        config = PiggyflowConfig(
            persistence=PersistenceConfig(enabled=False, max_snapshots=3),
            recovery=RecoveryConfig(base_retry_delay=10),
            message_bus=MessageBusConfig(auto_start=False),
        )
        assert config.persistence.enabled is False
        assert config.persistence.max_snapshots == 3
        assert config.recovery.base_retry_delay == 10
        assert config.message_bus.auto_start is False

    def test_env_var_override(self, monkeypatch) -> None:
        monkeypatch.setenv("PIGGYFLOW_LOG_LEVEL", "DEBUG")
        monkeypatch.setenv("PIGGYFLOW_DEFAULT_MAX_RETRIES", "5")
        config = PiggyflowConfig()
        assert config.log_level == "DEBUG"
        assert config.default_max_retries == 5

    def test_nested_env_var_override(self, monkeypatch) -> None:
        """Double underscore addresses nested settings."""
        monkeypatch.setenv("PIGGYFLOW_RECOVERY__CIRCUIT_BREAKER_THRESHOLD", "7")
        config = PiggyflowConfig()
        assert config.recovery.circuit_breaker_threshold == 7


# =============================================================================
# Test: Validation
# =============================================================================
class TestConfigValidation:

    def test_invalid_environment_rejected(self) -> None:
        with pytest.raises(Exception):
            PiggyflowConfig(environment="moon")

    def test_negative_retries_rejected(self) -> None:
        with pytest.raises(Exception):
            PiggyflowConfig(default_max_retries=-1)

    def test_zero_snapshots_rejected(self) -> None:
        with pytest.raises(Exception):
            PersistenceConfig(max_snapshots=0)

    def test_zero_breaker_threshold_rejected(self) -> None:
        with pytest.raises(Exception):
            RecoveryConfig(circuit_breaker_threshold=0)


# =============================================================================
# Test: YAML Loading
# =============================================================================
class TestLoadConfig:

    def test_load_from_yaml(self, tmp_path) -> None:
        path = tmp_path / "piggyflow.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "environment": "staging",
                    "persistence": {"compression_enabled": True, "max_snapshots": 4},
                    "recovery": {"base_retry_delay": 250},
                }
            )
        )
        config = load_config(str(path))
        assert config.environment == "staging"
        assert config.persistence.compression_enabled is True
        assert config.persistence.max_snapshots == 4
        assert config.recovery.base_retry_delay == 250

    def test_auto_detects_piggyflow_yaml(self, tmp_path, monkeypatch) -> None:
        (tmp_path / "piggyflow.yaml").write_text("log_level: WARNING\n")
        monkeypatch.chdir(tmp_path)
        assert load_config().log_level == "WARNING"

    def test_no_file_uses_defaults(self, tmp_path, monkeypatch) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_config().environment == "development"

    def test_empty_file_uses_defaults(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert load_config(str(path)).default_max_retries == 3

    def test_missing_explicit_file_raises(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(str(tmp_path / "absent.yaml"))

    def test_non_mapping_rejected(self, tmp_path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(path))
        assert exc_info.value.error_code == "INVALID_CONFIG_FILE"

    def test_malformed_yaml_rejected(self, tmp_path) -> None:
        path = tmp_path / "broken.yaml"
        path.write_text("persistence: [unclosed\n")
        with pytest.raises(ConfigurationError) as exc_info:
            load_config(str(path))
        assert exc_info.value.error_code == "INVALID_CONFIG_FILE"
