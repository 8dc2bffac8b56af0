"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for control-plane configs.
"""

import os
import tempfile

import pytest
import yaml

from ai_cost_control.config.loader import (
    load_control_plane_config,
    BudgetDefaults,
    CacheConfig,
    ControlPlaneConfig,
    InflightConfig,
    OperationConfig
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "budget": {
                "monthly_budget_cents": 25000,
                "alert_at_75": False,
                "alert_at_90": True,
                "auto_pause_at_100": True
            },
            "cache": {
                "default_ttl_hours": 12,
                "record_cache_hits": False
            },
            "inflight": {
                "wait_seconds": 5,
                "marker_ttl_seconds": 60
            },
            "operations": {
                "summarization": {
                    "similarity_threshold": 0.95,
                    "cache_ttl_hours": 168
                },
                "classification": {
                    "similarity_threshold": 0.9
                }
            }
        }

        config = load_control_plane_config(self._write_config(config_data))

        assert config.budget.monthly_budget_cents == 25000
        assert config.budget.alert_at_75 is False
        assert config.budget.auto_pause_at_100 is True
        assert config.cache.default_ttl_hours == 12.0
        assert config.cache.record_cache_hits is False
        assert config.inflight.wait_seconds == 5.0
        assert config.inflight.marker_ttl_seconds == 60.0
        assert config.similarity_threshold("summarization") == 0.95
        assert config.cache_ttl_hours("summarization") == 168.0
        assert config.cache_ttl_hours("classification") == 12.0

    def test_sections_are_optional(self):
        """Omitted sections take documented defaults."""
        config = load_control_plane_config(self._write_config({
            "operations": {"summarization": {"similarity_threshold": 0.97}}
        }))

        assert config.budget == BudgetDefaults()
        assert config.budget.monthly_budget_cents == 10000
        assert config.budget.alert_at_75 is True
        assert config.budget.alert_at_90 is True
        assert config.budget.auto_pause_at_100 is False
        assert config.cache == CacheConfig()
        assert config.inflight == InflightConfig()

    def test_unconfigured_operation_has_no_threshold(self):
        """There is no universal similarity threshold."""
        config = load_control_plane_config(self._write_config({
            "operations": {"summarization": {"similarity_threshold": 0.97}}
        }))

        assert config.similarity_threshold("classification") is None
        assert config.get_operation_config("classification") == OperationConfig()

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Control plane config file not found"):
            load_control_plane_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_control_plane_config(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("budget: [unclosed\n")

        with pytest.raises(yaml.YAMLError):
            load_control_plane_config(config_path)

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"budgets": {"monthly_budget_cents": 100}})

        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_control_plane_config(config_path)

    def test_unknown_budget_key_rejected(self):
        config_path = self._write_config({"budget": {"daily": 100}})

        with pytest.raises(ValueError, match="Unknown budget keys"):
            load_control_plane_config(config_path)

    def test_unknown_operation_key_rejected(self):
        config_path = self._write_config({
            "operations": {"summarization": {"threshold": 0.9}}
        })

        with pytest.raises(ValueError, match="Unknown keys in operations.summarization"):
            load_control_plane_config(config_path)

    @pytest.mark.parametrize("budget", [0, -100, 99.5, "lots", True])
    def test_invalid_budget_rejected(self, budget):
        config_path = self._write_config({"budget": {"monthly_budget_cents": budget}})

        with pytest.raises(ValueError, match="monthly_budget_cents"):
            load_control_plane_config(config_path)

    def test_non_boolean_flag_rejected(self):
        config_path = self._write_config({"budget": {"auto_pause_at_100": "yes"}})

        with pytest.raises(ValueError, match="auto_pause_at_100"):
            load_control_plane_config(config_path)

    @pytest.mark.parametrize("threshold", [0, -0.5, 1.01, "high"])
    def test_invalid_similarity_threshold_rejected(self, threshold):
        config_path = self._write_config({
            "operations": {"summarization": {"similarity_threshold": threshold}}
        })

        with pytest.raises(ValueError, match="similarity_threshold"):
            load_control_plane_config(config_path)

    def test_invalid_ttl_rejected(self):
        config_path = self._write_config({"cache": {"default_ttl_hours": 0}})

        with pytest.raises(ValueError, match="default_ttl_hours"):
            load_control_plane_config(config_path)

    def test_operation_must_be_mapping(self):
        config_path = self._write_config({"operations": {"summarization": 0.9}})

        with pytest.raises(ValueError, match="must be a dictionary"):
            load_control_plane_config(config_path)


class TestConfigDataclasses:
    """Test validation performed by the config dataclasses themselves."""

    def test_default_config(self):
        config = ControlPlaneConfig.default()
        assert config.budget.monthly_budget_cents == 10000
        assert config.operations == {}
        assert config.cache_ttl_hours("anything") == 24.0

    def test_budget_must_be_positive(self):
        with pytest.raises(ValueError, match="monthly_budget_cents must be > 0"):
            BudgetDefaults(monthly_budget_cents=0)

    def test_threshold_range(self):
        with pytest.raises(ValueError, match="similarity_threshold must be in"):
            OperationConfig(similarity_threshold=1.5)

    def test_negative_wait_rejected(self):
        with pytest.raises(ValueError, match="wait_seconds must be >= 0"):
            InflightConfig(wait_seconds=-1)
