"""
Configuration management unit tests
"""

import pytest
import yaml

from config import (
    AlertThresholdsConfig,
    AnalyticsConfig,
    APIConfig,
    Config,
    ConfigManager,
    LoggingConfig,
    OptimizationConfig,
    PerformanceConfig,
    RealTimeConfig,
    StorageConfig,
    get_config,
    get_config_manager,
    reload_config,
)


class TestStorageConfig:
    """Test storage configuration"""

    def test_default_values(self):
        config = StorageConfig()
        assert config.backend == "sqlite"
        assert config.connection_string == "./data/analytics.db"
        assert config.retention_days == 30
        assert config.write_queue_size == 1000

    def test_backend_normalized(self):
        """Test backend names are lowercased"""
        assert StorageConfig(backend="JSON").backend == "json"

    def test_backend_validation(self):
        with pytest.raises(ValueError):
            StorageConfig(backend="postgresql")

    def test_retention_validation(self):
        with pytest.raises(ValueError):
            StorageConfig(retention_days=0)


class TestAlertThresholdsConfig:
    """Test alert thresholds"""

    def test_default_values(self):
        config = AlertThresholdsConfig()
        assert config.response_time_ms == 1000.0
        assert config.error_rate == 0.05
        assert config.memory_usage == 0.8
        assert config.cpu_usage == 0.8

    def test_fraction_validation(self):
        """Test fractional thresholds stay within [0, 1]"""
        AlertThresholdsConfig(error_rate=0.0)
        AlertThresholdsConfig(error_rate=1.0)

        with pytest.raises(ValueError):
            AlertThresholdsConfig(error_rate=1.5)
        with pytest.raises(ValueError):
            AlertThresholdsConfig(memory_usage=-0.1)


class TestRealTimeConfig:
    """Test real-time processor configuration"""

    def test_default_values(self):
        config = RealTimeConfig()
        assert config.enabled is True
        assert config.processing_interval_seconds == 1.0
        assert config.alert_cooldown_seconds == 60.0
        assert config.max_recent_traces == 1000
        assert config.retention_window_seconds == 3600.0
        assert config.usage_pattern_threshold == 5

    def test_interval_validation(self):
        with pytest.raises(ValueError):
            RealTimeConfig(processing_interval_seconds=0)


class TestPerformanceConfig:
    """Test performance configuration"""

    def test_sampling_rate_validation(self):
        PerformanceConfig(sampling_rate=0.0)
        PerformanceConfig(sampling_rate=1.0)

        with pytest.raises(ValueError):
            PerformanceConfig(sampling_rate=1.1)
        with pytest.raises(ValueError):
            PerformanceConfig(sampling_rate=-0.1)


class TestOptimizationConfig:
    """Test heuristic thresholds"""

    def test_default_values(self):
        config = OptimizationConfig()
        assert config.cache_hit_rate == 0.8
        assert config.cache_hit_rate_critical == 0.5
        assert config.external_response_time_ms == 1000.0
        assert config.tool_execution_time_ms == 500.0
        assert config.slowest_operations_count == 3
        assert config.lookback_hours == 24.0

    def test_critical_above_target_rejected(self):
        """Test the critical cache threshold cannot exceed the target"""
        with pytest.raises(ValueError):
            OptimizationConfig(cache_hit_rate=0.5, cache_hit_rate_critical=0.6)


class TestConfig:
    """Test top-level configuration"""

    def test_default_values(self):
        config = Config()
        assert config.environment == "development"
        assert isinstance(config.analytics, AnalyticsConfig)
        assert isinstance(config.logging, LoggingConfig)
        assert isinstance(config.api, APIConfig)

    def test_environment_validation(self):
        Config(environment="production")
        Config(environment="test")

        with pytest.raises(ValueError):
            Config(environment="staging")

    def test_config_from_dict(self):
        config = Config(**{
            "environment": "production",
            "analytics": {
                "storage": {"backend": "memory"},
                "performance": {"thresholds": {"response_time_ms": 250}},
            },
        })
        assert config.analytics.storage.backend == "memory"
        assert config.analytics.performance.thresholds.response_time_ms == 250
        assert config.analytics.realtime.enabled is True


class TestConfigManager:
    """Test the configuration manager"""

    def test_load_yaml(self, tmp_path):
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"analytics": {"storage": {"backend": "json"}}}))

        manager = ConfigManager(str(config_file))

        assert manager.load_yaml()["analytics"]["storage"]["backend"] == "json"

    def test_load_yaml_nonexistent(self):
        manager = ConfigManager("/nonexistent/config.yaml")
        assert manager.load_yaml() == {}

    def test_parse_env_value(self):
        """Test bool, int, float and string parsing"""
        manager = ConfigManager("/nonexistent/config.yaml")

        assert manager._parse_env_value("true") is True
        assert manager._parse_env_value("YES") is True
        assert manager._parse_env_value("false") is False
        assert manager._parse_env_value("no") is False
        assert manager._parse_env_value("1") == 1
        assert manager._parse_env_value("0.5") == 0.5
        assert manager._parse_env_value("json") == "json"

    def test_override_from_env(self, tmp_path, monkeypatch):
        """Test nested overrides with the CALLTREE_ prefix"""
        config_file = tmp_path / "settings.yaml"
        config_data = {"analytics": {"storage": {"backend": "sqlite"}}}
        config_file.write_text(yaml.dump(config_data))

        monkeypatch.setenv("CALLTREE_ENVIRONMENT", "production")
        monkeypatch.setenv("CALLTREE_ANALYTICS__STORAGE__BACKEND", "memory")
        monkeypatch.setenv("CALLTREE_ANALYTICS__PERFORMANCE__SAMPLING_RATE", "0.5")
        monkeypatch.setenv("CALLTREE_ANALYTICS__REALTIME__ENABLED", "false")

        manager = ConfigManager(str(config_file))
        config = manager.load()

        assert config.environment == "production"
        assert config.analytics.storage.backend == "memory"
        assert config.analytics.performance.sampling_rate == 0.5
        assert config.analytics.realtime.enabled is False
        assert config_data["analytics"]["storage"]["backend"] == "sqlite"

    def test_load_config_caching(self, tmp_path):
        manager = ConfigManager(str(tmp_path / "settings.yaml"))

        assert manager.load() is manager.load()

    def test_reload_config(self, tmp_path):
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(yaml.dump({"debug": True}))
        manager = ConfigManager(str(config_file))
        first = manager.load()

        config_file.write_text(yaml.dump({"debug": False}))
        second = manager.reload()

        assert first.debug is True
        assert second.debug is False

    def test_save_config(self, tmp_path):
        config_file = tmp_path / "nested" / "settings.yaml"
        manager = ConfigManager(str(config_file))
        manager._config = Config(
            environment="production",
            analytics=AnalyticsConfig(storage=StorageConfig(backend="json")),
        )

        manager.save()

        with open(config_file) as f:
            saved = yaml.safe_load(f)
        assert saved["environment"] == "production"
        assert saved["analytics"]["storage"]["backend"] == "json"


class TestGlobalConfig:
    """Test module-level helpers"""

    def test_get_config(self):
        assert isinstance(get_config(), Config)

    def test_config_manager_singleton(self):
        assert get_config_manager() is get_config_manager()

    def test_reload_global_config(self):
        config1 = get_config()
        config2 = reload_config()
        assert config1 is not config2
