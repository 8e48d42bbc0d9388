"""
Configuration management

Loads configuration from a YAML file with environment variable overrides
"""

import os
import yaml
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator, model_validator
from dotenv import load_dotenv

# Load .env file
load_dotenv()

ENV_PREFIX = "CALLTREE_"


class StorageConfig(BaseModel):
    """Trace storage configuration"""

    backend: str = Field(default="sqlite", description="Storage backend (sqlite, json, memory)")
    connection_string: str = Field(
        default="./data/analytics.db",
        description="SQLite database path or JSON-lines file path"
    )
    retention_days: int = Field(default=30, ge=1, description="Days to keep persisted traces")
    write_queue_size: int = Field(default=1000, ge=1, description="Pending writes before new ones are dropped")

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        """Validate backend selector"""
        valid_backends = ["sqlite", "json", "memory"]
        v = v.lower()
        if v not in valid_backends:
            raise ValueError(f"Invalid storage backend: {v}. Must be one of {valid_backends}")
        return v


class AlertThresholdsConfig(BaseModel):
    """Alert thresholds"""

    response_time_ms: float = Field(default=1000.0, gt=0, description="Response time threshold (ms)")
    error_rate: float = Field(default=0.05, ge=0.0, le=1.0, description="Error rate threshold (fraction)")
    memory_usage: float = Field(default=0.8, ge=0.0, le=1.0, description="Memory usage threshold (fraction)")
    cpu_usage: float = Field(default=0.8, ge=0.0, le=1.0, description="CPU usage threshold (fraction)")


class RealTimeConfig(BaseModel):
    """Real-time processor configuration"""

    enabled: bool = Field(default=True, description="Run the real-time processor")
    processing_interval_seconds: float = Field(default=1.0, gt=0, description="Tick interval (seconds)")
    enable_alerts: bool = Field(default=True, description="Evaluate alert rules")
    alert_cooldown_seconds: float = Field(default=60.0, ge=0, description="Per-alert-id cooldown (seconds)")
    max_recent_traces: int = Field(default=1000, ge=1, description="Rolling buffer capacity")
    retention_window_seconds: float = Field(default=3600.0, gt=0, description="Rolling buffer retention (seconds)")
    usage_pattern_threshold: int = Field(default=5, ge=0, description="Tool count above which a pattern is reported")


class PerformanceConfig(BaseModel):
    """Performance monitoring configuration"""

    enabled: bool = Field(default=True, description="Sample resources and emit performance samples")
    sampling_rate: float = Field(default=1.0, ge=0.0, le=1.0, description="Fraction of commands traced")
    thresholds: AlertThresholdsConfig = Field(
        default_factory=AlertThresholdsConfig,
        description="Alert thresholds"
    )


class OptimizationConfig(BaseModel):
    """Analytics engine heuristics"""

    cache_hit_rate: float = Field(default=0.8, ge=0.0, le=1.0, description="Target cache hit rate")
    cache_hit_rate_critical: float = Field(
        default=0.5, ge=0.0, le=1.0,
        description="Cache hit rate below which priority is high"
    )
    external_response_time_ms: float = Field(default=1000.0, gt=0, description="External lookup latency target (ms)")
    tool_execution_time_ms: float = Field(default=500.0, gt=0, description="Tool execution time target (ms)")
    slowest_operations_count: int = Field(default=3, ge=0, description="Size of the slowest-operations ranking")
    lookback_hours: float = Field(default=24.0, gt=0, description="Recommendation lookback window (hours)")
    usage_pattern_min_count: int = Field(default=5, ge=0, description="Aggregate tool count for a usage pattern")
    benchmark_baseline_ms: float = Field(default=1000.0, gt=0, description="Benchmark baseline execution time (ms)")

    @model_validator(mode="after")
    def validate_cache_thresholds(self) -> "OptimizationConfig":
        """The critical threshold must not exceed the target"""
        if self.cache_hit_rate_critical > self.cache_hit_rate:
            raise ValueError("cache_hit_rate_critical must be <= cache_hit_rate")
        return self


class AnalyticsConfig(BaseModel):
    """Analytics pipeline configuration"""

    enabled: bool = Field(default=True, description="Master switch for tracing and analytics")
    enable_usage_patterns: bool = Field(default=True, description="Record user pattern signals")
    storage: StorageConfig = Field(default_factory=StorageConfig)
    realtime: RealTimeConfig = Field(default_factory=RealTimeConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)


class LoggingConfig(BaseModel):
    """Logging configuration"""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s",
        description="Log format"
    )
    file: Optional[str] = Field(default="./logs/calltree.log", description="Log file path")
    max_bytes: int = Field(default=10485760, description="Max log file size (10MB)")
    backup_count: int = Field(default=5, description="Rotated log files to keep")


class APIConfig(BaseModel):
    """HTTP API configuration"""

    host: str = Field(default="0.0.0.0", description="Bind host")
    port: int = Field(default=8000, description="Bind port")
    workers: int = Field(default=1, description="Worker processes")
    reload: bool = Field(default=False, description="Auto reload")
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"], description="CORS origins")


class Config(BaseModel):
    """Top-level configuration"""

    # Environment
    environment: str = Field(default="development", description="Runtime environment (development, production)")
    debug: bool = Field(default=True, description="Debug mode")

    # Sections
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment name"""
        valid_envs = ["development", "production", "test"]
        if v not in valid_envs:
            raise ValueError(f"Invalid environment: {v}. Must be one of {valid_envs}")
        return v


class ConfigManager:
    """
    Configuration manager

    Loads configuration from YAML and applies environment overrides
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration manager

        Args:
            config_path: YAML file path, defaults to config/settings.yaml
        """
        self.config_path = config_path or self._find_config_file()
        self._config: Optional[Config] = None

    @staticmethod
    def _find_config_file() -> str:
        """
        Locate the configuration file

        Search order:
        1. ./config/settings.yaml
        2. ./settings.yaml
        3. ~/.config/calltree/settings.yaml
        """
        possible_paths = [
            "./config/settings.yaml",
            "./settings.yaml",
            os.path.expanduser("~/.config/calltree/settings.yaml"),
        ]

        for path in possible_paths:
            if os.path.exists(path):
                return path

        return "./config/settings.yaml"

    def load_yaml(self) -> Dict[str, Any]:
        """
        Load configuration from YAML

        Returns:
            Configuration dict
        """
        if not os.path.exists(self.config_path):
            return {}

        with open(self.config_path, "r", encoding="utf-8") as f:
            return yaml.safe_load(f) or {}

    def _override_from_env(self, config_dict: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply environment variable overrides

        Nested keys are separated by __, for example:
        CALLTREE_ANALYTICS__STORAGE__BACKEND=json
        CALLTREE_ANALYTICS__PERFORMANCE__SAMPLING_RATE=0.5

        Args:
            config_dict: Configuration loaded from YAML

        Returns:
            Configuration with overrides applied
        """
        result = config_dict.copy()

        for env_key, env_value in os.environ.items():
            if env_key.startswith(ENV_PREFIX):
                key = env_key[len(ENV_PREFIX):]
                key = key.replace("__", ".").lower()
                parts = key.split(".")

                # Set nested value
                current = result
                for part in parts[:-1]:
                    if not isinstance(current.get(part), dict):
                        current[part] = {}
                    else:
                        current[part] = dict(current[part])
                    current = current[part]
                current[parts[-1]] = self._parse_env_value(env_value)

        return result

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """
        Parse an environment variable value

        Args:
            value: Raw value

        Returns:
            bool, int, float or the original string
        """
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        return value

    def load(self) -> Config:
        """
        Load configuration

        Returns:
            Config object
        """
        if self._config is not None:
            return self._config

        yaml_config = self.load_yaml()
        merged_config = self._override_from_env(yaml_config)

        self._config = Config(**merged_config)
        return self._config

    def reload(self) -> Config:
        """
        Reload configuration

        Returns:
            Config object
        """
        self._config = None
        return self.load()

    def save(self, path: Optional[str] = None) -> None:
        """
        Save current configuration to YAML

        Args:
            path: Target path, defaults to the loaded file
        """
        save_path = path or self.config_path

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        config_dict = self.load().model_dump(exclude_none=True)

        with open(save_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(config_dict, f, allow_unicode=True, default_flow_style=False)


# Global configuration manager
_config_manager: Optional[ConfigManager] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """
    Get the global configuration

    Args:
        config_path: Optional configuration file path

    Returns:
        Config object
    """
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager(config_path)

    return _config_manager.load()


def get_config_manager() -> ConfigManager:
    """
    Get the global configuration manager

    Returns:
        ConfigManager
    """
    global _config_manager

    if _config_manager is None:
        _config_manager = ConfigManager()

    return _config_manager


def reload_config() -> Config:
    """
    Reload the global configuration

    Returns:
        Config object
    """
    global _config_manager

    if _config_manager is not None:
        return _config_manager.reload()

    return get_config()
