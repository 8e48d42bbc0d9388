"""
Configuration module

Exports configuration models and accessors
"""

from .config import (
    Config,
    ConfigManager,
    AnalyticsConfig,
    StorageConfig,
    AlertThresholdsConfig,
    RealTimeConfig,
    PerformanceConfig,
    OptimizationConfig,
    LoggingConfig,
    APIConfig,
    get_config,
    get_config_manager,
    reload_config,
)

__all__ = [
    "Config",
    "ConfigManager",
    "AnalyticsConfig",
    "StorageConfig",
    "AlertThresholdsConfig",
    "RealTimeConfig",
    "PerformanceConfig",
    "OptimizationConfig",
    "LoggingConfig",
    "APIConfig",
    "get_config",
    "get_config_manager",
    "reload_config",
]
