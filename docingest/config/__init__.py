"""Configuration module."""

from docingest.config.configuration import (
    AppConfig,
    ConfigurationError,
    CosmosDBConfig,
    DEFAULT_NON_PARSEABLE_TYPES,
    DocumentIntelligenceConfig,
    LoggingConfig,
    ParserConfig,
    StorageConfig,
    get_config,
    get_environment,
    load_config,
    reset_config,
)

__all__ = [
    "AppConfig",
    "ConfigurationError",
    "CosmosDBConfig",
    "DEFAULT_NON_PARSEABLE_TYPES",
    "DocumentIntelligenceConfig",
    "LoggingConfig",
    "ParserConfig",
    "StorageConfig",
    "get_config",
    "get_environment",
    "load_config",
    "reset_config",
]
