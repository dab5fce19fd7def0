"""Configuration module for the document ingestion pipeline.

Loads settings from environment-specific config files:
- APP_ENV=dev  → config_dev.yaml (SQLite metadata, local blob directory)
- APP_ENV=test → config_test.yaml (CosmosDB metadata, production-like testing)
- Default      → config.yaml

Secrets are loaded from the .env file.
Fails fast with clear error messages if required configuration is missing.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

import yaml
from dotenv import load_dotenv


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


DEFAULT_NON_PARSEABLE_TYPES = (
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
)


def _get_project_root() -> Path:
    """Get the project root directory (where config.yaml lives)."""
    # Navigate from docingest/config/ up to project root
    return Path(__file__).parent.parent.parent


def _get_config_filename() -> str:
    """Get config filename based on APP_ENV environment variable.

    Returns:
        Config filename:
        - APP_ENV=dev  → config_dev.yaml
        - APP_ENV=test → config_test.yaml
        - Default      → config.yaml
    """
    app_env = os.environ.get("APP_ENV", "").lower()

    if app_env == "dev":
        return "config_dev.yaml"
    elif app_env == "test":
        return "config_test.yaml"
    else:
        return "config.yaml"


def _load_yaml_config() -> dict:
    """Load configuration from environment-specific config file."""
    config_filename = _get_config_filename()
    config_path = _get_project_root() / config_filename

    if not config_path.exists():
        raise ConfigurationError(
            f"Configuration file not found: {config_path}. "
            f"Set APP_ENV to 'dev' or 'test', or create {config_filename}."
        )

    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


def _get_required_env(key: str) -> str:
    """Get required environment variable or raise ConfigurationError."""
    value = os.environ.get(key)
    if not value:
        raise ConfigurationError(
            f"Required environment variable '{key}' is not set. "
            f"Please add it to your .env file."
        )
    return value


def _get_optional_env(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get optional environment variable with default."""
    return os.environ.get(key, default)


def _positive_number(section: dict, key: str, default, cast=float):
    value = cast(section.get(key, default))
    if value < 0:
        raise ConfigurationError(f"Configuration value '{key}' must not be negative, got {value}")
    return value


@dataclass(frozen=True)
class StorageConfig:
    """Blob and metadata storage configuration."""
    blob_path: str
    metadata_backend: str  # "sqlite" or "cosmosdb"
    sqlite_path: str
    blob_timeout_seconds: float
    metadata_timeout_seconds: float


@dataclass(frozen=True)
class ParserConfig:
    """Parse orchestration settings."""
    backend: str  # "document_intelligence" or "disabled"
    mode: str
    max_text_length: int = 200_000
    poll_interval_seconds: float = 2.0
    max_poll_attempts: int = 30
    transport_retries: int = 2
    retry_backoff_seconds: float = 1.0
    non_parseable_types: Tuple[str, ...] = field(default=DEFAULT_NON_PARSEABLE_TYPES)


@dataclass(frozen=True)
class DocumentIntelligenceConfig:
    """Azure Document Intelligence configuration."""
    api_key: str
    endpoint: str
    api_version: str


@dataclass(frozen=True)
class CosmosDBConfig:
    """Azure Cosmos DB configuration for attachment and content metadata."""
    endpoint: str
    key: str
    database_name: str
    container_name: str
    partition_key_path: str


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""
    level: str


@dataclass(frozen=True)
class AppConfig:
    """Main application configuration container."""
    storage: StorageConfig
    parser: ParserConfig
    logging: LoggingConfig
    document_intelligence: Optional[DocumentIntelligenceConfig]  # Only when parser.backend == "document_intelligence"
    cosmosdb: Optional[CosmosDBConfig]  # Only when storage.metadata_backend == "cosmosdb"


def load_config() -> AppConfig:
    """
    Load and validate all application configuration.

    Loads from the YAML file for non-sensitive settings and .env for API keys.
    Fails fast if required configuration is missing.

    Returns:
        AppConfig: Validated application configuration.

    Raises:
        ConfigurationError: If required configuration is missing.
    """
    # Load environment variables from .env file
    load_dotenv()

    # Load YAML configuration
    yaml_config = _load_yaml_config()

    # Build Storage config
    storage_section = yaml_config.get("storage", {})
    metadata_backend = storage_section.get("metadata_backend", "sqlite")
    if metadata_backend not in ("sqlite", "cosmosdb"):
        raise ConfigurationError(
            f"Unknown metadata backend '{metadata_backend}'. Use 'sqlite' or 'cosmosdb'."
        )

    storage_config = StorageConfig(
        blob_path=_get_optional_env("BLOB_STORAGE_PATH") or storage_section.get("blob_path", "storage/blobs"),
        metadata_backend=metadata_backend,
        sqlite_path=storage_section.get("sqlite_path", "document_metadata.db"),
        blob_timeout_seconds=_positive_number(storage_section, "blob_timeout_seconds", 10.0),
        metadata_timeout_seconds=_positive_number(storage_section, "metadata_timeout_seconds", 5.0),
    )

    # Build Parser config
    parser_section = yaml_config.get("parser", {})
    parser_backend = parser_section.get("backend", "document_intelligence")
    if parser_backend not in ("document_intelligence", "disabled"):
        raise ConfigurationError(
            f"Unknown parser backend '{parser_backend}'. Use 'document_intelligence' or 'disabled'."
        )

    parser_config = ParserConfig(
        backend=parser_backend,
        mode=parser_section.get("mode", "prebuilt-layout"),
        max_text_length=_positive_number(parser_section, "max_text_length", 200_000, int),
        poll_interval_seconds=_positive_number(parser_section, "poll_interval_seconds", 2.0),
        max_poll_attempts=_positive_number(parser_section, "max_poll_attempts", 30, int),
        transport_retries=_positive_number(parser_section, "transport_retries", 2, int),
        retry_backoff_seconds=_positive_number(parser_section, "retry_backoff_seconds", 1.0),
        non_parseable_types=tuple(
            t.lower() for t in parser_section.get("non_parseable_types", DEFAULT_NON_PARSEABLE_TYPES)
        ),
    )

    # Build Document Intelligence config (only if it is the parser backend)
    document_intelligence_config: Optional[DocumentIntelligenceConfig] = None
    if parser_backend == "document_intelligence":
        doc_intel_section = yaml_config.get("document_intelligence", {})
        document_intelligence_config = DocumentIntelligenceConfig(
            api_key=_get_required_env("DOCUMENT_INTELLIGENCE_KEY"),
            endpoint=doc_intel_section.get("endpoint") or _get_required_env("DOCUMENT_INTELLIGENCE_ENDPOINT"),
            api_version=doc_intel_section.get("api_version", "2024-11-30"),
        )

    # Build CosmosDB config (only if backend is cosmosdb)
    cosmosdb_config: Optional[CosmosDBConfig] = None
    if metadata_backend == "cosmosdb":
        cosmosdb_section = yaml_config.get("cosmosdb", {})
        cosmosdb_config = CosmosDBConfig(
            endpoint=_get_required_env("COSMOSDB_ENDPOINT"),
            key=_get_required_env("COSMOSDB_KEY"),
            database_name=cosmosdb_section.get("database_name", "document_ingestion"),
            container_name=cosmosdb_section.get("container_name", "metadata"),
            partition_key_path=cosmosdb_section.get("partition_key_path", "/collection"),
        )

    # Build Logging config
    logging_section = yaml_config.get("logging", {})

    logging_config = LoggingConfig(
        level=logging_section.get("level", "INFO"),
    )

    return AppConfig(
        storage=storage_config,
        parser=parser_config,
        logging=logging_config,
        document_intelligence=document_intelligence_config,
        cosmosdb=cosmosdb_config,
    )


# Module-level singleton for convenience
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the application configuration singleton.

    Lazy-loads configuration on first access.
    Config file is selected based on APP_ENV environment variable.

    Returns:
        AppConfig: Application configuration.

    Raises:
        ConfigurationError: If required configuration is missing.
    """
    global _config
    if _config is None:
        _config = load_config()
    return _config


def get_environment() -> str:
    """Get current environment name.

    Returns:
        'dev', 'test', or 'default' based on APP_ENV.
    """
    app_env = os.environ.get("APP_ENV", "").lower()
    return app_env if app_env in ("dev", "test") else "default"


def reset_config() -> None:
    """Reset the config singleton. Useful for testing."""
    global _config
    _config = None
