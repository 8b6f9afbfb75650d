"""Configuration management using Pydantic for validation."""

from pathlib import Path
from typing import Any, Dict, List, Literal

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Phases run after the unit and hierarchy writes, in dependency order.
PHASE_NAMES = (
    "cross_references",
    "media",
    "content",
    "indexing",
    "tolerance_specifications",
    "certification_links",
    "rems_protocols",
)

StrategyName = Literal["per_unit", "nested_batch", "staged"]


class IngestionConfig(BaseSettings):
    """Ingestion engine configuration."""

    strategy: StrategyName = "staged"
    enabled_phases: List[str] = Field(default_factory=lambda: list(PHASE_NAMES))
    progress_interval: int = 50
    timeout_seconds: float | None = None

    # Section classification codes driving the conditional phases
    certification_section_code: str = "BNCC"
    tolerance_code_prefix: str = "40-CFR-"
    nct_root_oid: str = "2.16.840.1.113883.3.1077"

    @field_validator("progress_interval")
    @classmethod
    def validate_progress_interval(cls, v: int) -> int:
        """Validate progress interval is positive."""
        if v < 1:
            raise ValueError("progress_interval must be >= 1")
        return v


class PipelineConfig(BaseSettings):
    """Pipeline configuration."""

    force_reingest: bool = False
    file_patterns: List[str] = ["*.xml"]


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    level: str = "INFO"
    format: Literal["json", "text"] = "text"
    file: str = "logs/splingest.log"
    rotation: str = "10 MB"
    retention: str = "1 week"


class DatabaseConfig(BaseSettings):
    """Database configuration from environment variables."""

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    backend: Literal["neo4j", "memory"] = Field(default="neo4j")

    # Neo4j
    neo4j_uri: str = Field(default="bolt://localhost:7687")
    neo4j_user: str = Field(default="neo4j")
    neo4j_password: str = Field(default="splingest2024")
    neo4j_database: str = Field(default="neo4j")
    neo4j_max_pool_size: int = Field(default=50)


class Config(BaseSettings):
    """Main configuration class."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="allow",
        env_nested_delimiter="__",
    )

    # Configuration sections
    ingestion: IngestionConfig = Field(default_factory=IngestionConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Data paths
    raw_data_path: Path = Field(default=Path("data/raw"))

    @staticmethod
    def _deep_merge_dict(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Deep-merge two dicts (overrides win).

        This is used to apply environment-derived overrides on top of YAML defaults.
        """
        merged: Dict[str, Any] = dict(base)
        for key, value in overrides.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = Config._deep_merge_dict(merged[key], value)
            else:
                merged[key] = value
        return merged

    @classmethod
    def from_yaml(cls, yaml_path: str | Path = "config/config.yaml") -> "Config":
        """Load configuration from YAML file and environment variables.

        Precedence (highest to lowest):
        1) Environment variables / .env
        2) YAML file
        3) Model defaults

        Args:
            yaml_path: Path to YAML configuration file

        Returns:
            Config instance with loaded settings

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            yaml.YAMLError: If YAML file is invalid
        """
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        with open(yaml_path) as f:
            yaml_config = yaml.safe_load(f) or {}

        if not isinstance(yaml_config, dict):
            raise ValueError(f"YAML config root must be a mapping/dict: {yaml_path}")

        # Nested BaseSettings (DatabaseConfig) do not pick up plain env vars such as
        # NEO4J_PASSWORD through the parent model, so compute those overrides separately.
        env_overrides = cls().model_dump(exclude_defaults=True)

        db_env_overrides = DatabaseConfig().model_dump(exclude_defaults=True)
        if db_env_overrides:
            env_overrides["database"] = cls._deep_merge_dict(
                (
                    yaml_config.get("database", {})
                    if isinstance(yaml_config.get("database", {}), dict)
                    else {}
                ),
                db_env_overrides,
            )

        merged = cls._deep_merge_dict(yaml_config, env_overrides)

        return cls(**merged)

    def validate_config(self) -> None:
        """Validate configuration settings.

        Raises:
            ValueError: If configuration is invalid
        """
        unknown = [name for name in self.ingestion.enabled_phases if name not in PHASE_NAMES]
        if unknown:
            raise ValueError(
                f"Unknown ingestion phases: {', '.join(unknown)} "
                f"(known: {', '.join(PHASE_NAMES)})"
            )

        if self.ingestion.timeout_seconds is not None and self.ingestion.timeout_seconds <= 0:
            raise ValueError("ingestion.timeout_seconds must be positive when set")

        if self.database.backend == "neo4j" and not self.database.neo4j_uri:
            raise ValueError("neo4j_uri required when using the neo4j backend")


# Global configuration instance
_config: Config | None = None


def get_config() -> Config:
    """Get or create global configuration instance.

    Returns:
        Global Config instance

    Raises:
        RuntimeError: If configuration hasn't been initialized
    """
    global _config
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call load_config() first.")
    return _config


def load_config(yaml_path: str | Path = "config/config.yaml") -> Config:
    """Load and validate configuration.

    Args:
        yaml_path: Path to YAML configuration file

    Returns:
        Loaded and validated Config instance
    """
    global _config
    _config = Config.from_yaml(yaml_path)
    _config.validate_config()
    return _config


def reset_config() -> None:
    """Reset global configuration (mainly for testing)."""
    global _config
    _config = None
