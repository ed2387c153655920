"""
Configuration settings for EnhancerLink.

Analysis thresholds are loaded from environment variables (prefix
``ENHANCERLINK_``) or a ``.env`` file, so call sites can tune clustering and
expression filters without code changes.
"""

import logging
from typing import Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class Settings(BaseSettings):
    """Analysis settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="ENHANCERLINK_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application
    app_name: str = "EnhancerLink"
    app_version: str = "0.1.0"
    log_level: str = "INFO"

    # Contact anchors
    contact_flank: int = Field(default=1000, ge=0)

    # Unidirectional (tag) clustering
    merge_dist: int = Field(default=20, ge=0)
    pooled_cutoff: float = Field(default=3.0, ge=0)

    # Bidirectional clustering
    bidirectional_window: int = Field(default=199, ge=1)
    balance_threshold: float = Field(default=0.9, ge=0, le=1)

    # Annotation
    tss_window: int = Field(default=100, ge=0)

    # Support tiers: (min count per sample, min samples)
    enhancer_support: Tuple[float, int] = (0, 1)
    tss_support: Tuple[float, int] = (1, 2)

    # Expression filter applied per cell type before aggregation
    expression_min_tpm: float = Field(default=1.0, ge=0)
    expression_min_samples: int = Field(default=2, ge=1)

    # Parallelism
    max_workers: int = Field(default=4, ge=1)

    @field_validator("enhancer_support", "tss_support")
    @classmethod
    def _check_support(cls, value: Tuple[float, int]) -> Tuple[float, int]:
        min_count, min_samples = value
        if min_count < 0 or min_samples < 1:
            raise ValueError(f"Support tier must have min_count >= 0 and min_samples >= 1, got {value}")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        value = value.upper()
        if value not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {value}")
        return value


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging with the package format."""
    logging.basicConfig(level=getattr(logging, level.upper()), format=LOG_FORMAT)


def get_settings(**overrides) -> Settings:
    """Build a Settings instance, applying keyword overrides on top of the environment."""
    return Settings(**overrides)

