"""Configuration module for Fiscalia."""

from fiscalia.config.logging import (
    bind_correlation_id,
    clear_correlation_id,
    configure_logging,
    get_logger,
)
from fiscalia.config.settings import FlatSettings, get_settings

__all__ = [
    "FlatSettings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "bind_correlation_id",
    "clear_correlation_id",
]
