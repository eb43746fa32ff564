"""Configuration module for Searchmatic."""

from .settings import (
    Settings,
    get_settings,
    configure_logging,
    MODEL_PRICING,
    REVIEW_TYPES,
    FOCUS_AREAS,
)

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "MODEL_PRICING",
    "REVIEW_TYPES",
    "FOCUS_AREAS",
]
