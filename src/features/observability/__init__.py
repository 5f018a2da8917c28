"""Observability module for logging."""

from src.features.observability.logging import (
    configure_logging,
    get_logger,
    resolve_level,
)


__all__ = [
    "configure_logging",
    "get_logger",
    "resolve_level",
]
