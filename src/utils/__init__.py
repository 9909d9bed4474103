"""Shared utilities for configuration, logging, and retries"""

from src.utils.config_loader import ConfigLoader, ConfigurationError
from src.utils.logging_config import bind_sync_context, configure_logging
from src.utils.retry import exponential_backoff_retry

__all__ = [
    "ConfigLoader",
    "ConfigurationError",
    "bind_sync_context",
    "configure_logging",
    "exponential_backoff_retry",
]
