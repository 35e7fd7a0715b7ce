"""Utility modules for the CRM export core."""

from .logger import ContextAwareLogger, configure_logging, get_logger

__all__ = ["ContextAwareLogger", "configure_logging", "get_logger"]
