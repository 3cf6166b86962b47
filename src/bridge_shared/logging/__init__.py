"""Structured logging."""

from bridge_shared.logging.setup import call_context, get_logger, setup_logging

__all__ = ["setup_logging", "get_logger", "call_context"]
