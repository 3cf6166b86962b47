"""Shared utilities for campaign-bridge services.

Structured logging helpers used by every module in the service.
"""

__version__ = "0.1.0"

from bridge_shared.logging import call_context, get_logger, setup_logging

__all__ = [
    "setup_logging",
    "get_logger",
    "call_context",
]
