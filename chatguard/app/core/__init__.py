"""Core utilities for the chatguard application."""

from chatguard.app.core.config import settings
from chatguard.app.core.context import ClientContext, get_client_context
from chatguard.app.core.logging import get_logger, setup_logging

__all__ = [
    "settings",
    "ClientContext",
    "get_client_context",
    "get_logger",
    "setup_logging",
]
