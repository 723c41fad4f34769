"""
Centralized logging for Captain's Log.

Provides human-readable console output, optional structured JSON files
with rotation, and service tagging for filtering.
"""

from captainslog.logging.setup import get_logger, reset_logging, setup_logging

__all__ = ["setup_logging", "get_logger", "reset_logging"]
