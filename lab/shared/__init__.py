"""
Shared utilities for the pipeline lab.

This module contains helpers used across the session, engine and HTTP layers.
"""
from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
