"""Question-answering inference gateway: routing, retries and live progress."""

from __future__ import annotations

from .config import AppConfig, load_config
from .logging_utils import configure_logging

__all__ = ["AppConfig", "configure_logging", "load_config"]

__version__ = "0.4.0"
