"""
PaceCore - Request orchestration core for polite, resilient crawling.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .crawler import RequestOrchestrator
from .exceptions import PaceCoreError

__all__ = ["__version__", "Config", "PaceCoreError", "RequestOrchestrator"]
