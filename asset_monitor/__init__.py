"""Asset change compliance monitor."""

from __future__ import annotations

from .config import MonitorSettings
from .core import ComplianceMonitor, ProcessingResult, State
from .findings import ComplianceStatus, Violation
from .model import Asset, FeedMessage, normalize

__all__ = [
    "Asset",
    "ComplianceMonitor",
    "ComplianceStatus",
    "FeedMessage",
    "MonitorSettings",
    "ProcessingResult",
    "State",
    "Violation",
    "normalize",
]
