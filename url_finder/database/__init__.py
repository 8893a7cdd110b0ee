# url_finder/database/__init__.py
"""
Database package: declarative base and ORM models.
"""

from .base import Base
from .models import (
    BmsBandwidthResult,
    DealLabel,
    StorageProvider,
    UnifiedVerifiedDeal,
    UrlResult,
)

__all__ = [
    "Base",
    "BmsBandwidthResult",
    "DealLabel",
    "StorageProvider",
    "UnifiedVerifiedDeal",
    "UrlResult",
]
