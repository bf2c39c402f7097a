"""
Catalog Autotune - Core Package
===============================

Configuration, persistence, models, and the self-improvement loop.
"""

from catalog_autotune.core.config import settings
from catalog_autotune.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
