"""
Glass - Core Package
====================

Core business logic, models, and schemas.
"""

from glass.core.config import settings
from glass.core.database import AsyncSessionLocal, Base

__all__ = ["AsyncSessionLocal", "Base", "settings"]
