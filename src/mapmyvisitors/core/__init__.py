"""
Core storage module.

Contains the row models and the store used by the API routes.
"""

from .models import Account, Location, VisitorEvent
from .store import SQLiteVisitorStore, StoreError, VisitorStore, create_store

__all__ = [
    "Account", "Location", "VisitorEvent",
    "VisitorStore", "SQLiteVisitorStore", "StoreError", "create_store",
]
