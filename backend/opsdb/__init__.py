# backend/opsdb/__init__.py
"""
Stock-ledger backend.

Importing the package registers every ORM model on `opsdb.database.Base`,
so Alembic and Base.metadata.create_all() see all four tables.
"""

from .apps.inventory import models as inventory_models  # items, orders, movements, counters

__all__ = ["inventory_models"]
