"""
Inventory module.

Per-location stock ledger, append-only movement log, order lifecycles
(service dispatch, transfers, material requests, vouchers, counts) and
transfer-history audit & repair.

The router is imported by opsdb.main directly; importing it here would make
the workflow app and this package import each other.
"""

from . import models  # noqa: F401
