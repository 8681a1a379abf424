"""
Error taxonomy shared by the ledger engine and its HTTP surface.

Every error carries a short machine `code` and a list of `detail` dicts
(item/line identifiers, requested vs. available quantities) so callers can
present an actionable message without parsing strings.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class LedgerError(Exception):
    code = "ledger_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        detail: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.detail: List[Dict[str, Any]] = detail or []

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}


class ValidationError(LedgerError):
    """Insufficient stock, malformed payload, over-return/over-scrap quantities."""

    code = "validation_error"


class NotFoundError(LedgerError):
    code = "not_found"


class ConcurrencyConflict(LedgerError):
    """A transaction exhausted its retry budget; safe to retry later."""

    code = "concurrency_conflict"


class ConfigurationError(LedgerError):
    code = "configuration_error"
