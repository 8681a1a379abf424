"""
Sequence reservation for human-readable order codes.

Counters live in `sequence_counters`, one row per (entity type, year, month)
scope. `reserve_next` must run inside the same transaction as the insert of
the order that consumes the value: if that transaction rolls back, so does the
increment. A retried transaction may skip values; it never repeats one.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from opsdb.errors import ValidationError

from . import models

ORDER_CODE_PREFIXES = {
    models.OrderKindEnum.SERVICE: "SVC",
    models.OrderKindEnum.TRANSFER: "TRS",
    models.OrderKindEnum.MATERIAL_REQUEST: "MR",
    models.OrderKindEnum.RECEIPT: "MRV",
    models.OrderKindEnum.ISSUE: "MIV",
    models.OrderKindEnum.SCRAP: "SCR",
    models.OrderKindEnum.RECONCILIATION: "CON",
}

SEQUENCE_MIN_WIDTH = 4


def scope_key(entity_type: str, year: int, month: int) -> str:
    """e.g. ("SVC", 2025, 8) -> "svc-25-08"."""
    return f"{entity_type.lower()}-{year % 100:02d}-{month:02d}"


def format_order_code(prefix: str, year: int, month: int, sequence: int) -> str:
    """
    PREFIX-YYMM-NNNN, e.g. SVC-2508-0003.

    Every field is fixed width up to the separator before the sequence, so
    month 11 / sequence 1 and month 1 / sequence 11 can never render alike.
    """
    if not 1 <= month <= 12:
        raise ValueError(f"month out of range: {month}")
    if sequence < 1:
        raise ValueError(f"sequence must be positive: {sequence}")
    return f"{prefix}-{year % 100:02d}{month:02d}-{sequence:0{SEQUENCE_MIN_WIDTH}d}"


def parse_order_code(code: str) -> tuple[str, int, int, int]:
    """Inverse of format_order_code; returns (prefix, yy, month, sequence)."""
    try:
        prefix, period, seq = code.split("-")
        if len(period) != 4:
            raise ValueError(period)
        return prefix, int(period[:2]), int(period[2:]), int(seq)
    except ValueError as exc:
        raise ValidationError(
            f"Malformed order code: {code!r}",
            detail=[{"field": "code", "reason": "expected PREFIX-YYMM-NNNN"}],
        ) from exc


def reserve_next(
    db: Session,
    *,
    entity_type: str,
    year: int,
    month: int,
    now: Optional[datetime] = None,
) -> int:
    """
    Read-increment-write the counter for a scope.

    A concurrent increment of an existing row surfaces at commit as a stale
    version; two first reservations of a new scope collide on the primary key.
    Both abort the surrounding transaction and the runner retries it.
    """
    key = scope_key(entity_type, year, month)
    counter = db.get(models.SequenceCounter, key)
    if counter is None:
        counter = models.SequenceCounter(
            scope_key=key,
            entity_type=entity_type,
            year=year,
            month=month,
            value=1,
        )
        db.add(counter)
        db.flush()
        return 1

    counter.value = int(counter.value or 0) + 1
    if now is not None:
        counter.updated_at = now
    db.add(counter)
    return counter.value


def reserve_order_code(db: Session, *, kind: models.OrderKindEnum, now: datetime) -> str:
    prefix = ORDER_CODE_PREFIXES[kind]
    sequence = reserve_next(db, entity_type=prefix, year=now.year, month=now.month, now=now)
    return format_order_code(prefix, now.year, now.month, sequence)
