from __future__ import annotations

import os
import threading
import time
import uuid

# 12-bit counter carried in rand_a; seeded low so a millisecond rarely overflows
_COUNTER_BITS = 12
_COUNTER_SEED_MAX = 1 << (_COUNTER_BITS - 1)
_COUNTER_MAX = (1 << _COUNTER_BITS) - 1

_lock = threading.Lock()
_last_ms = 0
_counter = 0


def _next_timestamp_and_counter() -> tuple[int, int]:
    global _last_ms, _counter
    now_ms = int(time.time() * 1000)
    with _lock:
        if now_ms > _last_ms:
            _last_ms = now_ms
            _counter = int.from_bytes(os.urandom(2), "big") % _COUNTER_SEED_MAX
        elif _counter < _COUNTER_MAX:
            _counter += 1
        else:
            # counter exhausted for this millisecond: borrow the next one
            _last_ms += 1
            _counter = 0
        return _last_ms, _counter


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string that sorts in generation order within a process.

    Layout (RFC 9562, fixed-length dedicated counter):
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 12-bit counter, reseeded every millisecond and incremented within it
    - 2-bit variant + 62-bit randomness

    Movement ids are the tie-breaker for records sharing `occurred_at`, so two
    records appended in one transaction always read back in write order.
    """
    ts_ms, counter = _next_timestamp_and_counter()
    raw = bytearray(ts_ms.to_bytes(6, "big") + counter.to_bytes(2, "big") + os.urandom(8))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def normalize_identifier(value: str) -> str:
    return (value or "").strip()
