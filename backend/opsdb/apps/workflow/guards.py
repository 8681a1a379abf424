from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

GuardResult = List[Dict[str, str]]


def _get_value(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(key)
    return getattr(obj, key, None)


def _kind(order: Any) -> str:
    kind = _get_value(order, "kind")
    return getattr(kind, "value", kind) or ""


def _int(line: Mapping[str, Any], key: str) -> int:
    return int(line.get(key) or 0)


def line_settled(kind: str, line: Mapping[str, Any]) -> bool:
    if kind == "SERVICE":
        return _int(line, "returned") + _int(line, "scrapped") == _int(line, "sent")
    if kind == "MATERIAL_REQUEST":
        return _int(line, "received") >= _int(line, "requested")
    return True


def guard_has_lines(
    order: Any,
    *,
    from_state: Optional[str],
    to_state: str,
    context: Mapping[str, Any],
) -> GuardResult:
    if not _get_value(order, "lines"):
        return [{"field": "lines", "reason": "at least one line required"}]
    return []


def guard_lines_settled(
    order: Any,
    *,
    from_state: Optional[str],
    to_state: str,
    context: Mapping[str, Any],
) -> GuardResult:
    if context.get("force_complete"):
        return []
    kind = _kind(order)
    return [
        {"field": f"lines.{line.get('item_id')}", "reason": "line not settled"}
        for line in (_get_value(order, "lines") or [])
        if not line_settled(kind, line)
    ]


def guard_nothing_received(
    order: Any,
    *,
    from_state: Optional[str],
    to_state: str,
    context: Mapping[str, Any],
) -> GuardResult:
    missing = []
    for line in _get_value(order, "lines") or []:
        if _int(line, "returned") or _int(line, "scrapped") or _int(line, "received"):
            missing.append(
                {"field": f"lines.{line.get('item_id')}", "reason": "quantities already received"}
            )
    return missing
