from __future__ import annotations

from .guards import guard_has_lines, guard_lines_settled, guard_nothing_received

# Direct vouchers are born COMPLETED; nothing leaves a terminal state.
_VOUCHER = {
    "initial": ["COMPLETED"],
    "transitions": {"COMPLETED": {}},
}

WORKFLOWS = {
    "SERVICE": {
        "initial": ["DISPATCHED"],
        "transitions": {
            "DISPATCHED": {
                "PARTIAL_RETURN": [guard_has_lines],
                "COMPLETED": [guard_lines_settled],
                "CANCELLED": [guard_nothing_received],
            },
            "PARTIAL_RETURN": {
                "PARTIAL_RETURN": [],
                "COMPLETED": [guard_lines_settled],
            },
            "COMPLETED": {},
            "CANCELLED": {},
        },
    },
    "TRANSFER": {
        "initial": ["DRAFT"],
        "transitions": {
            "DRAFT": {
                "COMPLETED": [guard_has_lines],
                "CANCELLED": [],
            },
            "COMPLETED": {},
            "CANCELLED": {},
        },
    },
    "MATERIAL_REQUEST": {
        "initial": ["DRAFT"],
        "transitions": {
            "DRAFT": {
                "DISPATCHED": [guard_has_lines],
                "CANCELLED": [],
            },
            "DISPATCHED": {
                "PARTIAL_RETURN": [],
                "COMPLETED": [guard_lines_settled],
                "CANCELLED": [guard_nothing_received],
            },
            "PARTIAL_RETURN": {
                "PARTIAL_RETURN": [],
                "COMPLETED": [guard_lines_settled],
            },
            "COMPLETED": {},
            "CANCELLED": {},
        },
    },
    "RECEIPT": _VOUCHER,
    "ISSUE": _VOUCHER,
    "SCRAP": _VOUCHER,
    "RECONCILIATION": _VOUCHER,
}
