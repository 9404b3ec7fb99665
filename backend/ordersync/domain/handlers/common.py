from __future__ import annotations

from typing import Any

APPLIED = "applied"
SKIPPED = "skipped"
IGNORED = "ignored"


def changed_values(record: Any, values: dict[str, Any]) -> dict[str, Any]:
    """Drop entries that already match the record, so replays write nothing."""
    return {key: value for key, value in values.items() if getattr(record, key) != value}


def money_amount(money: Any) -> int | None:
    if not isinstance(money, dict):
        return None
    amount = money.get("amount")
    if amount is None:
        return None
    try:
        return int(amount)
    except (TypeError, ValueError):
        return None


def money_currency(money: Any, default: str = "USD") -> str:
    if isinstance(money, dict) and money.get("currency"):
        return str(money["currency"]).upper()[:3]
    return default
