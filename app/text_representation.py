"""Canonical text for a transaction, fed to the embedding model.

The output is a fixed sequence of ``Label: value`` lines so that two calls
with the same fields always produce byte-identical text.
"""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal

UNCATEGORIZED = "uncategorized"
NO_DESCRIPTION = "no description"

DIRECTION_LABELS: dict[str, str] = {
    "income": "Income",
    "expense": "Expense",
    "transfer": "Transfer",
}

_WS_RE = re.compile(r"\s+")
_CENTS = Decimal("0.01")


def _clean(value: str | None) -> str:
    if value is None:
        return ""
    return _WS_RE.sub(" ", str(value)).strip()


def format_amount(amount_minor: int) -> str:
    """Minor units to a major-unit string with two places, sign dropped."""
    if isinstance(amount_minor, bool) or not isinstance(amount_minor, int):
        raise TypeError("amount_minor must be an integer number of minor units")
    major = (Decimal(abs(amount_minor)) / Decimal(100)).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{major:.2f}"


def direction_label(direction: str) -> str:
    key = str(direction or "").strip().lower()
    label = DIRECTION_LABELS.get(key)
    if label is None:
        raise ValueError(f"unsupported transaction direction: {direction}")
    return label


def build_transaction_text(
    description: str | None,
    category: str | None,
    amount_minor: int,
    direction: str,
    *,
    counterparty: str | None = None,
) -> str:
    lines = [
        f"Type: {direction_label(direction)}",
        f"Description: {_clean(description) or NO_DESCRIPTION}",
        f"Category: {_clean(category) or UNCATEGORIZED}",
        f"Amount: {format_amount(amount_minor)}",
    ]
    counterparty_clean = _clean(counterparty)
    if counterparty_clean:
        lines.append(f"Counterparty: {counterparty_clean}")
    return "\n".join(lines)


def build_text_for_transaction(transaction: dict) -> str:
    return build_transaction_text(
        transaction.get("description"),
        transaction.get("category_name"),
        int(transaction.get("amount_minor", 0)),
        str(transaction.get("direction", "")),
        counterparty=transaction.get("counterparty_name"),
    )
