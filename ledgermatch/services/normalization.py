"""
Normalization & feature extraction.

Turns inbox items and transactions into ``ComparisonUnit`` values:
integer minor-unit amounts, ISO-4217 codes, calendar dates and
lowercase, punctuation-free text. Absent fields stay ``None`` so the
scorers can tell "unknown" apart from "different".
"""
from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:  # pragma: no cover
    from ledgermatch.core.models import InboxItem, Transaction


ZERO_DECIMAL_CURRENCIES = {
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
    "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
}
THREE_DECIMAL_CURRENCIES = {"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"}

_APOSTROPHES = re.compile(r"['’`]")
_NON_WORD = re.compile(r"[^\w\s]|_")
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")
_AMOUNT_JUNK = re.compile(r"[^\d,.\-]")


def normalize_text(value: Any) -> Optional[str]:
    """
    Lowercase, strip punctuation and collapse whitespace.

    Idempotent: ``normalize_text(normalize_text(x)) == normalize_text(x)``.
    Returns ``None`` when nothing is left.

    Examples:
        "ACME Corp. LTD" -> "acme corp ltd"
        "McDonald's #123" -> "mcdonalds 123"
    """
    if value is None:
        return None
    text = unicodedata.normalize("NFKC", str(value))
    text = unicodedata.normalize("NFKC", text.lower())
    text = _APOSTROPHES.sub("", text)
    text = _NON_WORD.sub(" ", text)
    text = " ".join(text.split())
    return text or None


def normalize_currency(value: Any) -> Optional[str]:
    if value is None:
        return None
    code = str(value).strip().upper()
    return code if _CURRENCY_CODE.match(code) else None


def currency_exponent(currency: Optional[str]) -> int:
    code = (currency or "").upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return 0
    if code in THREE_DECIMAL_CURRENCIES:
        return 3
    return 2


def parse_amount(value: Any) -> Optional[Decimal]:
    """
    Parse an extracted amount into a Decimal.

    Accepts numbers and strings like "1,234.56", "1.234,56", "EUR 99.90".
    Returns ``None`` for anything that does not read as a finite number.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        try:
            amount = Decimal(str(value))
        except InvalidOperation:
            return None
        return amount if amount.is_finite() else None

    raw = _AMOUNT_JUNK.sub("", str(value))
    if not raw or raw in {"-", ".", ","}:
        return None
    if "," in raw and "." in raw:
        # Whichever separator comes last is the decimal point
        if raw.rfind(",") > raw.rfind("."):
            raw = raw.replace(".", "").replace(",", ".")
        else:
            raw = raw.replace(",", "")
    elif "," in raw:
        head, _, tail = raw.rpartition(",")
        if len(tail) in (1, 2) and head.count(",") == 0:
            raw = f"{head}.{tail}"
        else:
            raw = raw.replace(",", "")
    try:
        amount = Decimal(raw)
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def to_minor_units(amount: Any, currency: Optional[str] = None) -> Optional[int]:
    """Convert a major-unit amount to integer minor units (ROUND_HALF_UP)."""
    parsed = parse_amount(amount)
    if parsed is None:
        return None
    exponent = currency_exponent(currency)
    quantum = Decimal(1).scaleb(-exponent)
    return int(parsed.quantize(quantum, rounding=ROUND_HALF_UP).scaleb(exponent))


def from_minor_units(amount_minor: int, currency: Optional[str] = None) -> Decimal:
    return Decimal(amount_minor).scaleb(-currency_exponent(currency))


def parse_date(value: Any) -> Optional[date]:
    """Calendar date from a date, datetime or ISO string; ``None`` otherwise."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


@dataclass(frozen=True)
class ComparisonUnit:
    """Canonical, comparable view of one side of a pairing."""
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    date: Optional[date] = None
    normalized_text: Optional[str] = None

    @property
    def is_scorable(self) -> bool:
        return any(
            value is not None
            for value in (self.amount_minor, self.date, self.normalized_text)
        )


def _first_text(*values: Optional[str]) -> Optional[str]:
    for value in values:
        text = normalize_text(value)
        if text:
            return text
    return None


def features_from_inbox(item: "InboxItem") -> ComparisonUnit:
    amount = item.amount_minor
    return ComparisonUnit(
        amount_minor=abs(amount) if amount is not None else None,
        currency=normalize_currency(item.currency),
        date=item.document_date,
        normalized_text=_first_text(item.merchant_name, item.display_name, item.description),
    )


def features_from_transaction(tx: "Transaction") -> ComparisonUnit:
    # Bank debits are negative; matching compares magnitudes.
    return ComparisonUnit(
        amount_minor=abs(tx.amount_minor) if tx.amount_minor is not None else None,
        currency=normalize_currency(tx.currency),
        date=tx.transaction_date,
        normalized_text=_first_text(tx.counterparty, tx.description),
    )
