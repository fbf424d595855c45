"""
Similarity scorers for inbox ↔ transaction matching.

Each scorer takes the two sides' features and returns a score in [0, 1],
or ``None`` when it cannot say (a missing field, a currency with no rate).
None is excluded from aggregation. A 0 is a real "these differ".

- Amount: exact minor-unit match, graded tolerance band, linear falloff
- Date: linear decay over a configurable window
- Text: token-set similarity of merchant/counterparty names (rapidfuzz)
- Currency: identical, convertible, or unknown
"""
from __future__ import annotations

from typing import Optional

from rapidfuzz import fuzz

from ledgermatch.core.config import ScoringSettings
from ledgermatch.services.normalization import ComparisonUnit, normalize_text

_DEFAULT_SETTINGS = ScoringSettings()

# Legal-form and filler tokens that say nothing about who the merchant is
NOISE_TOKENS = frozenset({
    "inc", "llc", "ltd", "limited", "corp", "corporation", "co", "company",
    "gmbh", "ag", "plc", "pty", "sa", "sas", "sarl", "srl", "spa", "nv", "bv",
    "oy", "ab", "kg", "the", "com", "www",
})


def _graded_amount(expected: int, actual: int, band: float, settings: ScoringSettings) -> float:
    diff = abs(expected - actual)
    if diff == 0:
        return 1.0
    base = max(abs(expected), abs(actual))
    if base == 0:
        return 0.0
    ratio = diff / base
    # 1.0 at exact, 0.8 at the band edge
    in_band = 1.0 - 0.2 * (ratio / band) if ratio <= band else 0.0
    if diff <= settings.amount_epsilon_minor:
        return max(0.98, in_band)
    if ratio <= band:
        return in_band
    falloff = settings.amount_falloff_pct
    if ratio >= falloff:
        return 0.0
    return 0.8 * (falloff - ratio) / (falloff - band)


def score_amount(
    inbox: ComparisonUnit,
    tx: ComparisonUnit,
    converted_minor: Optional[int] = None,
    settings: Optional[ScoringSettings] = None,
) -> Optional[float]:
    """
    Amount similarity.

    ``converted_minor`` is the inbox amount expressed in the transaction's
    currency; it is only consulted when the two currencies differ. With
    differing currencies and no conversion the score is unknown.
    """
    settings = settings or _DEFAULT_SETTINGS
    if inbox.amount_minor is None or tx.amount_minor is None:
        return None

    same_currency = not inbox.currency or not tx.currency or inbox.currency == tx.currency
    if same_currency:
        return _graded_amount(inbox.amount_minor, tx.amount_minor, settings.amount_tolerance_pct, settings)
    if converted_minor is None:
        return None
    # Conversion itself introduces error, so the band is wider and an exact hit is capped.
    score = _graded_amount(abs(converted_minor), tx.amount_minor, settings.fx_tolerance_pct, settings)
    return min(score, 0.95)


def date_distance_days(inbox: ComparisonUnit, tx: ComparisonUnit) -> Optional[int]:
    if inbox.date is None or tx.date is None:
        return None
    return abs((inbox.date - tx.date).days)


def score_date(
    inbox: ComparisonUnit,
    tx: ComparisonUnit,
    window_days: Optional[int] = None,
) -> Optional[float]:
    """1.0 on the same day, linear to 0 at ``window_days``, 0 beyond."""
    window = window_days if window_days is not None else _DEFAULT_SETTINGS.date_window_days
    distance = date_distance_days(inbox, tx)
    if distance is None:
        return None
    if distance == 0:
        return 1.0
    if distance >= window:
        return 0.0
    return 1.0 - distance / window


def _strip_noise(text: str) -> str:
    tokens = [token for token in text.split() if token not in NOISE_TOKENS]
    # A name made only of noise ("The Co") keeps its original tokens
    return " ".join(tokens) or text


def score_text(a: Optional[str], b: Optional[str]) -> Optional[float]:
    """
    Merchant/vendor name similarity in [0, 1].

    Symmetric: the two sides are ordered before comparison, so
    ``score_text(a, b) == score_text(b, a)`` exactly.
    """
    left = normalize_text(a)
    right = normalize_text(b)
    if not left or not right:
        return None
    left, right = sorted((_strip_noise(left), _strip_noise(right)))
    return fuzz.token_set_ratio(left, right) / 100.0


def score_currency(
    a: Optional[str],
    b: Optional[str],
    conversion_available: bool = False,
    settings: Optional[ScoringSettings] = None,
) -> Optional[float]:
    settings = settings or _DEFAULT_SETTINGS
    if not a or not b:
        return None
    if a.upper() == b.upper():
        return 1.0
    return settings.currency_conversion_score if conversion_available else None
