"""
Confidence aggregation and classification.

Combines per-feature scores into a single confidence in [0, 1] using the
tenant's calibrated weights, then classifies it against the tenant's
thresholds.
"""
from __future__ import annotations

import math
from typing import Mapping, Optional

from ledgermatch.core.config import FEATURES
from ledgermatch.core.models import CalibrationProfile, Decision, FeatureScores, MatchType

# (min text, min date, floor) for exact-amount, same-currency pairs
FINANCIAL_MATCH_FLOORS = (
    (0.85, 0.70, 0.96),
    (0.75, 0.70, 0.94),
    (0.65, 0.60, 0.88),
)


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def aggregate(scores: FeatureScores, weights: Mapping[str, float]) -> Optional[float]:
    """
    Weighted mean over the known scores only.

    Unknown features are dropped from both numerator and denominator, so
    absence neither depresses nor inflates confidence. Returns ``None``
    when no weighted feature is known.
    """
    weighted_sum = 0.0
    weight_used = 0.0
    for name in FEATURES:
        score = getattr(scores, name)
        weight = weights.get(name, 0.0)
        if score is None or weight <= 0 or not math.isfinite(score):
            continue
        weighted_sum += weight * _clamp(score)
        weight_used += weight
    if weight_used <= 0:
        return None
    return _clamp(weighted_sum / weight_used)


def apply_financial_floor(confidence: float, scores: FeatureScores) -> float:
    """
    Lift confidence for exact-amount, same-currency pairs with strong
    supporting text and date evidence.
    """
    if scores.amount != 1.0 or scores.currency != 1.0:
        return confidence
    if scores.text is None or scores.date is None:
        return confidence
    for min_text, min_date, floor in FINANCIAL_MATCH_FLOORS:
        if scores.text >= min_text and scores.date >= min_date:
            return max(confidence, floor)
    return confidence


def score_confidence(scores: FeatureScores, weights: Mapping[str, float]) -> Optional[float]:
    confidence = aggregate(scores, weights)
    if confidence is None:
        return None
    return _clamp(apply_financial_floor(confidence, scores))


def classify(confidence: Optional[float], profile: CalibrationProfile) -> Decision:
    if confidence is None or confidence < profile.suggest_threshold:
        return Decision.DISCARD
    if confidence >= profile.auto_match_threshold:
        return Decision.AUTO_MATCH
    return Decision.SUGGEST


def match_type_for(confidence: float, profile: CalibrationProfile) -> MatchType:
    if confidence >= profile.auto_match_threshold:
        return MatchType.AUTO_MATCHED
    if confidence >= profile.high_confidence_threshold:
        return MatchType.HIGH_CONFIDENCE
    return MatchType.SUGGESTED
