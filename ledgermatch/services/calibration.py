"""
Calibration Service

Per-tenant recalibration of confidence thresholds and feature weights
from confirm / decline / unmatch feedback.

Thresholds:
- The suggest threshold moves with acceptance rate, the confidence gap
  between accepted and rejected suggestions, and feedback volume. Each
  step is bounded by ``max_adjustment`` and the result is clamped.
- The auto-match threshold only relaxes (to 0.88) for tenants with a long,
  near-perfect record.
- The high-confidence tier sits 40% of the way from suggest to auto.

Weights:
- Each feature's weight moves in proportion to how well it separated
  accepted from rejected pairs, bounded, then renormalized to sum to 1.

Nothing moves below ``min_samples`` feedback events. The new profile
replaces the old one with a single upsert.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime, timedelta, timezone
from statistics import mean
from typing import Dict, List, Optional, Sequence

from ledgermatch.core.config import FEATURES, MatchingSettings, get_settings
from ledgermatch.core.database import MatchingDB
from ledgermatch.core.models import CalibrationProfile, FeedbackOutcome, FeedbackReason, MatchFeedback
from ledgermatch.services.logging import log_matching_run

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_POSITION = 0.4


def _clamp(value: float, bounds) -> float:
    low, high = bounds
    return max(low, min(high, value))


def _mean_or_none(values: Sequence[float]) -> Optional[float]:
    return mean(values) if values else None


def _feature_means(events: Sequence[MatchFeedback], feature: str) -> Optional[float]:
    values = [getattr(e.scores, feature) for e in events if getattr(e.scores, feature) is not None]
    return _mean_or_none(values)


def calibrate_thresholds(
    feedback: Sequence[MatchFeedback],
    settings: MatchingSettings,
) -> Dict[str, float]:
    """Suggest / auto / high-confidence thresholds for one tenant's feedback."""
    cal = settings.calibration
    defaults = settings.thresholds

    positives = [f for f in feedback if f.outcome == FeedbackOutcome.POSITIVE]
    negatives = [f for f in feedback if f.outcome == FeedbackOutcome.NEGATIVE]
    total = len(feedback)
    confirmed = len(positives)
    negative = len(negatives)
    accuracy = confirmed / total if total else 0.0

    avg_positive = _mean_or_none([f.confidence for f in positives])
    avg_negative = _mean_or_none([f.confidence for f in negatives])
    gap = avg_positive - avg_negative if avg_positive is not None and avg_negative is not None else 0.0

    step = cal.max_adjustment
    suggest = defaults.suggest
    auto = defaults.auto_match

    # Acceptance rate
    if accuracy > 0.9 and confirmed >= cal.min_samples_conservative:
        suggest -= step
    elif accuracy > 0.8 and confirmed >= cal.min_samples:
        suggest -= step * 0.66
    elif accuracy < 0.3 and negative >= cal.min_samples:
        suggest += step

    # Separation between accepted and rejected confidence
    if gap > 0.2:
        suggest -= step * 0.5
    elif gap < 0.08 and total > 10:
        suggest += step * 0.5

    # Volume
    if confirmed > 25 and accuracy > 0.8:
        suggest -= step * 0.33
    if negative > 20 and accuracy < 0.7:
        suggest += step * 0.5

    suggest = _clamp(suggest, cal.suggest_bounds)

    if accuracy > 0.95 and confirmed >= 15:
        auto = 0.88
    auto = _clamp(auto, cal.auto_bounds)

    high = suggest + (auto - suggest) * HIGH_CONFIDENCE_POSITION
    return {
        "suggest": round(suggest, 3),
        "auto_match": round(auto, 3),
        "high_confidence": round(high, 3),
    }


def calibrate_weights(
    feedback: Sequence[MatchFeedback],
    current: Dict[str, float],
    settings: MatchingSettings,
) -> Dict[str, float]:
    """
    Shift weight towards features that separate accepted from rejected pairs.

    Requires ``min_samples`` on both sides; otherwise ``current`` is returned.
    """
    cal = settings.calibration
    positives = [f for f in feedback if f.outcome == FeedbackOutcome.POSITIVE]
    negatives = [f for f in feedback if f.outcome == FeedbackOutcome.NEGATIVE]
    if len(positives) < cal.min_samples or len(negatives) < cal.min_samples:
        return dict(current)

    defaults = settings.thresholds.weights
    adjusted: Dict[str, float] = {}
    for feature in FEATURES:
        # Always start from the default so repeated runs do not drift.
        weight = defaults.get(feature, 0.0)
        pos = _feature_means(positives, feature)
        neg = _feature_means(negatives, feature)
        if pos is not None and neg is not None:
            # separation is in [-1, 1]
            weight += cal.max_weight_shift * (pos - neg)
        adjusted[feature] = max(cal.min_weight, weight)

    total = sum(adjusted.values())
    return {feature: round(weight / total, 4) for feature, weight in adjusted.items()}


def outcome_buckets(feedback: Sequence[MatchFeedback], width: float = 0.1) -> List[Dict[str, float]]:
    """Confirm/decline counts per confidence bucket, lowest bucket first."""
    n_buckets = int(round(1 / width))
    buckets = [
        {"low": round(i * width, 2), "high": round((i + 1) * width, 2), "confirmed": 0, "declined": 0}
        for i in range(n_buckets)
    ]
    for event in feedback:
        index = min(n_buckets - 1, max(0, int(event.confidence / width)))
        key = "confirmed" if event.outcome == FeedbackOutcome.POSITIVE else "declined"
        buckets[index][key] += 1
    return buckets


class CalibrationService:
    """Reads feedback history and writes the tenant's calibration profile."""

    def __init__(self, db: MatchingDB, settings: Optional[MatchingSettings] = None):
        self.db = db
        self.settings = settings or get_settings()

    def get_profile(self, tenant_id: str) -> CalibrationProfile:
        """Stored profile, or the defaults if the tenant was never calibrated."""
        profile = self.db.get_calibration_profile(tenant_id)
        if profile is None:
            return CalibrationProfile.default(tenant_id, self.settings.thresholds)
        return profile

    def _recent_feedback(self, tenant_id: str, now: Optional[datetime] = None) -> List[MatchFeedback]:
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=self.settings.calibration.lookback_days)).isoformat()
        return self.db.list_feedback(tenant_id, since=since)

    def recalibrate(self, tenant_id: str, now: Optional[datetime] = None) -> CalibrationProfile:
        started = time.perf_counter()
        feedback = self._recent_feedback(tenant_id, now)
        current = self.get_profile(tenant_id)

        if len(feedback) < self.settings.calibration.min_samples:
            logger.info(
                "Not enough samples to calibrate tenant %s (%d < %d)",
                tenant_id, len(feedback), self.settings.calibration.min_samples,
            )
            return current

        thresholds = calibrate_thresholds(feedback, self.settings)
        weights = calibrate_weights(feedback, current.feature_weights, self.settings)
        positives = [f for f in feedback if f.outcome == FeedbackOutcome.POSITIVE]
        negatives = [f for f in feedback if f.outcome == FeedbackOutcome.NEGATIVE]

        profile = CalibrationProfile(
            tenant_id=tenant_id,
            feature_weights=weights,
            auto_match_threshold=thresholds["auto_match"],
            suggest_threshold=thresholds["suggest"],
            high_confidence_threshold=thresholds["high_confidence"],
            ambiguity_margin=current.ambiguity_margin,
            sample_size=len(feedback),
            confirmed_count=len(positives),
            declined_count=sum(1 for f in negatives if f.reason == FeedbackReason.DECLINED),
            unmatched_count=sum(1 for f in negatives if f.reason == FeedbackReason.UNMATCHED),
            accuracy=round(len(positives) / len(feedback), 4),
            avg_confidence_confirmed=_mean_or_none([f.confidence for f in positives]),
            avg_confidence_declined=_mean_or_none([f.confidence for f in negatives]),
            is_default=False,
        )
        saved = self.db.upsert_calibration_profile(profile)
        log_matching_run(
            "recalibrate",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            samples=len(feedback),
            suggest_threshold=saved.suggest_threshold,
            auto_match_threshold=saved.auto_match_threshold,
        )
        return saved

    def reset(self, tenant_id: str) -> CalibrationProfile:
        """Forget the tenant's calibration and fall back to defaults."""
        self.db.delete_calibration_profile(tenant_id)
        logger.info("Calibration reset to defaults for tenant %s", tenant_id)
        return CalibrationProfile.default(tenant_id, self.settings.thresholds)

    def outcome_buckets(self, tenant_id: str, now: Optional[datetime] = None) -> List[Dict[str, float]]:
        return outcome_buckets(self._recent_feedback(tenant_id, now))
