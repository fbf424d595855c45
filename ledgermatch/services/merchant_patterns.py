"""
Merchant pattern learning for auto-match eligibility.

A tenant that has repeatedly confirmed pairings between the same merchant
and the same bank counterparty has taught us something. Such pairs may be
auto-matched one tier below the auto-match threshold, as long as the
history is clean and the current candidate is strong on its own.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from ledgermatch.core.database import MatchingDB
from ledgermatch.core.models import CalibrationProfile, FeedbackOutcome, MatchCandidate
from ledgermatch.services.scoring import score_text

logger = logging.getLogger(__name__)

MIN_CONFIRMED_MATCHES = 3
MIN_ACCURACY = 0.9
MAX_NEGATIVE_SIGNALS = 1
MIN_AVG_CONFIDENCE = 0.85
LOOKBACK_DAYS = 183
HISTORY_LIMIT = 20
SIMILAR_TEXT = 0.85

# The current candidate must stand on its own
CURRENT_MIN_TEXT = 0.85
CURRENT_MIN_DATE = 0.70


@dataclass
class MerchantPattern:
    confirmed_count: int = 0
    negative_count: int = 0
    avg_confidence: float = 0.0

    @property
    def total(self) -> int:
        return self.confirmed_count + self.negative_count

    @property
    def accuracy(self) -> float:
        return self.confirmed_count / self.total if self.total else 0.0

    @property
    def is_trusted(self) -> bool:
        return (
            self.confirmed_count >= MIN_CONFIRMED_MATCHES
            and self.accuracy >= MIN_ACCURACY
            and self.negative_count <= MAX_NEGATIVE_SIGNALS
            and self.avg_confidence >= MIN_AVG_CONFIDENCE
        )


class MerchantPatternService:
    def __init__(self, db: MatchingDB):
        self.db = db

    def pattern_for(
        self,
        tenant_id: str,
        merchant_text: Optional[str],
        counterparty_text: Optional[str],
        now: Optional[datetime] = None,
    ) -> MerchantPattern:
        """Aggregate recent feedback on pairs similar to this merchant/counterparty."""
        if not merchant_text or not counterparty_text:
            return MerchantPattern()
        now = now or datetime.now(timezone.utc)
        since = (now - timedelta(days=LOOKBACK_DAYS)).isoformat()

        confidences = []
        pattern = MerchantPattern()
        for row in self.db.list_feedback_with_text(tenant_id, since=since):
            inbox_text = row.get("merchant_name") or row.get("display_name") or row.get("inbox_description")
            tx_text = row.get("counterparty") or row.get("transaction_description")
            if (score_text(merchant_text, inbox_text) or 0.0) < SIMILAR_TEXT:
                continue
            if (score_text(counterparty_text, tx_text) or 0.0) < SIMILAR_TEXT:
                continue
            if row["outcome"] == FeedbackOutcome.POSITIVE.value:
                pattern.confirmed_count += 1
                confidences.append(float(row["confidence"]))
            else:
                pattern.negative_count += 1
            if pattern.total >= HISTORY_LIMIT:
                break
        if confidences:
            pattern.avg_confidence = sum(confidences) / len(confidences)
        return pattern

    def allows_auto_match(
        self,
        tenant_id: str,
        candidate: MatchCandidate,
        profile: CalibrationProfile,
        merchant_text: Optional[str],
        counterparty_text: Optional[str],
    ) -> bool:
        scores = candidate.scores
        if candidate.confidence < profile.high_confidence_threshold:
            return False
        if (scores.text or 0.0) < CURRENT_MIN_TEXT or (scores.date or 0.0) < CURRENT_MIN_DATE:
            return False
        pattern = self.pattern_for(tenant_id, merchant_text, counterparty_text)
        if pattern.is_trusted:
            logger.debug(
                "Merchant pattern allows auto-match for %s <-> %s (%d confirmed, accuracy %.2f)",
                candidate.inbox_id, candidate.transaction_id, pattern.confirmed_count, pattern.accuracy,
            )
            return True
        return False
