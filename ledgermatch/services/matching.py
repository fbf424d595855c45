"""
Match candidate search.

Given one inbox item (or one transaction), pull the opposite side's records
for the same tenant inside a lookback window, score every candidate, rank
them and decide between auto-match, suggestions and no match.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Callable, List, Optional, Tuple

from ledgermatch.core.config import MatchingSettings, get_settings
from ledgermatch.core.database import MatchingDB
from ledgermatch.core.models import (
    CalibrationProfile,
    Decision,
    FeatureScores,
    InboxItem,
    MatchCandidate,
    Transaction,
)
from ledgermatch.services.confidence import match_type_for, score_confidence
from ledgermatch.services.errors import NotFoundError, UnscorableItemError
from ledgermatch.services.multi_currency import CurrencyConverter
from ledgermatch.services.normalization import (
    ComparisonUnit,
    features_from_inbox,
    features_from_transaction,
)
from ledgermatch.services.scoring import (
    date_distance_days,
    score_amount,
    score_currency,
    score_date,
    score_text,
)

logger = logging.getLogger(__name__)

# Confidence is compared at this precision so float noise cannot reorder ties
_RANK_PRECISION = 6


@dataclass
class SearchDecision:
    decision: Decision
    auto_candidate: Optional[MatchCandidate] = None
    suggestions: List[MatchCandidate] = field(default_factory=list)
    ambiguous: bool = False


def rank_candidates(
    candidates: List[MatchCandidate],
    profile: CalibrationProfile,
    candidate_id: Callable[[MatchCandidate], str] = lambda c: c.transaction_id,
) -> List[MatchCandidate]:
    """
    Order by confidence (desc), then date distance (asc, unknown last),
    then candidate id. Assigns 1-based ranks and match-type labels.
    """
    ordered = sorted(
        candidates,
        key=lambda c: (
            -round(c.confidence, _RANK_PRECISION),
            c.date_distance_days if c.date_distance_days is not None else float("inf"),
            candidate_id(c),
        ),
    )
    for index, candidate in enumerate(ordered, start=1):
        candidate.rank = index
        candidate.match_type = match_type_for(candidate.confidence, profile)
    return ordered


def decide(
    ranked: List[MatchCandidate],
    profile: CalibrationProfile,
    max_suggestions: int = 5,
    is_trusted: Optional[Callable[[MatchCandidate], bool]] = None,
) -> SearchDecision:
    """
    Auto-match only a clear winner: the top candidate clears the auto
    threshold (or a trusted merchant pattern vouches for it) and leads the
    runner-up by at least the ambiguity margin. Otherwise suggest the top
    candidates above the suggest threshold, or nothing.
    """
    eligible = [c for c in ranked if c.confidence >= profile.suggest_threshold]
    if not eligible:
        return SearchDecision(decision=Decision.DISCARD)

    top = eligible[0]
    runner_up = ranked[1].confidence if len(ranked) > 1 else None
    clear_lead = runner_up is None or (top.confidence - runner_up) >= profile.ambiguity_margin
    suggestions = eligible[:max(1, max_suggestions)]

    if top.confidence >= profile.auto_match_threshold or (is_trusted is not None and is_trusted(top)):
        if clear_lead:
            return SearchDecision(decision=Decision.AUTO_MATCH, auto_candidate=top, suggestions=suggestions)
        return SearchDecision(decision=Decision.SUGGEST, suggestions=suggestions, ambiguous=True)
    return SearchDecision(decision=Decision.SUGGEST, suggestions=suggestions)


class CandidateSearch:
    """Tenant-scoped candidate lookup and scoring."""

    def __init__(
        self,
        db: MatchingDB,
        converter: Optional[CurrencyConverter] = None,
        settings: Optional[MatchingSettings] = None,
    ):
        self.db = db
        self.converter = converter or CurrencyConverter()
        self.settings = settings or get_settings()

    def score_pair(
        self,
        tenant_id: str,
        inbox: ComparisonUnit,
        tx: ComparisonUnit,
        profile: CalibrationProfile,
    ) -> Tuple[FeatureScores, Optional[float]]:
        scoring = self.settings.scoring
        converted = None
        convertible = False
        if inbox.currency and tx.currency and inbox.currency != tx.currency and inbox.amount_minor is not None:
            converted = self.converter.convert_minor(
                tenant_id, inbox.amount_minor, inbox.currency, tx.currency, tx.date or inbox.date
            )
            convertible = converted is not None
        scores = FeatureScores(
            amount=score_amount(inbox, tx, converted_minor=converted, settings=scoring),
            date=score_date(inbox, tx, window_days=scoring.date_window_days),
            text=score_text(inbox.normalized_text, tx.normalized_text),
            currency=score_currency(inbox.currency, tx.currency, convertible, settings=scoring),
        )
        return scores, score_confidence(scores, profile.feature_weights)

    def _candidate(
        self,
        tenant_id: str,
        item: InboxItem,
        inbox_unit: ComparisonUnit,
        tx: Transaction,
        profile: CalibrationProfile,
    ) -> Optional[MatchCandidate]:
        tx_unit = features_from_transaction(tx)
        scores, confidence = self.score_pair(tenant_id, inbox_unit, tx_unit, profile)
        if confidence is None:
            return None
        return MatchCandidate(
            inbox_id=item.id,
            transaction_id=tx.id,
            confidence=confidence,
            scores=scores,
            date_distance_days=date_distance_days(inbox_unit, tx_unit),
        )

    # ------------------------------------------------------------------
    # Inbox -> transactions
    # ------------------------------------------------------------------

    def candidates_for_item(
        self,
        item: InboxItem,
        profile: CalibrationProfile,
        include_matched: bool = False,
    ) -> List[MatchCandidate]:
        inbox_unit = features_from_inbox(item)
        if not inbox_unit.is_scorable:
            raise UnscorableItemError(item.id)

        before, after = self.settings.search.window_for(item.document_type)
        anchor = item.anchor_date or date.today()
        transactions = self.db.list_transaction_candidates(
            item.tenant_id,
            anchor - timedelta(days=before),
            anchor + timedelta(days=after),
            matched_exception=item.id,
            include_matched=include_matched,
            limit=self.settings.search.max_candidates,
        )
        declined = self.db.list_declined_pairs(item.tenant_id, inbox_id=item.id)

        candidates = []
        for tx in transactions:
            if (item.id, tx.id) in declined:
                continue
            candidate = self._candidate(item.tenant_id, item, inbox_unit, tx, profile)
            if candidate is not None:
                candidates.append(candidate)
        return rank_candidates(candidates, profile)

    def find_matches_for_inbox(
        self,
        tenant_id: str,
        inbox_id: str,
        profile: CalibrationProfile,
        include_matched: bool = False,
    ) -> List[MatchCandidate]:
        item = self.db.get_inbox_item(tenant_id, inbox_id)
        if item is None:
            raise NotFoundError("Inbox item", inbox_id)
        return self.candidates_for_item(item, profile, include_matched=include_matched)

    # ------------------------------------------------------------------
    # Transaction -> inbox items
    # ------------------------------------------------------------------

    def candidates_for_transaction(
        self,
        tx: Transaction,
        profile: CalibrationProfile,
        include_matched: bool = False,
    ) -> List[MatchCandidate]:
        if tx.transaction_date is None:
            return []
        windows = self.settings.search.windows.values()
        widest_before = max(before for before, _ in windows)
        widest_after = max(after for _, after in windows)
        items = self.db.list_inbox_candidates(
            tx.tenant_id,
            tx.transaction_date - timedelta(days=widest_after),
            tx.transaction_date + timedelta(days=widest_before),
            matched_exception=tx.id,
            include_matched=include_matched,
            limit=self.settings.search.max_candidates,
        )
        declined = self.db.list_declined_pairs(tx.tenant_id, transaction_id=tx.id)

        candidates = []
        for item in items:
            if (item.id, tx.id) in declined:
                continue
            anchor = item.anchor_date
            before, after = self.settings.search.window_for(item.document_type)
            if anchor is None or not (
                anchor - timedelta(days=before) <= tx.transaction_date <= anchor + timedelta(days=after)
            ):
                continue
            inbox_unit = features_from_inbox(item)
            if not inbox_unit.is_scorable:
                continue
            candidate = self._candidate(tx.tenant_id, item, inbox_unit, tx, profile)
            if candidate is not None:
                candidates.append(candidate)
        return rank_candidates(candidates, profile, candidate_id=lambda c: c.inbox_id)

    def find_matches_for_transaction(
        self,
        tenant_id: str,
        transaction_id: str,
        profile: CalibrationProfile,
        include_matched: bool = False,
    ) -> List[MatchCandidate]:
        tx = self.db.get_transaction(tenant_id, transaction_id)
        if tx is None:
            raise NotFoundError("Transaction", transaction_id)
        return self.candidates_for_transaction(tx, profile, include_matched=include_matched)
