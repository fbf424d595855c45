"""
LedgerMatch Engine

The single entry point for inbox ↔ transaction matching.
The route layer and background jobs call this engine, never the
search, scoring or persistence pieces directly.

    Route layer   → Engine → Search → Scorers → Confidence
    Scheduler     → Engine → State machine → Database
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from pydantic import ValidationError

from ledgermatch.core.config import MatchingSettings, get_settings
from ledgermatch.core.database import get_db, MatchingDB
from ledgermatch.core.models import (
    BatchFailure, BatchReport, CalibrationProfile, Decision, InboxItem, InboxMatchingResult,
    InboxStatus, MatchCandidate, MatchOutcome, MatchSuggestion, SuggestionStatus, Transaction,
    TransactionMatchingResult,
)
from ledgermatch.models.matching import BatchMatchingRequest, ExtractedFields
from ledgermatch.services.calibration import CalibrationService
from ledgermatch.services.errors import (
    ConflictError, DependencyUnavailableError, InvalidRequestError, LedgerMatchError,
    NotFoundError, TransientDependencyError, handle_safely,
)
from ledgermatch.services.logging import log_error, log_matching_run
from ledgermatch.services.match_state import MatchStateMachine
from ledgermatch.services.matching import CandidateSearch, SearchDecision, decide
from ledgermatch.services.merchant_patterns import MerchantPatternService
from ledgermatch.services.multi_currency import CurrencyConverter

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system:auto-match"

# Extraction collaborator: (tenant_id, inbox item) -> loosely shaped field dict
Extractor = Callable[[str, InboxItem], Mapping[str, Any]]

_PROCESSABLE = (
    InboxStatus.PENDING,
    InboxStatus.PROCESSING,
    InboxStatus.SUGGESTED_MATCH,
    InboxStatus.NO_MATCH,
    InboxStatus.ERROR,
)


@dataclass
class PendingDecision:
    """A search result computed for an item that is now ``processing``."""
    inbox_id: str
    candidates: List[MatchCandidate]
    decision: SearchDecision


class MatchingEngine:
    """
    Matching facade.

    Owns one of each collaborator: candidate search (with its currency
    converter and rate cache), the match state machine, calibration and
    merchant-pattern lookups.
    """

    def __init__(
        self,
        db: Optional[MatchingDB] = None,
        settings: Optional[MatchingSettings] = None,
        converter: Optional[CurrencyConverter] = None,
        extractor: Optional[Extractor] = None,
    ):
        self.settings = settings or get_settings()
        self.db = db or get_db()
        self.db.initialize()
        self.converter = converter or CurrencyConverter()
        self.extractor = extractor
        self.search = CandidateSearch(self.db, self.converter, self.settings)
        self.state = MatchStateMachine(self.db)
        self.calibration = CalibrationService(self.db, self.settings)
        self.patterns = MerchantPatternService(self.db)

    # ==================== INGESTION ====================

    def add_inbox_item(self, tenant_id: str, **fields) -> InboxItem:
        """Register a captured document. Fields follow the inbox item columns."""
        return self.db.create_inbox_item({"tenant_id": tenant_id, **fields})

    def add_transaction(self, tenant_id: str, **fields) -> Transaction:
        return self.db.create_transaction({"tenant_id": tenant_id, **fields})

    def _ensure_extracted(self, item: InboxItem) -> InboxItem:
        """Run the extraction collaborator once per item and fill missing fields."""
        if self.extractor is None or item.extracted_at is not None:
            return item
        try:
            raw = self.extractor(item.tenant_id, item)
        except TransientDependencyError:
            raise
        except DependencyUnavailableError as exc:
            # Score with whatever fields we already have.
            logger.warning("Extraction unavailable for %s, scoring without it: %s", item.id, exc.detail)
            return item
        try:
            extracted = ExtractedFields.model_validate(dict(raw or {}))
        except (TypeError, ValueError, ValidationError) as exc:
            raise InvalidRequestError("extraction", f"Unusable extraction output: {exc}") from exc

        updates = {
            key: value for key, value in extracted.to_item_fields().items()
            if getattr(item, key) is None
        }
        updates["extracted_at"] = datetime.now(timezone.utc).isoformat()
        self.db.update_inbox_fields(item.tenant_id, item.id, **updates)
        return self.db.get_inbox_item(item.tenant_id, item.id) or item

    # ==================== INBOX MATCHING ====================

    def _trusted_pattern_check(self, item: InboxItem, profile: CalibrationProfile):
        def is_trusted(candidate: MatchCandidate) -> bool:
            tx = self.db.get_transaction(item.tenant_id, candidate.transaction_id)
            if tx is None:
                return False
            return self.patterns.allows_auto_match(
                item.tenant_id,
                candidate,
                profile,
                item.merchant_name or item.display_name,
                tx.counterparty or tx.description,
            )
        return is_trusted

    def mark_failed(self, tenant_id: str, inbox_id: str, reason: str) -> bool:
        """Record a permanent failure on an item that is being processed."""
        moved = self.db.transition_inbox_status(
            tenant_id, inbox_id, [InboxStatus.PROCESSING], InboxStatus.ERROR, error_reason=reason[:500]
        )
        if moved:
            logger.warning("Inbox item %s marked error: %s", inbox_id, reason)
        return moved

    def _search_phase(
        self,
        tenant_id: str,
        inbox_id: str,
        release_on_transient: bool = True,
    ) -> Optional[PendingDecision]:
        """
        Move the item to ``processing`` and compute its decision without
        persisting it. Returns None when the item is already matched.
        """
        item = self.db.get_inbox_item(tenant_id, inbox_id)
        if item is None:
            raise NotFoundError("Inbox item", inbox_id)
        if item.status == InboxStatus.MATCHED:
            return None
        if not self.db.transition_inbox_status(tenant_id, inbox_id, _PROCESSABLE, InboxStatus.PROCESSING):
            raise ConflictError(
                "Inbox item changed while matching started",
                context={"inbox_id": inbox_id},
            )

        try:
            item = self._ensure_extracted(item)
            profile = self.calibration.get_profile(tenant_id)
            candidates = self.search.candidates_for_item(item, profile)
            decision = decide(
                candidates,
                profile,
                max_suggestions=self.settings.search.max_suggestions,
                is_trusted=self._trusted_pattern_check(item, profile),
            )
        except TransientDependencyError:
            if release_on_transient:
                self.db.transition_inbox_status(
                    tenant_id, inbox_id, [InboxStatus.PROCESSING], InboxStatus.PENDING
                )
            raise
        except LedgerMatchError as exc:
            self.mark_failed(tenant_id, inbox_id, f"{exc.code.value}: {exc.message}")
            raise
        except Exception as exc:
            log_error("matching_failed", "Candidate search failed", {"inbox_id": inbox_id}, exc)
            self.mark_failed(tenant_id, inbox_id, "INTERNAL_ERROR")
            raise
        return PendingDecision(inbox_id=inbox_id, candidates=candidates, decision=decision)

    @handle_safely("search_inbox_item")
    def search_inbox_item(
        self,
        tenant_id: str,
        inbox_id: str,
        release_on_transient: bool = True,
    ) -> Optional[PendingDecision]:
        """First half of a batch: the item ends ``processing`` with an unapplied decision."""
        return self._search_phase(tenant_id, inbox_id, release_on_transient=release_on_transient)

    def apply_search_result(
        self,
        tenant_id: str,
        inbox_id: str,
        candidates: List[MatchCandidate],
        decision: Optional[SearchDecision] = None,
    ) -> InboxMatchingResult:
        """
        Persist a decision computed earlier for an item in ``processing``.

        Suggestions are written first. An auto-match is then confirmed on top
        of them; if another item claimed the transaction in the meantime the
        confirmation fails with CONFLICT and the pairing stays a suggestion
        for a human to resolve.
        """
        if decision is None:
            profile = self.calibration.get_profile(tenant_id)
            decision = decide(candidates, profile, max_suggestions=self.settings.search.max_suggestions)

        status = self.db.record_search_result(tenant_id, inbox_id, decision.suggestions)
        result = InboxMatchingResult(matches=candidates, suggestions=decision.suggestions, status=status)
        if decision.decision != Decision.AUTO_MATCH or decision.auto_candidate is None:
            return result

        top = decision.auto_candidate
        suggestion = self.db.get_suggestion_for_pair(tenant_id, inbox_id, top.transaction_id)
        if suggestion is None:
            return result
        outcome = self.state.confirm_match(
            tenant_id, suggestion.id, inbox_id, top.transaction_id, SYSTEM_ACTOR,
            record_feedback=False, restore_status=InboxStatus.PENDING,
        )
        if outcome.ok:
            result.auto_matched = True
            result.match_result = outcome.suggestion
            result.status = InboxStatus.MATCHED
        else:
            logger.info(
                "Auto-match %s <-> %s left as suggestion: %s",
                inbox_id, top.transaction_id, outcome.message,
            )
        return result

    def _confirmed_for(self, tenant_id: str, inbox_id: str) -> Optional[MatchSuggestion]:
        confirmed = self.db.list_suggestions(tenant_id, inbox_id=inbox_id, status=SuggestionStatus.CONFIRMED)
        return confirmed[0] if confirmed else None

    @handle_safely("process_inbox_matching")
    def process_inbox_matching(
        self,
        tenant_id: str,
        inbox_id: str,
        release_on_transient: bool = True,
    ) -> InboxMatchingResult:
        """
        Find, rank and persist matches for one inbox item.

        Already-matched items are returned as-is with their confirmed match.
        """
        started = time.perf_counter()
        pending = self._search_phase(tenant_id, inbox_id, release_on_transient=release_on_transient)
        if pending is None:
            return InboxMatchingResult(
                auto_matched=False,
                match_result=self._confirmed_for(tenant_id, inbox_id),
                status=InboxStatus.MATCHED,
            )
        result = self.apply_search_result(tenant_id, inbox_id, pending.candidates, pending.decision)
        log_matching_run(
            "process_inbox_matching",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            subject_id=inbox_id,
            candidates=len(result.matches),
            auto_matched=result.auto_matched,
            status=result.status.value if result.status else None,
        )
        return result

    # ==================== TRANSACTION MATCHING ====================

    def _suggest_for_inbox(self, tenant_id: str, candidate: MatchCandidate) -> bool:
        """Attach one suggestion to an inbox item found from the transaction side."""
        moved = self.db.transition_inbox_status(
            tenant_id,
            candidate.inbox_id,
            [InboxStatus.PENDING, InboxStatus.SUGGESTED_MATCH, InboxStatus.NO_MATCH],
            InboxStatus.PROCESSING,
        )
        if not moved:
            return False
        self.db.record_search_result(tenant_id, candidate.inbox_id, [candidate])
        return True

    @handle_safely("process_transaction_matching")
    def process_transaction_matching(self, tenant_id: str, transaction_id: str) -> TransactionMatchingResult:
        """Reverse lookup: find the inbox item a new transaction belongs to."""
        started = time.perf_counter()
        tx = self.db.get_transaction(tenant_id, transaction_id)
        if tx is None:
            raise NotFoundError("Transaction", transaction_id)
        if tx.inbox_id:
            return TransactionMatchingResult(
                matched=True,
                inbox_id=tx.inbox_id,
                match_result=self.db.get_suggestion_for_pair(tenant_id, tx.inbox_id, tx.id),
            )

        profile = self.calibration.get_profile(tenant_id)
        candidates = self.search.candidates_for_transaction(tx, profile)
        decision = decide(candidates, profile, max_suggestions=self.settings.search.max_suggestions)
        result = TransactionMatchingResult(matches=candidates)

        if decision.decision == Decision.AUTO_MATCH and decision.auto_candidate is not None:
            top = decision.auto_candidate
            suggestion = None
            if self._suggest_for_inbox(tenant_id, top):
                suggestion = self.db.get_suggestion_for_pair(tenant_id, top.inbox_id, tx.id)
            if suggestion is not None:
                outcome = self.state.confirm_match(
                    tenant_id, suggestion.id, top.inbox_id, tx.id, SYSTEM_ACTOR,
                    record_feedback=False, restore_status=InboxStatus.PENDING,
                )
                if outcome.ok:
                    result.matched = True
                    result.inbox_id = top.inbox_id
                    result.match_result = outcome.suggestion

        if not result.matched:
            for candidate in decision.suggestions:
                self._suggest_for_inbox(tenant_id, candidate)
            if decision.suggestions:
                result.inbox_id = decision.suggestions[0].inbox_id

        log_matching_run(
            "process_transaction_matching",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            subject_id=transaction_id,
            candidates=len(candidates),
            matched=result.matched,
        )
        return result

    # ==================== BATCH ====================

    def validate_batch(self, tenant_id: str, inbox_ids: List[str]) -> BatchMatchingRequest:
        try:
            request = BatchMatchingRequest(tenant_id=tenant_id, inbox_ids=list(inbox_ids or []))
        except ValidationError as exc:
            raise InvalidRequestError("inbox_ids", exc.errors()[0].get("msg", str(exc))) from exc
        limit = self.settings.orchestrator.max_batch_size
        if len(request.inbox_ids) > limit:
            raise InvalidRequestError("inbox_ids", f"At most {limit} inbox ids per batch")
        return request

    @handle_safely("batch_process_matching")
    def batch_process_matching(self, tenant_id: str, inbox_ids: List[str]) -> BatchReport:
        """
        Match a bounded list of inbox items sequentially.

        Every item is searched first and decisions are applied afterwards,
        so two items competing for one transaction both see it; the loser's
        auto-match turns into a suggestion. A failing item is reported and
        the batch carries on.
        """
        started = time.perf_counter()
        request = self.validate_batch(tenant_id, inbox_ids)
        report = BatchReport()
        pending: List[PendingDecision] = []

        for inbox_id in request.inbox_ids:
            report.processed += 1
            try:
                searched = self._search_phase(tenant_id, inbox_id)
            except LedgerMatchError as exc:
                report.failed.append(BatchFailure(inbox_id, exc.code.value, exc.message))
                continue
            except Exception as exc:
                log_error("batch_item_failed", "Batch item failed", {"inbox_id": inbox_id}, exc)
                report.failed.append(BatchFailure(inbox_id, "INTERNAL_ERROR", "Internal error"))
                continue
            if searched is not None:
                pending.append(searched)

        for item in pending:
            try:
                result = self.apply_search_result(tenant_id, item.inbox_id, item.candidates, item.decision)
            except LedgerMatchError as exc:
                report.failed.append(BatchFailure(item.inbox_id, exc.code.value, exc.message))
                continue
            except Exception as exc:
                log_error("batch_item_failed", "Batch item failed", {"inbox_id": item.inbox_id}, exc)
                self.mark_failed(tenant_id, item.inbox_id, "INTERNAL_ERROR")
                report.failed.append(BatchFailure(item.inbox_id, "INTERNAL_ERROR", "Internal error"))
                continue
            if result.auto_matched:
                report.auto_matched += 1
            else:
                report.suggestions.extend(result.suggestions)

        log_matching_run(
            "batch_process_matching",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            processed=report.processed,
            auto_matched=report.auto_matched,
            failed=len(report.failed),
        )
        return report

    # ==================== DECISIONS ====================

    @handle_safely("confirm_match")
    def confirm_match(
        self,
        tenant_id: str,
        suggestion_id: str,
        inbox_id: str,
        transaction_id: str,
        actor_id: str,
    ) -> MatchOutcome:
        return self.state.confirm_match(tenant_id, suggestion_id, inbox_id, transaction_id, actor_id)

    @handle_safely("decline_match")
    def decline_match(self, tenant_id: str, suggestion_id: str, inbox_id: str, actor_id: str) -> MatchOutcome:
        return self.state.decline_match(tenant_id, suggestion_id, inbox_id, actor_id)

    @handle_safely("unmatch")
    def unmatch(self, tenant_id: str, inbox_id: str, actor_id: str) -> MatchOutcome:
        return self.state.unmatch(tenant_id, inbox_id, actor_id)

    def list_suggestions(self, tenant_id: str, inbox_id: str) -> List[MatchSuggestion]:
        return self.db.list_suggestions(tenant_id, inbox_id=inbox_id)

    # ==================== CALIBRATION & STATS ====================

    @handle_safely("recalibrate")
    def recalibrate(self, tenant_id: str) -> CalibrationProfile:
        return self.calibration.recalibrate(tenant_id)

    def get_calibration(self, tenant_id: str) -> CalibrationProfile:
        return self.calibration.get_profile(tenant_id)

    def reset_calibration(self, tenant_id: str) -> CalibrationProfile:
        return self.calibration.reset(tenant_id)

    def inbox_stats(self, tenant_id: str) -> Dict[str, Any]:
        """Inbox counts per status, for dashboards."""
        counts = self.db.count_inbox_by_status(tenant_id)
        total = sum(counts.values())
        return {
            "total": total,
            "by_status": counts,
            "match_rate": round(counts[InboxStatus.MATCHED.value] / total, 4) if total else 0.0,
        }
