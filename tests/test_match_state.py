"""
Tests for the inbox state machine and the confirm / decline / unmatch gateway.
"""

import os
import tempfile
from datetime import date

import pytest

from ledgermatch.core.database import MatchingDB
from ledgermatch.core.models import (
    FeatureScores,
    FeedbackOutcome,
    FeedbackReason,
    InboxStatus,
    MatchCandidate,
    MatchType,
    SuggestionStatus,
)
from ledgermatch.services.errors import ConflictError, ErrorCode
from ledgermatch.services.match_state import (
    MatchStateError,
    MatchStateMachine,
    assert_valid_transition,
)


class TestTransitions:

    @pytest.mark.parametrize("from_state,to_state", [
        ("pending", "processing"),
        ("processing", "suggested_match"),
        ("processing", "matched"),
        ("processing", "no_match"),
        ("processing", "error"),
        ("suggested_match", "matched"),
        ("suggested_match", "no_match"),
        ("no_match", "processing"),
        ("matched", "suggested_match"),
        ("matched", "pending"),
        ("matched", "no_match"),
        ("error", "processing"),
    ])
    def test_valid(self, from_state, to_state):
        assert_valid_transition(from_state, to_state)

    @pytest.mark.parametrize("from_state,to_state", [
        ("pending", "matched"),
        ("matched", "processing"),
        ("error", "matched"),
        ("no_match", "suggested_match"),
    ])
    def test_invalid(self, from_state, to_state):
        with pytest.raises(MatchStateError):
            assert_valid_transition(from_state, to_state)

    def test_unknown_state(self):
        with pytest.raises(MatchStateError):
            assert_valid_transition("pending", "archived")

    def test_accepts_enums(self):
        assert_valid_transition(InboxStatus.PENDING, InboxStatus.PROCESSING)

    def test_state_error_is_a_value_error(self):
        assert issubclass(MatchStateError, ValueError)


class TestMatchStateMachine:

    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.temp_db.close()
        self.db = MatchingDB(db_path=self.temp_db.name)
        self.db.initialize()
        self.machine = MatchStateMachine(self.db)
        self.tenant = "t1"

        self.item = self._item()
        self.tx_a = self._tx("Acme Corp")
        self.tx_b = self._tx("Acme Store")
        self._suggest(self.item.id, [(self.tx_a.id, 0.88), (self.tx_b.id, 0.75)])
        self.sug_a = self.db.get_suggestion_for_pair(self.tenant, self.item.id, self.tx_a.id)
        self.sug_b = self.db.get_suggestion_for_pair(self.tenant, self.item.id, self.tx_b.id)

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    def _item(self, tenant_id=None):
        return self.db.create_inbox_item({
            "tenant_id": tenant_id or self.tenant,
            "amount_minor": 4200,
            "currency": "EUR",
            "document_date": date(2024, 3, 1),
            "merchant_name": "Acme",
        })

    def _tx(self, counterparty, tenant_id=None):
        return self.db.create_transaction({
            "tenant_id": tenant_id or self.tenant,
            "amount_minor": -4200,
            "currency": "EUR",
            "transaction_date": date(2024, 3, 1),
            "counterparty": counterparty,
        })

    def _suggest(self, inbox_id, pairs, tenant_id=None):
        tenant_id = tenant_id or self.tenant
        self.db.transition_inbox_status(tenant_id, inbox_id, [InboxStatus.PENDING], InboxStatus.PROCESSING)
        candidates = [
            MatchCandidate(
                inbox_id=inbox_id,
                transaction_id=tx_id,
                confidence=confidence,
                scores=FeatureScores(amount=1.0, date=1.0, text=confidence, currency=1.0),
                match_type=MatchType.HIGH_CONFIDENCE,
            )
            for tx_id, confidence in pairs
        ]
        return self.db.record_search_result(tenant_id, inbox_id, candidates)

    def _status(self, inbox_id=None):
        return self.db.get_inbox_item(self.tenant, inbox_id or self.item.id).status

    def _confirmed_count(self, inbox_id=None):
        return len(self.db.list_suggestions(
            self.tenant, inbox_id=inbox_id or self.item.id, status=SuggestionStatus.CONFIRMED
        ))

    def confirm(self, suggestion, actor="user-1"):
        return self.machine.confirm_match(
            self.tenant, suggestion.id, suggestion.inbox_id, suggestion.transaction_id, actor
        )

    # ==================== CONFIRM ====================

    def test_confirm_links_both_sides(self):
        assert self._status() == InboxStatus.SUGGESTED_MATCH
        outcome = self.confirm(self.sug_a)

        assert outcome.ok
        assert outcome.inbox_status == InboxStatus.MATCHED
        assert outcome.suggestion.status == SuggestionStatus.CONFIRMED
        assert outcome.suggestion.decided_by == "user-1"
        item = self.db.get_inbox_item(self.tenant, self.item.id)
        assert item.status == InboxStatus.MATCHED
        assert item.transaction_id == self.tx_a.id
        assert self.db.get_transaction(self.tenant, self.tx_a.id).inbox_id == self.item.id

    def test_confirm_records_positive_feedback(self):
        self.confirm(self.sug_a)
        events = self.db.list_feedback(self.tenant)
        assert len(events) == 1
        assert events[0].outcome == FeedbackOutcome.POSITIVE
        assert events[0].reason == FeedbackReason.CONFIRMED
        assert events[0].confidence == pytest.approx(0.88)
        assert events[0].scores.text == pytest.approx(0.88)

    def test_confirm_is_idempotent(self):
        self.confirm(self.sug_a)
        again = self.confirm(self.sug_a)
        assert again.ok
        assert again.idempotent
        assert len(self.db.list_feedback(self.tenant)) == 1

    def test_confirm_second_pairing_conflicts(self):
        self.confirm(self.sug_a)
        outcome = self.confirm(self.sug_b)

        assert not outcome.ok
        assert outcome.code == ErrorCode.CONFLICT
        assert self._confirmed_count() == 1
        assert self.db.get_transaction(self.tenant, self.tx_b.id).inbox_id is None
        assert self.db.get_suggestion(self.tenant, self.sug_b.id).status == SuggestionStatus.SUGGESTED

    def test_confirm_transaction_owned_by_another_item_conflicts(self):
        other = self._item()
        self._suggest(other.id, [(self.tx_a.id, 0.9)])
        other_sug = self.db.get_suggestion_for_pair(self.tenant, other.id, self.tx_a.id)
        assert self.confirm(other_sug).ok

        outcome = self.confirm(self.sug_a)
        assert outcome.code == ErrorCode.CONFLICT
        assert self._status() == InboxStatus.SUGGESTED_MATCH

    def test_cross_tenant_confirm_is_not_found(self):
        outcome = self.machine.confirm_match(
            "t2", self.sug_a.id, self.item.id, self.tx_a.id, "intruder"
        )
        assert outcome.code == ErrorCode.NOT_FOUND
        assert self._status() == InboxStatus.SUGGESTED_MATCH

    def test_confirm_from_pending_is_rejected(self):
        fresh = self._item()
        tx = self._tx("Fresh")
        self._suggest(fresh.id, [(tx.id, 0.7)])
        sug = self.db.get_suggestion_for_pair(self.tenant, fresh.id, tx.id)
        self.db.transition_inbox_status(
            self.tenant, fresh.id, [InboxStatus.SUGGESTED_MATCH], InboxStatus.PROCESSING
        )
        self.db.transition_inbox_status(self.tenant, fresh.id, [InboxStatus.PROCESSING], InboxStatus.PENDING)

        outcome = self.confirm(sug)
        assert outcome.code == ErrorCode.CONFLICT
        assert self._status(fresh.id) == InboxStatus.PENDING

    # ==================== DECLINE ====================

    def test_decline_keeps_item_open_while_suggestions_remain(self):
        outcome = self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        assert outcome.ok
        assert outcome.inbox_status == InboxStatus.SUGGESTED_MATCH
        assert self.db.get_suggestion(self.tenant, self.sug_b.id).status == SuggestionStatus.DECLINED

    def test_declining_last_suggestion_means_no_match(self):
        self.machine.decline_match(self.tenant, self.sug_a.id, self.item.id, "user-1")
        outcome = self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        assert outcome.inbox_status == InboxStatus.NO_MATCH
        assert self._status() == InboxStatus.NO_MATCH

    def test_decline_records_negative_feedback(self):
        self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        events = self.db.list_feedback(self.tenant)
        assert [(e.outcome, e.reason) for e in events] == [
            (FeedbackOutcome.NEGATIVE, FeedbackReason.DECLINED)
        ]

    def test_decline_is_idempotent(self):
        self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        again = self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        assert again.ok and again.idempotent
        assert len(self.db.list_feedback(self.tenant)) == 1

    def test_decline_confirmed_conflicts(self):
        self.confirm(self.sug_a)
        outcome = self.machine.decline_match(self.tenant, self.sug_a.id, self.item.id, "user-1")
        assert outcome.code == ErrorCode.CONFLICT
        assert self._status() == InboxStatus.MATCHED

    def test_decline_unknown_suggestion(self):
        outcome = self.machine.decline_match(self.tenant, "SUG-missing", self.item.id, "user-1")
        assert outcome.code == ErrorCode.NOT_FOUND

    # ==================== UNMATCH ====================

    def test_unmatch_never_matched_item(self):
        fresh = self._item()
        outcome = self.machine.unmatch(self.tenant, fresh.id, "user-1")
        assert not outcome.ok
        assert outcome.code == ErrorCode.NOT_MATCHED
        assert self._status(fresh.id) == InboxStatus.PENDING
        assert self.db.list_feedback(self.tenant) == []

    def test_unmatch_restores_previous_state(self):
        before = self._status()
        self.confirm(self.sug_a)
        outcome = self.machine.unmatch(self.tenant, self.item.id, "user-1")

        assert outcome.ok
        assert self._status() == before
        assert self.db.get_inbox_item(self.tenant, self.item.id).transaction_id is None
        assert self.db.get_transaction(self.tenant, self.tx_a.id).inbox_id is None
        assert self._confirmed_count() == 0

    def test_unmatch_restores_single_suggestion_item(self):
        lone = self._item()
        tx = self._tx("Lone")
        self._suggest(lone.id, [(tx.id, 0.8)])
        suggestion = self.db.get_suggestion_for_pair(self.tenant, lone.id, tx.id)
        assert self._status(lone.id) == InboxStatus.SUGGESTED_MATCH

        self.confirm(suggestion)
        outcome = self.machine.unmatch(self.tenant, lone.id, "user-1")

        assert outcome.inbox_status == InboxStatus.SUGGESTED_MATCH
        assert self._status(lone.id) == InboxStatus.SUGGESTED_MATCH
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id is None

    def test_unmatch_after_declining_the_rest_restores_suggested_match(self):
        self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        self.confirm(self.sug_a)
        outcome = self.machine.unmatch(self.tenant, self.item.id, "user-1")
        assert outcome.inbox_status == InboxStatus.SUGGESTED_MATCH

    def test_unmatch_restores_no_match(self):
        self.machine.decline_match(self.tenant, self.sug_a.id, self.item.id, "user-1")
        self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1")
        assert self._status() == InboxStatus.NO_MATCH

        assert self.confirm(self.sug_a).ok
        outcome = self.machine.unmatch(self.tenant, self.item.id, "user-1")

        assert outcome.inbox_status == InboxStatus.NO_MATCH

    def test_unmatch_honours_explicit_restore_status(self):
        outcome = self.machine.confirm_match(
            self.tenant, self.sug_a.id, self.item.id, self.tx_a.id, "system",
            record_feedback=False, restore_status=InboxStatus.PENDING,
        )
        assert outcome.ok
        outcome = self.machine.unmatch(self.tenant, self.item.id, "user-1")
        assert outcome.inbox_status == InboxStatus.PENDING

    def test_unmatch_records_feedback_and_blocks_the_pair(self):
        self.confirm(self.sug_a)
        self.machine.unmatch(self.tenant, self.item.id, "user-1")
        reasons = sorted(e.reason.value for e in self.db.list_feedback(self.tenant))
        assert reasons == [FeedbackReason.CONFIRMED.value, FeedbackReason.UNMATCHED.value]
        assert (self.item.id, self.tx_a.id) in self.db.list_declined_pairs(self.tenant, inbox_id=self.item.id)

    def test_other_suggestion_can_be_confirmed_after_unmatch(self):
        self.confirm(self.sug_a)
        self.machine.unmatch(self.tenant, self.item.id, "user-1")
        outcome = self.confirm(self.sug_b)
        assert outcome.ok
        assert self.db.get_transaction(self.tenant, self.tx_b.id).inbox_id == self.item.id

    # ==================== INVARIANTS ====================

    def test_at_most_one_confirmed_over_any_sequence(self):
        steps = [
            lambda: self.confirm(self.sug_a),
            lambda: self.confirm(self.sug_b),
            lambda: self.machine.unmatch(self.tenant, self.item.id, "user-1"),
            lambda: self.confirm(self.sug_b),
            lambda: self.confirm(self.sug_a),
            lambda: self.machine.decline_match(self.tenant, self.sug_b.id, self.item.id, "user-1"),
            lambda: self.machine.unmatch(self.tenant, self.item.id, "user-1"),
            lambda: self.machine.unmatch(self.tenant, self.item.id, "user-1"),
            lambda: self.confirm(self.sug_a),
        ]
        for step in steps:
            step()
            assert self._confirmed_count() <= 1

    def test_search_result_requires_processing(self):
        fresh = self._item()
        with pytest.raises(ConflictError):
            self.db.record_search_result(self.tenant, fresh.id, [])
