"""
Tests for the LedgerMatch engine facade.

These tests run the full inbox ↔ transaction flow against a temporary
SQLite database.
"""

import os
import tempfile
from datetime import date

import pytest

from ledgermatch.core.config import MatchingSettings
from ledgermatch.core.database import MatchingDB
from ledgermatch.core.engine import SYSTEM_ACTOR, MatchingEngine
from ledgermatch.core.models import InboxStatus, MatchType, SuggestionStatus
from ledgermatch.services.errors import (
    DependencyUnavailableError,
    ErrorCode,
    InternalError,
    InvalidRequestError,
    NotFoundError,
    TransientDependencyError,
    UnscorableItemError,
)

MERCHANTS = [
    "Acme", "Globex", "Initech", "Umbrella", "Hooli",
    "Stark Industries", "Wayne Enterprises", "Wonka", "Cyberdyne", "Tyrell",
]


class RecordingExtractor:
    """Extraction collaborator returning canned fields per inbox id."""

    def __init__(self, results=None, failures=None):
        self.results = results or {}
        self.failures = failures or {}
        self.calls = []

    def __call__(self, tenant_id, item):
        self.calls.append(item.id)
        if item.id in self.failures:
            raise self.failures[item.id]
        return self.results.get(item.id, {})


class EngineTestCase:

    def setup_method(self):
        self.temp_db = tempfile.NamedTemporaryFile(suffix=".db", delete=False)
        self.temp_db.close()
        self.db = MatchingDB(db_path=self.temp_db.name)
        self.settings = MatchingSettings()
        self.engine = MatchingEngine(db=self.db, settings=self.settings)
        self.tenant = "test_tenant"

    def teardown_method(self):
        os.unlink(self.temp_db.name)

    def add_item(self, tenant_id=None, **fields):
        payload = {
            "amount_minor": 10000,
            "currency": "EUR",
            "document_date": date(2024, 3, 1),
            "merchant_name": "Acme Corp",
        }
        payload.update(fields)
        return self.engine.add_inbox_item(tenant_id or self.tenant, **payload)

    def add_tx(self, tenant_id=None, **fields):
        payload = {
            "amount_minor": 10000,
            "currency": "EUR",
            "transaction_date": date(2024, 3, 1),
            "counterparty": "ACME CORP LTD",
        }
        payload.update(fields)
        return self.engine.add_transaction(tenant_id or self.tenant, **payload)

    def status(self, inbox_id):
        return self.db.get_inbox_item(self.tenant, inbox_id).status


class TestInboxMatching(EngineTestCase):

    def test_exact_match_is_auto_matched(self):
        item = self.add_item()
        tx = self.add_tx()

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.auto_matched
        assert result.status == InboxStatus.MATCHED
        top = result.matches[0]
        assert top.scores.amount == 1.0
        assert top.scores.date == 1.0
        assert top.scores.text > 0.8
        assert top.confidence >= self.settings.thresholds.auto_match
        assert result.match_result.transaction_id == tx.id
        assert result.match_result.status == SuggestionStatus.CONFIRMED
        assert result.match_result.decided_by == SYSTEM_ACTOR
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id == item.id

    def test_auto_match_is_not_calibration_feedback(self):
        item = self.add_item()
        self.add_tx()
        self.engine.process_inbox_matching(self.tenant, item.id)
        assert self.db.list_feedback(self.tenant) == []

    def test_distant_date_is_only_suggested(self):
        item = self.add_item()
        tx = self.add_tx(transaction_date=date(2024, 3, 20))

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert not result.auto_matched
        assert result.status == InboxStatus.SUGGESTED_MATCH
        top = result.matches[0]
        assert top.scores.date < 0.5
        assert self.settings.thresholds.suggest <= top.confidence < self.settings.thresholds.auto_match
        assert top.match_type == MatchType.HIGH_CONFIDENCE
        suggestions = self.engine.list_suggestions(self.tenant, item.id)
        assert [(s.transaction_id, s.status) for s in suggestions] == [(tx.id, SuggestionStatus.SUGGESTED)]

    def test_missing_date_is_renormalized_away(self):
        item = self.add_item(document_date=None)
        tx = self.add_tx(transaction_date=date.today())

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        top = result.matches[0]
        assert top.transaction_id == tx.id
        assert top.scores.date is None
        assert top.confidence == pytest.approx(1.0)
        assert result.auto_matched

    def test_nothing_close_means_no_match(self):
        item = self.add_item()
        self.add_tx(amount_minor=99900, counterparty="Globex")

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.status == InboxStatus.NO_MATCH
        assert not result.auto_matched
        assert self.engine.list_suggestions(self.tenant, item.id) == []

    def test_two_close_candidates_are_not_auto_matched(self):
        item = self.add_item()
        self.add_tx()
        self.add_tx(counterparty="Acme Corporation")

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert not result.auto_matched
        assert result.status == InboxStatus.SUGGESTED_MATCH
        assert len(self.engine.list_suggestions(self.tenant, item.id)) == 2

    def test_already_matched_item_is_returned_as_is(self):
        item = self.add_item()
        tx = self.add_tx()
        self.engine.process_inbox_matching(self.tenant, item.id)

        again = self.engine.process_inbox_matching(self.tenant, item.id)

        assert again.status == InboxStatus.MATCHED
        assert again.match_result.transaction_id == tx.id

    def test_declined_pair_is_not_suggested_again(self):
        item = self.add_item()
        tx = self.add_tx(transaction_date=date(2024, 3, 20))
        self.engine.process_inbox_matching(self.tenant, item.id)
        suggestion = self.db.get_suggestion_for_pair(self.tenant, item.id, tx.id)
        self.engine.decline_match(self.tenant, suggestion.id, item.id, "user-1")

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.status == InboxStatus.NO_MATCH
        assert result.matches == []

    def test_other_tenants_transactions_are_ignored(self):
        item = self.add_item()
        self.add_tx(tenant_id="other_tenant")

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.matches == []
        assert result.status == InboxStatus.NO_MATCH

    def test_unknown_or_foreign_item_is_not_found(self):
        foreign = self.add_item(tenant_id="other_tenant")
        with pytest.raises(NotFoundError):
            self.engine.process_inbox_matching(self.tenant, "INB-missing")
        with pytest.raises(NotFoundError):
            self.engine.process_inbox_matching(self.tenant, foreign.id)

    def test_unscorable_item_is_reported(self):
        item = self.add_item(amount_minor=None, document_date=None, merchant_name=None)
        self.add_tx()

        with pytest.raises(UnscorableItemError):
            self.engine.process_inbox_matching(self.tenant, item.id)

        stored = self.db.get_inbox_item(self.tenant, item.id)
        assert stored.status == InboxStatus.ERROR
        assert stored.error_reason.startswith("VALIDATION_ERROR")

    def test_unexpected_failure_is_opaque(self, monkeypatch):
        item = self.add_item()

        def boom(*args, **kwargs):
            raise RuntimeError("database password is hunter2")

        monkeypatch.setattr(self.engine.search, "candidates_for_item", boom)
        with pytest.raises(InternalError) as exc_info:
            self.engine.process_inbox_matching(self.tenant, item.id)

        assert exc_info.value.code == ErrorCode.INTERNAL_ERROR
        assert "hunter2" not in str(exc_info.value.to_dict())
        assert self.status(item.id) == InboxStatus.ERROR

    def test_error_item_can_be_retried(self):
        item = self.add_item(amount_minor=None, document_date=None, merchant_name=None)
        with pytest.raises(UnscorableItemError):
            self.engine.process_inbox_matching(self.tenant, item.id)
        self.db.update_inbox_fields(self.tenant, item.id, amount_minor=10000, merchant_name="Acme")
        self.add_tx(transaction_date=date.today())

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.auto_matched


class TestExtraction(EngineTestCase):

    def test_extracted_fields_fill_gaps_once(self):
        item = self.add_item(amount_minor=None, currency=None, document_date=None,
                             merchant_name=None, display_name="scan_0001.pdf")
        self.add_tx()
        extractor = RecordingExtractor(results={item.id: {
            "total": "100,00",
            "currency": "eur",
            "invoice_date": "2024-03-01",
            "vendor": "Acme Corp",
        }})
        self.engine.extractor = extractor

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        stored = self.db.get_inbox_item(self.tenant, item.id)
        assert stored.amount_minor == 10000
        assert stored.currency == "EUR"
        assert stored.document_date == date(2024, 3, 1)
        assert stored.merchant_name == "Acme Corp"
        assert stored.extracted_at is not None
        assert result.auto_matched

        self.engine.process_inbox_matching(self.tenant, item.id)
        assert extractor.calls == [item.id]

    def test_extraction_does_not_overwrite_known_fields(self):
        item = self.add_item()
        self.engine.extractor = RecordingExtractor(results={item.id: {"amount": "5.00", "merchant": "Other"}})
        self.engine.process_inbox_matching(self.tenant, item.id)

        stored = self.db.get_inbox_item(self.tenant, item.id)
        assert stored.amount_minor == 10000
        assert stored.merchant_name == "Acme Corp"

    def test_unavailable_extraction_scores_existing_fields(self):
        item = self.add_item()
        self.add_tx()
        self.engine.extractor = RecordingExtractor(
            failures={item.id: DependencyUnavailableError("extraction", "provider disabled")}
        )

        result = self.engine.process_inbox_matching(self.tenant, item.id)

        assert result.auto_matched

    def test_transient_extraction_failure_releases_item(self):
        item = self.add_item()
        self.engine.extractor = RecordingExtractor(
            failures={item.id: TransientDependencyError("extraction", "timed out")}
        )

        with pytest.raises(TransientDependencyError):
            self.engine.process_inbox_matching(self.tenant, item.id)

        assert self.status(item.id) == InboxStatus.PENDING

    def test_unusable_extraction_output(self):
        item = self.add_item()
        self.engine.extractor = lambda tenant_id, inbox_item: 42

        with pytest.raises(InvalidRequestError):
            self.engine.process_inbox_matching(self.tenant, item.id)

        assert self.status(item.id) == InboxStatus.ERROR


class TestTransactionMatching(EngineTestCase):

    def test_new_transaction_finds_its_receipt(self):
        item = self.add_item()
        tx = self.add_tx()

        result = self.engine.process_transaction_matching(self.tenant, tx.id)

        assert result.matched
        assert result.inbox_id == item.id
        assert result.match_result.status == SuggestionStatus.CONFIRMED
        assert self.status(item.id) == InboxStatus.MATCHED

    def test_already_matched_transaction(self):
        item = self.add_item()
        tx = self.add_tx()
        self.engine.process_inbox_matching(self.tenant, item.id)

        result = self.engine.process_transaction_matching(self.tenant, tx.id)

        assert result.matched
        assert result.inbox_id == item.id

    def test_weak_match_is_suggested_on_the_inbox_item(self):
        item = self.add_item()
        tx = self.add_tx(transaction_date=date(2024, 3, 20))

        result = self.engine.process_transaction_matching(self.tenant, tx.id)

        assert not result.matched
        assert result.inbox_id == item.id
        assert self.status(item.id) == InboxStatus.SUGGESTED_MATCH
        assert self.db.get_suggestion_for_pair(self.tenant, item.id, tx.id) is not None

    def test_vanished_suggestion_leaves_item_suggested(self, monkeypatch):
        item = self.add_item()
        tx = self.add_tx()
        monkeypatch.setattr(self.db, "get_suggestion_for_pair", lambda *args: None)

        result = self.engine.process_transaction_matching(self.tenant, tx.id)

        assert not result.matched
        assert result.inbox_id == item.id
        assert self.status(item.id) == InboxStatus.SUGGESTED_MATCH
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id is None

    def test_unknown_transaction(self):
        with pytest.raises(NotFoundError):
            self.engine.process_transaction_matching(self.tenant, "TXN-missing")


class TestBatchMatching(EngineTestCase):

    def test_competing_items_never_both_confirmed(self):
        first = self.add_item()
        second = self.add_item()
        tx = self.add_tx()

        report = self.engine.batch_process_matching(self.tenant, [first.id, second.id])

        assert report.processed == 2
        assert report.auto_matched == 1
        assert report.failed == []
        confirmed = self.db.list_suggestions(self.tenant, transaction_id=tx.id, status=SuggestionStatus.CONFIRMED)
        assert len(confirmed) == 1
        winner = confirmed[0].inbox_id
        loser = second.id if winner == first.id else first.id
        assert self.status(loser) == InboxStatus.SUGGESTED_MATCH
        assert [s.inbox_id for s in report.suggestions] == [loser]
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id == winner

    def test_one_failing_item_does_not_abort_the_batch(self):
        items = []
        for index, merchant in enumerate(MERCHANTS):
            amount = 1000 * (index + 1) + 37
            items.append(self.add_item(amount_minor=amount, merchant_name=merchant))
            self.add_tx(amount_minor=amount, counterparty=merchant.upper())
        failing = items[4]
        self.engine.extractor = RecordingExtractor(
            failures={failing.id: TransientDependencyError("extraction", "OCR service timed out")}
        )

        report = self.engine.batch_process_matching(self.tenant, [item.id for item in items])

        assert report.processed == 10
        assert report.auto_matched == 9
        assert len(report.failed) == 1
        failure = report.failed[0]
        assert failure.inbox_id == failing.id
        assert failure.code == ErrorCode.DEPENDENCY_UNAVAILABLE.value
        assert failure.reason
        for item in items:
            expected = InboxStatus.PENDING if item.id == failing.id else InboxStatus.MATCHED
            assert self.status(item.id) == expected

    def test_missing_ids_are_reported(self):
        item = self.add_item()
        report = self.engine.batch_process_matching(self.tenant, ["INB-missing", item.id])
        assert report.processed == 2
        assert [(f.inbox_id, f.code) for f in report.failed] == [("INB-missing", "NOT_FOUND")]

    def test_duplicate_ids_are_processed_once(self):
        item = self.add_item()
        report = self.engine.batch_process_matching(self.tenant, [item.id, item.id])
        assert report.processed == 1

    def test_empty_batch_is_rejected(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            self.engine.batch_process_matching(self.tenant, [])
        assert exc_info.value.code == ErrorCode.VALIDATION_ERROR

    def test_oversized_batch_is_rejected(self):
        with pytest.raises(InvalidRequestError):
            self.engine.batch_process_matching(self.tenant, [f"INB-{i}" for i in range(51)])


class TestDecisions(EngineTestCase):

    def test_unmatch_pending_item(self):
        item = self.add_item()
        outcome = self.engine.unmatch(self.tenant, item.id, "user-1")
        assert not outcome.ok
        assert outcome.code == ErrorCode.NOT_MATCHED
        assert self.status(item.id) == InboxStatus.PENDING

    def test_unmatch_auto_match_makes_item_matchable_again(self):
        item = self.add_item()
        tx = self.add_tx()
        self.engine.process_inbox_matching(self.tenant, item.id)

        outcome = self.engine.unmatch(self.tenant, item.id, "user-1")

        assert outcome.ok
        assert self.status(item.id) == InboxStatus.PENDING
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id is None

    def test_unmatch_after_user_confirmation_restores_suggestion(self):
        item = self.add_item()
        tx = self.add_tx(transaction_date=date(2024, 3, 20))
        self.engine.process_inbox_matching(self.tenant, item.id)
        assert self.status(item.id) == InboxStatus.SUGGESTED_MATCH
        suggestion = self.db.get_suggestion_for_pair(self.tenant, item.id, tx.id)
        assert self.engine.confirm_match(self.tenant, suggestion.id, item.id, tx.id, "user-1").ok

        outcome = self.engine.unmatch(self.tenant, item.id, "user-1")

        assert outcome.ok
        assert self.status(item.id) == InboxStatus.SUGGESTED_MATCH
        assert self.db.get_inbox_item(self.tenant, item.id).transaction_id is None
        assert self.db.get_transaction(self.tenant, tx.id).inbox_id is None

    def test_user_confirmation_of_suggestion(self):
        item = self.add_item()
        tx = self.add_tx(transaction_date=date(2024, 3, 20))
        self.engine.process_inbox_matching(self.tenant, item.id)
        suggestion = self.db.get_suggestion_for_pair(self.tenant, item.id, tx.id)

        outcome = self.engine.confirm_match(self.tenant, suggestion.id, item.id, tx.id, "user-1")

        assert outcome.ok
        assert outcome.to_dict()["inbox_status"] == "matched"
        assert len(self.db.list_feedback(self.tenant)) == 1


class TestCalibrationAndStats(EngineTestCase):

    def test_recalibrate_from_user_feedback(self):
        for index, merchant in enumerate(MERCHANTS[:5]):
            amount = 2000 * (index + 1)
            item = self.add_item(amount_minor=amount, merchant_name=merchant)
            tx = self.add_tx(amount_minor=amount, counterparty=merchant, transaction_date=date(2024, 3, 20))
            self.engine.process_inbox_matching(self.tenant, item.id)
            suggestion = self.db.get_suggestion_for_pair(self.tenant, item.id, tx.id)
            assert self.engine.confirm_match(self.tenant, suggestion.id, item.id, tx.id, "user-1").ok

        profile = self.engine.recalibrate(self.tenant)

        assert not profile.is_default
        assert profile.confirmed_count == 5
        assert profile.suggest_threshold == pytest.approx(0.58)
        assert self.engine.get_calibration(self.tenant).suggest_threshold == pytest.approx(0.58)
        assert self.engine.get_calibration("other_tenant").is_default

        reset = self.engine.reset_calibration(self.tenant)
        assert reset.is_default
        assert self.engine.get_calibration(self.tenant).suggest_threshold == 0.6

    def test_recalibrate_without_feedback_keeps_defaults(self):
        assert self.engine.recalibrate(self.tenant).is_default

    def test_inbox_stats(self):
        matched = self.add_item()
        self.add_tx()
        self.add_item(amount_minor=55, merchant_name="Nobody")
        self.engine.process_inbox_matching(self.tenant, matched.id)

        stats = self.engine.inbox_stats(self.tenant)

        assert stats["total"] == 2
        assert stats["by_status"]["matched"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["match_rate"] == 0.5
