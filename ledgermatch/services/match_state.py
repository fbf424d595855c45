"""Inbox match state machine and transition helpers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Dict, Optional, Union

from ledgermatch.services.errors import (
    ConflictError,
    LedgerMatchError,
    NotFoundError,
    NotMatchedError,
)
from ledgermatch.core.models import InboxStatus, MatchOutcome

if TYPE_CHECKING:  # pragma: no cover
    from ledgermatch.core.database import MatchingDB

logger = logging.getLogger(__name__)


INBOX_STATES = {
    "pending",
    "processing",
    "suggested_match",
    "matched",
    "no_match",
    "error",
}


VALID_TRANSITIONS: Dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"suggested_match", "matched", "no_match", "error", "pending"},
    "suggested_match": {"matched", "no_match", "processing"},
    "no_match": {"processing", "matched"},  # matched: user confirms a previously declined pairing
    "matched": {"suggested_match", "no_match", "pending"},  # unmatch restores the pre-confirmation status
    "error": {"processing", "pending"},
}


class MatchStateError(ValueError):
    """Raised when an invalid transition is attempted."""


@dataclass(frozen=True)
class DecisionRequest:
    tenant_id: str
    inbox_id: str
    actor_id: str
    suggestion_id: Optional[str] = None
    transaction_id: Optional[str] = None


def _value(state: Union[str, InboxStatus]) -> str:
    return getattr(state, "value", state)


def assert_valid_transition(from_state: Union[str, InboxStatus], to_state: Union[str, InboxStatus]) -> None:
    from_state, to_state = _value(from_state), _value(to_state)
    if from_state not in INBOX_STATES or to_state not in INBOX_STATES:
        raise MatchStateError(f"Unknown state transition: {from_state} -> {to_state}")
    allowed = VALID_TRANSITIONS.get(from_state, set())
    if to_state not in allowed:
        raise MatchStateError(f"Invalid transition: {from_state} -> {to_state}")


class MatchStateMachine:
    """
    User-facing match decisions: confirm, decline, unmatch.

    The gateway does the locking and conditional writes. This layer turns
    the expected business failures (NOT_FOUND, CONFLICT, NOT_MATCHED) into
    ``MatchOutcome`` values instead of exceptions.
    """

    def __init__(self, db: "MatchingDB"):
        self.db = db

    @staticmethod
    def _failure(exc: LedgerMatchError, request: DecisionRequest, action: str) -> MatchOutcome:
        logger.info(
            "%s rejected for inbox %s (tenant %s): %s",
            action, request.inbox_id, request.tenant_id, exc.code.value,
        )
        message = exc.message if not exc.detail else f"{exc.message}: {exc.detail}"
        return MatchOutcome.failure(exc.code, message)

    def confirm_match(
        self,
        tenant_id: str,
        suggestion_id: str,
        inbox_id: str,
        transaction_id: str,
        actor_id: str,
        record_feedback: bool = True,
        restore_status: Optional[InboxStatus] = None,
    ) -> MatchOutcome:
        request = DecisionRequest(tenant_id, inbox_id, actor_id, suggestion_id, transaction_id)
        try:
            suggestion, idempotent = self.db.confirm_suggestion(
                tenant_id, suggestion_id, inbox_id, transaction_id, actor_id,
                record_feedback=record_feedback, restore_status=restore_status,
            )
        except (NotFoundError, ConflictError) as exc:
            return self._failure(exc, request, "confirm")
        if not idempotent:
            logger.info("Confirmed %s <-> %s by %s", inbox_id, transaction_id, actor_id)
        return MatchOutcome.success(suggestion, InboxStatus.MATCHED, idempotent=idempotent)

    def decline_match(
        self,
        tenant_id: str,
        suggestion_id: str,
        inbox_id: str,
        actor_id: str,
    ) -> MatchOutcome:
        request = DecisionRequest(tenant_id, inbox_id, actor_id, suggestion_id)
        try:
            suggestion, status, idempotent = self.db.decline_suggestion(
                tenant_id, suggestion_id, inbox_id, actor_id
            )
        except (NotFoundError, ConflictError) as exc:
            return self._failure(exc, request, "decline")
        return MatchOutcome.success(suggestion, status, idempotent=idempotent)

    def unmatch(self, tenant_id: str, inbox_id: str, actor_id: str) -> MatchOutcome:
        request = DecisionRequest(tenant_id, inbox_id, actor_id)
        try:
            suggestion, status = self.db.unmatch_inbox(tenant_id, inbox_id, actor_id)
        except (NotFoundError, NotMatchedError) as exc:
            return self._failure(exc, request, "unmatch")
        logger.info("Unmatched %s from %s by %s", inbox_id, suggestion.transaction_id, actor_id)
        return MatchOutcome.success(suggestion, status)
