"""
LedgerMatch Core Data Models

Inbox items, transactions, match suggestions, feedback and calibration
profiles as the matching engine sees them. Rows coming out of the database
are turned into these dataclasses once; everything downstream works on
typed fields with ``None`` as the explicit "absent" marker.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any
from dataclasses import dataclass, field, asdict
import json

from ledgermatch.core.config import FEATURES, ThresholdDefaults
from ledgermatch.services.errors import ErrorCode
from ledgermatch.services.normalization import parse_date


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InboxStatus(str, Enum):
    """Inbox item lifecycle."""
    PENDING = "pending"                  # Captured, not yet matched
    PROCESSING = "processing"            # Matching in progress
    SUGGESTED_MATCH = "suggested_match"  # Open suggestions awaiting review
    MATCHED = "matched"                  # Exactly one confirmed match
    NO_MATCH = "no_match"                # Searched, nothing cleared the bar
    ERROR = "error"                      # Permanent failure, see error_reason


class SuggestionStatus(str, Enum):
    SUGGESTED = "suggested"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class MatchType(str, Enum):
    """Confidence tier label stored with a suggestion."""
    AUTO_MATCHED = "auto_matched"
    HIGH_CONFIDENCE = "high_confidence"
    SUGGESTED = "suggested"


class Decision(str, Enum):
    AUTO_MATCH = "auto_match"
    SUGGEST = "suggest"
    DISCARD = "discard"


class FeedbackOutcome(str, Enum):
    POSITIVE = "positive"
    NEGATIVE = "negative"


class FeedbackReason(str, Enum):
    CONFIRMED = "confirmed"
    DECLINED = "declined"
    UNMATCHED = "unmatched"


@dataclass(frozen=True)
class FeatureScores:
    """Per-feature similarity; ``None`` means unknown, never zero."""
    amount: Optional[float] = None
    date: Optional[float] = None
    text: Optional[float] = None
    currency: Optional[float] = None

    def known(self) -> Dict[str, float]:
        return {name: getattr(self, name) for name in FEATURES if getattr(self, name) is not None}

    def to_dict(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in FEATURES}

    @classmethod
    def from_row(cls, row: Dict[str, Any], prefix: str = "") -> "FeatureScores":
        def _get(name: str) -> Optional[float]:
            value = row.get(f"{prefix}{name}_score")
            return None if value is None else float(value)
        return cls(amount=_get("amount"), date=_get("date"), text=_get("text"), currency=_get("currency"))


@dataclass
class InboxItem:
    """A captured financial document awaiting reconciliation."""
    id: str
    tenant_id: str
    display_name: str = ""

    # Extracted fields
    amount_minor: Optional[int] = None
    currency: Optional[str] = None
    document_date: Optional[date] = None
    merchant_name: Optional[str] = None
    description: Optional[str] = None
    document_type: Optional[str] = None  # expense | invoice

    # Matching state
    status: InboxStatus = InboxStatus.PENDING
    transaction_id: Optional[str] = None
    error_reason: Optional[str] = None
    extracted_at: Optional[str] = None

    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def anchor_date(self) -> Optional[date]:
        """Date the candidate window is centred on."""
        return self.document_date or parse_date(self.created_at)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "InboxItem":
        amount = row.get("amount_minor")
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            display_name=row.get("display_name") or "",
            amount_minor=None if amount is None else int(amount),
            currency=row.get("currency"),
            document_date=parse_date(row.get("document_date")),
            merchant_name=row.get("merchant_name"),
            description=row.get("description"),
            document_type=row.get("document_type"),
            status=InboxStatus(row.get("status") or InboxStatus.PENDING.value),
            transaction_id=row.get("transaction_id"),
            error_reason=row.get("error_reason"),
            extracted_at=row.get("extracted_at"),
            created_at=row.get("created_at") or _now(),
            updated_at=row.get("updated_at") or _now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        data["document_date"] = self.document_date.isoformat() if self.document_date else None
        return data


@dataclass
class Transaction:
    """A bank-ledger payment record. Only ``inbox_id`` is written by matching."""
    id: str
    tenant_id: str
    amount_minor: int = 0
    currency: str = "EUR"
    transaction_date: Optional[date] = None
    counterparty: Optional[str] = None
    description: Optional[str] = None
    inbox_id: Optional[str] = None
    created_at: str = field(default_factory=_now)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Transaction":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            amount_minor=int(row.get("amount_minor") or 0),
            currency=row.get("currency") or "EUR",
            transaction_date=parse_date(row.get("transaction_date")),
            counterparty=row.get("counterparty"),
            description=row.get("description"),
            inbox_id=row.get("inbox_id"),
            created_at=row.get("created_at") or _now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["transaction_date"] = self.transaction_date.isoformat() if self.transaction_date else None
        return data


@dataclass
class MatchCandidate:
    """Ephemeral scoring result for one inbox/transaction pairing."""
    inbox_id: str
    transaction_id: str
    confidence: float
    scores: FeatureScores = field(default_factory=FeatureScores)
    rank: int = 0
    date_distance_days: Optional[int] = None
    match_type: Optional[MatchType] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inbox_id": self.inbox_id,
            "transaction_id": self.transaction_id,
            "confidence": round(self.confidence, 4),
            "scores": self.scores.to_dict(),
            "rank": self.rank,
            "date_distance_days": self.date_distance_days,
            "match_type": self.match_type.value if self.match_type else None,
        }


@dataclass
class MatchSuggestion:
    """Persisted proposed or confirmed pairing."""
    id: str
    tenant_id: str
    inbox_id: str
    transaction_id: str
    confidence: float
    scores: FeatureScores = field(default_factory=FeatureScores)
    match_type: MatchType = MatchType.SUGGESTED
    status: SuggestionStatus = SuggestionStatus.SUGGESTED
    decided_by: Optional[str] = None
    decided_at: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MatchSuggestion":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            inbox_id=row["inbox_id"],
            transaction_id=row["transaction_id"],
            confidence=float(row.get("confidence") or 0.0),
            scores=FeatureScores.from_row(row),
            match_type=MatchType(row.get("match_type") or MatchType.SUGGESTED.value),
            status=SuggestionStatus(row.get("status") or SuggestionStatus.SUGGESTED.value),
            decided_by=row.get("decided_by"),
            decided_at=row.get("decided_at"),
            created_at=row.get("created_at") or _now(),
            updated_at=row.get("updated_at") or _now(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "inbox_id": self.inbox_id,
            "transaction_id": self.transaction_id,
            "confidence": round(self.confidence, 4),
            "scores": self.scores.to_dict(),
            "match_type": self.match_type.value,
            "status": self.status.value,
            "decided_by": self.decided_by,
            "decided_at": self.decided_at,
        }


@dataclass
class MatchFeedback:
    """Calibration feedback recorded on every user decision."""
    id: str
    tenant_id: str
    suggestion_id: str
    inbox_id: str
    transaction_id: str
    outcome: FeedbackOutcome
    reason: FeedbackReason
    confidence: float
    scores: FeatureScores = field(default_factory=FeatureScores)
    actor_id: Optional[str] = None
    created_at: str = field(default_factory=_now)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "MatchFeedback":
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            suggestion_id=row["suggestion_id"],
            inbox_id=row["inbox_id"],
            transaction_id=row["transaction_id"],
            outcome=FeedbackOutcome(row["outcome"]),
            reason=FeedbackReason(row["reason"]),
            confidence=float(row.get("confidence") or 0.0),
            scores=FeatureScores.from_row(row),
            actor_id=row.get("actor_id"),
            created_at=row.get("created_at") or _now(),
        )


@dataclass
class CalibrationProfile:
    """Per-tenant weights and thresholds; lazily defaulted, replaced by upsert."""
    tenant_id: str
    feature_weights: Dict[str, float]
    auto_match_threshold: float
    suggest_threshold: float
    high_confidence_threshold: float
    ambiguity_margin: float

    # Outcome statistics the profile was computed from
    sample_size: int = 0
    confirmed_count: int = 0
    declined_count: int = 0
    unmatched_count: int = 0
    accuracy: Optional[float] = None
    avg_confidence_confirmed: Optional[float] = None
    avg_confidence_declined: Optional[float] = None

    updated_at: Optional[str] = None
    is_default: bool = True

    @classmethod
    def default(cls, tenant_id: str, thresholds: Optional[ThresholdDefaults] = None) -> "CalibrationProfile":
        thresholds = thresholds or ThresholdDefaults()
        return cls(
            tenant_id=tenant_id,
            feature_weights=dict(thresholds.weights),
            auto_match_threshold=thresholds.auto_match,
            suggest_threshold=thresholds.suggest,
            high_confidence_threshold=thresholds.high_confidence,
            ambiguity_margin=thresholds.ambiguity_margin,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CalibrationProfile":
        weights = row.get("feature_weights")
        if isinstance(weights, str):
            weights = json.loads(weights)

        def _opt(name: str) -> Optional[float]:
            value = row.get(name)
            return None if value is None else float(value)

        return cls(
            tenant_id=row["tenant_id"],
            feature_weights={k: float(v) for k, v in (weights or {}).items()},
            auto_match_threshold=float(row["auto_match_threshold"]),
            suggest_threshold=float(row["suggest_threshold"]),
            high_confidence_threshold=float(row["high_confidence_threshold"]),
            ambiguity_margin=float(row["ambiguity_margin"]),
            sample_size=int(row.get("sample_size") or 0),
            confirmed_count=int(row.get("confirmed_count") or 0),
            declined_count=int(row.get("declined_count") or 0),
            unmatched_count=int(row.get("unmatched_count") or 0),
            accuracy=_opt("accuracy"),
            avg_confidence_confirmed=_opt("avg_confidence_confirmed"),
            avg_confidence_declined=_opt("avg_confidence_declined"),
            updated_at=row.get("updated_at"),
            is_default=False,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchOutcome:
    """
    Typed result of confirm / decline / unmatch.

    CONFLICT, NOT_MATCHED and NOT_FOUND are ordinary business outcomes and
    come back here with ``ok=False`` instead of being raised.
    """
    ok: bool
    code: Optional[ErrorCode] = None
    message: str = ""
    suggestion: Optional[MatchSuggestion] = None
    inbox_status: Optional[InboxStatus] = None
    idempotent: bool = False

    @classmethod
    def success(
        cls,
        suggestion: Optional[MatchSuggestion],
        inbox_status: InboxStatus,
        idempotent: bool = False,
    ) -> "MatchOutcome":
        return cls(ok=True, suggestion=suggestion, inbox_status=inbox_status, idempotent=idempotent)

    @classmethod
    def failure(cls, code: ErrorCode, message: str) -> "MatchOutcome":
        return cls(ok=False, code=code, message=message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "code": self.code.value if self.code else None,
            "message": self.message,
            "suggestion": self.suggestion.to_dict() if self.suggestion else None,
            "inbox_status": self.inbox_status.value if self.inbox_status else None,
            "idempotent": self.idempotent,
        }


@dataclass
class InboxMatchingResult:
    matches: List[MatchCandidate] = field(default_factory=list)
    suggestions: List[MatchCandidate] = field(default_factory=list)
    auto_matched: bool = False
    match_result: Optional[MatchSuggestion] = None
    status: Optional[InboxStatus] = None


@dataclass
class TransactionMatchingResult:
    matched: bool = False
    inbox_id: Optional[str] = None
    match_result: Optional[MatchSuggestion] = None
    matches: List[MatchCandidate] = field(default_factory=list)


@dataclass
class BatchFailure:
    inbox_id: str
    code: str
    reason: str


@dataclass
class BatchReport:
    """Per-batch accounting; ``processed`` counts every id attempted."""
    processed: int = 0
    auto_matched: int = 0
    suggestions: List[MatchCandidate] = field(default_factory=list)
    failed: List[BatchFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processed": self.processed,
            "auto_matched": self.auto_matched,
            "suggested": len(self.suggestions),
            "suggestions": [c.to_dict() for c in self.suggestions],
            "failed": [asdict(f) for f in self.failed],
        }
