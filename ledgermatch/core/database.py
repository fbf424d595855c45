"""
LedgerMatch Database

Persistence gateway for inbox items, transactions, match suggestions,
calibration feedback and calibration profiles.

Every query carries ``tenant_id`` in its predicate. Match transitions run
inside a single write transaction (``BEGIN IMMEDIATE`` on SQLite, row locks
on Postgres) and use conditional updates, so two concurrent confirmations
can never leave two confirmed suggestions for one inbox item. Partial
unique indexes back that up at the schema level.
"""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ledgermatch.core.models import (
    CalibrationProfile,
    FeatureScores,
    FeedbackOutcome,
    FeedbackReason,
    InboxItem,
    InboxStatus,
    MatchCandidate,
    MatchFeedback,
    MatchSuggestion,
    MatchType,
    SuggestionStatus,
    Transaction,
)
from ledgermatch.services.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    NotMatchedError,
)
from ledgermatch.services.match_state import assert_valid_transition

try:
    import psycopg
    from psycopg.rows import dict_row
    HAS_POSTGRES = True
except ImportError:  # pragma: no cover
    psycopg = None
    dict_row = None
    HAS_POSTGRES = False

logger = logging.getLogger(__name__)

_INTEGRITY_ERRORS: Tuple[type, ...] = (sqlite3.IntegrityError,)
if HAS_POSTGRES:  # pragma: no cover
    _INTEGRITY_ERRORS = _INTEGRITY_ERRORS + (psycopg.IntegrityError,)

_SCORE_COLUMNS = ("amount_score", "date_score", "text_score", "currency_score")

_INBOX_FIELDS = {
    "display_name", "amount_minor", "currency", "document_date", "merchant_name",
    "description", "document_type", "extracted_at", "error_reason",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def _score_values(scores: FeatureScores) -> Tuple[Optional[float], ...]:
    return (scores.amount, scores.date, scores.text, scores.currency)


class MatchingDB:
    def __init__(self, db_path: str = "ledgermatch.db"):
        self.dsn = os.getenv("DATABASE_URL")
        self.db_path = db_path
        dsn = (self.dsn or "").strip().lower()
        self.allow_sqlite_fallback = str(
            os.getenv("LEDGERMATCH_DB_FALLBACK_SQLITE", "true")
        ).strip().lower() not in {"0", "false", "no", "off"}
        self.use_postgres = bool(
            HAS_POSTGRES
            and dsn
            and (dsn.startswith("postgres://") or dsn.startswith("postgresql://"))
        )
        self._initialized = False
        self._fallback_warned = False

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    def _sqlite_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connect(self):
        if self.use_postgres:
            try:
                conn = psycopg.connect(self.dsn, row_factory=dict_row)
            except Exception as exc:
                if not self.allow_sqlite_fallback:
                    raise
                if not self._fallback_warned:
                    logger.warning(
                        "Postgres unavailable (%s). Falling back to SQLite at %s. "
                        "Set LEDGERMATCH_DB_FALLBACK_SQLITE=false to disable fallback.",
                        exc,
                        self.db_path,
                    )
                    self._fallback_warned = True
                self.use_postgres = False
                conn = self._sqlite_connection()
        else:
            conn = self._sqlite_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Yield a cursor inside one write transaction; commit or roll back."""
        self.initialize()
        with self.connect() as conn:
            if self.use_postgres:
                cur = conn.cursor()
                try:
                    yield cur
                except BaseException:
                    conn.rollback()
                    raise
                conn.commit()
                return
            # Take the write lock up front so read-then-update is serialized.
            conn.isolation_level = None
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    def _prepare_sql(self, sql: str) -> str:
        if self.use_postgres:
            return sql.replace("?", "%s")
        return sql

    def _for_update(self) -> str:
        return " FOR UPDATE" if self.use_postgres else ""

    def _table_columns(self, cur, table: str) -> Set[str]:
        if self.use_postgres:
            cur.execute(
                self._prepare_sql("SELECT column_name FROM information_schema.columns WHERE table_name = ?"),
                (table,),
            )
            return {str(row["column_name"]) for row in cur.fetchall()}
        cur.execute(f"PRAGMA table_info({table})")
        return {str(row["name"]) for row in cur.fetchall()}

    def _ensure_column(self, cur, table: str, column: str, definition: str) -> None:
        if column in self._table_columns(cur, table):
            return
        cur.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _fetchone(self, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            row = cur.fetchone()
        return dict(row) if row else None

    def _fetchall(self, sql: str, params: Sequence[Any]) -> List[Dict[str, Any]]:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            rows = cur.fetchall()
        return [dict(row) for row in rows]

    def _execute(self, sql: str, params: Sequence[Any]) -> int:
        self.initialize()
        with self.connect() as conn:
            cur = conn.cursor()
            cur.execute(self._prepare_sql(sql), tuple(params))
            conn.commit()
            return cur.rowcount

    def _cur_fetchone(self, cur, sql: str, params: Sequence[Any]) -> Optional[Dict[str, Any]]:
        cur.execute(self._prepare_sql(sql), tuple(params))
        row = cur.fetchone()
        return dict(row) if row else None

    def _cur_execute(self, cur, sql: str, params: Sequence[Any]) -> int:
        cur.execute(self._prepare_sql(sql), tuple(params))
        return cur.rowcount

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        if self._initialized:
            return
        with self.connect() as conn:
            cur = conn.cursor()

            cur.execute("""
                CREATE TABLE IF NOT EXISTS inbox_items (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    display_name TEXT,
                    amount_minor BIGINT,
                    currency TEXT,
                    document_date TEXT,
                    merchant_name TEXT,
                    description TEXT,
                    document_type TEXT,
                    status TEXT NOT NULL,
                    pre_match_status TEXT,
                    transaction_id TEXT,
                    error_reason TEXT,
                    extracted_at TEXT,
                    created_at TEXT,
                    updated_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    amount_minor BIGINT NOT NULL,
                    currency TEXT NOT NULL,
                    transaction_date TEXT,
                    counterparty TEXT,
                    description TEXT,
                    inbox_id TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS match_suggestions (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    inbox_id TEXT NOT NULL,
                    transaction_id TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    amount_score REAL,
                    date_score REAL,
                    text_score REAL,
                    currency_score REAL,
                    match_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    decided_by TEXT,
                    decided_at TEXT,
                    created_at TEXT,
                    updated_at TEXT,
                    UNIQUE(tenant_id, inbox_id, transaction_id)
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS match_feedback (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    suggestion_id TEXT NOT NULL,
                    inbox_id TEXT NOT NULL,
                    transaction_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    amount_score REAL,
                    date_score REAL,
                    text_score REAL,
                    currency_score REAL,
                    actor_id TEXT,
                    created_at TEXT
                )
            """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS calibration_profiles (
                    tenant_id TEXT PRIMARY KEY,
                    feature_weights TEXT NOT NULL,
                    auto_match_threshold REAL NOT NULL,
                    suggest_threshold REAL NOT NULL,
                    high_confidence_threshold REAL NOT NULL,
                    ambiguity_margin REAL NOT NULL,
                    sample_size INTEGER,
                    confirmed_count INTEGER,
                    declined_count INTEGER,
                    unmatched_count INTEGER,
                    accuracy REAL,
                    avg_confidence_confirmed REAL,
                    avg_confidence_declined REAL,
                    updated_at TEXT
                )
            """)

            self._ensure_column(cur, "inbox_items", "pre_match_status", "TEXT")

            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_inbox_tenant_status ON inbox_items(tenant_id, status)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_inbox_tenant_date ON inbox_items(tenant_id, document_date)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_tx_tenant_date ON transactions(tenant_id, transaction_date)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_suggestions_inbox ON match_suggestions(tenant_id, inbox_id, status)"
            )
            cur.execute(
                "CREATE INDEX IF NOT EXISTS idx_feedback_tenant_created ON match_feedback(tenant_id, created_at)"
            )
            # At most one confirmed suggestion per inbox item and per transaction
            cur.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_suggestions_confirmed_inbox
                ON match_suggestions(tenant_id, inbox_id) WHERE status = 'confirmed'
            """)
            cur.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS ux_suggestions_confirmed_tx
                ON match_suggestions(tenant_id, transaction_id) WHERE status = 'confirmed'
            """)
            conn.commit()
        self._initialized = True

    # ------------------------------------------------------------------
    # Inbox items
    # ------------------------------------------------------------------

    def create_inbox_item(self, payload: Dict[str, Any]) -> InboxItem:
        self.initialize()
        now = _now()
        item_id = payload.get("id") or f"INB-{uuid.uuid4().hex}"
        self._execute(
            """
            INSERT INTO inbox_items
            (id, tenant_id, display_name, amount_minor, currency, document_date, merchant_name,
             description, document_type, status, transaction_id, error_reason, extracted_at,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?, ?)
            """,
            (
                item_id,
                payload["tenant_id"],
                payload.get("display_name") or "",
                payload.get("amount_minor"),
                payload.get("currency"),
                _iso(payload.get("document_date")),
                payload.get("merchant_name"),
                payload.get("description"),
                payload.get("document_type"),
                InboxStatus.PENDING.value,
                payload.get("extracted_at"),
                payload.get("created_at") or now,
                now,
            ),
        )
        return self.get_inbox_item(payload["tenant_id"], item_id)

    def get_inbox_item(self, tenant_id: str, inbox_id: str) -> Optional[InboxItem]:
        row = self._fetchone(
            "SELECT * FROM inbox_items WHERE tenant_id = ? AND id = ?",
            (tenant_id, inbox_id),
        )
        return InboxItem.from_row(row) if row else None

    def update_inbox_fields(self, tenant_id: str, inbox_id: str, **fields) -> bool:
        """Write extracted fields. Status and back-reference are not writable here."""
        unknown = set(fields) - _INBOX_FIELDS
        if unknown:
            raise InvalidRequestError("fields", f"Not updatable: {sorted(unknown)}")
        if not fields:
            return False
        if "document_date" in fields:
            fields["document_date"] = _iso(fields["document_date"])
        fields["updated_at"] = _now()
        set_clause = ", ".join(f"{k} = ?" for k in fields.keys())
        return self._execute(
            f"UPDATE inbox_items SET {set_clause} WHERE tenant_id = ? AND id = ?",
            (*fields.values(), tenant_id, inbox_id),
        ) > 0

    def transition_inbox_status(
        self,
        tenant_id: str,
        inbox_id: str,
        from_statuses: Iterable[InboxStatus],
        to_status: InboxStatus,
        error_reason: Optional[str] = None,
    ) -> bool:
        """Conditionally move an item; returns False if it was not in ``from_statuses``."""
        allowed = [s for s in from_statuses if s == to_status or self._is_valid(s, to_status)]
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        return self._execute(
            f"""
            UPDATE inbox_items SET status = ?, error_reason = ?, updated_at = ?
            WHERE tenant_id = ? AND id = ? AND status IN ({placeholders})
            """,
            (to_status.value, error_reason, _now(), tenant_id, inbox_id, *[s.value for s in allowed]),
        ) > 0

    @staticmethod
    def _is_valid(from_status: InboxStatus, to_status: InboxStatus) -> bool:
        try:
            assert_valid_transition(from_status, to_status)
        except ValueError:
            return False
        return True

    def list_inbox_items(
        self,
        tenant_id: str,
        statuses: Optional[Iterable[InboxStatus]] = None,
        limit: int = 100,
    ) -> List[InboxItem]:
        params: List[Any] = [tenant_id]
        sql = "SELECT * FROM inbox_items WHERE tenant_id = ?"
        if statuses:
            values = [s.value for s in statuses]
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        sql += " ORDER BY created_at ASC, id ASC LIMIT ?"
        params.append(limit)
        return [InboxItem.from_row(row) for row in self._fetchall(sql, params)]

    def list_inbox_candidates(
        self,
        tenant_id: str,
        start: date,
        end: date,
        matched_exception: Optional[str] = None,
        include_matched: bool = False,
        limit: int = 100,
    ) -> List[InboxItem]:
        """Inbox items anchored inside [start, end], skipping ones matched elsewhere."""
        sql = """
            SELECT * FROM inbox_items
            WHERE tenant_id = ?
              AND status != 'error'
              AND COALESCE(document_date, SUBSTR(created_at, 1, 10)) BETWEEN ? AND ?
        """
        params: List[Any] = [tenant_id, start.isoformat(), end.isoformat()]
        if not include_matched:
            sql += " AND (transaction_id IS NULL OR transaction_id = ?)"
            params.append(matched_exception or "")
        sql += " ORDER BY id ASC LIMIT ?"
        params.append(limit)
        return [InboxItem.from_row(row) for row in self._fetchall(sql, params)]

    def count_inbox_by_status(self, tenant_id: str) -> Dict[str, int]:
        rows = self._fetchall(
            "SELECT status, COUNT(*) AS n FROM inbox_items WHERE tenant_id = ? GROUP BY status",
            (tenant_id,),
        )
        counts = {status.value: 0 for status in InboxStatus}
        for row in rows:
            counts[row["status"]] = int(row["n"])
        return counts

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def create_transaction(self, payload: Dict[str, Any]) -> Transaction:
        self.initialize()
        tx_id = payload.get("id") or f"TXN-{uuid.uuid4().hex}"
        self._execute(
            """
            INSERT INTO transactions
            (id, tenant_id, amount_minor, currency, transaction_date, counterparty, description,
             inbox_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?)
            """,
            (
                tx_id,
                payload["tenant_id"],
                int(payload["amount_minor"]),
                (payload.get("currency") or "EUR").upper(),
                _iso(payload.get("transaction_date")),
                payload.get("counterparty"),
                payload.get("description"),
                payload.get("created_at") or _now(),
            ),
        )
        return self.get_transaction(payload["tenant_id"], tx_id)

    def get_transaction(self, tenant_id: str, transaction_id: str) -> Optional[Transaction]:
        row = self._fetchone(
            "SELECT * FROM transactions WHERE tenant_id = ? AND id = ?",
            (tenant_id, transaction_id),
        )
        return Transaction.from_row(row) if row else None

    def list_transaction_candidates(
        self,
        tenant_id: str,
        start: date,
        end: date,
        matched_exception: Optional[str] = None,
        include_matched: bool = False,
        limit: int = 100,
    ) -> List[Transaction]:
        """Transactions dated inside [start, end], skipping ones matched elsewhere."""
        sql = """
            SELECT * FROM transactions
            WHERE tenant_id = ?
              AND transaction_date BETWEEN ? AND ?
        """
        params: List[Any] = [tenant_id, start.isoformat(), end.isoformat()]
        if not include_matched:
            sql += " AND (inbox_id IS NULL OR inbox_id = ?)"
            params.append(matched_exception or "")
        sql += " ORDER BY transaction_date DESC, id ASC LIMIT ?"
        params.append(limit)
        return [Transaction.from_row(row) for row in self._fetchall(sql, params)]

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    def get_suggestion(self, tenant_id: str, suggestion_id: str) -> Optional[MatchSuggestion]:
        row = self._fetchone(
            "SELECT * FROM match_suggestions WHERE tenant_id = ? AND id = ?",
            (tenant_id, suggestion_id),
        )
        return MatchSuggestion.from_row(row) if row else None

    def get_suggestion_for_pair(
        self, tenant_id: str, inbox_id: str, transaction_id: str
    ) -> Optional[MatchSuggestion]:
        row = self._fetchone(
            """
            SELECT * FROM match_suggestions
            WHERE tenant_id = ? AND inbox_id = ? AND transaction_id = ?
            """,
            (tenant_id, inbox_id, transaction_id),
        )
        return MatchSuggestion.from_row(row) if row else None

    def list_suggestions(
        self,
        tenant_id: str,
        inbox_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        status: Optional[SuggestionStatus] = None,
    ) -> List[MatchSuggestion]:
        sql = "SELECT * FROM match_suggestions WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if inbox_id is not None:
            sql += " AND inbox_id = ?"
            params.append(inbox_id)
        if transaction_id is not None:
            sql += " AND transaction_id = ?"
            params.append(transaction_id)
        if status is not None:
            sql += " AND status = ?"
            params.append(status.value)
        sql += " ORDER BY confidence DESC, id ASC"
        return [MatchSuggestion.from_row(row) for row in self._fetchall(sql, params)]

    def list_declined_pairs(
        self,
        tenant_id: str,
        inbox_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Set[Tuple[str, str]]:
        """Pairs a user already rejected (declined or unmatched); never re-suggested."""
        sql = "SELECT inbox_id, transaction_id FROM match_suggestions WHERE tenant_id = ? AND status = ?"
        params: List[Any] = [tenant_id, SuggestionStatus.DECLINED.value]
        if inbox_id is not None:
            sql += " AND inbox_id = ?"
            params.append(inbox_id)
        if transaction_id is not None:
            sql += " AND transaction_id = ?"
            params.append(transaction_id)
        return {(row["inbox_id"], row["transaction_id"]) for row in self._fetchall(sql, params)}

    def _upsert_suggestion(self, cur, tenant_id: str, candidate: MatchCandidate, now: str) -> None:
        match_type = candidate.match_type or MatchType.SUGGESTED
        # Declined and confirmed rows keep their decision; only open rows are refreshed.
        self._cur_execute(
            cur,
            """
            INSERT INTO match_suggestions
            (id, tenant_id, inbox_id, transaction_id, confidence, amount_score, date_score,
             text_score, currency_score, match_type, status, decided_by, decided_at,
             created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, NULL, ?, ?)
            ON CONFLICT (tenant_id, inbox_id, transaction_id) DO UPDATE SET
                confidence = excluded.confidence,
                amount_score = excluded.amount_score,
                date_score = excluded.date_score,
                text_score = excluded.text_score,
                currency_score = excluded.currency_score,
                match_type = excluded.match_type,
                updated_at = excluded.updated_at
            WHERE match_suggestions.status = 'suggested'
            """,
            (
                f"SUG-{uuid.uuid4().hex}",
                tenant_id,
                candidate.inbox_id,
                candidate.transaction_id,
                float(candidate.confidence),
                *_score_values(candidate.scores),
                match_type.value,
                SuggestionStatus.SUGGESTED.value,
                now,
                now,
            ),
        )

    def record_search_result(
        self,
        tenant_id: str,
        inbox_id: str,
        suggestions: Sequence[MatchCandidate],
        expected_statuses: Iterable[InboxStatus] = (InboxStatus.PROCESSING,),
    ) -> InboxStatus:
        """
        Persist suggestions for one inbox item and move it to
        ``suggested_match`` (or ``no_match`` when there is nothing to show).
        """
        now = _now()
        with self.transaction() as cur:
            row = self._cur_fetchone(
                cur,
                "SELECT * FROM inbox_items WHERE tenant_id = ? AND id = ?" + self._for_update(),
                (tenant_id, inbox_id),
            )
            if not row:
                raise NotFoundError("Inbox item", inbox_id)
            current = InboxStatus(row["status"])
            if current not in set(expected_statuses):
                raise ConflictError(
                    f"Inbox item is {current.value}, expected one of "
                    f"{sorted(s.value for s in expected_statuses)}",
                    context={"inbox_id": inbox_id},
                )
            for candidate in suggestions:
                self._upsert_suggestion(cur, tenant_id, candidate, now)

            open_row = self._cur_fetchone(
                cur,
                """
                SELECT COUNT(*) AS n FROM match_suggestions
                WHERE tenant_id = ? AND inbox_id = ? AND status = 'suggested'
                """,
                (tenant_id, inbox_id),
            )
            has_open = int(open_row["n"]) > 0 if open_row else False
            target = InboxStatus.SUGGESTED_MATCH if has_open else InboxStatus.NO_MATCH
            if target != current:
                assert_valid_transition(current, target)
            self._cur_execute(
                cur,
                """
                UPDATE inbox_items SET status = ?, error_reason = NULL, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND status = ?
                """,
                (target.value, now, tenant_id, inbox_id, current.value),
            )
        return target

    # ------------------------------------------------------------------
    # Match transitions
    # ------------------------------------------------------------------

    def _insert_feedback(
        self,
        cur,
        suggestion: MatchSuggestion,
        outcome: FeedbackOutcome,
        reason: FeedbackReason,
        actor_id: Optional[str],
        now: str,
    ) -> None:
        self._cur_execute(
            cur,
            """
            INSERT INTO match_feedback
            (id, tenant_id, suggestion_id, inbox_id, transaction_id, outcome, reason, confidence,
             amount_score, date_score, text_score, currency_score, actor_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"FBK-{uuid.uuid4().hex}",
                suggestion.tenant_id,
                suggestion.id,
                suggestion.inbox_id,
                suggestion.transaction_id,
                outcome.value,
                reason.value,
                suggestion.confidence,
                *_score_values(suggestion.scores),
                actor_id,
                now,
            ),
        )

    def _locked_inbox(self, cur, tenant_id: str, inbox_id: str) -> Dict[str, Any]:
        row = self._cur_fetchone(
            cur,
            "SELECT * FROM inbox_items WHERE tenant_id = ? AND id = ?" + self._for_update(),
            (tenant_id, inbox_id),
        )
        if not row:
            raise NotFoundError("Inbox item", inbox_id)
        return row

    def _count_open(self, cur, tenant_id: str, inbox_id: str) -> int:
        row = self._cur_fetchone(
            cur,
            """
            SELECT COUNT(*) AS n FROM match_suggestions
            WHERE tenant_id = ? AND inbox_id = ? AND status = 'suggested'
            """,
            (tenant_id, inbox_id),
        )
        return int(row["n"]) if row else 0

    def confirm_suggestion(
        self,
        tenant_id: str,
        suggestion_id: str,
        inbox_id: str,
        transaction_id: str,
        actor_id: str,
        record_feedback: bool = True,
        restore_status: Optional[InboxStatus] = None,
    ) -> Tuple[MatchSuggestion, bool]:
        """
        Confirm one suggestion. Returns ``(suggestion, idempotent)``.

        ``restore_status`` is the status an unmatch goes back to; it defaults
        to the item's current status.

        Raises NotFoundError, ConflictError or InvalidRequestError; the
        transaction is rolled back on any of them.
        """
        now = _now()
        try:
            with self.transaction() as cur:
                inbox = self._locked_inbox(cur, tenant_id, inbox_id)
                tx = self._cur_fetchone(
                    cur,
                    "SELECT * FROM transactions WHERE tenant_id = ? AND id = ?",
                    (tenant_id, transaction_id),
                )
                if not tx:
                    raise NotFoundError("Transaction", transaction_id)
                row = self._cur_fetchone(
                    cur,
                    "SELECT * FROM match_suggestions WHERE tenant_id = ? AND id = ?",
                    (tenant_id, suggestion_id),
                )
                if not row:
                    raise NotFoundError("Match suggestion", suggestion_id)
                suggestion = MatchSuggestion.from_row(row)
                if suggestion.inbox_id != inbox_id or suggestion.transaction_id != transaction_id:
                    raise InvalidRequestError(
                        "suggestion_id",
                        "Suggestion does not pair the given inbox item and transaction",
                    )

                if suggestion.status == SuggestionStatus.CONFIRMED:
                    return suggestion, True

                confirmed = self._cur_fetchone(
                    cur,
                    """
                    SELECT id, transaction_id FROM match_suggestions
                    WHERE tenant_id = ? AND inbox_id = ? AND status = 'confirmed'
                    """,
                    (tenant_id, inbox_id),
                )
                if confirmed or inbox.get("transaction_id"):
                    raise ConflictError(
                        "Inbox item already has a different confirmed match; unmatch it first",
                        context={"inbox_id": inbox_id},
                    )
                if tx.get("inbox_id") and tx["inbox_id"] != inbox_id:
                    raise ConflictError(
                        "Transaction is already matched to another inbox item",
                        context={"transaction_id": transaction_id},
                    )

                current = InboxStatus(inbox["status"])
                try:
                    assert_valid_transition(current, InboxStatus.MATCHED)
                except ValueError as exc:
                    raise ConflictError(str(exc), context={"inbox_id": inbox_id}) from exc

                self._cur_execute(
                    cur,
                    """
                    UPDATE match_suggestions
                    SET status = 'confirmed', decided_by = ?, decided_at = ?, updated_at = ?
                    WHERE tenant_id = ? AND id = ? AND status != 'confirmed'
                    """,
                    (actor_id, now, now, tenant_id, suggestion_id),
                )
                updated = self._cur_execute(
                    cur,
                    """
                    UPDATE transactions SET inbox_id = ?
                    WHERE tenant_id = ? AND id = ? AND (inbox_id IS NULL OR inbox_id = ?)
                    """,
                    (inbox_id, tenant_id, transaction_id, inbox_id),
                )
                if updated == 0:
                    raise ConflictError(
                        "Transaction was matched concurrently",
                        context={"transaction_id": transaction_id},
                    )
                updated = self._cur_execute(
                    cur,
                    """
                    UPDATE inbox_items
                    SET status = 'matched', pre_match_status = ?, transaction_id = ?,
                        error_reason = NULL, updated_at = ?
                    WHERE tenant_id = ? AND id = ? AND status = ? AND transaction_id IS NULL
                    """,
                    ((restore_status or current).value, transaction_id, now, tenant_id, inbox_id, current.value),
                )
                if updated == 0:
                    raise ConflictError(
                        "Inbox item changed concurrently",
                        context={"inbox_id": inbox_id},
                    )
                suggestion.status = SuggestionStatus.CONFIRMED
                suggestion.decided_by = actor_id
                suggestion.decided_at = now
                if record_feedback:
                    self._insert_feedback(
                        cur, suggestion, FeedbackOutcome.POSITIVE, FeedbackReason.CONFIRMED, actor_id, now
                    )
        except _INTEGRITY_ERRORS as exc:
            raise ConflictError(
                "Another confirmation won the race for this pairing",
                context={"inbox_id": inbox_id, "transaction_id": transaction_id},
            ) from exc
        return suggestion, False

    def decline_suggestion(
        self,
        tenant_id: str,
        suggestion_id: str,
        inbox_id: str,
        actor_id: str,
    ) -> Tuple[MatchSuggestion, InboxStatus, bool]:
        """Decline one open suggestion. Returns ``(suggestion, inbox_status, idempotent)``."""
        now = _now()
        with self.transaction() as cur:
            inbox = self._locked_inbox(cur, tenant_id, inbox_id)
            row = self._cur_fetchone(
                cur,
                "SELECT * FROM match_suggestions WHERE tenant_id = ? AND id = ? AND inbox_id = ?",
                (tenant_id, suggestion_id, inbox_id),
            )
            if not row:
                raise NotFoundError("Match suggestion", suggestion_id)
            suggestion = MatchSuggestion.from_row(row)
            current = InboxStatus(inbox["status"])

            if suggestion.status == SuggestionStatus.DECLINED:
                return suggestion, current, True
            if suggestion.status == SuggestionStatus.CONFIRMED:
                raise ConflictError(
                    "Suggestion is confirmed; use unmatch to reverse it",
                    context={"suggestion_id": suggestion_id},
                )

            self._cur_execute(
                cur,
                """
                UPDATE match_suggestions
                SET status = 'declined', decided_by = ?, decided_at = ?, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND status = 'suggested'
                """,
                (actor_id, now, now, tenant_id, suggestion_id),
            )
            target = current
            if current == InboxStatus.SUGGESTED_MATCH and self._count_open(cur, tenant_id, inbox_id) == 0:
                target = InboxStatus.NO_MATCH
                self._cur_execute(
                    cur,
                    """
                    UPDATE inbox_items SET status = ?, updated_at = ?
                    WHERE tenant_id = ? AND id = ? AND status = ?
                    """,
                    (target.value, now, tenant_id, inbox_id, current.value),
                )
            suggestion.status = SuggestionStatus.DECLINED
            suggestion.decided_by = actor_id
            suggestion.decided_at = now
            self._insert_feedback(
                cur, suggestion, FeedbackOutcome.NEGATIVE, FeedbackReason.DECLINED, actor_id, now
            )
        return suggestion, target, False

    def _status_after_unmatch(
        self, cur, tenant_id: str, inbox_id: str, pre_match_status: Optional[str]
    ) -> InboxStatus:
        """Status the item had before it was confirmed; ``processing`` maps to pending."""
        if pre_match_status in (
            InboxStatus.SUGGESTED_MATCH.value, InboxStatus.NO_MATCH.value, InboxStatus.PENDING.value
        ):
            return InboxStatus(pre_match_status)
        if pre_match_status:
            return InboxStatus.PENDING
        # Rows confirmed before the status was recorded
        if self._count_open(cur, tenant_id, inbox_id) > 0:
            return InboxStatus.SUGGESTED_MATCH
        return InboxStatus.PENDING

    def unmatch_inbox(
        self, tenant_id: str, inbox_id: str, actor_id: str
    ) -> Tuple[MatchSuggestion, InboxStatus]:
        """Reverse the confirmed match of an inbox item on both sides."""
        now = _now()
        with self.transaction() as cur:
            inbox = self._locked_inbox(cur, tenant_id, inbox_id)
            row = self._cur_fetchone(
                cur,
                """
                SELECT * FROM match_suggestions
                WHERE tenant_id = ? AND inbox_id = ? AND status = 'confirmed'
                """,
                (tenant_id, inbox_id),
            )
            if not row or inbox["status"] != InboxStatus.MATCHED.value:
                raise NotMatchedError(inbox_id)
            suggestion = MatchSuggestion.from_row(row)

            self._cur_execute(
                cur,
                """
                UPDATE match_suggestions
                SET status = 'declined', decided_by = ?, decided_at = ?, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND status = 'confirmed'
                """,
                (actor_id, now, now, tenant_id, suggestion.id),
            )
            self._cur_execute(
                cur,
                """
                UPDATE transactions SET inbox_id = NULL
                WHERE tenant_id = ? AND id = ? AND inbox_id = ?
                """,
                (tenant_id, suggestion.transaction_id, inbox_id),
            )
            target = self._status_after_unmatch(cur, tenant_id, inbox_id, inbox.get("pre_match_status"))
            assert_valid_transition(InboxStatus.MATCHED, target)
            self._cur_execute(
                cur,
                """
                UPDATE inbox_items
                SET status = ?, pre_match_status = NULL, transaction_id = NULL, updated_at = ?
                WHERE tenant_id = ? AND id = ? AND status = 'matched'
                """,
                (target.value, now, tenant_id, inbox_id),
            )
            suggestion.status = SuggestionStatus.DECLINED
            suggestion.decided_by = actor_id
            suggestion.decided_at = now
            self._insert_feedback(
                cur, suggestion, FeedbackOutcome.NEGATIVE, FeedbackReason.UNMATCHED, actor_id, now
            )
        return suggestion, target

    # ------------------------------------------------------------------
    # Feedback & calibration
    # ------------------------------------------------------------------

    def list_feedback(self, tenant_id: str, since: Optional[str] = None) -> List[MatchFeedback]:
        sql = "SELECT * FROM match_feedback WHERE tenant_id = ?"
        params: List[Any] = [tenant_id]
        if since:
            sql += " AND created_at >= ?"
            params.append(since)
        sql += " ORDER BY created_at ASC, id ASC"
        return [MatchFeedback.from_row(row) for row in self._fetchall(sql, params)]

    def list_feedback_with_text(self, tenant_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """Feedback joined with the merchant and counterparty text of each pair."""
        sql = """
            SELECT f.outcome, f.reason, f.confidence, f.created_at,
                   i.merchant_name, i.display_name, i.description AS inbox_description,
                   t.counterparty, t.description AS transaction_description
            FROM match_feedback f
            JOIN inbox_items i ON i.id = f.inbox_id AND i.tenant_id = f.tenant_id
            JOIN transactions t ON t.id = f.transaction_id AND t.tenant_id = f.tenant_id
            WHERE f.tenant_id = ?
        """
        params: List[Any] = [tenant_id]
        if since:
            sql += " AND f.created_at >= ?"
            params.append(since)
        sql += " ORDER BY f.created_at DESC, f.id ASC"
        return self._fetchall(sql, params)

    def get_calibration_profile(self, tenant_id: str) -> Optional[CalibrationProfile]:
        row = self._fetchone(
            "SELECT * FROM calibration_profiles WHERE tenant_id = ?",
            (tenant_id,),
        )
        return CalibrationProfile.from_row(row) if row else None

    def upsert_calibration_profile(self, profile: CalibrationProfile) -> CalibrationProfile:
        """Replace the tenant's profile in one statement."""
        now = _now()
        self._execute(
            """
            INSERT INTO calibration_profiles
            (tenant_id, feature_weights, auto_match_threshold, suggest_threshold,
             high_confidence_threshold, ambiguity_margin, sample_size, confirmed_count,
             declined_count, unmatched_count, accuracy, avg_confidence_confirmed,
             avg_confidence_declined, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (tenant_id) DO UPDATE SET
                feature_weights = excluded.feature_weights,
                auto_match_threshold = excluded.auto_match_threshold,
                suggest_threshold = excluded.suggest_threshold,
                high_confidence_threshold = excluded.high_confidence_threshold,
                ambiguity_margin = excluded.ambiguity_margin,
                sample_size = excluded.sample_size,
                confirmed_count = excluded.confirmed_count,
                declined_count = excluded.declined_count,
                unmatched_count = excluded.unmatched_count,
                accuracy = excluded.accuracy,
                avg_confidence_confirmed = excluded.avg_confidence_confirmed,
                avg_confidence_declined = excluded.avg_confidence_declined,
                updated_at = excluded.updated_at
            """,
            (
                profile.tenant_id,
                json.dumps(profile.feature_weights, sort_keys=True),
                profile.auto_match_threshold,
                profile.suggest_threshold,
                profile.high_confidence_threshold,
                profile.ambiguity_margin,
                profile.sample_size,
                profile.confirmed_count,
                profile.declined_count,
                profile.unmatched_count,
                profile.accuracy,
                profile.avg_confidence_confirmed,
                profile.avg_confidence_declined,
                now,
            ),
        )
        return self.get_calibration_profile(profile.tenant_id)

    def delete_calibration_profile(self, tenant_id: str) -> bool:
        return self._execute(
            "DELETE FROM calibration_profiles WHERE tenant_id = ?",
            (tenant_id,),
        ) > 0


_DB_INSTANCE: Optional[MatchingDB] = None


def get_db() -> MatchingDB:
    global _DB_INSTANCE
    if _DB_INSTANCE is None:
        _DB_INSTANCE = MatchingDB(db_path=os.getenv("LEDGERMATCH_DB_PATH", "ledgermatch.db"))
    return _DB_INSTANCE
