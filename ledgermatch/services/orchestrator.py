"""
Async matching orchestrator.

Runs engine operations off the event loop with bounded concurrency,
a per-item timeout and retries for transient dependency failures.
One failing item never aborts its batch: it is marked ``error`` and
reported, and the rest carry on.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

from ledgermatch.core.config import MatchingSettings
from ledgermatch.core.engine import MatchingEngine, PendingDecision
from ledgermatch.core.models import (
    BatchFailure, BatchReport, InboxMatchingResult, InboxStatus, TransactionMatchingResult,
)
from ledgermatch.models.matching import MatchingRequest, MatchingRequestKind
from ledgermatch.services.errors import (
    ErrorCode, LedgerMatchError, MatchTimeoutError, TransientDependencyError,
)
from ledgermatch.services.logging import log_error, log_matching_run

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Exponential backoff for ``TransientDependencyError``."""
    max_attempts: int = 3
    backoff_base_seconds: float = 0.5
    backoff_max_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: MatchingSettings) -> "RetryPolicy":
        orch = settings.orchestrator
        return cls(
            max_attempts=orch.max_attempts,
            backoff_base_seconds=orch.backoff_base_seconds,
            backoff_max_seconds=orch.backoff_max_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 1-based failed attempt."""
        return min(self.backoff_max_seconds, self.backoff_base_seconds * (2 ** (attempt - 1)))


class MatchingOrchestrator:
    def __init__(
        self,
        engine: MatchingEngine,
        settings: Optional[MatchingSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.engine = engine
        self.settings = settings or engine.settings
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()

    @property
    def timeout_seconds(self) -> float:
        return self.settings.orchestrator.item_timeout_seconds

    async def _run_with_policy(self, subject_id: str, func: Callable, *args, **kwargs):
        attempt = 0
        while True:
            attempt += 1
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(func, *args, **kwargs),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError as exc:
                raise MatchTimeoutError(subject_id, self.timeout_seconds) from exc
            except TransientDependencyError as exc:
                if attempt >= self.retry_policy.max_attempts:
                    logger.warning("Giving up on %s after %d attempts: %s", subject_id, attempt, exc.detail)
                    raise
                delay = self.retry_policy.delay_for(attempt)
                logger.info("Transient failure on %s (attempt %d), retrying in %.2fs", subject_id, attempt, delay)
                await self._sleep(delay)

    async def _mark_failed(self, tenant_id: str, inbox_id: str, error: LedgerMatchError) -> None:
        reason = f"{error.code.value}: {error.message}"
        await asyncio.to_thread(self.engine.mark_failed, tenant_id, inbox_id, reason)

    # ==================== SINGLE ITEMS ====================

    async def run_inbox(self, tenant_id: str, inbox_id: str) -> InboxMatchingResult:
        """
        Match one inbox item. The item stays ``processing`` across retries;
        timeouts and exhausted retries leave it in ``error``.
        """
        try:
            return await self._run_with_policy(
                inbox_id,
                self.engine.process_inbox_matching,
                tenant_id,
                inbox_id,
                release_on_transient=False,
            )
        except (MatchTimeoutError, TransientDependencyError) as exc:
            await self._mark_failed(tenant_id, inbox_id, exc)
            raise

    async def run_transaction(self, tenant_id: str, transaction_id: str) -> TransactionMatchingResult:
        return await self._run_with_policy(
            transaction_id,
            self.engine.process_transaction_matching,
            tenant_id,
            transaction_id,
        )

    # ==================== BATCHES ====================

    async def _search(self, tenant_id: str, inbox_id: str) -> Union[PendingDecision, BatchFailure, None]:
        try:
            return await self._run_with_policy(
                inbox_id,
                self.engine.search_inbox_item,
                tenant_id,
                inbox_id,
                release_on_transient=False,
            )
        except (MatchTimeoutError, TransientDependencyError) as exc:
            await self._mark_failed(tenant_id, inbox_id, exc)
            logger.warning("Batch item %s failed: %s", inbox_id, exc.message)
            return BatchFailure(inbox_id, exc.code.value, exc.message)
        except LedgerMatchError as exc:
            logger.warning("Batch item %s failed: %s", inbox_id, exc.message)
            return BatchFailure(inbox_id, exc.code.value, exc.message)

    async def _apply(self, tenant_id: str, pending: PendingDecision) -> Union[InboxMatchingResult, BatchFailure]:
        inbox_id = pending.inbox_id
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.engine.apply_search_result,
                    tenant_id,
                    inbox_id,
                    pending.candidates,
                    pending.decision,
                ),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            exc = MatchTimeoutError(inbox_id, self.timeout_seconds)
            await self._mark_failed(tenant_id, inbox_id, exc)
            return BatchFailure(inbox_id, exc.code.value, exc.message)
        except LedgerMatchError as exc:
            logger.warning("Batch item %s failed: %s", inbox_id, exc.message)
            return BatchFailure(inbox_id, exc.code.value, exc.message)
        except Exception as exc:
            log_error("batch_item_failed", "Batch item failed", {"inbox_id": inbox_id}, exc)
            await asyncio.to_thread(self.engine.mark_failed, tenant_id, inbox_id, "INTERNAL_ERROR")
            return BatchFailure(inbox_id, ErrorCode.INTERNAL_ERROR.value, "Internal error")

    async def process_batch(self, tenant_id: str, inbox_ids: List[str]) -> BatchReport:
        """
        Match up to ``max_batch_size`` items; always returns a report.

        Searches run concurrently and finish before any decision is applied,
        so items competing for one transaction all see it. Decisions are then
        applied in request order: the first auto-match wins and the others
        keep the pairing as a suggestion.
        """
        started = time.perf_counter()
        request = self.engine.validate_batch(tenant_id, inbox_ids)
        semaphore = asyncio.Semaphore(self.settings.orchestrator.max_concurrency)

        async def _bounded_search(inbox_id: str):
            async with semaphore:
                return await self._search(tenant_id, inbox_id)

        searched = await asyncio.gather(*[_bounded_search(inbox_id) for inbox_id in request.inbox_ids])

        report = BatchReport(processed=len(request.inbox_ids))
        for outcome in searched:
            if isinstance(outcome, BatchFailure):
                report.failed.append(outcome)
                continue
            if outcome is None:
                # already matched
                continue
            result = await self._apply(tenant_id, outcome)
            if isinstance(result, BatchFailure):
                report.failed.append(result)
            elif result.auto_matched:
                report.auto_matched += 1
            else:
                report.suggestions.extend(result.suggestions)

        log_matching_run(
            "process_batch",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            processed=report.processed,
            auto_matched=report.auto_matched,
            failed=len(report.failed),
        )
        return report

    # ==================== QUEUE ====================

    def submit(self, request: MatchingRequest) -> asyncio.Task:
        """Schedule a request on the running loop and return its task handle."""
        if request.kind == MatchingRequestKind.INBOX:
            coro = self.run_inbox(request.tenant_id, request.inbox_id)
        elif request.kind == MatchingRequestKind.TRANSACTION:
            coro = self.run_transaction(request.tenant_id, request.transaction_id)
        else:
            coro = self.process_batch(request.tenant_id, request.inbox_ids)
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for every submitted task to settle."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ==================== SCHEDULED JOB ====================

    async def run_bidirectional(self, tenant_id: str, transaction_ids: List[str]) -> Dict[str, Any]:
        """
        Periodic matching job.

        1. Forward pass: match each new transaction against the inbox.
        2. Reverse pass: pending inbox items the forward pass did not touch,
           in chunks.
        3. Recalibrate the tenant from accumulated feedback.
        """
        started = time.perf_counter()
        orch = self.settings.orchestrator
        summary: Dict[str, Any] = {
            "transactions_processed": 0,
            "transactions_matched": 0,
            "transaction_failures": 0,
            "inbox_processed": 0,
            "inbox_auto_matched": 0,
            "inbox_failures": 0,
            "calibrated": False,
        }

        semaphore = asyncio.Semaphore(orch.max_concurrency)
        touched: Set[str] = set()

        async def _forward(transaction_id: str) -> None:
            async with semaphore:
                try:
                    result = await self.run_transaction(tenant_id, transaction_id)
                except LedgerMatchError as exc:
                    logger.warning("Transaction %s failed: %s", transaction_id, exc.message)
                    summary["transaction_failures"] += 1
                    return
                summary["transactions_processed"] += 1
                if result.matched:
                    summary["transactions_matched"] += 1
                if result.inbox_id:
                    touched.add(result.inbox_id)

        await asyncio.gather(*[_forward(tx_id) for tx_id in dict.fromkeys(transaction_ids)])

        pending = await asyncio.to_thread(
            self.engine.db.list_inbox_items,
            tenant_id,
            [InboxStatus.PENDING],
            orch.reverse_limit + len(touched),
        )
        reverse_ids = [item.id for item in pending if item.id not in touched][:orch.reverse_limit]
        for start in range(0, len(reverse_ids), orch.reverse_chunk_size):
            chunk = reverse_ids[start:start + orch.reverse_chunk_size]
            report = await self.process_batch(tenant_id, chunk)
            summary["inbox_processed"] += report.processed
            summary["inbox_auto_matched"] += report.auto_matched
            summary["inbox_failures"] += len(report.failed)

        try:
            profile = await asyncio.to_thread(self.engine.recalibrate, tenant_id)
            summary["calibrated"] = not profile.is_default
        except LedgerMatchError as exc:
            logger.warning("Recalibration failed for tenant %s: %s", tenant_id, exc.message)

        log_matching_run(
            "run_bidirectional",
            tenant_id,
            (time.perf_counter() - started) * 1000,
            **summary,
        )
        return summary
