"""
Dispatch engine: drives batches through a transaction builder.

Responsibility:
    Sends each batch as one atomic transfer with bounded retries, paces
    requests between batches, and records every terminal outcome in the
    ledger. Also replays outstanding failure records (resume).

Guarantees:
    - Batches run strictly one at a time, in order.
    - Each batch gets at most ``max_retries + 1`` attempts, separated by
      ``retry_delay``.
    - The sender balance is read before every attempt; an attempt whose
      batch total exceeds it never reaches ``submit_transfer``.
    - A batch is recorded as settled or failed only after its outcome is
      known. One batch failing never stops the run.
    - A failure record is removed only when a retry of that batch number
      settles; resuming a cleared batch reports NOT_FOUND and sends nothing.

Failure modes:
    - ConfigurationError: invalid settings, empty recipient list, no sender,
      or outstanding failure records from a different recipient list.
      Raised before any builder call.
    - LedgerIOError: an outcome could not be recorded. Never swallowed.
    Every other per-batch error is converted into a failed ``BatchResult``
    and a persisted ``FailureRecord``.

Usage:
    engine = DispatchEngine(builder, FileLedger("."), DispatchSettings(batch_size=400))
    results = await engine.dispatch(recipients)
    hashes = settled_hashes(results)

    # later, after fixing whatever went wrong
    outcomes = await engine.resume(ALL_OUTSTANDING)
    outcome = await engine.resume_batch(2)
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence, Union

from tao_disburse.batch import Batch, BatchResult, split_batches
from tao_disburse.builder import DENOM, TransactionBuilder, TransferOutput
from tao_disburse.clock import Clock, SystemClock
from tao_disburse.errors import (
    BatchNotFoundError,
    ConfigurationError,
    DispatchError,
    InsufficientBalanceError,
    LedgerIOError,
    TransientTransferError,
)
from tao_disburse.ledger import FailureRecord, Ledger, SettlementRecord
from tao_disburse.log import get_logger
from tao_disburse.recipients import Recipient, total_amount
from tao_disburse.settings import DispatchSettings

logger = get_logger("engine")

# Resume selector meaning "every outstanding failure record".
ALL_OUTSTANDING = "all"


class ResumeStatus(Enum):
    SETTLED = "settled"
    FAILED = "failed"
    NOT_FOUND = "not_found"


@dataclass
class ResumeOutcome:
    """Result of retrying one failure record."""

    batch_number: int
    status: ResumeStatus
    message: str
    tx_hash: Optional[str] = None
    attempts: int = 0

    @property
    def success(self) -> bool:
        return self.status is ResumeStatus.SETTLED


@dataclass
class _AttemptsResult:
    tx_hash: Optional[str]
    attempts: int
    error: Optional[DispatchError] = None


class DispatchEngine:
    """Runs and resumes batch disbursements for a single sender."""

    def __init__(
        self,
        builder: TransactionBuilder,
        ledger: Ledger,
        settings: Optional[DispatchSettings] = None,
        clock: Optional[Clock] = None,
        denom: str = DENOM,
    ):
        self.builder = builder
        self.ledger = ledger
        self.settings = settings or DispatchSettings()
        self.clock = clock or SystemClock()
        self.denom = denom

    def _resolve_sender(self, sender: Optional[str]) -> str:
        sender = sender or self.builder.get_sender_address()
        if not sender:
            raise ConfigurationError("No sender address available")
        return sender

    async def dispatch(
        self, recipients: Sequence[Recipient], sender: Optional[str] = None
    ) -> list[BatchResult]:
        """Validate, split and run a whole recipient list."""
        self.settings.validate()
        if not recipients:
            raise ConfigurationError("No recipients to send to")
        sender = self._resolve_sender(sender)
        batches = split_batches(recipients, self.settings.batch_size)
        return await self.run_all(batches, sender)

    async def run_all(
        self,
        batches: Sequence[Batch],
        sender: Optional[str] = None,
        settings: Optional[DispatchSettings] = None,
    ) -> list[BatchResult]:
        """
        Send every batch in order and return one result per batch.

        Starts a fresh settlement log. After a settled batch the engine
        waits ``pacing.after_success`` before the next one; after a failed
        batch it waits the longer ``pacing.after_failure``.
        """
        settings = settings or self.settings
        settings.validate()
        sender = self._resolve_sender(sender)
        self._check_outstanding_failures(batches)

        self.ledger.start_run()
        logger.info(
            "run_started",
            extra={
                "batch_count": len(batches),
                "max_retries": settings.max_retries,
                "retry_delay": settings.retry_delay,
            },
        )

        results = []
        for index, batch in enumerate(batches):
            result = await self._run_batch(batch, sender, settings)
            results.append(result)

            if index < len(batches) - 1:
                if result.success:
                    await self.clock.sleep(settings.pacing.after_success)
                else:
                    await self.clock.sleep(settings.pacing.after_failure)

        settled = sum(1 for r in results if r.success)
        logger.info(
            "run_finished",
            extra={"settled": settled, "failed": len(results) - settled},
        )
        return results

    def _check_outstanding_failures(self, batches: Sequence[Batch]) -> None:
        """
        Refuse to run when an outstanding failure record has the number of a
        new batch but different recipients. Replacing or clearing that record
        would drop the earlier run's unpaid recipients.
        """
        outstanding = {r.batch_number: r for r in self.ledger.load_failures()}
        conflicts = [
            batch.number
            for batch in batches
            if batch.number in outstanding
            and tuple(outstanding[batch.number].recipients) != tuple(batch.recipients)
        ]
        if conflicts:
            numbers = ", ".join(f"#{n}" for n in conflicts)
            raise ConfigurationError(
                f"Outstanding failed batches {numbers} belong to a different recipient "
                "list. Resume or clear them before starting a new run."
            )

    async def _run_batch(
        self, batch: Batch, sender: str, settings: DispatchSettings
    ) -> BatchResult:
        start_time = time.time()
        outcome = await self._attempt_with_retries(
            batch.number,
            batch.recipients,
            sender,
            settings.max_retries,
            settings.retry_delay,
        )
        duration = time.time() - start_time

        if outcome.tx_hash is not None:
            self.ledger.append_settlement(
                SettlementRecord(
                    batch_number=batch.number,
                    recipient_count=len(batch),
                    tx_hash=outcome.tx_hash,
                    timestamp=self.clock.now(),
                    retried=outcome.attempts > 1,
                )
            )
            if self.ledger.remove_failure(batch.number):
                logger.info(
                    "stale_failure_cleared", extra={"batch_number": batch.number}
                )
            return BatchResult(
                batch_number=batch.number,
                success=True,
                message=f"Batch #{batch.number} completed successfully",
                tx_hash=outcome.tx_hash,
                attempts=outcome.attempts,
                recipient_count=len(batch),
                total_amount=batch.total,
                duration_seconds=duration,
            )

        error = outcome.error
        self.ledger.save_failure(
            FailureRecord(
                batch_number=batch.number,
                recipients=tuple(batch.recipients),
                error=error.labelled(),
                timestamp=self.clock.now(),
                error_kind=error.kind,
            )
        )
        logger.error(
            "batch_failed",
            extra={
                "batch_number": batch.number,
                "attempts": outcome.attempts,
                "error_kind": error.kind.value,
                "error": error.message,
            },
        )
        return BatchResult(
            batch_number=batch.number,
            success=False,
            message=error.labelled(),
            attempts=outcome.attempts,
            recipient_count=len(batch),
            total_amount=batch.total,
            duration_seconds=duration,
        )

    async def _attempt_with_retries(
        self,
        batch_number: int,
        recipients: Sequence[Recipient],
        sender: str,
        max_retries: int,
        retry_delay: float,
    ) -> _AttemptsResult:
        max_attempts = max_retries + 1
        last_error: Optional[DispatchError] = None

        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                await self.clock.sleep(retry_delay)

            try:
                tx_hash = await self._attempt(recipients, sender)
            except (ConfigurationError, LedgerIOError):
                raise
            except DispatchError as e:
                last_error = e
            except Exception as e:
                last_error = TransientTransferError(str(e) or type(e).__name__)
            else:
                logger.info(
                    "batch_settled",
                    extra={
                        "batch_number": batch_number,
                        "attempt": attempt,
                        "tx_hash": tx_hash,
                    },
                )
                return _AttemptsResult(tx_hash=tx_hash, attempts=attempt)

            logger.warning(
                "batch_attempt_failed",
                extra={
                    "batch_number": batch_number,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "error_kind": last_error.kind.value,
                    "error": last_error.message,
                },
            )

        return _AttemptsResult(tx_hash=None, attempts=max_attempts, error=last_error)

    async def _attempt(self, recipients: Sequence[Recipient], sender: str) -> str:
        required = total_amount(recipients)
        available = await self.builder.get_sender_balance(self.denom)
        if available < required:
            raise InsufficientBalanceError(required=required, available=available)

        outputs = [
            TransferOutput(address=r.address, amount=r.amount, denom=self.denom)
            for r in recipients
        ]
        return await self.builder.submit_transfer(sender, outputs)

    async def resume(
        self,
        selector: Union[str, int] = ALL_OUTSTANDING,
        max_retries: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> list[ResumeOutcome]:
        """Retry every outstanding failure record, or the one for a batch number."""
        if selector == ALL_OUTSTANDING:
            return await self.resume_all(max_retries=max_retries, sender=sender)
        if isinstance(selector, bool) or not isinstance(selector, int) or selector < 1:
            raise ConfigurationError(f"Invalid batch number: {selector!r}")
        return [await self.resume_batch(selector, max_retries=max_retries, sender=sender)]

    async def resume_batch(
        self,
        batch_number: int,
        max_retries: Optional[int] = None,
        sender: Optional[str] = None,
    ) -> ResumeOutcome:
        """
        Retry the failure record for ``batch_number``.

        NOT_FOUND (with no ledger change) when no such record exists. On
        success the record is removed; on exhaustion it stays, with its
        error refreshed.
        """
        max_retries = self._resume_retries(max_retries)
        record = self.ledger.get_failure(batch_number)
        if record is None:
            error = BatchNotFoundError(batch_number)
            logger.warning("resume_target_not_found", extra={"batch_number": batch_number})
            return ResumeOutcome(
                batch_number=batch_number,
                status=ResumeStatus.NOT_FOUND,
                message=error.message,
            )
        return await self._retry_record(record, self._resolve_sender(sender), max_retries)

    async def resume_all(
        self, max_retries: Optional[int] = None, sender: Optional[str] = None
    ) -> list[ResumeOutcome]:
        """Retry outstanding failure records in stored order, pacing between them."""
        max_retries = self._resume_retries(max_retries)
        records = self.ledger.load_failures()
        if not records:
            logger.info("resume_nothing_outstanding")
            return []

        sender = self._resolve_sender(sender)
        logger.info("resume_started", extra={"outstanding": len(records)})

        outcomes = []
        for index, record in enumerate(records):
            outcomes.append(await self._retry_record(record, sender, max_retries))
            if index < len(records) - 1:
                await self.clock.sleep(self.settings.pacing.between_resumes)

        settled = sum(1 for o in outcomes if o.success)
        logger.info(
            "resume_finished",
            extra={"settled": settled, "failed": len(outcomes) - settled},
        )
        return outcomes

    def _resume_retries(self, max_retries: Optional[int]) -> int:
        self.settings.validate()
        if max_retries is None:
            return self.settings.max_retries
        if max_retries < 0:
            raise ConfigurationError(f"Max retries must not be negative, got {max_retries}")
        return max_retries

    async def _retry_record(
        self, record: FailureRecord, sender: str, max_retries: int
    ) -> ResumeOutcome:
        logger.info(
            "resume_batch",
            extra={
                "batch_number": record.batch_number,
                "recipient_count": len(record.recipients),
                "previous_error": record.error,
            },
        )
        outcome = await self._attempt_with_retries(
            record.batch_number,
            record.recipients,
            sender,
            max_retries,
            self.settings.retry_delay,
        )

        if outcome.tx_hash is not None:
            self.ledger.append_settlement(
                SettlementRecord(
                    batch_number=record.batch_number,
                    recipient_count=len(record.recipients),
                    tx_hash=outcome.tx_hash,
                    timestamp=self.clock.now(),
                    retried=True,
                )
            )
            self.ledger.remove_failure(record.batch_number)
            return ResumeOutcome(
                batch_number=record.batch_number,
                status=ResumeStatus.SETTLED,
                message=f"Batch #{record.batch_number} retry successful",
                tx_hash=outcome.tx_hash,
                attempts=outcome.attempts,
            )

        error = outcome.error
        self.ledger.update_failure_error(
            record.batch_number, error.labelled(), error.kind, self.clock.now()
        )
        return ResumeOutcome(
            batch_number=record.batch_number,
            status=ResumeStatus.FAILED,
            message=error.labelled(),
            attempts=outcome.attempts,
        )
