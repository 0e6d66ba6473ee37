"""
Batch partitioning and per-batch results.

A recipient list is split into fixed-size, order-preserving batches. Each
batch is later sent as one ``utility.batch_all`` extrinsic, so all of its
transfers succeed or all revert.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from bittensor.utils.balance import Balance

from tao_disburse.recipients import Recipient, total_amount


# Recipients per batch transaction.
# Substrate utility.batch_all has no hard limit, but larger batches
# consume more weight and risk exceeding the block weight limit.
DEFAULT_BATCH_SIZE = 200


@dataclass(frozen=True)
class Batch:
    """A numbered slice of the recipient list (numbers start at 1)."""

    number: int
    recipients: tuple[Recipient, ...]

    @property
    def total(self) -> int:
        """Batch total in RAO."""
        return total_amount(self.recipients)

    def __len__(self) -> int:
        return len(self.recipients)


def split_batches(
    recipients: Sequence[Recipient], batch_size: int = DEFAULT_BATCH_SIZE
) -> list[Batch]:
    """Split recipients into numbered batches of at most ``batch_size``."""
    return [
        Batch(number=n, recipients=tuple(recipients[i: i + batch_size]))
        for n, i in enumerate(range(0, len(recipients), batch_size), start=1)
    ]


@dataclass
class BatchResult:
    """Result of dispatching one batch."""

    batch_number: int
    success: bool
    message: str
    tx_hash: Optional[str] = None
    attempts: int = 0
    recipient_count: int = 0
    total_amount: int = 0  # RAO
    duration_seconds: float = 0.0

    @property
    def retried(self) -> bool:
        return self.attempts > 1

    def summary(self) -> str:
        """Human-readable summary of the batch result."""
        status = "SUCCESS" if self.success else "FAILED"
        lines = [
            f"=== Batch #{self.batch_number} — {status} ===",
            f"Recipients: {self.recipient_count}",
            f"Total amount: {Balance.from_rao(self.total_amount)}",
            f"Attempts: {self.attempts}",
            f"Duration: {self.duration_seconds:.1f}s",
        ]
        if self.tx_hash:
            lines.append(f"Extrinsic hash: {self.tx_hash}")
        if not self.success:
            lines.append(f"Error: {self.message}")
        return "\n".join(lines)


def settled_hashes(results: Sequence[BatchResult]) -> list[str]:
    """Transaction hashes of the settled batches, in batch order."""
    return [r.tx_hash for r in results if r.success and r.tx_hash]
