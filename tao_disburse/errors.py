"""
Typed errors for the disbursement engine.

Every failure the engine can produce carries an ``ErrorKind`` so callers
catch by type (or switch on ``kind``) instead of parsing messages:

    DispatchError (base)
    +-- ConfigurationError      fatal, raised before any network activity
    +-- TransientTransferError  retried, then persisted as a batch failure
    +-- InsufficientBalanceError  retried like a transient error, labelled apart
    +-- LedgerIOError           fatal for the affected write
    +-- BatchNotFoundError      per-invocation resume outcome
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(Enum):
    """Closed set of failure causes."""

    CONFIGURATION = "configuration"
    TRANSIENT = "transient"
    BALANCE = "balance"
    LEDGER_IO = "ledger_io"
    NOT_FOUND = "not_found"


class DispatchError(Exception):
    """Base class for all engine errors."""

    kind: ErrorKind = ErrorKind.TRANSIENT

    def __init__(self, message: str, kind: ErrorKind | None = None):
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.kind.value.upper()

    def labelled(self) -> str:
        """Message prefixed with the kind, as stored in failure records."""
        return f"[{self.kind.value}] {self.message}"


class ConfigurationError(DispatchError):
    kind = ErrorKind.CONFIGURATION


class TransientTransferError(DispatchError):
    kind = ErrorKind.TRANSIENT


class InsufficientBalanceError(DispatchError):
    """Sender balance does not cover the batch total."""

    kind = ErrorKind.BALANCE

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance. Required: {required} RAO, "
            f"Available: {available} RAO"
        )


class LedgerIOError(DispatchError):
    kind = ErrorKind.LEDGER_IO


class BatchNotFoundError(DispatchError):
    kind = ErrorKind.NOT_FOUND

    def __init__(self, batch_number: int):
        self.batch_number = batch_number
        super().__init__(f"Batch #{batch_number} not found in failed batches")
