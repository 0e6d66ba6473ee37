"""
Outcome ledger: where batch outcomes are recorded.

Two kinds of record are kept:

* ``SettlementRecord`` -- one per batch that reached a transaction hash.
  Append-only; each run starts a fresh settlement log.
* ``FailureRecord`` -- one per batch that exhausted its retries and is
  still unresolved. Carries a full recipient snapshot so the batch can be
  retried without the original recipient file. Survives across runs and
  is removed only when a retry of that batch number settles.

``FileLedger`` keeps them in a human-readable text log and a JSON file;
``MemoryLedger`` is the in-process equivalent used by tests. Only the
dispatch engine writes to a ledger, one operation at a time. Concurrent
runs against the same directory are not supported.
"""

from __future__ import annotations

import json
import os
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from tao_disburse.errors import ErrorKind, LedgerIOError
from tao_disburse.log import get_logger
from tao_disburse.recipients import Recipient

logger = get_logger("ledger")

SETTLEMENT_LOG_NAME = "transaction-hashes.txt"
FAILURE_STORE_NAME = "failed-batches.json"

_SETTLEMENT_LINE = re.compile(
    r"^Batch #(?P<number>\d+) \| (?P<count>\d+) recipients \| Hash: (?P<hash>\S+) "
    r"\| Time: (?P<time>\S+) \| Retried: (?P<retried>yes|no)$"
)


@dataclass(frozen=True)
class SettlementRecord:
    """A batch that reached terminal success."""

    batch_number: int
    recipient_count: int
    tx_hash: str
    timestamp: datetime
    retried: bool = False

    def to_line(self) -> str:
        return (
            f"Batch #{self.batch_number} | {self.recipient_count} recipients | "
            f"Hash: {self.tx_hash} | Time: {self.timestamp.isoformat()} | "
            f"Retried: {'yes' if self.retried else 'no'}"
        )

    @classmethod
    def from_line(cls, line: str) -> Optional["SettlementRecord"]:
        match = _SETTLEMENT_LINE.match(line.strip())
        if match is None:
            return None
        return cls(
            batch_number=int(match["number"]),
            recipient_count=int(match["count"]),
            tx_hash=match["hash"],
            timestamp=datetime.fromisoformat(match["time"]),
            retried=match["retried"] == "yes",
        )


@dataclass(frozen=True)
class FailureRecord:
    """A batch that exhausted its retries and is still outstanding."""

    batch_number: int
    recipients: tuple[Recipient, ...]
    error: str
    timestamp: datetime
    error_kind: Optional[ErrorKind] = None

    def to_dict(self) -> dict:
        return {
            "batchNumber": self.batch_number,
            "recipients": [r.to_dict() for r in self.recipients],
            "error": self.error,
            "errorKind": self.error_kind.value if self.error_kind else None,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FailureRecord":
        kind = data.get("errorKind")
        return cls(
            batch_number=int(data["batchNumber"]),
            recipients=tuple(Recipient.from_dict(r) for r in data["recipients"]),
            error=str(data.get("error", "")),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            error_kind=ErrorKind(kind) if kind else None,
        )


class Ledger(ABC):
    """Storage contract for batch outcomes."""

    @abstractmethod
    def start_run(self) -> None:
        """Begin a fresh settlement log. Failure records are kept."""

    @abstractmethod
    def append_settlement(self, record: SettlementRecord) -> None:
        ...

    @abstractmethod
    def settlements(self) -> list[SettlementRecord]:
        """Settlement records of the current log, in append order."""

    @abstractmethod
    def load_failures(self) -> list[FailureRecord]:
        """Outstanding failure records, in stored order."""

    @abstractmethod
    def _store_failures(self, records: list[FailureRecord]) -> None:
        ...

    def get_failure(self, batch_number: int) -> Optional[FailureRecord]:
        for record in self.load_failures():
            if record.batch_number == batch_number:
                return record
        return None

    def save_failure(self, record: FailureRecord) -> None:
        """Add a failure record, replacing any record with the same batch number."""
        records = self.load_failures()
        for i, existing in enumerate(records):
            if existing.batch_number == record.batch_number:
                records[i] = record
                break
        else:
            records.append(record)
        self._store_failures(records)

    def update_failure_error(
        self,
        batch_number: int,
        error: str,
        error_kind: Optional[ErrorKind],
        timestamp: datetime,
    ) -> bool:
        """Refresh the error of an outstanding record. Returns False if absent."""
        records = self.load_failures()
        for i, existing in enumerate(records):
            if existing.batch_number == batch_number:
                records[i] = replace(
                    existing, error=error, error_kind=error_kind, timestamp=timestamp
                )
                self._store_failures(records)
                return True
        return False

    def remove_failure(self, batch_number: int) -> bool:
        """Remove the record for ``batch_number``. Returns False if absent."""
        records = self.load_failures()
        kept = [r for r in records if r.batch_number != batch_number]
        if len(kept) == len(records):
            return False
        self._store_failures(kept)
        return True


@dataclass
class MemoryLedger(Ledger):
    """In-process ledger with the same contract as ``FileLedger``."""

    settlement_log: list[SettlementRecord] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)
    runs_started: int = 0

    def start_run(self) -> None:
        self.settlement_log = []
        self.runs_started += 1

    def append_settlement(self, record: SettlementRecord) -> None:
        self.settlement_log.append(record)

    def settlements(self) -> list[SettlementRecord]:
        return list(self.settlement_log)

    def load_failures(self) -> list[FailureRecord]:
        return list(self.failures)

    def _store_failures(self, records: list[FailureRecord]) -> None:
        self.failures = list(records)


class FileLedger(Ledger):
    """
    Ledger kept in a directory:

    * ``transaction-hashes.txt`` -- one line per settled batch.
    * ``failed-batches.json`` -- JSON list of outstanding failure records.

    Failure-store writes are atomic (temp file + ``os.replace``). An
    unreadable failure store is treated as empty with a warning, and is
    copied aside before the next write so its contents are not lost.
    """

    def __init__(self, directory: str | Path = "."):
        self.directory = Path(directory)
        self.settlement_log_path = self.directory / SETTLEMENT_LOG_NAME
        self.failure_store_path = self.directory / FAILURE_STORE_NAME
        self._corrupt_store = False

    @property
    def store_unreadable(self) -> bool:
        """True when the last read of the failure store could not be parsed."""
        return self._corrupt_store

    @property
    def corrupt_backup_pattern(self) -> str:
        return f"{self.failure_store_path}.corrupt-<timestamp>"

    def _header(self) -> str:
        timestamp = datetime.now(timezone.utc).isoformat()
        return f"# TAO Disburse Transaction Hashes\n# Generated on: {timestamp}\n\n"

    def start_run(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self.settlement_log_path.write_text(self._header(), encoding="utf-8")
        except OSError as e:
            raise LedgerIOError(f"Cannot create settlement log {self.settlement_log_path}: {e}")

    def append_settlement(self, record: SettlementRecord) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            new_file = not self.settlement_log_path.exists()
            with open(self.settlement_log_path, "a", encoding="utf-8") as f:
                if new_file:
                    f.write(self._header())
                f.write(record.to_line() + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise LedgerIOError(f"Cannot write settlement log {self.settlement_log_path}: {e}")
        logger.info(
            "settlement_recorded",
            extra={"batch_number": record.batch_number, "tx_hash": record.tx_hash},
        )

    def settlements(self) -> list[SettlementRecord]:
        if not self.settlement_log_path.exists():
            return []
        try:
            lines = self.settlement_log_path.read_text(encoding="utf-8").splitlines()
        except OSError as e:
            raise LedgerIOError(f"Cannot read settlement log {self.settlement_log_path}: {e}")
        records = []
        for line in lines:
            record = SettlementRecord.from_line(line)
            if record is not None:
                records.append(record)
        return records

    def load_failures(self) -> list[FailureRecord]:
        if not self.failure_store_path.exists():
            return []
        try:
            data = json.loads(self.failure_store_path.read_text(encoding="utf-8"))
            if not isinstance(data, list):
                raise ValueError("failure store must contain a JSON list")
            records = [FailureRecord.from_dict(entry) for entry in data]
        except (OSError, ValueError, KeyError, TypeError) as e:
            self._corrupt_store = True
            logger.warning(
                "failure_store_unreadable",
                extra={"path": str(self.failure_store_path), "error": str(e)},
            )
            return []
        self._corrupt_store = False
        return records

    def _store_failures(self, records: list[FailureRecord]) -> None:
        payload = json.dumps([r.to_dict() for r in records], indent=2)
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            if self._corrupt_store and self.failure_store_path.exists():
                stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
                backup = self.failure_store_path.with_name(
                    f"{FAILURE_STORE_NAME}.corrupt-{stamp}"
                )
                shutil.copy2(self.failure_store_path, backup)
                logger.warning(
                    "failure_store_backed_up", extra={"backup": str(backup)}
                )
            fd, tmp_path = tempfile.mkstemp(
                dir=self.directory, prefix=".failed-batches-", suffix=".json"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, self.failure_store_path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except OSError as e:
            raise LedgerIOError(f"Cannot write failure store {self.failure_store_path}: {e}")
        self._corrupt_store = False
