import json
import logging
from datetime import datetime, timezone

import pytest

from tao_disburse.errors import ErrorKind, LedgerIOError
from tao_disburse.ledger import (
    FAILURE_STORE_NAME,
    FailureRecord,
    FileLedger,
    SettlementRecord,
)
from tao_disburse.recipients import Recipient

WHEN = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def failure(number: int, error: str = "[transient] timeout") -> FailureRecord:
    return FailureRecord(
        batch_number=number,
        recipients=(
            Recipient(address="5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY", amount=2**60),
            Recipient(address="5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty", amount=5, label="Bob"),
        ),
        error=error,
        timestamp=WHEN,
        error_kind=ErrorKind.TRANSIENT,
    )


def test_settlement_log_lines_are_readable_and_parse_back(tmp_path):
    ledger = FileLedger(tmp_path)
    ledger.start_run()
    record = SettlementRecord(
        batch_number=2, recipient_count=400, tx_hash="0xabc", timestamp=WHEN, retried=True
    )
    ledger.append_settlement(record)

    text = ledger.settlement_log_path.read_text()
    assert text.startswith("# TAO Disburse Transaction Hashes")
    assert "Batch #2 | 400 recipients | Hash: 0xabc | Time: 2024-01-01T12:00:00+00:00 | Retried: yes" in text
    assert ledger.settlements() == [record]


def test_start_run_truncates_the_settlement_log(tmp_path):
    ledger = FileLedger(tmp_path)
    ledger.start_run()
    ledger.append_settlement(
        SettlementRecord(batch_number=1, recipient_count=1, tx_hash="0x1", timestamp=WHEN)
    )

    ledger.start_run()

    assert ledger.settlements() == []


def test_append_without_start_run_creates_log_with_header(tmp_path):
    ledger = FileLedger(tmp_path / "nested")
    ledger.append_settlement(
        SettlementRecord(batch_number=1, recipient_count=1, tx_hash="0x1", timestamp=WHEN)
    )

    assert ledger.settlement_log_path.read_text().startswith("# TAO Disburse")
    assert len(ledger.settlements()) == 1


def test_failure_records_survive_a_new_ledger_instance(tmp_path):
    FileLedger(tmp_path).save_failure(failure(2))

    reopened = FileLedger(tmp_path)
    reopened.start_run()

    assert reopened.load_failures() == [failure(2)]
    stored = json.loads((tmp_path / FAILURE_STORE_NAME).read_text())
    assert stored[0]["batchNumber"] == 2
    assert stored[0]["recipients"][0]["amount"] == str(2**60)


def test_save_replaces_same_batch_number_in_place(tmp_path):
    ledger = FileLedger(tmp_path)
    ledger.save_failure(failure(1))
    ledger.save_failure(failure(2))
    ledger.save_failure(failure(1, error="[balance] Insufficient balance"))

    records = ledger.load_failures()
    assert [r.batch_number for r in records] == [1, 2]
    assert records[0].error == "[balance] Insufficient balance"


def test_remove_and_update_report_missing_records(tmp_path):
    ledger = FileLedger(tmp_path)
    ledger.save_failure(failure(1))

    assert ledger.remove_failure(9) is False
    assert ledger.update_failure_error(9, "x", None, WHEN) is False
    assert ledger.update_failure_error(1, "[transient] again", ErrorKind.TRANSIENT, WHEN) is True
    assert ledger.get_failure(1).error == "[transient] again"
    assert ledger.remove_failure(1) is True
    assert ledger.load_failures() == []


def test_failure_store_writes_leave_no_temp_files(tmp_path):
    ledger = FileLedger(tmp_path)
    ledger.save_failure(failure(1))
    ledger.remove_failure(1)

    assert sorted(p.name for p in tmp_path.iterdir()) == [FAILURE_STORE_NAME]


def test_corrupt_failure_store_warns_and_is_backed_up_before_overwrite(tmp_path, caplog):
    store = tmp_path / FAILURE_STORE_NAME
    store.write_text("{not json")
    ledger = FileLedger(tmp_path)

    with caplog.at_level(logging.WARNING, logger="tao_disburse"):
        assert ledger.load_failures() == []
    assert any(r.getMessage() == "failure_store_unreadable" for r in caplog.records)

    ledger.save_failure(failure(3))

    backups = list(tmp_path.glob(f"{FAILURE_STORE_NAME}.corrupt-*"))
    assert len(backups) == 1
    assert backups[0].read_text() == "{not json"
    assert [r.batch_number for r in ledger.load_failures()] == [3]


def test_unwritable_ledger_raises_ledger_io_error(tmp_path):
    blocker = tmp_path / "ledger"
    blocker.write_text("not a directory")
    ledger = FileLedger(blocker)

    with pytest.raises(LedgerIOError):
        ledger.start_run()
    with pytest.raises(LedgerIOError):
        ledger.save_failure(failure(1))
