import pytest

from conftest import make_recipients
from tao_disburse.batch import BatchResult, settled_hashes, split_batches
from tao_disburse.recipients import Recipient


@pytest.mark.parametrize("count,size", [(1, 1), (7, 3), (9, 3), (10, 400), (1000, 400), (5, 1)])
def test_split_is_an_order_preserving_partition(count, size):
    recipients = make_recipients(count)
    batches = split_batches(recipients, size)

    flattened = [r for batch in batches for r in batch.recipients]
    assert flattened == recipients
    assert all(1 <= len(batch) <= size for batch in batches)
    assert [batch.number for batch in batches] == list(range(1, len(batches) + 1))


def test_split_empty_list_yields_no_batches():
    assert split_batches([], 10) == []


def test_split_thousand_recipients_by_four_hundred():
    batches = split_batches(make_recipients(1000), 400)

    assert [len(b) for b in batches] == [400, 400, 200]
    assert batches[1].recipients[0].address == "addr-0400"


def test_split_is_deterministic():
    recipients = make_recipients(17)
    assert split_batches(recipients, 4) == split_batches(recipients, 4)


def test_batch_total_is_exact():
    recipients = [
        Recipient(address="a", amount=2**70),
        Recipient(address="b", amount=1),
    ]
    (batch,) = split_batches(recipients, 5)
    assert batch.total == 2**70 + 1


def test_settled_hashes_skips_failures():
    results = [
        BatchResult(batch_number=1, success=True, message="ok", tx_hash="0x1", attempts=1),
        BatchResult(batch_number=2, success=False, message="[transient] timeout", attempts=4),
        BatchResult(batch_number=3, success=True, message="ok", tx_hash="0x3", attempts=2),
    ]

    assert settled_hashes(results) == ["0x1", "0x3"]
    assert results[2].retried is True
    assert "FAILED" in results[1].summary()
