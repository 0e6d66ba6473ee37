"""Shared fixtures: a scripted transaction builder, ledgers and a manual clock."""

from __future__ import annotations

import pytest

from tao_disburse.builder import TransactionBuilder
from tao_disburse.clock import ManualClock
from tao_disburse.errors import TransientTransferError
from tao_disburse.ledger import MemoryLedger
from tao_disburse.recipients import Recipient
from tao_disburse.settings import DispatchSettings, PacingSettings

SENDER = "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY"

DEV_ADDRESSES = [
    "5GrwvaEF5zXb26Fz9rcQpDWS57CtERHpNehXCPcNoHGKutQY",  # Alice
    "5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty",  # Bob
    "5FLSigC9HGRKVhB9FiEo4Y3koPsNmBmLJbpXg2mp1hXcS59Y",  # Charlie
    "5DAAnrj7VHTznn2AWBemMuyBwZWs6FNFjdyVXUeYum3PTXFy",  # Dave
    "5HGjWAeFDfFCWPsjFQdVV2Msvz2XtMktvgocEZcCj68kUMaw",  # Eve
]


class StubBuilder(TransactionBuilder):
    """
    Transaction builder that never touches a network.

    Batches are identified by the address of their first output;
    ``fail(address, times)`` makes that batch fail ``times`` times
    (or always, with ``times=None``).
    """

    def __init__(self, sender: str = SENDER, balance: int = 10**18):
        self.sender = sender
        self.balance = balance
        self.submissions: list[list] = []
        self.balance_checks = 0
        self._failures: dict[str, int | None] = {}
        self._errors: dict[str, Exception] = {}
        self._counter = 0

    def fail(self, first_address: str, times: int | None = None, error: Exception | None = None):
        self._failures[first_address] = times
        if error is not None:
            self._errors[first_address] = error

    def heal(self) -> None:
        self._failures.clear()
        self._errors.clear()

    def get_sender_address(self) -> str:
        return self.sender

    async def get_sender_balance(self, denom: str = "rao") -> int:
        self.balance_checks += 1
        return self.balance

    async def submit_transfer(self, sender, outputs) -> str:
        outputs = list(outputs)
        self.submissions.append(outputs)
        key = outputs[0].address
        if key in self._failures:
            remaining = self._failures[key]
            if remaining is None or remaining > 0:
                if remaining is not None:
                    self._failures[key] = remaining - 1
                raise self._errors.get(key, TransientTransferError("network error: timeout"))
        self._counter += 1
        return f"0xhash{self._counter:04d}"

    def attempts_for(self, first_address: str) -> int:
        return sum(1 for outputs in self.submissions if outputs[0].address == first_address)


def make_recipients(count: int, amount: int = 1) -> list[Recipient]:
    return [Recipient(address=f"addr-{i:04d}", amount=amount) for i in range(count)]


@pytest.fixture
def builder() -> StubBuilder:
    return StubBuilder()


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> DispatchSettings:
    return DispatchSettings(
        batch_size=400,
        max_retries=3,
        retry_delay=5.0,
        pacing=PacingSettings(after_success=3.0, after_failure=10.0, between_resumes=5.0),
    )
