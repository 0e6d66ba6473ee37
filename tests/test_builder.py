import asyncio
from types import SimpleNamespace

import pytest

import tao_disburse.builder as builder_module
from conftest import DEV_ADDRESSES, SENDER
from tao_disburse.builder import SubtensorTransactionBuilder, TransferOutput
from tao_disburse.errors import ConfigurationError, ErrorKind, TransientTransferError


class FakeBalances:
    def __init__(self, subtensor):
        self.subtensor = subtensor

    async def transfer_keep_alive(self, dest, value):
        return ("transfer_keep_alive", dest, value)

    async def transfer_allow_death(self, dest, value):
        return ("transfer_allow_death", dest, value)


class FakeSubtensor:
    """Stands in for bt.AsyncSubtensor; records what the builder asks of it."""

    def __init__(self, response=None, error=None, balance_rao=0):
        self.response = response or SimpleNamespace(
            success=True, message="", extrinsic_hash="0xabc"
        )
        self.error = error
        self.balance_rao = balance_rao
        self.composed = []
        self.sent = []

    async def compose_call(self, call_module, call_function, call_params):
        self.composed.append((call_module, call_function, call_params))
        return ("composed", call_function)

    async def sign_and_send_extrinsic(self, call, wallet, wait_for_inclusion, wait_for_finalization):
        if self.error is not None:
            raise self.error
        self.sent.append(call)
        return self.response

    async def get_block_hash(self):
        return "0xblock"

    async def get_balance(self, address):
        if self.error is not None:
            raise self.error
        return SimpleNamespace(rao=self.balance_rao)


@pytest.fixture(autouse=True)
def fake_balances(monkeypatch):
    monkeypatch.setattr(builder_module, "Balances", FakeBalances)


def make_builder(subtensor, keep_alive=True):
    builder = SubtensorTransactionBuilder("payouts", "test", keep_alive=keep_alive)
    builder._wallet = SimpleNamespace(coldkeypub=SimpleNamespace(ss58_address=SENDER))
    builder._subtensor = subtensor
    return builder


OUTPUTS = [TransferOutput(DEV_ADDRESSES[1], 1000), TransferOutput(DEV_ADDRESSES[2], 2000)]


def test_outputs_are_wrapped_in_one_batch_all_call():
    subtensor = FakeSubtensor()

    tx_hash = asyncio.run(make_builder(subtensor).submit_transfer(SENDER, OUTPUTS))

    assert tx_hash == "0xabc"
    [(module, function, params)] = subtensor.composed
    assert (module, function) == ("Utility", "batch_all")
    assert params["calls"] == [
        ("transfer_keep_alive", DEV_ADDRESSES[1], 1000),
        ("transfer_keep_alive", DEV_ADDRESSES[2], 2000),
    ]
    assert len(subtensor.sent) == 1


def test_keep_alive_off_uses_transfer_allow_death():
    subtensor = FakeSubtensor()

    asyncio.run(make_builder(subtensor, keep_alive=False).submit_transfer(SENDER, OUTPUTS))

    assert all(call[0] == "transfer_allow_death" for call in subtensor.composed[0][2]["calls"])


def test_chain_rejection_is_transient():
    response = SimpleNamespace(success=False, message="Invalid Transaction", extrinsic_hash=None)
    subtensor = FakeSubtensor(response=response)

    with pytest.raises(TransientTransferError) as exc:
        asyncio.run(make_builder(subtensor).submit_transfer(SENDER, OUTPUTS))

    assert exc.value.kind is ErrorKind.TRANSIENT
    assert "rejected by chain: Invalid Transaction" in str(exc.value)


def test_connection_error_is_transient():
    subtensor = FakeSubtensor(error=ConnectionError("websocket closed"))

    with pytest.raises(TransientTransferError, match="network error: websocket closed"):
        asyncio.run(make_builder(subtensor).submit_transfer(SENDER, OUTPUTS))


def test_sender_mismatch_is_configuration_error_and_sends_nothing():
    subtensor = FakeSubtensor()

    with pytest.raises(ConfigurationError) as exc:
        asyncio.run(make_builder(subtensor).submit_transfer(DEV_ADDRESSES[1], OUTPUTS))

    assert exc.value.kind is ErrorKind.CONFIGURATION
    assert subtensor.composed == []
    assert subtensor.sent == []


def test_output_in_other_denomination_is_configuration_error():
    subtensor = FakeSubtensor()
    outputs = [TransferOutput(DEV_ADDRESSES[1], 1000, denom="tao")]

    with pytest.raises(ConfigurationError):
        asyncio.run(make_builder(subtensor).submit_transfer(SENDER, outputs))

    assert subtensor.sent == []


def test_missing_extrinsic_hash_falls_back_to_block_hash():
    response = SimpleNamespace(success=True, message="", extrinsic_hash=None)
    subtensor = FakeSubtensor(response=response)

    assert asyncio.run(make_builder(subtensor).submit_transfer(SENDER, OUTPUTS)) == "0xblock"


def test_sender_balance_is_read_in_rao():
    subtensor = FakeSubtensor(balance_rao=5_000_000_000)

    assert asyncio.run(make_builder(subtensor).get_sender_balance()) == 5_000_000_000


def test_sender_balance_in_other_denomination_is_configuration_error():
    with pytest.raises(ConfigurationError):
        asyncio.run(make_builder(FakeSubtensor()).get_sender_balance("tao"))


def test_balance_read_timeout_is_transient():
    subtensor = FakeSubtensor(error=asyncio.TimeoutError())

    with pytest.raises(TransientTransferError, match="reading balance"):
        asyncio.run(make_builder(subtensor).get_sender_balance())


def test_builder_outside_context_manager_is_configuration_error():
    builder = make_builder(None)

    with pytest.raises(ConfigurationError, match="async context manager"):
        asyncio.run(builder.get_sender_balance())


def test_wallet_name_is_required():
    with pytest.raises(ConfigurationError):
        SubtensorTransactionBuilder("")
