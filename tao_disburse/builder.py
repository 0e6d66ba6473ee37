"""
Transaction builders: sign and submit one atomic transfer per batch.

``TransactionBuilder`` is the interface the dispatch engine talks to.
``SubtensorTransactionBuilder`` implements it on the Bittensor network,
bundling the batch's balance transfers into a single
``Utility.batch_all`` extrinsic -- if any transfer fails, the entire batch
is reverted, so a batch never settles partially.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Sequence

import bittensor as bt
from bittensor.core.extrinsics.pallets import Balances

from tao_disburse.errors import ConfigurationError, TransientTransferError
from tao_disburse.log import get_logger

logger = get_logger("builder")

DENOM = "rao"


@dataclass(frozen=True)
class TransferOutput:
    """One transfer inside a batch extrinsic."""

    address: str
    amount: int  # in RAO
    denom: str = DENOM


class TransactionBuilder(ABC):
    """Signer/broadcaster for a single sender."""

    @abstractmethod
    def get_sender_address(self) -> str:
        ...

    @abstractmethod
    async def get_sender_balance(self, denom: str = DENOM) -> int:
        ...

    @abstractmethod
    async def submit_transfer(
        self, sender: str, outputs: Sequence[TransferOutput]
    ) -> str:
        """
        Submit all outputs as one atomic transaction and return its hash.

        Raises a ``DispatchError`` subclass on failure.
        """


class SubtensorTransactionBuilder(TransactionBuilder):
    """
    Bittensor signer/broadcaster backed by ``bt.AsyncSubtensor``.

    Use as an async context manager so the websocket connection is opened
    once for the whole run:

        async with SubtensorTransactionBuilder("my_wallet", "test") as builder:
            ...

    Parameters:
        wallet_name: Name of the Bittensor wallet (coldkey signs).
        network: Bittensor network ('finney' for mainnet, 'test' for testnet).
        keep_alive: If True, use transfer_keep_alive to protect existential deposits.
        wait_for_inclusion: Wait for the transaction to be included in a block.
        wait_for_finalization: Wait for the transaction to be finalized.
    """

    def __init__(
        self,
        wallet_name: str,
        network: str = "finney",
        keep_alive: bool = True,
        wait_for_inclusion: bool = True,
        wait_for_finalization: bool = False,
    ):
        if not wallet_name:
            raise ConfigurationError("A wallet name is required to sign transfers")
        self.wallet_name = wallet_name
        self.network = network
        self.keep_alive = keep_alive
        self.wait_for_inclusion = wait_for_inclusion
        self.wait_for_finalization = wait_for_finalization
        self._wallet: Optional[bt.Wallet] = None
        self._subtensor: Optional[bt.AsyncSubtensor] = None

    async def __aenter__(self) -> "SubtensorTransactionBuilder":
        self._subtensor = bt.AsyncSubtensor(network=self.network)
        await self._subtensor.__aenter__()
        return self

    async def __aexit__(self, *exc) -> None:
        if self._subtensor is not None:
            await self._subtensor.__aexit__(*exc)
            self._subtensor = None

    @property
    def wallet(self) -> bt.Wallet:
        if self._wallet is None:
            wallet = bt.Wallet(name=self.wallet_name)
            if not wallet.coldkeypub_file.exists_on_device():
                raise ConfigurationError(
                    f"Wallet '{self.wallet_name}' has no coldkey on this device"
                )
            self._wallet = wallet
        return self._wallet

    @property
    def subtensor(self) -> bt.AsyncSubtensor:
        if self._subtensor is None:
            raise ConfigurationError(
                "SubtensorTransactionBuilder must be used as an async context manager"
            )
        return self._subtensor

    def unlock(self) -> None:
        """Unlock the coldkey (prompts for the password when encrypted)."""
        self.wallet.unlock_coldkey()

    def get_sender_address(self) -> str:
        return self.wallet.coldkeypub.ss58_address

    async def get_sender_balance(self, denom: str = DENOM) -> int:
        if denom != DENOM:
            raise ConfigurationError(f"Unsupported denomination '{denom}', expected '{DENOM}'")
        try:
            balance = await self.subtensor.get_balance(self.get_sender_address())
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise TransientTransferError(f"network error while reading balance: {e}")
        return balance.rao

    async def submit_transfer(
        self, sender: str, outputs: Sequence[TransferOutput]
    ) -> str:
        if sender != self.get_sender_address():
            raise ConfigurationError(
                f"Sender {sender} does not match wallet '{self.wallet_name}'"
            )
        for output in outputs:
            if output.denom != DENOM:
                raise ConfigurationError(
                    f"Unsupported denomination '{output.denom}', expected '{DENOM}'"
                )

        subtensor = self.subtensor
        transfer_fn = "transfer_keep_alive" if self.keep_alive else "transfer_allow_death"

        try:
            balances_pallet = Balances(subtensor)
            calls = []
            for output in outputs:
                call = await getattr(balances_pallet, transfer_fn)(
                    dest=output.address,
                    value=output.amount,
                )
                calls.append(call)

            # Wrap in utility.batch_all (atomic)
            batch_call = await subtensor.compose_call(
                call_module="Utility",
                call_function="batch_all",
                call_params={"calls": calls},
            )

            response = await subtensor.sign_and_send_extrinsic(
                call=batch_call,
                wallet=self.wallet,
                wait_for_inclusion=self.wait_for_inclusion,
                wait_for_finalization=self.wait_for_finalization,
            )
        except (asyncio.TimeoutError, ConnectionError, OSError) as e:
            raise TransientTransferError(f"network error: {e}")

        if not response.success:
            raise TransientTransferError(f"rejected by chain: {response.message}")

        tx_hash = getattr(response, "extrinsic_hash", None)
        if not tx_hash:
            tx_hash = await subtensor.get_block_hash()
        logger.debug(
            "extrinsic_submitted",
            extra={"tx_hash": tx_hash, "output_count": len(outputs)},
        )
        return str(tx_hash)
