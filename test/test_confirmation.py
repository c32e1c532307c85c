#!/usr/bin/env python3
"""Tests for ConfirmationWaiter."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from web3.exceptions import TransactionNotFound

from gsn_relay_client.confirmation import ConfirmationWaiter
from gsn_relay_client.errors import ConfirmationTimeoutError, TransactionFailedError
from gsn_relay_client.models import TransactionReference

from conftest import RELAY_URL

TX_HASH = "0x" + "ab" * 32


@pytest.fixture
def tx_reference(worker_account):
    return TransactionReference(
        tx_hash=TX_HASH,
        raw_transaction="0x02",
        relay_url=RELAY_URL,
        relay_worker=worker_account.address,
    )


@pytest.fixture
def waiter(contract_util):
    return ConfirmationWaiter(contract_util, poll_interval=0.01)


class TestConfirmationWaiter:
    """Receipt polling outcomes."""

    @pytest.mark.asyncio
    async def test_confirmed_after_polling(self, waiter, contract_util, tx_reference):
        receipt = {"status": 1, "blockNumber": 42, "transactionHash": TX_HASH}
        contract_util.get_transaction_receipt = AsyncMock(
            side_effect=[TransactionNotFound("pending"), TransactionNotFound("pending"), receipt]
        )

        confirmation = await waiter.wait_for_confirmation(tx_reference, timeout=5)

        assert confirmation.confirmed is True
        assert confirmation.tx_hash == TX_HASH
        assert confirmation.receipt["blockNumber"] == 42
        assert contract_util.get_transaction_receipt.await_count == 3

    @pytest.mark.asyncio
    async def test_reverted_transaction_raises(self, waiter, contract_util, tx_reference):
        receipt = {"status": 0, "blockNumber": 42}
        contract_util.get_transaction_receipt = AsyncMock(return_value=receipt)

        with pytest.raises(TransactionFailedError) as exc_info:
            await waiter.wait_for_confirmation(tx_reference, timeout=5)

        assert exc_info.value.tx_hash == TX_HASH
        assert exc_info.value.receipt == receipt

    @pytest.mark.asyncio
    async def test_timeout_raises(self, waiter, contract_util, tx_reference):
        contract_util.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("pending"))

        with pytest.raises(ConfirmationTimeoutError) as exc_info:
            await waiter.wait_for_confirmation(tx_reference, timeout=0.05)

        assert exc_info.value.tx_hash == TX_HASH
        assert isinstance(exc_info.value, TimeoutError)

    @pytest.mark.asyncio
    async def test_cancel_returns_unconfirmed(self, waiter, contract_util, tx_reference):
        contract_util.get_transaction_receipt = AsyncMock(side_effect=TransactionNotFound("pending"))
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        confirmation = await waiter.wait_for_confirmation(tx_reference, timeout=5, cancel_event=cancel)

        assert confirmation.confirmed is False
        assert confirmation.receipt is None

    @pytest.mark.asyncio
    async def test_rpc_errors_keep_polling(self, waiter, contract_util, tx_reference):
        receipt = {"status": 1, "blockNumber": 7}
        contract_util.get_transaction_receipt = AsyncMock(
            side_effect=[ConnectionError("connection reset"), receipt]
        )

        confirmation = await waiter.wait_for_confirmation(tx_reference, timeout=5)

        assert confirmation.confirmed is True
