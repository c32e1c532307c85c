"""
Polling-based receipt waiter for relayed transactions.

"""

import asyncio
import logging
from typing import Any

from web3.exceptions import TransactionNotFound

from .errors import ConfirmationTimeoutError, TransactionFailedError
from .models import Confirmation, TransactionReference
from .utils.contract_utility import ContractUtility


class ConfirmationWaiter:
    """
    Waits for a relayed transaction to be mined by polling its receipt.

    """

    def __init__(self, contract_util: ContractUtility, poll_interval: float = 2.0):
        """
        Initialize the confirmation waiter.

        Args:
            contract_util: Chain RPC access
            poll_interval: Seconds between receipt polls
        """
        self.contract_util = contract_util
        self.poll_interval = poll_interval

        # Setup logging
        self.logger = logging.getLogger(f"{__name__}.{self.__class__.__name__}")

    async def poll_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """
        Fetch the receipt once.

        Returns:
            The receipt, or None if the transaction is not mined yet or the
            RPC call failed
        """
        try:
            return dict(await self.contract_util.get_transaction_receipt(tx_hash))
        except TransactionNotFound:
            return None
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Error polling receipt for {tx_hash}: {e}")
            # Keep polling on transient RPC errors
            return None

    async def wait_for_confirmation(
        self,
        tx_reference: TransactionReference,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> Confirmation:
        """
        Wait until the transaction is mined.

        Args:
            tx_reference: Transaction returned by the relay
            timeout: Seconds to wait before giving up locally
            cancel_event: Set to stop waiting early

        Returns:
            Confirmation with ``confirmed=True`` and the receipt, or
            ``confirmed=False`` if ``cancel_event`` was set first

        Raises:
            TransactionFailedError: If the transaction was mined and reverted
            ConfirmationTimeoutError: If ``timeout`` elapsed first; the
                transaction may still be mined later
        """
        tx_hash = tx_reference.tx_hash
        cancel_event = cancel_event or asyncio.Event()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        self.logger.info(f"Waiting up to {timeout}s for {tx_hash} (polling every {self.poll_interval}s)")

        while True:
            if cancel_event.is_set():
                self.logger.info(f"Stopped waiting for {tx_hash}")
                return Confirmation(tx_hash=tx_hash, confirmed=False)

            receipt = await self.poll_receipt(tx_hash)
            if receipt is not None:
                if (status := receipt.get("status", 0)) == 1:
                    self.logger.info(f"✓ Transaction {tx_hash} confirmed in block {receipt.get('blockNumber')}")
                    return Confirmation(tx_hash=tx_hash, confirmed=True, receipt=receipt)
                self.logger.error(f"✗ Transaction {tx_hash} failed with status={status}")
                raise TransactionFailedError(tx_hash, receipt)

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ConfirmationTimeoutError(tx_hash, timeout)

            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=min(self.poll_interval, remaining))
            except asyncio.TimeoutError:
                pass  # next poll
