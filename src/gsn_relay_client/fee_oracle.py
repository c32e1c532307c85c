#!/usr/bin/env python3
"""Fee and limit oracle for the GSN relay client.

Derives EIP-1559 fee parameters from recent blocks, prices the calldata a
relay worker pays for and reads the paymaster's gas and data limits. All
methods are read-only.
"""

import logging
from dataclasses import replace

from hexbytes import HexBytes
from web3 import Web3

from .config import RelayClientConfig
from .models import GasAndDataLimits, RelayRequest
from .utils.contract_utility import ContractUtility

logger = logging.getLogger(__name__)

# Intrinsic calldata gas per byte (EIP-2028)
GTX_DATA_NON_ZERO = 16
GTX_DATA_ZERO = 4

_MAX_UINT40 = 0xFFFFFFFFFF
_PLACEHOLDER_SIGNATURE = b"\xff" * 65


def calculate_calldata_cost(data: bytes | str) -> int:
    """Intrinsic gas charged for including ``data`` in a transaction."""
    payload = bytes(HexBytes(data))
    zero_bytes = payload.count(0)
    return zero_bytes * GTX_DATA_ZERO + (len(payload) - zero_bytes) * GTX_DATA_NON_ZERO


class FeeOracle:
    """Reads fees and limits from the chain collaborator."""

    def __init__(self, contract_util: ContractUtility, config: RelayClientConfig) -> None:
        """
        Initialize the FeeOracle.

        Args:
            contract_util: Chain RPC and contract bindings
            config: Client configuration
        """
        self.contract_util = contract_util
        self.config = config
        self.relay_hub = contract_util.contract("RelayHub", config.contracts.relay_hub_address)

    async def current_fees(self) -> tuple[int, int]:
        """
        Suggest fees from ``eth_feeHistory``.

        The mean priority fee at the configured percentile and the latest base
        fee are both raised by ``gas_price_factor_percent``; the priority fee
        is floored at ``min_max_priority_fee_per_gas``.

        Returns:
            (max_fee_per_gas, max_priority_fee_per_gas)
        """
        fees = self.config.gas_fees
        history = await self.contract_util.get_fee_history(fees.get_gas_fees_blocks, fees.get_gas_fees_percentile)

        rewards = [int(block_rewards[0]) for block_rewards in history.get("reward") or [] if block_rewards]
        mean_priority_fee = sum(rewards) // len(rewards) if rewards else 0
        base_fee = int(history["baseFeePerGas"][-1]) if history.get("baseFeePerGas") else 0

        factor = 100 + fees.gas_price_factor_percent
        priority_fee = round(mean_priority_fee * factor / 100)
        if priority_fee < fees.min_max_priority_fee_per_gas:
            priority_fee = fees.min_max_priority_fee_per_gas

        max_fee = round(base_fee * factor / 100) + priority_fee
        if max_fee == 0:
            max_fee = priority_fee

        logger.debug(f"Gas fees: baseFee={base_fee} maxFeePerGas={max_fee} maxPriorityFeePerGas={priority_fee}")
        return max_fee, priority_fee

    def estimate_calldata_cost(self, relay_request: RelayRequest, limits: GasAndDataLimits) -> int:
        """
        Worst-case calldata gas of the ``relayCall`` transaction for this request.

        Paymaster data, approval data and signature are replaced by maximum-size
        non-zero placeholders, so the estimate stays valid for any final values
        within the configured bounds.

        Args:
            relay_request: Request with the relay worker already chosen
            limits: Data length bounds

        Returns:
            Gas units to put in ``transactionCalldataGasUsed``
        """
        placeholder_request = replace(
            relay_request,
            relay_data=replace(
                relay_request.relay_data,
                transaction_calldata_gas_used=_MAX_UINT40,
                paymaster_data=Web3.to_hex(b"\xff" * limits.max_paymaster_data_length),
            ),
        )
        encoded = self.encode_relay_call(
            placeholder_request,
            max_acceptance_budget=_MAX_UINT40,
            signature=_PLACEHOLDER_SIGNATURE,
            approval_data=b"\xff" * limits.max_approval_data_length,
        )
        cost = calculate_calldata_cost(encoded)
        logger.debug(f"Estimated calldata cost {cost} for {len(HexBytes(encoded))} bytes")
        return cost

    def encode_relay_call(
        self,
        relay_request: RelayRequest,
        max_acceptance_budget: int,
        signature: bytes,
        approval_data: bytes | str = b"",
    ) -> str:
        """ABI-encode ``RelayHub.relayCall`` for the given request."""
        return self.relay_hub.encode_abi(
            "relayCall",
            args=[
                self.config.relay.domain_separator_name,
                max_acceptance_budget,
                relay_request.as_tuple(),
                bytes(HexBytes(signature)),
                bytes(HexBytes(approval_data)),
            ],
        )

    async def get_gas_and_data_limits(self, paymaster: str | None = None) -> GasAndDataLimits:
        """
        Read the paymaster's limits and attach the client's data bounds.

        Args:
            paymaster: Paymaster address (defaults to the configured one)
        """
        address = paymaster or self.config.contracts.paymaster_address
        contract = self.contract_util.contract("Paymaster", address)
        acceptance, pre_call, post_call, calldata_size = await contract.functions.getGasAndDataLimits().call()

        limits = GasAndDataLimits(
            acceptance_budget=int(acceptance),
            pre_relayed_call_gas_limit=int(pre_call),
            post_relayed_call_gas_limit=int(post_call),
            calldata_size_limit=int(calldata_size),
            max_paymaster_data_length=self.config.relay.max_paymaster_data_length,
            max_approval_data_length=self.config.relay.max_approval_data_length,
        )
        logger.debug(f"Paymaster {address} limits: {limits}")
        return limits

    async def get_sender_nonce(self, sender: str) -> int:
        return await self.contract_util.get_sender_nonce(sender, self.config.contracts.forwarder_address)
