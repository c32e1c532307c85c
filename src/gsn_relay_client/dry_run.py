#!/usr/bin/env python3
"""Dry-run validation of signed relay requests.

Predicts whether a relay would accept and execute a request by running the
local checks a relay server performs and then simulating ``relayCall`` with
``eth_call`` from the chosen worker. Predicted failures are returned as
``RelayError`` values inside a ``DryRunResult``, never raised.
"""

import logging
from enum import IntEnum

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from hexbytes import HexBytes
from web3.exceptions import ContractLogicError, Web3RPCError

from .config import RelayClientConfig
from .errors import ErrorKind, RelayError
from .fee_oracle import FeeOracle
from .models import ZERO_ADDRESS, DryRunResult, GasAndDataLimits, PingResponse, SignedRelayRequest
from .utils.contract_utility import ContractUtility
from .worker_selection import fee_bounds_violation

logger = logging.getLogger(__name__)

ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")
RELAY_CALL_OUTPUT_TYPES = ["bool", "uint96", "uint8", "bytes"]


class RelayCallStatus(IntEnum):
    """``IRelayHub.RelayCallStatus`` as returned by ``relayCall``."""

    OK = 0
    RELAYED_CALL_FAILED = 1
    REJECTED_BY_PRE_RELAYED = 2
    REJECTED_BY_FORWARDER = 3
    REJECTED_BY_RECIPIENT_REVERT = 4
    POST_RELAYED_FAILED = 5
    PAYMASTER_BALANCE_CHANGED = 6


def decode_revert_reason(data: bytes | str) -> str:
    """Decode an ``Error(string)`` revert payload, falling back to hex."""
    payload = bytes(HexBytes(data))
    if not payload:
        return "no revert reason"
    if payload[:4] == ERROR_STRING_SELECTOR:
        try:
            (reason,) = abi_decode(["string"], payload[4:])
            return reason
        except DecodingError:
            pass
    return HexBytes(payload).to_0x_hex()


def _byte_length(value: str) -> int:
    return len(HexBytes(value))


class DryRunValidator:
    """Simulates a signed relay request against the current chain state."""

    def __init__(
        self,
        contract_util: ContractUtility,
        fee_oracle: FeeOracle,
        config: RelayClientConfig,
        chain_id: int | None = None,
    ) -> None:
        """
        Initialize the DryRunValidator.

        Args:
            contract_util: Chain RPC access
            fee_oracle: Used to encode ``relayCall`` exactly as the relay will
            config: Client configuration
            chain_id: Chain the signature is bound to (defaults to the configured one)
        """
        self.contract_util = contract_util
        self.fee_oracle = fee_oracle
        self.config = config
        self.chain_id = chain_id if chain_id is not None else config.chain.chain_id

    async def view_call_gas_limit(self, relay_worker: str, max_fee_per_gas: int, block_gas_limit: int) -> int:
        """
        Upper bound for the simulated call's gas.

        The smallest of the configured ceiling, the block gas limit and what
        the worker's balance can pay for at ``max_fee_per_gas``.
        """
        limit = min(self.config.relay.max_viewable_gas_limit, block_gas_limit)
        if max_fee_per_gas > 0 and relay_worker != ZERO_ADDRESS:
            balance = await self.contract_util.get_balance(relay_worker)
            limit = min(limit, balance // max_fee_per_gas)
        return limit

    async def _check_token(self, signed_request: SignedRelayRequest) -> RelayError | None:
        token = self.config.contracts.fee_token_address
        if not token:
            return None

        user = signed_request.relay_request.request.from_address
        paymaster = signed_request.relay_request.relay_data.paymaster
        minimum = self.config.relay.min_token_allowance

        allowance = await self.contract_util.get_token_allowance(token, user, paymaster)
        if allowance < minimum:
            return RelayError(
                ErrorKind.PAYMASTER_REJECTED,
                f"insufficient allowance: {user} approved {allowance} of token {token} to paymaster "
                f"{paymaster}, at least {minimum} required",
            )

        balance = await self.contract_util.get_token_balance(token, user)
        if balance < minimum:
            return RelayError(
                ErrorKind.PAYMASTER_REJECTED,
                f"insufficient balance: {user} holds {balance} of token {token}, at least {minimum} required",
            )
        return None

    @staticmethod
    def _classify_outcome(accepted: bool, status: int, return_value: bytes) -> RelayError | None:
        reason = decode_revert_reason(return_value)
        try:
            status = RelayCallStatus(status)
        except ValueError:
            return RelayError(ErrorKind.PAYMASTER_REJECTED, f"unknown relayCall status {status}: {reason}")

        match (accepted, status):
            case (True, RelayCallStatus.OK):
                return None
            case (_, RelayCallStatus.RELAYED_CALL_FAILED | RelayCallStatus.REJECTED_BY_RECIPIENT_REVERT):
                return RelayError(ErrorKind.CALL_REVERTED, f"target call reverted: {reason}")
            case (_, RelayCallStatus.REJECTED_BY_FORWARDER):
                return RelayError(ErrorKind.INVALID_REQUEST, f"rejected by forwarder: {reason}")
            case (False, _):
                return RelayError(ErrorKind.PAYMASTER_REJECTED, f"paymaster rejected ({status.name}): {reason}")
            case _:
                return RelayError(ErrorKind.PAYMASTER_REJECTED, f"relayCall failed ({status.name}): {reason}")

    async def simulate(
        self,
        signed_request: SignedRelayRequest,
        limits: GasAndDataLimits,
        ping_response: PingResponse | None = None,
    ) -> DryRunResult:
        """
        Predict the outcome of relaying ``signed_request``.

        Args:
            signed_request: Request with its signature and approval data
            limits: Paymaster limits and data length bounds
            ping_response: The chosen worker's ping, for fee band and budget checks

        Returns:
            DryRunResult with the view-call gas limit, or the first predicted failure
        """
        relay_request = signed_request.relay_request
        request = relay_request.request
        relay_data = relay_request.relay_data

        def failed(kind: ErrorKind, detail: str) -> DryRunResult:
            logger.warning(f"Dry run predicts failure for {request.from_address} nonce {request.nonce}: {kind.value}: {detail}")
            return DryRunResult(error=RelayError(kind, detail))

        block = await self.contract_util.get_latest_block()
        block_timestamp = int(block["timestamp"])
        if request.valid_until_time <= block_timestamp:
            return failed(
                ErrorKind.EXPIRED,
                f"request expired at {request.valid_until_time}, chain time is {block_timestamp}",
            )

        if not signed_request.verify(self.chain_id, self.config.relay.domain_separator_name):
            recovered = signed_request.recover_signer(self.chain_id, self.config.relay.domain_separator_name)
            return failed(
                ErrorKind.SIGNATURE_MISMATCH,
                f"signature recovers to {recovered}, expected {request.from_address}",
            )

        if ping_response is not None:
            if violation := fee_bounds_violation(relay_data, ping_response):
                return failed(ErrorKind.FEE_OUT_OF_BOUNDS, violation)
            if ping_response.max_acceptance_budget < limits.acceptance_budget:
                return failed(
                    ErrorKind.LIMITS_EXCEEDED,
                    f"paymaster acceptance budget {limits.acceptance_budget} exceeds relay maximum "
                    f"{ping_response.max_acceptance_budget}",
                )

        if (length := _byte_length(relay_data.paymaster_data)) > limits.max_paymaster_data_length:
            return failed(
                ErrorKind.LIMITS_EXCEEDED,
                f"paymasterData is {length} bytes, limit is {limits.max_paymaster_data_length}",
            )
        if (length := _byte_length(signed_request.approval_data)) > limits.max_approval_data_length:
            return failed(
                ErrorKind.LIMITS_EXCEEDED,
                f"approvalData is {length} bytes, limit is {limits.max_approval_data_length}",
            )

        max_acceptance_budget = ping_response.max_acceptance_budget if ping_response else limits.acceptance_budget
        calldata = self.fee_oracle.encode_relay_call(
            relay_request,
            max_acceptance_budget=max_acceptance_budget,
            signature=signed_request.signature,
            approval_data=signed_request.approval_data,
        )
        if limits.calldata_size_limit and (size := len(HexBytes(calldata))) > limits.calldata_size_limit:
            return failed(
                ErrorKind.LIMITS_EXCEEDED,
                f"relayCall calldata is {size} bytes, paymaster limit is {limits.calldata_size_limit}",
            )

        if token_error := await self._check_token(signed_request):
            return failed(token_error.kind, token_error.detail)

        gas_limit = await self.view_call_gas_limit(
            relay_data.relay_worker, relay_data.max_fee_per_gas, int(block["gasLimit"])
        )
        if gas_limit <= 0:
            return failed(
                ErrorKind.WORKER_NOT_READY,
                f"relay worker {relay_data.relay_worker} cannot fund the call at maxFeePerGas "
                f"{relay_data.max_fee_per_gas}",
            )

        tx = {
            "from": relay_data.relay_worker,
            "to": self.config.contracts.relay_hub_address,
            "data": calldata,
            "gas": gas_limit,
            "maxFeePerGas": relay_data.max_fee_per_gas,
            "maxPriorityFeePerGas": relay_data.max_priority_fee_per_gas,
        }
        try:
            result = await self.contract_util.call(tx)
        except ContractLogicError as e:
            return failed(ErrorKind.PAYMASTER_REJECTED, f"relayCall reverted: {e}")
        except Web3RPCError as e:
            return failed(ErrorKind.PAYMASTER_REJECTED, f"relayCall view call failed: {e}")

        try:
            accepted, charge, status, return_value = abi_decode(RELAY_CALL_OUTPUT_TYPES, bytes(result))
        except DecodingError as e:
            return failed(ErrorKind.PAYMASTER_REJECTED, f"undecodable relayCall result {result.to_0x_hex()}: {e}")

        if error := self._classify_outcome(accepted, status, return_value):
            return failed(error.kind, error.detail)

        logger.info(
            f"Dry run ok for {request.from_address} nonce {request.nonce}: "
            f"charge={charge} viewCallGasLimit={gas_limit}"
        )
        return DryRunResult(view_call_gas_limit=gas_limit)
