#!/usr/bin/env python3
"""Construction of canonical relay requests.

``build_request`` performs every local check that does not need the network,
so malformed requests never reach the fee oracle, the dry run or a relay.
"""

import logging
import time

from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from web3 import Web3

from .config import RelayClientConfig
from .errors import InvalidRequestError
from .models import (
    ZERO_ADDRESS,
    CallDetails,
    FeeTerms,
    ForwardRequest,
    RelayData,
    RelayRequest,
)

logger = logging.getLogger(__name__)


def _checksum(value: str, name: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value):
        raise InvalidRequestError(f"Invalid {name} address: {value!r}")
    return Web3.to_checksum_address(value)


def _hex_data(value: str | bytes, name: str) -> str:
    try:
        return Web3.to_hex(HexBytes(value))
    except (TypeError, ValueError) as e:
        raise InvalidRequestError(f"Invalid {name}: {value!r}") from e


def validate_call(call_details: CallDetails) -> None:
    """
    Raises:
        InvalidRequestError: On malformed addresses or calldata, a
            non-positive gas limit or a negative value
    """
    _checksum(call_details.to, "call.to")
    _checksum(call_details.from_address, "call.from")
    _hex_data(call_details.data, "call data")

    if call_details.gas <= 0:
        raise InvalidRequestError(f"Call gas limit must be positive, got {call_details.gas}")
    if call_details.value < 0:
        raise InvalidRequestError(f"Call value must be non-negative, got {call_details.value}")


def validate_fee_terms(fee_terms: FeeTerms) -> None:
    """
    Raises:
        InvalidRequestError: If the priority fee is negative or exceeds the max fee
    """
    if fee_terms.max_priority_fee_per_gas < 0:
        raise InvalidRequestError(
            f"maxPriorityFeePerGas must be non-negative, got {fee_terms.max_priority_fee_per_gas}"
        )
    if fee_terms.max_fee_per_gas < fee_terms.max_priority_fee_per_gas:
        raise InvalidRequestError(
            f"maxFeePerGas ({fee_terms.max_fee_per_gas}) is lower than "
            f"maxPriorityFeePerGas ({fee_terms.max_priority_fee_per_gas})"
        )


def build_request(
    call_details: CallDetails,
    fee_terms: FeeTerms,
    config: RelayClientConfig,
    nonce: int,
    valid_until_time: int | None = None,
    paymaster_data: str = "0x",
    now: int | None = None,
) -> RelayRequest:
    """
    Build an unsigned relay request.

    The relay worker is left as the zero address and the calldata gas as 0;
    both are filled once a worker is chosen, before signing.

    Args:
        call_details: Target, calldata, user and call gas
        fee_terms: Max fee and max priority fee per gas
        config: Client configuration (paymaster, forwarder, validity window)
        nonce: The user's forwarder nonce
        valid_until_time: Unix timestamp after which the request is void
        paymaster_data: Extra data for the paymaster (covered by the signature)
        now: Current unix time (defaults to the local clock)

    Returns:
        RelayRequest ready for worker assignment and signing

    Raises:
        InvalidRequestError: On malformed addresses, inverted fees, negative
            amounts or a validity bound that is not in the future
    """
    validate_call(call_details)
    validate_fee_terms(fee_terms)
    to = _checksum(call_details.to, "call.to")
    from_address = _checksum(call_details.from_address, "call.from")
    data = _hex_data(call_details.data, "call data")
    paymaster_data = _hex_data(paymaster_data, "paymaster data")

    if nonce < 0:
        raise InvalidRequestError(f"Nonce must be non-negative, got {nonce}")

    now = int(time.time()) if now is None else now
    if valid_until_time is None:
        valid_until_time = now + config.relay.request_valid_seconds
    if valid_until_time <= now:
        raise InvalidRequestError(
            f"validUntilTime {valid_until_time} is not in the future (now={now})"
        )

    relay_request = RelayRequest(
        request=ForwardRequest(
            from_address=from_address,
            to=to,
            value=call_details.value,
            gas=call_details.gas,
            nonce=nonce,
            data=data,
            valid_until_time=valid_until_time,
        ),
        relay_data=RelayData(
            max_fee_per_gas=fee_terms.max_fee_per_gas,
            max_priority_fee_per_gas=fee_terms.max_priority_fee_per_gas,
            transaction_calldata_gas_used=0,
            relay_worker=ZERO_ADDRESS,
            paymaster=config.contracts.paymaster_address,
            forwarder=config.contracts.forwarder_address,
            paymaster_data=paymaster_data,
            client_id=config.relay.client_id,
        ),
    )
    logger.debug(f"Built relay request from={from_address} to={to} nonce={nonce} validUntil={valid_until_time}")
    return relay_request


def relay_request_id(relay_request: RelayRequest, signature: bytes | str = b"") -> str:
    """
    Identifier relay servers use to correlate a request in their logs.

    keccak256(abi.encode(from, nonce, signature)) with the first 4 bytes zeroed.
    """
    encoded = abi_encode(
        ["address", "uint256", "bytes"],
        [relay_request.request.from_address, relay_request.request.nonce, bytes(HexBytes(signature))],
    )
    digest = Web3.keccak(encoded)
    return Web3.to_hex(b"\x00" * 4 + digest[4:])
