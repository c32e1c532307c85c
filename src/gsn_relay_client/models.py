#!/usr/bin/env python3
"""Data models for the GSN relay client.

This module provides immutable data classes for relay requests, relay server
ping responses, paymaster limits and the results of dry runs and relaying
attempts. A ``RelayRequest`` knows how to produce its EIP-712 typed data and
digest; the signature lives only on ``SignedRelayRequest``.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from eth_account import Account
from eth_account.messages import SignableMessage, encode_typed_data
from hexbytes import HexBytes
from web3 import Web3

from .errors import RelayError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
GSN_DOMAIN_SEPARATOR_VERSION = "3"
DEFAULT_DOMAIN_SEPARATOR_NAME = "GSN Relayed Transaction"
SIGNATURE_LENGTH = 65

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

RELAY_DATA_TYPE = [
    {"name": "maxFeePerGas", "type": "uint256"},
    {"name": "maxPriorityFeePerGas", "type": "uint256"},
    {"name": "transactionCalldataGasUsed", "type": "uint256"},
    {"name": "relayWorker", "type": "address"},
    {"name": "paymaster", "type": "address"},
    {"name": "forwarder", "type": "address"},
    {"name": "paymasterData", "type": "bytes"},
    {"name": "clientId", "type": "uint256"},
]

FORWARD_REQUEST_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "gas", "type": "uint256"},
    {"name": "nonce", "type": "uint256"},
    {"name": "data", "type": "bytes"},
    {"name": "validUntilTime", "type": "uint256"},
]

RELAY_REQUEST_TYPE = [*FORWARD_REQUEST_TYPE, {"name": "relayData", "type": "RelayData"}]


def _to_int(value: Any) -> int:
    """Parse ints, decimal strings and 0x-prefixed hex strings."""
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.startswith("0x"):
        return int(value, 16)
    return int(value)


def _to_hex(value: str | bytes) -> str:
    return Web3.to_hex(HexBytes(value))


def _to_bool(value: Any) -> bool:
    """Parse JSON booleans and the strings "true" / "false"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ("true", "false"):
        return value.lower() == "true"
    raise ValueError(f"expected a boolean, got {value!r}")


@dataclass(frozen=True, slots=True)
class CallDetails:
    """The call the user wants executed.

    Attributes:
        to: Target contract address
        data: ABI-encoded calldata (0x-prefixed hex)
        from_address: The user that authorizes the call
        value: Native currency amount in wei
        gas: Gas limit for the inner call
    """

    to: str
    data: str
    from_address: str
    gas: int
    value: int = 0


@dataclass(frozen=True, slots=True)
class FeeTerms:
    """EIP-1559 fee parameters for a relayed call."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int


@dataclass(frozen=True, slots=True)
class ForwardRequest:
    """The forwarder part of a relay request (call + validity)."""

    from_address: str
    to: str
    value: int
    gas: int
    nonce: int
    data: str
    valid_until_time: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the GSN JSON wire format (numbers as decimal strings)."""
        return {
            "from": self.from_address,
            "to": self.to,
            "value": str(self.value),
            "gas": str(self.gas),
            "nonce": str(self.nonce),
            "data": self.data,
            "validUntilTime": str(self.valid_until_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ForwardRequest":
        return cls(
            from_address=Web3.to_checksum_address(data["from"]),
            to=Web3.to_checksum_address(data["to"]),
            value=_to_int(data["value"]),
            gas=_to_int(data["gas"]),
            nonce=_to_int(data["nonce"]),
            data=_to_hex(data["data"]),
            valid_until_time=_to_int(data["validUntilTime"]),
        )

    def as_tuple(self) -> tuple:
        """ABI tuple in ``GsnTypes.ForwardRequest`` field order."""
        return (
            self.from_address,
            self.to,
            self.value,
            self.gas,
            self.nonce,
            HexBytes(self.data),
            self.valid_until_time,
        )


@dataclass(frozen=True, slots=True)
class RelayData:
    """Relay-specific part of a relay request. Covered by the signature."""

    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    transaction_calldata_gas_used: int
    relay_worker: str
    paymaster: str
    forwarder: str
    paymaster_data: str = "0x"
    client_id: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "maxFeePerGas": str(self.max_fee_per_gas),
            "maxPriorityFeePerGas": str(self.max_priority_fee_per_gas),
            "transactionCalldataGasUsed": str(self.transaction_calldata_gas_used),
            "relayWorker": self.relay_worker,
            "paymaster": self.paymaster,
            "forwarder": self.forwarder,
            "paymasterData": self.paymaster_data,
            "clientId": str(self.client_id),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayData":
        return cls(
            max_fee_per_gas=_to_int(data["maxFeePerGas"]),
            max_priority_fee_per_gas=_to_int(data["maxPriorityFeePerGas"]),
            transaction_calldata_gas_used=_to_int(data["transactionCalldataGasUsed"]),
            relay_worker=Web3.to_checksum_address(data["relayWorker"]),
            paymaster=Web3.to_checksum_address(data["paymaster"]),
            forwarder=Web3.to_checksum_address(data["forwarder"]),
            paymaster_data=_to_hex(data.get("paymasterData", "0x")),
            client_id=_to_int(data.get("clientId", 1)),
        )

    def as_tuple(self) -> tuple:
        return (
            self.max_fee_per_gas,
            self.max_priority_fee_per_gas,
            self.transaction_calldata_gas_used,
            self.relay_worker,
            self.paymaster,
            self.forwarder,
            HexBytes(self.paymaster_data),
            self.client_id,
        )


@dataclass(frozen=True, slots=True)
class RelayRequest:
    """A complete, unsigned relay request.

    The EIP-712 payload covers every field of ``request`` and ``relay_data``
    and is domain separated by chain id, protocol version and forwarder, so a
    signature cannot be replayed on another chain or protocol version.
    """

    request: ForwardRequest
    relay_data: RelayData

    def with_relay_worker(self, relay_worker: str) -> "RelayRequest":
        """Return a copy targeting another relay worker."""
        return replace(
            self,
            relay_data=replace(self.relay_data, relay_worker=Web3.to_checksum_address(relay_worker)),
        )

    def with_calldata_gas(self, calldata_gas: int) -> "RelayRequest":
        """Return a copy with ``transactionCalldataGasUsed`` set."""
        return replace(
            self,
            relay_data=replace(self.relay_data, transaction_calldata_gas_used=calldata_gas),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"request": self.request.to_dict(), "relayData": self.relay_data.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayRequest":
        """Parse the GSN JSON form produced by ``to_dict``.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a number, address or hex field is malformed
        """
        return cls(
            request=ForwardRequest.from_dict(data["request"]),
            relay_data=RelayData.from_dict(data["relayData"]),
        )

    def as_tuple(self) -> tuple:
        return (self.request.as_tuple(), self.relay_data.as_tuple())

    def typed_data(self, chain_id: int, domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME) -> dict[str, Any]:
        """Build the full EIP-712 message for this request."""
        message = {
            "from": self.request.from_address,
            "to": self.request.to,
            "value": self.request.value,
            "gas": self.request.gas,
            "nonce": self.request.nonce,
            "data": HexBytes(self.request.data),
            "validUntilTime": self.request.valid_until_time,
            "relayData": {
                "maxFeePerGas": self.relay_data.max_fee_per_gas,
                "maxPriorityFeePerGas": self.relay_data.max_priority_fee_per_gas,
                "transactionCalldataGasUsed": self.relay_data.transaction_calldata_gas_used,
                "relayWorker": self.relay_data.relay_worker,
                "paymaster": self.relay_data.paymaster,
                "forwarder": self.relay_data.forwarder,
                "paymasterData": HexBytes(self.relay_data.paymaster_data),
                "clientId": self.relay_data.client_id,
            },
        }
        return {
            "types": {
                "EIP712Domain": EIP712_DOMAIN_TYPE,
                "RelayRequest": RELAY_REQUEST_TYPE,
                "RelayData": RELAY_DATA_TYPE,
            },
            "primaryType": "RelayRequest",
            "domain": {
                "name": domain_separator_name,
                "version": GSN_DOMAIN_SEPARATOR_VERSION,
                "chainId": chain_id,
                "verifyingContract": self.relay_data.forwarder,
            },
            "message": message,
        }

    def signable_message(self, chain_id: int, domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME) -> SignableMessage:
        return encode_typed_data(full_message=self.typed_data(chain_id, domain_separator_name))

    def digest(self, chain_id: int, domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME) -> HexBytes:
        """The 32-byte hash a signer must sign."""
        message = self.signable_message(chain_id, domain_separator_name)
        return HexBytes(Web3.keccak(b"\x19" + message.version + message.header + message.body))


@dataclass(frozen=True, slots=True)
class SignedRelayRequest:
    """A relay request together with the user's detached signature."""

    relay_request: RelayRequest
    signature: HexBytes
    approval_data: str = "0x"

    def recover_signer(self, chain_id: int, domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME) -> str | None:
        """Recover the address that produced ``signature``, or None if malformed."""
        try:
            return Account.recover_message(
                self.relay_request.signable_message(chain_id, domain_separator_name),
                signature=bytes(self.signature),
            )
        except Exception:  # eth_keys raises several types for bad signatures
            return None

    def verify(self, chain_id: int, domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME) -> bool:
        """Check the signature was produced by ``request.from`` over this exact request."""
        recovered = self.recover_signer(chain_id, domain_separator_name)
        return recovered is not None and recovered.lower() == self.relay_request.request.from_address.lower()


@dataclass(frozen=True, slots=True)
class PingResponse:
    """A relay server's self-reported capabilities (``/getaddr``)."""

    relay_worker_address: str
    relay_manager_address: str
    relay_hub_address: str
    owner_address: str
    min_max_priority_fee_per_gas: int
    max_max_fee_per_gas: int
    min_max_fee_per_gas: int
    max_acceptance_budget: int
    chain_id: int
    network_id: int
    ready: bool
    version: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PingResponse":
        """Parse the camelCase JSON returned by a relay server.

        Raises:
            KeyError: If a required field is missing
            ValueError: If a numeric or boolean field is malformed
        """
        return cls(
            relay_worker_address=Web3.to_checksum_address(data["relayWorkerAddress"]),
            relay_manager_address=Web3.to_checksum_address(data["relayManagerAddress"]),
            relay_hub_address=Web3.to_checksum_address(data["relayHubAddress"]),
            owner_address=Web3.to_checksum_address(data.get("ownerAddress") or ZERO_ADDRESS),
            min_max_priority_fee_per_gas=_to_int(data["minMaxPriorityFeePerGas"]),
            max_max_fee_per_gas=_to_int(data["maxMaxFeePerGas"]),
            min_max_fee_per_gas=_to_int(data.get("minMaxFeePerGas", 0)),
            max_acceptance_budget=_to_int(data["maxAcceptanceBudget"]),
            chain_id=_to_int(data["chainId"]),
            network_id=_to_int(data.get("networkId", data["chainId"])),
            ready=_to_bool(data["ready"]),
            version=str(data.get("version", "")),
        )


@dataclass(frozen=True, slots=True)
class RelayInfo:
    """Registry metadata about a relay manager and its advertised URL."""

    relay_manager: str
    relay_url: str
    first_seen_block_number: int = 0
    first_seen_timestamp: int = 0
    last_seen_block_number: int = 0
    last_seen_timestamp: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RelayInfo":
        return cls(
            relay_manager=Web3.to_checksum_address(data["relayManager"]),
            relay_url=data["relayUrl"],
            first_seen_block_number=_to_int(data.get("firstSeenBlockNumber", 0)),
            first_seen_timestamp=_to_int(data.get("firstSeenTimestamp", 0)),
            last_seen_block_number=_to_int(data.get("lastSeenBlockNumber", 0)),
            last_seen_timestamp=_to_int(data.get("lastSeenTimestamp", 0)),
        )


@dataclass(frozen=True, slots=True)
class RelayWorkerInfo:
    """A candidate relay: its ping snapshot plus registry info."""

    ping_response: PingResponse
    relay_info: RelayInfo

    @property
    def relay_url(self) -> str:
        return self.relay_info.relay_url


@dataclass(frozen=True, slots=True)
class GasAndDataLimits:
    """Paymaster-reported ceilings plus the client's data length bounds."""

    acceptance_budget: int
    pre_relayed_call_gas_limit: int
    post_relayed_call_gas_limit: int
    calldata_size_limit: int
    max_paymaster_data_length: int = 0
    max_approval_data_length: int = 0


@dataclass(frozen=True, slots=True)
class DryRunResult:
    """Outcome of a dry run: a view-call gas limit or an error, never both."""

    view_call_gas_limit: int | None = None
    error: RelayError | None = None

    def __post_init__(self) -> None:
        if (self.view_call_gas_limit is None) == (self.error is None):
            raise ValueError("DryRunResult requires exactly one of view_call_gas_limit or error")

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class TransactionReference:
    """A relayed transaction that has been broadcast."""

    tx_hash: str
    raw_transaction: str
    relay_url: str
    relay_worker: str


@dataclass(frozen=True, slots=True)
class RelayingAttemptResult:
    """Outcome of a single relaying attempt: a transaction or an error, never both."""

    transaction: TransactionReference | None = None
    error: RelayError | None = None

    def __post_init__(self) -> None:
        if (self.transaction is None) == (self.error is None):
            raise ValueError("RelayingAttemptResult requires exactly one of transaction or error")

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class Confirmation:
    """Result of waiting for a receipt.

    ``confirmed`` is False only when the wait was cancelled locally; the
    transaction may still be mined afterwards.
    """

    tx_hash: str
    confirmed: bool
    receipt: dict[str, Any] | None = field(default=None, compare=False)
