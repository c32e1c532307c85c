"""
Transaction decoding utilities for the GSN relay client.

This module decodes the raw transactions returned by relay servers so the
client can check them before broadcasting. Supports legacy, EIP-2930 and
EIP-1559 envelopes.
"""

import logging
from dataclasses import dataclass
from typing import Union

import rlp
from rlp.exceptions import DecodingError
from eth_account import Account
from hexbytes import HexBytes
from web3 import Web3

logger = logging.getLogger(__name__)

LEGACY_TX_TYPE = 0
ACCESS_LIST_TX_TYPE = 1
DYNAMIC_FEE_TX_TYPE = 2

# Positions of (nonce, gas, to, value, data) in each envelope's RLP list
_FIELD_LAYOUT = {
    LEGACY_TX_TYPE: (0, 2, 3, 4, 5),
    ACCESS_LIST_TX_TYPE: (1, 3, 4, 5, 6),
    DYNAMIC_FEE_TX_TYPE: (1, 4, 5, 6, 7),
}


@dataclass(frozen=True, slots=True)
class DecodedTransaction:
    """The fields of a signed transaction the client needs to validate."""

    tx_type: int
    tx_hash: str
    sender: str
    nonce: int
    gas: int
    to: str | None
    value: int
    data: HexBytes


class TransactionDecoder:
    """Utilities for decoding signed transactions."""

    @staticmethod
    def to_bytes_safe(value: Union[HexBytes, bytes, str]) -> bytes:
        """
        Safely convert value to bytes, handling HexBytes, bytes, and hex strings.
        """
        if isinstance(value, HexBytes):
            return bytes(value)
        elif isinstance(value, bytes):
            return value
        else:
            return Web3.to_bytes(hexstr=value)

    @staticmethod
    def _as_int(value: bytes) -> int:
        return int.from_bytes(value, "big")

    @staticmethod
    def transaction_type(raw: bytes) -> int:
        """
        Determine the EIP-2718 envelope type.

        Raises:
            ValueError: If the transaction type is not supported
        """
        if not raw:
            raise ValueError("Empty transaction")
        first = raw[0]
        if first >= 0xC0:
            return LEGACY_TX_TYPE
        if first in (ACCESS_LIST_TX_TYPE, DYNAMIC_FEE_TX_TYPE):
            return first
        raise ValueError(f"Unsupported transaction type: {first}")

    @staticmethod
    def decode(raw_transaction: Union[HexBytes, bytes, str]) -> DecodedTransaction:
        """
        Decode a signed raw transaction and recover its sender.

        Args:
            raw_transaction: Serialized signed transaction

        Returns:
            DecodedTransaction with hash and recovered sender

        Raises:
            ValueError: If the payload is not a valid signed transaction
        """
        raw = TransactionDecoder.to_bytes_safe(raw_transaction)
        tx_type = TransactionDecoder.transaction_type(raw)
        payload = raw if tx_type == LEGACY_TX_TYPE else raw[1:]

        try:
            fields = rlp.decode(payload)
        except DecodingError as e:
            raise ValueError(f"Invalid RLP transaction payload: {e}") from e

        nonce_i, gas_i, to_i, value_i, data_i = _FIELD_LAYOUT[tx_type]
        if not isinstance(fields, list) or len(fields) <= data_i:
            raise ValueError("Transaction has too few fields")

        to_bytes = fields[to_i]
        try:
            sender = Account.recover_transaction(raw)
        except Exception as e:  # eth_account raises several types for bad signatures
            raise ValueError(f"Cannot recover transaction sender: {e}") from e

        decoded = DecodedTransaction(
            tx_type=tx_type,
            tx_hash=Web3.to_hex(Web3.keccak(raw)),
            sender=sender,
            nonce=TransactionDecoder._as_int(fields[nonce_i]),
            gas=TransactionDecoder._as_int(fields[gas_i]),
            to=Web3.to_checksum_address(to_bytes) if to_bytes else None,
            value=TransactionDecoder._as_int(fields[value_i]),
            data=HexBytes(fields[data_i]),
        )
        logger.debug(f"Decoded type {tx_type} transaction {decoded.tx_hash} from {sender}")
        return decoded
