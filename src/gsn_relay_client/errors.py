"""Error taxonomy for the GSN relay client.

Local problems (bad requests, missing signatures, bad config) are raised as
exceptions. Predicted or attempted relay failures are returned as ``RelayError``
values so the caller can decide whether to try another worker.
"""

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Machine-readable classification of a relay failure."""

    INVALID_REQUEST = "invalid_request"
    SIGNATURE_MISMATCH = "signature_mismatch"
    EXPIRED = "expired"
    FEE_OUT_OF_BOUNDS = "fee_out_of_bounds"
    LIMITS_EXCEEDED = "limits_exceeded"
    PAYMASTER_REJECTED = "paymaster_rejected"
    CALL_REVERTED = "call_reverted"
    WORKER_NOT_READY = "worker_not_ready"
    WORKER_MISMATCH = "worker_mismatch"
    TRANSIENT = "transient"
    RELAY_REJECTED = "relay_rejected"
    INVALID_RELAY_RESPONSE = "invalid_relay_response"


TRANSIENT_KINDS = frozenset({ErrorKind.TRANSIENT, ErrorKind.INVALID_RELAY_RESPONSE})


@dataclass(frozen=True, slots=True)
class RelayError:
    """Structured failure carried by dry-run and relaying results.

    Attributes:
        kind: Classification of the failure
        detail: Human-readable explanation
        relay_url: Relay server involved, if any
    """

    kind: ErrorKind
    detail: str
    relay_url: str | None = None

    @property
    def is_transient(self) -> bool:
        """Whether retrying against another worker may succeed."""
        return self.kind in TRANSIENT_KINDS

    def __str__(self) -> str:
        where = f" ({self.relay_url})" if self.relay_url else ""
        return f"{self.kind.value}{where}: {self.detail}"


class RelayClientError(Exception):
    """Base class for all exceptions raised by the relay client."""


class ConfigError(RelayClientError, ValueError):
    """Raised when configuration data is invalid or missing."""


class InvalidRequestError(RelayClientError, ValueError):
    """Raised when a relay request cannot be built from the given inputs."""


class SignerError(RelayClientError):
    """Raised when a signer cannot fulfil a request."""


class NoSignatureAvailableError(SignerError):
    """Raised when a deferred signer is asked to sign before a signature was provided."""


class RelayTransportError(RelayClientError):
    """Network-level failure talking to a relay server (timeout, bad response)."""

    def __init__(self, message: str, relay_url: str | None = None) -> None:
        super().__init__(message)
        self.relay_url = relay_url


class RelayRejectedError(RelayClientError):
    """The relay server explicitly refused the request."""

    def __init__(self, message: str, relay_url: str | None = None) -> None:
        super().__init__(message)
        self.relay_url = relay_url


class ConfirmationTimeoutError(RelayClientError, TimeoutError):
    """Local wait for a receipt elapsed. The transaction may still be mined."""

    def __init__(self, tx_hash: str, timeout: float) -> None:
        super().__init__(f"Transaction {tx_hash} not mined within {timeout}s")
        self.tx_hash = tx_hash
        self.timeout = timeout


class TransactionFailedError(RelayClientError):
    """The relayed transaction was mined but reverted on-chain."""

    def __init__(self, tx_hash: str, receipt: dict) -> None:
        super().__init__(f"Transaction {tx_hash} failed on-chain (status=0)")
        self.tx_hash = tx_hash
        self.receipt = receipt
