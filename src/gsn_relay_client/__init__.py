"""
GSN relay client package.

Builds, signs, validates and relays gasless meta-transactions through
OpenGSN v3 relay servers.
"""

from .config import RelayClientConfig
from .errors import ErrorKind, RelayClientError, RelayError
from .models import CallDetails, FeeTerms, RelayRequest, SignedRelayRequest
from .relay_client import RelayClient
from .signers import DeferredSigner, LiveSigner, Signer
from .worker_selection import PinnedWorkerSelection, PreferredRelaysSelection

__all__ = [
    "RelayClientConfig",
    "RelayClient",
    "RelayClientError",
    "RelayError",
    "ErrorKind",
    "CallDetails",
    "FeeTerms",
    "RelayRequest",
    "SignedRelayRequest",
    "Signer",
    "LiveSigner",
    "DeferredSigner",
    "PinnedWorkerSelection",
    "PreferredRelaysSelection",
]
__version__ = "0.1.0"
