#!/usr/bin/env python3
"""Detachable signing for relay requests.

A ``Signer`` turns the EIP-712 digest of a relay request into a signature.
``LiveSigner`` holds a key and signs immediately. ``DeferredSigner`` holds no
key: the party that builds and submits the request hands the digest to the
user out of band and injects the returned signature with
``provide_signature``.
"""

import asyncio
import logging
import threading
from abc import ABC, abstractmethod

from eth_account import Account
from eth_account.signers.local import LocalAccount
from hexbytes import HexBytes

from .errors import NoSignatureAvailableError, SignerError
from .models import SIGNATURE_LENGTH

logger = logging.getLogger(__name__)


class Signer(ABC):
    """Capability to produce a signature over a relay request digest."""

    @property
    def address(self) -> str | None:
        """Address of the held credential, if known."""
        return None

    @abstractmethod
    async def sign(self, digest: bytes) -> HexBytes:
        """Return a 65-byte signature for ``digest``."""

    @abstractmethod
    def provide_signature(self, signature: bytes | str) -> None:
        """Inject a signature computed elsewhere."""


class LiveSigner(Signer):
    """Signs with a private key held in process."""

    def __init__(self, private_key: str) -> None:
        self._account: LocalAccount = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    async def sign(self, digest: bytes) -> HexBytes:
        """
        Sign a 32-byte EIP-712 digest.

        The digest already carries the EIP-191 ``0x1901`` prefix and domain
        separator, so it is signed as-is.
        """
        if len(digest) != 32:
            raise SignerError(f"Digest must be 32 bytes, got {len(digest)}")
        signed = self._account.unsafe_sign_hash(bytes(digest))
        return HexBytes(signed.signature)

    def provide_signature(self, signature: bytes | str) -> None:
        raise SignerError("LiveSigner computes its own signatures; nothing to inject")


class DeferredSigner(Signer):
    """
    Returns a signature injected by another party.

    Until ``provide_signature`` is called the signer is unset (``None``) and
    ``sign`` raises ``NoSignatureAvailableError``. Injection is guarded by a
    lock and signalled with an event, so a signature provided from another
    thread is visible to the submission path once ``provide_signature``
    returns.
    """

    _WAIT_SLICE = 0.5  # seconds

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._provided = threading.Event()
        self._signature: HexBytes | None = None

    @property
    def has_signature(self) -> bool:
        with self._lock:
            return self._signature is not None

    def provide_signature(self, signature: bytes | str) -> None:
        """
        Store a signature returned by the user.

        Raises:
            SignerError: If the value is not a 65-byte signature
        """
        try:
            value = HexBytes(signature)
        except (TypeError, ValueError) as e:
            raise SignerError(f"Signature is not valid hex: {signature!r}") from e
        if len(value) != SIGNATURE_LENGTH:
            raise SignerError(f"Signature must be {SIGNATURE_LENGTH} bytes, got {len(value)}")

        with self._lock:
            self._signature = value
            self._provided.set()
        logger.info("Signature provided to deferred signer")

    async def sign(self, digest: bytes) -> HexBytes:
        """
        Return the most recently provided signature.

        The digest is not used; callers verify the signature against the
        request before submitting it.

        Raises:
            NoSignatureAvailableError: If no signature was provided yet
        """
        with self._lock:
            signature = self._signature
        if signature is None:
            raise NoSignatureAvailableError("No signature has been provided to the deferred signer")
        return signature

    async def wait_for_signature(self, timeout: float | None = None) -> HexBytes:
        """
        Wait until a signature is provided.

        Holds no network resources while waiting.

        Raises:
            NoSignatureAvailableError: If ``timeout`` elapses first
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        # Wait in short slices so cancellation never strands a worker thread
        while not self._provided.is_set():
            remaining = self._WAIT_SLICE if deadline is None else deadline - loop.time()
            if remaining <= 0:
                raise NoSignatureAvailableError(f"No signature provided within {timeout}s")
            await asyncio.to_thread(self._provided.wait, min(remaining, self._WAIT_SLICE))
        return await self.sign(b"")

    def clear(self) -> None:
        """Return to the unset state, e.g. before signing a new request."""
        with self._lock:
            self._signature = None
            self._provided.clear()
