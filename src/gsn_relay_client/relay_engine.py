#!/usr/bin/env python3
"""Relay submission for signed GSN requests.

This module sends a dry-run-validated request to a single relay worker,
checks the transaction the worker signed and re-broadcasts it. Every outcome
is returned as a ``RelayingAttemptResult``.
"""

import logging
from typing import Any

from web3 import Web3

from .config import RelayClientConfig
from .errors import ErrorKind, RelayError, RelayRejectedError, RelayTransportError
from .fee_oracle import FeeOracle
from .models import RelayingAttemptResult, RelayWorkerInfo, SignedRelayRequest, TransactionReference
from .request_builder import relay_request_id
from .utils.contract_utility import ContractUtility
from .utils.relay_http_client import RelayHttpClient
from .utils.transaction_decoder import DecodedTransaction, TransactionDecoder
from .worker_selection import RelayFailureRegistry, fee_bounds_violation

logger = logging.getLogger(__name__)

BENIGN_BROADCAST_ERRORS = ("already known", "nonce too low", "known transaction", "replacement transaction underpriced")


class RelaySubmissionEngine:
    """Submits signed relay requests to relay servers."""

    def __init__(
        self,
        contract_util: ContractUtility,
        http_client: RelayHttpClient,
        fee_oracle: FeeOracle,
        config: RelayClientConfig,
        registry: RelayFailureRegistry | None = None,
        chain_id: int | None = None,
    ) -> None:
        """
        Initialize the RelaySubmissionEngine.

        Args:
            contract_util: Chain RPC access (worker nonce, re-broadcast)
            http_client: Relay server HTTP client
            fee_oracle: Encodes the ``relayCall`` the worker must have signed
            config: Client configuration
            registry: Records relays that failed at the transport level
            chain_id: Chain the signature is bound to (defaults to the configured one)
        """
        self.contract_util = contract_util
        self.http_client = http_client
        self.fee_oracle = fee_oracle
        self.config = config
        self.registry = registry or RelayFailureRegistry(config.relay.relay_timeout_grace_seconds)
        self.chain_id = chain_id if chain_id is not None else config.chain.chain_id

    def _precheck(self, worker_info: RelayWorkerInfo, signed_request: SignedRelayRequest) -> RelayError | None:
        """Local checks that must pass before anything is sent."""
        ping = worker_info.ping_response
        relay_data = signed_request.relay_request.relay_data
        relay_url = worker_info.relay_url

        if not ping.ready:
            return RelayError(ErrorKind.WORKER_NOT_READY, "relay worker is not ready", relay_url)

        if relay_data.relay_worker.lower() != ping.relay_worker_address.lower():
            return RelayError(
                ErrorKind.WORKER_MISMATCH,
                f"request names worker {relay_data.relay_worker}, relay advertises {ping.relay_worker_address}",
                relay_url,
            )

        if violation := fee_bounds_violation(relay_data, ping):
            return RelayError(ErrorKind.FEE_OUT_OF_BOUNDS, violation, relay_url)

        if ping.relay_hub_address.lower() != self.config.contracts.relay_hub_address.lower():
            return RelayError(
                ErrorKind.WORKER_MISMATCH,
                f"relay uses hub {ping.relay_hub_address}, expected {self.config.contracts.relay_hub_address}",
                relay_url,
            )

        if not signed_request.verify(self.chain_id, self.config.relay.domain_separator_name):
            return RelayError(
                ErrorKind.SIGNATURE_MISMATCH,
                f"signature does not recover to {signed_request.relay_request.request.from_address}",
                relay_url,
            )
        return None

    def build_http_request(
        self,
        worker_info: RelayWorkerInfo,
        signed_request: SignedRelayRequest,
        relay_last_known_nonce: int,
    ) -> dict[str, Any]:
        """Assemble the ``/relay`` body: the request plus its metadata."""
        ping = worker_info.ping_response
        return {
            "relayRequest": signed_request.relay_request.to_dict(),
            "metadata": {
                "maxAcceptanceBudget": str(ping.max_acceptance_budget),
                "relayHubAddress": self.config.contracts.relay_hub_address,
                "signature": signed_request.signature.to_0x_hex(),
                "approvalData": signed_request.approval_data,
                "relayMaxNonce": relay_last_known_nonce + self.config.relay.max_relay_nonce_gap,
                "relayLastKnownNonce": relay_last_known_nonce,
                "domainSeparatorName": self.config.relay.domain_separator_name,
                "relayRequestId": relay_request_id(signed_request.relay_request, signed_request.signature),
            },
        }

    def validate_relay_transaction(
        self,
        raw_transaction: str,
        worker_info: RelayWorkerInfo,
        signed_request: SignedRelayRequest,
        relay_max_nonce: int,
    ) -> DecodedTransaction:
        """
        Check the transaction returned by the relay before broadcasting it.

        Raises:
            ValueError: If the transaction is malformed or is not the expected
                ``relayCall`` from the advertised worker
        """
        decoded = TransactionDecoder.decode(raw_transaction)

        hub = self.config.contracts.relay_hub_address
        if decoded.to is None or decoded.to.lower() != hub.lower():
            raise ValueError(f"transaction targets {decoded.to}, expected RelayHub {hub}")

        worker = worker_info.ping_response.relay_worker_address
        if decoded.sender.lower() != worker.lower():
            raise ValueError(f"transaction signed by {decoded.sender}, expected worker {worker}")

        if decoded.nonce > relay_max_nonce:
            raise ValueError(f"transaction nonce {decoded.nonce} exceeds relayMaxNonce {relay_max_nonce}")

        expected = self.fee_oracle.encode_relay_call(
            signed_request.relay_request,
            max_acceptance_budget=worker_info.ping_response.max_acceptance_budget,
            signature=signed_request.signature,
            approval_data=signed_request.approval_data,
        )
        if decoded.data != Web3.to_bytes(hexstr=expected):
            raise ValueError("transaction calldata does not match the signed relay request")

        return decoded

    async def _broadcast(self, raw_transaction: str, tx_hash: str) -> None:
        """Re-broadcast the worker's transaction. Failures never fail the attempt."""
        try:
            await self.contract_util.send_raw_transaction(raw_transaction)
            logger.info(f"Broadcast relayed transaction {tx_hash}")
        except Exception as e:  # the relay has already broadcast it
            if any(marker in str(e).lower() for marker in BENIGN_BROADCAST_ERRORS):
                logger.debug(f"Transaction {tx_hash} already known to the node: {e}")
            else:
                logger.warning(f"Re-broadcast of {tx_hash} failed: {e}")

    async def attempt_relay(
        self,
        worker_info: RelayWorkerInfo,
        signed_request: SignedRelayRequest,
        view_call_gas_limit: int,
    ) -> RelayingAttemptResult:
        """
        Relay a signed request through one worker.

        Args:
            worker_info: The chosen worker and its ping snapshot
            signed_request: Dry-run-validated request with signature
            view_call_gas_limit: Gas bound returned by the dry run

        Returns:
            RelayingAttemptResult with the broadcast transaction, or the failure
        """
        relay_url = worker_info.relay_url

        if error := self._precheck(worker_info, signed_request):
            logger.warning(f"Not sending request to {relay_url}: {error}")
            return RelayingAttemptResult(error=error)

        worker = worker_info.ping_response.relay_worker_address
        relay_last_known_nonce = await self.contract_util.get_transaction_count(worker)
        http_request = self.build_http_request(worker_info, signed_request, relay_last_known_nonce)
        relay_max_nonce = http_request["metadata"]["relayMaxNonce"]

        logger.info(
            f"Relaying request {http_request['metadata']['relayRequestId']} via {relay_url} "
            f"(worker {worker}, viewCallGasLimit {view_call_gas_limit})"
        )

        try:
            signed_tx = await self.http_client.relay_transaction(relay_url, http_request)
        except RelayTransportError as e:
            self.registry.record_failure(relay_url)
            return RelayingAttemptResult(error=RelayError(ErrorKind.TRANSIENT, str(e), relay_url))
        except RelayRejectedError as e:
            return RelayingAttemptResult(error=RelayError(ErrorKind.RELAY_REJECTED, str(e), relay_url))

        try:
            decoded = self.validate_relay_transaction(signed_tx, worker_info, signed_request, relay_max_nonce)
        except ValueError as e:
            logger.error(f"Relay {relay_url} returned an invalid transaction: {e}")
            self.registry.record_failure(relay_url)
            return RelayingAttemptResult(error=RelayError(ErrorKind.INVALID_RELAY_RESPONSE, str(e), relay_url))

        await self._broadcast(signed_tx, decoded.tx_hash)

        return RelayingAttemptResult(
            transaction=TransactionReference(
                tx_hash=decoded.tx_hash,
                raw_transaction=signed_tx,
                relay_url=relay_url,
                relay_worker=decoded.sender,
            )
        )
