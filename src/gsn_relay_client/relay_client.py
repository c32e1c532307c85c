"""
GSN relay client.

This module contains the ``RelayClient`` facade that wires the fee oracle,
signer, dry run, worker selection, submission engine and confirmation waiter
into one flat API.
"""

import asyncio
import logging
from dataclasses import replace

import httpx

from .config import RelayClientConfig
from .confirmation import ConfirmationWaiter
from .dry_run import DryRunValidator
from .errors import ErrorKind, RelayError, SignerError
from .fee_oracle import FeeOracle
from .models import (
    CallDetails,
    Confirmation,
    DryRunResult,
    FeeTerms,
    GasAndDataLimits,
    PingResponse,
    RelayingAttemptResult,
    RelayRequest,
    RelayWorkerInfo,
    SignedRelayRequest,
    TransactionReference,
)
from .relay_engine import RelaySubmissionEngine
from .request_builder import build_request, validate_call, validate_fee_terms
from .signers import LiveSigner, Signer
from .utils.contract_utility import ContractUtility
from .utils.relay_http_client import RelayHttpClient
from .worker_selection import PreferredRelaysSelection, RelayFailureRegistry, WorkerSelection

logger = logging.getLogger(__name__)

RESELECTABLE_KINDS = frozenset({ErrorKind.FEE_OUT_OF_BOUNDS, ErrorKind.WORKER_NOT_READY})


class RelayClient:
    """
    Flat service API for relaying gasless meta-transactions.

    A single instance may serve concurrent requests; components share only
    read-only client handles.
    """

    def __init__(
        self,
        config: RelayClientConfig,
        signer: Signer,
        contract_util: ContractUtility,
        http_client: RelayHttpClient,
        worker_selection: WorkerSelection | None = None,
        registry: RelayFailureRegistry | None = None,
    ):
        """
        Initialize the RelayClient.

        Args:
            config: Client configuration
            signer: Produces the user's signature
            contract_util: Chain RPC access
            http_client: Relay server HTTP client
            worker_selection: Worker policy (defaults to the preferred relays)
            registry: Shared record of failed relays
        """
        self.config = config
        self.signer = signer
        self.contract_util = contract_util
        self.http_client = http_client
        self.registry = registry or RelayFailureRegistry(config.relay.relay_timeout_grace_seconds)

        self.fee_oracle = FeeOracle(contract_util, config)
        self.dry_run = DryRunValidator(contract_util, self.fee_oracle, config)
        self.engine = RelaySubmissionEngine(
            contract_util, http_client, self.fee_oracle, config, registry=self.registry
        )
        self.confirmation_waiter = ConfirmationWaiter(contract_util, poll_interval=config.timing.poll_interval)
        self.worker_selection = worker_selection or PreferredRelaysSelection(
            config.relay.preferred_relays,
            http_client,
            registry=self.registry,
            chain_id=config.chain.chain_id,
            relay_hub_address=config.contracts.relay_hub_address,
        )

        self._chain_id_lock = asyncio.Lock()

    @classmethod
    def from_config(
        cls,
        config: RelayClientConfig,
        signer: Signer | None = None,
        worker_selection: WorkerSelection | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "RelayClient":
        """
        Create a RelayClient with the default collaborators.

        Args:
            config: Client configuration
            signer: Signer to use (defaults to a LiveSigner over ``config.private_key``)
            worker_selection: Worker policy (defaults to the preferred relays)
            transport: Optional httpx transport for the relay HTTP client

        Raises:
            SignerError: If no signer is given and the config has no private key
        """
        if signer is None:
            if not config.private_key:
                raise SignerError("No signer given and PRIVATE_KEY is not configured")
            signer = LiveSigner(config.private_key)

        contract_util = ContractUtility(config.chain.rpc_url, request_timeout=config.timing.request_timeout)
        http_client = RelayHttpClient(timeout=config.timing.request_timeout, transport=transport)
        return cls(config, signer, contract_util, http_client, worker_selection=worker_selection)

    @classmethod
    def from_env(cls, signer: Signer | None = None) -> "RelayClient":
        """
        Create a RelayClient from environment variables.

        Raises:
            ConfigError: If required environment variables are missing or invalid
        """
        config = RelayClientConfig.from_env()
        config.log_config()
        return cls.from_config(config, signer)

    async def ensure_chain_id(self) -> int:
        """Return the chain id, fetching it from the RPC once if not configured."""
        async with self._chain_id_lock:
            if self.config.chain.chain_id is None:
                chain_id = await self.contract_util.get_chain_id()
                logger.info(f"Fetched chain id {chain_id} from RPC")
                self.config = self.config.with_chain_id(chain_id)
                self.dry_run.chain_id = chain_id
                self.engine.chain_id = chain_id
                if isinstance(self.worker_selection, PreferredRelaysSelection):
                    self.worker_selection.chain_id = chain_id
            return self.config.chain.chain_id

    async def calculate_gas_fees(self) -> FeeTerms:
        max_fee, priority_fee = await self.fee_oracle.current_fees()
        return FeeTerms(max_fee_per_gas=max_fee, max_priority_fee_per_gas=priority_fee)

    async def get_gas_and_data_limits(self, paymaster: str | None = None) -> GasAndDataLimits:
        return await self.fee_oracle.get_gas_and_data_limits(paymaster)

    async def prepare_request(
        self,
        call_details: CallDetails,
        fee_terms: FeeTerms | None = None,
        valid_until_time: int | None = None,
        paymaster_data: str = "0x",
    ) -> RelayRequest:
        """
        Build an unsigned relay request with the user's current forwarder nonce.

        Fees are suggested from fee history when not given. Inputs are
        validated before any network call.

        Raises:
            InvalidRequestError: If the call or fee terms are malformed
        """
        validate_call(call_details)
        if fee_terms is not None:
            validate_fee_terms(fee_terms)
        else:
            fee_terms = await self.calculate_gas_fees()

        nonce = await self.fee_oracle.get_sender_nonce(call_details.from_address)
        return build_request(
            call_details,
            fee_terms,
            self.config,
            nonce,
            valid_until_time=valid_until_time,
            paymaster_data=paymaster_data,
        )

    def estimate_calldata_cost(self, relay_request: RelayRequest, limits: GasAndDataLimits) -> int:
        return self.fee_oracle.estimate_calldata_cost(relay_request, limits)

    def fill_relay_fields(
        self,
        relay_request: RelayRequest,
        worker_info: RelayWorkerInfo,
        limits: GasAndDataLimits,
    ) -> RelayRequest:
        """Set the relay worker and the calldata gas estimate; must happen before signing."""
        filled = relay_request.with_relay_worker(worker_info.ping_response.relay_worker_address)
        return filled.with_calldata_gas(self.estimate_calldata_cost(filled, limits))

    async def sign(self, relay_request: RelayRequest, approval_data: str = "0x") -> SignedRelayRequest:
        """
        Sign a filled relay request.

        Raises:
            NoSignatureAvailableError: If a deferred signer has no signature yet
            SignerError: If the signature does not recover to ``request.from``
        """
        chain_id = await self.ensure_chain_id()
        domain_separator_name = self.config.relay.domain_separator_name

        digest = relay_request.digest(chain_id, domain_separator_name)
        signature = await self.signer.sign(digest)
        signed = SignedRelayRequest(relay_request=relay_request, signature=signature, approval_data=approval_data)

        if not signed.verify(chain_id, domain_separator_name):
            raise SignerError(
                f"Signature recovers to {signed.recover_signer(chain_id, domain_separator_name)}, "
                f"expected {relay_request.request.from_address}"
            )
        return signed

    async def verify_dry_run(
        self,
        signed_request: SignedRelayRequest,
        limits: GasAndDataLimits,
        ping_response: PingResponse | None = None,
    ) -> DryRunResult:
        await self.ensure_chain_id()
        return await self.dry_run.simulate(signed_request, limits, ping_response)

    async def attempt_relay(
        self,
        worker_info: RelayWorkerInfo,
        signed_request: SignedRelayRequest,
        view_call_gas_limit: int,
    ) -> RelayingAttemptResult:
        await self.ensure_chain_id()
        return await self.engine.attempt_relay(worker_info, signed_request, view_call_gas_limit)

    async def wait_for_confirmation(
        self,
        tx_reference: TransactionReference,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Confirmation:
        timeout = self.config.timing.confirmation_timeout if timeout is None else timeout
        return await self.confirmation_waiter.wait_for_confirmation(tx_reference, timeout, cancel_event)

    @staticmethod
    def _budget_too_low(error: RelayError, worker_info: RelayWorkerInfo, limits: GasAndDataLimits) -> bool:
        """True when the limit was exceeded only because this relay accepts a smaller budget."""
        return (
            error.kind == ErrorKind.LIMITS_EXCEEDED
            and worker_info.ping_response.max_acceptance_budget < limits.acceptance_budget
        )

    async def relay_transaction(
        self,
        call_details: CallDetails,
        fee_terms: FeeTerms | None = None,
        paymaster_data: str = "0x",
        approval_data: str = "0x",
    ) -> RelayingAttemptResult:
        """
        Run the full pipeline: select, fill, sign, dry run and relay.

        On a transient failure the relay is excluded and the request is
        rebuilt, re-signed and sent to another worker, up to
        ``max_relay_attempts`` times. The same signed request is never sent
        to the same worker twice.

        Returns:
            The first successful attempt, or the last failure
        """
        validate_call(call_details)
        if fee_terms is not None:
            validate_fee_terms(fee_terms)

        await self.ensure_chain_id()
        paymaster = self.config.contracts.paymaster_address
        limits = await self.get_gas_and_data_limits(paymaster)

        excluded: list[str] = []
        last_error: RelayError | None = None
        max_attempts = self.config.relay.max_relay_attempts

        for attempt in range(1, max_attempts + 1):
            worker_info = await self.worker_selection.select(paymaster, excluded)
            if worker_info is None:
                logger.warning(f"No relay worker available (attempt {attempt}/{max_attempts})")
                break

            relay_url = worker_info.relay_url
            logger.info(f"Relay attempt {attempt}/{max_attempts} via {relay_url}")

            relay_request = await self.prepare_request(call_details, fee_terms, paymaster_data=paymaster_data)
            relay_request = self.fill_relay_fields(relay_request, worker_info, limits)
            signed_request = await self.sign(relay_request, approval_data)

            dry_run = await self.verify_dry_run(signed_request, limits, worker_info.ping_response)
            if not dry_run.ok:
                last_error = replace(dry_run.error, relay_url=relay_url)
                if last_error.kind in RESELECTABLE_KINDS or self._budget_too_low(last_error, worker_info, limits):
                    excluded.append(relay_url)
                    continue
                return RelayingAttemptResult(error=last_error)

            result = await self.attempt_relay(worker_info, signed_request, dry_run.view_call_gas_limit)
            if result.ok:
                logger.info(f"Relayed transaction {result.transaction.tx_hash} via {relay_url}")
                return result

            last_error = result.error
            if not last_error.is_transient and last_error.kind not in RESELECTABLE_KINDS:
                return result
            logger.warning(f"Attempt {attempt} via {relay_url} failed: {last_error}")
            excluded.append(relay_url)

        if last_error is None:
            last_error = RelayError(ErrorKind.WORKER_NOT_READY, "no ready relay worker available")
        return RelayingAttemptResult(error=last_error)
