#!/usr/bin/env python3
"""End-to-end tests for the RelayClient facade with mocked chain and relays."""

import json
import time
from dataclasses import replace
from unittest.mock import AsyncMock

import httpx
import pytest
from eth_abi import encode
from hexbytes import HexBytes

from gsn_relay_client.config import ChainConfig
from gsn_relay_client.errors import ErrorKind, InvalidRequestError, SignerError
from gsn_relay_client.fee_oracle import FeeOracle
from gsn_relay_client.models import FeeTerms, RelayRequest
from gsn_relay_client.relay_client import RelayClient
from gsn_relay_client.signers import DeferredSigner, LiveSigner
from gsn_relay_client.utils.contract_utility import ContractUtility
from gsn_relay_client.utils.relay_http_client import RelayHttpClient
from gsn_relay_client.worker_selection import PinnedWorkerSelection, PreferredRelaysSelection

from conftest import CHAIN_ID, GWEI, RELAY_URL, RPC_URL, USER_KEY

WORKER_NONCE = 3
RELAY_A = "https://a.relay.example.com"
RELAY_B = "https://b.relay.example.com"


class FakeRelayServer:
    """Answers /getaddr and /relay like a GSN relay whose worker signs the relayCall."""

    def __init__(self, fee_oracle, ping_dict, sign_worker_tx, limits, failing_urls=()):
        self.fee_oracle = fee_oracle
        self.limits = limits
        self.ping_dict = ping_dict
        self.sign_worker_tx = sign_worker_tx
        self.failing_urls = set(failing_urls)
        self.pings: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        base_url = f"{request.url.scheme}://{request.url.host}"

        if request.url.path == "/getaddr":
            return httpx.Response(200, json=self.pings.get(base_url, self.ping_dict))

        if base_url in self.failing_urls:
            raise httpx.ConnectError("connection refused", request=request)

        body = json.loads(request.content)
        metadata = body["metadata"]
        calldata = self.fee_oracle.encode_relay_call(
            RelayRequest.from_dict(body["relayRequest"]),
            max_acceptance_budget=int(metadata["maxAcceptanceBudget"]),
            signature=metadata["signature"],
            approval_data=metadata["approvalData"],
        )
        signed_tx = self.sign_worker_tx(calldata, nonce=metadata["relayLastKnownNonce"])
        return httpx.Response(200, json={"signedTx": signed_tx, "nonceGapFilled": {}})

    def posts(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.method == "POST"]


@pytest.fixture
def chain():
    """ContractUtility whose RPC reads are mocked: funded worker, accepting paymaster."""
    contract_util = ContractUtility(rpc_url=RPC_URL)
    contract_util.get_chain_id = AsyncMock(return_value=CHAIN_ID)
    contract_util.get_fee_history = AsyncMock(return_value={
        "baseFeePerGas": [10 * GWEI],
        "reward": [[1 * GWEI]],
    })
    contract_util.get_sender_nonce = AsyncMock(return_value=0)
    contract_util.get_latest_block = AsyncMock(return_value={"timestamp": int(time.time()), "gasLimit": 30_000_000})
    contract_util.get_balance = AsyncMock(return_value=10**18)
    contract_util.call = AsyncMock(return_value=HexBytes(
        encode(["bool", "uint96", "uint8", "bytes"], [True, 1000, 0, b""])
    ))
    contract_util.get_transaction_count = AsyncMock(return_value=WORKER_NONCE)
    contract_util.send_raw_transaction = AsyncMock(return_value=b"\x00" * 32)
    contract_util.get_transaction_receipt = AsyncMock(return_value={"status": 1, "blockNumber": 99})
    return contract_util


def make_client(config, chain, server, worker_selection=None, signer=None):
    http_client = RelayHttpClient(timeout=5, transport=httpx.MockTransport(server))
    client = RelayClient(
        config,
        signer or LiveSigner(USER_KEY),
        chain,
        http_client,
        worker_selection=worker_selection,
    )
    client.fee_oracle.get_gas_and_data_limits = AsyncMock(return_value=server.limits)
    return client


@pytest.fixture
def server(chain, config, ping_dict, sign_worker_tx, limits):
    return FakeRelayServer(FeeOracle(chain, config), ping_dict, sign_worker_tx, limits)


class TestRelayTransaction:
    """The full live-signer pipeline."""

    @pytest.mark.asyncio
    async def test_happy_path_end_to_end(self, config, chain, server, worker_info, call_details, user_account, worker_account):
        """Build, sign, dry run, relay, broadcast and confirm with a pinned worker."""
        client = make_client(config, chain, server, worker_selection=PinnedWorkerSelection(worker_info))

        result = await client.relay_transaction(call_details)

        assert result.ok, result.error
        assert result.transaction.relay_url == RELAY_URL
        assert result.transaction.relay_worker == worker_account.address
        chain.send_raw_transaction.assert_awaited_once_with(result.transaction.raw_transaction)

        body = json.loads(server.posts()[0].content)
        relayed = RelayRequest.from_dict(body["relayRequest"])
        assert relayed.request.from_address == user_account.address
        assert relayed.relay_data.relay_worker == worker_account.address
        assert relayed.relay_data.transaction_calldata_gas_used > 0
        assert relayed.relay_data.max_priority_fee_per_gas == 12 * GWEI // 10

        confirmation = await client.wait_for_confirmation(result.transaction)
        assert confirmation.confirmed
        assert confirmation.receipt["blockNumber"] == 99

    @pytest.mark.asyncio
    async def test_invalid_fees_fail_before_network(self, config, chain, server, worker_info, call_details):
        """Inverted fee terms fail at build time; nothing is sent anywhere."""
        client = make_client(config, chain, server, worker_selection=PinnedWorkerSelection(worker_info))

        with pytest.raises(InvalidRequestError):
            await client.relay_transaction(call_details, FeeTerms(max_fee_per_gas=1 * GWEI, max_priority_fee_per_gas=2 * GWEI))

        assert server.requests == []
        chain.get_sender_nonce.assert_not_called()
        chain.get_fee_history.assert_not_called()
        chain.call.assert_not_called()

    @pytest.mark.asyncio
    async def test_transient_failure_retries_other_relay(self, config, chain, server, call_details):
        server.failing_urls = {RELAY_A}
        selection = PreferredRelaysSelection([RELAY_A, RELAY_B], None, chain_id=CHAIN_ID)
        client = make_client(config, chain, server, worker_selection=selection)
        selection.http_client = client.http_client
        selection.registry = client.registry

        result = await client.relay_transaction(call_details)

        assert result.ok, result.error
        assert result.transaction.relay_url == RELAY_B
        posted = [f"{request.url.scheme}://{request.url.host}" for request in server.posts()]
        assert posted == [RELAY_A, RELAY_B]
        assert client.registry.is_failed(RELAY_A)

    @pytest.mark.asyncio
    async def test_attempts_bounded(self, config, chain, server, call_details):
        server.failing_urls = {RELAY_A, RELAY_B}
        limited = replace(config, relay=replace(config.relay, max_relay_attempts=1))
        selection = PreferredRelaysSelection([RELAY_A, RELAY_B], None, chain_id=CHAIN_ID)
        client = make_client(limited, chain, server, worker_selection=selection)
        selection.http_client = client.http_client

        result = await client.relay_transaction(call_details)

        assert result.error.kind == ErrorKind.TRANSIENT
        assert len(server.posts()) == 1

    @pytest.mark.asyncio
    async def test_low_acceptance_budget_moves_to_next_relay(self, config, chain, server, ping_dict, call_details):
        server.pings[RELAY_A] = {**ping_dict, "maxAcceptanceBudget": "1000"}
        selection = PreferredRelaysSelection([RELAY_A, RELAY_B], None, chain_id=CHAIN_ID)
        client = make_client(config, chain, server, worker_selection=selection)
        selection.http_client = client.http_client

        result = await client.relay_transaction(call_details)

        assert result.ok, result.error
        assert result.transaction.relay_url == RELAY_B
        posted = [f"{request.url.scheme}://{request.url.host}" for request in server.posts()]
        assert posted == [RELAY_B]

    @pytest.mark.asyncio
    async def test_low_acceptance_budget_without_alternative(self, config, chain, server, worker_info, call_details):
        low_budget = replace(worker_info, ping_response=replace(worker_info.ping_response, max_acceptance_budget=1000))
        client = make_client(config, chain, server, worker_selection=PinnedWorkerSelection(low_budget))

        result = await client.relay_transaction(call_details)

        assert result.error.kind == ErrorKind.LIMITS_EXCEEDED
        assert result.error.relay_url == RELAY_URL
        assert server.posts() == []

    @pytest.mark.asyncio
    async def test_dry_run_rejection_is_returned(self, config, chain, server, worker_info, call_details):
        chain.call.return_value = HexBytes(encode(["bool", "uint96", "uint8", "bytes"], [False, 0, 2, b""]))
        client = make_client(config, chain, server, worker_selection=PinnedWorkerSelection(worker_info))

        result = await client.relay_transaction(call_details)

        assert result.error.kind == ErrorKind.PAYMASTER_REJECTED
        assert result.error.relay_url == RELAY_URL
        assert server.posts() == []

    @pytest.mark.asyncio
    async def test_no_worker_available(self, config, chain, server, call_details):
        selection = PreferredRelaysSelection([], None, chain_id=CHAIN_ID)
        client = make_client(config, chain, server, worker_selection=selection)

        result = await client.relay_transaction(call_details)

        assert result.error.kind == ErrorKind.WORKER_NOT_READY


class TestFacadeSteps:
    """The individual facade operations."""

    @pytest.mark.asyncio
    async def test_step_by_step_with_deferred_signer(
        self, config, chain, server, worker_info, limits, call_details, user_account
    ):
        """The signature is produced outside the client and injected."""
        signer = DeferredSigner()
        client = make_client(config, chain, server, signer=signer)

        fees = await client.calculate_gas_fees()
        request = await client.prepare_request(call_details, fees)
        request = client.fill_relay_fields(request, worker_info, limits)

        digest = request.digest(CHAIN_ID)
        signer.provide_signature(user_account.unsafe_sign_hash(bytes(digest)).signature)
        signed = await client.sign(request)

        dry_run = await client.verify_dry_run(signed, limits, worker_info.ping_response)
        assert dry_run.ok

        result = await client.attempt_relay(worker_info, signed, dry_run.view_call_gas_limit)
        assert result.ok, result.error

    @pytest.mark.asyncio
    async def test_sign_rejects_foreign_signature(self, config, chain, server, relay_request, other_account):
        signer = DeferredSigner()
        signer.provide_signature(other_account.unsafe_sign_hash(bytes(relay_request.digest(CHAIN_ID))).signature)
        client = make_client(config, chain, server, signer=signer)

        with pytest.raises(SignerError, match="recovers to"):
            await client.sign(relay_request)

    @pytest.mark.asyncio
    async def test_prepare_request_fetches_fees_and_nonce(self, config, chain, server, call_details):
        chain.get_sender_nonce.return_value = 8
        client = make_client(config, chain, server)

        request = await client.prepare_request(call_details)

        assert request.request.nonce == 8
        assert request.relay_data.max_fee_per_gas == 12 * GWEI + 12 * GWEI // 10
        chain.get_sender_nonce.assert_awaited_once_with(call_details.from_address, config.contracts.forwarder_address)

    @pytest.mark.asyncio
    async def test_fill_relay_fields(self, config, chain, server, call_details, fee_terms, worker_info, limits, worker_account):
        client = make_client(config, chain, server)
        request = await client.prepare_request(call_details, fee_terms)

        filled = client.fill_relay_fields(request, worker_info, limits)

        assert filled.relay_data.relay_worker == worker_account.address
        assert filled.relay_data.transaction_calldata_gas_used == client.estimate_calldata_cost(filled, limits)

    @pytest.mark.asyncio
    async def test_chain_id_fetched_once_when_not_configured(self, config, chain, server, relay_request):
        unconfigured = replace(config, chain=ChainConfig(rpc_url=RPC_URL))
        client = make_client(unconfigured, chain, server)

        assert await client.ensure_chain_id() == CHAIN_ID
        assert await client.ensure_chain_id() == CHAIN_ID
        assert client.dry_run.chain_id == CHAIN_ID
        assert client.engine.chain_id == CHAIN_ID
        chain.get_chain_id.assert_awaited_once()

    def test_from_config_requires_signing_material(self, config):
        with pytest.raises(SignerError, match="PRIVATE_KEY"):
            RelayClient.from_config(config)

    def test_from_config_builds_live_signer(self, config, user_account):
        client = RelayClient.from_config(replace(config, private_key=USER_KEY))

        assert isinstance(client.signer, LiveSigner)
        assert client.signer.address == user_account.address
        assert isinstance(client.worker_selection, PreferredRelaysSelection)
        assert client.http_client.timeout == config.timing.request_timeout
