#!/usr/bin/env python3
"""Shared fixtures for the GSN relay client tests."""

import time

import pytest
from eth_account import Account
from hexbytes import HexBytes

from gsn_relay_client.config import ChainConfig, ContractsConfig, RelayClientConfig
from gsn_relay_client.fee_oracle import FeeOracle
from gsn_relay_client.models import (
    CallDetails,
    FeeTerms,
    GasAndDataLimits,
    PingResponse,
    RelayInfo,
    RelayWorkerInfo,
    SignedRelayRequest,
)
from gsn_relay_client.request_builder import build_request
from gsn_relay_client.utils.contract_utility import ContractUtility

# Well-known development keys (never funded on a real network)
USER_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
WORKER_KEY = "0x59c6995e998f97a5a0044966f0945389dc9e86dae88c7a8412f4603b6b78690d"
OTHER_KEY = "0x5de4111afa1a4b94908f83103eb1f1706367c2e68ca870fc3fb9a804cdab365a"

RPC_URL = "http://localhost:8545"
CHAIN_ID = 1337
RELAY_HUB = "0x1111111111111111111111111111111111111111"
FORWARDER = "0x2222222222222222222222222222222222222222"
PAYMASTER = "0x3333333333333333333333333333333333333333"
TARGET = "0x4444444444444444444444444444444444444444"
FEE_TOKEN = "0x5555555555555555555555555555555555555555"
MANAGER = "0x6666666666666666666666666666666666666666"
RELAY_URL = "https://relay.example.com"

GWEI = 10**9


@pytest.fixture
def user_account():
    return Account.from_key(USER_KEY)


@pytest.fixture
def worker_account():
    return Account.from_key(WORKER_KEY)


@pytest.fixture
def other_account():
    return Account.from_key(OTHER_KEY)


@pytest.fixture
def config():
    """Client configuration bound to the test chain."""
    return RelayClientConfig(
        chain=ChainConfig(rpc_url=RPC_URL, chain_id=CHAIN_ID),
        contracts=ContractsConfig(
            relay_hub_address=RELAY_HUB,
            forwarder_address=FORWARDER,
            paymaster_address=PAYMASTER,
        ),
    )


@pytest.fixture
def contract_util():
    """Real ContractUtility; tests replace the RPC methods with AsyncMocks."""
    return ContractUtility(rpc_url=RPC_URL)


@pytest.fixture
def fee_oracle(contract_util, config):
    return FeeOracle(contract_util, config)


@pytest.fixture
def ping_dict(worker_account):
    """A /getaddr body as a relay server returns it."""
    return {
        "relayWorkerAddress": worker_account.address,
        "relayManagerAddress": MANAGER,
        "relayHubAddress": RELAY_HUB,
        "ownerAddress": MANAGER,
        "minMaxPriorityFeePerGas": str(1 * GWEI),
        "maxMaxFeePerGas": str(500 * GWEI),
        "minMaxFeePerGas": "0",
        "maxAcceptanceBudget": "285252",
        "chainId": str(CHAIN_ID),
        "networkId": str(CHAIN_ID),
        "ready": True,
        "version": "3.0.0",
    }


@pytest.fixture
def ping_response(ping_dict):
    return PingResponse.from_dict(ping_dict)


@pytest.fixture
def worker_info(ping_response):
    return RelayWorkerInfo(
        ping_response=ping_response,
        relay_info=RelayInfo(relay_manager=MANAGER, relay_url=RELAY_URL),
    )


@pytest.fixture
def limits():
    return GasAndDataLimits(
        acceptance_budget=285252,
        pre_relayed_call_gas_limit=100000,
        post_relayed_call_gas_limit=110000,
        calldata_size_limit=10500,
    )


@pytest.fixture
def call_details(user_account):
    return CallDetails(
        to=TARGET,
        data="0xa9059cbb" + "00" * 12 + "44" * 20 + "00" * 31 + "01",
        from_address=user_account.address,
        gas=100000,
    )


@pytest.fixture
def fee_terms():
    return FeeTerms(max_fee_per_gas=30 * GWEI, max_priority_fee_per_gas=2 * GWEI)


@pytest.fixture
def relay_request(call_details, fee_terms, config, worker_account):
    """Unsigned request with the worker filled in."""
    request = build_request(call_details, fee_terms, config, nonce=0, now=int(time.time()))
    return request.with_relay_worker(worker_account.address).with_calldata_gas(21000)


@pytest.fixture
def sign_request(user_account):
    """Factory signing a relay request with the user's key."""

    def _sign(relay_request, account=user_account, approval_data="0x"):
        digest = relay_request.digest(CHAIN_ID)
        signature = account.unsafe_sign_hash(bytes(digest)).signature
        return SignedRelayRequest(
            relay_request=relay_request,
            signature=HexBytes(signature),
            approval_data=approval_data,
        )

    return _sign


@pytest.fixture
def signed_request(relay_request, sign_request):
    return sign_request(relay_request)


@pytest.fixture
def sign_worker_tx(worker_account):
    """Factory producing a raw EIP-1559 transaction signed by the worker."""

    def _sign(data, to=RELAY_HUB, nonce=5, account=worker_account):
        signed = account.sign_transaction(
            {
                "type": 2,
                "chainId": CHAIN_ID,
                "nonce": nonce,
                "to": to,
                "value": 0,
                "data": data,
                "gas": 1_000_000,
                "maxFeePerGas": 30 * GWEI,
                "maxPriorityFeePerGas": 2 * GWEI,
            }
        )
        return HexBytes(signed.raw_transaction).to_0x_hex()

    return _sign
