#!/usr/bin/env python3
"""Tests for the relay request data models."""

from dataclasses import replace

import pytest
from hexbytes import HexBytes
from web3 import Web3

from gsn_relay_client.errors import ErrorKind, RelayError
from gsn_relay_client.models import (
    ZERO_ADDRESS,
    DryRunResult,
    PingResponse,
    RelayingAttemptResult,
    RelayInfo,
    RelayRequest,
    TransactionReference,
)

CHAIN_ID = 1337


class TestRelayRequestSigning:
    """Build, sign and verify round trips."""

    def test_round_trip_verifies(self, signed_request, user_account):
        assert signed_request.verify(CHAIN_ID)
        assert signed_request.recover_signer(CHAIN_ID) == user_account.address

    def test_digest_matches_eip712_hash(self, relay_request):
        """The digest is the EIP-191 version 0x01 hash of the typed data."""
        message = relay_request.signable_message(CHAIN_ID)
        assert message.version == b"\x01"
        digest = relay_request.digest(CHAIN_ID)
        assert len(digest) == 32
        assert digest == Web3.keccak(b"\x19\x01" + message.header + message.body)

    def test_other_signer_does_not_verify(self, relay_request, sign_request, other_account):
        signed = sign_request(relay_request, account=other_account)
        assert not signed.verify(CHAIN_ID)
        assert signed.recover_signer(CHAIN_ID) == other_account.address

    def test_changing_relay_worker_breaks_signature(self, signed_request):
        tampered = replace(
            signed_request,
            relay_request=signed_request.relay_request.with_relay_worker("0x" + "77" * 20),
        )
        assert not tampered.verify(CHAIN_ID)

    def test_changing_relay_data_breaks_signature(self, signed_request):
        relay_request = signed_request.relay_request
        tampered_request = replace(
            relay_request,
            relay_data=replace(relay_request.relay_data, max_fee_per_gas=relay_request.relay_data.max_fee_per_gas + 1),
        )
        assert not replace(signed_request, relay_request=tampered_request).verify(CHAIN_ID)

    def test_changing_call_breaks_signature(self, signed_request):
        relay_request = signed_request.relay_request
        tampered_request = replace(
            relay_request,
            request=replace(relay_request.request, data="0xdeadbeef"),
        )
        assert not replace(signed_request, relay_request=tampered_request).verify(CHAIN_ID)

    def test_other_chain_does_not_verify(self, signed_request):
        assert not signed_request.verify(CHAIN_ID + 1)

    def test_other_domain_name_does_not_verify(self, signed_request):
        assert not signed_request.verify(CHAIN_ID, "Another Domain")

    def test_malformed_signature_recovers_nothing(self, signed_request):
        broken = replace(signed_request, signature=HexBytes(b"\x01" * 10))
        assert broken.recover_signer(CHAIN_ID) is None
        assert not broken.verify(CHAIN_ID)


class TestRelayRequestSerialization:
    """Wire and ABI representations."""

    def test_to_dict_uses_gsn_field_names(self, relay_request):
        data = relay_request.to_dict()

        assert set(data) == {"request", "relayData"}
        assert data["request"]["from"] == relay_request.request.from_address
        assert data["request"]["gas"] == "100000"
        assert data["request"]["validUntilTime"] == str(relay_request.request.valid_until_time)
        assert data["relayData"]["transactionCalldataGasUsed"] == "21000"
        assert data["relayData"]["clientId"] == "1"
        assert data["relayData"]["paymasterData"] == "0x"

    def test_as_tuple_order(self, relay_request):
        request_tuple, relay_data_tuple = relay_request.as_tuple()

        assert request_tuple[0] == relay_request.request.from_address
        assert request_tuple[5] == HexBytes(relay_request.request.data)
        assert relay_data_tuple[3] == relay_request.relay_data.relay_worker
        assert relay_data_tuple[7] == 1

    def test_from_dict_restores_signable_request(self, signed_request):
        """A request received as JSON still verifies against the original signature."""
        parsed = RelayRequest.from_dict(signed_request.relay_request.to_dict())

        assert parsed == signed_request.relay_request
        assert replace(signed_request, relay_request=parsed).verify(CHAIN_ID)

    def test_from_dict_missing_field(self, relay_request):
        data = relay_request.to_dict()
        del data["relayData"]["paymaster"]
        with pytest.raises(KeyError):
            RelayRequest.from_dict(data)

    def test_with_relay_worker_checksums(self, relay_request):
        updated = relay_request.with_relay_worker("0x" + "ab" * 20)
        assert updated.relay_data.relay_worker == Web3.to_checksum_address("0x" + "ab" * 20)
        # Original is untouched
        assert updated is not relay_request
        assert relay_request.relay_data.relay_worker != updated.relay_data.relay_worker


class TestPingResponse:
    """Parsing relay /getaddr bodies."""

    def test_from_dict(self, ping_dict, worker_account):
        ping = PingResponse.from_dict(ping_dict)

        assert ping.relay_worker_address == worker_account.address
        assert ping.min_max_priority_fee_per_gas == 10**9
        assert ping.max_acceptance_budget == 285252
        assert ping.chain_id == CHAIN_ID
        assert ping.ready is True

    def test_from_dict_accepts_hex_numbers(self, ping_dict):
        ping_dict["maxMaxFeePerGas"] = "0x3b9aca00"
        ping_dict.pop("minMaxFeePerGas")
        ping_dict.pop("ownerAddress")

        ping = PingResponse.from_dict(ping_dict)

        assert ping.max_max_fee_per_gas == 10**9
        assert ping.min_max_fee_per_gas == 0
        assert ping.owner_address == ZERO_ADDRESS

    def test_from_dict_missing_field(self, ping_dict):
        del ping_dict["relayWorkerAddress"]
        with pytest.raises(KeyError):
            PingResponse.from_dict(ping_dict)

    @pytest.mark.parametrize("raw, expected", [(False, False), ("false", False), ("True", True)])
    def test_ready_accepts_bool_and_bool_strings(self, ping_dict, raw, expected):
        ping_dict["ready"] = raw
        assert PingResponse.from_dict(ping_dict).ready is expected

    @pytest.mark.parametrize("raw", ["no", 1, None])
    def test_ready_rejects_other_values(self, ping_dict, raw):
        ping_dict["ready"] = raw
        with pytest.raises(ValueError, match="boolean"):
            PingResponse.from_dict(ping_dict)

    def test_relay_info_from_dict(self):
        info = RelayInfo.from_dict({
            "relayManager": "0x" + "66" * 20,
            "relayUrl": "https://relay.example.com",
            "lastSeenBlockNumber": "100",
        })
        assert info.relay_url == "https://relay.example.com"
        assert info.last_seen_block_number == 100
        assert info.first_seen_block_number == 0


class TestResults:
    """Results carry exactly one of success or error."""

    def test_dry_run_result_requires_exactly_one(self):
        with pytest.raises(ValueError):
            DryRunResult()
        with pytest.raises(ValueError):
            DryRunResult(view_call_gas_limit=1, error=RelayError(ErrorKind.EXPIRED, "x"))

        assert DryRunResult(view_call_gas_limit=100).ok
        assert not DryRunResult(error=RelayError(ErrorKind.EXPIRED, "x")).ok

    def test_attempt_result_requires_exactly_one(self):
        tx = TransactionReference(tx_hash="0x01", raw_transaction="0x02", relay_url="u", relay_worker=ZERO_ADDRESS)
        with pytest.raises(ValueError):
            RelayingAttemptResult()
        with pytest.raises(ValueError):
            RelayingAttemptResult(transaction=tx, error=RelayError(ErrorKind.TRANSIENT, "x"))
        assert RelayingAttemptResult(transaction=tx).ok

    def test_relay_error_transient(self):
        assert RelayError(ErrorKind.TRANSIENT, "timeout").is_transient
        assert RelayError(ErrorKind.INVALID_RELAY_RESPONSE, "bad tx").is_transient
        assert not RelayError(ErrorKind.RELAY_REJECTED, "no").is_transient
        assert str(RelayError(ErrorKind.RELAY_REJECTED, "no", "https://r")) == "relay_rejected (https://r): no"
