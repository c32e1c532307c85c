#!/usr/bin/env python3
"""Configuration management for the GSN relay client.

This module provides type-safe configuration dataclasses with validation.
Configuration is loaded from environment variables with GSN v3 client
defaults where appropriate.
"""

import logging
import os
from dataclasses import dataclass, field, replace
from typing import ClassVar
from urllib.parse import urlparse

from web3 import Web3

from .errors import ConfigError
from .models import DEFAULT_DOMAIN_SEPARATOR_NAME

# Get logger for this module
logger = logging.getLogger(__name__)


def _checksum(value: str, field_name: str, env_name: str) -> str:
    if not value:
        raise ConfigError(f"{field_name} is required ({env_name})")
    if not Web3.is_address(value):
        raise ConfigError(f"Invalid {field_name}: {value}")
    return Web3.to_checksum_address(value)


def _validate_url(url: str, allowed: set[str]) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in allowed:
        raise ConfigError(
            f"Invalid URL scheme: {parsed.scheme}. "
            f"Expected one of {', '.join(sorted(allowed))}"
        )


@dataclass(frozen=True, slots=True)
class ChainConfig:
    """Configuration for the chain the relayed calls execute on.

    Attributes:
        rpc_url: HTTP(S) RPC endpoint
        chain_id: Chain ID (fetched from RPC when not configured)
    """

    rpc_url: str
    chain_id: int | None = None

    def __post_init__(self) -> None:
        """Validate chain configuration."""
        if not self.rpc_url:
            raise ConfigError("RPC URL is required (RPC_URL)")
        _validate_url(self.rpc_url, {"http", "https"})
        if self.chain_id is not None and self.chain_id <= 0:
            raise ConfigError(f"Chain ID must be positive, got {self.chain_id}")


@dataclass(frozen=True, slots=True)
class ContractsConfig:
    """Addresses of the GSN deployment used by the client.

    Attributes:
        relay_hub_address: RelayHub contract
        forwarder_address: Trusted forwarder that verifies the EIP-712 signature
        paymaster_address: Paymaster that pays for relayed calls
        fee_token_address: Optional ERC-20 the paymaster charges the user in
    """

    relay_hub_address: str
    forwarder_address: str
    paymaster_address: str
    fee_token_address: str | None = None

    def __post_init__(self) -> None:
        """Validate and checksum contract addresses."""
        # Use object.__setattr__ since dataclass is frozen
        object.__setattr__(
            self, "relay_hub_address",
            _checksum(self.relay_hub_address, "RelayHub address", "RELAY_HUB_ADDRESS"),
        )
        object.__setattr__(
            self, "forwarder_address",
            _checksum(self.forwarder_address, "Forwarder address", "FORWARDER_ADDRESS"),
        )
        object.__setattr__(
            self, "paymaster_address",
            _checksum(self.paymaster_address, "Paymaster address", "PAYMASTER_ADDRESS"),
        )
        if self.fee_token_address:
            object.__setattr__(
                self, "fee_token_address",
                _checksum(self.fee_token_address, "Fee token address", "FEE_TOKEN_ADDRESS"),
            )


@dataclass(frozen=True, slots=True)
class RelayConfig:
    """GSN protocol and relay selection settings."""

    preferred_relays: tuple[str, ...] = ()
    domain_separator_name: str = DEFAULT_DOMAIN_SEPARATOR_NAME
    client_id: int = 1
    request_valid_seconds: int = 172800  # two days
    max_paymaster_data_length: int = 0
    max_approval_data_length: int = 0
    max_viewable_gas_limit: int = 12_000_000
    max_relay_nonce_gap: int = 3
    max_relay_attempts: int = 3
    relay_timeout_grace_seconds: int = 1800
    min_token_allowance: int = 1

    MAX_DATA_LENGTH: ClassVar[int] = 10_000

    def __post_init__(self) -> None:
        """Validate relay configuration."""
        for url in self.preferred_relays:
            _validate_url(url, {"http", "https"})

        if not self.domain_separator_name:
            raise ConfigError("Domain separator name must not be empty")

        if self.request_valid_seconds <= 0:
            raise ConfigError(
                f"Request validity must be positive, got {self.request_valid_seconds}"
            )

        for name in ("max_paymaster_data_length", "max_approval_data_length"):
            value = getattr(self, name)
            if not 0 <= value <= self.MAX_DATA_LENGTH:
                raise ConfigError(
                    f"{name} must be between 0 and {self.MAX_DATA_LENGTH}, got {value}"
                )

        if self.max_relay_attempts < 1:
            raise ConfigError(
                f"Max relay attempts must be at least 1, got {self.max_relay_attempts}"
            )
        if self.max_relay_attempts > 10:
            raise ConfigError(
                f"Max relay attempts too high (max 10), got {self.max_relay_attempts}"
            )

        if self.min_token_allowance < 0:
            raise ConfigError(
                f"Min token allowance must be non-negative, got {self.min_token_allowance}"
            )


@dataclass(frozen=True, slots=True)
class GasFeeConfig:
    """Settings for deriving gas fees from ``eth_feeHistory``."""

    gas_price_factor_percent: int = 20
    get_gas_fees_blocks: int = 5
    get_gas_fees_percentile: int = 50
    min_max_priority_fee_per_gas: int = 0

    def __post_init__(self) -> None:
        """Validate fee settings."""
        if not 0 <= self.gas_price_factor_percent <= 500:
            raise ConfigError(
                f"Gas price factor must be between 0 and 500 percent, got {self.gas_price_factor_percent}"
            )
        if not 1 <= self.get_gas_fees_blocks <= 1024:
            raise ConfigError(
                f"Fee history block count must be between 1 and 1024, got {self.get_gas_fees_blocks}"
            )
        if not 0 <= self.get_gas_fees_percentile <= 100:
            raise ConfigError(
                f"Fee percentile must be between 0 and 100, got {self.get_gas_fees_percentile}"
            )
        if self.min_max_priority_fee_per_gas < 0:
            raise ConfigError(
                f"Min priority fee must be non-negative, got {self.min_max_priority_fee_per_gas}"
            )


@dataclass(frozen=True, slots=True)
class TimingConfig:
    """Timeouts and polling intervals for network operations."""

    request_timeout: int = 30  # seconds per RPC / relay HTTP call
    poll_interval: float = 2.0  # seconds between receipt polls
    confirmation_timeout: int = 300  # seconds to wait for a receipt

    def __post_init__(self) -> None:
        """Validate timing configuration."""
        if self.request_timeout <= 0:
            raise ConfigError(f"Request timeout must be positive, got {self.request_timeout}")
        if self.request_timeout > 120:
            raise ConfigError(f"Request timeout too long (max 120s), got {self.request_timeout}")

        if self.poll_interval <= 0:
            raise ConfigError(f"Poll interval must be positive, got {self.poll_interval}")

        if self.confirmation_timeout <= 0:
            raise ConfigError(
                f"Confirmation timeout must be positive, got {self.confirmation_timeout}"
            )


@dataclass(frozen=True, slots=True)
class RelayClientConfig:
    """Main configuration for the GSN relay client.

    Attributes:
        chain: Chain RPC settings
        contracts: GSN contract addresses
        relay: Protocol and relay selection settings
        gas_fees: Fee derivation settings
        timing: Timeouts and polling
        private_key: Key for live signing (optional, deferred signing needs none)
    """

    chain: ChainConfig
    contracts: ContractsConfig
    relay: RelayConfig = field(default_factory=RelayConfig)
    gas_fees: GasFeeConfig = field(default_factory=GasFeeConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    private_key: str | None = None

    def __post_init__(self) -> None:
        """Validate the signing key if present."""
        if self.private_key:
            key = self.private_key.removeprefix("0x")

            if len(key) != 64:
                raise ConfigError(
                    f"Invalid private key length. Expected 64 hex characters, got {len(key)}"
                )

            try:
                int(key, 16)
            except ValueError:
                raise ConfigError(
                    "Invalid private key format. Must be hexadecimal"
                ) from None

    @classmethod
    def from_env(cls) -> "RelayClientConfig":
        """Load configuration from environment variables.

        Returns:
            RelayClientConfig instance with loaded values

        Raises:
            ConfigError: If required environment variables are missing or invalid
        """
        try:
            chain_id_raw = os.environ.get("CHAIN_ID", "")
            chain = ChainConfig(
                rpc_url=os.environ.get("RPC_URL", ""),
                chain_id=int(chain_id_raw) if chain_id_raw else None,
            )

            contracts = ContractsConfig(
                relay_hub_address=os.environ.get("RELAY_HUB_ADDRESS", ""),
                forwarder_address=os.environ.get("FORWARDER_ADDRESS", ""),
                paymaster_address=os.environ.get("PAYMASTER_ADDRESS", ""),
                fee_token_address=os.environ.get("FEE_TOKEN_ADDRESS") or None,
            )

            preferred = os.environ.get("PREFERRED_RELAYS", "")
            relay = RelayConfig(
                preferred_relays=tuple(url.strip() for url in preferred.split(",") if url.strip()),
                domain_separator_name=os.environ.get("DOMAIN_SEPARATOR_NAME", DEFAULT_DOMAIN_SEPARATOR_NAME),
                request_valid_seconds=int(os.environ.get("REQUEST_VALID_SECONDS", "172800")),
                max_paymaster_data_length=int(os.environ.get("MAX_PAYMASTER_DATA_LENGTH", "0")),
                max_approval_data_length=int(os.environ.get("MAX_APPROVAL_DATA_LENGTH", "0")),
                max_relay_attempts=int(os.environ.get("MAX_RELAY_ATTEMPTS", "3")),
                min_token_allowance=int(os.environ.get("MIN_TOKEN_ALLOWANCE", "1")),
            )

            gas_fees = GasFeeConfig(
                gas_price_factor_percent=int(os.environ.get("GAS_PRICE_FACTOR_PERCENT", "20")),
                min_max_priority_fee_per_gas=int(os.environ.get("MIN_MAX_PRIORITY_FEE_PER_GAS", "0")),
            )

            timing = TimingConfig(
                request_timeout=int(os.environ.get("REQUEST_TIMEOUT", "30")),
                poll_interval=float(os.environ.get("POLL_INTERVAL", "2")),
                confirmation_timeout=int(os.environ.get("CONFIRMATION_TIMEOUT", "300")),
            )
        except ValueError as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(f"Invalid numeric environment variable: {e}") from e

        return cls(
            chain=chain,
            contracts=contracts,
            relay=relay,
            gas_fees=gas_fees,
            timing=timing,
            private_key=os.environ.get("PRIVATE_KEY") or None,
        )

    def with_chain_id(self, chain_id: int) -> "RelayClientConfig":
        """Create a new config with the chain ID fetched from the RPC set.

        Since the config is frozen, a new instance is returned.
        """
        return replace(self, chain=replace(self.chain, chain_id=chain_id))

    def log_config(self) -> None:
        """Log the configuration in a readable format for debugging."""
        logger.info("=" * 60)
        logger.info("GSN Relay Client Configuration")
        logger.info("=" * 60)

        logger.info("Chain:")
        logger.info(f"  RPC URL: {self.chain.rpc_url}")
        if self.chain.chain_id:
            logger.info(f"  Chain ID: {self.chain.chain_id}")

        logger.info("Contracts:")
        logger.info(f"  RelayHub: {self.contracts.relay_hub_address}")
        logger.info(f"  Forwarder: {self.contracts.forwarder_address}")
        logger.info(f"  Paymaster: {self.contracts.paymaster_address}")
        if self.contracts.fee_token_address:
            logger.info(f"  Fee Token: {self.contracts.fee_token_address}")

        logger.info("Relay Settings:")
        logger.info(f"  Preferred Relays: {', '.join(self.relay.preferred_relays) or '[NONE]'}")
        logger.info(f"  Domain Separator: {self.relay.domain_separator_name}")
        logger.info(f"  Request Valid For: {self.relay.request_valid_seconds} seconds")
        logger.info(f"  Max Relay Attempts: {self.relay.max_relay_attempts}")

        logger.info("Timing:")
        logger.info(f"  Request Timeout: {self.timing.request_timeout} seconds")
        logger.info(f"  Confirmation Timeout: {self.timing.confirmation_timeout} seconds")

        logger.info(f"Signing Key: {'[CONFIGURED]' if self.private_key else '[NOT SET]'}")
        logger.info("=" * 60)
