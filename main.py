#!/usr/bin/env python3
"""Command line entry point for the GSN relay client.

Relays a single call through a GSN relay server, signing with the key in
``PRIVATE_KEY``, and optionally waits for it to be mined.
"""

import argparse
import asyncio
import logging
import os
import sys

# Configure logging before any other imports create loggers
def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the application.

    Args:
        level: Logging level as string (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    log_level: int = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

# Get logger for this module
logger = logging.getLogger(__name__)

from gsn_relay_client.config import RelayClientConfig
from gsn_relay_client.errors import ConfigError, RelayClientError
from gsn_relay_client.models import CallDetails, RelayInfo, RelayWorkerInfo
from gsn_relay_client.relay_client import RelayClient
from gsn_relay_client.signers import LiveSigner
from gsn_relay_client.worker_selection import PinnedWorkerSelection


def build_parser() -> argparse.ArgumentParser:
    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        description="GSN Relay Client - relay a gasless call through a GSN relay server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""Environment Variables:
  RPC_URL               - RPC endpoint of the chain
  RELAY_HUB_ADDRESS     - RelayHub contract address
  FORWARDER_ADDRESS     - Forwarder contract address
  PAYMASTER_ADDRESS     - Paymaster contract address
  PRIVATE_KEY           - Key of the user signing the request
  PREFERRED_RELAYS      - Comma separated relay URLs (ignored with --relay-url)
  CHAIN_ID              - Chain id (fetched from RPC if unset)
  LOG_LEVEL             - Logging level (can be overridden with --log-level)
        """
    )
    parser.add_argument("--to", required=True, help="Target contract address")
    parser.add_argument("--data", default="0x", help="ABI-encoded calldata (default: 0x)")
    parser.add_argument("--gas", type=int, required=True, help="Gas limit for the inner call")
    parser.add_argument("--value", type=int, default=0, help="Value in wei (default: 0)")
    parser.add_argument(
        "--relay-url",
        default=None,
        help="Relay server to use; pins the worker instead of pinging PREFERRED_RELAYS"
    )
    parser.add_argument(
        "--wait",
        action="store_true",
        default=False,
        help="Wait for the relayed transaction to be mined"
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Set the logging level (default: INFO)"
    )
    return parser


async def relay(args: argparse.Namespace) -> int:
    """Relay one call; returns the process exit code."""
    config: RelayClientConfig = RelayClientConfig.from_env()
    config.log_config()

    if not config.private_key:
        raise ConfigError("PRIVATE_KEY is required to sign the relay request")
    signer = LiveSigner(config.private_key)

    client: RelayClient = RelayClient.from_config(config, signer)

    if args.relay_url:
        ping = await client.http_client.get_ping_response(args.relay_url, config.contracts.paymaster_address)
        client.worker_selection = PinnedWorkerSelection(
            RelayWorkerInfo(
                ping_response=ping,
                relay_info=RelayInfo(relay_manager=ping.relay_manager_address, relay_url=args.relay_url),
            )
        )

    call = CallDetails(
        to=args.to,
        data=args.data,
        from_address=signer.address,
        gas=args.gas,
        value=args.value,
    )

    result = await client.relay_transaction(call)
    if not result.ok:
        logger.error(f"✗ Relay failed: {result.error}")
        return 1

    logger.info(f"✓ Relayed transaction {result.transaction.tx_hash} via {result.transaction.relay_url}")

    if args.wait:
        confirmation = await client.wait_for_confirmation(result.transaction)
        logger.info(f"✓ Transaction confirmed in block {confirmation.receipt.get('blockNumber')}")
    return 0


async def main() -> None:
    """Main entry point for the GSN relay client CLI.

    Raises:
        SystemExit: With the result of the relay
    """
    args: argparse.Namespace = build_parser().parse_args()

    # Set up logging with specified level
    setup_logging(args.log_level)

    try:
        exit_code = await relay(args)

    except ValueError as e:
        logger.error(f"Configuration Error: {e}")
        logger.error("Please check your environment variables and arguments:")
        logger.error("  - RPC_URL: RPC endpoint of the chain")
        logger.error("  - RELAY_HUB_ADDRESS / FORWARDER_ADDRESS / PAYMASTER_ADDRESS: GSN contracts")
        logger.error("  - PRIVATE_KEY: Key of the user signing the request")
        sys.exit(1)

    except RelayClientError as e:
        logger.error(f"Relay Error: {e}")
        sys.exit(1)

    except KeyboardInterrupt:
        logger.info("\nReceived interrupt signal, shutting down gracefully...")
        sys.exit(0)

    except Exception as e:
        logger.error(f"Fatal Error: {e}", exc_info=True)
        sys.exit(1)

    sys.exit(exit_code)


if __name__ == "__main__":
    # Run the main async function
    asyncio.run(main())
