import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

from hexbytes import HexBytes
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.types import BlockData, TxParams, TxReceipt

logger = logging.getLogger(__name__)

CONTRACTS_DIR = Path(__file__).parent.parent / "contracts"


@lru_cache(maxsize=None)
def _load_abi(contract_name: str) -> tuple[dict[str, Any], ...]:
    contract_path: Path = (CONTRACTS_DIR / f"{contract_name}.json").resolve()

    with contract_path.open() as file:
        contract_data: dict[str, Any] = json.load(file)

    return tuple(contract_data["abi"])


class ContractUtility:
    """
    Chain RPC access and contract bindings for the GSN contracts.

    Wraps a single ``AsyncWeb3`` instance that is shared by every component.
    All methods are reads except ``send_raw_transaction``, which only
    re-broadcasts a transaction already signed by a relay worker.
    """

    def __init__(self, rpc_url: str, request_timeout: int = 30, w3: AsyncWeb3 | None = None) -> None:
        """
        Initialize the ContractUtility.

        Args:
            rpc_url: RPC URL for the network (required)
            request_timeout: Timeout in seconds for each RPC request
            w3: Pre-built AsyncWeb3 instance (used instead of creating one)
        """
        if not rpc_url and w3 is None:
            raise ValueError("RPC URL is required")

        self.rpc_url = rpc_url
        self.w3: AsyncWeb3 = w3 or AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(self.rpc_url, request_kwargs={"timeout": request_timeout})
        )

    def get_contract_abi(self, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        return list(_load_abi(contract_name))

    def contract(self, contract_name: str, address: str) -> AsyncContract:
        return self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(address),
            abi=self.get_contract_abi(contract_name),
        )

    async def get_chain_id(self) -> int:
        return int(await self.w3.eth.chain_id)

    async def get_latest_block(self) -> BlockData:
        return await self.w3.eth.get_block("latest")

    async def get_balance(self, address: str) -> int:
        return int(await self.w3.eth.get_balance(AsyncWeb3.to_checksum_address(address)))

    async def get_transaction_count(self, address: str) -> int:
        return int(await self.w3.eth.get_transaction_count(AsyncWeb3.to_checksum_address(address)))

    async def get_fee_history(self, block_count: int, percentile: int) -> dict[str, Any]:
        return await self.w3.eth.fee_history(block_count, "latest", [percentile])

    async def call(self, tx: TxParams) -> HexBytes:
        """Run ``eth_call`` against the latest block."""
        return HexBytes(await self.w3.eth.call(tx, "latest"))

    async def get_token_allowance(self, token: str, owner: str, spender: str) -> int:
        erc20 = self.contract("ERC20", token)
        return int(await erc20.functions.allowance(
            AsyncWeb3.to_checksum_address(owner),
            AsyncWeb3.to_checksum_address(spender),
        ).call())

    async def get_token_balance(self, token: str, owner: str) -> int:
        erc20 = self.contract("ERC20", token)
        return int(await erc20.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call())

    async def get_sender_nonce(self, sender: str, forwarder: str) -> int:
        """Read the user's nonce from the forwarder (replay protection)."""
        contract = self.contract("Forwarder", forwarder)
        return int(await contract.functions.getNonce(AsyncWeb3.to_checksum_address(sender)).call())

    async def get_transaction_receipt(self, tx_hash: str) -> TxReceipt:
        """
        Raises:
            web3.exceptions.TransactionNotFound: If the transaction is not mined yet
        """
        return await self.w3.eth.get_transaction_receipt(HexBytes(tx_hash))

    async def send_raw_transaction(self, raw_transaction: str) -> HexBytes:
        return HexBytes(await self.w3.eth.send_raw_transaction(HexBytes(raw_transaction)))
