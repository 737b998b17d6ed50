"""
EVM interaction for the Worboo registry and reward token.
"""

import asyncio
from typing import Any, Optional

import structlog
from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.types import TxReceipt

logger = structlog.get_logger()


# WorbooRegistry ABI (GameRecorded event only)
REGISTRY_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "player", "type": "address"},
            {"indexed": True, "name": "dayId", "type": "uint256"},
            {"indexed": False, "name": "wordHash", "type": "bytes32"},
            {"indexed": False, "name": "guesses", "type": "uint8"},
            {"indexed": False, "name": "victory", "type": "bool"},
            {"indexed": False, "name": "streak", "type": "uint256"},
            {"indexed": False, "name": "totalGames", "type": "uint256"},
            {"indexed": False, "name": "totalWins", "type": "uint256"},
        ],
        "name": "GameRecorded",
        "type": "event",
    },
]

# WorbooToken ABI (minimal for mint)
TOKEN_ABI = [
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "mint",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


class MintRevertedError(Exception):
    """Raised when a mint transaction is mined with a failed status."""

    def __init__(self, tx_hash: str):
        self.tx_hash = tx_hash
        super().__init__(f"Mint transaction reverted: {tx_hash}")


def create_web3(rpc_url: str) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(rpc_url))


class RewardTokenClient:
    """
    Mints WorbooToken rewards from the relayer's operator account.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        token_address: str,
        private_key: str,
        chain_id: Optional[int] = None,
        receipt_timeout: float = 120.0,
    ):
        self.w3 = w3
        self.account = Account.from_key(private_key)
        self.token = w3.eth.contract(
            address=Web3.to_checksum_address(token_address),
            abi=TOKEN_ABI,
        )
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        # Nonce lookup and broadcast must not interleave between concurrent mints.
        self._nonce_lock = asyncio.Lock()

        logger.info(
            "token_client_initialized",
            token=self.token.address,
            operator=self.account.address,
        )

    @property
    def operator_address(self) -> str:
        return self.account.address

    async def _get_chain_id(self) -> int:
        if self.chain_id is None:
            self.chain_id = await self.w3.eth.chain_id
        return self.chain_id

    async def mint(self, recipient: str, amount: int) -> str:
        """
        Mint ``amount`` tokens to ``recipient`` and wait for confirmation.

        Returns:
            The mint transaction hash (0x-prefixed).

        Raises:
            MintRevertedError: If the transaction was mined but reverted.
        """
        to = Web3.to_checksum_address(recipient)
        chain_id = await self._get_chain_id()

        async with self._nonce_lock:
            nonce = await self.w3.eth.get_transaction_count(self.account.address, "pending")
            tx: dict[str, Any] = await self.token.functions.mint(to, amount).build_transaction(
                {
                    "from": self.account.address,
                    "nonce": nonce,
                    "chainId": chain_id,
                }
            )
            signed = self.account.sign_transaction(tx)
            tx_hash_bytes = await self.w3.eth.send_raw_transaction(signed.raw_transaction)

        tx_hash = Web3.to_hex(tx_hash_bytes)
        logger.info("mint_tx_sent", tx_hash=tx_hash, recipient=to, amount=amount, nonce=nonce)

        receipt: TxReceipt = await self.w3.eth.wait_for_transaction_receipt(
            tx_hash_bytes, timeout=self.receipt_timeout
        )
        if receipt["status"] != 1:
            logger.error("mint_tx_reverted", tx_hash=tx_hash)
            raise MintRevertedError(tx_hash)

        logger.info("mint_tx_confirmed", tx_hash=tx_hash, gas_used=receipt["gasUsed"])
        return tx_hash
