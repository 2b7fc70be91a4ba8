# core/chain_client.py
import asyncio
import logging
from typing import Any, Dict, Final, Optional
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import TransactionNotFound
from util.errors import TransientDisbursementError
from util.timing import timed

logger = logging.getLogger(__name__)

ERC20_ABI: Final[list] = [
    {
        "inputs": [],
        "name": "decimals",
        "outputs": [{"name": "", "type": "uint8"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

BLOCK_POLL_SECONDS: Final[float] = 2.0


class ChainClient:
    """
    Thin async wrapper over web3 for the treasury's ERC-20 payouts.

    !!! submit_transfer moves funds. Callers own nonce sequencing.
    """

    def __init__(
        self,
        *,
        rpc_url: str,
        private_key: str,
        token_address: str,
        chain_id: int,
        gas_limit: int = 120000,
    ) -> None:
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self._account = Account.from_key(private_key)
        self._chain_id = chain_id
        self._gas_limit = gas_limit
        self._token = self._w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_ABI
        )

    @property
    def treasury_address(self) -> str:
        return self._account.address

    async def pending_transaction_count(self, address: str) -> int:
        return int(
            await self._w3.eth.get_transaction_count(
                AsyncWeb3.to_checksum_address(address), "pending"
            )
        )

    async def block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def token_decimals(self) -> int:
        return int(await self._token.functions.decimals().call())

    async def token_balance(self, address: str) -> int:
        return int(
            await self._token.functions.balanceOf(
                AsyncWeb3.to_checksum_address(address)
            ).call()
        )

    async def submit_transfer(self, to: str, amount: int, nonce: int) -> str:
        """Sign and broadcast transfer(to, amount) with an explicit nonce. Returns tx hash."""
        tx = await self._token.functions.transfer(
            AsyncWeb3.to_checksum_address(to), int(amount)
        ).build_transaction(
            {
                "from": self.treasury_address,
                "nonce": nonce,
                "gas": self._gas_limit,
                "chainId": self._chain_id,
            }
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        ref = self._w3.to_hex(tx_hash)
        logger.info("chain.submit nonce=%d tx=%s", nonce, ref)
        return ref

    async def wait_for_confirmations(
        self, tx_ref: str, confirmations: int, timeout: float
    ) -> Dict[str, Any]:
        """
        Wait until the receipt is `confirmations` blocks deep (the mined block
        counts as the first). Raises TransientDisbursementError on revert;
        asyncio.TimeoutError / web3 TimeExhausted bubble up on timeout.
        """
        with timed(
            logger,
            "chain.confirm",
            slow_ms=int(timeout * 500),
            tx=tx_ref,
            confirmations=confirmations,
        ):
            return await asyncio.wait_for(
                self._wait(tx_ref, confirmations, timeout), timeout=timeout + 5
            )

    async def _wait(self, tx_ref: str, confirmations: int, timeout: float) -> Dict[str, Any]:
        receipt = await self._w3.eth.wait_for_transaction_receipt(tx_ref, timeout=timeout)
        if int(receipt["status"]) != 1:
            raise TransientDisbursementError(f"Transaction reverted: {tx_ref}")
        target = int(receipt["blockNumber"]) + max(1, confirmations) - 1
        while await self.block_number() < target:
            await asyncio.sleep(BLOCK_POLL_SECONDS)
        return dict(receipt)

    async def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        try:
            return dict(await self._w3.eth.get_transaction_receipt(tx_ref))
        except TransactionNotFound:
            return None

    async def confirmation_status(self, tx_ref: str, confirmations: int) -> Optional[bool]:
        """
        True: succeeded and deep enough. False: mined but reverted.
        None: unknown, not mined, or not deep enough yet.
        """
        receipt = await self.get_receipt(tx_ref)
        if receipt is None:
            return None
        if int(receipt["status"]) != 1:
            return False
        head = await self.block_number()
        if head - int(receipt["blockNumber"]) + 1 < max(1, confirmations):
            return None
        return True
