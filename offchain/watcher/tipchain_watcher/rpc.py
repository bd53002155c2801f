"""
Chain RPC readers for receipts and balances.

ChainRPC talks to EVM nodes through AsyncWeb3. MockChainRPC serves scripted
responses for tests and dry runs.
"""

import time
from collections import Counter
from typing import Any, Optional, Protocol

import structlog
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from .config import Settings
from .models import ExecutionStatus, TransactionReceipt
from .watch import balance_key, transaction_key

logger = structlog.get_logger()


# Minimal ERC-20 ABI for balance reads
ERC20_ABI = [
    {
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
]


class ChainRPCError(Exception):
    """Transient failure reading from a chain RPC endpoint."""

    def __init__(self, chain_id: int, method: str, message: str):
        self.chain_id = chain_id
        self.method = method
        self.message = message
        super().__init__(f"RPC error on chain {chain_id} ({method}): {message}")


class ReceiptSource(Protocol):
    """Reads transaction receipts and mempool presence."""

    async def get_transaction_receipt(
        self, tx_hash: str, chain_id: int
    ) -> Optional[TransactionReceipt]:
        ...

    async def get_transaction_by_hash(self, tx_hash: str, chain_id: int) -> bool:
        ...


class BalanceSource(Protocol):
    """Reads native and token balances as decimal strings in base units."""

    async def get_native_balance(self, address: str, chain_id: int) -> str:
        ...

    async def get_token_balance(self, address: str, token_address: str, chain_id: int) -> str:
        ...


def _to_hex(value: Any) -> str:
    if hasattr(value, "to_0x_hex"):
        return value.to_0x_hex()
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class ChainRPC:
    """
    Async EVM reader, one AsyncWeb3 instance per chain.

    Every failure other than "transaction not found" is raised as
    ChainRPCError so callers can treat it as transient.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self._clients: dict[int, AsyncWeb3] = {}

    def web3_for(self, chain_id: int) -> AsyncWeb3:
        """Get or create the AsyncWeb3 client for a chain."""
        w3 = self._clients.get(chain_id)
        if w3 is None:
            url = self.settings.rpc_url_for(chain_id)
            w3 = AsyncWeb3(AsyncHTTPProvider(url))
            self._clients[chain_id] = w3
            logger.debug("rpc_client_created", chain_id=chain_id, rpc_url=url)
        return w3

    async def get_transaction_receipt(
        self, tx_hash: str, chain_id: int
    ) -> Optional[TransactionReceipt]:
        """Fetch a receipt, or None if the transaction is not mined yet."""
        w3 = self.web3_for(chain_id)
        try:
            raw = await w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise ChainRPCError(chain_id, "eth_getTransactionReceipt", str(e)) from e

        if raw is None:
            return None

        block_number = int(raw["blockNumber"])
        try:
            latest = await w3.eth.block_number
        except Exception as e:
            raise ChainRPCError(chain_id, "eth_blockNumber", str(e)) from e

        block_timestamp: Optional[float] = None
        try:
            block = await w3.eth.get_block(block_number)
            block_timestamp = float(block["timestamp"])
        except Exception as e:
            logger.debug(
                "block_timestamp_unavailable",
                chain_id=chain_id,
                block_number=block_number,
                error=str(e),
            )

        return TransactionReceipt(
            transaction_hash=_to_hex(raw["transactionHash"]),
            block_number=block_number,
            block_hash=_to_hex(raw["blockHash"]),
            gas_used=str(int(raw["gasUsed"])),
            effective_gas_price=str(int(raw.get("effectiveGasPrice", 0) or 0)),
            status=ExecutionStatus.SUCCESS if raw["status"] == 1 else ExecutionStatus.FAILURE,
            confirmations=max(latest - block_number + 1, 1),
            timestamp=time.time(),
            block_timestamp=block_timestamp,
        )

    async def get_transaction_by_hash(self, tx_hash: str, chain_id: int) -> bool:
        """Check whether the node knows the transaction (mempool or chain)."""
        w3 = self.web3_for(chain_id)
        try:
            tx = await w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return False
        except Exception as e:
            raise ChainRPCError(chain_id, "eth_getTransactionByHash", str(e)) from e
        return tx is not None

    async def get_native_balance(self, address: str, chain_id: int) -> str:
        w3 = self.web3_for(chain_id)
        try:
            balance = await w3.eth.get_balance(w3.to_checksum_address(address))
        except Exception as e:
            raise ChainRPCError(chain_id, "eth_getBalance", str(e)) from e
        return str(balance)

    async def get_token_balance(self, address: str, token_address: str, chain_id: int) -> str:
        w3 = self.web3_for(chain_id)
        try:
            contract = w3.eth.contract(
                address=w3.to_checksum_address(token_address),
                abi=ERC20_ABI,
            )
            balance = await contract.functions.balanceOf(w3.to_checksum_address(address)).call()
        except Exception as e:
            raise ChainRPCError(chain_id, "balanceOf", str(e)) from e
        return str(balance)

    async def close(self) -> None:
        """Disconnect all providers."""
        for chain_id, w3 in list(self._clients.items()):
            try:
                await w3.provider.disconnect()
            except Exception as e:
                logger.debug("rpc_disconnect_error", chain_id=chain_id, error=str(e))
        self._clients.clear()


class MockChainRPC:
    """
    Mock chain reader for testing without a node.

    Responses are scripted per key as a sequence; each read consumes the
    next entry and the last entry repeats forever.
    """

    def __init__(self) -> None:
        self._receipts: dict[str, list[Optional[TransactionReceipt]]] = {}
        self._pending: set[str] = set()
        self._balances: dict[str, list[str]] = {}
        self._failures: dict[str, list[Exception]] = {}
        self.calls: Counter[str] = Counter()

    @staticmethod
    def make_receipt(
        tx_hash: str,
        *,
        success: bool = True,
        block_number: int = 100,
        confirmations: int = 1,
        timestamp: float = 0.0,
        block_timestamp: Optional[float] = None,
    ) -> TransactionReceipt:
        """Build a receipt with sensible defaults."""
        return TransactionReceipt(
            transaction_hash=tx_hash,
            block_number=block_number,
            block_hash="0x" + "ab" * 32,
            gas_used="21000",
            effective_gas_price="1000000000",
            status=ExecutionStatus.SUCCESS if success else ExecutionStatus.FAILURE,
            confirmations=confirmations,
            timestamp=timestamp,
            block_timestamp=block_timestamp,
        )

    def set_receipts(
        self, chain_id: int, tx_hash: str, *responses: Optional[TransactionReceipt]
    ) -> None:
        """Script receipt reads; None means "not mined yet"."""
        self._receipts[transaction_key(chain_id, tx_hash)] = list(responses) or [None]

    def add_pending(self, chain_id: int, tx_hash: str) -> None:
        """Mark a transaction as present in the mempool."""
        self._pending.add(transaction_key(chain_id, tx_hash))

    def set_balances(
        self,
        chain_id: int,
        address: str,
        *values: str,
        token_address: Optional[str] = None,
    ) -> None:
        """Script balance reads for an (address, chain, token) triple."""
        self._balances[balance_key(chain_id, address, token_address)] = list(values) or ["0"]

    def fail(self, method: str, times: int = 1, error: Optional[Exception] = None) -> None:
        """Make the next `times` calls of a method raise ChainRPCError."""
        exc = error or ChainRPCError(0, method, "simulated failure")
        self._failures.setdefault(method, []).extend([exc] * times)

    def _maybe_fail(self, method: str) -> None:
        self.calls[method] += 1
        queued = self._failures.get(method)
        if queued:
            raise queued.pop(0)

    @staticmethod
    def _next(sequence: list[Any]) -> Any:
        if len(sequence) > 1:
            return sequence.pop(0)
        return sequence[0]

    async def get_transaction_receipt(
        self, tx_hash: str, chain_id: int
    ) -> Optional[TransactionReceipt]:
        self._maybe_fail("get_transaction_receipt")
        sequence = self._receipts.get(transaction_key(chain_id, tx_hash))
        if not sequence:
            return None
        return self._next(sequence)

    async def get_transaction_by_hash(self, tx_hash: str, chain_id: int) -> bool:
        self._maybe_fail("get_transaction_by_hash")
        key = transaction_key(chain_id, tx_hash)
        return key in self._pending or key in self._receipts

    async def get_native_balance(self, address: str, chain_id: int) -> str:
        self._maybe_fail("get_native_balance")
        sequence = self._balances.get(balance_key(chain_id, address))
        return self._next(sequence) if sequence else "0"

    async def get_token_balance(self, address: str, token_address: str, chain_id: int) -> str:
        self._maybe_fail("get_token_balance")
        sequence = self._balances.get(balance_key(chain_id, address, token_address))
        return self._next(sequence) if sequence else "0"

    async def close(self) -> None:
        return None
