"""
Domain records produced by the transaction, relay and balance watchers.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional


class TransactionStatus(str, Enum):
    """Lifecycle status of a watched transaction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    DROPPED = "dropped"
    REPLACED = "replaced"
    NOT_FOUND = "not_found"

    @property
    def is_terminal(self) -> bool:
        return self in (TransactionStatus.CONFIRMED, TransactionStatus.FAILED)


class ExecutionStatus(str, Enum):
    """Execution outcome recorded in a receipt."""

    SUCCESS = "success"
    FAILURE = "failure"


@dataclass(frozen=True)
class TransactionReceipt:
    """Receipt snapshot. Never mutated once observed."""

    transaction_hash: str
    block_number: int
    block_hash: str
    gas_used: str
    effective_gas_price: str
    status: ExecutionStatus
    confirmations: int
    timestamp: float  # when the receipt was observed
    block_timestamp: Optional[float] = None  # when the block was produced

    @property
    def succeeded(self) -> bool:
        return self.status == ExecutionStatus.SUCCESS


@dataclass
class TransactionStatusUpdate:
    """Progress or final update for a transaction watch."""

    transaction_hash: str
    status: TransactionStatus
    timestamp: float
    receipt: Optional[TransactionReceipt] = None
    error: Optional[str] = None


class RelayStatus(str, Enum):
    """Lifecycle status of a cross-chain relay."""

    INITIATED = "initiated"
    PENDING = "pending"
    RELAYING = "relaying"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RelayStatus.COMPLETED, RelayStatus.FAILED)


@dataclass
class RelayRecord:
    """Best-effort view of a relay from source to destination chain."""

    relay_id: str
    source_chain: int
    destination_chain: int
    source_transaction_hash: str
    status: RelayStatus
    progress: float  # 0-100
    source_amount: str = "0"
    token_symbol: str = "UNKNOWN"
    destination_transaction_hash: Optional[str] = None
    destination_amount: Optional[str] = None
    estimated_completion_time: Optional[float] = None
    actual_completion_time: Optional[float] = None
    error: Optional[str] = None

    def with_progress(self, progress: float) -> "RelayRecord":
        """Return a copy with a different progress value."""
        return replace(self, progress=progress)


@dataclass
class RelayUpdate:
    """Progress or final update for a relay tracking loop."""

    relay_id: str
    status: RelayStatus
    progress: float
    timestamp: float
    error: Optional[str] = None
    destination_transaction_hash: Optional[str] = None

    @classmethod
    def from_record(cls, record: RelayRecord, timestamp: float) -> "RelayUpdate":
        return cls(
            relay_id=record.relay_id,
            status=record.status,
            progress=record.progress,
            timestamp=timestamp,
            error=record.error,
            destination_transaction_hash=record.destination_transaction_hash,
        )


@dataclass
class BalanceUpdate:
    """Observed balance for an (address, chain, token) triple."""

    address: str
    chain_id: int
    balance: str  # base units, decimal string
    timestamp: float
    token_address: Optional[str] = None  # None for the native token
    previous_balance: Optional[str] = None


@dataclass
class ChainBalances:
    """Native and token balances for one chain."""

    native: str = "0"
    tokens: dict[str, str] = field(default_factory=dict)


@dataclass
class RelayQuote:
    """Quote for relaying value into the settlement chain."""

    id: str
    from_chain_id: int
    to_chain_id: int
    from_token: str
    to_token: Optional[str]
    amount: str
    estimated_output: str
    fees: str
    estimated_time: int  # seconds
    is_fallback: bool = False
