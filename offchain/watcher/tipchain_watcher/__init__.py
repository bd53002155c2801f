"""
TipChain Watcher

Tracks the asynchronous side of multi-chain tipping: transaction
confirmation, cross-chain relay completion into the settlement chain, and
wallet balance changes. Each watcher runs one cancellable poll loop per key
and shares its result with every caller asking for the same key.

Usage:
    # Watch a transaction until it confirms
    tipchain-watcher watch-tx 0xabc... --chain 8453

    # Track a relay into ApeChain
    tipchain-watcher track-relay relay_abc12345_1700000000000 8453 33139 0xabc...

    # Print balance changes
    tipchain-watcher watch-balance 0x1234... --chain 33139
"""

__version__ = "0.1.0"

from .balance import BalanceRefreshTimeout, BalanceWatcher
from .config import (
    BalanceWatchOptions,
    RelayWatchOptions,
    Settings,
    WatchTransactionOptions,
    get_settings,
)
from .models import (
    BalanceUpdate,
    ChainBalances,
    RelayQuote,
    RelayRecord,
    RelayStatus,
    RelayUpdate,
    TransactionReceipt,
    TransactionStatus,
    TransactionStatusUpdate,
)
from .relay import RelayTracker
from .relay_api import QuoteRequest, RelayApiClient, RelayApiError
from .resolvers import (
    ApiStatusResolver,
    FallbackResolver,
    HeuristicStatusResolver,
    NullDestinationResolver,
    estimate_relay_time,
    generate_relay_id,
)
from .rpc import ChainRPC, ChainRPCError, MockChainRPC
from .service import WatcherService
from .transaction import TransactionWatcher
from .watch import SystemClock, VirtualClock, WatchCancelledError

__all__ = [
    "__version__",
    "Settings",
    "get_settings",
    "WatchTransactionOptions",
    "RelayWatchOptions",
    "BalanceWatchOptions",
    "TransactionStatus",
    "TransactionReceipt",
    "TransactionStatusUpdate",
    "RelayStatus",
    "RelayRecord",
    "RelayUpdate",
    "RelayQuote",
    "BalanceUpdate",
    "ChainBalances",
    "TransactionWatcher",
    "RelayTracker",
    "BalanceWatcher",
    "BalanceRefreshTimeout",
    "WatcherService",
    "ChainRPC",
    "ChainRPCError",
    "MockChainRPC",
    "RelayApiClient",
    "RelayApiError",
    "QuoteRequest",
    "ApiStatusResolver",
    "HeuristicStatusResolver",
    "FallbackResolver",
    "NullDestinationResolver",
    "estimate_relay_time",
    "generate_relay_id",
    "SystemClock",
    "VirtualClock",
    "WatchCancelledError",
]
