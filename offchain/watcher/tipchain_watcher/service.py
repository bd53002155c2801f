"""
Watcher service: owns the three watchers and their shared resources.
"""

from typing import Optional, Union

import structlog

from .balance import BalanceWatcher
from .config import APECHAIN_ID, Settings, get_settings
from .relay import RelayTracker
from .relay_api import RelayApiClient
from .resolvers import (
    ApiStatusResolver,
    DestinationResolver,
    FallbackResolver,
    HeuristicStatusResolver,
)
from .rpc import ChainRPC, MockChainRPC
from .transaction import TransactionWatcher
from .watch import Clock, SystemClock

logger = structlog.get_logger()


class WatcherService:
    """
    One instance per application.

    The relay tracker reads source settlement through the same
    transaction watcher, and balances share the chain reader.
    """

    def __init__(
        self,
        rpc: Union[ChainRPC, MockChainRPC],
        relay_api: Optional[RelayApiClient] = None,
        destinations: Optional[DestinationResolver] = None,
        clock: Optional[Clock] = None,
        settlement_chain_id: int = APECHAIN_ID,
        balance_cache_ttl: float = 5.0,
        balance_refresh_interval: float = 2.0,
    ):
        self.rpc = rpc
        self.relay_api = relay_api
        self.clock = clock or SystemClock()

        self.transactions = TransactionWatcher(rpc, clock=self.clock)

        heuristic = HeuristicStatusResolver(
            self.transactions,
            destinations,
            clock=self.clock,
            settlement_chain_id=settlement_chain_id,
        )
        resolver = (
            FallbackResolver(ApiStatusResolver(relay_api), heuristic)
            if relay_api is not None
            else heuristic
        )
        self.relays = RelayTracker(self.transactions, resolver, clock=self.clock)

        self.balances = BalanceWatcher(
            rpc,
            clock=self.clock,
            cache_ttl=balance_cache_ttl,
            refresh_interval=balance_refresh_interval,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "WatcherService":
        """Build a service backed by live RPC endpoints and the bridging API."""
        settings = settings or get_settings()
        return cls(
            rpc=ChainRPC(settings),
            relay_api=RelayApiClient(
                base_url=settings.resolved_relay_api_url(),
                timeout=settings.request_timeout,
            ),
            settlement_chain_id=settings.settlement_chain_id,
            balance_cache_ttl=settings.balance_cache_ttl,
            balance_refresh_interval=settings.balance_refresh_interval,
        )

    def cancel_all(self) -> int:
        """Cancel every active watch. Returns how many were cancelled."""
        count = self.relays.cancel_all() + self.transactions.cancel_all() + self.balances.cancel_all()
        if count:
            logger.info("watches_cancelled", count=count)
        return count

    async def aclose(self) -> None:
        """Cancel everything and release network clients."""
        self.cancel_all()
        if self.relay_api is not None:
            await self.relay_api.aclose()
        await self.rpc.close()

    async def __aenter__(self) -> "WatcherService":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
