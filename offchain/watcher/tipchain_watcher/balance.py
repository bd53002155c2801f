"""
Balance watcher.

Keeps a short-lived cache of native and ERC-20 balances and runs persistent
per-key poll loops that report changes. Unlike the transaction and relay
watchers, a balance watch never terminates on its own; it runs until it is
cancelled.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Optional

import structlog

from .config import BalanceWatchOptions
from .models import BalanceUpdate, ChainBalances
from .rpc import BalanceSource, ChainRPCError
from .watch import Clock, PollState, SingleFlight, SystemClock, WatchHandle, balance_key, notify

logger = structlog.get_logger()

BalanceCallback = Callable[[BalanceUpdate], None]


class BalanceRefreshTimeout(Exception):
    """Balance did not change within the refresh window."""

    def __init__(self, key: str, max_wait: float):
        self.key = key
        self.max_wait = max_wait
        super().__init__(f"Balance refresh timeout after {max_wait:g}s: {key}")


@dataclass
class _CacheEntry:
    balance: str
    timestamp: float


class BalanceWatcher:
    """
    Watches balances and serves cached reads.

    Every read stores (balance, timestamp) under the balance key; cached
    reads younger than cache_ttl skip the chain. A watch compares each read
    against the last value it reported, so refresh_after_transaction and a
    running watch report one change exactly once between them.
    """

    def __init__(
        self,
        source: BalanceSource,
        clock: Optional[Clock] = None,
        cache_ttl: float = 5.0,
        refresh_interval: float = 2.0,
    ):
        self.source = source
        self.clock = clock or SystemClock()
        self.cache_ttl = cache_ttl
        self.refresh_interval = refresh_interval
        self._cache: dict[str, _CacheEntry] = {}
        self._watches: SingleFlight[None] = SingleFlight("balance")

    @property
    def active_count(self) -> int:
        return len(self._watches)

    def watch(
        self,
        address: str,
        chain_id: int,
        on_change: BalanceCallback,
        token_address: Optional[str] = None,
        options: Optional[BalanceWatchOptions] = None,
    ) -> str:
        """
        Start a persistent watch and return its key.

        An existing watch for the same key is replaced. Must be called from
        a running event loop.
        """
        opts = options or BalanceWatchOptions()
        key = balance_key(chain_id, address, token_address)
        if key in self._watches:
            self.cancel(key)

        handle, _ = self._watches.get_or_start(
            key, lambda h: self._poll(h, address, chain_id, token_address, opts)
        )
        handle.context = (chain_id, address, token_address)
        handle.listeners.append(on_change)
        logger.info(
            "balance_watch_started",
            address=address,
            chain_id=chain_id,
            token=token_address or "native",
            poll_interval=opts.poll_interval,
        )
        return key

    async def get_balance(
        self,
        address: str,
        chain_id: int,
        token_address: Optional[str] = None,
        use_cache: bool = True,
    ) -> str:
        """
        Read a balance in base units, from cache when fresh.

        Raises:
            ChainRPCError: if the chain read fails
        """
        key = balance_key(chain_id, address, token_address)
        if use_cache:
            cached = self.get_cached(address, chain_id, token_address)
            if cached is not None:
                return cached
        return await self._read(key, address, chain_id, token_address)

    def get_cached(
        self, address: str, chain_id: int, token_address: Optional[str] = None
    ) -> Optional[str]:
        """Cached balance if still fresh, else None."""
        entry = self._cache.get(balance_key(chain_id, address, token_address))
        if entry is not None and self.clock.now() - entry.timestamp < self.cache_ttl:
            return entry.balance
        return None

    async def refresh_after_transaction(
        self,
        tx_hash: str,
        address: str,
        chain_id: int,
        token_address: Optional[str] = None,
        max_wait: float = 30.0,
    ) -> BalanceUpdate:
        """
        Poll until the balance moves away from its value at the first read.

        Read failures, including a failed baseline read, are logged and
        retried until the deadline.

        Raises:
            BalanceRefreshTimeout: if nothing changes within max_wait
        """
        key = balance_key(chain_id, address, token_address)
        deadline = self.clock.now() + max_wait
        baseline: Optional[str] = None

        while True:
            try:
                current = await self._read(key, address, chain_id, token_address)
            except ChainRPCError as e:
                logger.warning("balance_refresh_read_failed", tx_hash=tx_hash, key=key, error=str(e))
            else:
                if baseline is None:
                    baseline = current
                    logger.debug("balance_refresh_started", tx_hash=tx_hash, key=key, baseline=baseline)
                elif current != baseline:
                    update = BalanceUpdate(
                        address=address,
                        chain_id=chain_id,
                        balance=current,
                        timestamp=self.clock.now(),
                        token_address=token_address,
                        previous_balance=baseline,
                    )
                    self._observe(key, update)
                    logger.info("balance_refreshed", tx_hash=tx_hash, key=key, balance=current)
                    return update

            if self.clock.now() >= deadline:
                logger.warning("balance_refresh_timeout", tx_hash=tx_hash, key=key)
                raise BalanceRefreshTimeout(key, max_wait)

            remaining = max(deadline - self.clock.now(), 0.0)
            await self.clock.sleep(min(self.refresh_interval, remaining))

    async def get_multi_chain_balances(
        self,
        address: str,
        chain_ids: list[int],
        token_addresses: Optional[dict[int, list[str]]] = None,
    ) -> dict[int, ChainBalances]:
        """Native and token balances per chain, read concurrently."""
        tokens_by_chain = token_addresses or {}

        async def _chain(chain_id: int) -> ChainBalances:
            try:
                native = await self.get_balance(address, chain_id)
                tokens = tokens_by_chain.get(chain_id, [])
                values = await asyncio.gather(
                    *(self.get_balance(address, chain_id, token) for token in tokens)
                )
                return ChainBalances(native=native, tokens=dict(zip(tokens, values)))
            except ChainRPCError as e:
                logger.warning("chain_balances_failed", chain_id=chain_id, address=address, error=str(e))
                return ChainBalances()

        results = await asyncio.gather(*(_chain(chain_id) for chain_id in chain_ids))
        return dict(zip(chain_ids, results))

    async def refresh_all(self) -> None:
        """Force an uncached read for every active watch, reporting changes."""
        handles = list(self._watches)

        async def _refresh(handle: WatchHandle[None]) -> None:
            chain_id, address, token_address = handle.context
            try:
                balance = await self._read(handle.key, address, chain_id, token_address)
            except ChainRPCError as e:
                logger.warning("balance_refresh_all_failed", key=handle.key, error=str(e))
                return
            self._observe(
                handle.key,
                BalanceUpdate(
                    address=address,
                    chain_id=chain_id,
                    balance=balance,
                    timestamp=self.clock.now(),
                    token_address=token_address,
                ),
            )

        await asyncio.gather(*(_refresh(handle) for handle in handles))

    def cancel(self, key: str) -> bool:
        """Stop a watch and drop its cache entry. Returns False if unknown."""
        self._cache.pop(key, None)
        return self._watches.cancel(key)

    def cancel_all_for(
        self, address: str, chain_id: int, token_address: Optional[str] = None
    ) -> bool:
        return self.cancel(balance_key(chain_id, address, token_address))

    def cancel_all(self) -> int:
        """Stop every watch and clear the cache."""
        count = self._watches.cancel_all()
        self._cache.clear()
        return count

    def clear_cache(self) -> None:
        self._cache.clear()

    async def _read(
        self, key: str, address: str, chain_id: int, token_address: Optional[str]
    ) -> str:
        if token_address:
            balance = await self.source.get_token_balance(address, token_address, chain_id)
        else:
            balance = await self.source.get_native_balance(address, chain_id)
        self._cache[key] = _CacheEntry(balance=balance, timestamp=self.clock.now())
        return balance

    def _observe(self, key: str, update: BalanceUpdate) -> None:
        """Report a fresh read to the watch for key if the value changed."""
        handle = self._watches.get(key)
        if handle is None or handle.last_value is None:
            return
        if update.balance == handle.last_value:
            return
        previous = handle.last_value
        handle.last_value = update.balance
        logger.info("balance_changed", key=key, previous=previous, balance=update.balance)
        self._emit(handle, replace(update, previous_balance=previous))

    def _emit(self, handle: WatchHandle[None], update: BalanceUpdate) -> None:
        for listener in list(handle.listeners):
            notify(listener, update, key=handle.key)

    async def _poll(
        self,
        handle: WatchHandle[None],
        address: str,
        chain_id: int,
        token_address: Optional[str],
        opts: BalanceWatchOptions,
    ) -> None:
        while not handle.token.cancelled:
            handle.state = PollState.READING
            try:
                balance = await self._read(handle.key, address, chain_id, token_address)
            except ChainRPCError as e:
                logger.warning("balance_poll_error", key=handle.key, error=str(e))
            else:
                if handle.token.cancelled:
                    self._cache.pop(handle.key, None)
                    break
                update = BalanceUpdate(
                    address=address,
                    chain_id=chain_id,
                    balance=balance,
                    timestamp=self.clock.now(),
                    token_address=token_address,
                )
                if handle.last_value is None:
                    handle.last_value = balance
                    if opts.emit_initial:
                        self._emit(handle, update)
                elif not handle.token.cancelled:
                    self._observe(handle.key, update)

            handle.state = PollState.SLEEPING
            await self.clock.sleep(opts.poll_interval, handle.token)

        handle.state = PollState.TERMINAL
