"""
Relay tracker.

Follows a cross-chain relay from its source transaction to completion on
the destination chain. Source settlement is read through the
TransactionWatcher; once it is confirmed a StatusResolver (bridging API
with heuristic fallback) supplies the relay status.
"""

import asyncio
from dataclasses import dataclass, replace
from typing import Callable, Optional

import structlog

from .config import RelayWatchOptions
from .models import RelayRecord, RelayStatus, RelayUpdate, TransactionStatus
from .relay_api import RelayApiError
from .resolvers import HeuristicStatusResolver, RelayContext, StatusResolver
from .rpc import ChainRPCError
from .transaction import TransactionWatcher
from .watch import Clock, PollState, SingleFlight, SystemClock, WatchCancelledError, WatchHandle, notify

logger = structlog.get_logger()

RelayCallback = Callable[[RelayUpdate], None]

PROGRESS_SOURCE_PENDING = 25.0
PROGRESS_INITIATED = 10.0


@dataclass
class _Listener:
    """Progress subscriber with its own update filter."""

    callback: RelayCallback
    enable_progress_updates: bool = True
    last_progress: Optional[float] = None
    last_status: Optional[RelayStatus] = None

    def deliver(self, update: RelayUpdate, final: bool = False) -> None:
        changed = update.progress != self.last_progress or update.status != self.last_status
        if not (final or self.enable_progress_updates or changed):
            return
        self.last_progress = update.progress
        self.last_status = update.status
        notify(self.callback, update, relay_id=update.relay_id)


class RelayTracker:
    """
    Tracks relays until they complete, fail, or exceed max_wait_time.

    Progress reported to listeners never decreases while the relay is
    healthy: each new estimate is clamped to the highest progress already
    reported. A failed status is reported as-is.
    """

    def __init__(
        self,
        transactions: TransactionWatcher,
        resolver: Optional[StatusResolver] = None,
        clock: Optional[Clock] = None,
    ):
        self.transactions = transactions
        self.clock = clock or SystemClock()
        self.resolver = resolver or HeuristicStatusResolver(transactions, clock=self.clock)
        self._relays: SingleFlight[RelayRecord] = SingleFlight("relay")

    @property
    def active_count(self) -> int:
        return len(self._relays)

    def is_tracking(self, relay_id: str) -> bool:
        return relay_id in self._relays

    def get_cached(self, relay_id: str) -> Optional[RelayRecord]:
        """Latest record of an active tracking loop, if any."""
        handle = self._relays.get(relay_id)
        return handle.last_value if handle else None

    async def get_status(
        self,
        relay_id: str,
        source_chain: int,
        destination_chain: int,
        source_tx_hash: str,
    ) -> RelayRecord:
        """Single-shot status derivation. Read failures yield a failed record."""
        ctx = RelayContext(relay_id, source_chain, destination_chain, source_tx_hash)
        try:
            return await self.derive(ctx)
        except (ChainRPCError, RelayApiError) as e:
            logger.error("relay_status_failed", relay_id=relay_id, error=str(e))
            return ctx.record(RelayStatus.FAILED, 0.0, error=str(e))

    async def derive(self, ctx: RelayContext) -> RelayRecord:
        """
        Derive relay status from the source transaction and the resolver.

        Raises:
            ChainRPCError: if the source status cannot be read
        """
        record, _ = await self._derive(ctx)
        return record

    async def _derive(self, ctx: RelayContext) -> tuple[RelayRecord, RelayContext]:
        source = await self.transactions.fetch_status(ctx.source_transaction_hash, ctx.source_chain)

        if source == TransactionStatus.NOT_FOUND:
            return ctx.record(RelayStatus.FAILED, 0.0, error="Source transaction not found"), ctx
        if source == TransactionStatus.FAILED:
            return ctx.record(RelayStatus.FAILED, 0.0, error="Source transaction failed"), ctx
        if source == TransactionStatus.PENDING:
            return ctx.record(RelayStatus.PENDING, PROGRESS_SOURCE_PENDING), ctx

        if ctx.first_seen is None:
            ctx = replace(ctx, first_seen=self.clock.now())
        record = await self.resolver.resolve(ctx)
        if record is None:
            return ctx.record(RelayStatus.INITIATED, PROGRESS_INITIATED), ctx
        return record, ctx

    def start(
        self,
        relay_id: str,
        source_chain: int,
        destination_chain: int,
        source_tx_hash: str,
        options: Optional[RelayWatchOptions] = None,
    ) -> "asyncio.Task[RelayRecord]":
        """Start tracking, or attach to the running loop for this relay id."""
        ctx = RelayContext(relay_id, source_chain, destination_chain, source_tx_hash)
        return self._handle(ctx, options).task

    async def track(
        self,
        relay_id: str,
        source_chain: int,
        destination_chain: int,
        source_tx_hash: str,
        options: Optional[RelayWatchOptions] = None,
    ) -> RelayRecord:
        """
        Wait until the relay completes or tracking fails.

        Raises:
            WatchCancelledError: if tracking is cancelled
        """
        task = self.start(relay_id, source_chain, destination_chain, source_tx_hash, options)
        return await asyncio.shield(task)

    async def track_with_progress(
        self,
        relay_id: str,
        source_chain: int,
        destination_chain: int,
        source_tx_hash: str,
        on_update: RelayCallback,
        options: Optional[RelayWatchOptions] = None,
    ) -> RelayRecord:
        """
        Track with a callback. Cancellation is reported as a failed update
        rather than raised.
        """
        opts = options or RelayWatchOptions()
        ctx = RelayContext(relay_id, source_chain, destination_chain, source_tx_hash)
        handle = self._handle(ctx, opts)
        listener = _Listener(on_update, enable_progress_updates=opts.enable_progress_updates)
        handle.listeners.append(listener)
        try:
            return await asyncio.shield(handle.task)
        except WatchCancelledError as e:
            last: Optional[RelayRecord] = handle.last_value
            record = ctx.record(
                RelayStatus.FAILED,
                last.progress if last else 0.0,
                error=e.message,
            )
            listener.deliver(RelayUpdate.from_record(record, self.clock.now()), final=True)
            return record
        finally:
            if listener in handle.listeners:
                handle.listeners.remove(listener)

    def cancel(self, relay_id: str) -> bool:
        """Cancel tracking. Its pending result fails with WatchCancelledError."""
        return self._relays.cancel(relay_id)

    def cancel_all(self) -> int:
        return self._relays.cancel_all()

    def _handle(
        self, ctx: RelayContext, options: Optional[RelayWatchOptions]
    ) -> WatchHandle[RelayRecord]:
        opts = options or RelayWatchOptions()
        handle, started = self._relays.get_or_start(
            ctx.relay_id, lambda h: self._poll(h, ctx, opts)
        )
        if started:
            logger.info(
                "relay_tracking_started",
                relay_id=ctx.relay_id,
                source_chain=ctx.source_chain,
                destination_chain=ctx.destination_chain,
                max_wait_time=opts.max_wait_time,
            )
        return handle

    async def _poll(
        self,
        handle: WatchHandle[RelayRecord],
        ctx: RelayContext,
        opts: RelayWatchOptions,
    ) -> RelayRecord:
        deadline = self.clock.now() + opts.max_wait_time
        attempt = 0

        while True:
            handle.state = PollState.SCHEDULED
            if handle.token.cancelled:
                raise WatchCancelledError(handle.key, "Relay tracking was cancelled")

            last: Optional[RelayRecord] = handle.last_value
            if self.clock.now() >= deadline:
                base = last or ctx.record(RelayStatus.FAILED, 0.0)
                return self._finish(
                    handle,
                    replace(
                        base,
                        status=RelayStatus.FAILED,
                        error=f"Relay tracking timeout after {opts.max_wait_time:g}s",
                    ),
                )

            handle.state = PollState.READING
            attempt += 1
            record: Optional[RelayRecord] = None
            try:
                record, ctx = await self._derive(ctx)
            except (ChainRPCError, RelayApiError) as e:
                logger.warning("relay_poll_error", relay_id=ctx.relay_id, attempt=attempt, error=str(e))

            if record is not None:
                if (
                    last is not None
                    and record.status != RelayStatus.FAILED
                    and record.progress < last.progress
                ):
                    record = record.with_progress(last.progress)

                if record.status.is_terminal:
                    if record.status == RelayStatus.COMPLETED and record.actual_completion_time is None:
                        record = replace(record, actual_completion_time=self.clock.now())
                    return self._finish(handle, record)

                handle.last_value = record
                self._emit(handle, record)

            handle.state = PollState.SLEEPING
            remaining = max(deadline - self.clock.now(), 0.0)
            await self.clock.sleep(min(opts.poll_interval, remaining), handle.token)

    def _finish(self, handle: WatchHandle[RelayRecord], record: RelayRecord) -> RelayRecord:
        handle.state = PollState.TERMINAL
        handle.last_value = record
        if record.status == RelayStatus.COMPLETED:
            logger.info(
                "relay_completed",
                relay_id=record.relay_id,
                destination_tx=record.destination_transaction_hash,
            )
        else:
            logger.warning("relay_tracking_failed", relay_id=record.relay_id, error=record.error)
        self._emit(handle, record, final=True)
        return record

    def _emit(self, handle: WatchHandle[RelayRecord], record: RelayRecord, final: bool = False) -> None:
        update = RelayUpdate.from_record(record, self.clock.now())
        for listener in list(handle.listeners):
            listener.deliver(update, final=final)
