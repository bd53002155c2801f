"""
Transaction watcher.

Polls a chain's receipt source until a transaction is confirmed, fails,
runs out of retries, or exceeds its deadline. One poll loop runs per
(chain, transaction hash); later callers share its result.
"""

import asyncio
from typing import Callable, Optional

import structlog

from .config import WatchTransactionOptions
from .models import TransactionReceipt, TransactionStatus, TransactionStatusUpdate
from .rpc import ChainRPCError, ReceiptSource
from .watch import (
    Clock,
    PollState,
    SingleFlight,
    SystemClock,
    WatchCancelledError,
    WatchHandle,
    notify,
    transaction_key,
)

logger = structlog.get_logger()

TransactionCallback = Callable[[TransactionStatusUpdate], None]


class TransactionWatcher:
    """
    Watches transactions until they reach a terminal status.

    Two budgets bound each watch: the retry counter (one unit per
    non-terminal read) and the wall-clock timeout. The deadline is checked
    before a retry is consumed.
    """

    def __init__(self, source: ReceiptSource, clock: Optional[Clock] = None):
        self.source = source
        self.clock = clock or SystemClock()
        self._watches: SingleFlight[TransactionStatusUpdate] = SingleFlight("transaction")

    @property
    def active_count(self) -> int:
        return len(self._watches)

    def is_watching(self, tx_hash: str, chain_id: int) -> bool:
        return transaction_key(chain_id, tx_hash) in self._watches

    def start(
        self,
        tx_hash: str,
        chain_id: int,
        options: Optional[WatchTransactionOptions] = None,
    ) -> "asyncio.Task[TransactionStatusUpdate]":
        """
        Start watching, or attach to the running watch for this key.

        Returns the shared task; every caller for one key gets the same object.
        Must be called from a running event loop.
        """
        return self._handle(tx_hash, chain_id, options).task

    async def watch(
        self,
        tx_hash: str,
        chain_id: int,
        options: Optional[WatchTransactionOptions] = None,
    ) -> TransactionStatusUpdate:
        """
        Wait until the transaction is confirmed or the watch fails.

        Raises:
            WatchCancelledError: if the watch is cancelled
        """
        task = self.start(tx_hash, chain_id, options)
        return await asyncio.shield(task)

    async def watch_with_progress(
        self,
        tx_hash: str,
        chain_id: int,
        on_update: TransactionCallback,
        options: Optional[WatchTransactionOptions] = None,
    ) -> TransactionStatusUpdate:
        """
        Watch with a callback receiving each interim update and exactly one
        terminal update. Cancellation is reported as a failed update rather
        than raised.
        """
        handle = self._handle(tx_hash, chain_id, options)
        handle.listeners.append(on_update)
        try:
            return await asyncio.shield(handle.task)
        except WatchCancelledError as e:
            update = TransactionStatusUpdate(
                transaction_hash=tx_hash,
                status=TransactionStatus.FAILED,
                timestamp=self.clock.now(),
                error=e.message,
            )
            notify(on_update, update, tx_hash=tx_hash)
            return update
        finally:
            if on_update in handle.listeners:
                handle.listeners.remove(on_update)

    async def get_receipt(self, tx_hash: str, chain_id: int) -> Optional[TransactionReceipt]:
        """Single receipt read. Read failures are logged and reported as None."""
        try:
            return await self.source.get_transaction_receipt(tx_hash, chain_id)
        except ChainRPCError as e:
            logger.warning("receipt_read_failed", tx_hash=tx_hash, chain_id=chain_id, error=str(e))
            return None

    async def get_status(self, tx_hash: str, chain_id: int) -> TransactionStatus:
        """Single status read. Read failures are logged and reported as not_found."""
        try:
            return await self.fetch_status(tx_hash, chain_id)
        except ChainRPCError as e:
            logger.warning("status_read_failed", tx_hash=tx_hash, chain_id=chain_id, error=str(e))
            return TransactionStatus.NOT_FOUND

    async def fetch_status(self, tx_hash: str, chain_id: int) -> TransactionStatus:
        """
        Classify a transaction from one receipt read and one mempool check.

        Raises:
            ChainRPCError: if either read fails
        """
        receipt = await self.source.get_transaction_receipt(tx_hash, chain_id)
        if receipt is not None:
            return TransactionStatus.CONFIRMED if receipt.succeeded else TransactionStatus.FAILED

        if await self.source.get_transaction_by_hash(tx_hash, chain_id):
            return TransactionStatus.PENDING
        return TransactionStatus.NOT_FOUND

    def cancel(self, tx_hash: str, chain_id: int) -> bool:
        """Cancel a watch. Its pending result fails with WatchCancelledError."""
        return self._watches.cancel(transaction_key(chain_id, tx_hash))

    def cancel_all(self) -> int:
        return self._watches.cancel_all()

    def _handle(
        self,
        tx_hash: str,
        chain_id: int,
        options: Optional[WatchTransactionOptions],
    ) -> WatchHandle[TransactionStatusUpdate]:
        opts = options or WatchTransactionOptions()
        key = transaction_key(chain_id, tx_hash)
        handle, started = self._watches.get_or_start(
            key, lambda h: self._poll(h, tx_hash, chain_id, opts)
        )
        if started:
            logger.info(
                "transaction_watch_started",
                tx_hash=tx_hash,
                chain_id=chain_id,
                max_retries=opts.max_retries,
                timeout=opts.timeout,
                confirmations_required=opts.confirmations_required,
            )
        return handle

    async def _poll(
        self,
        handle: WatchHandle[TransactionStatusUpdate],
        tx_hash: str,
        chain_id: int,
        opts: WatchTransactionOptions,
    ) -> TransactionStatusUpdate:
        start = self.clock.now()
        deadline = start + opts.timeout
        retries = 0

        while True:
            handle.state = PollState.SCHEDULED
            if handle.token.cancelled:
                raise WatchCancelledError(handle.key, "Transaction watching was cancelled")

            if self.clock.now() >= deadline:
                return self._finish(
                    handle,
                    tx_hash,
                    TransactionStatus.FAILED,
                    error=f"Transaction monitoring timeout after {opts.timeout:g}s",
                )

            handle.state = PollState.READING
            last_error: Optional[str] = None
            try:
                receipt = await self.source.get_transaction_receipt(tx_hash, chain_id)
            except ChainRPCError as e:
                receipt = None
                last_error = str(e)
                logger.warning(
                    "receipt_poll_error",
                    tx_hash=tx_hash,
                    chain_id=chain_id,
                    attempt=retries + 1,
                    error=last_error,
                )

            if receipt is not None and receipt.confirmations >= opts.confirmations_required:
                if receipt.succeeded:
                    return self._finish(handle, tx_hash, TransactionStatus.CONFIRMED, receipt=receipt)
                return self._finish(
                    handle,
                    tx_hash,
                    TransactionStatus.FAILED,
                    receipt=receipt,
                    error="Transaction execution failed",
                )

            if retries >= opts.max_retries:
                error = f"Transaction not found after maximum retries ({retries + 1} attempts)"
                if last_error:
                    error = f"{error}: {last_error}"
                return self._finish(handle, tx_hash, TransactionStatus.FAILED, error=error)

            retries += 1
            if receipt is not None:
                logger.debug(
                    "waiting_for_confirmations",
                    tx_hash=tx_hash,
                    confirmations=receipt.confirmations,
                    required=opts.confirmations_required,
                )
            self._emit(
                handle,
                TransactionStatusUpdate(
                    transaction_hash=tx_hash,
                    status=TransactionStatus.PENDING,
                    timestamp=self.clock.now(),
                    receipt=receipt,
                    error=last_error,
                ),
            )

            handle.state = PollState.SLEEPING
            remaining = max(deadline - self.clock.now(), 0.0)
            await self.clock.sleep(min(opts.retry_interval, remaining), handle.token)

    def _finish(
        self,
        handle: WatchHandle[TransactionStatusUpdate],
        tx_hash: str,
        status: TransactionStatus,
        receipt: Optional[TransactionReceipt] = None,
        error: Optional[str] = None,
    ) -> TransactionStatusUpdate:
        handle.state = PollState.TERMINAL
        update = TransactionStatusUpdate(
            transaction_hash=tx_hash,
            status=status,
            timestamp=self.clock.now(),
            receipt=receipt,
            error=error,
        )
        if status == TransactionStatus.CONFIRMED:
            logger.info(
                "transaction_confirmed",
                tx_hash=tx_hash,
                block_number=receipt.block_number if receipt else None,
            )
        else:
            logger.warning("transaction_watch_failed", tx_hash=tx_hash, error=error)
        self._emit(handle, update)
        return update

    def _emit(
        self, handle: WatchHandle[TransactionStatusUpdate], update: TransactionStatusUpdate
    ) -> None:
        for listener in list(handle.listeners):
            notify(listener, update, tx_hash=update.transaction_hash)
