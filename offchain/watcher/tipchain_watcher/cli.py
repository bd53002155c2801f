"""
CLI for the TipChain status watchers.
"""

import asyncio
from typing import Optional

import structlog
import typer
from dotenv import load_dotenv

from . import __version__
from .balance import BalanceRefreshTimeout
from .chains import APECHAIN, chain_name
from .config import BalanceWatchOptions, RelayWatchOptions, WatchTransactionOptions, get_settings
from .models import (
    BalanceUpdate,
    RelayRecord,
    RelayStatus,
    RelayUpdate,
    TransactionStatus,
    TransactionStatusUpdate,
)
from .resolvers import generate_relay_id
from .rpc import ChainRPCError
from .service import WatcherService

structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(),
    ]
)

app = typer.Typer(
    name="tipchain-watcher",
    help="TipChain transaction, relay and balance watcher",
    add_completion=False,
)


def main() -> None:
    """Entry point."""
    load_dotenv()
    app()


def _print_tx_update(update: TransactionStatusUpdate) -> None:
    line = f"[{update.status.value}] {update.transaction_hash}"
    if update.receipt is not None:
        line += f" block={update.receipt.block_number} confirmations={update.receipt.confirmations}"
    if update.error:
        line += f" ({update.error})"
    typer.echo(line)


def _print_relay_update(update: RelayUpdate) -> None:
    line = f"[{update.status.value}] {update.relay_id} {update.progress:.0f}%"
    if update.destination_transaction_hash:
        line += f" dest={update.destination_transaction_hash}"
    if update.error:
        line += f" ({update.error})"
    typer.echo(line)


def _print_balance_update(update: BalanceUpdate) -> None:
    token = update.token_address or "native"
    if update.previous_balance is None:
        typer.echo(f"{chain_name(update.chain_id)} {token}: {update.balance}")
    else:
        typer.echo(
            f"{chain_name(update.chain_id)} {token}: {update.previous_balance} -> {update.balance}"
        )


@app.command()
def watch_tx(
    tx_hash: str = typer.Argument(..., help="Transaction hash"),
    chain_id: int = typer.Option(APECHAIN.id, "--chain", "-c", help="Chain ID"),
    confirmations: int = typer.Option(1, "--confirmations", help="Confirmations required"),
    timeout: float = typer.Option(300.0, "--timeout", help="Overall deadline in seconds"),
    retry_interval: float = typer.Option(3.0, "--interval", help="Seconds between polls"),
    max_retries: int = typer.Option(100, "--max-retries", help="Re-poll attempts"),
) -> None:
    """
    Watch a transaction until it is confirmed or fails.
    """
    options = WatchTransactionOptions(
        max_retries=max_retries,
        retry_interval=retry_interval,
        timeout=timeout,
        confirmations_required=confirmations,
    )

    async def _watch() -> TransactionStatusUpdate:
        async with WatcherService.from_settings(get_settings()) as service:
            return await service.transactions.watch_with_progress(
                tx_hash, chain_id, _print_tx_update, options
            )

    typer.echo(f"Watching {tx_hash} on {chain_name(chain_id)}...")
    result = asyncio.run(_watch())
    if result.status != TransactionStatus.CONFIRMED:
        raise typer.Exit(1)


@app.command()
def relay_status(
    relay_id: str = typer.Argument(..., help="Relay ID"),
    source_chain: int = typer.Argument(..., help="Source chain ID"),
    destination_chain: int = typer.Argument(..., help="Destination chain ID"),
    source_tx_hash: str = typer.Argument(..., help="Source transaction hash"),
) -> None:
    """
    Show the current status of a relay.
    """

    async def _status() -> None:
        async with WatcherService.from_settings(get_settings()) as service:
            record = await service.relays.get_status(
                relay_id, source_chain, destination_chain, source_tx_hash
            )

        typer.echo(f"Relay: {record.relay_id}")
        typer.echo(f"  Route: {chain_name(record.source_chain)} -> {chain_name(record.destination_chain)}")
        typer.echo(f"  Status: {record.status.value}")
        typer.echo(f"  Progress: {record.progress:.0f}%")
        if record.destination_transaction_hash:
            typer.echo(f"  Destination tx: {record.destination_transaction_hash}")
        if record.estimated_completion_time:
            typer.echo(f"  ETA: {record.estimated_completion_time:.0f}")
        if record.error:
            typer.echo(f"  Error: {record.error}")

    asyncio.run(_status())


@app.command()
def track_relay(
    relay_id: str = typer.Argument(..., help="Relay ID"),
    source_chain: int = typer.Argument(..., help="Source chain ID"),
    destination_chain: int = typer.Argument(..., help="Destination chain ID"),
    source_tx_hash: str = typer.Argument(..., help="Source transaction hash"),
    max_wait: float = typer.Option(600.0, "--max-wait", help="Overall deadline in seconds"),
    poll_interval: float = typer.Option(5.0, "--interval", help="Seconds between polls"),
    changes_only: bool = typer.Option(
        False, "--changes-only", help="Only print when progress or status changes"
    ),
) -> None:
    """
    Track a relay until it completes or fails.
    """
    options = RelayWatchOptions(
        max_wait_time=max_wait,
        poll_interval=poll_interval,
        enable_progress_updates=not changes_only,
    )

    async def _track() -> RelayRecord:
        async with WatcherService.from_settings(get_settings()) as service:
            return await service.relays.track_with_progress(
                relay_id,
                source_chain,
                destination_chain,
                source_tx_hash,
                _print_relay_update,
                options,
            )

    record = asyncio.run(_track())
    if record.status != RelayStatus.COMPLETED:
        raise typer.Exit(1)


@app.command()
def balance(
    address: str = typer.Argument(..., help="Wallet address"),
    chain_id: int = typer.Option(APECHAIN.id, "--chain", "-c", help="Chain ID"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="ERC-20 token address"),
) -> None:
    """
    Read a native or token balance.
    """

    async def _balance() -> str:
        async with WatcherService.from_settings(get_settings()) as service:
            return await service.balances.get_balance(address, chain_id, token, use_cache=False)

    try:
        value = asyncio.run(_balance())
    except ChainRPCError as e:
        typer.echo(f"Error reading balance: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(value)


@app.command()
def balances(
    address: str = typer.Argument(..., help="Wallet address"),
    chains: list[int] = typer.Option(..., "--chain", "-c", help="Chain ID (repeatable)"),
) -> None:
    """
    Read native balances across several chains.
    """

    async def _balances():
        async with WatcherService.from_settings(get_settings()) as service:
            return await service.balances.get_multi_chain_balances(address, chains)

    for chain_id, result in asyncio.run(_balances()).items():
        typer.echo(f"{chain_name(chain_id)}: {result.native}")


@app.command()
def watch_balance(
    address: str = typer.Argument(..., help="Wallet address"),
    chain_id: int = typer.Option(APECHAIN.id, "--chain", "-c", help="Chain ID"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="ERC-20 token address"),
    poll_interval: float = typer.Option(10.0, "--interval", help="Seconds between reads"),
    after_tx: Optional[str] = typer.Option(
        None, "--after-tx", help="Wait for the balance to change after this transaction, then exit"
    ),
) -> None:
    """
    Print balance changes until interrupted.
    """

    async def _watch() -> None:
        async with WatcherService.from_settings(get_settings()) as service:
            service.balances.watch(
                address,
                chain_id,
                _print_balance_update,
                token_address=token,
                options=BalanceWatchOptions(poll_interval=poll_interval),
            )
            if after_tx:
                await service.balances.refresh_after_transaction(after_tx, address, chain_id, token)
                return
            while True:
                await asyncio.sleep(3600)

    typer.echo("Watching balance. Press Ctrl+C to stop.")
    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        typer.echo("\nStopping watcher...")
    except BalanceRefreshTimeout as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def relay_id(
    tx_hash: str = typer.Argument(..., help="Source transaction hash"),
) -> None:
    """
    Generate a relay ID for a source transaction.
    """
    typer.echo(generate_relay_id(tx_hash))


@app.command()
def version() -> None:
    """
    Show version.
    """
    typer.echo(f"tipchain-watcher {__version__}")


if __name__ == "__main__":
    main()
