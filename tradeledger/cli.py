"""
CLI entrypoint for the trade ledger reconciliation pipeline.

Provides commands for sync, snapshot, completed, active and overview.
"""
import asyncio
from pathlib import Path
from typing import Optional

import typer

from tradeledger.config.config import Config, load_config
from tradeledger.monitoring.logger import get_logger, setup_logging
from tradeledger.storage.db import get_db, init_db

app = typer.Typer(
    name="tradeledger",
    help="Trade ledger reconciliation for venue portfolios",
    add_completion=False,
)

logger = get_logger(__name__)


def _bootstrap(config_path: Optional[Path]) -> Config:
    config = load_config(str(config_path) if config_path else None)
    setup_logging(config.monitoring.log_level, config.monitoring.log_format, config.monitoring.log_file)
    if config.data.database_url:
        init_db(config.data.database_url)
    else:
        get_db()
    return config


def _side_color(value) -> str:
    return typer.colors.GREEN if value >= 0 else typer.colors.RED


@app.command()
def sync(
    portfolio: Optional[int] = typer.Option(None, "--portfolio", "-p", help="Only this portfolio id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Pull new fills and order events from the venue.

    Example:
        tradeledger sync --portfolio 1
    """
    config = _bootstrap(config_path)
    from tradeledger.services.reconciliation_service import ReconciliationService

    service = ReconciliationService(config)
    if portfolio is not None:
        summaries = [asyncio.run(service.sync_portfolio(portfolio))]
    else:
        summaries = asyncio.run(service.sync_all())

    for s in summaries:
        line = f"Portfolio {s.portfolio_id}: {s.fills} fills, {s.orders} order events"
        if s.failed:
            line += f" (failed: {', '.join(s.failed)})"
        if s.busy:
            line += f" (busy: {', '.join(s.busy)})"
        typer.echo(line)


@app.command()
def snapshot(
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Write one balance snapshot for every portfolio with credentials.

    Example:
        tradeledger snapshot
    """
    config = _bootstrap(config_path)
    from tradeledger.services.reconciliation_service import ReconciliationService

    written = asyncio.run(ReconciliationService(config).snapshot_all())
    for portfolio_id, snap in written.items():
        typer.echo(
            f"Portfolio {portfolio_id}: total ${snap.total_balance:,.2f} "
            f"(available ${snap.available_balance:,.2f}, locked ${snap.locked_margin:,.2f}, "
            f"unrealized ${snap.total_pnl:,.2f})"
        )
    if not written:
        typer.echo("No snapshots written.")


@app.command()
def completed(
    portfolio: int = typer.Argument(..., help="Portfolio id"),
    symbol: Optional[str] = typer.Option(None, "--symbol", help="Only this symbol"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    List completed positions rebuilt from the fill ledger.

    Example:
        tradeledger completed 1 --symbol BTCUSDT
    """
    config = _bootstrap(config_path)
    from tradeledger.ledger.lot_matcher import completed_positions

    positions = completed_positions(
        portfolio,
        symbol,
        window=config.ledger.fill_window,
        epsilon=config.ledger.pnl_epsilon,
        limit=config.ledger.max_completed_positions,
        places=config.ledger.decimal_places,
    )
    if not positions:
        typer.echo("No completed positions.")
        return

    typer.echo(f"Completed Positions ({len(positions)})")
    typer.echo("-" * 50)
    for p in positions:
        typer.secho(
            f"  {p.created_at.strftime('%Y-%m-%d %H:%M')} | {p.symbol} | {p.side.value.upper()} | "
            f"{p.quantity} @ {p.entry_price} -> {p.exit_price} | ${p.pnl:,.2f}",
            fg=_side_color(p.pnl),
        )


@app.command()
def active(
    portfolio: int = typer.Argument(..., help="Portfolio id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Show open positions with their exit plan.

    Example:
        tradeledger active 1
    """
    config = _bootstrap(config_path)
    from tradeledger.positions.active_positions import derive_active_positions

    positions = asyncio.run(derive_active_positions(portfolio, venue_config=config.venue))
    if not positions:
        typer.echo("No active positions.")
        return

    for p in positions:
        typer.secho(f"\n{p.symbol} ({p.side.value.upper()})", bold=True)
        typer.echo(f"  Entry:      ${p.entry_price:,.2f}")
        typer.echo(f"  Notional:   ${p.notional:,.2f} ({p.leverage}x)")
        typer.echo(f"  Target:     ${p.exit_plan.target:,.2f}")
        typer.echo(f"  Stop:       ${p.exit_plan.stop:,.2f}")
        typer.secho(f"  Unrealized: ${p.unrealized_pnl:,.2f}", fg=_side_color(p.unrealized_pnl))


@app.command()
def overview(
    portfolio: Optional[int] = typer.Option(None, "--portfolio", "-p", help="Only this portfolio id"),
    config_path: Optional[Path] = typer.Option(None, "--config", help="Path to config file"),
):
    """
    Portfolio overview: balances, PnL and position counts.

    Example:
        tradeledger overview
    """
    config = _bootstrap(config_path)
    from tradeledger.services.reconciliation_service import ReconciliationService

    service = ReconciliationService(config)
    if portfolio is not None:
        result = asyncio.run(service.portfolio_overview(portfolio))
        overviews = [result] if result else []
    else:
        overviews = asyncio.run(service.overview_all())

    if not overviews:
        typer.echo("No visible portfolios.")
        return

    for o in overviews:
        typer.echo("=" * 50)
        typer.secho(f"{o.name} (#{o.portfolio_id})", bold=True)
        typer.echo(f"  Total:      ${o.total_balance:,.2f}")
        typer.echo(f"  Available:  ${o.available_balance:,.2f}")
        typer.echo(f"  Locked:     ${o.locked_margin:,.2f}")
        typer.secho(f"  Realized:   ${o.realized_pnl:,.2f}", fg=_side_color(o.realized_pnl))
        typer.secho(f"  Unrealized: ${o.unrealized_pnl:,.2f}", fg=_side_color(o.unrealized_pnl))
        typer.echo(f"  Active: {len(o.active_positions)} | Completed: {len(o.completed_positions)} | Snapshots: {len(o.snapshots)}")


if __name__ == "__main__":
    app()
