from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest
from typer.testing import CliRunner

from conftest import FakeVenue, live_position, make_fill
from tradeledger.cli import app
from tradeledger.domain.models import VenueBalance
from tradeledger.storage.repository import append_fills, create_portfolio, get_balance_snapshots

runner = CliRunner()


@pytest.fixture
def cli_env(db, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", db.database_url)
    with patch("tradeledger.cli.setup_logging"):
        yield


def test_completed_lists_matched_positions(portfolio, cli_env):
    append_fills(portfolio.id, [
        make_fill(1, 1, price="100", qty="1", pnl="0", minutes=0),
        make_fill(2, 2, price="110", qty="1", pnl="10", minutes=30, side="SELL"),
    ])

    result = runner.invoke(app, ["completed", str(portfolio.id)])

    assert result.exit_code == 0, result.output
    assert "Completed Positions (1)" in result.output
    assert "BTCUSDT | LONG" in result.output


def test_active_without_credentials(cli_env):
    p = create_portfolio("NoKeys")
    result = runner.invoke(app, ["active", str(p.id)])

    assert result.exit_code == 0, result.output
    assert "No active positions." in result.output


def test_snapshot_writes_rows(portfolio, cli_env):
    venue = FakeVenue()
    venue.positions = [live_position()]
    venue.balance = VenueBalance(available=Decimal("500"), total_margin=Decimal("0"), unrealized_pnl=Decimal("0"))

    with patch("tradeledger.services.reconciliation_service.client_for_portfolio", return_value=venue):
        result = runner.invoke(app, ["snapshot"])

    assert result.exit_code == 0, result.output
    assert f"Portfolio {portfolio.id}: total $580.00" in result.output
    assert len(get_balance_snapshots(portfolio.id)) == 1


def test_active_uses_configured_venue(portfolio, cli_env, tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("venue:\n  base_url: https://custom.example\n  request_timeout_seconds: 5\n")
    fetch = AsyncMock(return_value=[])

    with patch("tradeledger.positions.active_positions.fetch_active_positions", fetch):
        result = runner.invoke(app, ["active", str(portfolio.id), "--config", str(path)])

    assert result.exit_code == 0, result.output
    client = fetch.await_args.args[0]
    assert client.base_url == "https://custom.example"
    assert client.request_timeout == 5.0
