"""
CLI entry point for the Deribit HTTP client.

Small read-only commands for checking connectivity, market data, account
state and the client-side rate limiter from a terminal.
"""

import argparse
import asyncio
import logging
import sys
import time
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config import (
    PRODUCTION_BASE_URL, TESTNET_BASE_URL, ConfigurationError, HttpConfig,
    load_config, load_from_env, validate_config,
)
from deribit_client import DeribitClient
from errors import HttpError
from frames import book_to_frame, chart_to_frame, trades_to_frame, vwap
from logging_utils import setup_logging

logger = logging.getLogger(__name__)
console = Console()


def _handle_config_error(error: ConfigurationError) -> None:
    console.print(f"\n[red]Configuration error:[/] {error}")
    console.print("Set DERIBIT_CLIENT_ID / DERIBIT_CLIENT_SECRET in .env, or pass --config deribit.toml")
    sys.exit(1)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog='deribit-http',
        description='Deribit REST API client',
    )
    parser.add_argument('--config', type=Path, default=None, help='TOML config file (default: environment)')
    network = parser.add_mutually_exclusive_group()
    network.add_argument('--testnet', action='store_true', help='Use test.deribit.com')
    network.add_argument('--production', action='store_true', help='Use www.deribit.com')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')

    sub = parser.add_subparsers(dest='command', required=True)
    sub.add_parser('time', help='Server time')
    sub.add_parser('status', help='Platform lock status')

    p = sub.add_parser('ticker', help='Ticker for an instrument')
    p.add_argument('instrument')

    p = sub.add_parser('instruments', help='Active instruments for a currency')
    p.add_argument('currency')
    p.add_argument('--kind', default=None, help='future, option, spot, ...')

    p = sub.add_parser('book', help='Order book for an instrument')
    p.add_argument('instrument')
    p.add_argument('--depth', type=int, default=10)

    p = sub.add_parser('trades', help='Recent trades for an instrument')
    p.add_argument('instrument')
    p.add_argument('--count', type=int, default=20)

    p = sub.add_parser('chart', help='OHLCV candles for an instrument')
    p.add_argument('instrument')
    p.add_argument('--resolution', default='60')
    p.add_argument('--hours', type=int, default=24)

    p = sub.add_parser('account', help='Account summary (private)')
    p.add_argument('currency')

    p = sub.add_parser('positions', help='Open positions (private)')
    p.add_argument('currency')

    sub.add_parser('limits', help='Client-side rate limiter tokens')
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> HttpConfig:
    """Config file or environment, then --testnet/--production override."""
    config = load_config(args.config) if args.config else load_from_env()
    if args.testnet:
        config = replace(config, base_url=TESTNET_BASE_URL, testnet=True)
    elif args.production:
        config = replace(config, base_url=PRODUCTION_BASE_URL, testnet=False)
    validate_config(config)
    return config


def _frame_table(title: str, df, index: bool = False) -> Table:
    table = Table(title=title)
    if index:
        table.add_column(df.index.name or '', style='cyan')
    for col in df.columns:
        table.add_column(str(col), justify='right')
    for idx, row in df.iterrows():
        cells = [str(idx)] if index else []
        table.add_row(*cells, *(str(v) for v in row.tolist()))
    return table


async def _run_command(client: DeribitClient, args: argparse.Namespace) -> None:
    cmd = args.command

    if cmd == 'time':
        ms = await client.get_server_time()
        console.print(f"Server time: [cyan]{ms}[/] ({time.strftime('%Y-%m-%d %H:%M:%S', time.gmtime(ms / 1000))} UTC)")

    elif cmd == 'status':
        status = await client.get_status()
        console.print(Panel(f"Locked: [cyan]{status.locked}[/]\nLocked indices: {status.locked_indices or '-'}"))

    elif cmd == 'ticker':
        t = await client.get_ticker(args.instrument)
        console.print(Panel(
            f"[bold]{t.instrument_name}[/bold]\n\n"
            f"  Mark:   [cyan]{t.mark_price}[/]\n"
            f"  Last:   [cyan]{t.last_price}[/]\n"
            f"  Bid:    [green]{t.best_bid_price}[/] x {t.best_bid_amount}\n"
            f"  Ask:    [red]{t.best_ask_price}[/] x {t.best_ask_amount}\n"
            f"  Spread: [cyan]{t.spread}[/]\n"
            f"  24h vol: [cyan]{t.stats.volume}[/]",
            border_style="blue",
        ))

    elif cmd == 'instruments':
        instruments = await client.get_instruments(args.currency, kind=args.kind)
        table = Table(title=f"{args.currency} instruments ({len(instruments)})")
        for col in ('Name', 'Kind', 'Tick size', 'Min amount', 'Settlement'):
            table.add_column(col)
        for i in instruments:
            table.add_row(i.instrument_name, str(i.kind), str(i.tick_size),
                          str(i.min_trade_amount), str(i.settlement_period))
        console.print(table)

    elif cmd == 'book':
        book = await client.get_order_book(args.instrument, depth=args.depth)
        console.print(_frame_table(f"{book.instrument_name} order book", book_to_frame(book)))

    elif cmd == 'trades':
        trades = await client.get_last_trades_by_instrument(args.instrument, count=args.count)
        console.print(_frame_table(f"{args.instrument} last trades", trades_to_frame(trades)))
        console.print(f"VWAP: [cyan]{vwap(trades)}[/]")

    elif cmd == 'chart':
        end = await client.get_server_time()
        start = end - args.hours * 3600 * 1000
        chart = await client.get_tradingview_chart_data(args.instrument, start, end, args.resolution)
        console.print(_frame_table(f"{args.instrument} candles ({args.resolution})", chart_to_frame(chart), index=True))

    elif cmd == 'account':
        s = await client.get_account_summary(args.currency)
        console.print(Panel(
            f"[bold]{s.currency} account[/bold]\n\n"
            f"  Balance:   [cyan]{s.balance}[/]\n"
            f"  Equity:    [cyan]{s.equity}[/]\n"
            f"  Available: [cyan]{s.available_funds}[/]\n"
            f"  IM / MM:   [cyan]{s.initial_margin}[/] / [cyan]{s.maintenance_margin}[/]",
            border_style="blue",
        ))

    elif cmd == 'positions':
        positions = await client.get_positions(args.currency)
        table = Table(title=f"{args.currency} positions")
        for col in ('Instrument', 'Direction', 'Size', 'Avg price', 'Mark', 'Total PnL'):
            table.add_column(col)
        for p in positions:
            if p.is_flat:
                continue
            table.add_row(p.instrument_name, p.direction, str(p.size), str(p.average_price),
                          str(p.mark_price), str(p.total_profit_loss))
        console.print(table)

    elif cmd == 'limits':
        table = Table(title="Rate limiter")
        table.add_column("Category", style="bold cyan")
        table.add_column("Tokens", justify="right")
        for category, tokens in (await client.rate_limiter.snapshot()).items():
            table.add_row(category.value, str(tokens))
        console.print(table)


async def run(args: argparse.Namespace) -> int:
    try:
        config = build_config(args)
    except ConfigurationError as e:
        _handle_config_error(e)

    logger.info(f"Using {config.base_url} ({'testnet' if config.testnet else 'production'})")
    async with DeribitClient(config) as client:
        try:
            await _run_command(client, args)
        except HttpError as e:
            logger.error(f"{args.command} failed: {e}")
            console.print(f"[red]Error:[/] {e}")
            return 1
    return 0


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    args = parse_args(argv)
    setup_logging(level='DEBUG' if args.verbose else None)
    sys.exit(asyncio.run(run(args)))


if __name__ == '__main__':
    main()
