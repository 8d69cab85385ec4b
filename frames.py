"""
Pure conversions of Deribit results into pandas DataFrames.

No I/O, no network calls: just record-to-DataFrame transformations used by
the CLI and by callers doing analysis.
"""

import pandas as pd

from models import OrderBook, Trade, TradingViewChart

CANDLE_COLUMNS = ['open', 'high', 'low', 'close', 'volume', 'cost']


def chart_to_frame(chart: TradingViewChart) -> pd.DataFrame:
    """OHLCV candles indexed by UTC timestamp."""
    df = pd.DataFrame({
        'timestamp': pd.to_datetime(chart.ticks, unit='ms', utc=True),
        **{col: getattr(chart, col) for col in CANDLE_COLUMNS},
    })
    return df.set_index('timestamp')


def trades_to_frame(trades: list[Trade]) -> pd.DataFrame:
    """One row per trade, oldest first, with a signed amount column."""
    columns = ['trade_id', 'timestamp', 'direction', 'price', 'amount']
    if not trades:
        return pd.DataFrame(columns=columns + ['signed_amount'])

    df = pd.DataFrame([{col: getattr(t, col) for col in columns} for t in trades])
    df['timestamp'] = pd.to_datetime(df['timestamp'], unit='ms', utc=True)
    df['signed_amount'] = df['amount'].where(df['direction'] == 'buy', -df['amount'])
    return df.sort_values('timestamp').reset_index(drop=True)


def book_to_frame(book: OrderBook) -> pd.DataFrame:
    """Bids and asks side by side with cumulative amounts per side."""
    frames = []
    for side, levels in (('bid', book.bids), ('ask', book.asks)):
        side_df = pd.DataFrame(levels, columns=['price', 'amount'])
        side_df['side'] = side
        side_df['cumulative'] = side_df['amount'].cumsum()
        frames.append(side_df)
    return pd.concat(frames, ignore_index=True)[['side', 'price', 'amount', 'cumulative']]


def vwap(trades: list[Trade]) -> float | None:
    """Volume-weighted average price of a list of trades."""
    df = trades_to_frame(trades)
    total = df['amount'].sum()
    if not total:
        return None
    return round(float((df['price'] * df['amount']).sum() / total), 8)
