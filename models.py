"""
Typed records for Deribit request parameters and response payloads.

Plain dataclasses: field access plus a few derived getters. Responses are
built with `from_dict`, which ignores keys the record doesn't declare so
new fields added by the exchange don't break parsing.
"""

from dataclasses import asdict, dataclass, field, fields
from enum import Enum


def _known(cls, data: dict) -> dict:
    """Subset of `data` whose keys are fields of dataclass `cls`."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


class OrderType(str, Enum):
    LIMIT = "limit"
    MARKET = "market"
    STOP_LIMIT = "stop_limit"
    STOP_MARKET = "stop_market"
    TAKE_LIMIT = "take_limit"
    TAKE_MARKET = "take_market"
    MARKET_LIMIT = "market_limit"
    TRAILING_STOP = "trailing_stop"


class TimeInForce(str, Enum):
    GOOD_TIL_CANCELLED = "good_til_cancelled"
    GOOD_TIL_DAY = "good_til_day"
    FILL_OR_KILL = "fill_or_kill"
    IMMEDIATE_OR_CANCEL = "immediate_or_cancel"


# -----------------------------------------------
# JSON-RPC envelope
# -----------------------------------------------

@dataclass
class ApiErrorInfo:
    code: int
    message: str
    data: object = None


@dataclass
class ApiResponse:
    """Deribit JSON-RPC response envelope."""
    result: object = None
    error: ApiErrorInfo | None = None
    id: int | None = None
    jsonrpc: str | None = None
    us_in: int | None = None
    us_out: int | None = None
    us_diff: int | None = None
    testnet: bool | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'ApiResponse':
        error = data.get("error")
        return cls(
            result=data.get("result"),
            error=ApiErrorInfo(
                code=int(error.get("code", -1)),
                message=str(error.get("message", "Unknown error")),
                data=error.get("data"),
            ) if isinstance(error, dict) else None,
            id=data.get("id"),
            jsonrpc=data.get("jsonrpc"),
            us_in=data.get("usIn"),
            us_out=data.get("usOut"),
            us_diff=data.get("usDiff"),
            testnet=data.get("testnet"),
        )


# -----------------------------------------------
# Public market data
# -----------------------------------------------

@dataclass
class Currency:
    currency: str
    currency_long: str = ""
    min_confirmations: int | None = None
    min_withdrawal_fee: float | None = None
    withdrawal_fee: float | None = None
    fee_precision: int | None = None
    coin_type: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Currency':
        return cls(**_known(cls, data))


@dataclass
class IndexPrice:
    index_price: float
    estimated_delivery_price: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'IndexPrice':
        return cls(**_known(cls, data))


@dataclass
class TickerStats:
    volume: float | None = None
    volume_usd: float | None = None
    price_change: float | None = None
    high: float | None = None
    low: float | None = None


@dataclass
class Ticker:
    instrument_name: str
    mark_price: float
    timestamp: int = 0
    last_price: float | None = None
    best_bid_price: float | None = None
    best_ask_price: float | None = None
    best_bid_amount: float = 0.0
    best_ask_amount: float = 0.0
    index_price: float | None = None
    open_interest: float | None = None
    mark_iv: float | None = None
    bid_iv: float | None = None
    ask_iv: float | None = None
    current_funding: float | None = None
    funding_8h: float | None = None
    state: str | None = None
    stats: TickerStats = field(default_factory=TickerStats)

    @classmethod
    def from_dict(cls, data: dict) -> 'Ticker':
        values = _known(cls, data)
        values["stats"] = TickerStats(**_known(TickerStats, data.get("stats") or {}))
        return cls(**values)

    @property
    def spread(self) -> float | None:
        if self.best_bid_price is None or self.best_ask_price is None:
            return None
        return self.best_ask_price - self.best_bid_price

    @property
    def mid_price(self) -> float | None:
        if self.best_bid_price is None or self.best_ask_price is None:
            return None
        return (self.best_bid_price + self.best_ask_price) / 2


@dataclass
class Instrument:
    instrument_name: str
    kind: str | None = None
    currency: str | None = None
    base_currency: str | None = None
    quote_currency: str | None = None
    settlement_currency: str | None = None
    settlement_period: str | None = None
    is_active: bool | None = None
    expiration_timestamp: int | None = None
    creation_timestamp: int | None = None
    strike: float | None = None
    option_type: str | None = None
    tick_size: float | None = None
    min_trade_amount: float | None = None
    contract_size: float | None = None
    max_leverage: float | None = None
    maker_commission: float | None = None
    taker_commission: float | None = None
    instrument_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Instrument':
        return cls(**_known(cls, data))

    def is_perpetual(self) -> bool:
        return self.settlement_period == "perpetual"

    def is_option(self) -> bool:
        return self.kind in ("option", "option_combo")

    def is_future(self) -> bool:
        return self.kind in ("future", "future_combo")


@dataclass
class OrderBook:
    instrument_name: str
    timestamp: int = 0
    bids: list[tuple[float, float]] = field(default_factory=list)
    asks: list[tuple[float, float]] = field(default_factory=list)
    mark_price: float | None = None
    index_price: float | None = None
    change_id: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'OrderBook':
        values = _known(cls, data)
        values["bids"] = [(float(p), float(a)) for p, a in data.get("bids", [])]
        values["asks"] = [(float(p), float(a)) for p, a in data.get("asks", [])]
        return cls(**values)

    @property
    def best_bid(self) -> tuple[float, float] | None:
        return self.bids[0] if self.bids else None

    @property
    def best_ask(self) -> tuple[float, float] | None:
        return self.asks[0] if self.asks else None


@dataclass
class Trade:
    trade_id: str
    instrument_name: str
    price: float
    amount: float
    direction: str
    timestamp: int
    trade_seq: int | None = None
    index_price: float | None = None
    mark_price: float | None = None
    tick_direction: int | None = None
    order_id: str | None = None
    fee: float | None = None
    fee_currency: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Trade':
        return cls(**_known(cls, data))


@dataclass
class TradingViewChart:
    status: str
    ticks: list[int] = field(default_factory=list)
    open: list[float] = field(default_factory=list)
    high: list[float] = field(default_factory=list)
    low: list[float] = field(default_factory=list)
    close: list[float] = field(default_factory=list)
    volume: list[float] = field(default_factory=list)
    cost: list[float] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'TradingViewChart':
        return cls(**_known(cls, data))


@dataclass
class ServerStatus:
    locked: str = "false"
    locked_indices: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'ServerStatus':
        return cls(**_known(cls, data))


# -----------------------------------------------
# Trading
# -----------------------------------------------

@dataclass
class OrderRequest:
    """Parameters for /private/buy and /private/sell.

    Exactly one of `amount` or `contracts` must be given.
    """
    instrument_name: str
    amount: float | None = None
    contracts: float | None = None
    type: OrderType = OrderType.LIMIT
    price: float | None = None
    label: str | None = None
    time_in_force: TimeInForce = TimeInForce.GOOD_TIL_CANCELLED
    post_only: bool | None = None
    reduce_only: bool | None = None
    trigger_price: float | None = None
    trigger: str | None = None

    def to_params(self) -> dict:
        if self.amount is None and self.contracts is None:
            raise ValueError("Either amount or contracts must be specified")
        params = {k: v for k, v in asdict(self).items() if v is not None}
        params["type"] = OrderType(self.type).value
        params["time_in_force"] = TimeInForce(self.time_in_force).value
        return params


@dataclass
class EditOrderRequest:
    order_id: str
    amount: float | None = None
    contracts: float | None = None
    price: float | None = None
    post_only: bool | None = None
    reduce_only: bool | None = None

    def to_params(self) -> dict:
        if self.amount is None and self.contracts is None:
            raise ValueError("Either amount or contracts must be specified")
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass
class Order:
    order_id: str
    instrument_name: str
    direction: str
    amount: float
    order_state: str
    order_type: str
    price: float | str | None = None
    filled_amount: float = 0.0
    average_price: float | None = None
    label: str = ""
    time_in_force: str | None = None
    post_only: bool = False
    reduce_only: bool = False
    creation_timestamp: int | None = None
    last_update_timestamp: int | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Order':
        return cls(**_known(cls, data))

    @property
    def is_open(self) -> bool:
        return self.order_state in ("open", "untriggered")

    @property
    def remaining_amount(self) -> float:
        return self.amount - self.filled_amount


@dataclass
class OrderResponse:
    order: Order
    trades: list[Trade] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict) -> 'OrderResponse':
        return cls(
            order=Order.from_dict(data["order"]),
            trades=[Trade.from_dict(t) for t in data.get("trades", [])],
        )


# -----------------------------------------------
# Account and wallet
# -----------------------------------------------

@dataclass
class AccountSummary:
    currency: str
    balance: float
    equity: float
    available_funds: float
    margin_balance: float = 0.0
    initial_margin: float = 0.0
    maintenance_margin: float = 0.0
    available_withdrawal_funds: float | None = None
    delta_total: float | None = None
    session_rpl: float | None = None
    session_upl: float | None = None
    total_pl: float | None = None
    futures_pl: float | None = None
    options_pl: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'AccountSummary':
        return cls(**_known(cls, data))


@dataclass
class Position:
    instrument_name: str
    direction: str
    size: float
    average_price: float
    kind: str | None = None
    mark_price: float | None = None
    index_price: float | None = None
    estimated_liquidation_price: float | None = None
    floating_profit_loss: float | None = None
    realized_profit_loss: float | None = None
    total_profit_loss: float | None = None
    initial_margin: float | None = None
    maintenance_margin: float | None = None
    leverage: int | None = None
    delta: float | None = None
    gamma: float | None = None
    vega: float | None = None
    theta: float | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Position':
        return cls(**_known(cls, data))

    @property
    def is_flat(self) -> bool:
        return self.direction == "zero" or self.size == 0


@dataclass
class Subaccount:
    id: int
    username: str
    email: str = ""
    type: str = ""
    system_name: str = ""
    login_enabled: bool = False
    receive_notifications: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> 'Subaccount':
        return cls(**_known(cls, data))


@dataclass
class Deposit:
    address: str
    amount: float
    currency: str
    state: str
    received_timestamp: int | None = None
    updated_timestamp: int | None = None
    transaction_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Deposit':
        return cls(**_known(cls, data))


@dataclass
class Withdrawal:
    id: int
    address: str
    amount: float
    currency: str
    state: str
    fee: float = 0.0
    priority: float | None = None
    created_timestamp: int | None = None
    confirmed_timestamp: int | None = None
    updated_timestamp: int | None = None
    transaction_id: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> 'Withdrawal':
        return cls(**_known(cls, data))


@dataclass
class Page:
    """Paginated wallet listing ({"count": N, "data": [...]})."""
    count: int
    data: list = field(default_factory=list)
