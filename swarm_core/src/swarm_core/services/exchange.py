"""Exchange connectivity for the swarm.

The core reaches the derivatives venue only through ``ExchangeClient``.
Two implementations are provided:

- ``PaperExchange``: in-memory venue with simulated prices, isolated
  positions and stop-loss/take-profit triggers. Used for paper trading,
  public-data mode and tests.
- ``CCXTExchange``: adapter over ``ccxt.async_support`` for real venues.

Units follow inverse BTC derivatives conventions: balances and margins in
satoshis (int), prices in USD, quantities in USD notional.

Authenticated calls without credentials raise ``UnauthenticatedError``:
reaching an account endpoint in public mode is a wiring bug, not a
transient condition.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import numpy as np
import structlog
from pydantic import BaseModel, ConfigDict, Field, SecretStr
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from swarm_core.common.errors import SwarmError
from swarm_core.common.types import SATS_PER_BTC, Candle, new_id, utc_now

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

log = structlog.get_logger()

# ==============================================================================
# Constants
# ==============================================================================
MAX_CANDLES_PER_REQUEST: Final[int] = 1000
DEFAULT_SYMBOL: Final[str] = "BTC/USD:BTC"
DEFAULT_RETRY_MIN_WAIT: Final[float] = 0.5
DEFAULT_RETRY_MAX_WAIT: Final[float] = 5.0

INTERVAL_SECONDS: Final[dict[str, int]] = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14_400,
    "1d": 86_400,
    "1w": 604_800,
}


# ==============================================================================
# Exceptions
# ==============================================================================
class ExchangeError(SwarmError):
    """Base exception for exchange failures."""


class UnauthenticatedError(ExchangeError):
    """An authenticated endpoint was called without credentials."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"Exchange client is not authenticated: {operation} requires credentials")


class ExchangeConnectionError(ExchangeError):
    """The venue could not be reached during initialization."""


class PositionNotFoundError(ExchangeError):
    """Referenced position does not exist."""


# ==============================================================================
# Enumerations & Models
# ==============================================================================
class OrderSide(str, Enum):
    """Exchange order side."""

    BUY = "buy"
    SELL = "sell"


class OrderType(str, Enum):
    """Exchange order type."""

    MARKET = "market"
    LIMIT = "limit"


class ExchangeCredentials(BaseModel):
    """API credentials for an authenticated client."""

    model_config = ConfigDict(frozen=True)

    api_key: str = Field(..., min_length=1)
    api_secret: SecretStr
    passphrase: SecretStr | None = None
    testnet: bool = False


class Ticker(BaseModel):
    """Top-of-book and 24h statistics."""

    model_config = ConfigDict(frozen=True)

    index: float
    last_price: float
    bid: float
    ask: float
    high_24h: float | None = None
    low_24h: float | None = None
    volume_24h: float | None = None
    change_24h: float | None = None


class Position(BaseModel):
    """An open isolated-margin position."""

    model_config = ConfigDict(frozen=True, use_enum_values=True)

    id: str  # noqa: A003
    side: OrderSide
    quantity: float
    margin: int
    leverage: float
    entry_price: float
    liquidation_price: float | None = None
    pl: float = 0.0
    pl_percent: float = 0.0
    stop_loss: float | None = None
    take_profit: float | None = None
    created_at: datetime = Field(default_factory=utc_now)


# ==============================================================================
# Exchange Client Protocol
# ==============================================================================
@runtime_checkable
class ExchangeClient(Protocol):
    """Narrow interface the swarm needs from a derivatives venue."""

    @property
    def is_authenticated(self) -> bool:
        """True when account endpoints are available."""
        ...

    async def ping(self) -> bool:
        """Check connectivity."""
        ...

    async def get_ticker(self) -> Ticker:
        """Current price and 24h statistics."""
        ...

    async def get_candles(self, start: datetime, end: datetime, interval: str) -> list[Candle]:
        """OHLCV history between ``start`` and ``end``, oldest first."""
        ...

    async def get_balance(self) -> int:
        """Free balance in sats."""
        ...

    async def get_running_positions(self) -> list[Position]:
        """Open positions."""
        ...

    async def open_position(
        self,
        order_type: OrderType,
        side: OrderSide,
        margin: int,
        leverage: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Position:
        """Open an isolated position."""
        ...

    async def close_position(self, position_id: str) -> None:
        """Close a position at market."""
        ...

    async def update_stop_loss(self, position_id: str, value: float) -> None:
        """Move a position's stop loss."""
        ...

    async def update_take_profit(self, position_id: str, value: float) -> None:
        """Move a position's take profit."""
        ...


# ==============================================================================
# Paper Exchange
# ==============================================================================
class PaperExchange:
    """Simulated venue for paper trading and tests.

    Prices follow a seeded random walk; ``set_price`` moves the market
    explicitly and triggers stop-loss/take-profit on open positions, which
    then disappear from ``get_running_positions`` exactly like on a real
    venue.

    Attributes:
        credentials: None for public-data mode.
        balance: Free balance in sats.
        price: Current mark price in USD.
    """

    def __init__(
        self,
        credentials: ExchangeCredentials | None = None,
        initial_balance: int = 1_000_000,
        start_price: float = 60_000.0,
        volatility: float = 0.01,
        seed: int | None = None,
    ) -> None:
        self.credentials = credentials
        self.balance = int(initial_balance)
        self.price = float(start_price)
        self.volatility = volatility
        self._rng = np.random.default_rng(seed)
        self._positions: dict[str, Position] = {}
        self.closed_positions: list[Position] = []

    @property
    def is_authenticated(self) -> bool:
        """True when credentials were supplied."""
        return self.credentials is not None

    def _require_auth(self, operation: str) -> None:
        if not self.is_authenticated:
            raise UnauthenticatedError(operation)

    # Market data -------------------------------------------------------
    async def ping(self) -> bool:
        """Always reachable."""
        return True

    async def get_ticker(self) -> Ticker:
        """Ticker around the current mark price."""
        spread = self.price * 0.0001
        return Ticker(
            index=self.price,
            last_price=self.price,
            bid=self.price - spread,
            ask=self.price + spread,
            high_24h=self.price * (1 + self.volatility),
            low_24h=self.price * (1 - self.volatility),
            volume_24h=0.0,
            change_24h=0.0,
        )

    async def get_candles(self, start: datetime, end: datetime, interval: str) -> list[Candle]:
        """Random-walk history ending at the current price."""
        step = INTERVAL_SECONDS.get(interval, 3600)
        count = int((end - start).total_seconds() // step)
        count = max(0, min(count, MAX_CANDLES_PER_REQUEST))
        if count == 0:
            return []

        returns = self._rng.normal(0.0, self.volatility, size=count)
        # Walk backwards so that the last close equals the current price.
        closes = self.price / np.exp(np.cumsum(returns[::-1]))[::-1] * np.exp(returns[-1])
        opens = np.concatenate(([closes[0] * np.exp(-returns[0])], closes[:-1]))
        wick = np.abs(self._rng.normal(0.0, self.volatility / 2, size=count))
        highs = np.maximum(opens, closes) * (1 + wick)
        lows = np.minimum(opens, closes) * (1 - wick)
        volumes = self._rng.uniform(10.0, 1000.0, size=count)

        first = end - timedelta(seconds=step * count)
        return [
            Candle(
                time=first + timedelta(seconds=step * i),
                open=float(opens[i]),
                high=float(highs[i]),
                low=float(lows[i]),
                close=float(closes[i]),
                volume=float(volumes[i]),
            )
            for i in range(count)
        ]

    def set_price(self, price: float) -> list[Position]:
        """Move the market and trigger stops.

        Returns:
            Positions closed by stop-loss or take-profit.
        """
        self.price = float(price)
        triggered: list[Position] = []
        for position in list(self._positions.values()):
            if _stop_hit(position, self.price):
                self._settle(position.id)
                triggered.append(position)
        if triggered:
            log.info("Paper stops triggered", count=len(triggered), price=self.price)
        return triggered

    # Account -----------------------------------------------------------
    async def get_balance(self) -> int:
        """Free balance in sats."""
        self._require_auth("get_balance")
        return self.balance

    async def get_running_positions(self) -> list[Position]:
        """Open positions marked to the current price."""
        self._require_auth("get_running_positions")
        return [self._mark(p) for p in self._positions.values()]

    async def open_position(
        self,
        order_type: OrderType,
        side: OrderSide,
        margin: int,
        leverage: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Position:
        """Open an isolated position filled at the current price."""
        self._require_auth("open_position")
        if margin <= 0:
            raise ExchangeError(f"Invalid margin: {margin}")
        if margin > self.balance:
            raise ExchangeError(f"Insufficient balance: margin {margin} > balance {self.balance}")

        quantity = margin * leverage * self.price / SATS_PER_BTC
        direction = 1 if OrderSide(side) == OrderSide.BUY else -1
        liquidation = self.price * (1 - direction / leverage) if leverage > 1 else None

        position = Position(
            id=new_id("pos"),
            side=side,
            quantity=round(quantity, 2),
            margin=int(margin),
            leverage=leverage,
            entry_price=self.price,
            liquidation_price=liquidation,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )
        self.balance -= int(margin)
        self._positions[position.id] = position
        log.info(
            "Paper position opened",
            position_id=position.id,
            side=position.side,
            type=OrderType(order_type).value,
            margin=margin,
            leverage=leverage,
            price=self.price,
        )
        return position

    async def close_position(self, position_id: str) -> None:
        """Close a position at the current price."""
        self._require_auth("close_position")
        if position_id not in self._positions:
            raise PositionNotFoundError(position_id)
        self._settle(position_id)

    async def update_stop_loss(self, position_id: str, value: float) -> None:
        """Move a stop loss."""
        self._require_auth("update_stop_loss")
        self._update(position_id, stop_loss=value)

    async def update_take_profit(self, position_id: str, value: float) -> None:
        """Move a take profit."""
        self._require_auth("update_take_profit")
        self._update(position_id, take_profit=value)

    # Internals ---------------------------------------------------------
    def _update(self, position_id: str, **changes: Any) -> None:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionNotFoundError(position_id)
        self._positions[position_id] = position.model_copy(update=changes)

    def _mark(self, position: Position) -> Position:
        direction = 1 if position.side == OrderSide.BUY else -1
        move = (self.price - position.entry_price) / position.entry_price
        pl = position.margin * position.leverage * move * direction
        return position.model_copy(
            update={"pl": pl, "pl_percent": pl / position.margin * 100 if position.margin else 0.0}
        )

    def _settle(self, position_id: str) -> None:
        position = self._mark(self._positions.pop(position_id))
        self.balance += max(0, int(position.margin + position.pl))
        self.closed_positions.append(position)


def _stop_hit(position: Position, price: float) -> bool:
    if position.side == OrderSide.BUY:
        return (position.stop_loss is not None and price <= position.stop_loss) or (
            position.take_profit is not None and price >= position.take_profit
        )
    return (position.stop_loss is not None and price >= position.stop_loss) or (
        position.take_profit is not None and price <= position.take_profit
    )


# ==============================================================================
# CCXT Exchange
# ==============================================================================
class CCXTExchange:
    """Adapter exposing a ccxt derivatives venue as an ``ExchangeClient``.

    Read-only calls are retried with exponential backoff on network errors.
    Order placement is a single attempt; a failure surfaces to the caller.

    Attributes:
        exchange_id: ccxt exchange identifier (e.g. ``bitmex``).
        symbol: Unified derivatives symbol.
        sandbox: Use the venue testnet.
    """

    def __init__(
        self,
        exchange_id: str = "bitmex",
        symbol: str = DEFAULT_SYMBOL,
        credentials: ExchangeCredentials | None = None,
        sandbox: bool = True,
        max_retries: int = 3,
    ) -> None:
        self.exchange_id = exchange_id
        self.symbol = symbol
        self.credentials = credentials
        self.sandbox = sandbox
        self.max_retries = max_retries
        self.exchange: Any = None

    @property
    def is_authenticated(self) -> bool:
        """True when credentials were supplied."""
        return self.credentials is not None

    def _require_auth(self, operation: str) -> None:
        if not self.is_authenticated:
            raise UnauthenticatedError(operation)

    async def start(self) -> None:
        """Create the ccxt client and load markets."""
        import ccxt.async_support as ccxt

        if self.exchange is not None:
            return

        exchange_class = getattr(ccxt, self.exchange_id, None)
        if exchange_class is None:
            raise ValueError(f"Unknown exchange: {self.exchange_id}")

        config: dict[str, Any] = {"enableRateLimit": True}
        if self.credentials is not None:
            config["apiKey"] = self.credentials.api_key
            config["secret"] = self.credentials.api_secret.get_secret_value()
            if self.credentials.passphrase is not None:
                config["password"] = self.credentials.passphrase.get_secret_value()

        self.exchange = exchange_class(config)
        if self.sandbox:
            self.exchange.set_sandbox_mode(True)
        await self.exchange.load_markets()
        log.info(
            "CCXT exchange started",
            exchange=self.exchange_id,
            symbol=self.symbol,
            sandbox=self.sandbox,
            authenticated=self.is_authenticated,
        )

    async def stop(self) -> None:
        """Close the ccxt client."""
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None
        log.info("CCXT exchange stopped", exchange=self.exchange_id)

    async def _read(self, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run a read-only call with retry on transient network errors."""
        import ccxt.async_support as ccxt

        if self.exchange is None:
            await self.start()

        @retry(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=1, min=DEFAULT_RETRY_MIN_WAIT, max=DEFAULT_RETRY_MAX_WAIT),
            retry=retry_if_exception_type((ccxt.NetworkError, ccxt.ExchangeNotAvailable)),
            before_sleep=lambda rs: log.warning(
                "Retrying exchange read",
                attempt=rs.attempt_number,
                call=getattr(fn, "__name__", str(fn)),
            ),
            reraise=True,
        )
        async def _call() -> Any:
            return await fn(*args, **kwargs)

        try:
            return await _call()
        except RetryError as exc:
            raise ExchangeError(f"Exchange read exhausted retries: {exc}") from exc

    async def ping(self) -> bool:
        """Load markets and fetch the server time."""
        try:
            await self._read(lambda: self.exchange.fetch_time())
        except Exception as exc:
            log.warning("Exchange ping failed", exchange=self.exchange_id, error=str(exc))
            return False
        return True

    async def get_ticker(self) -> Ticker:
        """Current ticker for the configured symbol."""
        raw = await self._read(lambda: self.exchange.fetch_ticker(self.symbol))
        last = float(raw.get("last") or raw.get("close") or 0.0)
        return Ticker(
            index=float(raw.get("index") or last),
            last_price=last,
            bid=float(raw.get("bid") or last),
            ask=float(raw.get("ask") or last),
            high_24h=raw.get("high"),
            low_24h=raw.get("low"),
            volume_24h=raw.get("baseVolume"),
            change_24h=raw.get("percentage"),
        )

    async def get_candles(self, start: datetime, end: datetime, interval: str) -> list[Candle]:
        """OHLCV history, oldest first."""
        step = INTERVAL_SECONDS.get(interval, 3600)
        limit = max(1, min(MAX_CANDLES_PER_REQUEST, int((end - start).total_seconds() // step)))
        rows = await self._read(
            lambda: self.exchange.fetch_ohlcv(
                self.symbol,
                timeframe=interval,
                since=int(start.timestamp() * 1000),
                limit=limit,
            )
        )
        return [
            Candle(
                time=datetime.fromtimestamp(row[0] / 1000, tz=end.tzinfo or utc_now().tzinfo),
                open=row[1],
                high=row[2],
                low=row[3],
                close=row[4],
                volume=row[5] or 0.0,
            )
            for row in rows
            if row[1] and row[2] and row[3] and row[4]
        ]

    async def get_balance(self) -> int:
        """Free BTC balance converted to sats."""
        self._require_auth("get_balance")
        raw = await self._read(lambda: self.exchange.fetch_balance())
        free = (raw.get("free") or {}).get("BTC") or 0.0
        return int(float(free) * SATS_PER_BTC)

    async def get_running_positions(self) -> list[Position]:
        """Open positions on the configured symbol."""
        self._require_auth("get_running_positions")
        raw_positions = await self._read(lambda: self.exchange.fetch_positions([self.symbol]))
        positions: list[Position] = []
        for raw in raw_positions:
            contracts = float(raw.get("contracts") or 0.0)
            if contracts == 0:
                continue
            side = OrderSide.BUY if raw.get("side") == "long" else OrderSide.SELL
            margin_btc = float(raw.get("initialMargin") or raw.get("collateral") or 0.0)
            margin = int(margin_btc * SATS_PER_BTC)
            pl = float(raw.get("unrealizedPnl") or 0.0) * SATS_PER_BTC
            positions.append(
                Position(
                    id=str(raw.get("id") or f"{self.symbol}:{raw.get('side')}"),
                    side=side,
                    quantity=contracts * float(raw.get("contractSize") or 1.0),
                    margin=margin,
                    leverage=float(raw.get("leverage") or 1.0),
                    entry_price=float(raw.get("entryPrice") or 0.0),
                    liquidation_price=raw.get("liquidationPrice"),
                    pl=pl,
                    pl_percent=pl / margin * 100 if margin else 0.0,
                )
            )
        return positions

    async def open_position(
        self,
        order_type: OrderType,
        side: OrderSide,
        margin: int,
        leverage: float,
        stop_loss: float | None = None,
        take_profit: float | None = None,
    ) -> Position:
        """Place a single market order sized from margin and leverage."""
        self._require_auth("open_position")
        if self.exchange is None:
            await self.start()

        ticker = await self.get_ticker()
        amount = margin * leverage * ticker.last_price / SATS_PER_BTC
        params: dict[str, Any] = {}
        if stop_loss is not None:
            params["stopLoss"] = {"triggerPrice": stop_loss}
        if take_profit is not None:
            params["takeProfit"] = {"triggerPrice": take_profit}

        await self.exchange.set_leverage(leverage, self.symbol)
        order = await self.exchange.create_order(
            self.symbol,
            OrderType(order_type).value,
            OrderSide(side).value,
            amount,
            None,
            params,
        )
        log.info(
            "Exchange order placed",
            exchange=self.exchange_id,
            order_id=order.get("id"),
            side=OrderSide(side).value,
            amount=amount,
        )
        return Position(
            id=str(order.get("id") or new_id("pos")),
            side=side,
            quantity=amount,
            margin=int(margin),
            leverage=leverage,
            entry_price=float(order.get("average") or order.get("price") or ticker.last_price),
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    async def _find(self, position_id: str) -> Position:
        for position in await self.get_running_positions():
            if position.id == position_id:
                return position
        raise PositionNotFoundError(position_id)

    async def close_position(self, position_id: str) -> None:
        """Close a position with a reduce-only market order."""
        self._require_auth("close_position")
        position = await self._find(position_id)
        closing_side = OrderSide.SELL if position.side == OrderSide.BUY else OrderSide.BUY
        await self.exchange.create_order(
            self.symbol, "market", closing_side.value, position.quantity, None, {"reduceOnly": True}
        )

    async def update_stop_loss(self, position_id: str, value: float) -> None:
        """Place a reduce-only stop order at ``value``."""
        self._require_auth("update_stop_loss")
        position = await self._find(position_id)
        closing_side = OrderSide.SELL if position.side == OrderSide.BUY else OrderSide.BUY
        await self.exchange.create_order(
            self.symbol,
            "market",
            closing_side.value,
            position.quantity,
            None,
            {"stopLossPrice": value, "reduceOnly": True},
        )

    async def update_take_profit(self, position_id: str, value: float) -> None:
        """Place a reduce-only take-profit order at ``value``."""
        self._require_auth("update_take_profit")
        position = await self._find(position_id)
        closing_side = OrderSide.SELL if position.side == OrderSide.BUY else OrderSide.BUY
        await self.exchange.create_order(
            self.symbol,
            "market",
            closing_side.value,
            position.quantity,
            None,
            {"takeProfitPrice": value, "reduceOnly": True},
        )
