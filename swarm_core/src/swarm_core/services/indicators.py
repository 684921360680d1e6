"""Technical indicator expressions over OHLCV frames.

Every indicator is a composable Polars expression operating on the
``open/high/low/close/volume`` columns. ``indicator_frame`` applies the full
set used by ``TechnicalAnalysisService`` in a single ``with_columns`` pass.

Design Principles:
- Pure functions returning ``pl.Expr`` (no side effects)
- Wilder smoothing (``ewm_mean(alpha=1/n)``) for RSI, ATR and ADX
- Vectorized operations (no Python loops in hot paths)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final

import polars as pl

if TYPE_CHECKING:
    from collections.abc import Sequence

    from swarm_core.common.types import Candle

# ==============================================================================
# Constants
# ==============================================================================
OHLCV_COLUMNS: Final[tuple[str, ...]] = ("time", "open", "high", "low", "close", "volume")


# ==============================================================================
# Frame Construction
# ==============================================================================
def candles_to_frame(candles: Sequence[Candle]) -> pl.DataFrame:
    """Build an OHLCV DataFrame from candles (oldest first)."""
    return pl.DataFrame(
        {
            "time": [c.time for c in candles],
            "open": [c.open for c in candles],
            "high": [c.high for c in candles],
            "low": [c.low for c in candles],
            "close": [c.close for c in candles],
            "volume": [c.volume for c in candles],
        }
    )


def _wilder(expr: pl.Expr, window: int) -> pl.Expr:
    return expr.ewm_mean(alpha=1.0 / window, adjust=False)


# ==============================================================================
# Moving Averages
# ==============================================================================
def sma(window: int, column: str = "close") -> pl.Expr:
    """Simple moving average."""
    return pl.col(column).rolling_mean(window_size=window).alias(f"sma{window}")


def ema(span: int, column: str = "close") -> pl.Expr:
    """Exponential moving average."""
    return pl.col(column).ewm_mean(span=span, adjust=False).alias(f"ema{span}")


# ==============================================================================
# Momentum
# ==============================================================================
def rsi(column: str = "close", window: int = 14) -> pl.Expr:
    """Calculate Relative Strength Index (RSI).

    RSI = 100 - (100 / (1 + RS))
    where RS = avg_gain / avg_loss, both Wilder-smoothed.

    Args:
        column: Price column.
        window: Lookback period (typically 14).

    Returns:
        Polars expression for RSI.
    """
    delta = pl.col(column).diff()
    gain = _wilder(delta.clip(lower_bound=0), window)
    loss = _wilder(-delta.clip(upper_bound=0), window)

    rs = gain / loss
    return (100 - (100 / (1 + rs))).alias("rsi")


def macd(
    column: str = "close",
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
) -> list[pl.Expr]:
    """MACD line, signal line and histogram.

    Returns:
        List of expressions: [macd, macd_signal, macd_histogram].
    """
    line = pl.col(column).ewm_mean(span=fast, adjust=False) - pl.col(column).ewm_mean(
        span=slow, adjust=False
    )
    signal_line = line.ewm_mean(span=signal, adjust=False)
    return [
        line.alias("macd"),
        signal_line.alias("macd_signal"),
        (line - signal_line).alias("macd_histogram"),
    ]


def stochastic(k_window: int = 14, d_window: int = 3) -> list[pl.Expr]:
    """Stochastic oscillator %K and %D."""
    lowest = pl.col("low").rolling_min(window_size=k_window)
    highest = pl.col("high").rolling_max(window_size=k_window)
    k = 100 * (pl.col("close") - lowest) / (highest - lowest)
    return [k.alias("stoch_k"), k.rolling_mean(window_size=d_window).alias("stoch_d")]


def williams_r(window: int = 14) -> pl.Expr:
    """Williams %R in [-100, 0]."""
    lowest = pl.col("low").rolling_min(window_size=window)
    highest = pl.col("high").rolling_max(window_size=window)
    return (-100 * (highest - pl.col("close")) / (highest - lowest)).alias("williams_r")


def typical_price() -> pl.Expr:
    """(high + low + close) / 3."""
    return (pl.col("high") + pl.col("low") + pl.col("close")) / 3


def cci(window: int = 20) -> pl.Expr:
    """Commodity Channel Index.

    CCI = (TP - SMA(TP)) / (0.015 * mean deviation)
    """
    tp = typical_price()
    mean_dev = tp.rolling_map(lambda s: (s - s.mean()).abs().mean(), window_size=window)
    return ((tp - tp.rolling_mean(window_size=window)) / (0.015 * mean_dev)).alias("cci")


def mfi(window: int = 14) -> pl.Expr:
    """Money Flow Index (volume-weighted RSI)."""
    tp = typical_price()
    raw_flow = tp * pl.col("volume")
    positive = pl.when(tp > tp.shift(1)).then(raw_flow).otherwise(0.0)
    negative = pl.when(tp < tp.shift(1)).then(raw_flow).otherwise(0.0)
    ratio = positive.rolling_sum(window_size=window) / negative.rolling_sum(window_size=window)
    return (100 - 100 / (1 + ratio)).alias("mfi")


# ==============================================================================
# Volume
# ==============================================================================
def obv() -> pl.Expr:
    """On-Balance Volume."""
    direction = pl.col("close").diff().sign().fill_null(0)
    return (direction * pl.col("volume")).cum_sum().alias("obv")


# ==============================================================================
# Volatility & Trend Strength
# ==============================================================================
def true_range() -> pl.Expr:
    """Calculate True Range (TR) for volatility measurement.

    TR = max(high - low, |high - prev_close|, |low - prev_close|)
    """
    prev_close = pl.col("close").shift(1)
    return pl.max_horizontal(
        pl.col("high") - pl.col("low"),
        (pl.col("high") - prev_close).abs(),
        (pl.col("low") - prev_close).abs(),
    ).alias("true_range")


def atr(window: int = 14) -> pl.Expr:
    """Average True Range, Wilder-smoothed."""
    return _wilder(true_range(), window).alias("atr")


def adx(window: int = 14) -> pl.Expr:
    """Average Directional Index.

    Args:
        window: Smoothing period (typically 14).

    Returns:
        Polars expression for ADX in [0, 100].
    """
    up_move = pl.col("high").diff()
    down_move = -pl.col("low").diff()
    plus_dm = pl.when((up_move > down_move) & (up_move > 0)).then(up_move).otherwise(0.0)
    minus_dm = pl.when((down_move > up_move) & (down_move > 0)).then(down_move).otherwise(0.0)

    smoothed_tr = _wilder(true_range(), window)
    plus_di = 100 * _wilder(plus_dm, window) / smoothed_tr
    minus_di = 100 * _wilder(minus_dm, window) / smoothed_tr
    dx = 100 * (plus_di - minus_di).abs() / (plus_di + minus_di)
    return _wilder(dx, window).alias("adx")


def bollinger_bands(
    column: str = "close",
    window: int = 20,
    num_std: float = 2.0,
) -> list[pl.Expr]:
    """Calculate Bollinger Bands.

    Args:
        column: Price column.
        window: Moving average window.
        num_std: Number of standard deviations for bands.

    Returns:
        List of expressions: [middle_band, upper_band, lower_band].
    """
    ma = pl.col(column).rolling_mean(window_size=window)
    std = pl.col(column).rolling_std(window_size=window, ddof=0)

    return [
        ma.alias("bb_middle"),
        (ma + num_std * std).alias("bb_upper"),
        (ma - num_std * std).alias("bb_lower"),
    ]


# ==============================================================================
# Full Indicator Set
# ==============================================================================
def indicator_frame(df: pl.DataFrame) -> pl.DataFrame:
    """Append every indicator used by the technical analysis."""
    return df.lazy().with_columns(
        sma(20),
        sma(50),
        sma(200),
        ema(9),
        ema(21),
        rsi(),
        *macd(),
        *bollinger_bands(),
        adx(),
        atr(),
        *stochastic(),
        williams_r(),
        cci(),
        obv(),
        mfi(),
    ).collect()


def latest_values(df: pl.DataFrame) -> dict[str, float]:
    """Last row as floats, with null/NaN/inf mapped to 0."""
    row = df.tail(1).to_dicts()[0]
    values: dict[str, float] = {}
    for key, value in row.items():
        if key == "time":
            continue
        number = float(value) if value is not None else 0.0
        values[key] = number if number == number and abs(number) != float("inf") else 0.0
    return values
