from __future__ import annotations

import math
from typing import Mapping, Optional, Union

from poolsync.models import TokenDefinition

MIN_TICK = -887272
MAX_TICK = 887272

TICK_BASE = 1.0001
DUST_THRESHOLD = 1e-11
INFINITY_THRESHOLD = 1e30
DEFAULT_DECIMALS = 18


def _pow_tick(exponent: float) -> float:
    try:
        return math.pow(TICK_BASE, exponent)
    except OverflowError:
        return math.inf


def _format_price(value: float) -> str:
    if not math.isfinite(value):
        return "N/A"
    if 0 < value < DUST_THRESHOLD:
        return "0"
    if value > INFINITY_THRESHOLD:
        return "∞"
    return f"{value:.6f}"


def _parse_price(current_price: Union[str, float, None]) -> Optional[float]:
    if current_price is None or current_price == "":
        return None
    try:
        value = float(current_price)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return value


def _relative_price(tick: int, current_tick: int, current_price: float, base_is_token0: bool) -> float:
    delta = _pow_tick(tick - current_tick)
    price = current_price * delta
    if base_is_token0:
        return math.inf if price == 0 else 1.0 / price
    return price


def _absolute_price(
    tick: int,
    base_symbol: str,
    token0_symbol: str,
    token1_symbol: str,
    token_definitions: Mapping[str, TokenDefinition],
) -> float:
    cfg0 = token_definitions.get(token0_symbol)
    cfg1 = token_definitions.get(token1_symbol)
    addr0 = (cfg0.address if cfg0 else f"0x{token0_symbol}").lower()
    addr1 = (cfg1.address if cfg1 else f"0x{token1_symbol}").lower()
    dec0 = cfg0.decimals if cfg0 else DEFAULT_DECIMALS
    dec1 = cfg1.decimals if cfg1 else DEFAULT_DECIMALS

    # pool currencies are ordered by address
    sorted0_is_token0 = addr0 < addr1
    sorted0_decimals = dec0 if sorted0_is_token0 else dec1
    sorted1_decimals = dec1 if sorted0_is_token0 else dec0

    try:
        scale = math.pow(10, sorted0_decimals - sorted1_decimals)
    except OverflowError:
        scale = math.inf
    price01 = _pow_tick(tick) * scale

    base_is_token0 = base_symbol == token0_symbol
    if base_is_token0 == sorted0_is_token0:
        return math.inf if price01 == 0 else 1.0 / price01
    return price01


def tick_to_price(
    tick: int,
    current_tick: Optional[int],
    current_price: Union[str, float, None],
    base_symbol: str,
    token0_symbol: str,
    token1_symbol: str,
    token_definitions: Optional[Mapping[str, TokenDefinition]] = None,
) -> str:
    """Render the price at ``tick`` in units of ``base_symbol``.

    Uses the live price when the pool state is known, otherwise derives an
    absolute price from ``1.0001^tick`` and the token decimals. Never raises:
    the result is ``"0"``, ``"∞"``, ``"N/A"`` or a 6-decimal string.
    """
    try:
        tick = int(tick)
    except (TypeError, ValueError, OverflowError):
        return "N/A"

    live_price = _parse_price(current_price)
    if current_tick is not None and live_price is not None:
        try:
            value = _relative_price(tick, int(current_tick), live_price, base_symbol == token0_symbol)
        except (TypeError, ValueError, OverflowError, ZeroDivisionError):
            value = math.nan
        if math.isfinite(value):
            return _format_price(value)

    try:
        value = _absolute_price(tick, base_symbol, token0_symbol, token1_symbol, token_definitions or {})
    except (TypeError, ValueError, OverflowError, ZeroDivisionError, AttributeError):
        return "N/A"
    return _format_price(value)


def usable_tick_bounds(tick_spacing: int) -> tuple[int, int]:
    spacing = max(1, int(tick_spacing))
    return math.ceil(MIN_TICK / spacing) * spacing, math.floor(MAX_TICK / spacing) * spacing


def is_tick_at_limit(tick_spacing: int, tick_lower: int, tick_upper: int) -> tuple[bool, bool]:
    """Whether each bound sits on the lowest/highest usable tick for the spacing."""
    min_usable, max_usable = usable_tick_bounds(tick_spacing)
    return tick_lower <= min_usable, tick_upper >= max_usable


def is_full_range(tick_spacing: int, tick_lower: int, tick_upper: int) -> bool:
    lower, upper = is_tick_at_limit(tick_spacing, tick_lower, tick_upper)
    return lower and upper
