"""Exact DAMM v2 price and liquidity math on Python integers.

sqrt prices are Q64.64 fixed point (u128), liquidity is scaled so that
``amount_b = L * Δ√P >> 128``. Nothing here goes through floats; results
are converted to Decimal only at the edge, with a fixed precision budget.
"""

from dataclasses import dataclass
from decimal import Decimal, localcontext
from fractions import Fraction

Q64 = 1 << 64
Q128 = 1 << 128
U64_MAX = (1 << 64) - 1

DECIMAL_PRECISION = 40
BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class WithdrawQuote:
    out_amount_a: int
    out_amount_b: int


def to_decimal(value: Fraction) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(value.numerator) / Decimal(value.denominator)


def raw_price_from_sqrt_price(sqrt_price: int) -> Fraction:
    """Raw token B units per raw token A unit."""
    return Fraction(sqrt_price * sqrt_price, Q128)


def price_from_sqrt_price(sqrt_price: int, decimals_a: int, decimals_b: int) -> Fraction:
    """UI price of token A denominated in token B."""
    return raw_price_from_sqrt_price(sqrt_price) * Fraction(10) ** (decimals_a - decimals_b)


def price_from_balances(
    balance_a: int, balance_b: int, decimals_a: int, decimals_b: int
) -> Fraction:
    """UI price of token A in token B from vault balances."""
    if balance_a <= 0:
        raise ZeroDivisionError("token A vault is empty")
    return Fraction(balance_b, balance_a) * Fraction(10) ** (decimals_a - decimals_b)


def amount_a_from_liquidity(liquidity: int, lower_sqrt_price: int, upper_sqrt_price: int) -> int:
    """Token A owed for ``liquidity`` between two sqrt prices, rounded down."""
    if lower_sqrt_price <= 0 or upper_sqrt_price <= lower_sqrt_price:
        return 0
    numerator = liquidity * (upper_sqrt_price - lower_sqrt_price)
    return numerator // (lower_sqrt_price * upper_sqrt_price)


def amount_b_from_liquidity(liquidity: int, lower_sqrt_price: int, upper_sqrt_price: int) -> int:
    """Token B owed for ``liquidity`` between two sqrt prices, rounded down."""
    if upper_sqrt_price <= lower_sqrt_price:
        return 0
    return (liquidity * (upper_sqrt_price - lower_sqrt_price)) >> 128


def get_withdraw_quote(
    liquidity_delta: int,
    sqrt_price: int,
    sqrt_min_price: int,
    sqrt_max_price: int,
) -> WithdrawQuote:
    """Amounts out for removing ``liquidity_delta`` at the current pool price."""
    return WithdrawQuote(
        out_amount_a=amount_a_from_liquidity(liquidity_delta, sqrt_price, sqrt_max_price),
        out_amount_b=amount_b_from_liquidity(liquidity_delta, sqrt_min_price, sqrt_price),
    )


def estimate_swap_out(amount_in: int, sqrt_price: int, *, a_to_b: bool) -> int:
    """Spot-price output estimate for a swap, before fees and price impact."""
    if amount_in <= 0 or sqrt_price <= 0:
        return 0
    raw = raw_price_from_sqrt_price(sqrt_price)
    out = amount_in * raw if a_to_b else amount_in / raw
    return int(out)


def minimum_amount_out(expected_out: int, slippage_bps: int) -> int:
    """Slippage-adjusted floor, capped to the u64 instruction argument."""
    bps = min(max(slippage_bps, 0), BPS_DENOMINATOR)
    return min(expected_out * (BPS_DENOMINATOR - bps) // BPS_DENOMINATOR, U64_MAX)
