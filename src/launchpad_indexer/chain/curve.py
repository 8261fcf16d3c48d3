"""Bonding-curve reference arithmetic.

The factory contract is the source of truth for pricing. These helpers exist
so that the write path can bound slippage and so the reconciler can flag
reserve transitions that disagree with the trade amounts it just mirrored.
All arithmetic is integer wei.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, localcontext

from launchpad_indexer.chain.events import TokensPurchased, TokensSold, TradeEvent

WEI_PER_ETH = 10**18
BPS_DENOMINATOR = 10_000
MAX_SLIPPAGE_BPS = 5_000

# 1e9 tokens with 18 decimals, minted to the curve at creation.
TOTAL_SUPPLY_UNITS = 1_000_000_000 * 10**18

# 1% platform fee, of which 80% is paid out to the deploying agent.
PLATFORM_FEE_BPS = 100
AGENT_FEE_SHARE_BPS = 8_000


@dataclass(frozen=True)
class Reserves:
    base: int
    quote: int


def apply_slippage(amount: int, slippage_bps: int) -> int:
    """Minimum acceptable output for an estimate, floor-rounded."""
    if amount < 0:
        raise ValueError("amount must be >= 0")
    if not 0 <= slippage_bps <= MAX_SLIPPAGE_BPS:
        raise ValueError(f"slippage_bps must be within 0..{MAX_SLIPPAGE_BPS}")
    return amount * (BPS_DENOMINATOR - slippage_bps) // BPS_DENOMINATOR


def agent_fee_share(volume_wei: int) -> int:
    """Agent share of the platform fee for a given BUY volume."""
    return volume_wei * PLATFORM_FEE_BPS * AGENT_FEE_SHARE_BPS // (BPS_DENOMINATOR * BPS_DENOMINATOR)


def reserves_consistent(previous: Reserves | None, event: TradeEvent) -> bool:
    """Check the emitted reserves against the previous mirrored pair.

    A buy moves exactly `tokens_out` out of the quote reserve and adds base;
    a sell moves exactly `tokens_in` into the quote reserve and removes base.
    With no usable previous pair the transition cannot be checked and is
    accepted.
    """
    if previous is None or (previous.base == 0 and previous.quote == 0):
        return True
    if isinstance(event, TokensPurchased):
        return (
            event.new_reserve_quote == previous.quote - event.tokens_out
            and event.new_reserve_base > previous.base
        )
    if isinstance(event, TokensSold):
        return (
            event.new_reserve_quote == previous.quote + event.tokens_in
            and event.new_reserve_base < previous.base
        )
    return True


def format_eth(wei: int, places: int = 4) -> str:
    """Render a wei amount as ETH with a fixed number of decimals, half-up."""
    with localcontext() as ctx:
        ctx.prec = 100
        value = Decimal(wei) / WEI_PER_ETH
        return str(value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP))


def format_ether(wei: int) -> str:
    """Full-precision ETH rendering of a wei amount ("1.5", "0.000000000000000001")."""
    sign = "-" if wei < 0 else ""
    whole, frac = divmod(abs(wei), WEI_PER_ETH)
    return f"{sign}{whole}.{(f'{frac:018d}'.rstrip('0') or '0')}"
