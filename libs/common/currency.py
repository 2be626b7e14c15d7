"""Currency conversion utilities for PaidIn.

Internal storage units: cents for bank debits (100 cents = $1) and
satoshis for anything on Lightning (100,000,000 sats = 1 BTC).
API / ledger unit for USD: dollars as Decimal (e.g. Decimal("100.00")).

Conversion chain
----------------
USD × 100 → cents
USD ÷ rate → BTC        (rate is USD per BTC)
BTC × 1e8 → sats
sats ÷ 1e8 → BTC
BTC × rate → USD
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

# ─── constants ───────────────────────────────────────────────────────────────

CENTS_PER_USD: int = 100
SATS_PER_BTC: int = 100_000_000

USD_QUANT = Decimal("0.01")
BTC_QUANT = Decimal("0.00000001")


# ─── conversion helpers ───────────────────────────────────────────────────────


def usd_to_cents(usd: Decimal) -> int:
    """Convert dollars to cents (round half-up). $1 = 100 cents."""
    return int((Decimal(usd) * CENTS_PER_USD).quantize(Decimal("1"), ROUND_HALF_UP))


def cents_to_usd(cents: int) -> Decimal:
    """Convert cents to dollars. 100 cents = $1."""
    return (Decimal(cents) / CENTS_PER_USD).quantize(USD_QUANT)


def btc_to_sats(btc: Decimal) -> int:
    """Convert BTC to satoshis (round half-up). 1 BTC = 1e8 sats."""
    return int((Decimal(btc) * SATS_PER_BTC).quantize(Decimal("1"), ROUND_HALF_UP))


def sats_to_btc(sats: int) -> Decimal:
    """Convert satoshis to BTC."""
    return (Decimal(sats) / SATS_PER_BTC).quantize(BTC_QUANT)


def usd_to_btc(usd: Decimal, rate: Decimal) -> Decimal:
    """Convert dollars to BTC at ``rate`` USD per BTC, to satoshi precision."""
    if rate <= 0:
        raise ValueError("exchange rate must be positive")
    return (Decimal(usd) / Decimal(rate)).quantize(BTC_QUANT, ROUND_HALF_UP)


def btc_to_usd(btc: Decimal, rate: Decimal) -> Decimal:
    """Convert BTC to dollars at ``rate`` USD per BTC, to cent precision."""
    return (Decimal(btc) * Decimal(rate)).quantize(USD_QUANT, ROUND_HALF_UP)


def conversion_is_consistent(
    amount_usd: Decimal,
    amount_btc: Decimal,
    rate: Decimal,
    tolerance: Decimal | float,
) -> bool:
    """
    Check that a quoted BTC amount matches the USD amount at ``rate``.

    The difference may not exceed ``tolerance`` (a fraction of the USD
    amount, covering provider fees) plus one cent of rounding.
    """
    if amount_usd <= 0 or amount_btc <= 0 or rate <= 0:
        return False
    implied_usd = Decimal(amount_btc) * Decimal(rate)
    allowed = Decimal(amount_usd) * Decimal(str(tolerance)) + USD_QUANT
    return abs(implied_usd - Decimal(amount_usd)) <= allowed
