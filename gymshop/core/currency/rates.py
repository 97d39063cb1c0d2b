from __future__ import annotations

from typing import Dict, Iterable, Mapping, Optional

from gymshop.core.errors import ValidationFailed

COINS = "GYMMAWY_COINS"
SUPPORTED = ("EGP", "SAR", "AED", "USD")
ALL_CURRENCIES = SUPPORTED + (COINS,)
DEFAULT_CURRENCY = "USD"

COUNTRY_CURRENCY: Dict[str, str] = {
    "EG": "EGP",
    "SA": "SAR",
    "AE": "AED",
}

# Static table; refreshed by hand when finance publishes new rates.
RATES: Dict[str, Dict[str, float]] = {
    "USD": {"EGP": 30.5, "SAR": 3.75, "AED": 3.67},
    "EGP": {"USD": 0.033, "SAR": 0.123, "AED": 0.120},
    "SAR": {"USD": 0.267, "EGP": 8.13, "AED": 0.98},
    "AED": {"USD": 0.272, "EGP": 8.30, "SAR": 1.02},
}

# Order in which a missing price is derived from another currency.
_FALLBACK_SOURCES = ("USD", "SAR", "EGP", "AED")


def normalize_currency(code: Optional[str]) -> Optional[str]:
    if not code:
        return None
    c = code.strip().upper()
    return c if c in ALL_CURRENCIES else None


def currency_for_country(country_code: Optional[str]) -> str:
    return COUNTRY_CURRENCY.get((country_code or "").strip().upper(), DEFAULT_CURRENCY)


def rate(src: str, dst: str) -> float:
    if src == dst:
        return 1.0
    r = RATES.get(src, {}).get(dst)
    if r is None:
        raise ValidationFailed(f"Exchange rate not available for {src} to {dst}")
    return r


def convert_price(amount: float, src: str, dst: str) -> float:
    if src == dst:
        return float(amount)
    return round(float(amount) * rate(src, dst), 2)


def rates_for(base: str) -> Dict[str, float]:
    b = normalize_currency(base)
    if b is None or b not in RATES:
        raise ValidationFailed(f"Unsupported currency: {base}")
    out = {b: 1.0}
    out.update(RATES[b])
    return out


def price_for(prices: Mapping[str, float], currency: str, *, sources: Iterable[str] = _FALLBACK_SOURCES) -> float:
    """
    Resolve a catalog price in ``currency``.

    Prefers an explicit entry; otherwise converts from the first available
    source currency in the static table.
    """
    if currency in prices and prices[currency] is not None:
        return round(float(prices[currency]), 2)
    for src in sources:
        if src in prices and prices[src] is not None and currency in RATES.get(src, {}):
            return convert_price(prices[src], src, currency)
    raise ValidationFailed(f"Price not available for currency: {currency}")
