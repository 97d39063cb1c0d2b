from .detect import CurrencyDecision, GeoIpClient, client_ip, detect_currency
from .rates import COINS, SUPPORTED, convert_price, currency_for_country, price_for

__all__ = [
    "COINS",
    "SUPPORTED",
    "CurrencyDecision",
    "GeoIpClient",
    "client_ip",
    "convert_price",
    "currency_for_country",
    "detect_currency",
    "price_for",
]
