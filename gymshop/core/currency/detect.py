"""
Request currency detection.

Priority:
  1. X-User-Currency header with a supported code  -> source "preference"
  2. FindIP geolocation of the client IP            -> source "geo"
  3. GYMSHOP_DEV_CURRENCY / USD for local/private IPs or lookup failures
                                                    -> source "default"
"""
from __future__ import annotations

import ipaddress
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import requests

from gymshop.core.config import env_str

from .rates import DEFAULT_CURRENCY, SUPPORTED, currency_for_country, normalize_currency

log = logging.getLogger("gymshop.currency")

FINDIP_URL = "https://api.findip.net/{ip}/"
_CACHE_TTL_SECONDS = 3600
_CACHE_MAX_ENTRIES = 10000


@dataclass(frozen=True)
class CurrencyDecision:
    currency: str
    source: str
    country: Optional[str] = None


def _is_local(ip: Optional[str]) -> bool:
    if not ip or ip in ("localhost", "testclient"):
        return True
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return True
    return addr.is_private or addr.is_loopback or addr.is_link_local


class GeoIpClient:
    """FindIP lookup with an in-process cache bounded by TTL and entry count (least recently used goes first)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        timeout: float = 3.0,
        session: Optional[requests.Session] = None,
        cache_ttl: float = _CACHE_TTL_SECONDS,
        cache_size: int = _CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_key = api_key if api_key is not None else env_str("FINDIP_API_KEY")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.cache_ttl = cache_ttl
        self.cache_size = cache_size
        self._clock = clock
        self._cache: "OrderedDict[str, Tuple[float, Optional[str]]]" = OrderedDict()
        self._lock = threading.Lock()

    def cached(self) -> int:
        with self._lock:
            return len(self._cache)

    def country_for(self, ip: str) -> Optional[str]:
        if not self.api_key:
            return None
        now = self._clock()
        with self._lock:
            hit = self._cache.get(ip)
            if hit is not None:
                if now - hit[0] < self.cache_ttl:
                    self._cache.move_to_end(ip)
                    return hit[1]
                del self._cache[ip]

        resp = self.session.get(FINDIP_URL.format(ip=ip), params={"token": self.api_key}, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json() or {}
        country = ((data.get("country") or {}).get("iso_code") or "").upper() or None

        with self._lock:
            self._cache[ip] = (now, country)
            self._cache.move_to_end(ip)
            while len(self._cache) > self.cache_size:
                self._cache.popitem(last=False)
        return country


def client_ip(headers, fallback: Optional[str]) -> Optional[str]:
    xf = headers.get("x-forwarded-for")
    if xf:
        return xf.split(",")[0].strip()
    real = headers.get("x-real-ip")
    if real:
        return real.strip()
    return fallback


def detect_currency(
    *,
    preferred: Optional[str],
    ip: Optional[str],
    geo: Optional[GeoIpClient],
) -> CurrencyDecision:
    pref = normalize_currency(preferred)
    if pref in SUPPORTED:
        return CurrencyDecision(currency=pref, source="preference")

    if _is_local(ip) or geo is None:
        dev = normalize_currency(env_str("GYMSHOP_DEV_CURRENCY"))
        return CurrencyDecision(currency=dev if dev in SUPPORTED else DEFAULT_CURRENCY, source="default")

    try:
        country = geo.country_for(ip)
    except (requests.RequestException, ValueError) as e:
        log.warning("geo lookup failed ip=%s err=%s", ip, type(e).__name__)
        return CurrencyDecision(currency=DEFAULT_CURRENCY, source="default")

    if not country:
        return CurrencyDecision(currency=DEFAULT_CURRENCY, source="default")
    return CurrencyDecision(currency=currency_for_country(country), source="geo", country=country)
