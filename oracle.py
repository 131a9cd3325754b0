# betsync/oracle.py
"""
ETH/USD spot price for display. Never used for bet state.
"""
from __future__ import annotations

import logging
import time
from typing import Dict, Optional, Tuple

import requests

from config import ETH_USD_URL, PRICE_CACHE_SECONDS

logger = logging.getLogger(__name__)

HTTP_TIMEOUT = 6.0  # seconds

MIN_ETH_PRICE = 10.0
MAX_ETH_PRICE = 1_000_000.0

WEI_PER_ETH = 10 ** 18


# ============================================================
# In-memory cache
# ============================================================

_cache: Dict[str, Tuple[float, float]] = {}
# key -> (price, timestamp)


def _now() -> float:
    return time.time()


def _valid_price(p: Optional[float]) -> bool:
    return isinstance(p, (int, float)) and MIN_ETH_PRICE < p < MAX_ETH_PRICE


def _fetch_eth_usd() -> Optional[float]:
    try:
        r = requests.get(ETH_USD_URL, timeout=HTTP_TIMEOUT)
        r.raise_for_status()
        price = float(r.json()["data"]["amount"])
    except (requests.RequestException, KeyError, TypeError, ValueError) as e:
        logger.warning("ETH/USD fetch failed: %s", e)
        return None
    return price if _valid_price(price) else None


def get_eth_usd() -> Optional[float]:
    cached = _cache.get("eth_usd")
    if cached and _now() - cached[1] < PRICE_CACHE_SECONDS:
        return cached[0]

    price = _fetch_eth_usd()
    if price is not None:
        _cache["eth_usd"] = (price, _now())
        return price

    # Stale beats nothing for display purposes
    return cached[0] if cached else None


def wei_to_usd(wei: int, price: Optional[float]) -> Optional[float]:
    if price is None:
        return None
    return round(wei / WEI_PER_ETH * price, 2)
