"""
Multi-Currency Service

Currency conversion for cross-currency amount scoring:
- Rate provider interface (rates are fetched elsewhere)
- Tenant-scoped rate cache with explicit TTL and LRU eviction
- Converter that degrades to "unavailable" instead of failing

A missing rate never fails a match; the amount score simply becomes unknown.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple, Union

from ledgermatch.services.errors import DependencyUnavailableError
from ledgermatch.services.normalization import currency_exponent, normalize_currency

logger = logging.getLogger(__name__)

RateValue = Union[Decimal, float, str]


class RateProvider(Protocol):
    """Source of FX rates. May raise ``DependencyUnavailableError``."""

    def get_rate(self, base: str, quote: str, on: Optional[date] = None) -> Optional[Decimal]:
        ...


class StaticRateProvider:
    """
    Fixed rate table, e.g. loaded from a nightly export.

    Looks up (base, quote) directly and falls back to the inverse pair.
    """

    def __init__(self, rates: Mapping[Tuple[str, str], RateValue]):
        self._rates: Dict[Tuple[str, str], Decimal] = {
            (base.upper(), quote.upper()): Decimal(str(rate))
            for (base, quote), rate in rates.items()
        }

    def get_rate(self, base: str, quote: str, on: Optional[date] = None) -> Optional[Decimal]:
        base, quote = base.upper(), quote.upper()
        if base == quote:
            return Decimal(1)
        direct = self._rates.get((base, quote))
        if direct is not None:
            return direct
        inverse = self._rates.get((quote, base))
        if inverse:
            return Decimal(1) / inverse
        return None


@dataclass
class _CacheEntry:
    rate: Optional[Decimal]
    expires_at: float


class RateCache:
    """
    Tenant-scoped FX rate cache.

    Entries expire after ``ttl_seconds``; once ``max_entries`` is reached the
    least recently used entry is evicted. "No rate" answers are cached too so
    an unsupported pair is not re-queried on every candidate.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str, str, str], _CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    @staticmethod
    def _key(tenant_id: str, base: str, quote: str, on: Optional[date]) -> Tuple[str, str, str, str]:
        return (tenant_id, base, quote, on.isoformat() if on else "latest")

    def get(
        self, tenant_id: str, base: str, quote: str, on: Optional[date] = None
    ) -> Tuple[bool, Optional[Decimal]]:
        """Return ``(hit, rate)``; a hit may carry ``None`` (known-unavailable)."""
        key = self._key(tenant_id, base, quote, on)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False, None
            if entry.expires_at <= self._clock():
                del self._entries[key]
                return False, None
            self._entries.move_to_end(key)
            return True, entry.rate

    def put(
        self, tenant_id: str, base: str, quote: str, on: Optional[date], rate: Optional[Decimal]
    ) -> None:
        key = self._key(tenant_id, base, quote, on)
        with self._lock:
            self._entries[key] = _CacheEntry(rate=rate, expires_at=self._clock() + self.ttl_seconds)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, tenant_id: Optional[str] = None) -> int:
        """Drop all entries, or only one tenant's. Returns the number removed."""
        with self._lock:
            if tenant_id is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            keys = [key for key in self._entries if key[0] == tenant_id]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CurrencyConverter:
    """Rate lookups through an owned cache; failures read as unavailable."""

    def __init__(self, provider: Optional[RateProvider] = None, cache: Optional[RateCache] = None):
        self.provider = provider
        self.cache = cache if cache is not None else RateCache()

    def get_rate(
        self, tenant_id: str, base: Optional[str], quote: Optional[str], on: Optional[date] = None
    ) -> Optional[Decimal]:
        base = normalize_currency(base)
        quote = normalize_currency(quote)
        if not base or not quote:
            return None
        if base == quote:
            return Decimal(1)
        if self.provider is None:
            return None

        hit, rate = self.cache.get(tenant_id, base, quote, on)
        if hit:
            return rate

        try:
            rate = self.provider.get_rate(base, quote, on)
        except DependencyUnavailableError as exc:
            # Not cached, so the next lookup retries the provider.
            logger.warning("FX rate %s->%s unavailable for tenant %s: %s", base, quote, tenant_id, exc.detail)
            return None
        if rate is not None and rate <= 0:
            logger.warning("Ignoring non-positive FX rate %s->%s: %s", base, quote, rate)
            rate = None
        self.cache.put(tenant_id, base, quote, on, rate)
        return rate

    def is_convertible(
        self, tenant_id: str, base: Optional[str], quote: Optional[str], on: Optional[date] = None
    ) -> bool:
        return self.get_rate(tenant_id, base, quote, on) is not None

    def convert_minor(
        self,
        tenant_id: str,
        amount_minor: int,
        base: Optional[str],
        quote: Optional[str],
        on: Optional[date] = None,
    ) -> Optional[int]:
        """Convert minor units of ``base`` into minor units of ``quote``."""
        rate = self.get_rate(tenant_id, base, quote, on)
        if rate is None:
            return None
        major = Decimal(amount_minor).scaleb(-currency_exponent(base)) * rate
        converted = major.scaleb(currency_exponent(quote))
        return int(converted.quantize(Decimal(1), rounding=ROUND_HALF_UP))
