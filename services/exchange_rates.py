"""
Stored exchange rate lookup
Reads the single VES-per-USD rate from site_config with a short in-memory
cache. The rate is the one setting with a safe default: any failure yields 1.0
so crediting is never blocked on a config read.
"""

import time
import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

DEFAULT_RATE = Decimal('1.0')

RateFetcher = Callable[[], Awaitable[Optional[Decimal]]]


async def _fetch_from_site_config() -> Optional[Decimal]:
    from database import get_site_exchange_rate
    return await get_site_exchange_rate()


class ExchangeRateService:
    """Cached access to the stored exchange rate"""

    def __init__(self, fetcher: Optional[RateFetcher] = None, cache_ttl: float = 60.0):
        self._fetcher = fetcher or _fetch_from_site_config
        self.cache_ttl = cache_ttl
        self._cached_rate: Optional[Decimal] = None
        self._cached_at = 0.0

        self._cache_hit_count = 0
        self._fallback_usage_count = 0

    async def get_rate(self) -> Decimal:
        """
        Current VES-per-USD rate

        Returns:
            Decimal: stored rate, or 1.0 when missing, non-positive or unreadable
        """
        if self._cached_rate is not None and time.monotonic() - self._cached_at < self.cache_ttl:
            self._cache_hit_count += 1
            return self._cached_rate

        try:
            rate = await self._fetcher()
        except Exception as e:
            self._fallback_usage_count += 1
            logger.error(f"❌ Exchange rate read failed, using {DEFAULT_RATE}: {e}")
            return DEFAULT_RATE

        if rate is None or rate <= 0:
            self._fallback_usage_count += 1
            logger.warning(f"⚠️ No usable exchange rate configured ({rate}), using {DEFAULT_RATE}")
            return DEFAULT_RATE

        rate = Decimal(str(rate))
        self._cached_rate = rate
        self._cached_at = time.monotonic()
        logger.debug(f"💱 Exchange rate loaded: {rate} VES/USD")
        return rate

    def invalidate_cache(self) -> None:
        self._cached_rate = None
        logger.info("🗑️ Exchange rate cache invalidated")

    def get_stats(self) -> Dict[str, Any]:
        return {
            'cached_rate': str(self._cached_rate) if self._cached_rate is not None else None,
            'cache_hit_count': self._cache_hit_count,
            'fallback_usage_count': self._fallback_usage_count,
            'cache_ttl_seconds': self.cache_ttl,
        }
