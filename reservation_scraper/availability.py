"""
Per-restaurant Tabelog reservation calendar check.

A restaurant page is first fetched statically to see whether it has online
booking at all; only then is the booking calendar rendered in the browser.
"""
import logging
from datetime import datetime, timezone
from typing import Optional, List

from playwright.async_api import Error as PlaywrightError

from .cache import CacheStore
from .config import ScraperConfig
from .fetch import Fetcher, FetchError
from .models import ReservationCheck
from .parse import has_tabelog_booking, find_yoyaku_links, parse_booking_calendar, to_japanese_tabelog_url
from .scraper_logger import get_scraper_logger

logger = logging.getLogger(__name__)

CALENDAR_SELECTOR = 'table, [class*="calendar"], [class*="rsv"]'


def check_cache_key(ja_url: str, date_from: Optional[str] = None, date_to: Optional[str] = None,
                    meals: Optional[List[str]] = None, party_size: Optional[int] = None) -> str:
    parts = [ja_url]
    if date_from or date_to:
        parts.append(f"{date_from or ''}-{date_to or ''}")
    if meals:
        parts.append(",".join(sorted(meals)))
    if party_size:
        parts.append(f"p{party_size}")
    return "::".join(parts)


class ReservationChecker:
    """Checks whether a Tabelog restaurant takes online bookings and on which dates"""

    def __init__(self, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore):
        self.config = config
        self.fetcher = fetcher
        self.caches = caches

    @staticmethod
    def _now() -> str:
        return datetime.now(timezone.utc).isoformat()

    async def check(self, tabelog_url: str, refresh: bool = False,
                    date_from: Optional[str] = None, date_to: Optional[str] = None,
                    meals: Optional[List[str]] = None,
                    party_size: Optional[int] = None) -> ReservationCheck:
        ja_url = to_japanese_tabelog_url(tabelog_url)
        key = check_cache_key(ja_url, date_from, date_to, meals, party_size)
        cache = self.caches.availability

        if not refresh:
            cached = cache.get(key)
            if cached is not None:
                result = ReservationCheck.model_validate(cached)
                # Bookable with no dates means the calendar did not load last time
                if not (result.has_online_reservation and not result.dates):
                    return result
                cache.delete(key)

        try:
            html = await self.fetcher.fetch_static(ja_url, timeout=8)
        except FetchError as e:
            logger.warning(f"Reservation check failed for {ja_url}: {e}")
            return ReservationCheck(tabelog_url=tabelog_url, checked_at=self._now(), error=str(e))

        if not has_tabelog_booking(html):
            result = ReservationCheck(tabelog_url=tabelog_url, has_online_reservation=False,
                                      checked_at=self._now())
            await cache.aset(key, result.model_dump(mode='json'))
            return result

        try:
            result = await self._read_calendar(tabelog_url, ja_url, date_from, date_to)
        except (FetchError, PlaywrightError) as e:
            logger.warning(f"Booking calendar failed for {ja_url}: {e}")
            get_scraper_logger().log_warning(f"booking calendar failed: {e}", url=ja_url)
            return ReservationCheck(tabelog_url=tabelog_url, has_online_reservation=True,
                                    checked_at=self._now(), error=str(e))

        await cache.aset(key, result.model_dump(mode='json'))
        return result

    async def _read_calendar(self, tabelog_url: str, ja_url: str,
                             date_from: Optional[str], date_to: Optional[str]) -> ReservationCheck:
        page_html = await self.fetcher.fetch_rendered(ja_url)
        reservation_url, booking_url = find_yoyaku_links(page_html)
        if not booking_url:
            logger.info(f"{ja_url}: booking widget present but no booking link found")
            return ReservationCheck(tabelog_url=tabelog_url, has_online_reservation=True,
                                    reservation_url=reservation_url, checked_at=self._now())

        calendar_html = await self.fetcher.fetch_rendered(
            booking_url, wait_selector=CALENDAR_SELECTOR,
            wait_timeout=self.config.booking_wait_timeout,
        )
        entries = parse_booking_calendar(calendar_html, self.config.max_calendar_cells)
        if date_from:
            entries = [e for e in entries if e.date >= date_from]
        if date_to:
            entries = [e for e in entries if e.date <= date_to]

        logger.info(f"{ja_url}: {len(entries)} calendar dates")
        return ReservationCheck(
            tabelog_url=tabelog_url,
            has_online_reservation=True,
            reservation_url=booking_url,
            dates=entries,
            checked_at=self._now(),
        )
