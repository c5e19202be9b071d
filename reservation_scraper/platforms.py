"""
Platform scrapers for Tabelog, Omakase, TableCheck and TableAll.
Each paginates sequentially, caches every page, and stops at the page cap
or when the platform shows no next page.
"""
import asyncio
import logging
from contextlib import AsyncExitStack
from typing import Optional, Dict, Any, List, AsyncIterator, Awaitable, Callable
from urllib.parse import urlencode

from playwright.async_api import Error as PlaywrightError
from pydantic import ValidationError

from .cache import CacheStore, make_key
from .config import ScraperConfig, TABELOG_CITIES, OMAKASE_AREA_IDS, TABLECHECK_CITY_COORDS
from .fetch import Fetcher, FetchError, wait_for_selector
from .models import DateRange, LocationParams, RestaurantCandidate, SearchPage, SearchResult
from .parse import (
    parse_tabelog_list,
    parse_tabelog_detail,
    parse_omakase_page,
    omakase_has_next_page,
    parse_tableall_page,
    parse_tablecheck_page,
    has_rel_next,
)
from .scraper_logger import get_scraper_logger
from .session import SessionManager

logger = logging.getLogger(__name__)

PageFetcher = Callable[[int], Awaitable[SearchPage]]


def merge_candidates(into: Dict[str, RestaurantCandidate], restaurants: List[RestaurantCandidate]):
    """Fold restaurants into a key -> candidate map, merging availability for repeats"""
    for restaurant in restaurants:
        existing = into.get(restaurant.key)
        if existing is None:
            into[restaurant.key] = restaurant.model_copy(deep=True)
            continue
        for entry in restaurant.availability:
            existing.add_availability(entry.model_copy())
        if existing.score is None and restaurant.score is not None:
            existing.score = restaurant.score


class PlatformScraper:
    """Shared pagination and caching for one booking platform"""

    platform = ""

    def __init__(self, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.config = config
        self.fetcher = fetcher
        self.caches = caches
        self._sleep = sleep

    async def _cached_page(self, domain: str, key: str, fetch_one: PageFetcher, page: int,
                           refresh: bool) -> Optional[SearchPage]:
        """One results page from cache, or fetched and cached; None if the fetch failed"""
        cache = self.caches.domain(domain)
        scraper_logger = get_scraper_logger()

        if not refresh:
            cached = cache.get(key)
            if cached is not None:
                try:
                    result = SearchPage.model_validate(cached)
                except ValidationError as e:
                    logger.warning(f"{self.platform}: discarding malformed cached page {key}: {e}")
                    cache.delete(key)
                else:
                    scraper_logger.log_cache(domain, key, hit=True, count=len(result.restaurants))
                    return result
        scraper_logger.log_cache(domain, key, hit=False)

        if page > 1:
            await self._sleep(self.config.get_delay())

        try:
            result = await fetch_one(page)
        except (FetchError, PlaywrightError) as e:
            logger.warning(f"{self.platform}: page {page} failed ({key}): {e}")
            return None

        await cache.aset(key, result.model_dump(mode='json'))
        return result

    async def _paginate(self, domain: str, key_parts: List[Any], fetch_one: PageFetcher,
                        refresh: bool = False) -> AsyncIterator[SearchPage]:
        for page in range(1, self.config.max_pages(self.platform) + 1):
            key = make_key(self.platform, *key_parts, page)
            result = await self._cached_page(domain, key, fetch_one, page, refresh)
            if result is None:
                return
            yield result
            if not result.has_next_page:
                return

    # Platforms whose search takes a from/to range in a single query
    supports_ranges = False

    def check_configured(self):
        """Raise ConfigurationError when this platform cannot be searched at all"""
        return None

    def iter_range_pages(self, date_from: str, date_to: str, location: LocationParams,
                         refresh: bool = False) -> AsyncIterator[SearchPage]:
        raise NotImplementedError

    def iter_date_pages(self, day: str, location: LocationParams,
                        refresh: bool = False) -> AsyncIterator[SearchPage]:
        """Result pages for a single date"""
        return self.iter_range_pages(day, day, location, refresh)

    async def search(self, date_range: DateRange, location: LocationParams,
                     refresh: bool = False) -> SearchResult:
        """All restaurants with availability in the date range"""
        merged: Dict[str, RestaurantCandidate] = {}
        pages = 0
        if self.supports_ranges:
            queries = [self.iter_range_pages(date_range.date_from, date_range.date_to, location, refresh)]
        else:
            queries = [self.iter_date_pages(day, location, refresh)
                       for day in date_range.dates(self.config.max_dates)]
        for query in queries:
            async for result in query:
                pages += 1
                merge_candidates(merged, result.restaurants)

        logger.info(f"{self.platform}: {len(merged)} restaurants across {pages} pages")
        return SearchResult(
            platform=self.platform,
            restaurants=list(merged.values()),
            date_from=date_range.date_from,
            date_to=date_range.date_to,
            pages_fetched=pages,
        )


class TabelogScraper(PlatformScraper):
    """Tabelog ranked lists, optionally filtered to restaurants with a vacancy"""

    platform = "tabelog"

    @staticmethod
    def city_slug(city: str) -> str:
        return TABELOG_CITIES.get(city.lower(), city.lower())

    @staticmethod
    def meal_time(meal: Optional[str]) -> str:
        # The vacancy filter only applies when a time is given
        return "1200" if meal == "lunch" else "1900"

    @staticmethod
    def build_browse_url(city_slug: str, page: int, sort: str = "rt", date: Optional[str] = None,
                         time: Optional[str] = None, party_size: Optional[int] = None) -> str:
        params = {}
        if sort == "rt":
            params['SrtT'] = 'rt'
        if date:
            params['svd'] = date.replace('-', '')
            params['vac_net'] = '1'
        if time:
            params['svt'] = time
        if party_size:
            params['svps'] = str(party_size)
        query = f"?{urlencode(params)}" if params else ""
        if page == 1:
            return f"https://tabelog.com/en/{city_slug}/rstLst/{query}"
        return f"https://tabelog.com/en/{city_slug}/rstLst/{page}/{query}"

    def _page_fetcher(self, city: str, sort: str, date: Optional[str], time: Optional[str],
                      party_size: Optional[int]) -> PageFetcher:
        async def fetch_one(page: int) -> SearchPage:
            url = self.build_browse_url(self.city_slug(city), page, sort, date, time, party_size)
            if date:
                # Booking time slots on filtered lists are filled in client-side
                html = await self.fetcher.fetch_page(
                    url, requires_render=True, wait_selector='.list-rst',
                    wait_timeout=self.config.tabelog_wait_timeout,
                )
            else:
                html = await self.fetcher.fetch_page(url)
            restaurants, has_next = parse_tabelog_list(html, city.lower(), date)
            get_scraper_logger().log_listing(self.platform, url, len(restaurants), has_next)
            return SearchPage(restaurants=restaurants, page=page, has_next_page=has_next)
        return fetch_one

    async def browse(self, city: str, page: int = 1, refresh: bool = False, sort: str = "rt") -> SearchPage:
        """One unfiltered ranked-list page (cached for a day)"""
        key = make_key(self.platform, city.lower(), page, sort)
        fetch_one = self._page_fetcher(city, sort, None, None, None)
        result = await self._cached_page('listing', key, fetch_one, page, refresh)
        return result or SearchPage(page=page)

    def iter_date_pages(self, day: str, location: LocationParams,
                        refresh: bool = False) -> AsyncIterator[SearchPage]:
        time = self.meal_time(location.meal)
        party = location.party_size or None
        fetch_one = self._page_fetcher(location.city, "rt", day, time, party)
        return self._paginate(
            'availability', [location.city.lower(), "rt", day, time, party or ""], fetch_one, refresh
        )

    async def scrape_detail(self, url: str) -> Dict[str, Any]:
        """Full details for one restaurant page"""
        html = await self.fetcher.fetch_page(
            url, requires_render=True, wait_selector='.rdheader-rstname',
            wait_timeout=self.config.tabelog_wait_timeout,
        )
        return parse_tabelog_detail(html, url)


class OmakaseScraper(PlatformScraper):
    """Omakase premium search (requires a logged-in account)"""

    platform = "omakase"
    supports_ranges = True
    search_base = "https://omakase.in/users/premium/restaurants"

    def __init__(self, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore,
                 sessions: SessionManager, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        super().__init__(config, fetcher, caches, sleep)
        self.sessions = sessions

    def check_configured(self):
        self.sessions.require_account(self.platform)

    @staticmethod
    def area_id(location: LocationParams) -> str:
        for name in (location.area, location.city):
            if name and name.lower() in OMAKASE_AREA_IDS:
                return OMAKASE_AREA_IDS[name.lower()]
        return OMAKASE_AREA_IDS["tokyo"]

    def build_search_url(self, date_from: str, date_to: str, area_id: str, guests: int, page: int) -> str:
        params = {
            'area_id': area_id,
            'from_date': date_from,
            'to_date': date_to,
            'guests_count': str(guests),
            'keyword': '',
        }
        if page > 1:
            params['page'] = str(page)
        return f"{self.search_base}?{urlencode(params)}"

    async def iter_range_pages(self, date_from: str, date_to: str, location: LocationParams,
                               refresh: bool = False) -> AsyncIterator[SearchPage]:
        area_id = self.area_id(location)
        guests = location.party_size or 2
        year = int(date_from[:4])

        async with AsyncExitStack() as stack:
            auth = None

            async def fetch_one(page: int) -> SearchPage:
                nonlocal auth
                if auth is None:
                    # Only log in once a page actually has to be fetched
                    auth = await stack.enter_async_context(self.sessions.acquire_session(self.platform))
                url = self.build_search_url(date_from, date_to, area_id, guests, page)
                get_scraper_logger().log_url_visit(url, "authenticated")
                await auth.goto(url)
                await wait_for_selector(auth.page, '.c-rItem_advanced', self.config.omakase_wait_timeout)
                html = await auth.content()
                restaurants = parse_omakase_page(html, year)
                for restaurant in restaurants:
                    restaurant.city = location.city.lower()
                has_next = omakase_has_next_page(html, page)
                get_scraper_logger().log_listing(self.platform, url, len(restaurants), has_next)
                return SearchPage(restaurants=restaurants, page=page, has_next_page=has_next)

            async for result in self._paginate(
                'availability', [date_from, date_to, area_id, guests], fetch_one, refresh
            ):
                yield result


class TableCheckScraper(PlatformScraper):
    """TableCheck geo search with same-meal-time availability"""

    platform = "tablecheck"

    @staticmethod
    def build_search_url(day: str, city: str, party_size: int, time: str, page: int = 1) -> str:
        lat, lng = TABLECHECK_CITY_COORDS.get(city.lower(), TABLECHECK_CITY_COORDS["tokyo"])
        params = {
            'service_mode': 'dining',
            'sort_by': 'relevance',
            'venue_type': 'tc',
            'geo_latitude': str(lat),
            'geo_longitude': str(lng),
            'auto_geolocate': 'false',
            'geo_distance': '5km',
            'date': day,
            'num_people': str(party_size),
            'time': time,
            'availability_mode': 'same_meal_time',
            'availability_format': 'datetime',
            'sort_order': 'asc',
        }
        if page > 1:
            params['page'] = str(page)
        return f"https://www.tablecheck.com/en/japan/search?{urlencode(params)}"

    def iter_date_pages(self, day: str, location: LocationParams,
                        refresh: bool = False) -> AsyncIterator[SearchPage]:
        time = "12:00" if location.meal == "lunch" else "19:00"
        party = location.party_size or 2
        city = location.city.lower()

        async def fetch_one(page: int) -> SearchPage:
            url = self.build_search_url(day, city, party, time, page)
            html = await self.fetcher.fetch_page(
                url, requires_render=True,
                wait_selector='[data-testid="Explore Venue Card"]',
                wait_timeout=self.config.tablecheck_wait_timeout,
            )
            restaurants = parse_tablecheck_page(html, day)
            for restaurant in restaurants:
                restaurant.city = city
            has_next = has_rel_next(html)
            get_scraper_logger().log_listing(self.platform, url, len(restaurants), has_next)
            return SearchPage(restaurants=restaurants, page=page, has_next_page=has_next)

        return self._paginate('availability', [day, city, party, location.meal or ""], fetch_one, refresh)


class TableAllScraper(PlatformScraper):
    """TableAll opening calendar"""

    platform = "tableall"
    supports_ranges = True

    @staticmethod
    def build_search_url(date_from: str, date_to: str, area: Optional[str] = None, page: int = 1) -> str:
        params = {'from': date_from, 'to': date_to}
        if area:
            params['area'] = area
        if page > 1:
            params['page'] = str(page)
        return f"https://www.tableall.com/opening/index?{urlencode(params)}"

    def iter_range_pages(self, date_from: str, date_to: str, location: LocationParams,
                         refresh: bool = False) -> AsyncIterator[SearchPage]:
        area = location.area or ""

        async def fetch_one(page: int) -> SearchPage:
            url = self.build_search_url(date_from, date_to, area or None, page)
            html = await self.fetcher.fetch_page(
                url, requires_render=True, wait_selector='.cal-item',
                wait_timeout=self.config.tableall_wait_timeout,
            )
            restaurants = parse_tableall_page(html, date_from, date_to)
            for restaurant in restaurants:
                restaurant.city = location.city.lower()
            has_next = has_rel_next(html)
            get_scraper_logger().log_listing(self.platform, url, len(restaurants), has_next)
            return SearchPage(restaurants=restaurants, page=page, has_next_page=has_next)

        return self._paginate('availability', [date_from, date_to, area], fetch_one, refresh)


def build_scrapers(config: ScraperConfig, fetcher: Fetcher, caches: CacheStore,
                   sessions: Optional[SessionManager] = None) -> Dict[str, PlatformScraper]:
    """Scraper instance per platform key"""
    sessions = sessions or SessionManager(config, fetcher, caches)
    return {
        "tabelog": TabelogScraper(config, fetcher, caches),
        "omakase": OmakaseScraper(config, fetcher, caches, sessions),
        "tablecheck": TableCheckScraper(config, fetcher, caches),
        "tableall": TableAllScraper(config, fetcher, caches),
    }
