"""
Streaming aggregation of per-date availability searches.

`StreamingAggregator.stream()` is an async generator of tagged event dicts:
progress, one date event per requested date in completion order, done, and
then platform-update events from background identity resolution. A
`CancelToken` set by the caller stops all further work and output.
"""
import asyncio
import logging
from datetime import date
from typing import Optional, Dict, Any, List, AsyncIterator, Callable

from playwright.async_api import Error as PlaywrightError

from .config import ScraperConfig
from .fetch import FetchError
from .models import AvailabilityQuery, RestaurantCandidate
from .platforms import PlatformScraper, merge_candidates
from .resolver import IdentityResolver, DISCOVERY_PLATFORMS, reference_from_candidate
from .session import ConfigurationError
from .scraper_logger import get_scraper_logger

logger = logging.getLogger(__name__)

VALID_MEALS = (None, "lunch", "dinner")


class CancelToken:
    """Set by the consumer when it goes away; checked before every unit of work"""

    def __init__(self):
        self._event = asyncio.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


def validate_query(query: AvailabilityQuery, platforms: List[str]) -> Optional[str]:
    """Error message for an invalid query, None when it can be run"""
    if not query.city or not query.city.strip():
        return "city is required"
    if not query.dates:
        return "at least one date is required"
    for day in query.dates:
        try:
            date.fromisoformat(day)
        except (TypeError, ValueError):
            return f"invalid date: {day!r} (expected YYYY-MM-DD)"
    if query.party_size < 1:
        return "party_size must be at least 1"
    if query.meal not in VALID_MEALS:
        return f"invalid meal: {query.meal!r} (expected lunch or dinner)"
    if query.platform not in platforms:
        return f"unknown platform: {query.platform!r}"
    return None


async def _next_event(queue: asyncio.Queue, cancel: CancelToken) -> Optional[Dict[str, Any]]:
    """Next queued event, or None once cancelled"""
    getter = asyncio.ensure_future(queue.get())
    waiter = asyncio.ensure_future(cancel.wait())
    done, pending = await asyncio.wait({getter, waiter}, return_when=asyncio.FIRST_COMPLETED)
    for task in pending:
        task.cancel()
    if getter in done and not cancel.cancelled:
        return getter.result()
    return None


async def _cancel_tasks(tasks: List[asyncio.Task]):
    for task in tasks:
        if not task.done():
            task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class StreamingAggregator:
    """Runs one search per date concurrently and streams results as they complete"""

    def __init__(self, config: ScraperConfig, scrapers: Dict[str, PlatformScraper],
                 resolver: Optional[IdentityResolver] = None,
                 phone_lookup: Optional[Callable[[str], Optional[str]]] = None):
        self.config = config
        self.scrapers = scrapers
        self.resolver = resolver
        self.phone_lookup = phone_lookup
        self.state = "pending"

    def _set_state(self, state: str):
        logger.debug(f"Aggregator state: {self.state} -> {state}")
        self.state = state

    async def _search_date(self, scraper: PlatformScraper, day: str, query: AvailabilityQuery,
                           semaphore: asyncio.Semaphore, queue: asyncio.Queue, cancel: CancelToken):
        merged: Dict[str, RestaurantCandidate] = {}
        async with semaphore:
            if cancel.cancelled:
                return
            try:
                async for page in scraper.iter_date_pages(day, query.location(), query.refresh):
                    if cancel.cancelled:
                        return
                    merge_candidates(merged, page.restaurants)
                    await queue.put({'type': 'progress', 'date': day, 'page': page.page, 'count': len(merged)})
            except (FetchError, PlaywrightError) as e:
                logger.warning(f"{scraper.platform} search for {day} failed: {e}")
            except Exception:
                # Earlier pages of this date are kept
                logger.exception(f"{scraper.platform} search for {day} failed unexpectedly")

        restaurants = list(merged.values())
        await queue.put({
            'type': 'date',
            'date': day,
            'restaurants': restaurants,
            'count': len(restaurants),
        })

    async def stream(self, query: AvailabilityQuery,
                     cancel: Optional[CancelToken] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream availability for every date in query.

        Yields:
            Event dicts tagged by 'type'. Invalid input yields a single
            error event. Nothing is yielded once cancel is set.
        """
        cancel = cancel or CancelToken()
        self._set_state("pending")

        error = validate_query(query, list(self.scrapers))
        if error:
            logger.warning(f"Rejected availability query: {error}")
            yield {'type': 'error', 'message': error}
            return

        scraper = self.scrapers[query.platform]
        try:
            scraper.check_configured()
        except ConfigurationError as e:
            logger.error(f"{scraper.platform} search unavailable: {e}")
            yield {'type': 'error', 'message': str(e)}
            return

        dates = list(dict.fromkeys(query.dates))[:self.config.max_dates]
        logger.info(f"Searching {scraper.platform} in {query.city} for {len(dates)} dates")
        get_scraper_logger().log_separator(f"{scraper.platform} availability: {query.city}, {len(dates)} dates")

        self._set_state("fanning_out")
        queue: asyncio.Queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_dates)
        tasks = [
            asyncio.create_task(self._search_date(scraper, day, query, semaphore, queue, cancel))
            for day in dates
        ]

        unique: Dict[str, RestaurantCandidate] = {}
        self._set_state("streaming")
        try:
            remaining = len(dates)
            while remaining:
                event = await _next_event(queue, cancel)
                if event is None:
                    self._set_state("aborted")
                    logger.info("Availability stream cancelled by consumer")
                    return
                if event['type'] == 'date':
                    remaining -= 1
                    for restaurant in event['restaurants']:
                        unique.setdefault(restaurant.key, restaurant)
                    event = {**event, 'restaurants': [r.model_dump(mode='json') for r in event['restaurants']]}
                yield event
        finally:
            await _cancel_tasks(tasks)

        if cancel.cancelled:
            self._set_state("aborted")
            return
        yield {'type': 'done', 'totalRestaurants': len(unique), 'dates': dates}

        self._set_state("background_discovery")
        async for event in self._discover_links(list(unique.values()), cancel):
            yield event
        self._set_state("aborted" if cancel.cancelled else "done")

    async def _discover_one(self, restaurant: RestaurantCandidate):
        reference = reference_from_candidate(restaurant)
        if not reference.get('phone') and self.phone_lookup is not None:
            reference['phone'] = self.phone_lookup(restaurant.name)
        return await self.resolver.resolve(reference, restaurant.missing_links(DISCOVERY_PLATFORMS))

    async def _discover_links(self, restaurants: List[RestaurantCandidate],
                              cancel: CancelToken) -> AsyncIterator[Dict[str, Any]]:
        """platform-update events for well-rated restaurants still missing links"""
        if self.resolver is None:
            return
        threshold = self.config.discovery_score_threshold
        pending = [
            r for r in restaurants
            if r.score is not None and r.score >= threshold and r.missing_links(DISCOVERY_PLATFORMS)
        ]
        if not pending:
            return
        logger.info(f"Background link discovery for {len(pending)} restaurants")

        batch_size = self.config.discovery_batch_size
        for start in range(0, len(pending), batch_size):
            if cancel.cancelled:
                return
            batch = pending[start:start + batch_size]
            results = await asyncio.gather(*[self._discover_one(r) for r in batch], return_exceptions=True)
            if cancel.cancelled:
                return
            for restaurant, identity in zip(batch, results):
                if isinstance(identity, BaseException):
                    logger.warning(f"Link discovery failed for {restaurant.name}: {identity}")
                    continue
                found = {p: link for p, link in identity.links.items() if link}
                if not found:
                    continue
                yield {
                    'type': 'platform-update',
                    'key': restaurant.key,
                    'name': restaurant.name,
                    'links': identity.links,
                    'score': identity.score or restaurant.score,
                }

    async def resolve_names(self, names: List[str], city: str = "tokyo",
                            cancel: Optional[CancelToken] = None) -> AsyncIterator[Dict[str, Any]]:
        """Resolve a list of restaurant names, one result event each, in completion order"""
        cancel = cancel or CancelToken()
        if self.resolver is None:
            yield {'type': 'error', 'message': 'identity resolution is not configured'}
            return
        names = [n.strip() for n in names if n and n.strip()]
        if not names:
            yield {'type': 'error', 'message': 'at least one name is required'}
            return

        queue: asyncio.Queue = asyncio.Queue()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_names)

        async def resolve_one(name: str):
            async with semaphore:
                if cancel.cancelled:
                    return
                try:
                    identity = await self.resolver.resolve({'name': name, 'city': city})
                    score = await self.resolver.lookup_score(name, city)
                except Exception as e:
                    logger.warning(f"Resolving {name} failed: {e}")
                    await queue.put({'type': 'result',
                                     'restaurant': {'name': name, 'city': city, 'links': {}, 'error': str(e)}})
                    return
                restaurant = identity.model_dump(mode='json')
                restaurant['score'] = restaurant.get('score') or score.get('score')
                restaurant['tabelog_url'] = restaurant.get('tabelog_url') or score.get('tabelog_url')
                await queue.put({'type': 'result', 'restaurant': restaurant})

        tasks = [asyncio.create_task(resolve_one(n)) for n in names]
        try:
            for _ in names:
                event = await _next_event(queue, cancel)
                if event is None:
                    logger.info("Name resolution cancelled by consumer")
                    return
                yield event
        finally:
            await _cancel_tasks(tasks)

        yield {'type': 'done', 'totalRestaurants': len(names), 'dates': []}
