"""
Cross-platform restaurant identity resolution.

Given a restaurant known on one platform, find its listings on the others.
Stages run cheapest first and stop at the first confident answer:

1. exact normalized-name match against every cached listing
2. fuzzy token match against the same index
3. persistent link / score caches
4. site-restricted web search (phone pass, name + area pass, city pass)
5. language-model choice when several listings survive filtering
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Optional, Dict, Any, List, Pattern

from .cache import CacheStore, make_key
from .config import ScraperConfig, TABELOG_CITIES
from .fetch import Fetcher, FetchError
from .llm import Disambiguator
from .models import ResolvedIdentity, RestaurantCandidate
from .normalize import (
    normalize_name,
    clean_area_name,
    normalize_phone,
    format_phone_for_query,
    phones_match,
    find_fuzzy_match,
    title_matches_name,
    is_dining_listing,
    KNOWN_TOKYO_AREAS,
)
from .parse import extract_phones, canonical_tabelog_url, parse_tabelog_score, TABELOG_URL_RE
from .scraper_logger import get_scraper_logger
from .search_api import SerperSearch, SearchAPIError

logger = logging.getLogger(__name__)


@dataclass
class PlatformPattern:
    domain: str
    url_re: Pattern
    id_re: Pattern


PLATFORM_PATTERNS: Dict[str, PlatformPattern] = {
    "tablecheck": PlatformPattern(
        domain="tablecheck.com",
        url_re=re.compile(r'tablecheck\.com/(?:en/)?([^/?]+)'),
        id_re=re.compile(r'tablecheck\.com/(?:[a-z]{2}/)?(?:shops/)?([^/?]+)'),
    ),
    "omakase": PlatformPattern(
        domain="omakase.in",
        url_re=re.compile(r'omakase\.in/([^/?]+)'),
        id_re=re.compile(r'omakase\.in/(?:[a-z]{2}/)?r/([a-z0-9]+)'),
    ),
    "tableall": PlatformPattern(
        domain="tableall.com",
        url_re=re.compile(r'tableall\.com/restaurant/(\d+)'),
        id_re=re.compile(r'tableall\.com/restaurant/(\d+)'),
    ),
}

DISCOVERY_PLATFORMS = list(PLATFORM_PATTERNS)


def links_cache_key(name: str, city: str, area: Optional[str] = None) -> str:
    cleaned = clean_area_name(area) if area else ""
    parts = [normalize_name(name), (city or "").lower()]
    if cleaned:
        parts.append(normalize_name(cleaned))
    return make_key(*parts)


def score_cache_key(name: str, city: str) -> str:
    return make_key(normalize_name(name), (city or "").lower())


def reference_from_candidate(candidate: RestaurantCandidate) -> Dict[str, Any]:
    """Resolution reference built from a scraped candidate"""
    return {
        'name': candidate.name,
        'city': candidate.city or 'tokyo',
        'area': candidate.area,
        'address': candidate.address,
        'phone': candidate.phone,
        'links': dict(candidate.platform_links),
        'tabelog_url': candidate.platform_links.get('tabelog'),
        'score': candidate.score,
    }


class IdentityResolver:
    """Staged resolver with write-through caches"""

    def __init__(self, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore,
                 search: Optional[SerperSearch] = None,
                 disambiguator: Optional[Disambiguator] = None):
        self.config = config
        self.fetcher = fetcher
        self.caches = caches
        self.search = search
        if self.search is None and config.serper_api_key:
            self.search = SerperSearch(config.serper_api_key, base_url=config.serper_url)
        self.disambiguator = disambiguator or Disambiguator(config.gemini_api_key, config.gemini_model)
        self._missing_search_reported = False

    # -- index over cached listings ------------------------------------------------

    def build_index(self, city: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """
        normalized name -> {name, links, score, tabelog_url} from every cached
        listing page. Pure cache read.
        """
        index: Dict[str, Dict[str, Any]] = {}
        for domain in ('listing', 'availability'):
            for _key, page in self.caches.domain(domain).items():
                if not isinstance(page, dict):
                    continue
                for restaurant in page.get('restaurants') or []:
                    if city and restaurant.get('city') and restaurant['city'] != city.lower():
                        continue
                    norm = normalize_name(restaurant.get('name'))
                    if not norm:
                        continue
                    entry = index.setdefault(norm, {
                        'name': restaurant.get('name'),
                        'links': {},
                        'score': None,
                        'tabelog_url': None,
                    })
                    for platform, link in (restaurant.get('platform_links') or {}).items():
                        if link and not entry['links'].get(platform):
                            entry['links'][platform] = link
                    if restaurant.get('platform') == 'tabelog' and restaurant.get('score') and not entry['score']:
                        entry['score'] = restaurant['score']
                        entry['tabelog_url'] = restaurant.get('url')
        return index

    def _index_lookup(self, name: str, index: Dict[str, Dict[str, Any]]):
        norm = normalize_name(name)
        if norm in index:
            return 'exact', index[norm]
        match = find_fuzzy_match(name, index)
        if match:
            return 'fuzzy', match[1]
        return None, None

    def _search_available(self) -> bool:
        if self.search is not None:
            return True
        if not self._missing_search_reported:
            logger.error("SERPER_API_KEY not configured; web search resolution disabled")
            self._missing_search_reported = True
        return False

    # -- platform links ---------------------------------------------------------

    def get_cached_links(self, name: str, city: str, area: Optional[str] = None) -> Optional[Dict[str, Optional[str]]]:
        """Cached cross-platform links, without any network request"""
        return self.caches.platform_links.get(links_cache_key(name, city, area))

    async def resolve(self, reference: Dict[str, Any], platforms: Optional[List[str]] = None) -> ResolvedIdentity:
        """
        Find the reference restaurant's listings on the requested platforms.

        Args:
            reference: name and city, optionally area, address, phone,
                tabelog_url and already known links
            platforms: platforms to resolve (default: all discoverable ones)

        Returns:
            ResolvedIdentity with a link (or None) per requested platform
        """
        name = reference['name']
        city = (reference.get('city') or 'tokyo').lower()
        area = reference.get('area')
        scraper_logger = get_scraper_logger()
        platforms = platforms or DISCOVERY_PLATFORMS

        known = {p: link for p, link in (reference.get('links') or {}).items() if link}
        links: Dict[str, Optional[str]] = {p: known.get(p) for p in platforms}
        score = reference.get('score')
        tabelog_url = reference.get('tabelog_url') or known.get('tabelog')
        key = links_cache_key(name, city, area)

        def finish(stage: str) -> ResolvedIdentity:
            return ResolvedIdentity(name=name, city=city, links=dict(links), score=score,
                                    tabelog_url=tabelog_url, stage=stage)

        missing = [p for p in platforms if not links.get(p)]
        if not missing:
            return finish('known')

        # Stages 1-2: cached listings
        stage, entry = self._index_lookup(name, self.build_index(city))
        if entry:
            for platform in missing:
                if entry['links'].get(platform):
                    links[platform] = entry['links'][platform]
            score = score or entry.get('score')
            tabelog_url = tabelog_url or entry.get('tabelog_url')
            missing = [p for p in platforms if not links.get(p)]
            if not missing:
                await self._store_links(key, links)
                scraper_logger.log_resolve(name, stage, f"links={links}")
                return finish(stage)

        # Stage 3: persistent link cache, per platform
        cached = self.caches.platform_links.get(key) or {}
        for platform in [p for p in missing if p in cached]:
            links[platform] = cached[platform]
        unresolved = [p for p in missing if p not in cached]
        if not unresolved:
            scraper_logger.log_resolve(name, 'cache', f"key={key}")
            return finish('cache')

        # Stage 4-5: web search + disambiguation
        if not self._search_available():
            return finish('unconfigured')

        phone = reference.get('phone')
        if not phone and tabelog_url:
            phone = await self.fetch_phone(tabelog_url)
            if phone:
                logger.info(f"{name}: phone from Tabelog page: {phone}")

        found = await asyncio.gather(*[
            self.discover_link(platform, name, city, area, reference.get('address'), phone)
            for platform in unresolved
        ])
        for platform, link in zip(unresolved, found):
            links[platform] = link

        await self._store_links(key, links)
        scraper_logger.log_resolve(
            name, 'search',
            " ".join(f"{p}={'yes' if links.get(p) else 'no'}" for p in platforms)
        )
        return finish('search')

    async def _store_links(self, key: str, links: Dict[str, Optional[str]]):
        """Merge resolved platforms into the cached entry, keeping the others"""
        entry = dict(self.caches.platform_links.get(key) or {})
        entry.update({p: link for p, link in links.items() if p in PLATFORM_PATTERNS})
        await self.caches.platform_links.aset(key, entry)

    async def _run_query(self, query: str) -> List[Dict[str, Any]]:
        try:
            return await self.search.search(query, num=self.config.search_results_per_query)
        except SearchAPIError as e:
            logger.warning(f"Search failed for {query!r}: {e}")
            return []

    def _filter_results(self, results: List[Dict[str, Any]], pattern: PlatformPattern,
                        name: str, check_title: bool) -> List[Dict[str, Any]]:
        kept = []
        seen_ids = set()
        for result in results:
            link = result.get('link', '')
            if not pattern.url_re.search(link):
                continue
            if check_title and not title_matches_name(result.get('title', ''), name):
                continue
            if not is_dining_listing(result.get('title', '')):
                logger.info(f"{name}: skipped non-dining listing {result.get('title')!r}")
                continue
            id_match = pattern.id_re.search(link)
            listing_id = id_match.group(1) if id_match else link
            if listing_id in seen_ids:
                continue
            seen_ids.add(listing_id)
            kept.append(result)
        return kept

    async def discover_link(self, platform: str, name: str, city: str, area: Optional[str],
                            address: Optional[str], phone: Optional[str]) -> Optional[str]:
        """Search one platform for the restaurant; None when nothing trustworthy is found"""
        pattern = PLATFORM_PATTERNS[platform]
        scraper_logger = get_scraper_logger()
        city_slug = TABELOG_CITIES.get(city, city)
        cleaned_area = clean_area_name(area) if area else ""
        location_term = cleaned_area or city_slug

        # Pass 1: phone uniquely identifies the restaurant, no title check needed
        if phone:
            query = f'site:{pattern.domain} "{name}" "{format_phone_for_query(phone)}"'
            matches = self._filter_results(await self._run_query(query), pattern, name, check_title=False)
            if matches:
                scraper_logger.log_resolve(name, f"{platform}:phone", matches[0]['link'])
                return matches[0]['link']

        # Pass 2: name + area, then Pass 3: name + city
        queries = [f'site:{pattern.domain} "{name}" {location_term}']
        if cleaned_area and location_term != city_slug:
            queries.append(f'site:{pattern.domain} "{name}" {city_slug}')

        for query in queries:
            candidates = self._filter_results(await self._run_query(query), pattern, name, check_title=True)
            if not candidates:
                continue

            verified = []
            for candidate in candidates:
                if await self.verify_candidate(candidate['link'], name, platform, phone, area, address):
                    verified.append(candidate)

            if not verified:
                logger.info(f"{name} -> {platform}: all candidates rejected by page verification")
                return None
            if len(verified) == 1:
                scraper_logger.log_resolve(name, f"{platform}:name", verified[0]['link'])
                return verified[0]['link']

            reference = {'name': name, 'city': city, 'area': area, 'address': address, 'phone': phone}
            choice = await self.disambiguator.choose(reference, platform, verified)
            scraper_logger.log_resolve(name, f"{platform}:llm", choice['link'] if choice else "none")
            return choice['link'] if choice else None

        return None

    async def verify_candidate(self, url: str, name: str, platform: str, phone: Optional[str],
                               area: Optional[str], address: Optional[str]) -> bool:
        """
        Check a candidate page against what is known about the restaurant.

        A phone match confirms. A phone mismatch alone never rejects (restaurants
        list different numbers on different platforms). An area mismatch rejects
        only when the page names another known neighborhood. Anything
        inconclusive, including a failed fetch, accepts.
        """
        if not phone and not area and not address:
            return True

        try:
            html = await self.fetcher.fetch_static(url, timeout=8)
        except FetchError as e:
            logger.info(f"{name} -> {platform}: verify fetch failed ({e}), treating as inconclusive")
            return True

        expected = normalize_phone(phone)
        if expected and len(expected) >= 8:
            page_phones = [p for p in (normalize_phone(x) for x in extract_phones(html)) if 9 <= len(p) <= 12]
            if any(phones_match(expected, p) for p in page_phones):
                logger.info(f"{name} -> {platform}: phone verified ({phone})")
                return True
            if page_phones:
                logger.info(f"{name} -> {platform}: phone mismatch (expected={expected}, "
                            f"page={', '.join(page_phones[:3])}), checking area")

        if area:
            cleaned = clean_area_name(area).lower()
            html_lower = html.lower()
            if cleaned and cleaned in html_lower:
                return True
            # Compound names such as Kitashinagawa also match their base area
            if len(cleaned) >= 8:
                suffixes = [s for s in (cleaned[4:], cleaned[3:]) if len(s) >= 4]
                if any(s in html_lower for s in suffixes):
                    return True
            if address:
                tokens = [t for t in re.findall(r'[^\s,、]+', address) if len(t) >= 2]
                if any(t in html for t in tokens):
                    return True
            others = [a for a in KNOWN_TOKYO_AREAS if a != cleaned and a not in cleaned and a in html_lower]
            if others and self.config.reject_on_area_mismatch:
                logger.info(f"{name} -> {platform}: area mismatch, expected {cleaned!r}, page mentions {others}")
                return False

        return True

    async def fetch_phone(self, url: str) -> Optional[str]:
        try:
            html = await self.fetcher.fetch_static(url, timeout=8)
        except FetchError as e:
            logger.debug(f"Could not fetch phone from {url}: {e}")
            return None
        phones = extract_phones(html)
        return phones[0] if phones else None

    # -- Tabelog scores ---------------------------------------------------------

    async def lookup_score(self, name: str, city: str = "tokyo",
                           index: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        """Tabelog URL and score for a restaurant name"""
        city = city.lower()
        index = index if index is not None else self.build_index(city)

        stage, entry = self._index_lookup(name, {k: v for k, v in index.items() if v.get('score')})
        if entry:
            return {'tabelog_url': entry['tabelog_url'], 'score': entry['score'], 'stage': stage}

        key = score_cache_key(name, city)
        cached = self.caches.scores.get(key)
        if cached is not None:
            return {**cached, 'stage': 'cache'}

        if not self._search_available():
            return {'tabelog_url': None, 'score': None, 'stage': 'unconfigured'}

        result = await self._search_tabelog_score(name, city)
        await self.caches.scores.aset(key, result)
        return {**result, 'stage': 'search'}

    async def _search_tabelog_score(self, name: str, city: str) -> Dict[str, Any]:
        city_slug = TABELOG_CITIES.get(city, city)
        queries = [f"site:tabelog.com {name} {city_slug}"]
        words = name.split()
        if len(words) >= 2:
            # The last word is usually the distinctive part
            queries.append(f"site:tabelog.com {words[-1]} {city_slug}")

        url = None
        for query in queries:
            for result in await self._run_query(query):
                if TABELOG_URL_RE.search(result['link']):
                    url = canonical_tabelog_url(result['link'])
                    break
            if url:
                break
        if not url:
            return {'tabelog_url': None, 'score': None}

        try:
            html = await self.fetcher.fetch_static(url)
        except FetchError as e:
            logger.info(f"{name}: score page fetch failed: {e}")
            return {'tabelog_url': url, 'score': None}
        return {'tabelog_url': url, 'score': parse_tabelog_score(html)}

    async def lookup_scores(self, names: List[str], city: str = "tokyo") -> Dict[str, Dict[str, Any]]:
        """Scores for many names, bounded by score_lookup_concurrency"""
        index = self.build_index(city)
        semaphore = asyncio.Semaphore(self.config.score_lookup_concurrency)

        async def one(name: str):
            async with semaphore:
                try:
                    return name, await self.lookup_score(name, city, index)
                except FetchError as e:
                    logger.warning(f"Score lookup failed for {name}: {e}")
                    return name, {'tabelog_url': None, 'score': None, 'stage': 'error'}

        pairs = await asyncio.gather(*[one(n) for n in names])
        found = sum(1 for _, r in pairs if r.get('score'))
        logger.info(f"Tabelog scores: {found}/{len(names)} found")
        return dict(pairs)
