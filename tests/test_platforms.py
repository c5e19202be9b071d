"""Tests for platform pagination, page caching and URL building."""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock
from urllib.parse import urlparse, parse_qs

import pytest

from reservation_scraper.fetch import FetchError
from reservation_scraper.models import DateRange, LocationParams
from reservation_scraper.platforms import (
    TabelogScraper,
    OmakaseScraper,
    TableCheckScraper,
    TableAllScraper,
    merge_candidates,
    build_scrapers,
)
from reservation_scraper.session import SessionManager, ConfigurationError
from tests.conftest import FakeFetcher


def list_page(names, has_next):
    items = "".join(
        f'<div class="list-rst"><a class="list-rst__rst-name-target" '
        f'href="https://tabelog.com/en/tokyo/A1301/A130101/{1300000 + i}/">{name}</a>'
        f'<span class="c-rating__val">3.8{i % 10}</span></div>'
        for i, name in enumerate(names)
    )
    arrow = '<a class="c-pagination__arrow--next" href="#">Next</a>' if has_next else ""
    return f"<html><body>{items}{arrow}</body></html>"


def collect(iterator):
    async def run():
        return [page async for page in iterator]
    return asyncio.run(run())


LOCATION = LocationParams(city="tokyo", party_size=2, meal="dinner")


class TestTabelogPagination:

    def test_stops_when_no_next_page(self, config, caches):
        fetcher = FakeFetcher({
            "rstLst/?": list_page(["Den", "Florilege"], True),
            "rstLst/2/": list_page(["Sugita"], False),
        })
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        pages = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        assert [p.page for p in pages] == [1, 2]
        assert [r.name for r in pages[1].restaurants] == ["Sugita"]
        assert len(fetcher.requests) == 2
        assert "svd=20250510" in fetcher.requests[0]
        assert "svt=1900" in fetcher.requests[0]

    def test_page_cap(self, config, caches):
        config.max_pages_per_platform["tabelog"] = 2
        fetcher = FakeFetcher({"rstLst/": list_page(["Den"], True)})
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        pages = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        assert len(pages) == 2

    def test_failed_page_ends_pagination(self, config, caches):
        fetcher = FakeFetcher({
            "rstLst/?": list_page(["Den"], True),
            "rstLst/2/": FetchError("HTTP error 500 for page 2"),
        })
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        pages = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        assert len(pages) == 1

    def test_second_search_served_from_cache(self, config, caches):
        fetcher = FakeFetcher({"rstLst/?": list_page(["Den", "Florilege"], False)})
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        first = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        second = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        assert len(fetcher.requests) == 1
        assert [r.name for r in second[0].restaurants] == [r.name for r in first[0].restaurants]
        assert second[0].restaurants[0].availability[0].date == "2025-05-10"

    def test_malformed_cached_page_is_refetched(self, config, caches):
        fetcher = FakeFetcher({"rstLst/?": list_page(["Den"], False)})
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        for key, _ in list(caches.availability.items()):
            caches.availability.set(key, {"restaurants": "not a list", "page": "first"})

        pages = collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        assert [r.name for r in pages[0].restaurants] == ["Den"]
        assert len(fetcher.requests) == 2

    def test_refresh_bypasses_cache(self, config, caches):
        fetcher = FakeFetcher({"rstLst/?": list_page(["Den"], False)})
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        collect(scraper.iter_date_pages("2025-05-10", LOCATION))
        collect(scraper.iter_date_pages("2025-05-10", LOCATION, refresh=True))
        assert len(fetcher.requests) == 2

    def test_search_merges_dates(self, config, caches):
        fetcher = FakeFetcher({
            "svd=20250510": list_page(["Den", "Florilege"], False),
            "svd=20250511": list_page(["Den"], False),
        })
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        result = asyncio.run(scraper.search(DateRange(date_from="2025-05-10", date_to="2025-05-11"), LOCATION))
        assert result.pages_fetched == 2
        den = next(r for r in result.restaurants if r.name == "Den")
        assert [e.date for e in den.availability] == ["2025-05-10", "2025-05-11"]
        assert len(result.restaurants) == 2


class TestTabelogBrowse:

    def test_browse_page_is_cached(self, config, caches):
        fetcher = FakeFetcher({"rstLst/3/": list_page(["Den"], True)})
        scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())

        first = asyncio.run(scraper.browse("Tokyo", page=3))
        second = asyncio.run(scraper.browse("tokyo", page=3))
        assert first.page == 3
        assert first.has_next_page
        assert [r.name for r in second.restaurants] == ["Den"]
        assert fetcher.requests == ["https://tabelog.com/en/tokyo/rstLst/3/?SrtT=rt"]

    def test_browse_failure_returns_empty_page(self, config, caches):
        scraper = TabelogScraper(config, FakeFetcher(), caches, sleep=AsyncMock())
        result = asyncio.run(scraper.browse("tokyo", page=2))
        assert result.restaurants == []
        assert result.page == 2

    def test_browse_url(self):
        assert TabelogScraper.build_browse_url("osaka", 1) == "https://tabelog.com/en/osaka/rstLst/?SrtT=rt"
        url = TabelogScraper.build_browse_url("tokyo", 2, date="2025-05-10", time="1200", party_size=4)
        assert url.startswith("https://tabelog.com/en/tokyo/rstLst/2/?")
        assert parse_qs(urlparse(url).query) == {
            'SrtT': ['rt'], 'svd': ['20250510'], 'vac_net': ['1'], 'svt': ['1200'], 'svps': ['4'],
        }

    def test_meal_time(self):
        assert TabelogScraper.meal_time("lunch") == "1200"
        assert TabelogScraper.meal_time(None) == "1900"


class FakeSessions:
    def __init__(self, html="<html></html>"):
        self.acquired = 0
        self.page = MagicMock()
        self.page.wait_for_selector = AsyncMock()
        self.auth = MagicMock()
        self.auth.page = self.page
        self.auth.goto = AsyncMock()
        self.auth.content = AsyncMock(return_value=html)

    @asynccontextmanager
    async def acquire_session(self, platform):
        self.acquired += 1
        yield self.auth


class TestOmakase:

    def test_logs_in_once_per_query(self, config, caches):
        sessions = FakeSessions()
        scraper = OmakaseScraper(config, FakeFetcher(), caches, sessions, sleep=AsyncMock())

        pages = collect(scraper.iter_range_pages("2025-05-10", "2025-05-12", LOCATION))
        assert len(pages) == 1
        assert sessions.acquired == 1
        url = sessions.auth.goto.await_args.args[0]
        query = parse_qs(urlparse(url).query)
        assert query['area_id'] == ['171']
        assert query['from_date'] == ['2025-05-10']
        assert query['guests_count'] == ['2']

    def test_cached_pages_skip_login(self, config, caches):
        sessions = FakeSessions()
        scraper = OmakaseScraper(config, FakeFetcher(), caches, sessions, sleep=AsyncMock())

        collect(scraper.iter_range_pages("2025-05-10", "2025-05-12", LOCATION))
        collect(scraper.iter_range_pages("2025-05-10", "2025-05-12", LOCATION))
        assert sessions.acquired == 1

    def test_area_id(self):
        assert OmakaseScraper.area_id(LocationParams(city="tokyo", area="Ginza")) == "172"
        assert OmakaseScraper.area_id(LocationParams(city="nowhere")) == "171"

    def test_check_configured_needs_account(self, config, caches):
        accounts = MagicMock()
        accounts.get_account.return_value = None
        sessions = SessionManager(config, FakeFetcher(), caches, accounts)
        scraper = OmakaseScraper(config, FakeFetcher(), caches, sessions, sleep=AsyncMock())
        with pytest.raises(ConfigurationError):
            scraper.check_configured()

        accounts.get_account.return_value = {"id": "acc-1", "email": "me@example.com", "password": "pw"}
        scraper.check_configured()
        assert TabelogScraper(config, FakeFetcher(), caches).check_configured() is None


class TestUrlBuilders:

    def test_tablecheck_search_url(self):
        url = TableCheckScraper.build_search_url("2025-05-10", "kyoto", 2, "19:00", page=2)
        query = parse_qs(urlparse(url).query)
        assert query['date'] == ['2025-05-10']
        assert query['num_people'] == ['2']
        assert query['availability_mode'] == ['same_meal_time']
        assert query['page'] == ['2']
        assert query['geo_latitude'] == ['35.0116']

    def test_tableall_search_url(self):
        url = TableAllScraper.build_search_url("2025-05-10", "2025-05-12")
        assert url == "https://www.tableall.com/opening/index?from=2025-05-10&to=2025-05-12"


def test_merge_candidates_keeps_first_and_merges_availability(config, caches):
    fetcher = FakeFetcher({
        "svd=20250510": list_page(["Den"], False),
        "svd=20250511": list_page(["Den"], False),
    })
    scraper = TabelogScraper(config, fetcher, caches, sleep=AsyncMock())
    first = collect(scraper.iter_date_pages("2025-05-10", LOCATION))[0].restaurants
    second = collect(scraper.iter_date_pages("2025-05-11", LOCATION))[0].restaurants

    merged = {}
    merge_candidates(merged, first)
    merge_candidates(merged, second)
    assert len(merged) == 1
    assert len(next(iter(merged.values())).availability) == 2
    # Inputs are left untouched
    assert len(first[0].availability) == 1


def test_build_scrapers_covers_every_platform(config, caches):
    scrapers = build_scrapers(config, FakeFetcher(), caches)
    assert set(scrapers) == {"tabelog", "omakase", "tablecheck", "tableall"}
    assert scrapers["omakase"].supports_ranges
    assert not scrapers["tabelog"].supports_ranges
