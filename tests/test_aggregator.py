"""Tests for the streaming per-date aggregator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

from reservation_scraper.aggregator import StreamingAggregator, CancelToken, validate_query
from reservation_scraper.fetch import FetchError
from reservation_scraper.models import (
    AvailabilityEntry,
    AvailabilityQuery,
    AvailabilityStatus,
    ResolvedIdentity,
    RestaurantCandidate,
    SearchPage,
)
from reservation_scraper.resolver import IdentityResolver
from reservation_scraper.session import ConfigurationError
from tests.conftest import FakeFetcher


def restaurant(i, day, score=None):
    candidate = RestaurantCandidate(
        name=f"Restaurant {i}", platform="tabelog", city="tokyo", score=score,
        url=f"https://tabelog.com/en/tokyo/A1301/A130101/{13000000 + i}/",
        platform_links={"tabelog": f"https://tabelog.com/en/tokyo/A1301/A130101/{13000000 + i}/"},
    )
    candidate.add_availability(AvailabilityEntry(date=day, status=AvailabilityStatus.AVAILABLE))
    return candidate


class FakeScraper:
    """Per-date canned pages; a value may be an exception or a callable to await"""

    platform = "tabelog"

    def __init__(self, results, configuration_error=None):
        self.results = results
        self.days = []
        self.configuration_error = configuration_error

    def check_configured(self):
        if self.configuration_error:
            raise self.configuration_error

    async def iter_date_pages(self, day, location, refresh=False):
        self.days.append(day)
        result = self.results.get(day, [])
        if isinstance(result, Exception):
            raise result
        if callable(result):
            await result()
            return
        for number, restaurants in enumerate(result, 1):
            yield SearchPage(restaurants=restaurants, page=number, has_next_page=number < len(result))


def run_stream(aggregator, query, cancel=None, on_event=None):
    async def collect():
        events = []
        async for event in aggregator.stream(query, cancel):
            events.append(event)
            if on_event:
                on_event(event)
        return events
    return asyncio.run(collect())


def query(*dates, **kwargs):
    return AvailabilityQuery(city="tokyo", dates=list(dates), **kwargs)


def test_two_dates_stream_then_done(config):
    first_day = [restaurant(i, "2025-05-10") for i in range(7)]
    second_page = [restaurant(i, "2025-05-10") for i in range(7, 12)]
    scraper = FakeScraper({"2025-05-10": [first_day, second_page], "2025-05-11": [[]]})
    aggregator = StreamingAggregator(config, {"tabelog": scraper})

    events = run_stream(aggregator, query("2025-05-10", "2025-05-11"))

    date_events = [e for e in events if e['type'] == 'date']
    assert sorted((e['date'], e['count']) for e in date_events) == [("2025-05-10", 12), ("2025-05-11", 0)]
    full = next(e for e in date_events if e['date'] == "2025-05-10")
    assert full['restaurants'][0]['name'] == "Restaurant 0"
    assert full['restaurants'][0]['availability'][0]['status'] == "available"

    progress = [e for e in events if e['type'] == 'progress' and e['date'] == "2025-05-10"]
    assert [(e['page'], e['count']) for e in progress] == [(1, 7), (2, 12)]

    assert events[-1] == {'type': 'done', 'totalRestaurants': 12, 'dates': ["2025-05-10", "2025-05-11"]}
    assert aggregator.state == "done"


def test_total_counts_unique_restaurants(config):
    scraper = FakeScraper({
        "2025-05-10": [[restaurant(1, "2025-05-10"), restaurant(2, "2025-05-10")]],
        "2025-05-11": [[restaurant(2, "2025-05-11"), restaurant(3, "2025-05-11")]],
    })
    events = run_stream(StreamingAggregator(config, {"tabelog": scraper}), query("2025-05-10", "2025-05-11"))
    assert events[-1]['totalRestaurants'] == 3


def test_duplicate_dates_and_cap(config):
    config.max_dates = 2
    scraper = FakeScraper({})
    events = run_stream(StreamingAggregator(config, {"tabelog": scraper}),
                        query("2025-05-10", "2025-05-10", "2025-05-11", "2025-05-12"))
    assert sorted(scraper.days) == ["2025-05-10", "2025-05-11"]
    assert events[-1]['dates'] == ["2025-05-10", "2025-05-11"]


def test_failed_date_is_empty_not_fatal(config):
    scraper = FakeScraper({"2025-05-10": FetchError("HTTP error 500"), "2025-05-11": [[restaurant(1, "2025-05-11")]]})
    events = run_stream(StreamingAggregator(config, {"tabelog": scraper}), query("2025-05-10", "2025-05-11"))
    failed = next(e for e in events if e['type'] == 'date' and e['date'] == "2025-05-10")
    assert failed['count'] == 0
    assert events[-1]['type'] == 'done'


def test_unexpected_error_in_one_date_keeps_the_others(config):
    scraper = FakeScraper({
        "2025-05-10": ValueError("parser exploded"),
        "2025-05-11": [[restaurant(1, "2025-05-11")]],
    })
    aggregator = StreamingAggregator(config, {"tabelog": scraper})
    events = run_stream(aggregator, query("2025-05-10", "2025-05-11"))

    date_events = {e['date']: e['count'] for e in events if e['type'] == 'date'}
    assert date_events == {"2025-05-10": 0, "2025-05-11": 1}
    assert not [e for e in events if e['type'] == 'error']
    assert events[-1] == {'type': 'done', 'totalRestaurants': 1, 'dates': ["2025-05-10", "2025-05-11"]}
    assert aggregator.state == "done"


def test_missing_configuration_is_reported_once(config):
    scraper = FakeScraper({}, configuration_error=ConfigurationError("No valid omakase account configured"))
    events = run_stream(StreamingAggregator(config, {"tabelog": scraper}), query("2025-05-10", "2025-05-11"))
    assert events == [{'type': 'error', 'message': "No valid omakase account configured"}]
    assert scraper.days == []


def test_invalid_query_yields_single_error(config):
    aggregator = StreamingAggregator(config, {"tabelog": FakeScraper({})})
    events = run_stream(aggregator, query())
    assert events == [{'type': 'error', 'message': "at least one date is required"}]


def test_validate_query():
    platforms = ["tabelog"]
    assert validate_query(query("2025-05-10"), platforms) is None
    assert "invalid date" in validate_query(query("next friday"), platforms)
    assert "meal" in validate_query(query("2025-05-10", meal="brunch"), platforms)
    assert "party_size" in validate_query(query("2025-05-10", party_size=0), platforms)
    assert "platform" in validate_query(query("2025-05-10", platform="opentable"), platforms)
    assert "city" in validate_query(AvailabilityQuery(city=" ", dates=["2025-05-10"]), platforms)


def test_cancel_stops_output(config):
    async def never():
        await asyncio.Event().wait()

    scraper = FakeScraper({"2025-05-10": [[restaurant(1, "2025-05-10")]], "2025-05-11": never})
    aggregator = StreamingAggregator(config, {"tabelog": scraper})
    cancel = CancelToken()

    def on_event(event):
        if event['type'] == 'date':
            cancel.cancel()

    events = run_stream(aggregator, query("2025-05-10", "2025-05-11"), cancel, on_event)
    assert [e['type'] for e in events] == ['progress', 'date']
    assert aggregator.state == "aborted"


def fake_resolver(links):
    resolver = MagicMock()
    resolver.resolve = AsyncMock(
        side_effect=lambda reference, platforms: ResolvedIdentity(
            name=reference['name'], city="tokyo", links={p: links.get(p) for p in platforms},
            score=reference['score'],
        )
    )
    return resolver


def test_platform_updates_after_done(config):
    resolver = fake_resolver({"omakase": "https://omakase.in/en/r/ab123456"})
    scraper = FakeScraper({"2025-05-10": [[
        restaurant(1, "2025-05-10", score=4.1),
        restaurant(2, "2025-05-10", score=3.2),
        restaurant(3, "2025-05-10"),
    ]]})
    aggregator = StreamingAggregator(config, {"tabelog": scraper}, resolver)

    events = run_stream(aggregator, query("2025-05-10"))
    types = [e['type'] for e in events]
    assert types[-2:] == ['done', 'platform-update']

    update = events[-1]
    assert update['name'] == "Restaurant 1"
    assert update['links']['omakase'] == "https://omakase.in/en/r/ab123456"
    assert update['score'] == 4.1
    # Only the well-rated restaurant is resolved
    assert resolver.resolve.await_count == 1
    assert aggregator.state == "done"


def test_no_update_when_nothing_found(config):
    resolver = fake_resolver({})
    scraper = FakeScraper({"2025-05-10": [[restaurant(1, "2025-05-10", score=4.1)]]})
    events = run_stream(StreamingAggregator(config, {"tabelog": scraper}, resolver), query("2025-05-10"))
    assert events[-1]['type'] == 'done'


class CannedSearch:
    """Search results keyed by a query substring"""

    def __init__(self, responses):
        self.responses = responses
        self.queries = []

    async def search(self, query, num=5):
        self.queries.append(query)
        for fragment, results in self.responses.items():
            if fragment in query:
                return results
        return []


OMAKASE_LINK = "https://omakase.in/en/r/ab123456"


def discovery_resolver(config, caches, search):
    config.serper_api_key = None
    disambiguator = MagicMock()
    disambiguator.choose = AsyncMock(return_value=None)
    return IdentityResolver(config, FakeFetcher(), caches, search=search, disambiguator=disambiguator)


def test_platform_update_from_real_resolver(config, caches):
    search = CannedSearch({
        'site:omakase.in "Restaurant 1"': [{"title": "Restaurant 1 | OMAKASE", "link": OMAKASE_LINK}],
    })
    scraper = FakeScraper({"2025-05-10": [[restaurant(1, "2025-05-10", score=4.1)]]})
    aggregator = StreamingAggregator(config, {"tabelog": scraper}, discovery_resolver(config, caches, search))

    events = run_stream(aggregator, query("2025-05-10"))
    update = events[-1]
    assert update['type'] == 'platform-update'
    assert update['links'] == {"tablecheck": None, "omakase": OMAKASE_LINK, "tableall": None}
    assert update['score'] == 4.1


def test_discovery_uses_stored_phone(config, caches):
    search = CannedSearch({
        '"03-1234-5678"': [{"title": "Omakase booking", "link": OMAKASE_LINK}],
    })
    scraper = FakeScraper({"2025-05-10": [[restaurant(1, "2025-05-10", score=4.1)]]})
    looked_up = []

    def phone_lookup(name):
        looked_up.append(name)
        return "0312345678"

    aggregator = StreamingAggregator(config, {"tabelog": scraper}, discovery_resolver(config, caches, search),
                                     phone_lookup=phone_lookup)
    events = run_stream(aggregator, query("2025-05-10"))

    assert looked_up == ["Restaurant 1"]
    assert 'site:omakase.in "Restaurant 1" "03-1234-5678"' in search.queries
    assert events[-1]['links']['omakase'] == OMAKASE_LINK


def test_resolve_names(config):
    resolver = MagicMock()

    async def resolve(reference):
        if reference['name'] == "Broken":
            raise RuntimeError("search exploded")
        return ResolvedIdentity(name=reference['name'], city=reference['city'],
                                links={"omakase": None}, stage="search")

    resolver.resolve = AsyncMock(side_effect=resolve)
    resolver.lookup_score = AsyncMock(return_value={
        'tabelog_url': "https://tabelog.com/en/tokyo/A1/A2/3/", 'score': 3.9, 'stage': 'search',
    })
    aggregator = StreamingAggregator(config, {"tabelog": FakeScraper({})}, resolver)

    async def collect():
        return [e async for e in aggregator.resolve_names(["Den", " ", "Broken"], "tokyo")]

    events = asyncio.run(collect())
    results = {e['restaurant']['name']: e['restaurant'] for e in events if e['type'] == 'result'}
    assert results["Den"]['score'] == 3.9
    assert results["Den"]['tabelog_url'] == "https://tabelog.com/en/tokyo/A1/A2/3/"
    assert results["Broken"]['error'] == "search exploded"
    assert events[-1] == {'type': 'done', 'totalRestaurants': 2, 'dates': []}
