import asyncio
import json

import httpx
import pytest

from reservation_scraper.search_api import SerperSearch, SearchAPIError


def make_search(handler) -> SerperSearch:
    return SerperSearch("test-key", transport=httpx.MockTransport(handler))


def test_missing_key_raises():
    with pytest.raises(ValueError, match="SERPER_API_KEY"):
        SerperSearch(None)
    with pytest.raises(ValueError):
        SerperSearch("your-serper-api-key-here")


def test_search_returns_organic_results():
    seen = {}

    def handler(request):
        seen['key'] = request.headers['x-api-key']
        seen['body'] = json.loads(request.content)
        return httpx.Response(200, json={"organic": [
            {"title": "Sushi Saito - TableCheck", "link": "https://www.tablecheck.com/en/shops/saito/reserve",
             "snippet": "Roppongi"},
            {"title": "no link"},
        ]})

    search = make_search(handler)
    results = asyncio.run(search.search('site:tablecheck.com "Sushi Saito"', num=3))

    assert seen == {'key': "test-key", 'body': {"q": 'site:tablecheck.com "Sushi Saito"', "num": 3}}
    assert results == [{
        "title": "Sushi Saito - TableCheck",
        "link": "https://www.tablecheck.com/en/shops/saito/reserve",
        "snippet": "Roppongi",
    }]
    assert search.call_count == 1


def test_no_organic_results():
    search = make_search(lambda request: httpx.Response(200, json={}))
    assert asyncio.run(search.search("anything")) == []


@pytest.mark.parametrize("status,message", [
    (401, "Invalid Serper API key"),
    (429, "rate limit"),
    (500, "Serper API error 500"),
])
def test_error_statuses(status, message):
    search = make_search(lambda request: httpx.Response(status, text="nope"))
    with pytest.raises(SearchAPIError, match=message):
        asyncio.run(search.search("anything"))


def test_transport_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(SearchAPIError, match="Search request failed"):
        asyncio.run(make_search(handler).search("anything"))
