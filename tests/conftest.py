from typing import Dict, Optional

import pytest

from reservation_scraper.cache import CacheStore
from reservation_scraper.config import ScraperConfig
from reservation_scraper.fetch import FetchError
from reservation_scraper.scraper_logger import get_scraper_logger, reset_logger


@pytest.fixture(autouse=True)
def scraper_log(tmp_path):
    """Keep the detailed scraper log out of the working directory"""
    reset_logger()
    logger = get_scraper_logger(str(tmp_path / "scraper.log"))
    yield logger
    reset_logger()


@pytest.fixture
def config(tmp_path) -> ScraperConfig:
    cfg = ScraperConfig()
    cfg.data_dir = str(tmp_path / "data")
    cfg.delay_between_requests = 0
    cfg.delay_jitter = 0
    cfg.max_retries = 0
    return cfg


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def caches(config, clock) -> CacheStore:
    return CacheStore(config, clock=clock)


class FakeFetcher:
    """Serves canned HTML by URL substring and records every request"""

    def __init__(self, pages: Optional[Dict[str, str]] = None):
        self.pages = pages or {}
        self.requests = []

    def _lookup(self, url: str) -> str:
        self.requests.append(url)
        for fragment, html in self.pages.items():
            if fragment in url:
                if isinstance(html, Exception):
                    raise html
                return html
        raise FetchError(f"HTTP error 404 for {url}")

    async def fetch_static(self, url, timeout=None, retry_count=0):
        return self._lookup(url)

    async def fetch_rendered(self, url, wait_selector=None, wait_timeout=None):
        return self._lookup(url)

    async def fetch_page(self, url, requires_render=False, wait_selector=None, wait_timeout=None):
        return self._lookup(url)

    async def close(self):
        pass


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()
