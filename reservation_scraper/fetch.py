"""
Fetch layer for reservation scraping.
Handles static HTTP requests, a shared Playwright browser and scoped browser contexts.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional, AsyncIterator, Callable, Awaitable

import httpx
from playwright.async_api import async_playwright, Browser, BrowserContext
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .config import ScraperConfig
from .scraper_logger import get_scraper_logger

logger = logging.getLogger(__name__)


class FetchError(Exception):
    """Custom exception for fetch errors"""
    pass


class CaptchaDetectedError(FetchError):
    """Raised when CAPTCHA is detected"""
    pass


class BotChallengeError(FetchError):
    """Raised when bot challenge is detected"""
    pass


class RateLimitError(FetchError):
    """Raised when rate limited"""
    pass


BROWSER_ARGS = [
    '--no-sandbox',
    '--disable-setuid-sandbox',
    '--disable-dev-shm-usage',
    '--disable-blink-features=AutomationControlled',
]


class BrowserPool:
    """
    Pool of exactly one shared headless browser.

    The browser is launched lazily on first acquire and relaunched only if it
    has disconnected. Contexts are created per scrape by the caller.
    """

    def __init__(self, config: ScraperConfig,
                 launcher: Optional[Callable[[], Awaitable[Browser]]] = None):
        self.config = config
        self._launcher = launcher
        self._browser: Optional[Browser] = None
        self._playwright = None
        self._lock = asyncio.Lock()
        self.in_use = 0

    async def _launch(self) -> Browser:
        if self._launcher:
            return await self._launcher()
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        browser_launcher = getattr(self._playwright, self.config.browser_type)
        return await browser_launcher.launch(
            headless=self.config.headless,
            args=BROWSER_ARGS,
        )

    def is_healthy(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def acquire(self) -> Browser:
        async with self._lock:
            if not self.is_healthy():
                if self._browser is not None:
                    logger.warning("Shared browser disconnected, relaunching")
                self._browser = await self._launch()
                logger.info(f"Launched {self.config.browser_type} browser")
            self.in_use += 1
            return self._browser

    async def release(self, browser: Browser):
        # The browser itself stays up for the next caller
        self.in_use = max(0, self.in_use - 1)

    async def close(self):
        async with self._lock:
            if self._browser is not None:
                try:
                    await self._browser.close()
                except Exception as e:
                    logger.debug(f"Error closing browser: {e}")
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None


class Fetcher:
    """Static and rendered page acquisition"""

    def __init__(self, config: ScraperConfig, pool: Optional[BrowserPool] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self.pool = pool or BrowserPool(config)
        self.transport = transport
        self.consecutive_errors = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        await self.pool.close()

    def _headers(self) -> dict:
        return {
            'User-Agent': self.config.get_user_agent(),
            'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
            'Accept-Language': 'en-US,en;q=0.9,ja;q=0.8',
        }

    def http_client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        """Build an AsyncClient honouring the configured (or injected) transport"""
        return httpx.AsyncClient(
            timeout=timeout or self.config.request_timeout,
            follow_redirects=True,
            headers=self._headers(),
            transport=self.transport,
        )

    def _detect_captcha(self, html: str) -> bool:
        """Detect CAPTCHA in HTML"""
        captcha_indicators = [
            'g-recaptcha',
            'h-captcha',
            'cf-browser-verification',
            'unusual traffic',
        ]
        html_lower = html.lower()
        return any(indicator in html_lower for indicator in captcha_indicators)

    def _detect_bot_challenge(self, html: str) -> bool:
        """Detect bot challenge pages"""
        challenge_indicators = [
            'please verify you are human',
            'verify you are not a robot',
            'checking your browser',
            'ddos protection by',
        ]
        html_lower = html.lower()
        return any(indicator in html_lower for indicator in challenge_indicators)

    async def fetch_static(self, url: str, timeout: Optional[float] = None,
                           retry_count: int = 0) -> str:
        """
        Fetch HTML with a single HTTP GET.

        Raises:
            RateLimitError: on 403/429
            CaptchaDetectedError / BotChallengeError: on challenge pages
            FetchError: on any other failure after retries
        """
        scraper_logger = get_scraper_logger()
        scraper_logger.log_url_visit(url, "static")

        try:
            async with self.http_client(timeout) as client:
                response = await client.get(url)

            if response.status_code in (403, 429):
                self.consecutive_errors += 1
                raise RateLimitError(f"{response.status_code} from {url}")

            if response.status_code >= 500 and retry_count < self.config.max_retries:
                backoff = self.config.retry_backoff_factor ** retry_count
                await asyncio.sleep(backoff)
                return await self.fetch_static(url, timeout, retry_count + 1)

            if not response.is_success:
                raise FetchError(f"HTTP error {response.status_code} for {url}")

            html = response.text

            if self._detect_captcha(html) and self.config.skip_on_captcha:
                raise CaptchaDetectedError(f"CAPTCHA detected on {url}")

            if self._detect_bot_challenge(html):
                raise BotChallengeError(f"Bot challenge detected on {url}")

            self.consecutive_errors = 0
            scraper_logger.log_url_complete(url, len(html))
            return html

        except FetchError as e:
            scraper_logger.log_url_error(url, str(e))
            raise

        except httpx.TimeoutException:
            if retry_count < self.config.max_retries:
                backoff = self.config.retry_backoff_factor ** retry_count
                await asyncio.sleep(backoff)
                return await self.fetch_static(url, timeout, retry_count + 1)
            scraper_logger.log_url_error(url, "timeout")
            raise FetchError(f"Timeout fetching {url}")

        except httpx.HTTPError as e:
            scraper_logger.log_url_error(url, str(e))
            raise FetchError(f"Error fetching {url}: {str(e)}")

    @asynccontextmanager
    async def new_context(self) -> AsyncIterator[BrowserContext]:
        """Scoped browser context on the shared browser, always closed on exit"""
        browser = await self.pool.acquire()
        context = None
        try:
            context = await browser.new_context(
                viewport={
                    'width': self.config.viewport_width,
                    'height': self.config.viewport_height
                },
                user_agent=self.config.get_user_agent(),
                locale='en-US',
            )
            yield context
        finally:
            if context is not None:
                try:
                    await context.close()
                except Exception as e:
                    logger.debug(f"Error closing browser context: {e}")
            await self.pool.release(browser)

    async def fetch_rendered(self, url: str, wait_selector: Optional[str] = None,
                             wait_timeout: Optional[float] = None) -> str:
        """
        Navigate a fresh browser context to url and return the rendered HTML.

        A selector wait that times out is not an error: the page content
        available at that point is returned.
        """
        scraper_logger = get_scraper_logger()
        scraper_logger.log_url_visit(url, "rendered")

        async with self.new_context() as context:
            page = await context.new_page()
            try:
                await page.goto(
                    url,
                    wait_until="domcontentloaded",
                    timeout=self.config.navigation_timeout * 1000
                )
            except PlaywrightTimeoutError:
                logger.warning(f"Navigation timeout for {url}, using partial content")
            except Exception as e:
                scraper_logger.log_url_error(url, str(e))
                raise FetchError(f"Error navigating to {url}: {str(e)}")

            if wait_selector:
                await wait_for_selector(page, wait_selector, wait_timeout or self.config.request_timeout)

            html = await page.content()

        if self._detect_bot_challenge(html):
            scraper_logger.log_url_error(url, "bot challenge")
            raise BotChallengeError(f"Bot challenge detected on {url}")

        scraper_logger.log_url_complete(url, len(html))
        return html

    async def fetch_page(self, url: str, requires_render: bool = False,
                         wait_selector: Optional[str] = None,
                         wait_timeout: Optional[float] = None) -> str:
        """
        Fetch URL - static unless the page needs client-side rendering

        Args:
            url: URL to fetch
            requires_render: Use the shared browser
            wait_selector: Selector to wait for on rendered pages
            wait_timeout: Bound on that wait, in seconds
        """
        if requires_render:
            return await self.fetch_rendered(url, wait_selector, wait_timeout)
        return await self.fetch_static(url)


async def wait_for_selector(page, selector: str, timeout: float) -> bool:
    """Wait for selector up to timeout seconds; False (not an error) on timeout"""
    try:
        await page.wait_for_selector(selector, timeout=timeout * 1000)
        return True
    except PlaywrightTimeoutError:
        logger.debug(f"Timed out waiting for {selector}, proceeding")
        return False
