"""
Authenticated browser sessions for login-gated platforms.
Cookies are persisted in the sessions cache and restored while fresh;
a redirect to the login page triggers a transparent re-login.
"""
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Dict, Any, AsyncIterator, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .cache import CacheStore
from .config import ScraperConfig
from .fetch import Fetcher, FetchError

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when a required account or API key is not configured"""
    pass


class LoginError(FetchError):
    """Raised when logging in to a platform fails"""
    pass


@dataclass
class LoginSettings:
    login_url: str
    login_pattern: str
    email_selector: str
    password_selector: str
    submit_selector: str


LOGIN_SETTINGS: Dict[str, LoginSettings] = {
    "omakase": LoginSettings(
        login_url="https://omakase.in/users/sign_in?locale=en",
        login_pattern="sign_in",
        email_selector='input[name="user[email]"], input[type="email"]',
        password_selector='input[name="user[password]"], input[type="password"]',
        submit_selector='input[type="submit"], button[type="submit"]',
    ),
}


class AccountStore(Protocol):
    def get_account(self, platform: str) -> Optional[Dict[str, Any]]:
        ...

    def mark_account_invalid(self, account_id: str) -> None:
        ...


class EnvAccountStore:
    """Accounts from {PLATFORM}_EMAIL / {PLATFORM}_PASSWORD environment variables"""

    def get_account(self, platform: str) -> Optional[Dict[str, Any]]:
        email = os.getenv(f"{platform.upper()}_EMAIL")
        password = os.getenv(f"{platform.upper()}_PASSWORD")
        if not email or not password:
            return None
        return {"id": f"env:{platform}", "platform": platform, "email": email, "password": password}

    def mark_account_invalid(self, account_id: str) -> None:
        logger.warning(f"Account {account_id} failed validation (environment accounts cannot be disabled)")


class AuthenticatedContext:
    """A browser context logged in to one platform"""

    def __init__(self, manager: "SessionManager", platform: str, account: Dict[str, Any], context, page):
        self.manager = manager
        self.platform = platform
        self.account = account
        self.context = context
        self.page = page

    @property
    def settings(self) -> LoginSettings:
        return LOGIN_SETTINGS[self.platform]

    def on_login_page(self) -> bool:
        return self.settings.login_pattern in (self.page.url or "")

    async def goto(self, url: str):
        """Navigate, re-authenticating once if the platform bounces us to its login page"""
        timeout = self.manager.config.navigation_timeout * 1000
        await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout)
        if self.on_login_page():
            logger.info(f"{self.platform}: session cookies stale, re-authenticating")
            async with self.manager.login_lock(self.platform):
                await self.manager.login(self, navigate=False)
            await self.page.goto(url, wait_until="domcontentloaded", timeout=timeout)

    async def content(self) -> str:
        return await self.page.content()


class SessionManager:
    """Hands out authenticated contexts and keeps their cookies fresh"""

    def __init__(self, config: ScraperConfig, fetcher: Fetcher, caches: CacheStore,
                 accounts: Optional[AccountStore] = None):
        self.config = config
        self.fetcher = fetcher
        self.caches = caches
        self.accounts = accounts or EnvAccountStore()
        self._login_locks: Dict[str, asyncio.Lock] = {}

    def login_lock(self, platform: str) -> asyncio.Lock:
        """One login at a time per platform; waiters reuse the cookies it saves"""
        if platform not in self._login_locks:
            self._login_locks[platform] = asyncio.Lock()
        return self._login_locks[platform]

    def load_session(self, platform: str) -> Optional[Dict[str, Any]]:
        """Persisted session record if it is still fresh"""
        record = self.caches.sessions.get(platform, max_age=self.config.session_max_age)
        if record and record.get('cookies'):
            return record
        return None

    def save_session(self, platform: str, account: Dict[str, Any], cookies):
        self.caches.sessions.set(platform, {
            'platform': platform,
            'account_id': account.get('id'),
            'cookies': cookies,
            'last_login_at': datetime.now(timezone.utc).isoformat(),
            'is_valid': True,
        })

    def require_account(self, platform: str) -> Dict[str, Any]:
        """Account to log in with; ConfigurationError when none is usable"""
        if platform not in LOGIN_SETTINGS:
            raise ConfigurationError(f"No login flow defined for platform: {platform}")
        account = self.accounts.get_account(platform)
        if not account or not account.get('email') or not account.get('password'):
            raise ConfigurationError(f"No valid {platform} account configured")
        return account

    @asynccontextmanager
    async def acquire_session(self, platform: str) -> AsyncIterator[AuthenticatedContext]:
        """
        Scoped authenticated context.

        Fresh cookies are restored without a verification request; stale or
        missing cookies trigger a login before the context is handed out.
        The context is closed on exit whatever happens inside the block.

        Raises:
            ConfigurationError: no usable account for the platform
            LoginError: login did not complete
        """
        account = self.require_account(platform)

        async with self.fetcher.new_context() as context:
            page = await context.new_page()
            auth = AuthenticatedContext(self, platform, account, context, page)

            async with self.login_lock(platform):
                record = self.load_session(platform)
                if record:
                    await context.add_cookies(record['cookies'])
                    logger.info(f"{platform}: restored session cookies from {record.get('last_login_at')}")
                else:
                    await self.login(auth)

            yield auth

    async def login(self, auth: AuthenticatedContext, navigate: bool = True):
        settings = auth.settings
        page = auth.page
        wait_ms = self.config.login_wait_timeout * 1000

        try:
            if navigate:
                await page.goto(settings.login_url, wait_until="domcontentloaded",
                                timeout=self.config.navigation_timeout * 1000)
            await page.wait_for_selector(settings.email_selector, timeout=wait_ms)
            await page.fill(settings.email_selector, auth.account['email'])
            await page.fill(settings.password_selector, auth.account['password'])
            await page.click(settings.submit_selector)
            await page.wait_for_url(lambda url: settings.login_pattern not in url, timeout=wait_ms)
        except PlaywrightTimeoutError as e:
            raise LoginError(f"{auth.platform} login timed out: {e}")
        except PlaywrightError as e:
            raise LoginError(f"{auth.platform} login failed: {e}")

        cookies = await auth.context.cookies()
        self.save_session(auth.platform, auth.account, cookies)
        logger.info(f"{auth.platform}: logged in as {auth.account['email']}")

    async def validate_account(self, platform: str) -> Dict[str, Any]:
        """Open and close a session; an account that cannot log in is marked invalid"""
        account = self.require_account(platform)
        try:
            async with self.acquire_session(platform):
                pass
        except (LoginError, FetchError, PlaywrightError) as e:
            logger.warning(f"{platform}: account validation failed: {e}")
            self.caches.sessions.delete(platform)
            if account.get('id'):
                self.accounts.mark_account_invalid(account['id'])
            return {'valid': False, 'error': str(e)}

        record = self.caches.sessions.get_entry(platform) or {}
        return {'valid': True, 'last_login_at': (record.get('data') or {}).get('last_login_at')}
