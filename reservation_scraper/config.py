"""
Configuration module for the reservation scraper.
All settings can be overridden via CLI arguments, environment variables or a YAML file.
"""
import os
import random
from typing import List, Dict, Any, Optional
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv


PLATFORMS = ["tabelog", "omakase", "tablecheck", "tableall"]

# City name -> Tabelog prefecture slug
TABELOG_CITIES = {
    "tokyo": "tokyo",
    "osaka": "osaka",
    "kyoto": "kyoto",
    "fukuoka": "fukuoka",
    "sapporo": "hokkaido",
    "nagoya": "aichi",
    "yokohama": "kanagawa",
    "kobe": "hyogo",
    "hiroshima": "hiroshima",
    "sendai": "miyagi",
    "nara": "nara",
    "kanazawa": "ishikawa",
}

# Omakase area name -> area_id query value
OMAKASE_AREA_IDS = {
    "tokyo": "171",
    "ginza": "172",
    "nihonbashi": "175",
    "kanto": "176",
    "kyushu": "178",
    "shikoku": "179",
    "chugoku": "180",
    "hokuriku": "181",
    "tokai": "182",
    "osaka": "183",
    "kyoto": "184",
    "tohoku": "185",
    "shimbashi": "187",
    "roppongi": "188",
    "toranomon": "189",
    "shirokane": "190",
    "shibuya": "191",
    "ueno": "192",
    "shinagawa": "193",
    "shinjuku": "194",
    "meguro": "195",
    "sendagaya": "196",
    "asagaya": "197",
    "hokkaido": "174",
    "kansai": "177",
}

# City -> (latitude, longitude) used by TableCheck geo search
TABLECHECK_CITY_COORDS = {
    "tokyo": (35.6897, 139.6922),
    "osaka": (34.6937, 135.5023),
    "kyoto": (35.0116, 135.7681),
    "fukuoka": (33.5904, 130.4017),
    "sapporo": (43.0618, 141.3545),
    "nagoya": (35.1815, 136.9066),
    "yokohama": (35.4437, 139.6380),
    "kobe": (34.6901, 135.1956),
    "hiroshima": (34.3853, 132.4553),
    "nara": (34.6851, 135.8048),
}

HOUR = 60 * 60
DAY = 24 * HOUR

# Cache domain -> (file name, TTL seconds)
CACHE_DOMAINS: Dict[str, Any] = {
    "listing": ("listing-cache.json", DAY),
    "availability": ("availability-cache.json", 4 * HOUR),
    "platform_links": ("platform-links-cache.json", 30 * DAY),
    "scores": ("score-cache.json", 30 * DAY),
    "photos": ("photo-cache.json", 7 * DAY),
    "reviews": ("review-cache.json", 7 * DAY),
    "translations": ("translation-cache.json", 30 * DAY),
    "sessions": ("session-cache.json", DAY),
}


@dataclass
class ScraperConfig:
    """Main configuration class for the reservation scraper"""

    # Rate Limiting
    delay_between_requests: float = 1.5  # seconds
    delay_jitter: float = 1.5  # random jitter
    max_retries: int = 2
    retry_backoff_factor: float = 2.0
    request_timeout: int = 15  # seconds
    navigation_timeout: int = 30  # seconds

    # Rendered-page selector waits (seconds)
    tabelog_wait_timeout: float = 5.0
    tableall_wait_timeout: float = 10.0
    omakase_wait_timeout: float = 10.0
    tablecheck_wait_timeout: float = 15.0
    booking_wait_timeout: float = 10.0
    login_wait_timeout: float = 15.0

    # Browser Configuration
    headless: bool = True
    browser_type: str = "chromium"  # chromium, firefox, webkit
    viewport_width: int = 1280
    viewport_height: int = 900

    # User Agent
    user_agents: List[str] = field(default_factory=lambda: [
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    ])

    # Cache
    data_dir: str = "./data"
    cache_domains: Dict[str, Any] = field(default_factory=lambda: dict(CACHE_DOMAINS))
    session_max_age: int = DAY  # seconds

    # Scraping Limits
    max_pages_per_platform: Dict[str, int] = field(default_factory=lambda: {
        "tabelog": 5,
        "omakase": 5,
        "tablecheck": 5,
        "tableall": 5,
    })
    max_dates: int = 14
    max_calendar_cells: int = 90

    # Concurrency
    max_concurrent_dates: int = 4
    max_concurrent_names: int = 3
    score_lookup_concurrency: int = 5

    # Background discovery
    discovery_score_threshold: float = 3.7
    discovery_batch_size: int = 3

    # Identity resolution
    serper_api_key: Optional[str] = None
    serper_url: str = "https://google.serper.dev/search"
    search_results_per_query: int = 5
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    reject_on_area_mismatch: bool = True

    # Error Handling
    skip_on_captcha: bool = True
    max_consecutive_errors: int = 5

    # Logging
    log_level: str = "INFO"
    log_file: str = ""
    debug_mode: bool = False

    def get_user_agent(self) -> str:
        """Get a random user agent"""
        return random.choice(self.user_agents)

    def get_delay(self) -> float:
        """Get delay with jitter"""
        return self.delay_between_requests + random.uniform(0, self.delay_jitter)

    def max_pages(self, platform: str) -> int:
        return self.max_pages_per_platform.get(platform, 5)

    def cache_path(self, domain: str) -> Path:
        filename, _ = self.cache_domains[domain]
        return Path(self.data_dir) / filename

    def cache_ttl(self, domain: str) -> float:
        _, ttl = self.cache_domains[domain]
        return ttl


def load_config_from_env() -> ScraperConfig:
    """Load configuration from environment variables (and a .env file if present)"""
    load_dotenv()
    config = ScraperConfig()

    # Override from environment
    if os.getenv("SCRAPER_HEADLESS"):
        config.headless = os.getenv("SCRAPER_HEADLESS").lower() == "true"

    if os.getenv("SCRAPER_DELAY"):
        config.delay_between_requests = float(os.getenv("SCRAPER_DELAY"))

    if os.getenv("SCRAPER_DATA_DIR"):
        config.data_dir = os.getenv("SCRAPER_DATA_DIR")

    if os.getenv("SCRAPER_MAX_DATES"):
        config.max_dates = int(os.getenv("SCRAPER_MAX_DATES"))

    if os.getenv("SCRAPER_LOG_LEVEL"):
        config.log_level = os.getenv("SCRAPER_LOG_LEVEL")

    config.serper_api_key = os.getenv("SERPER_API_KEY") or config.serper_api_key
    config.gemini_api_key = os.getenv("GEMINI_API_KEY") or config.gemini_api_key

    return config


def load_config_from_file(config_path: str) -> ScraperConfig:
    """Load configuration from YAML file"""
    import yaml

    config = load_config_from_env()

    if not Path(config_path).exists():
        return config

    with open(config_path, 'r') as f:
        yaml_config = yaml.safe_load(f)

    if yaml_config:
        for key, value in yaml_config.items():
            if hasattr(config, key):
                setattr(config, key, value)

    return config
