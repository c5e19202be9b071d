"""
Detailed logging module for reservation scraping.
Logs every page fetched, cache hits and misses, and identity resolution steps.
"""
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional


class ScraperLogger:
    """Detailed logger for scraper operations"""

    def __init__(self, log_file: Optional[str] = None):
        """
        Initialize the scraper logger.

        Args:
            log_file: Path to log file. If None, uses 'scraper_logs/scraper_{timestamp}.log'
        """
        if log_file is None:
            log_dir = Path("scraper_logs")
            log_dir.mkdir(exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_file = str(log_dir / f"scraper_{timestamp}.log")

        self.log_file = log_file

        self.logger = logging.getLogger('reservation_scraper_detailed')
        self.logger.setLevel(logging.DEBUG)
        self.logger.propagate = False

        # Remove existing handlers
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers = []

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        self.logger.addHandler(file_handler)

        self.logger.info("=" * 80)
        self.logger.info(f"Scraper logging started - Log file: {log_file}")
        self.logger.info("=" * 80)

    def log_url_visit(self, url: str, method: str = "static", status: str = "STARTED"):
        """Log when a URL is being visited"""
        self.logger.info(f"[URL VISIT] {status} | Method: {method} | URL: {url}")

    def log_url_complete(self, url: str, html_length: Optional[int] = None,
                         duration: Optional[float] = None):
        """Log when URL visit is complete"""
        info_parts = [f"[URL COMPLETE] URL: {url}"]
        if html_length:
            info_parts.append(f"HTML Length: {html_length:,} bytes")
        if duration:
            info_parts.append(f"Duration: {duration:.2f}s")
        self.logger.info(" | ".join(info_parts))

    def log_url_error(self, url: str, error: str):
        """Log URL visit error"""
        self.logger.error(f"[URL ERROR] URL: {url} | Error: {error}")

    def log_cache(self, domain: str, key: str, hit: bool, count: Optional[int] = None):
        status = "HIT" if hit else "MISS"
        msg = f"[CACHE] {status} | Domain: {domain} | Key: {key}"
        if count is not None:
            msg += f" | Items: {count}"
        self.logger.info(msg)

    def log_listing(self, platform: str, url: str, count: int, has_next: bool):
        self.logger.info(
            f"[LISTING] Platform: {platform} | URL: {url} | Found {count} restaurants | Next page: {has_next}"
        )

    def log_resolve(self, name: str, stage: str, details: Optional[str] = None):
        """Log identity resolution steps"""
        msg = f"[RESOLVE] Name: {name} | Stage: {stage}"
        if details:
            msg += f" | {details}"
        self.logger.info(msg)

    def log_separator(self, text: str = ""):
        """Log a separator line"""
        if text:
            self.logger.info(f"{'=' * 80}")
            self.logger.info(f"  {text}")
            self.logger.info(f"{'=' * 80}")
        else:
            self.logger.info("-" * 80)

    def log_warning(self, message: str, url: Optional[str] = None):
        """Log a warning"""
        if url:
            self.logger.warning(f"[WARNING] URL: {url} | {message}")
        else:
            self.logger.warning(f"[WARNING] {message}")


# Global logger instance
_scraper_logger: Optional[ScraperLogger] = None


def get_scraper_logger(log_file: Optional[str] = None) -> ScraperLogger:
    """Get or create the global scraper logger"""
    global _scraper_logger
    if _scraper_logger is None:
        _scraper_logger = ScraperLogger(log_file)
    return _scraper_logger


def reset_logger():
    """Reset the global logger (useful for testing)"""
    global _scraper_logger
    _scraper_logger = None
