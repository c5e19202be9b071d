"""
File-backed TTL caches.
Each cache domain lives in its own JSON file of {key: {"data": ..., "timestamp": ms}}.
Reads are pure lookups and never touch the network.
"""
import asyncio
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from .config import ScraperConfig

logger = logging.getLogger(__name__)


class TTLCache:
    """A single cache domain persisted to one JSON file"""

    def __init__(self, path: Path, ttl: float, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.ttl = ttl
        self.clock = clock
        self._entries: Optional[Dict[str, Dict[str, Any]]] = None
        self._write_lock = threading.Lock()
        self._version = 0
        self._written_version = 0

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if self._entries is not None:
            return self._entries

        self._entries = {}
        if not self.path.exists():
            return self._entries

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            if isinstance(raw, dict):
                self._entries = {
                    k: v for k, v in raw.items()
                    if isinstance(v, dict) and 'timestamp' in v
                }
        except (OSError, ValueError) as e:
            # Corrupt or unreadable file: start empty
            logger.warning(f"Ignoring unreadable cache file {self.path}: {e}")
            self._entries = {}

        return self._entries

    def _write(self, entries: Dict[str, Dict[str, Any]], version: int):
        with self._write_lock:
            if version < self._written_version:
                return
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
                with open(tmp_path, 'w', encoding='utf-8') as f:
                    json.dump(entries, f, ensure_ascii=False)
                os.replace(tmp_path, self.path)
                self._written_version = version
            except OSError as e:
                logger.warning(f"Failed to persist cache {self.path}: {e}")

    def _snapshot(self) -> Tuple[Dict[str, Dict[str, Any]], int]:
        self._version += 1
        return dict(self._entries), self._version

    def _save(self):
        self._write(*self._snapshot())

    def _now_ms(self) -> float:
        return self.clock() * 1000

    def is_fresh(self, entry: Dict[str, Any], max_age: Optional[float] = None) -> bool:
        age_ms = self._now_ms() - entry.get('timestamp', 0)
        ttl = self.ttl if max_age is None else max_age
        return age_ms < ttl * 1000

    def get(self, key: str, max_age: Optional[float] = None) -> Optional[Any]:
        """Return the cached value for key if present and fresh"""
        entry = self._load().get(key)
        if entry is None or not self.is_fresh(entry, max_age):
            return None
        return entry.get('data')

    def get_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Return the raw entry (data + timestamp) regardless of age"""
        return self._load().get(key)

    def set(self, key: str, value: Any):
        self._load()[key] = {'data': value, 'timestamp': self._now_ms()}
        self._save()

    async def aset(self, key: str, value: Any):
        """set() with the file rewrite done off the event loop"""
        self._load()[key] = {'data': value, 'timestamp': self._now_ms()}
        await asyncio.to_thread(self._write, *self._snapshot())

    def delete(self, key: str):
        entries = self._load()
        if key in entries:
            del entries[key]
            self._save()

    def items(self, include_stale: bool = False) -> Iterator[Tuple[str, Any]]:
        """Iterate (key, value) pairs, fresh ones only unless include_stale"""
        for key, entry in list(self._load().items()):
            if include_stale or self.is_fresh(entry):
                yield key, entry.get('data')

    def clear(self):
        self._entries = {}
        self._save()

    def __len__(self) -> int:
        return len(self._load())


class CacheStore:
    """Holds one TTLCache per configured domain"""

    def __init__(self, config: ScraperConfig, clock: Callable[[], float] = time.time):
        self.config = config
        self.clock = clock
        self._caches: Dict[str, TTLCache] = {}

    def domain(self, name: str) -> TTLCache:
        if name not in self._caches:
            if name not in self.config.cache_domains:
                raise KeyError(f"Unknown cache domain: {name}")
            self._caches[name] = TTLCache(
                self.config.cache_path(name),
                self.config.cache_ttl(name),
                clock=self.clock,
            )
        return self._caches[name]

    @property
    def listing(self) -> TTLCache:
        return self.domain('listing')

    @property
    def availability(self) -> TTLCache:
        return self.domain('availability')

    @property
    def platform_links(self) -> TTLCache:
        return self.domain('platform_links')

    @property
    def scores(self) -> TTLCache:
        return self.domain('scores')

    @property
    def sessions(self) -> TTLCache:
        return self.domain('sessions')


def make_key(*parts: Any) -> str:
    """Composite cache key from every parameter that affects a result"""
    return ":".join("" if p is None else str(p) for p in parts)
