"""Template identity and coordinate-map caching.

Maps are cached per (template hash, form type). A cache hit is re-validated
against the current file's anchors before use; drift invalidates the entry
and triggers fresh detection.
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from alignment import build_coordinate_map
from coordinate_map import CoordinateMap, hash_template
from detect_fields import validate_anchors
from form_data import FormType

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 60 * 60  # seconds

__all__ = [
    "CoordinateCache",
    "InMemoryCoordinateCache",
    "JsonFileCoordinateCache",
    "TemplateManager",
    "cache_key",
    "hash_template",
]


def cache_key(pdf_hash, form_type):
    return f"{pdf_hash}:{FormType.parse(form_type).value}"


# ---------------------------------------------------------------------------
# Cache backends
# ---------------------------------------------------------------------------

class CoordinateCache:
    """Storage interface for coordinate maps."""

    def get(self, key) -> Optional[CoordinateMap]:
        raise NotImplementedError

    def put(self, key, value: CoordinateMap):
        raise NotImplementedError

    def invalidate(self, key):
        raise NotImplementedError


class InMemoryCoordinateCache(CoordinateCache):
    """Process-local cache; entries unused for ``ttl`` seconds are purged."""

    def __init__(self, ttl=DEFAULT_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, Tuple[CoordinateMap, float]] = {}
        self._lock = threading.Lock()

    def _purge(self, now):
        expired = [k for k, (_, used) in self._entries.items() if now - used > self.ttl]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Purged %d expired coordinate maps", len(expired))

    def get(self, key):
        with self._lock:
            now = self.clock()
            self._purge(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries[key] = (entry[0], now)
            return entry[0]

    def put(self, key, value):
        with self._lock:
            now = self.clock()
            self._purge(now)
            self._entries[key] = (value, now)

    def invalidate(self, key):
        with self._lock:
            self._entries.pop(key, None)

    def __len__(self):
        with self._lock:
            return len(self._entries)


class JsonFileCoordinateCache(CoordinateCache):
    """One JSON file per map in a directory; files unused for ``ttl`` seconds are purged.

    A file's modification time records its last use, so ``clock`` must
    return wall-clock seconds.
    """

    def __init__(self, directory, ttl=DEFAULT_TTL, clock: Callable[[], float] = time.time):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()

    def _expired(self, path, now):
        return now - path.stat().st_mtime > self.ttl

    def _purge(self, now):
        expired = 0
        for path in self.directory.glob("*.json"):
            try:
                if self._expired(path, now):
                    path.unlink()
                    expired += 1
            except FileNotFoundError:
                continue
        if expired:
            logger.debug("Purged %d expired coordinate map files", expired)

    def _path(self, key):
        return self.directory / (key.replace(":", "_") + ".json")

    def get(self, key):
        path = self._path(key)
        with self._lock:
            now = self.clock()
            if not path.exists():
                return None
            if self._expired(path, now):
                logger.debug("Cached map %s expired", path.name)
                path.unlink(missing_ok=True)
                return None
            text = path.read_text()
            os.utime(path, (now, now))
        try:
            return CoordinateMap.model_validate_json(text)
        except ValidationError as e:
            logger.warning("Discarding unreadable cached map %s: %s", path.name, e)
            self.invalidate(key)
            return None

    def put(self, key, value):
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        with self._lock:
            now = self.clock()
            self._purge(now)
            tmp.write_text(value.model_dump_json(indent=2))
            tmp.replace(path)
            os.utime(path, (now, now))

    def invalidate(self, key):
        with self._lock:
            self._path(key).unlink(missing_ok=True)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TemplateManager:
    """Resolve coordinate maps through the cache.

    canonical_lookup(form_type) returns the canonical template for a form,
    detector(pdf_bytes, form_type, canonical, timeout) builds a fresh map.
    """

    def __init__(self, cache: CoordinateCache, canonical_lookup, detector):
        self.cache = cache
        self.canonical_lookup = canonical_lookup
        self.detector = detector

    def get_coordinate_map(self, pdf_bytes, form_type, timeout=None):
        """Returns (coordinate_map, warnings)."""
        form_type = FormType.parse(form_type)
        key = cache_key(hash_template(pdf_bytes), form_type)
        warnings: List = []

        cached = self.cache.get(key)
        if cached is not None:
            validation = validate_anchors(pdf_bytes, cached, timeout=timeout)
            if validation.valid:
                logger.debug("Coordinate map cache hit for %s", key)
                return cached, warnings
            logger.warning("Cached map for %s drifted (%d anchors); re-detecting",
                           key, len(validation.drifts))
            warnings.extend(validation.drifts)
            self.cache.invalidate(key)

        coord_map = self.detector(pdf_bytes, form_type, self.canonical_lookup(form_type), timeout)
        self.cache.put(key, coord_map)
        logger.info("Cached %s coordinate map for %s (%d fields)",
                    coord_map.source, key, len(coord_map.fields))
        return coord_map, warnings


def aligned_detector(pdf_bytes, form_type, canonical, timeout=None):
    """Default detector: canonical alignment completed by label anchors."""
    coord_map, _ = build_coordinate_map(pdf_bytes, form_type, canonical, timeout=timeout)
    return coord_map

