"""
Content-addressed response cache.

Maps a deterministic request fingerprint to a previously computed response.
Caching is a performance optimization: store failures are logged and
treated as misses, never surfaced to the caller.
"""

import hashlib
import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from ai_governor.storage.models import CacheEntry, utcnow
from ai_governor.storage.store import KeyValueStore

from .errors import CacheUnavailable, GovernorError, StoreUnavailable
from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

KEY_VERSION = "v1"
TEXT_NAMESPACE = "ai"
EMBEDDING_NAMESPACE = "emb"

# Shorter answers are usually refusals or error text
MIN_CACHEABLE_LENGTH = 50
MAX_CACHEABLE_TEMPERATURE = 0.9

_TIME_SENSITIVE_PATTERNS = (
    re.compile(r"\b(today|now|current|latest|recent)\b", re.IGNORECASE),
    re.compile(r"\b\d{4}-\d{2}-\d{2}\b"),
    re.compile(r"\b\d{1,2}:\d{2}\b"),
)


@dataclass(frozen=True)
class CacheStats:
    hits: int
    misses: int
    errors: int
    keys: int

    @property
    def hit_rate(self) -> float:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else 0.0


def generate_cache_key(
    prompt: str,
    model: str,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    system_prompt: Optional[str] = None,
    namespace: str = TEXT_NAMESPACE,
) -> str:
    """Fingerprint the output-affecting parts of a request.

    Only the prompt, model, temperature, max_tokens and system prompt are
    hashed. Caller identity (user, session) must never reach this function,
    or identical requests from different users stop sharing entries.
    """
    payload = {
        "version": KEY_VERSION,
        "prompt": (prompt or "").strip(),
        "model": (model or "").strip().lower(),
        "temperature": None if temperature is None else round(float(temperature), 2),
        "max_tokens": max_tokens,
        "system_prompt": (system_prompt or "").strip() or None,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{namespace}:{digest}"


class ResponseCache:
    """TTL cache of vendor responses keyed by request fingerprint."""

    def __init__(self, store: KeyValueStore, default_ttl_seconds: int = 86400,
                 enabled: bool = True, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.default_ttl_seconds = default_ttl_seconds
        self.enabled = enabled
        self._clock = clock
        self._stats_lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._errors = 0

    generate_cache_key = staticmethod(generate_cache_key)

    def _count(self, hits: int = 0, misses: int = 0, errors: int = 0) -> None:
        with self._stats_lock:
            self._hits += hits
            self._misses += misses
            self._errors += errors

    def _read(self, key: str) -> Optional[dict]:
        try:
            return self.store.get(key)
        except StoreUnavailable as e:
            raise CacheUnavailable(f"Cache read failed for {key[:16]}...: {e}") from e

    def _write(self, entry: CacheEntry) -> None:
        ttl = (entry.expires_at - self._clock()).total_seconds()
        if ttl <= 0:
            return
        try:
            self.store.set(entry.key, entry.to_dict(), ttl_seconds=ttl)
        except StoreUnavailable as e:
            raise CacheUnavailable(f"Cache write failed for {entry.key[:16]}...: {e}") from e

    def get(self, key: str) -> Optional[CacheEntry]:
        """Return the live entry for `key` and count the hit, or None on a miss.

        An entry read past its expiry is a miss even if the store still
        holds it. The hit count is written back with the original expiry.
        """
        if not self.enabled:
            return None
        try:
            raw = self._read(key)
            if raw is None:
                self._count(misses=1)
                return None

            entry = CacheEntry.from_dict(raw)
            if entry.is_expired(self._clock()):
                self._count(misses=1)
                return None

            entry.hit_count += 1
            self._write(entry)
        except CacheUnavailable as e:
            logger.warning("Cache unavailable, treating as a miss: %s", e)
            self._count(misses=1, errors=1)
            return None
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed cache entry %s...: %s", key[:16], e)
            self._count(misses=1, errors=1)
            return None

        self._count(hits=1)
        logger.debug(
            "Cache hit %s... model=%s hit_count=%d tokens_saved=%d",
            key[:16], entry.model, entry.hit_count, entry.usage.total_tokens,
        )
        return entry

    def set(self, key: str, content: str, usage: TokenUsage, model: str, provider: str,
            ttl_seconds: Optional[int] = None) -> Optional[CacheEntry]:
        """Store a response under `key` with a default or explicit TTL.

        Returns the stored entry, or None if caching is disabled or the
        store is unavailable.
        """
        if not self.enabled:
            return None
        ttl = ttl_seconds if ttl_seconds else self.default_ttl_seconds
        now = self._clock()
        entry = CacheEntry(
            key=key,
            content=content,
            usage=usage,
            model=model,
            provider=provider,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            hit_count=0,
        )
        try:
            self._write(entry)
        except CacheUnavailable as e:
            logger.warning("Cache unavailable, response not cached: %s", e)
            self._count(errors=1)
            return None

        logger.info(
            "AI response cached %s... model=%s provider=%s tokens=%d ttl=%ds",
            key[:16], model, provider, usage.total_tokens, ttl,
        )
        return entry

    def is_cacheable(self, prompt: str, content: str, use_cache: bool = True,
                     streaming: bool = False, temperature: Optional[float] = None) -> bool:
        """Decide whether a response is deterministic enough to reuse."""
        if not self.enabled or not use_cache or streaming:
            return False
        if not content or not content.strip():
            return False
        if len(content) < MIN_CACHEABLE_LENGTH:
            return False
        if temperature is not None and temperature > MAX_CACHEABLE_TEMPERATURE:
            return False
        return not any(pattern.search(prompt or "") for pattern in _TIME_SENSITIVE_PATTERNS)

    def clear_expired(self, older_than_seconds: Optional[int] = None) -> int:
        """Remove expired entries, plus entries older than `older_than_seconds`.

        `older_than_seconds=0` clears every entry.

        Returns:
            Number of entries removed
        """
        prefixes = (f"{TEXT_NAMESPACE}:", f"{EMBEDDING_NAMESPACE}:")
        try:
            removed = sum(self.store.purge_expired(prefix) for prefix in prefixes)
            if older_than_seconds is not None:
                cutoff = self._clock() - timedelta(seconds=older_than_seconds)
                for prefix in prefixes:
                    for key in self.store.scan(prefix):
                        raw = self.store.get(key)
                        if raw is None:
                            continue
                        try:
                            created_at = datetime.fromisoformat(raw["created_at"])
                        except (KeyError, TypeError, ValueError) as e:
                            logger.warning("Skipping malformed cache entry %s...: %s", key[:16], e)
                            continue
                        if created_at <= cutoff and self.store.delete(key):
                            removed += 1
        except StoreUnavailable as e:
            logger.warning("Cache cleanup skipped, store unavailable: %s", e)
            self._count(errors=1)
            return 0

        logger.info("Cache cleanup removed %d entries", removed)
        return removed

    def warmup(self, common_queries: Iterable[dict],
               generate: Callable[..., object]) -> int:
        """Populate the cache for common queries outside the request path.

        Each query is a dict of `generate` keyword arguments with at least
        `prompt` and a resolved `model`. `generate` is expected to go through
        the governed path, which writes the cache itself. Queries already
        cached are skipped; a failing query is logged and the rest continue.

        Returns:
            Number of queries that were computed
        """
        queries = list(common_queries)
        logger.info("Cache warmup started for %d queries", len(queries))
        computed = 0
        for query in queries:
            key = generate_cache_key(
                query["prompt"],
                model=query["model"],
                temperature=query.get("temperature"),
                max_tokens=query.get("max_tokens"),
                system_prompt=query.get("system_prompt"),
            )
            try:
                if self._read(key) is not None:
                    continue
            except CacheUnavailable as e:
                logger.warning("Cache warmup aborted: %s", e)
                break
            try:
                generate(**query)
            except GovernorError as e:
                logger.warning("Cache warmup query failed: %s", e)
                continue
            computed += 1
        logger.info("Cache warmup completed, %d queries computed", computed)
        return computed

    def clear(self) -> int:
        """Drop every cached entry."""
        return self.clear_expired(older_than_seconds=0)

    def get_stats(self) -> CacheStats:
        try:
            keys = len(self.store.scan(f"{TEXT_NAMESPACE}:")) + len(self.store.scan(f"{EMBEDDING_NAMESPACE}:"))
        except StoreUnavailable:
            keys = 0
        with self._stats_lock:
            return CacheStats(hits=self._hits, misses=self._misses, errors=self._errors, keys=keys)
