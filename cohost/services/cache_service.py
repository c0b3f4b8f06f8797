"""Shared response cache.

Entries are keyed by a fingerprint of everything that determines the reply
(property + version, normalized intent, resolved variables, template version)
and never by raw guest text. Concurrent misses for one fingerprint share a
single computation.
"""

import asyncio
import hashlib
import json
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from cohost.logging_config import get_logger
from cohost.services.clock import SystemClock

logger = get_logger("cache_service")


@dataclass(frozen=True)
class ResponseCandidate:
    text: str
    source_template_id: Optional[str] = None
    generated_by_model: Optional[str] = None
    variables_resolved: Mapping[str, str] = field(default_factory=dict)


@dataclass
class CacheEntry:
    fingerprint: str
    response_candidate: ResponseCandidate
    created_at: float
    ttl: float
    property_id: Optional[str] = None
    template_id: Optional[str] = None
    hit_count: int = 0

    def expired(self, now: float) -> bool:
        return now >= self.created_at + self.ttl


def fingerprint(
    property_id: str,
    property_version: int,
    normalized_intent: str,
    resolved_variables: Mapping[str, str],
    template_version: str,
) -> str:
    payload = {
        "property_id": property_id,
        "property_version": property_version,
        "intent": normalized_intent,
        "variables": dict(resolved_variables),
        "template_version": template_version,
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass
class _Flight:
    generation: int
    task: Optional[asyncio.Task] = None
    voters: List[Callable[[], bool]] = field(default_factory=list)


class ResponseCache:
    def __init__(self, max_entries: int = 1024, default_ttl: float = 3600, clock=None):
        self.max_entries = max_entries
        self.default_ttl = default_ttl
        self.clock = clock or SystemClock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._inflight: Dict[str, _Flight] = {}
        self._generation = 0
        self.hits = 0
        self.misses = 0
        self.computations = 0
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expired(self.clock.monotonic()):
            del self._entries[key]
            self.evictions += 1
            return None
        entry.hit_count += 1
        self._entries.move_to_end(key)
        return entry

    def store(
        self,
        key: str,
        candidate: ResponseCandidate,
        ttl: Optional[float] = None,
        *,
        property_id: Optional[str] = None,
        template_id: Optional[str] = None,
    ) -> Optional[CacheEntry]:
        ttl = self.default_ttl if ttl is None else ttl
        if ttl <= 0 or self.max_entries <= 0:
            return None
        entry = CacheEntry(
            fingerprint=key,
            response_candidate=candidate,
            created_at=self.clock.monotonic(),
            ttl=ttl,
            property_id=property_id,
            template_id=template_id,
        )
        self._entries[key] = entry
        self._entries.move_to_end(key)
        self._enforce_bound()
        return entry

    def _enforce_bound(self) -> None:
        if len(self._entries) <= self.max_entries:
            return
        now = self.clock.monotonic()
        for key in [key for key, entry in self._entries.items() if entry.expired(now)]:
            del self._entries[key]
            self.evictions += 1
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)
            self.evictions += 1

    def invalidate(self, property_id: Optional[str] = None, template_id: Optional[str] = None) -> int:
        """Evict entries for a property and/or template. In-flight results will not be stored."""
        if property_id is None and template_id is None:
            raise ValueError("invalidate needs property_id or template_id")
        self._generation += 1
        doomed = [
            key
            for key, entry in self._entries.items()
            if (property_id is not None and entry.property_id == property_id)
            or (template_id is not None and entry.template_id == template_id)
        ]
        for key in doomed:
            del self._entries[key]
        self.evictions += len(doomed)
        logger.info(
            "Cache invalidated",
            extra={"context": {"property_id": property_id, "template_id": template_id, "evicted": len(doomed)}},
        )
        return len(doomed)

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[ResponseCandidate]],
        *,
        ttl: Optional[float] = None,
        property_id: Optional[str] = None,
        template_id: Optional[str] = None,
        should_store: Callable[[], bool] = lambda: True,
    ) -> Tuple[ResponseCandidate, bool]:
        """Return ``(candidate, hit)``. Only one computation runs per fingerprint at a time.

        The result is stored only if at least one waiter's ``should_store`` still
        agrees once it is ready, and no invalidation happened meanwhile.
        """
        entry = self.lookup(key)
        if entry is not None:
            self.hits += 1
            return entry.response_candidate, True

        self.misses += 1
        flight = self._inflight.get(key)
        if flight is None:
            flight = _Flight(generation=self._generation)
            self._inflight[key] = flight
            flight.task = asyncio.ensure_future(self._compute(key, flight, compute, ttl, property_id, template_id))
        else:
            logger.debug("Joined in-flight computation", extra={"context": {"fingerprint": key[:12]}})
        flight.voters.append(should_store)

        # a cancelled waiter must not cancel the shared computation
        candidate = await asyncio.shield(flight.task)
        return candidate, False

    async def _compute(self, key, flight, compute, ttl, property_id, template_id) -> ResponseCandidate:
        self.computations += 1
        try:
            candidate = await compute()
        finally:
            self._inflight.pop(key, None)

        if flight.generation != self._generation:
            logger.info("Skipped cache store after invalidation", extra={"context": {"fingerprint": key[:12]}})
        elif not any(vote() for vote in flight.voters):
            logger.info("Skipped cache store for superseded request", extra={"context": {"fingerprint": key[:12]}})
        else:
            self.store(key, candidate, ttl, property_id=property_id, template_id=template_id)
        return candidate

    def stats(self) -> dict:
        return {
            "entries": len(self._entries),
            "inflight": len(self._inflight),
            "hits": self.hits,
            "misses": self.misses,
            "computations": self.computations,
            "evictions": self.evictions,
        }
