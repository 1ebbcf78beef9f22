"""
Context Cache - short-lived in-memory cache of expensive context reads.

Entries are keyed by (kind, id, params hash) and expire after a TTL. The
cache is never authoritative: every entry can be rebuilt from the context
provider, and authorization/quota paths never read from it.
"""

import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, NamedTuple, Optional

logger = logging.getLogger(__name__)


class CacheKey(NamedTuple):
	kind: str
	id: str
	params_hash: str = ""

	def __str__(self) -> str:
		suffix = f":{self.params_hash}" if self.params_hash else ""
		return f"{self.kind}:{self.id}{suffix}"


@dataclass
class CacheEntry:
	value: Any
	expires_at: float


def make_key(kind: str, entity_id: Any, params: Optional[dict] = None) -> CacheKey:
	"""Build a cache key; params are hashed so their order does not matter."""
	params_hash = ""
	if params:
		encoded = json.dumps(params, sort_keys=True, default=str)
		params_hash = hashlib.sha1(encoded.encode()).hexdigest()[:12]
	return CacheKey(kind, str(entity_id), params_hash)


class ContextCache:
	"""
	TTL cache with hit/miss/set counters.

	Usage:
		cache = ContextCache(ttl_seconds=300, check_period=60)
		await cache.start()       # background sweep of expired entries

		backlog = await cache.get_or_load("backlog", product_id, loader)
		cache.invalidate_product(product_id)

		await cache.stop()
	"""

	def __init__(
		self,
		ttl_seconds: float = 300,
		check_period: float = 60,
		clock: Callable[[], float] = time.monotonic,
	):
		self.ttl_seconds = ttl_seconds
		self.check_period = check_period
		self._clock = clock
		self._entries: dict[CacheKey, CacheEntry] = {}
		self._sweep_task: Optional[asyncio.Task] = None
		self._running = False
		self.reset_stats()

	def reset_stats(self) -> None:
		self.hits = 0
		self.misses = 0
		self.sets = 0

	def get(self, kind: str, entity_id: Any, params: Optional[dict] = None) -> Any:
		"""Return the cached value or None on miss/expiry."""
		key = make_key(kind, entity_id, params)
		entry = self._entries.get(key)
		if entry is not None and entry.expires_at > self._clock():
			self.hits += 1
			logger.debug(f"Cache hit: {key}")
			return entry.value

		if entry is not None:
			del self._entries[key]
		self.misses += 1
		logger.debug(f"Cache miss: {key}")
		return None

	def set(
		self,
		kind: str,
		entity_id: Any,
		value: Any,
		params: Optional[dict] = None,
		ttl: Optional[float] = None,
	) -> None:
		key = make_key(kind, entity_id, params)
		ttl = self.ttl_seconds if ttl is None else ttl
		self._entries[key] = CacheEntry(value=value, expires_at=self._clock() + ttl)
		self.sets += 1

	async def get_or_load(
		self,
		kind: str,
		entity_id: Any,
		loader: Callable[[], Awaitable[Any]],
		params: Optional[dict] = None,
	) -> Any:
		"""Return the cached value, loading and caching it on a miss."""
		value = self.get(kind, entity_id, params)
		if value is not None:
			return value
		value = await loader()
		if value is not None:
			self.set(kind, entity_id, value, params)
		return value

	def invalidate_product(self, product_id: Any) -> int:
		"""Drop every entry whose id is `product_id`; returns the number removed."""
		target = str(product_id)
		doomed = [key for key in self._entries if key.id == target]
		for key in doomed:
			del self._entries[key]
		if doomed:
			logger.info(f"Invalidated {len(doomed)} cache entries for product {target}")
		return len(doomed)

	def invalidate_all(self) -> int:
		count = len(self._entries)
		self._entries.clear()
		logger.info(f"Cache flushed ({count} entries)")
		return count

	def purge_expired(self) -> int:
		now = self._clock()
		expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
		for key in expired:
			del self._entries[key]
		return len(expired)

	def __len__(self) -> int:
		return len(self._entries)

	def stats(self) -> dict:
		total = self.hits + self.misses
		hit_rate = (self.hits / total * 100) if total else 0.0
		return {
			"hits": self.hits,
			"misses": self.misses,
			"sets": self.sets,
			"total": total,
			"hit_rate": f"{hit_rate:.2f}%",
			"size": len(self._entries),
		}

	async def start(self) -> None:
		"""Start the background sweep."""
		if self._sweep_task is not None:
			return
		self._running = True
		self._sweep_task = asyncio.create_task(self._sweep_loop())
		logger.debug("Context cache sweep started")

	async def stop(self) -> None:
		self._running = False
		if self._sweep_task:
			self._sweep_task.cancel()
			try:
				await self._sweep_task
			except asyncio.CancelledError:
				pass
			self._sweep_task = None

	async def _sweep_loop(self) -> None:
		while self._running:
			try:
				await asyncio.sleep(self.check_period)
				removed = self.purge_expired()
				if removed:
					logger.debug(f"Swept {removed} expired cache entries")
			except asyncio.CancelledError:
				break
			except Exception as e:
				logger.error(f"Cache sweep error: {e}")
