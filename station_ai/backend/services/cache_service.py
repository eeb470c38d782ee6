from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Hashable


@dataclass
class _CacheEntry:
	value: Any
	expires_at: float


class TTLCache:
	"""Small in-process key/value cache whose entries expire individually.

	Values are written only after the caller's network call has returned, so
	the lock is never held across I/O. Concurrent writers of the same key are
	last-writer-wins.
	"""

	def __init__(self, *, name: str, default_ttl_s: float, clock: Callable[[], float] = time.monotonic):
		self.name = name
		self._default_ttl_s = default_ttl_s
		self._clock = clock
		self._entries: Dict[Hashable, _CacheEntry] = {}
		self._lock = Lock()

	def get(self, key: Hashable, default: Any = None) -> Any:
		now = self._clock()
		with self._lock:
			entry = self._entries.get(key)
			if entry is None:
				return default
			if entry.expires_at <= now:
				self._entries.pop(key, None)
				return default
			return entry.value

	def set(self, key: Hashable, value: Any, ttl_s: float | None = None) -> None:
		ttl = self._default_ttl_s if ttl_s is None else ttl_s
		if ttl <= 0:
			return
		now = self._clock()
		with self._lock:
			self._evict_expired_locked(now)
			self._entries[key] = _CacheEntry(value=value, expires_at=now + ttl)

	def _evict_expired_locked(self, now: float) -> None:
		expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
		for key in expired:
			self._entries.pop(key, None)

	def ttl(self, key: Hashable) -> float:
		"""Seconds until `key` expires; 0.0 when absent or already expired."""
		now = self._clock()
		with self._lock:
			entry = self._entries.get(key)
			if entry is None:
				return 0.0
			return max(entry.expires_at - now, 0.0)

	def clear(self) -> None:
		with self._lock:
			self._entries.clear()

	def size(self) -> int:
		now = self._clock()
		with self._lock:
			self._evict_expired_locked(now)
			return len(self._entries)

	def __len__(self) -> int:
		"""Stored entry count without sweeping, expired ones included."""
		with self._lock:
			return len(self._entries)
