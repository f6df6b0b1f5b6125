import dataclasses
import logging
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Optional, Set, Tuple, TypeVar, Union

from expiration import ExpirationCycle, ExpirationSweeper

K = TypeVar("K")
V = TypeVar("V")

logger = logging.getLogger(__name__)

_MISSING: Any = object()

Expiry = Union[datetime, float, int]


class InvalidKeyError(ValueError):
    """Raised when a cache operation is given a ``None`` key."""


class CacheDestroyedError(RuntimeError):
    """Raised when a cache is used after ``destroy()``."""


@dataclass(frozen=True)
class CacheConfig:
    """Construction-time settings of a :class:`ShardedTTLCache`.

    Attributes:
        sweep_interval_minutes (float): Period of the active expiration cycle.
        shard_count (int): Number of independent shards. Fixed for the cache's lifetime.
        max_entries (int): Global cap on the number of live entries across all shards.
        sample_size (int): Expiry records sampled per round of the active cycle.
        stop_traverse_rate (float): A round that expires more than
            ``sample_size * stop_traverse_rate`` entries triggers another round.
        cache_name (str): Label used in log records and statistics.
    """

    sweep_interval_minutes: float = 20
    shard_count: int = 10
    max_entries: int = 5000
    sample_size: int = 100
    stop_traverse_rate: float = 0.25
    cache_name: str = "default"

    def __post_init__(self) -> None:
        for name in ("shard_count", "max_entries", "sample_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool):
                raise TypeError(f"{name} must be an integer.")
            if value <= 0:
                raise ValueError(f"{name} must be a positive integer.")
        if not isinstance(self.sweep_interval_minutes, (int, float)):
            raise TypeError("sweep_interval_minutes must be a number.")
        if self.sweep_interval_minutes <= 0:
            raise ValueError("sweep_interval_minutes must be positive.")
        if not isinstance(self.stop_traverse_rate, (int, float)):
            raise TypeError("stop_traverse_rate must be a number.")
        if not 0 <= self.stop_traverse_rate <= 1:
            raise ValueError("stop_traverse_rate must be between 0 and 1.")
        if not isinstance(self.cache_name, str):
            raise TypeError("cache_name must be a string.")

    @property
    def sweep_interval_seconds(self) -> float:
        return self.sweep_interval_minutes * 60


class _AdmissionController:
    """Counts live entries and refuses admissions beyond ``max_entries``."""

    def __init__(self, max_entries: int):
        self._max_entries = max_entries
        self._count = 0
        self._rejections = 0
        self._lock = threading.Lock()

    def try_admit(self) -> bool:
        with self._lock:
            self._count += 1
            if self._count > self._max_entries:
                self._count -= 1
                self._rejections += 1
                return False
            return True

    def release(self, count: int = 1) -> None:
        if count <= 0:
            return
        with self._lock:
            self._count -= count

    @property
    def count(self) -> int:
        return self._count

    @property
    def rejections(self) -> int:
        return self._rejections

    @property
    def max_entries(self) -> int:
        return self._max_entries


class _ExpiryIndex(Generic[K]):
    """Flat key -> absolute expiry timestamp map shared by all shards.

    Writers must hold the owning shard's lock for the key they touch. Every
    access is a single dict operation, so the index has no lock of its own
    and never serializes callers working on different shards.
    """

    def __init__(self):
        self._expiry: Dict[K, float] = {}

    def get(self, key: K) -> Optional[float]:
        return self._expiry.get(key)

    def set(self, key: K, expires_at: float) -> None:
        self._expiry[key] = expires_at

    def discard(self, key: K) -> None:
        self._expiry.pop(key, None)

    def snapshot(self) -> List[Tuple[K, float]]:
        # dict.copy() is one atomic step; iterating the live dict could race a writer.
        return list(self._expiry.copy().items())

    def clear(self) -> None:
        self._expiry.clear()

    def __len__(self) -> int:
        return len(self._expiry)


class _CacheShard(Generic[K, V]):
    """An internal thread-safe shard of the TTL cache.

    Owns its own re-entrant lock. Every change to a key's value, its expiry
    record or its admission slot happens while holding the lock of the shard
    that owns the key.
    """

    def __init__(self, index: _ExpiryIndex[K], admission: _AdmissionController):
        self._data: Dict[K, V] = {}
        self._index = index
        self._admission = admission
        self._lock = threading.RLock()

        self.hits = 0
        self.misses = 0
        self.passive_expirations = 0
        self.active_expirations = 0

    def _is_expired(self, key: K, now: float) -> bool:
        expires_at = self._index.get(key)
        return expires_at is not None and expires_at < now

    def _evict(self, key: K) -> bool:
        removed = self._data.pop(key, _MISSING) is not _MISSING
        self._index.discard(key)
        if removed:
            self._admission.release()
        return removed

    def _check_passive(self, key: K, now: float) -> None:
        if self._is_expired(key, now):
            if self._evict(key):
                self.passive_expirations += 1

    def get(self, key: K, now: float) -> Optional[V]:
        with self._lock:
            self._check_passive(key, now)
            value = self._data.get(key, _MISSING)
            if value is _MISSING:
                self.misses += 1
                return None
            self.hits += 1
            return value

    def contains(self, key: K, now: float) -> bool:
        with self._lock:
            self._check_passive(key, now)
            return key in self._data

    def put(self, key: K, value: V, expires_at: Optional[float], now: float) -> Tuple[bool, Optional[V]]:
        with self._lock:
            self._check_passive(key, now)
            previous = self._data.get(key, _MISSING)
            if previous is _MISSING and not self._admission.try_admit():
                return False, None
            self._data[key] = value
            if expires_at is None:
                self._index.discard(key)
            else:
                self._index.set(key, expires_at)
            return True, (None if previous is _MISSING else previous)

    def remove(self, key: K) -> Optional[V]:
        with self._lock:
            previous = self._data.pop(key, _MISSING)
            self._index.discard(key)
            if previous is _MISSING:
                return None
            self._admission.release()
            return previous

    def expire_passively(self, key: K, now: float) -> None:
        with self._lock:
            self._check_passive(key, now)

    def expire_actively(self, key: K, now: float) -> bool:
        with self._lock:
            # The record may have been refreshed since it was sampled.
            expires_at = self._index.get(key)
            if expires_at is None or expires_at > now:
                return False
            if not self._evict(key):
                return False
            self.active_expirations += 1
            return True

    def keys(self) -> List[K]:
        with self._lock:
            return list(self._data)

    def values(self) -> List[V]:
        with self._lock:
            return list(self._data.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            for key in self._data:
                self._index.discard(key)
            self._admission.release(len(self._data))
            self._data.clear()
            self.hits = 0
            self.misses = 0


class ShardedTTLCache(Generic[K, V]):
    """A thread-safe, sharded key/value cache with per-entry expiry.

    Values live in independent shards selected by ``abs(hash(key)) % shard_count``,
    each guarded by its own lock. Expiry timestamps live in a single flat index
    shared by every shard. Expired entries are removed lazily on access and
    proactively by a background sweeper that samples the expiry index at a
    fixed interval. A global admission counter rejects writes of new keys once
    ``max_entries`` live entries exist.

    Attributes:
        _config (CacheConfig): The immutable settings of this cache.
        _shards (list[_CacheShard]): The independent value shards.
        _index (_ExpiryIndex): Expiry timestamps of every key stored with a TTL.
        _admission (_AdmissionController): Global live-entry counter.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        *,
        time_fn: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        start_sweeper: bool = True,
        **overrides: Any,
    ):
        """Initializes the cache and starts its expiration sweeper.

        Args:
            config (Optional[CacheConfig], optional): Settings of the cache. Defaults
                to ``CacheConfig()``.
            time_fn (Callable[[], float], optional): Wall clock in epoch seconds.
            rng (Optional[random.Random], optional): Source of randomness for sampling.
            start_sweeper (bool, optional): Whether to start the background sweeper.
                The first cycle runs immediately, then once per sweep interval.
            **overrides: Individual ``CacheConfig`` fields overriding ``config``.

        Raises:
            ValueError: If a setting is out of range.
            TypeError: If a setting has the wrong type or an unknown name.
        """
        if config is None:
            config = CacheConfig(**overrides)
        elif overrides:
            config = dataclasses.replace(config, **overrides)

        self._config: CacheConfig = config
        self._time_fn = time_fn
        self._destroyed = False

        self._index: _ExpiryIndex[K] = _ExpiryIndex()
        self._admission = _AdmissionController(config.max_entries)
        self._shards: list[_CacheShard[K, V]] = [
            _CacheShard(self._index, self._admission) for _ in range(config.shard_count)
        ]

        self._cycle: ExpirationCycle[K] = ExpirationCycle(
            snapshot=self._index.snapshot,
            evict=self._expire_actively,
            sample_size=config.sample_size,
            stop_traverse_rate=config.stop_traverse_rate,
            time_fn=time_fn,
            rng=rng,
            name=config.cache_name,
            live_count=lambda: self._admission.count,
        )
        self._sweeper: Optional[ExpirationSweeper] = None
        if start_sweeper:
            self._sweeper = ExpirationSweeper(
                self.run_expiration_cycle,
                config.sweep_interval_seconds,
                name=config.cache_name,
            )
            self._sweeper.start()

    def _check_alive(self) -> None:
        if self._destroyed:
            raise CacheDestroyedError(f"Cache {self._config.cache_name!r} has been destroyed.")

    @staticmethod
    def _check_key(key: Any) -> None:
        if key is None:
            raise InvalidKeyError("Cache keys must not be None.")

    def _get_shard(self, key: K) -> _CacheShard[K, V]:
        """Routes a key deterministically to its assigned shard.

        Args:
            key (K): The key to route.

        Returns:
            _CacheShard[K, V]: The shard owning this key.
        """
        return self._shards[abs(hash(key)) % self._config.shard_count]

    def _resolve_expiry(
        self, ttl_seconds: Optional[float], expires_at: Optional[Expiry]
    ) -> Optional[float]:
        if ttl_seconds is not None and expires_at is not None:
            raise ValueError("Pass either ttl_seconds or expires_at, not both.")
        if ttl_seconds is not None:
            if ttl_seconds < 0:
                raise ValueError("ttl_seconds must be a non-negative number.")
            return self._time_fn() + ttl_seconds
        if isinstance(expires_at, datetime):
            return expires_at.timestamp()
        if expires_at is not None:
            return float(expires_at)
        return None

    def _expire_actively(self, key: K, now: float) -> bool:
        return self._get_shard(key).expire_actively(key, now)

    def _expire_all(self) -> None:
        now = self._time_fn()
        for key, expires_at in self._index.snapshot():
            if expires_at < now:
                self._get_shard(key).expire_passively(key, now)

    def _write(
        self, key: K, value: V, ttl_seconds: Optional[float], expires_at: Optional[Expiry]
    ) -> Tuple[bool, Optional[V]]:
        self._check_alive()
        self._check_key(key)
        expiry = self._resolve_expiry(ttl_seconds, expires_at)
        admitted, previous = self._get_shard(key).put(key, value, expiry, self._time_fn())
        if not admitted:
            logger.warning(
                "Cache %s is over its limit of %d entries (count=%d); rejected key %r",
                self._config.cache_name,
                self._admission.max_entries,
                self._admission.count,
                key,
            )
        return admitted, previous

    def put(
        self,
        key: K,
        value: V,
        ttl_seconds: Optional[float] = None,
        expires_at: Optional[Expiry] = None,
    ) -> Optional[V]:
        """Stores a value, optionally with a relative or absolute expiry.

        Overwriting an existing key does not consume another admission slot.
        Overwriting without an expiry drops any earlier expiry of the key.

        Args:
            key (K): The key to insert or update.
            value (V): The value to associate with the key.
            ttl_seconds (Optional[float], optional): Lifetime counted from now.
            expires_at (Optional[Union[datetime, float]], optional): Absolute expiry,
                as a datetime or epoch seconds. May lie in the past.

        Returns:
            Optional[V]: The previous live value of the key, or None if there was
            none or the write was rejected because the cache is full.

        Raises:
            InvalidKeyError: If the key is None.
            ValueError: If both expiry forms are given or ttl_seconds is negative.
        """
        return self._write(key, value, ttl_seconds, expires_at)[1]

    def offer(
        self,
        key: K,
        value: V,
        ttl_seconds: Optional[float] = None,
        expires_at: Optional[Expiry] = None,
    ) -> bool:
        """Same as :meth:`put`, but reports whether the write was admitted.

        Returns:
            bool: False if the cache was full and the key was not stored.
        """
        return self._write(key, value, ttl_seconds, expires_at)[0]

    def get(self, key: K) -> Optional[V]:
        """Retrieves a live value, evicting the key first if it has expired.

        Args:
            key (K): The key to lookup.

        Returns:
            Optional[V]: The value associated with the key, or None if not found or expired.
        """
        self._check_alive()
        self._check_key(key)
        return self._get_shard(key).get(key, self._time_fn())

    def contains_key(self, key: K) -> bool:
        """bool: True if the key is present and not expired."""
        self._check_alive()
        self._check_key(key)
        return self._get_shard(key).contains(key, self._time_fn())

    def __contains__(self, key: K) -> bool:
        return self.contains_key(key)

    def remove(self, key: K) -> Optional[V]:
        """Removes a key and its expiry record.

        Args:
            key (K): The key to remove.

        Returns:
            Optional[V]: The removed value, or None if the key was absent.
        """
        self._check_alive()
        self._check_key(key)
        return self._get_shard(key).remove(key)

    def size(self) -> int:
        """Counts live entries after expiring every overdue key.

        This walks the whole expiry index and should be kept off hot paths.

        Returns:
            int: The number of live entries across all shards.
        """
        self._check_alive()
        self._expire_all()
        return sum(len(shard) for shard in self._shards)

    def __len__(self) -> int:
        return self.size()

    def keys(self) -> Set[K]:
        """Set[K]: Every live key, after expiring every overdue key."""
        self._check_alive()
        self._expire_all()
        result: Set[K] = set()
        for shard in self._shards:
            result.update(shard.keys())
        return result

    def values(self) -> List[V]:
        """List[V]: Every live value across all shards, after expiring every overdue key."""
        self._check_alive()
        self._expire_all()
        result: List[V] = []
        for shard in self._shards:
            result.extend(shard.values())
        return result

    def clear(self) -> bool:
        """Removes every entry and expiry record and resets hit/miss counters.

        Returns:
            bool: Always True.
        """
        self._check_alive()
        for shard in self._shards:
            shard.clear()
        return True

    def run_expiration_cycle(self) -> int:
        """Runs one active expiration cycle in the calling thread.

        Returns:
            int: The number of expired entries evicted.
        """
        self._check_alive()
        return self._cycle.run()

    def destroy(self) -> None:
        """Stops the sweeper and drops all state. The cache cannot be used afterwards.

        Raises:
            CacheDestroyedError: If the cache was already destroyed.
        """
        self._check_alive()
        if self._sweeper is not None:
            self._sweeper.stop()
            self._sweeper = None
        self.clear()
        self._index.clear()
        self._destroyed = True
        logger.info("Cache %s destroyed", self._config.cache_name)

    def __enter__(self) -> "ShardedTTLCache[K, V]":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        if not self._destroyed:
            self.destroy()

    @property
    def config(self) -> CacheConfig:
        """CacheConfig: The settings this cache was built with."""
        return self._config

    @property
    def cache_name(self) -> str:
        return self._config.cache_name

    @property
    def admitted_count(self) -> int:
        """int: Current value of the admission counter."""
        self._check_alive()
        return self._admission.count

    @property
    def hits(self) -> int:
        self._check_alive()
        return sum(shard.hits for shard in self._shards)

    @property
    def misses(self) -> int:
        self._check_alive()
        return sum(shard.misses for shard in self._shards)

    def get_shard_metrics(self) -> Dict[int, Dict[str, int]]:
        """Reports per-shard sizes and hit/miss counters.

        Returns:
            Dict[int, Dict[str, int]]: Shard index -> ``{"size", "hits", "misses"}``.
        """
        self._check_alive()
        return {
            i: {"size": len(shard), "hits": shard.hits, "misses": shard.misses}
            for i, shard in enumerate(self._shards)
        }

    def stats(self) -> Dict[str, Any]:
        """Dict[str, Any]: A snapshot of the cache's counters."""
        self._check_alive()
        return {
            "cache_name": self._config.cache_name,
            "entries": sum(len(shard) for shard in self._shards),
            "admitted_count": self._admission.count,
            "max_entries": self._admission.max_entries,
            "hits": self.hits,
            "misses": self.misses,
            "rejections": self._admission.rejections,
            "passive_expirations": sum(s.passive_expirations for s in self._shards),
            "active_expirations": sum(s.active_expirations for s in self._shards),
            "cycles": self._cycle.cycles,
            "cycle_failures": self._sweeper.failures if self._sweeper is not None else 0,
        }
