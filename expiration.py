import logging
import random
import threading
import time
from typing import Callable, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar

K = TypeVar("K")

logger = logging.getLogger(__name__)


def reservoir_sample(
    entries: Sequence[Tuple[K, float]], sample_size: int, rng: random.Random
) -> Dict[K, float]:
    """Selects up to ``sample_size`` entries uniformly at random in a single pass.

    Each entry is taken with probability ``needed / unseen``, so the result always
    holds ``min(sample_size, len(entries))`` entries. The input is walked once
    without being sorted; callers pass a snapshot of the expiry index so the walk
    never races concurrent writers.

    Args:
        entries (Sequence[Tuple[K, float]]): ``(key, expires_at)`` pairs.
        sample_size (int): The number of entries wanted.
        rng (random.Random): Source of randomness.

    Returns:
        Dict[K, float]: The selected entries.
    """
    selected: Dict[K, float] = {}
    needed = sample_size
    unseen = len(entries)
    for key, expires_at in entries:
        if needed <= 0:
            break
        if rng.random() < needed / unseen:
            selected[key] = expires_at
            needed -= 1
        unseen -= 1
    return selected


class ExpirationCycle(Generic[K]):
    """Proactively evicts expired entries by sampling the expiry index.

    Each round samples ``sample_size`` expiry records and evicts the overdue
    ones. While a round finds more than ``sample_size * stop_traverse_rate``
    overdue records the index is considered dense with garbage and another
    round runs immediately; otherwise the cycle ends. The cost of a cycle is
    thus proportional to the garbage it finds, not to the index size.
    """

    def __init__(
        self,
        snapshot: Callable[[], List[Tuple[K, float]]],
        evict: Callable[[K, float], bool],
        sample_size: int,
        stop_traverse_rate: float,
        time_fn: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
        name: str = "default",
        live_count: Optional[Callable[[], int]] = None,
    ):
        """Initializes the cycle.

        Args:
            snapshot (Callable[[], List[Tuple[K, float]]]): Returns the current
                ``(key, expires_at)`` records of the expiry index.
            evict (Callable[[K, float], bool]): Evicts a key if its record is still
                due at the given time; returns whether it evicted anything.
            sample_size (int): Records sampled per round.
            stop_traverse_rate (float): Fraction of a sample that must be overdue
                for another round to run.
            time_fn (Callable[[], float], optional): Clock in epoch seconds.
            rng (Optional[random.Random], optional): Source of randomness.
            name (str, optional): Cache label for log records.
            live_count (Optional[Callable[[], int]], optional): Reports the number of
                live entries for the per-cycle log record.
        """
        self._snapshot = snapshot
        self._evict = evict
        self._sample_size = sample_size
        self._threshold = sample_size * stop_traverse_rate
        self._time_fn = time_fn
        self._rng = rng if rng is not None else random.Random()
        self._name = name
        self._live_count = live_count

        self.cycles = 0
        self.last_rounds = 0

    def run_round(self) -> int:
        """Samples the index once and evicts overdue sampled keys.

        Returns:
            int: The number of keys evicted in this round.
        """
        now = self._time_fn()
        sample = reservoir_sample(self._snapshot(), self._sample_size, self._rng)
        expired = 0
        for key, expires_at in sample.items():
            if expires_at <= now and self._evict(key, now):
                expired += 1
        return expired

    def run(self) -> int:
        """Runs rounds until one finds few enough overdue keys.

        Returns:
            int: The total number of keys evicted by this cycle.
        """
        total = 0
        rounds = 0
        while True:
            expired = self.run_round()
            total += expired
            rounds += 1
            if expired <= self._threshold:
                break
        self.cycles += 1
        self.last_rounds = rounds
        logger.debug(
            "Expiration cycle for %s evicted %d entries in %d rounds (live entries: %s)",
            self._name,
            total,
            rounds,
            self._live_count() if self._live_count is not None else "n/a",
        )
        return total


class ExpirationSweeper:
    """Runs a task on a dedicated daemon thread at a fixed rate.

    The first run happens immediately. Runs never overlap; firings missed
    while a run was still in progress are skipped. Exceptions raised by the
    task are logged and counted, and never stop the thread.
    """

    def __init__(self, task: Callable[[], object], interval_seconds: float, name: str = "default"):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive.")
        self._task = task
        self._interval = interval_seconds
        self._name = name
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run, name=f"ttl-cache-sweeper-{name}", daemon=True
        )

        self.runs = 0
        self.failures = 0

    def start(self) -> None:
        self._thread.start()
        logger.info(
            "Expiration sweeper started for %s (every %.1fs)", self._name, self._interval
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signals the thread to stop and waits for the current run to finish."""
        self._stop_event.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        logger.info("Expiration sweeper stopped for %s", self._name)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def _run(self) -> None:
        next_run = time.monotonic()
        while not self._stop_event.is_set():
            try:
                self._task()
            except Exception:
                self.failures += 1
                logger.exception("Expiration cycle failed for %s", self._name)
            self.runs += 1

            next_run += self._interval
            now = time.monotonic()
            if next_run < now:
                skipped = int((now - next_run) // self._interval) + 1
                next_run += skipped * self._interval
            self._stop_event.wait(next_run - now)
