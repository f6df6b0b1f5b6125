import random
import threading
import time
import unittest
from collections import Counter

from expiration import ExpirationCycle, ExpirationSweeper, reservoir_sample
from ttl_cache import ShardedTTLCache


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestReservoirSample(unittest.TestCase):

    def test_sample_size_is_bounded_by_population(self):
        rng = random.Random(3)
        entries = [(f"k{i}", float(i)) for i in range(10)]

        self.assertEqual(len(reservoir_sample(entries, 4, rng)), 4)
        self.assertEqual(reservoir_sample(entries, 10, rng), dict(entries))
        self.assertEqual(reservoir_sample(entries, 50, rng), dict(entries))
        self.assertEqual(reservoir_sample([], 5, rng), {})
        self.assertEqual(reservoir_sample(entries, 0, rng), {})

    def test_selected_entries_keep_their_timestamps(self):
        entries = [(f"k{i}", float(i)) for i in range(100)]
        sample = reservoir_sample(entries, 20, random.Random(5))
        for key, expires_at in sample.items():
            self.assertEqual(float(key[1:]), expires_at)

    def test_sampling_is_approximately_uniform(self):
        rng = random.Random(11)
        entries = [(i, 0.0) for i in range(20)]
        counts = Counter()
        for _ in range(4000):
            counts.update(reservoir_sample(entries, 5, rng).keys())

        # Each entry is expected 4000 * 5 / 20 = 1000 times
        for i in range(20):
            self.assertGreater(counts[i], 850)
            self.assertLess(counts[i], 1150)


class TestExpirationCycle(unittest.TestCase):

    def setUp(self):
        self.clock = FakeClock()
        self.cache = ShardedTTLCache(
            time_fn=self.clock,
            rng=random.Random(42),
            start_sweeper=False,
            max_entries=10_000,
            sample_size=100,
            stop_traverse_rate=0.25,
        )

    def tearDown(self):
        self.cache.destroy()

    def test_dense_garbage_runs_multiple_rounds(self):
        for i in range(50):
            self.cache.put(f"live{i}", i, ttl_seconds=3600)
        for i in range(1000):
            self.cache.put(f"dead{i}", i, expires_at=self.clock.now - 1)

        evicted = self.cache.run_expiration_cycle()

        self.assertEqual(evicted, 1000)
        self.assertGreater(self.cache._cycle.last_rounds, 1)
        # Bounded by the amount of garbage, not the index size
        self.assertLessEqual(self.cache._cycle.last_rounds, 60)
        self.assertEqual(len(self.cache._index), 50)
        self.assertEqual(self.cache.admitted_count, 50)
        self.assertEqual(self.cache.stats()["passive_expirations"], 0)

    def test_sparse_garbage_stops_after_one_round(self):
        for i in range(1000):
            self.cache.put(f"live{i}", i, ttl_seconds=3600)
        for i in range(10):
            self.cache.put(f"dead{i}", i, expires_at=self.clock.now - 1)

        self.cache.run_expiration_cycle()

        self.assertEqual(self.cache._cycle.last_rounds, 1)
        self.assertEqual(self.cache.size(), 1000)

    def test_empty_index(self):
        self.cache.put("no-ttl", 1)
        self.assertEqual(self.cache.run_expiration_cycle(), 0)
        self.assertEqual(self.cache._cycle.cycles, 1)
        self.assertEqual(self.cache.get("no-ttl"), 1)

    def test_due_at_exactly_now_is_evicted(self):
        self.cache.put("edge", 1, expires_at=self.clock.now)
        self.assertEqual(self.cache.run_expiration_cycle(), 1)

    def test_cycle_log_reports_live_entries(self):
        for i in range(5):
            self.cache.put(f"live{i}", i)
        for i in range(3):
            self.cache.put(f"dead{i}", i, expires_at=self.clock.now - 1)

        with self.assertLogs("expiration", level="DEBUG") as logs:
            self.cache.run_expiration_cycle()

        self.assertIn("evicted 3 entries", logs.output[-1])
        self.assertIn("live entries: 5", logs.output[-1])

    def test_refreshed_key_survives_stale_sample(self):
        self.cache.put("k", "old", expires_at=self.clock.now - 1)

        def evict_after_refresh(key, now):
            # A writer refreshes the key between sampling and eviction
            self.cache.put(key, "new", ttl_seconds=60)
            return self.cache._expire_actively(key, now)

        cycle = ExpirationCycle(
            snapshot=self.cache._index.snapshot,
            evict=evict_after_refresh,
            sample_size=10,
            stop_traverse_rate=0.25,
            time_fn=self.clock,
            rng=random.Random(1),
        )
        self.assertEqual(cycle.run(), 0)
        self.assertEqual(self.cache.get("k"), "new")
        self.assertEqual(self.cache.admitted_count, 1)

    def test_stop_rate_one_runs_single_round(self):
        evicted = []

        def evict(key, now):
            evicted.append(key)
            return True

        cycle = ExpirationCycle(
            snapshot=lambda: [(i, 0.0) for i in range(500)],
            evict=evict,
            sample_size=10,
            stop_traverse_rate=1.0,
            time_fn=lambda: 1.0,
            rng=random.Random(2),
        )
        self.assertEqual(cycle.run(), 10)
        self.assertEqual(cycle.last_rounds, 1)
        self.assertEqual(len(set(evicted)), 10)


class TestExpirationSweeper(unittest.TestCase):

    def test_failures_are_logged_and_do_not_stop_the_thread(self):
        calls = []

        def task():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("boom")

        sweeper = ExpirationSweeper(task, 0.01, name="failing")
        with self.assertLogs("expiration", level="ERROR") as logs:
            sweeper.start()
            deadline = time.monotonic() + 5
            while len(calls) < 3 and time.monotonic() < deadline:
                time.sleep(0.01)
            sweeper.stop()

        self.assertGreaterEqual(len(calls), 3)
        self.assertEqual(sweeper.failures, 1)
        self.assertIn("Expiration cycle failed for failing", logs.output[0])

    def test_runs_never_overlap(self):
        active = []
        overlaps = []
        lock = threading.Lock()

        def slow_task():
            with lock:
                if active:
                    overlaps.append(1)
                active.append(1)
            time.sleep(0.03)
            with lock:
                active.pop()

        sweeper = ExpirationSweeper(slow_task, 0.005)
        sweeper.start()
        time.sleep(0.2)
        sweeper.stop()

        self.assertEqual(overlaps, [])
        self.assertGreater(sweeper.runs, 1)

    def test_stop_before_next_firing(self):
        calls = []
        sweeper = ExpirationSweeper(lambda: calls.append(1), 60)
        sweeper.start()
        deadline = time.monotonic() + 5
        while not calls and time.monotonic() < deadline:
            time.sleep(0.01)
        sweeper.stop(timeout=5)

        self.assertEqual(len(calls), 1)
        self.assertFalse(sweeper.is_running)

    def test_invalid_interval(self):
        with self.assertRaises(ValueError):
            ExpirationSweeper(lambda: None, 0)


if __name__ == "__main__":
    unittest.main()
