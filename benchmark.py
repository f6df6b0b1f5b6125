import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict

from ttl_cache import ShardedTTLCache


def _time_workload(cache: ShardedTTLCache, iterations: int, num_threads: int, ttl_seconds: float) -> float:
    def worker(worker_id):
        # Overlapping key ranges so threads contend on the same shards
        for i in range(iterations):
            key = f"key_{(worker_id * 100) + (i % 5000)}"
            cache.put(key, i, ttl_seconds=ttl_seconds)
            cache.get(key)

    start_time = time.perf_counter()
    with ThreadPoolExecutor(max_workers=num_threads) as executor:
        futures = [executor.submit(worker, i) for i in range(num_threads)]
        for future in futures:
            future.result()
    return time.perf_counter() - start_time


def run_benchmark(
    iterations=10_000,
    max_entries=10_000,
    num_threads=10,
    shard_count=16,
    ttl_seconds=60.0,
    verbose=True,
) -> Dict[str, float]:
    """
    Benchmarks a single-shard cache against a sharded cache under the same
    multi-threaded put/get workload. Both caches run without their background
    sweeper so that only caller-side contention is measured.
    """
    single = ShardedTTLCache(
        shard_count=1, max_entries=max_entries, cache_name="bench-single", start_sweeper=False
    )
    sharded = ShardedTTLCache(
        shard_count=shard_count,
        max_entries=max_entries,
        cache_name="bench-sharded",
        start_sweeper=False,
    )
    try:
        single_duration = _time_workload(single, iterations, num_threads, ttl_seconds)
        sharded_duration = _time_workload(sharded, iterations, num_threads, ttl_seconds)
        results = {
            "single_shard_seconds": single_duration,
            "sharded_seconds": sharded_duration,
            "ratio": sharded_duration / single_duration if single_duration else 0.0,
            "sharded_entries": float(sharded.size()),
        }
    finally:
        single.destroy()
        sharded.destroy()

    if verbose:
        print("Multi-Threaded Benchmark")
        print(f"Total Operations: {iterations * num_threads * 2:,}")
        print(f"Threads:          {num_threads}")
        print(f"Max Entries:      {max_entries:,}\n")
        print("Multi-Threaded Contention Results:")
        print(f"  1 shard:    {single_duration:.4f} seconds")
        print(f"  {shard_count} shards:  {sharded_duration:.4f} seconds")
        print(f"  Ratio:      {results['ratio']:.2f}x")
    return results


if __name__ == "__main__":
    run_benchmark()
