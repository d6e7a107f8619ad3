"""Operation timing, benchmark bookkeeping and before/after performance comparison."""

from __future__ import annotations

import inspect
import logging
import os
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Union

from .p2p import P2PError, P2PManager

logger = logging.getLogger(__name__)

BROADCAST_TTL = 300
_CLOCK_START = time.monotonic()
_CPU_START = time.process_time()


class ProfilingError(Exception):
    """Raised when an operation is ended that was never started."""


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _throughput(successes: int, duration_ms: int) -> float:
    if duration_ms <= 0:
        return 0.0
    return successes / (duration_ms / 1000.0)


@dataclass(frozen=True)
class CpuMetrics:
    process_id: int = field(default_factory=os.getpid)
    cpu_usage_percent: float = 0.0
    user_time_ms: int = 0
    system_time_ms: int = 0
    memory_usage_mb: float = 0.0
    timestamp: datetime = field(default_factory=_utc_now)


@dataclass(frozen=True)
class BenchmarkResult:
    id: str
    operation: str
    duration_ms: int
    throughput_ops_per_sec: float
    success_count: int
    error_count: int
    cpu_metrics: CpuMetrics = field(default_factory=CpuMetrics)
    timestamp: datetime = field(default_factory=_utc_now)

    @classmethod
    def from_counts(
        cls, operation: str, duration_ms: int, success_count: int, error_count: int
    ) -> BenchmarkResult:
        """A fresh result whose throughput is successes per second of ``duration_ms``."""
        return cls(
            id=str(uuid.uuid4()),
            operation=operation,
            duration_ms=duration_ms,
            throughput_ops_per_sec=_throughput(success_count, duration_ms),
            success_count=success_count,
            error_count=error_count,
        )


@dataclass(frozen=True)
class PerformanceSummary:
    total_operations: int
    total_duration_ms: int
    total_successes: int
    total_errors: int
    average_throughput_ops_per_sec: float
    error_rate_percent: float


@dataclass(frozen=True)
class PerformanceComparison:
    throughput_improvement_percent: float
    error_rate_change_percent: float
    before_throughput: float
    after_throughput: float
    before_error_rate: float
    after_error_rate: float

    def summary(self) -> str:
        return (
            f"Throughput: {self.before_throughput:.2f} -> {self.after_throughput:.2f} ops/sec "
            f"({self.throughput_improvement_percent:.1f}% improvement), "
            f"Error rate: {self.before_error_rate:.2f}% -> {self.after_error_rate:.2f}% "
            f"({self.error_rate_change_percent:.1f}% change)"
        )


class PerformanceProfiler:
    """Times named operations and keeps the last result recorded for each."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._benchmarks: dict[str, BenchmarkResult] = {}
        self._running: dict[str, float] = {}

    def start_operation(self, operation_id: str) -> None:
        """Start (or restart) the clock for ``operation_id``."""
        with self._lock:
            self._running[operation_id] = time.monotonic()
        logger.debug("Started profiling operation: %s", operation_id)

    def end_operation(
        self, operation_id: str, success_count: int, error_count: int
    ) -> BenchmarkResult:
        """Stop the clock for ``operation_id`` and record its result."""
        end = time.monotonic()
        with self._lock:
            start = self._running.pop(operation_id, None)
        if start is None:
            raise ProfilingError(f"Operation {operation_id} not found")
        duration_ms = int((end - start) * 1000)
        result = BenchmarkResult.from_counts(operation_id, duration_ms, success_count, error_count)
        with self._lock:
            self._benchmarks[operation_id] = result
        logger.info(
            "Operation %s completed: %dms, %d/%d success/error, %.2f ops/sec",
            operation_id,
            duration_ms,
            success_count,
            error_count,
            result.throughput_ops_per_sec,
        )
        return result

    def benchmarks(self) -> dict[str, BenchmarkResult]:
        """A copy of every recorded result, by operation id."""
        with self._lock:
            return dict(self._benchmarks)

    def get_benchmark(self, operation_id: str) -> BenchmarkResult | None:
        with self._lock:
            return self._benchmarks.get(operation_id)

    def clear_benchmarks(self) -> None:
        with self._lock:
            self._benchmarks.clear()
        logger.info("All benchmarks cleared")

    def performance_summary(self) -> PerformanceSummary:
        """Totals over every recorded result."""
        with self._lock:
            results = list(self._benchmarks.values())
        duration = sum(r.duration_ms for r in results)
        successes = sum(r.success_count for r in results)
        errors = sum(r.error_count for r in results)
        attempts = successes + errors
        return PerformanceSummary(
            total_operations=len(results),
            total_duration_ms=duration,
            total_successes=successes,
            total_errors=errors,
            average_throughput_ops_per_sec=_throughput(successes, duration),
            error_rate_percent=errors / attempts * 100.0 if attempts else 0.0,
        )


async def benchmark_operation(
    profiler: PerformanceProfiler,
    operation_name: str,
    operation: Callable[[], Union[int, Awaitable[int]]],
) -> tuple[Union[int, Exception], BenchmarkResult]:
    """Time one call of ``operation``.

    The operation returns its count of successes; if it raises, the run counts as one
    error and the exception is returned in place of the count.
    """
    operation_id = f"{operation_name}-{uuid.uuid4()}"
    profiler.start_operation(operation_id)
    outcome: Union[int, Exception]
    try:
        value: Any = operation()
        if inspect.isawaitable(value):
            value = await value
        outcome = int(value)
        counts = (outcome, 0)
    except Exception as exc:  # the failure itself is what gets reported
        outcome = exc
        counts = (0, 1)
    result = profiler.end_operation(operation_id, *counts)
    return outcome, result


async def benchmark_p2p_broadcast(
    profiler: PerformanceProfiler, p2p_manager: P2PManager, message_count: int
) -> list[BenchmarkResult]:
    """Broadcast ``message_count`` messages to all peers; a send reaching nobody is an error."""
    if message_count < 0:
        raise ValueError("message_count must not be negative")
    operation_id = f"p2p-broadcast-{uuid.uuid4()}"
    profiler.start_operation(operation_id)
    started = time.monotonic()
    successes = errors = 0
    for index in range(message_count):
        payload = f"Test message {index}".encode()
        try:
            outcome = await p2p_manager.broadcast_message(index, payload, [], BROADCAST_TTL)
        except P2PError:
            errors += 1
            continue
        if outcome.recipients_count > 0:
            successes += 1
        else:
            errors += 1
    elapsed = time.monotonic() - started
    result = profiler.end_operation(operation_id, successes, errors)
    logger.info(
        "P2P broadcast benchmark: %d messages in %.3fs, %d/%d success/error",
        message_count,
        elapsed,
        successes,
        errors,
    )
    return [result]


def _memory_usage_mb() -> float:
    try:
        with open("/proc/self/statm", encoding="ascii") as statm:
            pages = int(statm.read().split()[1])
        return pages * os.sysconf("SC_PAGE_SIZE") / (1024 * 1024)
    except (OSError, ValueError, IndexError, AttributeError):
        pass
    try:
        import resource
    except ImportError:
        return 0.0
    return resource.getrusage(resource.RUSAGE_SELF).ru_maxrss / 1024


def get_cpu_metrics() -> CpuMetrics:
    """CPU times, average CPU use since start-up, and resident memory of this process."""
    times = os.times()
    wall = time.monotonic() - _CLOCK_START
    cpu = time.process_time() - _CPU_START
    return CpuMetrics(
        process_id=os.getpid(),
        cpu_usage_percent=cpu / wall * 100.0 if wall > 0 else 0.0,
        user_time_ms=int(times.user * 1000),
        system_time_ms=int(times.system * 1000),
        memory_usage_mb=_memory_usage_mb(),
    )


def compare_performance(
    before: PerformanceSummary, after: PerformanceSummary
) -> PerformanceComparison:
    """Relative throughput gain and absolute error-rate change from ``before`` to ``after``."""
    base = before.average_throughput_ops_per_sec
    improvement = (
        (after.average_throughput_ops_per_sec - base) / base * 100.0 if base > 0 else 0.0
    )
    return PerformanceComparison(
        throughput_improvement_percent=improvement,
        error_rate_change_percent=after.error_rate_percent - before.error_rate_percent,
        before_throughput=base,
        after_throughput=after.average_throughput_ops_per_sec,
        before_error_rate=before.error_rate_percent,
        after_error_rate=after.error_rate_percent,
    )