"""Traffic counters for the node, with a Prometheus text exposition."""

from __future__ import annotations

import os
import threading
import time

_PROMETHEUS_TEMPLATE = """\
# HELP axionvera_uptime_seconds Node uptime in seconds
# TYPE axionvera_uptime_seconds counter
axionvera_uptime_seconds {uptime}

# HELP axionvera_http_requests_total Total number of HTTP requests
# TYPE axionvera_http_requests_total counter
axionvera_http_requests_total {requests}

# HELP axionvera_active_connections Current number of active connections
# TYPE axionvera_active_connections gauge
axionvera_active_connections {connections}

# HELP axionvera_errors_total Total number of errors
# TYPE axionvera_errors_total counter
axionvera_errors_total {errors}

# HELP axionvera_bytes_sent_total Total bytes sent
# TYPE axionvera_bytes_sent_total counter
axionvera_bytes_sent_total {sent}

# HELP axionvera_bytes_received_total Total bytes received
# TYPE axionvera_bytes_received_total counter
axionvera_bytes_received_total {received}

# HELP process_memory_bytes Current memory usage in bytes
# TYPE process_memory_bytes gauge
process_memory_bytes {memory}

# HELP request_duration_seconds Request duration histogram
# TYPE request_duration_seconds histogram
"""


def _process_memory_bytes() -> int:
    """Resident memory of this process in bytes, or 0 where it cannot be read."""
    try:
        with open("/proc/self/statm", encoding="ascii") as statm:
            resident_pages = int(statm.read().split()[1])
        return resident_pages * os.sysconf("SC_PAGE_SIZE")
    except (OSError, ValueError, IndexError, AttributeError):
        return 0


def _non_negative(name: str, value: int) -> int:
    value = int(value)
    if value < 0:
        raise ValueError(f"{name} must not be negative, got {value}")
    return value


class MetricsCollector:
    """Thread-safe collector of request, connection, error and byte counts."""

    def __init__(self) -> None:
        self._started = time.monotonic()
        self._lock = threading.Lock()
        self._total_requests = 0
        self._active_connections = 0
        self._total_errors = 0
        self._bytes_sent = 0
        self._bytes_received = 0
        self._durations: list[float] = []

    def increment_requests(self) -> None:
        with self._lock:
            self._total_requests += 1

    def set_active_connections(self, count: int) -> None:
        count = _non_negative("count", count)
        with self._lock:
            self._active_connections = count

    def increment_errors(self) -> None:
        with self._lock:
            self._total_errors += 1

    def add_bytes_sent(self, count: int) -> None:
        count = _non_negative("count", count)
        with self._lock:
            self._bytes_sent += count

    def add_bytes_received(self, count: int) -> None:
        count = _non_negative("count", count)
        with self._lock:
            self._bytes_received += count

    def record_request_duration(self, duration_secs: float) -> None:
        with self._lock:
            self._durations.append(float(duration_secs))

    def uptime_secs(self) -> int:
        """Whole seconds since the collector was created."""
        return int(time.monotonic() - self._started)

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def active_connections(self) -> int:
        return self._active_connections

    @property
    def total_errors(self) -> int:
        return self._total_errors

    @property
    def bytes_sent(self) -> int:
        return self._bytes_sent

    @property
    def bytes_received(self) -> int:
        return self._bytes_received

    @property
    def request_durations(self) -> tuple[float, ...]:
        """Every recorded request duration, in recording order."""
        with self._lock:
            return tuple(self._durations)

    def prometheus_metrics(self) -> str:
        """All metrics in the Prometheus text exposition format."""
        with self._lock:
            values = {
                "requests": self._total_requests,
                "connections": self._active_connections,
                "errors": self._total_errors,
                "sent": self._bytes_sent,
                "received": self._bytes_received,
            }
        return _PROMETHEUS_TEMPLATE.format(
            uptime=self.uptime_secs(),
            memory=_process_memory_bytes(),
            **values,
        )