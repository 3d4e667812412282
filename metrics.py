"""Metrics and monitoring for the analytics API."""
import time
from collections import defaultdict
from typing import Dict
import logging

logger = logging.getLogger(__name__)

MAX_DURATION_SAMPLES = 1000


class MetricsCollector:
    """
    Collects in-process metrics for the analytics endpoints.
    Tracks request counts, status codes, errors and request durations.
    """

    def __init__(self):
        """Initialize metrics collector."""
        # Request counters
        self.requests_by_endpoint = defaultdict(int)  # {endpoint: count}
        self.requests_by_status = defaultdict(int)  # {status_code: count}

        # Error counters
        self.errors_by_type = defaultdict(int)  # {error_type: count}
        self.errors_by_endpoint = defaultdict(int)  # {endpoint: count}

        # Timing
        self.durations = []  # Last request durations (ms)
        self.durations_by_endpoint = defaultdict(list)

        # Start time
        self.start_time = time.time()

    def record_request(self, endpoint: str, status_code: int, duration_ms: float):
        """Record a completed request."""
        self.requests_by_endpoint[endpoint] += 1
        self.requests_by_status[str(status_code)] += 1

        self.durations.append(duration_ms)
        # Keep only last 1000 durations
        if len(self.durations) > MAX_DURATION_SAMPLES:
            self.durations = self.durations[-MAX_DURATION_SAMPLES:]

        samples = self.durations_by_endpoint[endpoint]
        samples.append(duration_ms)
        if len(samples) > MAX_DURATION_SAMPLES:
            del samples[:-MAX_DURATION_SAMPLES]

    def record_error(self, endpoint: str, error_type: str):
        """Record a failed request."""
        self.errors_by_type[error_type] += 1
        self.errors_by_endpoint[endpoint] += 1
        logger.debug(f"Error on {endpoint}: {error_type}")

    def get_stats(self) -> Dict:
        """Get overall statistics."""
        avg_duration = (
            sum(self.durations) / len(self.durations)
            if self.durations else 0
        )

        return {
            "uptime_seconds": int(time.time() - self.start_time),
            "requests": {
                "total": sum(self.requests_by_endpoint.values()),
                "by_endpoint": dict(self.requests_by_endpoint),
                "by_status": dict(self.requests_by_status),
            },
            "errors": {
                "total": sum(self.errors_by_type.values()),
                "by_type": dict(self.errors_by_type),
                "by_endpoint": dict(self.errors_by_endpoint),
            },
            "processing": {
                "avg_time_ms": round(avg_duration, 2),
                "samples": len(self.durations),
                "by_endpoint": {
                    endpoint: round(sum(samples) / len(samples), 2)
                    for endpoint, samples in self.durations_by_endpoint.items()
                    if samples
                },
            },
        }

    def reset(self):
        """Reset all metrics."""
        self.__init__()


# Global metrics collector instance
metrics = MetricsCollector()
