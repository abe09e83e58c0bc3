"""
Monitoring and metrics collection for the crawler system.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import start_http_server


CIRCUIT_STATE_VALUES = {'closed': 0, 'half_open': 1, 'open': 2}


class CrawlerMonitor:
    """
    High-level monitoring interface for the crawler.

    Each monitor owns its own CollectorRegistry so several crawlers (or
    tests) can live in one process without metric name collisions.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.logger = logging.getLogger(__name__)
        self.registry = registry or CollectorRegistry()
        self.start_time = time.time()

        self.pages_crawled = Counter(
            'crawler_pages_crawled_total',
            'Total number of pages crawled',
            registry=self.registry
        )
        self.errors = Counter(
            'crawler_errors_total',
            'Total number of crawl errors',
            ['error_type'],
            registry=self.registry
        )
        self.fetch_seconds = Histogram(
            'crawler_fetch_seconds',
            'Time spent fetching a page',
            registry=self.registry
        )
        self.jobs = Counter(
            'crawler_jobs_total',
            'Distributed jobs by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.retries = Counter(
            'crawler_retries_total',
            'Retry attempts by layer',
            ['layer'],
            registry=self.registry
        )
        self.circuit_state = Gauge(
            'crawler_circuit_state',
            'Circuit breaker state (0=closed, 1=half_open, 2=open)',
            registry=self.registry
        )
        self.queue_size = Gauge(
            'crawler_queue_size',
            'Number of jobs waiting in the coordination queues',
            registry=self.registry
        )
        self.active_workers = Gauge(
            'crawler_active_workers',
            'Number of active crawler workers',
            registry=self.registry
        )

        self._counts: Dict[str, float] = {}

    def start_http_server(self, port: int = 8000):
        """Expose the metrics registry over HTTP."""
        start_http_server(port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {port}")

    def _bump(self, name: str, amount: float = 1):
        self._counts[name] = self._counts.get(name, 0) + amount

    def record_url_crawled(self, url: str, fetch_time: float):
        """Record a successfully crawled page."""
        self.pages_crawled.inc()
        self.fetch_seconds.observe(fetch_time)
        self._bump('pages_crawled')

    def record_error(self, error_type: str):
        """Record an error event."""
        self.errors.labels(error_type=error_type).inc()
        self._bump(f'errors.{error_type}')

    def record_job_outcome(self, outcome: str):
        """Record the terminal or intermediate outcome of a distributed job."""
        self.jobs.labels(outcome=outcome).inc()
        self._bump(f'jobs.{outcome}')

    def record_retry(self, layer: str):
        self.retries.labels(layer=layer).inc()
        self._bump(f'retries.{layer}')

    def record_circuit_state(self, state: str):
        self.circuit_state.set(CIRCUIT_STATE_VALUES.get(state, 0))

    def update_queue_size(self, size: int):
        """Update the queue size metric."""
        self.queue_size.set(size)

    def update_active_workers(self, count: int):
        """Update the active workers count."""
        self.active_workers.set(count)

    def export(self) -> bytes:
        """Render the registry in the Prometheus text format."""
        return generate_latest(self.registry)

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all counters recorded so far."""
        runtime = time.time() - self.start_time
        pages = self._counts.get('pages_crawled', 0)

        return {
            'runtime_seconds': runtime,
            'metrics': dict(self._counts),
            'rates': {
                'pages_per_minute': pages / (runtime / 60) if runtime > 0 else 0,
            }
        }
