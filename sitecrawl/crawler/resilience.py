"""
Resilience layer around the breadth-first frontier.

Provides a circuit breaker, exponential-backoff retry of whole crawl runs,
a ladder of progressively safer fallback configurations and periodic
health probes.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import urlsplit

from ..errors import CircuitOpenError, ConfigurationError, FetchError
from ..utils.config import ResilienceConfig
from ..utils.monitoring import CrawlerMonitor
from ..models import CrawlConfiguration, CrawlResult
from .frontier import BreadthFirstFrontier


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-failure circuit breaker.

    CLOSED -> OPEN once failures reach the threshold; OPEN -> HALF_OPEN once
    the recovery timeout has elapsed (evaluated lazily, on observation);
    HALF_OPEN admits exactly one trial, whose outcome closes or re-opens it.
    No I/O happens here, so the state machine can be driven with a fake clock.
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0,
                 clock: Callable[[], float] = time.monotonic):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self.logger = logging.getLogger(__name__)

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

    @property
    def state(self) -> CircuitState:
        if self._state is CircuitState.OPEN and self._opened_at is not None and \
                self._clock() - self._opened_at >= self.recovery_timeout:
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
            self.logger.info("Circuit breaker moved to half-open state")
        return self._state

    def allow_request(self) -> bool:
        """Return True if a new attempt may start, consuming the half-open trial."""
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_success(self):
        if self._state is CircuitState.HALF_OPEN:
            self.logger.info("Circuit breaker closed after successful trial")
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False

    def release_trial(self):
        """Give back an unfinished half-open trial so the next caller may run it."""
        if self._state is CircuitState.HALF_OPEN and self._trial_in_flight:
            self._trial_in_flight = False
            self.logger.info("Half-open trial abandoned, circuit remains half-open")

    def record_failure(self):
        self.failure_count += 1

        if self._state is CircuitState.HALF_OPEN:
            self._open()
        elif self._state is CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
            self._open()

    def _open(self):
        self._state = CircuitState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        self.logger.warning(
            f"Circuit breaker opened after {self.failure_count} failures "
            f"(threshold {self.failure_threshold})"
        )

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self._opened_at = None
        self._trial_in_flight = False


def calculate_retry_delay(attempt: int, base_delay: float, multiplier: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (0-based): base * multiplier^attempt, capped."""
    return min(base_delay * multiplier ** attempt, max_delay)


@dataclass
class HealthCheckResult:
    """Outcome of a lightweight health probe."""
    is_healthy: bool
    response_time: float
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass
class CrawlAttempt:
    """One failed crawl recorded for diagnostics."""
    url: str
    attempt: int
    success: bool
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


NETWORK_ERROR_PATTERNS = ('net::', 'timeout', 'connection', 'dns', 'socket')

BACKUP_USER_AGENTS = [
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36',
    'Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36',
    'Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36',
]


class ResilientCrawler:
    """
    Wraps BreadthFirstFrontier.crawl with a circuit breaker, retry with
    exponential backoff, fallback configurations and health checks.
    """

    MAX_ATTEMPT_HISTORY = 100

    def __init__(self, frontier: BreadthFirstFrontier, config: Optional[ResilienceConfig] = None,
                 monitor: Optional[CrawlerMonitor] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.frontier = frontier
        self.config = config or ResilienceConfig()
        self.monitor = monitor or frontier.monitor
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep

        self.circuit_breaker = CircuitBreaker(
            failure_threshold=self.config.circuit_breaker.failure_threshold,
            recovery_timeout=self.config.circuit_breaker.recovery_timeout,
            clock=clock
        )
        self.problematic_domains = set()
        self.crawl_attempts: List[CrawlAttempt] = []
        self.last_start_url: Optional[str] = None
        self._health_task: Optional[asyncio.Task] = None

    async def __aenter__(self):
        if self.config.health_check.enabled:
            self.start_health_checks()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def crawl(self, config: CrawlConfiguration) -> CrawlResult:
        """
        Run a crawl through the circuit breaker with retry.

        Raises:
            ConfigurationError: invalid configuration
            CircuitOpenError: the breaker is open (the frontier is not invoked)
            FetchError: the domain is marked problematic, or the last attempt's error
        """
        return await self._guarded_crawl(config, check_problematic=True)

    async def crawl_with_fallback(self, config: CrawlConfiguration) -> CrawlResult:
        """Try progressively safer configurations until one succeeds."""
        config.validate()
        last_error: Optional[Exception] = None

        for name, strategy_config in self.generate_fallback_strategies(config):
            try:
                self.logger.info(f"Attempting crawl with strategy '{name}'")
                result = await self._guarded_crawl(strategy_config, check_problematic=False)
                self.logger.info(f"Fallback strategy '{name}' succeeded")
                return result

            except CircuitOpenError:
                raise

            except Exception as e:
                last_error = e
                self.logger.warning(f"Fallback strategy '{name}' failed: {e}")

                if self.is_network_error(e):
                    domain = urlsplit(config.start_url).hostname
                    if domain:
                        self.problematic_domains.add(domain)

        raise last_error or FetchError(config.start_url, "All fallback strategies failed")

    async def health_check(self, url: Optional[str] = None) -> HealthCheckResult:
        """Probe a URL with its own timeout; never raises."""
        test_url = url or self.last_start_url
        start_time = time.monotonic()

        if not test_url:
            return HealthCheckResult(is_healthy=False, response_time=0.0, error="No URL to probe")

        try:
            await asyncio.wait_for(self.frontier.fetcher.fetch(test_url),
                                   timeout=self.config.health_check.timeout)
            return HealthCheckResult(is_healthy=True, response_time=time.monotonic() - start_time)

        except asyncio.TimeoutError:
            return HealthCheckResult(
                is_healthy=False,
                response_time=time.monotonic() - start_time,
                error=f"Health check timeout after {self.config.health_check.timeout}s"
            )

        except Exception as e:
            return HealthCheckResult(
                is_healthy=False,
                response_time=time.monotonic() - start_time,
                error=str(e)
            )

    def start_health_checks(self, url: Optional[str] = None):
        """Start the periodic health probe on the running loop."""
        if self._health_task and not self._health_task.done():
            return
        self._health_task = asyncio.create_task(self._health_check_loop(url))

    async def close(self):
        """Cancel the health check timer."""
        if self._health_task:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

    def get_circuit_breaker_state(self) -> CircuitState:
        return self.circuit_breaker.state

    def get_failure_count(self) -> int:
        return self.circuit_breaker.failure_count

    def get_problematic_domains(self) -> List[str]:
        return sorted(self.problematic_domains)

    def get_crawl_attempts(self) -> List[CrawlAttempt]:
        return list(self.crawl_attempts)

    def reset_circuit_breaker(self):
        self.circuit_breaker.reset()
        self.monitor.record_circuit_state(CircuitState.CLOSED.value)
        self.logger.info("Circuit breaker reset manually")

    def clear_problematic_domains(self):
        self.problematic_domains.clear()
        self.logger.info("Problematic domains list cleared")

    def is_retryable_error(self, error: Exception) -> bool:
        message = str(error).lower()
        return any(pattern.lower() in message for pattern in self.config.retry.retryable_errors)

    @staticmethod
    def is_network_error(error: Exception) -> bool:
        message = str(error).lower()
        return any(pattern in message for pattern in NETWORK_ERROR_PATTERNS)

    def calculate_retry_delay(self, attempt: int) -> float:
        retry = self.config.retry
        return calculate_retry_delay(attempt, retry.base_delay, retry.backoff_multiplier, retry.max_delay)

    def generate_fallback_strategies(self, config: CrawlConfiguration) -> List[Tuple[str, CrawlConfiguration]]:
        """Ordered ladder: original, reduced parallelism, backup user agent, conservative."""
        strategies = [
            ('original', config),
            ('reduced-parallelism', config.with_overrides(
                parallel_workers=1,
                crawl_delay=max(config.crawl_delay, 2.0)
            )),
        ]

        if self.config.fallback.use_backup_user_agent:
            strategies.append(('backup-user-agent', config.with_overrides(
                user_agent=random.choice(BACKUP_USER_AGENTS),
                crawl_delay=max(config.crawl_delay, 1.5)
            )))

        strategies.append(('conservative', config.with_overrides(
            max_depth=min(config.max_depth, 2),
            max_pages=min(config.max_pages, 20),
            crawl_delay=max(config.crawl_delay, 3.0),
            parallel_workers=1
        )))

        return strategies

    async def _guarded_crawl(self, config: CrawlConfiguration, check_problematic: bool) -> CrawlResult:
        config.validate()
        self.last_start_url = config.start_url

        if not self.circuit_breaker.allow_request():
            self.monitor.record_circuit_state(self.circuit_breaker.state.value)
            raise CircuitOpenError("Circuit breaker is open - crawling temporarily disabled")

        self.logger.info(
            f"Starting resilient crawl of {config.start_url} "
            f"(circuit {self.circuit_breaker.state.value})"
        )

        try:
            prepared = self._prepare_config(config, check_problematic)
            result = await self._execute_with_retry(prepared)
        except asyncio.CancelledError:
            self.circuit_breaker.release_trial()
            raise
        except Exception as e:
            self._record_failure(config.start_url, e)
            raise

        self.circuit_breaker.record_success()
        self.monitor.record_circuit_state(CircuitState.CLOSED.value)
        return result

    def _prepare_config(self, config: CrawlConfiguration, check_problematic: bool) -> CrawlConfiguration:
        fallback = self.config.fallback

        if check_problematic and fallback.skip_problematic_domains:
            domain = urlsplit(config.start_url).hostname
            if domain in self.problematic_domains:
                raise FetchError(config.start_url, f"Domain {domain} is in the problematic domains list")

        if fallback.reduce_parallelism and self.circuit_breaker.failure_count > 0:
            workers = config.parallel_workers or BreadthFirstFrontier.DEFAULT_CONCURRENCY
            config = config.with_overrides(parallel_workers=max(1, workers // 2))

        return config

    async def _execute_with_retry(self, config: CrawlConfiguration) -> CrawlResult:
        retry = self.config.retry
        last_error: Optional[Exception] = None

        for attempt in range(retry.max_retries + 1):
            try:
                result = await self._run_once(config)
                if attempt > 0:
                    self.logger.info(f"Crawl succeeded after {attempt} retries")
                return result

            except ConfigurationError:
                raise

            except Exception as e:
                last_error = e

                if attempt == retry.max_retries:
                    self.logger.error(f"Crawl failed after {attempt + 1} attempts: {e}")
                    break

                if not self.is_retryable_error(e):
                    self.logger.warning(f"Non-retryable error encountered: {e}")
                    break

                delay = self.calculate_retry_delay(attempt)
                self.logger.warning(f"Crawl attempt {attempt + 1} failed, retrying in {delay:.2f}s: {e}")
                self.monitor.record_retry('crawl')
                await self._sleep(delay)

        raise last_error

    async def _run_once(self, config: CrawlConfiguration) -> CrawlResult:
        """One frontier run; a run that could not visit even the seed counts as failed."""
        result = await self.frontier.crawl(config)
        if result.pages_visited == 0 and result.errors:
            first = result.errors[0]
            raise FetchError(first.url, first.error)
        return result

    def _record_failure(self, url: str, error: Exception):
        self.circuit_breaker.record_failure()
        self.monitor.record_circuit_state(self.circuit_breaker.state.value)

        self.crawl_attempts.append(CrawlAttempt(
            url=url,
            attempt=self.circuit_breaker.failure_count,
            success=False,
            error=str(error)
        ))
        if len(self.crawl_attempts) > self.MAX_ATTEMPT_HISTORY:
            self.crawl_attempts = self.crawl_attempts[-50:]

    async def _health_check_loop(self, url: Optional[str]):
        while True:
            await asyncio.sleep(self.config.health_check.interval)
            result = await self.health_check(url)
            if result.is_healthy:
                self.logger.debug(f"Health check passed in {result.response_time:.2f}s")
            else:
                self.logger.warning(f"Health check failed: {result.error}")
