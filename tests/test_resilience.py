"""Tests for the circuit breaker and the resilient crawler."""

import asyncio

import pytest

from sitecrawl.crawler.resilience import (
    CircuitBreaker, CircuitState, ResilientCrawler, calculate_retry_delay,
)
from sitecrawl.errors import CircuitOpenError, ConfigurationError, FetchError
from sitecrawl.models import CrawlConfiguration, CrawlError, CrawlResult
from sitecrawl.utils.config import (
    CircuitBreakerConfig, FallbackConfig, HealthCheckConfig, ResilienceConfig, RetryConfig,
)

from .conftest import FakePageFetcher, ScriptedFrontier


START_URL = "https://a.test"


class RecordingSleep:
    """Replaces asyncio.sleep and remembers the requested delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def timeout_error():
    return FetchError(START_URL, "Request timeout")


def make_config(failure_threshold=5, recovery_timeout=60, max_retries=3, **fallback):
    return ResilienceConfig(
        circuit_breaker=CircuitBreakerConfig(failure_threshold=failure_threshold,
                                             recovery_timeout=recovery_timeout),
        retry=RetryConfig(max_retries=max_retries, base_delay=1.0, max_delay=10.0, backoff_multiplier=2.0),
        health_check=HealthCheckConfig(enabled=False, interval=0.01, timeout=0.05),
        fallback=FallbackConfig(**fallback)
    )


@pytest.fixture
def config():
    return CrawlConfiguration(start_url=START_URL, crawl_delay=0)


@pytest.fixture
def sleep():
    return RecordingSleep()


class TestBackoff:

    def test_exponential_delays_are_capped(self):
        delays = [calculate_retry_delay(attempt, 1000, 2, 10000) for attempt in range(5)]
        assert delays == [1000, 2000, 4000, 8000, 10000]

    def test_crawler_uses_retry_config(self):
        crawler = ResilientCrawler(ScriptedFrontier(), make_config())
        assert [crawler.calculate_retry_delay(attempt) for attempt in range(5)] == [1, 2, 4, 8, 10]


class TestCircuitBreaker:
    """Tests for the CircuitBreaker state machine."""

    def test_opens_at_threshold(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=30, clock=fake_clock)

        breaker.record_failure()
        breaker.record_failure()
        assert breaker.state is CircuitState.CLOSED
        assert breaker.allow_request()

        breaker.record_failure()
        assert breaker.state is CircuitState.OPEN
        assert not breaker.allow_request()

    def test_success_resets_consecutive_count(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=2, clock=fake_clock)

        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 1

    def test_half_open_admits_exactly_one_trial(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=fake_clock)
        breaker.record_failure()

        fake_clock.advance(29)
        assert breaker.state is CircuitState.OPEN

        fake_clock.advance(1)
        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_released_trial_can_be_taken_again(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(30)

        assert breaker.allow_request()
        breaker.release_trial()

        assert breaker.state is CircuitState.HALF_OPEN
        assert breaker.allow_request()
        assert not breaker.allow_request()

    def test_trial_success_closes(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(30)
        assert breaker.allow_request()

        breaker.record_success()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.allow_request()

    def test_trial_failure_reopens(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=30, clock=fake_clock)
        breaker.record_failure()
        fake_clock.advance(30)
        assert breaker.allow_request()

        breaker.record_failure()

        assert breaker.state is CircuitState.OPEN
        fake_clock.advance(10)
        assert not breaker.allow_request()

    def test_reset(self, fake_clock):
        breaker = CircuitBreaker(failure_threshold=1, clock=fake_clock)
        breaker.record_failure()

        breaker.reset()

        assert breaker.state is CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestResilientCrawl:
    """Tests for ResilientCrawler.crawl."""

    @pytest.mark.asyncio
    async def test_retries_retryable_errors_with_backoff(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error(), timeout_error()])
        crawler = ResilientCrawler(frontier, make_config(), clock=fake_clock, sleep=sleep)

        result = await crawler.crawl(config)

        assert result.urls == [START_URL]
        assert len(frontier.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert crawler.get_circuit_breaker_state() is CircuitState.CLOSED
        assert crawler.get_failure_count() == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error() for _ in range(5)])
        crawler = ResilientCrawler(frontier, make_config(max_retries=2), clock=fake_clock, sleep=sleep)

        with pytest.raises(FetchError, match="timeout"):
            await crawler.crawl(config)

        assert len(frontier.calls) == 3
        assert sleep.delays == [1.0, 2.0]
        assert crawler.get_failure_count() == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_aborts_immediately(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([FetchError(START_URL, "HTTP 404", status_code=404)])
        crawler = ResilientCrawler(frontier, make_config(), clock=fake_clock, sleep=sleep)

        with pytest.raises(FetchError, match="HTTP 404"):
            await crawler.crawl(config)

        assert len(frontier.calls) == 1
        assert sleep.delays == []
        assert crawler.get_failure_count() == 1

    @pytest.mark.asyncio
    async def test_retryable_patterns_are_case_insensitive(self):
        crawler = ResilientCrawler(ScriptedFrontier(), make_config())

        assert crawler.is_retryable_error(FetchError(START_URL, "ECONNRESET while reading"))
        assert crawler.is_retryable_error(FetchError(START_URL, "Request TIMEOUT"))
        assert not crawler.is_retryable_error(FetchError(START_URL, "HTTP 500"))

    @pytest.mark.asyncio
    async def test_seed_failure_counts_as_failed_attempt(self, config, sleep, fake_clock):
        failed_run = CrawlResult(pages_visited=0, errors=[CrawlError(url=START_URL, error="Request timeout")])
        frontier = ScriptedFrontier([failed_run])
        crawler = ResilientCrawler(frontier, make_config(), clock=fake_clock, sleep=sleep)

        result = await crawler.crawl(config)

        assert result.pages_visited == 1
        assert len(frontier.calls) == 2
        assert sleep.delays == [1.0]

    @pytest.mark.asyncio
    async def test_invalid_configuration_is_not_a_failure(self, config, fake_clock):
        frontier = ScriptedFrontier()
        crawler = ResilientCrawler(frontier, make_config(), clock=fake_clock)

        with pytest.raises(ConfigurationError):
            await crawler.crawl(config.with_overrides(max_depth=-1))

        assert frontier.calls == []
        assert crawler.get_failure_count() == 0

    @pytest.mark.asyncio
    async def test_open_circuit_rejects_without_crawling(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error(), timeout_error()])
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=2, max_retries=0),
                                   clock=fake_clock, sleep=sleep)

        for _ in range(2):
            with pytest.raises(FetchError):
                await crawler.crawl(config)

        assert crawler.get_circuit_breaker_state() is CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await crawler.crawl(config)
        assert len(frontier.calls) == 2

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error()])
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1, recovery_timeout=30, max_retries=0),
                                   clock=fake_clock, sleep=sleep)

        with pytest.raises(FetchError):
            await crawler.crawl(config)
        with pytest.raises(CircuitOpenError):
            await crawler.crawl(config)

        fake_clock.advance(30)
        assert crawler.get_circuit_breaker_state() is CircuitState.HALF_OPEN

        result = await crawler.crawl(config)

        assert result.urls == [START_URL]
        assert crawler.get_circuit_breaker_state() is CircuitState.CLOSED
        assert crawler.get_failure_count() == 0

    @pytest.mark.asyncio
    async def test_half_open_allows_single_concurrent_trial(self, config, fake_clock):
        release = asyncio.Event()

        class BlockingFrontier(ScriptedFrontier):
            async def crawl(self, crawl_config):
                self.calls.append(crawl_config)
                await release.wait()
                return CrawlResult(pages_visited=1, urls=[crawl_config.start_url])

        frontier = BlockingFrontier()
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1, recovery_timeout=30),
                                   clock=fake_clock)
        crawler.circuit_breaker.record_failure()
        fake_clock.advance(30)

        trial = asyncio.create_task(crawler.crawl(config))
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await crawler.crawl(config)

        release.set()
        await trial
        assert len(frontier.calls) == 1
        assert crawler.get_circuit_breaker_state() is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_trial_frees_half_open_slot(self, config, fake_clock):
        class HangingFrontier(ScriptedFrontier):
            async def crawl(self, crawl_config):
                self.calls.append(crawl_config)
                if len(self.calls) == 1:
                    await asyncio.Event().wait()
                return CrawlResult(pages_visited=1, urls=[crawl_config.start_url])

        frontier = HangingFrontier()
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1, recovery_timeout=30),
                                   clock=fake_clock)
        crawler.circuit_breaker.record_failure()
        fake_clock.advance(30)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(crawler.crawl(config), 0.05)

        assert crawler.get_circuit_breaker_state() is CircuitState.HALF_OPEN

        result = await crawler.crawl(config)

        assert result.urls == [START_URL]
        assert len(frontier.calls) == 2
        assert crawler.get_circuit_breaker_state() is CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_parallelism_halved_after_failures(self, sleep, fake_clock):
        config = CrawlConfiguration(start_url=START_URL, crawl_delay=0, parallel_workers=8)
        frontier = ScriptedFrontier([FetchError(START_URL, "HTTP 500")])
        crawler = ResilientCrawler(frontier, make_config(), clock=fake_clock, sleep=sleep)

        with pytest.raises(FetchError):
            await crawler.crawl(config)
        await crawler.crawl(config)

        assert frontier.calls[0].parallel_workers == 8
        assert frontier.calls[1].parallel_workers == 4

    @pytest.mark.asyncio
    async def test_attempt_history_is_bounded(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([FetchError(START_URL, f"HTTP 500 #{i}") for i in range(101)])
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1000, reduce_parallelism=False),
                                   clock=fake_clock, sleep=sleep)

        for _ in range(101):
            with pytest.raises(FetchError):
                await crawler.crawl(config)

        attempts = crawler.get_crawl_attempts()
        assert len(attempts) == 50
        assert attempts[-1].error == "HTTP 500 #100"
        assert not attempts[-1].success

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error()])
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1, max_retries=0),
                                   clock=fake_clock, sleep=sleep)
        with pytest.raises(FetchError):
            await crawler.crawl(config)

        crawler.reset_circuit_breaker()

        assert crawler.get_circuit_breaker_state() is CircuitState.CLOSED
        result = await crawler.crawl(config)
        assert result.pages_visited == 1


class TestFallback:
    """Tests for the fallback ladder."""

    def test_strategy_ladder(self, config):
        crawler = ResilientCrawler(ScriptedFrontier(), make_config())

        strategies = crawler.generate_fallback_strategies(config.with_overrides(max_depth=5, max_pages=500))
        names = [name for name, _ in strategies]

        assert names == ['original', 'reduced-parallelism', 'backup-user-agent', 'conservative']
        reduced = strategies[1][1]
        assert reduced.parallel_workers == 1 and reduced.crawl_delay >= 2
        backup = strategies[2][1]
        assert backup.user_agent != config.user_agent and backup.crawl_delay >= 1.5
        conservative = strategies[3][1]
        assert conservative.max_depth == 2
        assert conservative.max_pages == 20
        assert conservative.crawl_delay >= 3
        assert conservative.parallel_workers == 1

    def test_backup_user_agent_can_be_disabled(self, config):
        crawler = ResilientCrawler(ScriptedFrontier(), make_config(use_backup_user_agent=False))

        names = [name for name, _ in crawler.generate_fallback_strategies(config)]

        assert names == ['original', 'reduced-parallelism', 'conservative']

    @pytest.mark.asyncio
    async def test_falls_back_until_success(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([FetchError(START_URL, "Client error: connection refused")])
        crawler = ResilientCrawler(frontier, make_config(max_retries=0), clock=fake_clock, sleep=sleep)

        result = await crawler.crawl_with_fallback(config)

        assert result.urls == [START_URL]
        assert len(frontier.calls) == 2
        assert frontier.calls[1].parallel_workers == 1
        assert frontier.calls[1].crawl_delay >= 2
        assert crawler.get_problematic_domains() == ["a.test"]
        assert crawler.get_failure_count() == 0

    @pytest.mark.asyncio
    async def test_problematic_domain_refused_by_direct_crawl(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([FetchError(START_URL, "dns lookup failed")])
        crawler = ResilientCrawler(frontier, make_config(max_retries=0), clock=fake_clock, sleep=sleep)
        await crawler.crawl_with_fallback(config)
        calls = len(frontier.calls)

        with pytest.raises(FetchError, match="problematic"):
            await crawler.crawl(config)
        assert len(frontier.calls) == calls

        crawler.clear_problematic_domains()
        result = await crawler.crawl(config)
        assert result.pages_visited == 1

    @pytest.mark.asyncio
    async def test_all_strategies_failing_raises_last_error(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([FetchError(START_URL, f"HTTP 500 ({i})") for i in range(4)])
        crawler = ResilientCrawler(frontier, make_config(max_retries=0), clock=fake_clock, sleep=sleep)

        with pytest.raises(FetchError, match=r"HTTP 500 \(3\)"):
            await crawler.crawl_with_fallback(config)

        assert len(frontier.calls) == 4
        assert crawler.get_problematic_domains() == []

    @pytest.mark.asyncio
    async def test_open_circuit_stops_the_ladder(self, config, sleep, fake_clock):
        frontier = ScriptedFrontier([timeout_error()])
        crawler = ResilientCrawler(frontier, make_config(failure_threshold=1, max_retries=0),
                                   clock=fake_clock, sleep=sleep)

        with pytest.raises(CircuitOpenError):
            await crawler.crawl_with_fallback(config)

        assert len(frontier.calls) == 1


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy_probe(self):
        fetcher = FakePageFetcher({START_URL: []})
        crawler = ResilientCrawler(ScriptedFrontier(fetcher=fetcher), make_config())

        result = await crawler.health_check(START_URL)

        assert result.is_healthy
        assert result.error is None
        assert result.response_time >= 0

    @pytest.mark.asyncio
    async def test_failed_probe_does_not_raise(self):
        crawler = ResilientCrawler(ScriptedFrontier(fetcher=FakePageFetcher()), make_config())

        result = await crawler.health_check("https://a.test/missing")

        assert not result.is_healthy
        assert result.error == "HTTP 404"

    @pytest.mark.asyncio
    async def test_probe_timeout(self):
        fetcher = FakePageFetcher({START_URL: []}, latency=1.0)
        crawler = ResilientCrawler(ScriptedFrontier(fetcher=fetcher), make_config())

        result = await crawler.health_check(START_URL)

        assert not result.is_healthy
        assert "timeout" in result.error

    @pytest.mark.asyncio
    async def test_probe_without_url(self):
        crawler = ResilientCrawler(ScriptedFrontier(), make_config())

        result = await crawler.health_check()

        assert not result.is_healthy

    @pytest.mark.asyncio
    async def test_periodic_checks_stop_on_close(self):
        fetcher = FakePageFetcher({START_URL: []})
        crawler = ResilientCrawler(ScriptedFrontier(fetcher=fetcher), make_config())

        crawler.start_health_checks(START_URL)
        await asyncio.sleep(0.05)
        await crawler.close()

        assert START_URL in fetcher.fetched
        probes = len(fetcher.fetched)
        await asyncio.sleep(0.03)
        assert len(fetcher.fetched) == probes
