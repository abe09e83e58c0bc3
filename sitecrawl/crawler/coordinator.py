"""
Distributed crawl coordinator.

Decomposes one logical crawl into jobs held in priority queues of a shared
coordination store. Any number of workers pull jobs, fetch pages, enqueue
the discovered links one level deeper and store per-job results, which the
coordinator aggregates once the queues drain.
"""

import asyncio
import json
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from ..errors import StoreError, ValidationError
from ..models import (
    CoordinationMetrics, CrawlConfiguration, CrawlError, CrawlJob, CrawlNode,
    DistributedCrawlResult, WorkerState, WorkerStatus,
)
from ..storage.coordination_store import CoordinationStore
from ..utils.config import DistributedConfig
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor
from .fetcher import PageFetcher
from .frontier import RobotsPolicy, is_allowed_domain, normalize_url
from .parser import LinkExtractor


class JobOutcome(Enum):
    """What happened to a dequeued job."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRIED = "retried"
    FAILED = "failed"
    ABANDONED = "abandoned"


PRIORITY_BOOST_PATTERNS = ('/api/', '/admin/')


class DistributedCoordinator:
    """
    Coordinates crawl jobs across workers sharing a CoordinationStore.

    Cross-worker state (queues, processed URLs, worker registry, leases and
    results) lives only in the store. A worker keeps its own WorkerStatus and
    the handles of the jobs it is processing. The caller owns the store and
    fetcher lifecycles.
    """

    LOOP_PAUSE = 0.1

    def __init__(self, crawl_config: CrawlConfiguration, store: CoordinationStore,
                 fetcher: PageFetcher, settings: Optional[DistributedConfig] = None,
                 robots_policy: Optional[RobotsPolicy] = None,
                 monitor: Optional[CrawlerMonitor] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        crawl_config.validate()
        self.crawl_config = crawl_config
        self.store = store
        self.fetcher = fetcher
        self.settings = settings or DistributedConfig()
        self.robots_policy = robots_policy or RobotsPolicy(fetcher)
        self.monitor = monitor or CrawlerMonitor()
        self.link_filter = LinkExtractor()
        self._sleep = sleep

        self.worker_id = self.settings.worker_id
        self.logger = get_crawler_logger(__name__, worker_id=self.worker_id)

        self.status = WorkerStatus(worker_id=self.worker_id)
        self.is_running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._timers: List[asyncio.Task] = []
        self._in_flight: Dict[str, str] = {}
        self._wait_cancelled = False

    # Store keys

    def _key(self, *parts: Any) -> str:
        return ':'.join([self.settings.key_prefix] + [str(part) for part in parts])

    def _queue_key(self, priority: int) -> str:
        return self._key('queue', priority)

    @property
    def _processed_key(self) -> str:
        return self._key('processed')

    @property
    def _completed_key(self) -> str:
        return self._key('completed')

    @property
    def _failed_key(self) -> str:
        return self._key('failed')

    @property
    def _inflight_key(self) -> str:
        return self._key('inflight')

    @property
    def _worker_key(self) -> str:
        return self._key('worker', self.worker_id)

    # Public API

    async def enqueue_crawl_job(self, url: str, depth: int = 0, priority: Optional[int] = None,
                                metadata: Optional[Dict[str, Any]] = None) -> str:
        """Push a new job onto the queue for its priority and return its id."""
        if priority is None:
            priority = self.calculate_priority(url, depth)
        priority = min(max(1, priority), self.settings.priority_levels)

        job = CrawlJob(
            id=self._generate_job_id(),
            url=url,
            depth=depth,
            priority=priority,
            metadata=metadata
        )
        await self.store.lpush(self._queue_key(priority), job.to_json())

        self.logger.debug(f"Job {job.id} enqueued: {url} (depth {depth}, priority {priority})")
        return job.id

    def calculate_priority(self, url: str, depth: int) -> int:
        """Shallower pages first; administrative and API paths get one level of boost."""
        levels = self.settings.priority_levels
        priority = max(1, levels - depth)

        if any(pattern in url for pattern in PRIORITY_BOOST_PATTERNS):
            priority = min(levels, priority + 1)

        return priority

    async def start_worker(self):
        """Register this worker and start its processing loop and timers."""
        if self.is_running:
            self.logger.warning("Worker is already running")
            return

        self.logger.info(f"Starting worker (concurrency {self.settings.concurrency})")
        self.is_running = True
        self.status = WorkerStatus(worker_id=self.worker_id, status=WorkerState.IDLE)

        await self._register_worker()

        self._timers = [
            asyncio.create_task(self._heartbeat_loop()),
            asyncio.create_task(self._result_sync_loop()),
            asyncio.create_task(self._lease_sweep_loop()),
        ]
        self._loop_task = asyncio.create_task(self._process_job_queue())

    async def stop_worker(self, timeout: Optional[float] = None):
        """
        Stop the worker cooperatively.

        The processing loop observes the flag at its next iteration; jobs in
        flight are allowed to finish unless ``timeout`` expires first.
        """
        if not self.is_running:
            return

        self.logger.info("Stopping worker")
        self.is_running = False
        self.status.status = WorkerState.STOPPING
        await self._publish_status()

        if self._loop_task:
            try:
                await asyncio.wait_for(asyncio.shield(self._loop_task), timeout)
            except asyncio.TimeoutError:
                self.logger.warning("Worker loop did not stop in time, cancelling")
                self._loop_task.cancel()
                await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        for timer in self._timers:
            timer.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

        try:
            await self._unregister_worker()
        except StoreError as e:
            self.logger.warning(f"Could not unregister worker: {e}")

        self.logger.info(f"Worker stopped after {self.status.pages_processed} pages")

    async def process_next_job(self) -> Optional[JobOutcome]:
        """
        Dequeue and process the highest-priority job.

        Returns None when no job was available, otherwise the job's outcome.
        """
        try:
            job = await self._dequeue_job()
        except ValidationError as e:
            return await self._record_invalid_job(e)
        except StoreError as e:
            self.logger.error(f"Could not dequeue job: {e}")
            self.status.errors += 1
            await self._sleep(self.settings.idle_delay)
            return None

        if job is None:
            if not self._in_flight:
                await self._set_state(WorkerState.IDLE)
            await self._sleep(self.settings.idle_delay)
            return None

        payload = job.to_json()
        self._in_flight[job.id] = payload
        self.status.current_url = job.url
        self.logger.debug(f"Processing job {job.id}: {job.url} (depth {job.depth})")

        try:
            await self._acquire_lease(job, payload)
            await self._set_state(WorkerState.ACTIVE)
            outcome = await self._run_job(job)

        except Exception as e:
            self.logger.error(f"Job {job.id} failed: {e}")
            self.status.errors += 1
            self.monitor.record_error(type(e).__name__)
            try:
                outcome = await self._handle_job_failure(job, str(e))
            except StoreError as store_error:
                self.logger.error(f"Could not reschedule job {job.id}, leaving it to lease recovery: {store_error}")
                outcome = JobOutcome.ABANDONED

        finally:
            self._in_flight.pop(job.id, None)
            self.status.current_url = None

        if outcome is not JobOutcome.ABANDONED:
            await self._release_lease(job.id, payload)

        self.monitor.record_job_outcome(outcome.value)
        if not self._in_flight:
            await self._set_state(WorkerState.IDLE)

        return outcome

    async def distributed_crawl(self, start_url: Optional[str] = None,
                                timeout: Optional[float] = None) -> DistributedCrawlResult:
        """
        Seed a crawl, wait for all workers to drain the queues, and aggregate results.

        Args:
            start_url: seed URL; defaults to the configured start_url
            timeout: seconds to wait for completion; defaults to completion_timeout

        Returns:
            DistributedCrawlResult with aggregated pages, errors and coordination metrics
        """
        config = self.crawl_config
        if start_url is not None:
            config = config.with_overrides(start_url=start_url)
        config.validate()
        self.crawl_config = config

        operations_before = self.store.operations
        started = time.time()
        seed = normalize_url(self.crawl_config.start_url)
        self.logger.info(f"Starting distributed crawl of {seed}")

        await self.enqueue_crawl_job(seed, 0)
        finished = await self._wait_for_crawl_completion(timeout)
        if not finished:
            self.logger.warning("Distributed crawl did not finish, aggregating partial results")

        results = await self._collect_distributed_results()
        failures = await self._collect_failures()
        stats = await self.get_queue_statistics()

        result = self._aggregate_results(results, failures)
        result.duration = time.time() - started
        result.worker_id = self.worker_id
        result.coordination_metrics = CoordinationMetrics(
            total_workers=stats['total_workers'],
            jobs_processed=stats['completed_jobs'],
            jobs_queued=stats['total_jobs'],
            jobs_failed=stats['failed_jobs'],
            total_store_operations=self.store.operations - operations_before
        )

        self.logger.info(
            f"Distributed crawl finished: {result.pages_visited} pages, "
            f"{len(result.errors)} failed jobs, {stats['total_workers']} workers"
        )
        return result

    def cancel_wait(self):
        """Make a pending distributed_crawl stop polling at its next iteration."""
        self._wait_cancelled = True

    async def get_worker_statuses(self) -> List[WorkerStatus]:
        """Workers whose heartbeat key has not expired."""
        workers = []
        for key in await self.store.keys(self._key('worker', '*')):
            data = await self.store.get(key)
            if not data:
                continue
            try:
                workers.append(WorkerStatus.from_dict(json.loads(data)))
            except (ValueError, KeyError, TypeError) as e:
                self.logger.warning(f"Ignoring malformed worker record {key}: {e}")
        return workers

    async def get_queue_statistics(self) -> Dict[str, Any]:
        """Queue depth by priority plus worker and job counters."""
        jobs_by_priority = {}
        for priority in range(1, self.settings.priority_levels + 1):
            jobs_by_priority[priority] = await self.store.llen(self._queue_key(priority))

        workers = await self.get_worker_statuses()

        return {
            'total_jobs': sum(jobs_by_priority.values()),
            'jobs_by_priority': jobs_by_priority,
            'active_workers': len([w for w in workers if w.status is WorkerState.ACTIVE]),
            'total_workers': len(workers),
            'completed_jobs': await self.store.scard(self._completed_key),
            'failed_jobs': await self.store.scard(self._failed_key),
            'in_flight_jobs': await self.store.scard(self._inflight_key),
        }

    async def reclaim_expired_leases(self) -> int:
        """
        Requeue in-flight jobs whose lease expired (their worker stopped heartbeating).

        Returns the number of jobs reclaimed.
        """
        reclaimed = 0

        for payload in await self.store.smembers(self._inflight_key):
            try:
                job = CrawlJob.from_json(payload)
            except ValidationError as e:
                if await self.store.srem(self._inflight_key, payload):
                    await self._record_invalid_job(e)
                continue

            if job.id in self._in_flight:
                continue
            if await self.store.get(self._key('lease', job.id)) is not None:
                continue
            if not await self.store.srem(self._inflight_key, payload):
                continue  # another worker reclaimed it first

            if await self.store.sismember(self._completed_key, job.id):
                continue

            self.logger.warning(f"Lease expired for job {job.id} held by {job.assigned_to}, requeueing")
            await self.store.srem(self._processed_key, normalize_url(job.url))
            await self._handle_job_failure(job, f"Lease expired on worker {job.assigned_to}", delay=False)
            reclaimed += 1

        return reclaimed

    # Job processing

    async def _process_job_queue(self):
        """Run ``concurrency`` independent job slots until stopped."""
        self.logger.debug("Starting job queue processing")

        slots = [
            asyncio.create_task(self._job_slot(f"slot-{i}"))
            for i in range(self.settings.concurrency)
        ]
        try:
            await asyncio.gather(*slots)
        finally:
            for slot in slots:
                slot.cancel()
            await asyncio.gather(*slots, return_exceptions=True)

    async def _job_slot(self, slot_id: str):
        while self.is_running:
            try:
                outcome = await self.process_next_job()
                if outcome is not None:
                    await self._sleep(self.LOOP_PAUSE)
            except Exception as e:
                self.logger.error(f"Error in job slot {slot_id}: {e}")
                self.status.errors += 1
                await self._sleep(1)

    async def _dequeue_job(self) -> Optional[CrawlJob]:
        """Pop the oldest job of the highest non-empty priority queue."""
        for priority in range(self.settings.priority_levels, 0, -1):
            payload = await self.store.rpop(self._queue_key(priority))
            if payload:
                job = CrawlJob.from_json(payload)
                job.assigned_to = self.worker_id
                return job
        return None

    async def _run_job(self, job: CrawlJob) -> JobOutcome:
        started = time.time()
        url = normalize_url(job.url)

        if job.depth > self.crawl_config.max_depth:
            await self._mark_job_completed(job)
            return JobOutcome.SKIPPED

        if await self.store.sismember(self._processed_key, url):
            self.logger.debug(f"URL already processed, skipping: {url}")
            await self._mark_job_completed(job)
            return JobOutcome.SKIPPED

        if await self.store.scard(self._processed_key) >= self.crawl_config.max_pages:
            self.logger.info(f"Page budget of {self.crawl_config.max_pages} reached, skipping {url}")
            await self._mark_job_completed(job)
            return JobOutcome.SKIPPED

        if not await self.store.sadd(self._processed_key, url):
            self.logger.debug(f"URL claimed by another worker, skipping: {url}")
            await self._mark_job_completed(job)
            return JobOutcome.SKIPPED

        try:
            if await self.store.scard(self._processed_key) > self.crawl_config.max_pages:
                # Lost the race for the last slot
                await self.store.srem(self._processed_key, url)
                self.logger.info(f"Page budget contended, requeueing {url}")
                await self._requeue_job(job)
                return JobOutcome.RETRIED

            if self.crawl_config.respect_robots_txt and \
                    not await self.robots_policy.can_fetch(url, self.crawl_config.user_agent):
                self.logger.info(f"Skipping URL due to robots.txt: {url}")
                await self._mark_job_completed(job)
                return JobOutcome.SKIPPED

            page = await self.fetcher.fetch(url)
            children = await self._enqueue_discovered_urls(url, page.outbound_links, job.depth + 1)
            await self._store_result(job, url, children, started)
            await self._mark_job_completed(job)

        except Exception:
            await self._release_url(url)
            raise

        self.status.pages_processed += 1
        self.monitor.record_url_crawled(url, page.fetch_time)
        return JobOutcome.COMPLETED

    async def _enqueue_discovered_urls(self, parent_url: str, links: List[str], depth: int) -> List[str]:
        """Filter a page's links and enqueue the unprocessed ones at ``depth``."""
        if depth > self.crawl_config.max_depth:
            return []

        children = []
        seen = {parent_url}
        for link in links:
            url = normalize_url(link)
            if url in seen:
                continue
            seen.add(url)

            if not self.link_filter.is_crawlable(url):
                continue
            if not is_allowed_domain(url, self.crawl_config.allowed_domains):
                continue

            children.append(url)
            if len(children) >= self.settings.max_links_per_page:
                break

        for url in children:
            if await self.store.sismember(self._processed_key, url):
                continue
            await self.enqueue_crawl_job(url, depth, metadata={'parent_url': parent_url})

        return children

    async def _handle_job_failure(self, job: CrawlJob, error: str, delay: bool = True) -> JobOutcome:
        """Requeue with lower priority while retries remain, otherwise move to the failed set."""
        job.retries += 1

        if job.retries < self.settings.max_retries:
            job.priority = max(1, job.priority - 1)
            await self._requeue_job(job)

            self.logger.debug(f"Job {job.id} re-queued (retry {job.retries}, priority {job.priority})")
            self.monitor.record_retry('job')
            if delay:
                await self._sleep(self.settings.retry_delay)
            return JobOutcome.RETRIED

        failed_entry = job.to_dict()
        failed_entry.update(final_error=error, failed_at=time.time())
        await self.store.sadd(self._failed_key, json.dumps(failed_entry))

        self.logger.warning(f"Job {job.id} failed permanently after {job.retries} attempts: {error}")
        return JobOutcome.FAILED

    async def _requeue_job(self, job: CrawlJob):
        job.assigned_to = None
        await self.store.lpush(self._queue_key(job.priority), job.to_json())

    async def _record_invalid_job(self, error: ValidationError) -> JobOutcome:
        self.logger.error(f"Discarding malformed job: {error}")
        self.status.errors += 1
        entry = {'url': None, 'payload': error.payload, 'final_error': str(error), 'failed_at': time.time()}
        try:
            await self.store.sadd(self._failed_key, json.dumps(entry))
        except StoreError as e:
            self.logger.error(f"Could not record malformed job: {e}")
        self.monitor.record_job_outcome(JobOutcome.FAILED.value)
        return JobOutcome.FAILED

    async def _store_result(self, job: CrawlJob, url: str, children: List[str], started: float):
        result = {
            'job_id': job.id,
            'url': url,
            'depth': job.depth,
            'parent_url': (job.metadata or {}).get('parent_url'),
            'worker_id': self.worker_id,
            'children': children,
            'duration': time.time() - started,
            'completed_at': time.time()
        }
        await self.store.setex(self._key('result', job.id), self.settings.result_ttl, json.dumps(result))

    async def _mark_job_completed(self, job: CrawlJob):
        await self.store.sadd(self._completed_key, job.id)

    async def _release_url(self, url: str):
        """Undo a processed-set claim so a retry can fetch the URL again."""
        try:
            await self.store.srem(self._processed_key, url)
        except StoreError as e:
            self.logger.error(f"Could not release claim on {url}: {e}")

    # Leases

    async def _acquire_lease(self, job: CrawlJob, payload: str):
        # Lease key first: a sweeper must never see an in-flight entry without one
        await self.store.setex(self._key('lease', job.id), self.settings.lease_ttl, self.worker_id)
        await self.store.sadd(self._inflight_key, payload)

    async def _release_lease(self, job_id: str, payload: str):
        try:
            await self.store.srem(self._inflight_key, payload)
            await self.store.delete(self._key('lease', job_id))
        except StoreError as e:
            self.logger.warning(f"Could not release lease of job {job_id}: {e}")

    async def _renew_leases(self):
        for job_id in list(self._in_flight):
            await self.store.setex(self._key('lease', job_id), self.settings.lease_ttl, self.worker_id)

    # Worker registry and timers

    async def _register_worker(self):
        await self.store.setex(self._worker_key, self.settings.worker_timeout, json.dumps(self.status.to_dict()))

    async def _unregister_worker(self):
        await self.store.delete(self._worker_key)

    async def _publish_status(self):
        try:
            await self._register_worker()
        except StoreError as e:
            self.logger.warning(f"Could not publish worker status: {e}")

    async def _set_state(self, state: WorkerState):
        if self.status.status is state or not self.is_running:
            return
        self.status.status = state
        await self._publish_status()

    async def _heartbeat_loop(self):
        while self.is_running:
            await asyncio.sleep(self.settings.heartbeat_interval)
            try:
                self.status.last_heartbeat = time.time()
                await self._register_worker()
                await self._renew_leases()
            except Exception as e:
                self.logger.error(f"Heartbeat failed: {e}")

    async def _result_sync_loop(self):
        while self.is_running:
            await asyncio.sleep(self.settings.result_sync_interval)
            try:
                await self._sync_results()
            except Exception as e:
                self.logger.error(f"Result sync failed: {e}")

    async def _lease_sweep_loop(self):
        while self.is_running:
            await asyncio.sleep(self.settings.lease_sweep_interval)
            try:
                reclaimed = await self.reclaim_expired_leases()
                if reclaimed:
                    self.logger.info(f"Reclaimed {reclaimed} expired job leases")
            except Exception as e:
                self.logger.error(f"Lease sweep failed: {e}")

    async def _sync_results(self):
        """Publish queue progress to the log and the metrics gauges."""
        stats = await self.get_queue_statistics()
        self.monitor.update_queue_size(stats['total_jobs'])
        self.monitor.update_active_workers(stats['active_workers'])

        self.logger.info(
            f"Crawl Progress: "
            f"Processed={self.status.pages_processed}, "
            f"Queued={stats['total_jobs']}, "
            f"InFlight={stats['in_flight_jobs']}, "
            f"Completed={stats['completed_jobs']}, "
            f"Failed={stats['failed_jobs']}, "
            f"Workers={stats['active_workers']}/{stats['total_workers']}"
        )

    # Completion and aggregation

    async def _wait_for_crawl_completion(self, timeout: Optional[float]) -> bool:
        """
        Poll until queues and leases are empty and no worker is active.

        Idle must be observed on two consecutive polls. Returns False on
        timeout or cancellation.
        """
        if timeout is None:
            timeout = self.settings.completion_timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        self._wait_cancelled = False
        idle_polls = 0

        while not self._wait_cancelled:
            try:
                await self.reclaim_expired_leases()
                stats = await self.get_queue_statistics()
            except StoreError as e:
                self.logger.warning(f"Completion poll failed: {e}")
                stats = None

            if stats is not None and stats['total_jobs'] == 0 and \
                    stats['in_flight_jobs'] == 0 and stats['active_workers'] == 0:
                idle_polls += 1
                if idle_polls >= 2:
                    self.logger.info("Distributed crawl completed")
                    return True
            else:
                idle_polls = 0

            if deadline is not None and loop.time() >= deadline:
                self.logger.warning(f"Timed out after {timeout}s waiting for crawl completion")
                return False

            await self._sleep(self.settings.poll_interval)

        self.logger.info("Waiting for crawl completion cancelled")
        return False

    async def _collect_distributed_results(self) -> List[Dict[str, Any]]:
        results = []
        for key in await self.store.keys(self._key('result', '*')):
            data = await self.store.get(key)
            if not data:
                continue
            try:
                results.append(json.loads(data))
            except ValueError as e:
                self.logger.warning(f"Ignoring malformed result {key}: {e}")
        return results

    async def _collect_failures(self) -> List[CrawlError]:
        errors = []
        for payload in await self.store.smembers(self._failed_key):
            try:
                entry = json.loads(payload)
            except ValueError:
                continue
            errors.append(CrawlError(
                url=entry.get('url') or '<invalid job>',
                error=entry.get('final_error', 'unknown error'),
                timestamp=entry.get('failed_at', time.time())
            ))
        errors.sort(key=lambda error: error.timestamp)
        return errors

    @staticmethod
    def _aggregate_results(results: List[Dict[str, Any]], errors: List[CrawlError]) -> DistributedCrawlResult:
        """Merge per-job results, shallowest first, into one result."""
        urls = []
        crawl_tree = {}

        ordered = sorted(results, key=lambda item: (item.get('depth', 0), item.get('completed_at', 0)))
        for item in ordered:
            url = item.get('url')
            if not url or url in crawl_tree:
                continue
            urls.append(url)
            crawl_tree[url] = [
                CrawlNode(
                    url=child,
                    depth=item.get('depth', 0) + 1,
                    parent_url=url,
                    discovered_at=item.get('completed_at', time.time())
                )
                for child in item.get('children', [])
            ]

        return DistributedCrawlResult(
            pages_visited=len(urls),
            urls=urls,
            errors=errors,
            crawl_tree=crawl_tree
        )

    def _generate_job_id(self) -> str:
        return f"job_{int(time.time() * 1000)}_{uuid.uuid4().hex[:12]}"
