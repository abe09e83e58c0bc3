#!/usr/bin/env python3
"""
Main entry point for the site crawler.
"""

import asyncio
import argparse
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from sitecrawl import __version__
from sitecrawl.crawler.coordinator import DistributedCoordinator
from sitecrawl.crawler.fetcher import HttpPageFetcher
from sitecrawl.crawler.frontier import BreadthFirstFrontier, RobotsPolicy
from sitecrawl.crawler.resilience import ResilientCrawler
from sitecrawl.errors import CrawlerError
from sitecrawl.models import CrawlResult
from sitecrawl.storage.coordination_store import RedisCoordinationStore
from sitecrawl.utils.config import Config, load_config
from sitecrawl.utils.logger import setup_logging
from sitecrawl.utils.monitoring import CrawlerMonitor


class CrawlerApp:
    """Main application class for the site crawler."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._shutdown_event: Optional[asyncio.Event] = None

    def setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum):
            self.logger.info(f"Received signal {signum}, initiating shutdown...")
            self._shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    def _create_fetcher(self, config: Config) -> HttpPageFetcher:
        crawler = config.crawler
        return HttpPageFetcher(
            user_agent=crawler.user_agent,
            custom_headers=crawler.custom_headers,
            max_concurrent_requests=crawler.parallel_workers or BreadthFirstFrontier.DEFAULT_CONCURRENCY
        )

    async def run(self, config_path: str, mode: str, start_url: Optional[str] = None,
                  output: Optional[str] = None) -> int:
        """Run the crawler in the requested mode."""
        self._shutdown_event = asyncio.Event()

        try:
            config = load_config(config_path)
            if start_url:
                config.crawler = config.crawler.with_overrides(start_url=start_url)
            setup_logging(config.logging)
            self.setup_signal_handlers()

            self.logger.info("=== SITE CRAWLER STARTING ===")
            self.logger.info(f"Configuration loaded from: {config_path}")
            self.logger.info(f"Mode: {mode}")
            self.logger.info(f"Start URL: {config.crawler.start_url}")
            self.logger.info(f"Max depth: {config.crawler.max_depth}")
            self.logger.info(f"Max pages: {config.crawler.max_pages}")
            self.logger.info(f"Crawl delay: {config.crawler.crawl_delay}s")

            monitor = CrawlerMonitor()
            if config.monitoring.metrics_enabled:
                monitor.start_http_server(config.monitoring.prometheus_port)

            if mode == 'crawl':
                result = await self._run_crawl(config, monitor)
            else:
                result = await self._run_distributed(config, monitor, coordinate=(mode == 'coordinate'))

            if result is not None:
                self._report(result, output)

        except CrawlerError as e:
            self.logger.error(f"Crawl failed: {e}")
            return 1

        except Exception as e:
            self.logger.error(f"Fatal error: {e}", exc_info=True)
            return 1

        finally:
            self.logger.info("=== SITE CRAWLER FINISHED ===")

        return 0

    async def _run_crawl(self, config: Config, monitor: CrawlerMonitor) -> Optional[CrawlResult]:
        """Single-process crawl through the resilience layer."""
        async with self._create_fetcher(config) as fetcher:
            frontier = BreadthFirstFrontier(fetcher, monitor=monitor)

            async with ResilientCrawler(frontier, config.resilience, monitor=monitor) as crawler:
                crawl_task = asyncio.create_task(crawler.crawl_with_fallback(config.crawler))
                shutdown_task = asyncio.create_task(self._shutdown_event.wait())

                done, pending = await asyncio.wait(
                    [crawl_task, shutdown_task],
                    return_when=asyncio.FIRST_COMPLETED
                )

                for task in pending:
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

                if crawl_task in done:
                    return crawl_task.result()

                self.logger.info("Shutdown requested, crawl cancelled")
                return None

    async def _run_distributed(self, config: Config, monitor: CrawlerMonitor,
                               coordinate: bool) -> Optional[CrawlResult]:
        """Run a worker; when coordinating, also seed the crawl and aggregate its results."""
        store = RedisCoordinationStore(config.redis)
        await store.connect()

        try:
            async with self._create_fetcher(config) as fetcher:
                coordinator = DistributedCoordinator(
                    config.crawler,
                    store,
                    fetcher,
                    settings=config.distributed,
                    robots_policy=RobotsPolicy(fetcher),
                    monitor=monitor
                )
                await coordinator.start_worker()

                try:
                    if coordinate:
                        crawl_task = asyncio.create_task(coordinator.distributed_crawl())
                        shutdown_task = asyncio.create_task(self._shutdown_event.wait())

                        done, _ = await asyncio.wait(
                            [crawl_task, shutdown_task],
                            return_when=asyncio.FIRST_COMPLETED
                        )
                        if shutdown_task in done:
                            self.logger.info("Shutdown requested, aggregating partial results...")
                            coordinator.cancel_wait()
                        else:
                            shutdown_task.cancel()
                        return await crawl_task

                    await self._shutdown_event.wait()
                    return None

                finally:
                    await coordinator.stop_worker()
        finally:
            await store.close()

    def _report(self, result: CrawlResult, output: Optional[str]):
        self.logger.info(
            f"Crawl finished: {result.pages_visited} pages, "
            f"{len(result.errors)} errors, {result.duration:.2f}s"
        )

        if output:
            Path(output).write_text(json.dumps(result.to_dict(), indent=2))
            self.logger.info(f"Result written to {output}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Site Crawler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py crawl                            # Single-process crawl with config.yaml
  python main.py crawl --url https://example.com  # Override the start URL
  python main.py worker                           # Join a distributed crawl as a worker
  python main.py coordinate --output result.json  # Seed a distributed crawl and wait for it
        """
    )

    parser.add_argument(
        'mode',
        choices=['crawl', 'worker', 'coordinate'],
        help='Run a local crawl, a distributed worker, or a coordinating worker'
    )

    parser.add_argument(
        '--config',
        default='config.yaml',
        help='Path to configuration file (default: config.yaml)'
    )

    parser.add_argument(
        '--url',
        help='Start URL overriding crawler.start_url'
    )

    parser.add_argument(
        '--output',
        help='Write the crawl result as JSON to this file'
    )

    parser.add_argument(
        '--version',
        action='version',
        version=f'Site Crawler {__version__}'
    )

    args = parser.parse_args()

    if not Path(args.config).exists():
        print(f"Error: Configuration file '{args.config}' not found.")
        print("Please create a config.yaml file or specify a different path with --config")
        return 1

    app = CrawlerApp()
    try:
        return asyncio.run(app.run(
            config_path=args.config,
            mode=args.mode,
            start_url=args.url,
            output=args.output
        ))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == '__main__':
    sys.exit(main())
