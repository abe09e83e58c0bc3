"""
Web crawler core components.
"""

from .coordinator import DistributedCoordinator, JobOutcome
from .fetcher import HttpPageFetcher, PageFetcher, PageResult
from .frontier import BreadthFirstFrontier, RobotsPolicy, normalize_url
from .parser import LinkExtractor
from .resilience import CircuitBreaker, CircuitState, HealthCheckResult, ResilientCrawler

__all__ = [
    'BreadthFirstFrontier', 'RobotsPolicy', 'normalize_url',
    'PageFetcher', 'HttpPageFetcher', 'PageResult',
    'LinkExtractor',
    'ResilientCrawler', 'CircuitBreaker', 'CircuitState', 'HealthCheckResult',
    'DistributedCoordinator', 'JobOutcome'
]
