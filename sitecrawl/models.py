"""
Data model shared by the frontier, the resilience layer and the distributed coordinator.
"""

import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from .errors import ConfigurationError, ValidationError


DEFAULT_USER_AGENT = "sitecrawl/1.0 (+https://github.com/sitecrawl/sitecrawl)"


@dataclass(frozen=True)
class CrawlNode:
    """A discovered URL and where it was found."""
    url: str
    depth: int
    parent_url: Optional[str] = None
    discovered_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'depth': self.depth,
            'parent_url': self.parent_url,
            'discovered_at': self.discovered_at
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CrawlNode':
        """Create CrawlNode from dictionary."""
        return cls(
            url=data['url'],
            depth=data['depth'],
            parent_url=data.get('parent_url'),
            discovered_at=data.get('discovered_at', time.time())
        )


@dataclass(frozen=True)
class CrawlConfiguration:
    """Immutable input of one crawl run."""
    start_url: str
    max_depth: int = 3
    max_pages: int = 100
    crawl_delay: float = 1.0
    allowed_domains: List[str] = field(default_factory=list)
    respect_robots_txt: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    custom_headers: Optional[Dict[str, str]] = None
    parallel_workers: Optional[int] = None

    def validate(self):
        """Raise ConfigurationError if any value is out of range."""
        if not self.start_url:
            raise ConfigurationError("start_url is required")

        parsed = urlparse(self.start_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ConfigurationError(f"start_url must be an absolute http(s) URL: {self.start_url!r}")

        if self.max_depth < 0:
            raise ConfigurationError("max_depth must be non-negative")

        if self.max_pages <= 0:
            raise ConfigurationError("max_pages must be positive")

        if self.crawl_delay < 0:
            raise ConfigurationError("crawl_delay must be non-negative")

        if self.parallel_workers is not None and self.parallel_workers <= 0:
            raise ConfigurationError("parallel_workers must be positive")

    def with_overrides(self, **changes) -> 'CrawlConfiguration':
        """Return a copy with some fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CrawlConfiguration':
        """Build a configuration from a plain mapping (e.g. a YAML section)."""
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid crawler configuration: {e}") from e


@dataclass
class CrawlError:
    """A page-level failure recorded in a crawl result."""
    url: str
    error: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {'url': self.url, 'error': self.error, 'timestamp': self.timestamp}


@dataclass
class CrawlResult:
    """Accumulator for a single crawl run."""
    pages_visited: int = 0
    urls: List[str] = field(default_factory=list)
    errors: List[CrawlError] = field(default_factory=list)
    duration: float = 0.0
    crawl_tree: Dict[str, List[CrawlNode]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'pages_visited': self.pages_visited,
            'urls': list(self.urls),
            'errors': [error.to_dict() for error in self.errors],
            'duration': self.duration,
            'crawl_tree': {
                url: [child.to_dict() for child in children]
                for url, children in self.crawl_tree.items()
            }
        }


@dataclass
class CoordinationMetrics:
    """Coordination counters attached to a distributed crawl result."""
    total_workers: int = 0
    jobs_processed: int = 0
    jobs_queued: int = 0
    jobs_failed: int = 0
    total_store_operations: int = 0


@dataclass
class DistributedCrawlResult(CrawlResult):
    """Aggregated result of a crawl processed by several workers."""
    worker_id: str = ""
    coordination_metrics: CoordinationMetrics = field(default_factory=CoordinationMetrics)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['worker_id'] = self.worker_id
        data['coordination_metrics'] = vars(self.coordination_metrics).copy()
        return data


@dataclass
class CrawlJob:
    """Distributed unit of work persisted in the coordination store."""
    id: str
    url: str
    depth: int
    priority: int
    retries: int = 0
    created_at: float = field(default_factory=time.time)
    assigned_to: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'id': self.id,
            'url': self.url,
            'depth': self.depth,
            'priority': self.priority,
            'retries': self.retries,
            'created_at': self.created_at,
            'assigned_to': self.assigned_to,
            'metadata': self.metadata
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> 'CrawlJob':
        """Create CrawlJob from dictionary, validating required fields."""
        if not isinstance(data, dict):
            raise ValidationError(f"Job payload must be an object, got {type(data).__name__}")

        for key, expected in (('id', str), ('url', str), ('depth', int), ('priority', int)):
            value = data.get(key)
            if not isinstance(value, expected) or isinstance(value, bool):
                raise ValidationError(f"Job field '{key}' is missing or not {expected.__name__}")

        retries = data.get('retries', 0)
        if not isinstance(retries, int) or retries < 0:
            raise ValidationError("Job field 'retries' must be a non-negative integer")

        metadata = data.get('metadata')
        if metadata is not None and not isinstance(metadata, dict):
            raise ValidationError("Job field 'metadata' must be an object")

        return cls(
            id=data['id'],
            url=data['url'],
            depth=data['depth'],
            priority=data['priority'],
            retries=retries,
            created_at=data.get('created_at', time.time()),
            assigned_to=data.get('assigned_to'),
            metadata=metadata
        )

    @classmethod
    def from_json(cls, payload: str) -> 'CrawlJob':
        """Decode a stored job, raising ValidationError when malformed."""
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job payload is not valid JSON: {e}", payload) from e

        try:
            return cls.from_dict(data)
        except ValidationError as e:
            e.payload = payload
            raise


class WorkerState(Enum):
    """Lifecycle states a worker reports in its heartbeat."""
    ACTIVE = "active"
    IDLE = "idle"
    ERROR = "error"
    STOPPING = "stopping"


@dataclass
class WorkerStatus:
    """Heartbeat record of one worker."""
    worker_id: str
    status: WorkerState = WorkerState.IDLE
    current_url: Optional[str] = None
    pages_processed: int = 0
    started_at: float = field(default_factory=time.time)
    last_heartbeat: float = field(default_factory=time.time)
    errors: int = 0

    def to_dict(self) -> dict:
        return {
            'worker_id': self.worker_id,
            'status': self.status.value,
            'current_url': self.current_url,
            'pages_processed': self.pages_processed,
            'started_at': self.started_at,
            'last_heartbeat': self.last_heartbeat,
            'errors': self.errors
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'WorkerStatus':
        return cls(
            worker_id=data['worker_id'],
            status=WorkerState(data.get('status', WorkerState.IDLE.value)),
            current_url=data.get('current_url'),
            pages_processed=data.get('pages_processed', 0),
            started_at=data.get('started_at', time.time()),
            last_heartbeat=data.get('last_heartbeat', time.time()),
            errors=data.get('errors', 0)
        )
