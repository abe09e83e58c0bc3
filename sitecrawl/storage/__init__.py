"""
Storage layer for the web crawler system.
"""

from .coordination_store import CoordinationStore, InMemoryCoordinationStore, RedisCoordinationStore

__all__ = ['CoordinationStore', 'InMemoryCoordinationStore', 'RedisCoordinationStore']
