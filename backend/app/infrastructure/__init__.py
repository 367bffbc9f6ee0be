"""
Infrastructure layer - external system integrations.
Keeps business logic clean from implementation details.
"""

from .redis_client import RedisClient
from .scheduler import JobScheduler

__all__ = ['RedisClient', 'JobScheduler']
