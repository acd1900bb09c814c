"""Shared key-value store access for tokenfeed."""

from .redis_store import KeySpace, RedisStore, build_redis_client

__all__ = ["KeySpace", "RedisStore", "build_redis_client"]
