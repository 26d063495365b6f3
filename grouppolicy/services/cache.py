"""Tracking of parent policies that currently own a derivative."""

import json
import threading
from typing import Dict, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from grouppolicy.core.exceptions import PolicyStoreError, PolicyValidationError
from grouppolicy.core.logging import get_logger
from grouppolicy.core.metrics import tracked_derivatives_gauge
from grouppolicy.models.policy import ParentPolicy

logger = get_logger(__name__)

CACHE_HASH_KEY = "derivatives:parents"


class DerivativeCache:
    """In-process cache keyed by parent identity (namespace/name)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._parents: Dict[str, ParentPolicy] = {}

    def update(self, parent: ParentPolicy):
        with self._lock:
            self._parents[parent.identity] = parent
            size = len(self._parents)
        tracked_derivatives_gauge.set(size)

    def delete(self, parent: ParentPolicy):
        with self._lock:
            self._parents.pop(parent.identity, None)
            size = len(self._parents)
        tracked_derivatives_gauge.set(size)

    def get(self, identity: str) -> Optional[ParentPolicy]:
        with self._lock:
            return self._parents.get(identity)

    def contains(self, parent: ParentPolicy) -> bool:
        with self._lock:
            return parent.identity in self._parents

    def list(self) -> List[ParentPolicy]:
        with self._lock:
            return list(self._parents.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._parents)


class RedisDerivativeCache:
    """Cache shared between controller replicas through a Redis hash."""

    def __init__(self, redis_client: Redis, key: str = CACHE_HASH_KEY):
        self.redis = redis_client
        self.key = key

    def update(self, parent: ParentPolicy):
        try:
            self.redis.hset(self.key, parent.identity, json.dumps(parent.to_dict()))
            tracked_derivatives_gauge.set(self.redis.hlen(self.key))
        except RedisError as e:
            raise PolicyStoreError(f"Failed to track {parent.identity}: {e}")

    def delete(self, parent: ParentPolicy):
        try:
            self.redis.hdel(self.key, parent.identity)
            tracked_derivatives_gauge.set(self.redis.hlen(self.key))
        except RedisError as e:
            raise PolicyStoreError(f"Failed to untrack {parent.identity}: {e}")

    def get(self, identity: str) -> Optional[ParentPolicy]:
        data = self.redis.hget(self.key, identity)
        if not data:
            return None
        return ParentPolicy.from_dict(json.loads(data))

    def contains(self, parent: ParentPolicy) -> bool:
        return bool(self.redis.hexists(self.key, parent.identity))

    def list(self) -> List[ParentPolicy]:
        parents = []
        for identity, data in self.redis.hgetall(self.key).items():
            try:
                parents.append(ParentPolicy.from_dict(json.loads(data)))
            except (ValueError, TypeError, PolicyValidationError) as e:
                logger.error(f"Dropping unreadable cache entry {identity}: {e}")
        return parents

    def __len__(self) -> int:
        return self.redis.hlen(self.key)
