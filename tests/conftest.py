"""Pytest configuration and shared fixtures for grouppolicy tests."""

import asyncio
import copy
import time
from typing import Any, Dict, List, Optional, Tuple

import pytest
from fakeredis import FakeStrictRedis
from prometheus_client import REGISTRY

from grouppolicy.core.exceptions import PolicyStoreError, ResolutionError, StatusWriteError
from grouppolicy.models.policy import (
    DerivativePolicy,
    ParentPolicy,
    PolicyRule,
    new_derivative,
)
from grouppolicy.services.cache import DerivativeCache
from grouppolicy.services.reconciler import DerivativeReconciler
from grouppolicy.services.resolver import BoundedRetryResolver
from grouppolicy.services.status import StatusPropagator

# ============================================================================
# Redis Fixtures
# ============================================================================


@pytest.fixture(scope="session")
def fake_redis_session():
    """Single FakeRedis instance for entire test session."""
    return FakeStrictRedis(decode_responses=True)


@pytest.fixture(autouse=True)
def fake_redis(fake_redis_session):
    """Clear the session redis before each test."""
    fake_redis_session.flushdb()
    yield fake_redis_session


# ============================================================================
# Metrics
# ============================================================================


def error_count(error_type: str) -> float:
    value = REGISTRY.get_sample_value(
        "grouppolicy_derivative_errors_total", {"error_type": error_type}
    )
    return value or 0.0


@pytest.fixture
def error_counter():
    """Returns a callable giving the increase of an error counter since setup."""
    baseline = {t: error_count(t) for t in ("resolution", "status", "store")}

    def delta(error_type: str) -> float:
        return error_count(error_type) - baseline[error_type]

    return delta


# ============================================================================
# Collaborator fakes
# ============================================================================


class FakePolicyStore:
    """In-memory stand-in for the Kubernetes policy store."""

    def __init__(self):
        self.objects: Dict[Tuple[str, str], DerivativePolicy] = {}
        self.upserts: List[DerivativePolicy] = []
        self.deletes: List[Tuple[str, str, str]] = []
        self.fail_upsert = False
        self.fail_delete = False
        self.write_delay = 0.0

    def upsert_by_name(self, policy: DerivativePolicy) -> Dict[str, Any]:
        if self.fail_upsert:
            raise PolicyStoreError("store unavailable")
        if self.write_delay:
            time.sleep(self.write_delay)
        self.upserts.append(copy.deepcopy(policy))
        self.objects[(policy.namespace, policy.name)] = copy.deepcopy(policy)
        return {"metadata": {"name": policy.name}}

    def delete_by_label_selector(self, namespace: str, key: str, value: str):
        if self.fail_delete:
            raise PolicyStoreError("store unavailable")
        self.deletes.append((namespace, key, value))
        for ref, policy in list(self.objects.items()):
            if ref[0] == namespace and policy.labels.get(key) == value:
                del self.objects[ref]

    def labelled(self, key: str, value: str) -> List[DerivativePolicy]:
        return [p for p in self.objects.values() if p.labels.get(key) == value]


class FakeStatusSink:
    """Records every status write."""

    def __init__(self):
        self.writes: List[Tuple[str, str, Optional[str]]] = []
        self.fail = False

    def write_status(self, parent, derivative_name, error):
        if self.fail:
            raise StatusWriteError("status subresource unavailable")
        self.writes.append(
            (parent.identity, derivative_name, str(error) if error else None)
        )

    def last(self):
        return self.writes[-1] if self.writes else None


class ScriptedResolver:
    """Fails with ResolutionError the first `failures` calls, then resolves."""

    def __init__(self, cidrs=None, failures: int = 0):
        self.cidrs = cidrs or ["10.0.0.0/8"]
        self.failures = failures
        self.calls = 0

    async def resolve(self, parent: ParentPolicy) -> DerivativePolicy:
        self.calls += 1
        if self.calls <= self.failures:
            raise ResolutionError(f"group source throttled (call {self.calls})")
        return new_derivative(parent, [PolicyRule(to_cidr=list(self.cidrs))])


class RecordingScheduler:
    """Captures submissions; the latest work per key wins, like the real one."""

    def __init__(self):
        self.submitted: List[str] = []
        self.work: Dict[str, Any] = {}

    def submit(self, key, work_fn):
        self.submitted.append(key)
        self.work[key] = work_fn

    def cancel(self, key):
        self.work.pop(key, None)

    def run(self, key):
        return asyncio.run(self.work.pop(key)())

    def run_all(self):
        for key in list(self.work):
            self.run(key)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


# ============================================================================
# Policy Fixtures
# ============================================================================


def make_parent_body(
    name="web", namespace="ns", uid="u1", with_groups=True
) -> Dict[str, Any]:
    rules = [{"toPorts": [{"port": "443", "protocol": "TCP"}]}]
    if with_groups:
        rules = [
            {
                "toGroups": [{"provider": "aws", "groupIds": ["sg-1"]}],
                "toPorts": [{"port": "443", "protocol": "TCP"}],
            }
        ]
    return {
        "apiVersion": "grouppolicy.io/v1alpha1",
        "kind": "GroupPolicy",
        "metadata": {"name": name, "namespace": namespace, "uid": uid},
        "spec": {"endpointSelector": {"matchLabels": {"app": name}}, "rules": rules},
    }


@pytest.fixture
def group_parent():
    """Parent with one group-based rule."""
    return ParentPolicy.from_dict(make_parent_body())


@pytest.fixture
def plain_parent():
    """Same parent without group rules."""
    return ParentPolicy.from_dict(make_parent_body(with_groups=False))


# ============================================================================
# Reconciler Fixtures
# ============================================================================


@pytest.fixture
def store():
    return FakePolicyStore()


@pytest.fixture
def status_sink():
    return FakeStatusSink()


@pytest.fixture
def scheduler():
    return RecordingScheduler()


@pytest.fixture
def cache():
    return DerivativeCache()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def make_reconciler(scheduler, store, cache, status_sink, sleep):
    """Factory building a reconciler around a given group resolver."""

    def factory(resolver, **kwargs):
        status = StatusPropagator(status_sink)
        retry = BoundedRetryResolver(resolver, status, max_attempts=5, delay=5.0, sleep=sleep)
        return DerivativeReconciler(scheduler, retry, store, cache, status, **kwargs)

    return factory
