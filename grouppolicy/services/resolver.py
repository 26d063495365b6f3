"""Group resolution: turning toGroups references into concrete CIDR rules.

``RedisGroupResolver`` reads group membership published by an external
inventory sync. ``BoundedRetryResolver`` wraps any resolver with a fixed
attempt budget and a fixed delay, and falls back to a deny-all derivative
when the group source stays unavailable.
"""

import asyncio
import ipaddress
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from redis import Redis
from redis.exceptions import RedisError

from grouppolicy.core.exceptions import ResolutionError
from grouppolicy.core.logging import get_policy_logger
from grouppolicy.core.metrics import ERROR_RESOLUTION, derivative_errors
from grouppolicy.models.policy import (
    DerivativePolicy,
    ParentPolicy,
    PolicyRule,
    deny_all_derivative,
    new_derivative,
)
from grouppolicy.services.status import StatusPropagator

GROUP_CIDRS_KEY_PATTERN = "group:cidrs:{provider}:{group_id}"


class RedisGroupResolver:
    """Resolves groups from Redis sets keyed by provider and group id."""

    def __init__(
        self,
        redis_client: Redis,
        parent_label: str = "parent",
        derivative_suffix: str = "-derivative",
    ):
        self.redis = redis_client
        self.parent_label = parent_label
        self.derivative_suffix = derivative_suffix

    async def resolve(self, parent: ParentPolicy) -> DerivativePolicy:
        rules = [await asyncio.to_thread(self._resolve_rule, r) for r in parent.rules]
        return new_derivative(parent, rules, self.parent_label, self.derivative_suffix)

    def _resolve_rule(self, rule: PolicyRule) -> PolicyRule:
        if not rule.requires_derivative():
            return rule

        cidrs = set(rule.to_cidr)
        for ref in rule.to_groups:
            if not ref.group_ids:
                raise ResolutionError(f"Group reference for {ref.provider} has no ids")
            for group_id in ref.group_ids:
                cidrs.update(self._group_cidrs(ref.provider, group_id))

        return PolicyRule(
            action=rule.action,
            to_cidr=sorted(cidrs, key=_cidr_sort_key),
            extra=dict(rule.extra),
        )

    def _group_cidrs(self, provider: str, group_id: str) -> List[str]:
        key = GROUP_CIDRS_KEY_PATTERN.format(provider=provider, group_id=group_id)
        try:
            members = self.redis.smembers(key)
        except RedisError as e:
            raise ResolutionError(f"Cannot read group {provider}/{group_id}: {e}")

        if not members:
            raise ResolutionError(f"Group {provider}/{group_id} not found")

        cidrs = []
        for member in members:
            try:
                cidrs.append(str(ipaddress.ip_network(member, strict=False)))
            except ValueError:
                raise ResolutionError(
                    f"Group {provider}/{group_id} has invalid address {member!r}"
                )
        return cidrs


def _cidr_sort_key(cidr: str):
    network = ipaddress.ip_network(cidr, strict=False)
    return (network.version, network.network_address, network.prefixlen)


@dataclass
class ResolutionResult:
    """Resolved or fallback derivative, and the last resolution error."""

    policy: DerivativePolicy
    error: Optional[ResolutionError] = None
    attempts: int = 0

    @property
    def is_fallback(self) -> bool:
        return self.error is not None


class BoundedRetryResolver:
    """Drives a group resolver with a hard attempt cap and a fixed delay.

    The delay is deliberately flat: group sources are usually rate-limited
    per account, and every failing policy retrying quickly would exhaust the
    limit for all other policies too. Intermediate errors are never raised;
    they are counted, logged and written to the parent status against the
    deny-all fallback, which is what gets installed if no attempt succeeds.
    """

    def __init__(
        self,
        resolver,
        status: StatusPropagator,
        max_attempts: int = 5,
        delay: float = 5.0,
        parent_label: str = "parent",
        derivative_suffix: str = "-derivative",
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.resolver = resolver
        self.status = status
        self.max_attempts = max_attempts
        self.delay = delay
        self.parent_label = parent_label
        self.derivative_suffix = derivative_suffix
        self.sleep = sleep

    async def resolve(self, parent: ParentPolicy) -> ResolutionResult:
        scoped_log = get_policy_logger(__name__, parent.name, parent.namespace)
        fallback: Optional[DerivativePolicy] = None
        last_error: Optional[ResolutionError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                derivative = await self.resolver.resolve(parent)
                return ResolutionResult(policy=derivative, attempts=attempt)
            except ResolutionError as e:
                last_error = e
            except Exception as e:
                # Unknown resolver failures still fail closed
                last_error = ResolutionError(f"Unexpected resolver failure: {e}")
                last_error.__cause__ = e

            derivative_errors.labels(error_type=ERROR_RESOLUTION).inc()
            scoped_log.error(
                f"Cannot create derivative rule (attempt {attempt}/{self.max_attempts}),"
                f" installing deny-all rule: {last_error}"
            )
            if fallback is None:
                fallback = deny_all_derivative(
                    parent, self.parent_label, self.derivative_suffix
                )
            await asyncio.to_thread(
                self.status.propagate, parent, fallback.name, last_error
            )

            if attempt < self.max_attempts:
                await self.sleep(self.delay)

        return ResolutionResult(
            policy=fallback, error=last_error, attempts=self.max_attempts
        )
