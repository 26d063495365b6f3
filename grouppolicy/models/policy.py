"""GroupPolicy resource model: parent policies and their derivatives."""

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from grouppolicy.core.exceptions import PolicyValidationError

DENY_ALL_CIDRS = ["0.0.0.0/0", "::/0"]


class RuleAction(str, Enum):
    ALLOW = "Allow"
    DENY = "Deny"


@dataclass
class GroupReference:
    """Reference to an externally managed group, e.g. an AWS security group."""

    provider: str
    group_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"provider": self.provider, "groupIds": list(self.group_ids)}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GroupReference":
        if "provider" not in data:
            raise PolicyValidationError("toGroups entry must specify a provider")
        return cls(provider=data["provider"], group_ids=list(data.get("groupIds", [])))


@dataclass
class PolicyRule:
    """A single rule. Rules with toGroups entries need a derivative."""

    action: RuleAction = RuleAction.ALLOW
    to_groups: List[GroupReference] = field(default_factory=list)
    to_cidr: List[str] = field(default_factory=list)
    # Fields the controller does not interpret (toPorts, ...) pass through
    extra: Dict[str, Any] = field(default_factory=dict)

    def requires_derivative(self) -> bool:
        return bool(self.to_groups)

    def to_dict(self) -> Dict[str, Any]:
        data = copy.deepcopy(self.extra)
        data["action"] = self.action.value
        if self.to_groups:
            data["toGroups"] = [g.to_dict() for g in self.to_groups]
        if self.to_cidr:
            data["toCIDR"] = list(self.to_cidr)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PolicyRule":
        if not isinstance(data, Mapping):
            raise PolicyValidationError("Policy rule must be a dictionary")

        action = data.get("action", RuleAction.ALLOW.value)
        try:
            action = RuleAction(action)
        except ValueError:
            raise PolicyValidationError(f"Invalid rule action: {action}")

        extra = {
            k: copy.deepcopy(v)
            for k, v in data.items()
            if k not in ("action", "toGroups", "toCIDR")
        }
        return cls(
            action=action,
            to_groups=[GroupReference.from_dict(g) for g in data.get("toGroups", [])],
            to_cidr=list(data.get("toCIDR", [])),
            extra=extra,
        )

    @classmethod
    def deny_all(cls) -> "PolicyRule":
        return cls(action=RuleAction.DENY, to_cidr=list(DENY_ALL_CIDRS))


@dataclass
class DerivativeStatus:
    """Outcome of the last reconciliation for one derivative."""

    failed: bool = False
    error: str = ""
    last_updated: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failed": self.failed,
            "error": self.error,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_error(cls, error: Optional[BaseException]) -> "DerivativeStatus":
        return cls(
            failed=error is not None,
            error=str(error) if error is not None else "",
            last_updated=datetime.now(timezone.utc).isoformat(),
        )

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DerivativeStatus":
        return cls(
            failed=bool(data.get("failed", False)),
            error=data.get("error", ""),
            last_updated=data.get("lastUpdated", ""),
        )


@dataclass
class ParentPolicy:
    """User-authored GroupPolicy."""

    name: str
    namespace: str
    uid: str
    endpoint_selector: Dict[str, Any] = field(default_factory=dict)
    rules: List[PolicyRule] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    # Status churn does not make a different version of the policy
    derivative_status: Dict[str, DerivativeStatus] = field(
        default_factory=dict, compare=False
    )

    @property
    def identity(self) -> str:
        return f"{self.namespace}/{self.name}"

    def requires_derivative(self) -> bool:
        return any(rule.requires_derivative() for rule in self.rules)

    def spec_dict(self) -> Dict[str, Any]:
        return {
            "endpointSelector": copy.deepcopy(self.endpoint_selector),
            "rules": [r.to_dict() for r in self.rules],
        }

    def to_dict(self) -> Dict[str, Any]:
        """Serialized form kept by the Redis-backed cache."""
        return {
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "uid": self.uid,
                "labels": dict(self.labels),
            },
            "spec": self.spec_dict(),
            "status": {
                "derivativePolicies": {
                    k: v.to_dict() for k, v in self.derivative_status.items()
                }
            },
        }

    @classmethod
    def from_dict(cls, body: Mapping[str, Any]) -> "ParentPolicy":
        """Build from a GroupPolicy object body as delivered by the API."""
        meta = body.get("metadata") or {}
        spec = body.get("spec") or {}
        status = body.get("status") or {}

        for required in ("name", "uid"):
            if not meta.get(required):
                raise PolicyValidationError(f"GroupPolicy metadata must have a {required}")

        rules = spec.get("rules") or []
        if not isinstance(rules, list):
            raise PolicyValidationError("GroupPolicy spec.rules must be a list")

        return cls(
            name=meta["name"],
            namespace=meta.get("namespace") or "default",
            uid=meta["uid"],
            endpoint_selector=copy.deepcopy(dict(spec.get("endpointSelector") or {})),
            rules=[PolicyRule.from_dict(r) for r in rules],
            labels=dict(meta.get("labels") or {}),
            derivative_status={
                k: DerivativeStatus.from_dict(v)
                for k, v in (status.get("derivativePolicies") or {}).items()
            },
        )


@dataclass
class DerivativePolicy:
    """Generated GroupPolicy holding only concrete rules."""

    name: str
    namespace: str
    parent_name: str
    parent_uid: str
    endpoint_selector: Dict[str, Any] = field(default_factory=dict)
    rules: List[PolicyRule] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    def is_deny_all(self) -> bool:
        return len(self.rules) == 1 and self.rules[0] == PolicyRule.deny_all()

    def spec_dict(self) -> Dict[str, Any]:
        return {
            "endpointSelector": copy.deepcopy(self.endpoint_selector),
            "rules": [r.to_dict() for r in self.rules],
        }

    def to_body(self, api_version: str, kind: str) -> Dict[str, Any]:
        """Full custom object body, owned by the parent policy."""
        return {
            "apiVersion": api_version,
            "kind": kind,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "ownerReferences": [
                    {
                        "apiVersion": api_version,
                        "kind": kind,
                        "name": self.parent_name,
                        "uid": self.parent_uid,
                        "blockOwnerDeletion": True,
                    }
                ],
            },
            "spec": self.spec_dict(),
        }


def derivative_name(parent: ParentPolicy, suffix: str = "-derivative") -> str:
    """Deterministic derivative name for a parent."""
    return f"{parent.name}{suffix}"


def new_derivative(
    parent: ParentPolicy,
    rules: List[PolicyRule],
    parent_label: str = "parent",
    suffix: str = "-derivative",
) -> DerivativePolicy:
    """Derivative of parent carrying the given concrete rules."""
    return DerivativePolicy(
        name=derivative_name(parent, suffix),
        namespace=parent.namespace,
        parent_name=parent.name,
        parent_uid=parent.uid,
        endpoint_selector=copy.deepcopy(parent.endpoint_selector),
        rules=rules,
        labels={parent_label: parent.uid},
    )


def deny_all_derivative(
    parent: ParentPolicy, parent_label: str = "parent", suffix: str = "-derivative"
) -> DerivativePolicy:
    """Fail-closed derivative installed when groups cannot be resolved."""
    return new_derivative(parent, [PolicyRule.deny_all()], parent_label, suffix)
