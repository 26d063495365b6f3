"""Policy store client backed by the Kubernetes custom objects API."""

from typing import Any, Dict

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from grouppolicy.core.exceptions import PolicyStoreError
from grouppolicy.core.logging import get_logger
from grouppolicy.models.policy import DerivativePolicy

logger = get_logger(__name__)


class KubernetesPolicyStore:
    """Create/update derivatives by name and bulk-delete them by label."""

    def __init__(
        self,
        api: client.CustomObjectsApi,
        group: str,
        version: str,
        plural: str,
        kind: str,
    ):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural
        self.kind = kind

    @property
    def api_version(self) -> str:
        return f"{self.group}/{self.version}"

    def upsert_by_name(self, policy: DerivativePolicy) -> Dict[str, Any]:
        """Create the derivative, or replace its spec in place if it exists."""
        body = policy.to_body(self.api_version, self.kind)

        try:
            existing = self.api.get_namespaced_custom_object(
                self.group, self.version, policy.namespace, self.plural, policy.name
            )
        except ApiException as e:
            if e.status != 404:
                raise PolicyStoreError(
                    f"Failed to read {policy.namespace}/{policy.name}: {e.reason}"
                )
            existing = None

        try:
            if existing is None:
                logger.debug(f"Creating derivative {policy.namespace}/{policy.name}")
                return self.api.create_namespaced_custom_object(
                    self.group, self.version, policy.namespace, self.plural, body
                )

            metadata = existing.setdefault("metadata", {})
            metadata.setdefault("labels", {}).update(body["metadata"]["labels"])
            metadata["ownerReferences"] = body["metadata"]["ownerReferences"]
            existing["spec"] = body["spec"]
            logger.debug(f"Updating derivative {policy.namespace}/{policy.name}")
            return self.api.replace_namespaced_custom_object(
                self.group,
                self.version,
                policy.namespace,
                self.plural,
                policy.name,
                existing,
            )
        except ApiException as e:
            raise PolicyStoreError(
                f"Failed to write {policy.namespace}/{policy.name}: {e.reason}"
            )

    def delete_by_label_selector(self, namespace: str, key: str, value: str):
        """Delete every policy in namespace labelled key=value."""
        try:
            self.api.delete_collection_namespaced_custom_object(
                self.group,
                self.version,
                namespace,
                self.plural,
                label_selector=f"{key}={value}",
            )
        except ApiException as e:
            raise PolicyStoreError(
                f"Failed to delete policies with {key}={value} in {namespace}: {e.reason}"
            )
