"""Best-effort propagation of derivative outcomes onto the parent status."""

from typing import Optional

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from grouppolicy.core.exceptions import StatusWriteError
from grouppolicy.core.logging import get_policy_logger
from grouppolicy.core.metrics import ERROR_STATUS, derivative_errors
from grouppolicy.models.policy import DerivativeStatus, ParentPolicy


class KubernetesStatusSink:
    """Patches status.derivativePolicies on the parent GroupPolicy."""

    def __init__(self, api: client.CustomObjectsApi, group: str, version: str, plural: str):
        self.api = api
        self.group = group
        self.version = version
        self.plural = plural

    def write_status(
        self,
        parent: ParentPolicy,
        derivative_name: str,
        error: Optional[BaseException],
    ):
        status = DerivativeStatus.from_error(error)
        body = {"status": {"derivativePolicies": {derivative_name: status.to_dict()}}}

        try:
            self.api.patch_namespaced_custom_object_status(
                self.group,
                self.version,
                parent.namespace,
                self.plural,
                parent.name,
                body,
            )
        except ApiException as e:
            raise StatusWriteError(
                f"Failed to update status of {parent.identity}: {e.reason}"
            )


class StatusPropagator:
    """Writes outcomes through a status sink. Failures never escalate."""

    def __init__(self, sink):
        self.sink = sink

    def propagate(
        self,
        parent: ParentPolicy,
        derivative_name: str,
        error: Optional[BaseException] = None,
    ) -> bool:
        """Record the outcome, returning False if the write failed."""
        try:
            self.sink.write_status(parent, derivative_name, error)
            return True
        except Exception as e:
            derivative_errors.labels(error_type=ERROR_STATUS).inc()
            get_policy_logger(
                __name__, parent.name, parent.namespace, derivative=derivative_name
            ).error(f"Cannot update GroupPolicy status for derivative policy: {e}")
            return False
