"""
GroupPolicy controller
Keeps a concrete derivative policy in sync for every GroupPolicy with toGroups rules
"""

from typing import Any, Dict, Optional

import kopf
import redis
from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

from grouppolicy.core.config import CacheBackend, Settings
from grouppolicy.core.config import settings as controller_settings
from grouppolicy.core.exceptions import PolicyValidationError
from grouppolicy.core.logging import get_logger, setup_logging
from grouppolicy.models.policy import ParentPolicy
from grouppolicy.services.cache import DerivativeCache, RedisDerivativeCache
from grouppolicy.services.reconciler import DerivativeReconciler
from grouppolicy.services.resolver import BoundedRetryResolver, RedisGroupResolver
from grouppolicy.services.scheduler import TaskScheduler
from grouppolicy.services.status import KubernetesStatusSink, StatusPropagator
from grouppolicy.services.store import KubernetesPolicyStore

logger = get_logger("grouppolicy-controller")

# Derivatives are GroupPolicies too; only watch user-authored ones
PARENTS_ONLY = {controller_settings.parent_label: kopf.ABSENT}
RESOURCE = (
    controller_settings.policy_group,
    controller_settings.policy_version,
    controller_settings.policy_plural,
)


def load_kubernetes_config():
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


def build_reconciler(
    app_settings: Settings,
    api: client.CustomObjectsApi,
    redis_client: redis.Redis,
    scheduler: Optional[TaskScheduler] = None,
) -> DerivativeReconciler:
    """Wire the reconciler from settings and live clients."""
    store = KubernetesPolicyStore(
        api,
        app_settings.policy_group,
        app_settings.policy_version,
        app_settings.policy_plural,
        app_settings.policy_kind,
    )
    status = StatusPropagator(
        KubernetesStatusSink(
            api,
            app_settings.policy_group,
            app_settings.policy_version,
            app_settings.policy_plural,
        )
    )

    if app_settings.cache_backend == CacheBackend.REDIS:
        cache = RedisDerivativeCache(redis_client)
    else:
        cache = DerivativeCache()

    retry_resolver = BoundedRetryResolver(
        RedisGroupResolver(
            redis_client, app_settings.parent_label, app_settings.derivative_suffix
        ),
        status,
        max_attempts=app_settings.max_resolution_attempts,
        delay=app_settings.resolution_retry_delay,
        parent_label=app_settings.parent_label,
        derivative_suffix=app_settings.derivative_suffix,
    )

    return DerivativeReconciler(
        scheduler or TaskScheduler(),
        retry_resolver,
        store,
        cache,
        status,
        parent_label=app_settings.parent_label,
        key_mode=app_settings.task_key_mode,
    )


def parse_parent(body: Dict[str, Any]) -> ParentPolicy:
    try:
        return ParentPolicy.from_dict(body)
    except PolicyValidationError as e:
        raise kopf.PermanentError(f"Invalid GroupPolicy: {e}")


def parse_old_parent(body: Dict[str, Any], old: Optional[Dict[str, Any]]) -> ParentPolicy:
    """Rebuild the previous version; kopf's old essence may lack the uid."""
    old = old or {}
    return parse_parent(
        {
            "metadata": {**(old.get("metadata") or {}), **dict(body["metadata"])},
            "spec": old.get("spec") or {},
        }
    )


# ============================================================================
# KOPF HANDLERS
# ============================================================================


@kopf.on.create(*RESOURCE, labels=PARENTS_ONLY)
@kopf.on.resume(*RESOURCE, labels=PARENTS_ONLY)
async def policy_created(body: Dict[str, Any], memo: kopf.Memo, **kwargs):
    """Handle policy creation, and rebuild tracking after a restart"""
    parent = parse_parent(dict(body))
    logger.info(f"GroupPolicy {parent.identity} added")
    memo.reconciler.on_add(parent)


@kopf.on.update(*RESOURCE, labels=PARENTS_ONLY)
async def policy_updated(
    body: Dict[str, Any], old: Dict[str, Any], memo: kopf.Memo, **kwargs
):
    """Handle policy updates"""
    new_parent = parse_parent(dict(body))
    old_parent = parse_old_parent(dict(body), old)
    has_derivative = memo.reconciler.on_update(old_parent, new_parent)
    logger.info(
        f"GroupPolicy {new_parent.identity} changed, derivative required: {has_derivative}"
    )


@kopf.on.delete(*RESOURCE, labels=PARENTS_ONLY, optional=True)
async def policy_deleted(body: Dict[str, Any], memo: kopf.Memo, **kwargs):
    """Handle policy deletion"""
    parent = parse_parent(dict(body))
    logger.info(f"GroupPolicy {parent.identity} deleted")
    memo.reconciler.on_delete(parent)


# ============================================================================
# STARTUP AND SHUTDOWN
# ============================================================================


@kopf.on.startup()
async def startup_handler(settings: kopf.OperatorSettings, memo: kopf.Memo, **kwargs):
    """Configure kopf and build the reconciler"""
    app_settings = controller_settings
    setup_logging(app_settings)

    settings.posting.enabled = False
    settings.watching.server_timeout = 300
    settings.watching.client_timeout = 310
    settings.watching.connect_timeout = 10
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(
        prefix=app_settings.policy_group
    )
    settings.persistence.diffbase_storage = kopf.AnnotationsDiffBaseStorage(
        prefix=app_settings.policy_group
    )

    load_kubernetes_config()
    memo.redis = redis.Redis.from_url(
        app_settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
    )
    memo.reconciler = build_reconciler(
        app_settings, client.CustomObjectsApi(), memo.redis
    )

    logger.info("GroupPolicy controller ready")


@kopf.timer(
    *RESOURCE,
    labels=PARENTS_ONLY,
    interval=controller_settings.resync_interval,
    initial_delay=controller_settings.resync_interval,
)
async def periodic_resync(body: Dict[str, Any], memo: kopf.Memo, **kwargs):
    """Periodically refresh the derivative of a tracked policy"""
    parent = parse_parent(dict(body))
    if memo.reconciler.resync(parent):
        logger.debug(f"Submitted resync for GroupPolicy {parent.identity}")


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, **kwargs):
    """Cleanup tasks"""
    logger.info("GroupPolicy controller shutting down")

    await memo.reconciler.scheduler.shutdown()
    memo.redis.close()


@kopf.on.probe(id="health")
async def health_probe(memo: kopf.Memo, **kwargs):
    """Health check probe"""
    try:
        return {
            "status": "healthy",
            "tracked_derivatives": len(memo.reconciler.cache),
            "pending_tasks": len(memo.reconciler.scheduler.pending()),
        }
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}


def main():
    namespace = controller_settings.namespace
    kopf.run(
        clusterwide=not namespace,
        namespaces=[namespace] if namespace else [],
        liveness_endpoint=(
            f"http://{controller_settings.health_host}:"
            f"{controller_settings.health_port}/healthz"
        ),
    )


if __name__ == "__main__":
    main()
