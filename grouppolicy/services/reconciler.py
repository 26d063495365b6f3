"""Reconciliation of GroupPolicies into their derivative policies."""

import asyncio
from typing import Dict, List, Optional

from grouppolicy.core.config import TaskKeyMode
from grouppolicy.core.exceptions import PolicyStoreError
from grouppolicy.core.logging import get_policy_logger
from grouppolicy.core.metrics import ERROR_STORE, derivative_errors, reconcile_duration
from grouppolicy.models.policy import ParentPolicy
from grouppolicy.services.resolver import BoundedRetryResolver
from grouppolicy.services.status import StatusPropagator

OP_ADD = "add"
OP_UPDATE = "update"
OP_DELETE = "delete"
OP_RESYNC = "resync"


async def run_blocking(fn, *args):
    """Run fn in a worker thread. A cancelled caller still waits for it to land."""
    call = asyncio.ensure_future(asyncio.to_thread(fn, *args))
    try:
        return await asyncio.shield(call)
    except asyncio.CancelledError:
        await asyncio.wait({call})
        if not call.cancelled():
            call.exception()
        raise


class DerivativeReconciler:
    """Entry points called by the watch layer.

    Every entry point only decides whether work is needed and submits it to
    the scheduler; outcomes are observable through the parent status.

    The latest version seen for every live parent is kept so that a run
    working on an older version, or on a parent that has since been deleted,
    never refreshes the cache.
    """

    def __init__(
        self,
        scheduler,
        retry_resolver: BoundedRetryResolver,
        store,
        cache,
        status: StatusPropagator,
        parent_label: str = "parent",
        key_mode: TaskKeyMode = TaskKeyMode.PER_OPERATION,
    ):
        self.scheduler = scheduler
        self.retry_resolver = retry_resolver
        self.store = store
        self.cache = cache
        self.status = status
        self.parent_label = parent_label
        self.key_mode = key_mode
        self._live: Dict[str, ParentPolicy] = {}

    def task_key(self, operation: str, parent: ParentPolicy) -> str:
        if self.key_mode == TaskKeyMode.PER_PARENT:
            return parent.identity
        return f"{operation}:{parent.identity}"

    def is_current(self, parent: ParentPolicy) -> bool:
        """True if parent is still the latest known version of a live policy."""
        return self._live.get(parent.identity) == parent

    def on_add(self, parent: ParentPolicy) -> bool:
        """Submit derivative creation if the parent has group rules."""
        if not parent.requires_derivative():
            get_policy_logger(__name__, parent.name, parent.namespace).debug(
                "GroupPolicy does not have derivative policies, skipped"
            )
            return True

        self._live[parent.identity] = parent
        self._submit(OP_ADD, parent, lambda: self.reconcile(parent, OP_ADD))
        return True

    def on_update(self, old: ParentPolicy, new: ParentPolicy) -> bool:
        """Submit the work an update needs. Returns True if new has a derivative."""
        if not new.requires_derivative() and old.requires_derivative():
            get_policy_logger(__name__, new.name, new.namespace).info(
                "New GroupPolicy does not have derivative policy, but old had."
                " Deleting old policies"
            )
            self._submit_delete(old)
            return False

        if not new.requires_derivative():
            return False

        self._live[new.identity] = new
        self._submit(OP_UPDATE, new, lambda: self.reconcile(new, OP_UPDATE))
        return True

    def on_delete(self, parent: ParentPolicy) -> bool:
        """Submit removal of every derivative owned by the parent."""
        if not parent.requires_derivative():
            return True

        self._submit_delete(parent)
        return True

    def on_delete_from_cache(self, parent: ParentPolicy):
        """Stop tracking the parent without touching the store."""
        self._live.pop(parent.identity, None)
        self.cache.delete(parent)

    def resync(self, parent: ParentPolicy) -> bool:
        """Re-reconcile a tracked parent to pick up group membership changes.

        Runs under the update key, so a resync and an update of the same
        parent supersede each other instead of racing.
        """
        if not parent.requires_derivative() or not self.cache.contains(parent):
            return False

        # Update events may already have delivered a newer version
        parent = self._live.setdefault(parent.identity, parent)
        self._submit(OP_UPDATE, parent, lambda: self.reconcile(parent, OP_RESYNC))
        return True

    def _submit(self, operation: str, parent: ParentPolicy, work_fn):
        self.scheduler.submit(self.task_key(operation, parent), work_fn)

    def _submit_delete(self, parent: ParentPolicy):
        self._live.pop(parent.identity, None)
        superseded = self._cancel_reconciles(parent)

        async def work():
            if superseded:
                await asyncio.wait(superseded)
            await self.delete_derivative(parent)

        self._submit(OP_DELETE, parent, work)

    def _cancel_reconciles(self, parent: ParentPolicy) -> List[asyncio.Task]:
        """Cancel add/update runs for parent that do not share the delete key."""
        delete_key = self.task_key(OP_DELETE, parent)
        keys = {self.task_key(op, parent) for op in (OP_ADD, OP_UPDATE)} - {delete_key}

        cancelled = []
        for key in sorted(keys):
            task: Optional[asyncio.Task] = self.scheduler.cancel(key)
            if task is not None:
                cancelled.append(task)
        return cancelled

    async def reconcile(self, parent: ParentPolicy, operation: str = OP_UPDATE):
        """Resolve, install and report the derivative of one parent.

        Raises PolicyStoreError when the derivative cannot be written or
        tracked.
        """
        scoped_log = get_policy_logger(__name__, parent.name, parent.namespace)

        with reconcile_duration.labels(operation=operation).time():
            result = await self.retry_resolver.resolve(parent)
            derivative = result.policy

            try:
                await run_blocking(self.store.upsert_by_name, derivative)
                if self.is_current(parent):
                    self.cache.update(parent)
                else:
                    scoped_log.info(
                        "GroupPolicy changed or was deleted while writing"
                        f" {derivative.name}, not tracking this version"
                    )
            except PolicyStoreError as e:
                derivative_errors.labels(error_type=ERROR_STORE).inc()
                scoped_log.error(
                    f"Cannot write derivative policy {derivative.name}: {e}",
                    extra={"derivative": derivative.name},
                )
                await asyncio.to_thread(
                    self.status.propagate, parent, derivative.name, e
                )
                raise

            await asyncio.to_thread(
                self.status.propagate, parent, derivative.name, result.error
            )

        if result.is_fallback:
            scoped_log.warning(
                f"Installed deny-all derivative {derivative.name} after"
                f" {result.attempts} failed attempts"
            )
        else:
            scoped_log.info(f"Derivative policy {derivative.name} is up to date")

    async def delete_derivative(self, parent: ParentPolicy):
        """Delete every derivative labelled with the parent uid, then untrack it."""
        scoped_log = get_policy_logger(__name__, parent.name, parent.namespace)

        if not parent.requires_derivative():
            scoped_log.debug("GroupPolicy does not have derivative policies, skipped")
            return

        with reconcile_duration.labels(operation=OP_DELETE).time():
            try:
                await run_blocking(
                    self.store.delete_by_label_selector,
                    parent.namespace,
                    self.parent_label,
                    parent.uid,
                )
                self.cache.delete(parent)
            except PolicyStoreError as e:
                derivative_errors.labels(error_type=ERROR_STORE).inc()
                scoped_log.error(f"Cannot delete derivative policies: {e}")
                raise

        scoped_log.info("Deleted derivative policies")
