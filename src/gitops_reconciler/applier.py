# ABOUTME: Applier executing sync plans against the platform resource API
# ABOUTME: Retries transient errors with backoff, blocks dependents of failures, honours cancellation

"""
Applier.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Executes a SyncPlan, one Operation at a time per dependency chain:

    applier = Applier(client, "guestbook", attempts=5)
    result = await applier.execute(plan, revision.sha, cancel=cancel_event)
    result.succeeded / result.failed / result.blocked

=============================================================================
FAILURE HANDLING
=============================================================================

Every platform error is classified by PlatformError.transient:

    TRANSIENT (timeout, 409 conflict, 429, 5xx)
        -> TransientApplyError, retried with exponential backoff up to
           `attempts` tries (tenacity AsyncRetrying)
    TERMINAL  (400/422 schema rejection, 401/403 permission denial, ...)
        -> TerminalApplyError, reported once, never retried

A failed operation BLOCKS every operation that depends on it (directly or
through another blocked one); those never reach the platform. Operations
with no dependency edge on the failure still run.

=============================================================================
CONCURRENCY AND CANCELLATION
=============================================================================

Operations whose dependencies have all finished run concurrently, bounded
by a semaphore. The cancel event is checked before each individual apply,
never during one: a superseded sync stops between resources and leaves
what it already applied in place.

=============================================================================
ATTRIBUTION
=============================================================================

Each write carries the annotation gitops-reconciler.io/revision=<sha> and
produces an audit entry naming Application, resource, operation and
Revision.
"""

from __future__ import annotations

import asyncio
import copy
from typing import TYPE_CHECKING

import structlog
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from gitops_reconciler.errors import TerminalApplyError, TransientApplyError
from gitops_reconciler.models import (
    REVISION_ANNOTATION,
    LiveResource,
    Operation,
    OperationResult,
    OperationType,
    ResultStatus,
    SyncPlan,
    SyncResult,
)
from gitops_reconciler.utils.client import PlatformError

if TYPE_CHECKING:
    from gitops_reconciler.models import ResourceKey
    from gitops_reconciler.utils.client import PlatformClient
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


class Applier:
    """
    Executes operations for one Application against one cluster client.

    The client is shared with other Applications; the Applier itself holds
    no state between `execute` calls.
    """

    def __init__(
        self,
        client: PlatformClient,
        application: str,
        *,
        attempts: int = 5,
        backoff_min: float = 1.0,
        backoff_max: float = 30.0,
        max_concurrency: int = 4,
        dry_run: bool = False,
        audit: AuditLogger | None = None,
    ) -> None:
        self._client = client
        self._application = application
        self._attempts = attempts
        self._backoff_min = backoff_min
        self._backoff_max = backoff_max
        self._max_concurrency = max_concurrency
        self._dry_run = dry_run
        self._audit = audit

    # =========================================================================
    # SINGLE OPERATION
    # =========================================================================

    async def _write(self, operation: Operation, revision: str) -> LiveResource | None:
        """One attempt; PlatformErrors are translated into the apply taxonomy."""
        key = operation.key
        try:
            if operation.type == OperationType.DELETE:
                await self._client.delete(
                    operation.api_version,
                    key.kind,
                    key.name,
                    key.namespace,
                    dry_run=self._dry_run,
                )
                return None

            if operation.manifest is None:
                raise TerminalApplyError(
                    f"{operation} has no manifest", resource=key, revision=revision
                )
            manifest = copy.deepcopy(operation.manifest)
            metadata = manifest.setdefault("metadata", {})
            metadata["annotations"] = {**(metadata.get("annotations") or {}), REVISION_ANNOTATION: revision}
            return await self._client.apply(manifest, dry_run=self._dry_run)
        except PlatformError as e:
            if e.transient:
                raise TransientApplyError(str(e), resource=key, revision=revision) from e
            raise TerminalApplyError(str(e), code=e.code, resource=key, revision=revision) from e
        except (TransientApplyError, TerminalApplyError):
            raise
        except Exception as e:
            # Anything else is a defect in this one resource; the rest of the plan still runs
            logger.exception("Unexpected apply failure", application=self._application, resource=str(key))
            raise TerminalApplyError(
                f"Unexpected {type(e).__name__}: {e}", resource=key, revision=revision
            ) from e

    async def apply(self, operation: Operation, revision: str) -> OperationResult:
        """
        Apply one operation, retrying transient failures.

        Never raises for platform failures: the outcome, attempt count and
        error text are in the returned OperationResult.
        """
        log = logger.bind(
            application=self._application,
            resource=str(operation.key),
            operation=operation.type.value,
            revision=revision[:8],
        )
        attempts = 0
        live = None
        status = ResultStatus.SUCCEEDED
        error: TransientApplyError | TerminalApplyError | None = None

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(TransientApplyError),
            stop=stop_after_attempt(self._attempts),
            wait=wait_exponential(
                multiplier=self._backoff_min,
                min=self._backoff_min,
                max=self._backoff_max,
            ),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    if attempts > 1:
                        log.info("Retrying operation", attempt=attempts)
                    live = await self._write(operation, revision)
        except (TransientApplyError, TerminalApplyError) as e:
            status = ResultStatus.FAILED
            error = e

        result = OperationResult(
            operation=operation,
            status=status,
            revision=revision,
            attempts=attempts,
            error=str(error) if error else None,
            error_type=type(error).__name__ if error else None,
            live=live,
        )

        if error:
            log.warning("Operation failed", attempts=attempts, error=str(error), error_type=result.error_type)
        else:
            log.info("Operation applied", attempts=attempts, dry_run=self._dry_run)

        if self._audit:
            self._audit.log_apply(
                self._application,
                str(operation.key),
                operation.type.value,
                revision,
                "dry_run" if self._dry_run and not error else status.value,
                attempts=attempts,
                error=result.error,
            )
        return result

    # =========================================================================
    # WHOLE PLAN
    # =========================================================================

    def _skip(
        self,
        operation: Operation,
        revision: str,
        status: ResultStatus,
        blocked_by: ResourceKey | None = None,
    ) -> OperationResult:
        if status == ResultStatus.BLOCKED:
            logger.warning(
                "Operation blocked by failed dependency",
                application=self._application,
                resource=str(operation.key),
                blocked_by=str(blocked_by),
            )
            if self._audit:
                self._audit.log_apply(
                    self._application,
                    str(operation.key),
                    operation.type.value,
                    revision,
                    status.value,
                    error=f"blocked by {blocked_by}",
                )
        return OperationResult(
            operation=operation,
            status=status,
            revision=revision,
            blocked_by=blocked_by,
        )

    async def _run_phase(
        self,
        operations: list[Operation],
        revision: str,
        cancel: asyncio.Event | None,
        results: dict[ResourceKey, OperationResult],
    ) -> None:
        planned = {op.key for op in operations}
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(op: Operation) -> None:
            async with semaphore:
                if cancel is not None and cancel.is_set():
                    results[op.key] = self._skip(op, revision, ResultStatus.CANCELLED)
                    return
                results[op.key] = await self.apply(op, revision)

        remaining = list(operations)
        while remaining:
            if cancel is not None and cancel.is_set():
                for op in remaining:
                    results[op.key] = self._skip(op, revision, ResultStatus.CANCELLED)
                return

            ready: list[Operation] = []
            waiting: list[Operation] = []
            for op in remaining:
                blocker = next(
                    (
                        dep
                        for dep in sorted(op.depends_on)
                        if dep in results and results[dep].status != ResultStatus.SUCCEEDED
                    ),
                    None,
                )
                if blocker is not None:
                    results[op.key] = self._skip(op, revision, ResultStatus.BLOCKED, blocker)
                elif all(dep in results or dep not in planned for dep in op.depends_on):
                    ready.append(op)
                else:
                    waiting.append(op)

            if not ready and waiting:
                # depends_on names an operation that can never finish first
                for op in waiting:
                    unresolved = min(d for d in op.depends_on if d in planned and d not in results)
                    results[op.key] = self._skip(op, revision, ResultStatus.BLOCKED, unresolved)
                return

            await asyncio.gather(*(guarded(op) for op in ready))
            remaining = waiting

    async def execute(
        self,
        plan: SyncPlan,
        revision: str,
        cancel: asyncio.Event | None = None,
    ) -> SyncResult:
        """
        Execute a plan: creates/updates first, then prunes.

        Args:
            plan: Ordered operations from the planner.
            revision: Revision id every write is attributed to.
            cancel: When set, operations not yet started are Cancelled.

        Returns:
            SyncResult with one OperationResult per planned operation, in
            plan order.
        """
        results: dict[ResourceKey, OperationResult] = {}
        await self._run_phase(plan.apply_operations, revision, cancel, results)
        await self._run_phase(plan.prune_operations, revision, cancel, results)

        ordered = [results[op.key] for op in plan.operations]
        cancelled = any(r.status == ResultStatus.CANCELLED for r in ordered)
        sync_result = SyncResult(revision=revision, results=ordered, cancelled=cancelled)
        logger.info(
            "Plan executed",
            application=self._application,
            revision=revision[:8],
            succeeded=len(sync_result.succeeded),
            failed=len(sync_result.failed),
            blocked=len(sync_result.blocked),
            cancelled=cancelled,
        )
        return sync_result
