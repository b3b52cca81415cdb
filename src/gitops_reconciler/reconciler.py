# ABOUTME: Reconciliation loop for one Application: observe, diff, plan, apply, health-check
# ABOUTME: Single-flight state machine with a pending-trigger slot, supersede, drift and backoff

"""
Reconciliation Loop.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller's spine. One ApplicationLoop per Application ties the stages
together and repeats them forever:

    resolve Revision (source.py)
        -> list live state (utils/client.py)
        -> diff (differ.py)
        -> plan (planner.py)
        -> apply (applier.py)
        -> wait healthy (health.py)
        -> record status, back to Idle

=============================================================================
STATE MACHINE
=============================================================================

                 new Revision / manual / drift (selfHeal)
        Idle ─────────────────────────────────────────────> Syncing
         ^                                                    │
         │        ┌───────────────────────────────────────────┤
         │        v                  v                        v
         │     Healthy            Degraded                  Failed
         │   all succeeded,    health timeout, or        PlanError, or a
         │   all Healthy       failures that blocked     terminal failure
         │                     nothing                   that blocked
         │                                                dependents
         └──────────── after status is recorded ──────────────┘

`status.state` is the current state; `status.outcome` keeps the last
terminal state after the loop has gone back to Idle.

=============================================================================
TRIGGERS
=============================================================================

    poll     the poll interval elapsed
    push     a client announced a new revision (de-duplicated against the
             last synced, the in-flight and the pending revision)
    manual   an operator asked for a sync or confirmed a pending plan
    drift    recorded when a poll finds live state diverged at an
             unchanged Revision

A trigger arriving while Syncing never starts a second sync. It fills the
single pending slot (higher priority wins: manual > push > drift > poll),
which is consumed as soon as the loop is Idle again. A push carrying a new
revision also SUPERSEDES the running sync: the Applier stops between
resources and what was already applied stays in place.

=============================================================================
WHEN DOES A CYCLE SYNC?
=============================================================================

    manual trigger                          always, unless the re-planned
                                            prune set holds resources the
                                            operator did not confirm
    nothing differs                         never
    autoSync off                            never; the plan is kept as
                                            `pending_plan` until confirmed
    new Revision                            yes, unless this Revision's last
                                            attempt failed (no hot retry loop)
    same Revision, live drifted             only with selfHeal on
"""

from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.applier import Applier
from gitops_reconciler.differ import diff
from gitops_reconciler.errors import AuthError, HealthTimeout, PlanError, ReconcilerError, SourceUnavailable
from gitops_reconciler.health import HealthEvaluator
from gitops_reconciler.models import (
    TRACKING_LABEL,
    ApplicationStatus,
    DesiredResource,
    ErrorRecord,
    HealthReport,
    HealthStatus,
    LoopState,
    OperationPhase,
    SyncOperation,
    TriggerReason,
)
from gitops_reconciler.planner import plan
from gitops_reconciler.utils.client import PlatformError
from gitops_reconciler.utils.logging import set_correlation_id

if TYPE_CHECKING:
    from gitops_reconciler.config import ApplicationSpec, LoopSettings
    from gitops_reconciler.models import Diff, LiveResource, Revision, SyncPlan
    from gitops_reconciler.source import SourceTracker
    from gitops_reconciler.utils.client import PlatformClient
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)

_TRIGGER_PRIORITY = {
    TriggerReason.POLL: 0,
    TriggerReason.DRIFT: 1,
    TriggerReason.PUSH: 2,
    TriggerReason.MANUAL: 3,
}


@dataclass
class Trigger:
    """
    A request to reconcile; `revision` is set for push notifications.

    `allowed_deletes` is the prune set an operator confirmed for a manual
    sync; None means the sync carries no delete confirmation to enforce.
    """

    reason: TriggerReason
    revision: str | None = None
    allowed_deletes: frozenset[str] | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def priority(self) -> int:
        return _TRIGGER_PRIORITY[self.reason]


class ApplicationLoop:
    """
    Reconciliation loop for one Application.

    Owns the Application's status, sync history and pending-trigger slot.
    Shares only the cluster client (and the source tracker's repository
    mirrors) with other loops.

    USAGE:
    ------
        loop = ApplicationLoop(spec, source=tracker, client=client, settings=loop_settings)
        task = asyncio.create_task(loop.run())
        loop.trigger(TriggerReason.PUSH, revision="4f2a9c...")
        loop.status.to_dict()
    """

    def __init__(
        self,
        spec: ApplicationSpec,
        *,
        source: SourceTracker,
        client: PlatformClient,
        settings: LoopSettings,
        audit: AuditLogger | None = None,
    ) -> None:
        self._spec = spec
        self._source = source
        self._client = client
        self._settings = settings
        self._audit = audit

        self.status = ApplicationStatus(name=spec.name)
        self.history: deque[SyncOperation] = deque(maxlen=settings.history_limit)
        self.transitions: deque[LoopState] = deque([LoopState.IDLE], maxlen=50)
        self.last_diff: Diff | None = None
        self.last_revision: Revision | None = None

        self._applier = Applier(
            client,
            spec.name,
            attempts=settings.apply_attempts,
            backoff_min=settings.apply_backoff_min,
            backoff_max=settings.apply_backoff_max,
            max_concurrency=settings.max_concurrent_applies,
            dry_run=settings.dry_run,
            audit=audit,
        )
        self._health = HealthEvaluator(
            client,
            timeout=settings.health_timeout,
            poll_interval=settings.health_poll_interval,
        )

        self._lock = asyncio.Lock()
        self._wakeup = asyncio.Event()
        self._cancel = asyncio.Event()
        self._pending: Trigger | None = None
        self._in_flight_revision: str | None = None
        self._failed_revision: str | None = None
        self._managed_kinds: dict[str, str] = {}
        self._consecutive_failures = 0

    # =========================================================================
    # PROPERTIES
    # =========================================================================

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> ApplicationSpec:
        return self._spec

    @property
    def client(self) -> PlatformClient:
        return self._client

    @property
    def is_syncing(self) -> bool:
        return self.status.state == LoopState.SYNCING

    @property
    def pending_trigger(self) -> Trigger | None:
        return self._pending

    def update_spec(self, spec: ApplicationSpec) -> None:
        """Replace the Application's policy; read at the start of the next cycle."""
        if spec.name != self._spec.name:
            raise ValueError(f"Cannot rename application '{self._spec.name}' to '{spec.name}'")
        self._spec = spec

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    def trigger(
        self,
        reason: TriggerReason,
        revision: str | None = None,
        *,
        allowed_deletes: frozenset[str] | None = None,
    ) -> bool:
        """
        Request a reconciliation.

        A push without a revision only fills the pending slot; it cannot
        supersede the running sync because nothing says the repository moved.

        Returns:
            False if the trigger was de-duplicated (a push for a revision
            already synced, in flight or pending), True otherwise.
        """
        log = logger.bind(application=self.name, reason=reason.value, revision=revision)

        if reason == TriggerReason.PUSH and revision:
            pending_revision = self._pending.revision if self._pending else None
            if revision in (self.status.last_synced_revision, self._in_flight_revision, pending_revision):
                log.debug("Trigger de-duplicated")
                return False

        new = Trigger(reason=reason, revision=revision, allowed_deletes=allowed_deletes)
        if self._pending is None or new.priority >= self._pending.priority:
            self._pending = new

        if (
            reason == TriggerReason.PUSH
            and revision
            and self._in_flight_revision is not None
            and revision != self._in_flight_revision
        ):
            log.info("Superseding in-flight sync", in_flight=self._in_flight_revision[:8])
            self._cancel.set()

        self._wakeup.set()
        log.debug("Trigger accepted")
        return True

    def confirm_sync(self, allowed_deletes: frozenset[str] | None = None) -> bool:
        """
        Execute the pending plan (re-planned against current state). False if none.

        With `allowed_deletes`, the re-planned sync is refused if it would
        prune anything outside that set.
        """
        if self.status.pending_plan is None:
            return False
        return self.trigger(TriggerReason.MANUAL, allowed_deletes=allowed_deletes)

    async def _next_trigger(self, delay: float) -> Trigger:
        if self._pending is None:
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=delay)
            except TimeoutError:
                pass
        self._wakeup.clear()
        trigger = self._pending or Trigger(reason=TriggerReason.POLL)
        self._pending = None
        return trigger

    # =========================================================================
    # MAIN LOOP
    # =========================================================================

    def error_backoff(self) -> float:
        """Delay after the current run of consecutive failures: base * 2^(n-1), capped."""
        if self._consecutive_failures == 0:
            return self._settings.poll_interval
        delay = self._settings.error_backoff_base * 2 ** (self._consecutive_failures - 1)
        return min(delay, self._settings.error_backoff_max)

    async def run(self) -> None:
        """Reconcile forever; stops only when the task is cancelled."""
        logger.info("Reconciliation loop started", application=self.name)
        delay = 0.0
        while True:
            trigger = await self._next_trigger(delay)
            try:
                await self.reconcile(trigger)
            except Exception as e:
                self._consecutive_failures += 1
                delay = self.error_backoff()
                if isinstance(e, ReconcilerError | PlatformError):
                    logger.warning(
                        "Reconciliation cycle failed, backing off",
                        application=self.name,
                        error=str(e),
                        failures=self._consecutive_failures,
                        delay=delay,
                    )
                else:
                    # The loop has no terminal state; record the defect and keep going
                    logger.exception(
                        "Unexpected reconciliation failure, backing off",
                        application=self.name,
                        failures=self._consecutive_failures,
                        delay=delay,
                    )
                    self.status.errors = [
                        ErrorRecord(
                            type=type(e).__name__,
                            message=str(e),
                            revision=self.status.target_revision,
                        )
                    ]
                    self.status.updated_at = datetime.now(UTC)
            else:
                self._consecutive_failures = 0
                delay = self._settings.poll_interval

    # =========================================================================
    # ONE CYCLE
    # =========================================================================

    def _transition(self, state: LoopState) -> None:
        if self.status.state != state:
            logger.info(
                "Loop state changed",
                application=self.name,
                previous=self.status.state.value,
                state=state.value,
            )
        self.status.state = state
        self.status.updated_at = datetime.now(UTC)
        self.transitions.append(state)

    def _desired(self, revision: Revision) -> list[DesiredResource]:
        """Declared resources, each carrying this Application's tracking label."""
        return [
            DesiredResource(
                document=r.document.with_label(TRACKING_LABEL, self.name),
                source_path=r.source_path,
            )
            for r in revision.resources
        ]

    async def _observe_live(self, desired: list[DesiredResource]) -> list[LiveResource]:
        """
        Live resources carrying our tracking label, of every kind we declare
        now or managed before (so removed kinds still show up as Orphaned).
        """
        kinds = dict(self._managed_kinds)
        for resource in desired:
            kinds[resource.kind] = resource.api_version

        selector = f"{TRACKING_LABEL}={self.name}"
        try:
            async with asyncio.TaskGroup() as group:
                listed = [
                    group.create_task(self._client.list(api_version, kind, label_selector=selector))
                    for kind, api_version in sorted(kinds.items())
                ]
        except ExceptionGroup as eg:
            # Remaining lists are already cancelled by the group
            raise eg.exceptions[0] from None
        live = [item for task in listed for item in task.result()]

        self._managed_kinds = {r.kind: r.api_version for r in desired}
        for item in live:
            self._managed_kinds.setdefault(item.document.kind, item.document.api_version)
        return live

    async def reconcile(self, trigger: Trigger | None = None) -> SyncOperation | None:
        """
        Run one observe -> diff -> plan -> apply -> health cycle.

        Returns:
            The SyncOperation if the cycle synced (or failed to plan), None
            if nothing was applied.

        Raises:
            SourceUnavailable, AuthError: Source could not be resolved.
            PlatformError: Live state could not be listed.
        """
        trigger = trigger or Trigger(reason=TriggerReason.POLL)
        async with self._lock:
            set_correlation_id("")
            self._cancel.clear()
            spec = self._spec
            log = logger.bind(application=self.name, trigger=trigger.reason.value)

            try:
                revision = await self._source.resolve_latest(spec)
            except (SourceUnavailable, AuthError) as e:
                log.warning("Source unavailable", error=str(e), error_type=type(e).__name__)
                self.status.errors = [e.to_record()]
                self.status.updated_at = datetime.now(UTC)
                raise

            log = log.bind(revision=revision.short_sha)
            self.last_revision = revision
            self.status.target_revision = revision.sha
            errors = [e.to_record() for e in revision.parse_errors]

            desired = self._desired(revision)
            try:
                live = await self._observe_live(desired)
            except PlatformError as e:
                log.warning("Live state unavailable", error=str(e))
                self.status.errors = [
                    *errors,
                    ErrorRecord(type="PlatformError", message=str(e), revision=revision.sha),
                ]
                self.status.updated_at = datetime.now(UTC)
                raise

            current = diff(desired, live, spec.ignore_differences)
            self.last_diff = current
            self.status.diff_summary = current.summary()

            try:
                sync_plan = plan(current, spec.sync_policy)
            except PlanError as e:
                e.revision = revision.sha
                if self._failed_revision == revision.sha and trigger.reason != TriggerReason.MANUAL:
                    # Already reported for this Revision
                    self.status.errors = [*errors, e.to_record()]
                    return None
                return self._plan_failed(trigger, revision, e, errors)

            reason = self._decide(trigger, revision, current, sync_plan)
            if reason is None:
                self._observe_health(desired, live)
                self.status.errors = errors
                self.status.updated_at = datetime.now(UTC)
                return None

            if trigger.allowed_deletes is not None:
                unconfirmed = sorted(
                    str(op.key)
                    for op in sync_plan.prune_operations
                    if str(op.key) not in trigger.allowed_deletes
                )
                if unconfirmed:
                    self._refuse_unconfirmed(revision, sync_plan, unconfirmed, errors)
                    return None

            return await self._sync(reason, revision, desired, sync_plan, errors)

    def _decide(
        self,
        trigger: Trigger,
        revision: Revision,
        current: Diff,
        sync_plan: SyncPlan,
    ) -> TriggerReason | None:
        """Reason to sync now, or None to stay Idle."""
        policy = self._spec.sync_policy
        log = logger.bind(application=self.name, revision=revision.short_sha)

        if trigger.reason == TriggerReason.MANUAL:
            return TriggerReason.MANUAL

        if not current.requires_sync(policy.prune):
            self.status.pending_plan = None
            if current.is_synced:
                self.status.last_synced_revision = revision.sha
                # Live state matches this Revision now, however it got there
                self._failed_revision = None
            return None

        if not policy.auto_sync:
            self.status.pending_plan = sync_plan
            log.info("Sync pending confirmation", operations=len(sync_plan.operations))
            return None

        if self._failed_revision == revision.sha:
            log.info("Not retrying automatic sync of a failed revision")
            return None

        if revision.sha != self.status.last_synced_revision:
            return trigger.reason

        if policy.self_heal:
            log.info("Live drift detected, self-healing")
            return TriggerReason.DRIFT

        log.info("Live drift detected, self-heal disabled")
        return None

    def _plan_failed(
        self,
        trigger: Trigger,
        revision: Revision,
        error: PlanError,
        errors: list[ErrorRecord],
    ) -> SyncOperation:
        logger.error("Plan rejected", application=self.name, revision=revision.short_sha, error=str(error))
        operation = self._new_operation(trigger.reason, revision)
        self._transition(LoopState.SYNCING)
        operation.start()
        operation.finish(OperationPhase.FAILED, str(error))
        self.status.operation = operation
        self.status.pending_plan = None
        self.status.errors = [*errors, error.to_record()]
        self._failed_revision = revision.sha
        self._finish(LoopState.FAILED)
        if self._audit:
            self._audit.log_error("plan", self.name, str(error))
        return operation

    def _refuse_unconfirmed(
        self,
        revision: Revision,
        sync_plan: SyncPlan,
        unconfirmed: list[str],
        errors: list[ErrorRecord],
    ) -> None:
        """Keep the plan for a fresh confirmation instead of pruning unconfirmed resources."""
        message = f"Sync refused: prune of {', '.join(unconfirmed)} was not confirmed"
        logger.warning(
            "Manual sync would prune unconfirmed resources",
            application=self.name,
            revision=revision.short_sha,
            unconfirmed=unconfirmed,
        )
        self.status.pending_plan = sync_plan
        self.status.errors = [
            *errors,
            ErrorRecord(type="ConfirmationRequired", message=message, revision=revision.sha),
        ]
        self.status.updated_at = datetime.now(UTC)
        if self._audit:
            self._audit.log_blocked("sync", self.name, message)

    def _new_operation(self, reason: TriggerReason, revision: Revision) -> SyncOperation:
        operation = SyncOperation(
            id=uuid.uuid4().hex[:8],
            application=self.name,
            revision=revision.sha,
            trigger=reason,
        )
        self.history.append(operation)
        return operation

    def _finish(self, outcome: LoopState) -> None:
        self._transition(outcome)
        self.status.outcome = outcome
        self._transition(LoopState.IDLE)

    def _observe_health(self, desired: list[DesiredResource], live: list[LiveResource]) -> None:
        """Health from the live state already listed this cycle; no extra calls."""
        by_key = {item.key: item for item in live}
        report = HealthReport(
            statuses={r.key: HealthEvaluator.evaluate(by_key.get(r.key)) for r in desired}
        )
        self._record_health(report)

    def _record_health(self, report: HealthReport) -> None:
        self.status.health = report.overall
        self.status.resource_health = {str(k): v for k, v in sorted(report.statuses.items())}

    async def _sync(
        self,
        reason: TriggerReason,
        revision: Revision,
        desired: list[DesiredResource],
        sync_plan: SyncPlan,
        errors: list[ErrorRecord],
    ) -> SyncOperation:
        log = logger.bind(application=self.name, revision=revision.short_sha, trigger=reason.value)
        operation = self._new_operation(reason, revision)
        operation.plan = sync_plan.describe()

        self.status.operation = operation
        self.status.pending_plan = None
        self._in_flight_revision = revision.sha
        self._transition(LoopState.SYNCING)
        operation.start()
        log.info("Sync started", operations=len(sync_plan.operations))

        try:
            return await self._execute(operation, revision, desired, sync_plan, errors)
        except Exception as e:
            operation.finish(OperationPhase.FAILED, f"Unexpected {type(e).__name__}: {e}")
            self._finish(LoopState.FAILED)
            raise
        finally:
            self._in_flight_revision = None
            if self.status.state == LoopState.SYNCING:
                self._transition(LoopState.IDLE)

    async def _execute(
        self,
        operation: SyncOperation,
        revision: Revision,
        desired: list[DesiredResource],
        sync_plan: SyncPlan,
        errors: list[ErrorRecord],
    ) -> SyncOperation:
        log = logger.bind(application=self.name, revision=revision.short_sha, trigger=operation.trigger.value)
        try:
            result = await self._applier.execute(sync_plan, revision.sha, cancel=self._cancel)
        finally:
            self._in_flight_revision = None
        operation.result = result

        if result.cancelled:
            operation.finish(
                OperationPhase.FAILED,
                "Superseded by a newer trigger; applied resources left in place",
            )
            log.info("Sync superseded", applied=len(result.succeeded))
            self.status.errors = errors
            self._transition(LoopState.IDLE)
            return operation

        for failed in result.failed:
            errors.append(
                ErrorRecord(
                    type=failed.error_type or "ApplyError",
                    message=failed.error or "",
                    resource=str(failed.key),
                    revision=revision.sha,
                )
            )

        blocking = result.blocking_failures
        if blocking:
            blocked = ", ".join(str(r.key) for r in result.blocked)
            operation.finish(
                OperationPhase.FAILED,
                f"{blocking[0].key}: {blocking[0].error} (blocked: {blocked})",
            )
            self.status.errors = errors
            self._failed_revision = revision.sha
            log.error("Sync failed", failed=[str(r.key) for r in blocking], blocked=blocked)
            self._finish(LoopState.FAILED)
            return operation

        if self._settings.dry_run:
            report = HealthReport(
                statuses={r.key: HealthStatus.UNKNOWN for r in desired}
            )
        else:
            report = await self._health.wait_healthy({r.key: r.api_version for r in desired})
        self._record_health(report)

        if report.timed_out:
            for key in report.unhealthy:
                errors.append(
                    HealthTimeout(
                        f"Not healthy after {self._settings.health_timeout:g}s",
                        resource=key,
                        revision=revision.sha,
                    ).to_record()
                )
        self.status.errors = errors

        if result.failed:
            self._failed_revision = revision.sha
            operation.finish(
                OperationPhase.DEGRADED,
                f"{len(result.failed)} operation(s) failed without blocking others",
            )
            outcome = LoopState.DEGRADED
        else:
            self._failed_revision = None
            # Nothing was persisted in dry-run mode
            if not self._settings.dry_run:
                self.status.last_synced_revision = revision.sha
            if report.timed_out:
                operation.finish(
                    OperationPhase.DEGRADED,
                    f"Health check timed out: {', '.join(str(k) for k in report.unhealthy)}",
                )
                outcome = LoopState.DEGRADED
            else:
                operation.finish(OperationPhase.SUCCEEDED, "Synced and healthy")
                outcome = LoopState.HEALTHY

        log.info("Sync finished", outcome=outcome.value, health=report.overall.value)
        self._finish(outcome)
        return operation
