# ABOUTME: Health evaluator assessing readiness of applied resources
# ABOUTME: Per-kind checks modelled on ArgoCD's built-in assessments, polling with timeout

"""
Health Evaluator.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

After a plan succeeds the loop asks: did the platform actually bring the
resources up? `evaluate(live)` answers for one resource:

    Healthy      the resource is doing what it was declared to do
    Progressing  not there yet (rollout in flight, pod starting, PVC pending)
    Degraded     failed (crash loop, failed job, lost volume)
    Unknown      could not be observed

`wait_healthy(...)` polls until every resource is Healthy or the deadline
passes. At the deadline whatever is not Healthy becomes Degraded and the
report is marked timed out; it is surfaced, never retried.

=============================================================================
PER-KIND CHECKS
=============================================================================

    Deployment   generation observed, all replicas updated and available
    StatefulSet  ready replicas, current revision == update revision
    DaemonSet    every scheduled pod updated and available
    ReplicaSet   available replicas, no ReplicaFailure condition
    Job          Complete -> Healthy, Failed -> Degraded
    Pod          Running with ready containers, image/crash errors Degraded
    PVC          Bound / Pending / Lost
    Service      LoadBalancer must have an ingress address
    Ingress      must have a load balancer address
    Namespace    Active
    HPA          no failed scaling condition
    CRD          Established

Anything else: a `Ready` condition if present, otherwise Healthy (a
ConfigMap is healthy by existing).
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.models import HealthReport, HealthStatus
from gitops_reconciler.utils.client import PlatformError

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from gitops_reconciler.models import LiveResource, ResourceKey
    from gitops_reconciler.utils.client import PlatformClient

    Check = Callable[[dict[str, Any]], HealthStatus]

logger = structlog.get_logger(__name__)

_CHECKS: dict[str, Check] = {}

# Container waiting reasons that will not resolve on their own.
_FATAL_WAITING_REASONS = frozenset(
    [
        "CrashLoopBackOff",
        "ErrImagePull",
        "ImagePullBackOff",
        "CreateContainerConfigError",
        "InvalidImageName",
        "CreateContainerError",
    ]
)


def _check(*kinds: str) -> Callable[[Check], Check]:
    def register(func: Check) -> Check:
        for kind in kinds:
            _CHECKS[kind] = func
        return func

    return register


def _condition(manifest: dict[str, Any], condition_type: str) -> dict[str, Any] | None:
    for condition in (manifest.get("status") or {}).get("conditions") or []:
        if condition.get("type") == condition_type:
            return condition
    return None


def _generation_observed(manifest: dict[str, Any]) -> bool:
    generation = (manifest.get("metadata") or {}).get("generation")
    observed = (manifest.get("status") or {}).get("observedGeneration")
    if generation is None or observed is None:
        return True
    return observed >= generation


# =============================================================================
# WORKLOADS
# =============================================================================


@_check("Deployment")
def _deployment(manifest: dict[str, Any]) -> HealthStatus:
    spec = manifest.get("spec") or {}
    status = manifest.get("status") or {}
    if spec.get("paused"):
        return HealthStatus.HEALTHY
    if not _generation_observed(manifest):
        return HealthStatus.PROGRESSING

    progressing = _condition(manifest, "Progressing")
    if progressing and progressing.get("reason") == "ProgressDeadlineExceeded":
        return HealthStatus.DEGRADED

    desired = spec.get("replicas", 1)
    updated = status.get("updatedReplicas", 0)
    if updated < desired:
        return HealthStatus.PROGRESSING
    if status.get("replicas", 0) > updated:
        return HealthStatus.PROGRESSING
    if status.get("availableReplicas", 0) < updated:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@_check("StatefulSet")
def _statefulset(manifest: dict[str, Any]) -> HealthStatus:
    spec = manifest.get("spec") or {}
    status = manifest.get("status") or {}
    if not _generation_observed(manifest):
        return HealthStatus.PROGRESSING
    strategy = spec.get("updateStrategy") or {}
    if strategy.get("type") == "OnDelete":
        return HealthStatus.HEALTHY

    desired = spec.get("replicas", 1)
    if status.get("readyReplicas", 0) < desired:
        return HealthStatus.PROGRESSING

    partition = ((strategy.get("rollingUpdate") or {}).get("partition")) or 0
    if partition:
        if status.get("updatedReplicas", 0) < desired - partition:
            return HealthStatus.PROGRESSING
        return HealthStatus.HEALTHY

    if status.get("updateRevision") and status.get("currentRevision") != status.get("updateRevision"):
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@_check("DaemonSet")
def _daemonset(manifest: dict[str, Any]) -> HealthStatus:
    spec = manifest.get("spec") or {}
    status = manifest.get("status") or {}
    if not _generation_observed(manifest):
        return HealthStatus.PROGRESSING
    if (spec.get("updateStrategy") or {}).get("type") == "OnDelete":
        return HealthStatus.HEALTHY

    desired = status.get("desiredNumberScheduled", 0)
    if status.get("updatedNumberScheduled", 0) < desired:
        return HealthStatus.PROGRESSING
    if status.get("numberAvailable", 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@_check("ReplicaSet")
def _replicaset(manifest: dict[str, Any]) -> HealthStatus:
    if not _generation_observed(manifest):
        return HealthStatus.PROGRESSING
    failure = _condition(manifest, "ReplicaFailure")
    if failure and failure.get("status") == "True":
        return HealthStatus.DEGRADED
    desired = (manifest.get("spec") or {}).get("replicas", 1)
    if (manifest.get("status") or {}).get("availableReplicas", 0) < desired:
        return HealthStatus.PROGRESSING
    return HealthStatus.HEALTHY


@_check("Job")
def _job(manifest: dict[str, Any]) -> HealthStatus:
    failed = _condition(manifest, "Failed")
    if failed and failed.get("status") == "True":
        return HealthStatus.DEGRADED
    complete = _condition(manifest, "Complete")
    if complete and complete.get("status") == "True":
        return HealthStatus.HEALTHY
    if (manifest.get("spec") or {}).get("suspend"):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


@_check("Pod")
def _pod(manifest: dict[str, Any]) -> HealthStatus:
    status = manifest.get("status") or {}
    phase = status.get("phase")
    if phase == "Succeeded":
        return HealthStatus.HEALTHY
    if phase == "Failed":
        return HealthStatus.DEGRADED

    container_statuses = (status.get("initContainerStatuses") or []) + (
        status.get("containerStatuses") or []
    )
    for container in container_statuses:
        waiting = (container.get("state") or {}).get("waiting") or {}
        if waiting.get("reason") in _FATAL_WAITING_REASONS:
            return HealthStatus.DEGRADED

    if phase == "Running":
        ready = status.get("containerStatuses") or []
        if ready and all(c.get("ready") for c in ready):
            return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


# =============================================================================
# STORAGE, NETWORKING, CLUSTER OBJECTS
# =============================================================================


@_check("PersistentVolumeClaim")
def _pvc(manifest: dict[str, Any]) -> HealthStatus:
    phase = (manifest.get("status") or {}).get("phase")
    if phase == "Bound":
        return HealthStatus.HEALTHY
    if phase == "Lost":
        return HealthStatus.DEGRADED
    return HealthStatus.PROGRESSING


def _has_load_balancer_address(manifest: dict[str, Any]) -> bool:
    return bool(((manifest.get("status") or {}).get("loadBalancer") or {}).get("ingress"))


@_check("Service")
def _service(manifest: dict[str, Any]) -> HealthStatus:
    if (manifest.get("spec") or {}).get("type") != "LoadBalancer":
        return HealthStatus.HEALTHY
    if _has_load_balancer_address(manifest):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


@_check("Ingress")
def _ingress(manifest: dict[str, Any]) -> HealthStatus:
    if _has_load_balancer_address(manifest):
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


@_check("Namespace")
def _namespace(manifest: dict[str, Any]) -> HealthStatus:
    phase = (manifest.get("status") or {}).get("phase", "Active")
    return HealthStatus.HEALTHY if phase == "Active" else HealthStatus.PROGRESSING


@_check("HorizontalPodAutoscaler")
def _hpa(manifest: dict[str, Any]) -> HealthStatus:
    for condition_type in ("AbleToScale", "ScalingActive"):
        condition = _condition(manifest, condition_type)
        if (
            condition
            and condition.get("status") == "False"
            and str(condition.get("reason", "")).startswith("Failed")
        ):
            return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


@_check("CustomResourceDefinition")
def _crd(manifest: dict[str, Any]) -> HealthStatus:
    names = _condition(manifest, "NamesAccepted")
    if names and names.get("status") == "False":
        return HealthStatus.DEGRADED
    established = _condition(manifest, "Established")
    if established and established.get("status") == "True":
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


def _generic(manifest: dict[str, Any]) -> HealthStatus:
    ready = _condition(manifest, "Ready")
    if ready is None:
        return HealthStatus.HEALTHY
    if ready.get("status") == "True":
        return HealthStatus.HEALTHY
    return HealthStatus.PROGRESSING


# =============================================================================
# EVALUATOR
# =============================================================================


class HealthEvaluator:
    """Evaluates and polls resource health through the shared cluster client."""

    def __init__(
        self,
        client: PlatformClient,
        *,
        timeout: float = 300.0,
        poll_interval: float = 5.0,
    ) -> None:
        self._client = client
        self._timeout = timeout
        self._poll_interval = poll_interval

    @staticmethod
    def evaluate(live: LiveResource | None) -> HealthStatus:
        """Health of one observed resource; None (not found) is Unknown."""
        if live is None:
            return HealthStatus.UNKNOWN
        check = _CHECKS.get(live.document.kind, _generic)
        return check(live.manifest)

    async def _observe_one(self, key: ResourceKey, api_version: str) -> HealthStatus:
        try:
            live = await self._client.get(api_version, key.kind, key.name, key.namespace)
        except PlatformError as e:
            logger.debug("Health poll failed", resource=str(key), error=str(e))
            return HealthStatus.UNKNOWN
        return self.evaluate(live)

    async def observe(self, resources: Mapping[ResourceKey, str]) -> HealthReport:
        """One polling round over `resources` (identity -> apiVersion)."""
        keys = sorted(resources)
        statuses = await asyncio.gather(*(self._observe_one(k, resources[k]) for k in keys))
        return HealthReport(statuses=dict(zip(keys, statuses, strict=True)))

    async def wait_healthy(
        self,
        resources: Mapping[ResourceKey, str],
        timeout: float | None = None,
    ) -> HealthReport:
        """
        Poll until every resource is Healthy or the timeout elapses.

        Args:
            resources: identity -> apiVersion of every resource to watch.
            timeout: Seconds; defaults to the evaluator's configured timeout.

        Returns:
            The last report. On timeout every non-Healthy resource is
            Degraded and `timed_out` is True.
        """
        timeout = self._timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            report = await self.observe(resources)
            if report.overall == HealthStatus.HEALTHY:
                return report

            remaining = deadline - loop.time()
            if remaining <= 0:
                for key in report.unhealthy:
                    report.statuses[key] = HealthStatus.DEGRADED
                report.timed_out = True
                logger.warning(
                    "Health check timed out",
                    timeout=timeout,
                    unhealthy=[str(k) for k in report.unhealthy],
                )
                return report

            await asyncio.sleep(min(self._poll_interval, remaining))
