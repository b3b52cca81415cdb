# ABOUTME: Sync planner turning a Diff into an ordered, dependency-aware operation list
# ABOUTME: Topological sort over references, namespaces, CRDs and sync waves; prune policy

"""
Sync Planner.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

`plan(diff, policy)` decides WHAT to do (create, update, delete) and in
WHICH ORDER. It never talks to the platform.

=============================================================================
THE DEPENDENCY GRAPH
=============================================================================

Nodes are every declared resource (in-sync ones included, so ordering
through an unchanged resource is still respected). An edge A -> B means
"A must be applied before B". Edges come from:

    Namespace        -> every resource in that namespace
    referenced object -> consumer   (ConfigMap/Secret/PVC/ServiceAccount in
                                     a pod template, Role in a RoleBinding,
                                     Service behind an Ingress, ...)
    CRD              -> custom resources of the kind it defines
    depends-on annotation  gitops-reconciler.io/depends-on: "Kind/ns/name"
    sync waves       every resource of wave N -> every resource of the next
                     higher wave

A cycle anywhere in the graph is a PlanError and NO operation is emitted;
half a plan is worse than none.

=============================================================================
DETERMINISM
=============================================================================

Kahn's algorithm with a heap: among resources whose dependencies are all
satisfied, the one with the lowest (kind rank, identity) goes first. Same
Diff, same plan, every time.

=============================================================================
PRUNE
=============================================================================

Orphaned resources become Delete operations only with prune on, and then
after every create/update, dependents before what they depend on (a
Namespace is deleted after the Deployments in it). With prune off they are
listed in `skipped_orphans` and never appear as an operation.
"""

from __future__ import annotations

import heapq
from collections import defaultdict
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.errors import PlanError
from gitops_reconciler.models import (
    CustomResourceDefinition,
    Operation,
    OperationType,
    ResourceKey,
    SyncPlan,
    SyncState,
)

if TYPE_CHECKING:
    from gitops_reconciler.config import SyncPolicy
    from gitops_reconciler.models import Diff, ResourceDocument

logger = structlog.get_logger(__name__)

# Apply order for independent resources, the same order ArgoCD uses.
KIND_ORDER = (
    "Namespace",
    "NetworkPolicy",
    "ResourceQuota",
    "LimitRange",
    "PodSecurityPolicy",
    "PodDisruptionBudget",
    "ServiceAccount",
    "Secret",
    "SecretList",
    "ConfigMap",
    "StorageClass",
    "PersistentVolume",
    "PersistentVolumeClaim",
    "CustomResourceDefinition",
    "ClusterRole",
    "ClusterRoleList",
    "ClusterRoleBinding",
    "ClusterRoleBindingList",
    "Role",
    "RoleList",
    "RoleBinding",
    "RoleBindingList",
    "Service",
    "DaemonSet",
    "Pod",
    "ReplicationController",
    "ReplicaSet",
    "Deployment",
    "HorizontalPodAutoscaler",
    "StatefulSet",
    "Job",
    "CronJob",
    "IngressClass",
    "Ingress",
    "APIService",
)

_KIND_RANK = {kind: rank for rank, kind in enumerate(KIND_ORDER)}


def kind_rank(kind: str) -> int:
    """Position of a kind in KIND_ORDER; unknown kinds sort after all known ones."""
    return _KIND_RANK.get(kind, len(KIND_ORDER))


def _sort_key(key: ResourceKey) -> tuple[int, ResourceKey]:
    return kind_rank(key.kind), key


# =============================================================================
# GRAPH CONSTRUCTION
# =============================================================================


def build_dependencies(
    documents: dict[ResourceKey, ResourceDocument],
) -> dict[ResourceKey, set[ResourceKey]]:
    """
    Map each resource to the resources it depends on.

    Only edges between the given documents are kept: a reference to
    something outside the set (a Secret managed elsewhere, the default
    ServiceAccount) is assumed to exist already.
    """
    definitions = {
        doc.defines: key
        for key, doc in documents.items()
        if isinstance(doc, CustomResourceDefinition)
    }

    deps: dict[ResourceKey, set[ResourceKey]] = {}
    by_wave: dict[int, list[ResourceKey]] = defaultdict(list)
    for key, doc in documents.items():
        wanted = set(doc.references())
        try:
            wanted |= doc.explicit_dependencies()
        except ValueError as e:
            logger.warning("Ignoring malformed depends-on annotation", resource=str(key), error=str(e))
        if doc.namespace:
            wanted.add(ResourceKey("Namespace", "", doc.namespace))
        definition = definitions.get((doc.group, doc.kind))
        if definition:
            wanted.add(definition)
        deps[key] = {k for k in wanted if k in documents and k != key}
        by_wave[doc.sync_wave].append(key)

    waves = sorted(by_wave)
    for previous, current in zip(waves, waves[1:], strict=False):
        for key in by_wave[current]:
            deps[key].update(by_wave[previous])

    return deps


def _find_cycle(
    deps: dict[ResourceKey, set[ResourceKey]],
    remaining: set[ResourceKey],
) -> list[ResourceKey]:
    """
    Walk unresolved dependencies until a node repeats.

    Every node left over by Kahn's algorithm has at least one dependency
    that is also left over, so the walk always closes a cycle.
    """
    path: list[ResourceKey] = []
    position: dict[ResourceKey, int] = {}
    node = min(remaining)
    while node not in position:
        position[node] = len(path)
        path.append(node)
        node = min(d for d in deps[node] if d in remaining)
    return [*path[position[node] :], node]


def topological_order(deps: dict[ResourceKey, set[ResourceKey]]) -> list[ResourceKey]:
    """
    Dependencies-first order, ties broken by kind rank then identity.

    Raises:
        PlanError: If the graph has a cycle.
    """
    pending = {key: len(d) for key, d in deps.items()}
    dependents: dict[ResourceKey, list[ResourceKey]] = defaultdict(list)
    for key, d in deps.items():
        for dep in d:
            dependents[dep].append(key)

    ready = [_sort_key(key) for key, count in pending.items() if count == 0]
    heapq.heapify(ready)
    order: list[ResourceKey] = []
    while ready:
        _, key = heapq.heappop(ready)
        order.append(key)
        for dependent in dependents[key]:
            pending[dependent] -= 1
            if pending[dependent] == 0:
                heapq.heappush(ready, _sort_key(dependent))

    if len(order) != len(deps):
        cycle = _find_cycle(deps, set(deps) - set(order))
        raise PlanError(
            "Dependency cycle: " + " -> ".join(str(k) for k in cycle),
            cycle=cycle,
        )
    return order


def _operated_dependencies(
    key: ResourceKey,
    deps: dict[ResourceKey, set[ResourceKey]],
    operated: set[ResourceKey],
) -> frozenset[ResourceKey]:
    """Operated keys reachable from `key` through resources that need no operation."""
    found: set[ResourceKey] = set()
    seen: set[ResourceKey] = set()
    stack = list(deps[key])
    while stack:
        dep = stack.pop()
        if dep in seen:
            continue
        seen.add(dep)
        if dep in operated:
            found.add(dep)
        else:
            stack.extend(deps[dep])
    return frozenset(found)


# =============================================================================
# PLAN
# =============================================================================


def _prune_operations(diff: Diff) -> list[Operation]:
    """Delete operations for orphans, dependents first."""
    documents = {entry.key: entry.live.document for entry in diff.orphaned if entry.live}
    deps = build_dependencies(documents)
    try:
        creation_order = topological_order(deps)
    except PlanError as e:
        # Live objects can reference each other in ways manifests never did
        logger.warning("Cycle among orphaned resources, deleting by kind order", error=str(e))
        creation_order = sorted(deps, key=_sort_key)

    dependents: dict[ResourceKey, set[ResourceKey]] = defaultdict(set)
    for key, d in deps.items():
        for dep in d:
            dependents[dep].add(key)

    operations = []
    for key in reversed(creation_order):
        document = documents[key]
        operations.append(
            Operation(
                type=OperationType.DELETE,
                key=key,
                api_version=document.api_version,
                depends_on=frozenset(dependents[key]),
                wave=document.sync_wave,
            )
        )
    return operations


def plan(diff: Diff, policy: SyncPolicy) -> SyncPlan:
    """
    Convert a Diff into an ordered SyncPlan.

    Args:
        diff: Classification of desired vs live state.
        policy: Application sync policy (prune and auto_sync are consulted).

    Returns:
        SyncPlan with creates/updates in dependency order followed by
        deletes (prune on only). `requires_confirmation` is set when
        auto_sync is off.

    Raises:
        PlanError: The dependency graph of declared resources has a cycle.
    """
    documents = {
        entry.key: entry.desired.document
        for entry in diff.resources.values()
        if entry.desired is not None
    }
    deps = build_dependencies(documents)
    order = topological_order(deps)

    operated = {
        key
        for key in order
        if diff.state_of(key) in (SyncState.MISSING, SyncState.OUT_OF_SYNC)
    }

    operations: list[Operation] = []
    for key in order:
        if key not in operated:
            continue
        document = documents[key]
        op_type = (
            OperationType.CREATE
            if diff.state_of(key) == SyncState.MISSING
            else OperationType.UPDATE
        )
        operations.append(
            Operation(
                type=op_type,
                key=key,
                api_version=document.api_version,
                manifest=document.to_apply(),
                depends_on=_operated_dependencies(key, deps, operated),
                wave=document.sync_wave,
            )
        )

    skipped: list[ResourceKey] = []
    if policy.prune:
        operations.extend(_prune_operations(diff))
    else:
        skipped = [entry.key for entry in diff.orphaned]

    result = SyncPlan(
        operations=operations,
        requires_confirmation=not policy.auto_sync,
        skipped_orphans=skipped,
    )
    logger.debug(
        "Plan computed",
        operations=len(result.operations),
        prune=len(result.prune_operations),
        skipped_orphans=len(skipped),
    )
    return result
