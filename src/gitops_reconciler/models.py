# ABOUTME: Data model for the reconciliation controller
# ABOUTME: Resource identities, tagged resource variants, revisions, diffs, plans and sync records

"""
Data model shared by every stage of the reconciliation cycle.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The cycle observe -> diff -> plan -> apply -> health-check passes a handful of
values between stages. They all live here so each stage module only depends
on the model, never on another stage:

    ResourceKey        (kind, namespace, name) identity
    ResourceDocument   tagged variant per kind, GenericResource fallback
    DesiredResource    a document declared at a Revision
    LiveResource       a document observed on the platform
    Revision           immutable commit + parsed desired resources
    Diff               identity -> InSync | OutOfSync(fields) | Missing | Orphaned
    Operation/SyncPlan ordered create/update/delete work
    OperationResult    per-operation outcome attributed to a Revision
    SyncOperation      one attempt to converge an Application
    ApplicationStatus  what the status surface reads

=============================================================================
WHY TAGGED VARIANTS?
=============================================================================

Manifests are schema-less YAML. Rather than duck-typing dicts everywhere, a
registry maps `kind` to a ResourceDocument subclass that knows:

- whether the kind is namespaced
- which other resources it references (for dependency ordering)
- which fields are tracked for drift (and how to normalize them)

Unknown kinds (custom resources) fall back to GenericResource, a plain
field bag that tracks everything except metadata noise and status.
"""

from __future__ import annotations

import base64
import copy
import hashlib
import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from gitops_reconciler.errors import ParseError

# =============================================================================
# WELL-KNOWN LABELS AND ANNOTATIONS
# =============================================================================

TRACKING_LABEL = "app.kubernetes.io/instance"
SYNC_WAVE_ANNOTATION = "argocd.argoproj.io/sync-wave"
DEPENDS_ON_ANNOTATION = "gitops-reconciler.io/depends-on"
REVISION_ANNOTATION = "gitops-reconciler.io/revision"

# Metadata keys the platform owns; never compared, never sent back.
_SERVER_METADATA = frozenset(
    [
        "uid",
        "resourceVersion",
        "generation",
        "creationTimestamp",
        "deletionTimestamp",
        "deletionGracePeriodSeconds",
        "managedFields",
        "selfLink",
        "ownerReferences",
        "finalizers",
    ]
)

CLUSTER_SCOPED_KINDS = frozenset(
    [
        "Namespace",
        "Node",
        "PersistentVolume",
        "StorageClass",
        "CustomResourceDefinition",
        "ClusterRole",
        "ClusterRoleBinding",
        "PriorityClass",
        "IngressClass",
        "MutatingWebhookConfiguration",
        "ValidatingWebhookConfiguration",
        "APIService",
        "RuntimeClass",
    ]
)


# =============================================================================
# RESOURCE IDENTITY
# =============================================================================


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a resource within an Application: (kind, namespace, name)."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"

    @classmethod
    def parse(cls, ref: str, default_namespace: str = "") -> ResourceKey:
        """
        Parse "Kind/namespace/name" or "Kind/name".

        Raises:
            ValueError: If the reference has fewer than two or more than three parts.
        """
        parts = [p for p in ref.strip().split("/") if p]
        if len(parts) == 3:
            return cls(parts[0], parts[1], parts[2])
        if len(parts) == 2:
            namespace = "" if parts[0] in CLUSTER_SCOPED_KINDS else default_namespace
            return cls(parts[0], namespace, parts[1])
        raise ValueError(f"Invalid resource reference '{ref}'")


# =============================================================================
# TAGGED RESOURCE VARIANTS
# =============================================================================

_REGISTRY: dict[str, type[ResourceDocument]] = {}


class ResourceDocument:
    """
    A declarative resource document of one kind.

    Subclasses register themselves per kind through `__init_subclass__`.
    Use `ResourceDocument.from_manifest()` rather than instantiating a
    subclass directly; it picks the right variant for the manifest's kind.
    """

    kinds: ClassVar[tuple[str, ...]] = ()
    namespaced: ClassVar[bool] = True

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        for kind in cls.kinds:
            _REGISTRY[kind] = cls

    def __init__(self, manifest: dict[str, Any], default_namespace: str = "") -> None:
        self.manifest = copy.deepcopy(manifest)
        metadata = self.manifest.setdefault("metadata", {})
        for field_name in ("labels", "annotations"):
            if metadata.get(field_name) is None:
                metadata.pop(field_name, None)
        if self.is_namespaced():
            if not metadata.get("namespace"):
                metadata["namespace"] = default_namespace
        else:
            metadata.pop("namespace", None)

    @classmethod
    def from_manifest(cls, manifest: dict[str, Any], default_namespace: str = "") -> ResourceDocument:
        """Build the variant registered for the manifest's kind, or GenericResource."""
        variant = _REGISTRY.get(str(manifest.get("kind", "")), GenericResource)
        return variant(manifest, default_namespace)

    # -------------------------------------------------------------------------
    # IDENTITY
    # -------------------------------------------------------------------------

    def is_namespaced(self) -> bool:
        return self.namespaced

    @property
    def kind(self) -> str:
        return str(self.manifest.get("kind", ""))

    @property
    def api_version(self) -> str:
        return str(self.manifest.get("apiVersion", ""))

    @property
    def group(self) -> str:
        """API group ("" for the core group)."""
        return self.api_version.rpartition("/")[0]

    @property
    def name(self) -> str:
        return str(self.manifest["metadata"].get("name", ""))

    @property
    def namespace(self) -> str:
        return str(self.manifest["metadata"].get("namespace", "") or "")

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.namespace, self.name)

    @property
    def labels(self) -> dict[str, str]:
        return dict(self.manifest["metadata"].get("labels") or {})

    @property
    def annotations(self) -> dict[str, str]:
        return dict(self.manifest["metadata"].get("annotations") or {})

    # -------------------------------------------------------------------------
    # ORDERING HINTS
    # -------------------------------------------------------------------------

    @property
    def sync_wave(self) -> int:
        """Sync wave from the annotation; malformed or missing values are wave 0."""
        try:
            return int(self.annotations.get(SYNC_WAVE_ANNOTATION, "0"))
        except ValueError:
            return 0

    def explicit_dependencies(self) -> set[ResourceKey]:
        """Keys named in the depends-on annotation."""
        raw = self.annotations.get(DEPENDS_ON_ANNOTATION, "")
        deps = set()
        for ref in raw.split(","):
            if ref.strip():
                deps.add(ResourceKey.parse(ref, self.namespace))
        return deps

    def references(self) -> set[ResourceKey]:
        """Resources this document consumes. Variants override this."""
        return set()

    # -------------------------------------------------------------------------
    # DRIFT TRACKING
    # -------------------------------------------------------------------------

    def tracked_fields(self) -> dict[str, Any]:
        """
        The part of the manifest that is compared against live state.

        Identity fields (apiVersion, kind, name, namespace) and status are
        left out; of metadata only labels and annotations are tracked.
        """
        tracked = {
            k: copy.deepcopy(v)
            for k, v in self.manifest.items()
            if k not in ("apiVersion", "kind", "metadata", "status")
        }
        metadata = self.manifest.get("metadata", {})
        tracked_meta = {k: copy.deepcopy(metadata[k]) for k in ("labels", "annotations") if metadata.get(k)}
        if tracked_meta:
            tracked["metadata"] = tracked_meta
        return tracked

    def to_apply(self) -> dict[str, Any]:
        """Manifest to send to the platform, stripped of server-owned fields."""
        body = copy.deepcopy(self.manifest)
        body.pop("status", None)
        metadata = body.setdefault("metadata", {})
        for key in _SERVER_METADATA:
            metadata.pop(key, None)
        return body

    def with_label(self, key: str, value: str) -> ResourceDocument:
        """Copy of this document with one more label."""
        manifest = copy.deepcopy(self.manifest)
        manifest["metadata"].setdefault("labels", {})[key] = value
        return type(self)(manifest, self.namespace)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceDocument):
            return NotImplemented
        return self.manifest == other.manifest

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.key})"


class GenericResource(ResourceDocument):
    """Field-bag fallback for kinds without a dedicated variant."""

    def is_namespaced(self) -> bool:
        return self.kind not in CLUSTER_SCOPED_KINDS


class ClusterScopedResource(ResourceDocument):
    namespaced = False
    kinds = (
        "Namespace",
        "PersistentVolume",
        "StorageClass",
        "ClusterRole",
        "PriorityClass",
        "IngressClass",
    )


class ConfigMap(ResourceDocument):
    kinds = ("ConfigMap",)


class Secret(ResourceDocument):
    """
    Secrets are normalized so `stringData` is compared as base64 `data`.

    The platform never returns stringData; it merges it into data. Without
    this a Secret declared with stringData would be OutOfSync forever.
    """

    kinds = ("Secret",)

    def tracked_fields(self) -> dict[str, Any]:
        tracked = super().tracked_fields()
        string_data = tracked.pop("stringData", None) or {}
        if string_data:
            data = dict(tracked.get("data") or {})
            for k, v in string_data.items():
                data[k] = base64.b64encode(str(v).encode()).decode()
            tracked["data"] = data
        return tracked


class ServiceAccount(ResourceDocument):
    kinds = ("ServiceAccount",)

    def references(self) -> set[ResourceKey]:
        refs = set()
        for secret in self.manifest.get("imagePullSecrets") or []:
            if secret.get("name"):
                refs.add(ResourceKey("Secret", self.namespace, secret["name"]))
        return refs


class PersistentVolumeClaim(ResourceDocument):
    kinds = ("PersistentVolumeClaim",)

    def references(self) -> set[ResourceKey]:
        spec = self.manifest.get("spec") or {}
        refs = set()
        if spec.get("storageClassName"):
            refs.add(ResourceKey("StorageClass", "", spec["storageClassName"]))
        if spec.get("volumeName"):
            refs.add(ResourceKey("PersistentVolume", "", spec["volumeName"]))
        return refs


def _pod_spec_references(pod_spec: dict[str, Any], namespace: str) -> set[ResourceKey]:
    """ConfigMaps, Secrets, PVCs and ServiceAccount a pod spec consumes."""
    refs: set[ResourceKey] = set()
    account = pod_spec.get("serviceAccountName") or pod_spec.get("serviceAccount")
    if account and account != "default":
        refs.add(ResourceKey("ServiceAccount", namespace, account))

    for secret in pod_spec.get("imagePullSecrets") or []:
        if secret.get("name"):
            refs.add(ResourceKey("Secret", namespace, secret["name"]))

    for volume in pod_spec.get("volumes") or []:
        if (volume.get("configMap") or {}).get("name"):
            refs.add(ResourceKey("ConfigMap", namespace, volume["configMap"]["name"]))
        if (volume.get("secret") or {}).get("secretName"):
            refs.add(ResourceKey("Secret", namespace, volume["secret"]["secretName"]))
        if (volume.get("persistentVolumeClaim") or {}).get("claimName"):
            refs.add(
                ResourceKey(
                    "PersistentVolumeClaim", namespace, volume["persistentVolumeClaim"]["claimName"]
                )
            )
        for source in (volume.get("projected") or {}).get("sources") or []:
            if (source.get("configMap") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", namespace, source["configMap"]["name"]))
            if (source.get("secret") or {}).get("name"):
                refs.add(ResourceKey("Secret", namespace, source["secret"]["name"]))

    containers = (pod_spec.get("containers") or []) + (pod_spec.get("initContainers") or [])
    for container in containers:
        for env_from in container.get("envFrom") or []:
            if (env_from.get("configMapRef") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", namespace, env_from["configMapRef"]["name"]))
            if (env_from.get("secretRef") or {}).get("name"):
                refs.add(ResourceKey("Secret", namespace, env_from["secretRef"]["name"]))
        for env in container.get("env") or []:
            value_from = env.get("valueFrom") or {}
            if (value_from.get("configMapKeyRef") or {}).get("name"):
                refs.add(ResourceKey("ConfigMap", namespace, value_from["configMapKeyRef"]["name"]))
            if (value_from.get("secretKeyRef") or {}).get("name"):
                refs.add(ResourceKey("Secret", namespace, value_from["secretKeyRef"]["name"]))
    return refs


class Pod(ResourceDocument):
    kinds = ("Pod",)

    def references(self) -> set[ResourceKey]:
        return _pod_spec_references(self.manifest.get("spec") or {}, self.namespace)


class Workload(ResourceDocument):
    """Controllers with a pod template at spec.template."""

    kinds = ("Deployment", "StatefulSet", "DaemonSet", "ReplicaSet", "Job")

    def references(self) -> set[ResourceKey]:
        spec = self.manifest.get("spec") or {}
        pod_spec = (spec.get("template") or {}).get("spec") or {}
        refs = _pod_spec_references(pod_spec, self.namespace)
        if self.kind == "StatefulSet" and spec.get("serviceName"):
            refs.add(ResourceKey("Service", self.namespace, spec["serviceName"]))
        return refs


class CronJob(ResourceDocument):
    kinds = ("CronJob",)

    def references(self) -> set[ResourceKey]:
        job_spec = ((self.manifest.get("spec") or {}).get("jobTemplate") or {}).get("spec") or {}
        pod_spec = (job_spec.get("template") or {}).get("spec") or {}
        return _pod_spec_references(pod_spec, self.namespace)


class Service(ResourceDocument):
    kinds = ("Service",)


class Ingress(ResourceDocument):
    kinds = ("Ingress",)

    def references(self) -> set[ResourceKey]:
        spec = self.manifest.get("spec") or {}
        refs = set()
        backends = []
        if spec.get("defaultBackend"):
            backends.append(spec["defaultBackend"])
        for rule in spec.get("rules") or []:
            for path in (rule.get("http") or {}).get("paths") or []:
                backends.append(path.get("backend") or {})
        for backend in backends:
            service = (backend.get("service") or {}).get("name") or backend.get("serviceName")
            if service:
                refs.add(ResourceKey("Service", self.namespace, service))
        for tls in spec.get("tls") or []:
            if tls.get("secretName"):
                refs.add(ResourceKey("Secret", self.namespace, tls["secretName"]))
        return refs


class HorizontalPodAutoscaler(ResourceDocument):
    kinds = ("HorizontalPodAutoscaler",)

    def references(self) -> set[ResourceKey]:
        target = (self.manifest.get("spec") or {}).get("scaleTargetRef") or {}
        if target.get("kind") and target.get("name"):
            return {ResourceKey(target["kind"], self.namespace, target["name"])}
        return set()


class RoleBinding(ResourceDocument):
    kinds = ("RoleBinding", "ClusterRoleBinding")

    def is_namespaced(self) -> bool:
        return self.kind == "RoleBinding"

    def references(self) -> set[ResourceKey]:
        refs = set()
        role = self.manifest.get("roleRef") or {}
        if role.get("kind") == "Role":
            refs.add(ResourceKey("Role", self.namespace, role.get("name", "")))
        elif role.get("kind") == "ClusterRole":
            refs.add(ResourceKey("ClusterRole", "", role.get("name", "")))
        for subject in self.manifest.get("subjects") or []:
            if subject.get("kind") == "ServiceAccount":
                ns = subject.get("namespace") or self.namespace
                refs.add(ResourceKey("ServiceAccount", ns, subject.get("name", "")))
        return refs


class Role(ResourceDocument):
    kinds = ("Role",)


class CustomResourceDefinition(ResourceDocument):
    """A CRD; custom resources of the kind it defines depend on it."""

    namespaced = False
    kinds = ("CustomResourceDefinition",)

    @property
    def defines(self) -> tuple[str, str]:
        """(group, kind) served by this definition."""
        spec = self.manifest.get("spec") or {}
        return spec.get("group", ""), (spec.get("names") or {}).get("kind", "")


# =============================================================================
# DESIRED AND LIVE STATE
# =============================================================================


@dataclass
class DesiredResource:
    """A document declared at a Revision; `source_path` is the file it came from."""

    document: ResourceDocument
    source_path: str = ""

    @property
    def key(self) -> ResourceKey:
        return self.document.key

    @property
    def kind(self) -> str:
        return self.document.kind

    @property
    def api_version(self) -> str:
        return self.document.api_version


@dataclass
class LiveResource:
    """Observed state of a resource as reported by the platform."""

    document: ResourceDocument

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> LiveResource:
        return cls(ResourceDocument.from_manifest(data))

    @property
    def key(self) -> ResourceKey:
        return self.document.key

    @property
    def manifest(self) -> dict[str, Any]:
        return self.document.manifest

    @property
    def status(self) -> dict[str, Any]:
        return self.document.manifest.get("status") or {}


@dataclass(frozen=True)
class Revision:
    """
    Immutable snapshot: commit SHA plus the desired resources parsed from it.

    Documents that failed to parse are kept in `parse_errors`; they never
    make the whole Revision unusable.
    """

    sha: str
    resources: tuple[DesiredResource, ...] = ()
    parse_errors: tuple[ParseError, ...] = ()
    resolved_at: datetime = field(default_factory=lambda: datetime.now(UTC), compare=False)

    @property
    def keys(self) -> set[ResourceKey]:
        return {r.key for r in self.resources}

    def digest(self) -> str:
        """Content hash over every desired manifest, in identity order."""
        canonical = json.dumps(
            [[str(r.key), r.document.manifest] for r in self.resources],
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode()).hexdigest()

    @property
    def short_sha(self) -> str:
        return self.sha[:8]


# =============================================================================
# DIFF
# =============================================================================


class SyncState(str, Enum):
    IN_SYNC = "InSync"
    OUT_OF_SYNC = "OutOfSync"
    MISSING = "Missing"
    ORPHANED = "Orphaned"


@dataclass(frozen=True)
class FieldDifference:
    """One differing field. `live_present=False` means the live object lacks it."""

    path: tuple[str, ...]
    desired: Any
    live: Any = None
    live_present: bool = True

    @property
    def dotted(self) -> str:
        out = ""
        for segment in self.path:
            if segment.isdigit():
                out += f"[{segment}]"
            else:
                out += f".{segment}" if out else segment
        return out

    @property
    def pointer(self) -> str:
        """JSON pointer (RFC 6901) for the field."""
        return "/" + "/".join(s.replace("~", "~0").replace("/", "~1") for s in self.path)

    def __str__(self) -> str:
        if not self.live_present:
            return f"{self.dotted}: missing in live (desired {self.desired!r})"
        return f"{self.dotted}: {self.live!r} -> {self.desired!r}"


@dataclass
class ResourceDiff:
    key: ResourceKey
    state: SyncState
    fields: tuple[FieldDifference, ...] = ()
    desired: DesiredResource | None = None
    live: LiveResource | None = None


@dataclass
class Diff:
    """Classification of every resource identity seen in desired or live state."""

    resources: dict[ResourceKey, ResourceDiff] = field(default_factory=dict)

    def _with_state(self, state: SyncState) -> list[ResourceDiff]:
        return [r for _, r in sorted(self.resources.items()) if r.state == state]

    @property
    def in_sync(self) -> list[ResourceDiff]:
        return self._with_state(SyncState.IN_SYNC)

    @property
    def out_of_sync(self) -> list[ResourceDiff]:
        return self._with_state(SyncState.OUT_OF_SYNC)

    @property
    def missing(self) -> list[ResourceDiff]:
        return self._with_state(SyncState.MISSING)

    @property
    def orphaned(self) -> list[ResourceDiff]:
        return self._with_state(SyncState.ORPHANED)

    def state_of(self, key: ResourceKey) -> SyncState | None:
        entry = self.resources.get(key)
        return entry.state if entry else None

    def requires_sync(self, prune: bool) -> bool:
        """True when applying would change something under the given prune setting."""
        if self.out_of_sync or self.missing:
            return True
        return prune and bool(self.orphaned)

    @property
    def is_synced(self) -> bool:
        """No declared resource differs. Orphans alone keep an app Synced."""
        return not (self.out_of_sync or self.missing)

    def summary(self) -> dict[str, int]:
        counts = {state.value: 0 for state in SyncState}
        for entry in self.resources.values():
            counts[entry.state.value] += 1
        return counts


# =============================================================================
# PLAN
# =============================================================================


class OperationType(str, Enum):
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


@dataclass(frozen=True)
class Operation:
    """
    One resource-level action in a SyncPlan.

    `depends_on` holds keys of other operations in the same plan that must
    succeed before this one may run.
    """

    type: OperationType
    key: ResourceKey
    api_version: str
    manifest: dict[str, Any] | None = field(default=None, compare=False, hash=False)
    depends_on: frozenset[ResourceKey] = frozenset()
    wave: int = 0

    def __str__(self) -> str:
        return f"{self.type.value} {self.key}"


@dataclass
class SyncPlan:
    """Ordered operations; creates/updates first, prunes last."""

    operations: list[Operation] = field(default_factory=list)
    requires_confirmation: bool = False
    skipped_orphans: list[ResourceKey] = field(default_factory=list)

    @property
    def apply_operations(self) -> list[Operation]:
        return [op for op in self.operations if op.type != OperationType.DELETE]

    @property
    def prune_operations(self) -> list[Operation]:
        return [op for op in self.operations if op.type == OperationType.DELETE]

    @property
    def is_empty(self) -> bool:
        return not self.operations

    @property
    def has_prune(self) -> bool:
        return bool(self.prune_operations)

    def describe(self) -> list[str]:
        return [str(op) for op in self.operations]


# =============================================================================
# APPLY OUTCOMES
# =============================================================================


class ResultStatus(str, Enum):
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"


@dataclass
class OperationResult:
    """Outcome of one Operation, attributed to the Revision that produced it."""

    operation: Operation
    status: ResultStatus
    revision: str
    attempts: int = 0
    error: str | None = None
    error_type: str | None = None
    blocked_by: ResourceKey | None = None
    live: LiveResource | None = None

    @property
    def key(self) -> ResourceKey:
        return self.operation.key


@dataclass
class SyncResult:
    revision: str
    results: list[OperationResult] = field(default_factory=list)
    cancelled: bool = False

    def _with_status(self, status: ResultStatus) -> list[OperationResult]:
        return [r for r in self.results if r.status == status]

    @property
    def succeeded(self) -> list[OperationResult]:
        return self._with_status(ResultStatus.SUCCEEDED)

    @property
    def failed(self) -> list[OperationResult]:
        return self._with_status(ResultStatus.FAILED)

    @property
    def blocked(self) -> list[OperationResult]:
        return self._with_status(ResultStatus.BLOCKED)

    @property
    def blocking_failures(self) -> list[OperationResult]:
        """Failed operations that prevented at least one dependent from running."""
        blockers = {r.blocked_by for r in self.blocked}
        # A blocked result may itself block others; walk to the root failure.
        by_key = {r.key: r for r in self.results}
        roots = set()
        for key in blockers:
            seen = set()
            while key is not None and key not in seen:
                seen.add(key)
                entry = by_key.get(key)
                if entry is None or entry.status != ResultStatus.BLOCKED:
                    break
                key = entry.blocked_by
            if key is not None:
                roots.add(key)
        return [r for r in self.failed if r.key in roots]


# =============================================================================
# HEALTH
# =============================================================================


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    PROGRESSING = "Progressing"
    DEGRADED = "Degraded"
    UNKNOWN = "Unknown"


@dataclass
class HealthReport:
    statuses: dict[ResourceKey, HealthStatus] = field(default_factory=dict)
    timed_out: bool = False

    @property
    def overall(self) -> HealthStatus:
        """Worst status across resources; no resources at all counts as Healthy."""
        values = set(self.statuses.values())
        for status in (HealthStatus.DEGRADED, HealthStatus.PROGRESSING, HealthStatus.UNKNOWN):
            if status in values:
                return status
        return HealthStatus.HEALTHY

    @property
    def unhealthy(self) -> list[ResourceKey]:
        return sorted(k for k, v in self.statuses.items() if v != HealthStatus.HEALTHY)


# =============================================================================
# LOOP STATE AND SYNC RECORDS
# =============================================================================


class LoopState(str, Enum):
    IDLE = "Idle"
    SYNCING = "Syncing"
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    FAILED = "Failed"


class TriggerReason(str, Enum):
    POLL = "poll"
    PUSH = "push"
    MANUAL = "manual"
    DRIFT = "drift"


class OperationPhase(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    DEGRADED = "Degraded"


@dataclass
class ErrorRecord:
    """A failure attributed to the resource and Revision responsible."""

    type: str
    message: str
    resource: str | None = None
    revision: str | None = None

    def __str__(self) -> str:
        where = f" [{self.resource}]" if self.resource else ""
        rev = f" @{self.revision[:8]}" if self.revision else ""
        return f"{self.type}{where}{rev}: {self.message}"


@dataclass
class SyncOperation:
    """One attempt to converge an Application; terminal once finished."""

    id: str
    application: str
    revision: str
    trigger: TriggerReason
    phase: OperationPhase = OperationPhase.PENDING
    message: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    plan: list[str] = field(default_factory=list)
    result: SyncResult | None = None

    def start(self) -> None:
        self.phase = OperationPhase.RUNNING
        self.started_at = datetime.now(UTC)

    def finish(self, phase: OperationPhase, message: str = "") -> None:
        self.phase = phase
        self.message = message
        self.finished_at = datetime.now(UTC)

    @property
    def is_terminal(self) -> bool:
        return self.phase in (
            OperationPhase.SUCCEEDED,
            OperationPhase.FAILED,
            OperationPhase.DEGRADED,
        )


@dataclass
class ApplicationStatus:
    """The contract the status surface reads for one Application."""

    name: str
    state: LoopState = LoopState.IDLE
    outcome: LoopState | None = None
    target_revision: str | None = None
    last_synced_revision: str | None = None
    diff_summary: dict[str, int] = field(default_factory=dict)
    health: HealthStatus = HealthStatus.UNKNOWN
    resource_health: dict[str, HealthStatus] = field(default_factory=dict)
    operation: SyncOperation | None = None
    pending_plan: SyncPlan | None = None
    errors: list[ErrorRecord] = field(default_factory=list)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "outcome": self.outcome.value if self.outcome else None,
            "target_revision": self.target_revision,
            "last_synced_revision": self.last_synced_revision,
            "diff": dict(self.diff_summary),
            "health": self.health.value,
            "resource_health": {k: v.value for k, v in self.resource_health.items()},
            "operation": {
                "id": self.operation.id,
                "phase": self.operation.phase.value,
                "revision": self.operation.revision,
                "trigger": self.operation.trigger.value,
                "message": self.operation.message,
            }
            if self.operation
            else None,
            "pending_plan": self.pending_plan.describe() if self.pending_plan else None,
            "errors": [str(e) for e in self.errors],
            "updated_at": self.updated_at.isoformat(),
        }
