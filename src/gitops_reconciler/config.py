# ABOUTME: Configuration management for the GitOps reconciliation controller
# ABOUTME: Handles environment variables, cluster pool, applications and sync policy

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

This module holds every knob the controller reads at startup or on reload:

1. CLUSTERS the controller may write to (URL, token, TLS settings)
2. APPLICATIONS it reconciles (source repo, revision selector, destination,
   sync policy, ignored differences)
3. LOOP TUNING (poll interval, health timeout, retry bounds)
4. SECURITY for the MCP surface (read-only, destructive guard, rate limits)

=============================================================================
ARCHITECTURE
=============================================================================

    ServerSettings (RECONCILER_*)
    ├── primary cluster        <- KUBE_API_URL / KUBE_TOKEN / KUBE_INSECURE
    ├── additional_clusters    <- list[ClusterInstance]
    ├── applications_file      <- YAML file with list[ApplicationSpec]
    ├── loop: LoopSettings     <- RECONCILER_LOOP_*
    └── security: SecuritySettings <- MCP_*

ApplicationSpec and SyncPolicy are plain BaseModels: they are declared by an
operator in a YAML file (or inline JSON) rather than one env var per field.

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

Primary cluster:
    KUBE_API_URL        -> Kubernetes API server URL
    KUBE_TOKEN          -> Bearer token for the API server
    KUBE_INSECURE       -> Skip TLS certificate verification

Controller:
    RECONCILER_APPLICATIONS_FILE   -> YAML list of applications
    RECONCILER_WORKDIR             -> Where git mirrors are cached
    RECONCILER_LOG_LEVEL           -> DEBUG/INFO/WARNING/ERROR/CRITICAL
    RECONCILER_JSON_LOGS           -> Emit JSON log lines

Loop tuning (RECONCILER_LOOP_ prefix):
    POLL_INTERVAL, HEALTH_TIMEOUT, HEALTH_POLL_INTERVAL, APPLY_ATTEMPTS,
    APPLY_BACKOFF_MIN, APPLY_BACKOFF_MAX, MAX_CONCURRENT_APPLIES,
    ERROR_BACKOFF_BASE, ERROR_BACKOFF_MAX, HISTORY_LIMIT, DRY_RUN

Security (MCP_ prefix):
    MCP_READ_ONLY, MCP_DISABLE_DESTRUCTIVE, MCP_AUDIT_LOG, MCP_MASK_SECRETS,
    MCP_RATE_LIMIT_CALLS, MCP_RATE_LIMIT_WINDOW
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# =============================================================================
# CLUSTER CONFIGURATION
# =============================================================================


class ClusterInstance(BaseModel):
    """
    Configuration for one target cluster's resource API.

    The controller keeps one pooled client per ClusterInstance and shares it
    between every Application whose destination names that cluster. The
    primary cluster is named "in-cluster", matching the ArgoCD convention
    for the cluster the controller itself runs in.

    USAGE EXAMPLE:
    --------------
        cluster = ClusterInstance(
            url="https://kubernetes.default.svc",
            token=SecretStr("service-account-token"),
            name="in-cluster",
        )
    """

    model_config = {"extra": "ignore"}

    url: str = Field(description="Kubernetes API server URL")
    token: SecretStr = Field(description="Bearer token for the API server")
    name: str = Field(default="in-cluster", description="Cluster identifier")
    insecure: bool = Field(default=False, description="Skip TLS verification")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """
        Ensure URL has a scheme and no trailing slash.

        API paths start with "/" so a trailing slash on the base URL would
        produce "//api/v1/..." requests.
        """
        if not v.startswith(("http://", "https://")):
            v = f"https://{v}"
        return v.rstrip("/")


# =============================================================================
# APPLICATION DECLARATION
# =============================================================================


class SyncPolicy(BaseModel):
    """
    Per-Application sync policy.

    auto_sync: feed plans straight to the Applier (off = plan waits for
               explicit confirmation)
    prune:     delete resources that are live but no longer declared
    self_heal: re-apply on live drift even when no new Revision exists

    All three default to off, the same conservative defaults ArgoCD uses
    for a freshly declared Application. The camelCase aliases let the YAML
    file use the familiar `autoSync` / `selfHeal` spelling.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    auto_sync: bool = Field(default=False, alias="autoSync")
    prune: bool = Field(default=False)
    self_heal: bool = Field(default=False, alias="selfHeal")


class SourceSpec(BaseModel):
    """Where desired state lives: repository, directory within it, revision selector."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    repo_url: str = Field(alias="repoURL", description="Git URL or local directory")
    path: str = Field(default=".", description="Directory inside the repository")
    target_revision: str = Field(
        default="HEAD",
        alias="targetRevision",
        description="Branch, tag, commit SHA or HEAD",
    )

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        """Strip leading/trailing slashes; empty means repository root."""
        v = v.strip("/")
        return v or "."


class DestinationSpec(BaseModel):
    """Which pooled cluster client and which default namespace to deploy into."""

    model_config = {"extra": "ignore"}

    cluster: str = Field(default="in-cluster", description="Cluster name from the pool")
    namespace: str = Field(default="default", description="Namespace for unqualified resources")


class IgnoreDifference(BaseModel):
    """
    Fields excluded from drift detection.

    Matches a resource by optional kind/name/namespace, then drops every
    differing field at or below one of the JSON pointers. Typical use is a
    HorizontalPodAutoscaler owning `/spec/replicas` of a Deployment.
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: str | None = None
    name: str | None = None
    namespace: str | None = None
    json_pointers: list[str] = Field(default_factory=list, alias="jsonPointers")

    def matches(self, kind: str, namespace: str, name: str) -> bool:
        """Return True if this rule applies to the given resource identity."""
        if self.kind and self.kind != kind:
            return False
        if self.name and self.name != name:
            return False
        return not (self.namespace and self.namespace != namespace)


class ApplicationSpec(BaseModel):
    """
    An Application: a named binding of source, destination and sync policy.

    Created by operator declaration, mutated only by policy updates (a reload
    of the applications file), never auto-deleted by the controller.

    YAML EXAMPLE:
    -------------
        - name: guestbook
          source:
            repoURL: https://github.com/argoproj/argocd-example-apps.git
            path: guestbook
            targetRevision: HEAD
          destination:
            cluster: in-cluster
            namespace: guestbook
          syncPolicy:
            autoSync: true
            prune: true
            selfHeal: false
    """

    model_config = {"extra": "ignore", "populate_by_name": True}

    name: str = Field(pattern=r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$", max_length=63)
    source: SourceSpec
    destination: DestinationSpec = Field(default_factory=DestinationSpec)
    sync_policy: SyncPolicy = Field(default_factory=SyncPolicy, alias="syncPolicy")
    ignore_differences: list[IgnoreDifference] = Field(
        default_factory=list, alias="ignoreDifferences"
    )


# =============================================================================
# LOOP TUNING
# =============================================================================


class LoopSettings(BaseSettings):
    """
    Timing and retry bounds for every Application's reconciliation loop.

    The defaults mirror ArgoCD's: a three minute resync period, five apply
    attempts with exponential backoff, and a five minute health deadline.
    """

    model_config = SettingsConfigDict(env_prefix="RECONCILER_LOOP_")

    poll_interval: float = Field(default=180.0, gt=0, description="Seconds between source polls")
    health_timeout: float = Field(
        default=300.0, gt=0, description="Seconds to wait for applied resources to turn Healthy"
    )
    health_poll_interval: float = Field(
        default=5.0, gt=0, description="Seconds between health polls"
    )
    apply_attempts: int = Field(
        default=5, ge=1, description="Maximum attempts per operation on transient errors"
    )
    apply_backoff_min: float = Field(default=1.0, ge=0, description="First retry delay")
    apply_backoff_max: float = Field(default=30.0, ge=0, description="Retry delay cap")
    max_concurrent_applies: int = Field(
        default=4, ge=1, description="Independent operations executed in parallel"
    )
    error_backoff_base: float = Field(
        default=5.0, gt=0, description="Loop delay after the first consecutive failure"
    )
    error_backoff_max: float = Field(
        default=300.0, gt=0, description="Loop delay cap for repeated failures"
    )
    history_limit: int = Field(default=10, ge=1, description="Sync operations kept per app")
    dry_run: bool = Field(default=False, description="Send dryRun=All on every write")


# =============================================================================
# SECURITY SETTINGS
# =============================================================================


class SecuritySettings(BaseSettings):
    """
    Security configuration for the MCP status/trigger surface.

    These settings gate what an MCP client may ask the controller to do.
    They do not change what the loops themselves do: an Application whose
    SyncPolicy says prune=true still prunes on automatic syncs.

    Layer 1: MCP_READ_ONLY=true (default) blocks manual sync and push triggers
    Layer 2: MCP_DISABLE_DESTRUCTIVE=true blocks confirming plans that delete
    Layer 3: MCP_RATE_LIMIT_* bounds how often tools can be invoked
    Layer 4: prune-bearing plans need confirm=true AND confirm_name
    """

    model_config = SettingsConfigDict(env_prefix="MCP_")

    read_only: bool = Field(default=True, description="Block all trigger operations when true")
    disable_destructive: bool = Field(
        default=True, description="Block confirming plans with delete operations"
    )
    audit_log: Path | None = Field(default=None, description="Path to audit log file")
    mask_secrets: bool = Field(default=True, description="Mask sensitive values in output")
    rate_limit_calls: int = Field(default=100, description="Maximum tool calls per window")
    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


# =============================================================================
# MAIN SERVER SETTINGS
# =============================================================================


class ServerSettings(BaseSettings):
    """
    Top-level configuration container.

    USAGE:
    ------
        settings = load_settings()
        applications = load_applications(settings.applications_file)
        print(settings.loop.poll_interval)
    """

    model_config = SettingsConfigDict(
        env_prefix="RECONCILER_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # PRIMARY CLUSTER (from environment)
    # -------------------------------------------------------------------------

    kube_api_url: str = Field(
        default="",
        validation_alias="KUBE_API_URL",
        description="Primary cluster API server URL",
    )
    kube_token: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="KUBE_TOKEN",
        description="Primary cluster bearer token",
    )
    kube_insecure: bool = Field(
        default=False,
        validation_alias="KUBE_INSECURE",
        description="Skip TLS verification for the primary cluster",
    )

    additional_clusters: list[ClusterInstance] = Field(
        default_factory=list,
        description="Further clusters Applications may target",
    )

    # -------------------------------------------------------------------------
    # APPLICATIONS
    # -------------------------------------------------------------------------

    applications_file: Path | None = Field(
        default=None, description="YAML file declaring the Applications"
    )
    applications: list[ApplicationSpec] = Field(
        default_factory=list,
        description="Inline Applications (JSON in RECONCILER_APPLICATIONS)",
    )
    workdir: Path = Field(
        default=Path(".reconciler"),
        description="Cache directory for repository mirrors",
    )

    # -------------------------------------------------------------------------
    # SERVER METADATA
    # -------------------------------------------------------------------------

    server_name: str = Field(default="gitops-reconciler", description="MCP server name")
    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=False, description="Render logs as JSON lines")

    loop: LoopSettings = Field(default_factory=LoopSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)

    @property
    def primary_cluster(self) -> ClusterInstance | None:
        """Primary cluster from KUBE_* variables, or None when KUBE_API_URL is unset."""
        if not self.kube_api_url:
            return None
        return ClusterInstance(
            url=self.kube_api_url,
            token=self.kube_token,
            name="in-cluster",
            insecure=self.kube_insecure,
        )

    @property
    def all_clusters(self) -> list[ClusterInstance]:
        """Primary cluster (if configured) followed by additional_clusters."""
        clusters = []
        if self.primary_cluster:
            clusters.append(self.primary_cluster)
        clusters.extend(self.additional_clusters)
        return clusters

    def get_cluster(self, name: str = "in-cluster") -> ClusterInstance | None:
        """Find a configured cluster by name."""
        for cluster in self.all_clusters:
            if cluster.name == name:
                return cluster
        return None

    def declared_applications(self) -> list[ApplicationSpec]:
        """
        Applications from the file (if any) followed by inline ones.

        A name declared in both places resolves to the file entry; the file
        is what operators edit, so it wins.
        """
        declared: dict[str, ApplicationSpec] = {}
        for app in self.applications:
            declared[app.name] = app
        if self.applications_file:
            for app in load_applications(self.applications_file):
                declared[app.name] = app
        return list(declared.values())


# =============================================================================
# LOADERS
# =============================================================================


def load_settings() -> ServerSettings:
    """
    Load settings from environment with validation.

    If RECONCILER_ENV_FILE is set, additional variables are read from that
    file, which is handy for local development:

        KUBE_API_URL=https://127.0.0.1:6443
        KUBE_TOKEN=dev-token
        KUBE_INSECURE=true
        RECONCILER_APPLICATIONS_FILE=apps.yaml

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return ServerSettings(
        _env_file=os.environ.get("RECONCILER_ENV_FILE"),
    )


def load_applications(path: Path) -> list[ApplicationSpec]:
    """
    Read Application declarations from a YAML file.

    The file holds either a list of applications or a mapping with an
    `applications` key. Duplicate names are rejected since each name owns
    exactly one reconciliation loop.

    Raises:
        ValueError: On malformed YAML, wrong shape or duplicate names.
        pydantic.ValidationError: If an entry fails validation.
    """
    try:
        raw: Any = yaml.safe_load(path.read_text()) or []
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid applications file {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("applications") or []
    if not isinstance(raw, list):
        raise ValueError(f"Applications file {path} must contain a list")

    apps = [ApplicationSpec.model_validate(entry) for entry in raw]
    seen: set[str] = set()
    for app in apps:
        if app.name in seen:
            raise ValueError(f"Duplicate application name '{app.name}' in {path}")
        seen.add(app.name)
    return apps
