# ABOUTME: FastMCP server exposing reconciler status and triggers, plus the main entry point
# ABOUTME: Starts the controller in the server lifespan; tools go through the safety guard

"""GitOps Reconciler - status output and trigger input over MCP."""

from __future__ import annotations

import sys
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from pydantic import BaseModel, Field

from gitops_reconciler.config import ServerSettings, load_settings
from gitops_reconciler.controller import Controller
from gitops_reconciler.models import SyncState, TriggerReason
from gitops_reconciler.utils.logging import AuditLogger, configure_logging, set_correlation_id
from gitops_reconciler.utils.safety import ConfirmationRequired, SafetyGuard

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from gitops_reconciler.reconciler import ApplicationLoop

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized in lifespan)
_settings: ServerSettings | None = None
_controller: Controller | None = None
_safety_guard: SafetyGuard | None = None
_audit_logger: AuditLogger | None = None


@asynccontextmanager
async def lifespan(_server: FastMCP) -> AsyncIterator[dict[str, Any]]:
    """Manage server lifecycle: load config, start the controller, stop it on shutdown."""
    global _settings, _controller, _safety_guard, _audit_logger

    logger.info("Starting GitOps reconciler")

    _settings = load_settings()
    configure_logging(level=_settings.log_level, json_output=_settings.json_logs)
    _safety_guard = SafetyGuard(_settings.security)
    _audit_logger = AuditLogger(_settings.security.audit_log)

    _controller = Controller(_settings, audit=_audit_logger)
    await _controller.start()

    yield {"settings": _settings, "controller": _controller}

    await _controller.stop()
    _controller = None
    logger.info("GitOps reconciler stopped")


mcp = FastMCP("gitops-reconciler", lifespan=lifespan)


def get_settings() -> ServerSettings:
    if not _settings:
        raise RuntimeError("Server not initialized")
    return _settings


def get_controller() -> Controller:
    if not _controller:
        raise RuntimeError("Server not initialized")
    return _controller


def get_safety_guard() -> SafetyGuard:
    if not _safety_guard:
        raise RuntimeError("Server not initialized")
    return _safety_guard


def get_audit_logger() -> AuditLogger:
    if not _audit_logger:
        raise RuntimeError("Server not initialized")
    return _audit_logger


def _request_id(ctx: MCPContext) -> str:
    return ctx.request_id if hasattr(ctx, "request_id") else ""


def _format_status(loop: ApplicationLoop) -> str:
    status = loop.status
    health_marker = "[OK]" if status.health.value == "Healthy" else "[!]"
    summary = ", ".join(f"{k}={v}" for k, v in status.diff_summary.items() if v) or "none"
    lines = [
        f"Application: {status.name}",
        f"State: {status.state.value}"
        + (f" (last outcome: {status.outcome.value})" if status.outcome else ""),
        f"Health: {status.health.value} {health_marker}",
        f"Target revision: {status.target_revision or 'unresolved'}",
        f"Last synced revision: {status.last_synced_revision or 'never'}",
        f"Resources: {summary}",
    ]
    if status.operation:
        op = status.operation
        lines.append(
            f"Operation {op.id}: {op.phase.value} ({op.trigger.value}) {op.message}".rstrip()
        )
    if status.pending_plan:
        lines.append("Pending plan (awaiting sync_application):")
        lines.extend(f"  {step}" for step in status.pending_plan.describe())
    if status.errors:
        lines.append("Errors:")
        lines.extend(f"  {error}" for error in status.errors)
    return "\n".join(lines)


# =============================================================================
# STATUS OUTPUT (read operations)
# =============================================================================


class ListApplicationsParams(BaseModel):
    """Parameters for list_applications tool."""

    health_status: str | None = Field(
        default=None,
        description="Filter by health status (Healthy, Progressing, Degraded, Unknown)",
    )
    state: str | None = Field(
        default=None, description="Filter by loop state (Idle, Syncing, Healthy, Degraded, Failed)"
    )


@mcp.tool()
async def list_applications(params: ListApplicationsParams, ctx: MCPContext) -> str:
    """
    List reconciled Applications with loop state, health and last synced revision.

    Use this to find Applications that are failing, degraded or waiting for
    a confirmed sync.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_read_operation("list_applications")
    if blocked:
        get_audit_logger().log_blocked("list_applications", "all", blocked.reason)
        return blocked.format_message()

    controller = get_controller()
    statuses = controller.statuses()
    if params.health_status:
        statuses = [s for s in statuses if s.health.value == params.health_status]
    if params.state:
        statuses = [
            s
            for s in statuses
            if s.state.value == params.state or (s.outcome and s.outcome.value == params.state)
        ]

    get_audit_logger().log_read("list_applications", "all")

    lines = []
    if statuses:
        lines.extend([f"Found {len(statuses)} application(s):", ""])
        for s in statuses:
            health_marker = "[OK]" if s.health.value == "Healthy" else "[!]"
            revision = (s.last_synced_revision or "never")[:8]
            outcome = f"/{s.outcome.value}" if s.outcome else ""
            pending = " [pending sync]" if s.pending_plan else ""
            lines.append(
                f"- {s.name} state={s.state.value}{outcome} "
                f"health={s.health.value} {health_marker} synced={revision}{pending}"
            )
    else:
        lines.append("No applications found matching the specified filters.")

    if controller.rejected:
        lines.extend(["", "Rejected declarations:"])
        lines.extend(f"- {name}: {reason}" for name, reason in sorted(controller.rejected.items()))
    return "\n".join(lines)


class ApplicationParams(BaseModel):
    """Parameters for tools addressing one Application."""

    name: str = Field(description="Application name")


@mcp.tool()
async def get_application_status(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Get loop state, last synced revision, diff summary, health and errors.

    Errors name the resource and revision responsible.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_read_operation("get_application_status")
    if blocked:
        get_audit_logger().log_blocked("get_application_status", params.name, blocked.reason)
        return blocked.format_message()

    try:
        loop = get_controller().loop(params.name)
    except KeyError as e:
        get_audit_logger().log_error("get_application_status", params.name, str(e))
        return str(e.args[0])

    get_audit_logger().log_read("get_application_status", params.name)
    return _format_status(loop)


@mcp.tool()
async def get_application_diff(params: ApplicationParams, ctx: MCPContext) -> str:
    """
    Show the last computed diff: resources to create, fields to update,
    orphans to prune (or left alone when prune is off).
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_read_operation("get_application_diff")
    if blocked:
        get_audit_logger().log_blocked("get_application_diff", params.name, blocked.reason)
        return blocked.format_message()

    try:
        loop = get_controller().loop(params.name)
    except KeyError as e:
        get_audit_logger().log_error("get_application_diff", params.name, str(e))
        return str(e.args[0])

    get_audit_logger().log_read("get_application_diff", params.name)

    current = loop.last_diff
    if current is None:
        return f"No diff computed yet for application '{params.name}'"

    revision = loop.last_revision.short_sha if loop.last_revision else "unknown"
    lines = [f"Diff for application '{params.name}' at {revision}:", ""]

    if current.missing:
        lines.append(f"Resources to CREATE ({len(current.missing)}):")
        lines.extend(f"  + {entry.key}" for entry in current.missing)
        lines.append("")

    if current.out_of_sync:
        lines.append(f"Resources to UPDATE ({len(current.out_of_sync)}):")
        for entry in current.out_of_sync:
            lines.append(f"  ~ {entry.key}")
            lines.extend(f"      {field}" for field in entry.fields)
        lines.append("")

    if current.orphaned:
        action = "DELETE" if loop.spec.sync_policy.prune else "leave (prune off)"
        lines.append(f"Orphaned resources to {action} ({len(current.orphaned)}):")
        lines.extend(f"  - {entry.key}" for entry in current.orphaned)
        lines.append("")

    lines.append(f"Resources in sync: {len(current.in_sync)}")
    if all(entry.state == SyncState.IN_SYNC for entry in current.resources.values()):
        lines.append("\nApplication is fully synced. No changes needed.")
    return "\n".join(lines)


class GetSyncHistoryParams(BaseModel):
    """Parameters for get_sync_history tool."""

    name: str = Field(description="Application name")
    limit: int = Field(default=10, description="Maximum number of entries", ge=1, le=50)


@mcp.tool()
async def get_sync_history(params: GetSyncHistoryParams, ctx: MCPContext) -> str:
    """
    View recent sync operations with revision, trigger, outcome and timing.

    Useful for finding which commit put the cluster in its current state
    and picking a rollback target.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_read_operation("get_sync_history")
    if blocked:
        get_audit_logger().log_blocked("get_sync_history", params.name, blocked.reason)
        return blocked.format_message()

    try:
        loop = get_controller().loop(params.name)
    except KeyError as e:
        get_audit_logger().log_error("get_sync_history", params.name, str(e))
        return str(e.args[0])

    get_audit_logger().log_read("get_sync_history", params.name)

    history = list(loop.history)[-params.limit :]
    if not history:
        return f"No sync history for application '{params.name}'"

    lines = [f"Sync history for '{params.name}' (last {len(history)} entries):", ""]
    for i, op in enumerate(reversed(history), 1):
        started = op.started_at.isoformat() if op.started_at else "not started"
        lines.append(
            f"{i}. [{op.revision[:8]}] {op.phase.value} via {op.trigger.value} at {started}"
        )
        if op.message:
            lines.append(f"   {op.message}")
    return "\n".join(lines)


# =============================================================================
# TRIGGER INPUT (write operations, require MCP_READ_ONLY=false)
# =============================================================================


class SyncApplicationParams(BaseModel):
    """Parameters for sync_application tool."""

    name: str = Field(description="Application name")
    confirm: bool = Field(default=False, description="Confirm a sync that deletes resources")
    confirm_name: str | None = Field(
        default=None, description="Must equal the application name to confirm deletes"
    )


@mcp.tool()
async def sync_application(params: SyncApplicationParams, ctx: MCPContext) -> str:
    """
    Request a manual sync, or confirm the pending plan of an Application
    with autoSync off.

    Syncs whose plan deletes resources need confirm=true and
    confirm_name=<application name>. The sync only ever deletes what was
    confirmed here; with prune on it is refused until the Application's
    live state has been listed once.
    """
    set_correlation_id(_request_id(ctx))

    try:
        loop = get_controller().loop(params.name)
    except KeyError as e:
        get_audit_logger().log_error("sync_application", params.name, str(e))
        return str(e.args[0])

    pending = loop.status.pending_plan
    deletes = [str(op.key) for op in pending.prune_operations] if pending else []
    prune_unknown = not pending and loop.spec.sync_policy.prune and loop.last_diff is None
    if not pending and loop.spec.sync_policy.prune and loop.last_diff is not None:
        deletes = [str(entry.key) for entry in loop.last_diff.orphaned]

    blocked = get_safety_guard().check_sync(
        params.name,
        deletes,
        confirmed=params.confirm,
        confirm_name=params.confirm_name,
    )
    if blocked:
        reason = (
            "prune requires confirmation"
            if isinstance(blocked, ConfirmationRequired)
            else blocked.reason
        )
        get_audit_logger().log_blocked("sync_application", params.name, reason)
        return blocked.format_message()

    if prune_unknown:
        # Nothing to show the caller for confirmation until live state was listed once
        get_audit_logger().log_blocked(
            "sync_application", params.name, "prune set unknown until the first reconciliation"
        )
        return (
            f"Sync of '{params.name}' refused: live state has not been observed yet, "
            "so the resources it would delete are unknown.\n"
            "Retry once get_application_status shows a diff."
        )

    # Execution re-plans; anything it would prune beyond this set is refused
    allowed_deletes = frozenset(deletes)
    if pending:
        loop.confirm_sync(allowed_deletes)
        action = "Pending plan confirmed"
    else:
        loop.trigger(TriggerReason.MANUAL, allowed_deletes=allowed_deletes)
        action = "Sync requested"

    get_audit_logger().log_write(
        "sync_application",
        params.name,
        "triggered",
        {"pending_plan": bool(pending), "deletes": len(deletes)},
    )
    return (
        f"{action} for '{params.name}'\n"
        f"Deletes: {len(deletes)}\n\n"
        f"Use get_application_status to monitor progress."
    )


class NotifyRevisionParams(BaseModel):
    """Parameters for notify_revision tool."""

    repo_url: str = Field(description="Repository URL that received a push")
    revision: str | None = Field(default=None, description="Pushed commit SHA, if known")


@mcp.tool()
async def notify_revision(params: NotifyRevisionParams, ctx: MCPContext) -> str:
    """
    Announce a new revision (push notification) instead of waiting for the poll.

    Notifications for a revision already synced, in flight or pending are
    ignored.
    """
    set_correlation_id(_request_id(ctx))

    blocked = get_safety_guard().check_write_operation("notify_revision")
    if blocked:
        get_audit_logger().log_blocked("notify_revision", params.repo_url, blocked.reason)
        return blocked.format_message()

    accepted = get_controller().notify(params.repo_url, params.revision)
    get_audit_logger().log_write(
        "notify_revision",
        params.repo_url,
        "accepted" if accepted else "ignored",
        {"revision": params.revision, "applications": accepted},
    )

    if not accepted:
        return (
            f"No application accepted the notification for {params.repo_url} "
            "(unknown repository, or revision already synced or in flight)"
        )
    return f"Reconciliation triggered for: {', '.join(accepted)}"


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("reconciler://clusters")
async def get_clusters_resource() -> str:
    """Configured target clusters and the Applications deploying to each."""
    settings = get_settings()
    clusters = settings.all_clusters

    if not clusters:
        return "No clusters configured"

    by_cluster: dict[str, list[str]] = {}
    if _controller:
        for name in _controller.applications:
            cluster = _controller.loop(name).spec.destination.cluster
            by_cluster.setdefault(cluster, []).append(name)

    lines = ["Configured Clusters:", ""]
    for cluster in clusters:
        apps = ", ".join(by_cluster.get(cluster.name, [])) or "none"
        lines.append(f"- {cluster.name}: {cluster.url} (applications: {apps})")
    return "\n".join(lines)


@mcp.resource("reconciler://security")
async def get_security_resource() -> str:
    """Current security and loop settings."""
    settings = get_settings()
    sec = settings.security

    return (
        "Security Settings:\n"
        f"  Read-only mode: {sec.read_only}\n"
        f"  Destructive operations disabled: {sec.disable_destructive}\n"
        f"  Secret masking: {sec.mask_secrets}\n"
        f"  Rate limit: {sec.rate_limit_calls} calls per {sec.rate_limit_window}s\n"
        f"  Dry-run writes: {settings.loop.dry_run}"
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps reconciler with its MCP surface."""
    configure_logging(level="INFO")
    logger.info("GitOps reconciler starting")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
