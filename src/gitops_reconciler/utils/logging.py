# ABOUTME: Structured logging with correlation IDs for the reconciliation controller
# ABOUTME: Implements per-cycle correlation and the apply/trigger audit trail

"""
Structured logging with correlation IDs and audit trails.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Three observability pieces used by every loop and by the MCP surface:

1. STRUCTURED LOGGING: key/value events rendered as JSON (production) or
   coloured console lines (development).

2. CORRELATION IDs: every reconciliation cycle gets a fresh id, so all log
   lines from one observe -> diff -> plan -> apply -> health pass can be
   pulled out of an interleaved stream of many Applications.

3. AUDIT LOGGING: an append-only record of every write the controller makes
   to a cluster and every trigger a client sends, each attributed to the
   Application and Revision responsible.

=============================================================================
WHY CONTEXTVARS?
=============================================================================

Each Application's loop is its own asyncio task. A ContextVar gives every
task its own value, so loop "guestbook" and loop "billing" can both set a
correlation id without stepping on each other:

    async def cycle():
        set_correlation_id("")        # forget the previous cycle's id
        log.info("cycle_started")     # get_correlation_id() generates one

Filtering one cycle afterwards:

    jq 'select(.correlation_id == "a1b2c3d4")' reconciler.log
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """
    Get current correlation ID or generate a new one.

    IDs are the first 8 hex characters of a UUID4: unique enough within the
    lifetime of a cycle, short enough to read in a console.

    Example:
        >>> get_correlation_id()
        'a3f8c2d1'
    """
    cid = correlation_id.get()
    if not cid:
        cid = str(uuid.uuid4())[:8]
        correlation_id.set(cid)
    return cid


def set_correlation_id(cid: str) -> None:
    """
    Set correlation ID for the current task.

    Pass "" at the start of a cycle so the next log line generates a fresh
    id; pass a request id to tie MCP tool calls to their log lines.
    """
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """
    Structlog processor adding `correlation_id` to every event.

    The (logger, method_name, event_dict) signature is the structlog
    processor API; only event_dict is used.
    """
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
) -> None:
    """
    Configure structured logging. Call once at startup.

    PROCESSOR PIPELINE:
    -------------------
    1. merge_contextvars: fields bound with bind_contextvars (e.g. application)
    2. add_log_level: "level" field
    3. TimeStamper: ISO 8601 timestamp
    4. add_correlation_id: cycle / request correlation
    5. JSONRenderer or ConsoleRenderer

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregators; coloured text otherwise.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit logger for cluster writes and client triggers.

    WHAT WE LOG:
    ------------
    - timestamp: UTC ISO 8601
    - correlation_id: cycle or request identifier
    - action: "apply", "sync_application", "notify_revision", ...
    - target: Application name, or "<application>:<resource>" for applies
    - result: "success", "failed", "blocked", "error", "dry_run", ...
    - details: revision, attempts, error text

    EXAMPLE ENTRIES:
    ----------------
    {"timestamp": "2026-01-15T10:30:00+00:00", "correlation_id": "abc12345",
     "action": "apply", "target": "guestbook:Deployment/guestbook/web",
     "result": "Succeeded", "details": {"operation": "Update",
     "revision": "4f2a...", "attempts": 1}}

    {"timestamp": "2026-01-15T10:31:05+00:00", "correlation_id": "def45678",
     "action": "sync_application", "target": "guestbook", "result": "blocked",
     "details": {"reason": "Server is running in read-only mode"}}

    Entries are appended to `log_path` as JSON lines when configured,
    otherwise emitted through structlog on stdout.
    """

    def __init__(self, log_path: Path | None = None) -> None:
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write one audit entry. All convenience methods delegate here."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry, default=str) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    # -------------------------------------------------------------------------
    # CONVENIENCE METHODS
    # -------------------------------------------------------------------------

    def log_read(self, action: str, target: str) -> None:
        self.log(action, target, "success")

    def log_write(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.log(action, target, result, details)

    def log_apply(
        self,
        application: str,
        resource: str,
        operation: str,
        revision: str,
        result: str,
        attempts: int = 0,
        error: str | None = None,
    ) -> None:
        """
        Record one resource write, attributed to the Revision that produced it.

        These entries are what an operator reads to answer "which commit put
        this object in this state", and to pick a rollback target.
        """
        details: dict[str, Any] = {
            "operation": operation,
            "revision": revision,
            "attempts": attempts,
        }
        if error:
            details["error"] = error
        self.log("apply", f"{application}:{resource}", result, details)

    def log_blocked(
        self,
        action: str,
        target: str,
        reason: str,
    ) -> None:
        """Record an operation refused by a safety check."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(
        self,
        action: str,
        target: str,
        error: str,
    ) -> None:
        self.log(action, target, "error", {"error": error})
