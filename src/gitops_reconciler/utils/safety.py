# ABOUTME: Safety utilities for the reconciler's MCP trigger surface
# ABOUTME: Implements confirmation patterns, rate limiting, and prune guards

"""Safety checks gating what MCP clients may ask the controller to do."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from gitops_reconciler.config import SecuritySettings

logger = structlog.get_logger(__name__)


@dataclass
class ConfirmationRequired:
    """Response indicating confirmation is required for a destructive sync."""

    operation: str
    target: str
    impact: str
    confirmation_instructions: str
    details: dict[str, Any] = field(default_factory=dict)

    def format_message(self) -> str:
        """Format confirmation request for agent consumption."""
        lines = [
            f"CONFIRMATION REQUIRED: {self.operation}",
            "",
            f"Target: {self.target}",
            f"Impact: {self.impact}",
        ]

        if self.details:
            lines.append("")
            lines.append("Details:")
            for key, value in self.details.items():
                lines.append(f"  {key}: {value}")

        lines.extend(["", self.confirmation_instructions])
        return "\n".join(lines)


@dataclass
class OperationBlocked:
    """Response indicating an operation is blocked by security settings."""

    operation: str
    reason: str
    setting: str

    def format_message(self) -> str:
        return (
            f"OPERATION BLOCKED: {self.operation}\n"
            f"Reason: {self.reason}\n"
            f"Setting: {self.setting}\n"
            f"To enable: Set {self.setting}=false in server configuration"
        )


class RateLimiter:
    """Sliding-window rate limiter keyed by operation."""

    def __init__(self, max_calls: int = 100, window_seconds: int = 60) -> None:
        self._max_calls = max_calls
        self._window = window_seconds
        self._calls: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        """Record a call under `key`; False when the window is already full."""
        now = time.time()
        self._calls[key] = [t for t in self._calls[key] if now - t < self._window]

        if len(self._calls[key]) >= self._max_calls:
            logger.warning("Rate limit exceeded", key=key, calls=len(self._calls[key]))
            return False

        self._calls[key].append(now)
        return True

    def reset(self, key: str | None = None) -> None:
        if key:
            self._calls.pop(key, None)
        else:
            self._calls.clear()


class SafetyGuard:
    """Read-only mode, prune guard, confirmation and rate limits in one place."""

    def __init__(self, settings: SecuritySettings) -> None:
        self._settings = settings
        self._rate_limiter = RateLimiter(
            max_calls=settings.rate_limit_calls,
            window_seconds=settings.rate_limit_window,
        )

    def check_read_operation(self, operation: str) -> OperationBlocked | None:
        # Reads are only rate limited
        if not self._rate_limiter.check(f"read:{operation}"):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )
        return None

    def check_write_operation(self, operation: str, target: str | None = None) -> OperationBlocked | None:
        """
        Triggers and confirmations: blocked in read-only mode, then rate limited.

        With a `target` the rate limit is counted per Application, so one
        Application being re-synced in a tight loop does not lock out the rest.
        """
        if self._settings.read_only:
            return OperationBlocked(
                operation=operation,
                reason="Server is running in read-only mode",
                setting="MCP_READ_ONLY",
            )

        key = f"write:{operation}:{target}" if target else f"write:{operation}"
        if not self._rate_limiter.check(key):
            return OperationBlocked(
                operation=operation,
                reason="Rate limit exceeded",
                setting="MCP_RATE_LIMIT_CALLS",
            )

        return None

    def check_sync(
        self,
        application: str,
        deletes: list[str],
        confirmed: bool = False,
        confirm_name: str | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Gate a manual sync or plan confirmation for one Application.

        A sync that deletes nothing only needs write access. One whose plan
        prunes goes through the destructive check, and the confirmation
        request lists every resource about to be deleted.
        """
        if not deletes:
            return self.check_write_operation("sync_application", target=application)
        return self.check_destructive_operation(
            "sync_with_prune",
            application,
            confirmed=confirmed,
            confirm_name=confirm_name,
            details={"deletes": len(deletes), "resources": ", ".join(sorted(deletes))},
        )

    def check_destructive_operation(
        self,
        operation: str,
        target: str,
        confirmed: bool = False,
        confirm_name: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> OperationBlocked | ConfirmationRequired | None:
        """
        Gate a sync whose plan deletes resources.

        Returns:
            OperationBlocked if blocked, ConfirmationRequired if the caller
            still has to confirm by name, None if allowed.
        """
        write_check = self.check_write_operation(operation, target=target)
        if write_check:
            return write_check

        if self._settings.disable_destructive:
            return OperationBlocked(
                operation=operation,
                reason="Destructive operations are disabled",
                setting="MCP_DISABLE_DESTRUCTIVE",
            )

        if not confirmed or confirm_name != target:
            return ConfirmationRequired(
                operation=operation,
                target=target,
                impact=self._get_impact_description(operation),
                confirmation_instructions=(
                    f"To proceed, set confirm=true AND confirm_name='{target}'"
                ),
                details=dict(details or {}),
            )

        return None

    @staticmethod
    def _get_impact_description(operation: str) -> str:
        impacts = {
            "sync_with_prune": "Resources no longer declared in the source will be DELETED from the cluster",
        }
        return impacts.get(operation, "This operation may have significant impact")
