# ABOUTME: Error taxonomy for the reconciliation controller
# ABOUTME: Every error carries the resource and revision it is attributed to

"""Error taxonomy: source, parse, plan, apply and health failures."""

from __future__ import annotations

from typing import TYPE_CHECKING

from gitops_reconciler.models import ErrorRecord

if TYPE_CHECKING:
    from gitops_reconciler.models import ResourceKey


class ReconcilerError(Exception):
    """Base class; `resource` and `revision` attribute the failure."""

    def __init__(
        self,
        message: str,
        *,
        resource: ResourceKey | str | None = None,
        revision: str | None = None,
    ) -> None:
        self.message = message
        self.resource = str(resource) if resource is not None else None
        self.revision = revision
        super().__init__(message)

    def __str__(self) -> str:
        return self.message

    def to_record(self) -> ErrorRecord:
        return ErrorRecord(
            type=type(self).__name__,
            message=self.message,
            resource=self.resource,
            revision=self.revision,
        )


class SourceUnavailable(ReconcilerError):
    """The manifest repository could not be reached or the revision resolved."""


class AuthError(ReconcilerError):
    """The manifest repository rejected our credentials."""


class ParseError(ReconcilerError):
    """One document failed to parse. Never fatal to the Revision."""

    def __init__(
        self,
        message: str,
        *,
        path: str,
        index: int | None = None,
        revision: str | None = None,
    ) -> None:
        self.path = path
        self.index = index
        location = path if index is None else f"{path}#{index}"
        super().__init__(message, resource=location, revision=revision)


class PlanError(ReconcilerError):
    """The dependency graph has a cycle; no operations are emitted."""

    def __init__(self, message: str, *, cycle: list[ResourceKey] | None = None, revision: str | None = None) -> None:
        self.cycle = list(cycle or [])
        super().__init__(message, resource=self.cycle[0] if self.cycle else None, revision=revision)


class TransientApplyError(ReconcilerError):
    """Timeouts, conflicts, throttling, server errors: retried with backoff."""


class TerminalApplyError(ReconcilerError):
    """Schema rejection, permission denial: reported without retry."""

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        resource: ResourceKey | str | None = None,
        revision: str | None = None,
    ) -> None:
        self.code = code
        super().__init__(message, resource=resource, revision=revision)


class HealthTimeout(ReconcilerError):
    """A resource did not become Healthy before the deadline; it is Degraded."""
