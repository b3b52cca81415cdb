# ABOUTME: Controller running one reconciliation loop per Application
# ABOUTME: Owns the shared cluster client pool, routes push triggers, reloads declarations

"""
Controller.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Everything above a single Application:

1. CLIENT POOL: one PlatformClient per configured cluster, opened once and
   shared by every loop whose destination names that cluster
2. LOOPS: one ApplicationLoop task per declared Application, independent
   of each other
3. TRIGGER ROUTING: a push notification for a repository URL reaches every
   Application sourced from it
4. POLICY RELOAD: the applications file is re-read periodically; changed
   policies apply on each loop's next cycle, removed Applications have
   their loops stopped (their cluster resources are left alone)

=============================================================================
LIFECYCLE
=============================================================================

    async with Controller(settings, audit=audit) as controller:
        controller.notify("https://git.example.com/apps.git", "4f2a9c...")
        controller.status("guestbook").to_dict()
"""

from __future__ import annotations

import asyncio
from contextlib import AsyncExitStack
from typing import TYPE_CHECKING

import structlog

from gitops_reconciler.config import load_applications
from gitops_reconciler.models import TriggerReason
from gitops_reconciler.reconciler import ApplicationLoop
from gitops_reconciler.source import SourceTracker
from gitops_reconciler.utils.client import PlatformClient

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from gitops_reconciler.config import ApplicationSpec, ClusterInstance, ServerSettings
    from gitops_reconciler.models import ApplicationStatus
    from gitops_reconciler.utils.logging import AuditLogger

logger = structlog.get_logger(__name__)


def normalize_repo_url(url: str) -> str:
    """Compare repository URLs without trailing slashes, `.git` suffix or case."""
    url = url.strip().rstrip("/")
    url = url.removesuffix(".git")
    return url.lower()


class Controller:
    """Runs and supervises every Application's reconciliation loop."""

    def __init__(
        self,
        settings: ServerSettings,
        *,
        audit: AuditLogger | None = None,
        source: SourceTracker | None = None,
        client_factory: Callable[[ClusterInstance], PlatformClient] | None = None,
    ) -> None:
        self._settings = settings
        self._audit = audit
        self._source = source or SourceTracker(settings.workdir)
        self._client_factory = client_factory or (
            lambda cluster: PlatformClient(cluster, mask_secrets=settings.security.mask_secrets)
        )
        self._clients: dict[str, PlatformClient] = {}
        self._loops: dict[str, ApplicationLoop] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._reload_task: asyncio.Task[None] | None = None
        self._stack = AsyncExitStack()
        self._running = False
        self.rejected: dict[str, str] = {}

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, applications: Iterable[ApplicationSpec] | None = None) -> None:
        """
        Open the client pool and start one loop per Application.

        Args:
            applications: Declarations to run; defaults to the settings'
                declared applications (file entries plus inline ones).
        """
        for cluster in self._settings.all_clusters:
            client = self._client_factory(cluster)
            self._clients[cluster.name] = await self._stack.enter_async_context(client)
        self._running = True

        if applications is None:
            applications = self._settings.declared_applications()
        self.apply_applications(applications)

        if self._settings.applications_file:
            self._reload_task = asyncio.create_task(self._reload_forever())

        logger.info(
            "Controller started",
            clusters=sorted(self._clients),
            applications=sorted(self._loops),
        )

    async def stop(self) -> None:
        """Stop every loop and close the client pool."""
        self._running = False
        tasks = list(self._tasks.values())
        if self._reload_task:
            tasks.append(self._reload_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._reload_task = None
        await self._stack.aclose()
        self._stack = AsyncExitStack()
        self._clients.clear()
        logger.info("Controller stopped")

    async def __aenter__(self) -> Controller:
        await self.start()
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.stop()

    # =========================================================================
    # APPLICATIONS
    # =========================================================================

    @property
    def clusters(self) -> list[str]:
        return sorted(self._clients)

    @property
    def applications(self) -> list[str]:
        return sorted(self._loops)

    def loop(self, name: str) -> ApplicationLoop:
        """
        Raises:
            KeyError: If no Application has this name.
        """
        if name not in self._loops:
            raise KeyError(f"Application '{name}' not found")
        return self._loops[name]

    def _on_task_done(self, name: str, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Reconciliation loop crashed",
                application=name,
                error=str(error),
                error_type=type(error).__name__,
            )

    def _start_loop(self, spec: ApplicationSpec) -> None:
        client = self._clients.get(spec.destination.cluster)
        if client is None:
            reason = f"Unknown destination cluster '{spec.destination.cluster}'"
            self.rejected[spec.name] = reason
            logger.error("Application rejected", application=spec.name, reason=reason)
            return

        self.rejected.pop(spec.name, None)
        loop = ApplicationLoop(
            spec,
            source=self._source,
            client=client,
            settings=self._settings.loop,
            audit=self._audit,
        )
        self._loops[spec.name] = loop
        if self._running:
            task = asyncio.create_task(loop.run(), name=f"reconcile:{spec.name}")
            task.add_done_callback(lambda t, n=spec.name: self._on_task_done(n, t))
            self._tasks[spec.name] = task

    def remove_application(self, name: str) -> None:
        """Stop an Application's loop. Its cluster resources are not touched."""
        task = self._tasks.pop(name, None)
        if task:
            task.cancel()
        self._loops.pop(name, None)
        self.rejected.pop(name, None)
        logger.info("Application removed", application=name)

    def apply_applications(self, applications: Iterable[ApplicationSpec]) -> dict[str, list[str]]:
        """
        Reconcile the set of running loops with a set of declarations.

        Returns:
            {"added": [...], "updated": [...], "removed": [...]}
        """
        declared = {spec.name: spec for spec in applications}
        changes: dict[str, list[str]] = {"added": [], "updated": [], "removed": []}

        for name in sorted(set(self._loops) - set(declared)):
            self.remove_application(name)
            changes["removed"].append(name)

        for name, spec in sorted(declared.items()):
            existing = self._loops.get(name)
            if existing is None:
                self._start_loop(spec)
                if name in self._loops:
                    changes["added"].append(name)
                continue
            if existing.spec == spec:
                continue
            if existing.spec.destination.cluster != spec.destination.cluster:
                # A loop is bound to one cluster client for its lifetime
                self.remove_application(name)
                self._start_loop(spec)
            else:
                existing.update_spec(spec)
            changes["updated"].append(name)

        if any(changes.values()):
            logger.info("Applications changed", **changes)
        return changes

    async def reload_applications(self) -> dict[str, list[str]]:
        """
        Re-read the applications file and apply the differences.

        A file that fails to load leaves the running set untouched.
        """
        path = self._settings.applications_file
        if path is None:
            return {"added": [], "updated": [], "removed": []}
        try:
            file_apps = await asyncio.to_thread(load_applications, path)
        except (OSError, ValueError) as e:
            logger.error("Applications file rejected, keeping current set", path=str(path), error=str(e))
            return {"added": [], "updated": [], "removed": []}

        declared = {app.name: app for app in self._settings.applications}
        declared.update({app.name: app for app in file_apps})
        return self.apply_applications(declared.values())

    async def _reload_forever(self) -> None:
        while True:
            await asyncio.sleep(self._settings.loop.poll_interval)
            await self.reload_applications()

    # =========================================================================
    # TRIGGERS AND STATUS
    # =========================================================================

    def notify(self, repo_url: str, revision: str | None = None) -> list[str]:
        """
        Route a push notification to every Application sourced from `repo_url`.

        Returns:
            Names of the Applications that accepted the trigger (pushes for a
            revision already synced, in flight or pending are dropped).
        """
        wanted = normalize_repo_url(repo_url)
        accepted = []
        for name, loop in sorted(self._loops.items()):
            if normalize_repo_url(loop.spec.source.repo_url) != wanted:
                continue
            if loop.trigger(TriggerReason.PUSH, revision):
                accepted.append(name)
        logger.info("Push notification routed", repo_url=repo_url, revision=revision, accepted=accepted)
        return accepted

    def trigger(self, name: str, reason: TriggerReason = TriggerReason.MANUAL) -> bool:
        return self.loop(name).trigger(reason)

    def confirm_sync(self, name: str) -> bool:
        return self.loop(name).confirm_sync()

    def status(self, name: str) -> ApplicationStatus:
        return self.loop(name).status

    def statuses(self) -> list[ApplicationStatus]:
        return [self._loops[name].status for name in sorted(self._loops)]
