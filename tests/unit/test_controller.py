# ABOUTME: Unit tests for the controller
# ABOUTME: Tests the client pool, loop lifecycle, push routing and applications reload

import asyncio
from collections.abc import AsyncIterator, Callable
from pathlib import Path

import pytest
from pydantic import SecretStr

from gitops_reconciler.config import ApplicationSpec, ClusterInstance, ServerSettings
from gitops_reconciler.controller import Controller, normalize_repo_url
from gitops_reconciler.models import LoopState, TriggerReason
from gitops_reconciler.source import SourceTracker

from builders import READY_DEPLOYMENT_STATUS, FakePlatform, ManifestDir, config_map


async def _eventually(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest.fixture
def platforms() -> dict[str, FakePlatform]:
    """In-memory clusters created by the controller, by cluster name."""
    return {}


@pytest.fixture
def client_factory(platforms: dict[str, FakePlatform]) -> Callable[[ClusterInstance], FakePlatform]:
    """Client factory handing out one FakePlatform per cluster."""

    def build(cluster: ClusterInstance) -> FakePlatform:
        platform = FakePlatform(cluster.name)
        platform.status_on_apply["Deployment"] = dict(READY_DEPLOYMENT_STATUS)
        platforms[cluster.name] = platform
        return platform

    return build


@pytest.fixture
async def controller(
    mock_server_settings: ServerSettings,
    source: SourceTracker,
    client_factory: Callable[[ClusterInstance], FakePlatform],
) -> AsyncIterator[Controller]:
    """Controller over in-memory clusters; stopped after the test."""
    controller = Controller(mock_server_settings, source=source, client_factory=client_factory)
    yield controller
    await controller.stop()


@pytest.fixture
def settings_manifests(manifests: ManifestDir) -> ManifestDir:
    manifests.write("app.yaml", config_map("settings"))
    return manifests


@pytest.mark.unit
class TestNormalizeRepoUrl:
    """Tests for repository URL comparison."""

    @pytest.mark.parametrize(
        "url",
        [
            "https://git.example.com/Team/Apps.git",
            "https://git.example.com/team/apps/",
            " https://git.example.com/team/apps.git/ ",
        ],
    )
    def test_equivalent_spellings(self, url: str):
        """Test that case, .git suffix and trailing slashes are ignored."""
        assert normalize_repo_url(url) == "https://git.example.com/team/apps"


@pytest.mark.unit
class TestControllerLifecycle:
    """Tests for starting and stopping the controller."""

    async def test_start_runs_loops(
        self,
        controller: Controller,
        settings_manifests: ManifestDir,
        platforms: dict[str, FakePlatform],
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that each Application gets a running loop on its cluster's client."""
        await controller.start([make_app()])

        assert controller.clusters == ["in-cluster"]
        assert controller.applications == ["guestbook"]
        assert platforms["in-cluster"].entered is True
        assert controller.loop("guestbook").client is platforms["in-cluster"]

        await _eventually(lambda: controller.status("guestbook").outcome == LoopState.HEALTHY)

    async def test_stop_closes_clients(
        self,
        controller: Controller,
        settings_manifests: ManifestDir,
        platforms: dict[str, FakePlatform],
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that stop cancels loops and closes the pool."""
        await controller.start([make_app()])
        task = controller._tasks["guestbook"]

        await controller.stop()

        assert task.done()
        assert platforms["in-cluster"].closed is True
        assert controller.clusters == []

    async def test_declared_applications_by_default(
        self,
        mock_server_settings: ServerSettings,
        controller: Controller,
        settings_manifests: ManifestDir,
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that start uses the settings' declarations when none are given."""
        mock_server_settings.applications = [make_app("billing")]

        await controller.start()

        assert controller.applications == ["billing"]

    async def test_unknown_cluster_rejected(self, controller: Controller, make_app: Callable[..., ApplicationSpec]):
        """Test that an Application naming an unconfigured cluster never starts."""
        await controller.start([make_app(cluster="edge")])

        assert controller.applications == []
        assert controller.rejected == {"guestbook": "Unknown destination cluster 'edge'"}

    async def test_default_client_factory(self, mock_server_settings: ServerSettings):
        """Test that the controller opens a real client per configured cluster."""
        controller = Controller(mock_server_settings)

        async with controller:
            assert controller.clusters == ["in-cluster"]
            assert controller.applications == []

        assert controller.clusters == []

    async def test_unknown_application(self, controller: Controller):
        """Test that lookups of undeclared Applications raise KeyError."""
        await controller.start([])

        with pytest.raises(KeyError, match="Application 'missing' not found"):
            controller.status("missing")
        with pytest.raises(KeyError):
            controller.trigger("missing")


@pytest.mark.unit
class TestApplyApplications:
    """Tests for reconciling the set of running loops with declarations."""

    async def test_add_update_remove(
        self,
        controller: Controller,
        settings_manifests: ManifestDir,
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that declarations are diffed against the running loops."""
        await controller.start([make_app("guestbook")])
        original = controller.loop("guestbook")

        changes = controller.apply_applications([make_app("guestbook", prune=False), make_app("billing")])

        assert changes == {"added": ["billing"], "updated": ["guestbook"], "removed": []}
        assert controller.loop("guestbook") is original
        assert original.spec.sync_policy.prune is False

        task = controller._tasks["guestbook"]
        changes = controller.apply_applications([make_app("billing")])

        assert changes == {"added": [], "updated": [], "removed": ["guestbook"]}
        assert controller.applications == ["billing"]
        await asyncio.sleep(0)
        assert task.cancelled() or task.done()

    async def test_unchanged_declaration_is_noop(
        self,
        controller: Controller,
        settings_manifests: ManifestDir,
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that re-applying identical declarations changes nothing."""
        await controller.start([make_app()])

        assert controller.apply_applications([make_app()]) == {"added": [], "updated": [], "removed": []}

    async def test_cluster_change_restarts_loop(
        self,
        mock_server_settings: ServerSettings,
        controller: Controller,
        settings_manifests: ManifestDir,
        platforms: dict[str, FakePlatform],
        make_app: Callable[..., ApplicationSpec],
    ):
        """Test that moving an Application to another cluster rebinds its loop."""
        mock_server_settings.additional_clusters = [
            ClusterInstance(url="https://edge.example.com", token=SecretStr("t"), name="edge")
        ]
        await controller.start([make_app()])
        original = controller.loop("guestbook")

        changes = controller.apply_applications([make_app(cluster="edge")])

        assert changes["updated"] == ["guestbook"]
        assert controller.loop("guestbook") is not original
        assert controller.loop("guestbook").client is platforms["edge"]


@pytest.mark.unit
class TestReloadApplications:
    """Tests for re-reading the applications file."""

    async def test_reload_adds_from_file(
        self,
        mock_server_settings: ServerSettings,
        controller: Controller,
        settings_manifests: ManifestDir,
        tmp_path: Path,
    ):
        """Test that new file entries start loops."""
        await controller.start([])
        apps_file = tmp_path / "apps.yaml"
        apps_file.write_text(
            f"- name: guestbook\n  source:\n    repoURL: {settings_manifests.url}\n"
            "  syncPolicy:\n    autoSync: true\n"
        )
        mock_server_settings.applications_file = apps_file

        changes = await controller.reload_applications()

        assert changes["added"] == ["guestbook"]
        assert controller.applications == ["guestbook"]

    async def test_invalid_file_keeps_current_set(
        self,
        mock_server_settings: ServerSettings,
        controller: Controller,
        settings_manifests: ManifestDir,
        make_app: Callable[..., ApplicationSpec],
        tmp_path: Path,
    ):
        """Test that a broken file never stops running loops."""
        await controller.start([make_app()])
        apps_file = tmp_path / "apps.yaml"
        apps_file.write_text("- name: [broken\n")
        mock_server_settings.applications_file = apps_file

        changes = await controller.reload_applications()

        assert changes == {"added": [], "updated": [], "removed": []}
        assert controller.applications == ["guestbook"]

    async def test_no_file_configured(self, controller: Controller):
        """Test that reload is a no-op without an applications file."""
        await controller.start([])

        assert await controller.reload_applications() == {"added": [], "updated": [], "removed": []}


@pytest.mark.unit
class TestTriggerRouting:
    """Tests for push routing, manual triggers and status access."""

    @pytest.fixture
    async def routed(
        self,
        controller: Controller,
        settings_manifests: ManifestDir,
        make_app: Callable[..., ApplicationSpec],
        tmp_path: Path,
    ) -> Controller:
        other = ManifestDir(tmp_path / "other-repo")
        other.write("app.yaml", config_map("other"))
        await controller.start(
            [
                make_app("guestbook"),
                make_app("guestbook-staging", repo_url=settings_manifests.url + "/"),
                make_app("billing", repo_url=other.url),
            ]
        )
        return controller

    async def test_notify_reaches_every_application_of_the_repo(
        self, routed: Controller, settings_manifests: ManifestDir
    ):
        """Test that a push is routed by normalized repository URL."""
        accepted = routed.notify(settings_manifests.url + ".git", "feedface")

        assert accepted == ["guestbook", "guestbook-staging"]

    async def test_notify_deduplicates(self, routed: Controller, settings_manifests: ManifestDir):
        """Test that a repeated push for the same revision is dropped."""
        routed.notify(settings_manifests.url, "feedface")

        assert routed.notify(settings_manifests.url, "feedface") == []

    async def test_notify_unknown_repo(self, routed: Controller):
        """Test that a push for an untracked repository reaches nobody."""
        assert routed.notify("https://git.example.com/unknown.git", "feedface") == []

    async def test_manual_trigger_and_statuses(self, routed: Controller):
        """Test manual triggers and the status listing."""
        assert routed.trigger("billing") is True
        assert routed.loop("billing").pending_trigger.reason == TriggerReason.MANUAL
        assert [s.name for s in routed.statuses()] == ["billing", "guestbook", "guestbook-staging"]
        assert routed.confirm_sync("billing") is False
