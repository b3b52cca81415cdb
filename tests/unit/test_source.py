# ABOUTME: Unit tests for the source tracker
# ABOUTME: Tests manifest parsing, directory and git repositories, and revision caching

import shutil
from pathlib import Path

import pytest
from git import GitCommandError, Repo

from gitops_reconciler.errors import AuthError, SourceUnavailable
from gitops_reconciler.models import ResourceKey
from gitops_reconciler.source import (
    DirectoryRepository,
    GitRepository,
    SourceTracker,
    _classify_git_error,
    open_repository,
    parse_documents,
)

from builders import ManifestDir, config_map, deployment

MULTI_DOC = b"""
apiVersion: v1
kind: ConfigMap
metadata:
  name: settings
data:
  a: "1"
---
# only a comment
---
apiVersion: apps/v1
kind: Deployment
metadata:
  name: web
spec:
  replicas: 2
"""

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git binary not available")


def _commit(repo: Repo, root: Path, name: str, text: str, message: str) -> str:
    path = root / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    repo.index.add([name])
    return repo.index.commit(message).hexsha


@pytest.mark.unit
class TestParseDocuments:
    """Tests for parse_documents."""

    def test_multi_document_file(self):
        """Test that every document in a file is parsed and comment-only chunks skipped."""
        resources, errors = parse_documents([("app.yaml", MULTI_DOC)], "abc123")

        assert errors == []
        assert [str(r.key) for r in resources] == ["ConfigMap/default/settings", "Deployment/default/web"]
        assert resources[0].source_path == "app.yaml"

    def test_malformed_document_isolated(self):
        """Test that one broken document does not discard its neighbours."""
        raw = b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: ok\n---\nkind: [broken\n"

        resources, errors = parse_documents([("app.yaml", raw)], "abc123")

        assert [r.key.name for r in resources] == ["ok"]
        assert len(errors) == 1
        assert errors[0].resource == "app.yaml#1"
        assert errors[0].revision == "abc123"
        assert "Malformed document" in errors[0].message

    @pytest.mark.parametrize(
        ("raw", "reason"),
        [
            (b"kind: ConfigMap\nmetadata:\n  name: a\n", "Missing apiVersion"),
            (b"apiVersion: v1\nmetadata:\n  name: a\n", "Missing kind"),
            (b"apiVersion: v1\nkind: ConfigMap\nmetadata: {}\n", "Missing metadata.name"),
            (b"- just\n- a list\n", "Document is a list, expected a mapping"),
            (b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n  labels: [x]\n", "metadata.labels must be a mapping"),
            (b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n  annotations: note\n", "metadata.annotations must be a mapping"),
        ],
    )
    def test_invalid_manifests_reported(self, raw: bytes, reason: str):
        """Test that structurally invalid manifests become parse errors."""
        resources, errors = parse_documents([("bad.yaml", raw)], "abc123")

        assert resources == []
        assert [e.message for e in errors] == [reason]

    def test_default_namespace_applied(self):
        """Test that namespaced kinds without a namespace get the destination's."""
        raw = b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n"

        resources, _ = parse_documents([("a.yaml", raw)], "abc", default_namespace="prod")

        assert resources[0].key == ResourceKey("ConfigMap", "prod", "a")

    def test_cluster_scoped_namespace_dropped(self):
        """Test that cluster-scoped kinds never carry a namespace."""
        raw = b"apiVersion: v1\nkind: Namespace\nmetadata:\n  name: prod\n  namespace: ignored\n"

        resources, _ = parse_documents([("ns.yaml", raw)], "abc")

        assert resources[0].key == ResourceKey("Namespace", "", "prod")
        assert "namespace" not in resources[0].document.manifest["metadata"]

    def test_list_kind_expanded(self):
        """Test that `kind: List` documents contribute their items."""
        raw = (
            b"apiVersion: v1\nkind: List\nitems:\n"
            b"  - apiVersion: v1\n    kind: ConfigMap\n    metadata:\n      name: one\n"
            b"  - apiVersion: v1\n    kind: ConfigMap\n    metadata:\n      name: two\n"
        )

        resources, errors = parse_documents([("list.yaml", raw)], "abc")

        assert errors == []
        assert [r.key.name for r in resources] == ["one", "two"]

    def test_json_file(self):
        """Test that .json files are parsed as a single JSON document."""
        raw = b'{"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "j"}}'

        resources, errors = parse_documents([("cm.json", raw)], "abc")

        assert errors == []
        assert resources[0].key.name == "j"

    def test_duplicate_identity_first_wins(self):
        """Test that a second declaration of the same identity is reported."""
        raw = b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: dup\n"

        resources, errors = parse_documents([("a.yaml", raw), ("b.yaml", raw)], "abc")

        assert [r.source_path for r in resources] == ["a.yaml"]
        assert "Duplicate resource ConfigMap/default/dup, first declared in a.yaml" in errors[0].message

    def test_invalid_utf8(self):
        """Test that undecodable files are reported, not raised."""
        resources, errors = parse_documents([("bin.yaml", b"\xff\xfe\x00")], "abc")

        assert resources == []
        assert "not valid UTF-8" in errors[0].message
        assert errors[0].resource == "bin.yaml"

    def test_invalid_depends_on_reference(self):
        """Test that a malformed depends-on annotation fails only that document."""
        raw = (
            b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n  annotations:\n"
            b"    gitops-reconciler.io/depends-on: just-a-name\n"
        )

        resources, errors = parse_documents([("a.yaml", raw)], "abc")

        assert resources == []
        assert "Invalid resource reference 'just-a-name'" in errors[0].message

    def test_output_sorted_by_identity(self):
        """Test that resources come back in identity order regardless of file order."""
        files = [
            ("z.yaml", b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n"),
            ("a.yaml", b"apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: z\n"),
        ]

        resources, _ = parse_documents(files, "abc")

        assert [r.key.name for r in resources] == ["a", "z"]


@pytest.mark.unit
class TestDirectoryRepository:
    """Tests for DirectoryRepository."""

    async def test_revision_is_content_hash(self, manifests: ManifestDir):
        """Test that unchanged content resolves to the same revision id."""
        manifests.write("cm.yaml", config_map("a"))
        repo = DirectoryRepository(manifests.root)

        first = await repo.latest_revision("HEAD")
        second = await repo.latest_revision("HEAD")

        assert first == second
        assert len(first) == 64

    async def test_revision_changes_with_content(self, manifests: ManifestDir):
        """Test that editing a manifest yields a new revision id."""
        manifests.write("cm.yaml", config_map("a"))
        repo = DirectoryRepository(manifests.root)
        first = await repo.latest_revision("HEAD")

        manifests.write("cm.yaml", config_map("a", {"key": "changed"}))

        assert await repo.latest_revision("HEAD") != first

    async def test_list_returns_snapshot(self, manifests: ManifestDir):
        """Test that a resolved revision keeps the content seen at resolve time."""
        manifests.write("cm.yaml", config_map("a"))
        repo = DirectoryRepository(manifests.root)
        revision = await repo.latest_revision("HEAD")

        manifests.write("cm.yaml", config_map("b"))
        files = await repo.list_documents(revision)

        assert len(files) == 1
        assert b"name: a" in files[0][1]

    async def test_ignores_non_manifest_files(self, manifests: ManifestDir):
        """Test that only .yaml/.yml/.json outside .git are read."""
        manifests.write("cm.yaml", config_map("a"))
        manifests.write_text("README.md", "# docs")
        manifests.write_text(".git/config.yaml", "ignored: true")
        repo = DirectoryRepository(manifests.root)

        files = await repo.list_documents(await repo.latest_revision("HEAD"))

        assert [name for name, _ in files] == ["cm.yaml"]

    async def test_path_filter(self, manifests: ManifestDir):
        """Test that a sub-path narrows and relativizes the listing."""
        manifests.write("guestbook/cm.yaml", config_map("a"))
        manifests.write("billing/cm.yaml", config_map("b"))
        repo = DirectoryRepository(manifests.root)
        revision = await repo.latest_revision("HEAD")

        files = await repo.list_documents(revision, "guestbook")

        assert [name for name, _ in files] == ["cm.yaml"]

    async def test_unknown_revision(self, manifests: ManifestDir):
        """Test that listing a revision never resolved is SourceUnavailable."""
        repo = DirectoryRepository(manifests.root)

        with pytest.raises(SourceUnavailable, match="is not known"):
            await repo.list_documents("deadbeef")

    async def test_missing_directory(self, tmp_path: Path):
        """Test that a missing directory is SourceUnavailable."""
        repo = DirectoryRepository(tmp_path / "nowhere")

        with pytest.raises(SourceUnavailable, match="does not exist"):
            await repo.latest_revision("HEAD")


@pytest.mark.unit
class TestOpenRepository:
    """Tests for backend selection."""

    def test_plain_directory(self, manifests: ManifestDir, tmp_path: Path):
        """Test that a directory without .git is read directly."""
        assert isinstance(open_repository(manifests.url, tmp_path), DirectoryRepository)

    def test_file_url(self, manifests: ManifestDir, tmp_path: Path):
        """Test that file:// URLs to plain directories are read directly."""
        repo = open_repository(f"file://{manifests.root}", tmp_path)

        assert isinstance(repo, DirectoryRepository)
        assert repo.root == manifests.root

    def test_remote_url(self, tmp_path: Path):
        """Test that remote URLs are mirrored with git."""
        repo = open_repository("https://git.example.com/apps.git", tmp_path)

        assert isinstance(repo, GitRepository)
        assert repo.url == "https://git.example.com/apps.git"


@pytest.mark.unit
class TestGitErrorClassification:
    """Tests for mapping git failures to source errors."""

    def test_auth_failure(self):
        """Test that rejected credentials become AuthError."""
        error = GitCommandError(
            ["git", "clone"], 128, stderr="fatal: Authentication failed for 'https://git.example.com/'"
        )

        assert isinstance(_classify_git_error("https://git.example.com/", error), AuthError)

    def test_other_failure(self):
        """Test that anything else is SourceUnavailable."""
        error = GitCommandError(["git", "fetch"], 128, stderr="fatal: unable to access: Could not resolve host")

        result = _classify_git_error("https://git.example.com/", error)

        assert isinstance(result, SourceUnavailable)
        assert not isinstance(result, AuthError)


@requires_git
@pytest.mark.unit
class TestGitRepository:
    """Tests for GitRepository against a local origin."""

    @pytest.fixture
    def origin(self, tmp_path: Path) -> tuple[Repo, Path]:
        root = tmp_path / "origin"
        repo = Repo.init(root)
        with repo.config_writer() as config:
            config.set_value("user", "name", "Test")
            config.set_value("user", "email", "test@example.com")
        return repo, root

    async def test_resolves_head_and_lists_documents(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test cloning a mirror, resolving HEAD and reading a sub-path."""
        repo, root = origin
        sha = _commit(repo, root, "guestbook/cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n", "add")
        git_repo = GitRepository(str(root), tmp_path / "work")

        revision = await git_repo.latest_revision("HEAD")
        files = await git_repo.list_documents(revision, "guestbook")

        assert revision == sha
        assert [name for name, _ in files] == ["guestbook/cm.yaml"]

    async def test_fetches_new_commits(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test that a second resolve sees commits pushed after the clone."""
        repo, root = origin
        _commit(repo, root, "cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n", "one")
        git_repo = GitRepository(str(root), tmp_path / "work")
        first = await git_repo.latest_revision("HEAD")

        second_sha = _commit(repo, root, "cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: b\n", "two")

        assert await git_repo.latest_revision("HEAD") == second_sha != first

    async def test_unknown_ref(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test that an unknown branch is SourceUnavailable."""
        repo, root = origin
        _commit(repo, root, "cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n", "one")
        git_repo = GitRepository(str(root), tmp_path / "work")

        with pytest.raises(SourceUnavailable, match="Revision 'no-such-branch' not found"):
            await git_repo.latest_revision("no-such-branch")

    async def test_missing_path(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test that a path absent at the revision is SourceUnavailable."""
        repo, root = origin
        sha = _commit(repo, root, "cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n", "one")
        git_repo = GitRepository(str(root), tmp_path / "work")
        await git_repo.latest_revision("HEAD")

        with pytest.raises(SourceUnavailable, match="Path 'missing' does not exist"):
            await git_repo.list_documents(sha, "missing")

    async def test_path_naming_a_file(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test that a path naming a file rather than a directory is SourceUnavailable."""
        repo, root = origin
        sha = _commit(repo, root, "cm.yaml", "apiVersion: v1\nkind: ConfigMap\nmetadata:\n  name: a\n", "one")
        git_repo = GitRepository(str(root), tmp_path / "work")
        await git_repo.latest_revision("HEAD")

        with pytest.raises(SourceUnavailable, match="Path 'cm.yaml' is not a directory") as exc_info:
            await git_repo.list_documents(sha, "cm.yaml")

        assert exc_info.value.revision == sha

    def test_local_checkout_uses_git(self, origin: tuple[Repo, Path], tmp_path: Path):
        """Test that a directory holding .git is mirrored rather than read directly."""
        _, root = origin

        assert isinstance(open_repository(str(root), tmp_path / "work"), GitRepository)


@pytest.mark.unit
class TestSourceTracker:
    """Tests for SourceTracker."""

    async def test_resolve_latest(self, source: SourceTracker, manifests: ManifestDir, make_app):
        """Test that an Application resolves to a Revision of its manifests."""
        manifests.write("app.yaml", config_map("settings"), deployment("web", config="settings"))
        manifests.write_text("broken.yaml", "kind: [oops\n")

        revision = await source.resolve_latest(make_app())

        assert [str(k) for k in sorted(revision.keys)] == [
            "ConfigMap/default/settings",
            "Deployment/default/web",
        ]
        assert len(revision.parse_errors) == 1
        assert revision.short_sha == revision.sha[:8]

    async def test_same_revision_is_cached(self, source: SourceTracker, manifests: ManifestDir, make_app):
        """Test that resolving an unchanged source returns the identical Revision."""
        manifests.write("app.yaml", config_map("settings"))
        app = make_app()

        first = await source.resolve_latest(app)
        second = await source.resolve_latest(app)

        assert first is second
        assert first.digest() == second.digest()

    async def test_repository_shared_per_url(self, source: SourceTracker, manifests: ManifestDir):
        """Test that Applications on the same URL share one repository."""
        assert source.repository(manifests.url) is source.repository(manifests.url)

    async def test_unavailable_source_raises(self, source: SourceTracker, make_app, tmp_path: Path):
        """Test that a vanished source surfaces SourceUnavailable."""
        app = make_app(repo_url=str(tmp_path / "nowhere"))
        source._repositories[app.source.repo_url] = DirectoryRepository(tmp_path / "nowhere")

        with pytest.raises(SourceUnavailable):
            await source.resolve_latest(app)
