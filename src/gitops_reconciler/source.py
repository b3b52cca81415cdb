# ABOUTME: Source tracker resolving Application sources to immutable Revisions
# ABOUTME: Git mirror and plain-directory repositories, per-document manifest parsing

"""
Source Tracker.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The first stage of every reconciliation cycle: turn an Application's source
(repository URL + path + revision selector) into a Revision, meaning a commit
identifier plus the desired resources parsed from the manifests at that
commit.

    tracker = SourceTracker(workdir=Path(".reconciler"))
    revision = await tracker.resolve_latest(application)
    revision.sha            # "4f2a9c..."
    revision.resources      # (DesiredResource, ...) sorted by identity
    revision.parse_errors   # (ParseError, ...) one per broken document

=============================================================================
REPOSITORY BACKENDS
=============================================================================

ManifestRepository is the source repository interface: "get latest revision
ref" and "list documents at revision X". Two implementations:

    GitRepository        A bare mirror clone cached under the workdir,
                         refreshed with `git fetch --prune` on each resolve.
                         Revision = commit SHA.
    DirectoryRepository  A plain directory (or file:// URL) without git.
                         Revision = content hash of every manifest file.

Git calls block, so they run in a worker thread (asyncio.to_thread); one
Application waiting on a slow fetch never stalls the others.

=============================================================================
PARSING
=============================================================================

Files ending in .yaml, .yml or .json are read. A YAML file may hold many
documents separated by `---`; each is parsed on its own so one broken
document yields one ParseError and the rest of the file still counts.
`kind: List` documents are expanded into their items.

=============================================================================
IDEMPOTENCE
=============================================================================

The same commit always yields the same DesiredResource set: documents are
sorted by identity and resolved Revisions are cached per
(repository, path, sha, default namespace).
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import re
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import TYPE_CHECKING, Any

import structlog
import yaml
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from gitops_reconciler.errors import AuthError, ParseError, SourceUnavailable
from gitops_reconciler.models import DesiredResource, ResourceDocument, ResourceKey, Revision

if TYPE_CHECKING:
    from gitops_reconciler.config import ApplicationSpec

logger = structlog.get_logger(__name__)

MANIFEST_EXTENSIONS = (".yaml", ".yml", ".json")

# Substrings git prints when credentials are missing or rejected.
_AUTH_FAILURE_MARKERS = (
    "authentication failed",
    "could not read username",
    "could not read password",
    "permission denied",
    "access denied",
    "the requested url returned error: 401",
    "the requested url returned error: 403",
    "host key verification failed",
)

_DOCUMENT_SEPARATOR = re.compile(r"^---[ \t]*(?:#.*)?$", re.MULTILINE)


# =============================================================================
# REPOSITORY INTERFACE
# =============================================================================


class ManifestRepository(ABC):
    """Read access to a versioned document store."""

    @abstractmethod
    async def latest_revision(self, ref: str) -> str:
        """
        Resolve a revision selector (branch, tag, SHA, HEAD) to a revision id.

        Raises:
            SourceUnavailable: Repository unreachable or ref unknown.
            AuthError: Credentials missing or rejected.
        """

    @abstractmethod
    async def list_documents(self, revision: str, path: str = ".") -> list[tuple[str, bytes]]:
        """
        Manifest files under `path` at `revision`, as (relative path, raw bytes).

        Raises:
            SourceUnavailable: Unknown revision or missing path.
        """


def _classify_git_error(url: str, e: GitCommandError) -> SourceUnavailable | AuthError:
    stderr = str(e.stderr or e).lower()
    if any(marker in stderr for marker in _AUTH_FAILURE_MARKERS):
        return AuthError(f"Repository {url} rejected credentials: {str(e.stderr or e).strip()}")
    return SourceUnavailable(f"Repository {url} unavailable: {str(e.stderr or e).strip()}")


class GitRepository(ManifestRepository):
    """
    A git repository mirrored under `workdir/repos/<hash of url>`.

    The mirror is bare: no working tree is ever checked out. Manifests are
    read straight from the commit tree, so two Applications tracking
    different revisions of the same repository never interfere.
    """

    def __init__(self, url: str, workdir: Path) -> None:
        self.url = url
        digest = hashlib.sha256(url.encode()).hexdigest()[:16]
        self._mirror_path = workdir / "repos" / digest
        self._repo: Repo | None = None
        self._lock = asyncio.Lock()

    def _mirror(self) -> tuple[Repo, bool]:
        """Open the mirror, cloning it first if needed. Second value: freshly cloned."""
        if self._repo is not None:
            return self._repo, False
        try:
            self._repo = Repo(self._mirror_path)
            return self._repo, False
        except (InvalidGitRepositoryError, NoSuchPathError):
            pass

        self._mirror_path.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning repository mirror", url=self.url, path=str(self._mirror_path))
        try:
            self._repo = Repo.clone_from(self.url, self._mirror_path, mirror=True)
        except GitCommandError as e:
            raise _classify_git_error(self.url, e) from e
        return self._repo, True

    def _resolve(self, ref: str) -> str:
        repo, cloned = self._mirror()
        if not cloned:
            try:
                repo.git.fetch("--prune", "origin")
            except GitCommandError as e:
                raise _classify_git_error(self.url, e) from e
        try:
            return repo.git.rev_parse("--verify", "--quiet", f"{ref}^{{commit}}").strip()
        except GitCommandError as e:
            raise SourceUnavailable(f"Revision '{ref}' not found in {self.url}") from e

    def _list(self, revision: str, path: str) -> list[tuple[str, bytes]]:
        repo, _ = self._mirror()
        try:
            tree = repo.commit(revision).tree
        except (ValueError, GitCommandError) as e:
            raise SourceUnavailable(f"Revision '{revision}' not found in {self.url}") from e

        if path != ".":
            try:
                tree = tree / path
            except KeyError as e:
                raise SourceUnavailable(
                    f"Path '{path}' does not exist in {self.url} at {revision[:8]}",
                    revision=revision,
                ) from e
            if tree.type != "tree":
                raise SourceUnavailable(
                    f"Path '{path}' is not a directory in {self.url} at {revision[:8]}",
                    revision=revision,
                )

        files = []
        for item in tree.traverse():
            if item.type == "blob" and item.path.endswith(MANIFEST_EXTENSIONS):
                files.append((item.path, item.data_stream.read()))
        return sorted(files)

    async def latest_revision(self, ref: str) -> str:
        async with self._lock:
            return await asyncio.to_thread(self._resolve, ref)

    async def list_documents(self, revision: str, path: str = ".") -> list[tuple[str, bytes]]:
        async with self._lock:
            return await asyncio.to_thread(self._list, revision, path)


class DirectoryRepository(ManifestRepository):
    """
    A plain directory of manifests.

    There is no history to ask, so the revision id is a content hash and the
    file contents seen at resolve time are snapshotted under it. Listing a
    revision always returns that snapshot, never whatever is on disk now.
    """

    max_snapshots = 8

    def __init__(self, root: Path) -> None:
        self.root = root
        self._snapshots: OrderedDict[str, list[tuple[str, bytes]]] = OrderedDict()

    def _read(self) -> tuple[str, list[tuple[str, bytes]]]:
        if not self.root.is_dir():
            raise SourceUnavailable(f"Directory {self.root} does not exist")
        files = sorted(
            (p.relative_to(self.root).as_posix(), p.read_bytes())
            for p in self.root.rglob("*")
            if p.is_file() and p.suffix in MANIFEST_EXTENSIONS and ".git" not in p.parts
        )
        digest = hashlib.sha256()
        for name, content in files:
            digest.update(name.encode())
            digest.update(b"\0")
            digest.update(content)
            digest.update(b"\0")
        return digest.hexdigest(), files

    async def latest_revision(self, ref: str) -> str:  # noqa: ARG002 - no refs in a directory
        revision, files = await asyncio.to_thread(self._read)
        self._snapshots[revision] = files
        self._snapshots.move_to_end(revision)
        while len(self._snapshots) > self.max_snapshots:
            self._snapshots.popitem(last=False)
        return revision

    async def list_documents(self, revision: str, path: str = ".") -> list[tuple[str, bytes]]:
        files = self._snapshots.get(revision)
        if files is None:
            raise SourceUnavailable(f"Revision '{revision}' is not known for {self.root}")
        if path == ".":
            return list(files)
        prefix = path.rstrip("/") + "/"
        return [(name[len(prefix) :], content) for name, content in files if name.startswith(prefix)]


def open_repository(url: str, workdir: Path) -> ManifestRepository:
    """Pick the backend for a source URL: file:// or plain directories are read directly."""
    if url.startswith("file://"):
        local = Path(url[len("file://") :])
        if not (local / ".git").exists():
            return DirectoryRepository(local)
        return GitRepository(str(local), workdir)
    local = Path(url)
    if local.is_dir() and not (local / ".git").exists():
        return DirectoryRepository(local)
    return GitRepository(url, workdir)


# =============================================================================
# MANIFEST PARSING
# =============================================================================


def _has_content(chunk: str) -> bool:
    """False for chunks holding only blank lines and comments."""
    for line in chunk.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return True
    return False


def _split_yaml(text: str) -> list[str]:
    """Split a multi-document YAML file into one chunk per document."""
    return [chunk for chunk in _DOCUMENT_SEPARATOR.split(text) if _has_content(chunk)]


def _validate_manifest(doc: Any) -> str | None:
    """Reason the document is not a usable manifest, or None."""
    if not isinstance(doc, dict):
        return f"Document is a {type(doc).__name__}, expected a mapping"
    if not doc.get("apiVersion"):
        return "Missing apiVersion"
    if not doc.get("kind"):
        return "Missing kind"
    metadata = doc.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        return "Missing metadata.name"
    for field_name in ("labels", "annotations"):
        value = metadata.get(field_name)
        if value is not None and not isinstance(value, dict):
            return f"metadata.{field_name} must be a mapping"
    return None


def _expand(doc: Any) -> list[Any]:
    if isinstance(doc, dict) and str(doc.get("kind", "")).endswith("List") and "items" in doc:
        return list(doc.get("items") or [])
    return [doc]


def parse_documents(
    files: list[tuple[str, bytes]],
    revision: str,
    default_namespace: str = "default",
) -> tuple[list[DesiredResource], list[ParseError]]:
    """
    Parse manifest files into desired resources.

    Every failure is isolated to its document and returned as a ParseError;
    nothing here raises. When two documents declare the same identity the
    first one (in path order) wins and the second is reported.

    Returns:
        (resources sorted by identity, parse errors in file order)
    """
    resources: dict[ResourceKey, DesiredResource] = {}
    errors: list[ParseError] = []

    for path, raw in files:
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            errors.append(ParseError(f"File is not valid UTF-8: {e}", path=path, revision=revision))
            continue

        if path.endswith(".json"):
            chunks = [text] if text.strip() else []
        else:
            chunks = _split_yaml(text)

        for index, chunk in enumerate(chunks):
            try:
                doc = json.loads(chunk) if path.endswith(".json") else yaml.safe_load(chunk)
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                errors.append(ParseError(f"Malformed document: {e}", path=path, index=index, revision=revision))
                continue
            if doc is None:
                continue

            for manifest in _expand(doc):
                reason = _validate_manifest(manifest)
                if reason:
                    errors.append(ParseError(reason, path=path, index=index, revision=revision))
                    continue

                document = ResourceDocument.from_manifest(manifest, default_namespace)
                try:
                    document.explicit_dependencies()
                except ValueError as e:
                    errors.append(ParseError(str(e), path=path, index=index, revision=revision))
                    continue

                key = document.key
                if key in resources:
                    errors.append(
                        ParseError(
                            f"Duplicate resource {key}, first declared in {resources[key].source_path}",
                            path=path,
                            index=index,
                            revision=revision,
                        )
                    )
                    continue
                resources[key] = DesiredResource(document=document, source_path=path)

    return [resources[k] for k in sorted(resources)], errors


# =============================================================================
# SOURCE TRACKER
# =============================================================================


class SourceTracker:
    """
    Resolves Applications to Revisions.

    One ManifestRepository per URL is shared by every Application reading
    from it. Revisions are cached LRU, keyed on everything that influences
    parsing, so resolving an unchanged commit costs one `git fetch`.
    """

    def __init__(self, workdir: Path, cache_size: int = 64) -> None:
        self._workdir = workdir
        self._cache_size = cache_size
        self._repositories: dict[str, ManifestRepository] = {}
        self._cache: OrderedDict[tuple[str, str, str, str], Revision] = OrderedDict()

    def repository(self, repo_url: str) -> ManifestRepository:
        if repo_url not in self._repositories:
            self._repositories[repo_url] = open_repository(repo_url, self._workdir)
        return self._repositories[repo_url]

    async def resolve_latest(self, application: ApplicationSpec) -> Revision:
        """
        Resolve the Application's revision selector and parse that commit.

        Raises:
            SourceUnavailable: Repository unreachable, ref or path unknown.
            AuthError: Credentials missing or rejected.
        """
        source = application.source
        repository = self.repository(source.repo_url)
        sha = await repository.latest_revision(source.target_revision)
        return await self.resolve(application, sha)

    async def resolve(self, application: ApplicationSpec, sha: str) -> Revision:
        """Parse the Application's documents at a specific revision id."""
        source = application.source
        cache_key = (source.repo_url, source.path, sha, application.destination.namespace)
        cached = self._cache.get(cache_key)
        if cached is not None:
            self._cache.move_to_end(cache_key)
            return cached

        log = logger.bind(application=application.name, revision=sha[:8])
        files = await self.repository(source.repo_url).list_documents(sha, source.path)
        resources, errors = parse_documents(files, sha, application.destination.namespace)
        for error in errors:
            log.warning("Document failed to parse", location=error.resource, error=error.message)
        log.debug("Revision resolved", resources=len(resources), parse_errors=len(errors))

        revision = Revision(sha=sha, resources=tuple(resources), parse_errors=tuple(errors))
        self._cache[cache_key] = revision
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)
        return revision
