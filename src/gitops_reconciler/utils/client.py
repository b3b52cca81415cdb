# ABOUTME: Async client for the target platform's resource API with retry logic
# ABOUTME: Get/list/apply/delete by (kind, namespace, name) with transient/terminal error classification

"""
Target platform resource API client.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

The controller never reimplements the platform. Everything it knows about
live state, and every change it makes, goes through this client:

1. READ: get one resource, list resources of a kind by label selector
2. WRITE: server-side apply (create or update), delete
3. ERROR CLASSIFICATION: transient (retry) vs terminal (report) failures
4. RETRY: request timeouts are retried with exponential backoff
5. SECRET MASKING: error bodies and debug logs never leak credentials

=============================================================================
KUBERNETES RESOURCE PATHS
=============================================================================

    core group     /api/v1/namespaces/{ns}/{plural}/{name}
    named groups   /apis/{group}/{version}/namespaces/{ns}/{plural}/{name}
    cluster scope  the /namespaces/{ns} segment is omitted

List calls without a namespace span all namespaces, which is how orphaned
resources are found regardless of where they ended up.

=============================================================================
SERVER-SIDE APPLY
=============================================================================

Creates and updates are both sent as

    PATCH {path}?fieldManager=gitops-reconciler&force=true
    Content-Type: application/apply-patch+yaml

so the platform merges only the fields we declare and keeps the ones it
injects (assigned ports, default labels). JSON is valid YAML, so the body is
plain JSON.

=============================================================================
CONNECTION POOL
=============================================================================

One PlatformClient per cluster is shared by every Application loop. The
underlying httpx.AsyncClient is a connection pool that is safe for
concurrent use from many tasks:

    async with PlatformClient(cluster) as client:
        live = await client.list("apps/v1", "Deployment", label_selector="app=web")
"""

# =============================================================================
# IMPORTS
# =============================================================================

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from gitops_reconciler.models import LiveResource

if TYPE_CHECKING:
    from gitops_reconciler.config import ClusterInstance

logger = structlog.get_logger(__name__)


# =============================================================================
# SECRET MASKING PATTERNS
# =============================================================================

SECRET_PATTERNS = [
    (re.compile(r"(token[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(password[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(secret[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(api[_-]?key[\"']?\s*[:=]\s*[\"']?)[^\"'\s,}]+", re.I), r"\1***MASKED***"),
    (re.compile(r"(bearer\s+)[^\s\"']+", re.I), r"\1***MASKED***"),
]

SENSITIVE_KEYS = frozenset(
    [
        "token",
        "password",
        "secret",
        "api_key",
        "apikey",
        "api-key",
        "authorization",
        "auth",
        "credential",
        "credentials",
    ]
)

# Statuses worth retrying: timeouts, optimistic-lock conflicts, throttling,
# and server-side failures. Everything else in 4xx is the request's fault.
TRANSIENT_STATUS_CODES = frozenset([408, 409, 425, 429, 500, 502, 503, 504])

FIELD_MANAGER = "gitops-reconciler"

_IRREGULAR_PLURALS = {
    "Endpoints": "endpoints",
}


def plural_for(kind: str) -> str:
    """
    Resource plural used in API paths.

    Examples:
        Deployment -> deployments, Ingress -> ingresses,
        NetworkPolicy -> networkpolicies, StorageClass -> storageclasses
    """
    if kind in _IRREGULAR_PLURALS:
        return _IRREGULAR_PLURALS[kind]
    lower = kind.lower()
    if lower.endswith(("s", "x", "ch", "sh")):
        return f"{lower}es"
    if lower.endswith("y") and len(lower) > 1 and lower[-2] not in "aeiou":
        return f"{lower[:-1]}ies"
    return f"{lower}s"


def resource_path(
    api_version: str,
    kind: str,
    namespace: str = "",
    name: str | None = None,
) -> str:
    """Build the REST path for a resource or a collection."""
    prefix = f"/apis/{api_version}" if "/" in api_version else f"/api/{api_version}"
    scope = f"/namespaces/{namespace}" if namespace else ""
    path = f"{prefix}{scope}/{plural_for(kind)}"
    if name:
        path += f"/{name}"
    return path


def mask_secrets(data: Any) -> Any:
    """
    Recursively mask sensitive values.

    Strings go through SECRET_PATTERNS, dict values under SENSITIVE_KEYS are
    replaced, lists are walked item by item, anything else passes through.
    """
    if isinstance(data, str):
        masked = data
        for pattern, replacement in SECRET_PATTERNS:
            masked = pattern.sub(replacement, masked)
        return masked
    if isinstance(data, dict):
        return {
            k: "***MASKED***" if str(k).lower() in SENSITIVE_KEYS else mask_secrets(v)
            for k, v in data.items()
        }
    if isinstance(data, list):
        return [mask_secrets(item) for item in data]
    return data


# =============================================================================
# PLATFORM ERROR
# =============================================================================


class PlatformError(Exception):
    """
    Structured resource API error.

    WHY `transient`?
    ----------------
    The Applier needs one question answered: is retrying worthwhile? The
    status code answers it for HTTP failures; transport failures (timeouts,
    refused connections) have code 0 and are always transient.

    USAGE:
    ------
    try:
        await client.apply(manifest)
    except PlatformError as e:
        if e.transient:
            ...  # back off and retry
        else:
            ...  # report, block dependents
    """

    def __init__(
        self,
        code: int,
        message: str,
        details: str | None = None,
        transient: bool | None = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details
        if transient is None:
            transient = code in TRANSIENT_STATUS_CODES or code >= 500
        self.transient = transient
        super().__init__(str(self))

    def __str__(self) -> str:
        base = f"Platform API error ({self.code}): {self.message}"
        if self.details:
            base += f" - {self.details}"
        return base


# =============================================================================
# PLATFORM CLIENT
# =============================================================================


class PlatformClient:
    """
    Async resource API client for one cluster.

    LIFECYCLE:
    ----------
        async with PlatformClient(cluster) as client:
            await client.apply(manifest)

    RETRY LOGIC:
    ------------
    Request timeouts are retried here (three attempts, exponential backoff)
    because a timed-out GET is always safe to repeat. Status-code failures
    are raised as PlatformError and left to the caller: whether a 409 on an
    apply deserves another try is the Applier's decision, not the client's.
    """

    def __init__(
        self,
        instance: ClusterInstance,
        timeout: float = 30.0,
        mask_secrets: bool = True,
        max_connections: int = 20,
    ) -> None:
        self._instance = instance
        self._timeout = timeout
        self._mask_secrets = mask_secrets
        self._max_connections = max_connections
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> str:
        return self._instance.name

    async def __aenter__(self) -> PlatformClient:
        """Open the shared connection pool."""
        self._client = httpx.AsyncClient(
            base_url=self._instance.url,
            headers={
                "Authorization": f"Bearer {self._instance.token.get_secret_value()}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
            timeout=self._timeout,
            verify=not self._instance.insecure,
            limits=httpx.Limits(max_connections=self._max_connections),
        )
        return self

    async def __aexit__(self, *args: object) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _mask(self, data: Any) -> Any:
        if not self._mask_secrets:
            return data
        return mask_secrets(data)

    @retry(
        retry=retry_if_exception_type(httpx.TimeoutException),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        reraise=True,
    )
    async def _request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        content_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Make one HTTP request and decode the JSON body.

        Raises:
            PlatformError: On 4xx/5xx responses.
            httpx.TimeoutException: After three timed-out attempts.
            RuntimeError: If the client is used outside `async with`.
        """
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        log = logger.bind(method=method, path=path, cluster=self._instance.name)
        log.debug("Making platform API request")

        headers = {"Content-Type": content_type} if content_type else None
        response = await self._client.request(
            method,
            path,
            params=params,
            json=json_data,
            headers=headers,
        )

        if response.status_code >= 400:
            error_body = self._mask(response.text)
            log.warning("Platform API error", status=response.status_code, body=error_body[:200])

            message = f"HTTP {response.status_code}"
            details = None
            try:
                error_json = response.json()
                message = error_json.get("message", message)
                details = error_json.get("reason")
            except Exception:
                details = error_body[:200] if error_body else None

            raise PlatformError(
                code=response.status_code,
                message=self._mask(message),
                details=details,
            )

        return response.json() if response.content else {}

    async def _call(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        """`_request` with transport failures converted to transient PlatformErrors."""
        try:
            return await self._request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise PlatformError(0, "Request timed out", str(e) or None, transient=True) from e
        except httpx.TransportError as e:
            raise PlatformError(0, "Transport error", str(e) or None, transient=True) from e

    # =========================================================================
    # READ OPERATIONS
    # =========================================================================

    async def get(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str = "",
    ) -> LiveResource | None:
        """
        Fetch one resource.

        Returns:
            The live resource, or None if the platform answers 404.
        """
        try:
            data = await self._call("GET", resource_path(api_version, kind, namespace, name))
        except PlatformError as e:
            if e.code == 404:
                return None
            raise
        data.setdefault("apiVersion", api_version)
        data.setdefault("kind", kind)
        return LiveResource.from_api_response(data)

    async def list(
        self,
        api_version: str,
        kind: str,
        label_selector: str | None = None,
        namespace: str = "",
    ) -> list[LiveResource]:
        """
        List resources of one kind, optionally filtered by label selector.

        List items come back without apiVersion/kind, so both are filled in
        before the items are turned into LiveResources. A kind the platform
        does not serve (404, e.g. a CRD not installed yet) lists as empty.
        """
        params = {"labelSelector": label_selector} if label_selector else None
        try:
            data = await self._call(
                "GET", resource_path(api_version, kind, namespace), params=params
            )
        except PlatformError as e:
            if e.code == 404:
                return []
            raise

        items = data.get("items") or []
        live = []
        for item in items:
            item.setdefault("apiVersion", api_version)
            item.setdefault("kind", kind)
            live.append(LiveResource.from_api_response(item))
        return live

    # =========================================================================
    # WRITE OPERATIONS
    # =========================================================================

    async def apply(
        self,
        manifest: dict[str, Any],
        dry_run: bool = False,
    ) -> LiveResource:
        """
        Create or update a resource with server-side apply.

        Args:
            manifest: Full manifest including apiVersion, kind and metadata.
            dry_run: Validate and merge on the server without persisting.

        Returns:
            The object as the platform stored it (or would store it).
        """
        metadata = manifest.get("metadata") or {}
        path = resource_path(
            manifest["apiVersion"],
            manifest["kind"],
            metadata.get("namespace", ""),
            metadata["name"],
        )
        params = {"fieldManager": FIELD_MANAGER, "force": "true"}
        if dry_run:
            params["dryRun"] = "All"

        data = await self._call(
            "PATCH",
            path,
            params=params,
            json_data=manifest,
            content_type="application/apply-patch+yaml",
        )
        return LiveResource.from_api_response(data or manifest)

    async def delete(
        self,
        api_version: str,
        kind: str,
        name: str,
        namespace: str = "",
        dry_run: bool = False,
    ) -> None:
        """
        Delete a resource with background propagation.

        A 404 counts as success: the resource is already gone, which is what
        was asked for.
        """
        params = {"propagationPolicy": "Background"}
        if dry_run:
            params["dryRun"] = "All"
        try:
            await self._call(
                "DELETE",
                resource_path(api_version, kind, namespace, name),
                params=params,
            )
        except PlatformError as e:
            if e.code != 404:
                raise
