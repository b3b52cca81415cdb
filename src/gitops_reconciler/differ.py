# ABOUTME: State differ comparing desired resources against live platform state
# ABOUTME: Structural per-field comparison that ignores platform-injected defaults

"""
State Differ.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Classifies every resource identity seen in either desired or live state:

    InSync      every declared field matches live
    OutOfSync   at least one declared field differs or is absent live
    Missing     the whole resource is absent live
    Orphaned    live (and tracked by this Application) but no longer declared

=============================================================================
WHY NOT WHOLE-DOCUMENT EQUALITY?
=============================================================================

The platform fills in defaults: a Service gets a clusterIP, a container gets
imagePullPolicy and terminationMessagePath, every object gets a uid. Comparing
whole documents would report drift forever. Instead the desired document is
treated as a SUBSET that must hold in the live one:

    desired:  {"spec": {"ports": [{"port": 80}]}}
    live:     {"spec": {"ports": [{"port": 80, "protocol": "TCP"}],
                        "clusterIP": "10.0.0.12"}}
    -> InSync: protocol and clusterIP are not declared, so not compared

COMPARISON RULES:
-----------------
- mappings: every declared key must match; undeclared live keys are ignored
- lists: same length, compared element by element (mappings as subsets)
- numbers: compared numerically, so 1 == 1.0
- a declared key absent live is OutOfSync (never Missing)
- a declared null, or an empty mapping/list absent live, is not a difference
"""

from __future__ import annotations

import copy
from typing import TYPE_CHECKING, Any

import structlog

from gitops_reconciler.models import Diff, FieldDifference, ResourceDiff, SyncState

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from gitops_reconciler.config import IgnoreDifference
    from gitops_reconciler.models import DesiredResource, LiveResource

logger = structlog.get_logger(__name__)


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _is_empty_container(value: Any) -> bool:
    return isinstance(value, dict | list) and not value


def _compare(desired: Any, live: Any, path: tuple[str, ...], out: list[FieldDifference]) -> None:
    if isinstance(desired, dict):
        if not isinstance(live, dict):
            out.append(FieldDifference(path, desired, live))
            return
        for key in sorted(desired):
            value = desired[key]
            if value is None:
                continue
            if key not in live or live[key] is None:
                if not _is_empty_container(value):
                    out.append(FieldDifference((*path, key), value, None, live_present=False))
                continue
            _compare(value, live[key], (*path, key), out)
        return

    if isinstance(desired, list):
        if not isinstance(live, list) or len(live) != len(desired):
            out.append(FieldDifference(path, desired, live))
            return
        for index, (d, lv) in enumerate(zip(desired, live, strict=True)):
            if d is not None:
                _compare(d, lv, (*path, str(index)), out)
        return

    if _is_number(desired) and _is_number(live):
        if float(desired) != float(live):
            out.append(FieldDifference(path, desired, live))
        return

    # True == 1 in Python; a bool only matches another bool
    if isinstance(desired, bool) != isinstance(live, bool) or desired != live:
        out.append(FieldDifference(path, desired, live))


def compare_fields(desired: dict[str, Any], live: dict[str, Any]) -> list[FieldDifference]:
    """All declared fields of `desired` that do not hold in `live`."""
    out: list[FieldDifference] = []
    _compare(desired, live, (), out)
    return out


def _pointer_segments(pointer: str) -> list[str]:
    """Split an RFC 6901 pointer into unescaped segments."""
    return [s.replace("~1", "/").replace("~0", "~") for s in pointer.lstrip("/").split("/") if s != ""]


def remove_pointer(document: dict[str, Any], pointer: str) -> None:
    """
    Drop the field a JSON pointer names, in place.

    List elements are replaced by None rather than removed so the indexes of
    their siblings stay aligned with the live list. Pointers that do not
    resolve are ignored.
    """
    segments = _pointer_segments(pointer)
    if not segments:
        return
    node: Any = document
    for segment in segments[:-1]:
        if isinstance(node, dict):
            node = node.get(segment)
        elif isinstance(node, list) and segment.isdigit() and int(segment) < len(node):
            node = node[int(segment)]
        else:
            return
    last = segments[-1]
    if isinstance(node, dict):
        node.pop(last, None)
    elif isinstance(node, list) and last.isdigit() and int(last) < len(node):
        node[int(last)] = None


def _ignored_pointers(
    resource: DesiredResource,
    ignore_differences: Sequence[IgnoreDifference],
) -> list[str]:
    key = resource.key
    pointers: list[str] = []
    for rule in ignore_differences:
        if rule.matches(key.kind, key.namespace, key.name):
            pointers.extend(rule.json_pointers)
    return pointers


def _is_ignored(difference: FieldDifference, pointers: list[str]) -> bool:
    pointer = difference.pointer
    return any(pointer == p or pointer.startswith(p.rstrip("/") + "/") for p in pointers)


def diff_resource(
    desired: DesiredResource,
    live: LiveResource | None,
    ignore_differences: Sequence[IgnoreDifference] = (),
) -> ResourceDiff:
    """Classify one declared resource against its live counterpart."""
    if live is None:
        return ResourceDiff(key=desired.key, state=SyncState.MISSING, desired=desired)

    pointers = _ignored_pointers(desired, ignore_differences)
    tracked = desired.document.tracked_fields()
    if pointers:
        tracked = copy.deepcopy(tracked)
        for pointer in pointers:
            remove_pointer(tracked, pointer)

    fields = [f for f in compare_fields(tracked, live.manifest) if not _is_ignored(f, pointers)]
    state = SyncState.OUT_OF_SYNC if fields else SyncState.IN_SYNC
    return ResourceDiff(
        key=desired.key,
        state=state,
        fields=tuple(fields),
        desired=desired,
        live=live,
    )


def diff(
    desired: Iterable[DesiredResource],
    live: Iterable[LiveResource],
    ignore_differences: Sequence[IgnoreDifference] = (),
) -> Diff:
    """
    Compute the Diff between desired and live state.

    Args:
        desired: Resources declared at the Revision.
        live: Resources observed on the platform that this Application tracks.
        ignore_differences: Rules excluding fields from comparison.

    Returns:
        Diff covering the union of desired and live identities.
    """
    desired_by_key = {d.key: d for d in desired}
    live_by_key = {lv.key: lv for lv in live}

    result = Diff()
    for key, resource in desired_by_key.items():
        result.resources[key] = diff_resource(resource, live_by_key.get(key), ignore_differences)

    for key, resource in live_by_key.items():
        if key not in desired_by_key:
            result.resources[key] = ResourceDiff(key=key, state=SyncState.ORPHANED, live=resource)

    logger.debug("Diff computed", **result.summary())
    return result
