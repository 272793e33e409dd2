"""Diff engine: desired resources against recorded state.

Classifies every resource as Create / Update / Delete / NoOp:
- No StateRecord → Create
- StateRecord equal to the resolved desired attributes → NoOp
- StateRecord differs → Update, with attribute-level diffs
- StateRecord without a desired resource → Delete

Some attribute changes cannot be applied in place. Those paths are marked
``requires_replace`` (per-kind ReplaceRuleRegistry or the resource's
lifecycle.replace_triggered_by) and the entry is split into a Delete and
a Create half.

Comparison is value-based over resolved values: references are resolved
before comparing, and two lists or mappings are equal iff structurally
equal. A reference to something that cannot be known before apply
resolves to UNKNOWN, which never equals a recorded value.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from .graph import ResourceGraph
from .models import (
    UNKNOWN,
    Action,
    AttributeDiff,
    DiffEntry,
    Resource,
    ResourceKey,
    ResourceRef,
    StateRecord,
)
from .paths import MISSING, covered_by_any, get_path, join_path
from .state import StateStore

logger = logging.getLogger(__name__)

# Predicate deciding whether a change at ``path`` from ``old`` to ``new`` forces replacement
ReplacePredicate = Callable[[str, Any, Any], bool]


@dataclass
class ReplaceRuleRegistry:
    """Per-kind rules for attribute changes that force replacement.

    Kinds are matched exactly; "*" applies to every kind.
    """

    _patterns: dict[str, list[str]] = field(default_factory=dict)
    _predicates: dict[str, list[ReplacePredicate]] = field(default_factory=dict)

    def register(self, kind: str, *paths: str) -> None:
        """Mark attribute path patterns of a kind as RequiresReplace."""
        self._patterns.setdefault(kind, []).extend(paths)

    def register_predicate(self, kind: str, predicate: ReplacePredicate) -> None:
        """Register a predicate for changes that cannot be expressed as paths."""
        self._predicates.setdefault(kind, []).append(predicate)

    def requires_replace(self, kind: str, path: str, old: Any, new: Any) -> bool:
        patterns = [*self._patterns.get("*", []), *self._patterns.get(kind, [])]
        if covered_by_any(path, patterns):
            return True
        predicates = [*self._predicates.get("*", []), *self._predicates.get(kind, [])]
        return any(predicate(path, old, new) for predicate in predicates)


# =============================================================================
# Value comparison
# =============================================================================


def values_equal(left: Any, right: Any) -> bool:
    """Deep structural equality over resolved values.

    UNKNOWN never equals anything and booleans never equal numbers.
    """
    if left is UNKNOWN or right is UNKNOWN:
        return False
    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if isinstance(left, Mapping) and isinstance(right, Mapping):
        if set(left.keys()) != set(right.keys()):
            return False
        return all(values_equal(left[k], right[k]) for k in left)
    if isinstance(left, list | tuple) and isinstance(right, list | tuple):
        if len(left) != len(right):
            return False
        return all(values_equal(a, b) for a, b in zip(left, right, strict=True))
    if isinstance(left, Mapping | list | tuple) or isinstance(right, Mapping | list | tuple):
        return False
    return bool(left == right)


def compare_attributes(old: Mapping[str, Any], new: Mapping[str, Any], prefix: str = "") -> list[AttributeDiff]:
    """Compute attribute-level diffs.

    Mappings are descended key by key; lists and scalars are compared as
    whole values at their path. Absent values are reported as None.
    """
    diffs: list[AttributeDiff] = []
    for name in sorted(set(old.keys()) | set(new.keys())):
        path = join_path(prefix, name)
        old_value = old.get(name, MISSING)
        new_value = new.get(name, MISSING)

        if isinstance(old_value, Mapping) and isinstance(new_value, Mapping):
            diffs.extend(compare_attributes(old_value, new_value, path))
            continue

        if old_value is not MISSING and new_value is not MISSING:
            if values_equal(old_value, new_value):
                continue

        diffs.append(
            AttributeDiff(
                path=path,
                old=None if old_value is MISSING else old_value,
                new=None if new_value is MISSING else new_value,
            )
        )
    return diffs


def merge_ignored(desired: Mapping[str, Any], prior: Mapping[str, Any], patterns: Iterable[str], prefix: str = "") -> dict[str, Any]:
    """Keep prior values for attribute paths covered by ignore_changes.

    Returns a new mapping: desired values everywhere except ignored paths,
    where the prior value (if any) is kept.
    """
    patterns = list(patterns)
    if not patterns:
        return dict(desired)

    merged: dict[str, Any] = {}
    for name in sorted(set(desired.keys()) | set(prior.keys())):
        path = join_path(prefix, name)
        desired_value = desired.get(name, MISSING)
        prior_value = prior.get(name, MISSING)

        if covered_by_any(path, patterns):
            value = prior_value
        elif isinstance(desired_value, Mapping) and isinstance(prior_value, Mapping):
            value = merge_ignored(desired_value, prior_value, patterns, path)
        else:
            value = desired_value

        if value is not MISSING:
            merged[name] = value
    return merged


# =============================================================================
# Reference resolution
# =============================================================================


@dataclass
class _Resolved:
    """Planned view of a resource used to resolve references to it."""

    attributes: dict[str, Any]
    prior: StateRecord | None
    pending: bool  # created or replaced in this plan: provider values unknown


def resolve_refs(value: Any, lookup: Callable[[ResourceRef], Any]) -> Any:
    """Substitute every ResourceRef in ``value`` with ``lookup(ref)``."""
    if isinstance(value, ResourceRef):
        return lookup(value)
    if isinstance(value, Mapping):
        return {k: resolve_refs(v, lookup) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [resolve_refs(v, lookup) for v in value]
    return value


def _planned_lookup(planned: dict[ResourceKey, _Resolved]) -> Callable[[ResourceRef], Any]:
    def lookup(ref: ResourceRef) -> Any:
        target = planned.get(ref.key)
        if target is None:
            return UNKNOWN

        if ref.targets_handle:
            if target.pending or target.prior is None or target.prior.handle is None:
                return UNKNOWN
            return target.prior.handle

        found = get_path(target.attributes, ref.attribute_path)
        if found is not MISSING:
            return found

        if target.pending or target.prior is None:
            return UNKNOWN
        found = get_path(target.prior.computed, ref.attribute_path)
        return UNKNOWN if found is MISSING else found

    return lookup


# =============================================================================
# Diff
# =============================================================================


def _mark_replacements(
    resource: Resource,
    diffs: list[AttributeDiff],
    replace_rules: ReplaceRuleRegistry | None,
) -> list[AttributeDiff]:
    triggers = resource.lifecycle.replace_triggered_by
    marked: list[AttributeDiff] = []
    for diff in diffs:
        forced = covered_by_any(diff.path, triggers) or (
            replace_rules is not None
            and replace_rules.requires_replace(resource.kind, diff.path, diff.old, diff.new)
        )
        marked.append(diff.model_copy(update={"requires_replace": True}) if forced else diff)
    return marked


def compute_diff(
    graph: ResourceGraph,
    state: StateStore,
    replace_rules: ReplaceRuleRegistry | None = None,
    destroy: bool = False,
) -> list[DiffEntry]:
    """Compute changes between desired resources and recorded state.

    Args:
        graph: Validated desired resource graph.
        state: Open state store (read only here).
        replace_rules: Per-kind RequiresReplace rules.
        destroy: Plan the destruction of every recorded resource.

    Returns:
        Diff entries sorted by key. Replacements contribute a Delete and a
        Create entry for the same key; every other key has exactly one.
    """
    entries: list[DiffEntry] = []
    recorded_keys = state.keys()

    if destroy:
        for key in recorded_keys:
            entries.append(DiffEntry(key=key, action=Action.DELETE, prior=state.get(key)))
        _log_summary(entries, destroy=True)
        return entries

    planned: dict[ResourceKey, _Resolved] = {}
    lookup = _planned_lookup(planned)

    for key in graph.topological_order():
        resource = graph.resource(key)
        prior = state.get(key)
        resolved = resolve_refs(resource.attributes, lookup)

        if prior is None:
            planned[key] = _Resolved(attributes=resolved, prior=None, pending=True)
            entries.append(
                DiffEntry(
                    key=key,
                    action=Action.CREATE,
                    attribute_diffs=compare_attributes({}, resolved),
                    desired=resource,
                )
            )
            continue

        effective = merge_ignored(resolved, prior.attributes, resource.lifecycle.ignore_changes)
        diffs = compare_attributes(prior.attributes, effective)

        if not diffs:
            planned[key] = _Resolved(attributes=effective, prior=prior, pending=False)
            entries.append(DiffEntry(key=key, action=Action.NOOP, desired=resource, prior=prior))
            continue

        diffs = _mark_replacements(resource, diffs, replace_rules)

        if any(d.requires_replace for d in diffs):
            planned[key] = _Resolved(attributes=effective, prior=prior, pending=True)
            entries.append(
                DiffEntry(key=key, action=Action.DELETE, prior=prior, replacement=True)
            )
            entries.append(
                DiffEntry(
                    key=key,
                    action=Action.CREATE,
                    attribute_diffs=diffs,
                    desired=resource,
                    prior=prior,
                    replacement=True,
                )
            )
        else:
            planned[key] = _Resolved(attributes=effective, prior=prior, pending=False)
            entries.append(
                DiffEntry(
                    key=key,
                    action=Action.UPDATE,
                    attribute_diffs=diffs,
                    desired=resource,
                    prior=prior,
                )
            )

    for key in recorded_keys:
        if key not in graph:
            entries.append(DiffEntry(key=key, action=Action.DELETE, prior=state.get(key)))

    # Replacement halves: Delete sorts before Create
    entries.sort(key=lambda e: (e.key, e.action != Action.DELETE))
    _log_summary(entries, destroy=False)
    return entries


def _log_summary(entries: list[DiffEntry], destroy: bool) -> None:
    counts = {a.value: 0 for a in Action}
    for entry in entries:
        counts[entry.action.value] += 1
    logger.info("Computed diff", extra={"destroy": destroy, **counts})
