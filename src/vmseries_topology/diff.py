"""Change set computation: declared graph versus live state.

Diffing is pure. Given the same graph, live records and store records it
always yields the same ChangeSet, which makes dry runs and plan output safe
to produce at any time.

DECISION TABLE (declared node):
- no live record                          -> CREATE
- live present, all declared keys equal   -> NOOP
- differences only on mutable fields      -> UPDATE
- any difference on an immutable field    -> REPLACE
- a transitive dependency is REPLACE and
  this node exists live                   -> REPLACE (cascade)

Store record without a declared node -> DELETE (before-state empty when the
live resource is already gone).

DRIFT: live attributes that differ from the store's last-known record are
drift. Under DriftPolicy.FAIL a drifted attribute that also disagrees with the
declared value is a conflict: the entry is marked and never executed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import DriftPolicy
from .diff_normalizer import DiffNormalizer
from .graph import ResourceGraph, ResourceIdentity, ResourceKind
from .provider import LiveStateRecord

logger = logging.getLogger(__name__)


class ChangeOperation(str, Enum):
    """Planned operation for one resource."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    NOOP = "noop"


@dataclass(frozen=True)
class DriftConflict:
    """Out-of-band change that cannot be reconciled automatically."""

    identity: ResourceIdentity
    fields: tuple[str, ...]

    @property
    def message(self) -> str:
        return (
            f"{self.identity} drifted from its last applied state on "
            f"{', '.join(self.fields)}; resolve manually or set DRIFT_POLICY=revert"
        )


class DriftConflictError(Exception):
    """Raised when a change set carries unresolved drift conflicts."""

    def __init__(self, conflicts: list[DriftConflict]) -> None:
        self.conflicts = conflicts
        super().__init__("; ".join(c.message for c in conflicts))


@dataclass
class ChangeSetEntry:
    """Planned change for one resource identity."""

    identity: ResourceIdentity
    operation: ChangeOperation
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changed_fields: list[str] = field(default_factory=list)
    reason: str = ""
    conflict: DriftConflict | None = None
    prevent_destroy: bool = False

    @property
    def is_destructive(self) -> bool:
        return self.operation in (ChangeOperation.DELETE, ChangeOperation.REPLACE)

    @property
    def executable(self) -> bool:
        return self.operation != ChangeOperation.NOOP and self.conflict is None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "identity": str(self.identity),
            "kind": self.identity.kind.value,
            "name": self.identity.name,
            "operation": self.operation.value,
            "before": self.before,
            "after": self.after,
            "changedFields": list(self.changed_fields),
            "reason": self.reason,
        }
        if self.conflict is not None:
            result["conflict"] = {
                "fields": list(self.conflict.fields),
                "message": self.conflict.message,
            }
        return result


@dataclass
class ChangeSet:
    """Ordered change set keyed by identity.

    ``order`` lists every identity in topological order (declared nodes)
    followed by removed identities. ``dependencies`` covers both declared
    nodes and removed ones (taken from their store records), so the
    executor can order deletes of resources that are no longer declared.
    """

    entries: dict[ResourceIdentity, ChangeSetEntry] = field(default_factory=dict)
    order: list[ResourceIdentity] = field(default_factory=list)
    dependencies: dict[ResourceIdentity, tuple[ResourceIdentity, ...]] = field(
        default_factory=dict
    )

    def __iter__(self) -> Iterator[ChangeSetEntry]:
        return (self.entries[i] for i in self.order if i in self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, identity: object) -> bool:
        return identity in self.entries

    def get(self, identity: ResourceIdentity) -> ChangeSetEntry | None:
        return self.entries.get(identity)

    def operation(self, identity: ResourceIdentity) -> ChangeOperation:
        entry = self.entries.get(identity)
        return entry.operation if entry else ChangeOperation.NOOP

    @property
    def conflicts(self) -> list[DriftConflict]:
        return [e.conflict for e in self if e.conflict is not None]

    def actionable(self) -> list[ChangeSetEntry]:
        """Entries the executor will run, in order."""
        return [e for e in self if e.executable]

    def destructive(self) -> list[ChangeSetEntry]:
        return [e for e in self if e.is_destructive]

    @property
    def has_changes(self) -> bool:
        return any(e.operation != ChangeOperation.NOOP for e in self)

    def summary(self) -> dict[str, int]:
        """Count of entries per operation."""
        counts = {op.value: 0 for op in ChangeOperation}
        for entry in self:
            counts[entry.operation.value] += 1
        return counts

    def raise_for_conflicts(self) -> None:
        """Raise DriftConflictError if any entry has a drift conflict."""
        conflicts = self.conflicts
        if conflicts:
            raise DriftConflictError(conflicts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary(),
            "conflicts": len(self.conflicts),
            "changes": [e.to_dict() for e in self],
        }


def _differing_fields(
    kind: ResourceKind,
    expected: Mapping[str, Any],
    actual: Mapping[str, Any],
    keys: list[str],
    normalizer: DiffNormalizer,
) -> list[str]:
    return [
        key
        for key in keys
        if not normalizer.are_equivalent(expected.get(key), actual.get(key), kind.value, key)
    ]


def _detect_drift(
    identity: ResourceIdentity,
    declared: Mapping[str, Any],
    live: LiveStateRecord,
    recorded: LiveStateRecord | None,
    normalizer: DiffNormalizer,
) -> DriftConflict | None:
    """Drifted attributes that also disagree with the declared value."""
    if recorded is None:
        return None

    keys = sorted(set(recorded.attributes) | set(declared))
    drifted = _differing_fields(
        identity.kind, recorded.attributes, live.attributes, keys, normalizer
    )
    conflicting = [
        key
        for key in drifted
        if key in declared
        and not normalizer.are_equivalent(
            declared[key], live.attributes.get(key), identity.kind.value, key
        )
    ]
    if not conflicting:
        return None
    return DriftConflict(identity=identity, fields=tuple(conflicting))


def compute_change_set(
    graph: ResourceGraph,
    live: Mapping[ResourceIdentity, LiveStateRecord | None],
    recorded: Mapping[ResourceIdentity, LiveStateRecord],
    mutable_fields: Callable[[ResourceKind], frozenset[str]],
    drift_policy: DriftPolicy = DriftPolicy.FAIL,
    normalizer: DiffNormalizer | None = None,
) -> ChangeSet:
    """Compute the change set moving live state toward the declared graph.

    Args:
        graph: Validated declared graph.
        live: Fetched live record per identity (None when absent).
        recorded: Store records from the last applied state.
        mutable_fields: Attribute names the provider updates in place, by kind.
        drift_policy: How drift against the store record is handled.
        normalizer: Attribute equivalence rules.

    Raises:
        CycleDetectedError: If the graph has a cycle.
    """
    normalizer = normalizer or DiffNormalizer()
    order = graph.topological_order()
    change_set = ChangeSet()

    for identity in order:
        node = graph.node(identity)
        declared = node.attributes
        current = live.get(identity)
        change_set.dependencies[identity] = tuple(node.depends_on)

        if current is None:
            reason = "recorded resource missing live" if identity in recorded else "not found live"
            change_set.entries[identity] = ChangeSetEntry(
                identity=identity,
                operation=ChangeOperation.CREATE,
                after=dict(declared),
                reason=reason,
                prevent_destroy=node.prevent_destroy,
            )
            continue

        changed = _differing_fields(
            identity.kind, declared, current.attributes, list(declared), normalizer
        )
        mutable = mutable_fields(identity.kind)
        if not changed:
            operation = ChangeOperation.NOOP
            reason = "up to date"
        elif all(key in mutable for key in changed):
            operation = ChangeOperation.UPDATE
            reason = "mutable fields changed"
        else:
            operation = ChangeOperation.REPLACE
            immutable = [key for key in changed if key not in mutable]
            reason = f"immutable fields changed: {', '.join(immutable)}"

        conflict = None
        if drift_policy == DriftPolicy.FAIL:
            conflict = _detect_drift(identity, declared, current, recorded.get(identity), normalizer)

        change_set.entries[identity] = ChangeSetEntry(
            identity=identity,
            operation=operation,
            before=dict(current.attributes),
            after=dict(declared),
            changed_fields=changed,
            reason=conflict.message if conflict else reason,
            conflict=conflict,
            prevent_destroy=node.prevent_destroy,
        )

    _cascade_replacements(graph, change_set)

    removed = sorted(i for i in recorded if i not in graph)
    for identity in removed:
        record = recorded[identity]
        current = live.get(identity)
        change_set.order.append(identity)
        change_set.dependencies[identity] = tuple(record.dependencies)
        change_set.entries[identity] = ChangeSetEntry(
            identity=identity,
            operation=ChangeOperation.DELETE,
            before=dict(current.attributes) if current is not None else None,
            reason="no longer declared" if current is not None else "already gone live",
            prevent_destroy=record.prevent_destroy,
        )

    change_set.order[:0] = order

    logger.debug(
        "Computed change set",
        extra={"summary": change_set.summary(), "conflicts": len(change_set.conflicts)},
    )
    return change_set


def _cascade_replacements(graph: ResourceGraph, change_set: ChangeSet) -> None:
    """Replace live dependents of replaced nodes.

    A replaced resource gets a new provider identity, so anything that
    references it and exists live must be re-created after it. A conflicted
    replace never runs, so it does not cascade.
    """
    replaced = [
        e.identity for e in change_set.entries.values()
        if e.operation == ChangeOperation.REPLACE and e.conflict is None
    ]
    for root in replaced:
        for identity in graph.descendants(root):
            entry = change_set.entries[identity]
            if entry.operation in (ChangeOperation.NOOP, ChangeOperation.UPDATE):
                entry.operation = ChangeOperation.REPLACE
                if entry.conflict is None:
                    entry.reason = f"dependency {root} is replaced"
