"""Human-readable and JSON rendering of plans and pass results."""

from __future__ import annotations

import json
from typing import Any

from .diff import ChangeOperation, ChangeSet, ChangeSetEntry
from .reconciler import PassResult, PassStatus

OPERATION_SYMBOLS: dict[ChangeOperation, str] = {
    ChangeOperation.CREATE: "+",
    ChangeOperation.UPDATE: "~",
    ChangeOperation.REPLACE: "-/+",
    ChangeOperation.DELETE: "-",
    ChangeOperation.NOOP: "=",
}

# Process exit code per pass status
EXIT_CODES: dict[PassStatus, int] = {
    PassStatus.COMPLETED: 0,
    PassStatus.PARTIALLY_FAILED: 1,
    PassStatus.ABORTED_BY_CONFIG: 2,
    PassStatus.ABORTED_BY_CYCLE: 3,
}


def exit_code_for(result: PassResult) -> int:
    if result.status is None:
        return 1
    return EXIT_CODES[result.status]


def _format_value(value: Any) -> str:
    if value is None:
        return "(unset)"
    return json.dumps(value, sort_keys=True, default=str)


def _render_entry(entry: ChangeSetEntry) -> list[str]:
    symbol = OPERATION_SYMBOLS[entry.operation]
    line = f"{symbol:>3} {entry.identity}  ({entry.operation.value})"
    if entry.reason:
        line += f"  # {entry.reason}"
    lines = [line]

    if entry.conflict is not None:
        lines.append(f"      ! drift conflict on {', '.join(entry.conflict.fields)}")

    before = entry.before or {}
    after = entry.after or {}
    for key in entry.changed_fields:
        lines.append(
            f"      {key}: {_format_value(before.get(key))} -> {_format_value(after.get(key))}"
        )
    return lines


def render_change_set(change_set: ChangeSet, show_noop: bool = False) -> str:
    """Render a change set as a plan listing with a summary line."""
    lines: list[str] = []
    for entry in change_set:
        if entry.operation == ChangeOperation.NOOP and not show_noop:
            continue
        lines.extend(_render_entry(entry))

    if not lines:
        lines.append("No changes. Live state matches the declared topology.")

    counts = change_set.summary()
    lines.append("")
    lines.append(
        f"Plan: {counts['create']} to create, {counts['update']} to update, "
        f"{counts['replace']} to replace, {counts['delete']} to delete."
    )
    conflicts = change_set.conflicts
    if conflicts:
        lines.append(f"{len(conflicts)} drift conflict(s) require manual resolution.")
    return "\n".join(lines)


def render_result(result: PassResult) -> str:
    """Render a pass result as text."""
    status = result.status.value if result.status else "unknown"
    header = f"Topology: {result.topology or '-'}  Status: {status}"
    if result.dry_run:
        header += "  (dry run)"
    lines = [header]

    if result.cycle is not None:
        lines.append("Dependency cycle: " + " -> ".join(str(i) for i in result.cycle))
    elif result.error is not None:
        lines.append(f"Error: {result.error}")

    if result.change_set is not None:
        lines.append("")
        lines.append(render_change_set(result.change_set))

    if result.execution is not None:
        applied = result.execution.applied
        if applied:
            lines.append("")
            lines.append("Applied:")
            for node in applied:
                lines.append(
                    f"  {node.identity} ({node.operation.value}, {node.attempts} attempt(s))"
                )
        if result.failed:
            lines.append("")
            lines.append("Failed:")
            for node in result.failed:
                lines.append(f"  {node.identity}: {node.error}")
        if result.blocked:
            lines.append("")
            lines.append("Blocked:")
            for node in result.blocked:
                by = ", ".join(str(i) for i in node.blocked_by) or "-"
                lines.append(f"  {node.identity}: {node.blocked_reason} (waiting on {by})")

    return "\n".join(lines)


def render_json(result: PassResult) -> str:
    """Render a pass result as JSON."""
    return json.dumps(result.to_dict(), indent=2, sort_keys=True, default=str)
