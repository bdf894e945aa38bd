"""Dependency-ordered execution of a change set.

Each actionable entry expands into steps:
- a DELETE step for Delete and Replace entries
- an APPLY step for Create, Update and Replace entries

ORDERING:
- A DELETE step waits on the DELETE steps of every transitive dependent,
  so dependents are gone before what they reference.
- An APPLY step waits on the APPLY steps of every transitive dependency
  and, for a Replace, on the node's own DELETE step.
- Dependencies without steps (NoOp, undeclared) are satisfied and the walk
  passes through them.

Ready steps run concurrently up to ``parallelism``, started in
topological/declaration order. A failed node never lets anything waiting on
it start, and a node to be re-created after a failed dependency does not
start its delete either. Failed NoOp nodes and drift conflicts count as
failed from the outset. Those nodes stay Planned and are reported as blocked
together with the failed identities they wait on. Independent branches run
to completion.

Retries are a bounded loop per step: retryable ProviderErrors (and per-call
timeouts) back off exponentially with jitter up to ``max_apply_attempts``.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import Config
from .diff import ChangeOperation, ChangeSet, ChangeSetEntry
from .graph import NodeStatus, ResourceGraph, ResourceIdentity
from .provider import (
    ApplyRequest,
    LiveStateRecord,
    ProviderAdapter,
    ProviderError,
    ProviderOperation,
)
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


class StepKind(str, Enum):
    """One provider-level unit of work for a node."""

    DELETE = "delete"
    APPLY = "apply"


@dataclass(frozen=True)
class _Step:
    identity: ResourceIdentity
    kind: StepKind


@dataclass
class NodeResult:
    """Outcome of one node in a pass."""

    identity: ResourceIdentity
    operation: ChangeOperation
    status: NodeStatus = NodeStatus.PLANNED
    attempts: int = 0
    error: str | None = None
    blocked_by: list[ResourceIdentity] = field(default_factory=list)
    blocked_reason: str | None = None
    conflict: bool = False

    @property
    def blocked(self) -> bool:
        return self.status == NodeStatus.PLANNED and self.blocked_reason is not None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "identity": str(self.identity),
            "operation": self.operation.value,
            "status": self.status.value,
            "attempts": self.attempts,
        }
        if self.error is not None:
            result["error"] = self.error
        if self.conflict:
            result["conflict"] = True
        if self.blocked:
            result["blockedBy"] = [str(i) for i in self.blocked_by]
            result["blockedReason"] = self.blocked_reason
        return result


@dataclass
class ExecutionResult:
    """Per-node results of executing one change set."""

    nodes: dict[ResourceIdentity, NodeResult] = field(default_factory=dict)
    cancelled: bool = False

    @property
    def applied(self) -> list[NodeResult]:
        return [
            n for n in self.nodes.values()
            if n.status == NodeStatus.APPLIED and n.operation != ChangeOperation.NOOP
        ]

    @property
    def failed(self) -> list[NodeResult]:
        return [n for n in self.nodes.values() if n.status == NodeStatus.FAILED]

    @property
    def blocked(self) -> list[NodeResult]:
        return [n for n in self.nodes.values() if n.blocked]

    @property
    def conflicts(self) -> list[NodeResult]:
        return [n for n in self.nodes.values() if n.conflict]

    @property
    def completed(self) -> bool:
        """True when every node reached Applied or NoOp."""
        return all(n.status == NodeStatus.APPLIED for n in self.nodes.values())


def backoff_delay(attempt: int, config: Config) -> float:
    """Exponential backoff with jitter for the given 1-based attempt."""
    backoff = min(
        config.retry_backoff_base_seconds * (2 ** (attempt - 1)),
        config.retry_backoff_max_seconds,
    )
    jitter = random.uniform(0, backoff * 0.2)
    return backoff + jitter


def _closure(
    start: ResourceIdentity,
    edges: Mapping[ResourceIdentity, tuple[ResourceIdentity, ...] | list[ResourceIdentity]],
) -> set[ResourceIdentity]:
    seen: set[ResourceIdentity] = set()
    stack = list(edges.get(start, ()))
    while stack:
        current = stack.pop()
        if current in seen:
            continue
        seen.add(current)
        stack.extend(edges.get(current, ()))
    return seen


class Executor:
    """Runs a change set against a provider with bounded concurrency."""

    def __init__(
        self,
        provider: ProviderAdapter,
        store: StateStore,
        config: Config,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._store = store
        self._config = config
        self._sleep = sleep
        self._cancel_event = asyncio.Event()

    def cancel(self) -> None:
        """Stop scheduling new steps. In-flight steps finish or time out."""
        logger.warning("Execution cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def _plan_steps(
        self, change_set: ChangeSet
    ) -> tuple[list[_Step], dict[_Step, set[_Step]]]:
        steps: list[_Step] = []
        for entry in change_set:
            if entry.operation == ChangeOperation.NOOP:
                continue
            if entry.operation in (ChangeOperation.DELETE, ChangeOperation.REPLACE):
                steps.append(_Step(entry.identity, StepKind.DELETE))
            if entry.operation != ChangeOperation.DELETE:
                steps.append(_Step(entry.identity, StepKind.APPLY))

        step_set = set(steps)
        dependencies = change_set.dependencies
        dependents: dict[ResourceIdentity, list[ResourceIdentity]] = {}
        for identity, deps in dependencies.items():
            for dep in deps:
                dependents.setdefault(dep, []).append(identity)

        waits: dict[_Step, set[_Step]] = {}
        for step in steps:
            if step.kind == StepKind.DELETE:
                related = _closure(step.identity, dependents)
                waits[step] = {
                    _Step(i, StepKind.DELETE) for i in related
                } & step_set
            else:
                related = _closure(step.identity, dependencies)
                waits[step] = {_Step(i, StepKind.APPLY) for i in related} & step_set
                own_delete = _Step(step.identity, StepKind.DELETE)
                if own_delete in step_set:
                    waits[step].add(own_delete)

        return steps, waits

    async def execute(
        self,
        change_set: ChangeSet,
        live: Mapping[ResourceIdentity, LiveStateRecord | None] | None = None,
        graph: ResourceGraph | None = None,
    ) -> ExecutionResult:
        """Execute every actionable entry of ``change_set``.

        Args:
            change_set: Planned changes, in order.
            live: Live records fetched during planning, passed to the provider
                as the previous state.
            graph: Declared graph whose node statuses are kept in step.

        Returns:
            ExecutionResult with one NodeResult per change set entry.
        """
        live = live or {}
        result = ExecutionResult()
        position = {identity: index for index, identity in enumerate(change_set.order)}

        def set_status(identity: ResourceIdentity, status: NodeStatus) -> None:
            result.nodes[identity].status = status
            if graph is not None and identity in graph:
                graph.node(identity).status = status

        failed_nodes: set[ResourceIdentity] = set()
        for entry in change_set:
            node = NodeResult(identity=entry.identity, operation=entry.operation)
            result.nodes[entry.identity] = node
            if entry.operation != ChangeOperation.NOOP:
                set_status(entry.identity, NodeStatus.PLANNED)
                continue
            try:
                await self._adopt(entry, live.get(entry.identity), change_set)
            except StateStoreError as e:
                node.error = str(e)
                set_status(entry.identity, NodeStatus.FAILED)
                failed_nodes.add(entry.identity)
                logger.error(
                    "Failed to record in-sync node",
                    extra={"identity": str(entry.identity), "error": node.error},
                )
            else:
                set_status(entry.identity, NodeStatus.APPLIED)

        steps, waits = self._plan_steps(change_set)
        pending = set(steps)
        done: set[_Step] = set()
        remaining = {identity: 0 for identity in result.nodes}
        for step in steps:
            remaining[step.identity] += 1

        # Drift conflicts never run; anything waiting on them is blocked
        for entry in change_set:
            if entry.conflict is not None:
                node = result.nodes[entry.identity]
                node.conflict = True
                node.error = entry.conflict.message
                set_status(entry.identity, NodeStatus.FAILED)
                failed_nodes.add(entry.identity)
                pending -= {s for s in steps if s.identity == entry.identity}

        # A node never starts, deletes included, while anything it is re-created
        # after has failed
        upstream = {
            step.identity: _closure(step.identity, change_set.dependencies)
            for step in steps
            if step.kind == StepKind.APPLY
        }

        def startable(step: _Step) -> bool:
            return (
                step.identity not in failed_nodes
                and waits[step] <= done
                and not upstream.get(step.identity, set()) & failed_nodes
            )

        def priority(step: _Step) -> tuple[int, int]:
            return (0 if step.kind == StepKind.DELETE else 1, position.get(step.identity, 0))

        running: dict[asyncio.Task[bool], _Step] = {}
        logger.info(
            "Executing change set",
            extra={
                "steps": len(steps),
                "parallelism": self._config.parallelism,
                "summary": change_set.summary(),
            },
        )

        while True:
            if not self._cancel_event.is_set():
                ready = sorted(
                    (s for s in pending if startable(s)),
                    key=priority,
                )
                for step in ready[: self._config.parallelism - len(running)]:
                    pending.discard(step)
                    if result.nodes[step.identity].status == NodeStatus.PLANNED:
                        set_status(step.identity, NodeStatus.APPLYING)
                    entry = change_set.entries[step.identity]
                    task = asyncio.create_task(
                        self._run_step(step, entry, live.get(step.identity), change_set, result)
                    )
                    running[task] = step

            if not running:
                break

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                step = running.pop(task)
                if task.result():
                    done.add(step)
                    remaining[step.identity] -= 1
                    if remaining[step.identity] == 0:
                        set_status(step.identity, NodeStatus.APPLIED)
                else:
                    failed_nodes.add(step.identity)
                    set_status(step.identity, NodeStatus.FAILED)
                    pending -= {s for s in pending if s.identity == step.identity}

        result.cancelled = self._cancel_event.is_set()
        self._report_blocked(pending, waits, upstream, failed_nodes, result)
        if graph is not None:
            for identity, node in result.nodes.items():
                if identity in graph:
                    graph.node(identity).status = node.status

        logger.info(
            "Change set execution finished",
            extra={
                "applied": len(result.applied),
                "failed": len(result.failed),
                "blocked": len(result.blocked),
                "cancelled": result.cancelled,
            },
        )
        return result

    def _report_blocked(
        self,
        pending: set[_Step],
        waits: dict[_Step, set[_Step]],
        upstream: Mapping[ResourceIdentity, set[ResourceIdentity]],
        failed_nodes: set[ResourceIdentity],
        result: ExecutionResult,
    ) -> None:
        reported: set[ResourceIdentity] = set()
        for step in sorted(pending, key=lambda s: (s.identity, s.kind.value)):
            node = result.nodes[step.identity]
            if step.identity in reported or node.status == NodeStatus.FAILED:
                continue
            reported.add(step.identity)

            blockers = upstream.get(step.identity, set()) & failed_nodes
            stack = list(waits[step])
            seen: set[_Step] = set()
            while stack:
                current = stack.pop()
                if current in seen:
                    continue
                seen.add(current)
                if current.identity in failed_nodes:
                    blockers.add(current.identity)
                else:
                    stack.extend(waits.get(current, ()))

            node.status = NodeStatus.PLANNED
            node.blocked_by = sorted(set(node.blocked_by) | blockers)
            if blockers:
                node.blocked_reason = "dependency failed"
            elif result.cancelled:
                node.blocked_reason = CANCELLED_REASON
            else:
                node.blocked_reason = "not scheduled"

            logger.warning(
                "Node blocked",
                extra={
                    "identity": str(step.identity),
                    "reason": node.blocked_reason,
                    "blocked_by": [str(i) for i in node.blocked_by],
                },
            )

    async def _adopt(
        self,
        entry: ChangeSetEntry,
        current: LiveStateRecord | None,
        change_set: ChangeSet,
    ) -> None:
        """Record the live state of an in-sync node whose record is missing or stale.

        Covers a pass that crashed between a provider apply and its record,
        and keeps the drift baseline current once live matches declared.
        """
        if current is None:
            return
        dependencies = list(change_set.dependencies.get(entry.identity, ()))
        recorded = await self._store.lookup(entry.identity)
        if (
            recorded is not None
            and recorded.attributes == current.attributes
            and recorded.dependencies == dependencies
            and recorded.prevent_destroy == entry.prevent_destroy
        ):
            return

        logger.info(
            "Recording in-sync node",
            extra={"identity": str(entry.identity), "had_record": recorded is not None},
        )
        await self._store.record(
            entry.identity,
            current.stamped(dependencies, prevent_destroy=entry.prevent_destroy),
        )

    async def _run_step(
        self,
        step: _Step,
        entry: ChangeSetEntry,
        previous: LiveStateRecord | None,
        change_set: ChangeSet,
        result: ExecutionResult,
    ) -> bool:
        """Run one step; returns False when the node failed."""
        node = result.nodes[step.identity]
        replacing = entry.operation == ChangeOperation.REPLACE

        try:
            if step.kind == StepKind.DELETE:
                if entry.operation == ChangeOperation.DELETE and entry.before is None:
                    # Already gone live: only forget the record
                    await self._store.remove(step.identity)
                    return True
                request = ApplyRequest(
                    identity=step.identity,
                    operation=ProviderOperation.DELETE,
                    previous=previous,
                    replacing=replacing,
                )
                self._store.invalidate(step.identity)
                await self._apply_with_retry(request, node)
                await self._store.remove(step.identity)
                return True

            operation = (
                ProviderOperation.UPDATE
                if entry.operation == ChangeOperation.UPDATE
                else ProviderOperation.CREATE
            )
            request = ApplyRequest(
                identity=step.identity,
                operation=operation,
                attributes=dict(entry.after or {}),
                previous=None if replacing else previous,
                replacing=replacing,
            )
            self._store.invalidate(step.identity)
            outcome = await self._apply_with_retry(request, node)
            if outcome is None:
                outcome = await self._fetch_after_apply(step.identity)
            await self._store.record(
                step.identity,
                outcome.stamped(
                    list(change_set.dependencies.get(step.identity, ())),
                    prevent_destroy=entry.prevent_destroy,
                ),
            )
            return True

        except (ProviderError, StateStoreError) as e:
            node.error = str(e)
        except Exception as e:
            logger.exception(
                "Unexpected error applying node", extra={"identity": str(step.identity)}
            )
            node.error = f"{type(e).__name__}: {e}"

        logger.error(
            "Node failed",
            extra={
                "identity": str(step.identity),
                "step": step.kind.value,
                "attempts": node.attempts,
                "error": node.error,
            },
        )
        return False

    async def _apply_with_retry(
        self, request: ApplyRequest, node: NodeResult
    ) -> LiveStateRecord | None:
        """Call the provider, retrying retryable errors with backoff.

        Raises:
            ProviderError: On a non-retryable error or once attempts run out.
        """
        max_attempts = self._config.max_apply_attempts

        for attempt in range(1, max_attempts + 1):
            node.attempts += 1
            try:
                return await asyncio.wait_for(
                    self._provider.apply(request),
                    timeout=self._config.apply_timeout_seconds,
                )
            except TimeoutError:
                error = ProviderError(
                    f"{request.operation.value} {request.identity} timed out after "
                    f"{self._config.apply_timeout_seconds}s",
                    retryable=True,
                )
            except ProviderError as e:
                error = e

            if not error.retryable or attempt == max_attempts:
                raise error

            wait_time = backoff_delay(attempt, self._config)
            logger.warning(
                "Provider call failed, retrying",
                extra={
                    "identity": str(request.identity),
                    "operation": request.operation.value,
                    "attempt": attempt,
                    "max_attempts": max_attempts,
                    "wait_seconds": wait_time,
                    "error": str(error),
                },
            )
            await self._sleep(wait_time)

        raise ProviderError(f"No attempts made for {request.identity}")

    async def _fetch_after_apply(self, identity: ResourceIdentity) -> LiveStateRecord:
        try:
            record = await asyncio.wait_for(
                self._provider.fetch_live(identity.kind, identity.name),
                timeout=self._config.fetch_timeout_seconds,
            )
        except TimeoutError as e:
            raise ProviderError(f"Fetching {identity} after apply timed out") from e
        if record is None:
            raise ProviderError(f"Provider reports no live state for {identity} after apply")
        return record
