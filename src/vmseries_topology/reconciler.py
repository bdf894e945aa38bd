"""Core reconciliation pass and control loop.

This module implements the Kubernetes-style reconciliation pattern:
1. Load the declared topology from YAML and build its graph
2. Validate the graph (duplicates, dangling references, cycles)
3. Refresh the state store and fetch live state through the provider
4. Diff declared against live state into a ChangeSet
5. Stop here on dry run; otherwise enforce guardrails
6. Execute the change set in dependency order
7. Repeat on interval

PASS PHASES: Idle -> Planning -> Executing -> Completed | PartiallyFailed.
A pass aborted during planning (configuration or cycle) ends in Aborted and
never calls the provider's apply.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from .config import Config
from .diff import ChangeOperation, ChangeSet, compute_change_set
from .diff_normalizer import DiffNormalizer, create_normalizer_from_env
from .executor import ExecutionResult, Executor, NodeResult, backoff_delay
from .graph import ConfigError, CycleDetectedError, ResourceIdentity
from .guardrails import GuardrailEnforcer, GuardrailsConfig
from .provenance import ChangeProvenanceSummary, get_provenance_logger
from .provider import LiveStateRecord, ProviderAdapter, ProviderError
from .spec_loader import load_graph
from .state_store import StateStore, StateStoreError

logger = logging.getLogger(__name__)

# Circuit breaker constants
MAX_CONSECUTIVE_FAILURES = 5
CIRCUIT_BREAKER_RESET_SECONDS = 300  # 5 minutes


class PassStatus(str, Enum):
    """Outcome of a reconciliation pass."""

    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED_BY_CYCLE = "aborted_by_cycle"
    ABORTED_BY_CONFIG = "aborted_by_config"


class PassPhase(str, Enum):
    """Where the current pass is."""

    IDLE = "idle"
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


class LiveStateFetchError(ProviderError):
    """Raised when live state cannot be fetched after retries."""

    pass


@dataclass
class PassResult:
    """Result of a single reconciliation pass."""

    dry_run: bool = False
    topology: str = ""
    status: PassStatus | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    change_set: ChangeSet | None = None
    execution: ExecutionResult | None = None
    cycle: list[ResourceIdentity] | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if the pass completed."""
        return self.status == PassStatus.COMPLETED

    @property
    def failed(self) -> list[NodeResult]:
        return self.execution.failed if self.execution else []

    @property
    def blocked(self) -> list[NodeResult]:
        return self.execution.blocked if self.execution else []

    @property
    def changes_applied(self) -> int:
        return len(self.execution.applied) if self.execution else 0

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "topology": self.topology,
            "status": self.status.value if self.status else None,
            "dryRun": self.dry_run,
            "durationSeconds": self.duration_seconds,
        }
        if self.change_set is not None:
            result["plan"] = self.change_set.to_dict()
        if self.execution is not None:
            result["nodes"] = [n.to_dict() for n in self.execution.nodes.values()]
            result["cancelled"] = self.execution.cancelled
        if self.cycle is not None:
            result["cycle"] = [str(i) for i in self.cycle]
        if self.error is not None:
            result["error"] = str(self.error)
            result["errorType"] = type(self.error).__name__
        return result


class Reconciler:
    """Core reconciler implementing the control loop.

    The reconciler:
    1. Loads the YAML topology from disk (synced by a git-sync sidecar)
    2. Fetches live state for declared and recorded resources
    3. Computes a ChangeSet and, unless dry run, executes it

    Circuit breaker prevents runaway retries on persistent failures.
    """

    def __init__(
        self,
        config: Config,
        provider: ProviderAdapter,
        store: StateStore | None = None,
        normalizer: DiffNormalizer | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize reconciler.

        Args:
            config: Validated controller configuration.
            provider: Provider adapter for live state and mutations.
            store: State store (defaults to one under ``config.state_dir``).
            normalizer: Attribute equivalence rules.
            sleep: Backoff sleep, injectable for tests.
        """
        self._config = config
        self._provider = provider
        self._store = store or StateStore(config.state_dir)
        self._normalizer = normalizer or create_normalizer_from_env()
        self._sleep = sleep

        # SECURITY: Guardrails enforcer for blast radius control
        self._guardrails = GuardrailEnforcer(GuardrailsConfig.from_config(config))

        self._shutdown_event = asyncio.Event()
        self._executor: Executor | None = None
        self._phase = PassPhase.IDLE

        # Circuit breaker state
        self._consecutive_failures = 0
        self._circuit_open_until: datetime | None = None

    @property
    def config(self) -> Config:
        """Get the reconciler configuration."""
        return self._config

    @property
    def store(self) -> StateStore:
        return self._store

    @property
    def phase(self) -> PassPhase:
        return self._phase

    async def run(self) -> None:
        """Run the reconciliation loop until shutdown.

        Implements circuit breaker pattern: after MAX_CONSECUTIVE_FAILURES,
        the circuit opens and reconciliation pauses for CIRCUIT_BREAKER_RESET_SECONDS.
        """
        logger.info(
            "Starting reconciler",
            extra={
                "topology_file": str(self._config.topology_file),
                "provider": self._provider.name,
                "interval_seconds": self._config.reconcile_interval_seconds,
                "dry_run": self._config.dry_run,
            },
        )

        while not self._shutdown_event.is_set():
            # Circuit breaker check
            if self._circuit_open_until is not None:
                now = datetime.now(UTC)
                if now < self._circuit_open_until:
                    remaining = (self._circuit_open_until - now).total_seconds()
                    logger.warning(
                        "Circuit breaker open, skipping reconciliation",
                        extra={
                            "remaining_seconds": remaining,
                            "consecutive_failures": self._consecutive_failures,
                        },
                    )
                    await self._wait_for_shutdown(
                        min(remaining, self._config.reconcile_interval_seconds)
                    )
                    continue
                else:
                    logger.info("Circuit breaker reset, resuming reconciliation")
                    self._circuit_open_until = None
                    self._consecutive_failures = 0

            result = await self.reconcile_once()

            # Update circuit breaker state
            if not result.success:
                self._consecutive_failures += 1
                if self._consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
                    self._circuit_open_until = datetime.now(UTC) + timedelta(
                        seconds=CIRCUIT_BREAKER_RESET_SECONDS
                    )
                    logger.error(
                        "Circuit breaker opened after consecutive failures",
                        extra={
                            "consecutive_failures": self._consecutive_failures,
                            "reset_seconds": CIRCUIT_BREAKER_RESET_SECONDS,
                        },
                    )
            else:
                self._consecutive_failures = 0

            await self._wait_for_shutdown(self._config.reconcile_interval_seconds)

        logger.info("Reconciler shutdown complete")

    async def _wait_for_shutdown(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=timeout)
        except TimeoutError:
            # Normal timeout, continue to next cycle
            pass

    def shutdown(self) -> None:
        """Signal the reconciler to stop; an executing pass stops scheduling."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()
        if self._executor is not None:
            self._executor.cancel()

    async def reconcile_once(self, dry_run: bool | None = None) -> PassResult:
        """Execute a single reconciliation pass.

        Args:
            dry_run: Override the configured dry-run setting.

        Returns:
            PassResult with the plan and per-node outcome.
        """
        dry_run = self._config.dry_run if dry_run is None else dry_run
        result = PassResult(dry_run=dry_run)

        # PROVENANCE: Initialize provenance record for audit trail
        provenance_logger = get_provenance_logger()
        provenance = provenance_logger.create_provenance(
            topology_file=self._config.topology_file,
            provider=self._provider.name,
            dry_run=dry_run,
        )

        self._phase = PassPhase.PLANNING
        try:
            spec, graph = load_graph(self._config.topology_file)
            result.topology = spec.name
            graph.validate()

            await self._store.refresh()
            recorded = await self._store.all_records()
            identities = graph.identities + [i for i in sorted(recorded) if i not in graph]
            live = await self._fetch_live(identities)

            change_set = compute_change_set(
                graph,
                live,
                recorded,
                self._provider.mutable_fields,
                drift_policy=self._config.drift_policy,
                normalizer=self._normalizer,
            )
            result.change_set = change_set

            if change_set.conflicts:
                logger.warning(
                    "Drift conflicts detected",
                    extra={"identities": [str(c.identity) for c in change_set.conflicts]},
                )

            if dry_run:
                logger.info(
                    "DRY RUN: Plan computed, skipping apply",
                    extra={"topology": spec.name, "summary": change_set.summary()},
                )
                result.status = PassStatus.COMPLETED
                return result

            self._guardrails.check(change_set)

            self._phase = PassPhase.EXECUTING
            self._executor = Executor(self._provider, self._store, self._config, self._sleep)
            if self._shutdown_event.is_set():
                self._executor.cancel()
            execution = await self._executor.execute(change_set, live=live, graph=graph)
            result.execution = execution
            result.status = (
                PassStatus.COMPLETED if execution.completed else PassStatus.PARTIALLY_FAILED
            )

        except CycleDetectedError as e:
            logger.error("Dependency cycle, pass aborted", extra={"cycle": str(e)})
            result.cycle = e.cycle
            result.error = e
            result.status = PassStatus.ABORTED_BY_CYCLE

        except ConfigError as e:
            logger.error("Configuration error, pass aborted", extra={"error": str(e)})
            result.error = e
            result.status = PassStatus.ABORTED_BY_CONFIG

        except (ProviderError, StateStoreError) as e:
            logger.error(
                "Pass failed before execution",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            result.error = e
            result.status = PassStatus.PARTIALLY_FAILED

        except Exception as e:
            logger.exception("Unexpected error during reconciliation pass")
            result.error = e
            result.status = PassStatus.PARTIALLY_FAILED

        finally:
            self._executor = None
            result.end_time = datetime.now(UTC)
            self._phase = self._final_phase(result.status)

            # PROVENANCE: Log the complete provenance record
            provenance.topology = result.topology
            provenance.status = result.status.value if result.status else ""
            provenance.duration_seconds = result.duration_seconds
            provenance.changes_applied = result.changes_applied
            provenance.nodes_failed = len(result.failed)
            provenance.nodes_blocked = len(result.blocked)
            if result.change_set is not None:
                provenance.drift_conflicts = len(result.change_set.conflicts)
                provenance.change_summary = ChangeProvenanceSummary.from_counts(
                    result.change_set.summary()
                )
            if result.error is not None:
                provenance.error = str(result.error)
                provenance.error_type = type(result.error).__name__
            provenance_logger.log_provenance(provenance)
            if result.execution is not None:
                for node in result.execution.nodes.values():
                    if node.operation == ChangeOperation.NOOP:
                        continue
                    provenance_logger.log_change_detail(
                        provenance,
                        identity=str(node.identity),
                        operation=node.operation.value,
                        status=node.status.value,
                    )

            self._log_result(result)

        return result

    @staticmethod
    def _final_phase(status: PassStatus | None) -> PassPhase:
        match status:
            case PassStatus.COMPLETED:
                return PassPhase.COMPLETED
            case PassStatus.PARTIALLY_FAILED:
                return PassPhase.PARTIALLY_FAILED
            case _:
                return PassPhase.ABORTED

    async def _fetch_live(
        self, identities: list[ResourceIdentity]
    ) -> dict[ResourceIdentity, LiveStateRecord | None]:
        """Fetch live state for every identity with bounded concurrency.

        Raises:
            LiveStateFetchError: If any fetch fails after retries.
        """
        semaphore = asyncio.Semaphore(self._config.parallelism)

        async def fetch(identity: ResourceIdentity) -> LiveStateRecord | None:
            async with semaphore:
                return await self._fetch_one(identity)

        results = await asyncio.gather(
            *(fetch(identity) for identity in identities), return_exceptions=True
        )

        live: dict[ResourceIdentity, LiveStateRecord | None] = {}
        for identity, outcome in zip(identities, results, strict=True):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, ProviderError):
                    raise LiveStateFetchError(
                        f"Failed to fetch live state for {identity}: {outcome}"
                    ) from outcome
                raise outcome
            live[identity] = outcome
        return live

    async def _fetch_one(self, identity: ResourceIdentity) -> LiveStateRecord | None:
        attempts = self._config.fetch_attempts

        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    self._provider.fetch_live(identity.kind, identity.name),
                    timeout=self._config.fetch_timeout_seconds,
                )
            except TimeoutError:
                error = ProviderError(f"Fetching {identity} timed out", retryable=True)
            except ProviderError as e:
                error = e

            if not error.retryable or attempt == attempts:
                raise error

            wait_time = backoff_delay(attempt, self._config)
            logger.warning(
                "Live state fetch failed, retrying",
                extra={
                    "identity": str(identity),
                    "attempt": attempt,
                    "max_attempts": attempts,
                    "wait_seconds": wait_time,
                    "error": str(error),
                },
            )
            await self._sleep(wait_time)

        raise ProviderError(f"No fetch attempts made for {identity}")

    def _log_result(self, result: PassResult) -> None:
        """Log pass result with structured data."""
        extra: dict[str, Any] = {
            "topology": result.topology,
            "status": result.status.value if result.status else None,
            "dry_run": result.dry_run,
            "duration_seconds": result.duration_seconds,
            "changes_applied": result.changes_applied,
            "failed": [str(n.identity) for n in result.failed],
            "blocked": [str(n.identity) for n in result.blocked],
        }
        if result.change_set is not None:
            extra["summary"] = result.change_set.summary()

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Reconciliation failed", extra=extra)
        elif not result.success:
            logger.warning("Reconciliation partially failed", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
