"""End-to-end tests for reconciliation passes against the mock provider."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import pytest
from cloud_mock import (
    FakeSleep,
    MockProvider,
    basic_resources,
    identity,
    two_branch_resources,
    with_attributes,
    without,
    write_topology,
)

from vmseries_topology import reconciler as reconciler_module
from vmseries_topology.config import Config, DriftPolicy
from vmseries_topology.diff import ChangeOperation
from vmseries_topology.executor import CANCELLED_REASON
from vmseries_topology.graph import NodeStatus
from vmseries_topology.guardrails import (
    DestructiveChangeLimitExceeded,
    KillSwitchActive,
    ProtectedResourceViolation,
)
from vmseries_topology.provider import ProviderError, ProviderOperation
from vmseries_topology.reconciler import (
    LiveStateFetchError,
    PassPhase,
    PassStatus,
    Reconciler,
)
from vmseries_topology.spec_loader import build_graph, parse_topology
from vmseries_topology.state_store import StateStore

N = identity("network/untrust")
S = identity("subnet/untrust-a")
F = identity("firewall_rule/allow-https")
TN = identity("network/trust")
TS = identity("subnet/trust-a")


@pytest.fixture
def topology(tmp_path: Path) -> Path:
    return tmp_path / "topology.yaml"


@pytest.fixture
def make_reconciler(
    tmp_path: Path, topology: Path, provider: MockProvider, sleep: FakeSleep
):
    """Build a reconciler over the shared topology file and state directory."""

    def factory(**overrides: Any) -> Reconciler:
        config = Config(
            topology_file=topology,
            state_dir=tmp_path / "state",
            retry_backoff_base_seconds=1.0,
            **overrides,
        )
        return Reconciler(config, provider, store=StateStore(config.state_dir), sleep=sleep)

    return factory


class TestConvergence:
    """Tests for passes that converge live state onto the topology."""

    @pytest.mark.asyncio
    async def test_first_pass_creates_in_order(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that an empty cloud gets N, S and F created and recorded."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert result.topology == "fw-test"
        assert result.changes_applied == 3
        assert provider.operations() == [
            ("create", "network/untrust"),
            ("create", "subnet/untrust-a"),
            ("create", "firewall_rule/allow-https"),
        ]
        assert set(await reconciler.store.identities()) == {N, S, F}
        assert reconciler.phase == PassPhase.COMPLETED

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that an unchanged topology makes no provider calls."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        calls = len(provider.calls)

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert result.change_set.summary()["noop"] == 3
        assert result.changes_applied == 0
        assert len(provider.calls) == calls

    @pytest.mark.asyncio
    async def test_immutable_change_replaces_with_cascade(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a network CIDR change replaces N and its dependents."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()

        write_topology(topology, with_attributes(basic_resources(), "untrust", cidr="10.0.1.0/24"))
        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert result.change_set.summary()["replace"] == 3
        assert provider.operations() == [
            ("delete", "firewall_rule/allow-https"),
            ("delete", "subnet/untrust-a"),
            ("delete", "network/untrust"),
            ("create", "network/untrust"),
            ("create", "subnet/untrust-a"),
            ("create", "firewall_rule/allow-https"),
        ]

    @pytest.mark.asyncio
    async def test_mutable_change_updates_in_place(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a routing mode change is a single Update."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()

        write_topology(
            topology, with_attributes(basic_resources(), "untrust", routingMode="GLOBAL")
        )
        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.operations() == [("update", "network/untrust")]
        assert (await reconciler.store.lookup(N)).attributes["routingMode"] == "GLOBAL"

    @pytest.mark.asyncio
    async def test_dropped_resource_is_deleted(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that removing F from the topology deletes it."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()

        write_topology(topology, without(basic_resources(), "allow-https"))
        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.operations() == [("delete", "firewall_rule/allow-https")]
        assert F not in provider.live
        assert await reconciler.store.lookup(F) is None

    @pytest.mark.asyncio
    async def test_dropped_chain_deletes_dependents_first(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that removing F and S deletes F before S and keeps N."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()

        write_topology(topology, without(without(basic_resources(), "allow-https"), "untrust-a"))
        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.operations() == [
            ("delete", "firewall_rule/allow-https"),
            ("delete", "subnet/untrust-a"),
        ]
        assert set(provider.live) == {N}

    @pytest.mark.asyncio
    async def test_out_of_band_delete_is_recreated(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a recorded resource missing live is created again."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()
        provider.drop_live(S)

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert result.change_set.get(S).reason == "recorded resource missing live"
        assert provider.operations() == [("create", "subnet/untrust-a")]

    @pytest.mark.asyncio
    async def test_retryable_failure_is_retried(
        self, topology: Path, provider: MockProvider, sleep: FakeSleep, make_reconciler
    ) -> None:
        """Test that two throttling errors still converge on the third attempt."""
        write_topology(topology, basic_resources())
        provider.fail(
            S,
            ProviderOperation.CREATE,
            ProviderError("rate limited", retryable=True),
            ProviderError("rate limited", retryable=True),
        )

        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.attempts(S) == 3
        assert result.execution.nodes[S].attempts == 3
        assert len(sleep.waits) == 2


class TestAbortedPasses:
    """Tests for passes aborted during planning."""

    @pytest.mark.asyncio
    async def test_cycle_aborts_before_any_provider_call(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a dependency cycle aborts with the offending path."""
        resources = basic_resources()
        resources[0]["dependsOn"] = ["firewall_rule/allow-https"]
        write_topology(topology, resources)
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CYCLE
        assert result.cycle[0] == result.cycle[-1]
        assert {N, F} <= set(result.cycle)
        assert provider.fetches == []
        assert provider.calls == []
        assert reconciler.phase == PassPhase.ABORTED

    @pytest.mark.asyncio
    async def test_dangling_reference_aborts(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a reference to an undeclared network aborts the pass."""
        write_topology(
            topology, with_attributes(basic_resources(), "untrust-a", network="missing")
        )

        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CONFIG
        assert "network/missing" in str(result.error)
        assert provider.fetches == []
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_missing_topology_file_aborts(
        self, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that an absent topology file is a configuration abort."""
        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CONFIG
        assert "not found" in str(result.error)


class TestFailureIsolation:
    """Tests for partial failure and blocking."""

    @pytest.mark.asyncio
    async def test_failed_node_blocks_only_its_dependents(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that S failing blocks F while the trust branch converges."""
        write_topology(topology, two_branch_resources())
        provider.fail(S, ProviderOperation.CREATE, ProviderError("quota exceeded"))

        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert [n.identity for n in result.failed] == [S]
        assert "quota exceeded" in result.execution.nodes[S].error
        assert [n.identity for n in result.blocked] == [F]
        assert result.execution.nodes[F].blocked_by == [S]
        assert {TN, TS} <= set(provider.live)
        assert F not in provider.live

    @pytest.mark.asyncio
    async def test_failed_pass_resumes_without_recreating(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a later pass picks up where a failed one stopped."""
        write_topology(topology, basic_resources())
        provider.fail(F, ProviderOperation.CREATE, ProviderError("invalid port range"))
        first = await make_reconciler().reconcile_once()
        assert first.status == PassStatus.PARTIALLY_FAILED
        provider.calls.clear()

        second = await make_reconciler().reconcile_once()

        assert second.status == PassStatus.COMPLETED
        assert second.change_set.operation(N) == ChangeOperation.NOOP
        assert second.change_set.operation(S) == ChangeOperation.NOOP
        assert provider.operations() == [("create", "firewall_rule/allow-https")]

    @pytest.mark.asyncio
    async def test_applied_but_unrecorded_resources_are_adopted(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that live resources matching the topology get recorded, not recreated."""
        resources = basic_resources()
        write_topology(topology, resources)
        graph = build_graph(parse_topology({"name": "fw-test", "resources": resources}))
        for target in (N, S):
            provider.set_live(target, graph.node(target).attributes)
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.operations() == [("create", "firewall_rule/allow-https")]
        assert set(await reconciler.store.identities()) == {N, S, F}

        provider.calls.clear()
        write_topology(topology, without(without(resources, "allow-https"), "untrust-a"))
        await reconciler.reconcile_once()

        assert provider.operations() == [
            ("delete", "firewall_rule/allow-https"),
            ("delete", "subnet/untrust-a"),
        ]

    @pytest.mark.asyncio
    async def test_shutdown_stops_scheduling(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that nodes not yet started when shutdown arrives are reported cancelled."""
        write_topology(topology, two_branch_resources())
        reconciler = make_reconciler(parallelism=1)

        async def stop(request: Any) -> None:
            reconciler.shutdown()

        provider.before_apply = stop

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert result.execution.cancelled is True
        assert provider.operations() == [("create", "network/untrust")]
        assert result.execution.nodes[N].status == NodeStatus.APPLIED
        assert {n.identity for n in result.blocked} == {S, F, TN, TS}
        assert all(n.blocked_reason == CANCELLED_REASON for n in result.blocked)


class TestDrift:
    """Tests for out-of-band edits."""

    @pytest.mark.asyncio
    async def test_fail_policy_blocks_dependents(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a drifted network is held back and its changed subnet blocked."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()
        provider.edit_live(N, routingMode="GLOBAL")
        write_topology(
            topology, with_attributes(basic_resources(), "untrust-a", description="untrust zone")
        )

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert [c.identity for c in result.change_set.conflicts] == [N]
        assert result.execution.nodes[N].conflict is True
        assert result.execution.nodes[S].blocked_by == [N]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_revert_policy_restores_declared(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that revert applies the declared value over the drift."""
        write_topology(topology, basic_resources())
        await make_reconciler().reconcile_once()
        provider.calls.clear()
        provider.edit_live(N, routingMode="GLOBAL")

        result = await make_reconciler(drift_policy=DriftPolicy.REVERT).reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert provider.operations() == [("update", "network/untrust")]
        assert provider.live[N].attributes["routingMode"] == "REGIONAL"

    @pytest.mark.asyncio
    async def test_conflicting_immutable_drift_keeps_dependents(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that an out-of-band CIDR change deletes nothing."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()
        provider.edit_live(N, cidr="10.9.0.0/24")

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert [c.identity for c in result.change_set.conflicts] == [N]
        assert result.change_set.operation(N) == ChangeOperation.REPLACE
        assert result.change_set.operation(S) == ChangeOperation.NOOP
        assert result.change_set.operation(F) == ChangeOperation.NOOP
        assert provider.calls == []
        assert set(provider.live) == {N, S, F}


class TestGuardrails:
    """Tests for guardrails stopping a pass before execution."""

    @pytest.mark.asyncio
    async def test_kill_switch_blocks_changes(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that the kill switch aborts a pass that would mutate."""
        write_topology(topology, basic_resources())

        result = await make_reconciler(kill_switch=True).reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CONFIG
        assert isinstance(result.error, KillSwitchActive)
        assert result.change_set.summary()["create"] == 3
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_protected_resource_blocks_replace(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that preventDestroy stops a replacing CIDR change."""
        resources = basic_resources()
        resources[0]["preventDestroy"] = True
        write_topology(topology, resources)
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        assert (await reconciler.store.lookup(N)).prevent_destroy is True
        provider.calls.clear()

        write_topology(topology, with_attributes(resources, "untrust", cidr="10.0.1.0/24"))
        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CONFIG
        assert isinstance(result.error, ProtectedResourceViolation)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_destructive_limit(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a cascade of three replaces exceeds a budget of two."""
        write_topology(topology, basic_resources())
        await make_reconciler().reconcile_once()
        provider.calls.clear()

        write_topology(topology, with_attributes(basic_resources(), "untrust", cidr="10.0.1.0/24"))
        result = await make_reconciler(max_destructive_changes=2).reconcile_once()

        assert result.status == PassStatus.ABORTED_BY_CONFIG
        assert isinstance(result.error, DestructiveChangeLimitExceeded)
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_destructive_limit_ignores_forgotten_records(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that dropping the record of a resource already gone live is allowed."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.calls.clear()
        provider.drop_live(F)
        write_topology(topology, without(basic_resources(), "allow-https"))

        result = await make_reconciler(max_destructive_changes=0).reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert result.change_set.operation(F) == ChangeOperation.DELETE
        assert provider.calls == []
        assert await StateStore(reconciler.store.state_dir).lookup(F) is None


class TestDryRun:
    """Tests for plan-only passes."""

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_changes(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a dry run plans but never applies or records."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once(dry_run=True)

        assert result.status == PassStatus.COMPLETED
        assert result.dry_run is True
        assert result.execution is None
        assert result.change_set.summary()["create"] == 3
        assert provider.calls == []
        assert await reconciler.store.identities() == []

    @pytest.mark.asyncio
    async def test_dry_run_from_config(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that DRY_RUN in config applies when no override is given."""
        write_topology(topology, basic_resources())

        result = await make_reconciler(dry_run=True).reconcile_once()

        assert result.dry_run is True
        assert provider.calls == []


class TestLiveFetch:
    """Tests for live state fetching."""

    @pytest.mark.asyncio
    async def test_retryable_fetch_is_retried(
        self, topology: Path, provider: MockProvider, sleep: FakeSleep, make_reconciler
    ) -> None:
        """Test that a transient fetch error does not fail the pass."""
        write_topology(topology, basic_resources())
        provider.fail_fetch(N, ProviderError("503", retryable=True))

        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.COMPLETED
        assert len(sleep.waits) == 1

    @pytest.mark.asyncio
    async def test_permanent_fetch_failure(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that an unreadable resource fails the pass before execution."""
        write_topology(topology, basic_resources())
        provider.fail_fetch(S, ProviderError("permission denied"))

        result = await make_reconciler().reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert isinstance(result.error, LiveStateFetchError)
        assert "subnet/untrust-a" in str(result.error)
        assert result.change_set is None
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_recorded_undeclared_resources_are_fetched(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that removed resources are looked up so they can be deleted."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        await reconciler.reconcile_once()
        provider.fetches.clear()

        write_topology(topology, without(basic_resources(), "allow-https"))
        await reconciler.reconcile_once(dry_run=True)

        assert set(provider.fetches) == {N, S, F}

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_fails_pass(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that a provider bug ends the pass instead of the process."""
        write_topology(topology, basic_resources())
        provider.fail_fetch(N, RuntimeError("sdk bug"))
        reconciler = make_reconciler()

        result = await reconciler.reconcile_once()

        assert result.status == PassStatus.PARTIALLY_FAILED
        assert isinstance(result.error, RuntimeError)
        assert result.to_dict()["error"] == "sdk bug"
        assert reconciler.phase == PassPhase.PARTIALLY_FAILED
        assert provider.calls == []


class TestControlLoop:
    """Tests for run() and the circuit breaker."""

    @pytest.mark.asyncio
    async def test_run_stops_on_shutdown(
        self, topology: Path, provider: MockProvider, make_reconciler, monkeypatch
    ) -> None:
        """Test that run() exits after shutdown is requested."""
        write_topology(topology, basic_resources())
        reconciler = make_reconciler()
        passes: list[PassStatus] = []
        original = reconciler.reconcile_once

        async def once(dry_run: bool | None = None):
            result = await original(dry_run)
            passes.append(result.status)
            reconciler.shutdown()
            return result

        monkeypatch.setattr(reconciler, "reconcile_once", once)

        await asyncio.wait_for(reconciler.run(), timeout=5)

        assert passes == [PassStatus.COMPLETED]
        assert len(provider.live) == 3

    @pytest.mark.asyncio
    async def test_circuit_breaker_opens(
        self, topology: Path, make_reconciler, monkeypatch
    ) -> None:
        """Test that consecutive failed passes open the circuit."""
        monkeypatch.setattr(reconciler_module, "MAX_CONSECUTIVE_FAILURES", 1)
        write_topology(topology, with_attributes(basic_resources(), "untrust-a", network="x"))
        reconciler = make_reconciler()
        original = reconciler.reconcile_once

        async def once(dry_run: bool | None = None):
            result = await original(dry_run)
            reconciler.shutdown()
            return result

        monkeypatch.setattr(reconciler, "reconcile_once", once)

        await asyncio.wait_for(reconciler.run(), timeout=5)

        assert reconciler._consecutive_failures == 1
        assert reconciler._circuit_open_until is not None


class TestPassResult:
    """Tests for PassResult serialization."""

    @pytest.mark.asyncio
    async def test_to_dict(
        self, topology: Path, provider: MockProvider, make_reconciler
    ) -> None:
        """Test that the report carries plan and per-node outcome."""
        write_topology(topology, basic_resources())

        result = await make_reconciler().reconcile_once()
        data = result.to_dict()

        assert data["topology"] == "fw-test"
        assert data["status"] == "completed"
        assert data["dryRun"] is False
        assert data["cancelled"] is False
        assert [n["identity"] for n in data["nodes"]] == [str(N), str(S), str(F)]
        assert "plan" in data
        assert "error" not in data

    @pytest.mark.asyncio
    async def test_to_dict_cycle(self, topology: Path, make_reconciler) -> None:
        """Test that an aborted pass reports the cycle path."""
        resources = basic_resources()
        resources[0]["dependsOn"] = ["firewall_rule/allow-https"]
        write_topology(topology, resources)

        data = (await make_reconciler().reconcile_once()).to_dict()

        assert data["status"] == "aborted_by_cycle"
        assert data["errorType"] == "CycleDetectedError"
        assert data["cycle"][0] == data["cycle"][-1]
