"""Cloud Provider Mock for Integration Testing.

This module provides an in-memory ProviderAdapter that enables reconciliation
tests without any cloud connectivity.

Key Features:
- In-memory live state keyed by resource identity
- Apply log for asserting call order and attempts
- Error injection (retryable and permanent) per identity and operation
- Out-of-band edits to simulate drift
- In-flight tracking to assert the parallelism bound

Usage:
    from cloud_mock import MockProvider

    provider = MockProvider()
    provider.fail(identity, ProviderOperation.CREATE, ProviderError("throttled", retryable=True))

    reconciler = Reconciler(config, provider, StateStore(tmp_path / "state"))
    result = await reconciler.reconcile_once()

    assert provider.operations() == [("create", "network/untrust")]
"""

from .provider import MockProvider, OperationLog, identity
from .sleep import FakeSleep
from .topology import (
    basic_resources,
    two_branch_resources,
    with_attributes,
    without,
    write_topology,
)

__all__ = [
    "FakeSleep",
    "MockProvider",
    "OperationLog",
    "basic_resources",
    "identity",
    "two_branch_resources",
    "with_attributes",
    "without",
    "write_topology",
]
