"""Provider adapter interface consumed by the reconciliation core.

The core treats the cloud as an opaque capability: it can fetch the live
state of one resource and apply one provider-level operation. Everything
provider specific (SDK clients, credentials, resource shapes, polling) lives
behind this interface.

Adapters are plugged in by import path, e.g. ``PROVIDER=acme_gcp.adapter:build``,
where the attribute is a ProviderAdapter instance, subclass or zero-argument
factory.
"""

from __future__ import annotations

import importlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .graph import ResourceIdentity, ResourceKind
from .models import get_attribute_model

logger = logging.getLogger(__name__)


class ProviderOperation(str, Enum):
    """Operations a provider executes. Replace is split into Delete + Create."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ProviderError(Exception):
    """Raised by a provider when an operation fails.

    ``retryable`` marks transient failures (throttling, 5xx, timeouts)
    that the executor may retry with backoff.
    """

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderLoadError(Exception):
    """Raised when a provider adapter cannot be imported or built."""

    pass


class LiveStateRecord(BaseModel):
    """Provider-reported identity and attributes of a live resource."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ResourceKind
    name: str
    provider_id: str | None = Field(None, alias="providerId")
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    recorded_at: datetime | None = Field(None, alias="recordedAt")
    prevent_destroy: bool = Field(False, alias="preventDestroy")

    @property
    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(self.kind, self.name)

    @property
    def dependencies(self) -> list[ResourceIdentity]:
        return [ResourceIdentity.parse(d) for d in self.depends_on]

    @classmethod
    def for_identity(
        cls,
        identity: ResourceIdentity,
        attributes: dict[str, Any] | None = None,
        provider_id: str | None = None,
    ) -> LiveStateRecord:
        return cls(
            kind=identity.kind,
            name=identity.name,
            provider_id=provider_id,
            attributes=dict(attributes or {}),
        )

    def stamped(
        self, dependencies: list[ResourceIdentity], prevent_destroy: bool = False
    ) -> LiveStateRecord:
        """Copy with dependencies, protection flag and record time set for storage."""
        return self.model_copy(
            update={
                "depends_on": [str(d) for d in dependencies],
                "prevent_destroy": prevent_destroy,
                "recorded_at": datetime.now(UTC),
            }
        )


@dataclass(frozen=True)
class ApplyRequest:
    """One provider-level mutation."""

    identity: ResourceIdentity
    operation: ProviderOperation
    attributes: dict[str, Any] = field(default_factory=dict)
    previous: LiveStateRecord | None = None
    # Set when this request is one half of a Replace
    replacing: bool = False


class ProviderAdapter(ABC):
    """Interface every cloud provider adapter implements.

    One adapter instance serves one provider/region. Methods may block on
    network I/O; the executor bounds each call with its own timeout.
    """

    name: str = "provider"

    @abstractmethod
    async def fetch_live(self, kind: ResourceKind, name: str) -> LiveStateRecord | None:
        """Return the live state of a resource, or None if it does not exist.

        Raises:
            ProviderError: If the lookup itself fails.
        """

    @abstractmethod
    async def apply(self, request: ApplyRequest) -> LiveStateRecord | None:
        """Execute a create, update or delete.

        Returns the resulting live state for create/update, or None when the
        provider cannot report it (the core then re-fetches) and for deletes.

        Raises:
            ProviderError: If the operation fails.
        """

    def mutable_fields(self, kind: ResourceKind) -> frozenset[str]:
        """Attribute names the provider can change in place for ``kind``."""
        return get_attribute_model(kind).mutable_attributes()

    async def close(self) -> None:
        """Release provider resources (clients, sessions)."""
        return None


def load_provider(import_path: str) -> ProviderAdapter:
    """Import and build a provider adapter from ``module:attribute``.

    Raises:
        ProviderLoadError: If the path cannot be resolved to an adapter.
    """
    module_name, sep, attribute = import_path.partition(":")
    if not sep or not module_name or not attribute:
        raise ProviderLoadError(f"Provider must be given as 'module:attribute': {import_path}")

    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ProviderLoadError(f"Cannot import provider module {module_name!r}: {e}") from e

    try:
        target = getattr(module, attribute)
    except AttributeError as e:
        raise ProviderLoadError(f"Module {module_name!r} has no attribute {attribute!r}") from e

    if isinstance(target, ProviderAdapter):
        adapter = target
    else:
        try:
            adapter = target()
        except Exception as e:
            raise ProviderLoadError(f"Failed to build provider from {import_path}: {e}") from e

    if not isinstance(adapter, ProviderAdapter):
        raise ProviderLoadError(
            f"{import_path} produced {type(adapter).__name__}, not a ProviderAdapter"
        )

    logger.info("Loaded provider adapter", extra={"provider": adapter.name, "path": import_path})
    return adapter
