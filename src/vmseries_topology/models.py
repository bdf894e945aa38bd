"""Pydantic models for the declared topology with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Per-kind knowledge of reference fields and immutable fields
"""

from __future__ import annotations

import ipaddress
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, Field, field_validator, model_validator

from .graph import ResourceIdentity, ResourceKind

ResourceName = Annotated[str, Field(pattern=r"^[a-z]([-a-z0-9]{0,61}[a-z0-9])?$")]


def _validate_cidr(v: str) -> str:
    try:
        ipaddress.ip_network(v, strict=True)
    except ValueError as e:
        raise ValueError(f"must be a CIDR block (e.g., 10.0.0.0/24): {e}") from e
    return v


# =============================================================================
# Base Model
# =============================================================================


class ResourceAttributes(BaseModel):
    """Base class for per-kind attribute schemas.

    Subclasses declare which fields reference other resources (and of which
    kind) and which fields cannot be changed without replacing the resource.
    Field names in these class variables are the python (snake_case) names.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {}
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset()

    description: str | None = None

    def references(self) -> list[ResourceIdentity]:
        """Identities referenced by attribute values, in field order."""
        refs: list[ResourceIdentity] = []
        for field_name, kind in self.REFERENCE_FIELDS.items():
            value = getattr(self, field_name)
            if value is None:
                continue
            names = value if isinstance(value, list) else [value]
            for name in names:
                identity = ResourceIdentity(kind, name)
                if identity not in refs:
                    refs.append(identity)
        return refs

    def to_attributes(self) -> dict[str, Any]:
        """Comparable attribute mapping (aliases, None fields dropped)."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def alias_for(cls, field_name: str) -> str:
        info = cls.model_fields[field_name]
        return info.alias or field_name

    @classmethod
    def immutable_attributes(cls) -> frozenset[str]:
        """Immutable fields under their serialized (alias) names."""
        return frozenset(cls.alias_for(f) for f in cls.IMMUTABLE_FIELDS)

    @classmethod
    def mutable_attributes(cls) -> frozenset[str]:
        """Every other field under its serialized (alias) name."""
        every = frozenset(cls.alias_for(f) for f in cls.model_fields)
        return every - cls.immutable_attributes()


# =============================================================================
# Networking
# =============================================================================


class NetworkAttributes(ResourceAttributes):
    """VPC network."""

    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"cidr", "auto_create_subnetworks"})

    cidr: str | None = None
    auto_create_subnetworks: bool = Field(False, alias="autoCreateSubnetworks")
    routing_mode: str = Field("REGIONAL", alias="routingMode")
    mtu: Annotated[int, Field(ge=1300, le=8896)] = 1460

    @field_validator("cidr")
    @classmethod
    def validate_cidr(cls, v: str | None) -> str | None:
        return None if v is None else _validate_cidr(v)

    @field_validator("routing_mode")
    @classmethod
    def validate_routing_mode(cls, v: str) -> str:
        valid = {"REGIONAL", "GLOBAL"}
        if v.upper() not in valid:
            raise ValueError(f"routingMode must be one of {valid}")
        return v.upper()


class SubnetAttributes(ResourceAttributes):
    """Regional subnetwork of a VPC network."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {"network": ResourceKind.NETWORK}
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"network", "region", "ip_cidr_range"}
    )

    network: ResourceName
    region: Annotated[str, Field(min_length=1)]
    ip_cidr_range: str = Field(alias="ipCidrRange")
    private_ip_google_access: bool = Field(False, alias="privateIpGoogleAccess")

    @field_validator("ip_cidr_range")
    @classmethod
    def validate_cidr(cls, v: str) -> str:
        return _validate_cidr(v)


class FirewallAllow(BaseModel):
    """One allowed protocol/ports entry of a firewall rule."""

    model_config = {"extra": "forbid"}

    protocol: str
    ports: list[str] = Field(default_factory=list)


class FirewallRuleAttributes(ResourceAttributes):
    """VPC firewall rule."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {"network": ResourceKind.NETWORK}
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"network", "direction"})

    network: ResourceName
    direction: str = "INGRESS"
    priority: Annotated[int, Field(ge=0, le=65535)] = 1000
    source_ranges: list[str] = Field(default_factory=list, alias="sourceRanges")
    target_tags: list[str] = Field(default_factory=list, alias="targetTags")
    allow: list[FirewallAllow] = Field(default_factory=list)

    @field_validator("direction")
    @classmethod
    def validate_direction(cls, v: str) -> str:
        valid = {"INGRESS", "EGRESS"}
        if v.upper() not in valid:
            raise ValueError(f"direction must be one of {valid}")
        return v.upper()

    @field_validator("source_ranges")
    @classmethod
    def validate_source_ranges(cls, v: list[str]) -> list[str]:
        return [_validate_cidr(r) for r in v]


class RouteAttributes(ResourceAttributes):
    """Static route, typically pointing at the firewall internal load balancer."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {
        "network": ResourceKind.NETWORK,
        "next_hop_load_balancer": ResourceKind.LOAD_BALANCER,
    }
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"network", "dest_range", "next_hop_ip", "next_hop_load_balancer", "priority"}
    )

    network: ResourceName
    dest_range: str = Field(alias="destRange")
    next_hop_ip: str | None = Field(None, alias="nextHopIp")
    next_hop_load_balancer: ResourceName | None = Field(None, alias="nextHopLoadBalancer")
    priority: Annotated[int, Field(ge=0, le=65535)] = 1000
    tags: list[str] = Field(default_factory=list)

    @field_validator("dest_range")
    @classmethod
    def validate_dest_range(cls, v: str) -> str:
        return _validate_cidr(v)

    @model_validator(mode="after")
    def validate_next_hop(self) -> RouteAttributes:
        hops = [h for h in (self.next_hop_ip, self.next_hop_load_balancer) if h]
        if len(hops) != 1:
            raise ValueError("exactly one of nextHopIp or nextHopLoadBalancer is required")
        return self


class PeeringAttributes(ResourceAttributes):
    """Network peering from ``network`` to ``peer_network``."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {
        "network": ResourceKind.NETWORK,
        "peer_network": ResourceKind.NETWORK,
    }
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"network", "peer_network"})

    network: ResourceName
    peer_network: ResourceName = Field(alias="peerNetwork")
    export_custom_routes: bool = Field(False, alias="exportCustomRoutes")
    import_custom_routes: bool = Field(False, alias="importCustomRoutes")

    @model_validator(mode="after")
    def validate_distinct(self) -> PeeringAttributes:
        if self.network == self.peer_network:
            raise ValueError("a network cannot be peered with itself")
        return self


# =============================================================================
# Compute and load balancing
# =============================================================================


class NamedPort(BaseModel):
    """Named port exposed by an instance group."""

    model_config = {"extra": "forbid"}

    name: Annotated[str, Field(min_length=1)]
    port: Annotated[int, Field(ge=1, le=65535)]


class InstanceGroupAttributes(ResourceAttributes):
    """Managed instance group of VM-Series firewalls.

    Interfaces are attached to ``subnets`` in order (untrust, mgmt, trust...).
    """

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {"subnets": ResourceKind.SUBNET}
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"zone", "machine_type", "image", "subnets"}
    )

    zone: Annotated[str, Field(min_length=1)]
    subnets: Annotated[list[ResourceName], Field(min_length=1)]
    machine_type: str = Field("n1-standard-4", alias="machineType")
    image: Annotated[str, Field(min_length=1)]
    target_size: Annotated[int, Field(ge=0, le=100, alias="targetSize")] = 1
    named_ports: list[NamedPort] = Field(default_factory=list, alias="namedPorts")
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)


class LoadBalancerAttributes(ResourceAttributes):
    """Regional load balancer fronting firewall instance groups."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {
        "instance_groups": ResourceKind.INSTANCE_GROUP,
        "network": ResourceKind.NETWORK,
    }
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"scheme", "region", "network"})

    region: Annotated[str, Field(min_length=1)]
    scheme: str = "EXTERNAL"
    network: ResourceName | None = None
    instance_groups: Annotated[list[ResourceName], Field(min_length=1, alias="instanceGroups")]
    protocol: str = "TCP"
    ports: list[str] = Field(default_factory=list)
    health_check_port: Annotated[int, Field(ge=1, le=65535, alias="healthCheckPort")] = 80
    session_affinity: str = Field("NONE", alias="sessionAffinity")

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        valid = {"EXTERNAL", "INTERNAL"}
        if v.upper() not in valid:
            raise ValueError(f"scheme must be one of {valid}")
        return v.upper()

    @model_validator(mode="after")
    def validate_internal_network(self) -> LoadBalancerAttributes:
        if self.scheme == "INTERNAL" and not self.network:
            raise ValueError("INTERNAL load balancers require a network")
        return self


class AutoscalerAttributes(ResourceAttributes):
    """Autoscaler attached to an instance group."""

    REFERENCE_FIELDS: ClassVar[dict[str, ResourceKind]] = {
        "target": ResourceKind.INSTANCE_GROUP,
    }
    IMMUTABLE_FIELDS: ClassVar[frozenset[str]] = frozenset({"target", "zone"})

    target: ResourceName
    zone: Annotated[str, Field(min_length=1)]
    min_replicas: Annotated[int, Field(ge=0, alias="minReplicas")] = 1
    max_replicas: Annotated[int, Field(ge=1, alias="maxReplicas")] = 2
    cooldown_seconds: Annotated[int, Field(ge=0, alias="cooldownSeconds")] = 480
    cpu_utilization_target: Annotated[
        float, Field(gt=0, le=1, alias="cpuUtilizationTarget")
    ] = 0.7

    @model_validator(mode="after")
    def validate_replicas(self) -> AutoscalerAttributes:
        if self.min_replicas > self.max_replicas:
            raise ValueError("minReplicas cannot exceed maxReplicas")
        return self


ATTRIBUTE_MODELS: dict[ResourceKind, type[ResourceAttributes]] = {
    ResourceKind.NETWORK: NetworkAttributes,
    ResourceKind.SUBNET: SubnetAttributes,
    ResourceKind.FIREWALL_RULE: FirewallRuleAttributes,
    ResourceKind.ROUTE: RouteAttributes,
    ResourceKind.PEERING: PeeringAttributes,
    ResourceKind.INSTANCE_GROUP: InstanceGroupAttributes,
    ResourceKind.LOAD_BALANCER: LoadBalancerAttributes,
    ResourceKind.AUTOSCALER: AutoscalerAttributes,
}


def get_attribute_model(kind: ResourceKind) -> type[ResourceAttributes]:
    """Get the attribute schema for a resource kind."""
    return ATTRIBUTE_MODELS[kind]


# =============================================================================
# Topology document
# =============================================================================


class ResourceDeclaration(BaseModel):
    """One entry of ``spec.resources``."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    name: ResourceName
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    prevent_destroy: bool = Field(False, alias="preventDestroy")

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v: list[str]) -> list[str]:
        for ref in v:
            ResourceIdentity.parse(ref)
        return v

    @property
    def identity(self) -> ResourceIdentity:
        return ResourceIdentity(self.kind, self.name)

    def parsed_attributes(self) -> ResourceAttributes:
        """Validate ``attributes`` against the kind's schema."""
        return get_attribute_model(self.kind).model_validate(self.attributes)


class TopologySpec(BaseModel):
    """Declared topology: the full desired state."""

    model_config = {"extra": "ignore"}

    name: str = "default"
    labels: dict[str, str] = Field(default_factory=dict)
    resources: list[ResourceDeclaration] = Field(default_factory=list)
