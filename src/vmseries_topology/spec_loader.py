"""Topology file loading and graph construction.

SECURITY: All file operations enforce size limits. Input validation is
performed at the boundary so the planner only ever sees well-formed graphs.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_RESOURCES_PER_TOPOLOGY, MAX_SPEC_FILE_SIZE_BYTES
from .graph import ConfigError, ResourceGraph, ResourceIdentity, ResourceNode
from .models import TopologySpec

logger = logging.getLogger(__name__)


class SpecLoadError(ConfigError):
    """Raised when topology loading or validation fails."""

    pass


def _format_validation_error(e: ValidationError, prefix: str = "") -> str:
    errors = []
    for error in e.errors():
        loc = ".".join(str(x) for x in error["loc"])
        if prefix:
            loc = f"{prefix}.{loc}" if loc else prefix
        errors.append(f"  - {loc}: {error['msg']}")
    return "\n".join(errors)


def parse_topology(raw_data: Any, source: str = "<memory>") -> TopologySpec:
    """Validate an already-parsed topology mapping.

    Accepts both the flat format and the Kubernetes-style wrapper with
    ``apiVersion``/``kind``/``metadata``/``spec``.

    Raises:
        SpecLoadError: If the document is malformed.
    """
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Topology must be a YAML mapping: {source}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {source}")
        metadata = raw_data.get("metadata") or {}
        if isinstance(metadata, dict) and "name" in metadata and "name" not in spec_data:
            spec_data = {**spec_data, "name": metadata["name"]}
    else:
        spec_data = raw_data

    try:
        spec = TopologySpec.model_validate(spec_data)
    except ValidationError as e:
        raise SpecLoadError(
            f"Validation failed for {source}:\n{_format_validation_error(e)}"
        ) from e

    if len(spec.resources) > MAX_RESOURCES_PER_TOPOLOGY:
        raise SpecLoadError(
            f"Topology declares {len(spec.resources)} resources, "
            f"exceeding limit of {MAX_RESOURCES_PER_TOPOLOGY}: {source}"
        )

    return spec


def load_topology(path: Path) -> TopologySpec:
    """Load and validate a topology file from YAML.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Topology file not found: {path}")

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat topology file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Topology file exceeds maximum size of {MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read topology file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    spec = parse_topology(raw_data, source=str(path))
    logger.info(
        "Loaded topology '%s' with %d resources from %s",
        spec.name,
        len(spec.resources),
        path,
    )
    return spec


def build_graph(spec: TopologySpec) -> ResourceGraph:
    """Build the resource graph for a topology.

    Attribute schemas are validated per kind. Edges come from reference
    attributes (a subnet's ``network``) and from explicit ``dependsOn``.
    Cycles are not checked here; planning does that.

    Raises:
        SpecLoadError: If attributes fail their kind's schema.
        DuplicateIdentityError: If two resources share kind + name.
        DanglingReferenceError: If a reference points at an undeclared resource.
    """
    graph = ResourceGraph()
    edges: list[tuple[ResourceIdentity, ResourceIdentity]] = []

    for index, declaration in enumerate(spec.resources):
        identity = declaration.identity
        try:
            attributes = declaration.parsed_attributes()
        except ValidationError as e:
            raise SpecLoadError(
                f"Invalid attributes for {identity}:\n"
                f"{_format_validation_error(e, prefix=f'resources.{index}.attributes')}"
            ) from e

        graph.add_node(
            ResourceNode(
                identity=identity,
                attributes=attributes.to_attributes(),
                prevent_destroy=declaration.prevent_destroy,
            )
        )

        for ref in attributes.references():
            edges.append((identity, ref))
        for raw in declaration.depends_on:
            edges.append((identity, ResourceIdentity.parse(raw)))

    for dependent, dependency in edges:
        graph.add_edge(dependent, dependency)

    logger.debug(
        "Built resource graph",
        extra={"topology": spec.name, "nodes": len(graph), "edges": len(edges)},
    )
    return graph


def load_graph(path: Path) -> tuple[TopologySpec, ResourceGraph]:
    """Load a topology file and build its graph."""
    spec = load_topology(path)
    return spec, build_graph(spec)
