"""Attribute normalization rules for declared-versus-live comparison.

Providers rarely echo attributes back exactly as they were declared. This
module decides when two values are syntactically different but semantically
equivalent, so the diff engine does not plan no-op updates.

COMMON FALSE POSITIVES HANDLED:
1. Empty list [] vs null vs missing attribute
2. String "true" vs boolean true
3. Numeric strings ("1460" vs 1460)
4. Case differences in enums (e.g., "INGRESS" vs "ingress")
5. Ordering of unordered collections (tags, source ranges, ports)
6. Defaults the provider fills in for omitted attributes
"""

from __future__ import annotations

import fnmatch
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Whitespace normalization for free text
    WHITESPACE_NORMALIZE = "whitespace_normalize"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match ("*" for all, fnmatch wildcards allowed)
        attribute: Attribute name pattern to match (fnmatch wildcards allowed)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    attribute: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, attribute: str) -> bool:
        """Check if this rule applies to a kind and attribute."""
        if self.kind != "*" and not fnmatch.fnmatchcase(kind, self.kind):
            return False
        return self.attribute == "*" or fnmatch.fnmatchcase(attribute, self.attribute)


# Default normalization rules for common provider echo patterns
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    # Empty equivalence for collection attributes
    NormalizationRule(
        kind="*",
        attribute="*",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty collections equal null/missing",
    ),

    # Boolean flags
    NormalizationRule(
        kind="*",
        attribute="autoCreateSubnetworks",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        attribute="privateIpGoogleAccess",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may be string or bool",
    ),
    NormalizationRule(
        kind="peering",
        attribute="*CustomRoutes",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Route exchange flags may be string or bool",
    ),

    # Numbers echoed as strings
    NormalizationRule(
        kind="*",
        attribute="priority",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Priority may be echoed as a string",
    ),
    NormalizationRule(
        kind="network",
        attribute="mtu",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="MTU may be echoed as a string",
    ),
    NormalizationRule(
        kind="autoscaler",
        attribute="*",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Autoscaler bounds may be echoed as strings",
    ),

    # Case insensitive enums
    NormalizationRule(
        kind="*",
        attribute="routingMode",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Enum values may have case variations",
    ),
    NormalizationRule(
        kind="firewall_rule",
        attribute="direction",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Enum values may have case variations",
    ),
    NormalizationRule(
        kind="load_balancer",
        attribute="*",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Scheme, protocol and affinity may have case variations",
    ),

    # Free text
    NormalizationRule(
        kind="*",
        attribute="description",
        normalization_type=NormalizationType.WHITESPACE_NORMALIZE,
        reason="Description whitespace is not significant",
    ),

    # Default values
    NormalizationRule(
        kind="network",
        attribute="mtu",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1460},
        reason="MTU defaults to 1460",
    ),
    NormalizationRule(
        kind="*",
        attribute="priority",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 1000},
        reason="Priority defaults to 1000",
    ),

    # Array ordering for unordered collections
    NormalizationRule(
        kind="*",
        attribute="tags",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Tag order doesn't matter",
    ),
    NormalizationRule(
        kind="firewall_rule",
        attribute="*",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Source ranges, target tags and allow entries are sets",
    ),
    NormalizationRule(
        kind="load_balancer",
        attribute="ports",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Forwarded ports are a set",
    ),
    NormalizationRule(
        kind="instance_group",
        attribute="namedPorts",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Named ports are keyed by name",
    ),
]


class DiffNormalizer:
    """Normalizes attribute values to detect semantic equivalence."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        """Initialize normalizer.

        Args:
            rules: Custom normalization rules.
            enable_default_rules: Whether to include default rules.
        """
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, attribute: str) -> Any:
        """Normalize a value based on applicable rules."""
        normalized = value

        for rule in self._rules:
            if rule.matches(kind, attribute):
                normalized = self._apply_normalization(normalized, rule)

        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return self._normalize_case(value)
            case NormalizationType.WHITESPACE_NORMALIZE:
                return self._normalize_whitespace(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return self._normalize_default(value, rule.params.get("default"))
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if isinstance(value, str | list | tuple | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, int | float):
            return value
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_case(self, value: Any) -> Any:
        if isinstance(value, str):
            return value.lower()
        if isinstance(value, list | tuple):
            return [self._normalize_case(v) for v in value]
        return value

    def _normalize_whitespace(self, value: Any) -> str | Any:
        if isinstance(value, str):
            value = value.replace("\r\n", "\n").replace("\r", "\n")
            lines = [" ".join(line.split()) for line in value.split("\n")]
            value = "\n".join(lines).strip()
            return value or None
        return value

    def _normalize_array_order(self, value: Any) -> tuple | Any:
        """Sort arrays so order is irrelevant. Returns a tuple."""
        if isinstance(value, list | tuple):
            return tuple(sorted(value, key=lambda x: repr(_canonical(x))))
        return value

    def _normalize_default(self, value: Any, default: Any) -> Any:
        if value is None:
            return default
        return value

    def are_equivalent(self, declared: Any, live: Any, kind: str, attribute: str) -> bool:
        """Check if a declared and a live value are semantically equivalent."""
        normalized_declared = self.normalize_value(declared, kind, attribute)
        normalized_live = self.normalize_value(live, kind, attribute)

        if _canonical(normalized_declared) == _canonical(normalized_live):
            return True

        return False


def _canonical(value: Any) -> Any:
    """Hashable, order-stable form for deep comparison of nested values."""
    if isinstance(value, dict):
        return tuple(sorted((str(k), _canonical(v)) for k, v in value.items()))
    if isinstance(value, list | tuple):
        return tuple(_canonical(v) for v in value)
    return value


@dataclass
class NormalizationConfig:
    """Configuration for attribute normalization.

    Attributes:
        rules: Custom normalization rules.
        enable_default_rules: Whether to include default rules.
    """

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults
        """
        return cls(
            enable_default_rules=os.environ.get(
                "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
            ).lower() in ("true", "1", "yes"),
        )


def create_normalizer_from_env() -> DiffNormalizer:
    """Create a DiffNormalizer from environment configuration."""
    config = NormalizationConfig.from_env()
    return DiffNormalizer(rules=config.rules, enable_default_rules=config.enable_default_rules)
