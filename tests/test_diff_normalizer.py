"""Tests for diff normalization rules engine."""

from __future__ import annotations

import pytest

from vmseries_topology.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationConfig,
    NormalizationRule,
    NormalizationType,
    create_normalizer_from_env,
)


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_kind(self) -> None:
        """Test exact kind matching."""
        rule = NormalizationRule(
            kind="network",
            attribute="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )

        assert rule.matches("network", "mtu") is True
        assert rule.matches("subnet", "mtu") is False

    def test_matches_wildcard_kind(self) -> None:
        """Test wildcard kind matching."""
        rule = NormalizationRule(
            kind="*",
            attribute="tags",
            normalization_type=NormalizationType.ARRAY_UNORDERED,
        )

        assert rule.matches("route", "tags") is True
        assert rule.matches("instance_group", "tags") is True
        assert rule.matches("instance_group", "metadata") is False

    def test_matches_attribute_glob(self) -> None:
        """Test glob pattern in attribute name."""
        rule = NormalizationRule(
            kind="peering",
            attribute="*CustomRoutes",
            normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        )

        assert rule.matches("peering", "exportCustomRoutes") is True
        assert rule.matches("peering", "importCustomRoutes") is True
        assert rule.matches("peering", "peerNetwork") is False

    def test_matching_is_case_sensitive(self) -> None:
        """Test that attribute names are matched exactly."""
        rule = NormalizationRule(
            kind="*",
            attribute="routingMode",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )

        assert rule.matches("network", "routingmode") is False


class TestDiffNormalizer:
    """Tests for DiffNormalizer."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        """Create a normalizer with default rules."""
        return DiffNormalizer(enable_default_rules=True)

    @pytest.fixture
    def normalizer_no_defaults(self) -> DiffNormalizer:
        """Create a normalizer without default rules."""
        return DiffNormalizer(enable_default_rules=False)

    # Empty equivalence tests

    def test_empty_list_equals_missing(self, normalizer: DiffNormalizer) -> None:
        """Test that [] and None are equivalent."""
        assert normalizer.are_equivalent([], None, "firewall_rule", "targetTags") is True
        assert normalizer.are_equivalent({}, None, "instance_group", "metadata") is True
        assert normalizer.are_equivalent("", None, "network", "description") is True

    def test_no_defaults_compares_exactly(
        self, normalizer_no_defaults: DiffNormalizer
    ) -> None:
        """Test that without rules only deep equality counts."""
        assert normalizer_no_defaults.are_equivalent([], None, "route", "tags") is False
        assert normalizer_no_defaults.are_equivalent(
            {"a": [1, 2]}, {"a": [1, 2]}, "route", "tags"
        ) is True

    # Boolean tests

    def test_boolean_strings(self, normalizer: DiffNormalizer) -> None:
        """Test that string booleans match real booleans."""
        assert normalizer.are_equivalent(
            True, "true", "subnet", "privateIpGoogleAccess"
        ) is True
        assert normalizer.are_equivalent(
            False, "False", "peering", "exportCustomRoutes"
        ) is True
        assert normalizer.are_equivalent(
            True, "false", "network", "autoCreateSubnetworks"
        ) is False

    # Numeric tests

    def test_numeric_strings(self, normalizer: DiffNormalizer) -> None:
        """Test that numbers echoed as strings match."""
        assert normalizer.are_equivalent(1460, "1460", "network", "mtu") is True
        assert normalizer.are_equivalent(900, "900", "firewall_rule", "priority") is True
        assert normalizer.are_equivalent(0.7, "0.7", "autoscaler", "cpuUtilizationTarget") is True
        assert normalizer.are_equivalent(1460, "1500", "network", "mtu") is False

    def test_numeric_rule_does_not_touch_booleans(
        self, normalizer: DiffNormalizer
    ) -> None:
        """Test that True is not treated as the number 1."""
        assert normalizer.normalize_value(True, "autoscaler", "minReplicas") is True

    # Case tests

    def test_case_insensitive_enums(self, normalizer: DiffNormalizer) -> None:
        """Test that enum casing is ignored where configured."""
        assert normalizer.are_equivalent("REGIONAL", "regional", "network", "routingMode") is True
        assert normalizer.are_equivalent("INGRESS", "ingress", "firewall_rule", "direction") is True
        assert normalizer.are_equivalent("INTERNAL", "internal", "load_balancer", "scheme") is True

    def test_case_matters_elsewhere(self, normalizer: DiffNormalizer) -> None:
        """Test that other strings stay case sensitive."""
        assert normalizer.are_equivalent("us-central1", "US-CENTRAL1", "subnet", "region") is False

    # Whitespace tests

    def test_description_whitespace(self, normalizer: DiffNormalizer) -> None:
        """Test that description whitespace is collapsed."""
        assert normalizer.are_equivalent(
            "Untrust  VPC\n", " Untrust VPC", "network", "description"
        ) is True

    # Default tests

    def test_provider_defaults(self, normalizer: DiffNormalizer) -> None:
        """Test that omitted values match provider defaults."""
        assert normalizer.are_equivalent(None, 1460, "network", "mtu") is True
        assert normalizer.are_equivalent(1000, None, "route", "priority") is True
        assert normalizer.are_equivalent(None, 1500, "network", "mtu") is False

    # Ordering tests

    def test_unordered_tags(self, normalizer: DiffNormalizer) -> None:
        """Test that tag order is ignored."""
        assert normalizer.are_equivalent(["fw", "mgmt"], ["mgmt", "fw"], "route", "tags") is True

    def test_unordered_firewall_entries(self, normalizer: DiffNormalizer) -> None:
        """Test that allow entries compare as a set of mappings."""
        declared = [{"protocol": "tcp", "ports": ["443"]}, {"protocol": "icmp", "ports": []}]
        live = [{"protocol": "icmp", "ports": []}, {"protocol": "tcp", "ports": ["443"]}]

        assert normalizer.are_equivalent(declared, live, "firewall_rule", "allow") is True

    def test_ordered_lists_stay_ordered(self, normalizer: DiffNormalizer) -> None:
        """Test that interface subnet order is significant."""
        assert normalizer.are_equivalent(
            ["untrust-a", "mgmt-a"], ["mgmt-a", "untrust-a"], "instance_group", "subnets"
        ) is False

    def test_nested_mapping_key_order_ignored(self, normalizer: DiffNormalizer) -> None:
        """Test deep comparison of mappings."""
        assert normalizer.are_equivalent(
            {"a": "1", "b": "2"}, {"b": "2", "a": "1"}, "instance_group", "metadata"
        ) is True

    # Custom rules

    def test_custom_rule_added_after_defaults(self) -> None:
        """Test that custom rules extend the defaults."""
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    kind="subnet",
                    attribute="region",
                    normalization_type=NormalizationType.CASE_INSENSITIVE,
                )
            ]
        )

        assert normalizer.are_equivalent("us-central1", "US-CENTRAL1", "subnet", "region") is True
        assert normalizer.are_equivalent(1460, "1460", "network", "mtu") is True


class TestNormalizationConfig:
    """Tests for environment configuration."""

    def test_defaults_enabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that default rules are on unless disabled."""
        monkeypatch.delenv("ENABLE_DEFAULT_NORMALIZATION_RULES", raising=False)

        assert NormalizationConfig.from_env().enable_default_rules is True

    def test_defaults_disabled(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test disabling default rules."""
        monkeypatch.setenv("ENABLE_DEFAULT_NORMALIZATION_RULES", "false")

        normalizer = create_normalizer_from_env()

        assert normalizer.are_equivalent(1460, "1460", "network", "mtu") is False

    def test_default_rules_have_reasons(self) -> None:
        """Test that every default rule documents itself."""
        assert all(rule.reason for rule in DEFAULT_NORMALIZATION_RULES)
