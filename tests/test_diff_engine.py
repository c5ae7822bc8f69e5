"""Tests for the resource diff engine."""

from __future__ import annotations

from typing import Any

import pytest

from azure_mock import make_observed
from driftwatch.classifier import Classifier
from driftwatch.diff_engine import (
    EXISTENCE_PROPERTY,
    MISSING_VALUE,
    ResourceDiffEngine,
    canonical_string,
    expected_resource_id,
    flatten_properties,
    lookup_path,
    match_observed,
    render_path,
)
from driftwatch.domain import Category, MismatchKind, Severity
from driftwatch.ignore_rules import IgnoreRule, IgnoreRulesConfig, IgnoreRulesEvaluator
from driftwatch.models import ExpectedResource

STORAGE = "Microsoft.Storage/storageAccounts"
KEY_VAULT = "Microsoft.KeyVault/vaults"
NSG = "Microsoft.Network/networkSecurityGroups"


def expected(name: str, properties: dict[str, Any], resource_type: str = STORAGE) -> ExpectedResource:
    return ExpectedResource(type=resource_type, name=name, properties=properties)


@pytest.fixture
def engine() -> ResourceDiffEngine:
    return ResourceDiffEngine(Classifier())


class TestCanonicalString:
    """Tests for display rendering of property values."""

    def test_scalars(self) -> None:
        assert canonical_string(None) == "null"
        assert canonical_string(True) == "true"
        assert canonical_string(False) == "false"
        assert canonical_string("Standard_LRS") == "Standard_LRS"
        assert canonical_string(42) == "42"

    def test_integral_float_drops_fraction(self) -> None:
        assert canonical_string(2.0) == "2"
        assert canonical_string(2.5) == "2.5"

    def test_containers_are_compact_sorted_json(self) -> None:
        assert canonical_string({"b": 1, "a": [1, "x"]}) == '{"a":[1,"x"],"b":1}'


class TestPropertyPaths:
    """Tests for flattening and path lookup."""

    def test_flatten_nested_mappings(self) -> None:
        props = {"sku": {"name": "Standard_LRS"}, "tags": {}, "ipRules": [], "kind": "StorageV2"}

        assert dict(flatten_properties(props)) == {
            ("sku", "name"): "Standard_LRS",
            ("tags",): {},
            ("ipRules",): [],
            ("kind",): "StorageV2",
        }

    def test_flatten_keeps_dotted_keys_whole(self) -> None:
        props = {"tags": {"kubernetes.io/cluster": "owned"}}

        assert list(flatten_properties(props)) == [(("tags", "kubernetes.io/cluster"), "owned")]

    def test_render_path(self) -> None:
        assert render_path(("tags", "app.kubernetes.io/name")) == "tags.app.kubernetes.io/name"

    def test_lookup_exact_and_case_insensitive(self) -> None:
        props = {"networkAcls": {"defaultAction": "Deny"}}

        assert lookup_path(props, ("networkAcls", "defaultAction")) == (True, "Deny")
        assert lookup_path(props, ("NetworkACLs", "DefaultAction")) == (True, "Deny")

    def test_lookup_dotted_key(self) -> None:
        props = {"tags": {"app.kubernetes.io/name": "web"}}

        assert lookup_path(props, ("tags", "app.kubernetes.io/name")) == (True, "web")
        assert lookup_path(props, ("tags", "app", "kubernetes", "io/name")) == (False, None)

    def test_lookup_missing(self) -> None:
        props = {"networkAcls": {"defaultAction": "Deny"}, "kind": "StorageV2"}

        assert lookup_path(props, ("networkAcls", "bypass")) == (False, None)
        assert lookup_path(props, ("kind", "name")) == (False, None)

    def test_lookup_present_null(self) -> None:
        assert lookup_path({"ipRules": None}, ("ipRules",)) == (True, None)


class TestMatching:
    """Tests for pairing declared and live resources."""

    def test_match_is_case_insensitive_on_type_and_name(self) -> None:
        live = make_observed("StData", resource_type="microsoft.storage/StorageAccounts")

        assert match_observed(expected("stdata", {}), [live]) is live

    def test_no_match_on_different_type(self) -> None:
        live = make_observed("stdata", resource_type=KEY_VAULT)

        assert match_observed(expected("stdata", {}), [live]) is None

    def test_expected_resource_id(self) -> None:
        assert expected_resource_id(expected("stdata", {})) == f"expected/{STORAGE}/stdata"


class TestDiff:
    """Tests for ResourceDiffEngine.diff_resource."""

    def test_identical_resource_has_no_findings(self, engine: ResourceDiffEngine) -> None:
        props = {"sku": {"name": "Standard_LRS"}, "minimumTlsVersion": "TLS1_2"}
        live = make_observed("stdata", properties=props)

        assert engine.diff_resource(expected("stdata", props), live) == []

    def test_identical_nested_resource_has_no_findings(self, engine: ResourceDiffEngine) -> None:
        props = {
            "networkAcls": {
                "defaultAction": "Deny",
                "bypass": "AzureServices",
                "ipRules": [{"value": "10.0.0.0/24", "action": "Allow"}],
            },
            "encryption": {"services": {"blob": {"enabled": True}, "file": {"enabled": True}}},
            "tags": {},
        }
        live = make_observed("stdata", properties=props)

        assert engine.diff_resource(expected("stdata", props), live) == []

    def test_identical_dotted_tag_keys_have_no_findings(self, engine: ResourceDiffEngine) -> None:
        tags = {"kubernetes.io/cluster": "owned", "app.kubernetes.io/name": "web", "env": "prod"}
        live = make_observed("stdata", tags=tags)

        assert engine.diff_resource(expected("stdata", {"tags": tags}), live) == []

    def test_dotted_tag_key_mismatch_is_reported(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", tags={"kubernetes.io/cluster": "shared"})

        findings = engine.diff_resource(
            expected("stdata", {"tags": {"kubernetes.io/cluster": "owned"}}), live
        )

        assert [(f.property, f.expected_value, f.actual_value, f.mismatch_kind) for f in findings] == [
            ("tags.kubernetes.io/cluster", "owned", "shared", MismatchKind.VALUE_MISMATCH)
        ]

    def test_missing_resource(self, engine: ResourceDiffEngine) -> None:
        """A declared resource with no live counterpart is always Critical."""
        findings = engine.diff_resource(expected("stdata", {"kind": "StorageV2"}), None)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.property == EXISTENCE_PROPERTY
        assert finding.resource_id == f"expected/{STORAGE}/stdata"
        assert finding.expected_value == "exists"
        assert finding.actual_value == "missing"
        assert finding.severity == Severity.CRITICAL
        assert finding.category == Category.COMPLIANCE
        assert finding.mismatch_kind == MismatchKind.MISSING_RESOURCE

    def test_storage_sku_change_is_high_cost(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"sku": {"name": "Standard_LRS"}})

        findings = engine.diff_resource(expected("stdata", {"sku": {"name": "Standard_GRS"}}), live)

        assert len(findings) == 1
        finding = findings[0]
        assert finding.property == "sku.name"
        assert finding.expected_value == "Standard_GRS"
        assert finding.actual_value == "Standard_LRS"
        assert finding.severity == Severity.HIGH
        assert finding.category == Category.COST
        assert finding.mismatch_kind == MismatchKind.VALUE_MISMATCH
        assert finding.resource_id == live.id

    def test_sku_case_difference_is_not_drift(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"sku": {"name": "Standard_LRS"}})

        assert engine.diff_resource(expected("stdata", {"sku": {"name": "standard_lrs"}}), live) == []

    def test_tag_change_is_low(self, engine: ResourceDiffEngine) -> None:
        """Top-level tags of the live resource take part in the diff."""
        live = make_observed("stdata", tags={"env": "dev"})

        findings = engine.diff_resource(expected("stdata", {"tags": {"env": "prod"}}), live)

        assert [(f.property, f.severity, f.category) for f in findings] == [
            ("tags.env", Severity.LOW, Category.CONFIGURATION)
        ]

    def test_location_compare_ignores_case(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", location="WestEurope")

        assert engine.diff_resource(expected("stdata", {"location": "westeurope"}), live) == []

    def test_location_change_is_medium_compliance(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", location="westeurope")

        findings = engine.diff_resource(expected("stdata", {"location": "northeurope"}), live)

        assert len(findings) == 1
        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].category == Category.COMPLIANCE

    def test_missing_property(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"minimumTlsVersion": "TLS1_2"})

        findings = engine.diff_resource(
            expected("stdata", {"minimumTlsVersion": "TLS1_2", "allowBlobPublicAccess": False}),
            live,
        )

        assert len(findings) == 1
        finding = findings[0]
        assert finding.property == "allowBlobPublicAccess"
        assert finding.expected_value == "false"
        assert finding.actual_value == MISSING_VALUE
        assert finding.mismatch_kind == MismatchKind.MISSING_PROPERTY
        assert finding.severity == Severity.HIGH
        assert finding.category == Category.SECURITY

    def test_missing_property_with_arm_default(self, engine: ResourceDiffEngine) -> None:
        """supportsHttpsTrafficOnly defaults to true when ARM omits it."""
        live = make_observed("stdata", properties={})

        assert engine.diff_resource(expected("stdata", {"supportsHttpsTrafficOnly": True}), live) == []

    def test_missing_property_with_arm_default_that_differs(
        self, engine: ResourceDiffEngine
    ) -> None:
        live = make_observed("stdata", properties={})

        findings = engine.diff_resource(expected("stdata", {"supportsHttpsTrafficOnly": False}), live)

        assert len(findings) == 1
        assert findings[0].actual_value == "true"
        assert findings[0].mismatch_kind == MismatchKind.VALUE_MISMATCH

    def test_observed_only_properties_are_not_reported(self, engine: ResourceDiffEngine) -> None:
        live = make_observed(
            "stdata",
            properties={"kind": "StorageV2", "accessTier": "Hot", "isHnsEnabled": False},
        )

        assert engine.diff_resource(expected("stdata", {"kind": "StorageV2"}), live) == []

    def test_numeric_string_equals_number(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"retentionDays": "7.0"})

        assert engine.diff_resource(expected("stdata", {"retentionDays": 7}), live) == []

    def test_boolean_string_equals_bool(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"supportsHttpsTrafficOnly": True})

        assert engine.diff_resource(expected("stdata", {"supportsHttpsTrafficOnly": "true"}), live) == []

    def test_property_name_lookup_ignores_case(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"minimumTlsVersion": "TLS1_2"})

        assert engine.diff_resource(expected("stdata", {"minimumTLSVersion": "TLS1_2"}), live) == []

    def test_tls_version_downgrade_is_high_security(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"minimumTlsVersion": "TLS1_0"})

        findings = engine.diff_resource(expected("stdata", {"minimumTlsVersion": "TLS1_2"}), live)

        assert findings[0].severity == Severity.HIGH
        assert findings[0].category == Category.SECURITY

    def test_network_acls(self, engine: ResourceDiffEngine) -> None:
        declared = expected(
            "stdata",
            {"networkAcls": {"defaultAction": "Deny", "bypass": "AzureServices"}},
        )
        live = make_observed("stdata", properties={"networkAcls": {"defaultAction": "Allow"}})

        findings = engine.diff_resource(declared, live)

        by_property = {f.property: f for f in findings}
        assert set(by_property) == {"networkAcls.bypass", "networkAcls.defaultAction"}
        # Declared but absent ACL settings are Critical, changed ones High
        assert by_property["networkAcls.bypass"].severity == Severity.CRITICAL
        assert by_property["networkAcls.defaultAction"].severity == Severity.HIGH

    def test_nsg_rule_order_is_irrelevant(self, engine: ResourceDiffEngine) -> None:
        rules = [
            {"name": "allow-https", "priority": 100},
            {"name": "deny-all", "priority": 4096},
        ]
        live = make_observed("nsg-web", resource_type=NSG, properties={"securityRules": rules[::-1]})

        assert engine.diff_resource(expected("nsg-web", {"securityRules": rules}, NSG), live) == []

    def test_nsg_rule_change_is_critical(self, engine: ResourceDiffEngine) -> None:
        live = make_observed(
            "nsg-web",
            resource_type=NSG,
            properties={"securityRules": [{"name": "allow-any", "priority": 100}]},
        )

        findings = engine.diff_resource(
            expected("nsg-web", {"securityRules": [{"name": "allow-https", "priority": 100}]}, NSG),
            live,
        )

        assert len(findings) == 1
        assert findings[0].property == "securityRules"
        assert findings[0].severity == Severity.CRITICAL
        assert findings[0].category == Category.SECURITY

    def test_key_vault_purge_protection_missing(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("kv-app", resource_type=KEY_VAULT, properties={})

        findings = engine.diff_resource(expected("kv-app", {"enablePurgeProtection": True}, KEY_VAULT), live)

        assert findings[0].severity == Severity.CRITICAL
        assert findings[0].mismatch_kind == MismatchKind.MISSING_PROPERTY

    def test_system_managed_properties_are_ignored(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"provisioningState": "Updating"})

        assert engine.diff_resource(expected("stdata", {"provisioningState": "Succeeded"}), live) == []

    def test_custom_ignore_rules(self) -> None:
        ignore = IgnoreRulesEvaluator(
            IgnoreRulesConfig(
                rules=[IgnoreRule(resource_type=STORAGE, paths=("tags.*",), reason="Tags via policy")]
            )
        )
        engine = ResourceDiffEngine(Classifier(), ignore_rules=ignore)
        live = make_observed("stdata", tags={"env": "dev"})

        assert engine.diff_resource(expected("stdata", {"tags": {"env": "prod"}}), live) == []

    def test_unmapped_property_uses_fallback(self, engine: ResourceDiffEngine) -> None:
        live = make_observed(
            "app-web",
            resource_type="Microsoft.Web/sites",
            properties={"siteConfig": {"alwaysOn": "off-peak"}},
        )

        findings = engine.diff_resource(
            expected("app-web", {"siteConfig": {"alwaysOn": "always"}}, "Microsoft.Web/sites"),
            live,
        )

        assert findings[0].severity == Severity.MEDIUM
        assert findings[0].category == Category.CONFIGURATION

    def test_findings_ordered_by_property(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"kind": "BlobStorage"}, tags={"env": "dev"})

        findings = engine.diff_resource(
            expected(
                "stdata",
                {"tags": {"env": "prod"}, "kind": "StorageV2", "accessTier": "Hot"},
            ),
            live,
        )

        assert [f.property for f in findings] == ["accessTier", "kind", "tags.env"]


class TestAnalyze:
    """Tests for ResourceDiffEngine.analyze."""

    def test_no_drift(self, engine: ResourceDiffEngine) -> None:
        live = make_observed("stdata", properties={"kind": "StorageV2"})

        result = engine.analyze([expected("stdata", {"kind": "StorageV2"})], [live])

        assert result.findings == []
        assert result.resources_scanned == 1
        assert result.overall_risk == Severity.NONE
        assert result.action_required is False
        assert result.summary == "No drift detected across 1 resources"

    def test_aggregates_and_orders_across_resources(self, engine: ResourceDiffEngine) -> None:
        declared = [
            expected("stweb", {"kind": "StorageV2"}),
            expected("kv-app", {"enableSoftDelete": True}, KEY_VAULT),
            expected("stdata", {"tags": {"env": "prod"}}),
        ]
        observed = [
            make_observed("stweb", properties={"kind": "BlobStorage"}),
            make_observed("kv-app", resource_type=KEY_VAULT, properties={"enableSoftDelete": False}),
            make_observed("stdata", tags={"env": "dev"}),
        ]

        result = engine.analyze(declared, observed)

        assert [(f.resource_name, f.property) for f in result.findings] == [
            ("kv-app", "enableSoftDelete"),
            ("stdata", "tags.env"),
            ("stweb", "kind"),
        ]
        assert result.resources_scanned == 3
        assert result.overall_risk == Severity.HIGH
        assert result.action_required is True
        summary = result.to_summary_dict()
        assert summary["totalDrifts"] == 3
        assert summary["high"] == 1
        assert summary["medium"] == 1
        assert summary["low"] == 1
        assert summary["overallRisk"] == "High"

    def test_unmanaged_resources_not_reported_by_default(self, engine: ResourceDiffEngine) -> None:
        observed = [make_observed("stdata"), make_observed("strogue")]

        result = engine.analyze([expected("stdata", {})], observed)

        assert result.findings == []

    def test_unmanaged_resources_reported_when_enabled(self) -> None:
        engine = ResourceDiffEngine(Classifier(), report_unmanaged_resources=True)
        rogue = make_observed("strogue")

        result = engine.analyze([expected("stdata", {})], [make_observed("stdata"), rogue])

        assert len(result.findings) == 1
        finding = result.findings[0]
        assert finding.resource_id == rogue.id
        assert finding.mismatch_kind == MismatchKind.UNMANAGED_RESOURCE
        assert finding.expected_value == "absent"
        assert finding.actual_value == "exists"
        assert finding.severity == Severity.MEDIUM
        # Only declared resources count as scanned
        assert result.resources_scanned == 1

    def test_deterministic(self, engine: ResourceDiffEngine) -> None:
        declared = [
            expected("stdata", {"sku": {"name": "Standard_GRS"}, "tags": {"env": "prod", "team": "a"}}),
            expected("stgone", {}),
        ]
        observed = [make_observed("stdata", properties={"sku": {"name": "Standard_LRS"}})]

        first = engine.analyze(declared, observed)
        second = engine.analyze(declared, observed)

        assert first.findings == second.findings
        assert [f.to_dict() for f in first.findings] == [f.to_dict() for f in second.findings]
