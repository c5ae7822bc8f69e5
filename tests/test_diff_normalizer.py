"""Tests for value normalization rules."""

from __future__ import annotations

from pathlib import Path

import pytest

from driftwatch.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationConfig,
    NormalizationError,
    NormalizationRule,
    NormalizationType,
    is_number,
    parse_number,
)

STORAGE = "Microsoft.Storage/storageAccounts"
VNET = "Microsoft.Network/virtualNetworks"


def rule(path: str, normalization_type: NormalizationType, **params: object) -> NormalizationRule:
    return NormalizationRule(
        resource_type="*",
        path_pattern=path,
        normalization_type=normalization_type,
        params=dict(params),
    )


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_resource_type(self) -> None:
        r = NormalizationRule(VNET, "**", NormalizationType.EMPTY_EQUIVALENCE)

        assert r.matches(VNET, "dhcpOptions.dnsServers") is True
        assert r.matches(STORAGE, "dhcpOptions.dnsServers") is False

    def test_matches_glob_resource_type(self) -> None:
        r = NormalizationRule("Microsoft.Network/*", "sku.name", NormalizationType.CASE_INSENSITIVE)

        assert r.matches("Microsoft.Network/publicIPAddresses", "sku.name") is True
        assert r.matches(STORAGE, "sku.name") is False

    def test_matches_path_pattern(self) -> None:
        r = rule("**.enabled", NormalizationType.BOOLEAN_NORMALIZE)

        assert r.matches(STORAGE, "enabled") is True
        assert r.matches(STORAGE, "encryption.services.blob.enabled") is True
        assert r.matches(STORAGE, "enabledProtocols") is False

    def test_matches_case_insensitive(self) -> None:
        r = NormalizationRule("microsoft.network/virtualnetworks", "addressSpace.addressPrefixes",
                              NormalizationType.ARRAY_UNORDERED)

        assert r.matches("Microsoft.Network/VirtualNetworks", "AddressSpace.AddressPrefixes") is True


class TestNumbers:
    """Tests for numeric helpers."""

    def test_is_number_excludes_bool(self) -> None:
        assert is_number(1) is True
        assert is_number(1.5) is True
        assert is_number(True) is False
        assert is_number("1") is False

    @pytest.mark.parametrize(
        "text,expected",
        [("443", 443), (" 7 ", 7), ("3.5", 3.5), ("1e3", 1000.0), ("", None), ("abc", None),
         ("nan", None), ("inf", None)],
    )
    def test_parse_number(self, text: str, expected: int | float | None) -> None:
        assert parse_number(text) == expected


class TestDiffNormalizer:
    """Tests for DiffNormalizer with the default rules."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer(enable_default_rules=True)

    def test_identical_values(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent({"a": [1, 2]}, {"a": [1, 2]}, STORAGE, "x") == (True, None)

    def test_numbers_compare_numerically_everywhere(self, normalizer: DiffNormalizer) -> None:
        """No rule is needed for 1 == 1.0 == "1"."""
        assert normalizer.are_equivalent(1, 1.0, STORAGE, "anything")[0] is True
        assert normalizer.are_equivalent(1, "1", STORAGE, "anything")[0] is True
        assert normalizer.are_equivalent("30", 30.0, STORAGE, "anything")[0] is True
        assert normalizer.are_equivalent(1, "one", STORAGE, "anything")[0] is False

    def test_bool_is_not_a_number(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(1, True, STORAGE, "count")[0] is False

    def test_strings_case_sensitive_by_default(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("Hot", "hot", STORAGE, "accessTier") == (False, None)

    def test_empty_list_vs_none(self, normalizer: DiffNormalizer) -> None:
        is_equiv, reason = normalizer.are_equivalent([], None, STORAGE, "networkAcls.ipRules")

        assert is_equiv is True
        assert reason == "Empty IP rule list equals null"

    def test_boolean_string_vs_bool(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("True", True, STORAGE, "supportsHttpsTrafficOnly")[0] is True
        assert normalizer.are_equivalent("false", 0, STORAGE, "allowSharedKeyAccess")[0] is True

    def test_location_case(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("westeurope", "WestEurope", STORAGE, "location")[0] is True

    def test_sku_case(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("Standard_LRS", "standard_lrs", STORAGE, "sku.name")[0]

    def test_sku_block_case(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(
            {"name": "Standard_LRS"}, {"name": "STANDARD_LRS"}, STORAGE, "sku"
        )[0] is True

    def test_url_trailing_slash(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(
            "https://contoso.vault.azure.net/", "HTTPS://contoso.vault.azure.net",
            "Microsoft.KeyVault/vaults", "vaultUri",
        )[0] is True

    def test_unordered_address_prefixes(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(
            ["10.0.0.0/16", "10.1.0.0/16"], ["10.1.0.0/16", "10.0.0.0/16"],
            VNET, "addressSpace.addressPrefixes",
        )[0] is True

    def test_different_values(self, normalizer: DiffNormalizer) -> None:
        is_equiv, reason = normalizer.are_equivalent(
            ["10.0.0.0/16"], ["10.0.0.0/24"], VNET, "addressSpace.addressPrefixes"
        )

        assert is_equiv is False
        assert reason is None

    def test_dict_key_sets_must_match(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent({"a": 1}, {"a": 1, "b": 2}, STORAGE, "x")[0] is False

    def test_type_mismatch(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent("a", ["a"], STORAGE, "x")[0] is False
        assert normalizer.are_equivalent({"a": 1}, [1], STORAGE, "x")[0] is False

    def test_default_for(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.default_for(STORAGE, "supportsHttpsTrafficOnly") == (True, True)
        assert normalizer.default_for(VNET, "enableDdosProtection") == (True, False)
        assert normalizer.default_for(STORAGE, "minimumTlsVersion") == (False, None)

    def test_none_takes_default(self, normalizer: DiffNormalizer) -> None:
        assert normalizer.are_equivalent(False, None, VNET, "enableDdosProtection")[0] is True


class TestDiffNormalizerCustomRules:
    """Tests for individual normalization types."""

    def test_whitespace(self) -> None:
        normalizer = DiffNormalizer(
            rules=[rule("**.script", NormalizationType.WHITESPACE_NORMALIZE)],
            enable_default_rules=False,
        )

        assert normalizer.normalize_value(
            "line1   a\r\nline2\rline3 ", "Microsoft.Automation/runbooks", "draft.script"
        ) == "line1 a\nline2\nline3"

    def test_url_keeps_non_http_values(self) -> None:
        normalizer = DiffNormalizer(
            rules=[rule("endpoint", NormalizationType.URL_NORMALIZE)], enable_default_rules=False
        )

        assert normalizer.normalize_value("sb://ns/", STORAGE, "endpoint") == "sb://ns/"

    def test_array_of_dicts_unordered(self) -> None:
        normalizer = DiffNormalizer(
            rules=[rule("rules", NormalizationType.ARRAY_UNORDERED)], enable_default_rules=False
        )

        first = normalizer.normalize_value([{"n": "b"}, {"n": "a"}], STORAGE, "rules")
        second = normalizer.normalize_value([{"n": "a"}, {"n": "b"}], STORAGE, "rules")

        assert first == second

    def test_custom_default(self) -> None:
        normalizer = DiffNormalizer(
            rules=[rule("accessTier", NormalizationType.DEFAULT_VALUE, default="Hot")],
            enable_default_rules=False,
        )

        assert normalizer.default_for(STORAGE, "accessTier") == (True, "Hot")

    def test_no_defaults(self) -> None:
        normalizer = DiffNormalizer(enable_default_rules=False)

        assert normalizer.rules == []
        assert normalizer.are_equivalent("westeurope", "WestEurope", STORAGE, "location")[0] is False


class TestNormalizationConfig:
    """Tests for NormalizationConfig."""

    def test_defaults(self) -> None:
        config = NormalizationConfig()

        assert config.rules == []
        assert config.enable_default_rules is True

    def test_from_yaml(self) -> None:
        config = NormalizationConfig.from_yaml(
            """
enableDefaultRules: false
rules:
  - resourceType: "Microsoft.Web/sites"
    path: "siteConfig.linuxFxVersion"
    type: case_insensitive
    reason: "Runtime stack names are case-insensitive"
  - path: "accessTier"
    type: default_value
    default: Hot
"""
        )

        assert config.enable_default_rules is False
        assert len(config.rules) == 2
        assert config.rules[0].normalization_type == NormalizationType.CASE_INSENSITIVE
        assert config.rules[1].resource_type == "*"
        assert config.rules[1].params == {"default": "Hot"}

    @pytest.mark.parametrize(
        "content,match",
        [
            ("rules: [unclosed", "Invalid YAML"),
            ("- a", "YAML object"),
            ("rules: {}", "must be a list"),
            ("rules:\n  - 42", "must be an object"),
            ("rules:\n  - type: case_insensitive", "'path' is required"),
            ("rules:\n  - path: a\n    type: shout", "'type' must be one of"),
        ],
    )
    def test_from_yaml_invalid(self, content: str, match: str) -> None:
        with pytest.raises(NormalizationError, match=match):
            NormalizationConfig.from_yaml(content)

    def test_from_env_empty(self, monkeypatch: pytest.MonkeyPatch) -> None:
        for var in ["ENABLE_DEFAULT_NORMALIZATION_RULES", "NORMALIZATION_RULES_FILE"]:
            monkeypatch.delenv(var, raising=False)

        config = NormalizationConfig.from_env()

        assert config.enable_default_rules is True
        assert config.rules == []

    def test_from_env_disable_defaults(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ENABLE_DEFAULT_NORMALIZATION_RULES", "false")
        monkeypatch.delenv("NORMALIZATION_RULES_FILE", raising=False)

        assert NormalizationConfig.from_env().enable_default_rules is False

    def test_from_env_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        rules_file = tmp_path / "normalization.yaml"
        rules_file.write_text("rules:\n  - path: kind\n    type: case_insensitive\n")
        monkeypatch.delenv("ENABLE_DEFAULT_NORMALIZATION_RULES", raising=False)
        monkeypatch.setenv("NORMALIZATION_RULES_FILE", str(rules_file))

        config = NormalizationConfig.from_env()

        assert config.enable_default_rules is True
        assert [r.path_pattern for r in config.rules] == ["kind"]

    def test_from_env_missing_file(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        monkeypatch.setenv("NORMALIZATION_RULES_FILE", str(tmp_path / "nope.yaml"))

        with pytest.raises(NormalizationError, match="Cannot read"):
            NormalizationConfig.from_env()


class TestDefaultNormalizationRules:
    """Tests for DEFAULT_NORMALIZATION_RULES."""

    @pytest.mark.parametrize("normalization_type", list(NormalizationType))
    def test_covers_every_type_but_whitespace(self, normalization_type: NormalizationType) -> None:
        present = {r.normalization_type for r in DEFAULT_NORMALIZATION_RULES}

        if normalization_type == NormalizationType.WHITESPACE_NORMALIZE:
            assert normalization_type not in present
        else:
            assert normalization_type in present

    def test_every_rule_has_reason(self) -> None:
        assert all(r.reason for r in DEFAULT_NORMALIZATION_RULES)
