"""Semantic equality of declared and deployed property values.

ARM does not echo back what the IaC sent. Regions and SKUs come back in a
different case, empty lists come back as null, properties holding their
default are left out and some collections are reordered. A mismatch is only
drift when the two values still differ after every normalization rule that
matches the resource type and property path has been applied to both.

Numbers always compare numerically (1 == 1.0 == "1"). Strings compare
case-sensitively unless a rule marks the path case-insensitive.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .patterns import path_matches, resource_type_matches

logger = logging.getLogger(__name__)


class NormalizationError(Exception):
    """Raised when normalization rules configuration is invalid."""

    pass


class NormalizationType(str, Enum):
    """How a rule rewrites both values before they are compared.

    EMPTY_EQUIVALENCE: [], {} and "" become null
    BOOLEAN_NORMALIZE: "true"/"on"/1 and "false"/"off"/0 become booleans
    CASE_INSENSITIVE: strings, including those inside a block, are lowercased
    URL_NORMALIZE: http(s) URLs lose the trailing slash and scheme case
    WHITESPACE_NORMALIZE: line endings and runs of blanks are collapsed
    ARRAY_UNORDERED: lists compare as if sorted
    DEFAULT_VALUE: null takes the value ARM assumes for an absent property
    """

    EMPTY_EQUIVALENCE = "empty_equivalence"
    BOOLEAN_NORMALIZE = "boolean_normalize"
    CASE_INSENSITIVE = "case_insensitive"
    URL_NORMALIZE = "url_normalize"
    WHITESPACE_NORMALIZE = "whitespace_normalize"
    ARRAY_UNORDERED = "array_unordered"
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """One normalization applied to matching (resource type, path) pairs.

    Attributes:
        resource_type: Resource type glob, case-insensitive ("*" for all).
        path_pattern: Property path pattern (supports * and **).
        normalization_type: Rewrite to apply.
        params: Rewrite parameters ("default" for DEFAULT_VALUE).
        reason: Explanation reported when the rule made two values equal.
    """

    resource_type: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, resource_type: str, path: str) -> bool:
        if not resource_type_matches(resource_type, self.resource_type):
            return False
        return self.path_pattern == "**" or path_matches(path, self.path_pattern)


def _rule(
    path: str,
    normalization_type: NormalizationType,
    reason: str,
    resource_type: str = "*",
    **params: Any,
) -> NormalizationRule:
    return NormalizationRule(resource_type, path, normalization_type, params, reason)


_EMPTY = NormalizationType.EMPTY_EQUIVALENCE
_BOOL = NormalizationType.BOOLEAN_NORMALIZE
_CASE = NormalizationType.CASE_INSENSITIVE
_URL = NormalizationType.URL_NORMALIZE
_UNORDERED = NormalizationType.ARRAY_UNORDERED
_DEFAULT = NormalizationType.DEFAULT_VALUE

_VNET = "Microsoft.Network/virtualNetworks"

# Paths are relative to the property map of a resource, where sku, kind and
# identity are top-level entries.
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    _rule("**.ipRules", _EMPTY, "Empty IP rule list equals null"),
    _rule("**.virtualNetworkRules", _EMPTY, "Empty VNet rule list equals null"),
    _rule("**.dnsServers", _EMPTY, "Empty DNS server list means Azure-provided DNS"),
    *(
        _rule(f"**.{flag}", _BOOL, f"'{flag}' flags are sent as strings or booleans")
        for flag in ("enabled", "enable*", "supports*", "allow*")
    ),
    _rule("**.type", _CASE, "Resource type names are case-insensitive"),
    _rule("**.location", _CASE, "Azure region names are case-insensitive"),
    _rule("sku", _CASE, "ARM normalizes the case of SKU blocks"),
    _rule("**.sku.name", _CASE, "ARM normalizes the case of SKU names"),
    _rule("**.sku.tier", _CASE, "ARM normalizes the case of SKU tiers"),
    _rule("kind", _CASE, "Resource kinds are case-insensitive"),
    _rule("**.state", _CASE, "State enums are case-insensitive"),
    _rule("**.defaultAction", _CASE, "Network ACL actions are case-insensitive"),
    _rule("**.publicNetworkAccess", _CASE, "Enabled/Disabled enums are case-insensitive"),
    _rule("**.*Uri", _URL, "Endpoint URIs may differ by trailing slash"),
    _rule("**.*Url", _URL, "Endpoint URLs may differ by trailing slash"),
    _rule("enableDdosProtection", _DEFAULT, "DDoS protection is off unless set", _VNET, default=False),
    _rule("enableVmProtection", _DEFAULT, "VM protection is off unless set", _VNET, default=False),
    _rule(
        "supportsHttpsTrafficOnly",
        _DEFAULT,
        "Storage accounts enforce HTTPS unless set",
        "Microsoft.Storage/storageAccounts",
        default=True,
    ),
    _rule(
        "securityRules",
        _UNORDERED,
        "NSG rules are evaluated by priority, not by position",
        "Microsoft.Network/networkSecurityGroups",
    ),
    _rule("**.ipRules", _UNORDERED, "IP rule order carries no meaning"),
    _rule("**.addressPrefixes", _UNORDERED, "Address prefix order carries no meaning"),
]


def is_number(value: Any) -> bool:
    """True for int/float values. bool is not a number here."""
    return isinstance(value, int | float) and not isinstance(value, bool)


def parse_number(value: str) -> int | float | None:
    """Parse a numeric string, or return None when it is not one."""
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return None
    # "nan"/"inf" are not numeric property values
    if number != number or number in (float("inf"), float("-inf")):
        return None
    return number


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality where numbers and numeric strings compare by value."""
    if is_number(a) or is_number(b):
        left = parse_number(a) if isinstance(a, str) else a
        right = parse_number(b) if isinstance(b, str) else b
        return is_number(left) and is_number(right) and bool(left == right)

    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(values_equal(a[k], b[k]) for k in a)

    if isinstance(a, list | tuple) and isinstance(b, list | tuple):
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b, strict=True))

    if isinstance(a, dict | list | tuple) or isinstance(b, dict | list | tuple):
        return False
    return type(a) is type(b) and bool(a == b)


# =============================================================================
# Rewrites
# =============================================================================

_TRUE_WORDS = frozenset(("true", "yes", "on", "1"))
_FALSE_WORDS = frozenset(("false", "no", "off", "0"))


def _empty_to_none(value: Any, rule: NormalizationRule) -> Any:
    if isinstance(value, str | list | tuple | dict) and not value:
        return None
    return value


def _to_bool(value: Any, rule: NormalizationRule) -> Any:
    if isinstance(value, str):
        word = value.strip().lower()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    elif is_number(value) and value in (0, 1):
        return bool(value)
    return value


def _lowercase(value: Any, rule: NormalizationRule) -> Any:
    if isinstance(value, str):
        return value.lower()
    if isinstance(value, dict):
        # {"name": "Standard_LRS"} blocks under a case-insensitive path
        return {k: _lowercase(v, rule) for k, v in value.items()}
    return value


def _canonical_url(value: Any, rule: NormalizationRule) -> Any:
    if not isinstance(value, str):
        return value
    scheme, sep, rest = value.partition("://")
    if not sep or scheme.lower() not in ("http", "https"):
        return value
    return f"{scheme.lower()}://{rest.rstrip('/')}"


def _collapse_whitespace(value: Any, rule: NormalizationRule) -> Any:
    if not isinstance(value, str):
        return value
    lines = value.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(" ".join(line.split()) for line in lines).strip()


def _sort_key(item: Any) -> str:
    return json.dumps(item, sort_keys=True, default=str)


def _sorted_items(value: Any, rule: NormalizationRule) -> Any:
    if isinstance(value, list | tuple):
        return tuple(sorted(value, key=_sort_key))
    return value


def _fill_default(value: Any, rule: NormalizationRule) -> Any:
    return rule.params.get("default") if value is None else value


_REWRITES: dict[NormalizationType, Callable[[Any, NormalizationRule], Any]] = {
    NormalizationType.EMPTY_EQUIVALENCE: _empty_to_none,
    NormalizationType.BOOLEAN_NORMALIZE: _to_bool,
    NormalizationType.CASE_INSENSITIVE: _lowercase,
    NormalizationType.URL_NORMALIZE: _canonical_url,
    NormalizationType.WHITESPACE_NORMALIZE: _collapse_whitespace,
    NormalizationType.ARRAY_UNORDERED: _sorted_items,
    NormalizationType.DEFAULT_VALUE: _fill_default,
}


class DiffNormalizer:
    """Decides whether an expected and an observed value are the same value.

    Rules apply in table order: built-in rules first, then custom rules.
    """

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = [
            *(DEFAULT_NORMALIZATION_RULES if enable_default_rules else ()),
            *(rules or ()),
        ]
        self._matching: dict[tuple[str, str], list[NormalizationRule]] = {}

    @property
    def rules(self) -> list[NormalizationRule]:
        return list(self._rules)

    def rules_for(self, resource_type: str, path: str) -> list[NormalizationRule]:
        # Matching is case-insensitive, so is the cache key
        key = (resource_type.lower(), path.lower())
        matching = self._matching.get(key)
        if matching is None:
            matching = [r for r in self._rules if r.matches(resource_type, path)]
            self._matching[key] = matching
        return matching

    def normalize_value(self, value: Any, resource_type: str, path: str) -> Any:
        for rule in self.rules_for(resource_type, path):
            value = _REWRITES[rule.normalization_type](value, rule)
        return value

    def default_for(self, resource_type: str, path: str) -> tuple[bool, Any]:
        """Look up the value ARM assumes when a property is absent.

        Returns:
            Tuple of (has_default, default_value).
        """
        for rule in self.rules_for(resource_type, path):
            if rule.normalization_type == NormalizationType.DEFAULT_VALUE:
                return True, rule.params.get("default")
        return False, None

    def are_equivalent(
        self,
        expected: Any,
        actual: Any,
        resource_type: str,
        path: str,
    ) -> tuple[bool, str | None]:
        """Check if two values are semantically equivalent.

        Returns:
            Tuple of (are_equivalent, reason). The reason comes from the first
            rule that rewrote either value, and is None when the values were
            equal as given or are not equivalent at all.
        """
        if values_equal(expected, actual):
            return True, None

        reason: str | None = None
        for rule in self.rules_for(resource_type, path):
            rewrite = _REWRITES[rule.normalization_type]
            new_expected, new_actual = rewrite(expected, rule), rewrite(actual, rule)
            if reason is None and (new_expected != expected or new_actual != actual):
                reason = rule.reason or f"Normalized via {rule.normalization_type.value}"
            expected, actual = new_expected, new_actual

        if values_equal(expected, actual):
            return True, reason or "Values are equal after normalization"
        return False, None


@dataclass
class NormalizationConfig:
    """Custom normalization rules and the default-rules switch."""

    rules: list[NormalizationRule] = field(default_factory=list)
    enable_default_rules: bool = True

    @classmethod
    def from_yaml(cls, yaml_content: str) -> NormalizationConfig:
        """Parse normalization rules from YAML content.

        Expected format:
        ```yaml
        enableDefaultRules: true
        rules:
          - resourceType: "Microsoft.Web/sites"
            path: "siteConfig.linuxFxVersion"
            type: case_insensitive
            reason: "Runtime stack names are case-insensitive"
          - resourceType: "Microsoft.Storage/storageAccounts"
            path: "accessTier"
            type: default_value
            default: Hot
        ```

        Raises:
            NormalizationError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise NormalizationError(f"Invalid YAML in normalization rules: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise NormalizationError("Normalization rules must be a YAML object")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise NormalizationError("'rules' must be a list")

        return cls(
            rules=[cls._parse_rule(i, rule_data) for i, rule_data in enumerate(raw_rules)],
            enable_default_rules=bool(data.get("enableDefaultRules", True)),
        )

    @staticmethod
    def _parse_rule(index: int, rule_data: Any) -> NormalizationRule:
        if not isinstance(rule_data, dict):
            raise NormalizationError(f"Rule {index} must be an object")
        if not rule_data.get("path"):
            raise NormalizationError(f"Rule {index}: 'path' is required")

        try:
            normalization_type = NormalizationType(str(rule_data.get("type", "")).lower())
        except ValueError as e:
            valid = [t.value for t in NormalizationType]
            raise NormalizationError(f"Rule {index}: 'type' must be one of {valid}") from e

        return NormalizationRule(
            resource_type=str(rule_data.get("resourceType", "*")),
            path_pattern=str(rule_data["path"]),
            normalization_type=normalization_type,
            params={"default": rule_data["default"]} if "default" in rule_data else {},
            reason=str(rule_data.get("reason", "")),
        )

    @classmethod
    def from_env(cls) -> NormalizationConfig:
        """Load configuration from environment.

        Environment Variables:
            NORMALIZATION_RULES_FILE: Path to YAML file with extra rules (optional)
            ENABLE_DEFAULT_NORMALIZATION_RULES: If "false", disable defaults

        Raises:
            NormalizationError: If the rules file cannot be read or parsed.
        """
        enable_defaults = os.environ.get(
            "ENABLE_DEFAULT_NORMALIZATION_RULES", "true"
        ).lower() in ("true", "1", "yes")

        rules_file = os.environ.get("NORMALIZATION_RULES_FILE")
        if not rules_file:
            return cls(enable_default_rules=enable_defaults)

        try:
            with open(rules_file, encoding="utf-8") as f:
                file_config = cls.from_yaml(f.read())
        except OSError as e:
            raise NormalizationError(f"Cannot read normalization rules file: {e}") from e

        logger.info(
            "Loaded normalization rules",
            extra={"path": rules_file, "rules": len(file_config.rules)},
        )
        return cls(
            rules=file_config.rules,
            enable_default_rules=enable_defaults and file_config.enable_default_rules,
        )
