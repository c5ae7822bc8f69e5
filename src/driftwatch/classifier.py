"""Severity and category classification of drift findings.

The classifier is a static, versioned rule table. Rules are data, so a new
resource type is supported by adding rows (in code or in a YAML rules file)
without touching the diff algorithm.

RULE PRECEDENCE:
1. Property-level: specific resource type AND specific path pattern
2. Resource-type-level: specific resource type, any path ("**")
3. Global: any resource type ("*")

Within a tier a rule naming the mismatch kind beats a kind-agnostic rule,
otherwise the first matching rule wins. Kind-agnostic rules only cover
property mismatches. Resource-level kinds (missing_resource,
unmanaged_resource) only match rules that name them.

Unmatched combinations fall back to Medium / configuration.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import yaml

from .domain import Category, MismatchKind, Severity
from .errors import ClassifierConfigurationError
from .patterns import path_matches, resource_type_matches

logger = logging.getLogger(__name__)

RULE_TABLE_VERSION = "2024.2"

FALLBACK_SEVERITY = Severity.MEDIUM
FALLBACK_CATEGORY = Category.CONFIGURATION

_RESOURCE_LEVEL_KINDS = frozenset({MismatchKind.MISSING_RESOURCE, MismatchKind.UNMANAGED_RESOURCE})

_GENERIC_DESCRIPTIONS: dict[MismatchKind, str] = {
    MismatchKind.MISSING_RESOURCE: "{resource_type} is declared in IaC but does not exist in Azure",
    MismatchKind.MISSING_PROPERTY: "Property '{property}' is declared in IaC but not set on the deployed resource",
    MismatchKind.VALUE_MISMATCH: "Property '{property}' differs from the value declared in IaC",
    MismatchKind.UNMANAGED_RESOURCE: "{resource_type} exists in Azure but is not declared in IaC",
}
_GENERIC_RECOMMENDATION = (
    "Review the change and either update the IaC definition or redeploy the pipeline "
    "to restore the declared state."
)


class RuleTier(int, Enum):
    """Rule precedence tier. Lower value wins."""

    PROPERTY = 0
    RESOURCE_TYPE = 1
    GLOBAL = 2


@dataclass(frozen=True)
class ClassificationRule:
    """One row of the classification table.

    Attributes:
        severity: Severity assigned on match
        category: Category assigned on match
        resource_type: Resource type pattern ("*" for global rules)
        path_pattern: Property path pattern ("**" for any path)
        mismatch_kind: Restrict the rule to one mismatch kind (None for any property mismatch)
        description: Template with {resource_type}, {property} and {kind} placeholders
        recommendation: Template with the same placeholders
    """

    severity: Severity
    category: Category
    resource_type: str = "*"
    path_pattern: str = "**"
    mismatch_kind: MismatchKind | None = None
    description: str = ""
    recommendation: str = ""

    @property
    def tier(self) -> RuleTier:
        if self.resource_type == "*":
            return RuleTier.GLOBAL
        if self.path_pattern == "**":
            return RuleTier.RESOURCE_TYPE
        return RuleTier.PROPERTY

    def matches(self, resource_type: str, path: str, kind: MismatchKind) -> bool:
        if self.mismatch_kind is None:
            if kind in _RESOURCE_LEVEL_KINDS:
                return False
        elif self.mismatch_kind != kind:
            return False
        if not resource_type_matches(resource_type, self.resource_type):
            return False
        return self.path_pattern == "**" or path_matches(path, self.path_pattern)


@dataclass(frozen=True)
class Classification:
    """Outcome of classifying one mismatch."""

    severity: Severity
    category: Category
    description: str
    recommendation: str
    tier: str = "fallback"


def _rule(
    severity: Severity,
    category: Category,
    path: str = "**",
    resource_type: str = "*",
    kind: MismatchKind | None = None,
    description: str = "",
    recommendation: str = "",
) -> ClassificationRule:
    return ClassificationRule(
        severity=severity,
        category=category,
        resource_type=resource_type,
        path_pattern=path,
        mismatch_kind=kind,
        description=description,
        recommendation=recommendation,
    )


_MISSING = MismatchKind.MISSING_PROPERTY
_SECURITY = Category.SECURITY

DEFAULT_CLASSIFICATION_RULES: list[ClassificationRule] = [
    # -------------------------------------------------------------------------
    # Property-level
    # -------------------------------------------------------------------------
    _rule(
        Severity.HIGH,
        Category.COST,
        path="sku.**",
        resource_type="Microsoft.Storage/storageAccounts",
        description="Storage redundancy (SKU) differs from the value declared in IaC",
        recommendation=(
            "Restore the declared replication SKU. Lower redundancy reduces durability, "
            "higher redundancy increases cost."
        ),
    ),
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        path="securityRules.**",
        resource_type="Microsoft.Network/networkSecurityGroups",
        description="Network security rules differ from IaC; inbound or outbound exposure may have changed",
        recommendation="Review the rule changes immediately and redeploy the declared rule set.",
    ),
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        path="enablePurgeProtection",
        resource_type="Microsoft.KeyVault/vaults",
        kind=_MISSING,
        description="Purge protection is declared but not enabled on the key vault",
        recommendation="Enable purge protection; it cannot be disabled once set.",
    ),
    # -------------------------------------------------------------------------
    # Resource-type-level
    # -------------------------------------------------------------------------
    _rule(
        Severity.HIGH,
        _SECURITY,
        resource_type="Microsoft.KeyVault/vaults",
        description="Key vault property '{property}' differs from IaC",
        recommendation="Key vault configuration is security-sensitive. Review and redeploy.",
    ),
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        resource_type="Microsoft.Authorization/roleAssignments",
        description="Role assignment property '{property}' differs from IaC",
        recommendation="Verify the principal and scope of the assignment and redeploy.",
    ),
    _rule(
        Severity.MEDIUM,
        Category.COMPLIANCE,
        resource_type="Microsoft.Insights/diagnosticSettings",
        description="Diagnostic setting '{property}' differs from IaC",
        recommendation="Restore the declared diagnostic settings to keep audit coverage.",
    ),
    # -------------------------------------------------------------------------
    # Global: resource-level findings
    # -------------------------------------------------------------------------
    _rule(
        Severity.CRITICAL,
        Category.COMPLIANCE,
        kind=MismatchKind.MISSING_RESOURCE,
        description="{resource_type} is declared in IaC but does not exist in Azure",
        recommendation=(
            "Redeploy the pipeline to recreate the resource, or remove it from the IaC "
            "definition if it was deleted on purpose."
        ),
    ),
    _rule(
        Severity.MEDIUM,
        Category.CONFIGURATION,
        kind=MismatchKind.UNMANAGED_RESOURCE,
        description="{resource_type} exists in Azure but is not declared in IaC",
        recommendation="Import the resource into IaC or delete it if it is not needed.",
    ),
    # -------------------------------------------------------------------------
    # Global: security-relevant properties
    # -------------------------------------------------------------------------
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        path="**.encryption*.**",
        kind=_MISSING,
        description="Encryption setting '{property}' is declared but not configured",
        recommendation="Enable the declared encryption settings immediately.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.encryption*.**",
        description="Encryption setting '{property}' differs from IaC",
        recommendation="Review encryption settings and redeploy the declared configuration.",
    ),
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        path="**.networkAcls.**",
        kind=_MISSING,
        description="Network ACL '{property}' is declared but not configured",
        recommendation="Restore the declared network restrictions; the resource may be publicly reachable.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.networkAcls.**",
        description="Network ACL '{property}' differs from IaC",
        recommendation="Review network restrictions and redeploy the declared configuration.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.networkRule*.**",
        description="Network rule '{property}' differs from IaC",
        recommendation="Review network restrictions and redeploy the declared configuration.",
    ),
    _rule(
        Severity.CRITICAL,
        _SECURITY,
        path="**.accessPolicies.**",
        description="Access policy '{property}' differs from IaC",
        recommendation="Verify who gained or lost access and redeploy the declared policies.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.*TlsVersion",
        description="Minimum TLS version '{property}' differs from IaC",
        recommendation="Restore the declared minimum TLS version.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.publicNetworkAccess",
        description="Public network access differs from IaC",
        recommendation="Disable public network access unless explicitly declared.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.allow*PublicAccess",
        description="Public access setting '{property}' differs from IaC",
        recommendation="Disable anonymous public access unless explicitly declared.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.supportsHttpsTrafficOnly",
        description="HTTPS-only enforcement differs from IaC",
        recommendation="Require HTTPS traffic only.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.httpsOnly",
        description="HTTPS-only enforcement differs from IaC",
        recommendation="Require HTTPS traffic only.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="identity.**",
        description="Managed identity '{property}' differs from IaC",
        recommendation="Restore the declared identity; dependent role assignments may break.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.firewallRules.**",
        description="Firewall rule '{property}' differs from IaC",
        recommendation="Review firewall changes and redeploy the declared rules.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.ipRules.**",
        description="IP rule '{property}' differs from IaC",
        recommendation="Review IP allow-list changes and redeploy the declared rules.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.securityRules.**",
        description="Security rule '{property}' differs from IaC",
        recommendation="Review the rule changes and redeploy the declared rule set.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.enable*Protection",
        description="Protection setting '{property}' differs from IaC",
        recommendation="Restore the declared protection setting.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.enableSoftDelete",
        description="Soft delete setting differs from IaC",
        recommendation="Re-enable soft delete to keep deleted data recoverable.",
    ),
    _rule(
        Severity.HIGH,
        _SECURITY,
        path="**.enableRbacAuthorization",
        description="RBAC authorization mode differs from IaC",
        recommendation="Restore the declared authorization model.",
    ),
    # -------------------------------------------------------------------------
    # Global: capacity, performance and cost
    # -------------------------------------------------------------------------
    _rule(
        Severity.HIGH,
        Category.COST,
        path="**.capacity",
        description="Capacity '{property}' differs from IaC",
        recommendation="Restore the declared capacity; the change affects cost.",
    ),
    _rule(
        Severity.HIGH,
        Category.PERFORMANCE,
        path="**.*size",
        description="Size '{property}' differs from IaC",
        recommendation="Restore the declared size; the change affects performance and cost.",
    ),
    _rule(
        Severity.HIGH,
        Category.PERFORMANCE,
        path="**.tier",
        description="Tier '{property}' differs from IaC",
        recommendation="Restore the declared tier; the change affects performance and cost.",
    ),
    _rule(
        Severity.HIGH,
        Category.COMPLIANCE,
        path="**.replication*",
        description="Replication setting '{property}' differs from IaC",
        recommendation="Restore the declared replication to meet durability requirements.",
    ),
    _rule(
        Severity.MEDIUM,
        Category.COST,
        path="sku.**",
        description="SKU '{property}' differs from IaC",
        recommendation="Restore the declared SKU; the change affects cost and capabilities.",
    ),
    # -------------------------------------------------------------------------
    # Global: compliance
    # -------------------------------------------------------------------------
    _rule(
        Severity.MEDIUM,
        Category.COMPLIANCE,
        path="**.retention*.**",
        description="Retention setting '{property}' differs from IaC",
        recommendation="Restore the declared retention to meet audit requirements.",
    ),
    _rule(
        Severity.MEDIUM,
        Category.COMPLIANCE,
        path="**.diagnostic*.**",
        description="Diagnostic setting '{property}' differs from IaC",
        recommendation="Restore the declared diagnostics to keep audit coverage.",
    ),
    _rule(
        Severity.MEDIUM,
        Category.COMPLIANCE,
        path="location",
        description="Resource location differs from IaC",
        recommendation="Verify data residency requirements; resources cannot move regions in place.",
    ),
    # -------------------------------------------------------------------------
    # Global: cosmetic
    # -------------------------------------------------------------------------
    _rule(
        Severity.LOW,
        Category.CONFIGURATION,
        path="tags.**",
        description="Tag '{property}' differs from IaC",
        recommendation="Update the tag in IaC or redeploy to restore it.",
    ),
    _rule(
        Severity.LOW,
        Category.CONFIGURATION,
        path="**.metadata.**",
        description="Metadata '{property}' differs from IaC",
        recommendation="Update the metadata in IaC or redeploy to restore it.",
    ),
    _rule(
        Severity.LOW,
        Category.CONFIGURATION,
        path="**.description",
        description="Description differs from IaC",
        recommendation="Update the description in IaC or redeploy to restore it.",
    ),
    _rule(
        Severity.LOW,
        Category.CONFIGURATION,
        path="**.displayName",
        description="Display name differs from IaC",
        recommendation="Update the display name in IaC or redeploy to restore it.",
    ),
]


def _render(template: str, resource_type: str, prop: str, kind: MismatchKind) -> str:
    return template.format(resource_type=resource_type, property=prop, kind=kind.value)


def _validate_template(template: str, index: int) -> None:
    try:
        _render(template, "Microsoft.Example/things", "a.b", MismatchKind.VALUE_MISMATCH)
    except (KeyError, IndexError, ValueError) as e:
        raise ClassifierConfigurationError(
            f"Rule {index}: invalid template {template!r}: {e}"
        ) from e


class Classifier:
    """Maps (resource type, property path, mismatch kind) to a classification.

    Raises:
        ClassifierConfigurationError: If the effective rule table is empty or
            a rule is unusable. This is fatal: drift must never be silently
            left unclassified.
    """

    def __init__(
        self,
        rules: list[ClassificationRule] | None = None,
        enable_default_rules: bool = True,
        version: str = RULE_TABLE_VERSION,
    ) -> None:
        effective: list[ClassificationRule] = list(rules or [])
        if enable_default_rules:
            effective.extend(DEFAULT_CLASSIFICATION_RULES)

        if not effective:
            raise ClassifierConfigurationError("Classification rule table is empty")

        for i, rule in enumerate(effective):
            if rule.severity == Severity.NONE:
                raise ClassifierConfigurationError(f"Rule {i}: severity None is not assignable")
            _validate_template(rule.description, i)
            _validate_template(rule.recommendation, i)

        self._version = version
        # Stable sort keeps table order within each tier
        self._rules = sorted(effective, key=lambda r: r.tier)

    @property
    def version(self) -> str:
        return self._version

    @property
    def rules(self) -> list[ClassificationRule]:
        return list(self._rules)

    def classify(
        self,
        resource_type: str,
        property_path: str,
        mismatch_kind: MismatchKind,
    ) -> Classification:
        """Classify one mismatch. Never raises for unmapped combinations."""
        rule = self._find_rule(resource_type, property_path, mismatch_kind)
        if rule is None:
            return Classification(
                severity=FALLBACK_SEVERITY,
                category=FALLBACK_CATEGORY,
                description=_render(
                    _GENERIC_DESCRIPTIONS[mismatch_kind], resource_type, property_path, mismatch_kind
                ),
                recommendation=_GENERIC_RECOMMENDATION,
            )

        description = rule.description or _GENERIC_DESCRIPTIONS[mismatch_kind]
        recommendation = rule.recommendation or _GENERIC_RECOMMENDATION
        return Classification(
            severity=rule.severity,
            category=rule.category,
            description=_render(description, resource_type, property_path, mismatch_kind),
            recommendation=_render(recommendation, resource_type, property_path, mismatch_kind),
            tier=rule.tier.name.lower(),
        )

    def _find_rule(
        self,
        resource_type: str,
        path: str,
        kind: MismatchKind,
    ) -> ClassificationRule | None:
        for tier in RuleTier:
            generic: ClassificationRule | None = None
            for rule in self._rules:
                if rule.tier != tier or not rule.matches(resource_type, path, kind):
                    continue
                if rule.mismatch_kind is not None:
                    return rule
                if generic is None:
                    generic = rule
            if generic is not None:
                return generic
        return None

    def describe(self) -> list[dict[str, Any]]:
        """Rule table as plain dicts, in precedence order."""
        return [
            {
                "tier": rule.tier.name.lower(),
                "resourceType": rule.resource_type,
                "path": rule.path_pattern,
                "mismatchKind": rule.mismatch_kind.value if rule.mismatch_kind else "*",
                "severity": rule.severity.value,
                "category": rule.category.value,
            }
            for rule in self._rules
        ]


@dataclass
class ClassifierConfig:
    """Configuration for the classifier rule table.

    Attributes:
        rules: Extra rules, evaluated ahead of the defaults within each tier.
        enable_default_rules: Whether to include the built-in table.
        version: Version label of the extra rules.
    """

    rules: list[ClassificationRule] = field(default_factory=list)
    enable_default_rules: bool = True
    version: str | None = None

    @property
    def effective_version(self) -> str:
        if self.version and self.enable_default_rules:
            return f"{RULE_TABLE_VERSION}+{self.version}"
        return self.version or RULE_TABLE_VERSION

    def build(self) -> Classifier:
        return Classifier(
            rules=self.rules,
            enable_default_rules=self.enable_default_rules,
            version=self.effective_version,
        )

    @classmethod
    def from_yaml(cls, yaml_content: str) -> ClassifierConfig:
        """Parse classification rules from YAML content.

        Expected format:
        ```yaml
        version: "contoso-3"
        enableDefaultRules: true
        rules:
          - resourceType: "Microsoft.Web/sites"
            path: "httpsOnly"
            mismatchKind: missing_property
            severity: Critical
            category: security
            description: "HTTPS-only is not enforced on {resource_type}"
            recommendation: "Set httpsOnly to true."
        ```

        Raises:
            ClassifierConfigurationError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise ClassifierConfigurationError(f"Invalid YAML in classification rules: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ClassifierConfigurationError("Classification rules must be a YAML object")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise ClassifierConfigurationError("'rules' must be a list")

        rules = [cls._parse_rule(i, rule_data) for i, rule_data in enumerate(raw_rules)]
        version = data.get("version")
        return cls(
            rules=rules,
            enable_default_rules=bool(data.get("enableDefaultRules", True)),
            version=str(version) if version is not None else None,
        )

    @staticmethod
    def _parse_rule(index: int, rule_data: Any) -> ClassificationRule:
        if not isinstance(rule_data, dict):
            raise ClassifierConfigurationError(f"Rule {index} must be an object")

        try:
            severity = Severity.parse(str(rule_data.get("severity", "")))
            category = Category(str(rule_data.get("category", "")).lower())
            raw_kind = rule_data.get("mismatchKind")
            kind = MismatchKind(str(raw_kind).lower()) if raw_kind not in (None, "*") else None
        except ValueError as e:
            raise ClassifierConfigurationError(f"Rule {index}: {e}") from e

        return ClassificationRule(
            severity=severity,
            category=category,
            resource_type=str(rule_data.get("resourceType", "*")),
            path_pattern=str(rule_data.get("path", "**")),
            mismatch_kind=kind,
            description=str(rule_data.get("description", "")),
            recommendation=str(rule_data.get("recommendation", "")),
        )

    @classmethod
    def from_file(cls, path: str) -> ClassifierConfig:
        """Load classification rules from a YAML file.

        Raises:
            ClassifierConfigurationError: If file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise ClassifierConfigurationError(f"Cannot read classification rules file: {e}") from e

        return cls.from_yaml(content)

    @classmethod
    def from_env(cls) -> ClassifierConfig:
        """Load classifier configuration from environment.

        Environment Variables:
            CLASSIFICATION_RULES_FILE: Path to YAML file with extra rules (optional)

        Unlike ignore rules, a configured but unreadable rules file is fatal.
        """
        rules_file = os.environ.get("CLASSIFICATION_RULES_FILE")
        if not rules_file:
            return cls()

        config = cls.from_file(rules_file)
        logger.info(
            "Loaded classification rules",
            extra={"path": rules_file, "rules": len(config.rules), "version": config.version},
        )
        return config
