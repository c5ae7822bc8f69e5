"""Declared property paths that are never diffed.

Some properties are written by ARM, not by the IaC: provisioning state,
etags, timestamps, endpoints, identity IDs assigned after creation. When a
definition declares one of them anyway (exported templates often do), the
comparison would report drift on every scan. An ignore rule names such paths,
optionally scoped to a resource type, and the diff engine skips them.

Path patterns are dotted property paths where ``*`` matches one segment (or
part of one) and ``**`` matches any number of segments.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

from .patterns import path_matches, resource_type_matches

logger = logging.getLogger(__name__)


class IgnoreRulesError(Exception):
    """Raised when ignore rules configuration is invalid."""

    pass


@dataclass(frozen=True)
class IgnoreRule:
    """Property paths excluded from diffing for matching resource types.

    Attributes:
        resource_type: Resource type glob, case-insensitive ("*" for all).
        paths: Path patterns, e.g. "provisioningState" or "primaryEndpoints.*".
        reason: Logged whenever the rule skips a path.
    """

    resource_type: str
    paths: tuple[str, ...]
    reason: str = ""

    def matches_resource(self, resource_type: str) -> bool:
        return resource_type_matches(resource_type, self.resource_type)

    def should_ignore_path(self, path: str) -> bool:
        return any(path_matches(path, pattern) for pattern in self.paths)


def _ignore(reason: str, *paths: str, resource_type: str = "*") -> IgnoreRule:
    return IgnoreRule(resource_type=resource_type, paths=paths, reason=reason)


DEFAULT_IGNORE_RULES: list[IgnoreRule] = [
    _ignore(
        "Read-only properties maintained by ARM",
        "**.provisioningState",
        "**.resourceGuid",
        "**.etag",
        "creationTime",
        "createdTime",
        "changedTime",
        "lastModifiedTime",
    ),
    _ignore(
        "Storage endpoints and replication status are assigned by the platform",
        "primaryEndpoints",
        "primaryEndpoints.*",
        "secondaryEndpoints",
        "secondaryEndpoints.*",
        "statusOfPrimary",
        "statusOfSecondary",
        "primaryLocation",
        "secondaryLocation",
        resource_type="Microsoft.Storage/storageAccounts",
    ),
    _ignore(
        "Identity IDs are assigned after creation",
        "principalId",
        "clientId",
        "tenantId",
        resource_type="Microsoft.ManagedIdentity/userAssignedIdentities",
    ),
    _ignore(
        "System-assigned identity IDs are assigned after creation",
        "identity.principalId",
        "identity.tenantId",
    ),
]


def _env_flag(name: str, default: bool = True) -> bool:
    return os.environ.get(name, "true" if default else "false").lower() in ("true", "1", "yes")


@dataclass
class IgnoreRulesConfig:
    """Custom ignore rules plus the switches for defaults and audit logging."""

    rules: list[IgnoreRule] = field(default_factory=list)
    enable_default_rules: bool = True
    log_ignored_changes: bool = True

    def get_effective_rules(self) -> list[IgnoreRule]:
        defaults = DEFAULT_IGNORE_RULES if self.enable_default_rules else []
        return [*defaults, *self.rules]

    @classmethod
    def from_yaml(cls, yaml_content: str) -> IgnoreRulesConfig:
        """Parse ignore rules from YAML content.

        Expected format:
        ```yaml
        enableDefaultRules: true
        logIgnoredChanges: true
        rules:
          - resourceType: "Microsoft.Web/sites"
            paths:
              - "siteConfig.appSettings"
              - "tags.hidden-*"
            reason: "App settings are managed by the release pipeline"
        ```

        Raises:
            IgnoreRulesError: If YAML is invalid or malformed.
        """
        try:
            data = yaml.safe_load(yaml_content)
        except yaml.YAMLError as e:
            raise IgnoreRulesError(f"Invalid YAML in ignore rules: {e}") from e

        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise IgnoreRulesError("Ignore rules must be a YAML object")

        raw_rules = data.get("rules", [])
        if not isinstance(raw_rules, list):
            raise IgnoreRulesError("'rules' must be a list")

        return cls(
            rules=[cls._parse_rule(i, rule_data) for i, rule_data in enumerate(raw_rules)],
            enable_default_rules=bool(data.get("enableDefaultRules", True)),
            log_ignored_changes=bool(data.get("logIgnoredChanges", True)),
        )

    @staticmethod
    def _parse_rule(index: int, rule_data: Any) -> IgnoreRule:
        if not isinstance(rule_data, dict):
            raise IgnoreRulesError(f"Rule {index} must be an object")

        paths = rule_data.get("paths", [])
        if not isinstance(paths, list):
            raise IgnoreRulesError(f"Rule {index}: 'paths' must be a list")
        if not paths:
            raise IgnoreRulesError(f"Rule {index}: 'paths' cannot be empty")
        if not all(isinstance(p, str) for p in paths):
            raise IgnoreRulesError(f"Rule {index}: paths must be strings")

        return IgnoreRule(
            resource_type=str(rule_data.get("resourceType", "*")),
            paths=tuple(paths),
            reason=str(rule_data.get("reason", "")),
        )

    @classmethod
    def from_file(cls, path: str) -> IgnoreRulesConfig:
        """Load ignore rules from a YAML file.

        Raises:
            IgnoreRulesError: If file cannot be read or parsed.
        """
        try:
            with open(path, encoding="utf-8") as f:
                content = f.read()
        except OSError as e:
            raise IgnoreRulesError(f"Cannot read ignore rules file: {e}") from e

        return cls.from_yaml(content)

    @classmethod
    def from_env(cls) -> IgnoreRulesConfig:
        """Load ignore rules from environment.

        Environment Variables:
            IGNORE_RULES_FILE: Path to YAML file with rules (optional)
            ENABLE_DEFAULT_IGNORE_RULES: If "false", disable default rules
            LOG_IGNORED_CHANGES: If "false", don't log ignored paths

        Unlike classification rules, a broken rules file is not fatal: the
        worker keeps the defaults and logs a warning.
        """
        rules: list[IgnoreRule] = []
        rules_file = os.environ.get("IGNORE_RULES_FILE")
        if rules_file:
            try:
                rules = cls.from_file(rules_file).rules
            except IgnoreRulesError as e:
                logger.warning(
                    "Failed to load ignore rules file, using defaults",
                    extra={"path": rules_file, "error": str(e)},
                )

        return cls(
            rules=rules,
            enable_default_rules=_env_flag("ENABLE_DEFAULT_IGNORE_RULES"),
            log_ignored_changes=_env_flag("LOG_IGNORED_CHANGES"),
        )


class IgnoreRulesEvaluator:
    """Answers whether the diff engine should skip a declared property path."""

    def __init__(self, config: IgnoreRulesConfig | None = None) -> None:
        self._config = config or IgnoreRulesConfig()
        self._rules = self._config.get_effective_rules()
        self._by_type: dict[str, list[IgnoreRule]] = {}

    def _rules_for(self, resource_type: str) -> list[IgnoreRule]:
        key = resource_type.lower()
        rules = self._by_type.get(key)
        if rules is None:
            rules = [r for r in self._rules if r.matches_resource(resource_type)]
            self._by_type[key] = rules
        return rules

    def should_ignore_change(
        self,
        resource_type: str,
        change_path: str,
    ) -> tuple[bool, str | None]:
        """Check a dotted property path against the rules for its resource type.

        Returns:
            Tuple of (should_ignore, reason).
        """
        rule = next(
            (r for r in self._rules_for(resource_type) if r.should_ignore_path(change_path)),
            None,
        )
        if rule is None:
            return False, None

        if self._config.log_ignored_changes:
            logger.debug(
                "Ignoring property per rule",
                extra={
                    "resource_type": resource_type,
                    "change_path": change_path,
                    "reason": rule.reason,
                },
            )
        return True, rule.reason
