"""Resource diff engine: expected IaC definition vs observed Azure state.

The engine is pure: no I/O, no clock, no randomness. Identical inputs always
produce byte-identical, identically ordered findings, which is what makes
persisted findings reproducible and idempotent.

DIRECTIONAL COMPARISON:
Only properties declared in the expected definition are checked. Properties
that exist solely on the observed resource are never reported, because ARM
fills in many computed and defaulted properties the IaC never mentions.
Observed resources with no expected counterpart are likewise not reported
unless unmanaged-resource reporting is explicitly enabled.
"""

from __future__ import annotations

import json
from collections.abc import Iterator, Mapping, Sequence
from typing import Any

from .classifier import Classifier
from .diff_normalizer import DiffNormalizer, is_number
from .domain import (
    Category,
    DriftAnalysisResult,
    DriftFinding,
    MismatchKind,
    ObservedResource,
    Severity,
)
from .ignore_rules import IgnoreRulesEvaluator
from .models import ExpectedResource

EXISTENCE_PROPERTY = "<existence>"
MISSING_VALUE = "<missing>"


def canonical_string(value: Any) -> str:
    """Render a property value as a stable display string.

    Strings are verbatim, null is "null", booleans are "true"/"false",
    integral floats drop the fraction and containers become compact JSON
    with sorted keys.
    """
    if value is None:
        return "null"
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if is_number(value):
        if isinstance(value, float) and value.is_integer():
            return str(int(value))
        return str(value)
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


PropertyPath = tuple[str, ...]


def render_path(path: PropertyPath) -> str:
    """Dotted display form of a property path, as used by findings and rules."""
    return ".".join(path)


def flatten_properties(
    properties: Mapping[str, Any],
    prefix: PropertyPath = (),
) -> Iterator[tuple[PropertyPath, Any]]:
    """Yield (key path, leaf value) pairs.

    Non-empty mappings are descended into. Lists, scalars and empty
    mappings are leaves. Keys are kept whole, so tag names such as
    ``kubernetes.io/cluster`` stay a single segment.
    """
    for key, value in properties.items():
        path = (*prefix, str(key))
        if isinstance(value, Mapping) and value:
            yield from flatten_properties(value, path)
        else:
            yield path, value


def lookup_path(properties: Mapping[str, Any], path: PropertyPath) -> tuple[bool, Any]:
    """Walk a key path through nested mappings.

    Key lookup is exact first, then case-insensitive, because ARM property
    names are case-insensitive.

    Returns:
        Tuple of (found, value).
    """
    current: Any = properties
    for segment in path:
        if not isinstance(current, Mapping):
            return False, None
        if segment in current:
            current = current[segment]
            continue
        lowered = segment.lower()
        for key, value in current.items():
            if str(key).lower() == lowered:
                current = value
                break
        else:
            return False, None
    return True, current


def _observed_view(observed: ObservedResource) -> Mapping[str, Any]:
    """Observed properties plus the top-level tags and location, when not already present."""
    view = dict(observed.properties)
    if "tags" not in view and observed.tags:
        view["tags"] = observed.tags
    if "location" not in view and observed.location:
        view["location"] = observed.location
    return view


def expected_resource_id(expected: ExpectedResource) -> str:
    """Placeholder ID for a declared resource that has no live counterpart."""
    return f"expected/{expected.type}/{expected.name}"


def match_observed(
    expected: ExpectedResource,
    observed: Sequence[ObservedResource],
) -> ObservedResource | None:
    """Find the live resource for a declared one (type and name, case-insensitive)."""
    expected_type = expected.type.lower()
    expected_name = expected.name.lower()
    for resource in observed:
        if resource.type.lower() == expected_type and resource.name.lower() == expected_name:
            return resource
    return None


class ResourceDiffEngine:
    """Compares expected resources against observed state and classifies drift."""

    def __init__(
        self,
        classifier: Classifier,
        normalizer: DiffNormalizer | None = None,
        ignore_rules: IgnoreRulesEvaluator | None = None,
        report_unmanaged_resources: bool = False,
    ) -> None:
        self._classifier = classifier
        self._normalizer = normalizer or DiffNormalizer()
        self._ignore_rules = ignore_rules or IgnoreRulesEvaluator()
        self._report_unmanaged = report_unmanaged_resources

    @property
    def classifier(self) -> Classifier:
        return self._classifier

    def diff_resource(
        self,
        expected: ExpectedResource,
        observed: ObservedResource | None,
    ) -> list[DriftFinding]:
        """Diff one expected resource against its observed state.

        Args:
            expected: Declared resource.
            observed: Live resource, or None if it does not exist.

        Returns:
            Findings ordered by property path (ascending, lexical).
        """
        if observed is None:
            return [self._missing_resource_finding(expected)]

        observed_view = _observed_view(observed)
        findings: list[DriftFinding] = []
        for key_path, expected_value in flatten_properties(expected.properties):
            path = render_path(key_path)
            ignored, _ = self._ignore_rules.should_ignore_change(expected.type, path)
            if ignored:
                continue

            found, actual_value = lookup_path(observed_view, key_path)
            if not found:
                has_default, default = self._normalizer.default_for(expected.type, path)
                if not has_default:
                    findings.append(
                        self._finding(
                            expected,
                            observed,
                            path,
                            expected_value,
                            MISSING_VALUE,
                            MismatchKind.MISSING_PROPERTY,
                        )
                    )
                    continue
                actual_value = default

            equivalent, _ = self._normalizer.are_equivalent(
                expected_value, actual_value, expected.type, path
            )
            if not equivalent:
                findings.append(
                    self._finding(
                        expected,
                        observed,
                        path,
                        expected_value,
                        canonical_string(actual_value),
                        MismatchKind.VALUE_MISMATCH,
                    )
                )

        findings.sort(key=lambda f: f.property)
        return findings

    def analyze(
        self,
        expected: Sequence[ExpectedResource],
        observed: Sequence[ObservedResource],
    ) -> DriftAnalysisResult:
        """Diff every expected resource and aggregate the findings.

        Findings are ordered by resource type, resource name (both
        case-insensitive) and property path.
        """
        findings: list[DriftFinding] = []
        matched_ids: set[str] = set()

        for resource in expected:
            live = match_observed(resource, observed)
            if live is not None:
                matched_ids.add(live.id.lower())
            findings.extend(self.diff_resource(resource, live))

        if self._report_unmanaged:
            for live in observed:
                if live.id.lower() not in matched_ids:
                    findings.append(self._unmanaged_resource_finding(live))

        findings.sort(key=lambda f: (f.resource_type.lower(), f.resource_name.lower(), f.property))
        return DriftAnalysisResult(findings=findings, resources_scanned=len(expected))

    def _finding(
        self,
        expected: ExpectedResource,
        observed: ObservedResource,
        path: str,
        expected_value: Any,
        actual_value: str,
        kind: MismatchKind,
    ) -> DriftFinding:
        classification = self._classifier.classify(expected.type, path, kind)
        return DriftFinding(
            resource_id=observed.id,
            resource_type=expected.type,
            resource_name=expected.name,
            property=path,
            expected_value=canonical_string(expected_value),
            actual_value=actual_value,
            severity=classification.severity,
            category=classification.category,
            description=classification.description,
            recommendation=classification.recommendation,
            mismatch_kind=kind,
        )

    def _missing_resource_finding(self, expected: ExpectedResource) -> DriftFinding:
        classification = self._classifier.classify(
            expected.type, EXISTENCE_PROPERTY, MismatchKind.MISSING_RESOURCE
        )
        return DriftFinding(
            resource_id=expected_resource_id(expected),
            resource_type=expected.type,
            resource_name=expected.name,
            property=EXISTENCE_PROPERTY,
            expected_value="exists",
            actual_value="missing",
            # Fixed regardless of rule overrides
            severity=Severity.CRITICAL,
            category=Category.COMPLIANCE,
            description=classification.description,
            recommendation=classification.recommendation,
            mismatch_kind=MismatchKind.MISSING_RESOURCE,
        )

    def _unmanaged_resource_finding(self, observed: ObservedResource) -> DriftFinding:
        classification = self._classifier.classify(
            observed.type, EXISTENCE_PROPERTY, MismatchKind.UNMANAGED_RESOURCE
        )
        return DriftFinding(
            resource_id=observed.id,
            resource_type=observed.type,
            resource_name=observed.name,
            property=EXISTENCE_PROPERTY,
            expected_value="absent",
            actual_value="exists",
            severity=classification.severity,
            category=classification.category,
            description=classification.description,
            recommendation=classification.recommendation,
            mismatch_kind=MismatchKind.UNMANAGED_RESOURCE,
        )
