"""driftwatch CLI.

Usage:
    driftwatch worker                          # Run the queue worker
    driftwatch diff expected.yaml observed.json  # Offline drift diff
    driftwatch rules                           # Show the classification table
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
import yaml

from . import __version__
from .diff_engine import ResourceDiffEngine
from .diff_normalizer import NormalizationError
from .domain import DriftAnalysisResult, ObservedResource, Severity
from .errors import FatalError, MalformedDataError
from .iac_source import load_definitions_file
from .main import build_engine, run
from .resource_reader import observed_from_row

SEVERITY_COLORS: dict[Severity, str] = {
    Severity.CRITICAL: "red",
    Severity.HIGH: "red",
    Severity.MEDIUM: "yellow",
    Severity.LOW: "cyan",
    Severity.INFO: "white",
    Severity.NONE: "green",
}

# Exit code of `diff --fail-on` when drift at or above the threshold is found
DRIFT_EXIT_CODE = 4


def load_observed_file(path: Path) -> list[ObservedResource]:
    """Load observed resources from a YAML/JSON file.

    Accepts a list of Resource Graph rows, ``{"resources": [...]}`` or a raw
    Resource Graph response ``{"data": [...]}``.

    Raises:
        MalformedDataError: If the file is not a list of resource rows.
    """
    content = path.read_text(encoding="utf-8")
    try:
        raw: Any = json.loads(content) if path.suffix == ".json" else yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise MalformedDataError(f"Invalid observed resources in {path}: {e}") from e

    if isinstance(raw, dict):
        raw = raw.get("resources", raw.get("data"))
    if not isinstance(raw, list):
        raise MalformedDataError(f"Observed resources must be a list: {path}")
    return [observed_from_row(row) for row in raw]


def _build_engine(report_unmanaged: bool) -> ResourceDiffEngine:
    try:
        return build_engine(report_unmanaged)
    except (FatalError, NormalizationError) as e:
        raise click.ClickException(f"Invalid rule configuration: {e}") from e


def _print_table(result: DriftAnalysisResult) -> None:
    if not result.findings:
        click.secho(f"✓ {result.summary}", fg="green")
        return

    for finding in result.findings:
        color = SEVERITY_COLORS[finding.severity]
        click.secho(f"[{finding.severity.value:>8}] ", fg=color, nl=False)
        click.echo(f"{finding.resource_type}/{finding.resource_name}  {finding.property}")
        click.echo(f"           expected: {finding.expected_value}")
        click.echo(f"           actual:   {finding.actual_value}")
        click.echo(f"           {finding.category.value}: {finding.description}")

    click.echo()
    click.secho(result.summary, fg=SEVERITY_COLORS[result.overall_risk], bold=True)


@click.group()
@click.version_option(version=__version__, prog_name="driftwatch")
def cli() -> None:
    """driftwatch - Azure infrastructure drift analysis."""
    pass


@cli.command()
def worker() -> None:
    """Run the queue worker (configured through environment variables)."""
    run()


@cli.command()
@click.argument("expected", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("observed", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
@click.option("--report-unmanaged", is_flag=True, help="Report deployed resources absent from IaC")
@click.option(
    "--fail-on",
    type=click.Choice(["critical", "high", "medium", "low", "info"]),
    default=None,
    help=f"Exit with code {DRIFT_EXIT_CODE} if drift at or above this severity is found",
)
def diff(
    expected: Path,
    observed: Path,
    output_format: str,
    report_unmanaged: bool,
    fail_on: str | None,
) -> None:
    """Diff EXPECTED definitions against OBSERVED resources, offline."""
    try:
        definitions = load_definitions_file(expected)
        observed_resources = load_observed_file(observed)
    except (MalformedDataError, OSError) as e:
        raise click.ClickException(str(e)) from e

    engine = _build_engine(report_unmanaged)
    result = engine.analyze(definitions.resources, observed_resources)

    if output_format == "json":
        click.echo(
            json.dumps(
                {
                    "summary": result.to_summary_dict(),
                    "findings": [f.to_dict() for f in result.findings],
                },
                indent=2,
            )
        )
    else:
        _print_table(result)

    if fail_on and result.findings:
        threshold = Severity.parse(fail_on)
        if result.overall_risk.rank >= threshold.rank:
            sys.exit(DRIFT_EXIT_CODE)


@cli.command()
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
def rules(output_format: str) -> None:
    """Show the effective classification rule table."""
    engine = _build_engine(report_unmanaged=False)
    classifier = engine.classifier
    table = classifier.describe()

    if output_format == "json":
        click.echo(json.dumps({"version": classifier.version, "rules": table}, indent=2))
        return

    click.echo(f"Rule table version: {classifier.version}")
    click.echo()
    for rule in table:
        click.echo(
            f"  {rule['tier']:<9} {rule['severity']:<9} {rule['category']:<14} "
            f"{rule['resourceType']} :: {rule['path']} ({rule['mismatchKind']})"
        )
    click.echo(f"\n{len(table)} rules")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
