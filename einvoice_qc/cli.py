"""
Command-line interface for the e-invoice compliance engine.

Provides the main commands:
- run: Run catalog and custom checks over a dataset JSON file
- search: Run pairwise search checks and list investigation flags
- trace: Build the requirement traceability matrix
- consistency: Check registry, rule and control integrity
"""

import json
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError

from .catalog import default_check_pack
from .config import logger
from .consistency import run_consistency_checks
from .context import DataContext, EngineInputError
from .coverage import build_traceability_matrix, compute_dataset_populations, readiness_from_matrix
from .custom_checks import run_search_checks
from .schemas import CustomCheck, DatasetType
from .validator import format_summary_text, run_compliance_checks


# Create Typer app
app = typer.Typer(
    name="einvoice-qc",
    help="E-Invoice Compliance Engine CLI",
    add_completion=False,
)


# ============================================================================
# Loaders
# ============================================================================

def load_dataset(path: Path) -> DataContext:
    """Load a {"headers": [...], "lines": [...], "buyers": [...]} JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    return DataContext.from_payload(payload)


def load_custom_checks(path: Optional[Path]) -> list[CustomCheck]:
    if path is None:
        return []
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)
    if not isinstance(payload, list):
        payload = [payload]
    return [CustomCheck.model_validate(item) for item in payload]


def _write_json(data: dict, path: Path) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def _fail(message: str) -> typer.Exit:
    typer.echo(f"Error: {message}", err=True)
    return typer.Exit(code=1)


# ============================================================================
# Commands
# ============================================================================

@app.command()
def run(
    input_file: Path = typer.Option(
        ...,
        "--input",
        "-i",
        help="Dataset JSON file with headers, lines and buyers",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
    custom_checks_file: Optional[Path] = typer.Option(
        None,
        "--custom-checks",
        "-c",
        help="JSON file with a list of custom check definitions",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    direction: Optional[DatasetType] = typer.Option(
        None,
        "--direction",
        "-d",
        help="Dataset direction (AR or AP); search checks only run for AP",
    ),
    report: Path = typer.Option(
        "compliance_report.json",
        "--report",
        "-r",
        help="Output report JSON file path",
    ),
    include_baseline: bool = typer.Option(
        False,
        "--include-baseline",
        help="Also run the legacy dataset baseline checks",
    ),
    fail_on_critical: bool = typer.Option(
        False,
        "--fail-on-critical",
        help="Exit with non-zero status if any Critical exception is raised",
    ),
) -> None:
    """
    Run the compliance check pack over a dataset.

    Runs the UC1 catalog (plus any custom checks), writes the exceptions,
    investigation flags and summary to a JSON report, and prints the summary.
    """
    typer.echo(f"Running compliance checks on: {input_file}")

    try:
        data = load_dataset(input_file)
        custom_checks = load_custom_checks(custom_checks_file)
        result = run_compliance_checks(
            data,
            catalog_checks=default_check_pack(include_baseline=include_baseline),
            custom_checks=custom_checks,
            dataset_type=direction,
        )
    except json.JSONDecodeError as e:
        raise _fail(f"Invalid JSON in input file: {e}")
    except (EngineInputError, ValidationError) as e:
        raise _fail(str(e))
    except Exception as e:
        logger.exception("Check run failed")
        raise _fail(f"Check run failed: {e}")

    _write_json(result.model_dump(mode="json"), report)

    typer.echo("\n" + format_summary_text(result.summary))
    typer.echo(f"\n[OK] Compliance report saved to: {report}")

    if result.exceptions:
        typer.echo("\nFirst exceptions:")
        for exc in result.exceptions[:5]:
            typer.echo(f"  [{exc.severity.value}] {exc.check_id}: {exc.message}")
        if len(result.exceptions) > 5:
            typer.echo(f"  ... and {len(result.exceptions) - 5} more")

    if fail_on_critical and result.summary.exceptions_by_severity.get("Critical", 0) > 0:
        raise typer.Exit(code=1)


@app.command()
def search(
    input_file: Path = typer.Option(
        ...,
        "--input",
        "-i",
        help="Dataset JSON file with headers, lines and buyers",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    checks_file: Path = typer.Option(
        ...,
        "--checks",
        "-c",
        help="JSON file with a list of search check definitions",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    direction: DatasetType = typer.Option(
        DatasetType.AP,
        "--direction",
        "-d",
        help="Dataset direction (AR or AP)",
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the flags to this JSON file",
    ),
) -> None:
    """Run pairwise search checks and list the investigation flags."""
    try:
        data = load_dataset(input_file)
        checks = load_custom_checks(checks_file)
        flags = run_search_checks(checks, data, direction)
    except json.JSONDecodeError as e:
        raise _fail(f"Invalid JSON in input file: {e}")
    except (EngineInputError, ValidationError) as e:
        raise _fail(str(e))
    except Exception as e:
        logger.exception("Search run failed")
        raise _fail(f"Search run failed: {e}")

    if output:
        _write_json({"flags": [flag.model_dump(mode="json") for flag in flags]}, output)
        typer.echo(f"[OK] {len(flags)} flag(s) saved to: {output}")

    if not flags:
        typer.echo("No investigation flags raised.")
        return

    typer.echo(f"\nInvestigation flags ({len(flags)}):")
    for flag in flags[:20]:
        typer.echo(f"  [{flag.confidence_score:3d}] {flag.invoice_number} ~ {flag.matched_invoice_number}: {flag.message}")
    if len(flags) > 20:
        typer.echo(f"  ... and {len(flags) - 20} more")


@app.command()
def trace(
    input_file: Optional[Path] = typer.Option(
        None,
        "--input",
        "-i",
        help="Dataset JSON file used for column population statistics",
        exists=True,
        dir_okay=False,
        resolve_path=True,
    ),
    output: Optional[Path] = typer.Option(
        None,
        "--output",
        "-o",
        help="Write the traceability matrix to this JSON file",
    ),
) -> None:
    """
    Build the requirement traceability matrix.

    Each requirement is classified as NOT_IN_TEMPLATE, NO_RULE, NO_CONTROL
    or COVERED; with an input dataset, column population is reported too.
    """
    try:
        populations = compute_dataset_populations(load_dataset(input_file)) if input_file else None
        result = build_traceability_matrix(populations=populations)
    except json.JSONDecodeError as e:
        raise _fail(f"Invalid JSON in input file: {e}")
    except EngineInputError as e:
        raise _fail(str(e))

    if output:
        _write_json(result.model_dump(mode="json"), output)
        typer.echo(f"[OK] Traceability matrix saved to: {output}")

    gaps = result.gaps
    typer.echo("=" * 50)
    typer.echo(f"TRACEABILITY ({result.spec_version})")
    typer.echo("=" * 50)
    typer.echo(f"Requirements:             {gaps.total_requirements} ({gaps.mandatory_requirements} mandatory)")
    typer.echo(f"Covered:                  {gaps.covered}")
    typer.echo(f"No control:               {gaps.no_control}")
    typer.echo(f"No rule:                  {gaps.no_rule}")
    typer.echo(f"Not in template:          {gaps.not_in_template}")
    if input_file:
        typer.echo(f"Mandatory low population: {gaps.mandatory_low_population}")
        readiness = readiness_from_matrix(result)
        typer.echo(f"\nReady to run: {'yes' if readiness.can_run else 'no'}")
        for reason in readiness.reasons:
            typer.echo(f"  - {reason.message} ({reason.action})")


@app.command()
def consistency(
    fail_on_error: bool = typer.Option(
        True,
        "--fail-on-error/--no-fail-on-error",
        help="Exit with non-zero status when a blocking issue is found",
    ),
) -> None:
    """Check that requirements, rules and controls reference each other correctly."""
    report = run_consistency_checks()

    typer.echo(f"Consistency checks: {report.passed} passed, {report.failed} failed, {len(report.issues)} issue(s)")
    for issue in report.issues:
        typer.echo(f"  [{issue.level.upper()}] {issue.category}: {issue.message}")
        for affected in issue.affected_ids[:10]:
            typer.echo(f"      - {affected}")

    if fail_on_error and report.blocks_export:
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from . import __version__
    typer.echo(f"E-Invoice Compliance Engine v{__version__}")


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
