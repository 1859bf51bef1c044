"""Console rendering of stage reports."""
from __future__ import annotations

from typing import Any, Dict, List

import typer

from .models import StageReport, StepStatus


_STATUS_STYLE = {
    StepStatus.SUCCEEDED: ("OK", typer.colors.GREEN),
    StepStatus.ALREADY_PRESENT: ("EXISTS", typer.colors.CYAN),
    StepStatus.WARNING: ("WARN", typer.colors.YELLOW),
    StepStatus.FAILED: ("FAIL", typer.colors.RED),
}


def render_report(report: StageReport) -> None:
    typer.echo("")
    typer.secho(f"== {report.stage} summary ==", bold=True)
    for step in report.steps:
        tag, color = _STATUS_STYLE[step.status]
        line = f"  [{tag:>6}] {step.name}"
        if step.detail:
            line += f" - {step.detail}"
        typer.secho(line, fg=color)

    assignments: List[Dict[str, Any]] = report.details.get("assignments") or []
    if assignments:
        typer.echo("")
        typer.echo("Current app role assignments:")
        for assignment in assignments:
            typer.echo(f"  - {assignment['resource']}: {assignment['permission']}")

    grant_results = report.details.get("grant_results")
    if grant_results is not None:
        granted = sum(1 for result in grant_results if result.status is StepStatus.SUCCEEDED)
        existing = sum(1 for result in grant_results if result.status is StepStatus.ALREADY_PRESENT)
        failed = sum(1 for result in grant_results if result.status is StepStatus.FAILED)
        typer.echo("")
        typer.echo(f"Granted: {granted}  Already granted: {existing}  Failed: {failed}")

    typer.echo("")
    if report.aborted:
        typer.secho(f"Stage aborted: {report.aborted}", fg=typer.colors.RED, err=True)
    elif report.failures:
        typer.secho(
            f"Completed with {len(report.failures)} failure(s); see manual follow-up below.",
            fg=typer.colors.YELLOW,
        )
    elif report.warnings:
        typer.secho("Completed with warnings.", fg=typer.colors.YELLOW)
    else:
        typer.secho("Completed successfully.", fg=typer.colors.GREEN)

    if report.next_steps:
        typer.echo("")
        typer.echo("Next steps:")
        for index, step in enumerate(report.next_steps, start=1):
            typer.echo(f"  {index}. {step}")


__all__ = ["render_report"]
