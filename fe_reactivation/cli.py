"""Command line interface for the former-employee reactivation toolkit."""
from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer

from .config import AppConfig, ConfigurationError, load_config
from .connection import ServiceConnectionError, Services, connect_services
from .logging_setup import configure_logging
from .models import ReactivationRecord, RecordResult, RunSummary
from .reactivation import Reactivator
from .records import RecordsError, load_records, write_report

app = typer.Typer(help="Reactivate former-employee accounts in Microsoft 365.")

EXIT_PRECONDITION = 1
EXIT_FAILURES = 2


def _load_configuration(config_path: Optional[Path], verbose: bool = False) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_PRECONDITION)
    configure_logging(config.logging, verbose=verbose)
    return config


def _connect(config: AppConfig) -> Services:
    typer.echo("Connecting to Microsoft 365...")
    try:
        services = connect_services(config)
    except ServiceConnectionError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_PRECONDITION)
    if services.organization:
        typer.echo(f"Connected to tenant '{services.organization}'.")
    if not services.has_exchange:
        typer.echo("Exchange Online is not configured; mailbox steps will be skipped.")
    return services


def _echo_result(result: RecordResult) -> None:
    typer.echo(f"  {result.record.email}: {result.status}")
    for step in result.errors + result.warnings:
        typer.echo(f"    {step.step}: {step.message}")


def _echo_summary(summary: RunSummary) -> None:
    typer.echo("")
    typer.echo("Summary:")
    typer.echo(f"  Processed:           {summary.total}")
    typer.echo(f"  Succeeded:           {summary.succeeded}")
    typer.echo(f"    with warnings:     {summary.warnings}")
    typer.echo(f"  Failed:              {summary.failed}")
    typer.echo(f"    not found:         {summary.not_found}")
    typer.echo(f"  Skipped rows:        {summary.skipped_rows}")


def _default_report_path(config: AppConfig) -> Path:
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    return config.storage.report_dir / f"reactivation_{stamp}.csv"


def _save_report(path: Path, summary: RunSummary) -> bool:
    try:
        report_path = write_report(path, summary)
    except OSError as exc:
        typer.echo(f"Error: unable to write report {path}: {exc}", err=True)
        issued = [result for result in summary.results if result.temporary_password]
        if issued:
            typer.echo("Temporary passwords that were set:", err=True)
            for result in issued:
                typer.echo(f"  {result.record.email}: {result.temporary_password}", err=True)
        return False
    typer.echo(f"Report written to {report_path}")
    return True


def _execute(
    config: AppConfig,
    records: List[ReactivationRecord],
    skipped: int,
    yes: bool,
    report: Optional[Path],
    prompt_password: bool,
) -> None:
    services = _connect(config)

    if not yes:
        target = f" in '{services.organization}'" if services.organization else ""
        if not typer.confirm(f"Reactivate {len(records)} account(s){target}?", default=False):
            typer.echo("Aborted.")
            raise typer.Exit(code=EXIT_PRECONDITION)

    provider = None
    if prompt_password:
        password = typer.prompt(
            "Temporary password", hide_input=True, confirmation_prompt=True
        )
        provider = lambda _record: password  # noqa: E731

    # Results are collected as they arrive so the report survives an aborted run.
    summary = RunSummary(skipped_rows=skipped)

    def _on_result(result: RecordResult) -> None:
        summary.record(result)
        _echo_result(result)

    reactivator = Reactivator(services, config, password_provider=provider)
    try:
        reactivator.run(records, skipped_rows=skipped, on_result=_on_result)
    finally:
        saved = _save_report(report or _default_report_path(config), summary)
    _echo_summary(summary)

    if summary.has_failures or not saved:
        raise typer.Exit(code=EXIT_FAILURES)


@app.command("reactivate")
def reactivate(
    csv_path: Optional[Path] = typer.Argument(
        None, help="CSV file with Email and EmployeeType columns."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    report: Optional[Path] = typer.Option(None, "--report", help="Where to write the CSV report."),
    prompt_password: bool = typer.Option(
        False, "--prompt-password", help="Prompt for the temporary password (overrides a configured one)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Reactivate every account listed in a CSV file."""

    config = _load_configuration(config_path, verbose)

    if csv_path is None:
        csv_path = Path(typer.prompt("Path to the reactivation CSV"))

    try:
        records, skipped = load_records(csv_path)
    except RecordsError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=EXIT_PRECONDITION)

    if not records:
        typer.echo(f"No accounts to reactivate in {csv_path}.", err=True)
        raise typer.Exit(code=EXIT_PRECONDITION)

    typer.echo(f"Loaded {len(records)} account(s) from {csv_path} ({skipped} row(s) skipped).")
    _execute(config, records, skipped, yes, report, prompt_password)


@app.command("user")
def reactivate_user(
    email: str = typer.Argument(..., help="Email address or UPN of the former employee."),
    employee_type: str = typer.Option("", "--type", "-t", help="Employee type profile to apply."),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation."),
    report: Optional[Path] = typer.Option(None, "--report", help="Where to write the CSV report."),
    prompt_password: bool = typer.Option(
        False, "--prompt-password", help="Prompt for the temporary password (overrides a configured one)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Reactivate a single account."""

    if "@" not in email:
        raise typer.BadParameter("Provide the user's email address or UPN.", param_hint="EMAIL")

    config = _load_configuration(config_path, verbose)
    record = ReactivationRecord(email=email.strip(), employee_type=employee_type.strip())
    _execute(config, [record], 0, yes, report, prompt_password)


@app.command("check")
def check(
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Validate the configuration and test connectivity."""

    config = _load_configuration(config_path, verbose)
    _connect(config)
    if config.employee_types:
        typer.echo("Employee types:")
        for profile in config.employee_types.values():
            typer.echo(
                f"  - {profile.name}: {len(profile.groups)} group(s), "
                f"{len(profile.licenses)} license(s)"
            )
    else:
        typer.echo("No employee types configured; group and license steps will be skipped.")
    typer.echo("Configuration OK.")


def run():
    app()


if __name__ == "__main__":
    run()
