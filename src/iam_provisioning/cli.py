"""iam_provisioning.cli

Unified provisioning CLI.

Modes:
  run       create a job, execute it against the directory, write rejects
            CSV + JSON run report; exits non-zero when the job FAILED
  list      print job history, most recent first
  template  print the CSV contract
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import NoReturn

import click

from iam_provisioning.config import (
    ProvisioningSettings,
    SettingsValidationError,
    load_settings,
)
from iam_provisioning.db import Database
from iam_provisioning.jobs import (
    JobRepository,
    JobStatus,
    JobTracker,
    PostgresJobRepository,
)
from iam_provisioning.parser import template_info
from iam_provisioning.shared import RejectWriter, utcnow, write_run_report
from iam_provisioning.store import IdentityStore, PostgresIdentityStore


def open_backends(
    db_dsn: str,
    settings: ProvisioningSettings,
) -> tuple[JobRepository, IdentityStore, Callable[[], None]]:
    """Return (job repository, identity store, close callback) for a DSN."""
    db = Database(db_dsn, timeout_seconds=settings.store_timeout_seconds)
    return PostgresJobRepository(db), PostgresIdentityStore(db), db.close


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _fatal(run_id: str, message: str) -> NoReturn:
    click.echo(f"[{run_id}] FATAL: {message}", err=True)
    sys.exit(1)


def _validate_run_flags(db_dsn: str | None, csv_path: str | None, run_id: str) -> None:
    if not db_dsn:
        _fatal(run_id, "--db-dsn is required for --mode run")
    if not csv_path:
        _fatal(run_id, "--csv-path is required for --mode run")
    if not Path(csv_path).is_file():  # type: ignore[arg-type]
        _fatal(run_id, f"CSV file not found: {csv_path}")


def _load_settings(config_path: str | None, max_rows: int | None, run_id: str) -> ProvisioningSettings:
    try:
        settings = load_settings(Path(config_path) if config_path else None)
        return settings.with_overrides(max_rows=max_rows)
    except (SettingsValidationError, FileNotFoundError) as exc:
        _fatal(run_id, f"invalid settings: {exc}")


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run(
    run_id: str,
    started_at: str,
    tracker: JobTracker,
    csv_path: Path,
    job_name: str | None,
    triggered_by: str,
    dry_run: bool,
    rejects_path: Path,
    report_dir: Path,
) -> bool:
    job = tracker.create_job(
        job_name or csv_path.name,
        source_location=str(csv_path),
        triggered_by=triggered_by,
    )
    click.echo(f"[{run_id}] Job {job.id} created ({job.job_name})")

    with csv_path.open("rb") as fh:
        report = tracker.execute_job(job.id, fh, dry_run=dry_run)
    job = report.job

    rejects = RejectWriter(rejects_path)
    try:
        for outcome in report.rejections:
            rejects.write(outcome.raw, outcome.row_number, outcome.reason or "")
    finally:
        rejects.close()

    prefix = f"[{run_id}] [dry-run]" if dry_run else f"[{run_id}]"
    click.echo(
        f"{prefix} Job {job.id} {job.status.value}: "
        f"{job.total_processed} rows processed, "
        f"{job.created_count} created, "
        f"{job.updated_count} updated, "
        f"{job.noop_count} unchanged, "
        f"{job.failed_count} rejected"
    )
    if rejects.rows_written:
        click.echo(f"[{run_id}] Rejects: {rejects.path}")

    report_path = write_run_report(
        run_id, started_at, "run", dry_run,
        {"csv_path": str(csv_path), "rejects_path": str(rejects_path)},
        report.to_dict(),
        report_dir=report_dir,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if job.status is JobStatus.FAILED:
        click.echo(f"[{run_id}] FATAL: {job.error_kind}: {job.error_message}", err=True)
        return False
    return True


def _list(tracker: JobTracker) -> None:
    jobs = tracker.list_jobs()
    if not jobs:
        click.echo("No provisioning jobs.")
        return
    for job in jobs:
        mode = "dry-run" if job.dry_run else "apply"
        line = (
            f"{job.created_at:%Y-%m-%d %H:%M:%S} {job.id} {job.status.value:<9} "
            f"{mode:<7} {job.job_name}: total={job.total_processed} "
            f"created={job.created_count} updated={job.updated_count} "
            f"noop={job.noop_count} failed={job.failed_count}"
        )
        if job.error_kind:
            line += f" error={job.error_kind}"
        click.echo(line)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

@click.command()
@click.option(
    "--mode",
    default="run",
    type=click.Choice(["run", "list", "template"]),
    show_default=True,
    help="Operation to perform",
)
@click.option("--db-dsn", default=None, envvar="PROVISIONING_DB_DSN", help="PostgreSQL DSN [run|list]")
@click.option("--csv-path", default=None, type=click.Path(), help="[run] Input CSV")
@click.option("--job-name", default=None, help="[run] Job name (defaults to the CSV file name)")
@click.option("--triggered-by", default="cli", show_default=True, help="[run] Provenance recorded on the job")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML settings file")
@click.option("--max-rows", default=None, type=int, help="Override max_rows from settings")
@click.option("--dry-run", is_flag=True, default=False)
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/provisioning_rejects.csv",
    show_default=True,
)
@click.option("--report-dir", default="./artifacts/reports", show_default=True)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str | None,
    csv_path: str | None,
    job_name: str | None,
    triggered_by: str,
    config_path: str | None,
    max_rows: int | None,
    dry_run: bool,
    rejects_path: str,
    report_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Bulk user provisioning from CSV."""
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = utcnow().isoformat()

    settings = _load_settings(config_path, max_rows, run_id)

    if mode == "template":
        click.echo(json.dumps(template_info(settings.max_rows), indent=2))
        return

    if mode == "run":
        _validate_run_flags(db_dsn, csv_path, run_id)
        click.echo(f"[{run_id}] Starting provisioning run (dry_run={dry_run})")
    elif not db_dsn:
        _fatal(run_id, f"--db-dsn is required for --mode {mode}")

    repository, store, close = open_backends(db_dsn, settings)  # type: ignore[arg-type]
    tracker = JobTracker(repository, store, settings)
    try:
        if mode == "list":
            _list(tracker)
            return
        ok = _run(
            run_id, started_at, tracker,
            csv_path=Path(csv_path),  # type: ignore[arg-type]
            job_name=job_name,
            triggered_by=triggered_by,
            dry_run=dry_run,
            rejects_path=Path(rejects_path),
            report_dir=Path(report_dir),
        )
    finally:
        tracker.shutdown()
        close()

    if not ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
