"""CLI entry point for upload reconciliation."""

import logging
import math
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Tuple

import click

from src.config import Settings
from src.engine.errors import ReconciliationError
from src.engine.models import Actor, OutcomeStatus
from src.pipeline.ingestion import IngestionPipeline
from src.pipeline.reconciliation import ReconciliationService
from src.pipeline.seed import generate_sample_system_records, insert_system_records, load_system_records
from src.pipeline.tracker import JobTracker
from src.pipeline.uploads import UploadService
from src.pipeline.worker import IngestionWorkerPool, JobLocks
from src.reports.excel_report import ExcelReportGenerator
from src.store.sqlite_store import StateStore

logger = logging.getLogger(__name__)

MAPPING_FIELDS = ("transactionId", "amount", "referenceNumber", "date", "description")


class AppContext:
    """Services wired to one database, shared by all commands."""

    def __init__(self, settings: Settings, actor: Actor):
        self.settings = settings
        self.actor = actor
        self.store = StateStore(settings.db_path)
        self.locks = JobLocks()

    def uploads(self) -> UploadService:
        return UploadService(self.store, upload_dir=self.settings.upload_dir)

    def worker_pool(self) -> IngestionWorkerPool:
        pipeline = IngestionPipeline(self.store, batch_size=self.settings.batch_size)
        return IngestionWorkerPool(pipeline, locks=self.locks, workers=self.settings.workers)

    def reconciliation(self, tolerance: Optional[float] = None) -> ReconciliationService:
        rules = self.settings.load_rules()
        if tolerance is not None:
            rules = rules.with_tolerance(tolerance)
        return ReconciliationService(
            self.store, rules=rules, locks=self.locks, batch_size=self.settings.batch_size
        )


def validate_tolerance(ctx, param, value):
    """Validate amount tolerance is between 0 and 1."""
    if value is not None and (value < 0 or value > 1):
        raise click.BadParameter("Amount tolerance must be between 0 and 1.")
    return value


def parse_mapping(ctx, param, value: Tuple[str, ...]) -> Dict[str, str]:
    """Turn repeated ``field=column`` options into a mapping."""
    mapping: Dict[str, str] = {}
    for item in value:
        if "=" not in item:
            raise click.BadParameter(f"Expected field=column, got {item!r}.")
        field_name, column = item.split("=", 1)
        field_name = field_name.strip()
        if field_name not in MAPPING_FIELDS:
            raise click.BadParameter(
                f"Unknown field {field_name!r}. Use one of: {', '.join(MAPPING_FIELDS)}."
            )
        mapping[field_name] = column.strip()
    return mapping


mapping_option = click.option(
    "--map", "-m", "mapping",
    multiple=True,
    callback=parse_mapping,
    help="Column mapping as field=column, e.g. -m transactionId='Txn ID'. Repeatable.",
)


@click.group()
@click.option(
    "--db",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite database path (default: $RECON_DB_PATH or data/reconciliation.db).",
)
@click.option("--user", default="cli", help="User name recorded in the audit trail.")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, db: Optional[str], user: str, verbose: bool) -> None:
    """
    Upload Reconciliation Tool

    Ingests CSV/Excel uploads through a column mapping and reconciles them
    against the system record set.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    settings = Settings.from_env()
    if db:
        settings.db_path = Path(db)
    ctx.obj = AppContext(settings, Actor(user_id=user, user_name=user))


@cli.command()
@click.argument("file", required=False, type=click.Path(exists=True, dir_okay=False))
@mapping_option
@click.option("--sample", type=int, default=None, help="Generate N sample system records instead.")
@click.option("--replace", is_flag=True, help="Delete existing system records first.")
@click.pass_obj
def seed(app: AppContext, file: Optional[str], mapping: Dict[str, str], sample: Optional[int], replace: bool) -> None:
    """Load system (reference) records from FILE or generate a sample set."""
    if sample is not None:
        inserted = insert_system_records(
            app.store, generate_sample_system_records(sample), replace=replace
        )
        click.echo(f"  Inserted {inserted} sample system records")
        return
    if not file:
        raise click.UsageError("Provide FILE with --map options, or --sample N.")

    inserted, rejected = load_system_records(app.store, file, mapping, replace=replace)
    click.echo(f"  Inserted {inserted} system records ({rejected} rows rejected)")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def upload(app: AppContext, file: str) -> None:
    """Register FILE as an upload job (identical bytes reuse the existing job)."""
    job, created = app.uploads().register_upload(file, actor=app.actor)
    if created:
        click.echo(f"  Created job {job.id} for {job.file_name}")
    else:
        click.echo(f"  File already uploaded. Existing job {job.id} ({job.status.value})")


@cli.command()
@click.argument("job_id")
@click.option("--rows", "-n", default=20, show_default=True, help="Rows to show.")
@click.pass_obj
def preview(app: AppContext, job_id: str, rows: int) -> None:
    """Show the headers and first rows of a job's file."""
    parsed = app.uploads().preview(job_id, rows=rows)
    click.echo(f"  Columns: {', '.join(parsed.headers)}")
    click.echo(f"  Total rows: {parsed.total_rows}")
    for row in parsed.rows:
        click.echo("  " + " | ".join(str(row[h]) for h in parsed.headers))


@cli.command()
@click.argument("job_ids", nargs=-1, required=True)
@mapping_option
@click.pass_obj
def ingest(app: AppContext, job_ids: Tuple[str, ...], mapping: Dict[str, str]) -> None:
    """Map columns and ingest one or more jobs on the worker pool."""
    uploads = app.uploads()
    tasks = [uploads.submit_mapping(job_id, mapping, actor=app.actor) for job_id in job_ids]

    pool = app.worker_pool()
    pool.start()
    for task in tasks:
        pool.submit(task)
    pool.stop()

    tracker = JobTracker(app.store)
    failed = False
    for job_id in job_ids:
        progress = tracker.progress(job_id)
        click.echo(
            f"  {job_id}: {progress.status.value} "
            f"({progress.processed_records}/{progress.total_records or 0} rows)"
        )
        if progress.error_message:
            failed = True
            click.echo(f"    ERROR: {progress.error_message}", err=True)
    if failed:
        sys.exit(1)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def status(app: AppContext, job_id: str) -> None:
    """Show status and progress of a job."""
    progress = JobTracker(app.store).progress(job_id)
    click.echo(f"  Status:     {progress.status.value}")
    click.echo(f"  Progress:   {progress.processed_records}/{progress.total_records or 0} "
               f"({progress.fraction:.0%})")
    click.echo(f"  Reconciled: {'yes' if progress.reconciled else 'no'}")
    if progress.error_message:
        click.echo(f"  Error:      {progress.error_message}")


@cli.command()
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def jobs(app: AppContext, page: int, limit: int) -> None:
    """List upload jobs, newest first."""
    items, total = app.store.list_jobs(page=page, limit=limit)
    for job in items:
        reconciled = " reconciled" if job.reconciled else ""
        click.echo(
            f"  {job.id} {job.status.value:<10} "
            f"{job.processed_records}/{job.total_records or 0} rows{reconciled}  "
            f"{job.file_name}  {job.created_at}"
        )
    click.echo(f"  Page {page}/{max(math.ceil(total / limit), 1)} ({total} jobs)")


@cli.command()
@click.option("--entity-id", default=None, help="Only events about this entity id.")
@click.option("--entity-type", default=None, help="Only events about this entity type, e.g. upload_job.")
@click.option("--user-id", default=None, help="Only events by this user.")
@click.option("--since", type=click.DateTime(), default=None, help="Events at or after this UTC time.")
@click.option("--until", type=click.DateTime(), default=None, help="Events before this UTC time.")
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--limit", default=50, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def audit(
    app: AppContext,
    entity_id: Optional[str],
    entity_type: Optional[str],
    user_id: Optional[str],
    since: Optional[datetime],
    until: Optional[datetime],
    page: int,
    limit: int,
) -> None:
    """Show the audit trail, newest first."""
    filters = dict(
        entity_id=entity_id, entity_type=entity_type, user_id=user_id, since=since, until=until
    )
    events = app.store.get_audit_events(page=page, limit=limit, **filters)
    total = app.store.count_audit_events(**filters)
    if not events:
        click.echo("  No audit events")
    for event in events:
        click.echo(
            f"  {event.timestamp} {event.action.value:<15} "
            f"{event.entity_type}:{event.entity_id} by {event.user_name or event.user_id or '-'} "
            f"({event.source.value})"
        )
    click.echo(f"  Page {page}/{max(math.ceil(total / limit), 1)} ({total} events)")


@cli.command()
@click.argument("job_id")
@click.option(
    "--tolerance", "-t",
    type=float,
    default=None,
    callback=validate_tolerance,
    help="Partial-match amount tolerance (default from rules: 0.02 = 2%).",
)
@click.pass_obj
def reconcile(app: AppContext, job_id: str, tolerance: Optional[float]) -> None:
    """Reconcile a completed job against the system records."""
    service = app.reconciliation(tolerance)
    summary = service.reconcile(job_id, actor=app.actor)

    click.echo("\n" + "=" * 60)
    click.echo("  RECONCILIATION SUMMARY")
    click.echo("=" * 60)
    click.echo(f"  Accuracy:             {summary.accuracy:.2f}%")
    click.echo(f"  Total Records:        {summary.total}")
    click.echo(f"  Matched:              {summary.matched}")
    click.echo(f"  Partially Matched:    {summary.partially_matched}")
    click.echo(f"  Not Matched:          {summary.not_matched}")
    click.echo(f"  Duplicates:           {summary.duplicate}")
    click.echo("=" * 60)


@cli.command()
@click.argument("job_id")
@click.option(
    "--status", "status_filter",
    type=click.Choice([s.value for s in OutcomeStatus]),
    default=None,
    help="Only show outcomes with this status.",
)
@click.option("--page", default=1, show_default=True, type=click.IntRange(min=1))
@click.option("--limit", default=20, show_default=True, type=click.IntRange(min=1))
@click.pass_obj
def results(app: AppContext, job_id: str, status_filter: Optional[str], page: int, limit: int) -> None:
    """List reconciliation outcomes of a job."""
    result_page = app.reconciliation().results(job_id, status=status_filter, page=page, limit=limit)
    records = app.store.get_records(
        [o.uploaded_record_id for o in result_page.items]
        + [o.system_record_id for o in result_page.items]
    )
    for outcome in result_page.items:
        uploaded = records.get(outcome.uploaded_record_id)
        system = records.get(outcome.system_record_id)
        line = (
            f"  #{outcome.id} {outcome.status.value:<17} score={outcome.match_score:<3} "
            f"{uploaded.transaction_id if uploaded else '?'}"
        )
        if system:
            line += f" -> {system.transaction_id}"
        if outcome.mismatched_fields:
            line += " [" + ", ".join(m.field for m in outcome.mismatched_fields) + "]"
        click.echo(line)
    click.echo(
        f"  Page {result_page.page}/{max(result_page.total_pages, 1)} "
        f"({result_page.total} outcomes)"
    )


@cli.command()
@click.argument("job_id")
@click.option("--output", "-o", required=True, type=click.Path(), help="Path for the Excel report.")
@click.pass_obj
def report(app: AppContext, job_id: str, output: str) -> None:
    """Write an Excel report of a job's reconciliation outcomes."""
    job = app.store.get_job(job_id)
    outcomes, _ = app.store.get_outcomes(job_id)
    records = app.store.get_records(
        [o.uploaded_record_id for o in outcomes] + [o.system_record_id for o in outcomes]
    )
    path = ExcelReportGenerator().generate(job, outcomes, records, output)
    click.echo(f"  Report saved to: {path.absolute()}")


@cli.command()
@click.argument("outcome_id", type=int)
@click.option(
    "--status", "new_status",
    type=click.Choice([s.value for s in OutcomeStatus]),
    default=None,
    help="New status for the outcome.",
)
@click.option("--amount", default=None, help="Corrected amount of the uploaded record.")
@click.option("--reference", default=None, help="Corrected reference number.")
@click.option("--date", "txn_date", default=None, help="Corrected transaction date.")
@click.pass_obj
def resolve(
    app: AppContext,
    outcome_id: int,
    new_status: Optional[str],
    amount: Optional[str],
    reference: Optional[str],
    txn_date: Optional[str],
) -> None:
    """Manually resolve a reconciliation outcome."""
    corrections = {}
    if amount is not None:
        corrections["amount"] = amount
    if reference is not None:
        corrections["referenceNumber"] = reference
    if txn_date is not None:
        corrections["date"] = txn_date
    outcome = app.reconciliation().resolve(
        outcome_id, new_status=new_status, corrected_fields=corrections or None, actor=app.actor
    )
    click.echo(f"  Outcome #{outcome.id} resolved as {outcome.status.value}")


def main() -> None:
    try:
        cli(standalone_mode=False)
    except click.exceptions.Abort:
        click.echo("Aborted!", err=True)
        sys.exit(1)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except (ReconciliationError, FileNotFoundError, LookupError, ValueError) as e:
        click.echo(f"\n  ERROR: {e}", err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception("Unexpected error")
        click.echo(f"\n  UNEXPECTED ERROR: {e}", err=True)
        sys.exit(2)


if __name__ == "__main__":
    main()
