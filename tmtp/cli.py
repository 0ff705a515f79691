"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMTP, licensed under the MIT License.
See LICENSE file for details.
"""

import json
import logging
from pathlib import Path

import alembic.command as alembic_command
import alembic.config as alembic_config
import typer
from rich.console import Console
from rich.table import Table

from tmtp import __version__
from tmtp.bundle_source import is_remote, local_path
from tmtp.core.config import DatabaseConfig, configure_logging, get_app_config, init_app_config
from tmtp.core.db_manager import DatabaseManager
from tmtp.core.db_models import ImportJob, JobPhase, JobStatus, utc_now
from tmtp.errors import TmtpError
from tmtp.mapping_config import MappingConfiguration
from tmtp.progress import format_entity_label
from tmtp.worker import process_job

ALEMBIC_INI_PATH = Path(__file__).parent.parent / "alembic.ini"
ALEMBIC_SCRIPT_PATH = Path(__file__).parent.parent / "alembic"

# Initialize console for rich output
console = Console()

# Initialize the CLI app
app = typer.Typer(help="TMTP - Testmo to TestPlanIt")


def configure_app(debug: bool = False, db_path: Path | None = None):
    """
    Configure the application with the specified settings.

    Args:
    ----
        debug: Whether to enable debug mode
        db_path: SQLite database file overriding the environment

    """
    overrides = {}
    if db_path is not None:
        overrides["database"] = DatabaseConfig.from_env(db_type="sqlite", db_path=str(db_path))
    config = init_app_config(debug=debug, app_version=__version__, **overrides)

    configure_logging(debug=debug)

    return config


# Add CLI callback for global options
@app.callback()
def callback(
    debug: bool = typer.Option(False, "--debug", help="Enable debug mode with verbose logging"),
    version: bool = typer.Option(False, "--version", help="Show the application version and exit"),
    db_path: Path | None = typer.Option(None, "--db-path", help="SQLite database file to use"),
):
    """
    TMTP - Migrates Testmo export bundles into TestPlanIt.

    Use --debug to enable verbose logging.
    """
    if version:
        console.print(f"TMTP version: {__version__}")
        raise typer.Exit()

    configure_app(debug=debug, db_path=db_path)


# Get the logger after configuration
logger = logging.getLogger("tmtp")


def get_database() -> DatabaseManager:
    return DatabaseManager(get_app_config().database)


def load_job(db: DatabaseManager, job_id: str) -> ImportJob:
    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
    if job is None:
        console.print(f"Error: Import job {job_id} not found", style="red")
        raise typer.Exit(code=1)
    return job


@app.command("init-db")
def init_database(
    migrations: bool = typer.Option(True, help="Create the pipeline tables with Alembic migrations"),
    drop_existing: bool = typer.Option(False, help="Drop existing tables before initializing"),
    seed: bool = typer.Option(True, help="Insert the default statuses, workflows and templates"),
):
    """
    Initialize the database schema.
    """
    try:
        db_config = get_app_config().database
        db_manager = DatabaseManager(db_config)

        if drop_existing:
            console.print("⚠️ Dropping existing database tables...", style="yellow")
            db_manager.drop_all_tables()
            console.print("Existing tables dropped", style="green")

        if migrations:
            alembic_cfg = alembic_config.Config(str(ALEMBIC_INI_PATH))
            alembic_cfg.set_main_option("script_location", str(ALEMBIC_SCRIPT_PATH))
            alembic_cfg.set_main_option("sqlalchemy.url", db_config.get_connection_string())
            alembic_cfg.attributes["configure_logger"] = False
            console.print("Applying database migrations...")
            alembic_command.upgrade(alembic_cfg, "head")

        db_manager.initialize_database()
        if seed:
            db_manager.seed_defaults()
        console.print("✅ Database schema initialized successfully", style="green")

    except Exception as e:
        console.print(f"Error initializing database: {e}", style="red")
        logger.exception("Error during database initialization")
        raise typer.Exit(code=1)


@app.command("create-job")
def create_job(
    bundle: str = typer.Argument(..., help="Path or URL of the Testmo export bundle"),
    created_by: int | None = typer.Option(None, help="Target user id recorded as the importer"),
):
    """
    Register an import job for an export bundle.
    """
    file_name = None
    file_size = None
    if not is_remote(bundle):
        path = local_path(bundle)
        if not path.is_file():
            console.print(f"Error: Export bundle not found: {path}", style="red")
            raise typer.Exit(code=1)
        bundle = str(path.resolve())
        file_name = path.name
        file_size = path.stat().st_size
    else:
        file_name = bundle.rstrip("/").rsplit("/", 1)[-1] or None

    db = get_database()
    with db.get_session() as session:
        job = ImportJob(
            storage_key=bundle,
            original_file_name=file_name,
            original_file_size=file_size,
            created_by_id=created_by,
            status=JobStatus.PENDING,
            phase=JobPhase.UPLOADING,
            status_message="Waiting for analysis",
        )
        session.add(job)
        session.flush()
        job_id = job.id

    console.print(f"Created import job {job_id}", style="green")
    console.print(job_id)


def run_job(job_id: str, mode: str) -> JobStatus:
    db = get_database()
    load_job(db, job_id)
    try:
        status = process_job(job_id, mode, db=db, config=get_app_config())
    except TmtpError as e:
        console.print(f"Error: {e}", style="red")
        raise typer.Exit(code=1)
    except Exception as e:
        console.print(f"Error running {mode} for job {job_id}: {e}", style="red")
        logger.exception(f"Error during {mode}")
        raise typer.Exit(code=1)

    style = {JobStatus.FAILED: "red", JobStatus.CANCELED: "yellow"}.get(status, "green")
    console.print(f"Job {job_id}: {status.value}", style=style)
    return status


@app.command("analyze")
def analyze(job_id: str = typer.Argument(..., help="Import job id")):
    """
    Stream the job's bundle into staging and record its datasets.
    """
    run_job(job_id, "analyze")
    show_datasets(job_id)


def show_datasets(job_id: str) -> None:
    db = get_database()
    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
        datasets = sorted(job.datasets, key=lambda dataset: dataset.name)
        rows = [(dataset.name, dataset.row_count, dataset.truncated) for dataset in datasets]

    if not rows:
        return
    table = Table(title=f"Datasets of job {job_id}")
    table.add_column("Dataset")
    table.add_column("Rows", justify="right")
    table.add_column("Truncated samples")
    for name, row_count, truncated in rows:
        table.add_row(name, f"{row_count:,}", "yes" if truncated else "")
    console.print(table)


@app.command("configure")
def configure(
    job_id: str = typer.Argument(..., help="Import job id"),
    mapping_file: Path = typer.Argument(..., help="Mapping configuration JSON file"),
):
    """
    Store the mapping configuration of an analyzed job.
    """
    try:
        payload = json.loads(mapping_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"Error reading mapping configuration: {e}", style="red")
        raise typer.Exit(code=1)

    mapping = MappingConfiguration.from_dict(payload)
    db = get_database()
    job = load_job(db, job_id)
    if job.status != JobStatus.READY:
        console.print(
            f"Error: Job {job_id} is {job.status.value}; only analyzed jobs can be configured",
            style="red",
        )
        raise typer.Exit(code=1)

    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
        job.configuration = mapping.to_dict()
        job.status_message = "Configuration saved. Ready to import."

    table = Table(title="Mapping decisions")
    table.add_column("Entity")
    table.add_column("Decisions", justify="right")
    for entity in MappingConfiguration.model_fields:
        table.add_row(format_entity_label(entity), str(mapping.count(entity)))
    console.print(table)
    console.print(f"Configuration saved for job {job_id}", style="green")


@app.command("import")
def import_job(job_id: str = typer.Argument(..., help="Import job id")):
    """
    Import a configured job into the target tables.
    """
    status = run_job(job_id, "import")
    show_status(job_id)
    if status == JobStatus.FAILED:
        raise typer.Exit(code=1)


def show_status(job_id: str) -> None:
    db = get_database()
    job = load_job(db, job_id)

    summary = Table(title=f"Import job {job_id}", show_header=False)
    summary.add_column("Field")
    summary.add_column("Value")
    summary.add_row("Status", job.status.value)
    summary.add_row("Phase", job.phase.value if job.phase else "")
    summary.add_row("Message", job.status_message or "")
    summary.add_row("Processed", f"{job.processed_count:,} / {job.total_count:,}")
    summary.add_row("Skipped", f"{job.skipped_count:,}")
    if job.current_entity:
        summary.add_row("Current entity", format_entity_label(job.current_entity))
    if job.estimated_time_remaining:
        summary.add_row("Remaining", f"{job.estimated_time_remaining}s")
    if job.processing_rate:
        summary.add_row("Rate", job.processing_rate)
    if job.error:
        summary.add_row("Error", job.error)
    console.print(summary)

    if job.entity_progress:
        table = Table(title="Entity progress")
        table.add_column("Entity")
        table.add_column("Total", justify="right")
        table.add_column("Created", justify="right")
        table.add_column("Mapped", justify="right")
        for entity, values in job.entity_progress.items():
            table.add_row(
                format_entity_label(entity),
                str(values.get("total", 0)),
                str(values.get("created", 0)),
                str(values.get("mapped", 0)),
            )
        console.print(table)


@app.command("status")
def status(job_id: str = typer.Argument(..., help="Import job id")):
    """
    Show the status and entity progress of a job.
    """
    show_status(job_id)


@app.command("cancel")
def cancel(job_id: str = typer.Argument(..., help="Import job id")):
    """
    Request cancellation of a job.

    Jobs that are not running are canceled at once; running jobs stop at the
    next chunk boundary.
    """
    db = get_database()
    load_job(db, job_id)
    with db.get_session() as session:
        job = session.get(ImportJob, job_id)
        if job.is_terminal:
            console.print(f"Job {job_id} already finished ({job.status.value})", style="yellow")
            return
        job.cancel_requested = True
        if job.status in (JobStatus.PENDING, JobStatus.READY):
            job.status = JobStatus.CANCELED
            job.status_message = "Import was canceled"
            job.phase = None
            job.canceled_at = utc_now()
            console.print(f"Job {job_id} canceled", style="green")
        else:
            console.print(f"Cancellation requested for job {job_id}", style="green")


if __name__ == "__main__":
    app()
