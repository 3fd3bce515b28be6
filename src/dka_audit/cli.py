"""dka-audit: decrypt, reconcile and deduplicate DKA calculator audit data."""

import asyncio
import json
import logging
import os
import time
from dataclasses import asdict
from pathlib import Path
from typing import Annotated
from urllib.parse import urlparse, urlunparse

import asyncpg
import typer
from rich.console import Console

from . import __version__
from .config import ConfigValidationError, load_config, resolve_environment
from .envelope import (
    ENV_PRIVATE_KEY_FILE,
    ENV_PUBLIC_KEY,
    EnvelopeCipher,
    KeyMaterial,
    KeySource,
    load_key_material,
    pem_to_base64,
)
from .errors import KeyConfigurationError, RecordStoreError
from .job import run_decrypt_job
from .schema import AuditSchemaManager
from .secrets import (
    ENV_DB_PASSWORD,
    CredentialValidationError,
    get_database_password,
    mask_password_in_url,
    validate_no_password_in_url,
)
from .store import LIVE_TABLES, PostgresRecordStore, select_tables

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def version_callback(value: bool) -> None:
    if value:
        print(__version__)
        raise typer.Exit()


app = typer.Typer(
    name="dka-audit", help="Decrypt, reconcile and deduplicate DKA calculator audit data"
)
console = Console()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version", callback=version_callback, is_eager=True, help="Show version and exit"
        ),
    ] = None,
) -> None:
    pass


def setup_logging(verbose: bool, quiet: bool, log_file: Path | None = None) -> None:
    """Configure logging based on verbosity flags."""
    if quiet:
        level = logging.WARNING
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%H:%M:%S")
    logging.getLogger("dka_audit").setLevel(level)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logging.getLogger("dka_audit").addHandler(file_handler)


def _with_password(url: str, password: str) -> str:
    parsed = urlparse(url)
    user_part = parsed.username or "postgres"
    netloc = f"{user_part}:{password}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def _build_database_url(password_env_var: str = ENV_DB_PASSWORD) -> str | None:
    """Build a database URL from the environment.

    Priority:
        1. POSTGRES_URL (validated for no embedded password)
        2. PG* environment variables

    Raises:
        CredentialValidationError: If a password is embedded in POSTGRES_URL.
    """
    logger = logging.getLogger(__name__)

    if url := os.environ.get("POSTGRES_URL"):
        validate_no_password_in_url(url)
        password = get_database_password(password_env_var=password_env_var)
        logger.info("Using POSTGRES_URL")
        return _with_password(url, password) if password else url

    host = os.environ.get("PGHOST")
    if not host:
        return None

    port = int(os.environ.get("PGPORT", "5432"))
    user = os.environ.get("PGUSER", "postgres")
    database = os.environ.get("PGDATABASE", "dka_audit")
    url = f"postgresql://{user}@{host}:{port}/{database}"

    password = get_database_password(password_env_var=password_env_var)
    return _with_password(url, password) if password else url


def _resolve_database_url(
    db_url: str | None, password_env_var: str = ENV_DB_PASSWORD
) -> str | None:
    """Resolve the database URL from --db or the environment.

    Raises:
        CredentialValidationError: If a password is embedded in the URL.
    """
    if db_url is None:
        return _build_database_url(password_env_var)

    validate_no_password_in_url(db_url)
    password = get_database_password(password_env_var=password_env_var)
    if password:
        logging.getLogger(__name__).info("Using --db URL with password from environment")
        return _with_password(db_url, password)
    return db_url


def _require_database_url(db_url: str | None) -> str:
    try:
        resolved = _resolve_database_url(db_url)
    except CredentialValidationError as e:
        console.print(f"[red]Security Error: {e}[/red]")
        raise typer.Exit(1) from None
    if resolved is None:
        console.print(
            "[red]Error: No database specified. Use --db, POSTGRES_URL or PGHOST.[/red]"
        )
        raise typer.Exit(1)
    logging.getLogger(__name__).info("Database: %s", mask_password_in_url(resolved))
    return resolved


def _load_cipher(key_source: KeySource, require_private: bool) -> EnvelopeCipher:
    try:
        return EnvelopeCipher(load_key_material(key_source, require_private=require_private))
    except KeyConfigurationError as e:
        console.print(f"[red]Key Error: {e}[/red]")
        raise typer.Exit(1) from None


@app.command()
def run(
    audit_id: Annotated[
        str | None, typer.Option("--audit-id", "-a", help="Only process this audit ID")
    ] = None,
    centre: Annotated[str | None, typer.Option("--centre", help="Only process this centre")] = None,
    include_tests: Annotated[
        bool | None,
        typer.Option(
            "--include-tests/--exclude-tests", help="Include test episodes in the export"
        ),
    ] = None,
    force_live_tables: bool = typer.Option(
        False, "--force-live-tables", help="Use live tables even in development"
    ),
    db_url: Annotated[
        str | None, typer.Option("--db", "-d", help="PostgreSQL connection URL")
    ] = None,
    workers: Annotated[
        int | None, typer.Option("--workers", "-w", help="Concurrent decrypt workers")
    ] = None,
    key_source: KeySource = typer.Option(
        KeySource.ENVIRONMENT, "--key-source", help="Where to read the RSA private key from"
    ),
    config_file: Annotated[
        Path | None, typer.Option("--config", "-c", help="TOML configuration file")
    ] = None,
    report: Annotated[
        Path | None, typer.Option("--report", "-r", help="Write JSON report to file")
    ] = None,
    log_file: Annotated[Path | None, typer.Option("--log", help="Write log to file")] = None,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Suppress non-error output"),
) -> None:
    """Decrypt audit records, merge follow-up data and rebuild the research export.

    Safe to rerun: the decrypt and export tables are upserted by audit ID.
    """
    setup_logging(verbose, quiet, log_file)

    try:
        config = load_config(
            config_file, overrides={"workers": workers, "include_tests": include_tests}
        )
    except (FileNotFoundError, ConfigValidationError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    if not verbose and not quiet:
        logging.getLogger("dka_audit").setLevel(config.log_level)

    resolved_db_url = _require_database_url(db_url)
    cipher = _load_cipher(key_source, require_private=True)
    tables = select_tables(config.environment, force_live_tables)

    if not quiet and tables is not LIVE_TABLES:
        console.print("[yellow]Using development tables[/yellow]")

    async def run_job():
        store = await PostgresRecordStore.connect(
            resolved_db_url, tables, max_size=config.workers * 2
        )
        try:
            return await run_decrypt_job(
                store,
                cipher,
                audit_id=audit_id,
                centre=centre,
                include_tests=config.include_tests,
                workers=config.workers,
            )
        finally:
            await store.close()

    try:
        job_report = asyncio.run(run_job())
    except RecordStoreError as e:
        console.print(f"[red]Error: Database operation failed: {e}[/red]")
        raise typer.Exit(1) from None

    job_report.tables = asdict(tables)
    phase1, phase2, streamlined = job_report.phase1, job_report.phase2, job_report.streamline

    if not quiet:
        console.print(
            f"[green]✓[/green] Decrypted {phase1['succeeded']:,} of {phase1['processed']:,} "
            f"calculate records ({job_report.patients:,} patients)"
        )
        console.print(
            f"[green]✓[/green] Merged {phase2['succeeded']:,} of {phase2['processed']:,} "
            "follow-up records"
        )
        console.print(
            f"[green]✓[/green] Exported {streamlined['emitted']:,} records "
            f"(A={streamlined['grade_a']}, B={streamlined['grade_b']}, "
            f"C={streamlined['grade_c']}; {streamlined['deduplicated']} duplicates removed)"
        )
        if job_report.skipped:
            console.print(
                f"[yellow]⚠[/yellow] Skipped {job_report.skipped} records that could not be "
                "decrypted (see log)"
            )
        if phase2["orphaned"]:
            console.print(
                f"[yellow]⚠[/yellow] {phase2['orphaned']} follow-up records had no "
                "decrypted calculate record"
            )

    if report:
        report_data = job_report.to_dict()
        report_data["status"] = "success"
        report_data["timestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        with open(report, "w") as f:
            json.dump(report_data, f, indent=2)
            f.write("\n")
        if not quiet:
            console.print(f"  Report: {report}")


@app.command("init-db")
def init_db(
    db_url: Annotated[
        str | None, typer.Option("--db", "-d", help="PostgreSQL connection URL")
    ] = None,
    force_live_tables: bool = typer.Option(
        False, "--force-live-tables", help="Report on live tables even in development"
    ),
) -> None:
    """Create the live and development audit tables.

    Row counts are shown for the table set a job run would use.
    """
    resolved_db_url = _require_database_url(db_url)
    tables = select_tables(resolve_environment(), force_live_tables)

    async def run_init() -> dict[str, int]:
        conn = await asyncpg.connect(resolved_db_url)
        try:
            manager = AuditSchemaManager()
            await manager.create_schema(conn)
            return await manager.get_row_counts(conn, tables)
        finally:
            await conn.close()

    try:
        counts = asyncio.run(run_init())
    except Exception as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1) from None

    console.print("[green]✓[/green] Audit schema initialized")
    for name, count in counts.items():
        console.print(f"  {name}: {count:,} rows")


@app.command("generate-keys")
def generate_keys(
    out_dir: Annotated[
        Path, typer.Option("--out-dir", "-o", help="Directory for the PEM files")
    ] = Path("."),
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite existing key files"),
) -> None:
    """Generate a new RSA key pair for audit envelopes.

    The public key goes to the submission API; the private key stays with
    the decrypt job.
    """
    private_path = out_dir / "dka_audit_private.pem"
    public_path = out_dir / "dka_audit_public.pem"

    if not force and (private_path.exists() or public_path.exists()):
        console.print(f"[red]Error: Key files already exist in {out_dir} (use --force)[/red]")
        raise typer.Exit(1)

    out_dir.mkdir(parents=True, exist_ok=True)
    material = KeyMaterial.generate()

    private_path.write_bytes(material.private_pem())
    private_path.chmod(0o600)
    public_path.write_bytes(material.public_pem())

    console.print("[bold]Generated RSA key pair:[/bold]")
    console.print(f"  Private key: {private_path}")
    console.print(f"  Public key:  {public_path}")
    console.print()
    console.print("[yellow]Store the private key securely![/yellow]")
    console.print("Set as environment variables:")
    console.print(f"  export {ENV_PRIVATE_KEY_FILE}='{private_path}'")
    console.print(f"  export {ENV_PUBLIC_KEY}='{pem_to_base64(material.public_pem())}'")


@app.command()
def encrypt(
    record_file: Path = typer.Argument(..., help="JSON file holding one record"),
    key_source: KeySource = typer.Option(
        KeySource.ENVIRONMENT, "--key-source", help="Where to read the RSA key from"
    ),
) -> None:
    """Seal a JSON record into stored envelope text."""
    if not record_file.exists():
        console.print(f"[red]Error: File not found: {record_file}[/red]")
        raise typer.Exit(1)

    try:
        record = json.loads(record_file.read_text())
    except json.JSONDecodeError as e:
        console.print(f"[red]Error: Invalid JSON: {e}[/red]")
        raise typer.Exit(1) from None
    if not isinstance(record, dict):
        console.print("[red]Error: Record must be a JSON object[/red]")
        raise typer.Exit(1)

    cipher = _load_cipher(key_source, require_private=False)
    typer.echo(cipher.seal(record))


@app.command()
def decrypt(
    envelope_file: Path = typer.Argument(..., help="File holding stored envelope text"),
    key_source: KeySource = typer.Option(
        KeySource.ENVIRONMENT, "--key-source", help="Where to read the RSA key from"
    ),
) -> None:
    """Open stored envelope text and print the record as JSON."""
    if not envelope_file.exists():
        console.print(f"[red]Error: File not found: {envelope_file}[/red]")
        raise typer.Exit(1)

    cipher = _load_cipher(key_source, require_private=True)
    result = cipher.open_stored(envelope_file.read_text().strip())
    if not result.ok:
        console.print(f"[red]Error: Decryption failed ({result.failure.value}): {result.detail}[/red]")
        raise typer.Exit(1)

    typer.echo(json.dumps(result.payload, indent=2))


if __name__ == "__main__":
    app()
