"""
Command line interface.

Commands:
- upload: Upload a local backup to remote storage
- list-remote: List backups on remote storage
- embedded-location: Show where an embedded backup would be written
- tables: List tables on the server
- server: Run the REST API
"""

from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from chbackup import configure_logging, create_app
from chbackup.backup.executor import Backuper
from chbackup.backup.storage import create_destination
from chbackup.clickhouse import ClickHouse
from chbackup.config import Config, load_config
from chbackup.exceptions import BackupError


app = typer.Typer(help="chbackup - upload ClickHouse backups to remote storage")

console = Console()


def _load(ctx: typer.Context) -> Config:
    """Load configuration and set up logging, exiting 1 on errors."""
    try:
        config = load_config(ctx.obj.get('config_path'))
    except BackupError as e:
        console.print(f"[red]✗[/red] Configuration error: {e}")
        raise typer.Exit(1)

    level = 'debug' if ctx.obj.get('debug') else config.general.log_level
    configure_logging(level, config.general.log_dir)
    return config


def _fail(action: str, error: Exception):
    console.print(f"[red]✗[/red] {action} failed: {error}")
    raise typer.Exit(1)


@app.callback()
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None, "--config", "-c", envvar="CHBACKUP_CONFIG",
        help="Config file (default: /etc/chbackup/config.yml)"
    ),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging")
) -> None:
    """chbackup - upload ClickHouse backups to remote storage."""
    ctx.obj = {'config_path': config_path, 'debug': debug}


@app.command()
def upload(
    ctx: typer.Context,
    backup_name: str = typer.Argument(..., help="Local backup to upload"),
    tables: str = typer.Option("", "--tables", "-t", help="Comma separated db.table globs"),
    partitions: str = typer.Option("", "--partitions", help="Comma separated partition ids"),
    diff_from: str = typer.Option("", "--diff-from", help="Local backup to upload the difference against"),
    diff_from_remote: str = typer.Option(
        "", "--diff-from-remote", help="Remote backup to upload the difference against"
    ),
    schema: bool = typer.Option(False, "--schema", "-s", help="Upload table metadata only"),
    resume: bool = typer.Option(False, "--resume", "--resumable", help="Resume an interrupted upload")
) -> None:
    """Upload a local backup to remote storage."""
    config = _load(ctx)
    backuper = Backuper(config)
    try:
        metadata = backuper.upload(
            backup_name,
            table_pattern=tables,
            partitions=[p for p in partitions.split(',') if p] or None,
            diff_from=diff_from,
            diff_from_remote=diff_from_remote,
            schema_only=schema,
            resume=resume
        )
    except (BackupError, ValueError) as e:
        _fail(f"Upload of {backup_name}", e)
    except KeyboardInterrupt:
        backuper.cancel()
        console.print("[yellow]Upload interrupted[/yellow]")
        raise typer.Exit(1)

    if metadata is not None:
        console.print(
            f"[green]✓[/green] Uploaded {backup_name}: {len(metadata.tables)} tables, "
            f"{metadata.compressed_size / 1024 / 1024:.2f} MB"
        )


@app.command(name="list-remote")
def list_remote(ctx: typer.Context) -> None:
    """List backups on remote storage."""
    config = _load(ctx)
    ch = ClickHouse(config.clickhouse)
    try:
        destination = create_destination(config, ch)
        destination.connect()
        try:
            backups = destination.list_backups(with_metadata=True)
        finally:
            destination.close()
    except BackupError as e:
        _fail("Listing remote backups", e)
    finally:
        ch.close()

    table = Table("name", "size", "upload date", "required", "status")
    for backup in backups:
        table.add_row(
            backup.backup_name,
            f"{backup.size / 1024 / 1024:.2f} MB",
            backup.upload_date.strftime('%Y-%m-%d %H:%M:%S') if backup.upload_date else '',
            backup.metadata.required_backup if backup.metadata else '',
            backup.broken or 'ok'
        )
    console.print(table)


@app.command(name="embedded-location")
def embedded_location(
    ctx: typer.Context,
    backup_name: str = typer.Argument(..., help="Backup name"),
    sql: bool = typer.Option(False, "--sql", help="Print the BACKUP statement instead"),
    tables: str = typer.Option("", "--tables", "-t", help="Comma separated db.table globs (with --sql)"),
    schema: bool = typer.Option(False, "--schema", "-s", help="Structure only (with --sql)")
) -> None:
    """Show where an embedded backup is written."""
    config = _load(ctx)
    backuper = Backuper(config)
    try:
        if sql:
            console.print(backuper.embedded_backup_sql(backup_name, tables, schema), soft_wrap=True)
        else:
            console.print(backuper.embedded_location(backup_name), soft_wrap=True)
    except BackupError as e:
        _fail("Building embedded location", e)
    finally:
        backuper.ch.close()


@app.command(name="tables")
def list_tables(
    ctx: typer.Context,
    tables: str = typer.Option("", "--tables", "-t", help="Comma separated db.table globs")
) -> None:
    """List tables on the server."""
    config = _load(ctx)
    ch = ClickHouse(config.clickhouse)
    try:
        result = ch.get_tables(tables, config.general.skip_tables)
    except BackupError as e:
        _fail("Listing tables", e)
    finally:
        ch.close()

    for table in result:
        suffix = ' [dim](skip)[/dim]' if table.skip else ''
        console.print(f"{table.database}.{table.table}\t{table.total_bytes}{suffix}")


@app.command()
def server(ctx: typer.Context) -> None:
    """Run the REST API with the background scheduler."""
    config = _load(ctx)
    host, _, port = config.api.listen.rpartition(':')
    flask_app = create_app(config)
    flask_app.run(host=host or '0.0.0.0', port=int(port))


if __name__ == '__main__':
    app()
