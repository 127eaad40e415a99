from __future__ import annotations

import logging

import typer

from checksheet.config import Settings, configure_logging

cli = typer.Typer(add_completion=False, no_args_is_help=True)
logger = logging.getLogger(__name__)


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj["settings"]


@cli.callback()
def main(
    ctx: typer.Context,
    database_url: str | None = typer.Option(None, help="Overrides DATABASE_URL"),
    log_level: str | None = typer.Option(None, help="Overrides LOG_LEVEL"),
) -> None:
    settings = Settings()
    if database_url:
        settings.database_url = database_url
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings)
    ctx.obj = {"settings": settings}


@cli.command()
def serve(
    ctx: typer.Context,
    host: str | None = typer.Option(None, help="Address to bind"),
    port: int | None = typer.Option(None, help="Port to bind"),
    report_artifacts: bool | None = typer.Option(
        None, "--report-artifacts/--no-report-artifacts", help="Write legacy report tables and views"
    ),
) -> None:
    """Start the HTTP API."""
    import uvicorn

    from checksheet.app import create_app

    settings = _settings(ctx)
    if report_artifacts is not None:
        settings.report_artifacts = report_artifacts
    uvicorn.run(
        create_app(settings),
        host=host or settings.host,
        port=port if port is not None else settings.port,
        log_level=settings.log_level.lower(),
    )


@cli.command("init-db")
def init_db(ctx: typer.Context) -> None:
    """Create the template, field, image and folder tables."""
    from checksheet.storage import init_storage

    storage = init_storage(_settings(ctx))
    storage.dispose()
    logger.info("Database initialised at %s", storage.engine.url.render_as_string(hide_password=True))
    typer.echo("Database initialised")


@cli.command()
def templates(
    ctx: typer.Context,
    include_archived: bool = typer.Option(False, "--all", help="Include archived versions"),
) -> None:
    """List templates with their version and submission table."""
    from checksheet.service import ChecksheetService
    from checksheet.storage import init_storage

    settings = _settings(ctx)
    storage = init_storage(settings)
    try:
        rows = ChecksheetService(storage, settings).list_templates(include_archived)
    finally:
        storage.dispose()
    for row in rows:
        state = "active" if row["is_active"] else "archived"
        typer.echo(f"{row['id']}\tv{row['version']}\t{state}\t{row['table_name']}\t{row['name']}")


if __name__ == "__main__":
    cli()
