"""Entry-point for the syntheme render service."""

from __future__ import annotations

import logging
import mimetypes
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import Optional

import typer
import uvicorn

from synthrender.bootstrap import initialize_app
from synthrender.errors import RenderPipelineError
from synthrender.logging_utils import build_service_handlers, configure_logging
from synthrender.services.jobs import JobState
from synthrender.services.pipeline import RenderService
from synthrender.services.progress import describe_status
from synthrender.ui.console import SynthemeOverview, render_sweep_report
from synthrender.web import create_app


LOGGER = logging.getLogger("synthrender.cli")

_POLL_INTERVAL_SECONDS = 0.5


cli = typer.Typer(add_completion=False, help="Syntheme render management commands")


def _prepare_logging(storage_root: Path) -> None:
    configure_logging(handlers=build_service_handlers(storage_root))


class ListStyle(str, Enum):
    TABLE = "table"
    PLAIN = "plain"


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=None, port=None)


@cli.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address (defaults to the configured value)"),
    port: Optional[int] = typer.Option(None, help="Port (defaults to the configured value)"),
) -> None:
    """Run the HTTP render service."""

    app_config = initialize_app()
    _prepare_logging(app_config.storage_root)

    service = RenderService(app_config)
    app = create_app(service)

    bind_host = host or app_config.bind_address
    bind_port = port or app_config.port
    server_config = uvicorn.Config(app, host=bind_host, port=bind_port, log_config=None)
    LOGGER.info("Serving on %s:%s (uploads capped at %s bytes)", bind_host, bind_port, app_config.max_upload_bytes)
    uvicorn.Server(server_config).run()


@cli.command()
def synthemes(
    style: ListStyle = typer.Option(ListStyle.TABLE, "--style", "-s", help="Output style"),
) -> None:
    """List the synthemes loaded from the synthemes directory."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    service = RenderService(config)
    SynthemeOverview(service.registry).run(plain=style is ListStyle.PLAIN)


@cli.command()
def render(
    source: Path = typer.Argument(
        ...,
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="Media file to render.",
    ),
    syntheme: str = typer.Option(..., "--syntheme", "-t", help="Name of the syntheme to apply"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Where to copy the artifact"),
    content_type: Optional[str] = typer.Option(None, help="Override the detected media type"),
    timeout: Optional[float] = typer.Option(None, help="Render timeout in seconds"),
) -> None:
    """Render *source* with a syntheme without starting the web server."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    media_type = content_type or mimetypes.guess_type(source.name)[0]
    service = RenderService(config)
    service.start(sweep=False)
    try:
        try:
            with source.open("rb") as stream:
                job_id = service.create_job(
                    stream,
                    media_type,
                    syntheme,
                    filename=source.name,
                    declared_size=source.stat().st_size,
                    timeout_seconds=timeout,
                )
        except RenderPipelineError as error:
            typer.echo(f"Render rejected: {error}")
            raise typer.Exit(code=1) from error

        typer.echo(f"Queued job {job_id}")
        last_message = ""
        status = service.get_status(job_id)
        while not status.state.terminal:
            message = describe_status(status)
            if message != last_message:
                typer.echo(f"====> {message}")
                last_message = message
            status = service.wait_for(job_id, _POLL_INTERVAL_SECONDS)

        typer.echo(f"====> {describe_status(status)}")
        if status.state is not JobState.SUCCEEDED:
            if status.error_detail:
                typer.echo(status.error_detail)
            raise typer.Exit(code=1)

        artifact, handle = service.open_artifact(job_id)
        target = output or source.with_name(f"{source.stem}-{syntheme}{artifact.path.suffix}")
        with handle, target.open("wb") as destination:
            shutil.copyfileobj(handle, destination)
        typer.echo(f"Artifact saved to: {target}")
    finally:
        started = time.perf_counter()
        service.shutdown(0)
        LOGGER.debug("Render service stopped in %.1fms", (time.perf_counter() - started) * 1000.0)


@cli.command()
def sweep() -> None:
    """Reclaim upload and output files left behind by previous runs."""

    config = initialize_app()
    _prepare_logging(config.storage_root)

    service = RenderService(config)
    report = service.sweep()
    render_sweep_report(report)
    if report.errors:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
