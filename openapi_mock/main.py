"""Entry point for the openapi-mock command line."""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Optional

import typer

if __package__ in {None, ""}:
    sys.path.append(str(Path(__file__).resolve().parents[1]))
    __package__ = "openapi_mock"

from .errors import MockServerError
from .logging_utils import configure_logging
from .manager import MockServerManager
from .models import ErrorSimulationConfig, ManagerConfig, PortRange, ServerConfig, ServerInstance
from .output_config import get_log_format
from .routing import RouteTable
from .spec_loader import api_id_for, load_api_document

app = typer.Typer(help="Serve OpenAPI documents as live mock HTTP services.")


def _load(spec_path: Path) -> dict:
    try:
        return load_api_document(spec_path)
    except MockServerError as exc:
        raise typer.BadParameter(exc.user_message) from exc


def _manager_config(port_start: Optional[int], port_end: Optional[int]) -> ManagerConfig:
    base = ManagerConfig.from_env()
    if port_start is None and port_end is None:
        return base
    port_range = PortRange(
        start=port_start if port_start is not None else base.port_range.start,
        end=port_end if port_end is not None else base.port_range.end,
    )
    return base.model_copy(update={"port_range": port_range})


def _print_instance(instance: ServerInstance) -> None:
    typer.secho(f"[openapi-mock] {instance.api_id} listening on {instance.base_url}", fg=typer.colors.GREEN)
    if not instance.endpoints:
        typer.echo("    (no endpoints declared)")
    for endpoint in instance.endpoints:
        lock = " [auth]" if endpoint.requires_auth else ""
        typer.echo(f"    - {endpoint.method} {endpoint.path}{lock}")


@app.command()
def serve(
    spec: list[Path] = typer.Argument(..., exists=True, readable=True, help="OpenAPI/Swagger documents to serve."),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Preferred port for the first document."),
    delay: Optional[int] = typer.Option(None, min=0, help="Artificial response delay in milliseconds."),
    no_auth: bool = typer.Option(False, "--no-auth", help="Skip security requirement validation."),
    no_cors: bool = typer.Option(False, "--no-cors", help="Do not add CORS headers."),
    error_probability: float = typer.Option(0.0, min=0.0, max=1.0, help="Share of requests answered with an error."),
    seed: Optional[int] = typer.Option(None, help="Seed for reproducible response data."),
    port_start: Optional[int] = typer.Option(None, help="First port of the allocation range."),
    port_end: Optional[int] = typer.Option(None, help="End (exclusive) of the allocation range."),
    run_seconds: Optional[float] = typer.Option(
        None,
        help="Stop after this many seconds instead of waiting for Ctrl+C.",
    ),
    log_level: str = typer.Option("INFO", help="Log level (DEBUG, INFO, WARNING, ERROR)."),
    log_format: Optional[str] = typer.Option(None, help="Log format: console, plain or json."),
) -> None:
    """Start one mock server per document and keep them running."""

    configure_logging(log_level, get_log_format(log_format))
    documents = [(spec_path, _load(spec_path)) for spec_path in spec]

    try:
        manager = MockServerManager(_manager_config(port_start, port_end))
    except MockServerError as exc:
        raise typer.BadParameter(exc.user_message) from exc

    try:
        for index, (spec_path, document) in enumerate(documents):
            config = ServerConfig(
                api_id=api_id_for(document, spec_path),
                port=port + index if port is not None else None,
                response_delay=delay,
                auth_validation=not no_auth,
                enable_cors=False if no_cors else None,
                error_simulation=ErrorSimulationConfig(
                    enabled=error_probability > 0,
                    error_probability=error_probability,
                ),
                seed=seed,
            )
            _print_instance(manager.create_server(config, document))

        if run_seconds is not None:
            time.sleep(run_seconds)
        else:
            typer.echo("Press Ctrl+C to stop.")
            while True:
                time.sleep(1)
    except MockServerError as exc:
        typer.secho(exc.user_message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        typer.echo("Stopping mock servers...")
    finally:
        manager.cleanup()


@app.command()
def routes(
    spec: Path = typer.Argument(..., exists=True, readable=True, help="OpenAPI/Swagger document to inspect."),
) -> None:
    """List the endpoints a mock server would serve for a document."""

    table = RouteTable(_load(spec))
    if table.base_path:
        typer.echo(f"base path: {table.base_path}")
    for endpoint in table.endpoints():
        codes = ",".join(str(code) for code in endpoint.response_codes)
        lock = " [auth]" if endpoint.requires_auth else ""
        summary = f"  {endpoint.summary}" if endpoint.summary else ""
        typer.echo(f"{endpoint.method:<7} {endpoint.path}{lock}  ({codes}){summary}")


def run() -> None:
    """Console_scripts hook."""

    app()


if __name__ == "__main__":  # pragma: no cover
    run()
