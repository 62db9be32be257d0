"""Ephemera CLI - Command line interface."""

from __future__ import annotations

import asyncio
import logging
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

console = Console()

BANNER = r"""
  ___ ___ _  _ ___ __  __ ___ ___    _
 | __| _ \ || | __|  \/  | __| _ \  /_\
 | _||  _/ __ | _|| |\/| | _||   / / _ \
 |___|_| |_||_|___|_|  |_|___|_|_\/_/ \_\
      Short-lived databases, on demand
"""

SECRET_FIELDS = {"shared_secret", "oauth_client_secret"}


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper())
        ),
    )


def load_config(config_file: str | None):
    """Load the server config from a file, or from the environment alone."""
    from ephemera.core.config import ServerConfig

    if config_file:
        return ServerConfig.from_file(config_file)
    return ServerConfig()


@click.group()
def main():
    """Ephemera - Short-lived databases, on demand."""


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default=None,
    help="Log level (default: the log_level config value)",
)
def server(config_file: str | None, log_level: str | None):
    """Run the ephemera API server."""
    from ephemera.server.main import run_server

    try:
        cfg = load_config(config_file)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    configure_logging(log_level or cfg.log_level)

    console.print(BANNER, style="cyan")
    console.print(f"Listening on {cfg.http_listen_address}", style="yellow")
    console.print(f"Environment: {cfg.environment}", style="dim")
    console.print(f"Instance ports: {cfg.min_instance_port}-{cfg.max_instance_port - 1}", style="dim")
    if cfg.enable_ip_whitelisting:
        console.print(f"IP whitelisting: enabled (chain: {cfg.whitelist_chain_name})", style="green")
    else:
        console.print("IP whitelisting: disabled", style="dim")

    try:
        asyncio.run(run_server(cfg))
    except KeyboardInterrupt:
        pass
    console.print("[green]Server stopped.[/green]")


@main.command()
def version():
    """Show version information."""
    from ephemera import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


@main.group()
def config():
    """Inspect and validate server configuration.

    All settings can be configured via environment variables with the
    EPHEMERA_ prefix, or from a YAML/TOML file passed with --config.
    """


@config.command("show")
@click.option("--config", "-c", "config_file", type=click.Path(exists=True), help="Config file")
def config_show(config_file: str | None):
    """Show the effective configuration, secrets masked."""
    try:
        cfg = load_config(config_file)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    table = Table(title="Ephemera Configuration")
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="green")
    table.add_column("Env Variable", style="dim")

    for key, value in cfg.model_dump().items():
        if key in SECRET_FIELDS:
            value_str = "********" if value else "[dim]unset[/dim]"
        else:
            value_str = str(value) if value is not None else "[dim]None[/dim]"
        table.add_row(key, value_str, f"EPHEMERA_{key.upper()}")

    console.print(table)


@config.command("validate")
@click.option("--config", "-c", "config_file", type=click.Path(exists=True), help="Config file")
def config_validate(config_file: str | None):
    """Validate configuration.

    Checks that all config values are valid and that the settings needed by
    a production server are present.
    """
    try:
        cfg = load_config(config_file)
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)

    warnings = []
    if not cfg.oauth_client_id or not cfg.oauth_client_secret:
        warnings.append("oauth_client_id and oauth_client_secret are not set")
    if not cfg.trusted_user_email_domain:
        warnings.append("trusted_user_email_domain is not set, no OAuth user can authenticate")
    if not cfg.shared_secret:
        warnings.append("shared_secret is not set, the upload user is disabled")
    if not cfg.tls_enabled:
        warnings.append("TLS is not configured, the API will be served over plain HTTP")

    if warnings:
        console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
        for warning in warnings:
            console.print(f"  [yellow]![/yellow] {warning}")
        console.print()
        console.print("[green]OK - Configuration is valid (with warnings)[/green]")
    else:
        console.print("[green]OK - Configuration is valid[/green]")


if __name__ == "__main__":
    main()
