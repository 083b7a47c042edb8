"""tailsync command line.

Usage:
    tailsync run                      # Run the controller (options or env vars)
    tailsync version                  # Print the version
    tailsync check-filter 'k8s-.*' --tag tag:k8s-prod
                                      # Evaluate a device filter locally
"""

from __future__ import annotations

import asyncio
import sys

import click

from . import __version__
from .config import (
    DEFAULT_CONTROLLER_NAME,
    DEFAULT_HEALTH_PORT,
    DEFAULT_RECONCILE_INTERVAL_SECONDS,
    DEFAULT_REQUEST_TIMEOUT_SECONDS,
    DEFAULT_TAILSCALE_BASE_URL,
    DEFAULT_WEBHOOK_PORT,
    VALID_LOG_LEVELS,
    Config,
    ConfigurationError,
    LogFormat,
    detect_namespace,
    resolve_secret,
)
from .main import EXIT_FAILURE, run_controller, setup_logging
from .tag_filter import InvalidTagPatternError, build_tag_filter


def _split_filters(values: tuple[str, ...]) -> tuple[str, ...]:
    """Accept both repeated options and comma-separated env values."""
    return tuple(
        item.strip() for value in values for item in value.split(",") if item.strip()
    )


@click.group()
@click.version_option(version=__version__, prog_name="tailsync")
def cli() -> None:
    """tailsync - mirror Tailscale devices into Argo CD cluster Secrets."""
    pass


# =============================================================================
# Run
# =============================================================================


@cli.command()
@click.option("--tailnet", envvar="TAILSCALE_TAILNET", default="", help="Tailnet to synchronize")
@click.option("--auth-key", envvar="TAILSCALE_AUTH_KEY", default=None, help="OAuth client key")
@click.option(
    "--auth-key-file",
    envvar="TAILSCALE_AUTH_KEY_FILE",
    default=None,
    type=click.Path(dir_okay=False),
    help="File holding the OAuth client key",
)
@click.option(
    "--base-url", envvar="TAILSCALE_BASE_URL", default=DEFAULT_TAILSCALE_BASE_URL, show_default=True
)
@click.option(
    "--device-filter",
    "device_filters",
    envvar="TAILSCALE_DEVICE_FILTERS",
    multiple=True,
    help="Tag pattern, repeatable or comma-separated (default: every device)",
)
@click.option("--namespace", envvar="NAMESPACE", default=None, help="Namespace of the Secrets")
@click.option(
    "--controller-name", envvar="CONTROLLER_NAME", default=DEFAULT_CONTROLLER_NAME, show_default=True
)
@click.option(
    "--reconcile-interval",
    envvar="RECONCILE_INTERVAL",
    type=int,
    default=DEFAULT_RECONCILE_INTERVAL_SECONDS,
    show_default=True,
    help="Seconds between full synchronizations",
)
@click.option(
    "--request-timeout",
    envvar="REQUEST_TIMEOUT",
    type=int,
    default=DEFAULT_REQUEST_TIMEOUT_SECONDS,
    show_default=True,
)
@click.option("--service-create/--no-service-create", envvar="SERVICE_CREATE", default=False)
@click.option("--service-proxy-class", envvar="SERVICE_PROXY_CLASS", default=None)
@click.option("--webhook/--no-webhook", "webhook_enabled", envvar="TAILSCALE_WEBHOOK_ENABLE", default=False)
@click.option(
    "--webhook-port", envvar="TAILSCALE_WEBHOOK_PORT", type=int, default=DEFAULT_WEBHOOK_PORT, show_default=True
)
@click.option("--webhook-secret", envvar="TAILSCALE_WEBHOOK_SECRET", default=None)
@click.option(
    "--webhook-secret-file",
    envvar="TAILSCALE_WEBHOOK_SECRET_FILE",
    default=None,
    type=click.Path(dir_okay=False),
)
@click.option(
    "--health-port",
    envvar="HEALTH_PORT",
    type=int,
    default=DEFAULT_HEALTH_PORT,
    show_default=True,
    help="Probe port, 0 disables",
)
@click.option(
    "--log-level",
    envvar="LOG_LEVEL",
    type=click.Choice(VALID_LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
@click.option(
    "--log-format",
    envvar="LOG_FORMAT",
    type=click.Choice([f.value for f in LogFormat], case_sensitive=False),
    default=LogFormat.JSON.value,
    show_default=True,
)
def run(
    tailnet: str,
    auth_key: str | None,
    auth_key_file: str | None,
    base_url: str,
    device_filters: tuple[str, ...],
    namespace: str | None,
    controller_name: str,
    reconcile_interval: int,
    request_timeout: int,
    service_create: bool,
    service_proxy_class: str | None,
    webhook_enabled: bool,
    webhook_port: int,
    webhook_secret: str | None,
    webhook_secret_file: str | None,
    health_port: int,
    log_level: str,
    log_format: str,
) -> None:
    """Run the controller until SIGTERM/SIGINT."""
    try:
        config = Config(
            tailnet=tailnet,
            auth_key=resolve_secret("TAILSCALE_AUTH_KEY", auth_key, auth_key_file) or "",
            namespace=namespace or detect_namespace() or "",
            base_url=base_url,
            device_filters=_split_filters(device_filters),
            controller_name=controller_name,
            reconcile_interval_seconds=reconcile_interval,
            request_timeout_seconds=request_timeout,
            create_service=service_create,
            service_proxy_class=service_proxy_class or None,
            webhook_enabled=webhook_enabled,
            webhook_port=webhook_port,
            webhook_secret=resolve_secret(
                "TAILSCALE_WEBHOOK_SECRET", webhook_secret, webhook_secret_file
            ),
            health_port=health_port,
            log_level=log_level.upper(),
            log_format=LogFormat(log_format.lower()),
        )
    except ConfigurationError as e:
        click.secho(str(e), fg="red", err=True)
        sys.exit(EXIT_FAILURE)

    setup_logging(config.log_level, config.log_format)
    sys.exit(asyncio.run(run_controller(config)))


# =============================================================================
# Utilities
# =============================================================================


@cli.command()
def version() -> None:
    """Print the controller version."""
    click.echo(f"tailsync {__version__}")


@cli.command("check-filter")
@click.argument("patterns", nargs=-1)
@click.option("--tag", "tags", multiple=True, help="Device tag, e.g. tag:k8s-prod (repeatable)")
def check_filter(patterns: tuple[str, ...], tags: tuple[str, ...]) -> None:
    """Check whether a device with TAGS passes a filter made of PATTERNS.

    Exits 0 on match and 1 otherwise.
    """
    try:
        tag_filter = build_tag_filter(_split_filters(patterns))
    except InvalidTagPatternError as e:
        raise click.BadParameter(str(e), param_hint="PATTERNS") from e

    if tag_filter.regex is not None:
        click.echo(f"Filter: {tag_filter.regex.pattern}")
    else:
        click.echo("Filter: (none, every device matches)")

    if tag_filter.match_tags(tags):
        click.secho("✓ Device matches", fg="green")
        return
    click.secho("✗ Device does not match", fg="yellow")
    sys.exit(1)
