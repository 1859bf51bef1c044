"""Command line interface for provisioning the calendar automation identity."""
from __future__ import annotations

import contextlib
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Callable, NoReturn, Optional

import typer

from .arm_client import ResourceManagerClient
from .auth import TokenProvider
from .certificates import validate_passphrase
from .config import AppConfig, ConfigurationError, DirectoryConfig, load_config
from .errors import ProvisioningError
from .graph_client import DirectoryClient
from .identity_stage import DEFAULT_DISPLAY_NAME, provision_identity
from .models import PermissionLevel, StageReport
from .permission_stage import grant_permissions
from .reporting import render_report
from .site_client import SiteAdminClient, validate_site_url
from .site_stage import grant_site_access
from .state import load_state, resolve_application

app = typer.Typer(help="Provision the identity and permissions used by the calendar event automation.")
logger = logging.getLogger(__name__)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


def _token_provider(directory: DirectoryConfig) -> TokenProvider:
    return TokenProvider(directory, prompt=lambda message: typer.echo(message, err=True))


def _fail(message: object) -> NoReturn:
    typer.secho(f"Error: {message}", fg=typer.colors.RED, err=True)
    raise typer.Exit(code=1)


def _run_stage(run: Callable[[], StageReport]) -> None:
    """Render the report and exit non-zero only when the stage aborted or crashed."""

    try:
        report = run()
    except (ProvisioningError, ConfigurationError) as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    except Exception as exc:  # noqa: BLE001 - last-resort boundary for unexpected failures
        logger.exception("Unexpected failure")
        typer.secho(f"Unexpected error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)

    render_report(report)
    if report.exit_code:
        raise typer.Exit(code=report.exit_code)


@app.command("create-identity")
def create_identity(
    automation_account: str = typer.Option(
        ..., "--automation-account", help="Automation account that receives the certificate."
    ),
    resource_group: str = typer.Option(
        ..., "--resource-group", help="Resource group of the Automation account."
    ),
    display_name: str = typer.Option(
        DEFAULT_DISPLAY_NAME, "--display-name", help="Display name of the application registration."
    ),
    password: str = typer.Option(
        ...,
        "--password",
        help="Password protecting the exported PFX (at least 8 characters).",
        prompt="Certificate password",
        hide_input=True,
        confirmation_prompt=True,
    ),
    cert_dir: Optional[Path] = typer.Option(
        None, "--cert-dir", help="Directory for the .cer/.pfx files (defaults to settings)."
    ),
    subscription_id: Optional[str] = typer.Option(
        None, "--subscription-id", help="Subscription containing the Automation account."
    ),
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", help="Where to write the provisioning state."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Create the certificate and application registration, then import the certificate."""

    try:
        validate_passphrase(password)
    except ProvisioningError as exc:
        _fail(exc)
    config = _load_configuration(config_path)

    def run() -> StageReport:
        tokens = _token_provider(config.directory)
        subscription = subscription_id or config.resource_manager.subscription_id
        with contextlib.ExitStack() as stack:
            directory = stack.enter_context(DirectoryClient(tokens))
            resource_manager = (
                stack.enter_context(ResourceManagerClient(tokens, subscription)) if subscription else None
            )
            return provision_identity(
                directory,
                resource_manager,
                display_name=display_name,
                passphrase=password,
                grants=config.permissions,
                certificate_dir=cert_dir or config.storage.certificate_dir,
                state_path=state_file or config.storage.state_file,
                environment_name=automation_account,
                resource_group=resource_group,
            )

    _run_stage(run)


@app.command("grant-permissions")
def grant_permissions_command(
    app_id: Optional[str] = typer.Option(
        None, "--app-id", help="Application (client) id; defaults to the provisioning state."
    ),
    tenant_id: Optional[str] = typer.Option(
        None,
        "--tenant-id",
        help="Tenant id override; taken from the provisioning state only when it records the same application.",
    ),
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", help="Provisioning state written by create-identity."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Grant every configured application permission to the service principal."""

    config = _load_configuration(config_path)

    def run() -> StageReport:
        resolved_app, resolved_tenant, _ = resolve_application(
            state_file or config.storage.state_file, app_id, tenant_id
        )
        directory_config = config.directory
        if resolved_tenant and directory_config.tenant_id == DirectoryConfig().tenant_id:
            directory_config = replace(directory_config, tenant_id=resolved_tenant)
        with DirectoryClient(_token_provider(directory_config)) as directory:
            return grant_permissions(
                directory,
                app_id=resolved_app,
                tenant_id=resolved_tenant,
                grants=config.permissions,
                consent=config.consent,
                verification=config.verification,
            )

    _run_stage(run)


@app.command("grant-site")
def grant_site(
    site_url: str = typer.Option(
        ..., "--site-url", help="SharePoint site, e.g. https://contoso.sharepoint.com/sites/events."
    ),
    level: str = typer.Option("Write", "--level", help="Read, Write or FullControl."),
    app_id: Optional[str] = typer.Option(
        None, "--app-id", help="Application (client) id; defaults to the provisioning state."
    ),
    display_name: Optional[str] = typer.Option(
        None, "--display-name", help="Display name recorded with the grant."
    ),
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", help="Provisioning state written by create-identity."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Grant the application access to a single SharePoint site."""

    try:
        permission_level = PermissionLevel.parse(level)
    except ValueError as exc:
        raise typer.BadParameter(str(exc), param_hint="--level")
    try:
        site_url = validate_site_url(site_url)
    except ValueError as exc:
        _fail(exc)
    config = _load_configuration(config_path)

    def run() -> StageReport:
        resolved_app, resolved_tenant, state = resolve_application(
            state_file or config.storage.state_file, app_id
        )
        name = display_name or (state.display_name if state else None) or DEFAULT_DISPLAY_NAME
        directory_config = config.directory
        if resolved_tenant and directory_config.tenant_id == DirectoryConfig().tenant_id:
            directory_config = replace(directory_config, tenant_id=resolved_tenant)
        tokens = _token_provider(directory_config)
        return grant_site_access(
            lambda admin_url: SiteAdminClient(tokens, admin_url),
            app_id=resolved_app,
            display_name=name,
            site_url=site_url,
            level=permission_level,
            verification=config.verification,
        )

    _run_stage(run)


@app.command("show-state")
def show_state(
    state_file: Optional[Path] = typer.Option(
        None, "--state-file", help="Provisioning state written by create-identity."
    ),
    config_path: Optional[Path] = typer.Option(
        None, "--config", help="Path to a specific settings file (overrides default)."
    ),
) -> None:
    """Display the persisted provisioning state."""

    config = _load_configuration(config_path)
    try:
        state = load_state(state_file or config.storage.state_file)
    except ProvisioningError as exc:
        typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    typer.echo(json.dumps(state.to_dict(), indent=2))


def run():
    app()


if __name__ == "__main__":
    run()
