"""
Static Site Provisioner - Main Entry Point
CLI interface for the boot-time provisioning sequence.

Includes:
- provision / redeploy: the host sequence
- render-config / check: dry inspection
- infra: Terraform declaration for the host itself
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from provisioner.config import (
    DEFAULT_ENV_FILE,
    ProvisionSettings,
    load_deployment_config,
    set_settings,
)
from provisioner.core.errors import ConfigurationError, ProvisioningError
from provisioner.core.executor import CommandExecutor
from provisioner.core.file_manager import FileManager
from provisioner.core.logger import setup_logging, show
from provisioner.core.security import InputValidator, SecretsMasker, SecurityError
from provisioner.models.deployment import ApplyMode
from provisioner.models.report import PipelineStatus

# CLI app
app = typer.Typer(
    name="provisioner",
    help="🚀 Boot-time provisioning for static single-page applications behind nginx",
    add_completion=False,
)

# Infrastructure subcommand group
infra_app = typer.Typer(
    name="infra",
    help="🏗️ Terraform declaration for the host (key pair, security group, instance)",
)
app.add_typer(infra_app, name="infra")

console = Console()


def print_header(title: str = "Static Site Provisioner"):
    """Print the application header."""
    console.print(Panel.fit(
        f"[bold blue]{title}[/bold blue]\n"
        "[dim]git → npm build → nginx[/dim]",
        border_style="blue",
    ))


def _print_error(error: ProvisioningError) -> None:
    show(f"[red]Error:[/red] {escape(error.message)}")
    if error.hint:
        show(f"[yellow]Hint:[/yellow] {escape(error.hint)}")
    if error.diagnostics:
        show(Text(SecretsMasker.mask_secrets(error.diagnostics), style="dim"))


def _load_settings(env_file: Optional[Path], verbose: bool, log: bool = True) -> ProvisionSettings:
    """Load the env file and settings, then route logging to the log file."""
    settings = ProvisionSettings.from_env(env_file)
    settings.verbose = settings.verbose or verbose
    set_settings(settings)
    setup_logging(settings.verbose, settings.log_file if log else None)
    return settings


def _check_settings(settings: ProvisionSettings) -> None:
    issues = settings.validate()
    if issues:
        raise ConfigurationError(
            "Invalid provisioner settings",
            hint="; ".join(issues),
        )


# Shared option definitions
RepoUrlOption = typer.Option(None, "--repo-url", "-r", help="Repository URL (PROVISION_REPO_URL)")
BranchOption = typer.Option(None, "--branch", "-b", help="Branch to deploy (PROVISION_BRANCH, default: main)")
AppNameOption = typer.Option(None, "--app-name", "-a", help="Application name (PROVISION_APP_NAME)")
EnvFileOption = typer.Option(
    None,
    "--env-file", "-e",
    help=f"Env file with PROVISION_* settings (default: {DEFAULT_ENV_FILE})",
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable verbose output")
JsonOption = typer.Option(False, "--json", help="Output results as JSON")


def _run_sequence(
    mode: ApplyMode,
    repo_url: Optional[str],
    branch: Optional[str],
    app_name: Optional[str],
    env_file: Optional[Path],
    verbose: bool,
    output_json: bool,
    upgrade: Optional[bool] = None,
) -> None:
    from provisioner.steps.orchestrator import ProvisionOrchestrator

    try:
        settings = _load_settings(env_file, verbose)
        if upgrade is not None:
            settings.upgrade_system = upgrade
        _check_settings(settings)
        config = load_deployment_config(repo_url=repo_url, branch=branch, app_name=app_name)
    except ProvisioningError as e:
        _print_error(e)
        raise typer.Exit(1)

    show(f"\n[bold]Repository:[/bold] {config.repo_url}")
    show(f"[bold]Branch:[/bold] {config.branch}")
    show(f"[bold]App Name:[/bold] {config.app_name}")
    show(f"[bold]Access Token:[/bold] {'provided' if config.has_token else 'none'}")
    show()

    try:
        orchestrator = ProvisionOrchestrator(settings=settings)
        report = asyncio.run(orchestrator.run(config, mode=mode))

        if output_json:
            console.print(json.dumps(report.to_dict(), indent=2))
        else:
            _print_report(report)

        raise typer.Exit(report.exit_code)

    except typer.Exit:
        raise
    except Exception as e:
        if verbose:
            console.print_exception()
        else:
            show(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)


@app.command()
def provision(
    repo_url: Optional[str] = RepoUrlOption,
    branch: Optional[str] = BranchOption,
    app_name: Optional[str] = AppNameOption,
    env_file: Optional[Path] = EnvFileOption,
    upgrade: Optional[bool] = typer.Option(
        None,
        "--upgrade/--no-upgrade",
        help="Run a full system package update first (PROVISION_UPGRADE_SYSTEM)",
    ),
    verbose: bool = VerboseOption,
    output_json: bool = JsonOption,
):
    """
    🚀 Provision this host and deploy the application.

    This will:
    1. Install git, Node.js, npm and nginx, and start nginx
    2. Clone the branch into ~/projects/<app-name>
    3. Install dependencies and build
    4. Point nginx at the build output, validate and restart it
    5. Write ~/deploy.sh for later redeploys

    Example:
        provisioner provision --repo-url https://github.com/user/app --app-name demo
    """
    print_header()
    _run_sequence(ApplyMode.PROVISION, repo_url, branch, app_name, env_file, verbose, output_json, upgrade)


@app.command()
def redeploy(
    repo_url: Optional[str] = RepoUrlOption,
    branch: Optional[str] = BranchOption,
    app_name: Optional[str] = AppNameOption,
    env_file: Optional[Path] = EnvFileOption,
    verbose: bool = VerboseOption,
    output_json: bool = JsonOption,
):
    """
    🔄 Pull the latest commit, rebuild and reload nginx.

    Runs source, build and service configuration against an already
    provisioned host. The nginx site is regenerated so a change of build
    output directory is picked up.
    """
    print_header("Static Site Provisioner - Redeploy")
    _run_sequence(ApplyMode.REDEPLOY, repo_url, branch, app_name, env_file, verbose, output_json)


@app.command("render-config")
def render_config(
    app_name: Optional[str] = AppNameOption,
    root: Optional[Path] = typer.Option(
        None,
        "--root",
        help="Document root (default: detected build output of the app checkout)",
    ),
    env_file: Optional[Path] = EnvFileOption,
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to a file instead of stdout"),
):
    """
    📄 Render the nginx site configuration without touching the system.
    """
    from provisioner.steps.build import detect_build_output
    from provisioner.steps.service_config import NginxSiteContext, render_site_config

    settings = _load_settings(env_file, verbose=False, log=False)
    app_name = app_name or os.getenv("PROVISION_APP_NAME", "")

    try:
        InputValidator.validate_app_name(app_name)
        if root is None:
            app_dir = settings.app_dir(app_name)
            artifact = detect_build_output(app_dir, settings.build_dir_candidates)
            root = artifact.path if artifact else app_dir / settings.build_dir_candidates[0]
        content = render_site_config(FileManager(), NginxSiteContext(app_name=app_name, root=root.absolute()))
    except (SecurityError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    if output:
        output.write_text(content)
        console.print(f"[green]✓[/green] Wrote {output}")
    else:
        typer.echo(content, nl=False)


@app.command()
def check(
    env_file: Optional[Path] = EnvFileOption,
):
    """
    🔧 Check prerequisites and configuration.

    Verifies:
    - Deployment settings (PROVISION_* variables)
    - git, node, npm and nginx
    - SELinux and firewalld state
    - Terraform installation (optional)
    """
    print_header()

    settings = _load_settings(env_file, verbose=False, log=False)

    # Create results table
    table = Table(title="Prerequisites Check")
    table.add_column("Component", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Details")

    try:
        config = load_deployment_config()
        table.add_row("Deployment", "✅ Valid", f"{config.app_name} from {config.repo_url} ({config.branch})")
        table.add_row(
            "Access Token",
            "✅ Set" if config.has_token else "⚠️ Not set",
            "GITHUB_TOKEN" if config.has_token else "Only needed for private repositories",
        )
    except ConfigurationError as e:
        table.add_row("Deployment", "❌ Invalid", e.message)

    for issue in settings.validate():
        table.add_row("Settings", "❌ Invalid", issue)

    executor = CommandExecutor()

    async def probe_tools():
        rows = []
        for tool, flag, required in (
            ("git", "--version", True),
            ("node", "--version", True),
            ("npm", "--version", True),
            ("nginx", "-v", True),
            ("terraform", "version", False),
        ):
            version = await executor.get_tool_version(tool, flag)
            if version:
                rows.append((tool, "✅ Found", version))
            elif required:
                rows.append((tool, "❌ Not found", "Installed by `provisioner provision`"))
            else:
                rows.append((tool, "⚠️ Not found", "Optional - needed for `provisioner infra`"))

        from provisioner.core.system_state import Firewall, SELinux
        selinux_mode = await SELinux(executor, executor.logger).mode()
        rows.append(("SELinux", "ℹ️", selinux_mode or "not available"))
        firewalld = await Firewall(executor, executor.logger).is_active()
        rows.append(("firewalld", "ℹ️", "active" if firewalld else "inactive"))
        return rows

    for row in asyncio.run(probe_tools()):
        table.add_row(*row)

    table.add_row("Log File", "ℹ️", str(settings.log_file))
    table.add_row("Redeploy Script", "ℹ️", str(settings.redeploy_script))

    console.print()
    console.print(table)


def _print_report(report):
    """Print the provisioning report."""
    # Status colors
    status_colors = {
        PipelineStatus.SUCCESS: "green",
        PipelineStatus.FAILED: "red",
        PipelineStatus.RUNNING: "blue",
        PipelineStatus.PENDING: "dim",
    }
    color = status_colors.get(report.status, "white")

    # Main status panel
    show(Panel(
        f"[bold {color}]{report.status.value.upper()}[/bold {color}]\n"
        f"Duration: {report.total_duration_seconds:.1f}s",
        title=f"{report.mode.value.title()}: {report.run_id}",
        border_style=color,
    ))

    # Steps table
    table = Table(title="Steps")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Duration")
    table.add_column("Message")

    for step in report.steps:
        status_icon = "✅" if step.success else "❌"
        table.add_row(
            step.step.value,
            status_icon,
            f"{step.duration_seconds:.1f}s",
            escape(step.message[:60]) if step.message else "-",
        )

    show(table)

    # Deployment details
    if report.artifact:
        show(f"\n[bold]📦 Build Path:[/bold] {report.artifact.path}")
    if report.nginx_config_path:
        show(f"[bold]📄 Nginx Config:[/bold] {report.nginx_config_path}")
    if report.redeploy_script_path:
        show(f"[bold]🔄 Deploy Script:[/bold] {report.redeploy_script_path}")
    if report.public_address:
        show(f"\n[bold green]🚀 URL:[/bold green] http://{report.public_address}")

    # Warnings and errors
    for warning in report.warnings:
        show(f"[yellow]⚠️ {escape(warning)}[/yellow]")
    if report.errors:
        show("\n[bold red]Errors:[/bold red]")
        for error in report.errors:
            show(f"  ❌ {escape(error)}")
        for step in report.steps:
            if step.hint:
                show(f"  💡 {escape(step.hint)}")


# ═══════════════════════════════════════════════════════════════════════════════
# INFRASTRUCTURE COMMANDS
# ═══════════════════════════════════════════════════════════════════════════════

InfraDirOption = typer.Option(Path("infra"), "--dir", "-d", help="Directory holding the Terraform files")


def _infra_step(settings: Optional[ProvisionSettings] = None):
    """Infrastructure step with paths relative to the current directory."""
    from provisioner.steps.infrastructure import InfrastructureStep
    return InfrastructureStep(settings=settings, file_manager=FileManager())


@infra_app.command("render")
def infra_render(
    public_key: Path = typer.Option(..., "--public-key", help="SSH public key for the instance key pair"),
    vpc_id: str = typer.Option(..., "--vpc-id", help="Network (VPC) id"),
    ami_id: str = typer.Option(..., "--ami-id", help="Image (AMI) id"),
    name: Optional[str] = typer.Option(None, "--name", help="Resource name prefix (default: app name)"),
    instance_type: str = typer.Option("t3.micro", "--instance-type", help="Instance type"),
    region: str = typer.Option("us-east-1", "--region", help="Region"),
    subnet_id: Optional[str] = typer.Option(None, "--subnet-id", help="Subnet id (default subnet if unset)"),
    package_spec: str = typer.Option(
        "static-site-provisioner",
        "--package",
        help="pip requirement the instance installs the provisioner from",
    ),
    repo_url: Optional[str] = RepoUrlOption,
    branch: Optional[str] = BranchOption,
    app_name: Optional[str] = AppNameOption,
    env_file: Optional[Path] = EnvFileOption,
    directory: Path = InfraDirOption,
):
    """
    🏗️ Render main.tf, terraform.tfvars.json and the first-boot user-data.
    """
    from provisioner.steps.infrastructure import build_infra_spec, render_user_data

    try:
        settings = _load_settings(env_file, verbose=False, log=False)
        config = load_deployment_config(repo_url=repo_url, branch=branch, app_name=app_name)
        step = _infra_step(settings)
        user_data = render_user_data(step.file_manager, config, settings.env_file, package_spec)
        spec = build_infra_spec(
            name=name or config.app_name,
            public_key_path=public_key,
            vpc_id=vpc_id,
            ami_id=ami_id,
            user_data=user_data,
            instance_type=instance_type,
            region=region,
            subnet_id=subnet_id,
        )
        rendered = asyncio.run(step.render(spec, directory))
    except ProvisioningError as e:
        _print_error(e)
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)

    for path in rendered.files:
        console.print(f"  📄 {path}")


@infra_app.command("plan")
def infra_plan(directory: Path = InfraDirOption, verbose: bool = VerboseOption):
    """📋 Show what Terraform would change."""
    setup_logging(verbose)
    try:
        plan = asyncio.run(_infra_step().plan(directory))
    except ProvisioningError as e:
        _print_error(e)
        raise typer.Exit(1)

    if plan.has_changes:
        console.print(f"\n[bold]Plan:[/bold] +{plan.add} ~{plan.change} -{plan.destroy}")
    else:
        console.print("\n[green]No changes.[/green]")


@infra_app.command("apply")
def infra_apply(
    directory: Path = InfraDirOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    verbose: bool = VerboseOption,
    output_json: bool = JsonOption,
):
    """🚀 Create or update the instance."""
    setup_logging(verbose)
    if not yes:
        typer.confirm(f"Apply the Terraform configuration in {directory}?", abort=True)

    try:
        result = asyncio.run(_infra_step().apply(directory))
    except ProvisioningError as e:
        _print_error(e)
        raise typer.Exit(1)

    if output_json:
        console.print(json.dumps(result.outputs, indent=2))
        return

    table = Table(title="Outputs")
    table.add_column("Output", style="cyan")
    table.add_column("Value", style="green")
    for key, value in result.outputs.items():
        table.add_row(key, str(value))
    console.print(table)


@infra_app.command("destroy")
def infra_destroy(
    directory: Path = InfraDirOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    verbose: bool = VerboseOption,
):
    """🗑️ Destroy the instance, security group and key pair."""
    setup_logging(verbose)
    if not yes:
        typer.confirm(f"Destroy everything managed from {directory}?", abort=True)

    try:
        asyncio.run(_infra_step().destroy(directory))
    except ProvisioningError as e:
        _print_error(e)
        raise typer.Exit(1)

    console.print("[green]✓[/green] Destroyed")


if __name__ == "__main__":
    app()
