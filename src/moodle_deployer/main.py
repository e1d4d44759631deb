"""Main entry point for the Moodle deployer CLI."""

import functools
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.text import Text

from moodle_deployer import __version__
from moodle_deployer.clients import build_resource_client
from moodle_deployer.config import Settings, load_settings
from moodle_deployer.core.cleanup import CleanupRunner
from moodle_deployer.core.errors import DeployerError, PlanValidationError, StageError
from moodle_deployer.core.ledger import LedgerStore
from moodle_deployer.core.orchestrator import Orchestrator, new_ledger
from moodle_deployer.core.plan import DeploymentPlan, build_plan, new_seed
from moodle_deployer.core.preflight import check_tools, resolve_hosted_zone, resolve_identity
from moodle_deployer.core.state import DeploymentLedger
from moodle_deployer.reporting import print_cleanup_report, print_ledger, print_plan, print_record, resource_table
from moodle_deployer.stages import PollPolicies

console = Console()
logger = logging.getLogger(__name__)

# CLI option name -> Settings field
OPTION_FIELDS = {
    "region": "region",
    "cluster_name": "eks_cluster_name",
    "node_type": "node_type",
    "min_nodes": "min_nodes",
    "max_nodes": "max_nodes",
    "db_class": "rds_instance_class",
    "min_pods": "min_pods",
    "max_pods": "max_pods",
    "target_cpu": "target_cpu",
    "domain": "domain_name",
    "seed": "seed",
    "state_dir": "state_dir",
    "deployment_name": "deployment_name",
}


def print_banner() -> None:
    """Print the application banner."""
    banner = Text()
    banner.append("Moodle Deployer", style="bold blue")
    banner.append(f" v{__version__}\n", style="dim")
    banner.append("Moodle LMS on Amazon EKS", style="italic")

    console.print(Panel(banner, title="[bold]moodle-deploy[/bold]", border_style="blue"))


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=False)],
        force=True,
    )
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def deployment_options(f: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by every command; they override file and environment."""
    options = [
        click.option("--config", "-c", "config_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
                     help="YAML settings file"),
        click.option("--deployment-name", "-n", help="Deployment name (selects the ledger)"),
        click.option("--state-dir", type=click.Path(file_okay=False, path_type=Path),
                     help="Directory for ledger, kubeconfig and keys"),
        click.option("--seed", help="Seed for identifier suffixes"),
        click.option("--region", "-r", help="AWS region"),
        click.option("--cluster-name", help="Use this EKS cluster name verbatim"),
        click.option("--node-type", help="Worker node instance type"),
        click.option("--min-nodes", type=int, help="Minimum worker nodes"),
        click.option("--max-nodes", type=int, help="Maximum worker nodes"),
        click.option("--db-class", help="RDS instance class"),
        click.option("--min-pods", type=int, help="HPA minimum replicas"),
        click.option("--max-pods", type=int, help="HPA maximum replicas"),
        click.option("--target-cpu", type=int, help="HPA target CPU percent"),
        click.option("--domain", help="Route 53 domain name"),
    ]

    @functools.wraps(f)
    def wrapper(config_file: Optional[Path], **kwargs: Any) -> Any:
        overrides = {OPTION_FIELDS[name]: kwargs.pop(name) for name in list(kwargs) if name in OPTION_FIELDS}
        try:
            settings = load_settings(config_file, **overrides)
        except ValueError as e:
            console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
            sys.exit(2)
        setup_logging(settings.log_level)
        return f(settings, **kwargs)

    for option in reversed(options):
        wrapper = option(wrapper)
    return wrapper


def resolve_plan(settings: Settings, ledger: Optional[DeploymentLedger]) -> DeploymentPlan:
    """Build the plan, keeping the seed an existing ledger was created with."""
    if ledger is not None:
        if settings.seed and settings.seed != ledger.seed:
            logger.warning(f"Ignoring seed {settings.seed}; ledger was created with {ledger.seed}")
        seed = ledger.seed
    else:
        seed = settings.seed or new_seed()
    return build_plan(settings, seed)


def plan_or_exit(settings: Settings, ledger: Optional[DeploymentLedger]) -> DeploymentPlan:
    try:
        return resolve_plan(settings, ledger)
    except PlanValidationError as e:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        sys.exit(2)


def kubeconfig_path(settings: Settings) -> Path:
    return settings.state_dir / f"{settings.deployment_name}.kubeconfig"


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """Moodle Deployer - provision and tear down Moodle on Amazon EKS."""
    pass


@cli.command()
@deployment_options
def plan(settings: Settings) -> None:
    """Show the resources a deployment would use, without touching AWS."""
    store = LedgerStore(settings.ledger_path)
    deployment_plan = plan_or_exit(settings, store.load())
    print_plan(console, deployment_plan)


@cli.command()
@deployment_options
def deploy(settings: Settings) -> None:
    """Provision (or resume provisioning) the Moodle deployment."""
    print_banner()
    store = LedgerStore(settings.ledger_path)

    ledger = store.load()
    deployment_plan = plan_or_exit(settings, ledger)
    try:
        check_tools()
        client = build_resource_client(settings, kubeconfig_path(settings))
        identity = resolve_identity(client.aws)
        resolve_hosted_zone(client.aws, deployment_plan)
    except DeployerError as e:
        console.print(f"[red]Preflight failed:[/red] {escape(str(e))}")
        sys.exit(1)

    if ledger is None:
        ledger = new_ledger(deployment_plan)
    ledger.account_id = identity["account"]

    console.print(f"\n[green]Deployment:[/green] {deployment_plan.deployment_name}")
    console.print(f"[green]Cluster:[/green] {deployment_plan.cluster.name}")
    console.print(f"[green]Region:[/green] {deployment_plan.region}")
    console.print(f"[green]Ledger:[/green] {store.path}\n")

    orchestrator = Orchestrator(
        client=client,
        store=store,
        policies=PollPolicies.from_settings(settings),
        state_dir=settings.state_dir,
        retry_attempts=settings.stage_retry_attempts,
    )
    try:
        record = orchestrator.run(deployment_plan, ledger)
    except StageError as e:
        console.print(f"\n[bold red]Stage '{e.stage_id}' failed:[/bold red] {escape(str(e.cause))}")
        print_ledger(console, e.ledger)
        console.print("[yellow]Rerun deploy to resume, or cleanup to remove what was created.[/yellow]")
        sys.exit(1)
    except DeployerError as e:
        console.print(f"[red]{escape(str(e))}[/red]")
        sys.exit(1)
    except KeyboardInterrupt:
        console.print(f"\n[yellow]Interrupted. Progress saved to {store.path}.[/yellow]")
        sys.exit(130)

    print_record(console, record)


@cli.command()
@deployment_options
def status(settings: Settings) -> None:
    """Show the recorded state of a deployment."""
    store = LedgerStore(settings.ledger_path)
    ledger = store.load()
    if ledger is None:
        console.print(f"[dim]No ledger at {store.path}.[/dim]")
        return

    console.print(Panel.fit(
        f"""[bold]Deployment:[/bold] {ledger.deployment_name}
[bold]Cluster:[/bold] {ledger.cluster_name}
[bold]Region:[/bold] {ledger.region}
[bold]Account:[/bold] {ledger.account_id or '-'}
[bold]Seed:[/bold] {ledger.seed}
[bold]Updated:[/bold] {ledger.updated_at:%Y-%m-%d %H:%M:%S}
""",
        title="Deployment Status",
        border_style="green",
    ))
    print_ledger(console, ledger)


@cli.command()
@deployment_options
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def cleanup(settings: Settings, yes: bool) -> None:
    """Delete every resource of the deployment."""
    store = LedgerStore(settings.ledger_path)
    ledger = store.load()

    client = build_resource_client(settings, kubeconfig_path(settings))
    runner = CleanupRunner(
        client=client,
        store=store,
        policies=PollPolicies.from_settings(settings),
        state_dir=settings.state_dir,
        retry_attempts=settings.stage_retry_attempts,
    )

    if ledger is None:
        if not settings.seed:
            console.print(f"[red]No ledger at {store.path}.[/red] Pass --seed to look the deployment up by name.")
            sys.exit(1)
        deployment_plan = plan_or_exit(settings, None)
        try:
            ledger = runner.discover(deployment_plan)
        except DeployerError as e:
            console.print(f"[red]{escape(str(e))}[/red]")
            sys.exit(1)

    if ledger.is_empty():
        console.print("[green]Nothing to clean up.[/green]")
        store.delete()
        return

    console.print(resource_table(ledger))
    if not yes and not Confirm.ask(
        f"[bold red]Delete all {len(ledger.all_handles())} resources of {ledger.deployment_name}?[/bold red]",
        console=console,
        default=False,
    ):
        console.print("[yellow]Cleanup cancelled.[/yellow]")
        return

    report = runner.run(ledger)
    print_cleanup_report(console, report)
    if not report.ok:
        sys.exit(1)
    console.print("[green]Cleanup complete.[/green]")


if __name__ == "__main__":
    cli()
