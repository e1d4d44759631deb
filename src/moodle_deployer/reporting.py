"""Console output for deployments, ledgers and cleanup runs."""

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from moodle_deployer.core.cleanup import CleanupReport
from moodle_deployer.core.orchestrator import DeploymentRecord
from moodle_deployer.core.plan import DeploymentPlan
from moodle_deployer.core.state import DeploymentLedger, StageStatus

STATUS_STYLES = {
    StageStatus.PENDING: "[dim]PENDING[/dim]",
    StageStatus.IN_PROGRESS: "[bold yellow]IN PROGRESS[/bold yellow]",
    StageStatus.DONE: "[bold green]DONE[/bold green]",
    StageStatus.FAILED: "[bold red]FAILED[/bold red]",
}


def stage_table(ledger: DeploymentLedger) -> Table:
    table = Table(title=f"Stages: {ledger.deployment_name}")
    table.add_column("Stage", style="cyan")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Finished", style="blue")
    table.add_column("Error", style="red")

    for stage_id, state in ledger.stages.items():
        table.add_row(
            stage_id,
            STATUS_STYLES.get(state.status, state.status.value),
            str(state.attempts),
            state.finished_at.strftime("%Y-%m-%d %H:%M:%S") if state.finished_at else "-",
            escape((state.error or "")[:80]) or "-",
        )
    return table


def resource_table(ledger: DeploymentLedger) -> Table:
    table = Table(title="Resources")
    table.add_column("Stage", style="cyan")
    table.add_column("Kind", style="magenta")
    table.add_column("ID", style="green")
    table.add_column("Details", style="dim")

    for stage_id, state in ledger.stages.items():
        for handle in state.handles:
            details = ", ".join(f"{k}={v}" for k, v in handle.attributes.items())
            table.add_row(stage_id, handle.kind.value, handle.id, escape(details) or "-")
    return table


def print_ledger(console: Console, ledger: DeploymentLedger) -> None:
    console.print(stage_table(ledger))
    if ledger.is_empty():
        console.print("[dim]No resources recorded.[/dim]")
    else:
        console.print(resource_table(ledger))


def print_plan(console: Console, plan: DeploymentPlan) -> None:
    """Show the identifiers and sizing a deployment will use."""
    cluster, database, storage = plan.cluster, plan.database, plan.storage
    console.print(Panel.fit(
        f"""[bold]Deployment:[/bold] {plan.deployment_name} (seed {plan.seed}, suffix {plan.suffix})
[bold]Region:[/bold] {plan.region}
[bold]Cluster:[/bold] {cluster.name} ({cluster.node_type}, {cluster.min_nodes}-{cluster.max_nodes} nodes)
[bold]Key pair:[/bold] {cluster.key_pair_name}
[bold]Database:[/bold] {database.identifier} ({database.engine}, {database.instance_class}, {database.allocated_storage} GiB)
[bold]Credential secret:[/bold] {database.credential_secret_name}
[bold]EFS token:[/bold] {storage.efs_creation_token}
[bold]S3 bucket:[/bold] {storage.bucket_name}
[bold]Pods:[/bold] {plan.scaling.min_pods}-{plan.scaling.max_pods} at {plan.scaling.target_cpu}% CPU
[bold]URL:[/bold] {plan.url}
""",
        title="Deployment Plan",
        border_style="blue",
    ))


def print_record(console: Console, record: DeploymentRecord) -> None:
    console.print(Panel.fit(
        f"""[bold]Moodle URL:[/bold] {record.url}
[bold]Cluster:[/bold] {record.cluster_name}
[bold]Database endpoint:[/bold] {record.db_endpoint or '-'}
[bold]EFS:[/bold] {record.filesystem_id or '-'}
[bold]S3 bucket:[/bold] {record.bucket_name or '-'}
[bold]Load balancer:[/bold] {record.alb_hostname or '-'}
[bold]DNS record:[/bold] {record.dns_record or '-'}
""",
        title="Deployment Complete",
        border_style="green",
    ))


def print_cleanup_report(console: Console, report: CleanupReport) -> None:
    table = Table(title="Cleanup")
    table.add_column("Resource", style="cyan")
    table.add_column("Outcome")

    for resource in report.removed:
        table.add_row(resource, "[green]deleted[/green]")
    for resource in report.absent:
        table.add_row(resource, "[dim]already absent[/dim]")
    console.print(table)

    if report.errors:
        console.print(f"\n[red]{len(report.errors)} resource(s) could not be deleted:[/red]")
        for error in report.errors:
            console.print(f"  [red]- {escape(error)}[/red]")
