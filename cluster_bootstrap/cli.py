"""Main CLI entry point for cluster bootstrap."""

import os
from collections.abc import Callable
from pathlib import Path

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    OperationAbortedError,
    ValidationError,
)
from cluster_bootstrap.logging_config import get_logger, setup_logging
from cluster_bootstrap.models.credentials import PolicyRule, ServiceAccountGrant
from cluster_bootstrap.models.node import NodeState
from cluster_bootstrap.models.results import RunReport, StepOutcome
from cluster_bootstrap.orchestrator import Orchestrator, RBACRequest
from cluster_bootstrap.registry import NodeRegistry

app = typer.Typer(
    name="kubestrap",
    help="Idempotent kubeadm cluster bootstrap for a fleet of hosts",
    add_completion=False,
)

console = Console()
logger = get_logger(__name__)

DEFAULT_INVENTORY = "inventory/hosts.yml"

OUTCOME_STYLES = {
    StepOutcome.SUCCESS: "[green]✓ success[/green]",
    StepOutcome.SKIPPED: "[blue]- skipped[/blue]",
    StepOutcome.FAILED: "[red]✗ failed[/red]",
}

STATE_STYLES = {
    NodeState.UNCONFIGURED: "[dim]unconfigured[/dim]",
    NodeState.PREPARED: "[cyan]prepared[/cyan]",
    NodeState.INITIALIZED: "[green]initialized[/green]",
    NodeState.JOINED: "[green]joined[/green]",
    NodeState.FAILED: "[red]failed[/red]",
}

InventoryOption = typer.Option(
    DEFAULT_INVENTORY, "--inventory", "-i", help="Path to the fleet inventory file"
)
StateFileOption = typer.Option(
    None, "--state-file", help="Registry state file (default: <inventory>.state.yml)"
)
LimitOption = typer.Option(
    None, "--limit", "-l", help="Only target these hosts (comma-separated hostnames)"
)
DryRunOption = typer.Option(
    False, "--dry-run", help="Print mutating commands instead of running them"
)
TimeoutOption = typer.Option(
    None, "--timeout", help="Per-command timeout in seconds (overrides command_timeout)"
)
ShowTokenOption = typer.Option(
    False, "--show-token", help="Print the service account token (it is a secret)"
)
TokenFileOption = typer.Option(
    None, "--token-file", help="Write the service account token to this file (mode 0600)"
)
RulesFileOption = typer.Option(
    None,
    "--rules-file",
    help="YAML file with Role rules (apiGroups/resources/verbs); default: CI/CD deployer rules",
)


# Global callback to set up logging
@app.callback()
def main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
    log_file: str | None = typer.Option(None, "--log-file", help="Path to log file"),
):
    """Global options for all commands."""
    log_path = Path(log_file) if log_file else None
    setup_logging(verbose=verbose, log_file=log_path)
    logger.debug("Logging initialized")


def _split_limit(limit: str | None) -> list[str] | None:
    if not limit:
        return None
    return [h.strip() for h in limit.split(",") if h.strip()]


def load_rules(path: str | None) -> list[PolicyRule]:
    """Read Role rules from a YAML file.

    The file may hold a list of rules or a Role manifest with a `rules` key.

    Raises:
        ValidationError: If the file is missing or a rule is invalid
    """
    if not path:
        return []
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ValidationError(f"Failed to read rules file {path}: {e}")

    if isinstance(data, dict):
        data = data.get("rules")
    if not isinstance(data, list) or not data:
        raise ValidationError(
            f"Rules file {path} must contain a non-empty list of rules",
            "Each rule needs apiGroups, resources and verbs",
        )
    try:
        return [PolicyRule.from_manifest(rule) for rule in data]
    except (ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid rule in {path}: {e}")


def write_token_file(path: str, grant: ServiceAccountGrant) -> None:
    """Write the grant's token to path, readable only by the owner."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(grant.token.get_secret_value())
    os.chmod(path, 0o600)


def _load(
    inventory: str,
    state_file: str | None,
    dry_run: bool = False,
    **overrides,
) -> Orchestrator:
    orchestrator = Orchestrator.from_inventory(
        inventory, state_path=state_file, dry_run=dry_run, **overrides
    )
    if dry_run:
        console.print("[yellow]Mode: dry-run (no changes will be made)[/yellow]")
    return orchestrator


def _render_report(report: RunReport, title: str) -> None:
    results = report.results
    if not results:
        console.print("[yellow]No steps were run[/yellow]")
        return

    table = Table(title=title)
    table.add_column("Node", style="cyan")
    table.add_column("Step", style="magenta")
    table.add_column("Outcome")
    table.add_column("Detail")

    for result in results:
        outcome = OUTCOME_STYLES[result.outcome]
        if result.dry_run:
            outcome += " [yellow](dry-run)[/yellow]"
        detail = result.reason or ""
        if result.error_kind is not None:
            detail = f"{result.error_kind.value}: {detail}"
        table.add_row(result.node, result.step, outcome, escape(detail))

    console.print(table)


def _render_dry_run(orchestrator: Orchestrator) -> None:
    emitted = orchestrator.executor.emitted
    console.print(f"\n[bold]Commands that would run ({len(emitted)}):[/bold]")
    for target, command in emitted:
        console.print(f"  [cyan]{target}[/cyan] $ {escape(command)}", highlight=False)


def _finish(orchestrator: Orchestrator, title: str) -> None:
    """Render the run and exit non-zero if any step failed."""
    report = orchestrator.report
    _render_report(report, title)
    if orchestrator.dry_run:
        _render_dry_run(orchestrator)

    if report.aborted:
        console.print("\n[yellow]Run aborted[/yellow]")
        raise typer.Exit(code=130)

    first = report.first_fatal
    if first is not None:
        console.print(f"\n[red]✗ {len(report.failures)} step(s) failed.[/red]")
        console.print(f"[red]First error:[/red] {escape(first.describe())}")
        raise typer.Exit(code=report.exit_code)
    console.print("\n[green]✓ All steps completed[/green]")


def _execute(action: str, build: Callable[[], Orchestrator], body) -> None:
    """Run one command body with the CLI's error and interrupt handling."""
    orchestrator = None
    try:
        orchestrator = build()
        body(orchestrator)
    except typer.Exit:
        raise
    except (KeyboardInterrupt, OperationAbortedError):
        console.print(f"\n[yellow]{action} interrupted by user[/yellow]")
        if orchestrator is not None:
            orchestrator.abort()
        raise typer.Exit(code=130)
    except ClusterBootstrapError as e:
        if orchestrator is not None:
            _render_report(orchestrator.report, action)
        console.print(f"\n[red]Error:[/red] {e.message}")
        if e.details:
            console.print(f"  {escape(e.details)}", highlight=False)
        raise typer.Exit(code=1)
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        console.print(f"[red]Unexpected error:[/red] {e}")
        raise typer.Exit(code=1)


@app.command()
def version() -> None:
    """Show version information."""
    from cluster_bootstrap import __version__

    typer.echo(f"kubestrap version {__version__}")


@app.command("add-worker")
def add_worker(
    hostname: str = typer.Argument(..., help="Hostname of the worker to add"),
    address: str = typer.Option(..., "--address", help="Address the worker is reached at"),
    user: str | None = typer.Option(None, "--user", "-u", help="SSH user for the worker"),
    port: int = typer.Option(22, "--port", "-p", help="SSH port for the worker"),
    inventory: str = InventoryOption,
) -> None:
    """
    Add a worker host to the inventory.

    The host is validated and written under the workers group. The previous
    inventory is kept as a .backup file. Run 'kubestrap prepare' and
    'kubestrap join-worker' afterwards to enroll it.

    Examples:
        kubestrap add-worker worker3 --address 10.0.0.4
        kubestrap add-worker worker4 --address 10.0.0.5 --user ubuntu --port 2222
    """
    from pydantic import ValidationError as PydanticValidationError

    from cluster_bootstrap.inventory import InventoryManager
    from cluster_bootstrap.models.node import Node, NodeRole

    try:
        node = Node(
            hostname=hostname, address=address, role=NodeRole.WORKER, ssh_user=user, ssh_port=port
        )
    except PydanticValidationError as e:
        console.print("[red]Validation Error:[/red]")
        for error in e.errors():
            field = ".".join(str(x) for x in error["loc"])
            console.print(f"  - {field}: {error['msg']}")
        raise typer.Exit(code=1)

    try:
        InventoryManager(inventory).add_worker(node)
    except ClusterBootstrapError as e:
        console.print(f"[red]Inventory Error:[/red] {e.message}")
        if e.details:
            console.print(f"  {escape(e.details)}", highlight=False)
        raise typer.Exit(code=1)

    console.print(f"[green]✓[/green] Successfully added worker '{hostname}' to inventory")
    console.print(f"  Address: {address}")
    if user:
        console.print(f"  SSH user: {user}")
    if port != 22:
        console.print(f"  SSH port: {port}")


@app.command()
def prepare(
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    limit: str | None = LimitOption,
    dry_run: bool = DryRunOption,
    concurrency: int | None = typer.Option(
        None, "--concurrency", help="Maximum nodes prepared at once"
    ),
    timeout: float | None = TimeoutOption,
) -> None:
    """
    Prepare hosts: packages, swap, kernel modules, sysctl, containerd, kube tools.

    Stages that already hold on a host are skipped, so this is safe to re-run.

    Examples:
        # Prepare every host in the inventory
        kubestrap prepare

        # Only two hosts, showing what would change
        kubestrap prepare --limit worker1,worker2 --dry-run
    """

    def body(orchestrator: Orchestrator) -> None:
        orchestrator.prepare(_split_limit(limit))
        _finish(orchestrator, "Node preparation")

    _execute(
        "Preparation",
        lambda: _load(
            inventory, state_file, dry_run, concurrency=concurrency, command_timeout=timeout
        ),
        body,
    )


@app.command("init-master")
def init_master(
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    dry_run: bool = DryRunOption,
    timeout: float | None = TimeoutOption,
) -> None:
    """
    Initialize the control plane on the master and install the network plugin.

    An already-initialized master is not re-initialized; its join credentials
    are re-extracted instead.

    Examples:
        kubestrap init-master
        kubestrap init-master --dry-run
    """

    def body(orchestrator: Orchestrator) -> None:
        credential = orchestrator.init_master()
        console.print(f"\n[bold cyan]API endpoint:[/bold cyan] {credential.endpoint}")
        console.print(
            f"[bold cyan]Join token expires:[/bold cyan] {credential.expires_at.isoformat()}"
        )
        _finish(orchestrator, "Control plane")

    _execute(
        "Initialization",
        lambda: _load(inventory, state_file, dry_run, init_timeout=timeout),
        body,
    )


@app.command("join-worker")
def join_worker(
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    limit: str | None = LimitOption,
    dry_run: bool = DryRunOption,
    concurrency: int | None = typer.Option(
        None, "--concurrency", help="Maximum workers joining at once"
    ),
    timeout: float | None = TimeoutOption,
) -> None:
    """
    Join prepared workers to the initialized control plane.

    A join token is reused from the master while it is valid, and minted when
    it has expired.

    Examples:
        kubestrap join-worker
        kubestrap join-worker --limit worker3
    """

    def body(orchestrator: Orchestrator) -> None:
        orchestrator.join_workers(_split_limit(limit))
        _finish(orchestrator, "Worker join")

    _execute(
        "Join",
        lambda: _load(
            inventory, state_file, dry_run, join_concurrency=concurrency, join_timeout=timeout
        ),
        body,
    )


def _print_grant(grant: ServiceAccountGrant, show_token: bool, token_file: str | None) -> None:
    table = Table(title="Service account")
    table.add_column("Object", style="cyan")
    table.add_column("Name", style="magenta")
    table.add_row("Namespace", grant.namespace)
    table.add_row("ServiceAccount", grant.account)
    table.add_row("Role", grant.role)
    table.add_row("RoleBinding", grant.binding)
    table.add_row("Secret", grant.secret)
    console.print(table)

    if grant.token is None:
        return
    if token_file:
        write_token_file(token_file, grant)
        console.print(f"[green]✓ Token written to {token_file}[/green]")
    if show_token:
        console.print("\n[bold]Token:[/bold]")
        console.print(grant.token.get_secret_value(), highlight=False, markup=False, soft_wrap=True)
    elif not token_file:
        console.print("\nToken not shown; use --show-token or --token-file to retrieve it")


@app.command("provision-rbac")
def provision_rbac(
    namespace: str = typer.Option(..., "--namespace", "-n", help="Namespace for the account"),
    account: str = typer.Option(..., "--account", "-a", help="Service account name"),
    role: str | None = typer.Option(None, "--role", help="Role name (default: <account>-role)"),
    rules_file: str | None = RulesFileOption,
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    dry_run: bool = DryRunOption,
    show_token: bool = ShowTokenOption,
    token_file: str | None = TokenFileOption,
) -> None:
    """
    Create a namespaced service account bound to a role and retrieve its token.

    Examples:
        # CI/CD deployer account with the default rule set
        kubestrap provision-rbac -n webapps -a k8s-user --token-file ./k8s-user.token

        # Custom rules
        kubestrap provision-rbac -n webapps -a reader --rules-file reader-rules.yml
    """

    def body(orchestrator: Orchestrator) -> None:
        rules = load_rules(rules_file)
        grant = orchestrator.provision_rbac(namespace, account, rules, role)
        _finish(orchestrator, "RBAC provisioning")
        if grant is not None:
            _print_grant(grant, show_token, token_file)

    _execute("Provisioning", lambda: _load(inventory, state_file, dry_run), body)


@app.command()
def bootstrap(
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    dry_run: bool = DryRunOption,
    concurrency: int | None = typer.Option(
        None, "--concurrency", help="Maximum nodes prepared at once"
    ),
    timeout: float | None = TimeoutOption,
    namespace: str | None = typer.Option(
        None, "--namespace", "-n", help="Also provision a service account in this namespace"
    ),
    account: str | None = typer.Option(None, "--account", "-a", help="Service account name"),
    rules_file: str | None = RulesFileOption,
    show_token: bool = ShowTokenOption,
    token_file: str | None = TokenFileOption,
) -> None:
    """
    Run every phase: prepare all hosts, initialize the master, join the workers.

    With --namespace and --account, the service account is provisioned while
    the workers join.

    Examples:
        kubestrap bootstrap
        kubestrap bootstrap -n webapps -a k8s-user --token-file ./k8s-user.token
    """
    if bool(namespace) != bool(account):
        console.print("[red]Error:[/red] --namespace and --account must be given together")
        raise typer.Exit(code=1)

    def body(orchestrator: Orchestrator) -> None:
        request = None
        if namespace and account:
            request = RBACRequest(namespace, account, load_rules(rules_file))
        grant = orchestrator.run(request)
        if grant is not None:
            _print_grant(grant, show_token, token_file)
        _finish(orchestrator, "Cluster bootstrap")

    _execute(
        "Bootstrap",
        lambda: _load(
            inventory, state_file, dry_run, concurrency=concurrency, command_timeout=timeout
        ),
        body,
    )


def _render_fleet(registry: NodeRegistry) -> None:
    table = Table(title="Fleet")
    table.add_column("Node", style="cyan")
    table.add_column("Role", style="magenta")
    table.add_column("Address", style="yellow")
    table.add_column("State")
    table.add_column("Stage", style="blue")
    table.add_column("Last error")

    for node in sorted(registry.nodes, key=lambda n: (not n.is_master, n.hostname)):
        error = ""
        if node.last_error:
            error = f"{node.failed_step}: {node.last_error}"
        table.add_row(
            node.hostname,
            node.role.value,
            node.address,
            STATE_STYLES[node.state],
            node.stage.value,
            error,
        )
    console.print(table)


@app.command()
def status(
    inventory: str = InventoryOption,
    state_file: str | None = StateFileOption,
    live: bool = typer.Option(
        False, "--live", help="Also query node readiness from the Kubernetes API"
    ),
    kubeconfig: str | None = typer.Option(
        None, "--kubeconfig", help="Kubeconfig for --live (default: admin_kubeconfig)"
    ),
) -> None:
    """
    Show each node's recorded lifecycle state.

    Exits non-zero if any node has failed, or with --live, if a joined node is
    not Ready.

    Examples:
        kubestrap status
        kubestrap status --live --kubeconfig ./admin.conf
    """
    from cluster_bootstrap.models.cluster import ClusterState

    def body(orchestrator: Orchestrator) -> None:
        registry = orchestrator.registry
        _render_fleet(registry)

        summary = registry.summary()
        console.print("\n[bold]Summary:[/bold]")
        console.print(f"  Total Nodes: {summary.total}")
        for state, count in sorted(summary.by_state.items()):
            console.print(f"  {state.capitalize()}: {count}")

        unhealthy = [n.hostname for n in registry.nodes if n.state == NodeState.FAILED]

        if live:
            config = orchestrator.config
            cluster = ClusterState.from_kubeconfig(
                kubeconfig or config.admin_kubeconfig, config.cluster_name
            )
            console.print(f"\n[bold cyan]API server:[/bold cyan] {cluster.api_server}")
            live_table = Table(title="Cluster nodes")
            live_table.add_column("Name", style="cyan")
            live_table.add_column("Role", style="magenta")
            live_table.add_column("Status")
            live_table.add_column("Version", style="blue")
            live_table.add_column("Internal IP", style="yellow")
            for node_status in sorted(cluster.nodes, key=lambda n: n.name):
                shown = (
                    "[green]✓ Ready[/green]"
                    if node_status.is_ready
                    else f"[red]✗ {node_status.status}[/red]"
                )
                live_table.add_row(
                    node_status.name,
                    node_status.role,
                    shown,
                    node_status.kubelet_version,
                    node_status.internal_ip,
                )
            console.print(live_table)

            for node in registry.nodes:
                if node.state in (NodeState.INITIALIZED, NodeState.JOINED):
                    reported = cluster.node(node.hostname)
                    if reported is None or not reported.is_ready:
                        unhealthy.append(node.hostname)
            pending = cluster.pending_system_pods
            if pending:
                names = ", ".join(p.name for p in pending)
                console.print(f"[yellow]⚠ kube-system pods not ready:[/yellow] {names}")

        if unhealthy:
            console.print(
                f"\n[red]✗ Unhealthy nodes:[/red] {', '.join(sorted(set(unhealthy)))}"
            )
            raise typer.Exit(code=1)
        console.print("\n[green]✓ No failed nodes[/green]")

    _execute("Status", lambda: _load(inventory, state_file), body)


if __name__ == "__main__":
    app()
