"""Fleet-wide sequencing of the bootstrap phases.

Phases are gated: every node must be prepared before the master is
initialized, and the master must be initialized before any worker joins.
RBAC provisioning only needs the control plane, so it runs alongside the
worker joins.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    OperationAbortedError,
    PhaseGateError,
)
from cluster_bootstrap.executor import CommandExecutor, TransportFactory
from cluster_bootstrap.guard import IdempotencyGuard
from cluster_bootstrap.initializer import STEP_CREDENTIAL, STEP_INIT, ClusterInitializer
from cluster_bootstrap.inventory import InventoryManager, StateStore, default_state_path, fleet_id
from cluster_bootstrap.joiner import STEP_JOIN, JoinCoordinator
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.credentials import JoinCredential, PolicyRule, ServiceAccountGrant
from cluster_bootstrap.models.node import NodeRole, NodeState
from cluster_bootstrap.models.results import RunReport, StepResult
from cluster_bootstrap.preparer import NodePreparer
from cluster_bootstrap.rbac import STEP_NAMESPACE, RBACProvisioner
from cluster_bootstrap.registry import NodeRegistry

logger = get_logger(__name__)


@dataclass
class RBACRequest:
    """A service account grant to provision once the control plane is up."""

    namespace: str
    account: str
    rules: list[PolicyRule] = field(default_factory=list)
    role_name: str | None = None


def _gather(futures) -> list:
    """Collect future results in order, re-raising an abort after all finish."""
    results = []
    aborted = None
    for future in futures:
        try:
            result = future.result()
        except OperationAbortedError as e:
            aborted = e
            continue
        if isinstance(result, list):
            results.extend(result)
        elif result is not None:
            results.append(result)
    if aborted is not None:
        raise aborted
    return results


class Orchestrator:
    """Runs the bootstrap phases across a fleet."""

    def __init__(
        self,
        config: BootstrapConfig,
        registry: NodeRegistry,
        executor: CommandExecutor,
        report: RunReport | None = None,
    ):
        self.config = config
        self.registry = registry
        self.executor = executor
        self.report = report or RunReport()
        self.guard = IdempotencyGuard(executor)
        self.preparer = NodePreparer(config, executor, registry, self.report, self.guard)
        self.initializer = ClusterInitializer(config, executor, registry, self.report, self.guard)
        self.joiner = JoinCoordinator(
            config, executor, registry, self.report, self.initializer, self.guard
        )
        self.rbac = RBACProvisioner(config, executor, registry, self.report, self.guard)
        self.credential: JoinCredential | None = None

    @classmethod
    def from_inventory(
        cls,
        inventory_path: str | Path,
        state_path: str | Path | None = None,
        dry_run: bool = False,
        transport_factory: TransportFactory | None = None,
        **overrides,
    ) -> "Orchestrator":
        """Build an orchestrator for the fleet declared in an inventory file.

        Args:
            inventory_path: Inventory file declaring the fleet
            state_path: Registry state file (defaults to <inventory>.state.yml)
            dry_run: Emit mutating commands without running them or saving state
            transport_factory: Override how commands reach hosts
            **overrides: Configuration values that take precedence over all.vars

        Raises:
            InventoryError: If the inventory or state file is invalid
            ConfigurationError: If the configuration is invalid
        """
        config, nodes = InventoryManager(inventory_path).load(**overrides)
        store = StateStore(
            state_path or default_state_path(inventory_path), fleet_id(config, nodes)
        )
        store.load(nodes)
        registry = NodeRegistry(nodes, store=store, persist=not dry_run)
        executor = CommandExecutor(config, transport_factory=transport_factory, dry_run=dry_run)
        return cls(config, registry, executor)

    @property
    def dry_run(self) -> bool:
        return self.executor.dry_run

    def _gate(self, step: str, hostname: str, message: str, details: str | None = None):
        error = PhaseGateError(message, details)
        self.report.record(StepResult.failed(step, hostname, error))
        return error

    def prepare(self, hostnames: list[str] | None = None) -> list[StepResult]:
        """Prepare nodes concurrently, at most `concurrency` at a time."""
        nodes = self.registry.select(hostnames)
        if not nodes:
            return []
        logger.info(f"Preparing {len(nodes)} node(s)")
        max_workers = min(self.config.concurrency, len(nodes))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="prepare") as pool:
            futures = [pool.submit(self.preparer.prepare, node) for node in nodes]
        return _gather(futures)

    def init_master(self) -> JoinCredential:
        """Initialize the control plane once every node is prepared.

        Raises:
            PhaseGateError: If a node is not prepared or initialization fails
        """
        master = self.registry.master
        unprepared = [n.hostname for n in self.registry.nodes if not n.is_prepared]
        if unprepared:
            raise self._gate(
                STEP_INIT,
                master.hostname,
                f"Cannot initialize the master: {len(unprepared)} node(s) not prepared",
                f"Unprepared: {', '.join(sorted(unprepared))}. Run 'kubestrap prepare' first",
            )
        self.credential = self.initializer.initialize(master)
        return self.credential

    def _require_control_plane(self, step: str, hostname: str) -> None:
        master = self.registry.master
        if master.state != NodeState.INITIALIZED:
            raise self._gate(
                step,
                hostname,
                f"Master {master.hostname} is not initialized (state: {master.state.value})",
                "Run 'kubestrap init-master' first",
            )

    def _join_credential(self) -> JoinCredential:
        if self.credential is not None:
            return self.credential
        master = self.registry.master
        try:
            self.credential = self.initializer.extract_credential(master)
        except OperationAbortedError:
            raise
        except ClusterBootstrapError as e:
            self.report.record(StepResult.failed(STEP_CREDENTIAL, master.hostname, e))
            raise PhaseGateError(
                f"Could not obtain join credentials from {master.hostname}: {e.message}",
                e.details,
            ) from e
        return self.credential

    def join_workers(
        self, hostnames: list[str] | None = None, credential: JoinCredential | None = None
    ) -> list[StepResult]:
        """Join workers to the initialized control plane.

        Raises:
            PhaseGateError: If the master is not initialized or has no credential
        """
        self._require_control_plane(STEP_JOIN, self.registry.master.hostname)
        if hostnames:
            masters = [h for h in hostnames if self.registry.get(h).role != NodeRole.WORKER]
            if masters:
                logger.warning(f"Not joining {', '.join(masters)}: not a worker")
        workers = self.registry.select(hostnames, role=NodeRole.WORKER)
        if not workers:
            logger.info("No workers to join")
            return []
        if credential is not None:
            self.credential = credential
        credential = self._join_credential()
        logger.info(f"Joining {len(workers)} worker(s)")
        return self.joiner.join_all(workers, credential)

    def provision_rbac(
        self,
        namespace: str,
        account: str,
        rules: list[PolicyRule] | None = None,
        role_name: str | None = None,
    ) -> ServiceAccountGrant | None:
        """Provision a service account grant; failures are recorded, not raised.

        Raises:
            PhaseGateError: If the master is not initialized
        """
        self._require_control_plane(STEP_NAMESPACE, self.registry.master.hostname)
        try:
            return self.rbac.provision(namespace, account, rules or None, role_name)
        except OperationAbortedError:
            raise
        except ClusterBootstrapError as e:
            logger.error(f"RBAC provisioning for {namespace}/{account} failed: {e.message}")
            return None

    def run(self, rbac_request: RBACRequest | None = None) -> ServiceAccountGrant | None:
        """Run every phase: prepare, init, then joins alongside RBAC.

        Failures are recorded in the report; a failed phase gate stops the run.

        Returns:
            The provisioned grant, if one was requested and succeeded
        """
        self.prepare()
        try:
            self.init_master()
        except PhaseGateError as e:
            logger.error(f"Stopping: {e.message}")
            return None

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="phase") as pool:
            joins = pool.submit(self.join_workers)
            grant = None
            if rbac_request is not None:
                grant = pool.submit(
                    self.provision_rbac,
                    rbac_request.namespace,
                    rbac_request.account,
                    rbac_request.rules,
                    rbac_request.role_name,
                )

        try:
            _gather([joins])
        except PhaseGateError as e:
            logger.error(f"Stopping: {e.message}")
        return grant.result() if grant is not None else None

    def abort(self) -> None:
        """Stop in-flight work and clear every node's in-progress marker."""
        logger.warning("Aborting run")
        self.executor.cancel_event.set()
        self.report.aborted = True
        self.registry.release_all()
        self.registry.save()
