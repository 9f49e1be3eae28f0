"""Worker enrollment."""

import json
import re
import threading
from concurrent.futures import ThreadPoolExecutor

from tenacity import retry_if_exception

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    ConflictError,
    FatalError,
    OperationAbortedError,
    TransientError,
)
from cluster_bootstrap.executor import CommandExecutor
from cluster_bootstrap.guard import IdempotencyGuard, Precondition
from cluster_bootstrap.initializer import ClusterInitializer, kubectl, rollback_kubeadm
from cluster_bootstrap.logging_config import get_logger, register_secret
from cluster_bootstrap.models.credentials import JoinCredential
from cluster_bootstrap.models.node import Node, NodeRole, NodeState
from cluster_bootstrap.models.results import RunReport, StepResult
from cluster_bootstrap.registry import NodeRegistry

logger = get_logger(__name__)

KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
STEP_JOIN = "worker-join"
STEP_READY = "node-ready"

REJECTED_TOKEN = re.compile(
    r"token id \S+ is invalid|could not find a JWS signature|bootstrap token .*expired",
    re.IGNORECASE,
)


def node_is_ready(node_object: dict) -> bool:
    """True if a Node object reports condition Ready=True."""
    conditions = node_object.get("status", {}).get("conditions") or []
    return any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)


class JoinCoordinator:
    """Joins workers to the cluster and waits until each reports Ready."""

    def __init__(
        self,
        config: BootstrapConfig,
        executor: CommandExecutor,
        registry: NodeRegistry,
        report: RunReport,
        initializer: ClusterInitializer,
        guard: IdempotencyGuard | None = None,
    ):
        self.config = config
        self.executor = executor
        self.registry = registry
        self.report = report
        self.initializer = initializer
        self.guard = guard or IdempotencyGuard(executor)
        self.joined = Precondition("kubelet configured", f"test -f {KUBELET_CONF}")
        self._credential: JoinCredential | None = None
        self._credential_lock = threading.Lock()

    def usable_credential(
        self, offered: JoinCredential, rejected: JoinCredential | None = None
    ) -> JoinCredential:
        """Return a credential that is safe to use now.

        Expired (or about to expire) and rejected credentials are replaced by a
        freshly minted one. Concurrent callers share the replacement, so one
        expiry causes a single re-mint.
        """
        with self._credential_lock:
            current = self._credential
            if current is None or offered.expires_at > current.expires_at:
                current = offered
            stale = rejected is not None and (
                rejected.token.get_secret_value() == current.token.get_secret_value()
            )
            if stale or current.is_expired(margin=self.config.token_refresh_margin):
                reason = "was rejected" if stale else "has expired"
                logger.warning(f"Join token {reason}; minting a fresh one on the master")
                current = self.initializer.mint_credential(self.registry.master)
            self._credential = current
            register_secret(current.token.get_secret_value())
            return current

    def join_command(self, worker: Node, credential: JoinCredential) -> str:
        return " ".join(
            ["kubeadm", "join", *credential.join_arguments(), f"--node-name={worker.hostname}"]
        )

    def _registered(self, worker: Node) -> bool:
        result = self.executor.query(
            kubectl(self.config, f"get node {worker.hostname} -o name"), self.registry.master
        )
        return result.exit_code == 0

    def _run_join(self, worker: Node, credential: JoinCredential) -> None:
        """Run kubeadm join, resetting the worker after every failed attempt.

        Transient failures are retried with the executor's backoff. A rejected
        token is replaced and retried once, straight away.
        """
        rejected: list[JoinCredential] = []
        rejections: list[ClusterBootstrapError] = []

        def attempt() -> None:
            current = self.usable_credential(credential, rejected[0] if rejected else None)
            try:
                self.executor.execute(
                    self.join_command(worker, current),
                    worker,
                    timeout=self.config.join_timeout,
                    retry=False,
                )
            except OperationAbortedError:
                raise
            except ClusterBootstrapError as e:
                if self.config.rollback_on_failure:
                    rollback_kubeadm(self.executor, worker)
                if not rejected and REJECTED_TOKEN.search(e.details or ""):
                    rejected.append(current)
                    rejections.append(e)
                raise

        def retryable(error: BaseException) -> bool:
            return isinstance(error, TransientError) or error in rejections

        def wait(retry_state) -> float:
            if retry_state.outcome.exception() in rejections:
                return 0
            return self.executor.backoff(retry_state)

        self.executor.retrying(retry=retry_if_exception(retryable), wait=wait)(attempt)

    def _wait_ready(self, worker: Node) -> None:
        master = self.registry.master

        def ready() -> bool:
            try:
                result = self.executor.query(
                    kubectl(self.config, f"get node {worker.hostname} -o json"), master
                )
            except TransientError:
                return False
            if result.exit_code != 0:
                return False
            try:
                return node_is_ready(json.loads(result.stdout))
            except json.JSONDecodeError:
                return False

        timeout = self.config.node_ready_timeout
        if not self.executor.wait_for(ready, timeout):
            raise FatalError(
                "node-not-ready",
                f"{worker.hostname} did not report Ready within {timeout:.0f}s",
            )

    def join(self, worker: Node, credential: JoinCredential) -> StepResult:
        """Join one worker and verify it becomes Ready on the master."""
        if worker.role != NodeRole.WORKER:
            error = FatalError(f"{worker.hostname} is not a worker")
            return self.report.record(StepResult.failed(STEP_JOIN, worker.hostname, error))
        if not worker.is_prepared:
            error = FatalError(
                f"{worker.hostname} is not prepared (stage: {worker.stage.value})",
                "Run 'kubestrap prepare' first",
            )
            return self.report.record(StepResult.failed(STEP_JOIN, worker.hostname, error))

        step = STEP_JOIN
        with self.registry.locked(worker.hostname):
            self.registry.begin(worker.hostname, "join")
            try:
                if self.guard.check(self.joined, worker).satisfied:
                    if not self._registered(worker):
                        raise ConflictError(
                            f"{worker.hostname} has a kubelet configuration but is not "
                            f"registered with {self.registry.master.hostname}",
                            "It may belong to another cluster; run 'kubeadm reset -f' on it "
                            "to re-join",
                        )
                    # Registered is not joined until the master reports it Ready
                    step = STEP_READY
                    self._wait_ready(worker)
                    result = StepResult.skipped(STEP_JOIN, worker.hostname, "already joined")
                else:
                    logger.info(f"{worker.hostname}: joining {credential.endpoint}")
                    self._run_join(worker, credential)
                    step = STEP_READY
                    if not self.executor.dry_run:
                        self._wait_ready(worker)
                    result = StepResult.success(
                        STEP_JOIN, worker.hostname, dry_run=self.executor.dry_run
                    )
                if worker.state != NodeState.JOINED:
                    self.registry.set_state(worker.hostname, NodeState.JOINED)
                return self.report.record(result)
            except OperationAbortedError:
                raise
            except ClusterBootstrapError as e:
                self.registry.fail(worker.hostname, step, e)
                return self.report.record(StepResult.failed(step, worker.hostname, e))
            finally:
                self.registry.finish(worker.hostname)

    def join_all(self, workers: list[Node], credential: JoinCredential) -> list[StepResult]:
        """Join workers with at most join_concurrency enrollments in flight."""
        if not workers:
            return []
        max_workers = min(self.config.join_concurrency, len(workers))
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="join") as pool:
            futures = [pool.submit(self.join, worker, credential) for worker in workers]

        results = []
        aborted = None
        for future in futures:
            try:
                results.append(future.result())
            except OperationAbortedError as e:
                aborted = e
        if aborted is not None:
            raise aborted
        return results
