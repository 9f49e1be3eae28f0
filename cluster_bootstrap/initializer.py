"""Control plane bootstrap on the designated master."""

import ipaddress
import json
import re
from datetime import datetime, timedelta, timezone

from pydantic import SecretStr

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import (
    ClusterBootstrapError,
    FatalError,
    OperationAbortedError,
    PhaseGateError,
    TransientError,
)
from cluster_bootstrap.executor import CommandExecutor
from cluster_bootstrap.guard import GuardedStep, IdempotencyGuard, Precondition
from cluster_bootstrap.logging_config import get_logger, register_secret
from cluster_bootstrap.models.credentials import JoinCredential, utcnow
from cluster_bootstrap.models.node import Node, NodeState
from cluster_bootstrap.models.results import RunReport, StepOutcome, StepResult
from cluster_bootstrap.registry import NodeRegistry

logger = get_logger(__name__)

CA_CERT = "/etc/kubernetes/pki/ca.crt"
CA_HASH_COMMAND = (
    f"openssl x509 -pubkey -in {CA_CERT} "
    "| openssl rsa -pubin -outform der 2>/dev/null "
    "| openssl dgst -sha256 -hex | sed 's/^.* //'"
)
RESET_COMMAND = "kubeadm reset -f"
TOKEN_PATTERN = re.compile(r"^[a-z0-9]{6}\.[a-z0-9]{16}$")

DRY_RUN_TOKEN = "000000.0000000000000000"
DRY_RUN_CA_HASH = "sha256:" + "0" * 64

STEP_INIT = "control-plane-init"
STEP_NETWORK = "network-plugin"
STEP_SYSTEM_PODS = "system-pods-ready"
STEP_CREDENTIAL = "join-credential"


def kubectl(config: BootstrapConfig, args: str) -> str:
    """kubectl invocation pinned to the admin kubeconfig."""
    return f"kubectl --kubeconfig {config.admin_kubeconfig} {args}"


def rollback_kubeadm(executor: CommandExecutor, node: Node) -> None:
    """Undo a partial kubeadm init/join so the node can be retried cleanly."""
    logger.warning(f"{node.hostname}: rolling back with '{RESET_COMMAND}'")
    try:
        executor.execute(RESET_COMMAND, node, check=False)
    except OperationAbortedError:
        raise
    except ClusterBootstrapError as e:
        logger.error(f"{node.hostname}: rollback failed: {e.message}")


def parse_token_list(output: str) -> list[dict]:
    """Parse `kubeadm token list -o json`, which prints one object per token."""
    decoder = json.JSONDecoder()
    items = []
    text = (output or "").strip()
    index = 0
    while index < len(text):
        try:
            item, index = decoder.raw_decode(text, index)
        except json.JSONDecodeError as e:
            raise FatalError("Could not parse kubeadm token list output", str(e))
        if isinstance(item, dict):
            items.append(item)
        while index < len(text) and text[index].isspace():
            index += 1
    return items


def _parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def system_pods_ready(pod_list: dict) -> tuple[bool, list[str]]:
    """Check a kube-system pod list.

    Returns:
        (all ready, names of pods that are not ready)
    """
    pending = []
    items = pod_list.get("items") or []
    for pod in items:
        name = pod.get("metadata", {}).get("name", "unknown")
        status = pod.get("status", {})
        phase = status.get("phase")
        if phase == "Succeeded":
            continue
        conditions = status.get("conditions") or []
        ready = any(c.get("type") == "Ready" and c.get("status") == "True" for c in conditions)
        if phase != "Running" or not ready:
            pending.append(name)
    return bool(items) and not pending, pending


class ClusterInitializer:
    """Initializes the control plane once and hands out join credentials."""

    def __init__(
        self,
        config: BootstrapConfig,
        executor: CommandExecutor,
        registry: NodeRegistry,
        report: RunReport,
        guard: IdempotencyGuard | None = None,
    ):
        self.config = config
        self.executor = executor
        self.registry = registry
        self.report = report
        self.guard = guard or IdempotencyGuard(executor)
        self.initialized = Precondition(
            "control plane initialized", f"test -f {config.admin_kubeconfig}"
        )

    def init_command(self, master: Node) -> str:
        port = self.config.api_server_port
        parts = [
            "kubeadm init",
            f"--pod-network-cidr={self.config.pod_network_cidr}",
            f"--control-plane-endpoint={master.address}:{port}",
            f"--apiserver-bind-port={port}",
            f"--node-name={master.hostname}",
        ]
        try:
            ipaddress.ip_address(master.address)
            parts.append(f"--apiserver-advertise-address={master.address}")
        except ValueError:
            pass
        if self.config.kubernetes_package_version:
            version = self.config.kubernetes_package_version.split("-")[0]
            parts.append(f"--kubernetes-version=v{version}")
        return " ".join(parts)

    def endpoint(self, master: Node) -> str:
        return f"{master.address}:{self.config.api_server_port}"

    def initialize(self, master: Node) -> JoinCredential:
        """Bootstrap the control plane on master and return join credentials.

        An already-initialized master is never re-initialized; its existing
        credentials are extracted instead.

        Raises:
            PhaseGateError: If any part of initialization fails
        """
        gate = None
        if not master.is_master:
            gate = PhaseGateError(f"{master.hostname} is not the designated master")
        elif not master.is_prepared:
            gate = PhaseGateError(
                f"Master {master.hostname} is not prepared (stage: {master.stage.value})",
                "Run 'kubestrap prepare' first",
            )
        if gate is not None:
            self.report.record(StepResult.failed(STEP_INIT, master.hostname, gate))
            raise gate

        step = STEP_INIT
        with self.registry.locked(master.hostname):
            self.registry.begin(master.hostname, "init-master")
            try:
                self._bootstrap(master)
                step = STEP_NETWORK
                self._install_network_plugin(master)
                step = STEP_SYSTEM_PODS
                self._wait_for_system_pods(master)
                step = STEP_CREDENTIAL
                credential = self.extract_credential(master)
                if master.state != NodeState.INITIALIZED:
                    self.registry.set_state(master.hostname, NodeState.INITIALIZED)
                return credential
            except OperationAbortedError:
                raise
            except ClusterBootstrapError as e:
                self.report.record(StepResult.failed(step, master.hostname, e))
                self.registry.fail(master.hostname, step, e)
                raise PhaseGateError(
                    f"Master initialization failed at {step}: {e.message}", e.details
                ) from e
            finally:
                self.registry.finish(master.hostname)

    def _bootstrap(self, master: Node) -> None:
        step = GuardedStep(
            name=STEP_INIT,
            preconditions=(self.initialized,),
            actions=(self.init_command(master),),
            timeout=self.config.init_timeout,
            retry=False,
        )
        try:
            result = self.guard.apply(step, master)
        except OperationAbortedError:
            raise
        except ClusterBootstrapError:
            if self.config.rollback_on_failure and not self.executor.dry_run:
                rollback_kubeadm(self.executor, master)
            raise
        if result.outcome == StepOutcome.SKIPPED:
            logger.info(f"{master.hostname}: control plane already initialized, not re-running")
        self.report.record(result)

    def _install_network_plugin(self, master: Node) -> None:
        daemonset = self.config.network_plugin_daemonset
        step = GuardedStep(
            name=STEP_NETWORK,
            preconditions=(
                Precondition(
                    f"{daemonset} daemonset present",
                    kubectl(self.config, f"get daemonset {daemonset} -n kube-system"),
                ),
            ),
            actions=(kubectl(self.config, f"apply -f {self.config.network_plugin_manifest}"),),
        )
        self.report.record(self.guard.apply(step, master))

    def _wait_for_system_pods(self, master: Node) -> None:
        if self.executor.dry_run:
            self.report.record(StepResult.success(STEP_SYSTEM_PODS, master.hostname, dry_run=True))
            return

        pending: list[str] = []

        def ready() -> bool:
            nonlocal pending
            try:
                result = self.executor.query(
                    kubectl(self.config, "get pods -n kube-system -o json"), master
                )
            except TransientError:
                return False
            if result.exit_code != 0:
                return False
            try:
                ok, pending = system_pods_ready(json.loads(result.stdout))
            except json.JSONDecodeError:
                return False
            return ok

        timeout = self.config.system_pods_timeout
        logger.info(f"{master.hostname}: waiting up to {timeout:.0f}s for kube-system pods")
        if not self.executor.wait_for(ready, timeout):
            raise FatalError(
                "network-plugin-not-ready",
                f"kube-system pods not ready after {timeout:.0f}s: "
                f"{', '.join(pending) or 'no pods reported'}",
            )
        self.report.record(StepResult.success(STEP_SYSTEM_PODS, master.hostname))

    def _ca_cert_hash(self, master: Node) -> str:
        result = self.executor.query(CA_HASH_COMMAND, master)
        digest = result.stdout.strip()
        if result.exit_code != 0 or not re.fullmatch(r"[0-9a-f]{64}", digest):
            raise FatalError(
                f"Could not compute the CA certificate hash on {master.hostname}",
                f"Check that {CA_CERT} exists and openssl is installed",
            )
        return f"sha256:{digest}"

    def _dry_run_credential(self, master: Node) -> JoinCredential:
        return JoinCredential(
            token=SecretStr(DRY_RUN_TOKEN),
            ca_cert_hash=DRY_RUN_CA_HASH,
            endpoint=self.endpoint(master),
            expires_at=utcnow() + self.config.token_ttl,
        )

    def _find_valid_token(self, master: Node) -> tuple[str, datetime] | None:
        result = self.executor.query(
            f"kubeadm token list --kubeconfig {self.config.admin_kubeconfig} -o json", master
        )
        if result.exit_code != 0:
            return None
        now = utcnow()
        best = None
        for item in parse_token_list(result.stdout):
            token = item.get("token", "")
            if not TOKEN_PATTERN.match(token):
                continue
            if "authentication" not in (item.get("usages") or []):
                continue
            expires = _parse_expiry(item.get("expires")) or now + self.config.token_ttl
            if now + self.config.token_refresh_margin >= expires:
                continue
            if best is None or expires > best[1]:
                best = (token, expires)
        return best

    def extract_credential(self, master: Node) -> JoinCredential:
        """Reuse a still-valid bootstrap token from master, or mint a new one."""
        if self.executor.dry_run and not self.guard.check(self.initialized, master).satisfied:
            self.report.record(StepResult.success(STEP_CREDENTIAL, master.hostname, dry_run=True))
            return self._dry_run_credential(master)

        ca_hash = self._ca_cert_hash(master)
        found = self._find_valid_token(master)
        if found is None:
            return self.mint_credential(master, ca_hash)

        token, expires = found
        register_secret(token)
        logger.info(f"{master.hostname}: reusing bootstrap token valid until {expires.isoformat()}")
        self.report.record(
            StepResult.skipped(STEP_CREDENTIAL, master.hostname, "valid token already exists")
        )
        return JoinCredential(
            token=SecretStr(token),
            ca_cert_hash=ca_hash,
            endpoint=self.endpoint(master),
            issued_at=expires - self.config.token_ttl,
            expires_at=expires,
        )

    def mint_credential(self, master: Node, ca_hash: str | None = None) -> JoinCredential:
        """Create a fresh bootstrap token on master."""
        if ca_hash is None:
            ca_hash = DRY_RUN_CA_HASH if self.executor.dry_run else self._ca_cert_hash(master)
        hours = self.config.token_ttl_hours
        result = self.executor.execute(
            f"kubeadm token create --ttl {hours}h0m0s --kubeconfig {self.config.admin_kubeconfig}",
            master,
        )
        if result.dry_run:
            self.report.record(StepResult.success(STEP_CREDENTIAL, master.hostname, dry_run=True))
            return self._dry_run_credential(master)

        lines = result.stdout.strip().splitlines()
        token = lines[-1].strip() if lines else ""
        if not TOKEN_PATTERN.match(token):
            raise FatalError(f"kubeadm token create on {master.hostname} returned no token")
        register_secret(token)
        issued = utcnow()
        logger.info(f"{master.hostname}: minted bootstrap token valid for {hours}h")
        self.report.record(StepResult.success(STEP_CREDENTIAL, master.hostname))
        return JoinCredential(
            token=SecretStr(token),
            ca_cert_hash=ca_hash,
            endpoint=self.endpoint(master),
            issued_at=issued,
            expires_at=issued + timedelta(hours=hours),
        )
