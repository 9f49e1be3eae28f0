"""Node preparation: the host-level setup every cluster member needs.

Stages run in a fixed order. Kernel modules and sysctl settings must be in
place before the container runtime starts, because containerd depends on
br_netfilter and IP forwarding being active.
"""

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import ClusterBootstrapError, FatalError, OperationAbortedError
from cluster_bootstrap.executor import CommandExecutor
from cluster_bootstrap.guard import (
    GuardedStep,
    IdempotencyGuard,
    PackageVersionPrecondition,
    Precondition,
)
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import Node, PrepStage
from cluster_bootstrap.models.results import RunReport, StepResult
from cluster_bootstrap.registry import NodeRegistry

logger = get_logger(__name__)

APT = "DEBIAN_FRONTEND=noninteractive apt-get"
BASE_PACKAGES = (
    "curl",
    "gnupg2",
    "software-properties-common",
    "apt-transport-https",
    "ca-certificates",
)
KERNEL_MODULES = ("overlay", "br_netfilter")
MODULES_CONF = "/etc/modules-load.d/containerd.conf"
SYSCTL_SETTINGS = (
    ("net.bridge.bridge-nf-call-ip6tables", "1"),
    ("net.bridge.bridge-nf-call-iptables", "1"),
    ("net.ipv4.ip_forward", "1"),
)
SYSCTL_CONF = "/etc/sysctl.d/kubernetes.conf"
CONTAINERD_CONFIG = "/etc/containerd/config.toml"
KEYRINGS_DIR = "/etc/apt/keyrings"
KUBE_PACKAGES = ("kubelet", "kubeadm", "kubectl")

OS_PROBE = '. /etc/os-release && echo "$ID"'
OS_ID = '$(. /etc/os-release && echo "$ID")'
OS_CODENAME = '$(. /etc/os-release && echo "$VERSION_CODENAME")'


def package_versions_probe(packages) -> str:
    names = " ".join(packages)
    return f"dpkg-query -W -f='${{Package}} ${{Version}}\\n' {names} 2>/dev/null || true"


def _packages_updated(config: BootstrapConfig) -> GuardedStep:
    installed = (
        f"test \"$(dpkg-query -W -f='${{Status}}\\n' {' '.join(BASE_PACKAGES)} 2>/dev/null "
        f"| grep -c 'install ok installed')\" -eq {len(BASE_PACKAGES)}"
    )
    upgraded = "test \"$(apt-get -s upgrade 2>/dev/null | grep -c '^Inst ')\" -eq 0"
    return GuardedStep(
        name=PrepStage.PACKAGES_UPDATED.value,
        preconditions=(
            Precondition("base packages installed", installed),
            Precondition("no pending upgrades", upgraded),
        ),
        actions=(
            "apt-get update",
            f"{APT} upgrade -y",
            f"{APT} install -y {' '.join(BASE_PACKAGES)}",
        ),
    )


def _swap_disabled(config: BootstrapConfig) -> GuardedStep:
    probe = (
        'test -z "$(swapon --noheadings --show 2>/dev/null)" '
        "&& ! grep -Eq '^[^#].*[[:space:]]swap[[:space:]]' /etc/fstab"
    )
    return GuardedStep(
        name=PrepStage.SWAP_DISABLED.value,
        preconditions=(Precondition("swap off and disabled in fstab", probe),),
        actions=(
            "swapoff -a",
            "sed -Ei '/^[^#].*[[:space:]]swap[[:space:]]/ s/^/#/' /etc/fstab",
        ),
    )


def _modules_loaded(config: BootstrapConfig) -> GuardedStep:
    checks = [f"grep -qx {m} {MODULES_CONF}" for m in KERNEL_MODULES]
    checks += [f"lsmod | grep -q '^{m} '" for m in KERNEL_MODULES]
    lines = "\\n".join(KERNEL_MODULES)
    return GuardedStep(
        name=PrepStage.MODULES_LOADED.value,
        preconditions=(Precondition("kernel modules loaded", " && ".join(checks)),),
        actions=(f"printf '{lines}\\n' > {MODULES_CONF}",)
        + tuple(f"modprobe {m}" for m in KERNEL_MODULES),
    )


def _sysctl_applied(config: BootstrapConfig) -> GuardedStep:
    checks = [f"grep -qx '{key} = {value}' {SYSCTL_CONF}" for key, value in SYSCTL_SETTINGS]
    checks += [f'test "$(sysctl -n {key})" = {value}' for key, value in SYSCTL_SETTINGS]
    lines = " ".join(f"'{key} = {value}'" for key, value in SYSCTL_SETTINGS)
    return GuardedStep(
        name=PrepStage.SYSCTL_APPLIED.value,
        preconditions=(Precondition("kernel parameters applied", " && ".join(checks)),),
        actions=(f"printf '%s\\n' {lines} > {SYSCTL_CONF}", "sysctl --system"),
    )


def _runtime_installed(config: BootstrapConfig) -> GuardedStep:
    package = "containerd.io"
    if config.containerd_version:
        package = f"containerd.io={config.containerd_version}"
    keyring = f"{KEYRINGS_DIR}/docker.gpg"
    repo = f"https://download.docker.com/linux/{OS_ID}"
    running = (
        f"grep -q 'SystemdCgroup = true' {CONTAINERD_CONFIG} "
        "&& systemctl is-active --quiet containerd && systemctl is-enabled --quiet containerd"
    )
    return GuardedStep(
        name=PrepStage.RUNTIME_INSTALLED.value,
        preconditions=(
            PackageVersionPrecondition(
                "containerd version",
                package_versions_probe(["containerd.io"]),
                packages=("containerd.io",),
                expected=config.containerd_version,
            ),
            Precondition("containerd running with systemd cgroups", running),
        ),
        actions=(
            f"install -m 0755 -d {KEYRINGS_DIR}",
            f"curl -fsSL {repo}/gpg | gpg --dearmor --yes -o {keyring}",
            f'echo "deb [arch=$(dpkg --print-architecture) signed-by={keyring}] {repo} '
            f'{OS_CODENAME} stable" > /etc/apt/sources.list.d/docker.list',
            "apt-get update",
            f"{APT} install -y {package}",
            f"mkdir -p /etc/containerd && containerd config default > {CONTAINERD_CONFIG}",
            f"sed -i 's/SystemdCgroup = false/SystemdCgroup = true/g' {CONTAINERD_CONFIG}",
            "systemctl restart containerd",
            "systemctl enable containerd",
        ),
    )


def _kubetools_installed(config: BootstrapConfig) -> GuardedStep:
    track = config.kubernetes_version
    keyring = f"{KEYRINGS_DIR}/kubernetes-apt-keyring.gpg"
    repo = f"https://pkgs.k8s.io/core:/stable:/{track}/deb/"
    if config.kubernetes_package_version:
        packages = " ".join(f"{p}={config.kubernetes_package_version}" for p in KUBE_PACKAGES)
    else:
        packages = " ".join(KUBE_PACKAGES)
    held = (
        f"test \"$(apt-mark showhold | grep -cxE '{'|'.join(KUBE_PACKAGES)}')\" "
        f"-eq {len(KUBE_PACKAGES)}"
    )
    return GuardedStep(
        name=PrepStage.KUBETOOLS_INSTALLED.value,
        preconditions=(
            PackageVersionPrecondition(
                "kubernetes tools version",
                package_versions_probe(KUBE_PACKAGES),
                packages=KUBE_PACKAGES,
                expected=config.expected_kube_version,
                locked=True,
            ),
            Precondition("kubernetes tools held", held),
        ),
        actions=(
            f"install -m 0755 -d {KEYRINGS_DIR}",
            f"curl -fsSL {repo}Release.key | gpg --dearmor --yes -o {keyring}",
            f"echo 'deb [signed-by={keyring}] {repo} /' > /etc/apt/sources.list.d/kubernetes.list",
            "apt-get update",
            f"{APT} install -y {packages}",
            f"apt-mark hold {' '.join(KUBE_PACKAGES)}",
            "systemctl enable --now kubelet",
        ),
    )


_STAGE_BUILDERS = (
    (PrepStage.PACKAGES_UPDATED, _packages_updated),
    (PrepStage.SWAP_DISABLED, _swap_disabled),
    (PrepStage.MODULES_LOADED, _modules_loaded),
    (PrepStage.SYSCTL_APPLIED, _sysctl_applied),
    (PrepStage.RUNTIME_INSTALLED, _runtime_installed),
    (PrepStage.KUBETOOLS_INSTALLED, _kubetools_installed),
)


def build_stage_plan(config: BootstrapConfig) -> list[tuple[PrepStage, GuardedStep]]:
    """Build the ordered preparation plan for the given configuration."""
    return [(stage, builder(config)) for stage, builder in _STAGE_BUILDERS]


class NodePreparer:
    """Drives one node through the preparation state machine."""

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
        self.plan = build_stage_plan(config)

    def preflight(self, node: Node) -> None:
        """Refuse hosts whose OS the package steps cannot handle."""
        result = self.executor.query(OS_PROBE, node)
        os_id = result.stdout.strip().lower()
        if result.exit_code != 0 or os_id not in self.config.supported_os:
            raise FatalError(
                f"unsupported OS on {node.hostname}: '{os_id or 'unknown'}'",
                f"Supported distributions: {', '.join(self.config.supported_os)}",
            )

    def prepare(self, node: Node) -> list[StepResult]:
        """Run every preparation stage on node, skipping those already done.

        A failure stops this node's pipeline and leaves its recorded stage at
        the last stage that completed, so a later run resumes from there.

        Returns:
            Step results recorded for this node
        """
        results: list[StepResult] = []
        step = "preflight"
        with self.registry.locked(node.hostname):
            self.registry.begin(node.hostname, "prepare")
            try:
                self.preflight(node)
                for stage, guarded in self.plan:
                    step = guarded.name
                    if stage == PrepStage.RUNTIME_INSTALLED and not node.stage.reached(
                        PrepStage.SYSCTL_APPLIED
                    ):
                        raise FatalError(
                            f"{stage.value} requires modules-loaded and sysctl-applied first",
                            f"{node.hostname} is at stage {node.stage.value}",
                        )
                    results.append(self.report.record(self.guard.apply(guarded, node)))
                    self.registry.advance(node.hostname, stage)
                self.registry.mark_prepared(node.hostname)
                logger.info(f"{node.hostname}: prepared")
            except OperationAbortedError:
                raise
            except ClusterBootstrapError as e:
                results.append(self.report.record(StepResult.failed(step, node.hostname, e)))
                self.registry.fail(node.hostname, step, e)
            finally:
                self.registry.finish(node.hostname)
        return results
