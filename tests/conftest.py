"""Pytest configuration and shared fixtures.

The fake fleet below stands in for real hosts: each FakeHost answers the exact
probe and action commands the components generate, and FakeCluster models the
control plane shared by every host.
"""

import base64
import hashlib
import json
import threading
from datetime import datetime, timedelta, timezone

import pytest
import yaml
from hypothesis import Verbosity, settings

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import OperationAbortedError
from cluster_bootstrap.executor import CommandExecutor, Transport
from cluster_bootstrap.initializer import CA_CERT, RESET_COMMAND
from cluster_bootstrap.joiner import KUBELET_CONF
from cluster_bootstrap.logging_config import redact
from cluster_bootstrap.models.node import Node, NodeRole, NodeState, PrepStage
from cluster_bootstrap.models.results import CommandResult
from cluster_bootstrap.orchestrator import Orchestrator
from cluster_bootstrap.preparer import (
    APT,
    BASE_PACKAGES,
    KERNEL_MODULES,
    KUBE_PACKAGES,
    MODULES_CONF,
    OS_PROBE,
    SYSCTL_CONF,
)
from cluster_bootstrap.rbac import SA_NAME_ANNOTATION, SA_TOKEN_TYPE
from cluster_bootstrap.registry import NodeRegistry

# Configure Hypothesis for property-based testing
settings.register_profile("default", max_examples=100, verbosity=Verbosity.normal)
settings.register_profile("ci", max_examples=1000, verbosity=Verbosity.verbose)
settings.register_profile("dev", max_examples=10, verbosity=Verbosity.verbose)

# Load the default profile
settings.load_profile("default")

ADMIN_CONF = "/etc/kubernetes/admin.conf"

FAST_SETTINGS = {
    "retry_base_delay": 0.01,
    "poll_interval": 0.01,
    "system_pods_timeout": 0.5,
    "node_ready_timeout": 0.5,
    "token_timeout": 0.5,
    "probe_timeout": 5.0,
    "command_timeout": 5.0,
}

KINDS = {
    "namespace": "Namespace",
    "serviceaccount": "ServiceAccount",
    "role": "Role",
    "rolebinding": "RoleBinding",
    "secret": "Secret",
}


def ok(stdout: str = "") -> tuple[int, str, str]:
    return 0, stdout, ""


def status(condition: bool) -> tuple[int, str, str]:
    return (0, "", "") if condition else (1, "", "")


class FakeHost:
    """Observable host state, mutated by the commands sent to it."""

    def __init__(self, hostname: str, cluster: "FakeCluster", os_id: str = "ubuntu"):
        self.hostname = hostname
        self.cluster = cluster
        self.os_id = os_id
        self.packages: dict[str, str] = {}
        self.held: set[str] = set()
        self.upgrades_pending = True
        self.swap_on = True
        self.fstab_swap = True
        self.modules_conf = False
        self.modules: set[str] = set()
        self.sysctl_conf = False
        self.sysctl_live = False
        self.containerd_config: str | None = None
        self.containerd_active = False
        self.files: set[str] = set()
        self.commands: list[str] = []
        self.mutations: list[str] = []
        self.faults: list[list] = []
        self.block_on: tuple[str, threading.Event] | None = None
        self._lock = threading.Lock()

    def make_prepared(self) -> None:
        """Put the host in the state a completed preparation leaves behind."""
        for package in BASE_PACKAGES:
            self.packages[package] = "1.0"
        self.packages["containerd.io"] = "1.7.12-1"
        for package in KUBE_PACKAGES:
            self.packages[package] = self.cluster.kube_version
        self.held = set(KUBE_PACKAGES)
        self.upgrades_pending = False
        self.swap_on = self.fstab_swap = False
        self.modules_conf = True
        self.modules = set(KERNEL_MODULES)
        self.sysctl_conf = self.sysctl_live = True
        self.containerd_config = "systemd"
        self.containerd_active = True

    def fail(self, fragment: str, stderr: str = "boom", exit_code: int = 1, times: int = 1):
        """Make the next `times` commands containing fragment fail."""
        self.faults.append([fragment, times, exit_code, stderr])

    def ran(self, fragment: str) -> int:
        """Number of executed commands containing fragment."""
        return sum(1 for c in self.commands if fragment in c)

    def run(self, command: str, cancel_event: threading.Event | None) -> tuple[int, str, str]:
        if self.block_on is not None and self.block_on[0] in command:
            self.block_on[1].set()
            if cancel_event is not None and cancel_event.wait(10):
                raise OperationAbortedError(f"Command on {self.hostname} aborted by operator")
        with self._lock:
            self.commands.append(command)
            for fault in self.faults:
                if fault[0] in command and fault[1] > 0:
                    fault[1] -= 1
                    return fault[2], "", fault[3]
        with self.cluster.lock:
            return self._dispatch(command)

    def _dispatch(self, cmd: str) -> tuple[int, str, str]:
        cluster = self.cluster

        # Read-only probes
        if cmd == OS_PROBE:
            return ok(f"{self.os_id}\n")
        if cmd.startswith("test -f "):
            return status(cmd.split()[2] in self.files)
        if "${Status}" in cmd:
            return status(all(p in self.packages for p in BASE_PACKAGES))
        if "apt-get -s upgrade" in cmd:
            return status(not self.upgrades_pending)
        if "${Package} ${Version}" in cmd:
            names = cmd.split("\\n' ", 1)[1].split(" 2>/dev/null")[0].split()
            lines = [f"{n} {self.packages[n]}\n" for n in names if n in self.packages]
            return ok("".join(lines))
        if "swapon --noheadings" in cmd:
            return status(not self.swap_on and not self.fstab_swap)
        if "lsmod" in cmd:
            return status(self.modules_conf and set(KERNEL_MODULES) <= self.modules)
        if "sysctl -n" in cmd:
            return status(self.sysctl_conf and self.sysctl_live)
        if cmd.startswith("grep -q 'SystemdCgroup = true'"):
            return status(self.containerd_config == "systemd" and self.containerd_active)
        if "apt-mark showhold" in cmd:
            return status(set(KUBE_PACKAGES) <= self.held)
        if cmd.startswith("openssl x509"):
            if CA_CERT not in self.files:
                return 1, "", "unable to load certificate"
            return ok(f"{cluster.ca_hash}\n")
        if cmd.startswith("kubeadm token list"):
            if ADMIN_CONF not in self.files:
                return 1, "", "failed to load admin kubeconfig"
            return ok(cluster.token_list())
        if cmd.startswith("kubectl "):
            return self._kubectl(cmd)

        # Mutations
        self.mutations.append(cmd)
        if cmd == "apt-get update":
            return ok()
        if cmd.startswith(f"{APT} upgrade"):
            self.upgrades_pending = False
            return ok()
        if cmd.startswith(f"{APT} install -y "):
            for spec in cmd[len(f"{APT} install -y ") :].split():
                name, _, version = spec.partition("=")
                self.packages[name] = version or cluster.default_version(name)
            return ok()
        if cmd.startswith(("install -m", "curl -fsSL", "echo ", "systemctl enable")):
            return ok()
        if cmd == "swapoff -a":
            self.swap_on = False
            return ok()
        if cmd.startswith("sed -Ei") and "swap" in cmd:
            self.fstab_swap = False
            return ok()
        if cmd.startswith("printf") and MODULES_CONF in cmd:
            self.modules_conf = True
            return ok()
        if cmd.startswith("modprobe "):
            self.modules.add(cmd.split()[1])
            return ok()
        if cmd.startswith("printf") and SYSCTL_CONF in cmd:
            self.sysctl_conf = True
            return ok()
        if cmd == "sysctl --system":
            self.sysctl_live = self.sysctl_conf
            return ok()
        if cmd.startswith("mkdir -p /etc/containerd"):
            self.containerd_config = "default"
            return ok()
        if cmd.startswith("sed -i 's/SystemdCgroup"):
            if self.containerd_config:
                self.containerd_config = "systemd"
            return ok()
        if cmd == "systemctl restart containerd":
            self.containerd_active = "containerd.io" in self.packages
            return ok()
        if cmd.startswith("apt-mark hold"):
            self.held.update(cmd.split()[2:])
            return ok()
        if cmd.startswith("kubeadm init"):
            return cluster.init(self)
        if cmd.startswith("kubeadm token create"):
            return ok(f"{cluster.mint()}\n")
        if cmd.startswith("kubeadm join"):
            return cluster.join(self, cmd)
        if cmd == RESET_COMMAND:
            return cluster.reset(self)
        return 127, "", f"fake host cannot run: {cmd}"

    def _kubectl(self, cmd: str) -> tuple[int, str, str]:
        cluster = self.cluster
        if not cluster.initialized or ADMIN_CONF not in self.files:
            return 1, "", f"error: stat {ADMIN_CONF}: no such file or directory"

        rest = cmd.split(" ", 3)[3]
        if rest.startswith("apply -f - <<'EOF'\n"):
            self.mutations.append(cmd)
            body = rest.split("\n", 1)[1].rsplit("EOF", 1)[0]
            return cluster.apply(yaml.safe_load(body))
        if rest.startswith("apply -f "):
            self.mutations.append(cmd)
            cluster.network_installed = True
            return ok("daemonset.apps/calico-node created\n")
        if rest.startswith("get pods -n kube-system"):
            return ok(json.dumps(cluster.pod_list()))

        args = rest.split()
        kind, name = args[1], args[2]
        namespace = args[args.index("-n") + 1] if "-n" in args else ""
        obj = cluster.get(kind, name, namespace)
        if obj is None:
            return 1, "", f'Error from server (NotFound): {kind} "{name}" not found'
        if "jsonpath='{.data.token}'" in args:
            return ok((obj.get("data") or {}).get("token", ""))
        if args[-1] == "name":
            return ok(f"{kind}/{name}\n")
        return ok(json.dumps(obj))


class FakeTransport(Transport):
    """Transport that delivers commands to a FakeHost."""

    def __init__(self, host: FakeHost):
        self.host = host
        self.name = host.hostname

    def execute(self, command, timeout, cancel_event=None):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationAbortedError("Run aborted by operator")
        exit_code, stdout, stderr = self.host.run(command, cancel_event)
        return CommandResult(
            command=redact(command),
            target=self.name,
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
        )


class FakeCluster:
    """A fleet of fake hosts sharing one simulated control plane."""

    def __init__(self, master: str = "master1", workers=("worker1", "worker2")):
        self.lock = threading.RLock()
        self.master_name = master
        self.hosts = {name: FakeHost(name, self) for name in (master, *workers)}
        self.local = FakeHost("localhost", self)
        self.kube_version = "1.30.2-1.1"
        self.ca_hash = "ab" * 32
        self.initialized = False
        self.network_installed = False
        self.pods_ready = True
        self.registered: dict[str, bool] = {}
        self.never_ready: set[str] = set()
        self.tokens: dict[str, datetime] = {}
        self.objects: dict[tuple[str, str, str], dict] = {}
        self._counter = 0

    def host(self, hostname: str) -> FakeHost:
        return self.hosts[hostname]

    def add_host(self, hostname: str) -> FakeHost:
        self.hosts[hostname] = FakeHost(hostname, self)
        return self.hosts[hostname]

    @property
    def master(self) -> FakeHost:
        return self.hosts[self.master_name]

    def factory(self, node):
        if node is None:
            return FakeTransport(self.local)
        return FakeTransport(self.hosts[node.hostname])

    def make_prepared(self) -> None:
        for host in self.hosts.values():
            host.make_prepared()

    def mutations(self) -> list[str]:
        return [m for host in self.hosts.values() for m in host.mutations]

    def default_version(self, package: str) -> str:
        if package in KUBE_PACKAGES:
            return self.kube_version
        if package == "containerd.io":
            return "1.7.12-1"
        return "1.0"

    def mint(self, ttl: timedelta = timedelta(hours=24)) -> str:
        self._counter += 1
        secret = hashlib.sha256(str(self._counter).encode()).hexdigest()[:16]
        token = f"{self._counter:06d}.{secret}"
        self.tokens[token] = datetime.now(timezone.utc) + ttl
        return token

    def token_list(self) -> str:
        items = [
            {
                "kind": "BootstrapToken",
                "token": token,
                "expires": expires.isoformat(),
                "usages": ["authentication", "signing"],
                "groups": ["system:bootstrappers:kubeadm:default-node-token"],
            }
            for token, expires in self.tokens.items()
        ]
        return "\n".join(json.dumps(item, indent=2) for item in items)

    def init(self, host: FakeHost) -> tuple[int, str, str]:
        host.files.update({ADMIN_CONF, CA_CERT, KUBELET_CONF})
        self.initialized = True
        self.registered[host.hostname] = True
        self.mint()
        return ok("Your Kubernetes control-plane has initialized successfully!\n")

    def join(self, host: FakeHost, cmd: str) -> tuple[int, str, str]:
        args = cmd.split()
        token = args[args.index("--token") + 1]
        name = next(a.split("=", 1)[1] for a in args if a.startswith("--node-name="))
        expires = self.tokens.get(token)
        if expires is None or expires <= datetime.now(timezone.utc):
            return (
                1,
                "",
                "error execution phase preflight: couldn't validate the identity of the API "
                f'Server: token id "{token.split(".")[0]}" is invalid for this cluster or it '
                "has expired",
            )
        host.files.add(KUBELET_CONF)
        self.registered[name] = name not in self.never_ready
        return ok("This node has joined the cluster\n")

    def reset(self, host: FakeHost) -> tuple[int, str, str]:
        host.files -= {ADMIN_CONF, CA_CERT, KUBELET_CONF}
        if host.hostname == self.master_name:
            self.initialized = False
            self.network_installed = False
        self.registered.pop(host.hostname, None)
        return ok()

    def pod_list(self) -> dict:
        names = ["etcd-master1", "kube-apiserver-master1", "coredns-5dd5756b68-x7k2p"]
        if self.network_installed:
            names.append("calico-node-abcde")
        items = []
        for name in names:
            ready = self.network_installed and self.pods_ready or not name.startswith("coredns")
            items.append(
                {
                    "metadata": {"name": name, "namespace": "kube-system"},
                    "status": {
                        "phase": "Running" if ready else "Pending",
                        "conditions": [{"type": "Ready", "status": "True" if ready else "False"}],
                    },
                }
            )
        return {"kind": "PodList", "items": items}

    def get(self, kind: str, name: str, namespace: str) -> dict | None:
        if kind == "daemonset":
            if self.network_installed and name == "calico-node":
                return {"kind": "DaemonSet", "metadata": {"name": name}}
            return None
        if kind == "node":
            if name not in self.registered:
                return None
            ready = "True" if self.registered[name] else "False"
            return {
                "kind": "Node",
                "metadata": {"name": name},
                "status": {"conditions": [{"type": "Ready", "status": ready}]},
            }
        return self.objects.get((KINDS[kind], namespace, name))

    def seed(self, manifest: dict) -> None:
        """Create an object directly, as if someone else had applied it."""
        meta = manifest["metadata"]
        self.objects[(manifest["kind"], meta.get("namespace", ""), meta["name"])] = manifest

    def apply(self, manifest: dict) -> tuple[int, str, str]:
        kind = manifest["kind"]
        meta = manifest["metadata"]
        namespace = meta.get("namespace", "")
        if namespace and ("Namespace", "", namespace) not in self.objects:
            return 1, "", f'Error from server (NotFound): namespaces "{namespace}" not found'

        key = (kind, namespace, meta["name"])
        existing = self.objects.get(key)
        if existing is not None and "data" in existing:
            manifest = {**manifest, "data": existing["data"]}
        if kind == "Secret" and manifest.get("type") == SA_TOKEN_TYPE:
            account = meta.get("annotations", {}).get(SA_NAME_ANNOTATION)
            if ("ServiceAccount", namespace, account) in self.objects and "data" not in manifest:
                self._counter += 1
                token = f"sa-token-{account}-{self._counter}"
                encoded = base64.b64encode(token.encode()).decode()
                manifest = {**manifest, "data": {"token": encoded}}
        self.objects[key] = manifest
        return ok(f"{kind.lower()}/{meta['name']} configured\n")


def build_nodes() -> list[Node]:
    return [
        Node(hostname="master1", address="10.0.0.1", role=NodeRole.MASTER),
        Node(hostname="worker1", address="10.0.0.2", role=NodeRole.WORKER),
        Node(hostname="worker2", address="10.0.0.3", role=NodeRole.WORKER),
    ]


@pytest.fixture
def fleet():
    """Simulated three-host fleet: master1, worker1, worker2."""
    return FakeCluster()


@pytest.fixture
def config():
    """Configuration with timeouts and delays short enough for tests."""
    return BootstrapConfig(**FAST_SETTINGS)


@pytest.fixture
def nodes():
    return build_nodes()


@pytest.fixture
def make_orchestrator(fleet, config, nodes):
    """Factory for an orchestrator wired to the fake fleet.

    With prepared=True every host and registry node starts fully prepared.
    """

    def _make(dry_run: bool = False, prepared: bool = False, store=None, **overrides):
        cfg = config.model_copy(update=overrides) if overrides else config
        if prepared:
            fleet.make_prepared()
            for node in nodes:
                node.stage = PrepStage.PREPARED
                node.state = NodeState.PREPARED
        registry = NodeRegistry(nodes, store=store, persist=not dry_run)
        executor = CommandExecutor(cfg, transport_factory=fleet.factory, dry_run=dry_run)
        return Orchestrator(cfg, registry, executor)

    return _make


@pytest.fixture
def sample_inventory_data():
    """Sample inventory data for testing."""
    return {
        "all": {
            "vars": {
                "cluster_name": "test-cluster",
                "kubernetes_version": "v1.30",
                "pod_network_cidr": "192.168.0.0/16",
                "ansible_python_interpreter": "/usr/bin/python3",
                **FAST_SETTINGS,
            },
            "children": {
                "control_plane": {"hosts": {"master1": {"ansible_host": "10.0.0.1"}}},
                "workers": {
                    "hosts": {
                        "worker1": {"ansible_host": "10.0.0.2", "ansible_user": "ubuntu"},
                        "worker2": {"ansible_host": "10.0.0.3", "ansible_port": 2222},
                    }
                },
            },
        }
    }


@pytest.fixture
def inventory_file(tmp_path, sample_inventory_data):
    """Inventory written to a temporary hosts.yml."""
    path = tmp_path / "hosts.yml"
    path.write_text(yaml.safe_dump(sample_inventory_data, sort_keys=False))
    return path
