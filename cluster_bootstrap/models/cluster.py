"""Data models for live cluster state read from the Kubernetes API."""

from datetime import datetime

from pydantic import BaseModel, Field


class PodStatus(BaseModel):
    """Kubernetes pod status information."""

    name: str
    namespace: str
    node: str
    status: str
    ready: bool
    restarts: int


class NodeStatus(BaseModel):
    """Kubernetes node status information."""

    name: str
    role: str
    status: str  # Ready, NotReady, Unknown
    kubelet_version: str
    internal_ip: str
    last_heartbeat: datetime | None = None

    @property
    def is_ready(self) -> bool:
        return self.status == "Ready"


class ClusterState(BaseModel):
    """Current cluster state as seen by the API server."""

    name: str
    api_server: str
    nodes: list[NodeStatus] = Field(default_factory=list)
    system_pods: list[PodStatus] = Field(default_factory=list)

    def node(self, name: str) -> NodeStatus | None:
        return next((n for n in self.nodes if n.name == name), None)

    @property
    def pending_system_pods(self) -> list[PodStatus]:
        return [p for p in self.system_pods if not p.ready and p.status != "Succeeded"]

    @classmethod
    def from_kubernetes_api(
        cls, api_client, cluster_name: str, api_server: str = "unknown"
    ) -> "ClusterState":
        """Fetch current state from Kubernetes API.

        Args:
            api_client: A kubernetes CoreV1Api (or anything with the same methods)
            cluster_name: Name to report the cluster under
            api_server: API server URL, for display

        Returns:
            Snapshot of node readiness and kube-system pods
        """
        nodes = []
        for node in api_client.list_node().items:
            status = "Unknown"
            last_heartbeat = None
            for condition in node.status.conditions or []:
                if condition.type == "Ready":
                    status = "Ready" if condition.status == "True" else "NotReady"
                    last_heartbeat = condition.last_heartbeat_time

            labels = node.metadata.labels or {}
            if (
                "node-role.kubernetes.io/control-plane" in labels
                or "node-role.kubernetes.io/master" in labels
            ):
                role = "control-plane"
            else:
                role = "worker"

            addresses = node.status.addresses or []
            internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), "N/A")
            node_info = node.status.node_info

            nodes.append(
                NodeStatus(
                    name=node.metadata.name,
                    role=role,
                    status=status,
                    kubelet_version=node_info.kubelet_version if node_info else "unknown",
                    internal_ip=internal_ip,
                    last_heartbeat=last_heartbeat,
                )
            )

        pods = []
        for pod in api_client.list_namespaced_pod("kube-system").items:
            container_statuses = pod.status.container_statuses or []
            conditions = pod.status.conditions or []
            pods.append(
                PodStatus(
                    name=pod.metadata.name,
                    namespace=pod.metadata.namespace,
                    node=pod.spec.node_name or "unscheduled",
                    status=pod.status.phase or "Unknown",
                    ready=any(c.type == "Ready" and c.status == "True" for c in conditions),
                    restarts=sum(cs.restart_count for cs in container_statuses),
                )
            )

        return cls(name=cluster_name, api_server=api_server, nodes=nodes, system_pods=pods)

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str, cluster_name: str) -> "ClusterState":
        """Load an explicit kubeconfig and fetch the cluster state.

        Raises:
            KubernetesError: If the kubeconfig cannot be loaded or the API fails
        """
        from kubernetes import client, config
        from kubernetes.client.rest import ApiException
        from kubernetes.config.config_exception import ConfigException

        from cluster_bootstrap.exceptions import KubernetesError

        try:
            api = config.new_client_from_config(config_file=kubeconfig)
        except (ConfigException, OSError) as e:
            raise KubernetesError(
                f"Failed to load kubeconfig {kubeconfig}: {e}",
                "Copy /etc/kubernetes/admin.conf from the master and pass it with --kubeconfig",
            )

        try:
            return cls.from_kubernetes_api(
                client.CoreV1Api(api), cluster_name, api.configuration.host
            )
        except ApiException as e:
            raise KubernetesError(f"Kubernetes API request failed: {e.reason}", str(e.body))
