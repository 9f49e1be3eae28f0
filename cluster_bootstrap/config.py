"""Bootstrap configuration model."""

import ipaddress
import re
from datetime import timedelta

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_NETWORK_PLUGIN_MANIFEST = (
    "https://raw.githubusercontent.com/projectcalico/calico/v3.27.3/manifests/calico.yaml"
)


class BootstrapConfig(BaseModel):
    """Cluster-wide settings, read from the inventory's `all.vars`.

    Everything the runbook took from the ambient shell (kubeconfig location,
    package tracks, ssh access) is explicit here and handed to each component.
    """

    cluster_name: str = "kubernetes"
    kubernetes_version: str = "v1.30"
    kubernetes_package_version: str | None = None
    containerd_version: str | None = None
    pod_network_cidr: str = "192.168.0.0/16"
    api_server_port: int = 6443
    network_plugin_manifest: str = DEFAULT_NETWORK_PLUGIN_MANIFEST
    network_plugin_daemonset: str = "calico-node"
    admin_kubeconfig: str = "/etc/kubernetes/admin.conf"
    supported_os: list[str] = Field(default_factory=lambda: ["ubuntu", "debian"])

    ssh_user: str | None = None
    ssh_key: str | None = None
    ssh_options: list[str] = Field(
        default_factory=lambda: ["StrictHostKeyChecking=accept-new", "ConnectTimeout=15"]
    )
    use_sudo: bool = True

    # Timeouts in seconds
    command_timeout: float = 900.0
    probe_timeout: float = 60.0
    init_timeout: float = 900.0
    join_timeout: float = 600.0
    system_pods_timeout: float = 300.0
    node_ready_timeout: float = 300.0
    token_timeout: float = 60.0
    poll_interval: float = 5.0

    retry_attempts: int = 3
    retry_base_delay: float = 5.0
    concurrency: int = 10
    join_concurrency: int = 3

    token_ttl_hours: int = 24
    token_refresh_margin_minutes: int = 10
    rollback_on_failure: bool = True

    @field_validator("cluster_name")
    @classmethod
    def validate_cluster_name(cls, v: str) -> str:
        """Validate cluster name is not empty."""
        if not v:
            raise ValueError("cluster_name cannot be empty")
        return v

    @field_validator("kubernetes_version")
    @classmethod
    def validate_kubernetes_version(cls, v: str) -> str:
        """Validate the version is a minor track such as v1.30."""
        if not re.match(r"^v?\d+\.\d+$", v or ""):
            raise ValueError(
                f"kubernetes_version '{v}' must be a minor release track (e.g., v1.30)"
            )
        return v if v.startswith("v") else f"v{v}"

    @field_validator("pod_network_cidr")
    @classmethod
    def validate_pod_network_cidr(cls, v: str) -> str:
        """Validate pod_network_cidr is a valid CIDR."""
        try:
            ipaddress.ip_network(v, strict=False)
        except ValueError:
            raise ValueError(f"pod_network_cidr '{v}' must be a valid CIDR (e.g., 192.168.0.0/16)")
        return v

    @field_validator("api_server_port")
    @classmethod
    def validate_api_server_port(cls, v: int) -> int:
        if not 1 <= v <= 65535:
            raise ValueError(f"api_server_port must be between 1 and 65535, got {v}")
        return v

    @field_validator("retry_attempts", "concurrency", "join_concurrency", "token_ttl_hours")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @model_validator(mode="after")
    def validate_package_version_on_track(self) -> "BootstrapConfig":
        """A pinned package version must belong to the configured minor track."""
        if self.kubernetes_package_version:
            if not self.kubernetes_package_version.startswith(f"{self.package_track}."):
                raise ValueError(
                    f"kubernetes_package_version '{self.kubernetes_package_version}' is not "
                    f"on the {self.kubernetes_version} track"
                )
        return self

    @property
    def package_track(self) -> str:
        """Minor track without the leading v, e.g. 1.30."""
        return self.kubernetes_version.lstrip("v")

    @property
    def expected_kube_version(self) -> str:
        """Version the kube tools must match: exact pin or the minor track."""
        return self.kubernetes_package_version or self.package_track

    @property
    def token_ttl(self) -> timedelta:
        return timedelta(hours=self.token_ttl_hours)

    @property
    def token_refresh_margin(self) -> timedelta:
        return timedelta(minutes=self.token_refresh_margin_minutes)

    @classmethod
    def from_vars(cls, variables: dict | None, **overrides) -> "BootstrapConfig":
        """Build from inventory vars, ignoring unrelated Ansible variables.

        Args:
            variables: Contents of `all.vars`
            **overrides: Values from the command line; None means not given

        Returns:
            Validated configuration
        """
        known = set(cls.model_fields)
        data = {k: v for k, v in dict(variables or {}).items() if k in known}
        data.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**data)
