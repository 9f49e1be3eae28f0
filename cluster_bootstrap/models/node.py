"""Data models for fleet nodes and their lifecycle."""

import re
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class NodeRole(str, Enum):
    """Role a node plays in the cluster."""

    MASTER = "master"
    WORKER = "worker"


class NodeState(str, Enum):
    """Lifecycle state of a node within one fleet."""

    UNCONFIGURED = "unconfigured"
    PREPARED = "prepared"
    INITIALIZED = "initialized"
    JOINED = "joined"
    FAILED = "failed"


class PrepStage(str, Enum):
    """Node preparation stages, declared in the order they must complete."""

    UNCONFIGURED = "unconfigured"
    PACKAGES_UPDATED = "packages-updated"
    SWAP_DISABLED = "swap-disabled"
    MODULES_LOADED = "modules-loaded"
    SYSCTL_APPLIED = "sysctl-applied"
    RUNTIME_INSTALLED = "runtime-installed"
    KUBETOOLS_INSTALLED = "kubetools-installed"
    PREPARED = "prepared"

    @property
    def position(self) -> int:
        """Index of the stage in the preparation sequence."""
        return list(PrepStage).index(self)

    def reached(self, other: "PrepStage") -> bool:
        """Return True if this stage is at or beyond other."""
        return self.position >= other.position


class Node(BaseModel):
    """A host in the fleet together with its bootstrap progress."""

    hostname: str
    address: str
    role: NodeRole
    ssh_user: str | None = None
    ssh_port: int = 22
    state: NodeState = NodeState.UNCONFIGURED
    stage: PrepStage = PrepStage.UNCONFIGURED
    last_error: str | None = None
    failed_step: str | None = None
    in_progress: str | None = None
    updated_at: datetime | None = None

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Validate hostname follows DNS naming conventions."""
        if not v:
            raise ValueError("hostname cannot be empty")
        if len(v) > 253:
            raise ValueError("hostname cannot exceed 253 characters")
        # RFC 1123 hostname validation
        hostname_pattern = re.compile(
            r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$", re.IGNORECASE
        )
        if not hostname_pattern.match(v):
            raise ValueError(
                f"hostname '{v}' must contain only alphanumeric characters, "
                "hyphens, and dots, and cannot start or end with a hyphen"
            )
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Validate address is not empty."""
        if not v or not v.strip():
            raise ValueError("address cannot be empty")
        return v.strip()

    @field_validator("ssh_port")
    @classmethod
    def validate_ssh_port(cls, v: int) -> int:
        """Validate the SSH port is a usable TCP port."""
        if not 1 <= v <= 65535:
            raise ValueError(f"ssh_port must be between 1 and 65535, got {v}")
        return v

    @property
    def is_master(self) -> bool:
        return self.role == NodeRole.MASTER

    @property
    def is_prepared(self) -> bool:
        """True once every preparation stage has completed."""
        return self.stage == PrepStage.PREPARED

    def to_inventory_dict(self) -> dict:
        """Convert to Ansible inventory host format."""
        result = {"ansible_host": self.address}
        if self.ssh_user:
            result["ansible_user"] = self.ssh_user
        if self.ssh_port != 22:
            result["ansible_port"] = self.ssh_port
        return result

    @classmethod
    def from_inventory_dict(cls, hostname: str, data: dict, role: NodeRole) -> "Node":
        """Parse from Ansible inventory host format."""
        return cls(
            hostname=hostname,
            address=data.get("ansible_host") or hostname,
            role=role,
            ssh_user=data.get("ansible_user"),
            ssh_port=int(data.get("ansible_port", 22)),
        )

    def state_dict(self) -> dict:
        """Serialize the mutable lifecycle fields for the state file."""
        result = {"state": self.state.value, "stage": self.stage.value}
        if self.last_error:
            result["last_error"] = self.last_error
        if self.failed_step:
            result["failed_step"] = self.failed_step
        if self.in_progress:
            result["in_progress"] = self.in_progress
        if self.updated_at:
            result["updated_at"] = self.updated_at.isoformat()
        return result

    def apply_state_dict(self, data: dict) -> None:
        """Restore lifecycle fields previously produced by state_dict."""
        self.state = NodeState(data.get("state", NodeState.UNCONFIGURED.value))
        self.stage = PrepStage(data.get("stage", PrepStage.UNCONFIGURED.value))
        self.last_error = data.get("last_error")
        self.failed_step = data.get("failed_step")
        self.in_progress = data.get("in_progress")
        updated_at = data.get("updated_at")
        self.updated_at = datetime.fromisoformat(str(updated_at)) if updated_at else None


class FleetSummary(BaseModel):
    """Counts of nodes per lifecycle state."""

    total: int = 0
    by_state: dict[str, int] = Field(default_factory=dict)
