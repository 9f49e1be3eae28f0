"""Data models for fleet nodes, credentials, results and cluster state."""

from cluster_bootstrap.models.cluster import ClusterState, NodeStatus, PodStatus
from cluster_bootstrap.models.credentials import (
    DEFAULT_CICD_RULES,
    JoinCredential,
    PolicyRule,
    ServiceAccountGrant,
)
from cluster_bootstrap.models.node import FleetSummary, Node, NodeRole, NodeState, PrepStage
from cluster_bootstrap.models.results import (
    CommandResult,
    RunReport,
    StepOutcome,
    StepResult,
)

__all__ = [
    "Node",
    "NodeRole",
    "NodeState",
    "PrepStage",
    "FleetSummary",
    "JoinCredential",
    "PolicyRule",
    "ServiceAccountGrant",
    "DEFAULT_CICD_RULES",
    "CommandResult",
    "StepOutcome",
    "StepResult",
    "RunReport",
    "ClusterState",
    "NodeStatus",
    "PodStatus",
]
