"""Node registry: lifecycle state of every node in one fleet."""

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from cluster_bootstrap.exceptions import ClusterBootstrapError, ValidationError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import FleetSummary, Node, NodeRole, NodeState, PrepStage

logger = get_logger(__name__)

PREPARATION_STEPS = {stage.value for stage in PrepStage} | {"preflight"}


class NodeRegistry:
    """Owns the fleet's nodes and serializes mutation per node.

    Each node has its own lock, so concurrent tasks on distinct nodes never
    wait for each other, while two tasks on the same node run one at a time.
    Every mutation is persisted through the optional store.
    """

    def __init__(self, nodes: list[Node], store=None, persist: bool = True):
        """Initialize the registry.

        Args:
            nodes: Fleet nodes, exactly one of which must be the master
            store: Object with save(registry) used to persist state
            persist: If False, mutations stay in memory (dry-run)
        """
        masters = [n for n in nodes if n.role == NodeRole.MASTER]
        if len(masters) != 1:
            raise ValidationError(
                f"Fleet must declare exactly one master, found {len(masters)}",
                "Put a single host in the control_plane group of the inventory",
            )
        hostnames = [n.hostname for n in nodes]
        duplicates = sorted({h for h in hostnames if hostnames.count(h) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate hostnames in fleet: {', '.join(duplicates)}")

        self._nodes: dict[str, Node] = {n.hostname: n for n in nodes}
        self._locks: dict[str, threading.RLock] = {n.hostname: threading.RLock() for n in nodes}
        self._save_lock = threading.Lock()
        self.store = store
        self.persist = persist

    def __contains__(self, hostname: str) -> bool:
        return hostname in self._nodes

    def __iter__(self) -> Iterator[Node]:
        return iter(self.nodes)

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def master(self) -> Node:
        return next(n for n in self._nodes.values() if n.role == NodeRole.MASTER)

    @property
    def workers(self) -> list[Node]:
        return [n for n in self._nodes.values() if n.role == NodeRole.WORKER]

    def get(self, hostname: str) -> Node:
        try:
            return self._nodes[hostname]
        except KeyError:
            raise ValidationError(
                f"Node '{hostname}' is not part of this fleet",
                f"Known nodes: {', '.join(sorted(self._nodes))}",
            )

    def select(
        self, hostnames: list[str] | None = None, role: NodeRole | None = None
    ) -> list[Node]:
        """Return nodes by name (all when None), optionally filtered by role."""
        nodes = [self.get(h) for h in hostnames] if hostnames else self.nodes
        if role is not None:
            nodes = [n for n in nodes if n.role == role]
        return nodes

    @contextmanager
    def locked(self, hostname: str):
        """Hold the node's lock for the duration of a task."""
        node = self.get(hostname)
        with self._locks[hostname]:
            yield node

    def _mutate(self, hostname: str, **changes) -> Node:
        with self.locked(hostname) as node:
            for key, value in changes.items():
                setattr(node, key, value)
            node.updated_at = datetime.now()
        self.save()
        return node

    def begin(self, hostname: str, step: str) -> Node:
        """Mark a step as in progress on the node."""
        return self._mutate(hostname, in_progress=step)

    def finish(self, hostname: str) -> Node:
        """Clear the in-progress marker."""
        return self._mutate(hostname, in_progress=None)

    def advance(self, hostname: str, stage: PrepStage) -> Node:
        """Record a completed preparation stage; stages never move backwards."""
        node = self.get(hostname)
        if stage.position < node.stage.position:
            return node
        return self._mutate(hostname, stage=stage)

    def set_state(self, hostname: str, state: NodeState) -> Node:
        """Move the node to a new lifecycle state, clearing any recorded failure."""
        logger.info(f"{hostname}: {self.get(hostname).state.value} -> {state.value}")
        return self._mutate(hostname, state=state, last_error=None, failed_step=None)

    def fail(self, hostname: str, step: str, error: Exception) -> Node:
        """Mark the node failed at step, keeping its last successful stage."""
        message = error.message if isinstance(error, ClusterBootstrapError) else str(error)
        logger.warning(f"{hostname}: failed at {step}: {message}")
        return self._mutate(
            hostname, state=NodeState.FAILED, last_error=message, failed_step=step
        )

    def mark_prepared(self, hostname: str) -> Node:
        """Record completed preparation without demoting later lifecycle states."""
        node = self.get(hostname)
        self.advance(hostname, PrepStage.PREPARED)
        if node.state == NodeState.UNCONFIGURED or (
            node.state == NodeState.FAILED and node.failed_step in PREPARATION_STEPS
        ):
            return self.set_state(hostname, NodeState.PREPARED)
        return node

    def release_all(self) -> None:
        """Clear every in-progress marker, e.g. after an abort or crash."""
        for node in self.nodes:
            if node.in_progress:
                logger.warning(f"{node.hostname}: clearing interrupted step '{node.in_progress}'")
                self._mutate(node.hostname, in_progress=None)

    def summary(self) -> FleetSummary:
        by_state: dict[str, int] = {}
        for node in self.nodes:
            by_state[node.state.value] = by_state.get(node.state.value, 0) + 1
        return FleetSummary(total=len(self._nodes), by_state=by_state)

    def save(self) -> None:
        if not self.persist or self.store is None:
            return
        with self._save_lock:
            self.store.save(self)
