"""Fleet inventory and registry state persistence.

The inventory is an Ansible-style YAML file read and written with ruamel.yaml
so that comments and formatting survive a round trip. Node lifecycle state is
kept next to it in a separate state file, so re-runs resume where the last
run stopped.
"""

import os
import shutil
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap

from cluster_bootstrap.config import BootstrapConfig
from cluster_bootstrap.exceptions import ConfigurationError, InventoryError
from cluster_bootstrap.logging_config import get_logger
from cluster_bootstrap.models.node import Node, NodeRole

logger = get_logger(__name__)

GROUP_ROLES = {"control_plane": NodeRole.MASTER, "workers": NodeRole.WORKER}
STATE_VERSION = 1


class InventoryValidationError(InventoryError):
    """Exception raised when inventory validation fails."""

    pass


def _yaml() -> YAML:
    yaml = YAML()
    yaml.preserve_quotes = True
    yaml.default_flow_style = False
    yaml.indent(mapping=2, sequence=4, offset=2)
    return yaml


class InventoryManager:
    """Manager for the fleet inventory file."""

    def __init__(self, inventory_path: str | Path):
        """Initialize inventory manager.

        Args:
            inventory_path: Path to the inventory file
        """
        self.inventory_path = Path(inventory_path)
        self.yaml = _yaml()

    def read(self) -> dict:
        """Read inventory file and return parsed data.

        Returns:
            Dictionary containing inventory data

        Raises:
            InventoryError: If file cannot be read or parsed
        """
        logger.debug(f"Reading inventory file: {self.inventory_path}")

        if not self.inventory_path.exists():
            logger.error(f"Inventory file not found: {self.inventory_path}")
            raise InventoryError(
                f"Inventory file not found: {self.inventory_path}",
                f"Expected location: {self.inventory_path.absolute()}. "
                "Create the file or specify a different path with --inventory",
            )

        try:
            with open(self.inventory_path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to read inventory file: {e}", exc_info=True)
            raise InventoryError(
                f"Failed to read inventory file: {e}",
                f"The file may have invalid YAML syntax. Check {self.inventory_path.absolute()}",
            )

        if data is None:
            logger.error("Inventory file is empty")
            raise InventoryError(
                "Inventory file is empty",
                "Declare all.children.control_plane.hosts and all.children.workers.hosts",
            )

        logger.debug(f"Successfully read inventory with {len(data)} top-level keys")
        return data

    def write(self, data: dict) -> None:
        """Write inventory data to file, keeping a backup of the previous version.

        Raises:
            InventoryError: If file cannot be written
        """
        logger.debug(f"Writing inventory file: {self.inventory_path}")

        try:
            self.inventory_path.parent.mkdir(parents=True, exist_ok=True)

            if self.inventory_path.exists():
                backup_path = self.inventory_path.with_suffix(".yml.backup")
                logger.debug(f"Creating backup at: {backup_path}")
                shutil.copy2(self.inventory_path, backup_path)

            with open(self.inventory_path, "w") as f:
                self.yaml.dump(data, f)

            logger.info(f"Successfully wrote inventory file: {self.inventory_path}")

        except PermissionError as e:
            logger.error(f"Permission denied writing inventory file: {e}")
            raise InventoryError(
                f"Permission denied writing inventory file: {self.inventory_path}",
                "Check file permissions or try running with appropriate privileges",
            )
        except OSError as e:
            logger.error(f"OS error writing inventory file: {e}")
            raise InventoryError(
                f"Failed to write inventory file: {e}",
                "Check disk space and file system permissions",
            )

    def validate(self, data: dict) -> None:
        """Validate inventory structure and required fields.

        Args:
            data: Dictionary containing inventory data

        Raises:
            InventoryValidationError: If validation fails
        """
        if not isinstance(data, dict):
            raise InventoryValidationError("Inventory must be a dictionary")

        if "all" not in data:
            raise InventoryValidationError("Inventory must have 'all' group")

        all_group = data["all"]
        if not isinstance(all_group, dict):
            raise InventoryValidationError("'all' group must be a dictionary")

        if "vars" in all_group and not isinstance(all_group["vars"], dict):
            raise InventoryValidationError("'all.vars' must be a dictionary")

        if "children" not in all_group:
            raise InventoryValidationError("'all' group must have 'children'")

        children = all_group["children"]
        if not isinstance(children, dict):
            raise InventoryValidationError("'children' must be a dictionary")

        for group in GROUP_ROLES:
            if group not in children:
                raise InventoryValidationError(f"Missing required group: {group}")

            group_data = children[group] or {}
            if not isinstance(group_data, dict):
                raise InventoryValidationError(f"Group '{group}' must be a dictionary")

            hosts = group_data.get("hosts") or {}
            if not isinstance(hosts, dict):
                raise InventoryValidationError(f"'hosts' in group '{group}' must be a dictionary")

            for hostname, host_data in hosts.items():
                self._validate_host(hostname, host_data, group)

        masters = list((children["control_plane"] or {}).get("hosts") or {})
        if len(masters) != 1:
            raise InventoryValidationError(
                f"Group 'control_plane' must contain exactly one host, found {len(masters)}",
                "This tool bootstraps a single-master cluster",
            )

        workers = set((children["workers"] or {}).get("hosts") or {})
        overlap = workers & set(masters)
        if overlap:
            raise InventoryValidationError(
                f"Host(s) listed as both master and worker: {', '.join(sorted(overlap))}"
            )

    def _validate_host(self, hostname: str, host_data: dict | None, group: str) -> None:
        """Validate a single host entry.

        Raises:
            InventoryValidationError: If host validation fails
        """
        if host_data is not None and not isinstance(host_data, dict):
            raise InventoryValidationError(
                f"Host '{hostname}' in group '{group}' must be a dictionary"
            )

        try:
            Node.from_inventory_dict(str(hostname), host_data or {}, GROUP_ROLES[group])
        except (PydanticValidationError, ValueError) as e:
            raise InventoryValidationError(
                f"Host '{hostname}' in group '{group}' validation failed: {e}"
            )

    def get_nodes(self, data: dict | None = None) -> list[Node]:
        """Get all nodes from the inventory, master first.

        Raises:
            InventoryError: If inventory cannot be read or is invalid
        """
        if data is None:
            data = self.read()
        self.validate(data)

        nodes = []
        children = data["all"]["children"]
        for group, role in GROUP_ROLES.items():
            hosts = (children[group] or {}).get("hosts") or {}
            for hostname, host_data in hosts.items():
                nodes.append(Node.from_inventory_dict(str(hostname), host_data or {}, role))
        return nodes

    def get_vars(self, data: dict | None = None) -> dict:
        """Return `all.vars` as a plain dictionary."""
        if data is None:
            data = self.read()
        return dict(data.get("all", {}).get("vars") or {})

    def load_config(self, data: dict | None = None, **overrides) -> BootstrapConfig:
        """Build the bootstrap configuration from `all.vars` plus CLI overrides.

        Raises:
            ConfigurationError: If a variable has an invalid value
        """
        try:
            return BootstrapConfig.from_vars(self.get_vars(data), **overrides)
        except PydanticValidationError as e:
            raise ConfigurationError(
                f"Invalid cluster configuration in {self.inventory_path}",
                "; ".join(
                    f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
                    for err in e.errors()
                ),
            )

    def load(self, **overrides) -> tuple[BootstrapConfig, list[Node]]:
        """Read the inventory once and return its configuration and nodes."""
        data = self.read()
        nodes = self.get_nodes(data)
        config = self.load_config(data, **overrides)
        logger.info(f"Loaded fleet of {len(nodes)} node(s) from {self.inventory_path}")
        return config, nodes

    def add_worker(self, node: Node) -> None:
        """Add a worker host to the inventory.

        Raises:
            InventoryError: If the host already exists or the file cannot be written
        """
        data = self.read()
        self.validate(data)

        if any(n.hostname == node.hostname for n in self.get_nodes(data)):
            raise InventoryError(f"Node '{node.hostname}' already exists in inventory")

        workers = data["all"]["children"]["workers"]
        if workers is None:
            workers = data["all"]["children"]["workers"] = CommentedMap()
        if not workers.get("hosts"):
            workers["hosts"] = CommentedMap()
        workers["hosts"][node.hostname] = node.to_inventory_dict()
        self.write(data)


def default_state_path(inventory_path: str | Path) -> Path:
    """State file that sits next to the inventory: hosts.yml -> hosts.state.yml."""
    path = Path(inventory_path)
    return path.with_name(f"{path.stem}.state.yml")


def fleet_id(config: BootstrapConfig, nodes: list[Node]) -> str:
    """Identify a fleet by its cluster name and master host."""
    master = next((n for n in nodes if n.role == NodeRole.MASTER), None)
    return f"{config.cluster_name}@{master.hostname if master else 'unknown'}"


class StateStore:
    """Persists per-node lifecycle state for one fleet."""

    def __init__(self, path: str | Path, fleet: str):
        self.path = Path(path)
        self.fleet = fleet
        self.yaml = _yaml()

    def load(self, nodes: list[Node]) -> None:
        """Restore lifecycle state into nodes.

        Steps left in progress by an interrupted run are cleared, since nothing
        is running them any more.

        Raises:
            InventoryError: If the file is unreadable or belongs to another fleet
        """
        if not self.path.exists():
            logger.debug(f"No state file at {self.path}; starting fresh")
            return

        try:
            with open(self.path) as f:
                data = self.yaml.load(f) or {}
        except Exception as e:
            raise InventoryError(f"Failed to read state file {self.path}: {e}")

        recorded = data.get("fleet")
        if recorded and recorded != self.fleet:
            raise InventoryError(
                f"State file {self.path} belongs to fleet '{recorded}', not '{self.fleet}'",
                "Pass --state-file to use a separate state file for this fleet",
            )

        saved = data.get("nodes") or {}
        by_name = {n.hostname: n for n in nodes}
        for hostname, node_state in saved.items():
            node = by_name.get(str(hostname))
            if node is None:
                logger.warning(f"Ignoring state for '{hostname}', which is not in the inventory")
                continue
            try:
                node.apply_state_dict(dict(node_state or {}))
            except ValueError as e:
                raise InventoryError(f"Invalid state for '{hostname}' in {self.path}: {e}")
            if node.in_progress:
                logger.warning(
                    f"{hostname}: step '{node.in_progress}' was interrupted; it will be re-checked"
                )
                node.in_progress = None

    def save(self, registry) -> None:
        """Write every node's lifecycle state, replacing the file atomically."""
        data = CommentedMap()
        data["version"] = STATE_VERSION
        data["fleet"] = self.fleet
        data["nodes"] = CommentedMap(
            (node.hostname, node.state_dict()) for node in registry.nodes
        )

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(".tmp")
            with open(tmp_path, "w") as f:
                self.yaml.dump(data, f)
            os.replace(tmp_path, self.path)
        except OSError as e:
            raise InventoryError(f"Failed to write state file {self.path}: {e}")
