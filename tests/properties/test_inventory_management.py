"""Property-based tests for inventory management.

Feature: kubeadm-bootstrap
Property 7: An inventory loads as one master and its workers
Property 8: A host cannot be both master and worker
"""

import tempfile
from pathlib import Path

import pytest
from hypothesis import given
from hypothesis import strategies as st

from cluster_bootstrap.inventory import InventoryError, InventoryManager, InventoryValidationError
from cluster_bootstrap.models.node import Node, NodeRole

LABEL = st.text(alphabet="abcdefghijklmnopqrstuvwxyz0123456789", min_size=1, max_size=8)


@st.composite
def fleet(draw, max_workers=5):
    """Generate a master and workers with unique hostnames and addresses."""
    hostnames = LABEL.map(lambda s: f"node-{s}")
    names = draw(st.lists(hostnames, min_size=1, max_size=max_workers + 1, unique=True))
    users = st.one_of(st.none(), st.sampled_from(["ubuntu", "ops", "admin"]))
    ports = st.one_of(st.just(22), st.integers(min_value=1024, max_value=65535))
    nodes = [
        Node(
            hostname=name,
            address=f"10.0.{i // 250}.{i % 250 + 1}",
            role=NodeRole.MASTER if i == 0 else NodeRole.WORKER,
            ssh_user=draw(users),
            ssh_port=draw(ports),
        )
        for i, name in enumerate(names)
    ]
    return nodes


def create_test_inventory(nodes: list[Node]) -> dict:
    """Create a test inventory structure from a list of nodes."""
    inventory = {
        "all": {
            "vars": {
                "cluster_name": "test-cluster",
                "kubernetes_version": "1.30",
            },
            "children": {"control_plane": {"hosts": {}}, "workers": {"hosts": {}}},
        }
    }

    for node in nodes:
        group = "control_plane" if node.is_master else "workers"
        inventory["all"]["children"][group]["hosts"][node.hostname] = node.to_inventory_dict()

    return inventory


@given(nodes=fleet())
def test_property_7_inventory_loads_master_and_workers(nodes):
    """
    Feature: kubeadm-bootstrap, Property 7: An inventory loads as one master and its workers

    For any fleet written to an inventory file, loading it returns the master
    first followed by every worker, with connection details intact.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        manager = InventoryManager(Path(tmpdir) / "hosts.yml")
        manager.write(create_test_inventory(nodes))

        loaded = manager.get_nodes()

        assert [n.hostname for n in loaded] == [n.hostname for n in nodes]
        assert loaded[0].role == NodeRole.MASTER
        assert all(n.role == NodeRole.WORKER for n in loaded[1:])
        for original, retrieved in zip(nodes, loaded):
            assert retrieved.address == original.address
            assert retrieved.ssh_user == original.ssh_user
            assert retrieved.ssh_port == original.ssh_port


@given(nodes=fleet(max_workers=4))
def test_property_8_master_listed_as_worker_rejected(nodes):
    """
    Feature: kubeadm-bootstrap, Property 8: A host cannot be both master and worker

    Listing the master under workers as well is rejected before any node is
    returned.
    """
    inventory = create_test_inventory(nodes)
    master = nodes[0]
    inventory["all"]["children"]["workers"]["hosts"][master.hostname] = {
        "ansible_host": master.address
    }

    with tempfile.TemporaryDirectory() as tmpdir:
        manager = InventoryManager(Path(tmpdir) / "hosts.yml")
        manager.write(inventory)

        with pytest.raises(InventoryValidationError, match="both master and worker"):
            manager.get_nodes()


@given(nodes=fleet(max_workers=3), extra=LABEL)
def test_add_worker_preserves_existing_nodes(nodes, extra):
    """
    Property: Adding a worker leaves every existing host unchanged.
    """
    new_worker = Node(hostname=f"extra-{extra}", address="10.1.0.1", role=NodeRole.WORKER)

    with tempfile.TemporaryDirectory() as tmpdir:
        manager = InventoryManager(Path(tmpdir) / "hosts.yml")
        manager.write(create_test_inventory(nodes))

        manager.add_worker(new_worker)

        loaded = manager.get_nodes()
        assert [n.hostname for n in loaded] == [n.hostname for n in nodes] + [new_worker.hostname]
        for original, retrieved in zip(nodes, loaded):
            assert retrieved.address == original.address


@given(nodes=fleet(max_workers=3))
def test_duplicate_worker_rejected(nodes):
    duplicate = Node(hostname=nodes[-1].hostname, address="10.1.0.1", role=NodeRole.WORKER)

    with tempfile.TemporaryDirectory() as tmpdir:
        manager = InventoryManager(Path(tmpdir) / "hosts.yml")
        manager.write(create_test_inventory(nodes))

        with pytest.raises(InventoryError, match="already exists"):
            manager.add_worker(duplicate)

        assert len(manager.get_nodes()) == len(nodes)
