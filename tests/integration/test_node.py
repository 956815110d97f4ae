"""Scenarios for the nodes registered by the agent."""

from agent_integration.kube import TestKubeClient
from agent_integration.manifest import (
    STACKABLE_ARCH_KEY,
    STACKABLE_ARCH_VALUE,
    STACKABLE_NODE_SELECTOR,
    Node,
    Taint,
)


def test_at_least_one_node_should_be_available(kube_client: TestKubeClient) -> None:
    """Test that the agent registered a node."""
    nodes = kube_client.list_labeled(Node, STACKABLE_NODE_SELECTOR)
    assert nodes


def test_nodes_should_be_tainted(kube_client: TestKubeClient) -> None:
    """Test that agent nodes repel pods which do not tolerate them."""
    nodes = kube_client.list_labeled(Node, STACKABLE_NODE_SELECTOR)
    for node in nodes:
        assert set(node.taints) == {
            Taint(key=STACKABLE_ARCH_KEY, value=STACKABLE_ARCH_VALUE, effect="NoSchedule"),
            Taint(key=STACKABLE_ARCH_KEY, value=STACKABLE_ARCH_VALUE, effect="NoExecute"),
        }, f"Unexpected taints on {node}"
