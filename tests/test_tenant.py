import sys
from pathlib import Path
from unittest import mock

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest
from kubernetes.client import (
    V1Node,
    V1NodeAddress,
    V1NodeCondition,
    V1NodeSpec,
    V1NodeStatus,
    V1ObjectMeta,
    V1Taint,
)
from kubernetes.client.exceptions import ApiException

from capcs.state import Address
from capcs.tenant import TenantCluster, node_from_api


def _node(taints=(), addresses=()):
    return V1Node(
        metadata=V1ObjectMeta(name="node-a"),
        spec=V1NodeSpec(
            provider_id="cloudsigma://srv-1",
            taints=[V1Taint(key=k, effect="NoSchedule") for k in taints],
        ),
        status=V1NodeStatus(
            conditions=[V1NodeCondition(type="Ready", status="True")],
            addresses=[V1NodeAddress(type=t, address=a) for t, a in addresses],
        ),
    )


@pytest.fixture
def core():
    return mock.Mock()


def test_node_from_api_reads_taints_and_addresses():
    node = node_from_api(_node(["dedicated"], [("Hostname", "node-a"), ("InternalIP", "10.0.0.5")]))

    assert node.server_uuid == "srv-1"
    assert node.ready is True
    assert node.internal_ip == "10.0.0.5"
    assert node.taints == ["dedicated"]
    assert node.has_ip_address()
    assert not node_from_api(_node(addresses=[("Hostname", "node-a")])).has_ip_address()


def test_remove_node_taints_keeps_others(core):
    core.read_node.return_value = _node(["node.cluster.x-k8s.io/uninitialized", "dedicated"])

    assert TenantCluster(core).remove_node_taints("node-a", ["node.cluster.x-k8s.io/uninitialized"]) is True

    name, body = core.replace_node.call_args[0]
    assert name == "node-a"
    assert [t.key for t in body.spec.taints] == ["dedicated"]


def test_remove_node_taints_without_match_or_on_conflict(core):
    core.read_node.return_value = _node(["dedicated"])
    assert TenantCluster(core).remove_node_taints("node-a", ["gone"]) is False
    core.replace_node.assert_not_called()

    core.read_node.return_value = _node(["gone"])
    core.replace_node.side_effect = ApiException(status=409)
    assert TenantCluster(core).remove_node_taints("node-a", ["gone"]) is False


def test_set_node_addresses_patches_status(core):
    TenantCluster(core).set_node_addresses("node-a", [Address("Hostname", "node-a"), Address("ExternalIP", "185.0.0.1")])

    core.patch_node_status.assert_called_once_with(
        "node-a",
        {"status": {"addresses": [
            {"type": "Hostname", "address": "node-a"},
            {"type": "ExternalIP", "address": "185.0.0.1"},
        ]}},
    )


def test_delete_node_ignores_missing(core):
    core.delete_node.side_effect = ApiException(status=404)
    TenantCluster(core).delete_node("node-a")

    core.delete_node.side_effect = ApiException(status=500)
    with pytest.raises(ApiException):
        TenantCluster(core).delete_node("node-a")
