import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from capcs.forwarding import CONFIG_ANNOTATION, ForwardingManager, build_pod, render_script
from capcs.state import LocalForwardingUnit


def _unit(node="node-a", backend_ip="10.244.1.5"):
    return LocalForwardingUnit(
        address="185.0.0.3",
        node_name=node,
        backend_ip=backend_ip,
        port=80,
        backend_port=8080,
        protocol="tcp",
    )


@pytest.fixture
def forwarding(tenant):
    return ForwardingManager(tenant, namespace="kube-system")


def test_unit_name_depends_on_address_and_node():
    assert _unit().name.startswith("lb-ip-185-0-0-3-")
    assert _unit().name == _unit().name
    assert _unit("node-a").name != _unit("node-b").name


def test_script_is_guarded_and_cleans_up():
    script = render_script(_unit())

    assert "ip addr add 185.0.0.3/32 dev $PRIMARY_IF" in script
    assert (
        "iptables -t nat -C PREROUTING -d 185.0.0.3 -p tcp --dport 80 -j DNAT --to-destination 10.244.1.5:8080"
        in script
    )
    assert "-j MASQUERADE" in script
    assert "trap cleanup TERM INT" in script
    assert "arping -U" in script


def test_pod_runs_privileged_on_the_unit_node():
    pod = build_pod(_unit(), namespace="kube-system", image="example/tools:1")

    assert pod.metadata.name == _unit().name
    assert pod.metadata.labels["cloudsigma.com/lb-ip"] == "185.0.0.3"
    assert pod.spec.node_name == "node-a"
    assert pod.spec.host_network is True
    assert pod.spec.containers[0].security_context.privileged is True
    assert pod.spec.containers[0].image == "example/tools:1"
    assert pod.spec.tolerations[0].operator == "Exists"


def test_ensure_is_idempotent(forwarding, tenant):
    assert forwarding.ensure(_unit()) is True
    assert forwarding.ensure(_unit()) is False
    assert len(tenant.pods) == 1
    assert forwarding.exists(_unit())


def test_ensure_recreates_a_changed_unit(forwarding, tenant):
    forwarding.ensure(_unit())

    assert forwarding.ensure(_unit(backend_ip="10.244.2.7")) is True

    (pod,) = tenant.pods.values()
    assert "10.244.2.7:8080" in pod.metadata.annotations[CONFIG_ANNOTATION]
    assert tenant.deleted_pods == [(_unit().name, 0)]


def test_remove_keeps_requested_node(forwarding, tenant):
    forwarding.ensure(_unit("node-a"))
    forwarding.ensure(_unit("node-b"))

    assert forwarding.remove("185.0.0.3", keep_node="node-b") == 1
    assert [p.spec.node_name for p in tenant.pods.values()] == ["node-b"]
    assert tenant.deleted_pods == [(_unit("node-a").name, 10)]

    assert forwarding.remove("185.0.0.3", force=True) == 1
    assert tenant.pods == {}
    assert tenant.deleted_pods[-1] == (_unit("node-b").name, 0)
