"""Node-local forwarding units realised as long-running host-network pods."""

from __future__ import annotations

import logging
from typing import List, Optional, Set

from kubernetes.client import (
    V1Container,
    V1ObjectMeta,
    V1Pod,
    V1PodSpec,
    V1ResourceRequirements,
    V1SecurityContext,
    V1Toleration,
)

from capcs.state import LocalForwardingUnit

logger = logging.getLogger(__name__)

DEFAULT_IMAGE = "praqma/network-multitool:alpine-extra"
DEFAULT_NAMESPACE = "kube-system"

APP_LABEL = "app"
APP_NAME = "cloudsigma-lb-ip"
IP_LABEL = "cloudsigma.com/lb-ip"
NODE_LABEL = "cloudsigma.com/lb-node"
CONFIG_ANNOTATION = "cloudsigma.com/lb-forwarding"


def unit_fingerprint(unit: LocalForwardingUnit) -> str:
    return f"{unit.protocol}:{unit.address}:{unit.port}->{unit.backend_ip}:{unit.backend_port}"


def render_script(unit: LocalForwardingUnit) -> str:
    """
    Shell script that installs the unit and keeps it alive.

    Every step is guarded so re-running the script on a node that already
    carries the configuration changes nothing. On TERM the alias and rules
    are removed again.
    """
    ip = unit.address
    proto = unit.protocol.lower()
    match = f"-d {ip} -p {proto} --dport {unit.port}"
    dest = f"{unit.backend_ip}:{unit.backend_port}"
    return f"""set -u
PRIMARY_IF=$(ip -o link show | grep -v -E 'lo:|cilium|lxc|veth|docker|cni|flannel' | head -1 | awk -F': ' '{{print $2}}' | cut -d@ -f1)
echo "Primary interface: $PRIMARY_IF"

cleanup() {{
  iptables -t nat -D PREROUTING {match} -j DNAT --to-destination {dest} 2>/dev/null
  iptables -t nat -D OUTPUT {match} -j DNAT --to-destination {dest} 2>/dev/null
  iptables -t nat -D POSTROUTING -d {unit.backend_ip} -p {proto} --dport {unit.backend_port} -j MASQUERADE 2>/dev/null
  ip addr del {ip}/32 dev $PRIMARY_IF 2>/dev/null
  exit 0
}}
trap cleanup TERM INT

ip addr add {ip}/32 dev $PRIMARY_IF 2>/dev/null || echo "{ip} already configured on $PRIMARY_IF"
arping -U -c 3 -I $PRIMARY_IF {ip} 2>/dev/null &
arping -A -c 3 -I $PRIMARY_IF {ip} 2>/dev/null &

iptables -t nat -C PREROUTING {match} -j DNAT --to-destination {dest} 2>/dev/null || \\
  iptables -t nat -I PREROUTING 1 {match} -j DNAT --to-destination {dest}
iptables -t nat -C OUTPUT {match} -j DNAT --to-destination {dest} 2>/dev/null || \\
  iptables -t nat -I OUTPUT 1 {match} -j DNAT --to-destination {dest}
iptables -t nat -C POSTROUTING -d {unit.backend_ip} -p {proto} --dport {unit.backend_port} -j MASQUERADE 2>/dev/null || \\
  iptables -t nat -A POSTROUTING -d {unit.backend_ip} -p {proto} --dport {unit.backend_port} -j MASQUERADE

echo "Forwarding {ip}:{unit.port}/{proto} to {dest} on $PRIMARY_IF"
while true; do sleep 3600 & wait $!; done
"""


def build_pod(
    unit: LocalForwardingUnit,
    namespace: str = DEFAULT_NAMESPACE,
    image: str = DEFAULT_IMAGE,
) -> V1Pod:
    """
    Generate the pod realising a forwarding unit on its node.

    Args:
        unit: Forwarding unit (address, node, backend, port, protocol)
        namespace: Namespace the pod is created in
        image: Image providing ip, arping and iptables

    Returns:
        V1Pod pinned to ``unit.node_name`` with host networking
    """
    labels = {
        APP_LABEL: APP_NAME,
        IP_LABEL: unit.address,
        NODE_LABEL: unit.node_name,
    }
    container = V1Container(
        name="forward",
        image=image,
        command=["/bin/sh", "-c", render_script(unit)],
        security_context=V1SecurityContext(privileged=True),
        resources=V1ResourceRequirements(
            requests={"cpu": "5m", "memory": "16Mi"},
            limits={"memory": "64Mi"},
        ),
    )
    return V1Pod(
        api_version="v1",
        kind="Pod",
        metadata=V1ObjectMeta(
            name=unit.name,
            namespace=namespace,
            labels=labels,
            annotations={CONFIG_ANNOTATION: unit_fingerprint(unit)},
        ),
        spec=V1PodSpec(
            node_name=unit.node_name,
            host_network=True,
            restart_policy="Always",
            termination_grace_period_seconds=10,
            tolerations=[V1Toleration(operator="Exists")],
            containers=[container],
        ),
    )


class ForwardingManager:
    """Creates and removes forwarding pods; all operations are idempotent."""

    def __init__(self, tenant, namespace: str = DEFAULT_NAMESPACE, image: str = DEFAULT_IMAGE):
        self.tenant = tenant
        self.namespace = namespace
        self.image = image

    def _pods_for(self, address: str) -> List[V1Pod]:
        return self.tenant.list_pods(self.namespace, f"{APP_LABEL}={APP_NAME},{IP_LABEL}={address}")

    def ensure(self, unit: LocalForwardingUnit) -> bool:
        """
        Make sure the unit's pod exists with the unit's configuration.

        Returns:
            True if a pod was created, False if an identical one was already present.
        """
        wanted = unit_fingerprint(unit)
        for pod in self._pods_for(unit.address):
            if pod.metadata.name != unit.name:
                continue
            current = (pod.metadata.annotations or {}).get(CONFIG_ANNOTATION)
            if current == wanted:
                return False
            logger.info(f"Forwarding unit {unit.name} changed ({current} -> {wanted}), recreating")
            self.tenant.delete_pod(self.namespace, unit.name, grace_period_seconds=0)
        self.tenant.create_pod(self.namespace, build_pod(unit, self.namespace, self.image))
        logger.info(f"Created forwarding unit {unit.name} on {unit.node_name}: {wanted}")
        return True

    def remove(self, address: str, keep_node: Optional[str] = None, force: bool = False) -> int:
        """
        Delete the address's forwarding pods, except the one on ``keep_node``.

        ``force`` deletes without a grace period, for pods on nodes that will
        never run their cleanup.
        """
        removed = 0
        for pod in self._pods_for(address):
            node = (pod.metadata.labels or {}).get(NODE_LABEL) or (pod.spec.node_name if pod.spec else None)
            if keep_node is not None and node == keep_node:
                continue
            self.tenant.delete_pod(self.namespace, pod.metadata.name, grace_period_seconds=0 if force else 10)
            logger.info(f"Removed forwarding unit {pod.metadata.name} from {node}")
            removed += 1
        return removed

    def addresses(self) -> Set[str]:
        """Addresses with at least one forwarding pod on any node."""
        pods = self.tenant.list_pods(self.namespace, f"{APP_LABEL}={APP_NAME}")
        return {(p.metadata.labels or {}).get(IP_LABEL) for p in pods} - {None}

    def exists(self, unit: LocalForwardingUnit) -> bool:
        return any(p.metadata.name == unit.name for p in self._pods_for(unit.address))
