"""Access to the workload cluster: services, endpoints, nodes and forwarding pods."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Tuple

from kubernetes import client, config
from kubernetes.client import V1Pod
from kubernetes.client.exceptions import ApiException

from capcs.state import Address, NodeInfo, ServiceInfo

logger = logging.getLogger(__name__)


def load_kubernetes_config(kubeconfig: Optional[str] = None) -> None:
    """Load in-cluster config, falling back to a kubeconfig file."""
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        logger.info(f"Loaded kubeconfig {kubeconfig}")
        return
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded kubeconfig")


def service_from_api(svc) -> ServiceInfo:
    meta = svc.metadata
    spec = svc.spec
    ports = []
    for p in (spec.ports or []) if spec else []:
        ports.append({
            "port": p.port,
            "protocol": (p.protocol or "TCP"),
            "target_port": p.target_port,
            "name": p.name,
        })
    ingress = []
    lb = svc.status.load_balancer if svc.status else None
    for entry in (lb.ingress or []) if lb else []:
        if entry.ip:
            ingress.append(entry.ip)
    return ServiceInfo(
        namespace=meta.namespace,
        name=meta.name,
        type=(spec.type if spec else None) or "ClusterIP",
        annotations=dict(meta.annotations or {}),
        ports=ports,
        cluster_ip=spec.cluster_ip if spec else None,
        ingress_ips=ingress,
    )


def node_from_api(node) -> NodeInfo:
    ready = False
    for cond in (node.status.conditions or []) if node.status else []:
        if cond.type == "Ready":
            ready = cond.status == "True"
    addresses = [
        Address(addr.type, addr.address)
        for addr in ((node.status.addresses or []) if node.status else [])
    ]
    internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), None)
    taints = [t.key for t in ((node.spec.taints or []) if node.spec else [])]
    return NodeInfo(
        name=node.metadata.name,
        provider_id=node.spec.provider_id if node.spec else None,
        ready=ready,
        internal_ip=internal_ip,
        addresses=addresses,
        taints=taints,
    )


class TenantCluster:
    """Thin wrapper over CoreV1Api for the calls the load-balancer and node controllers make."""

    def __init__(self, core: Optional[client.CoreV1Api] = None):
        self.core = core or client.CoreV1Api()

    def list_services(self) -> List[ServiceInfo]:
        return [service_from_api(s) for s in self.core.list_service_for_all_namespaces().items]

    def get_service(self, namespace: str, name: str) -> Optional[ServiceInfo]:
        try:
            return service_from_api(self.core.read_namespaced_service(name, namespace))
        except ApiException as e:
            if e.status == 404:
                return None
            raise

    def set_service_ingress(self, namespace: str, name: str, address: Optional[str]) -> None:
        ingress = [{"ip": address}] if address else []
        body = {"status": {"loadBalancer": {"ingress": ingress}}}
        self.core.patch_namespaced_service_status(name, namespace, body)

    def set_service_condition(self, namespace: str, name: str, cond: Dict) -> None:
        try:
            self.core.patch_namespaced_service_status(name, namespace, {"status": {"conditions": [cond]}})
        except ApiException as e:
            if e.status == 404:
                return
            raise

    def list_nodes(self) -> List[NodeInfo]:
        return [node_from_api(n) for n in self.core.list_node().items]

    def remove_node_taints(self, name: str, keys: List[str]) -> bool:
        """
        Drop the taints with the given keys from a node.

        Returns:
            True when the node was updated, False when nothing matched or
            another writer got there first (the next sync retries).
        """
        node = self.core.read_node(name)
        taints = node.spec.taints or []
        kept = [t for t in taints if t.key not in keys]
        if len(kept) == len(taints):
            return False
        node.spec.taints = kept
        try:
            self.core.replace_node(name, node)
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Conflict removing taints from node {name}")
                return False
            raise
        return True

    def set_node_addresses(self, name: str, addresses: List[Address]) -> None:
        body = {"status": {"addresses": [{"type": a.type, "address": a.address} for a in addresses]}}
        self.core.patch_node_status(name, body)

    def delete_node(self, name: str) -> None:
        try:
            self.core.delete_node(name)
        except ApiException as e:
            if e.status != 404:
                raise

    def backend_for(self, service: ServiceInfo) -> Tuple[Optional[str], Optional[int]]:
        """
        First ready endpoint address and port of a service.

        Returns:
            (ip, port), or (None, None) when the service has no ready endpoint.
        """
        try:
            ep = self.core.read_namespaced_endpoints(service.name, service.namespace)
        except ApiException as e:
            if e.status == 404:
                return None, None
            raise
        for subset in ep.subsets or []:
            if not subset.addresses:
                continue
            port = subset.ports[0].port if subset.ports else None
            return subset.addresses[0].ip, port
        return None, None

    def list_pods(self, namespace: str, label_selector: str) -> List[V1Pod]:
        return list(self.core.list_namespaced_pod(namespace, label_selector=label_selector).items)

    def create_pod(self, namespace: str, pod: V1Pod) -> None:
        try:
            self.core.create_namespaced_pod(namespace, pod)
        except ApiException as e:
            if e.status == 409:
                logger.debug(f"Pod {pod.metadata.name} already exists")
                return
            raise

    def delete_pod(self, namespace: str, name: str, grace_period_seconds: int = 0) -> None:
        try:
            self.core.delete_namespaced_pod(name, namespace, grace_period_seconds=grace_period_seconds)
        except ApiException as e:
            if e.status != 404:
                raise
