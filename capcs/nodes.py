"""Workload node initialisation and stale node cleanup."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from kubernetes.client.exceptions import ApiException

from capcs.cloud.client import CloudClient
from capcs.cloud.errors import CloudError, NotFoundError, PermissionDeniedError
from capcs.state import Address, MachineRecord, NodeInfo

logger = logging.getLogger(__name__)

UNINITIALIZED_TAINTS = [
    "node.cloudprovider.kubernetes.io/uninitialized",
    "node.cluster.x-k8s.io/uninitialized",
]


class NodeReconciler:
    """
    Initialises workload nodes from their CloudSigma servers.

    Every sync strips the uninitialized taints, fills in addresses for nodes
    that report no IP address, and deletes nodes whose server the identity
    has lost access to for ``stale_threshold`` consecutive syncs.

    Args:
        tenant: Workload cluster access (TenantCluster surface)
        cloud: Client for the identity owning the cluster's servers
        machine_store: Optional machine records, source of fallback InternalIP addresses
        cluster_name: Restricts machine records to this cluster when set
        stale_threshold: Consecutive access denials before a node is deleted
        sync_interval_s: Period of the background sync loop
    """

    def __init__(
        self,
        tenant,
        cloud: CloudClient,
        machine_store: Any = None,
        cluster_name: str = "",
        stale_threshold: int = 3,
        sync_interval_s: float = 30.0,
    ):
        self.tenant = tenant
        self.cloud = cloud
        self.machine_store = machine_store
        self.cluster_name = cluster_name
        self.stale_threshold = stale_threshold
        self.sync_interval_s = sync_interval_s

        self._denied: Dict[str, int] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None:
            logger.warning("NodeReconciler already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._sync_loop, name="node-sync", daemon=True)
        self._thread.start()
        logger.info(f"NodeReconciler started, syncing every {self.sync_interval_s}s")

    def stop(self) -> None:
        if self._thread is None:
            return
        self._stop_event.set()
        self._thread.join(timeout=5.0)
        self._thread = None
        logger.info("NodeReconciler stopped")

    def _sync_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sync()
            except (CloudError, ApiException) as e:
                logger.warning(f"Node sync failed: {e}")
            self._stop_event.wait(self.sync_interval_s)

    def sync(self) -> int:
        """
        Reconcile every node once.

        Returns:
            Number of nodes that failed to reconcile.
        """
        nodes = self.tenant.list_nodes()
        fallback = self._machine_addresses()
        failed = 0
        for node in nodes:
            try:
                self.reconcile_node(node, fallback)
            except (CloudError, ApiException) as e:
                logger.warning(f"Failed to reconcile node {node.name}: {e}")
                failed += 1
        names = {n.name for n in nodes}
        with self._lock:
            for name in list(self._denied):
                if name not in names:
                    del self._denied[name]
        return failed

    def reconcile_node(self, node: NodeInfo, fallback: Optional[Dict[str, List[Address]]] = None) -> None:
        uuid = node.server_uuid
        if uuid is None:
            logger.debug(f"Node {node.name} has no CloudSigma provider ID yet")
            return
        try:
            server = self.cloud.get_server(uuid)
        except PermissionDeniedError:
            self._access_denied(node)
            return
        except NotFoundError:
            logger.warning(f"Server {uuid} of node {node.name} not found")
            self._reset(node.name)
            return
        self._reset(node.name)

        if not node.has_ip_address():
            addresses = self.cloud.server_addresses(server)
            known = {(a.type, a.address) for a in addresses}
            for addr in (fallback or {}).get(node.provider_id, []):
                if (addr.type, addr.address) not in known:
                    addresses.append(addr)
            if any(a.type in ("InternalIP", "ExternalIP") for a in addresses):
                self.tenant.set_node_addresses(node.name, addresses)
                logger.info(f"Set addresses of node {node.name}: {', '.join(a.address for a in addresses)}")
            else:
                logger.info(f"Server {uuid} of node {node.name} has no IP address yet")

        pending = [t for t in node.taints if t in UNINITIALIZED_TAINTS]
        if pending and self.tenant.remove_node_taints(node.name, UNINITIALIZED_TAINTS):
            logger.info(f"Removed {', '.join(pending)} from node {node.name}")

    def _access_denied(self, node: NodeInfo) -> None:
        with self._lock:
            count = self._denied.get(node.name, 0) + 1
            self._denied[node.name] = count
        if count < self.stale_threshold:
            logger.warning(f"Access to server of node {node.name} denied ({count}/{self.stale_threshold})")
            return
        logger.warning(f"Deleting node {node.name}: server {node.server_uuid} denied {count} times in a row")
        self.tenant.delete_node(node.name)
        self._reset(node.name)

    def _reset(self, name: str) -> None:
        with self._lock:
            self._denied.pop(name, None)

    def denied_count(self, name: str) -> int:
        with self._lock:
            return self._denied.get(name, 0)

    def _machine_addresses(self) -> Dict[str, List[Address]]:
        """InternalIP addresses reported on machine records, keyed by provider ID."""
        if self.machine_store is None:
            return {}
        out: Dict[str, List[Address]] = {}
        for obj in self.machine_store.list():
            record = MachineRecord.from_object(obj)
            if self.cluster_name and record.cluster_name != self.cluster_name:
                continue
            internal = [a for a in record.status.addresses if a.type == "InternalIP" and a.address]
            if record.status.provider_id and internal:
                out[record.status.provider_id] = internal
        return out
