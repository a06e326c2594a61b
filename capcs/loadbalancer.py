"""Floating IP load-balancer controller for LoadBalancer services."""

from __future__ import annotations

import logging
import threading
import time
from typing import Dict, List, Optional, Set

from kubernetes.client.exceptions import ApiException

from capcs.cloud.client import CloudClient
from capcs.cloud.errors import CloudError, NotFoundError
from capcs.forwarding import ForwardingManager
from capcs.machine import split_key
from capcs.state import (
    BINDING_ALLOCATING,
    BINDING_BOUND,
    BINDING_FAILOVER,
    BINDING_REBINDING,
    BINDING_UNBOUND,
    Condition,
    FloatingIP,
    LocalForwardingUnit,
    NodeInfo,
    POOL_DYNAMIC,
    POOL_STATIC,
    ServiceBinding,
    ServiceInfo,
)
from capcs.workqueue import Controller

logger = logging.getLogger(__name__)

POOL_ANNOTATION = "cloudsigma.com/ip-pool"
MANAGED_BY_TAG = "managed-by:cloudsigma-ccm"

CONDITION_ALLOCATED = "FloatingIPAllocated"
REASON_POOL_EXHAUSTED = "PoolExhausted"
REASON_ALLOCATED = "Allocated"


def cluster_tag(cluster_name: str) -> str:
    return f"cluster:{cluster_name}"


def service_tag(namespace: str, name: str) -> str:
    return f"service:{namespace}-{name}"


def is_managed_tag(name: str) -> bool:
    return name == MANAGED_BY_TAG or name.startswith("cluster:") or name.startswith("service:")


def pool_for(service: ServiceInfo) -> str:
    value = (service.annotations.get(POOL_ANNOTATION) or POOL_STATIC).strip().lower()
    if value not in (POOL_STATIC, POOL_DYNAMIC):
        logger.warning(f"Service {service.key} requests unknown IP pool {value!r}, using {POOL_STATIC}")
        return POOL_STATIC
    return value


class PoolExhausted(Exception):
    def __init__(self, pool: str, service_key: str):
        self.pool = pool
        self.service_key = service_key
        super().__init__(f"no free address in the {pool} pool for service {service_key}")


class NoHealthyNodeError(Exception):
    """No ready node with a CloudSigma server can host an address."""


class LoadBalancerController:
    """
    Converges LoadBalancer services to floating IP bindings.

    Each service gets one address, claimed by tagging it with the cluster,
    service and managed-by tags, attached to a healthy node's server as an
    extra NIC and forwarded to a backend by a unit on that node. Bindings
    are rebuilt on start from service status and tags only, and moved
    between nodes without changing the address when a node goes unhealthy.

    Exactly one controller instance may run per cluster: the tag claim is
    not atomic on the cloud side, and only allocations inside this process
    are serialised.

    Args:
        tenant: TenantCluster (services, endpoints, nodes, pods)
        cloud: CloudClient acting as the cluster's identity
        cluster_name: Name used in the cluster tag
        forwarding: ForwardingManager realising forwarding units
        sync_interval_s: Interval of the periodic service sync
        discovery_interval_s: Interval of floating IP pool rediscovery
        drain_timeout_s: Upper bound on untagging during shutdown
        workers: Number of reconcile workers
    """

    def __init__(
        self,
        tenant,
        cloud: CloudClient,
        cluster_name: str,
        forwarding: ForwardingManager,
        sync_interval_s: float = 30.0,
        discovery_interval_s: float = 300.0,
        drain_timeout_s: float = 30.0,
        workers: int = 2,
    ):
        self.tenant = tenant
        self.cloud = cloud
        self.cluster_name = cluster_name
        self.forwarding = forwarding
        self.sync_interval_s = sync_interval_s
        self.discovery_interval_s = discovery_interval_s
        self.drain_timeout_s = drain_timeout_s

        self._lock = threading.RLock()
        self._alloc_lock = threading.Lock()
        self._recover_lock = threading.Lock()
        self._static: List[FloatingIP] = []
        self._dynamic: List[FloatingIP] = []
        self._bindings: Dict[str, ServiceBinding] = {}
        self._unhealthy: Set[str] = set()
        self._recovered = False
        self._last_discovery = 0.0

        self.controller = Controller("loadbalancer", self.reconcile, workers=workers, resync_interval_s=sync_interval_s)
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._running = False

    def tags_for(self, namespace: str, name: str) -> List[str]:
        return [cluster_tag(self.cluster_name), service_tag(namespace, name), MANAGED_BY_TAG]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            logger.warning("LoadBalancerController already running")
            return
        self._running = True
        self._stop_event.clear()
        try:
            self.discover()
            self.recover()
        except (CloudError, ApiException) as e:
            logger.warning(f"Initial floating IP recovery failed, will retry: {e}")
        self.controller.start()
        t = threading.Thread(target=self._sync_loop, name="loadbalancer-sync", daemon=True)
        t.start()
        self._threads.append(t)
        logger.info(f"LoadBalancerController started for cluster {self.cluster_name}")

    def shutdown(self) -> int:
        """
        Stop processing and untag every owned address within the drain timeout.

        Returns:
            Number of addresses untagged.
        """
        self._running = False
        self._stop_event.set()
        self.controller.stop(timeout=self.drain_timeout_s)
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads.clear()

        with self._lock:
            addresses = [b.address for b in self._bindings.values()]
        done: List[str] = []

        def drain() -> None:
            for address in addresses:
                try:
                    self.cloud.untag_resource(address, is_managed_tag)
                    done.append(address)
                except CloudError as e:
                    logger.error(f"Failed to untag {address} during shutdown: {e}")

        drainer = threading.Thread(target=drain, name="loadbalancer-drain", daemon=True)
        drainer.start()
        drainer.join(timeout=self.drain_timeout_s)
        if drainer.is_alive():
            logger.warning(f"Shutdown drain timed out after {self.drain_timeout_s}s, {len(addresses) - len(done)} address(es) still tagged")
        logger.info(f"LoadBalancerController stopped, untagged {len(done)} address(es)")
        return len(done)

    def _sync_loop(self) -> None:
        while not self._stop_event.wait(self.sync_interval_s):
            try:
                self.sync()
            except (CloudError, ApiException) as e:
                logger.warning(f"Load-balancer sync failed: {e}")

    def sync(self) -> None:
        """Periodic pass: recovery if still pending, rediscovery, and enqueue every service."""
        if not self._recovered:
            self.recover()
        if time.monotonic() - self._last_discovery >= self.discovery_interval_s:
            self.discover()
        keys = {s.key for s in self.tenant.list_services() if s.is_load_balancer}
        with self._lock:
            keys.update(self._bindings)
        for key in sorted(keys):
            self.controller.enqueue(key)

    # ------------------------------------------------------------------
    # Discovery and recovery
    # ------------------------------------------------------------------

    def discover(self) -> Dict[str, List[str]]:
        ips = self.cloud.list_floating_ips()
        static = sorted((ip for ip in ips if ip.pool == POOL_STATIC), key=FloatingIP.sort_key)
        dynamic = sorted((ip for ip in ips if ip.pool == POOL_DYNAMIC), key=FloatingIP.sort_key)
        with self._lock:
            self._static = static
            self._dynamic = dynamic
            self._last_discovery = time.monotonic()
        logger.info(f"Discovered {len(static)} static and {len(dynamic)} dynamic floating IPs")
        return self.pools()

    def pools(self) -> Dict[str, List[str]]:
        with self._lock:
            return {
                POOL_STATIC: [ip.address for ip in self._static],
                POOL_DYNAMIC: [ip.address for ip in self._dynamic],
            }

    def recover(self) -> int:
        """
        Rebuild bindings from service status and address tags.

        A service's address comes from its status ingress when that address
        is one of the account's floating IPs, otherwise from an address
        tagged for this cluster and service. A node's primary address is
        never recovered. Addresses left behind by services deleted while
        the controller was down are released.

        Returns:
            Number of bindings reconstructed.
        """
        with self._recover_lock:
            if self._recovered:
                with self._lock:
                    return len(self._bindings)
            services = {s.key: s for s in self.tenant.list_services() if s.is_load_balancer}
            ips = {ip.address: ip for ip in self.cloud.list_floating_ips()}
            servers_to_nodes = self._node_servers()
            primary = self._primary_addresses(servers_to_nodes)
            ours = cluster_tag(self.cluster_name)

            claimed: Set[str] = set()
            recovered: List[ServiceBinding] = []
            for key in sorted(services):
                svc = services[key]
                wanted_tag = service_tag(svc.namespace, svc.name)
                address = next((a for a in svc.ingress_ips if a in ips), None)
                if address is None:
                    address = next(
                        (a for a, ip in sorted(ips.items()) if ours in ip.tags and wanted_tag in ip.tags),
                        None,
                    )
                if address is None:
                    continue
                if address in primary:
                    logger.error(f"Service {key} points at {address}, the primary address of a node, leaving it for reallocation")
                    continue
                if address in claimed:
                    logger.error(f"Address {address} is claimed by more than one service, leaving {key} for reallocation")
                    continue
                claimed.add(address)
                ip = ips[address]
                binding = ServiceBinding(
                    namespace=svc.namespace,
                    name=svc.name,
                    address=address,
                    pool=ip.pool or pool_for(svc),
                    node_name=servers_to_nodes.get(ip.attached_server_uuid),
                    server_uuid=ip.attached_server_uuid,
                    state=BINDING_REBINDING,
                )
                recovered.append(binding)

            with self._lock:
                for binding in recovered:
                    self._bindings[binding.key] = binding
                self._recovered = True

            for binding in recovered:
                svc = services[binding.key]
                try:
                    self.cloud.tag_resource(binding.address, self.tags_for(svc.namespace, svc.name))
                    self._bind(svc, binding)
                except (CloudError, ApiException, NoHealthyNodeError) as e:
                    logger.warning(f"Re-asserting binding of {binding.key} failed, requeueing: {e}")
                    self.controller.enqueue(binding.key)

            live_tags = {service_tag(s.namespace, s.name) for s in services.values()}
            self._sweep_orphans(ips, claimed, live_tags, servers_to_nodes, primary)

            logger.info(f"Recovered {len(recovered)} load-balancer binding(s)")
            return len(recovered)

    def _sweep_orphans(
        self,
        ips: Dict[str, FloatingIP],
        claimed: Set[str],
        live_tags: Set[str],
        node_servers: Dict[str, str],
        primary: Set[str],
    ) -> None:
        """
        Release what this cluster still holds for services that are gone.

        An address is orphaned when it carries this cluster's tag or has a
        forwarding pod, and no recovered binding claims it. Orphans are
        detached from the node holding them, lose their forwarding pods and
        their managed tags.
        """
        ours = cluster_tag(self.cluster_name)
        orphans: Set[str] = set()
        for address, ip in sorted(ips.items()):
            if ours not in ip.tags:
                continue
            service_tags = [t for t in ip.tags if t.startswith("service:")]
            if len(service_tags) > 1:
                logger.error(f"Address {address} carries conflicting claims {service_tags}")
                dead = {t for t in service_tags if t not in live_tags}
                if dead and address in claimed:
                    self.cloud.untag_resource(address, lambda name: name in dead)
            if address not in claimed:
                orphans.add(address)
        orphans.update(a for a in self.forwarding.addresses() if a not in claimed)

        for address in sorted(orphans):
            ip = ips.get(address)
            server = ip.attached_server_uuid if ip else None
            if server in node_servers and address not in primary:
                try:
                    self.cloud.detach_ip(server, address)
                except NotFoundError:
                    logger.info(f"Server {server} is gone, nothing to detach")
            self.forwarding.remove(address)
            if ip is not None and any(is_managed_tag(t) for t in ip.tags):
                self.cloud.untag_resource(address, is_managed_tag)
            logger.info(f"Released orphaned address {address}")

    def _node_servers(self) -> Dict[str, str]:
        return {n.server_uuid: n.name for n in self.tenant.list_nodes() if n.server_uuid}

    def _primary_addresses(self, node_servers: Dict[str, str]) -> Set[str]:
        """Addresses node servers carry on their own interface; never allocatable."""
        out: Set[str] = set()
        for server in self.cloud.list_servers():
            if server.uuid in node_servers:
                out.update(server.primary_addresses())
        return out

    # ------------------------------------------------------------------
    # Reconcile
    # ------------------------------------------------------------------

    def reconcile(self, key: str) -> Optional[float]:
        if not self._recovered:
            self.recover()
        namespace, name = split_key(key)
        svc = self.tenant.get_service(namespace, name)
        if svc is None or not svc.is_load_balancer:
            with self._lock:
                bound = key in self._bindings
            if bound:
                self.teardown(key)
                if svc is not None:
                    self.tenant.set_service_ingress(namespace, name, None)
            return None

        with self._lock:
            binding = self._bindings.get(key)
        if binding is None:
            try:
                binding = self._allocate(svc)
            except PoolExhausted as e:
                logger.warning(str(e))
                self.tenant.set_service_condition(namespace, name, self._condition(False, REASON_POOL_EXHAUSTED, str(e)))
                return self.sync_interval_s
            self.tenant.set_service_condition(
                namespace, name, self._condition(True, REASON_ALLOCATED, f"allocated {binding.address} from the {binding.pool} pool")
            )
        self._bind(svc, binding)
        return None

    def _condition(self, ok: bool, reason: str, message: str) -> Dict:
        out = Condition(CONDITION_ALLOCATED, ok, reason, message).to_dict()
        out.pop("severity", None)
        return out

    def _allocate(self, svc: ServiceInfo) -> ServiceBinding:
        """Claim the lowest free address of the service's pool."""
        pool = pool_for(svc)
        with self._alloc_lock:
            with self._lock:
                existing = self._bindings.get(svc.key)
                if existing is not None:
                    return existing
                claimed = {b.address for b in self._bindings.values()}
            candidates = []
            for ip in self.cloud.list_floating_ips():
                if ip.pool != pool or ip.address in claimed:
                    continue
                if any(is_managed_tag(t) for t in ip.tags):
                    continue
                # Attached without our tags: some server's own address.
                if ip.attached_server_uuid:
                    continue
                candidates.append(ip)
            if candidates:
                primary = self._primary_addresses(self._node_servers())
                candidates = [ip for ip in candidates if ip.address not in primary]
            if not candidates:
                raise PoolExhausted(pool, svc.key)
            ip = min(candidates, key=FloatingIP.sort_key)
            self.cloud.tag_resource(ip.address, self.tags_for(svc.namespace, svc.name))
            binding = ServiceBinding(
                namespace=svc.namespace,
                name=svc.name,
                address=ip.address,
                pool=pool,
                state=BINDING_ALLOCATING,
            )
            with self._lock:
                self._bindings[svc.key] = binding
        logger.info(f"Allocated {ip.address} from the {pool} pool to service {svc.key}")
        return binding

    def _healthy_nodes(self) -> List[NodeInfo]:
        nodes = self.tenant.list_nodes()
        with self._lock:
            unhealthy = set(self._unhealthy)
        return [n for n in nodes if n.ready and n.server_uuid and n.name not in unhealthy]

    def _pick_node(self, binding: ServiceBinding, healthy: List[NodeInfo]) -> NodeInfo:
        by_name = {n.name: n for n in healthy}
        if binding.node_name in by_name:
            return by_name[binding.node_name]
        if not healthy:
            raise NoHealthyNodeError(f"no healthy node can host {binding.address} for {binding.key}")
        with self._lock:
            load: Dict[str, int] = {}
            for b in self._bindings.values():
                if b.node_name:
                    load[b.node_name] = load.get(b.node_name, 0) + 1
        return min(healthy, key=lambda n: (load.get(n.name, 0), n.name))

    def _backend(self, svc: ServiceInfo):
        port = svc.ports[0] if svc.ports else {"port": 80, "protocol": "TCP"}
        backend_ip, backend_port = self.tenant.backend_for(svc)
        if not backend_ip:
            backend_ip, backend_port = svc.cluster_ip, port["port"]
        return backend_ip, backend_port or port["port"], port["port"], (port.get("protocol") or "TCP").lower()

    def _bind(self, svc: ServiceInfo, binding: ServiceBinding) -> None:
        """Attach, forward and publish one binding; a node change moves it without changing the address."""
        healthy = self._healthy_nodes()
        node = self._pick_node(binding, healthy)
        previous_node = binding.node_name
        previous_server = binding.server_uuid
        moving = previous_server is not None and previous_server != node.server_uuid
        if moving:
            binding.state = BINDING_FAILOVER if previous_node else BINDING_REBINDING
            logger.info(f"Moving {binding.address} of {binding.key} from {previous_node or previous_server} to {node.name}")
            try:
                self.cloud.detach_ip(previous_server, binding.address)
            except NotFoundError:
                logger.info(f"Server {previous_server} is gone, nothing to detach")
            binding.state = BINDING_REBINDING

        self.cloud.attach_ip(node.server_uuid, binding.address)
        binding.server_uuid = node.server_uuid

        backend_ip, backend_port, port, protocol = self._backend(svc)
        if not backend_ip:
            raise NoHealthyNodeError(f"service {binding.key} has neither endpoints nor a cluster IP")
        unit = LocalForwardingUnit(
            address=binding.address,
            node_name=node.name,
            backend_ip=backend_ip,
            port=port,
            backend_port=backend_port,
            protocol=protocol,
        )
        self.forwarding.ensure(unit)
        stale_node_down = previous_node is not None and previous_node not in {n.name for n in healthy}
        self.forwarding.remove(binding.address, keep_node=node.name, force=stale_node_down)

        if binding.address not in svc.ingress_ips:
            self.tenant.set_service_ingress(svc.namespace, svc.name, binding.address)

        with self._lock:
            binding.node_name = node.name
            binding.unit = unit
            binding.state = BINDING_BOUND

    # ------------------------------------------------------------------
    # Failover and teardown
    # ------------------------------------------------------------------

    def on_node_health(self, node_name: str, healthy: bool) -> List[str]:
        """
        Record a node health transition.

        Returns:
            Keys of the services queued for failover.
        """
        with self._lock:
            if healthy:
                self._unhealthy.discard(node_name)
                return []
            newly = node_name not in self._unhealthy
            self._unhealthy.add(node_name)
            affected = sorted(b.key for b in self._bindings.values() if b.node_name == node_name)
            for key in affected:
                self._bindings[key].state = BINDING_FAILOVER
        if newly:
            logger.warning(f"Node {node_name} is unhealthy, failing over {len(affected)} service(s)")
        for key in affected:
            self.controller.enqueue(key)
        return affected

    def teardown(self, key: str) -> None:
        with self._lock:
            binding = self._bindings.get(key)
        if binding is None:
            return
        if binding.server_uuid:
            try:
                self.cloud.detach_ip(binding.server_uuid, binding.address)
            except NotFoundError:
                pass
        self.forwarding.remove(binding.address)
        self.cloud.untag_resource(binding.address, is_managed_tag)
        with self._lock:
            self._bindings.pop(key, None)
            binding.state = BINDING_UNBOUND
        logger.info(f"Released {binding.address} of deleted service {key}")

    def bindings(self) -> List[ServiceBinding]:
        with self._lock:
            return [self._bindings[k] for k in sorted(self._bindings)]

    @property
    def unhealthy_nodes(self) -> List[str]:
        with self._lock:
            return sorted(self._unhealthy)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def recovered(self) -> bool:
        return self._recovered
