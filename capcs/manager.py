"""Process wiring: controllers, watches, periodic resync and shutdown."""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Optional

from kubernetes import client, config

from capcs.auth import ImpersonationClient
from capcs.cloud.client import ClientFactory, CloudClient
from capcs.cluster import ClusterReconciler
from capcs.config import Settings
from capcs.forwarding import ForwardingManager
from capcs.loadbalancer import LoadBalancerController
from capcs.machine import MachineReconciler
from capcs.nodes import NodeReconciler
from capcs.store import CLUSTER_PLURAL, MACHINE_PLURAL, CustomObjectStore
from capcs.tenant import TenantCluster, load_kubernetes_config
from capcs.watchers import Watchers
from capcs.workqueue import Controller

logger = logging.getLogger(__name__)


class ControllerManager:
    """
    Owns every control loop of the process.

    ``stop`` is the single cancellation point: watches stop delivering,
    workers finish what they hold, and the load-balancer controller gets its
    bounded drain before ``stop`` returns.
    """

    def __init__(
        self,
        settings: Settings,
        machine_store: Any,
        cluster_store: Any,
        clients: ClientFactory,
        loadbalancer: Optional[LoadBalancerController] = None,
        nodes: Optional[NodeReconciler] = None,
        watchers: Optional[Watchers] = None,
        tenant_core: Optional[client.CoreV1Api] = None,
    ):
        self.settings = settings
        self.machine_store = machine_store
        self.cluster_store = cluster_store
        self.clients = clients
        self.loadbalancer = loadbalancer
        self.nodes = nodes
        self.watchers = watchers
        self.tenant_core = tenant_core

        self.machines = MachineReconciler(
            machine_store,
            cluster_store,
            clients,
            status_retries=settings.status_retries,
            resync_s=settings.resync_interval_s,
        )
        self.clusters = ClusterReconciler(cluster_store, clients, status_retries=settings.status_retries)
        self.machine_controller = Controller(
            "machines", self.machines.reconcile, workers=settings.workers, resync_interval_s=settings.resync_interval_s
        )
        self.cluster_controller = Controller(
            "clusters", self.clusters.reconcile, workers=1, resync_interval_s=settings.resync_interval_s
        )

        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    @property
    def ready(self) -> bool:
        if not self._running:
            return False
        return self.loadbalancer is None or self.loadbalancer.recovered

    def start(self) -> None:
        if self._running:
            logger.warning("ControllerManager already running")
            return
        self._running = True
        self._stop_event.clear()

        self.cluster_controller.start()
        self.machine_controller.start()
        if self.loadbalancer is not None:
            self.loadbalancer.start()
        if self.nodes is not None:
            self.nodes.start()

        if self.watchers is not None:
            self.watchers.watch_store("clusters", self.cluster_store, self.cluster_controller.enqueue)
            self.watchers.watch_store("machines", self.machine_store, self.machine_controller.enqueue)
            if self.loadbalancer is not None and self.tenant_core is not None:
                self.watchers.watch_services(self.tenant_core, self.loadbalancer.controller.enqueue)
                self.watchers.watch_nodes(self.tenant_core, self.loadbalancer.on_node_health)

        t = threading.Thread(target=self._resync_loop, name="resync", daemon=True)
        t.start()
        self._threads.append(t)
        self.resync()
        logger.info("ControllerManager started")

    def resync(self) -> int:
        """Enqueue every known record."""
        count = 0
        for store, controller in (
            (self.cluster_store, self.cluster_controller),
            (self.machine_store, self.machine_controller),
        ):
            for obj in store.list(self.settings.namespace or None):
                meta = obj.get("metadata") or {}
                controller.enqueue(f"{meta.get('namespace', 'default')}/{meta.get('name', '')}")
                count += 1
        return count

    def _resync_loop(self) -> None:
        while not self._stop_event.wait(self.settings.resync_interval_s):
            try:
                self.resync()
            except Exception as e:
                logger.error(f"Periodic resync failed: {e}")

    def observe(self, event_type: str, node: str) -> List[str]:
        """Feed an external node health observation to the load-balancer controller."""
        if self.loadbalancer is None:
            return []
        if event_type == "node_down":
            return self.loadbalancer.on_node_health(node, False)
        if event_type == "node_up":
            return self.loadbalancer.on_node_health(node, True)
        raise ValueError(f"unknown observation type {event_type!r}")

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._stop_event.set()
        if self.watchers is not None:
            self.watchers.stop()
        self.machine_controller.stop()
        self.cluster_controller.stop()
        for t in self._threads:
            t.join(timeout=5.0)
        self._threads.clear()
        if self.nodes is not None:
            self.nodes.stop()
        if self.loadbalancer is not None:
            self.loadbalancer.shutdown()
        logger.info("ControllerManager stopped")

    def snapshot(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "running": self._running,
            "ready": self.ready,
            "queues": {
                "machines": len(self.machine_controller.queue),
                "clusters": len(self.cluster_controller.queue),
            },
        }
        if self.loadbalancer is not None:
            out["queues"]["loadbalancer"] = len(self.loadbalancer.controller.queue)
            out["unhealthy_nodes"] = self.loadbalancer.unhealthy_nodes
        out["node_controller"] = self.nodes is not None
        return out


def build_cloud_client(settings: Settings) -> CloudClient:
    token_provider = None
    if settings.impersonation_enabled:
        token_provider = ImpersonationClient(
            settings.oauth_url,
            settings.client_id,
            settings.client_secret,
            timeout=settings.http_timeout_s,
        )
    return CloudClient(
        region=settings.region,
        user=settings.user_email if token_provider else "",
        token_provider=token_provider,
        username=settings.username if settings.legacy_enabled else "",
        password=settings.password if settings.legacy_enabled else "",
        api_endpoint=settings.api_endpoint or None,
        timeout=settings.http_timeout_s,
        clone_timeout_s=settings.clone_timeout_s,
        poll_interval_s=settings.poll_interval_s,
        stop_timeout_s=settings.stop_timeout_s,
        stop_poll_interval_s=settings.stop_poll_interval_s,
    )


def build_manager(settings: Settings) -> ControllerManager:
    """Wire a manager against the Kubernetes API and CloudSigma from settings."""
    load_kubernetes_config()
    clients = ClientFactory(build_cloud_client(settings), default_user=settings.user_email)
    machine_store = CustomObjectStore(MACHINE_PLURAL)

    tenant_core = None
    tenant = None
    if not (settings.disable_lb_ip_pool and settings.disable_node_controller):
        if settings.tenant_kubeconfig:
            tenant_core = client.CoreV1Api(config.new_client_from_config(config_file=settings.tenant_kubeconfig))
        else:
            tenant_core = client.CoreV1Api()
        tenant = TenantCluster(tenant_core)

    loadbalancer = None
    if not settings.disable_lb_ip_pool:
        loadbalancer = LoadBalancerController(
            tenant,
            clients.for_identity(),
            settings.cluster_name,
            ForwardingManager(tenant, settings.forwarding_namespace, settings.forwarding_image),
            sync_interval_s=settings.lb_sync_interval_s,
            discovery_interval_s=settings.lb_discovery_interval_s,
            drain_timeout_s=settings.shutdown_grace_s,
            workers=settings.workers,
        )
    else:
        logger.info("Floating IP load balancing disabled")

    nodes = None
    if not settings.disable_node_controller:
        nodes = NodeReconciler(
            tenant,
            clients.for_identity(),
            machine_store=machine_store,
            cluster_name=settings.cluster_name,
            stale_threshold=settings.stale_node_threshold,
            sync_interval_s=settings.node_sync_interval_s,
        )
    else:
        logger.info("Node controller disabled")

    return ControllerManager(
        settings,
        machine_store,
        CustomObjectStore(CLUSTER_PLURAL),
        clients,
        loadbalancer=loadbalancer,
        nodes=nodes,
        watchers=Watchers(),
        tenant_core=tenant_core,
    )
