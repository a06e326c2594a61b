"""Reconciler converging CloudSigmaMachine records to CloudSigma servers."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any, Dict, Optional, Tuple

from capcs.cloud.client import (
    ClientFactory,
    CloudClient,
    META_MACHINE_NAME,
    META_MACHINE_UID,
    ServerRequest,
)
from capcs.cloud.errors import CloudError, NotFoundError, PermissionDeniedError, TimeoutExceeded
from capcs.state import (
    ClusterRecord,
    Condition,
    ExternalServer,
    MachineRecord,
    NIC,
    SERVER_PAUSED,
    SERVER_RUNNING,
    SERVER_STARTING,
    SERVER_STOPPED,
    provider_id_for,
    set_condition,
)
from capcs.store import RecordNotFound, update_with_retry

logger = logging.getLogger(__name__)

MACHINE_FINALIZER = "cloudsigmamachine.infrastructure.cluster.x-k8s.io"

CONDITION_SERVER_READY = "ServerReady"
REASON_CREATE_FAILED = "ServerCreateFailed"
REASON_NOT_RUNNING = "ServerNotRunning"
REASON_DELETE_FAILED = "ServerDeleteFailed"
REASON_WAITING_FOR_CLUSTER = "WaitingForCluster"


class DuplicateInstanceError(Exception):
    """Another writer already recorded a different instance for this machine."""

    def __init__(self, key: str, recorded: str, ours: str):
        self.key = key
        self.recorded = recorded
        self.ours = ours
        super().__init__(f"machine {key} already records instance {recorded}, refusing to overwrite with {ours}")


def split_key(key: str) -> Tuple[str, str]:
    namespace, _, name = key.partition("/")
    if not name:
        return "default", namespace
    return namespace, name


class MachineReconciler:
    """
    Drives one machine record from NoInstance through Creating and Bound to Gone.

    The recorded instance ID is never trusted blindly: NotFound clears it,
    and PermissionDenied, which is what a stale ID looks like under a
    different impersonated identity, triggers a search for an accessible
    server carrying the machine's name and uid before clearing it.

    Args:
        store: Desired-state store for machine records
        cluster_store: Desired-state store for cluster records
        clients: Factory producing a CloudClient per cluster identity
        status_retries: Bound on conflict retries of a single status write
        requeue_pending_s: Requeue delay while a server is starting
        requeue_addresses_s: Requeue delay while a running server has no address
        resync_s: Requeue delay for a converged machine
    """

    def __init__(
        self,
        store: Any,
        cluster_store: Any,
        clients: ClientFactory,
        status_retries: int = 5,
        requeue_pending_s: float = 10.0,
        requeue_addresses_s: float = 5.0,
        resync_s: float = 60.0,
    ):
        self.store = store
        self.cluster_store = cluster_store
        self.clients = clients
        self.status_retries = status_retries
        self.requeue_pending_s = requeue_pending_s
        self.requeue_addresses_s = requeue_addresses_s
        self.resync_s = resync_s

    def reconcile(self, key: str) -> Optional[float]:
        namespace, name = split_key(key)
        try:
            obj = self.store.get(namespace, name)
        except RecordNotFound:
            logger.debug(f"Machine {key} is gone")
            return None
        record = MachineRecord.from_object(obj)

        cluster = None
        if record.cluster_name:
            try:
                cluster = ClusterRecord.from_object(self.cluster_store.get(namespace, record.cluster_name))
            except RecordNotFound:
                if not record.deleting:
                    self._set_condition(record, Condition(
                        CONDITION_SERVER_READY, False, REASON_WAITING_FOR_CLUSTER,
                        f"cluster {record.cluster_name} not found",
                    ))
                    return self.requeue_pending_s
        cloud = self.clients.for_cluster(cluster)

        if record.deleting:
            return self._reconcile_delete(record, cloud)

        if MACHINE_FINALIZER not in record.finalizers:
            self._add_finalizer(record)

        if cluster is not None and not cluster.status.ready:
            logger.info(f"Machine {key} waiting for cluster {cluster.name} infrastructure")
            self._set_condition(record, Condition(
                CONDITION_SERVER_READY, False, REASON_WAITING_FOR_CLUSTER,
                f"cluster {cluster.name} network is not ready",
            ))
            return self.requeue_pending_s

        if record.status.instance_id:
            return self._reconcile_bound(record, cloud)
        return self._reconcile_create(record, cloud, cluster)

    # ------------------------------------------------------------------
    # NoInstance -> Creating
    # ------------------------------------------------------------------

    def _reconcile_create(self, record: MachineRecord, cloud: CloudClient, cluster: Optional[ClusterRecord]) -> Optional[float]:
        existing = cloud.find_server(record.spec.name, record.uid)
        if existing is not None:
            logger.info(f"Adopting existing server {existing.uuid} for machine {record.key}")
            self._record_instance(record, existing, previous="")
            return self._sync(record, cloud, existing)

        try:
            server = cloud.create_server(self._server_request(record, cluster))
        except CloudError as e:
            self._set_condition(record, Condition(CONDITION_SERVER_READY, False, REASON_CREATE_FAILED, str(e), "Error"))
            raise

        try:
            self._record_instance(record, server, previous="")
        except DuplicateInstanceError as e:
            logger.error(f"Duplicate server for machine {record.key}: {e}; deleting {server.uuid}")
            cloud.delete_server(server.uuid, server.drives)
            raise

        if server.status == SERVER_STOPPED:
            cloud.start_server(server.uuid)
        return self.requeue_pending_s

    def _server_request(self, record: MachineRecord, cluster: Optional[ClusterRecord]) -> ServerRequest:
        metadata: Dict[str, str] = dict(record.spec.metadata)
        metadata[META_MACHINE_UID] = record.uid
        metadata[META_MACHINE_NAME] = record.name
        if record.cluster_name:
            metadata["cluster"] = record.cluster_name

        nics = list(record.spec.nics)
        if not nics:
            nics = [NIC()]
            if cluster is not None and cluster.status.network_id:
                nics.append(NIC(vlan_id=cluster.status.network_id))

        return ServerRequest(
            name=record.spec.name,
            cpu_mhz=record.spec.cpu_mhz,
            memory_mb=record.spec.memory_mb,
            disks=list(record.spec.disks),
            nics=nics,
            metadata=metadata,
            bootstrap_data=record.spec.bootstrap_data,
        )

    # ------------------------------------------------------------------
    # Bound -> self-heal
    # ------------------------------------------------------------------

    def _reconcile_bound(self, record: MachineRecord, cloud: CloudClient) -> Optional[float]:
        instance_id = record.status.instance_id
        try:
            server = cloud.get_server(instance_id)
        except NotFoundError:
            logger.warning(f"Server {instance_id} of machine {record.key} no longer exists, clearing instance ID")
            self._clear_instance(record, instance_id)
            return 0.0
        except PermissionDeniedError as e:
            logger.warning(
                f"Server {instance_id} of machine {record.key} is not accessible as {e.user or cloud.identity}, "
                f"searching by name and uid"
            )
            found = cloud.find_server(record.spec.name, record.uid)
            if found is None:
                self._clear_instance(record, instance_id)
                return 0.0
            logger.info(f"Re-adopting server {found.uuid} for machine {record.key} (was {instance_id})")
            self._record_instance(record, found, previous=instance_id)
            server = found
        return self._sync(record, cloud, server)

    def _sync(self, record: MachineRecord, cloud: CloudClient, server: ExternalServer) -> Optional[float]:
        state = server.status
        if state == SERVER_STOPPED:
            cloud.start_server(server.uuid)
            state = SERVER_STARTING
        ready = state == SERVER_RUNNING
        addresses = [asdict(a) for a in cloud.server_addresses(server)]
        if ready:
            cond = Condition(CONDITION_SERVER_READY, True)
        else:
            cond = Condition(CONDITION_SERVER_READY, False, REASON_NOT_RUNNING, f"server is {state}", "Info")

        def mutate(obj: Dict[str, Any]) -> bool:
            status = obj.setdefault("status", {})
            recorded = status.get("instanceID") or ""
            if recorded != server.uuid:
                raise DuplicateInstanceError(record.key, recorded, server.uuid)
            before = dict(status)
            status["instanceState"] = state
            status["addresses"] = addresses
            status["ready"] = ready
            status["providerID"] = provider_id_for(server.uuid)
            status["conditions"] = set_condition(status.get("conditions") or [], cond)
            status.pop("failureReason", None)
            return status != before

        self._update(record, mutate)

        if not ready:
            return self.requeue_pending_s
        if not any(a["type"] != "Hostname" for a in addresses):
            return self.requeue_addresses_s
        return self.resync_s

    # ------------------------------------------------------------------
    # Deleting -> Gone
    # ------------------------------------------------------------------

    def _reconcile_delete(self, record: MachineRecord, cloud: CloudClient) -> Optional[float]:
        if MACHINE_FINALIZER not in record.finalizers:
            return None

        server: Optional[ExternalServer] = None
        instance_id = record.status.instance_id
        if instance_id:
            try:
                server = cloud.get_server(instance_id)
            except NotFoundError:
                server = None
            except PermissionDeniedError:
                server = cloud.find_server(record.spec.name, record.uid)
        else:
            # A crash between create and the status write leaves an unrecorded server.
            server = cloud.find_server(record.spec.name, record.uid)

        if server is not None:
            try:
                if server.status in (SERVER_RUNNING, SERVER_STARTING, SERVER_PAUSED):
                    cloud.stop_server(server.uuid)
                if server.status != SERVER_STOPPED:
                    try:
                        cloud.wait_for_server_status(server.uuid, (SERVER_STOPPED,))
                    except TimeoutExceeded as e:
                        logger.warning(f"{e}; deleting server {server.uuid} of {record.key} anyway")
                cloud.delete_server(server.uuid, server.drives)
            except NotFoundError:
                logger.info(f"Server {server.uuid} disappeared during deletion of {record.key}")
                cloud.delete_drives(server.drives)
            except CloudError as e:
                self._set_condition(record, Condition(CONDITION_SERVER_READY, False, REASON_DELETE_FAILED, str(e), "Warning"))
                raise

        def drop_finalizer(obj: Dict[str, Any]) -> bool:
            finalizers = obj.setdefault("metadata", {}).get("finalizers") or []
            if MACHINE_FINALIZER not in finalizers:
                return False
            obj["metadata"]["finalizers"] = [f for f in finalizers if f != MACHINE_FINALIZER]
            return True

        try:
            update_with_retry(self.store, record.namespace, record.name, drop_finalizer, self.status_retries, status=False)
        except RecordNotFound:
            pass
        logger.info(f"Machine {record.key} deleted")
        return None

    # ------------------------------------------------------------------
    # Status writes
    # ------------------------------------------------------------------

    def _record_instance(self, record: MachineRecord, server: ExternalServer, previous: str) -> None:
        """
        Persist ``server`` as the machine's instance.

        The write only replaces an instance ID equal to ``previous``; any other
        non-empty ID means a second writer got there first.
        """
        def mutate(obj: Dict[str, Any]) -> bool:
            status = obj.setdefault("status", {})
            recorded = status.get("instanceID") or ""
            if recorded == server.uuid:
                return False
            if recorded and recorded != previous:
                raise DuplicateInstanceError(record.key, recorded, server.uuid)
            status["instanceID"] = server.uuid
            status["instanceState"] = server.status
            status["providerID"] = provider_id_for(server.uuid)
            status["ready"] = server.status == SERVER_RUNNING
            return True

        self._update(record, mutate)
        record.status.instance_id = server.uuid

    def _clear_instance(self, record: MachineRecord, instance_id: str) -> None:
        def mutate(obj: Dict[str, Any]) -> bool:
            status = obj.setdefault("status", {})
            if (status.get("instanceID") or "") != instance_id:
                return False
            status["instanceID"] = ""
            status["instanceState"] = ""
            status["providerID"] = ""
            status["addresses"] = []
            status["ready"] = False
            return True

        self._update(record, mutate)
        record.status.instance_id = ""

    def _set_condition(self, record: MachineRecord, cond: Condition) -> None:
        def mutate(obj: Dict[str, Any]) -> bool:
            status = obj.setdefault("status", {})
            before = list(status.get("conditions") or [])
            status["conditions"] = set_condition(before, cond)
            if cond.reason in (REASON_CREATE_FAILED, REASON_DELETE_FAILED):
                status["failureReason"] = cond.reason
            if not cond.status:
                status["ready"] = False
            return True

        try:
            self._update(record, mutate)
        except RecordNotFound:
            pass

    def _add_finalizer(self, record: MachineRecord) -> None:
        def mutate(obj: Dict[str, Any]) -> bool:
            meta = obj.setdefault("metadata", {})
            finalizers = list(meta.get("finalizers") or [])
            if MACHINE_FINALIZER in finalizers:
                return False
            meta["finalizers"] = finalizers + [MACHINE_FINALIZER]
            return True

        update_with_retry(self.store, record.namespace, record.name, mutate, self.status_retries, status=False)
        record.finalizers.append(MACHINE_FINALIZER)

    def _update(self, record: MachineRecord, mutate) -> None:
        update_with_retry(self.store, record.namespace, record.name, mutate, self.status_retries)
