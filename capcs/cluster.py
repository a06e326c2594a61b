"""Reconciler for CloudSigmaCluster records: shared VLAN and readiness."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from capcs.cloud.client import ClientFactory, CloudClient
from capcs.state import ClusterRecord, Condition, cluster_status_to_dict, set_condition
from capcs.store import RecordNotFound, update_with_retry
from capcs.machine import split_key

logger = logging.getLogger(__name__)

CLUSTER_FINALIZER = "cloudsigmacluster.infrastructure.cluster.x-k8s.io"

CONDITION_NETWORK_READY = "NetworkReady"
REASON_NETWORK_NOT_FOUND = "NetworkNotFound"
REASON_NO_NETWORK_AVAILABLE = "NoNetworkAvailable"

MANAGED_BY = "capcs"


class ClusterReconciler:
    """
    Ensures the network a cluster's machines join exists and reports readiness.

    A VLAN given by uuid is only verified. A VLAN given by name is looked up
    by its ``name`` meta, and if none carries it an unused VLAN of the
    account is claimed by writing that meta. Only claimed VLANs are released
    when the cluster goes away.
    """

    def __init__(self, store: Any, clients: ClientFactory, status_retries: int = 5, retry_s: float = 30.0):
        self.store = store
        self.clients = clients
        self.status_retries = status_retries
        self.retry_s = retry_s

    def reconcile(self, key: str) -> Optional[float]:
        namespace, name = split_key(key)
        try:
            record = ClusterRecord.from_object(self.store.get(namespace, name))
        except RecordNotFound:
            return None
        cloud = self.clients.for_cluster(record)

        if record.deleting:
            return self._reconcile_delete(record, cloud)

        if CLUSTER_FINALIZER not in record.finalizers:
            self._set_finalizer(record, present=True)

        spec = record.spec
        network_id = ""
        claimed = record.status.network_claimed
        if spec.vlan_uuid:
            if cloud.get_vlan(spec.vlan_uuid) is None:
                self._write_status(record, "", False, False, Condition(
                    CONDITION_NETWORK_READY, False, REASON_NETWORK_NOT_FOUND,
                    f"VLAN {spec.vlan_uuid} does not exist", "Error",
                ))
                return self.retry_s
            network_id = spec.vlan_uuid
            claimed = False
        elif spec.vlan_name:
            network_id, newly_claimed = self._ensure_named_vlan(record, cloud)
            if not network_id:
                self._write_status(record, "", False, False, Condition(
                    CONDITION_NETWORK_READY, False, REASON_NO_NETWORK_AVAILABLE,
                    f"no VLAN named {spec.vlan_name} and no unused VLAN to claim", "Warning",
                ))
                return self.retry_s
            claimed = claimed or newly_claimed
        else:
            logger.debug(f"Cluster {record.key} requests no private network")

        self._write_status(record, network_id, claimed, True, Condition(CONDITION_NETWORK_READY, True))
        return None

    def _ensure_named_vlan(self, record: ClusterRecord, cloud: CloudClient):
        name = record.spec.vlan_name
        vlans = sorted(cloud.list_vlans(), key=lambda v: v.get("uuid", ""))
        for vlan in vlans:
            if (vlan.get("meta") or {}).get("name") == name:
                return vlan["uuid"], False

        for vlan in vlans:
            meta = vlan.get("meta") or {}
            if meta.get("name") or vlan.get("servers"):
                continue
            uuid = vlan["uuid"]

            def claim(m: Dict[str, str]) -> bool:
                if m.get("name"):
                    return False
                m["name"] = name
                m["managed-by"] = MANAGED_BY
                m["cluster"] = record.key
                if record.spec.network_cidr:
                    m["cidr"] = record.spec.network_cidr
                return True

            updated = cloud.update_vlan_meta(uuid, claim)
            if (updated.get("meta") or {}).get("name") == name:
                logger.info(f"Claimed VLAN {uuid} as {name} for cluster {record.key}")
                return uuid, True
        return "", False

    def _reconcile_delete(self, record: ClusterRecord, cloud: CloudClient) -> Optional[float]:
        network_id = record.status.network_id
        if network_id and record.status.network_claimed:

            def release(m: Dict[str, str]) -> bool:
                if m.get("managed-by") != MANAGED_BY or m.get("cluster") != record.key:
                    return False
                for k in ("name", "managed-by", "cluster", "cidr"):
                    m.pop(k, None)
                return True

            if cloud.get_vlan(network_id) is not None:
                cloud.update_vlan_meta(network_id, release)
                logger.info(f"Released VLAN {network_id} of cluster {record.key}")
        self._set_finalizer(record, present=False)
        return None

    def _write_status(self, record: ClusterRecord, network_id: str, claimed: bool, ready: bool, cond: Condition) -> None:
        def mutate(obj: Dict[str, Any]) -> bool:
            current = obj.get("status") or {}
            status = cluster_status_to_dict(record.status, record.spec.network_cidr)
            status["ready"] = ready
            status["network"]["vlanUUID"] = network_id
            status["network"]["claimed"] = claimed
            status["conditions"] = set_condition(current.get("conditions") or [], cond)
            if status == current:
                return False
            obj["status"] = status
            return True

        update_with_retry(self.store, record.namespace, record.name, mutate, self.status_retries)
        record.status.network_id = network_id
        record.status.network_claimed = claimed
        record.status.ready = ready

    def _set_finalizer(self, record: ClusterRecord, present: bool) -> None:
        def mutate(obj: Dict[str, Any]) -> bool:
            meta = obj.setdefault("metadata", {})
            finalizers = list(meta.get("finalizers") or [])
            if (CLUSTER_FINALIZER in finalizers) == present:
                return False
            if present:
                finalizers.append(CLUSTER_FINALIZER)
            else:
                finalizers.remove(CLUSTER_FINALIZER)
            meta["finalizers"] = finalizers
            return True

        try:
            update_with_retry(self.store, record.namespace, record.name, mutate, self.status_retries, status=False)
        except RecordNotFound:
            if present:
                raise
