from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import hashlib
import ipaddress
import time


SERVER_RUNNING = "running"
SERVER_STOPPED = "stopped"
SERVER_PAUSED = "paused"
SERVER_STARTING = "starting"
SERVER_STOPPING = "stopping"

POOL_STATIC = "static"
POOL_DYNAMIC = "dynamic"

PROVIDER_ID_PREFIX = "cloudsigma://"

CLUSTER_NAME_LABEL = "cluster.x-k8s.io/cluster-name"

# Binding lifecycle
BINDING_UNBOUND = "Unbound"
BINDING_ALLOCATING = "Allocating"
BINDING_BOUND = "Bound"
BINDING_FAILOVER = "Failover"
BINDING_REBINDING = "Rebinding"


def provider_id_for(uuid: str) -> str:
        return f"{PROVIDER_ID_PREFIX}{uuid}"


def server_uuid_from_provider_id(provider_id: Optional[str]) -> Optional[str]:
        """Extract the server uuid from a ``cloudsigma://<uuid>`` provider ID."""
        if not provider_id or not provider_id.startswith(PROVIDER_ID_PREFIX):
                return None
        return provider_id[len(PROVIDER_ID_PREFIX):] or None


@dataclass
class Disk:
        size_bytes: int
        source_image_id: str
        device: str = "virtio"
        boot_order: int = 1


@dataclass
class NIC:
        vlan_id: Optional[str] = None
        mode: str = "dhcp"  # dhcp | static
        ip_uuid: Optional[str] = None


@dataclass
class Address:
        type: str  # InternalIP | ExternalIP | Hostname
        address: str


@dataclass
class Condition:
        type: str
        status: bool
        reason: str = ""
        message: str = ""
        severity: str = ""
        last_transition_time: float = field(default_factory=time.time)

        def to_dict(self) -> Dict[str, Any]:
                out = {
                        "type": self.type,
                        "status": "True" if self.status else "False",
                        "lastTransitionTime": _iso(self.last_transition_time),
                }
                if self.reason:
                        out["reason"] = self.reason
                if self.message:
                        out["message"] = self.message
                if self.severity:
                        out["severity"] = self.severity
                return out


def set_condition(conditions: List[Dict[str, Any]], cond: Condition) -> List[Dict[str, Any]]:
        """Insert or replace a condition by type, keeping the transition time when status is unchanged."""
        new = cond.to_dict()
        out = []
        replaced = False
        for existing in conditions or []:
                if existing.get("type") == cond.type:
                        if existing.get("status") == new["status"] and existing.get("lastTransitionTime"):
                                new["lastTransitionTime"] = existing["lastTransitionTime"]
                        out.append(new)
                        replaced = True
                else:
                        out.append(existing)
        if not replaced:
                out.append(new)
        return out


def _iso(ts: float) -> str:
        return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ts))


# ----------------------------------------------------------------------
# Desired-state records
# ----------------------------------------------------------------------


@dataclass
class MachineSpec:
        name: str
        cpu_mhz: int
        memory_mb: int
        disks: List[Disk] = field(default_factory=list)
        nics: List[NIC] = field(default_factory=list)
        metadata: Dict[str, str] = field(default_factory=dict)
        bootstrap_data: Optional[str] = None


@dataclass
class MachineStatus:
        instance_id: str = ""
        instance_state: str = ""
        addresses: List[Address] = field(default_factory=list)
        ready: bool = False
        provider_id: str = ""
        failure_reason: str = ""
        conditions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class MachineRecord:
        namespace: str
        name: str
        uid: str
        spec: MachineSpec
        status: MachineStatus
        cluster_name: str = ""
        finalizers: List[str] = field(default_factory=list)
        deleting: bool = False
        resource_version: str = ""

        @property
        def key(self) -> str:
                return f"{self.namespace}/{self.name}"

        @classmethod
        def from_object(cls, obj: Dict[str, Any]) -> "MachineRecord":
                meta = obj.get("metadata") or {}
                spec = obj.get("spec") or {}
                status = obj.get("status") or {}
                name = meta.get("name", "")
                disks = [
                        Disk(
                                size_bytes=int(d.get("size", 0)),
                                source_image_id=d.get("sourceImage", ""),
                                device=d.get("device", "virtio"),
                                boot_order=int(d.get("bootOrder", i + 1)),
                        )
                        for i, d in enumerate(spec.get("disks") or [])
                ]
                nics = [
                        NIC(vlan_id=n.get("vlan") or None, mode=n.get("mode", "dhcp"), ip_uuid=n.get("ip") or None)
                        for n in spec.get("nics") or []
                ]
                labels = meta.get("labels") or {}
                return cls(
                        namespace=meta.get("namespace", "default"),
                        name=name,
                        uid=meta.get("uid", ""),
                        spec=MachineSpec(
                                name=spec.get("serverName") or name,
                                cpu_mhz=int(spec.get("cpu", 0)),
                                memory_mb=int(spec.get("memory", 0)),
                                disks=disks,
                                nics=nics,
                                metadata=dict(spec.get("meta") or {}),
                                bootstrap_data=spec.get("bootstrapData"),
                        ),
                        status=MachineStatus(
                                instance_id=status.get("instanceID") or "",
                                instance_state=status.get("instanceState") or "",
                                addresses=[Address(a.get("type", ""), a.get("address", "")) for a in status.get("addresses") or []],
                                ready=bool(status.get("ready", False)),
                                provider_id=status.get("providerID") or "",
                                failure_reason=status.get("failureReason") or "",
                                conditions=list(status.get("conditions") or []),
                        ),
                        cluster_name=labels.get(CLUSTER_NAME_LABEL) or spec.get("clusterName", ""),
                        finalizers=list(meta.get("finalizers") or []),
                        deleting=bool(meta.get("deletionTimestamp")),
                        resource_version=str(meta.get("resourceVersion", "")),
                )


@dataclass
class ClusterSpec:
        region: str = ""
        network_cidr: str = ""
        vlan_uuid: str = ""
        vlan_name: str = ""
        user_email: str = ""


@dataclass
class ClusterStatus:
        network_id: str = ""
        network_claimed: bool = False
        ready: bool = False
        conditions: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class ClusterRecord:
        namespace: str
        name: str
        spec: ClusterSpec
        status: ClusterStatus
        finalizers: List[str] = field(default_factory=list)
        deleting: bool = False
        resource_version: str = ""

        @property
        def key(self) -> str:
                return f"{self.namespace}/{self.name}"

        @classmethod
        def from_object(cls, obj: Dict[str, Any]) -> "ClusterRecord":
                meta = obj.get("metadata") or {}
                spec = obj.get("spec") or {}
                status = obj.get("status") or {}
                net = spec.get("network") or {}
                net_status = status.get("network") or {}
                return cls(
                        namespace=meta.get("namespace", "default"),
                        name=meta.get("name", ""),
                        spec=ClusterSpec(
                                region=spec.get("region", ""),
                                network_cidr=net.get("cidr", ""),
                                vlan_uuid=net.get("vlanUUID", ""),
                                vlan_name=net.get("vlanName", ""),
                                user_email=spec.get("userEmail", ""),
                        ),
                        status=ClusterStatus(
                                network_id=net_status.get("vlanUUID", ""),
                                network_claimed=bool(net_status.get("claimed", False)),
                                ready=bool(status.get("ready", False)),
                                conditions=list(status.get("conditions") or []),
                        ),
                        finalizers=list(meta.get("finalizers") or []),
                        deleting=bool(meta.get("deletionTimestamp")),
                        resource_version=str(meta.get("resourceVersion", "")),
                )


def cluster_status_to_dict(status: ClusterStatus, cidr: str = "") -> Dict[str, Any]:
        network: Dict[str, Any] = {"vlanUUID": status.network_id, "claimed": status.network_claimed}
        if cidr:
                network["cidr"] = cidr
        return {"ready": status.ready, "network": network, "conditions": list(status.conditions)}


# ----------------------------------------------------------------------
# External (cloud-side) entities
# ----------------------------------------------------------------------


@dataclass
class ExternalServer:
        uuid: str
        name: str
        status: str
        nics: List[Dict[str, Any]] = field(default_factory=list)
        drives: List[str] = field(default_factory=list)
        tags: List[str] = field(default_factory=list)
        metadata: Dict[str, str] = field(default_factory=dict)

        @classmethod
        def from_api(cls, body: Dict[str, Any]) -> "ExternalServer":
                drives = []
                for d in body.get("drives") or []:
                        ref = d.get("drive")
                        if isinstance(ref, dict):
                                ref = ref.get("uuid")
                        if ref:
                                drives.append(ref)
                tags = []
                for t in body.get("tags") or []:
                        tags.append(t.get("uuid", "") if isinstance(t, dict) else str(t))
                return cls(
                        uuid=body.get("uuid", ""),
                        name=body.get("name", ""),
                        status=body.get("status", ""),
                        nics=list(body.get("nics") or []),
                        drives=drives,
                        tags=tags,
                        metadata=dict(body.get("meta") or {}),
                )

        def ipv4_addresses(self) -> List[str]:
                """Addresses currently assigned to the server NICs, static or runtime."""
                out: List[str] = []
                for nic in self.nics:
                        conf = nic.get("ip_v4_conf") or {}
                        ip = conf.get("ip")
                        if isinstance(ip, dict) and ip.get("uuid"):
                                out.append(ip["uuid"])
                        runtime = nic.get("runtime") or {}
                        rt_ip = (runtime.get("ip_v4") or {}).get("uuid")
                        if rt_ip and rt_ip not in out:
                                out.append(rt_ip)
                return out

        def primary_addresses(self) -> List[str]:
                """Addresses of the first NIC, the server's own interface."""
                if not self.nics:
                        return []
                return ExternalServer(self.uuid, self.name, self.status, nics=self.nics[:1]).ipv4_addresses()


@dataclass
class FloatingIP:
        address: str
        has_subscription: bool = False
        attached_server_uuid: Optional[str] = None
        tags: List[str] = field(default_factory=list)

        @property
        def pool(self) -> Optional[str]:
                if self.has_subscription:
                        return POOL_STATIC
                if self.attached_server_uuid is None:
                        return POOL_DYNAMIC
                return None

        def sort_key(self):
                try:
                        return (0, ipaddress.ip_address(self.address))
                except ValueError:
                        return (1, self.address)


# ----------------------------------------------------------------------
# Tenant cluster views and load-balancer bindings
# ----------------------------------------------------------------------


@dataclass
class ServiceInfo:
        namespace: str
        name: str
        type: str = "ClusterIP"
        annotations: Dict[str, str] = field(default_factory=dict)
        ports: List[Dict[str, Any]] = field(default_factory=list)
        cluster_ip: Optional[str] = None
        ingress_ips: List[str] = field(default_factory=list)

        @property
        def key(self) -> str:
                return f"{self.namespace}/{self.name}"

        @property
        def is_load_balancer(self) -> bool:
                return self.type == "LoadBalancer"


@dataclass
class NodeInfo:
        name: str
        provider_id: Optional[str] = None
        ready: bool = True
        internal_ip: Optional[str] = None
        addresses: List[Address] = field(default_factory=list)
        taints: List[str] = field(default_factory=list)

        @property
        def server_uuid(self) -> Optional[str]:
                return server_uuid_from_provider_id(self.provider_id)

        def has_ip_address(self) -> bool:
                return any(a.type in ("InternalIP", "ExternalIP") for a in self.addresses)


@dataclass
class LocalForwardingUnit:
        address: str
        node_name: str
        backend_ip: str
        port: int
        backend_port: int
        protocol: str = "tcp"

        @property
        def name(self) -> str:
                digest = hashlib.sha1(self.node_name.encode()).hexdigest()[:6]
                return f"lb-ip-{self.address.replace('.', '-')}-{digest}"


@dataclass
class ServiceBinding:
        namespace: str
        name: str
        address: str
        pool: str = POOL_STATIC
        node_name: Optional[str] = None
        server_uuid: Optional[str] = None
        unit: Optional[LocalForwardingUnit] = None
        state: str = BINDING_UNBOUND

        @property
        def key(self) -> str:
                return f"{self.namespace}/{self.name}"

        def to_dict(self) -> Dict[str, Any]:
                return {
                        "service": self.key,
                        "address": self.address,
                        "pool": self.pool,
                        "node": self.node_name,
                        "server": self.server_uuid,
                        "state": self.state,
                        "unit": self.unit.name if self.unit else None,
                }
