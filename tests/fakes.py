"""In-memory stand-ins for the CloudSigma API and the workload cluster."""

import copy
import itertools
import json as jsonlib
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from capcs.cloud.server_body import READ_ONLY_FIELDS, nic_address
from capcs.state import Address, NodeInfo, ServiceInfo, provider_id_for
from capcs.store import ConflictError, RecordNotFound

API = "https://cloud.test/api/2.0"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status_code: int, data: Any = None, text: str = ""):
        self.status_code = status_code
        self._data = data
        self.content = jsonlib.dumps(data).encode() if data is not None else text.encode()
        self.text = text or (self.content.decode() if self.content else "")

    def json(self):
        return copy.deepcopy(self._data)


class FakeTokenProvider:
    """Hands out ``token-<user>`` tokens; the fake API maps them back to the user."""

    def __init__(self):
        self.issued: List[Tuple[str, str]] = []
        self.cleared: List[Tuple[str, str]] = []

    def get_token(self, user: str, region: str) -> str:
        self.issued.append((user, region))
        return f"token-{user}"

    def clear_user_token(self, user: str, region: str) -> None:
        self.cleared.append((user, region))


class FakeCloudAPI:
    """
    Session double implementing the subset of the CloudSigma API the client uses.

    Servers belong to the identity that created them; other identities get
    403 for them, mirroring what a stale instance ID looks like after an
    identity change. PUT bodies carrying read-only fields are rejected.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.servers: Dict[str, Dict[str, Any]] = {}
        self.drives: Dict[str, Dict[str, Any]] = {}
        self.ips: Dict[str, Dict[str, Any]] = {}
        self.tags: Dict[str, Dict[str, Any]] = {}
        self.vlans: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.failures: List[List[Any]] = []
        # Statuses a fresh clone reports on successive polls before "unmounted".
        self.drive_statuses: List[str] = []
        self.start_status = "running"
        self.stop_status = "stopped"
        self._ids = itertools.count(1)
        self._public = itertools.count(10)

    # ------------------------------------------------------------------
    # Seeding and inspection
    # ------------------------------------------------------------------

    def new_uuid(self, kind: str) -> str:
        return f"{kind}-{next(self._ids):04d}"

    def add_ip(self, address: str, subscription: bool = True, server: Optional[str] = None) -> None:
        self.ips[address] = {
            "uuid": address,
            "subscription": {"id": 1} if subscription else None,
            "server": server,
        }

    def add_vlan(self, uuid: str, meta: Optional[Dict[str, str]] = None, servers: Optional[List[str]] = None) -> None:
        self.vlans[uuid] = {"uuid": uuid, "meta": dict(meta or {}), "servers": list(servers or [])}

    def add_server(
        self,
        name: str,
        owner: str,
        status: str = "running",
        meta: Optional[Dict[str, str]] = None,
        nics: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        uuid = self.new_uuid("srv")
        self.servers[uuid] = {
            "uuid": uuid,
            "name": name,
            "status": status,
            "owner": owner,
            "cpu": 1000,
            "mem": 1024 ** 3,
            "meta": dict(meta or {}),
            "nics": copy.deepcopy(nics) if nics is not None else [],
            "drives": [],
            "runtime": {"active_since": 0},
            "resource_uri": f"/api/2.0/servers/{uuid}/",
        }
        if status == "running":
            self._assign_runtime(self.servers[uuid])
        return uuid

    def add_tag(self, name: str, resources: List[str]) -> str:
        uuid = self.new_uuid("tag")
        self.tags[uuid] = {"uuid": uuid, "name": name, "resources": list(resources)}
        return uuid

    def tag_names(self, resource: str) -> List[str]:
        with self.lock:
            return sorted(t["name"] for t in self.tags.values() if resource in t["resources"])

    def attached(self, address: str) -> Optional[str]:
        with self.lock:
            return self.ips[address]["server"]

    def fail(
        self,
        method: str,
        path_prefix: str,
        status: int,
        times: int = 1,
        text: str = "injected failure",
        after: int = 0,
    ) -> None:
        """Answer the next ``times`` matching requests with ``status``, after letting ``after`` of them through."""
        self.failures.append([method, path_prefix, status, times, text, after])

    def count(self, method: str, path_prefix: str = "") -> int:
        with self.lock:
            return sum(1 for m, p in self.calls if m == method and p.startswith(path_prefix))

    # ------------------------------------------------------------------
    # requests.Session surface
    # ------------------------------------------------------------------

    def request(self, method, url, headers=None, auth=None, json=None, params=None, timeout=None):
        path = urlparse(url).path.split("/api/2.0/", 1)[1]
        with self.lock:
            self.calls.append((method, path))
            for failure in self.failures:
                m, prefix, status, times, text, after = failure
                if m != method or not path.startswith(prefix) or times <= 0:
                    continue
                if after > 0:
                    failure[5] -= 1
                    continue
                failure[3] -= 1
                return FakeResponse(status, text=text)
            parts = [p for p in path.split("/") if p]
            handler = getattr(self, f"_{parts[0]}")
            return handler(method, parts[1:], self._caller(headers, auth), json or {}, params or {})

    @staticmethod
    def _caller(headers, auth) -> str:
        if auth:
            return auth[0]
        token = (headers or {}).get("Authorization", "")
        return token[len("Bearer token-"):] if token.startswith("Bearer token-") else token

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    def _check_server(self, uuid: str, caller: str) -> Optional[FakeResponse]:
        server = self.servers.get(uuid)
        if server is None:
            return FakeResponse(404, text=f"server {uuid} not found")
        if server["owner"] != caller:
            return FakeResponse(403, text="permission denied")
        return None

    def _assign_runtime(self, server: Dict[str, Any]) -> None:
        for nic in server["nics"]:
            conf = nic.get("ip_v4_conf") or {}
            if conf.get("conf") == "dhcp" and not nic.get("vlan") and not nic.get("runtime"):
                nic["runtime"] = {"ip_v4": {"uuid": f"185.12.6.{next(self._public)}"}}

    def _sync_ip_attachments(self, uuid: str) -> Optional[FakeResponse]:
        wanted = {nic_address(n) for n in self.servers[uuid]["nics"]} if uuid in self.servers else set()
        for address in wanted:
            ip = self.ips.get(address)
            if ip is not None and ip["server"] not in (None, uuid):
                return FakeResponse(400, text=f"IP {address} is in use by server {ip['server']}")
        for address, ip in self.ips.items():
            if address in wanted:
                ip["server"] = uuid
            elif ip["server"] == uuid:
                ip["server"] = None
        return None

    def _servers(self, method, rest, caller, body, params):
        if rest == ["detail"] and method == "GET":
            objects = [copy.deepcopy(s) for s in self.servers.values() if s["owner"] == caller]
            return FakeResponse(200, {"objects": objects})

        if not rest and method == "POST":
            created = []
            for obj in body.get("objects") or []:
                uuid = self.new_uuid("srv")
                for d in obj.get("drives") or []:
                    drive = self.drives.get(d["drive"])
                    if drive is None:
                        return FakeResponse(400, text=f"drive {d['drive']} does not exist")
                    drive["status"] = "mounted"
                server = copy.deepcopy(obj)
                server.update({
                    "uuid": uuid,
                    "status": "stopped",
                    "owner": caller,
                    "runtime": None,
                    "resource_uri": f"/api/2.0/servers/{uuid}/",
                })
                self.servers[uuid] = server
                created.append(copy.deepcopy(server))
            return FakeResponse(201, {"objects": created})

        uuid = rest[0]
        denied = self._check_server(uuid, caller)
        if denied is not None:
            return denied
        server = self.servers[uuid]

        if rest[1:] == ["action"] and method == "POST":
            action = params.get("do")
            if action == "start":
                server["status"] = self.start_status
                self._assign_runtime(server)
            elif action == "stop":
                server["status"] = self.stop_status
            else:
                return FakeResponse(400, text=f"unknown action {action}")
            return FakeResponse(202, {"action": action, "result": "success", "uuid": uuid})

        if method == "GET":
            return FakeResponse(200, copy.deepcopy(server))

        if method == "PUT":
            bad = [k for k in READ_ONLY_FIELDS if k in body]
            if bad:
                return FakeResponse(400, text=f"read-only fields in request: {bad}")
            previous = copy.deepcopy(server)
            for key, value in body.items():
                server[key] = copy.deepcopy(value)
            old_nics = previous.get("nics") or []
            for i, nic in enumerate(server.get("nics") or []):
                if i < len(old_nics) and old_nics[i].get("runtime"):
                    if {k: v for k, v in old_nics[i].items() if k != "runtime"} == nic:
                        nic["runtime"] = copy.deepcopy(old_nics[i]["runtime"])
            rejected = self._sync_ip_attachments(uuid)
            if rejected is not None:
                self.servers[uuid] = previous
                return rejected
            return FakeResponse(200, copy.deepcopy(server))

        if method == "DELETE":
            if server["status"] != "stopped":
                return FakeResponse(400, text=f"Cannot delete server {uuid} in state '{server['status']}'")
            del self.servers[uuid]
            self._sync_ip_attachments(uuid)
            return FakeResponse(204)

        return FakeResponse(405, text="method not allowed")

    def _drives(self, method, rest, caller, body, params):
        if len(rest) == 2 and rest[1] == "action" and method == "POST":
            uuid = self.new_uuid("drv")
            self.drives[uuid] = {
                "uuid": uuid,
                "name": body.get("name", ""),
                "size": body.get("size"),
                "media": body.get("media", "disk"),
                "source": rest[0],
                "status": "creating",
                "_polls": list(self.drive_statuses),
            }
            return FakeResponse(202, {"objects": [self._public_drive(uuid)]})

        uuid = rest[0]
        drive = self.drives.get(uuid)
        if drive is None:
            return FakeResponse(404, text=f"drive {uuid} not found")
        if method == "GET":
            if drive["_polls"]:
                drive["status"] = drive["_polls"].pop(0)
            elif drive["status"] == "creating":
                drive["status"] = "unmounted"
            return FakeResponse(200, self._public_drive(uuid))
        if method == "DELETE":
            del self.drives[uuid]
            return FakeResponse(204)
        return FakeResponse(405, text="method not allowed")

    def _public_drive(self, uuid: str) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in self.drives[uuid].items() if not k.startswith("_")}

    def _vlans(self, method, rest, caller, body, params):
        if rest == ["detail"] and method == "GET":
            return FakeResponse(200, {"objects": [copy.deepcopy(v) for v in self.vlans.values()]})
        vlan = self.vlans.get(rest[0])
        if vlan is None:
            return FakeResponse(404, text=f"vlan {rest[0]} not found")
        if method == "PUT":
            vlan["meta"] = dict(body.get("meta") or {})
        return FakeResponse(200, copy.deepcopy(vlan))

    def _ips(self, method, rest, caller, body, params):
        objects = []
        for address, ip in sorted(self.ips.items()):
            objects.append({
                "uuid": address,
                "subscription": copy.deepcopy(ip["subscription"]),
                "server": {"uuid": ip["server"]} if ip["server"] else None,
            })
        return FakeResponse(200, {"objects": objects})

    def _tags(self, method, rest, caller, body, params):
        if rest == ["detail"] and method == "GET":
            objects = [
                {"uuid": t["uuid"], "name": t["name"], "resources": [{"uuid": r} for r in t["resources"]]}
                for t in self.tags.values()
            ]
            return FakeResponse(200, {"objects": objects})
        if not rest and method == "POST":
            created = []
            for obj in body.get("objects") or []:
                resources = [r["uuid"] if isinstance(r, dict) else r for r in obj.get("resources") or []]
                uuid = self.add_tag(obj["name"], resources)
                created.append(copy.deepcopy(self.tags[uuid]))
            return FakeResponse(201, {"objects": created})
        tag = self.tags.get(rest[0])
        if tag is None:
            return FakeResponse(404, text=f"tag {rest[0]} not found")
        if method == "PUT":
            tag["name"] = body.get("name", tag["name"])
            tag["resources"] = [r["uuid"] if isinstance(r, dict) else r for r in body.get("resources") or []]
        return FakeResponse(200, copy.deepcopy(tag))


class FakeTenant:
    """Workload cluster double with the TenantCluster surface."""

    def __init__(self):
        self.lock = threading.RLock()
        self.services: Dict[str, ServiceInfo] = {}
        self.nodes: Dict[str, NodeInfo] = {}
        self.endpoints: Dict[str, Tuple[str, int]] = {}
        self.pods: Dict[Tuple[str, str], Any] = {}
        self.conditions: Dict[str, Dict[str, Any]] = {}
        self.deleted_pods: List[Tuple[str, int]] = []
        self.deleted_nodes: List[str] = []

    def add_node(
        self,
        name: str,
        server_uuid: Optional[str],
        ready: bool = True,
        addresses: Optional[List[Address]] = None,
        taints: Optional[List[str]] = None,
    ) -> NodeInfo:
        addresses = list(addresses or [])
        node = NodeInfo(
            name=name,
            provider_id=provider_id_for(server_uuid) if server_uuid else None,
            ready=ready,
            internal_ip=next((a.address for a in addresses if a.type == "InternalIP"), None),
            addresses=addresses,
            taints=list(taints or []),
        )
        self.nodes[name] = node
        return node

    def add_service(
        self,
        namespace: str,
        name: str,
        pool: Optional[str] = None,
        port: int = 80,
        protocol: str = "TCP",
        ingress: Optional[List[str]] = None,
        endpoint: Optional[Tuple[str, int]] = ("10.244.1.5", 8080),
    ) -> ServiceInfo:
        svc = ServiceInfo(
            namespace=namespace,
            name=name,
            type="LoadBalancer",
            annotations={"cloudsigma.com/ip-pool": pool} if pool else {},
            ports=[{"port": port, "protocol": protocol, "target_port": endpoint[1] if endpoint else port, "name": "http"}],
            cluster_ip="10.96.0.10",
            ingress_ips=list(ingress or []),
        )
        self.services[svc.key] = svc
        if endpoint:
            self.endpoints[svc.key] = endpoint
        return svc

    def remove_service(self, namespace: str, name: str) -> None:
        self.services.pop(f"{namespace}/{name}", None)

    def list_services(self) -> List[ServiceInfo]:
        with self.lock:
            return [copy.deepcopy(s) for s in self.services.values()]

    def get_service(self, namespace: str, name: str) -> Optional[ServiceInfo]:
        with self.lock:
            svc = self.services.get(f"{namespace}/{name}")
            return copy.deepcopy(svc) if svc else None

    def set_service_ingress(self, namespace: str, name: str, address: Optional[str]) -> None:
        with self.lock:
            svc = self.services.get(f"{namespace}/{name}")
            if svc is not None:
                svc.ingress_ips = [address] if address else []

    def set_service_condition(self, namespace: str, name: str, cond: Dict[str, Any]) -> None:
        with self.lock:
            self.conditions[f"{namespace}/{name}"] = dict(cond)

    def list_nodes(self) -> List[NodeInfo]:
        with self.lock:
            return [copy.deepcopy(n) for n in self.nodes.values()]

    def remove_node_taints(self, name: str, keys: List[str]) -> bool:
        with self.lock:
            node = self.nodes[name]
            kept = [t for t in node.taints if t not in keys]
            if len(kept) == len(node.taints):
                return False
            node.taints = kept
            return True

    def set_node_addresses(self, name: str, addresses: List[Address]) -> None:
        with self.lock:
            node = self.nodes[name]
            node.addresses = list(addresses)
            node.internal_ip = next((a.address for a in addresses if a.type == "InternalIP"), None)

    def delete_node(self, name: str) -> None:
        with self.lock:
            if self.nodes.pop(name, None) is not None:
                self.deleted_nodes.append(name)

    def backend_for(self, service: ServiceInfo):
        return self.endpoints.get(service.key, (None, None))

    def list_pods(self, namespace: str, label_selector: str) -> List[Any]:
        wanted = dict(part.split("=", 1) for part in label_selector.split(",") if part)
        with self.lock:
            return [
                pod for (ns, _), pod in sorted(self.pods.items())
                if ns == namespace and all((pod.metadata.labels or {}).get(k) == v for k, v in wanted.items())
            ]

    def create_pod(self, namespace: str, pod: Any) -> None:
        with self.lock:
            self.pods.setdefault((namespace, pod.metadata.name), pod)

    def delete_pod(self, namespace: str, name: str, grace_period_seconds: int = 0) -> None:
        with self.lock:
            if self.pods.pop((namespace, name), None) is not None:
                self.deleted_pods.append((name, grace_period_seconds))

    def pods_on(self, node: str) -> List[Any]:
        with self.lock:
            return [p for p in self.pods.values() if p.spec.node_name == node]


class InMemoryStore:
    """Versioned desired-state store with the CustomObjectStore surface."""

    def __init__(self, plural: str = "records"):
        self.plural = plural
        self._objects: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._version = 0
        self._lock = threading.RLock()
        self._listeners: List[Callable[[str, Dict[str, Any]], None]] = []

    def add_listener(self, fn: Callable[[str, Dict[str, Any]], None]) -> None:
        self._listeners.append(fn)

    def _bump(self, obj: Dict[str, Any]) -> None:
        self._version += 1
        obj.setdefault("metadata", {})["resourceVersion"] = str(self._version)

    def _notify(self, event_type: str, obj: Dict[str, Any]) -> None:
        for fn in list(self._listeners):
            fn(event_type, copy.deepcopy(obj))

    def create(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            meta = obj.setdefault("metadata", {})
            meta.setdefault("namespace", "default")
            key = (meta["namespace"], meta["name"])
            if key in self._objects:
                raise ConflictError(f"{self.plural} {key[0]}/{key[1]} already exists")
            stored = copy.deepcopy(obj)
            self._bump(stored)
            self._objects[key] = stored
            out = copy.deepcopy(stored)
        self._notify("ADDED", out)
        return out

    def get(self, namespace: str, name: str) -> Dict[str, Any]:
        with self._lock:
            obj = self._objects.get((namespace, name))
            if obj is None:
                raise RecordNotFound(f"{self.plural} {namespace}/{name} not found")
            return copy.deepcopy(obj)

    def list(self, namespace: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(o) for (ns, _), o in sorted(self._objects.items()) if namespace in (None, ns)]

    def replace(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._write(obj, status_only=False)

    def replace_status(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        return self._write(obj, status_only=True)

    def mark_deleted(self, namespace: str, name: str) -> None:
        """Behave like an API server DELETE: finalizers hold the record with a deletion timestamp."""
        with self._lock:
            obj = self._objects.get((namespace, name))
            if obj is None:
                raise RecordNotFound(f"{self.plural} {namespace}/{name} not found")
            if not obj["metadata"].get("finalizers"):
                del self._objects[(namespace, name)]
                out, event = copy.deepcopy(obj), "DELETED"
            else:
                obj["metadata"]["deletionTimestamp"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
                self._bump(obj)
                out, event = copy.deepcopy(obj), "MODIFIED"
        self._notify(event, out)

    def _write(self, obj: Dict[str, Any], status_only: bool) -> Dict[str, Any]:
        meta = obj.setdefault("metadata", {})
        key = (meta.get("namespace", "default"), meta.get("name", ""))
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise RecordNotFound(f"{self.plural} {key[0]}/{key[1]} not found")
            if meta.get("resourceVersion") != current["metadata"].get("resourceVersion"):
                raise ConflictError(f"{self.plural} {key[0]}/{key[1]} was modified concurrently")
            if status_only:
                updated = copy.deepcopy(current)
                updated["status"] = copy.deepcopy(obj.get("status") or {})
            else:
                updated = copy.deepcopy(obj)
                updated.pop("status", None)
                if "status" in current:
                    updated["status"] = copy.deepcopy(current["status"])
            self._bump(updated)
            event = "MODIFIED"
            if updated["metadata"].get("deletionTimestamp") and not updated["metadata"].get("finalizers"):
                del self._objects[key]
                event = "DELETED"
            else:
                self._objects[key] = updated
            out = copy.deepcopy(updated)
        self._notify(event, out)
        return out


def machine_object(
    name: str,
    uid: Optional[str] = None,
    namespace: str = "default",
    cluster: str = "",
    disks: Optional[List[Dict[str, Any]]] = None,
    nics: Optional[List[Dict[str, Any]]] = None,
    bootstrap: Optional[str] = None,
) -> Dict[str, Any]:
    labels = {"cluster.x-k8s.io/cluster-name": cluster} if cluster else {}
    spec: Dict[str, Any] = {
        "cpu": 2000,
        "memory": 4096,
        "disks": disks if disks is not None else [{"size": 20 * 1024 ** 3, "sourceImage": "img-ubuntu"}],
    }
    if nics is not None:
        spec["nics"] = nics
    if bootstrap:
        spec["bootstrapData"] = bootstrap
    return {
        "apiVersion": "infrastructure.cluster.x-k8s.io/v1beta1",
        "kind": "CloudSigmaMachine",
        "metadata": {"name": name, "namespace": namespace, "uid": uid or f"uid-{name}", "labels": labels},
        "spec": spec,
    }


def cluster_object(
    name: str,
    namespace: str = "default",
    vlan_uuid: str = "",
    vlan_name: str = "",
    user_email: str = "",
    ready: Optional[bool] = None,
) -> Dict[str, Any]:
    network: Dict[str, Any] = {"cidr": "192.168.10.0/24"}
    if vlan_uuid:
        network["vlanUUID"] = vlan_uuid
    if vlan_name:
        network["vlanName"] = vlan_name
    obj: Dict[str, Any] = {
        "apiVersion": "infrastructure.cluster.x-k8s.io/v1beta1",
        "kind": "CloudSigmaCluster",
        "metadata": {"name": name, "namespace": namespace},
        "spec": {"region": "zrh", "network": network},
    }
    if user_email:
        obj["spec"]["userEmail"] = user_email
    if ready is not None:
        obj["status"] = {"ready": ready}
    return obj
