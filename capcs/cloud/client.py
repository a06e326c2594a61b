"""Typed client for the CloudSigma REST API."""

from __future__ import annotations

import base64
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from capcs.cloud.errors import (
    CloudError,
    NotFoundError,
    TimeoutExceeded,
    TransientError,
    error_for_status,
)
from capcs.cloud.locks import KeyedLock
from capcs.cloud.server_body import ServerDescription, static_nic
from capcs.state import (
    Address,
    Disk,
    ExternalServer,
    FloatingIP,
    NIC,
    SERVER_STOPPED,
)

logger = logging.getLogger(__name__)

DEFAULT_REGION = "zrh"

DRIVE_READY_STATUSES = ("mounted", "unmounted")
DRIVE_FAILED_STATUS = "unavailable"

# Error texts the API returns for servers that are already on their way out.
_GONE_MARKERS = ("in state 'deleting'", "in state 'stopping'", "not found", "404")

META_MACHINE_UID = "machine-uid"
META_MACHINE_NAME = "machine-name"
META_CLOUDINIT = "cloudinit-user-data"


@dataclass
class ServerRequest:
    """Everything needed to create one server."""
    name: str
    cpu_mhz: int
    memory_mb: int
    disks: List[Disk] = field(default_factory=list)
    nics: List[NIC] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    bootstrap_data: Optional[str] = None
    vnc_password: Optional[str] = None


def build_server_body(req: ServerRequest, drive_uuids: List[str]) -> Dict[str, Any]:
    """Translate a ServerRequest and cloned drive uuids into a POST /servers/ object."""
    drives = []
    for i, (disk, drive_uuid) in enumerate(zip(req.disks, drive_uuids)):
        boot_order = disk.boot_order or i + 1
        drives.append({
            "boot_order": boot_order,
            "dev_channel": f"0:{boot_order}",
            "device": disk.device or "virtio",
            "drive": drive_uuid,
        })

    nics = []
    for nic in req.nics or [NIC()]:
        entry: Dict[str, Any] = {"model": "virtio"}
        if nic.vlan_id:
            entry["vlan"] = nic.vlan_id
            if nic.mode == "static" and nic.ip_uuid:
                entry["ip_v4_conf"] = {"conf": "static", "ip": {"uuid": nic.ip_uuid}}
        elif nic.mode == "static" and nic.ip_uuid:
            entry["ip_v4_conf"] = {"conf": "static", "ip": {"uuid": nic.ip_uuid}}
        else:
            entry["ip_v4_conf"] = {"conf": "dhcp"}
        nics.append(entry)

    meta = dict(req.metadata)
    if req.bootstrap_data:
        meta["base64_fields"] = META_CLOUDINIT
        meta[META_CLOUDINIT] = base64.b64encode(req.bootstrap_data.encode()).decode()

    return {
        "name": req.name,
        "cpu": req.cpu_mhz,
        "mem": req.memory_mb * 1024 * 1024,
        "vnc_password": req.vnc_password or secrets.token_hex(8),
        "drives": drives,
        "nics": nics,
        "meta": meta,
    }


def _resource_uuids(resources: Iterable[Any]) -> List[str]:
    out = []
    for r in resources or []:
        if isinstance(r, dict):
            r = r.get("uuid")
        if r:
            out.append(r)
    return out


class CloudClient:
    """
    CloudSigma API client bound to one identity and region.

    Requests authenticate either with an impersonated user token from
    ``token_provider`` or with legacy username/password credentials.
    ``with_identity`` derives a client for another user that shares the HTTP
    session and the per-resource lock registry, so read-modify-write calls are
    serialised process-wide no matter which identity performs them.

    Args:
        region: CloudSigma region code
        user: Identity to impersonate (impersonation mode)
        token_provider: Object with ``get_token(user, region)`` and ``clear_user_token(user, region)``
        username: Legacy account username
        password: Legacy account password
        api_endpoint: Override for the API base URL
        timeout: Per-request HTTP timeout in seconds
        clone_timeout_s: Upper bound on waiting for a cloned drive to become usable
        poll_interval_s: Interval between drive status polls
        stop_timeout_s: Upper bound on waiting for a server to stop
        stop_poll_interval_s: Interval between server status polls
    """

    def __init__(
        self,
        region: str = DEFAULT_REGION,
        user: str = "",
        token_provider: Optional[Any] = None,
        username: str = "",
        password: str = "",
        api_endpoint: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        locks: Optional[KeyedLock] = None,
        clone_timeout_s: float = 300.0,
        poll_interval_s: float = 5.0,
        stop_timeout_s: float = 120.0,
        stop_poll_interval_s: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.region = region or DEFAULT_REGION
        self.user = user
        self.token_provider = token_provider
        self.username = username
        self.password = password
        self.impersonating = bool(token_provider and user)
        if not self.impersonating and not (username and password):
            raise ValueError("either an impersonated user with a token provider or username/password is required")
        if api_endpoint:
            self.api_endpoint = api_endpoint.rstrip("/")
        elif self.impersonating:
            self.api_endpoint = f"https://direct.{self.region}.cloudsigma.com/api/2.0"
        else:
            self.api_endpoint = f"https://{self.region}.cloudsigma.com/api/2.0"
        self._explicit_endpoint = api_endpoint
        self.session = session or requests.Session()
        self.timeout = timeout
        self.locks = locks or KeyedLock()
        self.clone_timeout_s = clone_timeout_s
        self.poll_interval_s = poll_interval_s
        self.stop_timeout_s = stop_timeout_s
        self.stop_poll_interval_s = stop_poll_interval_s
        self._sleep = sleep
        self._clock = clock

    def with_identity(self, user: str, region: Optional[str] = None) -> "CloudClient":
        """Client acting as ``user`` (and optionally another region) sharing session and locks."""
        region = region or self.region
        if not user or self.token_provider is None:
            if region == self.region:
                return self
            user = ""
        if user == self.user and region == self.region:
            return self
        return CloudClient(
            region=region,
            user=user,
            token_provider=self.token_provider if user else None,
            username=self.username,
            password=self.password,
            api_endpoint=self._explicit_endpoint,
            session=self.session,
            timeout=self.timeout,
            locks=self.locks,
            clone_timeout_s=self.clone_timeout_s,
            poll_interval_s=self.poll_interval_s,
            stop_timeout_s=self.stop_timeout_s,
            stop_poll_interval_s=self.stop_poll_interval_s,
            sleep=self._sleep,
            clock=self._clock,
        )

    @property
    def identity(self) -> str:
        return self.user if self.impersonating else self.username

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------

    def _request(
        self,
        method: str,
        path: str,
        resource_type: str = "",
        uuid: str = "",
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        url = f"{self.api_endpoint}/{path.lstrip('/')}"
        headers = {"Accept": "application/json"}
        auth = None
        if self.impersonating:
            headers["Authorization"] = f"Bearer {self.token_provider.get_token(self.user, self.region)}"
        else:
            auth = (self.username, self.password)

        try:
            resp = self.session.request(
                method,
                url,
                headers=headers,
                auth=auth,
                json=json,
                params=params,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise TransientError(f"{method} {path} failed: {e}", resource_type=resource_type, uuid=uuid) from e

        if resp.status_code == 401:
            if self.impersonating:
                self.token_provider.clear_user_token(self.user, self.region)
            raise TransientError(
                f"{method} {path} unauthorized for {self.identity}",
                status_code=401,
                resource_type=resource_type,
                uuid=uuid,
            )
        if resp.status_code >= 400:
            raise error_for_status(resp.status_code, resp.text, resource_type, uuid, user=self.identity)
        if not resp.content:
            return {}
        return resp.json()

    @staticmethod
    def _objects(data: Dict[str, Any]) -> List[Dict[str, Any]]:
        if "objects" in data:
            return list(data.get("objects") or [])
        return [data] if data else []

    # ------------------------------------------------------------------
    # Servers
    # ------------------------------------------------------------------

    def get_server_body(self, uuid: str) -> Dict[str, Any]:
        return self._request("GET", f"servers/{uuid}/", "server", uuid)

    def get_server(self, uuid: str) -> ExternalServer:
        """
        Fetch a server by uuid.

        Raises:
            NotFoundError: The server does not exist
            PermissionDeniedError: The server exists but this identity cannot read it
        """
        return ExternalServer.from_api(self.get_server_body(uuid))

    def list_servers(self) -> List[ExternalServer]:
        data = self._request("GET", "servers/detail/", "server", params={"limit": 0})
        return [ExternalServer.from_api(s) for s in self._objects(data)]

    def find_server(self, name: str, uid: str) -> Optional[ExternalServer]:
        """
        Find an accessible server belonging to a machine.

        A server whose ``machine-uid`` meta equals ``uid`` wins. A server with
        the same name only matches when it carries no machine uid at all, so
        a server of a deleted and recreated machine of the same name is never
        adopted.
        """
        by_name = None
        for server in self.list_servers():
            server_uid = server.metadata.get(META_MACHINE_UID)
            if uid and server_uid == uid:
                return server
            if by_name is None and server.name == name and not server_uid:
                by_name = server
        return by_name

    def create_server(self, req: ServerRequest) -> ExternalServer:
        """
        Clone the requested drives and create a server from them.

        Cloned drives are removed again if any later step fails.
        """
        drive_uuids: List[str] = []
        try:
            for i, disk in enumerate(req.disks):
                drive_uuid = self.clone_drive(disk.source_image_id, f"{req.name}-drive-{i}", disk.size_bytes)
                drive_uuids.append(drive_uuid)
                self.wait_for_drive_ready(drive_uuid)
            body = build_server_body(req, drive_uuids)
            data = self._request("POST", "servers/", "server", json={"objects": [body]})
        except Exception:
            self.delete_drives(drive_uuids)
            raise
        objects = self._objects(data)
        if not objects:
            self.delete_drives(drive_uuids)
            raise CloudError(f"server creation for {req.name} returned no objects", resource_type="server")
        server = ExternalServer.from_api(objects[0])
        logger.info(f"Created server {server.name} ({server.uuid}) with {len(drive_uuids)} drive(s)")
        return server

    def start_server(self, uuid: str) -> None:
        logger.info(f"Starting server {uuid}")
        self._request("POST", f"servers/{uuid}/action/", "server", uuid, params={"do": "start"})

    def stop_server(self, uuid: str) -> None:
        logger.info(f"Stopping server {uuid}")
        self._request("POST", f"servers/{uuid}/action/", "server", uuid, params={"do": "stop"})

    def wait_for_server_status(
        self,
        uuid: str,
        statuses: Iterable[str] = (SERVER_STOPPED,),
        timeout_s: Optional[float] = None,
    ) -> ExternalServer:
        wanted = set(statuses)
        timeout_s = self.stop_timeout_s if timeout_s is None else timeout_s
        deadline = self._clock() + timeout_s
        while True:
            server = self.get_server(uuid)
            if server.status in wanted:
                return server
            if self._clock() >= deadline:
                raise TimeoutExceeded(
                    f"server {uuid} still {server.status} after {timeout_s}s",
                    resource_type="server",
                    uuid=uuid,
                )
            self._sleep(self.stop_poll_interval_s)

    def delete_server(self, uuid: str, drive_uuids: Iterable[str] = ()) -> bool:
        """
        Delete a server and then its drives.

        Returns:
            True when the server was deleted by this call, False when it was
            already gone or on its way out.
        """
        deleted = True
        try:
            self._request("DELETE", f"servers/{uuid}/", "server", uuid)
            logger.info(f"Deleted server {uuid}")
        except NotFoundError:
            deleted = False
        except CloudError as e:
            if not any(marker in str(e) for marker in _GONE_MARKERS):
                raise
            logger.info(f"Server {uuid} already being removed: {e}")
            deleted = False
        self.delete_drives(list(drive_uuids))
        return deleted

    def server_addresses(self, server: ExternalServer) -> List[Address]:
        addresses = [Address("Hostname", server.name)] if server.name else []
        for nic in server.nics:
            runtime = nic.get("runtime") or {}
            ip = (runtime.get("ip_v4") or {}).get("uuid")
            conf_ip = (nic.get("ip_v4_conf") or {}).get("ip")
            if not ip and isinstance(conf_ip, dict):
                ip = conf_ip.get("uuid")
            if not ip:
                continue
            kind = "InternalIP" if nic.get("vlan") else "ExternalIP"
            addresses.append(Address(kind, ip))
        return addresses

    def update_server(self, uuid: str, mutate: Callable[[ServerDescription], bool]) -> ServerDescription:
        """
        Read-modify-write of a full server object.

        The server lock is held from the GET until the PUT returns. ``mutate``
        changes the description in place and returns whether anything changed;
        nothing is sent when it did not.
        """
        with self.locks.hold(f"server:{uuid}"):
            desc = ServerDescription(self.get_server_body(uuid))
            if not mutate(desc):
                return desc
            self._request("PUT", f"servers/{uuid}/", "server", uuid, json=desc.to_update_body())
            return desc

    def attach_ip(self, server_uuid: str, address: str) -> bool:
        """Attach a floating IP as an additional NIC. Idempotent."""
        desc = self.update_server(server_uuid, lambda d: d.merge_nic(static_nic(address)))
        if desc.changed:
            logger.info(f"Attached {address} to server {server_uuid}")
        return desc.changed

    def detach_ip(self, server_uuid: str, address: str) -> bool:
        """Remove a floating IP NIC. The server's primary NIC is left alone."""
        desc = self.update_server(server_uuid, lambda d: d.remove_address(address))
        if desc.changed:
            logger.info(f"Detached {address} from server {server_uuid}")
        elif desc.primary_address() == address:
            logger.warning(f"Refusing to detach {address}: it is the primary address of server {server_uuid}")
        return desc.changed

    # ------------------------------------------------------------------
    # Drives
    # ------------------------------------------------------------------

    def clone_drive(self, source_uuid: str, name: str, size_bytes: int) -> str:
        body: Dict[str, Any] = {"name": name, "media": "disk"}
        if size_bytes:
            body["size"] = size_bytes
        data = self._request(
            "POST", f"drives/{source_uuid}/action/", "drive", source_uuid, json=body, params={"do": "clone"}
        )
        objects = self._objects(data)
        if not objects or not objects[0].get("uuid"):
            raise CloudError(f"clone of drive {source_uuid} returned no drive", resource_type="drive", uuid=source_uuid)
        drive_uuid = objects[0]["uuid"]
        logger.info(f"Cloned drive {source_uuid} into {name} ({drive_uuid})")
        return drive_uuid

    def get_drive(self, uuid: str) -> Dict[str, Any]:
        return self._request("GET", f"drives/{uuid}/", "drive", uuid)

    def wait_for_drive_ready(self, uuid: str, timeout_s: Optional[float] = None) -> Dict[str, Any]:
        timeout_s = self.clone_timeout_s if timeout_s is None else timeout_s
        deadline = self._clock() + timeout_s
        while True:
            drive = self.get_drive(uuid)
            status = drive.get("status", "")
            if status in DRIVE_READY_STATUSES:
                return drive
            if status == DRIVE_FAILED_STATUS:
                raise CloudError(f"drive {uuid} became unavailable", resource_type="drive", uuid=uuid)
            if self._clock() >= deadline:
                raise TimeoutExceeded(f"drive {uuid} still {status} after {timeout_s}s", resource_type="drive", uuid=uuid)
            self._sleep(self.poll_interval_s)

    def delete_drive(self, uuid: str) -> None:
        try:
            self._request("DELETE", f"drives/{uuid}/", "drive", uuid)
        except NotFoundError:
            return
        logger.info(f"Deleted drive {uuid}")

    def delete_drives(self, drive_uuids: List[str]) -> None:
        for drive_uuid in drive_uuids:
            try:
                self.delete_drive(drive_uuid)
            except CloudError as e:
                logger.warning(f"Failed to delete drive {drive_uuid}: {e}")

    # ------------------------------------------------------------------
    # VLANs
    # ------------------------------------------------------------------

    def get_vlan(self, uuid: str) -> Optional[Dict[str, Any]]:
        try:
            return self._request("GET", f"vlans/{uuid}/", "vlan", uuid)
        except NotFoundError:
            return None

    def list_vlans(self) -> List[Dict[str, Any]]:
        return self._objects(self._request("GET", "vlans/detail/", "vlan", params={"limit": 0}))

    def update_vlan_meta(self, uuid: str, mutate: Callable[[Dict[str, str]], bool]) -> Dict[str, Any]:
        with self.locks.hold(f"vlan:{uuid}"):
            vlan = self._request("GET", f"vlans/{uuid}/", "vlan", uuid)
            meta = dict(vlan.get("meta") or {})
            if not mutate(meta):
                return vlan
            return self._request("PUT", f"vlans/{uuid}/", "vlan", uuid, json={"meta": meta})

    # ------------------------------------------------------------------
    # Floating IPs and tags
    # ------------------------------------------------------------------

    def list_tags(self) -> List[Dict[str, Any]]:
        tags = []
        for t in self._objects(self._request("GET", "tags/detail/", "tag", params={"limit": 0})):
            tags.append({"uuid": t.get("uuid", ""), "name": t.get("name", ""), "resources": _resource_uuids(t.get("resources"))})
        return tags

    def list_floating_ips(self) -> List[FloatingIP]:
        names_by_resource: Dict[str, List[str]] = {}
        for tag in self.list_tags():
            for resource in tag["resources"]:
                names_by_resource.setdefault(resource, []).append(tag["name"])

        ips = []
        for obj in self._objects(self._request("GET", "ips/detail/", "ip", params={"limit": 0})):
            address = obj.get("uuid")
            if not address:
                continue
            server = obj.get("server")
            if isinstance(server, dict):
                server = server.get("uuid")
            ips.append(FloatingIP(
                address=address,
                has_subscription=bool(obj.get("subscription")),
                attached_server_uuid=server or None,
                tags=sorted(names_by_resource.get(address, [])),
            ))
        return ips

    def tag_resource(self, resource_uuid: str, names: Iterable[str]) -> None:
        """Make ``resource_uuid`` a member of every named tag, creating tags as needed."""
        for name in names:
            with self.locks.hold(f"tag:{name}"):
                tag = next((t for t in self.list_tags() if t["name"] == name), None)
                if tag is None:
                    self._request("POST", "tags/", "tag", json={"objects": [{"name": name, "resources": [resource_uuid]}]})
                    logger.info(f"Created tag {name} on {resource_uuid}")
                elif resource_uuid not in tag["resources"]:
                    resources = tag["resources"] + [resource_uuid]
                    self._put_tag(tag, resources)
                    logger.info(f"Tagged {resource_uuid} with {name}")

    def untag_resource(self, resource_uuid: str, match: Callable[[str], bool]) -> List[str]:
        """
        Remove ``resource_uuid`` from every tag whose name satisfies ``match``.

        Returns:
            Names of the tags the resource was removed from.
        """
        removed = []
        for tag in self.list_tags():
            if resource_uuid not in tag["resources"] or not match(tag["name"]):
                continue
            with self.locks.hold(f"tag:{tag['name']}"):
                fresh = next((t for t in self.list_tags() if t["uuid"] == tag["uuid"]), None)
                if fresh is None or resource_uuid not in fresh["resources"]:
                    continue
                self._put_tag(fresh, [r for r in fresh["resources"] if r != resource_uuid])
                removed.append(fresh["name"])
        if removed:
            logger.info(f"Removed {resource_uuid} from tags {removed}")
        return removed

    def _put_tag(self, tag: Dict[str, Any], resources: List[str]) -> None:
        self._request(
            "PUT",
            f"tags/{tag['uuid']}/",
            "tag",
            tag["uuid"],
            json={"name": tag["name"], "resources": [{"uuid": r} for r in resources]},
        )


class ClientFactory:
    """Hands out clients acting as the identity and region a cluster asks for."""

    def __init__(self, base: CloudClient, default_user: str = ""):
        self.base = base
        self.default_user = default_user

    def for_identity(self, user: str = "", region: str = "") -> CloudClient:
        return self.base.with_identity(user or self.default_user, region or None)

    def for_cluster(self, cluster: Optional[Any]) -> CloudClient:
        if cluster is None:
            return self.for_identity()
        return self.for_identity(cluster.spec.user_email, cluster.spec.region)
