"""Typed view of a full CloudSigma server body for full-object updates."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Optional

# Fields assigned by the cloud that a PUT must never echo back.
READ_ONLY_FIELDS = (
    "resource_uri",
    "runtime",
    "status",
    "uuid",
    "owner",
    "permissions",
    "mounted_on",
    "grantees",
)

# Fields the reconcilers are allowed to change.
MUTABLE_FIELDS = ("nics",)


def nic_address(nic: Dict[str, Any]) -> Optional[str]:
    conf = nic.get("ip_v4_conf") or {}
    ip = conf.get("ip")
    if isinstance(ip, dict):
        return ip.get("uuid")
    if isinstance(ip, str):
        return ip
    return None


def static_nic(address: str, model: str = "virtio") -> Dict[str, Any]:
    return {"ip_v4_conf": {"conf": "static", "ip": {"uuid": address}}, "model": model}


class ServerDescription:
    """
    Full server body as returned by ``GET /servers/{uuid}/``.

    Only fields in MUTABLE_FIELDS may be changed; everything else, including
    fields this module knows nothing about, is resubmitted unchanged by
    ``to_update_body``.
    """

    def __init__(self, body: Dict[str, Any]):
        self._body = copy.deepcopy(body)
        self._changed = False

    @property
    def uuid(self) -> str:
        return self._body.get("uuid", "")

    @property
    def name(self) -> str:
        return self._body.get("name", "")

    @property
    def changed(self) -> bool:
        return self._changed

    @property
    def nics(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._body.get("nics") or [])

    def get(self, name: str, default: Any = None) -> Any:
        return copy.deepcopy(self._body.get(name, default))

    def set_field(self, name: str, value: Any) -> None:
        if name not in MUTABLE_FIELDS:
            raise ValueError(f"field {name!r} is not mutable")
        if self._body.get(name) != value:
            self._body[name] = copy.deepcopy(value)
            self._changed = True

    def has_address(self, address: str) -> bool:
        return any(nic_address(n) == address for n in self._body.get("nics") or [])

    def merge_nic(self, nic: Dict[str, Any], position: Optional[int] = None) -> bool:
        """
        Merge a NIC description positionally.

        With a position inside the current list, the NIC at that index is
        updated key by key; otherwise the NIC is appended. A NIC carrying an
        address that is already present is a no-op, which keeps repeated
        attach calls idempotent.

        Returns:
            True if the body changed.
        """
        nics = self.nics
        address = nic_address(nic)
        if address and any(nic_address(n) == address for n in nics):
            return False
        if position is not None and 0 <= position < len(nics):
            merged = dict(nics[position])
            merged.update(copy.deepcopy(nic))
            nics[position] = merged
        else:
            nics.append(copy.deepcopy(nic))
        if nics == (self._body.get("nics") or []):
            return False
        self.set_field("nics", nics)
        return True

    def primary_address(self) -> Optional[str]:
        nics = self._body.get("nics") or []
        return nic_address(nics[0]) if nics else None

    def remove_address(self, address: str) -> bool:
        """
        Drop the NIC carrying ``address``.

        The first NIC is the server's own primary interface and is never
        removed, even when it carries the address.
        """
        nics = self.nics
        kept = nics[:1] + [n for n in nics[1:] if nic_address(n) != address]
        if len(kept) == len(nics):
            return False
        self.set_field("nics", kept)
        return True

    def to_update_body(self) -> Dict[str, Any]:
        body = copy.deepcopy(self._body)
        for key in READ_ONLY_FIELDS:
            body.pop(key, None)
        # NIC runtime blocks are server-assigned as well.
        for nic in body.get("nics") or []:
            nic.pop("runtime", None)
        return body
