"""Infrastructure API resources consumed by the controller."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class IPAssignment:
    """An IP address bound to a device."""

    id: str
    address: str
    device_id: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IPAssignment":
        device = data.get("assigned_to") or {}
        href = device.get("href", "")
        device_id = device.get("id") or href.rsplit("/", 1)[-1]
        return cls(id=str(data["id"]), address=str(data.get("address", "")), device_id=device_id)


@dataclass
class IPReservation:
    """A reserved block of addresses, optionally assigned to a device."""

    id: str
    address: str
    cidr: int = 32
    tags: List[str] = field(default_factory=list)
    assignments: List[IPAssignment] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.address}/{self.cidr}"

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "IPReservation":
        return cls(
            id=str(data["id"]),
            address=str(data.get("address", "")),
            cidr=int(data.get("cidr", 32)),
            tags=[str(t) for t in data.get("tags") or []],
            assignments=[IPAssignment.from_api(a) for a in data.get("assignments") or []],
        )


@dataclass(frozen=True)
class BGPConfig:
    """Project-level BGP configuration."""

    id: str = ""
    status: str = ""
    asn: int = 0

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> "BGPConfig":
        data = data or {}
        return cls(
            id=str(data.get("id") or ""),
            status=str(data.get("status") or ""),
            asn=int(data.get("asn") or 0),
        )


@dataclass
class BGPNeighbor:
    """Peering parameters the provider exposes for one device."""

    address_family: int
    customer_as: int
    customer_ip: str
    peer_as: int
    peer_ips: List[str] = field(default_factory=list)
    md5_password: str = ""

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "BGPNeighbor":
        return cls(
            address_family=int(data.get("address_family", 0)),
            customer_as=int(data.get("customer_as", 0)),
            customer_ip=str(data.get("customer_ip", "")),
            peer_as=int(data.get("peer_as", 0)),
            peer_ips=[str(ip) for ip in data.get("peer_ips") or []],
            md5_password=str(data.get("md5_password") or ""),
        )
