"""In-memory model of the MetalLB BGP peer/address-pool document.

The document is the ``config`` key of MetalLB's legacy ConfigMap: a list of
BGP peers, a list of address pools and a mapping of named BGP communities.
The controller reads it, mutates it through the operations below and hands
it back to the caller for persistence.  Nothing in this module performs I/O.

Most lists in the document are sets in disguise: the order of node selectors,
match expressions, expression values, pool addresses and BGP advertisements
carries no meaning.  Equality is therefore defined on a canonical, sorted
form of each structure so insertion order never changes the result.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

import yaml

SERVICE_NAMESPACE_KEY = "nomatch.metal.equinix.com/service-namespace"
SERVICE_NAME_KEY = "nomatch.metal.equinix.com/service-name"
HOSTNAME_KEY = "kubernetes.io/hostname"

# joins the names of address pools merged because they describe the same addresses
NAME_JOINER = ","


class Resource(NamedTuple):
    """Namespace/name pair of a Service served by a peer."""

    namespace: str
    name: str


@dataclass(eq=False)
class SelectorRequirement:
    """A ``key``/``operator``/``values`` match expression."""

    key: str
    operator: str
    values: List[str] = field(default_factory=list)

    def sort_key(self) -> Tuple[str, str, int, Tuple[str, ...]]:
        # key, then operator, then number of values, then the sorted values
        return (self.key, self.operator, len(self.values), tuple(sorted(self.values)))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SelectorRequirement):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def duplicate(self) -> "SelectorRequirement":
        return SelectorRequirement(self.key, self.operator, list(self.values))

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "operator": self.operator, "values": list(self.values)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SelectorRequirement":
        return cls(
            key=str(data.get("key", "")),
            operator=str(data.get("operator", "")),
            values=[str(v) for v in data.get("values") or []],
        )


@dataclass(eq=False)
class NodeSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[SelectorRequirement] = field(default_factory=list)

    def sort_key(self) -> Tuple[Any, ...]:
        return (
            len(self.match_labels),
            tuple(sorted(self.match_labels.items())),
            len(self.match_expressions),
            tuple(sorted(req.sort_key() for req in self.match_expressions)),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, NodeSelector):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def service(self) -> Optional[Resource]:
        """Return the Service this selector marks, if it is a service marker."""

        if not self.is_service_marker():
            return None
        return Resource(
            self.match_labels[SERVICE_NAMESPACE_KEY], self.match_labels[SERVICE_NAME_KEY]
        )

    def is_service_marker(self) -> bool:
        """A marker selector carries exactly the namespace/name label pair."""

        return (
            not self.match_expressions
            and set(self.match_labels) == {SERVICE_NAMESPACE_KEY, SERVICE_NAME_KEY}
        )

    def duplicate(self) -> "NodeSelector":
        return NodeSelector(
            match_labels=dict(self.match_labels),
            match_expressions=[req.duplicate() for req in self.match_expressions],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "match-labels": dict(self.match_labels),
            "match-expressions": [req.to_dict() for req in self.match_expressions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSelector":
        labels = data.get("match-labels") or {}
        return cls(
            match_labels={str(k): str(v) for k, v in labels.items()},
            match_expressions=[
                SelectorRequirement.from_dict(entry)
                for entry in data.get("match-expressions") or []
            ],
        )


def service_selector(namespace: str, name: str) -> NodeSelector:
    """Build the marker selector meaning "this peer serves namespace/name"."""

    return NodeSelector(
        match_labels={SERVICE_NAMESPACE_KEY: namespace, SERVICE_NAME_KEY: name}
    )


def hostname_selector(node_name: str) -> NodeSelector:
    return NodeSelector(match_labels={HOSTNAME_KEY: node_name})


def _selectors_equal(first: Iterable[NodeSelector], second: Iterable[NodeSelector]) -> bool:
    first_keys = sorted(ns.sort_key() for ns in first)
    second_keys = sorted(ns.sort_key() for ns in second)
    return first_keys == second_keys


@dataclass(eq=False)
class Peer:
    """A BGP peer entry.

    Two peers are equal when ASNs, address, port, hold time, password,
    router id and the *set* of node selectors match.  The source address and
    the optional name do not take part in the comparison.
    """

    my_asn: int = 0
    asn: int = 0
    addr: str = ""
    port: int = 0
    src_addr: str = ""
    hold_time: str = ""
    router_id: str = ""
    node_selectors: List[NodeSelector] = field(default_factory=list)
    password: str = ""
    name: str = ""

    def _scalars(self) -> Tuple[Any, ...]:
        return (
            self.my_asn,
            self.asn,
            self.addr,
            self.port,
            self.hold_time,
            self.password,
            self.router_id,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Peer):
            return NotImplemented
        return self._scalars() == other._scalars() and _selectors_equal(
            self.node_selectors, other.node_selectors
        )

    def equal_ignore_service(self, other: Optional["Peer"]) -> bool:
        """Compare like ``==`` but skip service marker selectors on both sides."""

        if other is None or self._scalars() != other._scalars():
            return False
        return _selectors_equal(
            (ns for ns in self.node_selectors if not ns.is_service_marker()),
            (ns for ns in other.node_selectors if not ns.is_service_marker()),
        )

    def services(self) -> List[Resource]:
        return [ns.service() for ns in self.node_selectors if ns.is_service_marker()]

    def _replace_services(self, services: Iterable[Resource]) -> None:
        selectors = [ns for ns in self.node_selectors if not ns.is_service_marker()]
        selectors.extend(service_selector(*svc) for svc in sorted(set(services)))
        self.node_selectors = selectors

    def add_service(self, namespace: str, name: str) -> bool:
        """Attach the marker for ``namespace/name``; return whether it changed."""

        current = self.services()
        wanted = Resource(namespace, name)
        if wanted in current:
            return False
        self._replace_services([*current, wanted])
        return True

    def remove_service(self, namespace: str, name: str) -> Tuple[bool, int]:
        """Detach the marker for ``namespace/name``.

        Returns whether the marker was present and how many services remain.
        """

        current = self.services()
        unwanted = Resource(namespace, name)
        remaining = [svc for svc in current if svc != unwanted]
        found = len(remaining) != len(current)
        if found:
            self._replace_services(remaining)
        return found, len(remaining)

    def match_selector(self, selector: Optional[NodeSelector]) -> bool:
        if selector is None:
            return False
        return any(ns == selector for ns in self.node_selectors)

    def duplicate(self) -> "Peer":
        return Peer(
            my_asn=self.my_asn,
            asn=self.asn,
            addr=self.addr,
            port=self.port,
            src_addr=self.src_addr,
            hold_time=self.hold_time,
            router_id=self.router_id,
            node_selectors=[ns.duplicate() for ns in self.node_selectors],
            password=self.password,
            name=self.name,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "my-asn": self.my_asn,
            "peer-asn": self.asn,
            "peer-address": self.addr,
            "peer-port": self.port,
            "source-address": self.src_addr,
            "hold-time": self.hold_time,
            "router-id": self.router_id,
            "node-selectors": [ns.to_dict() for ns in self.node_selectors],
            "password": self.password,
        }
        if self.name:
            data["name"] = self.name
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Peer":
        return cls(
            my_asn=int(data.get("my-asn") or 0),
            asn=int(data.get("peer-asn") or 0),
            addr=str(data.get("peer-address") or ""),
            port=int(data.get("peer-port") or 0),
            src_addr=str(data.get("source-address") or ""),
            hold_time=str(data.get("hold-time") or ""),
            router_id=str(data.get("router-id") or ""),
            node_selectors=[
                NodeSelector.from_dict(entry) for entry in data.get("node-selectors") or []
            ],
            password=str(data.get("password") or ""),
            name=str(data.get("name") or ""),
        )


@dataclass(eq=False)
class BgpAdvertisement:
    aggregation_length: Optional[int] = None
    local_pref: Optional[int] = None
    communities: List[str] = field(default_factory=list)

    def sort_key(self) -> Tuple[Any, ...]:
        return (
            self.aggregation_length is not None,
            self.aggregation_length or 0,
            self.local_pref is not None,
            self.local_pref or 0,
            len(self.communities),
            tuple(sorted(self.communities)),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BgpAdvertisement):
            return NotImplemented
        return self.sort_key() == other.sort_key()

    def duplicate(self) -> "BgpAdvertisement":
        return BgpAdvertisement(
            self.aggregation_length, self.local_pref, list(self.communities)
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.aggregation_length is not None:
            data["aggregation-length"] = self.aggregation_length
        if self.local_pref is not None:
            data["localpref"] = self.local_pref
        if self.communities:
            data["communities"] = list(self.communities)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BgpAdvertisement":
        length = data.get("aggregation-length")
        pref = data.get("localpref")
        return cls(
            aggregation_length=int(length) if length is not None else None,
            local_pref=int(pref) if pref is not None else None,
            communities=[str(c) for c in data.get("communities") or []],
        )


@dataclass(eq=False)
class AddressPool:
    protocol: str = ""
    name: str = ""
    addresses: List[str] = field(default_factory=list)
    avoid_buggy_ips: bool = False
    auto_assign: Optional[bool] = None
    bgp_advertisements: List[BgpAdvertisement] = field(default_factory=list)

    def _auto_assign(self) -> bool:
        # MetalLB treats an unset auto-assign as enabled
        return True if self.auto_assign is None else self.auto_assign

    def equal_ignore_name(self, other: Optional["AddressPool"]) -> bool:
        """Compare everything except the pool name.

        Two pools matching here describe the same addresses; MetalLB cannot
        hold both, so they get merged under a combined name.
        """

        if other is None:
            return False
        if (
            self.protocol != other.protocol
            or self.avoid_buggy_ips != other.avoid_buggy_ips
            or self._auto_assign() != other._auto_assign()
        ):
            return False
        if sorted(self.addresses) != sorted(other.addresses):
            return False
        return sorted(adv.sort_key() for adv in self.bgp_advertisements) == sorted(
            adv.sort_key() for adv in other.bgp_advertisements
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, AddressPool):
            return NotImplemented
        return self.name == other.name and self.equal_ignore_name(other)

    def names(self) -> List[str]:
        return [n for n in self.name.split(NAME_JOINER) if n]

    def duplicate(self) -> "AddressPool":
        return AddressPool(
            protocol=self.protocol,
            name=self.name,
            addresses=list(self.addresses),
            avoid_buggy_ips=self.avoid_buggy_ips,
            auto_assign=self.auto_assign,
            bgp_advertisements=[adv.duplicate() for adv in self.bgp_advertisements],
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "protocol": self.protocol,
            "name": self.name,
            "addresses": list(self.addresses),
            "avoid-buggy-ips": self.avoid_buggy_ips,
        }
        if self.auto_assign is not None:
            data["auto-assign"] = self.auto_assign
        data["bgp-advertisements"] = [adv.to_dict() for adv in self.bgp_advertisements]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddressPool":
        auto_assign = data.get("auto-assign")
        return cls(
            protocol=str(data.get("protocol") or ""),
            name=str(data.get("name") or ""),
            addresses=[str(a) for a in data.get("addresses") or []],
            avoid_buggy_ips=bool(data.get("avoid-buggy-ips", False)),
            auto_assign=bool(auto_assign) if auto_assign is not None else None,
            bgp_advertisements=[
                BgpAdvertisement.from_dict(entry)
                for entry in data.get("bgp-advertisements") or []
            ],
        )


def _join_names(names: Iterable[str]) -> str:
    return NAME_JOINER.join(sorted(dict.fromkeys(n for n in names if n)))


@dataclass
class ConfigFile:
    """The whole peer/pool document.

    Every mutating operation returns whether the document changed so callers
    only persist when needed.
    """

    peers: List[Peer] = field(default_factory=list)
    bgp_communities: Dict[str, str] = field(default_factory=dict)
    pools: List[AddressPool] = field(default_factory=list)

    # ------------------------------------------------------------------
    # (de)serialisation
    # ------------------------------------------------------------------
    @classmethod
    def parse(cls, text: Optional[str]) -> "ConfigFile":
        data = yaml.safe_load(text) if text else None
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("could not parse config: document must be a mapping")
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConfigFile":
        communities = data.get("bgp-communities") or {}
        return cls(
            peers=[Peer.from_dict(entry) for entry in data.get("peers") or []],
            bgp_communities={str(k): str(v) for k, v in communities.items()},
            pools=[AddressPool.from_dict(entry) for entry in data.get("address-pools") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "peers": [peer.to_dict() for peer in self.peers],
            "bgp-communities": dict(self.bgp_communities),
            "address-pools": [pool.to_dict() for pool in self.pools],
        }

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), default_flow_style=False, sort_keys=False)

    def duplicate(self) -> "ConfigFile":
        return ConfigFile(
            peers=[peer.duplicate() for peer in self.peers],
            bgp_communities=dict(self.bgp_communities),
            pools=[pool.duplicate() for pool in self.pools],
        )

    # ------------------------------------------------------------------
    # Peers
    # ------------------------------------------------------------------
    def add_peer(self, add: Optional[Peer]) -> bool:
        if add is None:
            return False
        if any(peer == add for peer in self.peers):
            return False
        self.peers.append(add.duplicate())
        return True

    def remove_peer(self, remove: Optional[Peer]) -> bool:
        if remove is None:
            return False
        kept = [peer for peer in self.peers if peer != remove]
        changed = len(kept) != len(self.peers)
        self.peers = kept
        return changed

    def add_peer_by_service(self, add: Optional[Peer], namespace: str, name: str) -> bool:
        """Attach ``namespace/name`` to the peer matching ``add``.

        Matching ignores service markers.  When no peer matches, a copy of
        ``add`` carrying the marker is appended.
        """

        if add is None:
            return False
        found = False
        changed = False
        for peer in self.peers:
            if peer.equal_ignore_service(add):
                found = True
                if peer.add_service(namespace, name):
                    changed = True
        if found:
            return changed
        new_peer = add.duplicate()
        new_peer.add_service(namespace, name)
        self.peers.append(new_peer)
        return True

    def remove_peers_by_service(self, namespace: str, name: str) -> bool:
        """Detach ``namespace/name`` from every peer.

        A peer whose last service marker was removed is dropped; peers still
        serving other services are kept.
        """

        changed = False
        kept: List[Peer] = []
        for peer in self.peers:
            found, remaining = peer.remove_service(namespace, name)
            if found:
                changed = True
                if remaining == 0:
                    continue
            kept.append(peer)
        self.peers = kept
        return changed

    def remove_peers_by_selector(self, selector: Optional[NodeSelector]) -> bool:
        if selector is None:
            return False
        kept = [peer for peer in self.peers if not peer.match_selector(selector)]
        changed = len(kept) != len(self.peers)
        self.peers = kept
        return changed

    def node_names(self) -> List[str]:
        """Names of nodes referenced through hostname selectors."""

        names: List[str] = []
        for peer in self.peers:
            for selector in peer.node_selectors:
                node = selector.match_labels.get(HOSTNAME_KEY)
                if node and node not in names:
                    names.append(node)
        return names

    # ------------------------------------------------------------------
    # Address pools
    # ------------------------------------------------------------------
    def add_address_pool(self, add: Optional[AddressPool]) -> bool:
        if add is None:
            return False
        for index, pool in enumerate(self.pools):
            if pool == add:
                return False
            if pool.equal_ignore_name(add):
                existing = pool.names()
                if all(n in existing for n in add.names()):
                    return False
                merged = pool.duplicate()
                merged.name = _join_names([*existing, *add.names()])
                self.pools[index] = merged
                return True
        self.pools.append(add.duplicate())
        return True

    def remove_address_pool(self, remove: Optional[AddressPool]) -> bool:
        if remove is None:
            return False
        changed = False
        kept: List[AddressPool] = []
        for pool in self.pools:
            if pool == remove:
                changed = True
                continue
            if pool.equal_ignore_name(remove) and remove.name in pool.names():
                remaining = [n for n in pool.names() if n != remove.name]
                changed = True
                if not remaining:
                    continue
                pool = pool.duplicate()
                pool.name = _join_names(remaining)
            kept.append(pool)
        self.pools = kept
        return changed

    def remove_address_pool_by_address(self, addr: str) -> bool:
        if not addr:
            return False
        kept = [pool for pool in self.pools if addr not in pool.addresses]
        changed = len(kept) != len(self.pools)
        self.pools = kept
        return changed

    def service_addresses(self) -> List[str]:
        return [addr for pool in self.pools for addr in pool.addresses]
