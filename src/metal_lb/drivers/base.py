"""Abstract interface for load balancer implementors."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Mapping, Set


@dataclass(frozen=True)
class NodePeer:
    """BGP peering parameters of one node."""

    name: str
    source_ip: str
    local_asn: int
    peer_asn: int
    password: str = ""
    peers: List[str] = field(default_factory=list)


class LoadBalancerImplementor(ABC):
    """Materialises service addresses and node peerings into a data plane.

    ``service`` arguments are ``namespace/name`` strings and ``ip`` arguments
    are ``address/prefix`` strings.
    """

    name = "base"
    # implementors without BGP get no reservations or BGP sessions
    uses_bgp = True
    # implementors reading node peering from node annotations
    annotates_nodes = False

    @abstractmethod
    def add_service(self, service: str, ip: str) -> None:
        """Make ``ip`` available to ``service``."""

    @abstractmethod
    def remove_service(self, ip: str) -> None:
        """Stop announcing ``ip``."""

    @abstractmethod
    def update_service(self, namespace: str, name: str, nodes: List[NodePeer]) -> None:
        """Ensure ``nodes`` is exactly the set of nodes serving the service."""

    @abstractmethod
    def sync_services(self, ips: Set[str]) -> None:
        """Drop every service address not in ``ips``."""

    @abstractmethod
    def add_node(
        self,
        node_name: str,
        local_asn: int,
        peer_asn: int,
        password: str,
        src_ip: str,
        *peers: str,
    ) -> None:
        """Add BGP peers for a node."""

    @abstractmethod
    def remove_node(self, node_name: str) -> None:
        """Remove every BGP peer of a node."""

    @abstractmethod
    def sync_nodes(self, nodes: Mapping[str, NodePeer]) -> None:
        """Ensure the configured nodes are exactly those in ``nodes``."""
