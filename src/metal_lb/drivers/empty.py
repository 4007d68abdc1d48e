"""Implementor that does nothing, used when only BGP enablement is wanted."""

from __future__ import annotations

from typing import List, Mapping, Set

from .base import LoadBalancerImplementor, NodePeer


class EmptyLB(LoadBalancerImplementor):
    name = "empty"

    def add_service(self, service: str, ip: str) -> None:
        return None

    def remove_service(self, ip: str) -> None:
        return None

    def update_service(self, namespace: str, name: str, nodes: List[NodePeer]) -> None:
        return None

    def sync_services(self, ips: Set[str]) -> None:
        return None

    def add_node(self, node_name, local_asn, peer_asn, password, src_ip, *peers) -> None:
        return None

    def remove_node(self, node_name: str) -> None:
        return None

    def sync_nodes(self, nodes: Mapping[str, NodePeer]) -> None:
        return None
