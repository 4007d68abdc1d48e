"""MetalLB implementor.

Every call reads the current document through a configurer, mutates a copy
and writes it back only when something changed.  A lock serialises the
read-modify-write cycles of concurrent reconciliation tasks.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Callable, List, Mapping, Protocol, Set

from metal_bgp.config import HOSTNAME_KEY, AddressPool, ConfigFile, Peer, hostname_selector

from .base import LoadBalancerImplementor, NodePeer

LOG = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "metallb-system"
DEFAULT_NAME = "config"


class Configurer(Protocol):
    def get(self) -> ConfigFile: ...

    def update(self, config: ConfigFile) -> None: ...


def _node_peers(node_name: str, local_asn: int, peer_asn: int, password: str,
                src_ip: str, peers) -> List[Peer]:
    return [
        Peer(
            my_asn=local_asn,
            asn=peer_asn,
            addr=addr,
            src_addr=src_ip,
            password=password,
            node_selectors=[hostname_selector(node_name)],
        )
        for addr in peers
    ]


class MetalLB(LoadBalancerImplementor):
    name = "metallb"

    def __init__(self, configurer: Configurer) -> None:
        self._configurer = configurer
        self._lock = Lock()

    def _modify(self, action: str, mutate: Callable[[ConfigFile], bool]) -> bool:
        with self._lock:
            current = self._configurer.get()
            config = current.duplicate()
            if not mutate(config):
                LOG.debug("metallb %s: config unchanged", action)
                return False
            LOG.info("metallb %s: updating config", action)
            self._configurer.update(config)
            return True

    # ------------------------------------------------------------------
    # services
    # ------------------------------------------------------------------
    def add_service(self, service: str, ip: str) -> None:
        pool = AddressPool(protocol="bgp", name=service, addresses=[ip], auto_assign=False)
        self._modify(f"add service {service} {ip}", lambda cfg: cfg.add_address_pool(pool))

    def remove_service(self, ip: str) -> None:
        self._modify(f"remove service {ip}", lambda cfg: cfg.remove_address_pool_by_address(ip))

    def update_service(self, namespace: str, name: str, nodes: List[NodePeer]) -> None:
        wanted = {node.name for node in nodes}

        def mutate(cfg: ConfigFile) -> bool:
            changed = False
            for node in nodes:
                for peer in _node_peers(node.name, node.local_asn, node.peer_asn,
                                        node.password, node.source_ip, node.peers):
                    if cfg.add_peer_by_service(peer, namespace, name):
                        changed = True
            for peer in cfg.peers:
                hosts = {
                    ns.match_labels.get(HOSTNAME_KEY) for ns in peer.node_selectors
                }
                if hosts & wanted:
                    continue
                found, _ = peer.remove_service(namespace, name)
                if found:
                    changed = True
            return changed

        self._modify(f"update service {namespace}/{name}", mutate)

    def sync_services(self, ips: Set[str]) -> None:
        def mutate(cfg: ConfigFile) -> bool:
            changed = False
            for addr in cfg.service_addresses():
                if addr in ips:
                    continue
                LOG.info("metallb: removing stale service address %s", addr)
                if cfg.remove_address_pool_by_address(addr):
                    changed = True
            return changed

        self._modify("sync services", mutate)

    # ------------------------------------------------------------------
    # nodes
    # ------------------------------------------------------------------
    def _add_node_peers(self, cfg: ConfigFile, node: NodePeer) -> bool:
        changed = False
        for peer in _node_peers(node.name, node.local_asn, node.peer_asn,
                                node.password, node.source_ip, node.peers):
            # peers already serving services carry markers; those still count
            if any(existing.equal_ignore_service(peer) for existing in cfg.peers):
                continue
            if cfg.add_peer(peer):
                changed = True
        return changed

    def add_node(self, node_name, local_asn, peer_asn, password, src_ip, *peers) -> None:
        node = NodePeer(node_name, src_ip, local_asn, peer_asn, password, list(peers))
        self._modify(f"add node {node_name}", lambda cfg: self._add_node_peers(cfg, node))

    def remove_node(self, node_name: str) -> None:
        selector = hostname_selector(node_name)
        self._modify(f"remove node {node_name}", lambda cfg: cfg.remove_peers_by_selector(selector))

    def sync_nodes(self, nodes: Mapping[str, NodePeer]) -> None:
        def mutate(cfg: ConfigFile) -> bool:
            changed = False
            for name in cfg.node_names():
                if name not in nodes and cfg.remove_peers_by_selector(hostname_selector(name)):
                    changed = True
            for node in nodes.values():
                if self._add_node_peers(cfg, node):
                    changed = True
            return changed

        self._modify("sync nodes", mutate)
