"""kube-vip implementor.

kube-vip reads the BGP peering data from node annotations and the service
address from the Service itself.  The reconciler writes the annotations
built by :func:`node_annotations` on every peered node; nothing else needs
to be written here.
"""

from __future__ import annotations

import base64
import logging
from typing import Dict, List, Mapping, Set

from .base import NodePeer
from .empty import EmptyLB

LOG = logging.getLogger(__name__)

NETWORK_ANNOTATION = "metal.equinix.com/network-4-private"
NODE_ASN_ANNOTATION = "metal.equinix.com/bgp-peers-{n}-node-asn"
PEER_ASN_ANNOTATION = "metal.equinix.com/bgp-peers-{n}-peer-asn"
PEER_IP_ANNOTATION = "metal.equinix.com/bgp-peers-{n}-peer-ip"
SRC_IP_ANNOTATION = "metal.equinix.com/bgp-peers-{n}-src-ip"
BGP_PASS_ANNOTATION = "metal.equinix.com/bgp-peers-{n}-bgp-pass"


def node_annotations(peer: NodePeer, network: str) -> Dict[str, str]:
    """Annotations describing ``peer``, one indexed group per upstream peer.

    Peer addresses are sorted so index ``n`` is stable across runs.  The
    password is base64 encoded.
    """

    annotations = {NETWORK_ANNOTATION: network}
    if not peer.peers:
        LOG.error("node %s has BGP data but no peer addresses", peer.name)
    password = base64.b64encode(peer.password.encode()).decode()
    for n, ip in enumerate(sorted(peer.peers)):
        annotations[NODE_ASN_ANNOTATION.format(n=n)] = str(peer.local_asn)
        annotations[PEER_ASN_ANNOTATION.format(n=n)] = str(peer.peer_asn)
        annotations[PEER_IP_ANNOTATION.format(n=n)] = ip
        annotations[SRC_IP_ANNOTATION.format(n=n)] = peer.source_ip
        annotations[BGP_PASS_ANNOTATION.format(n=n)] = password
    return annotations


class KubeVIPLB(EmptyLB):
    name = "kube-vip"
    annotates_nodes = True

    def add_service(self, service: str, ip: str) -> None:
        LOG.debug("kube-vip: service %s uses %s", service, ip)

    def update_service(self, namespace: str, name: str, nodes: List[NodePeer]) -> None:
        LOG.debug("kube-vip: service %s/%s served by %d nodes", namespace, name, len(nodes))

    def sync_services(self, ips: Set[str]) -> None:
        LOG.debug("kube-vip: %d service addresses in use", len(ips))

    def sync_nodes(self, nodes: Mapping[str, NodePeer]) -> None:
        LOG.debug("kube-vip: %d nodes peered", len(nodes))
