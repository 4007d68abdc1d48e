"""Load balancer reconciler.

Drives IP reservations for ``LoadBalancer`` Services and BGP peering for
nodes through a :class:`~metal_lb.drivers.LoadBalancerImplementor`.  All
three modes converge towards the state described by the objects passed in:

* ``ADD`` handles created/updated objects incrementally;
* ``REMOVE`` releases what deleted objects held;
* ``SYNC`` receives the full object list and additionally removes anything
  the implementor or the provider still holds for objects that are gone.

Implementors that do not use BGP (the managed load balancer) skip the
reservation and peering work: each Service gets a provider load balancer
whose targets are the node ports on the nodes' external addresses.

The control plane Service mirrored by the failover manager already carries
its floating address and is never handled here.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Set, Tuple

from metal_bgp import tags
from metal_bgp.bgp import BGPProvisioner, device_id_from_provider_id
from metal_bgp.errors import ConfigurationError, NotFoundError
from metal_bgp.resources import IPReservation
from metal_lb.drivers import LoadBalancerImplementor, NodePeer
from metal_lb.drivers.emlb import LOAD_BALANCER_ID_ANNOTATION, LOAD_BALANCER_METRO_ANNOTATION
from metal_lb.drivers.kubevip import NETWORK_ANNOTATION, node_annotations
from metal_lb.events import ReconcileMode

from . import nodes as node_utils
from .controlplane import EXTERNAL_SERVICE_NAME, EXTERNAL_SERVICE_NAMESPACE

LOG = logging.getLogger(__name__)

SERVICE_TYPE_LOAD_BALANCER = "LoadBalancer"
DEFAULT_CIDR = 32

EIP_METRO_ANNOTATION = "metal.equinix.com/eip-metro"
EIP_FACILITY_ANNOTATION = "metal.equinix.com/eip-facility"


class ReservationClient(Protocol):
    def list_ip_reservations(
        self, project_id: str, include_assignments: bool = False
    ) -> List[IPReservation]: ...

    def request_ip_reservation(
        self,
        project_id: str,
        *,
        tags: List[str],
        description: str = "",
        metro: str = "",
        facility: str = "",
    ) -> IPReservation: ...

    def delete_ip_reservation(self, reservation_id: str) -> None: ...

    def get_device_private_network(self, device_id: str) -> str: ...


class ServiceClient(Protocol):
    def set_service_load_balancer_ip(self, namespace: str, name: str, ip: str) -> bool: ...

    def patch_service_annotations(
        self, namespace: str, name: str, annotations: Dict[str, str]
    ) -> None: ...

    def apply_service_status(self, body: Dict[str, Any]) -> None: ...

    def patch_node_annotations(self, name: str, annotations: Dict[str, str]) -> None: ...


def _service_key(svc) -> Tuple[str, str]:
    return svc.metadata.namespace, svc.metadata.name


def _ingress_ips(svc) -> List[str]:
    status = svc.status
    if status is None or status.load_balancer is None:
        return []
    return [i.ip for i in status.load_balancer.ingress or [] if i.ip]


def _status_body(namespace: str, name: str, ips: List[str]) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": name, "namespace": namespace},
        "status": {"loadBalancer": {"ingress": [{"ip": ip} for ip in ips]}},
    }


class LoadBalancerReconciler:
    def __init__(
        self,
        implementor: LoadBalancerImplementor,
        metal: ReservationClient,
        kube: ServiceClient,
        provisioner: BGPProvisioner,
        project_id: str,
        cluster_id: str,
        metro: str = "",
        facility: str = "",
        node_selector: str = "",
    ) -> None:
        self._implementor = implementor
        self._metal = metal
        self._kube = kube
        self._provisioner = provisioner
        self._project_id = project_id
        self._cluster_tag = tags.cluster_tag(cluster_id)
        self._metro = metro
        self._facility = facility
        self._node_matches = node_utils.parse_label_selector(node_selector)
        # last known node state, for service events that carry no nodes
        self._lock = Lock()
        self._node_peers: Dict[str, NodePeer] = {}
        self._nodes: Dict[str, Any] = {}

    @property
    def implementor(self) -> LoadBalancerImplementor:
        return self._implementor

    # ------------------------------------------------------------------
    # nodes
    # ------------------------------------------------------------------
    def _selected(self, nodes: Sequence[Any]) -> List[Any]:
        return [n for n in nodes if self._node_matches(node_utils.node_labels(n))]

    def _node_peer(self, node) -> NodePeer:
        provider_id = node_utils.provider_id(node)
        self._provisioner.ensure_node_bgp_enabled(provider_id)
        neighbor = self._provisioner.get_node_bgp_neighbor(provider_id)
        return NodePeer(
            name=node_utils.node_name(node),
            source_ip=neighbor.customer_ip,
            local_asn=neighbor.customer_as,
            peer_asn=neighbor.peer_as,
            password=neighbor.md5_password,
            peers=list(neighbor.peer_ips),
        )

    def _annotate_node(self, node, peer: NodePeer) -> bool:
        """Write the peering annotations unless the node already has them."""

        current = node.metadata.annotations or {}
        if NETWORK_ANNOTATION in current:
            LOG.debug("node %s already annotated with %s", peer.name, NETWORK_ANNOTATION)
            return False
        device_id = device_id_from_provider_id(node_utils.provider_id(node))
        network = self._metal.get_device_private_network(device_id)
        if not network:
            raise NotFoundError(f"no private network found for node {peer.name}")
        LOG.info("annotating node %s with its BGP peering", peer.name)
        self._kube.patch_node_annotations(peer.name, node_annotations(peer, network))
        return True

    def _remember_nodes(
        self, nodes: Sequence[Any], selected: Sequence[Any], mode: ReconcileMode
    ) -> None:
        with self._lock:
            if mode is ReconcileMode.SYNC:
                self._nodes = {}
            for node in nodes:
                self._nodes.pop(node_utils.node_name(node), None)
            if mode is not ReconcileMode.REMOVE:
                self._nodes.update((node_utils.node_name(n), n) for n in selected)

    def _remember_peers(
        self, nodes: Sequence[Any], peers: Mapping[str, NodePeer], mode: ReconcileMode
    ) -> None:
        with self._lock:
            if mode is ReconcileMode.SYNC:
                self._node_peers = {}
            for node in nodes:
                self._node_peers.pop(node_utils.node_name(node), None)
            self._node_peers.update(peers)

    def reconcile_nodes(self, nodes: Sequence[Any], mode: ReconcileMode) -> Dict[str, NodePeer]:
        """Converge node peering; returns the peering of every handled node."""

        selected = self._selected(nodes) if mode is not ReconcileMode.REMOVE else []
        self._remember_nodes(nodes, selected, mode)
        if not self._implementor.uses_bgp:
            return {}

        if mode is ReconcileMode.REMOVE:
            self._remember_peers(nodes, {}, mode)
            for node in nodes:
                name = node_utils.node_name(node)
                try:
                    self._implementor.remove_node(name)
                except Exception:
                    LOG.exception("failed to remove node %s from load balancer", name)
            return {}

        peers: Dict[str, NodePeer] = {}
        for node in selected:
            name = node_utils.node_name(node)
            if not node_utils.provider_id(node):
                if mode is ReconcileMode.ADD:
                    raise ConfigurationError(f"node {name} has no provider id")
                LOG.warning("node %s has no provider id yet, skipping", name)
                continue
            try:
                peer = self._node_peer(node)
            except Exception:
                LOG.exception("could not get BGP peering for node %s, skipping", name)
                continue
            if self._implementor.annotates_nodes:
                try:
                    self._annotate_node(node, peer)
                except Exception:
                    LOG.exception("failed to annotate node %s", name)
            if mode is ReconcileMode.ADD:
                try:
                    self._implementor.add_node(
                        peer.name,
                        peer.local_asn,
                        peer.peer_asn,
                        peer.password,
                        peer.source_ip,
                        *peer.peers,
                    )
                except Exception:
                    LOG.exception("failed to add node %s to load balancer", name)
                    continue
            peers[name] = peer

        self._remember_peers(nodes, peers, mode)
        if mode is ReconcileMode.SYNC:
            self._implementor.sync_nodes(peers)
        return peers

    # ------------------------------------------------------------------
    # services
    # ------------------------------------------------------------------
    def _service_tags(self, namespace: str, name: str) -> List[str]:
        return [tags.service_tag(namespace, name), tags.MANAGED_TAG, self._cluster_tag]

    def _location(self, svc) -> Dict[str, str]:
        annotations = svc.metadata.annotations or {}
        metro = annotations.get(EIP_METRO_ANNOTATION)
        if metro:
            return {"metro": metro}
        facility = annotations.get(EIP_FACILITY_ANNOTATION)
        if facility:
            return {"facility": facility}
        if self._metro:
            return {"metro": self._metro}
        if self._facility:
            return {"facility": self._facility}
        raise ConfigurationError(
            "no metro or facility configured and none set on the service "
            f"via {EIP_METRO_ANNOTATION} or {EIP_FACILITY_ANNOTATION}"
        )

    def _add_service(self, svc, reservations: List[IPReservation]) -> Optional[str]:
        namespace, name = _service_key(svc)
        svc_tags = self._service_tags(namespace, name)
        reservation = tags.reservation_by_all_tags(svc_tags, reservations)
        ip = svc.spec.load_balancer_ip or ""

        if not ip:
            if reservation is None:
                LOG.info("requesting a new IP reservation for service %s/%s", namespace, name)
                reservation = self._metal.request_ip_reservation(
                    self._project_id,
                    tags=svc_tags,
                    description=f"Service {namespace}/{name} load balancer address",
                    **self._location(svc),
                )
            if not reservation.address:
                LOG.info("no address available yet for service %s/%s, will retry", namespace, name)
                return None
            ip = reservation.address
            self._kube.set_service_load_balancer_ip(namespace, name, ip)

        cidr = reservation.cidr if reservation is not None else DEFAULT_CIDR
        address = f"{ip}/{cidr}"
        self._implementor.add_service(tags.service_rep(namespace, name), address)
        return address

    def _remove_service(self, svc, reservations: List[IPReservation]) -> None:
        namespace, name = _service_key(svc)
        reservation = tags.reservation_by_all_tags(
            self._service_tags(namespace, name), reservations
        )
        if reservation is None:
            LOG.debug("no reservation for removed service %s/%s", namespace, name)
            return
        LOG.info("releasing IP reservation %s of service %s/%s", reservation, namespace, name)
        self._metal.delete_ip_reservation(reservation.id)
        self._implementor.remove_service(str(reservation))
        self._implementor.update_service(namespace, name, [])

    def _known_peers(self) -> Optional[List[NodePeer]]:
        with self._lock:
            return list(self._node_peers.values()) or None

    def reconcile_services(
        self,
        services: Sequence[Any],
        mode: ReconcileMode,
        node_peers: Optional[Mapping[str, NodePeer]] = None,
    ) -> None:
        valid = [
            s
            for s in services
            if s.spec.type == SERVICE_TYPE_LOAD_BALANCER
            and _service_key(s) != (EXTERNAL_SERVICE_NAMESPACE, EXTERNAL_SERVICE_NAME)
        ]
        if not self._implementor.uses_bgp:
            self._reconcile_load_balancers(valid, mode)
            return

        reservations = self._metal.list_ip_reservations(self._project_id)
        addresses: Set[str] = set()

        if mode is ReconcileMode.REMOVE:
            for svc in valid:
                try:
                    self._remove_service(svc, reservations)
                except Exception:
                    LOG.exception("failed to remove service %s/%s", *_service_key(svc))
            return

        peers = list(node_peers.values()) if node_peers is not None else self._known_peers()
        for svc in valid:
            namespace, name = _service_key(svc)
            try:
                address = self._add_service(svc, reservations)
                if address is None:
                    continue
                addresses.add(address)
                if peers is not None:
                    self._implementor.update_service(namespace, name, peers)
            except Exception:
                LOG.exception("failed to add service %s/%s", namespace, name)

        if mode is ReconcileMode.SYNC:
            self._sync_services(valid, addresses)

    def _sync_services(self, valid: Sequence[Any], addresses: Set[str]) -> None:
        reservations = self._metal.list_ip_reservations(self._project_id)
        valid_tags = {tags.service_tag(*_service_key(svc)) for svc in valid}
        for svc in valid:
            ip = svc.spec.load_balancer_ip
            if not ip:
                continue
            reservation = tags.reservation_by_all_tags(
                self._service_tags(*_service_key(svc)), reservations
            )
            cidr = reservation.cidr if reservation is not None else DEFAULT_CIDR
            addresses.add(f"{ip}/{cidr}")

        self._implementor.sync_services(addresses)

        managed = tags.reservations_by_all_tags([tags.MANAGED_TAG, self._cluster_tag], reservations)
        for reservation in managed:
            if any(tag in valid_tags for tag in reservation.tags):
                continue
            LOG.info("deleting orphaned IP reservation %s (%s)", reservation.id, reservation)
            try:
                self._metal.delete_ip_reservation(reservation.id)
            except Exception:
                LOG.exception("failed to delete orphaned IP reservation %s", reservation.id)

    # ------------------------------------------------------------------
    # managed load balancers
    # ------------------------------------------------------------------
    def load_balancer_name(self, namespace: str, name: str) -> str:
        return f"{tags.MANAGED_TAG}:{tags.service_tag(namespace, name)}:{self._cluster_tag}"

    def _pools(self, svc) -> Dict[int, List[Tuple[str, int]]]:
        with self._lock:
            nodes = list(self._nodes.values())
        pools: Dict[int, List[Tuple[str, int]]] = {}
        for port in svc.spec.ports or []:
            pools[port.port] = [
                (address, port.node_port)
                for node in nodes
                for kind, address in node_utils.node_addresses(node)
                if kind == node_utils.ADDRESS_EXTERNAL_IP
            ]
        return pools

    def _ensure_load_balancer(self, svc) -> None:
        namespace, name = _service_key(svc)
        if not svc.spec.ports:
            raise ConfigurationError(f"service {namespace}/{name} has no ports to balance")
        annotations = svc.metadata.annotations or {}
        lb = self._implementor.ensure_load_balancer(
            self.load_balancer_name(namespace, name),
            annotations.get(LOAD_BALANCER_ID_ANNOTATION, ""),
            self._pools(svc),
        )

        wanted = {
            LOAD_BALANCER_ID_ANNOTATION: lb["id"],
            LOAD_BALANCER_METRO_ANNOTATION: self._implementor.metro,
        }
        if any(annotations.get(k) != v for k, v in wanted.items()):
            self._kube.patch_service_annotations(namespace, name, wanted)
        ips = [str(ip) for ip in lb.get("ips") or []]
        if ips and ips != _ingress_ips(svc):
            self._kube.apply_service_status(_status_body(namespace, name, ips))

    def _reconcile_load_balancers(self, valid: Sequence[Any], mode: ReconcileMode) -> None:
        if mode is ReconcileMode.REMOVE:
            for svc in valid:
                lb_id = (svc.metadata.annotations or {}).get(LOAD_BALANCER_ID_ANNOTATION)
                if not lb_id:
                    LOG.debug("no load balancer for removed service %s/%s", *_service_key(svc))
                    continue
                try:
                    self._implementor.delete_load_balancer(lb_id)
                except Exception:
                    LOG.exception("failed to delete load balancer of %s/%s", *_service_key(svc))
            return

        names: Set[str] = set()
        for svc in valid:
            names.add(self.load_balancer_name(*_service_key(svc)))
            try:
                self._ensure_load_balancer(svc)
            except Exception:
                LOG.exception("failed to reconcile load balancer of %s/%s", *_service_key(svc))

        if mode is not ReconcileMode.SYNC:
            return
        suffix = f":{self._cluster_tag}"
        for lb in self._implementor.list_load_balancers():
            lb_name = lb.get("name", "")
            if not lb_name.startswith(f"{tags.MANAGED_TAG}:") or not lb_name.endswith(suffix):
                continue
            if lb_name in names:
                continue
            LOG.info("deleting orphaned load balancer %s (%s)", lb["id"], lb_name)
            try:
                self._implementor.delete_load_balancer(lb["id"])
            except Exception:
                LOG.exception("failed to delete orphaned load balancer %s", lb["id"])
