"""Control plane endpoint failover.

A single reserved address (found by its tag) fronts the API servers.  The
manager keeps it assigned to a healthy control plane node and mirrors the
``default/kubernetes`` Service and EndpointSlice into an externally
reachable LoadBalancer Service that carries that address.

Three locks guard the manager: one for Service mirroring, one for
EndpointSlice mirroring and the assignment lock, held across every read of
the reservation's assignment through to the create/delete of the new one.
At most one reassignment can therefore be in flight.
"""

from __future__ import annotations

import logging
from threading import Lock
from typing import Any, Dict, List, Optional, Protocol

import requests

from metal_bgp import tags as tag_utils
from metal_bgp.bgp import device_id_from_provider_id
from metal_bgp.errors import (
    ConfigurationError,
    InvariantViolation,
    NoHealthyCandidateError,
    NotFoundError,
)
from metal_bgp.resources import IPReservation

from . import nodes as node_utils
from .kube import FIELD_MANAGER

LOG = logging.getLogger(__name__)

EXTERNAL_SERVICE_NAMESPACE = "kube-system"
EXTERNAL_SERVICE_NAME = "cloud-provider-equinix-metal-kubernetes-external"
DEFAULT_SERVICE_NAMESPACE = "default"
DEFAULT_SERVICE_NAME = "kubernetes"

METALLB_ANNOTATION = "metallb.universe.tf/address-pool"
METALLB_DISABLED_POOL = "disabled-metallb-do-not-use-any-address-pool"
SERVICE_NAME_LABEL = "kubernetes.io/service-name"
MANAGED_BY_LABEL = "endpointslice.kubernetes.io/managed-by"

HEALTH_CHECK_TIMEOUT = 5.0


class AssignmentClient(Protocol):
    def list_ip_reservations(
        self, project_id: str, include_assignments: bool = False
    ) -> List[IPReservation]: ...

    def assign_ip(self, device_id: str, address: str) -> None: ...

    def unassign_ip(self, assignment_id: str) -> None: ...


class ApplyClient(Protocol):
    def list_nodes(self, label_selector: str = "") -> List[Any]: ...

    def apply_service(self, body: Dict[str, Any]) -> None: ...

    def apply_service_status(self, body: Dict[str, Any]) -> None: ...

    def apply_endpoint_slice(self, body: Dict[str, Any]) -> None: ...


def health_url(address: str, port: int) -> str:
    return f"https://{address}:{port}/healthz"


def external_service_body(source, eip: str) -> Dict[str, Any]:
    ports = []
    for port in source.spec.ports or []:
        entry: Dict[str, Any] = {"port": port.port, "protocol": port.protocol or "TCP"}
        if port.name:
            entry["name"] = port.name
        if port.target_port is not None:
            entry["targetPort"] = port.target_port
        if port.app_protocol:
            entry["appProtocol"] = port.app_protocol
        ports.append(entry)
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {
            "name": EXTERNAL_SERVICE_NAME,
            "namespace": EXTERNAL_SERVICE_NAMESPACE,
            "annotations": {METALLB_ANNOTATION: METALLB_DISABLED_POOL},
        },
        "spec": {"type": "LoadBalancer", "loadBalancerIP": eip, "ports": ports},
    }


def external_service_status_body(eip: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": EXTERNAL_SERVICE_NAME, "namespace": EXTERNAL_SERVICE_NAMESPACE},
        "status": {"loadBalancer": {"ingress": [{"ip": eip}]}},
    }


def external_endpoint_slice_body(source) -> Dict[str, Any]:
    ports = []
    for port in source.ports or []:
        entry: Dict[str, Any] = {"port": port.port, "protocol": port.protocol or "TCP"}
        if port.name:
            entry["name"] = port.name
        if port.app_protocol:
            entry["appProtocol"] = port.app_protocol
        ports.append(entry)

    endpoints = []
    for endpoint in source.endpoints or []:
        if not endpoint.addresses:
            continue
        entry = {"addresses": list(endpoint.addresses)}
        conditions = endpoint.conditions
        if conditions is not None:
            entry["conditions"] = {
                key: value
                for key, value in (
                    ("ready", conditions.ready),
                    ("serving", conditions.serving),
                    ("terminating", conditions.terminating),
                )
                if value is not None
            }
        endpoints.append(entry)

    return {
        "apiVersion": "discovery.k8s.io/v1",
        "kind": "EndpointSlice",
        "metadata": {
            "name": EXTERNAL_SERVICE_NAME,
            "namespace": EXTERNAL_SERVICE_NAMESPACE,
            "labels": {
                SERVICE_NAME_LABEL: EXTERNAL_SERVICE_NAME,
                MANAGED_BY_LABEL: FIELD_MANAGER,
            },
        },
        "addressType": source.address_type,
        "ports": ports,
        "endpoints": endpoints,
    }


class ControlPlaneEndpointManager:
    def __init__(
        self,
        metal: AssignmentClient,
        kube: ApplyClient,
        project_id: str,
        eip_tag: str,
        api_server_port: int = 0,
        use_host_ip: bool = False,
        http: Optional[requests.Session] = None,
    ) -> None:
        if not eip_tag:
            raise ConfigurationError("control plane failover needs an EIP tag")
        self._metal = metal
        self._kube = kube
        self._project_id = project_id
        self._eip_tag = eip_tag
        self._use_host_ip = use_host_ip
        self._http = http or requests.Session()
        self._http.verify = False

        self.api_server_port = api_server_port
        self.node_api_server_port = 0

        self._service_lock = Lock()
        self._endpoints_lock = Lock()
        self._assignment_lock = Lock()

    def ports_known(self) -> bool:
        return self.api_server_port != 0 and self.node_api_server_port != 0

    # ------------------------------------------------------------------
    # reservation / probing helpers
    # ------------------------------------------------------------------
    def get_reservation(self) -> IPReservation:
        reservations = self._metal.list_ip_reservations(self._project_id, include_assignments=True)
        reservation = tag_utils.reservation_by_all_tags([self._eip_tag], reservations)
        if reservation is None:
            raise NotFoundError(f"no IP reservation tagged {self._eip_tag}")
        if len(reservation.assignments) > 1:
            raise InvariantViolation(
                f"control plane address {reservation.address} has "
                f"{len(reservation.assignments)} assignments, expected at most one"
            )
        return reservation

    def probe(self, url: str) -> bool:
        try:
            r = self._http.get(url, timeout=HEALTH_CHECK_TIMEOUT, verify=False)
        except requests.RequestException as exc:
            LOG.debug("health check %s failed: %s", url, exc)
            return False
        if r.status_code != 200:
            LOG.debug("health check %s returned %s", url, r.status_code)
            return False
        return True

    def _control_plane_nodes(self) -> List[Any]:
        seen: Dict[str, Any] = {}
        for label in node_utils.CONTROL_PLANE_LABELS:
            for node in self._kube.list_nodes(label_selector=label):
                seen.setdefault(node_utils.node_name(node), node)
        return list(seen.values())

    @staticmethod
    def _is_assigned_to(node, reservation: IPReservation) -> bool:
        node_ips = {address for _, address in node_utils.node_addresses(node)}
        return any(a.address in node_ips for a in reservation.assignments)

    # ------------------------------------------------------------------
    # reassignment (callers hold the assignment lock)
    # ------------------------------------------------------------------
    def _reassign(self, candidates: List[Any], reservation: IPReservation) -> str:
        if not self.node_api_server_port:
            raise ConfigurationError("node API server port is not known yet")

        for node in candidates:
            name = node_utils.node_name(node)
            for addr_type, address in node_utils.node_addresses(node):
                if addr_type == node_utils.ADDRESS_HOSTNAME or address == reservation.address:
                    continue
                url = health_url(address, self.node_api_server_port)
                if not self.probe(url):
                    LOG.debug("node %s not healthy at %s", name, url)
                    continue

                device_id = device_id_from_provider_id(node_utils.provider_id(node))
                if len(reservation.assignments) == 1:
                    current = reservation.assignments[0]
                    LOG.info("unassigning %s from device %s", reservation.address, current.device_id)
                    self._metal.unassign_ip(current.id)
                LOG.info("assigning %s to node %s (device %s)", reservation.address, name, device_id)
                self._metal.assign_ip(device_id, reservation.address)
                return name

        raise NoHealthyCandidateError(
            f"no healthy control plane node to take over {reservation.address}"
        )

    def _try_reassign(self, reservation: IPReservation, exclude: Optional[str] = None) -> str:
        candidates = node_utils.filter_deleting_nodes(self._control_plane_nodes())
        candidates = node_utils.try_filter_unschedulable(candidates)
        if exclude:
            candidates = node_utils.try_filter_self(candidates, exclude)
        return self._reassign(candidates, reservation)

    def reassign_away_from(self, node) -> Optional[str]:
        """Move the address off ``node`` if it holds it (or nobody does)."""

        with self._assignment_lock:
            reservation = self.get_reservation()
            if reservation.assignments and not self._is_assigned_to(node, reservation):
                return None
            return self._try_reassign(reservation, exclude=node_utils.node_name(node))

    def health_check(self, node) -> Optional[str]:
        """Reassign if nobody holds the address or ``node`` holds it but is unhealthy."""

        with self._assignment_lock:
            reservation = self.get_reservation()
            if not reservation.assignments:
                LOG.info("control plane address %s is unassigned", reservation.address)
                return self._try_reassign(reservation)
            if not self._is_assigned_to(node, reservation):
                return None

            url = health_url(reservation.address, self.api_server_port)
            if self._use_host_ip:
                for addr_type, address in node_utils.node_addresses(node):
                    if addr_type == node_utils.ADDRESS_EXTERNAL_IP and address != reservation.address:
                        url = health_url(address, self.node_api_server_port)
                        break
            if self.probe(url):
                return None
            LOG.warning("control plane address holder %s failed health check", node_utils.node_name(node))
            return self._try_reassign(reservation)

    # ------------------------------------------------------------------
    # event handlers
    # ------------------------------------------------------------------
    def on_node_update(self, old_unschedulable: Optional[bool], node) -> Optional[str]:
        if not node_utils.is_control_plane(node) or not self.ports_known():
            return None
        if node_utils.is_unschedulable(node) and not old_unschedulable:
            LOG.info("control plane node %s became unschedulable", node_utils.node_name(node))
            return self.reassign_away_from(node)
        return self.health_check(node)

    def on_node_delete(self, node) -> Optional[str]:
        if not node_utils.is_control_plane(node) or not self.ports_known():
            return None
        LOG.info("control plane node %s deleted", node_utils.node_name(node))
        return self.reassign_away_from(node)

    def sync_service(self, svc) -> None:
        """Mirror ``default/kubernetes`` into the external Service."""

        if (svc.metadata.namespace, svc.metadata.name) != (
            DEFAULT_SERVICE_NAMESPACE,
            DEFAULT_SERVICE_NAME,
        ):
            return
        with self._service_lock:
            ports = svc.spec.ports or []
            if ports and not self.node_api_server_port:
                target = ports[0].target_port
                if target is not None and str(target).isdigit():
                    self.node_api_server_port = int(target)
                    LOG.info("node API server port is %d", self.node_api_server_port)
            if not self.api_server_port and self.node_api_server_port:
                self.api_server_port = self.node_api_server_port

            reservation = self.get_reservation()
            self._kube.apply_service(external_service_body(svc, reservation.address))
            self._kube.apply_service_status(external_service_status_body(reservation.address))

    def sync_endpoint_slice(self, endpoint_slice) -> None:
        """Mirror the ``default/kubernetes`` EndpointSlice for the external Service."""

        labels = endpoint_slice.metadata.labels or {}
        if (
            endpoint_slice.metadata.namespace != DEFAULT_SERVICE_NAMESPACE
            or labels.get(SERVICE_NAME_LABEL) != DEFAULT_SERVICE_NAME
        ):
            return
        with self._endpoints_lock:
            self._kube.apply_endpoint_slice(external_endpoint_slice_body(endpoint_slice))
