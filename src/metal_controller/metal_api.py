"""Thin REST client for the infrastructure provider."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from metal_bgp.errors import APIError
from metal_bgp.resources import BGPConfig, BGPNeighbor, IPReservation

from .config import DEFAULT_BASE_URL

LOG = logging.getLogger(__name__)

USER_AGENT = "metal-lb-controller"


def error_message(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason or ""
    if isinstance(body, dict):
        errors = body.get("errors")
        if errors:
            return "; ".join(str(e) for e in errors)
        if body.get("error"):
            return str(body["error"])
    return response.text


class MetalClient:
    """Calls the provider's REST API with an ``X-Auth-Token`` header.

    Every non-2xx response raises :class:`~metal_bgp.errors.APIError`
    carrying the status code and the provider's error text.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update(
            {
                "X-Auth-Token": api_key,
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            }
        )

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._base_url + path
        LOG.debug("%s %s", method, url)
        try:
            r = self.session.request(method, url, timeout=self._timeout, **kwargs)
        except requests.RequestException as exc:
            raise APIError(f"{method} {path} failed: {exc}") from exc
        if not r.ok:
            raise APIError(f"{method} {path}: {r.status_code} {error_message(r)}", r.status_code)
        if r.status_code == 204 or not r.content:
            return None
        return r.json()

    # BGP
    def get_bgp_config(self, project_id: str) -> BGPConfig:
        return BGPConfig.from_api(self._request("GET", f"projects/{project_id}/bgp-config"))

    def create_bgp_config(
        self,
        project_id: str,
        *,
        asn: int,
        md5: str,
        deployment_type: str,
        use_case: str,
    ) -> None:
        payload: Dict[str, Any] = {
            "asn": asn,
            "deployment_type": deployment_type,
            "use_case": use_case,
        }
        if md5:
            payload["md5"] = md5
        self._request("POST", f"projects/{project_id}/bgp-configs", json=payload)

    def create_bgp_session(self, device_id: str, address_family: str) -> None:
        self._request(
            "POST", f"devices/{device_id}/bgp/sessions", json={"address_family": address_family}
        )

    def list_bgp_neighbors(self, device_id: str) -> List[BGPNeighbor]:
        data = self._request("GET", f"devices/{device_id}/bgp/neighbors") or {}
        return [BGPNeighbor.from_api(n) for n in data.get("bgp_neighbors") or []]

    # devices
    def get_device_private_network(self, device_id: str) -> str:
        """CIDR of the private management IPv4 network of a device, or ``""``."""

        device = self._request(
            "GET",
            f"devices/{device_id}",
            params={"include": "ip_addresses.parent_block,parent_block"},
        ) or {}
        for net in device.get("ip_addresses") or []:
            if net.get("public") or not net.get("management") or net.get("address_family") != 4:
                continue
            parent = net.get("parent_block") or {}
            if not parent.get("network") or not parent.get("cidr"):
                raise APIError(
                    f"no network information provided for private address {net.get('address')}"
                )
            return f"{parent['network']}/{parent['cidr']}"
        return ""

    # IP reservations
    def list_ip_reservations(
        self, project_id: str, include_assignments: bool = False
    ) -> List[IPReservation]:
        params = {"include": "assignments"} if include_assignments else None
        data = self._request("GET", f"projects/{project_id}/ips", params=params) or {}
        return [IPReservation.from_api(ip) for ip in data.get("ip_addresses") or []]

    def request_ip_reservation(
        self,
        project_id: str,
        *,
        tags: List[str],
        description: str = "",
        metro: str = "",
        facility: str = "",
    ) -> IPReservation:
        payload: Dict[str, Any] = {
            "type": "public_ipv4",
            "quantity": 1,
            "tags": list(tags),
            "fail_on_approval_required": True,
        }
        if description:
            payload["details"] = description
        if metro:
            payload["metro"] = metro
        elif facility:
            payload["facility"] = facility
        return IPReservation.from_api(
            self._request("POST", f"projects/{project_id}/ips", json=payload)
        )

    def delete_ip_reservation(self, reservation_id: str) -> None:
        self._request("DELETE", f"ips/{reservation_id}")

    def assign_ip(self, device_id: str, address: str) -> None:
        self._request("POST", f"devices/{device_id}/ips", json={"address": address})

    def unassign_ip(self, assignment_id: str) -> None:
        self._request("DELETE", f"ips/{assignment_id}")
