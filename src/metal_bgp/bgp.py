"""Enable BGP on the project and its devices, and look up peering data."""

from __future__ import annotations

import logging
from typing import List, Protocol

from .errors import APIError, NotFoundError
from .resources import BGPConfig, BGPNeighbor

LOG = logging.getLogger(__name__)

PROVIDER_NAME = "equinixmetal"
DEPRECATED_PROVIDER_NAME = "packet"

DEFAULT_LOCAL_ASN = 65000
DEFAULT_PEER_ASN = 65530

# the API reports an existing session as 422 rather than 409
_SESSION_EXISTS_STATUS = 422
_SESSION_EXISTS_MESSAGE = "already has session"


class BGPClient(Protocol):
    def get_bgp_config(self, project_id: str) -> BGPConfig: ...

    def create_bgp_config(
        self,
        project_id: str,
        *,
        asn: int,
        md5: str,
        deployment_type: str,
        use_case: str,
    ) -> None: ...

    def create_bgp_session(self, device_id: str, address_family: str) -> None: ...

    def list_bgp_neighbors(self, device_id: str) -> List[BGPNeighbor]: ...


def device_id_from_provider_id(provider_id: str) -> str:
    """Extract the device id from ``equinixmetal://<id>`` (or a bare id)."""

    if not provider_id:
        raise ValueError("providerID cannot be empty string")

    parts = provider_id.split("://")
    if len(parts) == 1:
        return parts[0]
    if len(parts) == 2:
        scheme, device_id = parts
        if scheme not in (PROVIDER_NAME, DEPRECATED_PROVIDER_NAME):
            raise ValueError(
                f"provider name from providerID should be {PROVIDER_NAME}, was {scheme}"
            )
        return device_id
    raise ValueError(
        f"unexpected providerID format: {provider_id}, format should be: "
        f"'device-id' or '{PROVIDER_NAME}://device-id'"
    )


class BGPProvisioner:
    """Idempotent BGP enablement against the infrastructure API."""

    def __init__(
        self,
        client: BGPClient,
        project_id: str,
        local_asn: int = DEFAULT_LOCAL_ASN,
        bgp_pass: str = "",
    ) -> None:
        self._client = client
        self._project_id = project_id
        self._local_asn = local_asn
        self._bgp_pass = bgp_pass

    @property
    def local_asn(self) -> int:
        return self._local_asn

    def enable_project_bgp(self) -> bool:
        """Create the project BGP config unless a live one exists.

        Returns whether a config was created.  The API answers the read with
        a 200 even when nothing is configured, so a config only counts as
        present with a non-empty id and a status other than ``disabled``.
        """

        try:
            current = self._client.get_bgp_config(self._project_id)
        except APIError as exc:
            LOG.debug("could not read BGP config for project %s: %s", self._project_id, exc)
            current = None

        if current is not None and current.id and current.status.lower() != "disabled":
            LOG.debug("BGP already enabled on project %s", self._project_id)
            return False

        LOG.info("enabling BGP on project %s with local ASN %d", self._project_id, self._local_asn)
        self._client.create_bgp_config(
            self._project_id,
            asn=self._local_asn,
            md5=self._bgp_pass,
            deployment_type="local",
            use_case="kubernetes-load-balancer",
        )
        return True

    def ensure_node_bgp_enabled(self, provider_id: str) -> None:
        device_id = device_id_from_provider_id(provider_id)
        try:
            self._client.create_bgp_session(device_id, "ipv4")
        except APIError as exc:
            if exc.status_code == _SESSION_EXISTS_STATUS and _SESSION_EXISTS_MESSAGE in str(exc):
                LOG.debug("device %s already has a BGP session", device_id)
                return
            raise

    def get_node_bgp_neighbor(self, provider_id: str) -> BGPNeighbor:
        device_id = device_id_from_provider_id(provider_id)
        try:
            neighbors = self._client.list_bgp_neighbors(device_id)
        except APIError as exc:
            raise APIError(
                f"failed to get device neighbours for device {device_id}: {exc}",
                exc.status_code,
            ) from exc

        for neighbor in neighbors:
            if neighbor.address_family == 4:
                return neighbor
        raise NotFoundError(f"no matching ipv4 neighbour found for device {device_id}")
