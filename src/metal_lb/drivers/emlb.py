"""Managed load balancer implementor.

The provider's load balancer service terminates the traffic itself: every
Service port becomes a listener port whose pool targets the Service's node
port on each node's external address.  No IP reservations or BGP sessions
are involved, so the reconciler skips that work entirely for this
implementor and drives :meth:`EMLB.ensure_load_balancer` instead.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set, Tuple

from metal_bgp.errors import APIError, ConfigurationError

from .empty import EmptyLB

LOG = logging.getLogger(__name__)

PROVIDER_ID = "loadpvd-gOB_-byp5ebFo7A3LHv2B"

LOCATIONS = {
    "da": "lctnloc--uxs0GLeAELHKV8GxO_AI",
    "ny": "lctnloc-Vy-1Qpw31mPi6RJQwVf9A",
    "sv": "lctnloc-H5rl2M2VL5dcFmdxhbEKx",
}

LOAD_BALANCER_ID_ANNOTATION = "equinix.com/loadbalancerID"
LOAD_BALANCER_METRO_ANNOTATION = "equinix.com/loadbalancerMetro"

# external port -> [(target address, target port)]
Pools = Mapping[int, List[Tuple[str, int]]]


class LBaaSClient(Protocol):
    def list_load_balancers(self, project_id: str) -> List[Dict[str, Any]]: ...

    def get_load_balancer(self, lb_id: str) -> Dict[str, Any]: ...

    def create_load_balancer(
        self, project_id: str, name: str, location_id: str, provider_id: str
    ) -> str: ...

    def delete_load_balancer(self, lb_id: str) -> None: ...

    def create_pool(self, project_id: str, name: str) -> str: ...

    def delete_pool(self, pool_id: str) -> None: ...

    def list_pool_origins(self, pool_id: str) -> List[Dict[str, Any]]: ...

    def create_pool_origin(self, pool_id: str, name: str, target: str, port: int) -> str: ...

    def delete_origin(self, origin_id: str) -> None: ...

    def create_port(self, lb_id: str, name: str, number: int, pool_ids: List[str]) -> str: ...

    def delete_port(self, port_id: str) -> None: ...


def resource_name(parent: str, kind: str, number: int) -> str:
    return f"{parent}-{kind}-{number}"


class EMLB(EmptyLB):
    name = "emlb"
    uses_bgp = False

    def __init__(self, client: LBaaSClient, project_id: str, metro: str) -> None:
        self._client = client
        self._project_id = project_id
        self.metro = metro.strip("/")

    def _location_id(self) -> str:
        try:
            return LOCATIONS[self.metro]
        except KeyError:
            raise ConfigurationError(
                f"could not determine load balancer location for metro {self.metro!r}; "
                f"valid values are {sorted(LOCATIONS)}"
            ) from None

    def _create(self, name: str) -> str:
        LOG.info("creating load balancer %s in %s", name, self.metro)
        return self._client.create_load_balancer(
            self._project_id, name, self._location_id(), PROVIDER_ID
        )

    def _sync_origins(self, pool: Dict[str, Any], targets: List[Tuple[str, int]]) -> bool:
        existing = self._client.list_pool_origins(pool["id"])
        current = {(o.get("target"), int(o.get("port_number") or 0)): o for o in existing}
        changed = False
        for i, target in enumerate(targets):
            if target in current:
                continue
            self._client.create_pool_origin(
                pool["id"], resource_name(pool.get("name", ""), "origin", i), *target
            )
            changed = True
        for key, origin in current.items():
            if key not in targets:
                self._client.delete_origin(origin["id"])
                changed = True
        return changed

    def _create_port(self, lb: Dict[str, Any], number: int, targets: List[Tuple[str, int]]) -> None:
        pool_name = resource_name(lb.get("name", ""), "pool", number)
        pool_id = self._client.create_pool(self._project_id, pool_name)
        for i, (address, port) in enumerate(targets):
            self._client.create_pool_origin(
                pool_id, resource_name(pool_name, "origin", i), address, port
            )
        self._client.create_port(
            lb["id"], resource_name(lb.get("name", ""), "port", number), number, [pool_id]
        )

    def ensure_load_balancer(self, name: str, lb_id: str, pools: Pools) -> Dict[str, Any]:
        """Converge load balancer ``lb_id`` (created as ``name`` if empty or gone).

        Ports no longer in ``pools`` are deleted with their pools; pools of
        kept ports get their origins brought in line with the targets.
        Returns the load balancer as last read from the API.
        """

        lb: Optional[Dict[str, Any]] = None
        if lb_id:
            try:
                lb = self._client.get_load_balancer(lb_id)
            except APIError as exc:
                if exc.status_code != 404:
                    raise
                LOG.warning("load balancer %s is gone, recreating %s", lb_id, name)
        if lb is None:
            lb = self._client.get_load_balancer(self._create(name))

        changed = False
        kept: Set[int] = set()
        port_pools = lb.get("pools") or []
        for i, port in enumerate(lb.get("ports") or []):
            number = int(port["number"])
            pools_of_port = port_pools[i] if i < len(port_pools) else []
            if number in pools:
                kept.add(number)
                for pool in pools_of_port:
                    changed |= self._sync_origins(pool, list(pools[number]))
                continue
            LOG.info("removing port %d from load balancer %s", number, lb["id"])
            for pool in pools_of_port:
                self._client.delete_pool(pool["id"])
            self._client.delete_port(port["id"])
            changed = True

        for number in sorted(pools):
            if number not in kept:
                LOG.info("adding port %d to load balancer %s", number, lb["id"])
                self._create_port(lb, number, list(pools[number]))
                changed = True

        if changed:
            lb = self._client.get_load_balancer(lb["id"])
        return lb

    def delete_load_balancer(self, lb_id: str) -> None:
        """Delete a load balancer and its pools; a missing one is not an error."""

        try:
            lb = self._client.get_load_balancer(lb_id)
        except APIError as exc:
            if exc.status_code == 404:
                LOG.debug("load balancer %s already deleted", lb_id)
                return
            raise
        for pools_of_port in lb.get("pools") or []:
            for pool in pools_of_port:
                self._client.delete_pool(pool["id"])
        LOG.info("deleting load balancer %s", lb_id)
        self._client.delete_load_balancer(lb_id)

    def list_load_balancers(self) -> List[Dict[str, Any]]:
        return self._client.list_load_balancers(self._project_id)
