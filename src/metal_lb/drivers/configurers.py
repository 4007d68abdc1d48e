"""Persistence of the MetalLB peer/pool document.

MetalLB can be configured either through the ``config`` key of a ConfigMap
(the legacy format) or through ``metallb.io`` custom resources.  Both
configurers below expose the same two calls: ``get`` returns the current
document as a :class:`~metal_bgp.config.ConfigFile` and ``update`` persists
a modified one.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, List, Optional, Protocol

from metal_bgp.config import (
    AddressPool,
    BgpAdvertisement,
    ConfigFile,
    NodeSelector,
    Peer,
    SelectorRequirement,
)
from metal_bgp.errors import NotFoundError

LOG = logging.getLogger(__name__)

CONFIG_KEY = "config"

METALLB_GROUP = "metallb.io"
PEER_VERSION = "v1beta2"
POOL_VERSION = "v1beta1"
PEER_PLURAL = "bgppeers"
POOL_PLURAL = "ipaddresspools"
ADVERTISEMENT_PLURAL = "bgpadvertisements"

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "cloud-provider-equinix-metal"
POOL_NAMES_ANNOTATION = "metal.equinix.com/pool-names"


class ConfigMapClient(Protocol):
    def get_config_map_data(self, namespace: str, name: str) -> Optional[Dict[str, str]]: ...

    def patch_config_map_data(self, namespace: str, name: str, data: Dict[str, str]) -> None: ...


class CustomObjectClient(Protocol):
    def list_custom_objects(
        self, group: str, version: str, namespace: str, plural: str, label_selector: str = ""
    ) -> List[Dict[str, Any]]: ...

    def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: Dict[str, Any]
    ) -> None: ...

    def delete_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> None: ...


class ConfigMapConfigurer:
    """Read and write the YAML document stored in a ConfigMap."""

    def __init__(self, client: ConfigMapClient, namespace: str, name: str) -> None:
        self._client = client
        self.namespace = namespace
        self.name = name

    def get(self) -> ConfigFile:
        data = self._client.get_config_map_data(self.namespace, self.name)
        if data is None:
            raise NotFoundError(f"configmap {self.namespace}/{self.name} not found")
        return ConfigFile.parse(data.get(CONFIG_KEY, ""))

    def update(self, config: ConfigFile) -> None:
        LOG.debug("writing metallb config to configmap %s/%s", self.namespace, self.name)
        self._client.patch_config_map_data(
            self.namespace, self.name, {CONFIG_KEY: config.to_yaml()}
        )


def _short_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]


def _selector_to_cr(selector: NodeSelector) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    if selector.match_labels:
        data["matchLabels"] = dict(selector.match_labels)
    if selector.match_expressions:
        data["matchExpressions"] = [
            {"key": req.key, "operator": req.operator, "values": list(req.values)}
            for req in selector.match_expressions
        ]
    return data


def _selector_from_cr(data: Dict[str, Any]) -> NodeSelector:
    return NodeSelector(
        match_labels={str(k): str(v) for k, v in (data.get("matchLabels") or {}).items()},
        match_expressions=[
            SelectorRequirement(
                key=str(expr.get("key", "")),
                operator=str(expr.get("operator", "")),
                values=[str(v) for v in expr.get("values") or []],
            )
            for expr in data.get("matchExpressions") or []
        ],
    )


def peer_to_cr(peer: Peer, namespace: str) -> Dict[str, Any]:
    spec: Dict[str, Any] = {
        "myASN": peer.my_asn,
        "peerASN": peer.asn,
        "peerAddress": peer.addr,
        "nodeSelectors": [_selector_to_cr(ns) for ns in peer.node_selectors],
    }
    if peer.port:
        spec["peerPort"] = peer.port
    if peer.src_addr:
        spec["sourceAddress"] = peer.src_addr
    if peer.hold_time:
        spec["holdTime"] = peer.hold_time
    if peer.router_id:
        spec["routerID"] = peer.router_id
    if peer.password:
        spec["password"] = peer.password
    name = peer.name or f"equinix-metal-peer-{_short_hash(repr(peer.to_dict()))}"
    return {
        "apiVersion": f"{METALLB_GROUP}/{PEER_VERSION}",
        "kind": "BGPPeer",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        },
        "spec": spec,
    }


def peer_from_cr(obj: Dict[str, Any]) -> Peer:
    spec = obj.get("spec") or {}
    return Peer(
        my_asn=int(spec.get("myASN") or 0),
        asn=int(spec.get("peerASN") or 0),
        addr=str(spec.get("peerAddress") or ""),
        port=int(spec.get("peerPort") or 0),
        src_addr=str(spec.get("sourceAddress") or ""),
        hold_time=str(spec.get("holdTime") or ""),
        router_id=str(spec.get("routerID") or ""),
        node_selectors=[_selector_from_cr(ns) for ns in spec.get("nodeSelectors") or []],
        password=str(spec.get("password") or ""),
        name=str((obj.get("metadata") or {}).get("name") or ""),
    )


def _pool_cr_name(pool: AddressPool) -> str:
    return f"equinix-metal-pool-{_short_hash(','.join(sorted(pool.addresses)))}"


def pool_to_crs(pool: AddressPool, namespace: str) -> List[Dict[str, Any]]:
    """Render a pool as an IPAddressPool plus its BGPAdvertisement."""

    name = _pool_cr_name(pool)
    metadata = {
        "name": name,
        "namespace": namespace,
        "labels": {MANAGED_BY_LABEL: MANAGED_BY_VALUE},
        "annotations": {POOL_NAMES_ANNOTATION: pool.name},
    }
    pool_spec: Dict[str, Any] = {
        "addresses": list(pool.addresses),
        "avoidBuggyIPs": pool.avoid_buggy_ips,
    }
    if pool.auto_assign is not None:
        pool_spec["autoAssign"] = pool.auto_assign

    adv_spec: Dict[str, Any] = {"ipAddressPools": [name]}
    if pool.bgp_advertisements:
        adv = pool.bgp_advertisements[0]
        if adv.aggregation_length is not None:
            adv_spec["aggregationLength"] = adv.aggregation_length
        if adv.local_pref is not None:
            adv_spec["localPref"] = adv.local_pref
        if adv.communities:
            adv_spec["communities"] = list(adv.communities)

    return [
        {
            "apiVersion": f"{METALLB_GROUP}/{POOL_VERSION}",
            "kind": "IPAddressPool",
            "metadata": metadata,
            "spec": pool_spec,
        },
        {
            "apiVersion": f"{METALLB_GROUP}/{POOL_VERSION}",
            "kind": "BGPAdvertisement",
            "metadata": dict(metadata),
            "spec": adv_spec,
        },
    ]


def pool_from_cr(obj: Dict[str, Any], advertisement: Optional[Dict[str, Any]]) -> AddressPool:
    metadata = obj.get("metadata") or {}
    spec = obj.get("spec") or {}
    annotations = metadata.get("annotations") or {}
    auto_assign = spec.get("autoAssign")
    advertisements: List[BgpAdvertisement] = []
    if advertisement is not None:
        adv_spec = advertisement.get("spec") or {}
        length = adv_spec.get("aggregationLength")
        pref = adv_spec.get("localPref")
        if length is not None or pref is not None or adv_spec.get("communities"):
            advertisements.append(
                BgpAdvertisement(
                    aggregation_length=int(length) if length is not None else None,
                    local_pref=int(pref) if pref is not None else None,
                    communities=[str(c) for c in adv_spec.get("communities") or []],
                )
            )
    return AddressPool(
        protocol="bgp",
        name=str(annotations.get(POOL_NAMES_ANNOTATION) or metadata.get("name") or ""),
        addresses=[str(a) for a in spec.get("addresses") or []],
        avoid_buggy_ips=bool(spec.get("avoidBuggyIPs", False)),
        auto_assign=bool(auto_assign) if auto_assign is not None else None,
        bgp_advertisements=advertisements,
    )


class CRConfigurer:
    """Map the document onto ``metallb.io`` custom resources.

    Only objects labelled as managed by this controller are read or deleted;
    resources created by hand are left alone.
    """

    def __init__(self, client: CustomObjectClient, namespace: str) -> None:
        self._client = client
        self.namespace = namespace

    def _list(self, version: str, plural: str) -> List[Dict[str, Any]]:
        return self._client.list_custom_objects(
            METALLB_GROUP,
            version,
            self.namespace,
            plural,
            label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}",
        )

    def get(self) -> ConfigFile:
        peers = [peer_from_cr(obj) for obj in self._list(PEER_VERSION, PEER_PLURAL)]
        advertisements = {
            (obj.get("metadata") or {}).get("name"): obj
            for obj in self._list(POOL_VERSION, ADVERTISEMENT_PLURAL)
        }
        pools = [
            pool_from_cr(obj, advertisements.get((obj.get("metadata") or {}).get("name")))
            for obj in self._list(POOL_VERSION, POOL_PLURAL)
        ]
        return ConfigFile(peers=peers, pools=pools)

    def update(self, config: ConfigFile) -> None:
        desired_peers = {
            body["metadata"]["name"]: body
            for body in (peer_to_cr(peer, self.namespace) for peer in config.peers)
        }
        desired_pools: Dict[str, Dict[str, Any]] = {}
        desired_advs: Dict[str, Dict[str, Any]] = {}
        for pool in config.pools:
            pool_body, adv_body = pool_to_crs(pool, self.namespace)
            desired_pools[pool_body["metadata"]["name"]] = pool_body
            desired_advs[adv_body["metadata"]["name"]] = adv_body

        self._converge(PEER_VERSION, PEER_PLURAL, desired_peers)
        self._converge(POOL_VERSION, POOL_PLURAL, desired_pools)
        self._converge(POOL_VERSION, ADVERTISEMENT_PLURAL, desired_advs)

    def _converge(self, version: str, plural: str, desired: Dict[str, Dict[str, Any]]) -> None:
        current = {
            (obj.get("metadata") or {}).get("name"): obj for obj in self._list(version, plural)
        }
        for name, obj in current.items():
            wanted = desired.get(name)
            if wanted is not None and _same_content(obj, wanted):
                continue
            LOG.debug("deleting %s %s/%s", plural, self.namespace, name)
            self._client.delete_custom_object(METALLB_GROUP, version, self.namespace, plural, name)
        for name, body in desired.items():
            existing = current.get(name)
            if existing is not None and _same_content(existing, body):
                continue
            LOG.debug("creating %s %s/%s", plural, self.namespace, name)
            self._client.create_custom_object(METALLB_GROUP, version, self.namespace, plural, body)


def _same_content(current: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    current_annotations = (current.get("metadata") or {}).get("annotations") or {}
    desired_annotations = desired["metadata"].get("annotations") or {}
    return current.get("spec") == desired["spec"] and all(
        current_annotations.get(k) == v for k, v in desired_annotations.items()
    )
