"""Implementor selection and event dispatch to reconcilers."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Protocol, Sequence, Union
from urllib.parse import parse_qs, urlparse

from .drivers import (
    CRConfigurer,
    ConfigMapConfigurer,
    EMLB,
    EmptyLB,
    KubeVIPLB,
    LoadBalancerImplementor,
    MetalLB,
    NodePeer,
)
from .drivers.metallb import DEFAULT_NAME, DEFAULT_NAMESPACE
from .events import NodeEvent, ReconcileMode, ResyncEvent, ServiceEvent

LOG = logging.getLogger(__name__)

CRD_CONFIGURATION_FLAG = "crdConfiguration"


def build_implementor(
    config: str, kube: Any, lbaas: Any = None, project_id: str = ""
) -> Optional[LoadBalancerImplementor]:
    """Build the implementor named by a ``scheme://path`` config string.

    ``kube`` must offer the ConfigMap and custom object calls used by the
    MetalLB configurers; ``lbaas`` and ``project_id`` are only needed for
    ``emlb:///<metro>``.  Returns ``None`` when load balancing is disabled.
    """

    if not config:
        LOG.info("load balancer config empty, load balancing disabled")
        return None

    url = urlparse(config)
    if url.scheme == "metallb":
        path = f"{url.netloc}{url.path}".strip("/")
        namespace, _, name = path.partition("/")
        namespace = namespace or DEFAULT_NAMESPACE
        name = name or DEFAULT_NAME
        query = parse_qs(url.query)
        if query.get(CRD_CONFIGURATION_FLAG, ["false"])[0].lower() == "true":
            LOG.info("using metallb custom resources in namespace %s", namespace)
            return MetalLB(CRConfigurer(kube, namespace))
        LOG.info("using metallb configmap %s/%s", namespace, name)
        return MetalLB(ConfigMapConfigurer(kube, namespace, name))
    if url.scheme == "kube-vip":
        return KubeVIPLB()
    if url.scheme == "empty":
        return EmptyLB()
    if url.scheme == "emlb":
        metro = f"{url.netloc}{url.path}".strip("/")
        if lbaas is None:
            raise ValueError("emlb load balancer requires a load balancer API client")
        LOG.info("using managed load balancers in %s", metro)
        return EMLB(lbaas, project_id, metro)

    LOG.warning("unknown load balancer implementation %r, load balancing disabled", url.scheme)
    return None


class Reconciler(Protocol):
    def reconcile_nodes(
        self, nodes: Sequence[Any], mode: ReconcileMode
    ) -> Dict[str, NodePeer]: ...

    def reconcile_services(
        self,
        services: Sequence[Any],
        mode: ReconcileMode,
        node_peers: Optional[Mapping[str, NodePeer]] = None,
    ) -> None: ...


class ReconcilerRegistry:
    """Dispatch node/service events to registered reconcilers."""

    def __init__(self) -> None:
        self._reconcilers: Dict[str, Reconciler] = {}

    def register(self, name: str, reconciler: Reconciler) -> None:
        if name in self._reconcilers:
            raise ValueError(f"reconciler '{name}' already registered")
        self._reconcilers[name] = reconciler

    def unregister(self, name: str) -> None:
        self._reconcilers.pop(name, None)

    def handle(self, event: Union[NodeEvent, ServiceEvent, ResyncEvent]) -> None:
        if isinstance(event, NodeEvent):
            self._on_nodes(event)
        elif isinstance(event, ServiceEvent):
            self._on_services(event)
        elif isinstance(event, ResyncEvent):
            self._on_resync(event)
        else:
            raise TypeError(f"Unsupported event type: {type(event)!r}")

    def _on_nodes(self, event: NodeEvent) -> None:
        for reconciler in self._reconcilers.values():
            reconciler.reconcile_nodes(event.nodes, event.mode)

    def _on_services(self, event: ServiceEvent) -> None:
        for reconciler in self._reconcilers.values():
            reconciler.reconcile_services(event.services, event.mode)

    def _on_resync(self, event: ResyncEvent) -> None:
        for reconciler in self._reconcilers.values():
            peers = reconciler.reconcile_nodes(event.nodes, ReconcileMode.SYNC)
            reconciler.reconcile_services(event.services, ReconcileMode.SYNC, node_peers=peers)
