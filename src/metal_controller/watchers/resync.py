"""Periodic full resynchronisation."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Any, Optional

from metal_lb import ReconcilerRegistry
from metal_lb.events import ResyncEvent

from .. import nodes as node_utils
from ..controlplane import ControlPlaneEndpointManager
from .dispatch import EventDispatcher

LOG = logging.getLogger(__name__)


class ResyncWatcher(Thread):
    """Relist nodes and services every ``interval`` seconds.

    The relist feeds SYNC reconciliation, which catches up on events a
    watch stream missed, and doubles as the periodic health check of the
    control plane address holder.
    """

    def __init__(
        self,
        kube: Any,
        dispatcher: EventDispatcher,
        interval: float,
        stop_event: Event,
        registry: Optional[ReconcilerRegistry] = None,
        control_plane: Optional[ControlPlaneEndpointManager] = None,
    ) -> None:
        super().__init__(daemon=True, name="resync")
        self._kube = kube
        self._dispatcher = dispatcher
        self._interval = interval
        self._stop_event = stop_event
        self._registry = registry
        self._control_plane = control_plane

    def run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.poll()
            except Exception:  # pragma: no cover - logged below
                LOG.exception("resync failed")

    def poll(self) -> None:
        nodes = self._kube.list_nodes()
        if self._registry is not None:
            services = self._kube.list_services()
            LOG.debug("resync with %d nodes and %d services", len(nodes), len(services))
            self._dispatcher.submit(self._registry.handle, ResyncEvent(nodes, services))
        if self._control_plane is not None:
            for node in nodes:
                if node_utils.is_control_plane(node):
                    self._dispatcher.submit(
                        self._control_plane.on_node_update,
                        node_utils.is_unschedulable(node),
                        node,
                    )
