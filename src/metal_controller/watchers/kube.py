"""Watch threads turning Kubernetes watch streams into reconciliation tasks."""

from __future__ import annotations

import logging
from threading import Event, Thread
from typing import Any, Callable, Dict, Optional

from kubernetes import watch
from kubernetes.client.rest import ApiException

from metal_lb import ReconcilerRegistry
from metal_lb.events import NodeEvent, ReconcileMode, ServiceEvent

from .. import nodes as node_utils
from ..controlplane import ControlPlaneEndpointManager
from .dispatch import EventDispatcher

LOG = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
ERROR = "ERROR"

Handler = Callable[[str, Any], None]


class ResourceWatcher(Thread):
    """Stream watch events for one resource kind and hand them to ``handler``.

    Each stream is bounded by ``timeout_seconds`` so the stop event is
    honoured.  A restarted stream resumes from the last resource version
    seen; only an expired version (410) starts over with a fresh listing.
    """

    def __init__(
        self,
        kind: str,
        list_func: Callable[..., Any],
        handler: Handler,
        stop_event: Event,
        timeout_seconds: int = 60,
        retry_interval: float = 5.0,
        **list_kwargs: Any,
    ) -> None:
        super().__init__(daemon=True, name=f"watch-{kind}")
        self.kind = kind
        self._list_func = list_func
        self._handler = handler
        self._stop_event = stop_event
        self._timeout_seconds = timeout_seconds
        self._retry_interval = retry_interval
        self._list_kwargs = list_kwargs
        self.resource_version: Optional[str] = None

    def run(self) -> None:
        LOG.info("starting %s watcher", self.kind)
        while not self._stop_event.is_set():
            try:
                self.watch_once()
                continue
            except ApiException as exc:
                if exc.status == 410:
                    LOG.info("%s watch expired, relisting", self.kind)
                    self.resource_version = None
                    continue
                LOG.warning("%s watch failed: %s", self.kind, exc)
            except Exception:  # pragma: no cover - logged below
                LOG.exception("%s watcher encountered an error", self.kind)
            self._stop_event.wait(self._retry_interval)
        LOG.info("stopped %s watcher", self.kind)

    def watch_once(self) -> None:
        kwargs = dict(self._list_kwargs)
        if self.resource_version:
            kwargs["resource_version"] = self.resource_version
        w = watch.Watch()
        for event in w.stream(self._list_func, timeout_seconds=self._timeout_seconds, **kwargs):
            if self._stop_event.is_set():
                w.stop()
                break
            obj = event["object"]
            if event["type"] == ERROR:
                raise ApiException(status=obj.get("code"), reason=obj.get("message"))
            version = getattr(getattr(obj, "metadata", None), "resource_version", None)
            if version:
                self.resource_version = version
            self._handler(event["type"], obj)


class NodeHandler:
    """Publish node events to the registry and the failover manager."""

    def __init__(
        self,
        dispatcher: EventDispatcher,
        registry: Optional[ReconcilerRegistry] = None,
        control_plane: Optional[ControlPlaneEndpointManager] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._control_plane = control_plane
        # last seen unschedulable flag per node, to detect transitions
        self._unschedulable: Dict[str, bool] = {}

    def __call__(self, event_type: str, node: Any) -> None:
        name = node_utils.node_name(node)
        if event_type == DELETED:
            self._unschedulable.pop(name, None)
            if self._registry is not None:
                self._dispatcher.submit(
                    self._registry.handle, NodeEvent([node], ReconcileMode.REMOVE)
                )
            if self._control_plane is not None:
                self._dispatcher.submit(self._control_plane.on_node_delete, node)
            return

        unschedulable = node_utils.is_unschedulable(node)
        # a node seen for the first time has no transition to react to
        old = self._unschedulable.get(name, unschedulable)
        self._unschedulable[name] = unschedulable
        if self._registry is not None:
            self._dispatcher.submit(self._registry.handle, NodeEvent([node], ReconcileMode.ADD))
        if self._control_plane is not None:
            self._dispatcher.submit(self._control_plane.on_node_update, old, node)


class ServiceHandler:
    def __init__(
        self,
        dispatcher: EventDispatcher,
        registry: Optional[ReconcilerRegistry] = None,
        control_plane: Optional[ControlPlaneEndpointManager] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._registry = registry
        self._control_plane = control_plane

    def __call__(self, event_type: str, svc: Any) -> None:
        mode = ReconcileMode.REMOVE if event_type == DELETED else ReconcileMode.ADD
        if self._registry is not None:
            self._dispatcher.submit(self._registry.handle, ServiceEvent([svc], mode))
        if self._control_plane is not None and event_type != DELETED:
            self._dispatcher.submit(self._control_plane.sync_service, svc)


class EndpointSliceHandler:
    def __init__(self, dispatcher: EventDispatcher, control_plane: ControlPlaneEndpointManager) -> None:
        self._dispatcher = dispatcher
        self._control_plane = control_plane

    def __call__(self, event_type: str, endpoint_slice: Any) -> None:
        if event_type == DELETED:
            return
        self._dispatcher.submit(self._control_plane.sync_endpoint_slice, endpoint_slice)
