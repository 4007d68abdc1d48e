"""Watcher implementations used by the controller."""

from .dispatch import EventDispatcher  # noqa: F401
from .kube import EndpointSliceHandler, NodeHandler, ResourceWatcher, ServiceHandler  # noqa: F401
from .resync import ResyncWatcher  # noqa: F401

__all__ = [
    "EndpointSliceHandler",
    "EventDispatcher",
    "NodeHandler",
    "ResourceWatcher",
    "ResyncWatcher",
    "ServiceHandler",
]
