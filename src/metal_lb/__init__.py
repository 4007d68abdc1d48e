"""Load balancer implementors and the event plumbing that drives them.

Watchers publish :mod:`metal_lb.events` objects to a
:class:`~metal_lb.registry.ReconcilerRegistry`, which fans them out to the
registered reconcilers.  The implementor doing the actual work is picked
once at startup by :func:`~metal_lb.registry.build_implementor`.
"""

from .events import NodeEvent, ReconcileMode, ResyncEvent, ServiceEvent  # noqa: F401
from .registry import ReconcilerRegistry, build_implementor  # noqa: F401

__all__ = [
    "NodeEvent",
    "ReconcileMode",
    "ReconcilerRegistry",
    "ResyncEvent",
    "ServiceEvent",
    "build_implementor",
]
