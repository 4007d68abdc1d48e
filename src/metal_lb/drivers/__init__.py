"""Load balancer implementors selectable at startup."""

from .base import LoadBalancerImplementor, NodePeer  # noqa: F401
from .configurers import CRConfigurer, ConfigMapConfigurer  # noqa: F401
from .emlb import EMLB  # noqa: F401
from .empty import EmptyLB  # noqa: F401
from .kubevip import KubeVIPLB  # noqa: F401
from .metallb import MetalLB  # noqa: F401

__all__ = [
    "CRConfigurer",
    "ConfigMapConfigurer",
    "EMLB",
    "EmptyLB",
    "KubeVIPLB",
    "LoadBalancerImplementor",
    "MetalLB",
    "NodePeer",
]
