"""BGP peering model for Equinix Metal load balancers.

This package holds the pieces of the controller that never talk to the
cluster directly:

* the MetalLB peer/address-pool document with its order-insensitive
  equality and merge rules (:mod:`metal_bgp.config`);
* tag matching for IP reservations owned by the controller
  (:mod:`metal_bgp.tags`);
* idempotent BGP enablement for the project and its devices
  (:mod:`metal_bgp.bgp`).

It stays free of Kubernetes imports so unit tests can exercise the
convergence rules with plain fakes.
"""

from .bgp import BGPProvisioner  # noqa: F401
from .config import AddressPool, ConfigFile, NodeSelector, Peer  # noqa: F401

__all__ = ["AddressPool", "BGPProvisioner", "ConfigFile", "NodeSelector", "Peer"]
