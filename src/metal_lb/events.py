"""Event primitives consumed by the reconciler registry."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence


class ReconcileMode(Enum):
    """Which convergence transition a reconciliation call performs."""

    ADD = "add"
    REMOVE = "remove"
    SYNC = "sync"


@dataclass(frozen=True)
class NodeEvent:
    """Nodes were added/updated (ADD) or deleted (REMOVE)."""

    nodes: Sequence[Any]
    mode: ReconcileMode


@dataclass(frozen=True)
class ServiceEvent:
    """Services were added/updated (ADD) or deleted (REMOVE)."""

    services: Sequence[Any]
    mode: ReconcileMode


@dataclass(frozen=True)
class ResyncEvent:
    """Full desired state of the cluster.

    Published periodically so reconcilers can converge in SYNC mode and
    clean up anything a missed event left behind.
    """

    nodes: Sequence[Any]
    services: Sequence[Any]
