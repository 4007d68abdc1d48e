"""Tag helpers for IP reservations owned by the controller."""

from __future__ import annotations

import base64
import hashlib
from typing import Iterable, List, Optional, Protocol, Sequence

MANAGED_IDENTIFIER = "cloud-provider-equinix-metal-auto"
MANAGED_TAG = f"usage={MANAGED_IDENTIFIER}"


class Tagged(Protocol):
    tags: Sequence[str]


def reservations_by_all_tags(
    target_tags: Iterable[str], reservations: Iterable[Tagged]
) -> List[Tagged]:
    """Return every reservation carrying all of ``target_tags``.

    Extra tags on a reservation are allowed; input order is preserved.
    """

    required = set(target_tags)
    return [r for r in reservations if required.issubset(r.tags or ())]


def reservation_by_all_tags(
    target_tags: Iterable[str], reservations: Iterable[Tagged]
) -> Optional[Tagged]:
    matches = reservations_by_all_tags(target_tags, reservations)
    return matches[0] if matches else None


def service_rep(namespace: str, name: str) -> str:
    return f"{namespace}/{name}"


def service_hash(namespace: str, name: str) -> str:
    """Fixed-length digest of ``namespace/name`` used as an opaque tag value."""

    digest = hashlib.sha256(service_rep(namespace, name).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def service_tag(namespace: str, name: str) -> str:
    return f"service={service_hash(namespace, name)}"


def cluster_tag(cluster_id: str) -> str:
    return f"cluster={cluster_id}"
