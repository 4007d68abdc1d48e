"""Helpers reading Kubernetes node objects."""

from __future__ import annotations

from typing import Callable, Dict, List, Optional, Sequence, Tuple

CONTROL_PLANE_LABELS = (
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
)

ADDRESS_HOSTNAME = "Hostname"
ADDRESS_EXTERNAL_IP = "ExternalIP"


def node_name(node) -> str:
    return node.metadata.name


def node_labels(node) -> Dict[str, str]:
    return dict(node.metadata.labels or {})


def provider_id(node) -> str:
    return (node.spec.provider_id if node.spec is not None else "") or ""


def node_addresses(node) -> List[Tuple[str, str]]:
    if node.status is None or not node.status.addresses:
        return []
    return [(addr.type, addr.address) for addr in node.status.addresses]


def is_control_plane(node) -> bool:
    labels = node_labels(node)
    return any(label in labels for label in CONTROL_PLANE_LABELS)


def is_unschedulable(node) -> bool:
    return bool(node.spec is not None and node.spec.unschedulable)


def is_deleting(node) -> bool:
    return node.metadata.deletion_timestamp is not None


def filter_deleting_nodes(nodes: Sequence) -> List:
    return [n for n in nodes if not is_deleting(n)]


def try_filter_unschedulable(nodes: Sequence) -> List:
    """Drop unschedulable nodes unless that would leave none."""

    schedulable = [n for n in nodes if not is_unschedulable(n)]
    return schedulable or list(nodes)


def try_filter_self(nodes: Sequence, name: str) -> List:
    """Drop the node called ``name`` unless that would leave none."""

    others = [n for n in nodes if node_name(n) != name]
    return others or list(nodes)


def parse_label_selector(text: Optional[str]) -> Callable[[Dict[str, str]], bool]:
    """Parse an equality-based label selector such as ``a=b,c!=d,e,!f``.

    An empty selector matches everything.
    """

    checks: List[Callable[[Dict[str, str]], bool]] = []
    for raw in (text or "").split(","):
        term = raw.strip()
        if not term:
            continue
        if "(" in term or ")" in term:
            raise ValueError(f"set-based selector terms are not supported: {term!r}")
        if "!=" in term:
            key, value = (p.strip() for p in term.split("!=", 1))
            checks.append(lambda labels, k=key, v=value: labels.get(k) != v)
        elif "=" in term:
            key, value = (p.strip() for p in term.replace("==", "=").split("=", 1))
            checks.append(lambda labels, k=key, v=value: labels.get(k) == v)
        elif term.startswith("!"):
            key = term[1:].strip()
            checks.append(lambda labels, k=key: k not in labels)
        else:
            checks.append(lambda labels, k=term: k in labels)
        if not _key_is_valid(term):
            raise ValueError(f"invalid selector term {term!r}")

    def matches(labels: Dict[str, str]) -> bool:
        return all(check(labels) for check in checks)

    return matches


def _key_is_valid(term: str) -> bool:
    key = term.lstrip("!").split("!=")[0].split("=")[0].strip()
    return bool(key) and " " not in key
