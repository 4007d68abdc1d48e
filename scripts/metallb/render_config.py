#!/usr/bin/env python3
"""Render a MetalLB peer/pool document offline from a desired-state file."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path
from typing import Any, Dict

import yaml

REPO_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = REPO_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from metal_bgp.config import ConfigFile  # noqa: E402
from metal_lb.drivers import MetalLB, NodePeer  # noqa: E402


LOG = logging.getLogger(__name__)


class FileConfigurer:
    """Keep the document in a local YAML file instead of a ConfigMap."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def get(self) -> ConfigFile:
        if not self._path.exists():
            return ConfigFile()
        return ConfigFile.parse(self._path.read_text())

    def update(self, config: ConfigFile) -> None:
        self._path.write_text(config.to_yaml())


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--state",
        type=Path,
        default=Path("deploy/metallb/state.yaml"),
        help="Desired nodes and services (YAML)",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path("deploy/metallb/config.yaml"),
        help="MetalLB config document to update in place",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser.parse_args()


def load_state(path: Path) -> Dict[str, Any]:
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping")
    return data


def build_node_peer(entry: Dict[str, Any]) -> NodePeer:
    return NodePeer(
        name=str(entry["name"]),
        source_ip=str(entry.get("source_ip", "")),
        local_asn=int(entry.get("local_asn", 65000)),
        peer_asn=int(entry.get("peer_asn", 65530)),
        password=str(entry.get("password", "")),
        peers=[str(p) for p in entry.get("peers", [])],
    )


def main() -> None:
    args = parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)

    state = load_state(args.state)
    lb = MetalLB(FileConfigurer(args.output))

    nodes = {peer.name: peer for peer in (build_node_peer(n) for n in state.get("nodes", []))}
    lb.sync_nodes(nodes)

    addresses = set()
    for svc in state.get("services", []):
        namespace, name = svc["namespace"], svc["name"]
        if not svc.get("address"):
            LOG.warning("service %s/%s has no address, skipping", namespace, name)
            continue
        address = f"{svc['address']}/{int(svc.get('cidr', 32))}"
        lb.add_service(f"{namespace}/{name}", address)
        lb.update_service(namespace, name, list(nodes.values()))
        addresses.add(address)
    lb.sync_services(addresses)

    LOG.info("MetalLB config written to %s", args.output)


if __name__ == "__main__":
    main()
