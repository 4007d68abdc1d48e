"""YAML configuration loader for the controller."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

import yaml

from metal_bgp.bgp import DEFAULT_LOCAL_ASN

DEFAULT_BASE_URL = "https://api.equinix.com/metal/v1/"

API_KEY_ENV = "METAL_API_KEY"
PROJECT_ID_ENV = "METAL_PROJECT_ID"


@dataclass
class MetalConfig:
    api_key: str
    project_id: str
    base_url: str = DEFAULT_BASE_URL
    metro: str = ""
    facility: str = ""


@dataclass
class BGPConfig:
    local_asn: int = DEFAULT_LOCAL_ASN
    password: str = ""
    node_selector: str = ""


@dataclass
class ControlPlaneConfig:
    eip_tag: str = ""
    api_server_port: int = 0
    use_host_ip: bool = False


@dataclass
class WatcherConfig:
    resync_interval: float = 60.0
    workers: int = 4


@dataclass
class ControllerConfig:
    metal: MetalConfig
    bgp: BGPConfig = field(default_factory=BGPConfig)
    load_balancer: str = ""
    control_plane: ControlPlaneConfig = field(default_factory=ControlPlaneConfig)
    watchers: WatcherConfig = field(default_factory=WatcherConfig)


def _section(data: Mapping, name: str) -> Mapping:
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' section must be a mapping")
    return section


def _parse_metal(section: Mapping, environ: Mapping[str, str]) -> MetalConfig:
    api_key = environ.get(API_KEY_ENV) or section.get("api_key") or ""
    project_id = environ.get(PROJECT_ID_ENV) or section.get("project_id") or ""
    if not api_key:
        raise ValueError(f"missing metal api_key (set it in the config or {API_KEY_ENV})")
    if not project_id:
        raise ValueError(f"missing metal project_id (set it in the config or {PROJECT_ID_ENV})")
    return MetalConfig(
        api_key=str(api_key),
        project_id=str(project_id),
        base_url=str(section.get("base_url") or DEFAULT_BASE_URL),
        metro=str(section.get("metro") or ""),
        facility=str(section.get("facility") or ""),
    )


def _parse_bgp(section: Mapping) -> BGPConfig:
    return BGPConfig(
        local_asn=int(section.get("local_asn", DEFAULT_LOCAL_ASN)),
        password=str(section.get("password") or ""),
        node_selector=str(section.get("node_selector") or ""),
    )


def _parse_control_plane(section: Mapping) -> ControlPlaneConfig:
    port = int(section.get("api_server_port", 0))
    if port < 0 or port > 65535:
        raise ValueError(f"invalid api_server_port {port}")
    return ControlPlaneConfig(
        eip_tag=str(section.get("eip_tag") or ""),
        api_server_port=port,
        use_host_ip=bool(section.get("use_host_ip", False)),
    )


def _parse_watchers(section: Mapping) -> WatcherConfig:
    interval = float(section.get("resync_interval", 60.0))
    workers = int(section.get("workers", 4))
    if interval <= 0:
        raise ValueError("'resync_interval' must be positive")
    if workers < 1:
        raise ValueError("'workers' must be at least 1")
    return WatcherConfig(resync_interval=interval, workers=workers)


def config_from_dict(data: Mapping, environ: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    if environ is None:
        environ = os.environ
    return ControllerConfig(
        metal=_parse_metal(_section(data, "metal"), environ),
        bgp=_parse_bgp(_section(data, "bgp")),
        load_balancer=str(data.get("load_balancer") or ""),
        control_plane=_parse_control_plane(_section(data, "control_plane")),
        watchers=_parse_watchers(_section(data, "watchers")),
    )


def load_config(path: Path, environ: Optional[Mapping[str, str]] = None) -> ControllerConfig:
    data = yaml.safe_load(Path(path).read_text())
    if not isinstance(data, dict):
        raise ValueError("Controller configuration must be a mapping")
    return config_from_dict(data, environ)
