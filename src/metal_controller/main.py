"""Entry point for the load balancer controller."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from pathlib import Path
from threading import Event
from typing import List, Optional

import urllib3
from oslo_config import cfg

from metal_bgp.bgp import BGPProvisioner
from metal_lb import ReconcilerRegistry, build_implementor
from metal_lb.config_extensions import config_from_conf, register_opts

from .config import ControllerConfig, config_from_dict, load_config
from .controlplane import DEFAULT_SERVICE_NAME, DEFAULT_SERVICE_NAMESPACE, ControlPlaneEndpointManager
from .kube import KubeClient, load_kube_config
from .lbaas_api import LBaaSClient
from .metal_api import MetalClient
from .reconciler import LoadBalancerReconciler
from .watchers import (
    EndpointSliceHandler,
    EventDispatcher,
    NodeHandler,
    ResourceWatcher,
    ResyncWatcher,
    ServiceHandler,
)

LOG = logging.getLogger(__name__)

CLUSTER_ID_NAMESPACE = "kube-system"


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    )
    # health probes target node addresses without verifiable certificates
    urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)


def _load(path: Path) -> ControllerConfig:
    if path.suffix in (".conf", ".ini"):
        conf = cfg.ConfigOpts()
        register_opts(conf)
        conf(args=[], default_config_files=[str(path)])
        return config_from_dict(config_from_conf(conf))
    return load_config(path)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the metal load balancer controller")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/metal-lb-controller/config.yaml"),
        help="Path to the controller configuration file (YAML, or oslo .conf)",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig; defaults to in-cluster credentials",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    config = _load(args.config)
    load_kube_config(args.kubeconfig)

    kube = KubeClient()
    metal = MetalClient(config.metal.api_key, base_url=config.metal.base_url)
    provisioner = BGPProvisioner(
        metal,
        config.metal.project_id,
        local_asn=config.bgp.local_asn,
        bgp_pass=config.bgp.password,
    )

    registry: Optional[ReconcilerRegistry] = None
    implementor = build_implementor(
        config.load_balancer,
        kube,
        lbaas=LBaaSClient(config.metal.api_key),
        project_id=config.metal.project_id,
    )
    if implementor is not None:
        if implementor.uses_bgp:
            provisioner.enable_project_bgp()
        reconciler = LoadBalancerReconciler(
            implementor,
            metal,
            kube,
            provisioner,
            project_id=config.metal.project_id,
            cluster_id=kube.get_namespace_uid(CLUSTER_ID_NAMESPACE),
            metro=config.metal.metro,
            facility=config.metal.facility,
            node_selector=config.bgp.node_selector,
        )
        registry = ReconcilerRegistry()
        registry.register(implementor.name, reconciler)

    control_plane: Optional[ControlPlaneEndpointManager] = None
    if config.control_plane.eip_tag:
        control_plane = ControlPlaneEndpointManager(
            metal,
            kube,
            project_id=config.metal.project_id,
            eip_tag=config.control_plane.eip_tag,
            api_server_port=config.control_plane.api_server_port,
            use_host_ip=config.control_plane.use_host_ip,
        )

    if registry is None and control_plane is None:
        LOG.warning("neither load balancing nor control plane failover configured; idling")

    stop_event = Event()
    dispatcher = EventDispatcher(stop_event, workers=config.watchers.workers)

    watchers = []
    if registry is not None or control_plane is not None:
        watchers.append(
            ResourceWatcher(
                "nodes",
                kube.core.list_node,
                NodeHandler(dispatcher, registry, control_plane),
                stop_event,
            )
        )
        watchers.append(
            ResourceWatcher(
                "services",
                kube.core.list_service_for_all_namespaces,
                ServiceHandler(dispatcher, registry, control_plane),
                stop_event,
            )
        )
        resync = ResyncWatcher(
            kube,
            dispatcher,
            config.watchers.resync_interval,
            stop_event,
            registry=registry,
            control_plane=control_plane,
        )
        # Perform an initial resync so we converge immediately
        try:
            resync.poll()
        except Exception:  # pragma: no cover - logged here
            LOG.exception("initial resync failed")
        watchers.append(resync)
    if control_plane is not None:
        watchers.append(
            ResourceWatcher(
                "endpointslices",
                kube.discovery.list_namespaced_endpoint_slice,
                EndpointSliceHandler(dispatcher, control_plane),
                stop_event,
                namespace=DEFAULT_SERVICE_NAMESPACE,
                label_selector=f"kubernetes.io/service-name={DEFAULT_SERVICE_NAME}",
            )
        )

    for watcher in watchers:
        watcher.start()

    def _shutdown(signum, frame):  # pragma: no cover - signal handler
        LOG.info("received signal %s, shutting down", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    try:
        while not stop_event.is_set():
            stop_event.wait(1.0)
    except KeyboardInterrupt:  # pragma: no cover - fallback if signal not set
        stop_event.set()

    for watcher in watchers:
        watcher.join()
    dispatcher.shutdown()

    LOG.info("controller stopped")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
