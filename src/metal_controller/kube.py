"""Kubernetes adapter used by the reconciler and the failover manager."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException

LOG = logging.getLogger(__name__)

FIELD_MANAGER = "cloud-provider-equinix-metal-auto"
APPLY_CONTENT_TYPE = "application/apply-patch+yaml"


def load_kube_config(kubeconfig: Optional[str] = None) -> None:
    """Load in-cluster credentials, falling back to a kubeconfig file."""

    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        return
    try:
        config.load_incluster_config()
    except config.ConfigException:
        LOG.debug("not running in a cluster, loading default kubeconfig")
        config.load_kube_config()


class KubeClient:
    """Narrow view of the cluster API.

    Server-side apply calls all use :data:`FIELD_MANAGER` and force
    ownership, so the controller stays the owner of the fields it writes.
    """

    def __init__(self, api_client: Optional[client.ApiClient] = None) -> None:
        self.core = client.CoreV1Api(api_client)
        self.discovery = client.DiscoveryV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    # nodes / namespaces
    def list_nodes(self, label_selector: str = "") -> List[client.V1Node]:
        return list(self.core.list_node(label_selector=label_selector).items)

    def get_namespace_uid(self, name: str) -> str:
        return self.core.read_namespace(name).metadata.uid

    def patch_node_annotations(self, name: str, annotations: Dict[str, str]) -> None:
        self.core.patch_node(name, {"metadata": {"annotations": annotations}})

    # services
    def list_services(self) -> List[client.V1Service]:
        return list(self.core.list_service_for_all_namespaces().items)

    def get_service(self, namespace: str, name: str) -> client.V1Service:
        return self.core.read_namespaced_service(name, namespace)

    def set_service_load_balancer_ip(self, namespace: str, name: str, ip: str) -> bool:
        """Write ``ip`` into the Service's load balancer address if it differs."""

        svc = self.get_service(namespace, name)
        if svc.spec.load_balancer_ip == ip:
            return False
        svc.spec.load_balancer_ip = ip
        self.core.replace_namespaced_service(name, namespace, svc)
        return True

    def patch_service_annotations(
        self, namespace: str, name: str, annotations: Dict[str, str]
    ) -> None:
        self.core.patch_namespaced_service(name, namespace, {"metadata": {"annotations": annotations}})

    def apply_service(self, body: Dict[str, Any]) -> None:
        meta = body["metadata"]
        self.core.patch_namespaced_service(
            meta["name"],
            meta["namespace"],
            body,
            field_manager=FIELD_MANAGER,
            force=True,
            _content_type=APPLY_CONTENT_TYPE,
        )

    def apply_service_status(self, body: Dict[str, Any]) -> None:
        meta = body["metadata"]
        self.core.patch_namespaced_service_status(
            meta["name"],
            meta["namespace"],
            body,
            field_manager=FIELD_MANAGER,
            force=True,
            _content_type=APPLY_CONTENT_TYPE,
        )

    def apply_endpoint_slice(self, body: Dict[str, Any]) -> None:
        meta = body["metadata"]
        self.discovery.patch_namespaced_endpoint_slice(
            meta["name"],
            meta["namespace"],
            body,
            field_manager=FIELD_MANAGER,
            force=True,
            _content_type=APPLY_CONTENT_TYPE,
        )

    # configmaps
    def get_config_map_data(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        try:
            cm = self.core.read_namespaced_config_map(name, namespace)
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise
        return dict(cm.data or {})

    def patch_config_map_data(self, namespace: str, name: str, data: Dict[str, str]) -> None:
        self.core.patch_namespaced_config_map(name, namespace, {"data": data})

    # custom objects
    def list_custom_objects(
        self, group: str, version: str, namespace: str, plural: str, label_selector: str = ""
    ) -> List[Dict[str, Any]]:
        result = self.custom.list_namespaced_custom_object(
            group, version, namespace, plural, label_selector=label_selector
        )
        return list(result.get("items") or [])

    def create_custom_object(
        self, group: str, version: str, namespace: str, plural: str, body: Dict[str, Any]
    ) -> None:
        self.custom.create_namespaced_custom_object(group, version, namespace, plural, body)

    def delete_custom_object(
        self, group: str, version: str, namespace: str, plural: str, name: str
    ) -> None:
        try:
            self.custom.delete_namespaced_custom_object(group, version, namespace, plural, name)
        except ApiException as exc:
            if exc.status != 404:
                raise
