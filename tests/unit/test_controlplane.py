from threading import Barrier, Thread

import pytest
from kubernetes import client

from metal_bgp.errors import InvariantViolation, NoHealthyCandidateError, NotFoundError
from metal_bgp.resources import IPAssignment
from metal_controller.controlplane import (
    EXTERNAL_SERVICE_NAME,
    EXTERNAL_SERVICE_NAMESPACE,
    METALLB_ANNOTATION,
    METALLB_DISABLED_POOL,
    ControlPlaneEndpointManager,
)

from fakes import FakeHTTP, FakeKube, FakeMetal, build_node, build_service

EIP = "147.75.1.1"
EIP_TAG = "eip-cluster-1"


def url(address: str, port: int = 6443) -> str:
    return f"https://{address}:{port}/healthz"


def build_cp_node(index: int, holds_eip: bool = False, **kwargs) -> client.V1Node:
    addresses = [("Hostname", f"cp{index}"), ("InternalIP", f"10.0.0.{index}")]
    addresses.append(("ExternalIP", f"147.75.2.{index}"))
    if holds_eip:
        addresses.append(("ExternalIP", EIP))
    return build_node(
        f"cp{index}", f"dev-{index}", addresses=addresses, control_plane=True, **kwargs
    )


def build_default_service() -> client.V1Service:
    return build_service(
        "default",
        "kubernetes",
        svc_type="ClusterIP",
        ports=[client.V1ServicePort(name="https", port=443, target_port=6443, protocol="TCP")],
    )


def build_manager(nodes, healthy, assigned_to=None, **kwargs):
    metal = FakeMetal()
    reservation = metal.add_reservation(EIP, [EIP_TAG])
    if assigned_to is not None:
        reservation.assignments.append(IPAssignment(id="as-old", address=EIP, device_id=assigned_to))
    kube = FakeKube(nodes)
    http = FakeHTTP(healthy)
    manager = ControlPlaneEndpointManager(
        metal, kube, project_id="project-1", eip_tag=EIP_TAG, http=http, **kwargs
    )
    manager.sync_service(build_default_service())
    return manager, metal, kube, http


def test_sync_service_learns_ports_and_mirrors():
    manager, _, kube, _ = build_manager([], [])

    assert manager.node_api_server_port == 6443
    assert manager.api_server_port == 6443
    assert manager.ports_known()

    service = kube.applied_services[-1]
    assert service["metadata"] == {
        "name": EXTERNAL_SERVICE_NAME,
        "namespace": EXTERNAL_SERVICE_NAMESPACE,
        "annotations": {METALLB_ANNOTATION: METALLB_DISABLED_POOL},
    }
    assert service["spec"]["type"] == "LoadBalancer"
    assert service["spec"]["loadBalancerIP"] == EIP
    assert service["spec"]["ports"] == [
        {"port": 443, "protocol": "TCP", "name": "https", "targetPort": 6443}
    ]
    assert kube.applied_statuses[-1]["status"] == {"loadBalancer": {"ingress": [{"ip": EIP}]}}


def test_configured_api_server_port_is_kept():
    manager, _, _, _ = build_manager([], [], api_server_port=8443)

    assert manager.api_server_port == 8443
    assert manager.node_api_server_port == 6443


def test_other_services_are_not_mirrored():
    manager, _, kube, _ = build_manager([], [])
    applied = len(kube.applied_services)

    manager.sync_service(build_service("default", "web"))

    assert len(kube.applied_services) == applied


def test_endpoint_slice_is_mirrored():
    manager, _, kube, _ = build_manager([], [])
    source = client.V1EndpointSlice(
        metadata=client.V1ObjectMeta(
            name="kubernetes",
            namespace="default",
            labels={"kubernetes.io/service-name": "kubernetes"},
        ),
        address_type="IPv4",
        ports=[client.DiscoveryV1EndpointPort(name="https", port=6443, protocol="TCP")],
        endpoints=[
            client.V1Endpoint(
                addresses=["10.0.0.1"], conditions=client.V1EndpointConditions(ready=True)
            ),
            client.V1Endpoint(addresses=[]),
        ],
    )

    manager.sync_endpoint_slice(source)

    body = kube.applied_slices[-1]
    assert body["metadata"]["name"] == EXTERNAL_SERVICE_NAME
    assert body["metadata"]["labels"]["kubernetes.io/service-name"] == EXTERNAL_SERVICE_NAME
    assert body["addressType"] == "IPv4"
    assert body["ports"] == [{"port": 6443, "protocol": "TCP", "name": "https"}]
    assert body["endpoints"] == [{"addresses": ["10.0.0.1"], "conditions": {"ready": True}}]


def test_unassigned_address_goes_to_first_healthy_node():
    nodes = [build_cp_node(1), build_cp_node(2), build_cp_node(3)]
    manager, metal, _, http = build_manager(nodes, [url("10.0.0.2"), url("10.0.0.3")])

    assert manager.health_check(nodes[0]) == "cp2"

    assert metal.assign_calls == [("dev-2", EIP)]
    assert metal.unassign_calls == []
    # first healthy candidate wins, cp3 is never probed
    assert url("10.0.0.3") not in http.calls
    assert all("cp" not in call for call in http.calls)


def test_healthy_holder_is_left_alone():
    nodes = [build_cp_node(1, holds_eip=True), build_cp_node(2)]
    manager, metal, _, http = build_manager(nodes, [url(EIP)], assigned_to="dev-1")

    assert manager.health_check(nodes[0]) is None
    assert manager.health_check(nodes[1]) is None

    assert http.calls == [url(EIP)]
    assert metal.assign_calls == []


def test_unhealthy_holder_is_replaced():
    nodes = [build_cp_node(1, holds_eip=True), build_cp_node(2)]
    manager, metal, _, _ = build_manager(nodes, [url("10.0.0.2")], assigned_to="dev-1")

    assert manager.health_check(nodes[0]) == "cp2"

    assert metal.unassign_calls == ["as-old"]
    assert metal.assign_calls == [("dev-2", EIP)]
    assert [a.device_id for a in metal.reservations[0].assignments] == ["dev-2"]


def test_use_host_ip_probes_node_address():
    nodes = [build_cp_node(1, holds_eip=True)]
    manager, metal, _, http = build_manager(
        nodes, [url("147.75.2.1")], assigned_to="dev-1", use_host_ip=True
    )

    assert manager.health_check(nodes[0]) is None
    assert http.calls == [url("147.75.2.1")]
    assert metal.assign_calls == []


def test_no_healthy_candidate_leaves_address_in_place():
    nodes = [build_cp_node(1, holds_eip=True), build_cp_node(2)]
    manager, metal, _, _ = build_manager(nodes, [], assigned_to="dev-1")

    with pytest.raises(NoHealthyCandidateError):
        manager.health_check(nodes[0])

    assert metal.unassign_calls == []
    assert metal.assign_calls == []
    assert [a.id for a in metal.reservations[0].assignments] == ["as-old"]


def test_unschedulable_holder_moves_away():
    holder = build_cp_node(1, holds_eip=True, unschedulable=True)
    nodes = [holder, build_cp_node(2)]
    healthy = [url("10.0.0.1"), url("10.0.0.2")]
    manager, metal, _, _ = build_manager(nodes, healthy, assigned_to="dev-1")

    assert manager.on_node_update(False, holder) == "cp2"
    assert metal.assign_calls == [("dev-2", EIP)]


def test_deleted_node_not_holding_address_changes_nothing():
    nodes = [build_cp_node(1, holds_eip=True), build_cp_node(2)]
    manager, metal, _, _ = build_manager(nodes, [url("10.0.0.1")], assigned_to="dev-1")

    assert manager.on_node_delete(nodes[1]) is None
    assert metal.assign_calls == []


def test_self_is_kept_when_it_is_the_only_candidate():
    holder = build_cp_node(1, holds_eip=True, unschedulable=True)
    manager, metal, _, _ = build_manager([holder], [url("10.0.0.1")], assigned_to="dev-1")

    assert manager.reassign_away_from(holder) == "cp1"
    assert metal.assign_calls == [("dev-1", EIP)]


def test_deleting_nodes_are_never_candidates():
    nodes = [build_cp_node(1, deleting=True), build_cp_node(2)]
    manager, metal, _, _ = build_manager(nodes, [url("10.0.0.1"), url("10.0.0.2")])

    assert manager.health_check(nodes[1]) == "cp2"


def test_node_events_ignored_until_ports_known():
    metal = FakeMetal()
    metal.add_reservation(EIP, [EIP_TAG])
    node = build_cp_node(1)
    manager = ControlPlaneEndpointManager(
        metal, FakeKube([node]), "project-1", EIP_TAG, http=FakeHTTP([url("10.0.0.1")])
    )

    assert manager.on_node_update(None, node) is None
    assert manager.on_node_delete(node) is None
    assert metal.assign_calls == []


def test_reservation_errors():
    manager, metal, _, _ = build_manager([], [])
    metal.reservations[0].assignments = [
        IPAssignment("as-1", EIP, "dev-1"),
        IPAssignment("as-2", EIP, "dev-2"),
    ]
    with pytest.raises(InvariantViolation):
        manager.get_reservation()

    metal.reservations = []
    with pytest.raises(NotFoundError):
        manager.get_reservation()


def test_concurrent_health_checks_assign_once():
    nodes = [build_cp_node(1), build_cp_node(2, holds_eip=True)]
    manager, metal, _, _ = build_manager(nodes, [url("10.0.0.2"), url(EIP)])
    barrier = Barrier(8)

    def run():
        barrier.wait()
        manager.health_check(nodes[1])

    threads = [Thread(target=run) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert metal.assign_calls == [("dev-2", EIP)]
    assert len(metal.reservations[0].assignments) == 1
