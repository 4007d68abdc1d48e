import pytest

from metal_lb import NodeEvent, ReconcileMode, ReconcilerRegistry, ResyncEvent, ServiceEvent
from metal_lb import build_implementor
from metal_lb.drivers import EMLB, CRConfigurer, ConfigMapConfigurer, EmptyLB, KubeVIPLB, MetalLB

from fakes import FakeKube, FakeLBaaS


class RecordingReconciler:
    def __init__(self):
        self.calls = []

    def reconcile_nodes(self, nodes, mode):
        self.calls.append(("nodes", list(nodes), mode))
        return {"node-a": "peer"}

    def reconcile_services(self, services, mode, node_peers=None):
        self.calls.append(("services", list(services), mode, node_peers))


@pytest.mark.parametrize(
    "config, namespace, name",
    [
        ("metallb:///metallb-system/config", "metallb-system", "config"),
        ("metallb://lb/custom", "lb", "custom"),
        ("metallb://", "metallb-system", "config"),
    ],
)
def test_build_metallb_configmap(config, namespace, name):
    implementor = build_implementor(config, FakeKube())

    assert isinstance(implementor, MetalLB)
    configurer = implementor._configurer  # type: ignore[attr-defined]
    assert isinstance(configurer, ConfigMapConfigurer)
    assert (configurer.namespace, configurer.name) == (namespace, name)


def test_build_metallb_custom_resources():
    implementor = build_implementor("metallb:///lb-system?crdConfiguration=true", FakeKube())

    configurer = implementor._configurer  # type: ignore[attr-defined]
    assert isinstance(configurer, CRConfigurer)
    assert configurer.namespace == "lb-system"


def test_build_other_implementors():
    assert isinstance(build_implementor("kube-vip://", FakeKube()), KubeVIPLB)
    assert isinstance(build_implementor("empty://", FakeKube()), EmptyLB)
    assert build_implementor("", FakeKube()) is None
    assert build_implementor("unknown://x", FakeKube()) is None


def test_build_managed_load_balancer():
    implementor = build_implementor(
        "emlb:///da", FakeKube(), lbaas=FakeLBaaS(), project_id="project-1"
    )

    assert isinstance(implementor, EMLB)
    assert implementor.metro == "da"
    assert not implementor.uses_bgp

    with pytest.raises(ValueError):
        build_implementor("emlb:///da", FakeKube())


def test_registry_dispatches_events():
    reconciler = RecordingReconciler()
    registry = ReconcilerRegistry()
    registry.register("metallb", reconciler)

    registry.handle(NodeEvent(["n1"], ReconcileMode.ADD))
    registry.handle(ServiceEvent(["s1"], ReconcileMode.REMOVE))
    registry.handle(ResyncEvent(["n1"], ["s1"]))

    assert reconciler.calls == [
        ("nodes", ["n1"], ReconcileMode.ADD),
        ("services", ["s1"], ReconcileMode.REMOVE, None),
        ("nodes", ["n1"], ReconcileMode.SYNC),
        ("services", ["s1"], ReconcileMode.SYNC, {"node-a": "peer"}),
    ]


def test_registry_rejects_duplicates_and_unknown_events():
    registry = ReconcilerRegistry()
    registry.register("metallb", RecordingReconciler())

    with pytest.raises(ValueError):
        registry.register("metallb", RecordingReconciler())
    with pytest.raises(TypeError):
        registry.handle(object())

    registry.unregister("metallb")
    registry.register("metallb", RecordingReconciler())
