from metal_bgp.config import ConfigFile, Resource, hostname_selector
from metal_lb.drivers import CRConfigurer, ConfigMapConfigurer, MetalLB, NodePeer
from metal_lb.drivers.configurers import MANAGED_BY_LABEL, PEER_PLURAL, POOL_PLURAL

from fakes import FakeKube, MemoryConfigurer


def build_node_peer(name: str, source_ip: str = "10.0.0.5") -> NodePeer:
    return NodePeer(
        name=name,
        source_ip=source_ip,
        local_asn=65000,
        peer_asn=65530,
        password="md5",
        peers=["169.254.255.1", "169.254.255.2"],
    )


def add(lb: MetalLB, node: NodePeer) -> None:
    lb.add_node(node.name, node.local_asn, node.peer_asn, node.password, node.source_ip, *node.peers)


def test_add_node_writes_one_peer_per_address():
    configurer = MemoryConfigurer()
    lb = MetalLB(configurer)

    add(lb, build_node_peer("node-a"))

    peers = configurer.config.peers
    assert [p.addr for p in peers] == ["169.254.255.1", "169.254.255.2"]
    assert all(p.match_selector(hostname_selector("node-a")) for p in peers)
    assert peers[0].src_addr == "10.0.0.5"
    assert configurer.writes == 1

    add(lb, build_node_peer("node-a"))
    assert configurer.writes == 1


def test_remove_node_drops_its_peers():
    configurer = MemoryConfigurer()
    lb = MetalLB(configurer)
    add(lb, build_node_peer("node-a"))
    add(lb, build_node_peer("node-b"))

    lb.remove_node("node-a")

    assert configurer.config.node_names() == ["node-b"]


def test_sync_nodes_removes_absent_and_adds_missing():
    configurer = MemoryConfigurer()
    lb = MetalLB(configurer)
    add(lb, build_node_peer("node-a"))
    add(lb, build_node_peer("node-b"))

    lb.sync_nodes({"node-b": build_node_peer("node-b"), "node-c": build_node_peer("node-c")})

    assert sorted(configurer.config.node_names()) == ["node-b", "node-c"]
    writes = configurer.writes
    lb.sync_nodes({"node-b": build_node_peer("node-b"), "node-c": build_node_peer("node-c")})
    assert configurer.writes == writes


def test_service_pool_lifecycle():
    configurer = MemoryConfigurer()
    lb = MetalLB(configurer)

    lb.add_service("default/web", "147.75.0.10/32")
    lb.add_service("default/web", "147.75.0.10/32")
    lb.add_service("default/api", "147.75.0.11/32")

    pools = configurer.config.pools
    assert [(p.name, p.addresses, p.auto_assign) for p in pools] == [
        ("default/web", ["147.75.0.10/32"], False),
        ("default/api", ["147.75.0.11/32"], False),
    ]
    assert configurer.writes == 2

    lb.remove_service("147.75.0.10/32")
    assert configurer.config.service_addresses() == ["147.75.0.11/32"]

    lb.sync_services({"147.75.0.12/32"})
    assert configurer.config.pools == []


def test_update_service_moves_markers_but_keeps_node_peers():
    configurer = MemoryConfigurer()
    lb = MetalLB(configurer)
    node_a, node_b = build_node_peer("node-a"), build_node_peer("node-b")
    add(lb, node_a)
    add(lb, node_b)

    lb.update_service("default", "web", [node_a])

    served = {
        p.node_selectors[0].match_labels["kubernetes.io/hostname"]: p.services()
        for p in configurer.config.peers
    }
    assert served == {"node-a": [Resource("default", "web")], "node-b": []}

    lb.update_service("default", "web", [node_b])
    served = {
        p.node_selectors[0].match_labels["kubernetes.io/hostname"]: p.services()
        for p in configurer.config.peers
    }
    assert served == {"node-a": [], "node-b": [Resource("default", "web")]}

    lb.update_service("default", "web", [])
    assert len(configurer.config.peers) == 4
    assert all(not p.services() for p in configurer.config.peers)

    # a node serving a service is still recognised as configured
    lb.update_service("default", "web", [node_a])
    writes = configurer.writes
    add(lb, node_a)
    assert configurer.writes == writes


def test_configmap_configurer_reads_and_patches():
    kube = FakeKube()
    kube.config_maps[("metallb-system", "config")] = {"config": ""}
    lb = MetalLB(ConfigMapConfigurer(kube, "metallb-system", "config"))

    lb.add_service("default/web", "147.75.0.10/32")

    stored = ConfigFile.parse(kube.config_maps[("metallb-system", "config")]["config"])
    assert stored.service_addresses() == ["147.75.0.10/32"]
    assert kube.config_map_patches == 1

    lb.add_service("default/web", "147.75.0.10/32")
    assert kube.config_map_patches == 1


def test_cr_configurer_creates_managed_resources():
    kube = FakeKube()
    lb = MetalLB(CRConfigurer(kube, "metallb-system"))

    add(lb, build_node_peer("node-a"))
    lb.add_service("default/web", "147.75.0.10/32")

    peers = kube.custom_objects[("metallb-system", PEER_PLURAL)]
    pools = kube.custom_objects[("metallb-system", POOL_PLURAL)]
    assert len(peers) == 2
    assert all(p["metadata"]["labels"][MANAGED_BY_LABEL] for p in peers.values())
    assert [p["spec"]["addresses"] for p in pools.values()] == [["147.75.0.10/32"]]

    config = CRConfigurer(kube, "metallb-system").get()
    assert config.node_names() == ["node-a"]
    assert [p.name for p in config.pools] == ["default/web"]

    lb.remove_node("node-a")
    lb.remove_service("147.75.0.10/32")
    assert kube.custom_objects[("metallb-system", PEER_PLURAL)] == {}
    assert kube.custom_objects[("metallb-system", POOL_PLURAL)] == {}
