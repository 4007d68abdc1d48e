import pytest

from metal_controller import nodes as node_utils

from fakes import build_node


def test_node_properties():
    node = build_node(
        "cp1",
        "dev-1",
        addresses=[("Hostname", "cp1"), ("InternalIP", "10.0.0.1")],
        control_plane=True,
    )

    assert node_utils.provider_id(node) == "equinixmetal://dev-1"
    assert node_utils.node_addresses(node) == [("Hostname", "cp1"), ("InternalIP", "10.0.0.1")]
    assert node_utils.is_control_plane(node)
    assert not node_utils.is_control_plane(build_node("w1"))
    assert node_utils.provider_id(build_node("w1")) == ""


def test_filters_fall_back_when_empty():
    a = build_node("a", unschedulable=True)
    b = build_node("b", unschedulable=True)
    c = build_node("c", deleting=True)

    assert node_utils.filter_deleting_nodes([a, c]) == [a]
    assert node_utils.try_filter_unschedulable([a, b]) == [a, b]
    assert node_utils.try_filter_unschedulable([a, build_node("d")])[0].metadata.name == "d"
    assert node_utils.try_filter_self([a, b], "a") == [b]
    assert node_utils.try_filter_self([a], "a") == [a]


@pytest.mark.parametrize(
    "selector, labels, expected",
    [
        ("", {}, True),
        ("bgp=on", {"bgp": "on"}, True),
        ("bgp==on", {"bgp": "off"}, False),
        ("bgp!=off", {"bgp": "on"}, True),
        ("bgp!=off", {}, True),
        ("bgp", {"bgp": ""}, True),
        ("!edge", {"edge": "true"}, False),
        ("bgp=on, !edge", {"bgp": "on"}, True),
    ],
)
def test_label_selector(selector, labels, expected):
    assert node_utils.parse_label_selector(selector)(labels) is expected


def test_label_selector_rejects_set_terms():
    with pytest.raises(ValueError):
        node_utils.parse_label_selector("zone in (a)")
