import pytest

from metal_bgp.errors import ConfigurationError
from metal_lb.drivers import EMLB

from fakes import FakeLBaaS


def build_lb(metro="da"):
    lbaas = FakeLBaaS()
    return EMLB(lbaas, "project-1", metro), lbaas


def test_ports_follow_the_requested_pools():
    emlb, lbaas = build_lb()
    lb = emlb.ensure_load_balancer(
        "web", "", {80: [("203.0.113.1", 30080)], 443: [("203.0.113.1", 30443)]}
    )

    lb = emlb.ensure_load_balancer("web", lb["id"], {443: [("203.0.113.2", 30443)]})

    assert [p["number"] for p in lb["ports"]] == [443]
    assert lbaas.targets(lb["id"]) == {443: [("203.0.113.2", 30443)]}
    assert len(lbaas.pools) == 1
    assert ("create_lb", "web", "lctnloc--uxs0GLeAELHKV8GxO_AI") in lbaas.writes


def test_missing_load_balancer_is_recreated():
    emlb, lbaas = build_lb()

    lb = emlb.ensure_load_balancer("web", "lb-gone", {80: []})

    assert lb["id"] != "lb-gone"
    assert lb["name"] == "web"
    assert list(lbaas.lbs) == [lb["id"]]


def test_unknown_metro_is_a_configuration_error():
    emlb, lbaas = build_lb(metro="zz")

    with pytest.raises(ConfigurationError):
        emlb.ensure_load_balancer("web", "", {80: []})
    assert lbaas.lbs == {}


def test_deleting_a_missing_load_balancer_is_a_noop():
    emlb, lbaas = build_lb()

    emlb.delete_load_balancer("lb-gone")

    assert lbaas.writes == []
