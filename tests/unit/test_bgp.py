import pytest

from metal_bgp.bgp import BGPProvisioner, device_id_from_provider_id
from metal_bgp.errors import APIError, NotFoundError
from metal_bgp.resources import BGPConfig, BGPNeighbor

from fakes import FakeMetal


def build_provisioner(metal: FakeMetal) -> BGPProvisioner:
    return BGPProvisioner(metal, "project-1", local_asn=65000, bgp_pass="md5pass")


def test_enable_project_bgp_creates_when_missing():
    metal = FakeMetal()
    provisioner = build_provisioner(metal)

    assert provisioner.enable_project_bgp() is True
    assert metal.created_configs == [
        {
            "asn": 65000,
            "md5": "md5pass",
            "deployment_type": "local",
            "use_case": "kubernetes-load-balancer",
        }
    ]

    # config is now present and enabled
    assert provisioner.enable_project_bgp() is False
    assert len(metal.created_configs) == 1


@pytest.mark.parametrize("status", ["disabled", "DISABLED"])
def test_enable_project_bgp_recreates_disabled_config(status):
    metal = FakeMetal()
    metal.bgp_config = BGPConfig(id="bgp-1", status=status)

    assert build_provisioner(metal).enable_project_bgp() is True
    assert len(metal.created_configs) == 1


def test_enable_project_bgp_treats_empty_id_as_missing():
    metal = FakeMetal()
    metal.bgp_config = BGPConfig(id="", status="enabled")

    assert build_provisioner(metal).enable_project_bgp() is True


def test_ensure_node_bgp_enabled_tolerates_existing_session():
    metal = FakeMetal()
    metal.session_error = APIError("device already has session", 422)

    build_provisioner(metal).ensure_node_bgp_enabled("equinixmetal://dev-1")

    assert metal.sessions == [("dev-1", "ipv4")]


def test_ensure_node_bgp_enabled_propagates_other_errors():
    metal = FakeMetal()
    metal.session_error = APIError("forbidden", 403)

    with pytest.raises(APIError):
        build_provisioner(metal).ensure_node_bgp_enabled("dev-1")


def test_get_node_bgp_neighbor_picks_ipv4():
    metal = FakeMetal()
    v6 = BGPNeighbor(6, 65000, "2604::1", 65530, ["2604::fe"])
    v4 = BGPNeighbor(4, 65000, "10.0.0.5", 65530, ["169.254.255.1", "169.254.255.2"])
    metal.neighbors["dev-1"] = [v6, v4]

    assert build_provisioner(metal).get_node_bgp_neighbor("packet://dev-1") is v4


def test_get_node_bgp_neighbor_errors():
    metal = FakeMetal()
    metal.neighbors["dev-1"] = [BGPNeighbor(6, 65000, "2604::1", 65530)]
    provisioner = build_provisioner(metal)

    with pytest.raises(NotFoundError):
        provisioner.get_node_bgp_neighbor("dev-1")
    with pytest.raises(APIError):
        provisioner.get_node_bgp_neighbor("unknown")


def test_device_id_from_provider_id():
    assert device_id_from_provider_id("equinixmetal://abc") == "abc"
    assert device_id_from_provider_id("packet://abc") == "abc"
    assert device_id_from_provider_id("abc") == "abc"
    with pytest.raises(ValueError):
        device_id_from_provider_id("")
    with pytest.raises(ValueError):
        device_id_from_provider_id("aws://abc")
