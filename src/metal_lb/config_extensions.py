"""oslo.config options for running the controller inside an oslo service.

The options mirror the sections of the YAML configuration file.
:func:`config_from_conf` turns a parsed ``ConfigOpts`` back into the same
mapping shape so both sources go through one loader.
"""

from typing import Any, Dict

from oslo_config import cfg

metal_opts = [
    cfg.StrOpt('api_key',
               secret=True,
               help='API token for the infrastructure provider.'),
    cfg.StrOpt('project_id',
               help='Project holding the cluster devices.'),
    cfg.StrOpt('base_url',
               default='https://api.equinix.com/metal/v1/',
               help='Base URL of the infrastructure REST API.'),
    cfg.StrOpt('metro',
               default='',
               help='Metro used for new IP reservations.'),
    cfg.StrOpt('facility',
               default='',
               help='Facility used for new IP reservations when no metro is set.'),
]

bgp_opts = [
    cfg.IntOpt('local_asn',
               default=65000,
               help='Local ASN announced by the cluster nodes.'),
    cfg.StrOpt('password',
               default='',
               secret=True,
               help='MD5 password for BGP sessions.'),
    cfg.StrOpt('node_selector',
               default='',
               help='Label selector limiting which nodes get BGP peers, '
                    'e.g. "bgp=enabled,!edge".'),
]

controller_opts = [
    cfg.StrOpt('load_balancer',
               default='',
               help='Load balancer implementation as scheme://path, e.g. '
                    'metallb:///metallb-system/config, kube-vip://, empty://. '
                    'Empty disables load balancing.'),
    cfg.StrOpt('eip_tag',
               default='',
               help='Tag of the reservation holding the control plane address. '
                    'Empty disables control plane failover.'),
    cfg.IntOpt('api_server_port',
               default=0,
               help='Port of the API server behind the control plane address; '
                    '0 detects it from the default/kubernetes Service.'),
    cfg.BoolOpt('use_host_ip',
                default=False,
                help='Health check the assigned node through its own address.'),
    cfg.IntOpt('resync_interval',
               default=60,
               help='Seconds between full resynchronisations.'),
    cfg.IntOpt('workers',
               default=4,
               help='Number of concurrent reconciliation tasks.'),
]


def register_opts(conf: cfg.ConfigOpts) -> None:
    """Register the controller options in the ``metal``, ``bgp`` and
    ``controller`` groups."""
    conf.register_opts(metal_opts, group='metal')
    conf.register_opts(bgp_opts, group='bgp')
    conf.register_opts(controller_opts, group='controller')


def config_from_conf(conf: cfg.ConfigOpts) -> Dict[str, Any]:
    """Return the registered options as a YAML-shaped configuration mapping."""
    return {
        'metal': {
            'api_key': conf.metal.api_key or '',
            'project_id': conf.metal.project_id or '',
            'base_url': conf.metal.base_url,
            'metro': conf.metal.metro,
            'facility': conf.metal.facility,
        },
        'bgp': {
            'local_asn': conf.bgp.local_asn,
            'password': conf.bgp.password,
            'node_selector': conf.bgp.node_selector,
        },
        'load_balancer': conf.controller.load_balancer,
        'control_plane': {
            'eip_tag': conf.controller.eip_tag,
            'api_server_port': conf.controller.api_server_port,
            'use_host_ip': conf.controller.use_host_ip,
        },
        'watchers': {
            'resync_interval': conf.controller.resync_interval,
            'workers': conf.controller.workers,
        },
    }
