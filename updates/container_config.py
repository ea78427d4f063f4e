"""
Create-body derivation for container recreation.

Turns a container's inspect payload into an Engine API create body that
reproduces it: runtime-assigned fields are dropped, shared network modes lose
their port settings, and per-network endpoint settings are rebuilt from the
old NetworkSettings.
"""

import copy
import logging
from typing import Any, Dict, Optional, Tuple

from models.container_models import SHORT_ID_LENGTH, ContainerSnapshot
from updates.dependency_analyzer import parse_network_mode_ref

logger = logging.getLogger(__name__)

# Assigned by the daemon or tied to the old container; invalid on create
RUNTIME_HOST_CONFIG_FIELDS = (
    'ContainerIDFile',
    'ResolvConfPath',
    'HostnamePath',
    'HostsPath',
    'Runtime',
    'RestartCount',
    'AutoRemove',
)

# Conflict with network_mode service:* / container:*
SHARED_MODE_HOST_CONFIG_FIELDS = (
    'PortBindings',
    'PublishAllPorts',
)

# Config fields carried over verbatim when set
PASSTHROUGH_CONFIG_FIELDS = (
    'Cmd',
    'Entrypoint',
    'WorkingDir',
    'User',
    'Healthcheck',
    'StopSignal',
    'Tty',
    'OpenStdin',
)


def is_shared_network_mode(network_mode: Optional[str]) -> bool:
    return parse_network_mode_ref(network_mode) is not None


def clean_host_config(host_config: Dict[str, Any], container_name: str = "") -> Tuple[Dict[str, Any], bool]:
    """
    Remove container-specific and create-invalid fields from HostConfig.

    Returns:
        (cleaned HostConfig, whether the container uses a shared network mode)
    """
    cleaned = copy.deepcopy(host_config or {})

    for field_name in RUNTIME_HOST_CONFIG_FIELDS:
        cleaned.pop(field_name, None)

    network_mode = cleaned.get('NetworkMode') or ''
    shared = is_shared_network_mode(network_mode)
    if shared:
        for field_name in SHARED_MODE_HOST_CONFIG_FIELDS:
            if cleaned.pop(field_name, None) is not None:
                logger.info(f"Removing {field_name} from {container_name} (conflicts with network_mode {network_mode})")

    restart_policy = cleaned.get('RestartPolicy')
    if isinstance(restart_policy, dict) and not restart_policy.get('Name'):
        cleaned['RestartPolicy'] = {'Name': 'no'}

    return cleaned, shared


def prepare_networking_config(network_settings: Dict[str, Any], shared_network_mode: bool) -> Optional[Dict[str, Any]]:
    """
    Rebuild NetworkingConfig.EndpointsConfig from inspected NetworkSettings.

    Only IPAMConfig, Links and Aliases are kept; networks whose entry ends up
    empty are dropped. Shared network modes get no networking config at all.
    """
    if shared_network_mode:
        return None

    networks = (network_settings or {}).get('Networks') or {}
    endpoints_config = {}
    for network_name, network_data in networks.items():
        if not isinstance(network_data, dict):
            continue

        endpoint = {}
        ipam_config = {k: v for k, v in (network_data.get('IPAMConfig') or {}).items() if v}
        if ipam_config:
            endpoint['IPAMConfig'] = ipam_config
        if network_data.get('Links'):
            endpoint['Links'] = list(network_data['Links'])

        # Short-ID aliases are added by the daemon for the old container
        aliases = [a for a in (network_data.get('Aliases') or []) if len(a) != SHORT_ID_LENGTH]
        if aliases:
            endpoint['Aliases'] = aliases

        if endpoint:
            endpoints_config[network_name] = endpoint

    if not endpoints_config:
        return None
    return {'EndpointsConfig': endpoints_config}


def build_container_config(
    snapshot: ContainerSnapshot,
    image: str,
    network_mode_override: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Derive the create body for a replacement of `snapshot`.

    Args:
        snapshot: Inspected container to reproduce
        image: Image reference for the new container
        network_mode_override: Replacement NetworkMode (used when re-pointing
                               a dependent at its provider's new ID)

    Returns:
        Engine API create body (Image, Env, HostConfig, NetworkingConfig, ...)
    """
    config = snapshot.config or {}
    host_config = dict(snapshot.host_config or {})
    if network_mode_override:
        host_config['NetworkMode'] = network_mode_override

    cleaned_host_config, shared = clean_host_config(host_config, snapshot.name)
    networking_config = prepare_networking_config(snapshot.network_settings, shared)

    body: Dict[str, Any] = {'Image': image}

    if isinstance(config.get('Env'), list):
        body['Env'] = list(config['Env'])
    for field_name in PASSTHROUGH_CONFIG_FIELDS:
        if config.get(field_name):
            body[field_name] = copy.deepcopy(config[field_name])

    if not shared and config.get('ExposedPorts'):
        body['ExposedPorts'] = dict(config['ExposedPorts'])

    # Auto-assigned hostnames are the old short ID; shared modes inherit the provider's
    hostname = config.get('Hostname')
    if hostname and not shared and not snapshot.id.startswith(hostname):
        body['Hostname'] = hostname

    if config.get('Labels'):
        body['Labels'] = dict(config['Labels'])
    if cleaned_host_config:
        body['HostConfig'] = cleaned_host_config
    if networking_config:
        body['NetworkingConfig'] = networking_config

    return body
