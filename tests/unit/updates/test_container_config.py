"""
Tests for create-body derivation.

Critical fields must survive recreation (env, labels, volumes, restart
policy, healthcheck); runtime-assigned fields must not.
"""

import pytest

from updates.container_config import (
    build_container_config,
    clean_host_config,
    prepare_networking_config,
)


@pytest.mark.unit
class TestCleanHostConfig:

    def test_runtime_fields_removed(self):
        cleaned, shared = clean_host_config({
            'NetworkMode': 'bridge',
            'ContainerIDFile': '',
            'ResolvConfPath': '/var/lib/docker/containers/x/resolv.conf',
            'HostsPath': '/var/lib/docker/containers/x/hosts',
            'Binds': ['/data:/data'],
        })

        assert 'ContainerIDFile' not in cleaned
        assert 'ResolvConfPath' not in cleaned
        assert 'HostsPath' not in cleaned
        assert cleaned['Binds'] == ['/data:/data']
        assert shared is False

    def test_shared_network_mode_drops_ports(self):
        cleaned, shared = clean_host_config({
            'NetworkMode': 'container:vpn',
            'PortBindings': {'8080/tcp': [{'HostPort': '8080'}]},
            'PublishAllPorts': False,
        }, "qbittorrent")

        assert shared is True
        assert 'PortBindings' not in cleaned
        assert 'PublishAllPorts' not in cleaned

    def test_empty_restart_policy_becomes_no(self):
        cleaned, _ = clean_host_config({'RestartPolicy': {'Name': '', 'MaximumRetryCount': 0}})
        assert cleaned['RestartPolicy'] == {'Name': 'no'}

    def test_input_not_mutated(self):
        host_config = {'NetworkMode': 'service:vpn', 'PortBindings': {}}
        clean_host_config(host_config)
        assert 'PortBindings' in host_config


@pytest.mark.unit
class TestNetworkingConfig:

    def test_keeps_static_ip_links_and_aliases(self):
        result = prepare_networking_config({
            'Networks': {
                'backend': {
                    'IPAMConfig': {'IPv4Address': '172.20.0.5', 'IPv6Address': ''},
                    'Links': ['db:database'],
                    'Aliases': ['api', 'abc123def456'],
                    'NetworkID': 'n1',
                    'IPAddress': '172.20.0.5',
                },
            },
        }, shared_network_mode=False)

        assert result == {
            'EndpointsConfig': {
                'backend': {
                    'IPAMConfig': {'IPv4Address': '172.20.0.5'},
                    'Links': ['db:database'],
                    'Aliases': ['api'],
                },
            },
        }

    def test_plain_networks_dropped(self):
        result = prepare_networking_config({
            'Networks': {'bridge': {'IPAMConfig': None, 'Aliases': None, 'NetworkID': 'n0'}},
        }, shared_network_mode=False)
        assert result is None

    def test_shared_mode_gets_none(self):
        result = prepare_networking_config({
            'Networks': {'backend': {'Aliases': ['api']}},
        }, shared_network_mode=True)
        assert result is None


@pytest.mark.unit
class TestBuildContainerConfig:

    def test_preserves_configuration(self, snapshot_factory):
        snapshot = snapshot_factory(
            "web",
            image="nginx:1.25",
            env=['TZ=UTC', 'MODE=prod'],
            labels={'traefik.enable': 'true'},
            stack="media",
            healthcheck={'Test': ['CMD', 'curl', '-f', 'http://localhost/']},
            host_config={
                'Binds': ['/srv/web:/usr/share/nginx/html:ro'],
                'PortBindings': {'80/tcp': [{'HostPort': '8080'}]},
                'HostsPath': '/var/lib/docker/containers/x/hosts',
            },
            config={'ExposedPorts': {'80/tcp': {}}, 'Cmd': ['nginx', '-g', 'daemon off;']},
        )

        body = build_container_config(snapshot, "nginx:1.25")

        assert body['Image'] == "nginx:1.25"
        assert body['Env'] == ['TZ=UTC', 'MODE=prod']
        assert body['Labels']['traefik.enable'] == 'true'
        assert body['Labels']['com.docker.compose.project'] == 'media'
        assert body['Healthcheck']['Test'][0] == 'CMD'
        assert body['Cmd'] == ['nginx', '-g', 'daemon off;']
        assert body['ExposedPorts'] == {'80/tcp': {}}
        assert body['HostConfig']['Binds'] == ['/srv/web:/usr/share/nginx/html:ro']
        assert body['HostConfig']['PortBindings'] == {'80/tcp': [{'HostPort': '8080'}]}
        assert body['HostConfig']['RestartPolicy'] == {'Name': 'unless-stopped'}
        assert 'HostsPath' not in body['HostConfig']

    def test_auto_hostname_dropped_custom_kept(self, snapshot_factory):
        auto = snapshot_factory("web")
        assert 'Hostname' not in build_container_config(auto, "nginx:latest")

        custom = snapshot_factory("web", config={'Hostname': 'webserver'})
        assert build_container_config(custom, "nginx:latest")['Hostname'] == 'webserver'

    def test_network_mode_override(self, snapshot_factory):
        snapshot = snapshot_factory(
            "app",
            network_mode="service:tunnel",
            host_config={'PortBindings': {'3000/tcp': [{'HostPort': '3000'}]}},
            config={'ExposedPorts': {'3000/tcp': {}}, 'Hostname': 'app'},
        )

        body = build_container_config(snapshot, "app:latest", network_mode_override="container:" + "f" * 64)

        assert body['HostConfig']['NetworkMode'] == "container:" + "f" * 64
        assert 'PortBindings' not in body['HostConfig']
        assert 'ExposedPorts' not in body
        assert 'Hostname' not in body
        assert 'NetworkingConfig' not in body
        # Snapshot itself untouched
        assert snapshot.host_config['NetworkMode'] == "service:tunnel"

    def test_networking_config_included(self, snapshot_factory):
        snapshot = snapshot_factory(
            "api",
            network_mode="backend",
            networks={'backend': {'Aliases': ['api'], 'IPAMConfig': {'IPv4Address': '10.0.0.2'}}},
        )

        body = build_container_config(snapshot, "api:2")

        assert body['NetworkingConfig']['EndpointsConfig']['backend']['Aliases'] == ['api']
