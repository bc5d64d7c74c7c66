"""Tests for guest configuration parsing."""

import pytest

from pvescripts.core.guest_config import (
    parse_config_lines,
    parse_container_config,
    resolve_guest_hostname,
)
from pvescripts.core.models import GuestType

LXC_CONFIG = """\
# managed by helper scripts
arch: amd64
cores: 2
features: nesting=1
hostname: homeassistant
memory: 2048
net0: name=eth0,bridge=vmbr0,hwaddr=BC:24:11:00:00:01,ip=dhcp,type=veth
onboot: 1
ostype: debian
rootfs: local-lvm:vm-105-disk-0,size=8G
swap: 512
tags: community-script;smarthome
unprivileged: 1

[snapshot1]
hostname: old-name
memory: 1024
"""

VM_CONFIG = """\
boot: order=scsi0
cores: 4
name: docker-host
memory: 8192
"""


@pytest.mark.unit
class TestParseContainerConfig:
    def test_structured_fields(self):
        config = parse_container_config(LXC_CONFIG)

        assert config.hostname == "homeassistant"
        assert config.arch == "amd64"
        assert config.cores == 2
        assert config.memory == 2048
        assert config.swap == 512
        assert config.onboot == 1
        assert config.ostype == "debian"
        assert config.unprivileged == 1
        assert config.tags == "community-script;smarthome"
        assert config.rootfs_storage == "local-lvm"
        assert config.rootfs_size == "8G"

    def test_snapshot_sections_are_ignored(self):
        values = parse_config_lines(LXC_CONFIG)
        assert values["hostname"] == "homeassistant"
        assert values["memory"] == "2048"

    def test_non_numeric_values_become_none(self):
        config = parse_container_config("cores: many\nhostname: box\n")
        assert config.cores is None
        assert config.hostname == "box"

    def test_empty_content(self):
        config = parse_container_config("")
        assert config.hostname is None
        assert config.rootfs_storage is None


@pytest.mark.unit
class TestResolveGuestHostname:
    def test_container_hostname_from_config(self):
        assert resolve_guest_hostname(LXC_CONFIG, GuestType.CONTAINER, "105", "requested") == "homeassistant"

    def test_vm_name_from_config(self):
        assert resolve_guest_hostname(VM_CONFIG, GuestType.VM, "200", "requested") == "docker-host"

    def test_falls_back_to_requested_hostname(self):
        assert resolve_guest_hostname("", GuestType.CONTAINER, "105", "web-2") == "web-2"

    def test_falls_back_to_generated_name(self):
        assert resolve_guest_hostname("", GuestType.VM, "200") == "vm-200"
        assert resolve_guest_hostname("cores: 1\n", GuestType.CONTAINER, "105", "  ") == "lxc-105"
