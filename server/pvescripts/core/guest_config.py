"""Parsing helpers for Proxmox guest configuration files."""

from __future__ import annotations

import re
from typing import Dict, Optional

from .models import ContainerConfig, GuestType

_ROOTFS_RE = re.compile(r"^(?P<storage>[^:]+):(?P<volume>[^,]+)")
_SIZE_RE = re.compile(r"size=(?P<size>[^,]+)")

_INT_FIELDS = {"cores", "memory", "swap", "onboot", "unprivileged"}
_STR_FIELDS = {"hostname", "arch", "ostype", "tags"}


def parse_config_lines(content: str) -> Dict[str, str]:
    """Return the top-level ``key: value`` pairs of a guest config.

    Parsing stops at the first ``[section]`` header because snapshot and
    pending sections repeat keys with stale values.
    """

    values: Dict[str, str] = {}
    for raw_line in (content or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("["):
            break
        key, sep, value = line.partition(":")
        if not sep:
            continue
        key = key.strip()
        if key and key not in values:
            values[key] = value.strip()
    return values


def resolve_guest_hostname(
    content: str,
    guest_type: GuestType,
    guest_id: str,
    requested: Optional[str] = None,
) -> str:
    """Pick the effective hostname of a freshly cloned guest.

    Preference order: the name recorded in the guest config, the hostname
    that was requested for the clone, then ``<type>-<id>``.
    """

    configured = parse_config_lines(content).get(guest_type.hostname_key, "").strip()
    if configured:
        return configured
    if requested and requested.strip():
        return requested.strip()
    return f"{guest_type.value}-{guest_id}"


def _to_int(value: str) -> Optional[int]:
    try:
        return int(value.strip())
    except (TypeError, ValueError):
        return None


def parse_container_config(content: str) -> ContainerConfig:
    """Extract the structured LXC fields tracked by the registry."""

    fields: Dict[str, object] = {}
    for key, value in parse_config_lines(content).items():
        if key in _STR_FIELDS:
            fields[key] = value
        elif key in _INT_FIELDS:
            fields[key] = _to_int(value)
        elif key == "rootfs":
            match = _ROOTFS_RE.match(value)
            if not match:
                continue
            fields["rootfs_storage"] = match.group("storage")
            size_match = _SIZE_RE.search(value)
            if size_match:
                fields["rootfs_size"] = size_match.group("size")

    return ContainerConfig(**fields)


__all__ = [
    "parse_config_lines",
    "parse_container_config",
    "resolve_guest_hostname",
]
