"""Configuration parsing and naming helpers for the port-mapping plugin."""

from __future__ import annotations

import hashlib
import ipaddress
import json
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from cnimeta.cni import CniError, Result, parse_prev_result

# Mark bit signalling that masquerading is required. Kubernetes uses 14 and 15,
# Calico uses 20-31.
DEFAULT_MARK_BIT = 13
MAX_CHAIN_NAME_LENGTH = 28
MULTIPORT_MAX = 15
MAX_COMMENT_LENGTH = 255

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address

_LOOPBACK_V4 = ipaddress.IPv4Network("127.0.0.0/8")


@dataclass
class PortMapEntry:
    host_port: int
    container_port: int
    protocol: str = ""
    host_ip: str = ""


@dataclass
class PortMapConf:
    cni_version: str = ""
    name: str = ""
    type: str = ""
    snat: bool = True
    conditions_v4: list[str] | None = None
    conditions_v6: list[str] | None = None
    mark_masq_bit: int = DEFAULT_MARK_BIT
    external_set_mark_chain: str | None = None
    port_maps: list[PortMapEntry] = field(default_factory=list)
    prev_result: Result | None = None
    container_id: str = ""
    cont_ipv4: IPAddress | None = None
    cont_ipv6: IPAddress | None = None


def _field(data: dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _string_list(data: dict[str, Any], key: str) -> list[str] | None:
    value = _field(data, key, list)
    if value is not None and not all(isinstance(item, str) for item in value):
        raise ValueError(f"{key}: expected a list of strings")
    return value


def _entry(item: Any) -> PortMapEntry:
    if not isinstance(item, dict):
        raise ValueError("portMappings entries must be objects")
    return PortMapEntry(
        host_port=_field(item, "hostPort", int, 0),
        container_port=_field(item, "containerPort", int, 0),
        protocol=_field(item, "protocol", str, ""),
        host_ip=_field(item, "hostIP", str, ""),
    )


def parse_config(stdin: bytes | str, ifname: str) -> PortMapConf:
    """Parse and validate the configuration, picking the container IPs from prevResult."""
    try:
        data = json.loads(stdin)
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        runtime = _field(data, "runtimeConfig", dict, {})
        mark_bit = _field(data, "markMasqBit", int)
        external_chain = _field(data, "externalSetMarkChain", str)
        conf = PortMapConf(
            cni_version=_field(data, "cniVersion", str, ""),
            name=_field(data, "name", str, ""),
            type=_field(data, "type", str, ""),
            snat=_field(data, "snat", bool, True),
            conditions_v4=_string_list(data, "conditionsV4"),
            conditions_v6=_string_list(data, "conditionsV6"),
            external_set_mark_chain=external_chain,
            port_maps=[_entry(item) for item in _field(runtime, "portMappings", list, [])],
        )
        raw_prev = _field(data, "prevResult", dict)
    except ValueError as exc:
        raise CniError(f"failed to parse network configuration: {exc}") from exc

    if raw_prev is not None:
        conf.prev_result = parse_prev_result(raw_prev, conf.cni_version)

    if mark_bit is not None and external_chain is not None:
        raise CniError("Cannot specify externalSetMarkChain and markMasqBit")
    if mark_bit is not None:
        conf.mark_masq_bit = mark_bit
    if not 0 <= conf.mark_masq_bit <= 31:
        raise CniError("MasqMarkBit must be between 0 and 31")

    for pm in conf.port_maps:
        if pm.container_port <= 0:
            raise CniError(f"Invalid container port number: {pm.container_port}")
        if pm.host_port <= 0:
            raise CniError(f"Invalid host port number: {pm.host_port}")

    if conf.prev_result is not None:
        _pick_container_ips(conf, conf.prev_result, ifname)
    return conf


def _pick_container_ips(conf: PortMapConf, prev: Result, ifname: str) -> None:
    for ip in prev.ips:
        if ip.version == "6" and conf.cont_ipv6 is not None:
            continue
        if ip.version == "4" and conf.cont_ipv4 is not None:
            continue
        if ip.interface is not None:
            idx = ip.interface
            if 0 <= idx < len(prev.interfaces):
                iface = prev.interfaces[idx]
                if iface.name != ifname or not iface.sandbox:
                    continue
        if ip.version == "6":
            conf.cont_ipv6 = ip.address.ip
        elif ip.version == "4":
            conf.cont_ipv4 = ip.address.ip


def _as_ip(ip: IPAddress | str) -> IPAddress:
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def fmt_ip_port(ip: IPAddress | str, port: int) -> str:
    """Format ip:port for iptables, bracketing IPv6 literals."""
    addr = _as_ip(ip)
    if addr.version == 6:
        return f"[{addr}]:{port}"
    return f"{addr}:{port}"


def localhost_ip(is_v6: bool) -> str:
    """Return the loopback address of the given family as text."""
    loopback: IPAddress = ipaddress.IPv6Address(1) if is_v6 else _LOOPBACK_V4[1]
    return str(loopback)


def format_chain_name(prefix: str, name: str, container_id: str) -> str:
    """Derive a stable, length-limited chain name from a network and container."""
    digest = hashlib.sha512((name + container_id).encode()).hexdigest()
    return f"CNI-{prefix}{digest}"[:MAX_CHAIN_NAME_LENGTH]


def group_by_proto(entries: Iterable[PortMapEntry]) -> dict[str, list[int]]:
    """Group host ports by protocol, keeping the order of the entries."""
    out: dict[str, list[int]] = {}
    for entry in entries:
        out.setdefault(entry.protocol, []).append(entry.host_port)
    return out


def split_port_list(ports: Iterable[int]) -> list[str]:
    """Join ports into comma-separated lists of at most 15, as multiport allows."""
    port_list = [str(port) for port in ports]
    return [
        ",".join(port_list[start:start + MULTIPORT_MAX])
        for start in range(0, len(port_list), MULTIPORT_MAX)
    ]


def trim_comment(val: str) -> str:
    """Keep a comment within the 255-byte iptables limit."""
    raw = val.encode()
    if len(raw) <= MAX_COMMENT_LENGTH:
        return val
    return raw[:MAX_COMMENT_LENGTH - 2].decode(errors="ignore") + "..."