"""A chained plugin that limits a container's bandwidth with tc."""

from __future__ import annotations

import dataclasses
import hashlib
import json
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cnimeta.cni import (
    CURRENT_VERSION,
    CmdArgs,
    CniError,
    Interface,
    Result,
    parse_prev_result,
    plugin_main,
)
from cnimeta.ifb import create_egress_qdisc, create_ifb, create_ingress_qdisc, teardown_ifb

SUPPORTED_VERSIONS = tuple(dict.fromkeys(("0.3.0", "0.3.1", CURRENT_VERSION)))

_SYSFS_NET = Path("/sys/class/net")
_ENTRY_KEYS = ("ingressRate", "ingressBurst", "egressRate", "egressBurst")


@dataclass
class BandwidthEntry:
    """Rates in bits per second and bursts in bits; 0 means no limit."""

    ingress_rate: int = 0
    ingress_burst: int = 0
    egress_rate: int = 0
    egress_burst: int = 0

    def is_zero(self) -> bool:
        return (
            self.ingress_burst == 0
            and self.ingress_rate == 0
            and self.egress_burst == 0
            and self.egress_rate == 0
        )


@dataclass
class BandwidthConf:
    cni_version: str = ""
    name: str = ""
    type: str = ""
    bandwidth: BandwidthEntry | None = None
    runtime_bandwidth: BandwidthEntry | None = None
    prev_result: Result | None = None


def _lookup(data: dict[str, Any], key: str) -> Any:
    """Find a key exactly, or else ignoring case, as JSON field matching does."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for name, value in data.items():
        if name.casefold() == folded:
            return value
    return None


def _typed(data: dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    value = _lookup(data, key)
    if value is None:
        return default
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _entry(data: dict[str, Any]) -> BandwidthEntry:
    return BandwidthEntry(
        ingress_rate=_typed(data, "ingressRate", int, 0),
        ingress_burst=_typed(data, "ingressBurst", int, 0),
        egress_rate=_typed(data, "egressRate", int, 0),
        egress_burst=_typed(data, "egressBurst", int, 0),
    )


def parse_config(stdin: bytes | str) -> BandwidthConf:
    """Parse and validate the configuration, including any prevResult."""
    try:
        data = json.loads(stdin)
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        runtime = _typed(data, "runtimeConfig", dict, {})
        runtime_bw = _typed(runtime, "bandwidth", dict)
        has_static = any(_lookup(data, key) is not None for key in _ENTRY_KEYS)
        conf = BandwidthConf(
            cni_version=_typed(data, "cniVersion", str, ""),
            name=_typed(data, "name", str, ""),
            type=_typed(data, "type", str, ""),
            bandwidth=_entry(data) if has_static else None,
            runtime_bandwidth=_entry(runtime_bw) if runtime_bw is not None else None,
        )
        raw_prev = _typed(data, "prevResult", dict)
    except ValueError as exc:
        raise CniError(f"failed to parse network configuration: {exc}") from exc

    if raw_prev is not None:
        conf.prev_result = parse_prev_result(raw_prev, conf.cni_version)

    bandwidth = get_bandwidth(conf)
    if bandwidth is not None:
        validate_rate_and_burst(bandwidth.ingress_rate, bandwidth.ingress_burst)
        validate_rate_and_burst(bandwidth.egress_rate, bandwidth.egress_burst)
    return conf


def get_bandwidth(conf: BandwidthConf) -> BandwidthEntry | None:
    """Return the static limits if given, otherwise those from the runtime."""
    if conf.bandwidth is None and conf.runtime_bandwidth is not None:
        return conf.runtime_bandwidth
    return conf.bandwidth


def validate_rate_and_burst(rate: int, burst: int) -> None:
    if burst < 0 or rate < 0:
        raise CniError("rate and burst must be a positive integer")
    if burst == 0 and rate != 0:
        raise CniError("if rate is set, burst must also be set")
    if rate == 0 and burst != 0:
        raise CniError("if burst is set, rate must also be set")


def get_ifb_device_name(network_name: str, container_id: str) -> str:
    """Derive a short, stable IFB device name from the network and container."""
    return hashlib.sha1((network_name + container_id).encode()).hexdigest()[:4]


def _sysfs_attr(device_name: str, attr: str) -> str:
    if not device_name or "/" in device_name or device_name in (".", ".."):
        raise CniError("Link not found")
    try:
        return (_SYSFS_NET / device_name / attr).read_text().strip()
    except OSError as exc:
        raise CniError("Link not found") from exc


def get_mtu(device_name: str) -> int:
    value = _sysfs_attr(device_name, "mtu")
    try:
        return int(value)
    except ValueError as exc:
        raise CniError(f"invalid mtu for {device_name}: {value}") from exc


def _veth_peer_index(name: str) -> int:
    _sysfs_attr(name, "ifindex")
    try:
        proc = subprocess.run(
            ["ip", "-d", "-o", "link", "show", "dev", name],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise CniError(str(exc)) from exc
    if proc.returncode != 0 or "veth" not in proc.stdout.split():
        raise CniError(f'interface "{name}" was not a veth interface')
    try:
        return int(_sysfs_attr(name, "iflink"))
    except ValueError as exc:
        raise CniError(f"failed to get veth peer index for {name}") from exc


def get_host_interface(interfaces: list[Interface]) -> Interface:
    """Return the first host-side interface that is one end of a veth pair."""
    if not interfaces:
        raise CniError("no interfaces provided")
    last_error: CniError | None = None
    for iface in interfaces:
        if iface.sandbox:
            continue
        try:
            _veth_peer_index(iface.name)
        except CniError as exc:
            last_error = exc
            continue
        return iface
    reason = last_error.msg if last_error is not None else "<nil>"
    raise CniError(f"no host interface found. last error: {reason}")


def cmd_add(args: CmdArgs) -> Result:
    """Apply the configured limits and pass the previous result through."""
    conf = parse_config(args.stdin_data)
    prev = conf.prev_result
    if prev is None:
        raise CniError("must be called as chained plugin")

    bandwidth = get_bandwidth(conf)
    if bandwidth is None or bandwidth.is_zero():
        return dataclasses.replace(prev, cni_version=conf.cni_version)

    host_interface = get_host_interface(prev.interfaces)

    if bandwidth.egress_rate > 0 and bandwidth.egress_burst > 0:
        create_egress_qdisc(bandwidth.egress_rate, bandwidth.egress_burst, host_interface.name)

    if bandwidth.ingress_rate > 0 and bandwidth.ingress_burst > 0:
        mtu = get_mtu(host_interface.name)
        ifb_device_name = get_ifb_device_name(conf.name, args.container_id)
        create_ifb(ifb_device_name, mtu)
        mac = _sysfs_attr(ifb_device_name, "address")
        prev.interfaces.append(Interface(name=ifb_device_name, mac=mac))
        create_ingress_qdisc(
            bandwidth.ingress_rate, bandwidth.ingress_burst, host_interface.name, ifb_device_name
        )

    return dataclasses.replace(prev, cni_version=conf.cni_version)


def cmd_del(args: CmdArgs) -> None:
    """Remove the container's IFB device, if any."""
    conf = parse_config(args.stdin_data)
    teardown_ifb(get_ifb_device_name(conf.name, args.container_id))


def main(argv: list[str] | None = None) -> int:
    """Run the plugin; it is driven by CNI_* environment variables, not arguments."""
    del argv
    return plugin_main(cmd_add, cmd_del, SUPPORTED_VERSIONS)


if __name__ == "__main__":
    sys.exit(main())