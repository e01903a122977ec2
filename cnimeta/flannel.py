"""A meta plugin that builds a delegate configuration from flannel's subnet file."""

from __future__ import annotations

import contextlib
import ipaddress
import json
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from cnimeta import cni
from cnimeta.cni import ALL_VERSIONS, CmdArgs, CniError, Result, plugin_main

DEFAULT_SUBNET_FILE = "/run/flannel/subnet.env"
DEFAULT_DATA_DIR = "/var/lib/cni/flannel"

_UINT32_MAX = 2**32 - 1
_DIGITS = re.compile(r"[0-9]+")

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


@dataclass
class FlannelNetConf:
    cni_version: str = ""
    name: str = ""
    type: str = ""
    subnet_file: str = DEFAULT_SUBNET_FILE
    data_dir: str = DEFAULT_DATA_DIR
    delegate: dict[str, Any] | None = None


@dataclass
class SubnetEnv:
    """The values flannel writes to its subnet file; None where a line is absent."""

    nw: IPNetwork | None = None
    sn: IPNetwork | None = None
    mtu: int | None = None
    ipmasq: bool | None = None

    def missing(self) -> str:
        """Name the variables not yet seen, comma separated."""
        names = [
            name
            for name, value in (
                ("FLANNEL_NETWORK", self.nw),
                ("FLANNEL_SUBNET", self.sn),
                ("FLANNEL_MTU", self.mtu),
                ("FLANNEL_IPMASQ", self.ipmasq),
            )
            if value is None
        ]
        return ", ".join(names)


def _typed(data: dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def load_flannel_net_conf(data: bytes | str) -> FlannelNetConf:
    """Parse the plugin's own configuration, filling in the default paths."""
    try:
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("configuration must be a JSON object")
        return FlannelNetConf(
            cni_version=_typed(raw, "cniVersion", str, ""),
            name=_typed(raw, "name", str, ""),
            type=_typed(raw, "type", str, ""),
            subnet_file=_typed(raw, "subnetFile", str, DEFAULT_SUBNET_FILE),
            data_dir=_typed(raw, "dataDir", str, DEFAULT_DATA_DIR),
            delegate=_typed(raw, "delegate", dict),
        )
    except ValueError as exc:
        raise CniError(f"failed to load netconf: {exc}") from exc


def _parse_cidr(value: str) -> IPNetwork:
    if "/" not in value:
        raise ValueError(f"invalid CIDR address: {value}")
    return ipaddress.ip_network(value, strict=False)


def _parse_mtu(value: str) -> int:
    if not _DIGITS.fullmatch(value) or int(value) > _UINT32_MAX:
        raise ValueError(f'strconv.ParseUint: parsing "{value}": invalid syntax')
    return int(value)


def load_flannel_subnet_env(path: str | os.PathLike[str]) -> SubnetEnv:
    """Read flannel's subnet file; every one of the four variables must be present."""
    env = SubnetEnv()
    try:
        with open(path, encoding="utf-8") as handle:
            for line in handle:
                key, sep, value = line.rstrip("\r\n").partition("=")
                if key not in ("FLANNEL_NETWORK", "FLANNEL_SUBNET", "FLANNEL_MTU", "FLANNEL_IPMASQ"):
                    continue
                if not sep:
                    raise ValueError(f"{key} has no value")
                match key:
                    case "FLANNEL_NETWORK":
                        env.nw = _parse_cidr(value)
                    case "FLANNEL_SUBNET":
                        env.sn = _parse_cidr(value)
                    case "FLANNEL_MTU":
                        env.mtu = _parse_mtu(value)
                    case "FLANNEL_IPMASQ":
                        env.ipmasq = value == "true"
    except (OSError, ValueError) as exc:
        raise CniError(str(exc)) from exc

    missing = env.missing()
    if missing:
        raise CniError(f"{os.fspath(path)} is missing {missing}")
    return env


def save_scratch_net_conf(container_id: str, data_dir: str, netconf: bytes) -> None:
    """Keep the rendered delegate configuration for the later DEL."""
    directory = Path(data_dir)
    directory.mkdir(mode=0o700, parents=True, exist_ok=True)
    path = directory / container_id
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as handle:
        handle.write(netconf)


def consume_scratch_net_conf(container_id: str, data_dir: str) -> bytes:
    """Read and remove the saved configuration; FileNotFoundError if there is none."""
    path = Path(data_dir) / container_id
    try:
        return path.read_bytes()
    finally:
        # Removal failures are ignored; continuing is safe during DEL.
        with contextlib.suppress(OSError):
            path.unlink()


def build_delegate(conf: FlannelNetConf, env: SubnetEnv) -> dict[str, Any]:
    """Combine the delegate section with the subnet file into a full configuration."""
    if conf.delegate is None:
        delegate: dict[str, Any] = {}
    else:
        delegate = dict(conf.delegate)
        if "type" in delegate and not isinstance(delegate["type"], str):
            raise CniError("'delegate' dictionary, if present, must have (string) 'type' field")
        if "name" in delegate:
            raise CniError("'delegate' dictionary must not have 'name' field, it'll be set by flannel")
        if "ipam" in delegate:
            raise CniError("'delegate' dictionary must not have 'ipam' field, it'll be set by flannel")

    if env.nw is None or env.sn is None or env.mtu is None or env.ipmasq is None:
        raise CniError(f"subnet env is missing {env.missing()}")

    delegate["name"] = conf.name
    delegate.setdefault("type", "bridge")
    # When flannel does not masquerade, the delegate has to.
    delegate.setdefault("ipMasq", not env.ipmasq)
    delegate.setdefault("mtu", env.mtu)
    if delegate["type"] == "bridge":
        delegate.setdefault("isGateway", True)
    if conf.cni_version:
        delegate["cniVersion"] = conf.cni_version

    delegate["ipam"] = {
        "type": "host-local",
        "subnet": str(env.sn),
        "routes": [{"dst": str(env.nw)}],
    }
    return delegate


def delegate_add(container_id: str, data_dir: str, netconf: dict[str, Any]) -> Result:
    """Save the delegate configuration, then run the delegate plugin's ADD."""
    try:
        netconf_bytes = json.dumps(netconf).encode()
    except (TypeError, ValueError) as exc:
        raise CniError(f"error serializing delegate netconf: {exc}") from exc
    save_scratch_net_conf(container_id, data_dir, netconf_bytes)
    return cni.delegate_add(netconf["type"], netconf_bytes)


def cmd_add(args: CmdArgs) -> Result:
    conf = load_flannel_net_conf(args.stdin_data)
    env = load_flannel_subnet_env(conf.subnet_file)
    delegate = build_delegate(conf, env)
    return delegate_add(args.container_id, conf.data_dir, delegate)


def cmd_del(args: CmdArgs) -> None:
    """Run the delegate's DEL with the saved configuration, if one was saved."""
    conf = load_flannel_net_conf(args.stdin_data)
    try:
        netconf_bytes = consume_scratch_net_conf(args.container_id, conf.data_dir)
    except FileNotFoundError:
        # Resources already gone: nothing to do.
        return

    try:
        saved = json.loads(netconf_bytes)
        if not isinstance(saved, dict):
            raise ValueError("configuration must be a JSON object")
        plugin_type = _typed(saved, "type", str, "")
    except ValueError as exc:
        raise CniError(f"failed to parse netconf: {exc}") from exc

    cni.delegate_del(plugin_type, netconf_bytes)


def main(argv: list[str] | None = None) -> int:
    """Run the plugin; it is driven by CNI_* environment variables, not arguments."""
    del argv
    return plugin_main(cmd_add, cmd_del, ALL_VERSIONS)


if __name__ == "__main__":
    sys.exit(main())