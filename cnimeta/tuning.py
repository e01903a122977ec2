"""A meta plugin that tunes an existing interface: sysctls, MAC, promiscuity and MTU."""

from __future__ import annotations

import contextlib
import dataclasses
import json
import os
import posixpath
import re
import subprocess
import sys
from collections.abc import Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cnimeta.cni import (
    ALL_VERSIONS,
    CmdArgs,
    CniError,
    Result,
    load_args,
    parse_prev_result,
    plugin_main,
)

_SYSFS_NET = Path("/sys/class/net")
_MAC_COLON = re.compile(r"[0-9A-Fa-f]{2}(?:([:-])[0-9A-Fa-f]{2})(?:\1[0-9A-Fa-f]{2})*")
_MAC_DOTTED = re.compile(r"[0-9A-Fa-f]{4}(?:\.[0-9A-Fa-f]{4})*")


@dataclass
class TuningConf:
    cni_version: str = ""
    name: str = ""
    type: str = ""
    sysctl: dict[str, str] = field(default_factory=dict)
    prev_result: Result | None = None
    mac: str = ""
    promisc: bool = False
    mtu: int = 0


def _typed(data: dict[str, Any], key: str, kind: type, default: Any = None) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if (kind is int and isinstance(value, bool)) or not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def _parse_bool_arg(value: str) -> bool:
    lowered = value.lower()
    if lowered in ("1", "true"):
        return True
    if lowered in ("0", "false"):
        return False
    raise CniError(f"Boolean unmarshal error: invalid input {value}")


def _mac_from_env(env_args: str) -> str:
    pairs = load_args(env_args)
    unknown = [f"{key}={value}" for key, value in pairs.items()
               if key not in ("IgnoreUnknown", "MAC")]
    ignore_unknown = _parse_bool_arg(pairs["IgnoreUnknown"]) if "IgnoreUnknown" in pairs else False
    if unknown and not ignore_unknown:
        quoted = " ".join(json.dumps(item) for item in unknown)
        raise CniError(f"ARGS: unknown args [{quoted}]")
    return pairs.get("MAC", "")


def parse_conf(data: bytes | str, env_args: str) -> TuningConf:
    """Parse the configuration; a MAC in the CNI_ARGS overrides the configured one."""
    try:
        raw = json.loads(data)
        if not isinstance(raw, dict):
            raise ValueError("configuration must be a JSON object")
        sysctl = _typed(raw, "sysctl", dict, {})
        if not all(isinstance(value, str) for value in sysctl.values()):
            raise ValueError("sysctl: values must be strings")
        conf = TuningConf(
            cni_version=_typed(raw, "cniVersion", str, ""),
            name=_typed(raw, "name", str, ""),
            type=_typed(raw, "type", str, ""),
            sysctl=dict(sysctl),
            mac=_typed(raw, "mac", str, ""),
            promisc=_typed(raw, "promisc", bool, False),
            mtu=_typed(raw, "mtu", int, 0),
        )
        raw_prev = _typed(raw, "prevResult", dict)
    except ValueError as exc:
        raise CniError(f"failed to load netconf: {exc}") from exc

    if env_args:
        mac = _mac_from_env(env_args)
        if mac:
            conf.mac = mac

    if raw_prev is not None:
        conf.prev_result = parse_prev_result(raw_prev, conf.cni_version)
    return conf


def sysctl_path(key: str) -> str:
    """Map a dotted sysctl key to its /proc path; only net.* keys are allowed."""
    path = posixpath.normpath(posixpath.join("/proc/sys", key.replace(".", "/")))
    if not path.startswith("/proc/sys/net/"):
        raise CniError(f"invalid net sysctl key: {json.dumps(key)}")
    return path


def _valid_mac(mac: str) -> bool:
    if _MAC_COLON.fullmatch(mac):
        octets = len(re.split(r"[:-]", mac))
        return octets in (6, 8, 20)
    if _MAC_DOTTED.fullmatch(mac):
        return len(mac.split(".")) in (3, 4, 10)
    return False


def _require_link(ifname: str) -> None:
    if not ifname or "/" in ifname or ifname in (".", "..") or not (_SYSFS_NET / ifname).exists():
        raise CniError(f"failed to get {json.dumps(ifname)}: Link not found")


def _ip_link(*args: str) -> None:
    try:
        proc = subprocess.run(["ip", "link", *args], capture_output=True, text=True, check=False)
    except OSError as exc:
        raise CniError(str(exc)) from exc
    if proc.returncode != 0:
        raise CniError(proc.stderr.strip() or f"ip link: exit status {proc.returncode}")


def change_mac_addr(ifname: str, new_mac_addr: str) -> None:
    """Set the interface's hardware address, taking it down while doing so."""
    if not _valid_mac(new_mac_addr):
        raise CniError(
            f"invalid args {new_mac_addr} for MAC addr: address {new_mac_addr}: invalid MAC address"
        )
    _require_link(ifname)
    quoted = json.dumps(ifname)
    try:
        _ip_link("set", "dev", ifname, "down")
    except CniError as exc:
        raise CniError(f"failed to set {quoted} down: {exc.msg}") from exc
    try:
        _ip_link("set", "dev", ifname, "address", new_mac_addr)
    except CniError as exc:
        raise CniError(
            f"failed to set {quoted} address to {json.dumps(new_mac_addr)}: {exc.msg}"
        ) from exc
    _ip_link("set", "dev", ifname, "up")


def update_results_mac_addr(conf: TuningConf, ifname: str, new_mac_addr: str) -> None:
    """Record the new MAC on every result interface of that name."""
    if conf.prev_result is None:
        return
    for iface in conf.prev_result.interfaces:
        if iface.name == ifname:
            iface.mac = new_mac_addr


def change_promisc(ifname: str, value: bool) -> None:
    _require_link(ifname)
    _ip_link("set", "dev", ifname, "promisc", "on" if value else "off")


def change_mtu(ifname: str, mtu: int) -> None:
    _require_link(ifname)
    _ip_link("set", "dev", ifname, "mtu", str(mtu))


@contextlib.contextmanager
def _in_netns(path: str) -> Iterator[None]:
    """Run the body inside the network namespace at path, then return."""
    try:
        target = os.open(path, os.O_RDONLY)
    except OSError as exc:
        raise CniError(f"failed to open netns {json.dumps(path)}: {exc}") from exc
    try:
        try:
            original = os.open("/proc/thread-self/ns/net", os.O_RDONLY)
        except OSError as exc:
            raise CniError(f"failed to get current netns: {exc}") from exc
        try:
            try:
                os.setns(target, os.CLONE_NEWNET)
            except OSError as exc:
                raise CniError(f"failed to enter netns {json.dumps(path)}: {exc}") from exc
            try:
                yield
            finally:
                os.setns(original, os.CLONE_NEWNET)
        finally:
            os.close(original)
    finally:
        os.close(target)


def cmd_add(args: CmdArgs) -> Result:
    """Apply the tuning inside the container's namespace and pass the result through."""
    conf = parse_conf(args.stdin_data, args.args)

    # /proc/sys/net belongs to the network namespace, so enter it first.
    with _in_netns(args.netns):
        for key, value in conf.sysctl.items():
            path = sysctl_path(key)
            try:
                Path(path).write_text(value)
            except OSError as exc:
                raise CniError(str(exc)) from exc

        if conf.mac:
            change_mac_addr(args.ifname, conf.mac)
            update_results_mac_addr(conf, args.ifname, conf.mac)
        if conf.promisc:
            change_promisc(args.ifname, True)
        if conf.mtu != 0:
            change_mtu(args.ifname, conf.mtu)

    if conf.prev_result is None:
        raise CniError("no previous result to pass through")
    return dataclasses.replace(conf.prev_result, cni_version=conf.cni_version)


def cmd_del(args: CmdArgs) -> TuningConf:
    """Check the configuration and return it; settings are not reverted on delete."""
    return parse_conf(args.stdin_data, args.args)


def main(argv: list[str] | None = None) -> int:
    """Run the plugin; it is driven by CNI_* environment variables, not arguments."""
    del argv
    return plugin_main(cmd_add, cmd_del, ALL_VERSIONS)


if __name__ == "__main__":
    sys.exit(main())