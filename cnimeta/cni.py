"""Shared CNI plugin plumbing: results, arguments, delegation and the entry point."""

from __future__ import annotations

import ipaddress
import json
import os
import subprocess
import sys
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import IO, Any

CURRENT_VERSION = "0.3.1"
CURRENT_RESULT_VERSIONS = ("0.3.0", "0.3.1")
LEGACY_RESULT_VERSIONS = ("", "0.1.0", "0.2.0")
ALL_VERSIONS = ("0.1.0", "0.2.0", "0.3.0", "0.3.1")
DEFAULT_CONFIG_VERSION = "0.1.0"

ERR_INCOMPATIBLE_VERSION = 1
ERR_INTERNAL = 100

IPInterface = ipaddress.IPv4Interface | ipaddress.IPv6Interface
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class CniError(Exception):
    """An error reported back to the container runtime as a CNI error object."""

    def __init__(self, msg: str, code: int = ERR_INTERNAL, details: str = "") -> None:
        super().__init__(msg)
        self.msg = msg
        self.code = code
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "msg": self.msg}
        if self.details:
            out["details"] = self.details
        return out


@dataclass
class CmdArgs:
    """The arguments a runtime hands to a plugin invocation."""

    container_id: str = ""
    netns: str = ""
    ifname: str = ""
    args: str = ""
    path: str = ""
    stdin_data: bytes = b""


@dataclass
class Interface:
    name: str
    mac: str = ""
    sandbox: str = ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name}
        if self.mac:
            out["mac"] = self.mac
        if self.sandbox:
            out["sandbox"] = self.sandbox
        return out


@dataclass
class IPConfig:
    address: IPInterface
    version: str = ""
    gateway: IPAddress | None = None
    interface: int | None = None

    def __post_init__(self) -> None:
        if not self.version:
            self.version = str(self.address.version)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"version": self.version}
        if self.interface is not None:
            out["interface"] = self.interface
        out["address"] = str(self.address)
        if self.gateway is not None:
            out["gateway"] = str(self.gateway)
        return out


@dataclass
class Route:
    dst: IPInterface
    gw: IPAddress | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"dst": str(self.dst)}
        if self.gw is not None:
            out["gw"] = str(self.gw)
        return out


@dataclass
class Result:
    """A plugin result in the current layout; rendered in any supported version."""

    cni_version: str = CURRENT_VERSION
    interfaces: list[Interface] = field(default_factory=list)
    ips: list[IPConfig] = field(default_factory=list)
    routes: list[Route] = field(default_factory=list)
    dns: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, cni_version: str) -> dict[str, Any]:
        """Return the JSON object for this result in the given spec version."""
        if cni_version in CURRENT_RESULT_VERSIONS:
            out: dict[str, Any] = {"cniVersion": cni_version}
            if self.interfaces:
                out["interfaces"] = [iface.to_dict() for iface in self.interfaces]
            if self.ips:
                out["ips"] = [ip.to_dict() for ip in self.ips]
            if self.routes:
                out["routes"] = [route.to_dict() for route in self.routes]
            out["dns"] = self._dns_dict()
            return out
        if cni_version in LEGACY_RESULT_VERSIONS:
            return self._legacy_dict(cni_version)
        raise CniError(f'cannot convert version 0.3.x to "{cni_version}"')

    def _dns_dict(self) -> dict[str, Any]:
        return {key: value for key, value in self.dns.items() if value}

    def _legacy_dict(self, cni_version: str) -> dict[str, Any]:
        ip4 = next((ip for ip in self.ips if ip.version == "4"), None)
        ip6 = next((ip for ip in self.ips if ip.version == "6"), None)
        if ip4 is None and ip6 is None:
            raise CniError("cannot convert: no valid IP addresses")

        sections: dict[str, dict[str, Any]] = {}
        for key, ip in (("ip4", ip4), ("ip6", ip6)):
            if ip is None:
                continue
            section: dict[str, Any] = {"ip": str(ip.address)}
            if ip.gateway is not None:
                section["gateway"] = str(ip.gateway)
            sections[key] = section

        for route in self.routes:
            key = "ip4" if route.dst.version == 4 else "ip6"
            if key in sections:
                sections[key].setdefault("routes", []).append(route.to_dict())

        out: dict[str, Any] = {}
        if cni_version:
            out["cniVersion"] = cni_version
        out.update(sections)
        out["dns"] = self._dns_dict()
        return out


def _parse_cidr(value: Any) -> IPInterface:
    if not isinstance(value, str) or "/" not in value:
        raise ValueError(f"invalid CIDR address: {value!r}")
    return ipaddress.ip_interface(value)


def _parse_address(value: Any) -> IPAddress | None:
    if value in (None, ""):
        return None
    if not isinstance(value, str):
        raise ValueError(f"invalid IP address: {value!r}")
    return ipaddress.ip_address(value)


def _route_from_dict(data: Mapping[str, Any]) -> Route:
    return Route(dst=_parse_cidr(data["dst"]), gw=_parse_address(data.get("gw")))


def _ip_from_dict(data: Mapping[str, Any]) -> IPConfig:
    interface = data.get("interface")
    return IPConfig(
        address=_parse_cidr(data["address"]),
        version=str(data.get("version") or ""),
        gateway=_parse_address(data.get("gateway")),
        interface=int(interface) if interface is not None else None,
    )


def _dns_from(raw: Mapping[str, Any]) -> dict[str, Any]:
    dns = raw.get("dns") or {}
    if not isinstance(dns, Mapping):
        raise ValueError("dns must be an object")
    return dict(dns)


def _current_from_dict(raw: Mapping[str, Any]) -> Result:
    return Result(
        interfaces=[
            Interface(
                name=str(item.get("name", "")),
                mac=str(item.get("mac") or ""),
                sandbox=str(item.get("sandbox") or ""),
            )
            for item in raw.get("interfaces") or []
        ],
        ips=[_ip_from_dict(item) for item in raw.get("ips") or []],
        routes=[_route_from_dict(item) for item in raw.get("routes") or []],
        dns=_dns_from(raw),
    )


def _legacy_from_dict(raw: Mapping[str, Any]) -> Result:
    result = Result(dns=_dns_from(raw))
    for key, version in (("ip4", "4"), ("ip6", "6")):
        section = raw.get(key)
        if not section:
            continue
        result.ips.append(
            IPConfig(
                address=_parse_cidr(section["ip"]),
                version=version,
                gateway=_parse_address(section.get("gateway")),
                interface=-1,
            )
        )
        result.routes.extend(_route_from_dict(item) for item in section.get("routes") or [])
    return result


def _result_from_dict(raw: Any, cni_version: str) -> Result:
    if not isinstance(raw, Mapping):
        raise CniError("result must be a JSON object")
    if cni_version in CURRENT_RESULT_VERSIONS:
        parse = _current_from_dict
    elif cni_version in LEGACY_RESULT_VERSIONS:
        parse = _legacy_from_dict
    else:
        raise CniError(f'unsupported CNI result version "{cni_version}"')
    try:
        return parse(raw)
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise CniError(f"invalid result: {exc}") from exc


def parse_prev_result(raw: Any, cni_version: str) -> Result:
    """Parse a chained plugin's prevResult, given in cni_version, into the current layout."""
    try:
        return _result_from_dict(raw, cni_version)
    except CniError as exc:
        raise CniError(f"could not parse prevResult: {exc.msg}") from exc


def _write_json(stream: IO[str], obj: Any) -> None:
    stream.write(json.dumps(obj, indent=4))


def print_result(result: Result | None, cni_version: str, stream: IO[str] | None = None) -> None:
    """Write the result, rendered in cni_version, as JSON to stream (stdout by default)."""
    if result is None:
        raise CniError("no result to print")
    _write_json(sys.stdout if stream is None else stream, result.to_dict(cni_version))


def load_args(args: str) -> dict[str, str]:
    """Split a CNI_ARGS string of the form K1=V1;K2=V2 into a dictionary."""
    if not args:
        return {}
    pairs: dict[str, str] = {}
    for item in args.split(";"):
        key, sep, value = item.partition("=")
        if not sep:
            raise CniError(f'ARGS: invalid pair "{item}"')
        pairs[key] = value
    return pairs


def _config_version(data: bytes) -> str:
    try:
        conf = json.loads(data)
    except ValueError as exc:
        raise CniError(f"decoding version from network config: {exc}") from exc
    if not isinstance(conf, dict):
        raise CniError("decoding version from network config: not a JSON object")
    version = conf.get("cniVersion")
    if version in (None, ""):
        return DEFAULT_CONFIG_VERSION
    return str(version)


def _find_in_path(plugin_type: str, paths: list[str]) -> str:
    if not paths:
        raise CniError("no paths provided")
    for directory in paths:
        candidate = os.path.join(directory, plugin_type)
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    raise CniError(f'failed to find plugin "{plugin_type}" in path {paths}')


def _error_from_output(output: bytes) -> CniError:
    try:
        data = json.loads(output)
        return CniError(
            str(data.get("msg", "")),
            code=int(data.get("code", ERR_INTERNAL)),
            details=str(data.get("details") or ""),
        )
    except (ValueError, TypeError, AttributeError) as exc:
        return CniError(f"netplugin failed but error parsing its diagnostic message {output!r}: {exc}")


def _exec_plugin(plugin_type: str, netconf_bytes: bytes, command: str) -> bytes:
    paths = [p for p in os.environ.get("CNI_PATH", "").split(os.pathsep) if p]
    plugin = _find_in_path(plugin_type, paths)
    env = {**os.environ, "CNI_COMMAND": command}
    proc = subprocess.run(
        [plugin], input=netconf_bytes, stdout=subprocess.PIPE, env=env, check=False
    )
    if proc.returncode != 0:
        raise _error_from_output(proc.stdout)
    return proc.stdout


def delegate_add(plugin_type: str, netconf_bytes: bytes) -> Result:
    """Run another plugin's ADD with the given configuration and return its result."""
    version = _config_version(netconf_bytes)
    output = _exec_plugin(plugin_type, netconf_bytes, "ADD")
    try:
        raw = json.loads(output)
    except ValueError as exc:
        raise CniError(f"failed to parse delegate result: {exc}") from exc
    result = _result_from_dict(raw, version)
    result.cni_version = version
    return result


def delegate_del(plugin_type: str, netconf_bytes: bytes) -> None:
    """Run another plugin's DEL with the given configuration."""
    _exec_plugin(plugin_type, netconf_bytes, "DEL")


_REQUIRED_ENV = {
    "CNI_CONTAINERID": {"ADD", "GET", "DEL"},
    "CNI_NETNS": {"ADD", "GET"},
    "CNI_IFNAME": {"ADD", "GET", "DEL"},
    "CNI_PATH": {"ADD", "GET", "DEL"},
}

_KNOWN_COMMANDS = ("ADD", "DEL", "GET")


def _dispatch(
    cmd_add: Callable[[CmdArgs], Result | None],
    cmd_del: Callable[[CmdArgs], None],
    supported: list[str],
    environ: Mapping[str, str],
    stdin: IO[Any],
    stdout: IO[str],
) -> None:
    command = environ.get("CNI_COMMAND", "")
    if command == "VERSION":
        _write_json(stdout, {"cniVersion": CURRENT_VERSION, "supportedVersions": supported})
        return

    missing = [name for name, commands in _REQUIRED_ENV.items()
               if command in commands and not environ.get(name)]
    if not command:
        missing.insert(0, "CNI_COMMAND")
    if missing:
        raise CniError(f"required env variables [{','.join(missing)}] missing")

    data = stdin.read()
    if isinstance(data, str):
        data = data.encode()
    args = CmdArgs(
        container_id=environ.get("CNI_CONTAINERID", ""),
        netns=environ.get("CNI_NETNS", ""),
        ifname=environ.get("CNI_IFNAME", ""),
        args=environ.get("CNI_ARGS", ""),
        path=environ.get("CNI_PATH", ""),
        stdin_data=data,
    )

    if command not in _KNOWN_COMMANDS:
        raise CniError(f"unknown CNI_COMMAND: {command}")

    config_version = _config_version(data)
    if config_version not in supported:
        quoted = " ".join(f'"{v}"' for v in supported)
        raise CniError(
            "incompatible CNI versions",
            code=ERR_INCOMPATIBLE_VERSION,
            details=f'config is "{config_version}", plugin supports [{quoted}]',
        )

    if command == "GET":
        raise CniError("not implemented")

    if command == "ADD":
        result = cmd_add(args)
        if result is not None:
            print_result(result, result.cni_version, stdout)
    else:
        cmd_del(args)


def plugin_main(
    cmd_add: Callable[[CmdArgs], Result | None],
    cmd_del: Callable[[CmdArgs], None],
    supported_versions: Iterable[str],
    environ: Mapping[str, str] | None = None,
    stdin: IO[Any] | None = None,
    stdout: IO[str] | None = None,
) -> int:
    """Dispatch a plugin invocation described by CNI_* variables; return the exit status."""
    environ = os.environ if environ is None else environ
    stdin = sys.stdin.buffer if stdin is None else stdin
    stdout = sys.stdout if stdout is None else stdout
    try:
        _dispatch(cmd_add, cmd_del, list(supported_versions), environ, stdin, stdout)
    except CniError as exc:
        _write_json(stdout, exc.to_dict())
        return 1
    except Exception as exc:  # every failure must reach the runtime as a CNI error
        _write_json(stdout, CniError(str(exc)).to_dict())
        return 1
    return 0