"""A sample chained plugin that passes the previous result through."""

from __future__ import annotations

import dataclasses
import json
import sys
from dataclasses import dataclass
from typing import Any

from cnimeta.cni import (
    ALL_VERSIONS,
    CmdArgs,
    CniError,
    Result,
    parse_prev_result,
    plugin_main,
)


@dataclass
class SampleConf:
    cni_version: str = ""
    name: str = ""
    type: str = ""
    sample_config: dict[str, Any] | None = None
    prev_result: Result | None = None
    my_awesome_flag: bool = False
    another_awesome_arg: str = ""


def _typed(data: dict[str, Any], key: str, kind: type, default: Any) -> Any:
    value = data.get(key)
    if value is None:
        return default
    if not isinstance(value, kind):
        raise ValueError(f"{key}: expected {kind.__name__}, got {type(value).__name__}")
    return value


def parse_config(stdin: bytes | str) -> SampleConf:
    """Parse the network configuration, including any prevResult."""
    try:
        data = json.loads(stdin)
        if not isinstance(data, dict):
            raise ValueError("configuration must be a JSON object")
        runtime = _typed(data, "runtimeConfig", dict, None)
        conf = SampleConf(
            cni_version=_typed(data, "cniVersion", str, ""),
            name=_typed(data, "name", str, ""),
            type=_typed(data, "type", str, ""),
            sample_config=_typed(runtime, "sample", dict, None) if runtime is not None else None,
            my_awesome_flag=_typed(data, "myAwesomeFlag", bool, False),
            another_awesome_arg=_typed(data, "anotherAwesomeArg", str, ""),
        )
        raw_prev = _typed(data, "prevResult", dict, None)
    except ValueError as exc:
        raise CniError(f"failed to parse network configuration: {exc}") from exc

    if raw_prev is not None:
        conf.prev_result = parse_prev_result(raw_prev, conf.cni_version)

    if not conf.another_awesome_arg:
        raise CniError("anotherAwesomeArg must be specified")
    return conf


def cmd_add(args: CmdArgs) -> Result:
    """Check the container has IPs and pass the previous result through."""
    conf = parse_config(args.stdin_data)
    prev = conf.prev_result
    if prev is None:
        raise CniError("must be called as chained plugin")

    if conf.cni_version != "0.3.0":
        container_ips = [ip.address.ip for ip in prev.ips]
    else:
        container_ips = []
        for ip in prev.ips:
            if ip.interface is None:
                continue
            idx = ip.interface
            if 0 <= idx < len(prev.interfaces) and prev.interfaces[idx].name != args.ifname:
                continue
            container_ips.append(ip.address.ip)

    if not container_ips:
        raise CniError("got no container IPs")

    return dataclasses.replace(prev, cni_version=conf.cni_version)


def cmd_del(args: CmdArgs) -> None:
    """Validate the configuration; there is nothing to remove."""
    parse_config(args.stdin_data)


def main(argv: list[str] | None = None) -> int:
    """Run the plugin; it is driven by CNI_* environment variables, not arguments."""
    del argv
    return plugin_main(cmd_add, cmd_del, ALL_VERSIONS)


if __name__ == "__main__":
    sys.exit(main())