"""Port forwarding from the host to a container, built from iptables NAT chains.

All chains live in the nat table. A shared top-level chain is entered from
PREROUTING and OUTPUT for locally destined traffic; it jumps to one chain per
container, which holds the DNAT rules:

    PREROUTING, OUTPUT: --dst-type local -j CNI-HOSTPORT-DNAT
    CNI-HOSTPORT-DNAT: --destination-ports 8080,8081 -j CNI-DN-abcd123
    CNI-DN-abcd123: -p tcp --dport 8080 -j DNAT --to-destination 192.0.2.33:80
"""

from __future__ import annotations

import dataclasses
import ipaddress
import subprocess
import sys
from pathlib import Path

from cnimeta.chain import Chain, IPTables, IPTablesError
from cnimeta.cni import ALL_VERSIONS, CmdArgs, CniError, Result, plugin_main
from cnimeta.portmap_config import (
    PortMapConf,
    fmt_ip_port,
    format_chain_name,
    group_by_proto,
    localhost_ip,
    parse_config,
    split_port_list,
    trim_comment,
)

# These names are shared between plugin versions; changing them breaks upgrades.
TOP_LEVEL_DNAT_CHAIN_NAME = "CNI-HOSTPORT-DNAT"
SET_MARK_CHAIN_NAME = "CNI-HOSTPORT-SETMARK"
MARK_MASQ_CHAIN_NAME = "CNI-HOSTPORT-MASQ"
OLD_TOP_LEVEL_SNAT_CHAIN_NAME = "CNI-HOSTPORT-SNAT"

IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


def _to_ip(ip: IPAddress | str) -> IPAddress:
    addr = ipaddress.ip_address(ip)
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


def _mark_def(mark_bit: int) -> str:
    value = 1 << mark_bit
    return f"{value:#x}/{value:#x}"


def gen_toplevel_dnat_chain() -> Chain:
    """Return the shared summary chain that every container chain hangs off."""
    return Chain(
        table="nat",
        name=TOP_LEVEL_DNAT_CHAIN_NAME,
        entry_chains=["PREROUTING", "OUTPUT"],
        entry_rules=[["-m", "addrtype", "--dst-type", "LOCAL"]],
    )


def gen_dnat_chain(net_name: str, container_id: str) -> Chain:
    """Return the per-container DNAT chain, still without rules."""
    return Chain(
        table="nat",
        name=format_chain_name("DN-", net_name, container_id),
        entry_chains=[TOP_LEVEL_DNAT_CHAIN_NAME],
    )


def fill_dnat_rules(chain: Chain, config: PortMapConf, container_ip: IPAddress | str) -> None:
    """Add the entry rules and the per-port mark and DNAT rules to the chain."""
    addr = _to_ip(container_ip)
    is_v6 = addr.version == 6
    comment = trim_comment(f'dnat name: "{config.name}" id: "{config.container_id}"')
    entries = config.port_maps
    set_mark_chain = config.external_set_mark_chain or SET_MARK_CHAIN_NAME

    conditions = config.conditions_v6 if is_v6 else config.conditions_v4
    proto_ports = group_by_proto(entries)
    for proto in sorted(proto_ports):
        for port_spec in split_port_list(proto_ports[proto]):
            rule = [
                "-m", "comment",
                "--comment", comment,
                "-m", "multiport",
                "-p", proto,
                "--destination-ports", port_spec,
            ]
            if conditions:
                rule.extend(conditions)
            chain.entry_rules.append(rule)

    # The mark rules must come before the DNAT rule of each entry.
    rules: list[list[str]] = []
    for entry in entries:
        base = ["-p", entry.protocol, "--dport", str(entry.host_port)]
        if entry.host_ip:
            base += ["-d", entry.host_ip]

        if config.snat:
            rules.append([*base, "-s", str(addr), "-j", set_mark_chain])
            if not is_v6:
                rules.append([*base, "-s", localhost_ip(False), "-j", set_mark_chain])

        rules.append(
            [*base, "-j", "DNAT", "--to-destination", fmt_ip_port(addr, entry.container_port)]
        )
    chain.rules = rules


def gen_set_mark_chain(mark_bit: int) -> Chain:
    """Return the chain that sets the to-be-masqueraded mark."""
    return Chain(
        table="nat",
        name=SET_MARK_CHAIN_NAME,
        rules=[[
            "-m", "comment",
            "--comment", "CNI portfwd masquerade mark",
            "-j", "MARK",
            "--set-xmark", _mark_def(mark_bit),
        ]],
    )


def gen_mark_masq_chain(mark_bit: int) -> Chain:
    """Return the chain that masquerades every packet carrying the mark."""
    return Chain(
        table="nat",
        name=MARK_MASQ_CHAIN_NAME,
        entry_chains=["POSTROUTING"],
        entry_rules=[["-m", "comment", "--comment", "CNI portfwd requiring masquerade"]],
        rules=[["-m", "mark", "--mark", _mark_def(mark_bit), "-j", "MASQUERADE"]],
    )


def gen_old_snat_chain(net_name: str, container_id: str) -> Chain:
    """Return the per-container SNAT chain that earlier versions created."""
    return Chain(
        table="nat",
        name=format_chain_name("SN-", net_name, container_id),
        entry_chains=[OLD_TOP_LEVEL_SNAT_CHAIN_NAME],
    )


def enable_localnet_routing(ifname: str) -> None:
    """Let 127/8 source addresses cross a routing boundary on the interface."""
    path = Path("/proc/sys/net/ipv4/conf") / ifname / "route_localnet"
    path.write_text("1")


def get_routable_host_if(container_ip: IPAddress | str) -> str:
    """Return the name of the interface that routes to the container, or ''."""
    try:
        proc = subprocess.run(
            ["ip", "route", "get", str(_to_ip(container_ip))],
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError:
        return ""
    if proc.returncode != 0:
        return ""
    for line in proc.stdout.splitlines():
        fields = line.split()
        if "dev" in fields:
            idx = fields.index("dev")
            if idx + 1 < len(fields):
                return fields[idx + 1]
    return ""


def _setup(chain: Chain, ipt: IPTables, what: str) -> None:
    try:
        chain.setup(ipt)
    except IPTablesError as exc:
        raise CniError(f"{what}: {exc}") from exc


def forward_ports(config: PortMapConf, container_ip: IPAddress | str) -> None:
    """Install the forwarding chains and rules for one container address."""
    addr = _to_ip(container_ip)
    is_v6 = addr.version == 6
    try:
        ipt = IPTables(is_v6=is_v6)
    except IPTablesError as exc:
        raise CniError(f"failed to open iptables: {exc}") from exc

    # The DNAT rules jump to the mark chains, so those come first.
    if config.snat:
        if config.external_set_mark_chain is None:
            for chain in (
                gen_set_mark_chain(config.mark_masq_bit),
                gen_mark_masq_chain(config.mark_masq_bit),
            ):
                _setup(chain, ipt, f"unable to create chain {chain.name}")

        if not is_v6:
            host_if = get_routable_host_if(addr)
            if host_if:
                try:
                    enable_localnet_routing(host_if)
                except OSError as exc:
                    raise CniError(f"unable to enable route_localnet: {exc}") from exc

    _setup(gen_toplevel_dnat_chain(), ipt, "failed to create top-level DNAT chain")

    dnat_chain = gen_dnat_chain(config.name, config.container_id)
    fill_dnat_rules(dnat_chain, config, addr)
    _setup(dnat_chain, ipt, "unable to setup DNAT")


def maybe_get_iptables(is_v6: bool) -> IPTables | None:
    """Return a handle if iptables for the protocol is usable, otherwise None."""
    try:
        ipt = IPTables(is_v6=is_v6)
        ipt.list("nat", "OUTPUT")
    except IPTablesError:
        return None
    return ipt


def unforward_ports(config: PortMapConf) -> None:
    """Remove everything forward_ports installed; safe when nothing is there."""
    dnat_chain = gen_dnat_chain(config.name, config.container_id)
    old_snat_chain = gen_old_snat_chain(config.name, config.container_id)

    handles = [("ipv4", maybe_get_iptables(False)), ("ipv6", maybe_get_iptables(True))]
    if all(ipt is None for _, ipt in handles):
        raise CniError("neither iptables nor ip6tables usable")

    for family, ipt in handles:
        if ipt is None:
            continue
        try:
            dnat_chain.teardown(ipt)
        except IPTablesError as exc:
            raise CniError(f"could not teardown {family} dnat: {exc}") from exc
        try:
            old_snat_chain.teardown(ipt)
        except IPTablesError:
            pass


def _parse(args: CmdArgs) -> PortMapConf:
    try:
        return parse_config(args.stdin_data, args.ifname)
    except CniError as exc:
        raise CniError(f"failed to parse config: {exc.msg}") from exc


def cmd_add(args: CmdArgs) -> Result:
    """Forward the configured ports and pass the previous result through."""
    conf = _parse(args)
    if conf.prev_result is None:
        raise CniError("must be called as chained plugin")

    if conf.port_maps:
        conf.container_id = args.container_id
        for ip in (conf.cont_ipv4, conf.cont_ipv6):
            if ip is not None:
                forward_ports(conf, ip)

    return dataclasses.replace(conf.prev_result, cni_version=conf.cni_version)


def cmd_del(args: CmdArgs) -> None:
    """Remove the forwarding for the container, for both address families."""
    conf = _parse(args)
    conf.container_id = args.container_id
    unforward_ports(conf)


def main(argv: list[str] | None = None) -> int:
    """Run the plugin; it is driven by CNI_* environment variables, not arguments."""
    del argv
    return plugin_main(cmd_add, cmd_del, ALL_VERSIONS)


if __name__ == "__main__":
    sys.exit(main())