import copy
import ipaddress
import json
import os
import shlex
import subprocess
from unittest import mock

import pytest

from cnimeta.chain import Chain, chain_exists
from cnimeta.cni import CmdArgs, CniError
from cnimeta.portmap import (
    cmd_add,
    cmd_del,
    fill_dnat_rules,
    forward_ports,
    gen_dnat_chain,
    gen_mark_masq_chain,
    gen_old_snat_chain,
    gen_set_mark_chain,
    gen_toplevel_dnat_chain,
    maybe_get_iptables,
    unforward_ports,
)
from cnimeta.portmap_config import parse_config

NET_NAME = "testNetName"
CONTAINER_ID = (
    "icee6giejonei6sohng6ahngee7laquohquee9shiGo7fohferakah3Feiyoolu2pei7ciPhoh7"
    "shaoX6vai3vuf0ahfaeng8yohb9ceu0daez5hashee8ooYai5wa3y"
)

FOUR_MAPPINGS = json.dumps({
    "name": "test",
    "type": "portmap",
    "cniVersion": "0.3.1",
    "runtimeConfig": {
        "portMappings": [
            {"hostPort": 8080, "containerPort": 80, "protocol": "tcp"},
            {"hostPort": 8081, "containerPort": 80, "protocol": "tcp"},
            {"hostPort": 8080, "containerPort": 81, "protocol": "udp"},
            {"hostPort": 8082, "containerPort": 82, "protocol": "udp"},
        ]
    },
    "snat": True,
    "conditionsV4": ["a", "b"],
    "conditionsV6": ["c", "d"],
})

ONE_MAPPING = {
    "name": "test",
    "type": "portmap",
    "cniVersion": "0.3.1",
    "runtimeConfig": {
        "portMappings": [{"hostPort": 8080, "containerPort": 80, "protocol": "tcp"}]
    },
    "conditionsV4": ["a", "b"],
    "conditionsV6": ["c", "d"],
}

COMMENT = f'dnat name: "test" id: "{CONTAINER_ID}"'


def test_standard_container_chain():
    assert gen_dnat_chain(NET_NAME, CONTAINER_ID) == Chain(
        table="nat",
        name="CNI-DN-bfd599665540dd91d5d28",
        entry_chains=["CNI-HOSTPORT-DNAT"],
    )

    conf = parse_config(FOUR_MAPPINGS, "foo")
    conf.container_id = CONTAINER_ID
    ch = gen_dnat_chain(conf.name, CONTAINER_ID)
    assert ch == Chain(
        table="nat",
        name="CNI-DN-67e92b96e692a494b6b85",
        entry_chains=["CNI-HOSTPORT-DNAT"],
    )

    fill_dnat_rules(ch, conf, ipaddress.ip_address("10.0.0.2"))
    assert ch.entry_rules == [
        ["-m", "comment", "--comment", COMMENT, "-m", "multiport",
         "-p", "tcp", "--destination-ports", "8080,8081", "a", "b"],
        ["-m", "comment", "--comment", COMMENT, "-m", "multiport",
         "-p", "udp", "--destination-ports", "8080,8082", "a", "b"],
    ]
    assert ch.rules == [
        ["-p", "tcp", "--dport", "8080", "-s", "10.0.0.2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-s", "127.0.0.1", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
        ["-p", "tcp", "--dport", "8081", "-s", "10.0.0.2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8081", "-s", "127.0.0.1", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8081", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
        ["-p", "udp", "--dport", "8080", "-s", "10.0.0.2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8080", "-s", "127.0.0.1", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:81"],
        ["-p", "udp", "--dport", "8082", "-s", "10.0.0.2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8082", "-s", "127.0.0.1", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8082", "-j", "DNAT", "--to-destination", "10.0.0.2:82"],
    ]

    ch.rules = []
    ch.entry_rules = []
    fill_dnat_rules(ch, conf, ipaddress.ip_address("2001:db8::2"))
    assert ch.rules == [
        ["-p", "tcp", "--dport", "8080", "-s", "2001:db8::2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "[2001:db8::2]:80"],
        ["-p", "tcp", "--dport", "8081", "-s", "2001:db8::2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8081", "-j", "DNAT", "--to-destination", "[2001:db8::2]:80"],
        ["-p", "udp", "--dport", "8080", "-s", "2001:db8::2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8080", "-j", "DNAT", "--to-destination", "[2001:db8::2]:81"],
        ["-p", "udp", "--dport", "8082", "-s", "2001:db8::2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "udp", "--dport", "8082", "-j", "DNAT", "--to-destination", "[2001:db8::2]:82"],
    ]
    assert [rule[-2:] for rule in ch.entry_rules] == [["c", "d"], ["c", "d"]]

    ch.rules = []
    ch.entry_rules = []
    conf.snat = False
    fill_dnat_rules(ch, conf, "10.0.0.2")
    assert ch.rules == [
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
        ["-p", "tcp", "--dport", "8081", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
        ["-p", "udp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:81"],
        ["-p", "udp", "--dport", "8082", "-j", "DNAT", "--to-destination", "10.0.0.2:82"],
    ]


def test_chain_with_external_mark():
    data = dict(ONE_MAPPING, externalSetMarkChain="PLZ-SET-MARK")
    conf = parse_config(json.dumps(data), "foo")
    conf.container_id = CONTAINER_ID
    ch = gen_dnat_chain(conf.name, CONTAINER_ID)
    fill_dnat_rules(ch, conf, ipaddress.ip_address("10.0.0.2"))
    assert ch.rules == [
        ["-p", "tcp", "--dport", "8080", "-s", "10.0.0.2", "-j", "PLZ-SET-MARK"],
        ["-p", "tcp", "--dport", "8080", "-s", "127.0.0.1", "-j", "PLZ-SET-MARK"],
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
    ]


def test_host_ip_is_added_to_rules():
    data = copy.deepcopy(ONE_MAPPING)
    data["runtimeConfig"]["portMappings"][0]["hostIP"] = "192.0.2.7"
    data["snat"] = False
    conf = parse_config(json.dumps(data), "foo")
    ch = gen_dnat_chain(conf.name, "c1")
    fill_dnat_rules(ch, conf, "10.0.0.2")
    assert ch.rules == [
        ["-p", "tcp", "--dport", "8080", "-d", "192.0.2.7",
         "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
    ]


def test_multiport_entries_are_split_in_fifteens():
    data = copy.deepcopy(ONE_MAPPING)
    data["runtimeConfig"]["portMappings"] = [
        {"hostPort": 9000 + i, "containerPort": 80, "protocol": "tcp"} for i in range(16)
    ]
    conf = parse_config(json.dumps(data), "foo")
    ch = gen_dnat_chain(conf.name, "c1")
    fill_dnat_rules(ch, conf, "10.0.0.2")
    specs = [rule[rule.index("--destination-ports") + 1] for rule in ch.entry_rules]
    assert specs == [",".join(str(9000 + i) for i in range(15)), "9015"]


def test_toplevel_chain():
    assert gen_toplevel_dnat_chain() == Chain(
        table="nat",
        name="CNI-HOSTPORT-DNAT",
        entry_chains=["PREROUTING", "OUTPUT"],
        entry_rules=[["-m", "addrtype", "--dst-type", "LOCAL"]],
    )


def test_mark_chains():
    assert gen_set_mark_chain(5) == Chain(
        table="nat",
        name="CNI-HOSTPORT-SETMARK",
        rules=[[
            "-m", "comment",
            "--comment", "CNI portfwd masquerade mark",
            "-j", "MARK",
            "--set-xmark", "0x20/0x20",
        ]],
    )
    assert gen_mark_masq_chain(5) == Chain(
        table="nat",
        name="CNI-HOSTPORT-MASQ",
        entry_chains=["POSTROUTING"],
        entry_rules=[["-m", "comment", "--comment", "CNI portfwd requiring masquerade"]],
        rules=[["-m", "mark", "--mark", "0x20/0x20", "-j", "MASQUERADE"]],
    )


def test_old_snat_chain():
    ch = gen_old_snat_chain(NET_NAME, CONTAINER_ID)
    assert ch.table == "nat"
    assert ch.name.startswith("CNI-SN-")
    assert len(ch.name) == 28
    assert ch.entry_chains == ["CNI-HOSTPORT-SNAT"]


BUILTIN = {"nat": ["PREROUTING", "INPUT", "OUTPUT", "POSTROUTING"]}


class FakeIptables:
    """An in-memory stand-in for the iptables and ip6tables commands."""

    def __init__(self):
        self.states = {}

    def table(self, binary, name):
        state = self.states.setdefault(binary, {})
        return state.setdefault(name, {chain: [] for chain in BUILTIN.get(name, [])})

    def __call__(self, cmd, **kwargs):
        binary = os.path.basename(cmd[0])

        def done(rc=0, out=""):
            return subprocess.CompletedProcess(cmd, rc, out, "" if rc == 0 else "error")

        if binary not in ("iptables", "ip6tables"):
            return done(1)
        args = [arg for arg in cmd[1:] if arg != "--wait"]
        table_name, op, rest = args[1], args[2], args[3:]
        chains = self.table(binary, table_name)
        builtin = BUILTIN.get(table_name, [])

        def header(name):
            return f"-P {name} ACCEPT" if name in builtin else f"-N {name}"

        if op == "-S":
            if not rest:
                return done(0, "".join(header(n) + "\n" for n in chains))
            name = rest[0]
            if name not in chains:
                return done(1)
            lines = [header(name)] + [shlex.join(["-A", name, *r]) for r in chains[name]]
            return done(0, "\n".join(lines) + "\n")

        name = rest[0]
        if op == "-N":
            if name in chains:
                return done(1)
            chains[name] = []
            return done()
        if name not in chains:
            return done(1)
        rules = chains[name]
        rule = rest[1:]
        if op == "-F":
            rules.clear()
        elif op == "-X":
            if name in builtin or rules:
                return done(1)
            del chains[name]
        elif op == "-C":
            return done(0 if rule in rules else 1)
        elif op == "-I":
            rules.insert(int(rest[1]) - 1, rest[2:])
        elif op == "-A":
            rules.append(rule)
        elif op == "-D":
            if rule not in rules:
                return done(1)
            rules.remove(rule)
        return done()


def _which(name):
    return f"/sbin/{name}" if name in ("iptables", "ip6tables") else None


@pytest.fixture
def fake_iptables():
    fake = FakeIptables()
    with mock.patch("shutil.which", _which), mock.patch("subprocess.run", fake):
        yield fake


def _one_mapping_conf():
    conf = parse_config(json.dumps(ONE_MAPPING), "foo")
    conf.container_id = "c1"
    return conf


def test_forward_ports_v4_installs_chains(fake_iptables):
    conf = _one_mapping_conf()
    forward_ports(conf, "10.0.0.2")
    nat = fake_iptables.table("iptables", "nat")
    dn_name = gen_dnat_chain("test", "c1").name

    assert nat["PREROUTING"] == [["-m", "addrtype", "--dst-type", "LOCAL", "-j", "CNI-HOSTPORT-DNAT"]]
    assert nat["OUTPUT"] == nat["PREROUTING"]
    assert nat["CNI-HOSTPORT-SETMARK"] == [[
        "-m", "comment", "--comment", "CNI portfwd masquerade mark",
        "-j", "MARK", "--set-xmark", "0x2000/0x2000",
    ]]
    assert nat["POSTROUTING"] == [[
        "-m", "comment", "--comment", "CNI portfwd requiring masquerade",
        "-j", "CNI-HOSTPORT-MASQ",
    ]]
    assert nat[dn_name] == [
        ["-p", "tcp", "--dport", "8080", "-s", "10.0.0.2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-s", "127.0.0.1", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:80"],
    ]
    assert nat["CNI-HOSTPORT-DNAT"][0][-2:] == ["-j", dn_name]


def test_forward_ports_is_idempotent(fake_iptables):
    conf = _one_mapping_conf()
    forward_ports(conf, "10.0.0.2")
    before = copy.deepcopy(fake_iptables.states)
    forward_ports(conf, "10.0.0.2")
    assert fake_iptables.states == before

    dn_name = gen_dnat_chain("test", "c1").name
    ipt = maybe_get_iptables(False)
    assert len(ipt.list("nat", dn_name)) == 4
    assert len(ipt.list("nat", "CNI-HOSTPORT-DNAT")) == 2


def test_forward_ports_v6_uses_ip6tables(fake_iptables):
    conf = _one_mapping_conf()
    forward_ports(conf, "2001:db8::2")
    nat6 = fake_iptables.table("ip6tables", "nat")
    dn_name = gen_dnat_chain("test", "c1").name
    assert nat6[dn_name] == [
        ["-p", "tcp", "--dport", "8080", "-s", "2001:db8::2", "-j", "CNI-HOSTPORT-SETMARK"],
        ["-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "[2001:db8::2]:80"],
    ]
    assert nat6["CNI-HOSTPORT-DNAT"][0][-4:] == ["c", "d", "-j", dn_name]
    assert dn_name not in fake_iptables.table("iptables", "nat")


def test_unforward_ports_removes_container_chain(fake_iptables):
    conf = _one_mapping_conf()
    forward_ports(conf, "10.0.0.2")
    unforward_ports(conf)
    nat = fake_iptables.table("iptables", "nat")
    dn_name = gen_dnat_chain("test", "c1").name
    assert dn_name not in nat
    assert nat["CNI-HOSTPORT-DNAT"] == []
    assert not [name for name in nat if name.startswith("CNI-SN-")]
    assert dn_name not in fake_iptables.table("ip6tables", "nat")

    ipt = maybe_get_iptables(False)
    assert chain_exists(ipt, "nat", dn_name) is False
    assert ipt.list("nat", "CNI-HOSTPORT-DNAT") == ["-N CNI-HOSTPORT-DNAT"]

    # Removing again is harmless.
    unforward_ports(conf)
    assert chain_exists(ipt, "nat", dn_name) is False


def test_unforward_ports_without_iptables():
    with mock.patch("shutil.which", return_value=None):
        assert maybe_get_iptables(False) is None
        with pytest.raises(CniError, match="neither iptables nor ip6tables usable"):
            unforward_ports(_one_mapping_conf())


def test_cmd_add_forwards_and_passes_result_through(fake_iptables):
    data = dict(
        ONE_MAPPING,
        prevResult={
            "interfaces": [{"name": "host"}, {"name": "eth0", "sandbox": "netns"}],
            "ips": [{"version": "4", "address": "10.0.0.2/24", "interface": 1}],
        },
    )
    args = CmdArgs(container_id="c1", ifname="eth0", stdin_data=json.dumps(data).encode())
    result = cmd_add(args)
    assert result.cni_version == "0.3.1"
    assert [str(ip.address) for ip in result.ips] == ["10.0.0.2/24"]
    dn_name = gen_dnat_chain("test", "c1").name
    assert fake_iptables.table("iptables", "nat")[dn_name][-1] == [
        "-p", "tcp", "--dport", "8080", "-j", "DNAT", "--to-destination", "10.0.0.2:80",
    ]

    cmd_del(args)
    assert dn_name not in fake_iptables.table("iptables", "nat")


def test_cmd_add_requires_prev_result():
    args = CmdArgs(container_id="c1", ifname="eth0", stdin_data=json.dumps(ONE_MAPPING).encode())
    with pytest.raises(CniError, match="must be called as chained plugin"):
        cmd_add(args)


def test_cmd_add_without_mappings_returns_prev_result():
    data = {
        "name": "test",
        "cniVersion": "0.3.0",
        "prevResult": {"ips": [{"version": "4", "address": "10.0.0.2/24"}]},
    }
    result = cmd_add(CmdArgs(ifname="eth0", stdin_data=json.dumps(data).encode()))
    assert result.cni_version == "0.3.0"
    assert str(result.ips[0].address) == "10.0.0.2/24"


def test_cmd_add_reports_invalid_config():
    data = copy.deepcopy(ONE_MAPPING)
    data["runtimeConfig"]["portMappings"][0]["hostPort"] = 0
    with pytest.raises(CniError) as info:
        cmd_add(CmdArgs(ifname="eth0", stdin_data=json.dumps(data).encode()))
    assert info.value.msg == "failed to parse config: Invalid host port number: 0"