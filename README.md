# cnimeta

Chained CNI plugins for Linux container networking. A container runtime starts
each plugin the usual CNI way: the command comes in `CNI_COMMAND` (`ADD`, `DEL`
or `VERSION`), the network configuration comes on standard input, and the
result is printed as JSON on standard output. Errors are printed as a CNI error
object (`code`, `msg`, optionally `details`) with exit status 1.

The environment variables read are `CNI_COMMAND`, `CNI_CONTAINERID`,
`CNI_NETNS`, `CNI_IFNAME`, `CNI_ARGS` and `CNI_PATH`. `VERSION` prints the
spec versions a plugin supports; a configuration whose `cniVersion` is not
among them is refused.

## Plugins

| Command             | What it does |
|---------------------|--------------|
| `cnimeta-sample`    | Minimal chained plugin: requires `anotherAwesomeArg`, checks that the previous result holds a container IP, and passes the result through. |
| `cnimeta-portmap`   | Forwards host ports to the container with iptables DNAT chains in the `nat` table, with optional hairpin/localhost masquerading. |
| `cnimeta-bandwidth` | Shapes egress traffic with a token bucket qdisc on the host veth, and ingress traffic through an IFB device. |
| `cnimeta-flannel`   | Reads flannel's subnet file and runs a delegate plugin (`bridge` by default) with `host-local` IPAM. |
| `cnimeta-tuning`    | Inside the container's network namespace, writes `net.*` sysctls and sets MAC address, promiscuous mode and MTU. |

`sample`, `portmap`, `flannel` and `tuning` accept configurations of spec
versions 0.1.0 to 0.3.1; `bandwidth` accepts 0.3.0 and 0.3.1.

The plugins drive the system through the `iptables`/`ip6tables`, `ip` and
`tc` commands and through `/proc` and `/sys`, so they must run on Linux with
those tools installed and with the privileges to change network settings.

```
pip install .
```

Then make the commands available in the runtime's plugin directory, for
example by linking `portmap` to `cnimeta-portmap`.

## Port mapping

Called as a later plugin of a chain, after one that assigned an address:

```
CNI_COMMAND=ADD CNI_CONTAINERID=example CNI_NETNS=/var/run/netns/example \
CNI_IFNAME=eth0 CNI_PATH=/opt/cni/bin cnimeta-portmap < portmap.json
```

with `portmap.json`:

```json
{
  "cniVersion": "0.3.1",
  "name": "mynet",
  "type": "portmap",
  "snat": true,
  "runtimeConfig": {
    "portMappings": [
      {"hostPort": 8080, "containerPort": 80, "protocol": "tcp"}
    ]
  },
  "prevResult": {
    "interfaces": [{"name": "eth0", "sandbox": "/var/run/netns/example"}],
    "ips": [{"version": "4", "address": "10.0.0.2/24", "interface": 0}]
  }
}
```

The container addresses are taken from `prevResult`: the first IPv4 and the
first IPv6 address that belong to the sandbox interface named by
`CNI_IFNAME`. Each mapping may also carry `hostIP`.

- `snat` (default `true`) adds rules that mark hairpin and (IPv4) localhost
  traffic for masquerading, and sets `route_localnet` on the host interface
  that routes to the container.
- `markMasqBit` (0–31, default 13) or `externalSetMarkChain` chooses how that
  traffic is marked; giving both is an error.
- `conditionsV4` and `conditionsV6` add extra iptables matches to the entry
  rules.

`DEL` removes the container's chain from both iptables and ip6tables, and is
safe to repeat. It fails only if neither is usable.

## Bandwidth

```json
{
  "cniVersion": "0.3.0",
  "name": "mynet",
  "type": "bandwidth",
  "ingressRate": 8000,
  "ingressBurst": 80,
  "egressRate": 8000,
  "egressBurst": 80
}
```

Rates are in bits per second and bursts in bits; 0 means no limit. A rate
needs a burst and a burst needs a rate. The same values may come from
`runtimeConfig.bandwidth`; values in the configuration itself take
precedence. The host interface is the first `prevResult` interface without a
sandbox that is a veth. For ingress limits an IFB device, named from a hash of
the network name and container ID, is created and added to the result; `DEL`
deletes it.

## Flannel

```json
{
  "cniVersion": "0.3.1",
  "name": "mynet",
  "type": "flannel",
  "subnetFile": "/run/flannel/subnet.env",
  "dataDir": "/var/lib/cni/flannel",
  "delegate": {"type": "bridge"}
}
```

`subnetFile` and `dataDir` default to the values shown. The subnet file must
set `FLANNEL_NETWORK`, `FLANNEL_SUBNET`, `FLANNEL_MTU` and `FLANNEL_IPMASQ`.
The `delegate` section may not set `name` or `ipam`; `ipMasq` defaults to the
opposite of `FLANNEL_IPMASQ`, `mtu` to `FLANNEL_MTU`, and `isGateway` to true
for `bridge`. The rendered delegate configuration is saved under `dataDir`
for the later `DEL`. The delegate plugin is looked up in the directories of
`CNI_PATH`.

## Tuning

```json
{
  "cniVersion": "0.3.1",
  "name": "mynet",
  "type": "tuning",
  "sysctl": {"net.ipv4.conf.all.log_martians": "1"},
  "mac": "02:00:00:00:00:01",
  "promisc": true,
  "mtu": 1454,
  "prevResult": {
    "interfaces": [{"name": "eth0", "sandbox": "/var/run/netns/example"}],
    "ips": [{"version": "4", "address": "10.0.0.2/24", "interface": 0}]
  }
}
```

Only sysctl keys under `net.` are accepted. A `MAC=` entry in `CNI_ARGS`
overrides `mac` (other keys are refused unless `IgnoreUnknown=true` is given).
`ADD` needs a `prevResult` to pass through.

## Using the library

The configuration parsers and chain builders can be used directly:

```python
from cnimeta.portmap_config import parse_config
from cnimeta.portmap import gen_dnat_chain, fill_dnat_rules

with open("portmap.json", "rb") as handle:
    conf = parse_config(handle.read(), "eth0")
chain = gen_dnat_chain(conf.name, "example")
fill_dnat_rules(chain, conf, "10.0.0.2")
print(chain.entry_rules)
print(chain.rules)
```

Other useful pieces: `cnimeta.cni.plugin_main` (dispatch on `CNI_*`
variables), `cnimeta.cni.parse_prev_result` and `Result.to_dict` (results in
any supported spec version), `cnimeta.chain.Chain` with `setup`/`teardown`,
`cnimeta.bandwidth.parse_config`, `cnimeta.flannel.build_delegate` and
`cnimeta.tuning.parse_conf`. Failures are raised as `cnimeta.cni.CniError`.

## What it does not do

- The `GET` command is not implemented; it always reports an error.
- `cnimeta-tuning` does not restore the previous settings on `DEL`.
- `cnimeta-portmap` does not reserve the host port: a service already
  listening on it loses its traffic to the container, and the last container
  to claim a port wins.

## Tests

```
pip install .[test]
pytest
```