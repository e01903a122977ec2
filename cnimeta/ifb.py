"""Traffic shaping with tc: IFB devices, ingress redirection and TBF qdiscs."""

from __future__ import annotations

import functools
import subprocess
from pathlib import Path

from cnimeta.cni import CniError

LATENCY_IN_MILLIS = 25
TIME_UNITS_PER_SEC = 1_000_000

_PSCHED_PATH = Path("/proc/net/psched")
_SYSFS_NET = Path("/sys/class/net")


def _run(*cmd: str) -> None:
    try:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, check=False)
    except OSError as exc:
        raise CniError(str(exc)) from exc
    if proc.returncode != 0:
        raise CniError(proc.stderr.strip() or f"{cmd[0]}: exit status {proc.returncode}")


def _link_dir(name: str) -> Path:
    if not name or "/" in name or name in (".", ".."):
        raise CniError("Link not found")
    path = _SYSFS_NET / name
    if not path.exists():
        raise CniError("Link not found")
    return path


def _link_index(name: str) -> int:
    try:
        return int((_link_dir(name) / "ifindex").read_text().strip())
    except (OSError, ValueError) as exc:
        raise CniError("Link not found") from exc


def create_ifb(ifb_device_name: str, mtu: int) -> None:
    """Create an IFB device with the given MTU and bring it up."""
    try:
        _run("ip", "link", "add", ifb_device_name, "mtu", str(mtu), "type", "ifb")
        _run("ip", "link", "set", ifb_device_name, "up")
    except CniError as exc:
        raise CniError(f"adding link: {exc.msg}") from exc


def teardown_ifb(device_name: str) -> None:
    """Delete the device; a device that does not exist is not an error."""
    try:
        _link_dir(device_name)
    except CniError:
        return
    _run("ip", "link", "del", device_name)


def create_egress_qdisc(rate_in_bits: int, burst_in_bits: int, host_device_name: str) -> None:
    """Shape traffic leaving the host device."""
    try:
        _link_index(host_device_name)
    except CniError as exc:
        raise CniError(f"get host device: {exc.msg}") from exc
    create_tbf(rate_in_bits, burst_in_bits, host_device_name)


def create_ingress_qdisc(
    rate_in_bits: int, burst_in_bits: int, host_device_name: str, ifb_device_name: str
) -> None:
    """Mirror the host device's ingress traffic to the IFB device and shape it there."""
    try:
        _link_index(ifb_device_name)
    except CniError as exc:
        raise CniError(f"get ifb device: {exc.msg}") from exc
    try:
        _link_index(host_device_name)
    except CniError as exc:
        raise CniError(f"get host device: {exc.msg}") from exc

    try:
        _run("tc", "qdisc", "add", "dev", host_device_name, "handle", "ffff:", "ingress")
    except CniError as exc:
        raise CniError(f"create ingress qdisc: {exc.msg}") from exc

    try:
        _run(
            "tc", "filter", "add", "dev", host_device_name,
            "parent", "ffff:", "protocol", "all", "prio", "1",
            "u32", "match", "u32", "0", "0", "classid", "1:1",
            "action", "mirred", "egress", "redirect", "dev", ifb_device_name,
        )
    except CniError as exc:
        raise CniError(f"add filter: {exc.msg}") from exc

    try:
        create_tbf(rate_in_bits, burst_in_bits, ifb_device_name)
    except CniError as exc:
        raise CniError(f"create ifb qdisc: {exc.msg}") from exc


def create_tbf(rate_in_bits: int, burst_in_bits: int, device_name: str) -> None:
    """Add a root token bucket filter qdisc to the device."""
    if rate_in_bits <= 0:
        raise CniError(f"invalid rate: {rate_in_bits}")
    if burst_in_bits <= 0:
        raise CniError(f"invalid burst: {burst_in_bits}")
    rate_in_bytes = rate_in_bits // 8
    burst_in_bytes = burst_in_bits // 8
    latency = latency_in_usec(LATENCY_IN_MILLIS)
    limit_in_bytes = limit(rate_in_bytes, latency, burst_in_bytes)

    # tc derives the bucket size in ticks from rate and burst, as buffer() does.
    try:
        _run(
            "tc", "qdisc", "add", "dev", device_name, "root", "handle", "1:",
            "tbf", "rate", f"{rate_in_bytes}bps",
            "burst", str(burst_in_bytes), "limit", str(limit_in_bytes),
        )
    except CniError as exc:
        raise CniError(f"create qdisc: {exc.msg}") from exc


@functools.cache
def tick_in_usec() -> float:
    """Return the kernel packet scheduler's ticks per microsecond."""
    try:
        parts = _PSCHED_PATH.read_text().split()
        vals = [int(part, 16) for part in parts[:4]]
    except (OSError, ValueError):
        return 1.0
    if len(vals) < 4 or vals[1] == 0:
        return 1.0
    if vals[2] == 1_000_000_000:
        vals[0] = vals[1]
    clock_factor = vals[2] / TIME_UNITS_PER_SEC
    return vals[0] / vals[1] * clock_factor


def tick_to_time(tick: int) -> int:
    return int(tick / tick_in_usec())


def time_to_tick(time: int) -> int:
    return int(time * tick_in_usec())


def buffer(rate: int, burst: int) -> int:
    """Return the time, in ticks, needed to send burst bytes at rate bytes per second."""
    return time_to_tick(int(burst * TIME_UNITS_PER_SEC / rate))


def limit(rate: int, latency: float, buffer: int) -> int:
    """Return the queue limit in bytes for the rate, latency and bucket size."""
    return int(rate * latency / TIME_UNITS_PER_SEC) + buffer


def latency_in_usec(latency_in_millis: float) -> float:
    return TIME_UNITS_PER_SEC * (latency_in_millis / 1000.0)