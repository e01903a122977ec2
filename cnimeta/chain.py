"""Idempotent management of iptables chains and the rules that jump to them."""

from __future__ import annotations

import shlex
import shutil
import subprocess
from dataclasses import dataclass, field


class IPTablesError(Exception):
    """An iptables invocation failed, or its output could not be used."""

    def __init__(self, message: str, exit_status: int | None = None) -> None:
        super().__init__(message)
        self.exit_status = exit_status


class IPTables:
    """A thin handle on the iptables (or ip6tables) command."""

    def __init__(self, is_v6: bool = False, path: str | None = None, wait: bool = True) -> None:
        self.is_v6 = is_v6
        if path is None:
            command = "ip6tables" if is_v6 else "iptables"
            path = shutil.which(command)
            if path is None:
                raise IPTablesError(f'exec: "{command}": executable file not found in $PATH')
        self.path = path
        self.wait = wait

    def _run(self, *args: str) -> str:
        cmd = [self.path, *(["--wait"] if self.wait else []), *args]
        try:
            proc = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except OSError as exc:
            raise IPTablesError(f"running {cmd}: {exc}") from exc
        if proc.returncode != 0:
            raise IPTablesError(
                f"running {cmd}: exit status {proc.returncode}: {proc.stderr.strip()}",
                exit_status=proc.returncode,
            )
        return proc.stdout

    def exists(self, table: str, chain: str, *args: str) -> bool:
        """Report whether the rule is present in the chain."""
        try:
            self._run("-t", table, "-C", chain, *args)
        except IPTablesError as exc:
            if exc.exit_status == 1:
                return False
            raise
        return True

    def insert(self, table: str, chain: str, pos: int, *args: str) -> None:
        self._run("-t", table, "-I", chain, str(pos), *args)

    def append(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-A", chain, *args)

    def delete(self, table: str, chain: str, *args: str) -> None:
        self._run("-t", table, "-D", chain, *args)

    def list(self, table: str, chain: str) -> list[str]:
        """Return the chain in iptables-save form, its -N line first."""
        output = self._run("-t", table, "-S", chain)
        return [line for line in output.splitlines() if line]

    def list_chains(self, table: str) -> list[str]:
        """Return the names of all chains in the table, built-in ones included."""
        output = self._run("-t", table, "-S")
        names = []
        for line in output.splitlines():
            fields = line.split()
            if len(fields) > 1 and fields[0] in ("-P", "-N"):
                names.append(fields[1])
        return names

    def new_chain(self, table: str, chain: str) -> None:
        self._run("-t", table, "-N", chain)

    def clear_chain(self, table: str, chain: str) -> None:
        """Flush the chain, creating it if it does not exist."""
        try:
            self.new_chain(table, chain)
        except IPTablesError as exc:
            if exc.exit_status != 1:
                raise
            self._run("-t", table, "-F", chain)

    def delete_chain(self, table: str, chain: str) -> None:
        self._run("-t", table, "-X", chain)


@dataclass
class Chain:
    """A chain, its rules, and the rules in other chains that jump to it."""

    table: str
    name: str
    entry_chains: list[str] = field(default_factory=list)
    entry_rules: list[list[str]] = field(default_factory=list)
    rules: list[list[str]] = field(default_factory=list)

    def setup(self, ipt: IPTables) -> None:
        """Create the chain and its rules; safe to call when they already exist."""
        if not chain_exists(ipt, self.table, self.name):
            ipt.new_chain(self.table, self.name)

        for rule in reversed(self.rules):
            prepend_unique(ipt, self.table, self.name, rule)

        for entry_chain in self.entry_chains:
            for rule in reversed(self.entry_rules):
                prepend_unique(ipt, self.table, entry_chain, [*rule, "-j", self.name])

    def teardown(self, ipt: IPTables) -> None:
        """Remove every jump to the chain, then the chain; safe when it is absent."""
        # Flushing creates the chain if it is missing, so the delete below succeeds.
        ipt.clear_chain(self.table, self.name)

        suffix = "-j " + self.name
        for entry_chain in self.entry_chains:
            try:
                entry_rules = ipt.list(self.table, entry_chain)
            except IPTablesError:
                continue
            for rule in entry_rules[1:]:
                if not rule.endswith(suffix):
                    continue
                try:
                    parts = shlex.split(rule)
                except ValueError as exc:
                    raise IPTablesError(f"error parsing iptables rule: {rule}: {exc}") from exc
                # Listed rules always begin with "-A CHAINNAME".
                try:
                    ipt.delete(self.table, entry_chain, *parts[2:])
                except IPTablesError as exc:
                    raise IPTablesError(
                        f"Failed to delete referring rule {self.table} {rule}: {exc}",
                        exit_status=exc.exit_status,
                    ) from exc

        ipt.delete_chain(self.table, self.name)


def prepend_unique(ipt: IPTables, table: str, chain: str, rule: list[str]) -> None:
    """Insert the rule at the top of the chain unless it is already there."""
    if ipt.exists(table, chain, *rule):
        return
    ipt.insert(table, chain, 1, *rule)


def chain_exists(ipt: IPTables, table: str, chain_name: str) -> bool:
    return chain_name in ipt.list_chains(table)