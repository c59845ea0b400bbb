"""iptables rules that drop a country set on a TCP port"""

import logging
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Callable

from .config import CONFIG
from .errors import CommandFailed, RuleStillPresent, SubsystemUnavailable
from .ipset import IpsetStore
from .models import is_managed_set_name
from .retry import retry_until

logger = logging.getLogger(__name__)


def _option(tokens: list[str], flag: str) -> str | None:
    try:
        return tokens[tokens.index(flag) + 1]
    except (ValueError, IndexError):
        return None


def references_set(tokens: list[str], set_name: str) -> bool:
    return any(
        token == "--match-set" and tokens[i + 1 : i + 2] == [set_name]
        for i, token in enumerate(tokens)
    )


def managed_rule_port(tokens: list[str], chain: str, set_name: str) -> int | None:
    """Port of a ``-A <chain> -p tcp --dport N --match-set <set> src -j DROP`` line.

    Matches with or without our comment so rules left by older installs are
    found too. Returns None for any other rule.
    """
    if tokens[:2] != ["-A", chain]:
        return None
    if _option(tokens, "-p") != "tcp" or _option(tokens, "-j") != "DROP":
        return None
    if _option(tokens, "--match-set") != set_name or _option(tokens, set_name) != "src":
        return None
    dport = _option(tokens, "--dport")
    if dport is None or not dport.isdigit():
        return None
    return int(dport)


@dataclass
class IptablesInventory:
    """Managed DROP rules in the filter table."""

    run_cmd: Callable[..., subprocess.CompletedProcess] = subprocess.run
    store: IpsetStore = field(default_factory=IpsetStore)
    iptables_bin: str = CONFIG["IPTABLES_BIN"]
    iptables_save_bin: str = CONFIG["IPTABLES_SAVE_BIN"]
    chain: str = CONFIG["CHAIN"]
    comment: str = CONFIG["RULE_COMMENT"]
    max_removal_attempts: int = CONFIG["MAX_REMOVAL_ATTEMPTS"]
    removal_delay: float = CONFIG["REMOVAL_DELAY"]
    sleep: Callable[[float], None] = time.sleep

    def _run(self, cmd: list[str]) -> subprocess.CompletedProcess:
        try:
            return self.run_cmd(cmd, capture_output=True, text=True)
        except FileNotFoundError:
            raise SubsystemUnavailable(f"{cmd[0]} not found; is iptables installed?") from None

    def _saved_rules(self) -> list[tuple[str, list[str]]]:
        """(table, tokens) for every rule line in ``iptables-save`` output."""
        cmd = [self.iptables_save_bin]
        result = self._run(cmd)
        if result.returncode != 0:
            raise CommandFailed(cmd, result.returncode, result.stderr or "")

        rules = []
        table = ""
        for line in result.stdout.split("\n"):
            if line.startswith("*"):
                table = line[1:].strip()
            elif line.startswith("-A "):
                rules.append((table, shlex.split(line)))
        return rules

    def _managed_rules(self, set_name: str) -> list[tuple[int, list[str]]]:
        found = []
        for table, tokens in self._saved_rules():
            if table != "filter":
                continue
            port = managed_rule_port(tokens, self.chain, set_name)
            if port is not None:
                found.append((port, tokens))
        return found

    def _rule_spec(self, set_name: str, port: int) -> list[str]:
        return [
            "-p", "tcp", "-m", "tcp", "--dport", str(port),
            "-m", "set", "--match-set", set_name, "src",
            "-m", "comment", "--comment", self.comment,
            "-j", "DROP",
        ]

    def list_managed_set_names(self) -> list[str]:
        return [name for name in self.store.list_names() if is_managed_set_name(name)]

    def rule_exists(self, set_name: str, port: int) -> bool:
        return any(p == port for p, _ in self._managed_rules(set_name))

    def insert_rule(self, set_name: str, port: int) -> bool:
        """Insert the DROP rule unless an equivalent one exists; True if inserted."""
        if self.rule_exists(set_name, port):
            logger.info(f"Rule for {set_name} port {port} already exists, skipping")
            return False

        cmd = [self.iptables_bin, "-w", "-I", self.chain, *self._rule_spec(set_name, port)]
        result = self._run(cmd)
        if result.returncode != 0:
            raise CommandFailed(cmd, result.returncode, result.stderr or "")
        logger.info(f"Inserted DROP rule for {set_name} port {port}")
        return True

    def referenced_ports(self, set_name: str) -> list[int]:
        ports: list[int] = []
        for port, _ in self._managed_rules(set_name):
            if port not in ports:
                ports.append(port)
        return ports

    def any_rule_references(self, set_name: str) -> bool:
        return any(references_set(tokens, set_name) for _, tokens in self._saved_rules())

    def remove_rule(self, set_name: str, port: int) -> None:
        """Delete every rule for (set, port), re-checking until none is reported."""

        def attempt() -> bool:
            for rule_port, tokens in self._managed_rules(set_name):
                if rule_port != port:
                    continue
                cmd = [self.iptables_bin, "-w", "-D", *tokens[1:]]
                result = self._run(cmd)
                if result.returncode == 0:
                    logger.info(f"Deleted rule for {set_name} port {port}")
                else:
                    stderr = (result.stderr or "").strip()
                    logger.warning(f"Delete of rule for {set_name} port {port} failed: {stderr}")
            return not self.rule_exists(set_name, port)

        settled = retry_until(
            attempt,
            self.max_removal_attempts,
            self.removal_delay,
            sleep=self.sleep,
            label=f"removal of {set_name} port {port}",
        )
        if not settled:
            raise RuleStillPresent(set_name, port, self.max_removal_attempts)
