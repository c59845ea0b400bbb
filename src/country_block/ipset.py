"""ipset-backed address set store"""

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable

from .config import CONFIG
from .errors import AlreadyExists, CommandFailed, SetBusy, SetNotFound, SubsystemUnavailable

logger = logging.getLogger(__name__)


def classify_ipset_error(args: list[str], result: subprocess.CompletedProcess) -> Exception:
    stderr = result.stderr or ""
    message = stderr.strip().lower()
    if "does not exist" in message:
        return SetNotFound(stderr.strip())
    if "in use" in message:
        return SetBusy(stderr.strip())
    if "already exists" in message:
        return AlreadyExists(stderr.strip())
    return CommandFailed(args, result.returncode, stderr)


@dataclass
class IpsetStore:
    """Named hash:net sets, one per blocked country."""

    run_cmd: Callable[..., subprocess.CompletedProcess] = subprocess.run
    ipset_bin: str = CONFIG["IPSET_BIN"]
    min_maxelem: int = CONFIG["IPSET_MAXELEM"]

    def _run(self, *args: str, input: str | None = None) -> subprocess.CompletedProcess:
        cmd = [self.ipset_bin, *args]
        try:
            return self.run_cmd(cmd, input=input, capture_output=True, text=True)
        except FileNotFoundError:
            raise SubsystemUnavailable(f"{self.ipset_bin} not found; is ipset installed?") from None

    def _check(self, *args: str, input: str | None = None) -> subprocess.CompletedProcess:
        result = self._run(*args, input=input)
        if result.returncode != 0:
            raise classify_ipset_error([self.ipset_bin, *args], result)
        return result

    def exists(self, name: str) -> bool:
        return self._run("list", name, "-n").returncode == 0

    def list_names(self) -> list[str]:
        result = self._check("list", "-n")
        return [line.strip() for line in result.stdout.split("\n") if line.strip()]

    def size(self, name: str) -> int:
        result = self._check("list", name, "-t")
        for line in result.stdout.split("\n"):
            if line.startswith("Number of entries:"):
                return int(line.split(":", 1)[1])
        return 0

    def _maxelem(self, count: int) -> int:
        return max(self.min_maxelem, int(count * 1.1))

    def create(self, name: str, size_hint: int = 0) -> None:
        self._check("create", name, "hash:net", "maxelem", str(self._maxelem(size_hint)))
        logger.info(f"Created ipset {name}")

    def replace_members(self, name: str, cidrs: list[str]) -> None:
        """Swap in a new membership; on failure the live set keeps its old one."""
        if not self.exists(name):
            raise SetNotFound(f"ipset {name} does not exist")

        if not cidrs:
            self._check("flush", name)
            logger.info(f"Flushed ipset {name}")
            return

        tmp_name = f"{name}-tmp"
        lines = [
            f"create {tmp_name} hash:net maxelem {self._maxelem(len(cidrs))}",
            f"flush {tmp_name}",
        ]
        lines += [f"add {tmp_name} {cidr}" for cidr in cidrs]
        lines += [f"swap {tmp_name} {name}", f"destroy {tmp_name}"]

        try:
            # Bulk load via stdin for performance
            self._check("restore", "-exist", input="\n".join(lines) + "\n")
        except (SetNotFound, SetBusy, AlreadyExists, CommandFailed):
            self._discard(tmp_name)
            raise

        logger.info(f"ipset {name} now holds {len(cidrs):,} networks")

    def _discard(self, name: str) -> None:
        result = self._run("destroy", name)
        if result.returncode == 0:
            logger.info(f"Removed leftover ipset {name}")

    def destroy(self, name: str) -> None:
        self._check("destroy", name)
        logger.info(f"Destroyed ipset {name}")
