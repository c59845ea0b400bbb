"""Defaults and the saved-targets file read by the scheduled refresh"""

import json
import logging
from pathlib import Path

from .models import BlockTarget

CONFIG = {
    "IPSET_BIN": "/usr/sbin/ipset",
    "IPTABLES_BIN": "/usr/sbin/iptables",
    "IPTABLES_SAVE_BIN": "/usr/sbin/iptables-save",
    "CHAIN": "INPUT",
    "RULE_COMMENT": "country-block",
    "IPSET_MAXELEM": 65536,
    "ZONE_URL": "http://www.ipdeny.com/ipblocks/data/countries/{country}.zone",
    "FETCH_TIMEOUT": 30,
    "MAX_REMOVAL_ATTEMPTS": 3,
    "REMOVAL_DELAY": 1.0,
    "DEFAULT_PORTS": [22],
    "TARGETS_FILE": "/etc/country-block/targets.json",
    "LOG_FILE": "/var/log/country-block.log",
    "MMDB_FILE": "/usr/local/geoip-firewall/dbip-country-lite.mmdb",
}

logger = logging.getLogger(__name__)


def load_targets(path: str | Path) -> list[BlockTarget]:
    """Read saved targets; a missing file means nothing was saved yet."""
    path = Path(path)
    if not path.exists():
        logger.info(f"No saved targets at {path}")
        return []

    with open(path) as f:
        data = json.load(f)

    targets = [
        BlockTarget.create(entry["country"], entry.get("ports") or CONFIG["DEFAULT_PORTS"])
        for entry in data.get("targets", [])
    ]
    logger.info(f"Loaded {len(targets)} saved targets from {path}")
    return targets


def save_targets(path: str | Path, targets: list[BlockTarget]) -> None:
    """Merge targets into the saved file, combining ports per country."""
    merged = {target.country: target for target in load_targets(path)}
    for target in targets:
        previous = merged.get(target.country)
        if previous is None:
            merged[target.country] = target
        else:
            ports = list(previous.ports) + [p for p in target.ports if p not in previous.ports]
            merged[target.country] = BlockTarget(target.country, tuple(ports))

    _write_targets(Path(path), list(merged.values()))


def forget_targets(path: str | Path, set_names: list[str]) -> None:
    """Drop saved targets whose sets were torn down."""
    path = Path(path)
    if not path.exists():
        return
    _write_targets(path, [t for t in load_targets(path) if t.set_name not in set_names])


def _write_targets(path: Path, targets: list[BlockTarget]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(
            {"targets": [{"country": t.country, "ports": list(t.ports)} for t in targets]},
            f,
            indent=2,
        )
    logger.info(f"Saved {len(targets)} targets to {path}")
