#!/usr/bin/env python3
"""Block TCP ports for whole countries with ipset and iptables"""

import argparse
import logging
import shutil
import sys
from typing import Callable

from .config import CONFIG, forget_targets, load_targets, save_targets
from .errors import CountryBlockError
from .fetcher import MmdbFetcher, ZoneFetcher
from .ipset import IpsetStore
from .iptables import IptablesInventory
from .models import SET_PREFIX, BlockTarget, SyncResult, TeardownResult
from .reconcile import reconcile, refresh
from .teardown import teardown_all, teardown_selected, teardown_sets

logger = logging.getLogger(__name__)


def setup_logging(log_file: str | None) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )
    if file_error is not None:
        logger.warning(f"Logging to stdout only, cannot open {log_file}: {file_error}")


def check_subsystems(binaries: list[str]) -> list[str]:
    """Names of the firewall binaries that are not installed."""
    return [binary for binary in binaries if shutil.which(binary) is None]


def split_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def build_targets(countries: str, ports: str) -> list[BlockTarget]:
    port_list = split_list(ports) or CONFIG["DEFAULT_PORTS"]
    return [BlockTarget.create(country, port_list) for country in split_list(countries)]


def parse_indices(value: str) -> list[int]:
    """Comma-separated list numbers; anything non-numeric maps to 0, which is never valid."""
    return [int(item) if item.lstrip("-").isdigit() else 0 for item in split_list(value)]


def report_sync(results: list[SyncResult]) -> bool:
    for r in results:
        if r.ok:
            added = f", new rules on ports {', '.join(map(str, r.rules_added))}" if r.rules_added else ""
            logger.info(f"  {r.set_name}: {r.member_count:,} networks{added}")
        else:
            logger.error(f"  {r.set_name}: {r.error}")
    return all(r.ok for r in results)


def report_teardown(results: list[TeardownResult]) -> bool:
    for r in results:
        name = r.set_name or "-"
        if r.ok:
            logger.info(f"  {name}: removed")
        else:
            logger.error(f"  {name}: {r.error}")
    return all(r.ok for r in results)


def list_sets(store: IpsetStore, rules: IptablesInventory) -> list[str]:
    logger.info("Current country sets:")
    names = rules.list_managed_set_names()
    for index, name in enumerate(names, 1):
        ports = rules.referenced_ports(name)
        logger.info(f"{index}. {name} ({store.size(name):,} networks, ports: {', '.join(map(str, ports)) or 'none'})")
    if not names:
        logger.info("(none)")
    return names


def interactive(
    store: IpsetStore,
    rules: IptablesInventory,
    fetcher,
    targets_file: str,
    prompt: Callable[[str], str] = input,
) -> bool:
    ok = True
    names = list_sets(store, rules)

    if names:
        choice = prompt("Press Enter to continue, 'd' to delete all rules, 's' to delete selected rules: ").strip()
        if choice == "d":
            results = teardown_all(store, rules)
            ok = report_teardown(results) and ok
            forget_targets(targets_file, [r.set_name for r in results if r.ok])
        elif choice == "s":
            indices = parse_indices(prompt("Enter the numbers of the sets to delete (comma-separated): "))
            results = teardown_selected(indices, store, rules)
            ok = report_teardown(results) and ok
            forget_targets(targets_file, [r.set_name for r in results if r.ok])

    countries = prompt("Enter the country codes to block (comma-separated, e.g., CN,RU,SG): ")
    if not split_list(countries):
        logger.info("No countries given, nothing to block")
        return ok
    ports = prompt("Enter the ports to block (comma-separated, default: 22): ")

    try:
        targets = build_targets(countries, ports)
    except ValueError as e:
        logger.error(f"Invalid input: {e}")
        return False

    return apply_targets(targets, store, rules, fetcher, targets_file) and ok


def apply_targets(targets, store, rules, fetcher, targets_file) -> bool:
    logger.info(f"Starting setup of IP blocking for countries: {', '.join(t.country for t in targets)}")
    results = reconcile(targets, store, rules, fetcher)
    saved = [t for t, r in zip(targets, results) if store.exists(r.set_name)]
    if saved:
        save_targets(targets_file, saved)
    return report_sync(results)


def refresh_saved(store: IpsetStore, rules: IptablesInventory, fetcher, targets_file: str) -> bool:
    """Refresh every managed set present, and report saved countries whose set is gone."""
    countries = [name[len(SET_PREFIX):] for name in rules.list_managed_set_names()]
    missing = [t.country for t in load_targets(targets_file) if t.country not in countries]
    if missing:
        logger.warning(f"Saved countries without a set (run 'apply --saved'): {', '.join(missing)}")
    countries += missing
    if not countries:
        logger.info("No country sets to refresh")
        return True
    return report_sync(refresh(countries, store, fetcher))


def apply_saved(store: IpsetStore, rules: IptablesInventory, fetcher, targets_file: str) -> bool:
    """Re-create sets and rules for every saved target, e.g. at boot."""
    targets = load_targets(targets_file)
    if not targets:
        logger.info("No saved targets to apply")
        return True
    logger.info(f"Restoring saved blocks for countries: {', '.join(t.country for t in targets)}")
    return report_sync(reconcile(targets, store, rules, fetcher))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="country-block", description=__doc__)
    parser.add_argument("--targets-file", default=CONFIG["TARGETS_FILE"], help="Saved countries/ports used by refresh")
    parser.add_argument("--log-file", default=CONFIG["LOG_FILE"], help="Append log lines here as well as stdout")
    parser.add_argument("--source", choices=["zone", "mmdb"], default="zone", help="Where country CIDR lists come from")
    parser.add_argument("--zone-url", default=CONFIG["ZONE_URL"], help="URL template with a {country} placeholder")
    parser.add_argument("--mmdb-file", default=CONFIG["MMDB_FILE"], help="DB-IP country-lite MMDB used by --source mmdb")
    parser.add_argument("--removal-attempts", type=int, default=CONFIG["MAX_REMOVAL_ATTEMPTS"])
    parser.add_argument("--removal-delay", type=float, default=CONFIG["REMOVAL_DELAY"])

    sub = parser.add_subparsers(dest="command")
    apply_cmd = sub.add_parser("apply", help="Block the given countries on the given ports")
    source = apply_cmd.add_mutually_exclusive_group(required=True)
    source.add_argument("--countries", help="Comma-separated country codes")
    source.add_argument("--saved", action="store_true", help="Re-apply every saved target, e.g. from a boot-time unit")
    apply_cmd.add_argument("--ports", default="", help="Comma-separated ports or service names (default: 22)")
    sub.add_parser("refresh", help="Re-download lists for every managed set")
    sub.add_parser("list", help="Show managed sets")
    delete_cmd = sub.add_parser("delete", help="Remove managed sets and their rules")
    group = delete_cmd.add_mutually_exclusive_group(required=True)
    group.add_argument("--all", action="store_true")
    group.add_argument("--select", help="Comma-separated numbers from 'list'")
    group.add_argument("--set", action="append", dest="sets", help="Set name, may be repeated")
    return parser


def run(args: argparse.Namespace) -> bool:
    missing = check_subsystems([CONFIG["IPSET_BIN"], CONFIG["IPTABLES_BIN"], CONFIG["IPTABLES_SAVE_BIN"]])
    if missing:
        logger.error(f"Required firewall tools are not installed: {', '.join(missing)}")
        return False

    store = IpsetStore()
    rules = IptablesInventory(
        store=store,
        max_removal_attempts=args.removal_attempts,
        removal_delay=args.removal_delay,
    )
    if args.source == "mmdb":
        fetcher = MmdbFetcher(args.mmdb_file)
    else:
        fetcher = ZoneFetcher(url_template=args.zone_url)

    if args.command == "apply" and args.saved:
        return apply_saved(store, rules, fetcher, args.targets_file)
    if args.command == "apply":
        return apply_targets(build_targets(args.countries, args.ports), store, rules, fetcher, args.targets_file)
    if args.command == "refresh":
        return refresh_saved(store, rules, fetcher, args.targets_file)
    if args.command == "list":
        list_sets(store, rules)
        return True
    if args.command == "delete":
        if args.all:
            results = teardown_all(store, rules)
        elif args.select:
            results = teardown_selected(parse_indices(args.select), store, rules)
        else:
            results = teardown_sets(args.sets, store, rules)
        forget_targets(args.targets_file, [r.set_name for r in results if r.ok])
        return report_teardown(results)
    return interactive(store, rules, fetcher, args.targets_file)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)

    try:
        success = run(args)
        sys.exit(0 if success else 1)
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(130)
    except (CountryBlockError, ValueError) as e:
        logger.error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
