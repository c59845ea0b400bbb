"""Remove country DROP rules and the sets behind them"""

import logging

from .errors import CountryBlockError, InvalidSelection, SetBusy
from .ipset import IpsetStore
from .iptables import IptablesInventory
from .models import TeardownResult, is_managed_set_name

logger = logging.getLogger(__name__)


def teardown_set(set_name: str, store: IpsetStore, rules: IptablesInventory) -> TeardownResult:
    """Delete a set's rules, verify nothing references it, then flush and destroy it.

    The set is left in place whenever a rule might still point at it.
    """
    logger.info(f"Processing set {set_name}...")
    removed: list[int] = []

    try:
        for port in rules.referenced_ports(set_name):
            rules.remove_rule(set_name, port)
            removed.append(port)

        if rules.any_rule_references(set_name):
            raise SetBusy(f"rules outside the managed form still reference {set_name}")

        store.replace_members(set_name, [])
        store.destroy(set_name)
    except CountryBlockError as e:
        logger.error(f"Failed to remove {set_name}: {e}")
        return TeardownResult(set_name, False, removed, e)

    logger.info(f"Removed {set_name} (ports: {', '.join(map(str, removed)) or 'none'})")
    return TeardownResult(set_name, True, removed)


def teardown_sets(set_names: list[str], store: IpsetStore, rules: IptablesInventory) -> list[TeardownResult]:
    results = []
    for set_name in set_names:
        if not is_managed_set_name(set_name):
            error = InvalidSelection(f"{set_name} is not a set managed by country-block")
            logger.error(str(error))
            results.append(TeardownResult(set_name, False, error=error))
            continue
        results.append(teardown_set(set_name, store, rules))
    return results


def teardown_all(store: IpsetStore, rules: IptablesInventory) -> list[TeardownResult]:
    logger.info("Deleting all sets and rules created by country-block...")
    try:
        set_names = rules.list_managed_set_names()
    except CountryBlockError as e:
        logger.error(f"Cannot list managed sets: {e}")
        return [TeardownResult(None, False, error=e)]

    results = teardown_sets(set_names, store, rules)
    failed = [r.set_name for r in results if not r.ok]
    if failed:
        logger.error(f"{len(failed)} sets could not be removed: {', '.join(failed)}")
    else:
        logger.info(f"All {len(results)} managed sets removed")
    return results


def resolve_selection(indices: list[int], listing: list[str]) -> list[str | InvalidSelection]:
    """Map 1-based indices onto ``listing``; bad or repeated entries become errors."""
    consumed: set[int] = set()
    resolved: list[str | InvalidSelection] = []

    for index in indices:
        if not 1 <= index <= len(listing):
            resolved.append(InvalidSelection(f"Invalid selection: {index}"))
        elif index in consumed:
            resolved.append(InvalidSelection(f"Selection {index} already used"))
        else:
            consumed.add(index)
            resolved.append(listing[index - 1])
    return resolved


def teardown_selected(indices: list[int], store: IpsetStore, rules: IptablesInventory) -> list[TeardownResult]:
    """Tear down the sets at the given positions of the current numbered listing."""
    try:
        listing = rules.list_managed_set_names()
    except CountryBlockError as e:
        logger.error(f"Cannot list managed sets: {e}")
        return [TeardownResult(None, False, error=e) for _ in indices]

    results = []
    for entry in resolve_selection(indices, listing):
        if isinstance(entry, InvalidSelection):
            logger.error(str(entry))
            results.append(TeardownResult(None, False, error=entry))
        else:
            results.append(teardown_set(entry, store, rules))
    return results
