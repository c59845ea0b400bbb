"""Bring country sets and their DROP rules to the requested state"""

import logging

from .errors import AlreadyExists, CountryBlockError, FetchFailed, RefreshFailed, SetNotFound
from .fetcher import Fetcher
from .ipset import IpsetStore
from .iptables import IptablesInventory
from .models import BlockTarget, SyncResult, set_name_for

logger = logging.getLogger(__name__)


def _create_and_fill(store: IpsetStore, set_name: str, cidrs: list[str]) -> bool:
    """Create and populate a set; False if someone else created it first."""
    try:
        store.create(set_name, size_hint=len(cidrs))
    except AlreadyExists:
        logger.info(f"ipset {set_name} appeared concurrently, reusing it")
        store.replace_members(set_name, cidrs)
        return False

    try:
        store.replace_members(set_name, cidrs)
    except CountryBlockError:
        # Nothing references a set we just created, so it can go again.
        try:
            store.destroy(set_name)
        except CountryBlockError as e:
            logger.error(f"Could not remove empty ipset {set_name}: {e}")
        raise
    return True


def sync_target(
    target: BlockTarget,
    store: IpsetStore,
    rules: IptablesInventory,
    fetcher: Fetcher,
) -> SyncResult:
    set_name = target.set_name
    country = target.country
    created = False
    fetch_error: FetchFailed | None = None

    if not store.exists(set_name):
        logger.info(f"Creating ipset {set_name}")
        try:
            cidrs = fetcher.fetch(country)
        except FetchFailed as e:
            logger.error(f"Failed to download IP list for {country}: {e.reason}")
            return SyncResult.failure(country, set_name, e)
        created = _create_and_fill(store, set_name, cidrs)
        member_count = len(cidrs)
    else:
        logger.info(f"ipset {set_name} already exists, updating membership")
        try:
            cidrs = fetcher.fetch(country)
        except FetchFailed as e:
            logger.error(f"Failed to download IP list for {country}, keeping current members: {e.reason}")
            fetch_error = e
            member_count = store.size(set_name)
        else:
            store.replace_members(set_name, cidrs)
            member_count = len(cidrs)

    rules_added = [port for port in target.ports if rules.insert_rule(set_name, port)]

    if fetch_error is not None:
        return SyncResult.failure(
            country, set_name, fetch_error, member_count=member_count, rules_added=rules_added
        )
    return SyncResult.success(
        country, set_name, member_count, created=created, rules_added=rules_added
    )


def reconcile(
    targets: list[BlockTarget],
    store: IpsetStore,
    rules: IptablesInventory,
    fetcher: Fetcher,
) -> list[SyncResult]:
    """Create or update each target's set and ensure a DROP rule per port.

    Targets are handled one after another; a failure on one is recorded in
    its result and never stops the rest. Running the same request twice
    leaves the firewall as the first run did.
    """
    results = []
    total = len(targets)

    for n, target in enumerate(targets, 1):
        logger.info(f"[{n}/{total}] {target.country} ports {', '.join(map(str, target.ports))}")
        try:
            result = sync_target(target, store, rules, fetcher)
        except CountryBlockError as e:
            logger.error(f"Blocking {target.country} failed: {e}")
            result = SyncResult.failure(target.country, target.set_name, e)
        results.append(result)

    ok = sum(1 for r in results if r.ok)
    logger.info(f"Reconciled {ok}/{total} countries")
    return results


def refresh(
    countries: list[str],
    store: IpsetStore,
    fetcher: Fetcher,
) -> list[SyncResult]:
    """Replace the membership of already-created sets with fresh lists.

    Rules are left alone. A set that cannot be updated keeps its previous
    members.
    """
    results = []

    for country in countries:
        country = country.upper()
        set_name = set_name_for(country)

        try:
            if not store.exists(set_name):
                raise SetNotFound(f"ipset {set_name} does not exist")
        except CountryBlockError as e:
            logger.error(f"Cannot refresh {country}: {e}")
            results.append(SyncResult.failure(country, set_name, e))
            continue

        try:
            cidrs = fetcher.fetch(country)
        except FetchFailed as e:
            logger.error(f"Failed to download updated IP list for {country}: {e.reason}")
            results.append(SyncResult.failure(country, set_name, e))
            continue

        try:
            store.replace_members(set_name, cidrs)
        except CountryBlockError as e:
            logger.error(f"Refresh of {set_name} failed, previous members kept: {e}")
            results.append(SyncResult.failure(country, set_name, RefreshFailed(set_name, e)))
            continue

        logger.info(f"Refreshed {set_name}: {len(cidrs):,} networks")
        results.append(SyncResult.success(country, set_name, len(cidrs)))

    return results
