from conftest import FakeFetcher, cidrs

from country_block.errors import FetchFailed, RefreshFailed, SetBusy, SetNotFound
from country_block.models import BlockTarget
from country_block.reconcile import reconcile, refresh


def test_creates_sets_and_rules(firewall):
    fw, store, rules = firewall
    fetcher = FakeFetcher({"CN": cidrs(3), "RU": cidrs(5, 1)})
    targets = [BlockTarget.create("CN", [22]), BlockTarget.create("RU", [22, 80])]

    results = reconcile(targets, store, rules, fetcher)

    assert [r.ok for r in results] == [True, True]
    assert [r.member_count for r in results] == [3, 5]
    assert all(r.created for r in results)
    assert len(fw.sets["country_CN"]) == 3
    assert len(fw.sets["country_RU"]) == 5
    assert sorted(fw.rules) == [("country_CN", 22), ("country_RU", 22), ("country_RU", 80)]


def test_second_run_adds_nothing(firewall):
    fw, store, rules = firewall
    fetcher = FakeFetcher({"CN": cidrs(3), "RU": cidrs(5, 1)})
    targets = [BlockTarget.create("CN", [22]), BlockTarget.create("RU", [22, 80])]

    reconcile(targets, store, rules, fetcher)
    rules_before = list(fw.rules)
    sets_before = {k: list(v) for k, v in fw.sets.items()}

    results = reconcile(targets, store, rules, fetcher)

    assert all(r.ok for r in results)
    assert all(r.rules_added == [] for r in results)
    assert not any(r.created for r in results)
    assert fw.rules == rules_before
    assert fw.sets == sets_before


def test_failed_fetch_does_not_stop_other_targets(firewall):
    fw, store, rules = firewall
    fetcher = FakeFetcher({"CN": cidrs(3), "RU": [], "SG": cidrs(2, 2)})
    targets = [BlockTarget.create(c, [22]) for c in ("CN", "RU", "SG")]

    results = reconcile(targets, store, rules, fetcher)

    assert [r.ok for r in results] == [True, False, True]
    assert isinstance(results[1].error, FetchFailed)
    assert "country_RU" not in fw.sets
    assert not rules.referenced_ports("country_RU")
    assert ("country_CN", 22) in fw.rules
    assert ("country_SG", 22) in fw.rules


def test_fetch_happens_before_create(firewall):
    fw, store, rules = firewall
    fetcher = FakeFetcher({})

    reconcile([BlockTarget.create("CN", [22])], store, rules, fetcher)

    assert ("create", "country_CN") not in store.calls


def test_update_keeps_members_when_fetch_fails(firewall):
    fw, store, rules = firewall
    reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))

    results = reconcile([BlockTarget.create("CN", [22, 443])], store, rules, FakeFetcher({}))

    assert results[0].ok is False
    assert results[0].member_count == 3
    assert fw.sets["country_CN"] == cidrs(3)
    assert results[0].rules_added == [443]


def test_update_replaces_members(firewall):
    fw, store, rules = firewall
    reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))

    results = reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(7)}))

    assert results[0].ok
    assert results[0].member_count == 7
    assert len(fw.sets["country_CN"]) == 7


def test_failed_fill_removes_new_set(firewall):
    fw, store, rules = firewall
    store.fail_replace["country_CN"] = SetBusy("boom")

    results = reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))

    assert results[0].ok is False
    assert "country_CN" not in fw.sets
    assert fw.rules == []


def test_refresh_updates_existing_sets_only(firewall):
    fw, store, rules = firewall
    reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))
    rules_before = list(fw.rules)

    results = refresh(["CN", "RU"], store, FakeFetcher({"CN": cidrs(4), "RU": cidrs(2)}))

    assert results[0].ok and results[0].member_count == 4
    assert results[1].ok is False
    assert isinstance(results[1].error, SetNotFound)
    assert "country_RU" not in fw.sets
    assert fw.rules == rules_before


def test_refresh_busy_set_keeps_previous_members(firewall):
    fw, store, rules = firewall
    reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))
    store.fail_replace["country_CN"] = SetBusy("in use")

    results = refresh(["cn"], store, FakeFetcher({"CN": cidrs(9)}))

    assert results[0].ok is False
    assert isinstance(results[0].error, RefreshFailed)
    assert isinstance(results[0].error.cause, SetBusy)
    assert fw.sets["country_CN"] == cidrs(3)


def test_refresh_fetch_failure_leaves_set(firewall):
    fw, store, rules = firewall
    reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))

    results = refresh(["CN"], store, FakeFetcher({}))

    assert isinstance(results[0].error, FetchFailed)
    assert fw.sets["country_CN"] == cidrs(3)


def test_set_created_concurrently_is_reused(firewall):
    fw, store, rules = firewall
    fw.sets["country_CN"] = cidrs(1)
    # Report the set as absent so create() runs into the existing one.
    store.exists = lambda name: False

    results = reconcile([BlockTarget.create("CN", [22])], store, rules, FakeFetcher({"CN": cidrs(3)}))

    assert results[0].ok
    assert results[0].created is False
    assert ("create", "country_CN") in store.calls
    assert fw.sets["country_CN"] == cidrs(3)
    assert fw.rules == [("country_CN", 22)]
