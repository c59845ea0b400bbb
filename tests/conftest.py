import pytest

from country_block.errors import (
    AlreadyExists,
    CommandFailed,
    FetchFailed,
    RuleStillPresent,
    SetBusy,
    SetNotFound,
)
from country_block.models import is_managed_set_name


class FakeFirewall:
    """Shared state behind FakeStore and FakeRules."""

    def __init__(self):
        self.sets: dict[str, list[str]] = {}
        self.rules: list[tuple[str, int]] = []
        self.foreign_refs: set[str] = set()

    def references(self, name: str) -> bool:
        return name in self.foreign_refs or any(s == name for s, _ in self.rules)


class FakeStore:
    def __init__(self, fw: FakeFirewall):
        self.fw = fw
        self.calls: list[tuple] = []
        self.fail_replace: dict[str, Exception] = {}

    def exists(self, name):
        return name in self.fw.sets

    def list_names(self):
        return list(self.fw.sets)

    def size(self, name):
        if name not in self.fw.sets:
            raise SetNotFound(name)
        return len(self.fw.sets[name])

    def create(self, name, size_hint=0):
        self.calls.append(("create", name))
        if name in self.fw.sets:
            raise AlreadyExists(name)
        self.fw.sets[name] = []

    def replace_members(self, name, cidrs):
        self.calls.append(("replace_members", name, list(cidrs)))
        if name in self.fail_replace:
            raise self.fail_replace[name]
        if name not in self.fw.sets:
            raise SetNotFound(name)
        self.fw.sets[name] = list(cidrs)

    def destroy(self, name):
        self.calls.append(("destroy", name, self.fw.references(name)))
        if name not in self.fw.sets:
            raise SetNotFound(name)
        if self.fw.references(name):
            raise SetBusy(name)
        del self.fw.sets[name]


class FakeRules:
    def __init__(self, fw: FakeFirewall, store: FakeStore):
        self.fw = fw
        self.store = store
        self.stuck: set[tuple[str, int]] = set()
        self.max_removal_attempts = 3

    def list_managed_set_names(self):
        return [name for name in self.store.list_names() if is_managed_set_name(name)]

    def rule_exists(self, set_name, port):
        return (set_name, port) in self.fw.rules

    def insert_rule(self, set_name, port):
        if self.rule_exists(set_name, port):
            return False
        if set_name not in self.fw.sets:
            raise CommandFailed(["iptables"], 2, f"Set {set_name} doesn't exist.")
        self.fw.rules.insert(0, (set_name, port))
        return True

    def remove_rule(self, set_name, port):
        if (set_name, port) in self.stuck:
            raise RuleStillPresent(set_name, port, self.max_removal_attempts)
        while (set_name, port) in self.fw.rules:
            self.fw.rules.remove((set_name, port))

    def referenced_ports(self, set_name):
        ports = []
        for s, p in self.fw.rules:
            if s == set_name and p not in ports:
                ports.append(p)
        return ports

    def any_rule_references(self, set_name):
        return self.fw.references(set_name)


class FakeFetcher:
    def __init__(self, lists: dict[str, list[str]]):
        self.lists = lists
        self.calls: list[str] = []

    def fetch(self, country):
        self.calls.append(country)
        cidrs = self.lists.get(country)
        if not cidrs:
            raise FetchFailed(country, "empty response")
        return list(cidrs)


def cidrs(count: int, second_octet: int = 0) -> list[str]:
    return [f"10.{second_octet}.{i}.0/24" for i in range(count)]


@pytest.fixture
def firewall():
    fw = FakeFirewall()
    store = FakeStore(fw)
    rules = FakeRules(fw, store)
    return fw, store, rules
