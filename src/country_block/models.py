import socket
from dataclasses import dataclass, field

from .errors import CountryBlockError

SET_PREFIX = "country_"


def set_name_for(country: str) -> str:
    return f"{SET_PREFIX}{country.strip().upper()}"


def is_managed_set_name(name: str) -> bool:
    """True for ``country_<CC>``; temporary swap sets such as ``country_CN-tmp`` do not count."""
    if not name.startswith(SET_PREFIX):
        return False
    code = name[len(SET_PREFIX):]
    return len(code) == 2 and code.isascii() and code.isalpha() and code.isupper()


def parse_port(value: int | str) -> int:
    """Resolve a port number or a TCP service name such as ``ssh``."""
    if isinstance(value, int):
        port = value
    else:
        value = value.strip()
        if value.isdigit():
            port = int(value)
        else:
            try:
                port = socket.getservbyname(value, "tcp")
            except OSError:
                raise ValueError(f"unknown service name: {value!r}") from None

    if not 1 <= port <= 65535:
        raise ValueError(f"port out of range: {port}")
    return port


@dataclass(frozen=True)
class BlockTarget:
    """One country whose ranges are dropped on the given TCP ports."""

    country: str
    ports: tuple[int, ...]

    def __post_init__(self):
        country = self.country.strip().upper()
        if len(country) != 2 or not country.isascii() or not country.isalpha():
            raise ValueError(f"invalid country code: {self.country!r}")
        object.__setattr__(self, "country", country)

    @classmethod
    def create(cls, country: str, ports) -> "BlockTarget":
        resolved: list[int] = []
        for value in ports:
            port = parse_port(value)
            if port not in resolved:
                resolved.append(port)
        return cls(country, tuple(resolved))

    @property
    def set_name(self) -> str:
        return set_name_for(self.country)


@dataclass
class SyncResult:
    country: str
    set_name: str
    ok: bool
    member_count: int = 0
    created: bool = False
    rules_added: list[int] = field(default_factory=list)
    error: CountryBlockError | None = None

    @classmethod
    def success(cls, country: str, set_name: str, member_count: int, **kwargs) -> "SyncResult":
        return cls(country, set_name, True, member_count, **kwargs)

    @classmethod
    def failure(cls, country: str, set_name: str, error: CountryBlockError, **kwargs) -> "SyncResult":
        return cls(country, set_name, False, error=error, **kwargs)


@dataclass
class TeardownResult:
    set_name: str | None
    ok: bool
    removed_ports: list[int] = field(default_factory=list)
    error: CountryBlockError | None = None
