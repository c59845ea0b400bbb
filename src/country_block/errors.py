"""Error kinds raised by the set store, rule inventory and fetchers"""


class CountryBlockError(Exception):
    """Base class for every per-item failure recorded in engine results."""


class FetchFailed(CountryBlockError):
    def __init__(self, country: str, reason: str):
        super().__init__(f"{country}: {reason}")
        self.country = country
        self.reason = reason


class SetNotFound(CountryBlockError):
    pass


class SetBusy(CountryBlockError):
    pass


class AlreadyExists(CountryBlockError):
    pass


class RuleStillPresent(CountryBlockError):
    def __init__(self, set_name: str, port: int, attempts: int):
        super().__init__(
            f"rule for {set_name} port {port} still present after {attempts} attempts"
        )
        self.set_name = set_name
        self.port = port
        self.attempts = attempts


class InvalidSelection(CountryBlockError):
    pass


class SubsystemUnavailable(CountryBlockError):
    pass


class RefreshFailed(CountryBlockError):
    def __init__(self, set_name: str, cause: CountryBlockError):
        super().__init__(f"{set_name}: {cause}")
        self.set_name = set_name
        self.cause = cause


class CommandFailed(CountryBlockError):
    """A firewall binary exited non-zero for a reason we do not classify."""

    def __init__(self, command: list[str], returncode: int, stderr: str):
        super().__init__(f"{' '.join(command)} exited {returncode}: {stderr.strip()}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
